"""Static filter data: known domains, keyword patterns and user rule types."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from email.utils import parseaddr
from enum import Enum
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from email_search_agent.config import Settings


class RuleType(str, Enum):
    BLACKLIST = "blacklist"
    WHITELIST = "whitelist"


class FilterRule(BaseModel):
    """A per-user domain rule. ``*`` and ``?`` act as wildcards."""

    model_config = ConfigDict(frozen=True)

    rule_type: RuleType
    domain: str = Field(min_length=1, description="Domain or wildcard pattern")

    @field_validator("domain")
    @classmethod
    def _clean_domain(cls, v: str) -> str:
        cleaned = v.strip().lower().lstrip("@")
        if not cleaned:
            raise ValueError("Domain pattern is required")
        return cleaned


# Bulk senders whose mail is almost always promotional.
MARKETING_DOMAINS: tuple[str, ...] = (
    "marketing.com",
    "newsletter.com",
    "promo.com",
    "mailchimp.com",
    "mcsv.net",
    "mcdlv.net",
    "constantcontact.com",
    "sendgrid.net",
    "substack.com",
    "medium.com",
    "beehiiv.com",
    "convertkit.com",
    "mailerlite.com",
    "amazon.com",
    "ebay.com",
    "paypal.com",
    "shopify.com",
    "linkedin.com",
    "instagram.com",
    "tiktok.com",
    "snapchat.com",
)

# Machine senders: notifications from services, bounces, relays.
AUTOMATED_DOMAINS: tuple[str, ...] = (
    "no-reply.com",
    "noreply.com",
    "do-not-reply.com",
    "donotreply.com",
    "mailer-daemon.com",
    "updates.com",
    "notifications.com",
    "amazonses.com",
    "facebookmail.com",
    "mail.twitter.com",
    "stripe.com",
    "github.com",
    "gitlab.com",
    "bitbucket.org",
    "atlassian.com",
    "slack.com",
    "discord.com",
    "zoom.us",
    "calendly.com",
)

AUTOMATED_LOCAL_PARTS = re.compile(
    r"^(no[-_.]?reply|do[-_.]?not[-_.]?reply|mailer[-_.]?daemon|postmaster|"
    r"bounces?|notifications?|automated|system)([-+_.].*)?$",
    re.IGNORECASE,
)

AUTOMATED_SUBJECT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*(automatic|auto)[- ]?reply\b", re.IGNORECASE),
    re.compile(r"\bout of (the )?office\b", re.IGNORECASE),
    re.compile(r"\bdelivery status notification\b", re.IGNORECASE),
    re.compile(r"\bundeliverable\b", re.IGNORECASE),
    re.compile(r"\bmail delivery (failed|failure|subsystem)\b", re.IGNORECASE),
    re.compile(r"\bdo[- ]?not[- ]?reply\b", re.IGNORECASE),
)

MARKETING_KEYWORDS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(rf"\b{word}\b", re.IGNORECASE)
    for word in (
        "unsubscribe",
        "marketing",
        "promotional",
        "newsletter",
        "campaign",
        "offers?",
        "deals?",
        "sale",
        "discount",
    )
)

NOTIFICATION_KEYWORDS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(rf"\b{word}\b", re.IGNORECASE)
    for word in ("notifications?", "alerts?", "reminders?", "updates?", "digest", "summary")
)

MARKETING_SCORE_THRESHOLD = 2
NOTIFICATION_SCORE_THRESHOLD = 3
DEFAULT_MAX_EMAIL_SIZE = 10 * 1024 * 1024


def extract_address(sender: str) -> str:
    _, address = parseaddr(sender or "")
    return address.strip().lower()


def extract_domain(sender: str) -> str:
    address = extract_address(sender)
    if "@" not in address:
        return ""
    return address.rsplit("@", 1)[1].strip(" >")


def domain_matches(domain: str, pattern: str) -> bool:
    """Exact or parent-domain match; wildcard patterns use shell-style matching."""
    domain = domain.lower()
    pattern = pattern.strip().lower().lstrip("@")
    if not domain or not pattern:
        return False
    if "*" in pattern or "?" in pattern:
        return fnmatchcase(domain, pattern)
    return domain == pattern or domain.endswith("." + pattern)


def count_matches(patterns: tuple[re.Pattern[str], ...], text: str) -> int:
    return sum(1 for pattern in patterns if pattern.search(text))


@dataclass(frozen=True)
class FilterConfig:
    """Immutable engine configuration."""

    enable_domain_filtering: bool = True
    enable_content_filtering: bool = True
    enable_size_filtering: bool = True
    strict_mode: bool = False
    max_email_size: int = DEFAULT_MAX_EMAIL_SIZE
    blacklisted_domains: tuple[str, ...] = field(default_factory=tuple)
    whitelisted_domains: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_settings(cls, settings: Settings) -> FilterConfig:
        return cls(
            enable_domain_filtering=settings.enable_domain_filtering,
            enable_content_filtering=settings.enable_content_filtering,
            enable_size_filtering=settings.enable_size_filtering,
            strict_mode=settings.filter_strict_mode,
            max_email_size=settings.max_email_size,
            blacklisted_domains=tuple(d.lower() for d in settings.blacklisted_domains if d),
            whitelisted_domains=tuple(d.lower() for d in settings.whitelisted_domains if d),
        )
