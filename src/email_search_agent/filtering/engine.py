"""Deduplication and noise filtering for fetched messages.

:meth:`FilterEngine.classify` is a pure function of the message, the set of
known external ids and the engine's immutable configuration. Per-user domain
rules are bound by creating a new engine with :meth:`FilterEngine.with_rules`.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Container, Iterable
from dataclasses import dataclass, field

from email_search_agent.config import Settings
from email_search_agent.filtering.rules import (
    AUTOMATED_DOMAINS,
    AUTOMATED_LOCAL_PARTS,
    AUTOMATED_SUBJECT_PATTERNS,
    MARKETING_DOMAINS,
    MARKETING_KEYWORDS,
    MARKETING_SCORE_THRESHOLD,
    NOTIFICATION_KEYWORDS,
    NOTIFICATION_SCORE_THRESHOLD,
    FilterConfig,
    FilterRule,
    RuleType,
    count_matches,
    domain_matches,
    extract_address,
    extract_domain,
)
from email_search_agent.models import Decision, FilterReason, MailboxMessage

_KEEP = Decision()
_DUPLICATE = Decision(is_duplicate=True, detail="already indexed")

_BULK_PRECEDENCE = {"bulk", "list", "junk"}


def _filtered(reason: FilterReason, detail: str) -> Decision:
    return Decision(is_filtered=True, filter_reason=reason, detail=detail)


class FilterEngine:
    """Classifies messages as duplicate, filtered or kept."""

    def __init__(
        self,
        config: FilterConfig | None = None,
        rules: Iterable[FilterRule] = (),
    ) -> None:
        self._config = config or FilterConfig()
        rules = tuple(rules)
        self._rules = rules
        self._whitelist = tuple(self._config.whitelisted_domains) + tuple(
            r.domain for r in rules if r.rule_type is RuleType.WHITELIST
        )
        self._blacklist = tuple(self._config.blacklisted_domains) + tuple(
            r.domain for r in rules if r.rule_type is RuleType.BLACKLIST
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> FilterEngine:
        return cls(FilterConfig.from_settings(settings))

    @property
    def config(self) -> FilterConfig:
        return self._config

    @property
    def rules(self) -> tuple[FilterRule, ...]:
        return self._rules

    def with_rules(self, rules: Iterable[FilterRule]) -> FilterEngine:
        """A new engine with the same configuration and the given user rules."""
        return FilterEngine(self._config, rules)

    def classify(self, msg: MailboxMessage, existing_ids: Container[str]) -> Decision:
        if msg.external_id in existing_ids:
            return _DUPLICATE

        if msg.parse_error:
            return _filtered(FilterReason.PROCESSING_ERROR, f"unparseable message: {msg.parse_error}")

        decision = self._classify_sender_and_content(msg)
        if decision.is_filtered:
            return decision

        size_decision = self._check_size(msg)
        if size_decision is not None:
            return size_decision

        return decision

    # ------------------------------------------------------------------

    def _classify_sender_and_content(self, msg: MailboxMessage) -> Decision:
        domain = extract_domain(msg.sender)

        if self._config.enable_domain_filtering and domain:
            for pattern in self._whitelist:
                if domain_matches(domain, pattern):
                    return Decision(detail=f"whitelisted domain: {domain}")

        automated = self._check_automated_headers(msg)
        if automated is not None:
            return automated

        marketing = self._check_marketing_headers(msg)
        if marketing is not None:
            return marketing

        if self._config.enable_domain_filtering and domain:
            for pattern in self._blacklist:
                if domain_matches(domain, pattern):
                    return _filtered(FilterReason.MARKETING, f"blacklisted domain: {domain}")
            for pattern in AUTOMATED_DOMAINS:
                if domain_matches(domain, pattern):
                    return _filtered(FilterReason.AUTOMATED, f"automated sender domain: {domain}")
            for pattern in MARKETING_DOMAINS:
                if domain_matches(domain, pattern):
                    return _filtered(FilterReason.MARKETING, f"marketing sender domain: {domain}")

        if self._config.enable_content_filtering:
            return self._check_content(msg)

        return _KEEP

    def _check_automated_headers(self, msg: MailboxMessage) -> Decision | None:
        headers = msg.headers

        auto_submitted = headers.get("auto-submitted", "").strip().lower()
        if auto_submitted and auto_submitted != "no":
            return _filtered(FilterReason.AUTOMATED, f"Auto-Submitted: {auto_submitted}")

        for name in ("x-autoreply", "x-autorespond"):
            if name in headers:
                return _filtered(FilterReason.AUTOMATED, f"{name} header present")

        if headers.get("precedence", "").strip().lower() == "auto_reply":
            return _filtered(FilterReason.AUTOMATED, "Precedence: auto_reply")

        local_part = extract_address(msg.sender).split("@", 1)[0]
        if local_part and AUTOMATED_LOCAL_PARTS.match(local_part):
            return _filtered(FilterReason.AUTOMATED, f"automated sender: {local_part}")

        for pattern in AUTOMATED_SUBJECT_PATTERNS:
            if pattern.search(msg.subject):
                return _filtered(FilterReason.AUTOMATED, "automated subject")

        return None

    def _check_marketing_headers(self, msg: MailboxMessage) -> Decision | None:
        headers = msg.headers

        if "list-unsubscribe" in headers:
            return _filtered(FilterReason.MARKETING, "List-Unsubscribe header present")
        if "list-id" in headers:
            return _filtered(FilterReason.MARKETING, "List-Id header present")

        precedence = headers.get("precedence", "").strip().lower()
        if precedence in _BULK_PRECEDENCE:
            return _filtered(FilterReason.MARKETING, f"Precedence: {precedence}")

        if "CATEGORY_PROMOTIONS" in msg.folder_labels:
            return _filtered(FilterReason.MARKETING, "promotions category")

        return None

    def _check_content(self, msg: MailboxMessage) -> Decision:
        text = f"{msg.sender} {msg.subject} {msg.body_text}"

        marketing_score = count_matches(MARKETING_KEYWORDS, text)
        if marketing_score >= MARKETING_SCORE_THRESHOLD:
            return _filtered(
                FilterReason.MARKETING,
                f"marketing content (score {marketing_score})",
            )

        if self._config.strict_mode:
            notification_score = count_matches(NOTIFICATION_KEYWORDS, text)
            if notification_score >= NOTIFICATION_SCORE_THRESHOLD:
                return _filtered(
                    FilterReason.AUTOMATED,
                    f"notification content (score {notification_score})",
                )

        return _KEEP

    def _check_size(self, msg: MailboxMessage) -> Decision | None:
        if not self._config.enable_size_filtering:
            return None

        total = len(msg.body_text.encode("utf-8")) + len(msg.body_html.encode("utf-8"))
        if total > self._config.max_email_size:
            return _filtered(
                FilterReason.PROCESSING_ERROR,
                f"email size exceeds limit: {total} bytes",
            )
        return None


@dataclass(frozen=True)
class FilteringStats:
    """Counts over a batch of decisions."""

    total: int = 0
    duplicates: int = 0
    filtered: int = 0
    kept: int = 0
    reasons: dict[str, int] = field(default_factory=dict)

    @property
    def filter_rate(self) -> float:
        considered = self.total - self.duplicates
        return (self.filtered / considered) * 100 if considered else 0.0


def filtering_stats(decisions: Iterable[Decision]) -> FilteringStats:
    total = duplicates = filtered = kept = 0
    reasons: Counter[str] = Counter()

    for decision in decisions:
        total += 1
        if decision.is_duplicate:
            duplicates += 1
        elif decision.is_filtered:
            filtered += 1
            reasons[decision.filter_reason.value] += 1
        else:
            kept += 1

    return FilteringStats(
        total=total,
        duplicates=duplicates,
        filtered=filtered,
        kept=kept,
        reasons=dict(reasons),
    )
