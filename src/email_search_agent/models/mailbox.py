"""Messages as delivered by a mailbox provider.

These models are read-only inputs to the pipeline: once fetched, a message is
never mutated. Everything the pipeline derives from it lives on
:class:`~email_search_agent.models.index.IndexedEmail`.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Attachment(BaseModel):
    """A message attachment with its extracted text, when available."""

    model_config = ConfigDict(frozen=True)

    filename: str = Field(default="", description="Attachment file name")
    mime_type: str = Field(default="application/octet-stream", description="MIME type")
    size: int = Field(default=0, ge=0, description="Size in bytes as reported by the provider")
    text: str | None = Field(
        default=None,
        description="Extracted text; None when the format is not text-extractable",
    )


class MailboxMessage(BaseModel):
    """A single message fetched from the mailbox provider."""

    model_config = ConfigDict(frozen=True)

    external_id: str = Field(min_length=1, description="Provider-assigned message ID (dedup key)")
    thread_id: str | None = Field(default=None, description="Provider thread ID")
    sender: str = Field(default="", description="Raw From header")
    recipients: list[str] = Field(default_factory=list, description="To and Cc addresses")
    subject: str = Field(default="", description="Subject header")
    body_text: str = Field(default="", description="Plain-text body")
    body_html: str = Field(default="", description="HTML body")
    attachments: list[Attachment] = Field(default_factory=list)
    sent_at: datetime = Field(description="Send time (UTC)")
    folder_labels: list[str] = Field(default_factory=list, description="Provider labels / folders")
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Selected headers keyed by lower-cased name",
    )
    parse_error: str | None = Field(
        default=None,
        description="Set when the provider payload could not be parsed",
    )

    @field_validator("sent_at")
    @classmethod
    def _ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("headers")
    @classmethod
    def _lower_header_names(cls, v: dict[str, str]) -> dict[str, str]:
        return {k.lower(): val for k, val in v.items()}


class MailboxCredentials(BaseModel):
    """Opaque OAuth credentials supplied by the external auth collaborator."""

    access_token: str | None = None
    refresh_token: str | None = None
    token_uri: str = "https://oauth2.googleapis.com/token"
    client_id: str | None = None
    client_secret: str | None = None
    expiry: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
