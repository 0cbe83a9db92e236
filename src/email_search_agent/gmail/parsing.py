"""Helpers for parsing Gmail API messages (format=full) into internal models."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from email_search_agent.models import Attachment, MailboxMessage
from email_search_agent.text.html import html_to_text

_TEXT_LIKE_APPLICATION_TYPES = {
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/csv",
}


@dataclass(frozen=True)
class AttachmentPart:
    """An attachment as described in the message payload."""

    part_id: str
    filename: str
    mime_type: str
    size: int
    attachment_id: str | None
    inline_data: str | None


def _header_map(message: dict[str, Any]) -> dict[str, str]:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    result: dict[str, str] = {}
    for h in headers:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            # Gmail can include duplicates; keep the first.
            result.setdefault(name.lower(), value)
    return result


def _parse_address_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [addr for _, addr in getaddresses([value]) if addr]


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _sent_at(message: dict[str, Any], headers: dict[str, str]) -> datetime:
    internal_date_raw = message.get("internalDate")
    if internal_date_raw is not None:
        try:
            return datetime.fromtimestamp(int(internal_date_raw) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            pass
    parsed = _parse_date(headers.get("date"))
    if parsed is None:
        raise ValueError(f"Message {message.get('id')!r} has no usable send time")
    return parsed


def decode_base64url(data: str) -> bytes:
    """Decode Gmail's unpadded URL-safe base64."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        return b""


def _decode_body_data(part: dict[str, Any]) -> str:
    data = (part.get("body") or {}).get("data")
    if not data:
        return ""
    return decode_base64url(data).decode("utf-8", errors="replace")


def _walk_parts(part: dict[str, Any]) -> Iterator[dict[str, Any]]:
    yield part
    for child in part.get("parts") or []:
        yield from _walk_parts(child)


def _is_attachment(part: dict[str, Any]) -> bool:
    return bool(part.get("filename")) or bool((part.get("body") or {}).get("attachmentId"))


def extract_bodies(payload: dict[str, Any]) -> tuple[str, str]:
    """First non-attachment ``text/plain`` and ``text/html`` bodies."""
    text = ""
    html = ""
    for part in _walk_parts(payload):
        if _is_attachment(part):
            continue
        mime_type = (part.get("mimeType") or "").lower()
        if mime_type == "text/plain" and not text:
            text = _decode_body_data(part)
        elif mime_type == "text/html" and not html:
            html = _decode_body_data(part)
    return text, html


def attachment_parts(message: dict[str, Any]) -> list[AttachmentPart]:
    payload = message.get("payload") or {}
    parts: list[AttachmentPart] = []
    for part in _walk_parts(payload):
        if part is payload or not _is_attachment(part):
            continue
        body = part.get("body") or {}
        parts.append(
            AttachmentPart(
                part_id=str(part.get("partId") or ""),
                filename=str(part.get("filename") or ""),
                mime_type=(part.get("mimeType") or "application/octet-stream").lower(),
                size=int(body.get("size") or 0),
                attachment_id=body.get("attachmentId"),
                inline_data=body.get("data"),
            )
        )
    return parts


def is_text_extractable(mime_type: str) -> bool:
    mime_type = mime_type.lower()
    return (
        mime_type.startswith("text/")
        or mime_type in _TEXT_LIKE_APPLICATION_TYPES
        or mime_type.endswith("+xml")
        or mime_type.endswith("+json")
    )


def attachment_text(mime_type: str, raw: bytes) -> str | None:
    """Text of a text-like attachment, ``None`` for other formats."""
    if not is_text_extractable(mime_type):
        return None
    decoded = raw.decode("utf-8", errors="replace")
    if mime_type.lower() == "text/html":
        return html_to_text(decoded)
    return decoded


def message_to_mailbox_message(
    message: dict[str, Any],
    attachments: list[Attachment] | None = None,
) -> MailboxMessage:
    """Convert a Gmail API message (format=full) to MailboxMessage.

    Args:
        message: Gmail API message dict.
        attachments: Attachments with their text already resolved.

    Raises:
        ValueError: If the message has no id or no usable send time.
    """

    hm = _header_map(message)
    external_id = str(message.get("id") or "")
    if not external_id:
        raise ValueError("Gmail message without an id")

    label_ids = message.get("labelIds") or []
    if not isinstance(label_ids, list):
        label_ids = []

    body_text, body_html = extract_bodies(message.get("payload") or {})

    return MailboxMessage(
        external_id=external_id,
        thread_id=str(message.get("threadId") or "") or None,
        sender=hm.get("from") or "",
        recipients=_parse_address_list(hm.get("to")) + _parse_address_list(hm.get("cc")),
        subject=hm.get("subject") or "",
        body_text=body_text,
        body_html=body_html,
        attachments=attachments or [],
        sent_at=_sent_at(message, hm),
        folder_labels=[str(x) for x in label_ids if isinstance(x, str)],
        headers=hm,
    )


def unparseable_message(
    message: dict[str, Any],
    fallback_sent_at: datetime,
    error: str,
) -> MailboxMessage | None:
    """Minimal record of a message that failed to parse, or None without an id."""

    external_id = str(message.get("id") or "")
    if not external_id:
        return None
    hm = _header_map(message)
    label_ids = message.get("labelIds") or []
    if not isinstance(label_ids, list):
        label_ids = []
    return MailboxMessage(
        external_id=external_id,
        thread_id=str(message.get("threadId") or "") or None,
        sender=hm.get("from") or "",
        subject=hm.get("subject") or "",
        sent_at=fallback_sent_at,
        folder_labels=[str(x) for x in label_ids if isinstance(x, str)],
        parse_error=error,
    )
