"""Gmail implementation of :class:`~email_search_agent.mailbox.MailboxSource`.

Notes:
    The Google API client is synchronous. Every API call is wrapped in
    `asyncio.to_thread`, bounded by a timeout, and takes one slot of the
    ``gmail`` rate window before it is issued.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, NoReturn

import structlog
from google.auth.exceptions import RefreshError
from google.auth.exceptions import TransportError as GoogleTransportError
from googleapiclient.errors import HttpError

from email_search_agent.config import Settings
from email_search_agent.exceptions import (
    ConfigurationError,
    MailboxAuthError,
    MailboxError,
    MailboxFetchError,
    MailboxTransientError,
)
from email_search_agent.gmail.parsing import (
    AttachmentPart,
    attachment_parts,
    attachment_text,
    decode_base64url,
    is_text_extractable,
    message_to_mailbox_message,
    unparseable_message,
)
from email_search_agent.mailbox.base import MailboxSource
from email_search_agent.models import Attachment, MailboxCredentials, MailboxMessage
from email_search_agent.ratelimit import RateGovernor, RateLimit

logger = structlog.get_logger()

USER_ID = "me"
_RATE_LIMIT_REASONS = ("rateLimitExceeded", "userRateLimitExceeded")


def build_query(after: datetime, folders: Sequence[str]) -> str:
    """Gmail search query for messages after ``after`` in any of ``folders``."""
    terms = [f"after:{int(after.timestamp())}"]
    labels = [f"label:{f.strip().lower().replace(' ', '-')}" for f in folders if f.strip()]
    if len(labels) == 1:
        terms.append(labels[0])
    elif labels:
        terms.append("{" + " ".join(labels) + "}")
    return " ".join(terms)


def map_google_error(exc: BaseException) -> MailboxError | None:
    """Translate a Google client failure into a mailbox error, if it is one."""
    if isinstance(exc, MailboxError):
        return exc
    if isinstance(exc, HttpError):
        status = int(getattr(exc.resp, "status", 0) or 0)
        content = exc.content.decode("utf-8", errors="replace") if exc.content else ""
        if status == 429 or status >= 500:
            return MailboxTransientError(f"Gmail unavailable: HTTP {status}")
        if status == 403 and any(reason in content for reason in _RATE_LIMIT_REASONS):
            return MailboxTransientError("Gmail rate limit exceeded")
        if status in (401, 403):
            return MailboxAuthError(f"Gmail rejected the credentials: HTTP {status}")
        return MailboxFetchError(f"Gmail request failed: HTTP {status}")
    if isinstance(exc, RefreshError):
        return MailboxAuthError(f"Gmail credentials could not be refreshed: {exc}")
    if isinstance(exc, GoogleTransportError):
        return MailboxTransientError(f"Gmail transport error: {exc}")
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return MailboxTransientError(f"Gmail network error: {exc}")
    return None


def _raise_mapped(exc: Exception) -> NoReturn:
    mapped = map_google_error(exc)
    if mapped is None or mapped is exc:
        raise exc
    raise mapped from exc


def _is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and int(getattr(exc.resp, "status", 0) or 0) == 404


def build_gmail_service(credentials: MailboxCredentials) -> Any:
    """Build a Gmail API service from opaque OAuth credentials."""

    # Imported lazily to keep import-time cost low and tests fast.
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from googleapiclient.discovery import build

    if not credentials.access_token and not credentials.refresh_token:
        raise MailboxAuthError("No Gmail access or refresh token available")

    expiry = credentials.expiry
    if expiry is not None and expiry.tzinfo is not None:
        # google-auth compares against a naive UTC clock.
        expiry = expiry.astimezone(timezone.utc).replace(tzinfo=None)

    creds = Credentials(
        token=credentials.access_token,
        refresh_token=credentials.refresh_token,
        token_uri=credentials.token_uri,
        client_id=credentials.client_id,
        client_secret=credentials.client_secret,
        scopes=credentials.scopes or None,
        expiry=expiry,
    )
    if not creds.valid and creds.refresh_token:
        creds.refresh(Request())

    # cache_discovery=False prevents writing discovery docs to disk.
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def load_local_credentials(settings: Settings) -> MailboxCredentials:
    """Authorize a local user with an installed-app flow and cache the token.

    For command-line use only; services receive credentials from their own
    auth layer.
    """

    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from google_auth_oauthlib.flow import InstalledAppFlow

    credentials_path = Path(settings.gmail_credentials_path)
    token_path = Path(settings.gmail_token_path)
    scope = settings.gmail_scope

    creds: Credentials | None = None
    if token_path.exists():
        creds = Credentials.from_authorized_user_file(str(token_path), scopes=[scope])

    if creds is not None and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            raise MailboxAuthError(f"Stored Gmail token could not be refreshed: {exc}") from exc

    if creds is None or not creds.valid:
        if not credentials_path.exists():
            raise ConfigurationError(
                f"Gmail credentials file not found: {credentials_path}. "
                "See README.md -> Gmail API Setup."
            )
        logger.info(
            "gmail_authorization_started",
            credentials_path=str(credentials_path),
            token_path=str(token_path),
            scope=scope,
        )
        flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), scopes=[scope])
        creds = flow.run_local_server(port=0)
        token_path.parent.mkdir(parents=True, exist_ok=True)
        token_path.write_text(creds.to_json(), encoding="utf-8")

    expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
    return MailboxCredentials(
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        token_uri=creds.token_uri or MailboxCredentials.model_fields["token_uri"].default,
        client_id=creds.client_id,
        client_secret=creds.client_secret,
        expiry=expiry,
        scopes=list(creds.scopes or [scope]),
    )


class GmailMailboxSource(MailboxSource):
    """Streams a user's Gmail messages oldest first."""

    def __init__(
        self,
        governor: RateGovernor,
        *,
        rate_limit: RateLimit | None = None,
        page_size: int = 100,
        max_attachment_bytes: int = 1_048_576,
        call_timeout: float | None = 30.0,
        service_factory: Callable[[MailboxCredentials], Any] = build_gmail_service,
    ) -> None:
        self._governor = governor
        self._rate_limit = rate_limit or RateLimit("gmail", 1_000, 40)
        self._page_size = page_size
        self._max_attachment_bytes = max_attachment_bytes
        self._call_timeout = call_timeout
        self._service_factory = service_factory

    @classmethod
    def from_settings(cls, settings: Settings, governor: RateGovernor) -> GmailMailboxSource:
        return cls(
            governor,
            rate_limit=RateLimit(
                "gmail", settings.gmail_rate_window_ms, settings.gmail_rate_max_calls
            ),
            page_size=settings.gmail_page_size,
            max_attachment_bytes=settings.max_attachment_bytes,
            call_timeout=settings.call_timeout_seconds,
        )

    async def fetch_messages_since(
        self,
        credentials: MailboxCredentials,
        after: datetime,
        folders: Sequence[str],
    ) -> AsyncIterator[MailboxMessage]:
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)

        service = await self._build_service(credentials)
        query = build_query(after, folders)
        message_ids = await self._list_message_ids(service, query)
        logger.info("gmail_messages_listed", count=len(message_ids), query=query)

        # users.messages.list returns newest first.
        latest_sent_at = after
        for message_id in reversed(message_ids):
            raw = await self._get_message(service, message_id)
            if raw is None:
                continue

            attachments = await self._resolve_attachments(service, message_id, raw)
            try:
                message = message_to_mailbox_message(raw, attachments)
            except ValueError as exc:
                logger.warning("gmail_message_unparseable", message_id=message_id, error=str(exc))
                # Stamped with the latest send time seen so the cursor cannot jump ahead.
                fallback = unparseable_message(raw, latest_sent_at, str(exc))
                if fallback is not None:
                    yield fallback
                continue

            # after: has one-second granularity; drop anything strictly older.
            if message.sent_at < after:
                continue
            latest_sent_at = max(latest_sent_at, message.sent_at)
            yield message

    async def _build_service(self, credentials: MailboxCredentials) -> Any:
        try:
            return await asyncio.to_thread(self._service_factory, credentials)
        except Exception as exc:
            logger.error("gmail_service_build_failed", error=str(exc))
            _raise_mapped(exc)

    async def _execute(self, request: Any, operation: str) -> dict[str, Any]:
        await self._rate_limit.wait(self._governor)
        try:
            call = asyncio.to_thread(request.execute)
            if self._call_timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=self._call_timeout)
        except asyncio.TimeoutError as exc:
            raise MailboxTransientError(
                f"Gmail {operation} timed out after {self._call_timeout}s"
            ) from exc

    async def _list_message_ids(self, service: Any, query: str) -> list[str]:
        ids: list[str] = []
        seen: set[str] = set()
        page_token: str | None = None

        while True:
            request = (
                service.users()
                .messages()
                .list(userId=USER_ID, maxResults=self._page_size, q=query, pageToken=page_token)
            )
            try:
                response = await self._execute(request, "list")
            except Exception as exc:
                _raise_mapped(exc)

            for ref in response.get("messages", []) or []:
                message_id = ref.get("id")
                if message_id and message_id not in seen:
                    seen.add(message_id)
                    ids.append(message_id)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return ids

    async def _get_message(self, service: Any, message_id: str) -> dict[str, Any] | None:
        request = service.users().messages().get(userId=USER_ID, id=message_id, format="full")
        try:
            return await self._execute(request, "get")
        except Exception as exc:
            if _is_not_found(exc):
                logger.warning("gmail_message_vanished", message_id=message_id)
                return None
            _raise_mapped(exc)

    async def _resolve_attachments(
        self,
        service: Any,
        message_id: str,
        raw: dict[str, Any],
    ) -> list[Attachment]:
        attachments: list[Attachment] = []
        for part in attachment_parts(raw):
            text = await self._attachment_text(service, message_id, part)
            attachments.append(
                Attachment(
                    filename=part.filename,
                    mime_type=part.mime_type,
                    size=part.size,
                    text=text,
                )
            )
        return attachments

    async def _attachment_text(
        self,
        service: Any,
        message_id: str,
        part: AttachmentPart,
    ) -> str | None:
        if not is_text_extractable(part.mime_type):
            return None
        if part.size > self._max_attachment_bytes:
            logger.debug(
                "gmail_attachment_too_large",
                message_id=message_id,
                filename=part.filename,
                size=part.size,
            )
            return None

        data = part.inline_data
        if not data and part.attachment_id:
            request = (
                service.users()
                .messages()
                .attachments()
                .get(userId=USER_ID, messageId=message_id, id=part.attachment_id)
            )
            try:
                response = await self._execute(request, "attachment")
            except Exception as exc:
                if _is_not_found(exc):
                    return None
                if isinstance(map_google_error(exc), MailboxFetchError):
                    logger.warning(
                        "gmail_attachment_fetch_failed",
                        message_id=message_id,
                        filename=part.filename,
                        error=str(exc),
                    )
                    return None
                _raise_mapped(exc)
            data = response.get("data")

        if not data:
            return None
        return attachment_text(part.mime_type, decode_base64url(data))
