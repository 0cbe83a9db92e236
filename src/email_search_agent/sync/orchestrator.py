"""Incremental mailbox sync: fetch, deduplicate, filter, chunk, embed, commit.

One :class:`SyncOrchestrator` serves any number of users. Runs for different
users proceed independently; a second run for a user that is already syncing
is rejected with :class:`~email_search_agent.exceptions.SyncInProgressError`.

The per-user cursor only moves after a batch of messages is durably stored,
and never backwards, so a run can always be replayed from an earlier time:
rows are unique per ``(user_id, external_id)``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

import structlog

from email_search_agent.config import Settings
from email_search_agent.embeddings.base import EmbeddingProvider, mean_vector
from email_search_agent.exceptions import (
    EmailSearchError,
    EmbeddingError,
    EmbeddingTransientError,
    ErrorKind,
    SyncFatalError,
    SyncInProgressError,
    VectorStoreBatchError,
    VectorStoreTransientError,
)
from email_search_agent.filtering import FilterEngine, filtering_stats
from email_search_agent.index import EmailRepository
from email_search_agent.mailbox.base import MailboxSource
from email_search_agent.models import (
    Decision,
    EmbeddingRecord,
    FilterReason,
    IndexedEmail,
    MailboxCredentials,
    MailboxMessage,
    RunStatus,
    SyncSummary,
    TextChunk,
    email_row_id,
)
from email_search_agent.ratelimit import RateGovernor, RateLimit
from email_search_agent.sync.state import SyncState, SyncStateMachine
from email_search_agent.text import chunk, combine, html_to_text, normalize, validate_size
from email_search_agent.utils import call_with_retry, is_transient
from email_search_agent.vector.base import VectorStore

logger = structlog.get_logger()

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SyncConfig:
    """Tunables for a sync run."""

    folders: tuple[str, ...] = ("INBOX", "SENT")
    initial_lookback_days: int = 30
    sync_batch_size: int = 50
    embedding_batch_size: int = 16
    worker_count: int = 4
    call_timeout: float = 30.0
    max_retries: int = 3
    retry_base_delay: float = 1.0
    pending_backlog_limit: int = 100
    max_chunk_size: int = 8_000
    max_tokens: int = 10_000
    embedding_rate: RateLimit = field(default_factory=lambda: RateLimit("embedding", 60_000, 500))

    @classmethod
    def from_settings(cls, settings: Settings) -> SyncConfig:
        return cls(
            folders=tuple(settings.sync_folders),
            initial_lookback_days=settings.initial_lookback_days,
            sync_batch_size=settings.sync_batch_size,
            embedding_batch_size=settings.embedding_batch_size,
            worker_count=settings.worker_count,
            call_timeout=settings.call_timeout_seconds,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            pending_backlog_limit=settings.pending_backlog_limit,
            max_chunk_size=settings.max_chunk_size,
            max_tokens=settings.max_tokens,
            embedding_rate=RateLimit(
                "embedding",
                settings.embedding_rate_window_ms,
                settings.embedding_rate_max_calls,
            ),
        )


@dataclass
class _Prepared:
    """A new message after classification and, if kept, chunking."""

    message: MailboxMessage
    decision: Decision
    content: str = ""
    chunks: list[TextChunk] = field(default_factory=list)


@dataclass
class _EmbedItem:
    email_id: str
    chunks: list[TextChunk]
    metadata: dict[str, Any]


@dataclass
class _RunContext:
    user_id: str
    machine: SyncStateMachine
    engine: FilterEngine
    known_ids: set[str]
    summary: SyncSummary
    pool: ThreadPoolExecutor
    attempted: set[str] = field(default_factory=set)
    last_fetched_at: datetime | None = None


class SyncOrchestrator:
    """Drives sync runs for any number of users."""

    def __init__(
        self,
        repository: EmailRepository,
        mailbox: MailboxSource,
        embedder: EmbeddingProvider,
        vector_store: VectorStore,
        filter_engine: FilterEngine,
        governor: RateGovernor,
        config: SyncConfig | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._mailbox = mailbox
        self._embedder = embedder
        self._vector_store = vector_store
        self._filter_engine = filter_engine
        self._governor = governor
        self._config = config or SyncConfig()
        self._clock = clock
        self._sleep = sleep
        self._active_users: set[str] = set()

    @property
    def config(self) -> SyncConfig:
        return self._config

    def is_running(self, user_id: str) -> bool:
        return user_id in self._active_users

    async def sync(
        self,
        user_id: str,
        credentials: MailboxCredentials,
        after: datetime | None = None,
    ) -> SyncSummary:
        """Run one sync for ``user_id``.

        Args:
            user_id: Owner of the mailbox.
            credentials: Opaque provider credentials.
            after: Fetch from this time instead of the stored cursor.

        Returns:
            What the run did. ``status`` is ``partial`` when some items failed.

        Raises:
            SyncInProgressError: If a run for this user is already active.
            SyncFatalError: If the run was aborted; committed batches stay committed.
        """
        if user_id in self._active_users:
            raise SyncInProgressError(user_id)
        self._active_users.add(user_id)
        try:
            return await self._run(user_id, credentials, after)
        finally:
            self._active_users.discard(user_id)

    async def sync_many(
        self,
        jobs: Iterable[tuple[str, MailboxCredentials]],
    ) -> dict[str, SyncSummary | BaseException]:
        """Sync several users concurrently; one failure does not stop the others."""
        jobs = list(jobs)
        results = await asyncio.gather(
            *(self.sync(user_id, creds) for user_id, creds in jobs),
            return_exceptions=True,
        )
        return {user_id: result for (user_id, _), result in zip(jobs, results)}

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(
        self,
        user_id: str,
        credentials: MailboxCredentials,
        after: datetime | None,
    ) -> SyncSummary:
        machine = SyncStateMachine(user_id)
        machine.transition(SyncState.FETCHING)
        pool = ThreadPoolExecutor(
            max_workers=self._config.worker_count,
            thread_name_prefix=f"sync-{user_id}",
        )

        try:
            cursor = await self._db(self._repository.get_cursor, user_id)
            from_date = self._resolve_from_date(after, cursor.last_synced_at)
            known_ids = await self._db(self._repository.existing_external_ids, user_id)
            rules = await self._db(self._repository.list_filter_rules, user_id)

            ctx = _RunContext(
                user_id=user_id,
                machine=machine,
                engine=self._filter_engine.with_rules(rules),
                known_ids=known_ids,
                summary=SyncSummary(
                    user_id=user_id,
                    from_date=from_date,
                    cursor=cursor.last_synced_at,
                ),
                pool=pool,
            )
            logger.info(
                "sync_started",
                user_id=user_id,
                from_date=from_date.isoformat(),
                cursor=cursor.last_synced_at.isoformat() if cursor.last_synced_at else None,
                known=len(known_ids),
            )

            batch: list[MailboxMessage] = []
            stream = self._fetch(ctx, credentials, from_date)
            try:
                async for message in stream:
                    batch.append(message)
                    if len(batch) >= self._config.sync_batch_size:
                        await self._process_batch(ctx, batch)
                        batch = []
            finally:
                await stream.aclose()
            if batch:
                await self._process_batch(ctx, batch)

            await self._process_backlog(ctx)

            summary = ctx.summary
            summary.status = RunStatus.PARTIAL if summary.failed else RunStatus.SUCCESS
            await self._db(self._repository.record_run_status, user_id, summary.status)
            machine.transition(SyncState.IDLE)

            logger.info(
                "sync_completed",
                user_id=user_id,
                status=summary.status.value,
                processed=summary.processed,
                vectorized=summary.vectorized,
                filtered=summary.filtered,
                failed=summary.failed,
                skipped=summary.skipped,
                backlog_vectorized=summary.backlog_vectorized,
                cursor=summary.cursor.isoformat() if summary.cursor else None,
            )
            return summary

        except asyncio.CancelledError:
            machine.fail()
            logger.warning("sync_cancelled", user_id=user_id, state=machine.history[-2].value)
            raise
        except EmailSearchError as exc:
            machine.fail()
            logger.error(
                "sync_failed",
                user_id=user_id,
                error=str(exc),
                error_kind=exc.kind.value,
                error_type=type(exc).__name__,
            )
            await self._record_failure(user_id)
            raise SyncFatalError(user_id, exc) from exc
        except Exception:
            machine.fail()
            logger.exception("sync_crashed", user_id=user_id)
            await self._record_failure(user_id)
            raise
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _resolve_from_date(self, after: datetime | None, cursor: datetime | None) -> datetime:
        if after is not None:
            return after if after.tzinfo else after.replace(tzinfo=timezone.utc)
        if cursor is not None:
            return cursor
        return self._clock() - timedelta(days=self._config.initial_lookback_days)

    async def _record_failure(self, user_id: str) -> None:
        try:
            await self._db(self._repository.record_run_status, user_id, RunStatus.FAILED)
        except EmailSearchError as exc:
            logger.error("sync_status_not_recorded", user_id=user_id, error=str(exc))

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _fetch(
        self,
        ctx: _RunContext,
        credentials: MailboxCredentials,
        from_date: datetime,
    ) -> AsyncIterator[MailboxMessage]:
        """Mailbox stream that resumes after transient failures."""
        restarts = 0
        delay = self._config.retry_base_delay
        resume_from = from_date

        while True:
            stream = self._mailbox.fetch_messages_since(credentials, resume_from, self._config.folders)
            try:
                async for message in stream:
                    if ctx.last_fetched_at is None or message.sent_at > ctx.last_fetched_at:
                        ctx.last_fetched_at = message.sent_at
                    yield message
                return
            except EmailSearchError as exc:
                if exc.kind is not ErrorKind.TRANSIENT or restarts >= self._config.max_retries:
                    raise
                restarts += 1
                resume_from = ctx.last_fetched_at or from_date
                logger.warning(
                    "mailbox_fetch_restarted",
                    user_id=ctx.user_id,
                    attempt=restarts,
                    resume_from=resume_from.isoformat(),
                    delay=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
                delay *= 2
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def _process_batch(self, ctx: _RunContext, batch: list[MailboxMessage]) -> None:
        machine = ctx.machine
        user_id = ctx.user_id

        machine.transition(SyncState.CLASSIFYING)
        fresh: list[MailboxMessage] = []
        batch_ids: set[str] = set()
        duplicates = 0
        for message in batch:
            if message.external_id in ctx.known_ids or message.external_id in batch_ids:
                duplicates += 1
                continue
            batch_ids.add(message.external_id)
            fresh.append(message)

        decisions = await self._in_pool(
            ctx, [lambda m=m: ctx.engine.classify(m, ctx.known_ids) for m in fresh]
        )

        machine.transition(SyncState.CHUNKING)
        prepared = await self._in_pool(
            ctx,
            [lambda m=m, d=d: self._prepare(m, d) for m, d in zip(fresh, decisions)],
        )

        machine.transition(SyncState.PERSISTING)
        rows = [self._to_row(user_id, p) for p in prepared]
        inserted = set(await self._db(self._repository.insert_emails, rows))
        ctx.known_ids.update(m.external_id for m in fresh)

        summary = ctx.summary
        summary.processed += len(inserted)
        summary.filtered += sum(1 for r in rows if r.id in inserted and r.is_filtered)
        summary.skipped += duplicates + (len(rows) - len(inserted))

        to_embed = [
            _EmbedItem(email_id=row.id, chunks=p.chunks, metadata=self._metadata(p.message))
            for row, p in zip(rows, prepared)
            if row.id in inserted and not row.is_filtered
        ]
        if to_embed:
            machine.transition(SyncState.EMBEDDING)
            vectorized, failed = await self._embed_and_store(ctx, to_embed)
            summary.vectorized += vectorized
            summary.failed += failed

        machine.transition(SyncState.CURSOR_COMMIT)
        batch_max = max(m.sent_at for m in batch)
        summary.cursor = await self._db(self._repository.advance_cursor, user_id, batch_max)
        stats = filtering_stats(p.decision for p in prepared)
        logger.info(
            "sync_batch_committed",
            user_id=user_id,
            size=len(batch),
            inserted=len(inserted),
            duplicates=duplicates,
            filter_rate=round(stats.filter_rate, 1),
            filter_reasons=stats.reasons,
            cursor=summary.cursor.isoformat(),
        )
        machine.transition(SyncState.FETCHING)

    def _prepare(self, message: MailboxMessage, decision: Decision) -> _Prepared:
        if decision.is_filtered:
            return _Prepared(message=message, decision=decision)

        primary = message.body_text if normalize(message.body_text) else html_to_text(message.body_html)
        content = combine(primary, [a.text for a in message.attachments])

        check = validate_size(content, self._config.max_tokens)
        if not check.is_valid:
            return _Prepared(
                message=message,
                decision=Decision(
                    is_filtered=True,
                    filter_reason=FilterReason.PROCESSING_ERROR,
                    detail=f"content {check.reason}",
                ),
                content=content,
            )

        return _Prepared(
            message=message,
            decision=decision,
            content=content,
            chunks=chunk(content, self._config.max_chunk_size),
        )

    @staticmethod
    def _to_row(user_id: str, prepared: _Prepared) -> IndexedEmail:
        message = prepared.message
        decision = prepared.decision
        return IndexedEmail(
            id=email_row_id(user_id, message.external_id),
            user_id=user_id,
            external_id=message.external_id,
            thread_id=message.thread_id,
            sender=message.sender,
            recipients=message.recipients,
            subject=message.subject,
            sent_at=message.sent_at,
            folder_labels=message.folder_labels,
            content=prepared.content,
            is_filtered=decision.is_filtered,
            filter_reason=decision.filter_reason,
            filter_detail=decision.detail,
        )

    def _metadata(self, message: MailboxMessage) -> dict[str, Any]:
        return {
            "subject": message.subject,
            "sender": message.sender,
            "sent_at": message.sent_at.isoformat(),
            "vector_version": self._embedder.version_tag,
        }

    # ------------------------------------------------------------------
    # Pending backlog
    # ------------------------------------------------------------------

    async def _process_backlog(self, ctx: _RunContext) -> None:
        limit = self._config.pending_backlog_limit
        if limit <= 0:
            return

        pending = await self._db(
            self._vector_store.get_pending_vectorization,
            ctx.user_id,
            limit,
            sorted(ctx.attempted),
        )
        if not pending:
            return
        ctx.machine.transition(SyncState.EMBEDDING)

        items: list[_EmbedItem] = []
        for row in pending:
            if not normalize(row.content):
                await self._db(self._repository.mark_processing_error, row.id, "content empty")
                continue
            items.append(
                _EmbedItem(
                    email_id=row.id,
                    chunks=chunk(row.content, self._config.max_chunk_size),
                    metadata={
                        "subject": row.subject,
                        "sent_at": row.sent_at.isoformat(),
                        "vector_version": self._embedder.version_tag,
                    },
                )
            )

        if items:
            logger.info("pending_backlog_retry", user_id=ctx.user_id, count=len(items))
        vectorized, failed = await self._embed_and_store(ctx, items)
        ctx.summary.backlog_vectorized += vectorized
        ctx.summary.failed += failed

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    async def _embed_and_store(self, ctx: _RunContext, items: list[_EmbedItem]) -> tuple[int, int]:
        """Embed each item and persist the results. Returns ``(vectorized, failed)``."""
        records: list[EmbeddingRecord] = []
        failed = 0

        for item in items:
            ctx.attempted.add(item.email_id)
            try:
                vector = await self._embed_item(item)
            except EmailSearchError as exc:
                if exc.kind is ErrorKind.RUN_FATAL:
                    raise
                failed += 1
                logger.warning(
                    "embedding_failed",
                    user_id=ctx.user_id,
                    email_id=item.email_id,
                    error=str(exc),
                    error_kind=exc.kind.value,
                )
                if exc.kind is ErrorKind.PERMANENT_ITEM:
                    await self._db(
                        self._repository.mark_processing_error,
                        item.email_id,
                        f"embedding rejected: {exc}",
                    )
                else:
                    await self._db(
                        self._repository.record_embedding_failure, item.email_id, str(exc)
                    )
                continue
            records.append(
                EmbeddingRecord(
                    id=item.email_id,
                    embedding=vector,
                    chunks=item.chunks,
                    metadata=item.metadata,
                )
            )

        ctx.machine.transition(SyncState.PERSISTING)
        if not records:
            return 0, failed

        saved, rejected, exhausted = await self._store_records(records)
        if rejected and not saved:
            raise VectorStoreBatchError(list(rejected), [], next(iter(rejected.values())))
        store_failures = {**rejected, **exhausted}
        for email_id, error in store_failures.items():
            await self._db(self._repository.record_embedding_failure, email_id, error)
        if store_failures:
            logger.warning(
                "embedding_store_failures",
                user_id=ctx.user_id,
                saved=len(saved),
                failed=len(store_failures),
            )
        return len(saved), failed + len(store_failures)

    async def _store_records(
        self, records: list[EmbeddingRecord]
    ) -> tuple[list[str], dict[str, str], dict[str, str]]:
        """Upsert ``records``, retrying the items that failed transiently.

        Returns the saved ids, the ids the store rejected and the ids still
        failing transiently once retries ran out, each with its last error.
        """
        remaining = list(records)
        saved: list[str] = []
        rejected: dict[str, str] = {}

        async def call() -> None:
            nonlocal remaining
            try:
                saved.extend(
                    await asyncio.to_thread(self._vector_store.batch_save_embeddings, remaining)
                )
            except VectorStoreBatchError as exc:
                saved.extend(exc.saved_ids)
                retryable = set(exc.transient_ids)
                for email_id in exc.failed_ids:
                    if email_id not in retryable:
                        rejected[email_id] = str(exc)
                remaining = [r for r in remaining if r.id in retryable]
                if remaining:
                    raise VectorStoreTransientError(str(exc)) from exc
            remaining = []

        try:
            await call_with_retry(
                call,
                operation="save_embeddings",
                timeout=self._config.call_timeout,
                max_retries=self._config.max_retries,
                delay=self._config.retry_base_delay,
                timeout_error=VectorStoreTransientError,
                sleep=self._sleep,
            )
        except Exception as exc:
            if not is_transient(exc):
                raise
            return saved, rejected, {r.id: str(exc) for r in remaining}
        return saved, rejected, {}

    async def _embed_item(self, item: _EmbedItem) -> list[float]:
        texts = [c.content for c in item.chunks if c.content]
        if not texts:
            raise EmbeddingError("nothing to embed")

        # One rate-limit slot per provider request.
        size = self._config.embedding_batch_size if self._embedder.native_batching else 1
        vectors: list[list[float]] = []
        for start in range(0, len(texts), size):
            vectors.extend(await self._embed_texts(texts[start : start + size]))
        return mean_vector(vectors)

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        timeout = self._config.call_timeout

        async def call() -> list[list[float]]:
            await self._config.embedding_rate.wait(self._governor)
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self._embedder.embed_batch, texts), timeout=timeout
                )
            except asyncio.TimeoutError as exc:
                raise EmbeddingTransientError(f"embedding timed out after {timeout}s") from exc

        vectors = await call_with_retry(
            call,
            operation="embed_batch",
            max_retries=self._config.max_retries,
            delay=self._config.retry_base_delay,
            sleep=self._sleep,
        )
        if len(vectors) != len(texts):
            raise EmbeddingError(f"provider returned {len(vectors)} vectors for {len(texts)} texts")
        return vectors

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _db(self, func: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(func, *args)

    async def _in_pool(self, ctx: _RunContext, tasks: Sequence[Callable[[], T]]) -> list[T]:
        if not tasks:
            return []
        loop = asyncio.get_running_loop()
        return list(await asyncio.gather(*(loop.run_in_executor(ctx.pool, t) for t in tasks)))
