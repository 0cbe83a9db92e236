"""Unit tests for the sync orchestrator."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta

import pytest
from factories import BASE_TIME, FakeMailboxSource, ScriptedEmbedder, make_message

from email_search_agent.exceptions import (
    EmbeddingAuthError,
    EmbeddingError,
    EmbeddingTransientError,
    ErrorKind,
    MailboxAuthError,
    MailboxTransientError,
    SyncFatalError,
    SyncInProgressError,
    VectorStoreError,
    VectorStoreTransientError,
)
from email_search_agent.filtering import FilterEngine, FilterRule, RuleType
from email_search_agent.index import EmailRepository
from email_search_agent.models import (
    Attachment,
    FilterReason,
    RunStatus,
    SyncSummary,
    email_row_id,
)
from email_search_agent.ratelimit import RateGovernor
from email_search_agent.sync import SyncConfig, SyncOrchestrator
from email_search_agent.vector import SQLiteVectorStore

NOW = BASE_TIME + timedelta(days=1)
USER = "u1"


async def _no_sleep(seconds: float) -> None:
    return None


def _config(**overrides) -> SyncConfig:
    values = {
        "sync_batch_size": 10,
        "max_retries": 2,
        "retry_base_delay": 0.0,
        "call_timeout": 5.0,
        "worker_count": 2,
    }
    values.update(overrides)
    return SyncConfig(**values)


def _orchestrator(
    repository: EmailRepository,
    mailbox: FakeMailboxSource,
    embedder: ScriptedEmbedder | None = None,
    vector_store=None,
    config: SyncConfig | None = None,
    governor: RateGovernor | None = None,
) -> SyncOrchestrator:
    return SyncOrchestrator(
        repository=repository,
        mailbox=mailbox,
        embedder=embedder or ScriptedEmbedder(),
        vector_store=vector_store or SQLiteVectorStore(repository),
        filter_engine=FilterEngine(),
        governor=governor or RateGovernor(),
        config=config or _config(),
        clock=lambda: NOW,
        sleep=_no_sleep,
    )


def _row(repository: EmailRepository, external_id: str):
    return repository.get_by_external_id(USER, external_id)


class FailingVectorStore(SQLiteVectorStore):
    def __init__(self, repository: EmailRepository, fail_ids: set[str]) -> None:
        super().__init__(repository)
        self.fail_ids = fail_ids

    def save_embedding(self, email_id, embedding, chunks, metadata=None):
        if email_id in self.fail_ids:
            raise VectorStoreError(f"cannot store {email_id}")
        return super().save_embedding(email_id, embedding, chunks, metadata)


class FlakyVectorStore(SQLiteVectorStore):
    """Raises transient errors for chosen ids, ``failures[id]`` times each."""

    def __init__(self, repository: EmailRepository, failures: dict[str, int]) -> None:
        super().__init__(repository)
        self.failures = dict(failures)
        self.calls: dict[str, int] = {}

    def save_embedding(self, email_id, embedding, chunks, metadata=None):
        self.calls[email_id] = self.calls.get(email_id, 0) + 1
        if self.failures.get(email_id, 0) > 0:
            self.failures[email_id] -= 1
            raise VectorStoreTransientError(f"Qdrant upsert failed: timed out ({email_id})")
        return super().save_embedding(email_id, embedding, chunks, metadata)


class UnbatchedEmbedder(ScriptedEmbedder):
    native_batching = False

    def __init__(self) -> None:
        super().__init__()
        self.batch_sizes: list[int] = []

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_sizes.append(len(texts))
        return super().embed_batch(texts)


class StallingVectorStore(SQLiteVectorStore):
    """The first write stalls longer than the call timeout."""

    def __init__(self, repository: EmailRepository, stall: float) -> None:
        super().__init__(repository)
        self.stall = stall
        self.calls = 0

    def save_embedding(self, email_id, embedding, chunks, metadata=None):
        self.calls += 1
        if self.calls == 1:
            time.sleep(self.stall)
        return super().save_embedding(email_id, embedding, chunks, metadata)


class TestFirstSync:
    """A user's first sync."""

    @pytest.mark.asyncio
    async def test_indexes_kept_messages_and_records_filtered_ones(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = FakeMailboxSource(
            [
                make_message("m1", 0),
                make_message("m2", 5),
                make_message("promo", 7, headers={"List-Unsubscribe": "<mailto:u@shop.test>"}),
                make_message("m3", 10),
            ]
        )
        orchestrator = _orchestrator(repository, mailbox)

        summary = await orchestrator.sync(USER, credentials)

        assert summary.status is RunStatus.SUCCESS
        assert (summary.processed, summary.vectorized, summary.filtered) == (4, 3, 1)
        assert (summary.failed, summary.skipped) == (0, 0)
        assert summary.from_date == NOW - timedelta(days=30)
        assert summary.cursor == BASE_TIME + timedelta(minutes=10)
        assert mailbox.calls == [NOW - timedelta(days=30)]

        promo = _row(repository, "promo")
        assert promo.is_filtered is True
        assert promo.filter_reason is FilterReason.MARKETING
        assert promo.content == ""
        assert promo.vectorized_at is None

        kept = _row(repository, "m1")
        assert kept.is_searchable is True
        assert kept.content.startswith("EMAIL CONTENT:\n")
        assert kept.metadata["vector_version"] == "scripted"

        cursor = repository.get_cursor(USER)
        assert cursor.last_synced_at == summary.cursor
        assert cursor.last_run_status is RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_trigger_response(self, repository: EmailRepository, credentials) -> None:
        orchestrator = _orchestrator(repository, FakeMailboxSource([make_message("m1")]))

        summary = await orchestrator.sync(USER, credentials)

        assert summary.as_trigger_response() == {
            "emailsProcessed": 1,
            "fromDate": (NOW - timedelta(days=30)).isoformat(),
        }

    @pytest.mark.asyncio
    async def test_empty_mailbox(self, repository: EmailRepository, credentials) -> None:
        summary = await _orchestrator(repository, FakeMailboxSource()).sync(USER, credentials)

        assert summary.status is RunStatus.SUCCESS
        assert summary.processed == 0
        assert summary.cursor is None
        assert repository.get_cursor(USER).last_run_status is RunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_cursor_is_committed_per_batch(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = FakeMailboxSource([make_message(f"m{i}", i) for i in range(5)])
        orchestrator = _orchestrator(repository, mailbox, config=_config(sync_batch_size=2))

        summary = await orchestrator.sync(USER, credentials)

        assert summary.processed == 5
        assert summary.cursor == BASE_TIME + timedelta(minutes=4)


class TestIncrementalSync:
    """Re-runs, explicit start dates and deduplication."""

    @pytest.mark.asyncio
    async def test_second_run_starts_at_cursor_and_adds_nothing(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = FakeMailboxSource([make_message("m1", 0), make_message("m2", 5)])
        orchestrator = _orchestrator(repository, mailbox)
        first = await orchestrator.sync(USER, credentials)

        second = await orchestrator.sync(USER, credentials)

        assert mailbox.calls[1] == first.cursor
        assert second.processed == 0
        assert second.skipped == 1
        assert second.cursor == first.cursor
        assert repository.vectorization_stats(USER).total == 2

    @pytest.mark.asyncio
    async def test_new_mail_since_last_run(self, repository: EmailRepository, credentials) -> None:
        mailbox = FakeMailboxSource([make_message("m1", 0)])
        orchestrator = _orchestrator(repository, mailbox)
        await orchestrator.sync(USER, credentials)

        mailbox.messages.append(make_message("m2", 60))
        summary = await orchestrator.sync(USER, credentials)

        assert summary.processed == 1
        assert summary.vectorized == 1
        assert summary.cursor == BASE_TIME + timedelta(minutes=60)

    @pytest.mark.asyncio
    async def test_explicit_after_never_moves_cursor_back(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = FakeMailboxSource([make_message("m1", 0), make_message("m2", 30)])
        orchestrator = _orchestrator(repository, mailbox)
        first = await orchestrator.sync(USER, credentials)

        replay = await orchestrator.sync(USER, credentials, after=BASE_TIME - timedelta(hours=1))

        assert mailbox.calls[1] == BASE_TIME - timedelta(hours=1)
        assert replay.processed == 0
        assert replay.skipped == 2
        assert replay.cursor == first.cursor
        assert repository.get_cursor(USER).last_synced_at == first.cursor

    @pytest.mark.asyncio
    async def test_duplicate_within_stream_is_stored_once(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = FakeMailboxSource([make_message("m1", 0), make_message("m1", 0)])

        summary = await _orchestrator(repository, mailbox).sync(USER, credentials)

        assert summary.processed == 1
        assert summary.skipped == 1

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, repository: EmailRepository, credentials) -> None:
        mailbox = FakeMailboxSource([make_message("m1", 0)])
        orchestrator = _orchestrator(repository, mailbox)

        await orchestrator.sync("alice", credentials)
        summary = await orchestrator.sync("bob", credentials)

        assert summary.processed == 1
        assert repository.get_by_external_id("bob", "m1").id == email_row_id("bob", "m1")


class TestContentPreparation:
    """What gets stored and embedded for kept messages."""

    @pytest.mark.asyncio
    async def test_unparseable_message_is_recorded_as_processing_error(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = FakeMailboxSource(
            [
                make_message("m1", 0),
                make_message("broken", 0, body_text="", parse_error="no usable send time"),
            ]
        )

        summary = await _orchestrator(repository, mailbox).sync(USER, credentials)

        assert summary.status is RunStatus.SUCCESS
        assert (summary.processed, summary.vectorized, summary.filtered) == (2, 1, 1)
        broken = _row(repository, "broken")
        assert broken.filter_reason is FilterReason.PROCESSING_ERROR
        assert broken.filter_detail == "unparseable message: no usable send time"
        assert broken.vectorized_at is None
        assert repository.vectorization_stats(USER).pending == 0

    @pytest.mark.asyncio
    async def test_html_only_body_is_converted(
        self, repository: EmailRepository, credentials
    ) -> None:
        msg = make_message("m1", body_text="", body_html="<p>Quarterly <b>plan</b></p>")

        await _orchestrator(repository, FakeMailboxSource([msg])).sync(USER, credentials)

        assert _row(repository, "m1").content == "EMAIL CONTENT:\nQuarterly plan"

    @pytest.mark.asyncio
    async def test_attachment_text_is_appended(
        self, repository: EmailRepository, credentials
    ) -> None:
        msg = make_message(
            "m1",
            body_text="See attached.",
            attachments=[
                Attachment(filename="agenda.txt", mime_type="text/plain", text="Agenda items"),
                Attachment(filename="photo.png", mime_type="image/png"),
            ],
        )

        await _orchestrator(repository, FakeMailboxSource([msg])).sync(USER, credentials)

        assert _row(repository, "m1").content == (
            "EMAIL CONTENT:\nSee attached.\n\n---\n\nATTACHMENT 1:\nAgenda items"
        )

    @pytest.mark.asyncio
    async def test_empty_message_is_a_processing_error(
        self, repository: EmailRepository, credentials
    ) -> None:
        msg = make_message("m1", body_text="   ", body_html="")
        embedder = ScriptedEmbedder()

        summary = await _orchestrator(repository, FakeMailboxSource([msg]), embedder).sync(
            USER, credentials
        )

        row = _row(repository, "m1")
        assert row.filter_reason is FilterReason.PROCESSING_ERROR
        assert row.filter_detail == "content empty"
        assert summary.filtered == 1
        assert summary.vectorized == 0
        assert embedder.calls == 0

    @pytest.mark.asyncio
    async def test_oversized_content_is_a_processing_error(
        self, repository: EmailRepository, credentials
    ) -> None:
        msg = make_message("m1", body_text="word " * 100)
        orchestrator = _orchestrator(
            repository, FakeMailboxSource([msg]), config=_config(max_tokens=20)
        )

        await orchestrator.sync(USER, credentials)

        assert _row(repository, "m1").filter_detail == "content too long"

    @pytest.mark.asyncio
    async def test_long_content_is_chunked_and_embedded_in_groups(
        self, repository: EmailRepository, credentials
    ) -> None:
        body = " ".join(f"Point {i} of the plan is settled." for i in range(12))
        embedder = ScriptedEmbedder()
        orchestrator = _orchestrator(
            repository,
            FakeMailboxSource([make_message("m1", body_text=body)]),
            embedder,
            config=_config(max_chunk_size=80, embedding_batch_size=2),
        )

        summary = await orchestrator.sync(USER, credentials)

        row = _row(repository, "m1")
        assert summary.vectorized == 1
        assert len(row.text_chunks) > 2
        assert row.text_chunks[-1].is_complete is True
        assert embedder.calls == (len(row.text_chunks) + 1) // 2

    @pytest.mark.asyncio
    async def test_one_rate_slot_per_request_for_unbatched_providers(
        self, repository: EmailRepository, credentials
    ) -> None:
        body = " ".join(f"Point {i} of the plan is settled." for i in range(12))
        embedder = UnbatchedEmbedder()
        governor = RateGovernor()
        orchestrator = _orchestrator(
            repository,
            FakeMailboxSource([make_message("m1", body_text=body)]),
            embedder,
            config=_config(max_chunk_size=80, embedding_batch_size=4),
            governor=governor,
        )

        await orchestrator.sync(USER, credentials)

        chunks = len(_row(repository, "m1").text_chunks)
        assert embedder.batch_sizes == [1] * chunks
        taken = 500 - governor.try_acquire("embedding", 60_000, 500).remaining - 1
        assert taken == chunks

    @pytest.mark.asyncio
    async def test_user_blacklist_rule_is_applied(
        self, repository: EmailRepository, credentials
    ) -> None:
        repository.add_filter_rule(USER, FilterRule(rule_type=RuleType.BLACKLIST, domain="vendor.test"))
        mailbox = FakeMailboxSource(
            [make_message("m1", sender="sales@vendor.test"), make_message("m2", 1)]
        )

        summary = await _orchestrator(repository, mailbox).sync(USER, credentials)

        assert summary.filtered == 1
        assert _row(repository, "m1").filter_reason is FilterReason.MARKETING


class TestItemFailures:
    """Failures that affect single messages only."""

    @pytest.mark.asyncio
    async def test_rejected_input_is_marked_and_run_is_partial(
        self, repository: EmailRepository, credentials
    ) -> None:
        embedder = ScriptedEmbedder(failures={"poison": [EmbeddingError("input rejected")]})
        mailbox = FakeMailboxSource(
            [make_message("m1", 0), make_message("bad", 1, body_text="poison pill"), make_message("m2", 2)]
        )

        summary = await _orchestrator(repository, mailbox, embedder).sync(USER, credentials)

        assert summary.status is RunStatus.PARTIAL
        assert (summary.processed, summary.vectorized, summary.failed) == (3, 2, 1)
        bad = _row(repository, "bad")
        assert bad.is_filtered is True
        assert bad.filter_reason is FilterReason.PROCESSING_ERROR
        assert "input rejected" in bad.filter_detail
        assert summary.cursor == BASE_TIME + timedelta(minutes=2)
        assert repository.get_cursor(USER).last_run_status is RunStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_transient_embedding_error_is_retried(
        self, repository: EmailRepository, credentials
    ) -> None:
        embedder = ScriptedEmbedder(failures={"flaky": [EmbeddingTransientError("503")]})
        mailbox = FakeMailboxSource([make_message("m1", body_text="flaky network day")])

        summary = await _orchestrator(repository, mailbox, embedder).sync(USER, credentials)

        assert summary.status is RunStatus.SUCCESS
        assert summary.vectorized == 1
        assert embedder.calls == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_row_pending_for_next_run(
        self, repository: EmailRepository, credentials
    ) -> None:
        embedder = ScriptedEmbedder(
            failures={"flaky": [EmbeddingTransientError("503") for _ in range(3)]}
        )
        mailbox = FakeMailboxSource(
            [make_message("slow", 0, body_text="flaky network day"), make_message("m2", 5)]
        )
        orchestrator = _orchestrator(repository, mailbox, embedder)

        first = await orchestrator.sync(USER, credentials)

        assert first.status is RunStatus.PARTIAL
        assert (first.vectorized, first.failed) == (1, 1)
        slow = _row(repository, "slow")
        assert slow.vectorized_at is None
        assert slow.embedding_attempts == 1
        assert slow.last_error is not None

        second = await orchestrator.sync(USER, credentials)

        assert second.status is RunStatus.SUCCESS
        assert second.backlog_vectorized == 1
        assert _row(repository, "slow").is_searchable is True

    @pytest.mark.asyncio
    async def test_partially_failed_store_counts_failed_items(
        self, repository: EmailRepository, credentials
    ) -> None:
        store = FailingVectorStore(repository, {email_row_id(USER, "m2")})
        mailbox = FakeMailboxSource([make_message("m1", 0), make_message("m2", 1)])

        summary = await _orchestrator(repository, mailbox, vector_store=store).sync(
            USER, credentials
        )

        assert summary.status is RunStatus.PARTIAL
        assert (summary.vectorized, summary.failed) == (1, 1)
        assert _row(repository, "m2").embedding_attempts == 1
        assert summary.cursor == BASE_TIME + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_transient_store_error_is_retried(
        self, repository: EmailRepository, credentials
    ) -> None:
        store = FlakyVectorStore(repository, {email_row_id(USER, "m1"): 1})
        mailbox = FakeMailboxSource([make_message("m1", 0), make_message("m2", 1)])

        summary = await _orchestrator(repository, mailbox, vector_store=store).sync(
            USER, credentials
        )

        assert summary.status is RunStatus.SUCCESS
        assert (summary.vectorized, summary.failed) == (2, 0)
        assert store.calls[email_row_id(USER, "m1")] == 2
        assert store.calls[email_row_id(USER, "m2")] == 1
        assert _row(repository, "m1").is_searchable is True

    @pytest.mark.asyncio
    async def test_store_outage_leaves_rows_pending_instead_of_aborting(
        self, repository: EmailRepository, credentials
    ) -> None:
        email_id = email_row_id(USER, "m1")
        store = FlakyVectorStore(repository, {email_id: 10})
        mailbox = FakeMailboxSource([make_message("m1", 0)])
        orchestrator = _orchestrator(repository, mailbox, vector_store=store)

        first = await orchestrator.sync(USER, credentials)

        assert first.status is RunStatus.PARTIAL
        assert (first.vectorized, first.failed) == (0, 1)
        assert store.calls[email_id] == 3
        assert first.cursor == BASE_TIME
        row = _row(repository, "m1")
        assert row.vectorized_at is None
        assert row.embedding_attempts == 1
        assert "timed out" in row.last_error

        store.failures.clear()
        second = await orchestrator.sync(USER, credentials)

        assert second.status is RunStatus.SUCCESS
        assert second.backlog_vectorized == 1
        assert _row(repository, "m1").is_searchable is True

    @pytest.mark.asyncio
    async def test_stalled_store_write_times_out_and_is_retried(
        self, repository: EmailRepository, credentials
    ) -> None:
        store = StallingVectorStore(repository, stall=1.0)
        mailbox = FakeMailboxSource([make_message("m1", 0)])
        config = _config(call_timeout=0.2)

        summary = await _orchestrator(
            repository, mailbox, vector_store=store, config=config
        ).sync(USER, credentials)

        assert summary.status is RunStatus.SUCCESS
        assert summary.vectorized == 1
        assert store.calls == 2


class TestFatalFailures:
    """Failures that abort the run."""

    @pytest.mark.asyncio
    async def test_embedding_auth_error_aborts_without_moving_cursor(
        self, repository: EmailRepository, credentials
    ) -> None:
        embedder = ScriptedEmbedder(failures={"": [EmbeddingAuthError("401")]})
        mailbox = FakeMailboxSource([make_message("m1", 0)])

        with pytest.raises(SyncFatalError) as excinfo:
            await _orchestrator(repository, mailbox, embedder).sync(USER, credentials)

        assert excinfo.value.kind is ErrorKind.RUN_FATAL
        assert isinstance(excinfo.value.cause, EmbeddingAuthError)
        cursor = repository.get_cursor(USER)
        assert cursor.last_synced_at is None
        assert cursor.last_run_status is RunStatus.FAILED
        assert _row(repository, "m1").vectorized_at is None

    @pytest.mark.asyncio
    async def test_mailbox_auth_error_keeps_committed_batches(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = FakeMailboxSource(
            [make_message(f"m{i}", i) for i in range(4)],
            failures=[(3, MailboxAuthError("token revoked"))],
        )
        orchestrator = _orchestrator(repository, mailbox, config=_config(sync_batch_size=2))

        with pytest.raises(SyncFatalError):
            await orchestrator.sync(USER, credentials)

        assert repository.get_cursor(USER).last_synced_at == BASE_TIME + timedelta(minutes=1)
        assert repository.existing_external_ids(USER) == {"m0", "m1"}

    @pytest.mark.asyncio
    async def test_store_failing_every_item_is_fatal(
        self, repository: EmailRepository, credentials
    ) -> None:
        store = FailingVectorStore(repository, {email_row_id(USER, "m1")})
        mailbox = FakeMailboxSource([make_message("m1", 0)])

        with pytest.raises(SyncFatalError):
            await _orchestrator(repository, mailbox, vector_store=store).sync(USER, credentials)

        assert repository.get_cursor(USER).last_synced_at is None

    @pytest.mark.asyncio
    async def test_transient_mailbox_error_resumes_from_last_message(
        self, repository: EmailRepository, credentials
    ) -> None:
        messages = [make_message(f"m{i}", i) for i in range(4)]
        mailbox = FakeMailboxSource(messages, failures=[(2, MailboxTransientError("503"))])

        summary = await _orchestrator(repository, mailbox).sync(USER, credentials)

        assert summary.status is RunStatus.SUCCESS
        assert mailbox.calls[1] == messages[1].sent_at
        assert summary.processed == 4
        assert summary.skipped == 1

    @pytest.mark.asyncio
    async def test_persistent_mailbox_outage_is_fatal(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = FakeMailboxSource(
            [make_message("m1")],
            failures=[(0, MailboxTransientError("503")) for _ in range(3)],
        )

        with pytest.raises(SyncFatalError) as excinfo:
            await _orchestrator(repository, mailbox).sync(USER, credentials)

        assert excinfo.value.kind is ErrorKind.TRANSIENT
        assert len(mailbox.calls) == 3
        assert repository.get_cursor(USER).last_run_status is RunStatus.FAILED


class BlockingMailbox(FakeMailboxSource):
    def __init__(self, messages) -> None:
        super().__init__(messages)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_messages_since(self, credentials, after, folders):
        self.started.set()
        await self.release.wait()
        async for message in super().fetch_messages_since(credentials, after, folders):
            yield message


class TestConcurrency:
    """Single-flight runs and multi-user syncs."""

    @pytest.mark.asyncio
    async def test_second_run_for_same_user_is_rejected(
        self, repository: EmailRepository, credentials
    ) -> None:
        mailbox = BlockingMailbox([make_message("m1")])
        orchestrator = _orchestrator(repository, mailbox)

        task = asyncio.create_task(orchestrator.sync(USER, credentials))
        await mailbox.started.wait()

        assert orchestrator.is_running(USER)
        with pytest.raises(SyncInProgressError):
            await orchestrator.sync(USER, credentials)

        mailbox.release.set()
        summary = await task

        assert summary.processed == 1
        assert orchestrator.is_running(USER) is False

    @pytest.mark.asyncio
    async def test_sync_many_isolates_failures(
        self, repository: EmailRepository, credentials
    ) -> None:
        class PerUserMailbox(FakeMailboxSource):
            async def fetch_messages_since(self, creds, after, folders):
                if creds.access_token == "revoked":
                    raise MailboxAuthError("revoked")
                async for message in super().fetch_messages_since(creds, after, folders):
                    yield message

        orchestrator = _orchestrator(repository, PerUserMailbox([make_message("m1")]))
        revoked = credentials.model_copy(update={"access_token": "revoked"})

        results = await orchestrator.sync_many([("good", credentials), ("bad", revoked)])

        assert isinstance(results["good"], SyncSummary)
        assert results["good"].processed == 1
        assert isinstance(results["bad"], SyncFatalError)
