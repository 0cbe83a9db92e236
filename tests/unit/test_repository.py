"""Unit tests for the SQLite email repository."""

from __future__ import annotations

from datetime import timedelta

import pytest
from factories import BASE_TIME

from email_search_agent.exceptions import PersistenceError
from email_search_agent.filtering import FilterRule, RuleType
from email_search_agent.index import EmailRepository
from email_search_agent.models import (
    FilterReason,
    IndexedEmail,
    RunStatus,
    TextChunk,
    email_row_id,
)


def _row(external_id: str, minutes: int = 0, user_id: str = "u1", **kwargs) -> IndexedEmail:
    return IndexedEmail(
        id=email_row_id(user_id, external_id),
        user_id=user_id,
        external_id=external_id,
        thread_id=f"t-{external_id}",
        sender="alice@example.org",
        recipients=["me@example.com"],
        subject=f"Subject {external_id}",
        sent_at=BASE_TIME + timedelta(minutes=minutes),
        folder_labels=["INBOX"],
        content=f"EMAIL CONTENT:\nBody of {external_id}",
        **kwargs,
    )


class TestEmails:
    """Test suite for indexed email rows."""

    def test_initialize_is_idempotent(self, repository: EmailRepository) -> None:
        repository.initialize()
        assert repository.existing_external_ids("u1") == set()

    def test_insert_and_read_back(self, repository: EmailRepository) -> None:
        row = _row("m1")
        assert repository.insert_emails([row]) == [row.id]

        stored = repository.get_email(row.id)
        assert stored is not None
        assert stored.external_id == "m1"
        assert stored.sent_at == row.sent_at
        assert stored.recipients == ["me@example.com"]
        assert stored.vectorized_at is None
        assert stored.is_searchable is False
        assert repository.get_by_external_id("u1", "m1").id == row.id

    def test_insert_skips_existing_external_ids(self, repository: EmailRepository) -> None:
        repository.insert_emails([_row("m1")])

        inserted = repository.insert_emails([_row("m1"), _row("m2")])

        assert inserted == [email_row_id("u1", "m2")]
        assert repository.existing_external_ids("u1") == {"m1", "m2"}

    def test_same_external_id_for_different_users(self, repository: EmailRepository) -> None:
        inserted = repository.insert_emails([_row("m1", user_id="u1"), _row("m1", user_id="u2")])

        assert len(inserted) == 2
        assert repository.existing_external_ids("u2") == {"m1"}

    def test_get_emails_ignores_unknown_ids(self, repository: EmailRepository) -> None:
        row = _row("m1")
        repository.insert_emails([row])

        assert list(repository.get_emails([row.id, "missing"])) == [row.id]
        assert repository.get_emails([]) == {}

    def test_save_embedding_marks_row_searchable(self, repository: EmailRepository) -> None:
        row = _row("m1")
        repository.insert_emails([row])
        chunks = [TextChunk(index=0, content="Body of m1", is_complete=True)]

        vectorized_at = repository.save_embedding(row.id, [0.6, 0.8], chunks, {"subject": "S"})

        stored = repository.get_email(row.id)
        assert vectorized_at is not None
        assert stored.vectorized_at == vectorized_at
        assert stored.embedding == [0.6, 0.8]
        assert stored.text_chunks == chunks
        assert stored.metadata == {"subject": "S"}
        assert stored.embedding_attempts == 1
        assert stored.is_searchable is True
        assert [e.id for e in repository.iter_vectorized("u1")] == [row.id]

    def test_save_embedding_for_unknown_row(self, repository: EmailRepository) -> None:
        assert repository.save_embedding("missing", [1.0], []) is None

    def test_clear_embedding_makes_row_pending_again(self, repository: EmailRepository) -> None:
        row = _row("m1")
        repository.insert_emails([row])
        repository.save_embedding(row.id, [1.0, 0.0], [])

        assert repository.clear_embedding(row.id) is True

        stored = repository.get_email(row.id)
        assert stored.vectorized_at is None
        assert stored.embedding is None
        assert [p.id for p in repository.pending_vectorization("u1")] == [row.id]

    def test_record_embedding_failure_keeps_row_pending(self, repository: EmailRepository) -> None:
        row = _row("m1")
        repository.insert_emails([row])

        repository.record_embedding_failure(row.id, "timeout")
        repository.record_embedding_failure(row.id, "timeout again")

        pending = repository.pending_vectorization("u1")
        assert [p.id for p in pending] == [row.id]
        assert pending[0].embedding_attempts == 2
        assert repository.get_email(row.id).last_error == "timeout again"

    def test_mark_processing_error_excludes_row(self, repository: EmailRepository) -> None:
        row = _row("m1")
        repository.insert_emails([row])

        repository.mark_processing_error(row.id, "embedding rejected")

        stored = repository.get_email(row.id)
        assert stored.is_filtered is True
        assert stored.filter_reason is FilterReason.PROCESSING_ERROR
        assert stored.filter_detail == "embedding rejected"
        assert repository.pending_vectorization("u1") == []

    def test_pending_is_oldest_first_and_honours_exclusions(
        self, repository: EmailRepository
    ) -> None:
        repository.insert_emails(
            [
                _row("late", minutes=30),
                _row("early", minutes=0),
                _row("middle", minutes=10),
                _row("noise", minutes=5, is_filtered=True, filter_reason=FilterReason.MARKETING),
            ]
        )

        pending = repository.pending_vectorization("u1")
        assert [p.external_id for p in pending] == ["early", "middle", "late"]

        limited = repository.pending_vectorization(
            "u1", limit=1, exclude_ids=[email_row_id("u1", "early")]
        )
        assert [p.external_id for p in limited] == ["middle"]

    def test_stats_and_filter_reasons(self, repository: EmailRepository) -> None:
        rows = [
            _row("a"),
            _row("b"),
            _row("c", is_filtered=True, filter_reason=FilterReason.AUTOMATED),
        ]
        repository.insert_emails(rows)
        repository.save_embedding(rows[0].id, [1.0], [])

        stats = repository.vectorization_stats("u1")
        assert (stats.total, stats.vectorized, stats.pending) == (2, 1, 1)
        assert repository.filter_reason_counts("u1") == {"none": 2, "automated": 1}

    def test_mark_deleted_hides_row(self, repository: EmailRepository) -> None:
        row = _row("m1")
        repository.insert_emails([row])
        repository.save_embedding(row.id, [1.0], [])

        assert repository.mark_deleted(row.id) is True
        assert repository.mark_deleted(row.id) is False

        assert list(repository.iter_vectorized("u1")) == []
        assert repository.vectorization_stats("u1").total == 0
        assert repository.existing_external_ids("u1") == {"m1"}


class TestCursors:
    """Test suite for sync cursors."""

    def test_missing_cursor(self, repository: EmailRepository) -> None:
        cursor = repository.get_cursor("u1")
        assert cursor.last_synced_at is None
        assert cursor.last_run_status is None

    def test_cursor_only_moves_forward(self, repository: EmailRepository) -> None:
        later = BASE_TIME + timedelta(hours=1)

        assert repository.advance_cursor("u1", later) == later
        assert repository.advance_cursor("u1", BASE_TIME) == later
        assert repository.get_cursor("u1").last_synced_at == later

    def test_run_status_does_not_touch_cursor(self, repository: EmailRepository) -> None:
        repository.advance_cursor("u1", BASE_TIME)
        repository.record_run_status("u1", RunStatus.FAILED)

        cursor = repository.get_cursor("u1")
        assert cursor.last_synced_at == BASE_TIME
        assert cursor.last_run_status is RunStatus.FAILED

    def test_run_status_without_cursor(self, repository: EmailRepository) -> None:
        repository.record_run_status("u2", RunStatus.SUCCESS)

        cursor = repository.get_cursor("u2")
        assert cursor.last_synced_at is None
        assert cursor.last_run_status is RunStatus.SUCCESS


class TestFilterRules:
    """Test suite for per-user filter rules."""

    def test_add_and_list(self, repository: EmailRepository) -> None:
        block = FilterRule(rule_type=RuleType.BLACKLIST, domain="shop.example")
        allow = FilterRule(rule_type=RuleType.WHITELIST, domain="*.family.example")

        assert repository.add_filter_rule("u1", block) is True
        assert repository.add_filter_rule("u1", allow) is True
        assert repository.add_filter_rule("u1", block) is False

        assert repository.list_filter_rules("u1") == [block, allow]
        assert repository.list_filter_rules("u2") == []


def test_database_errors_are_wrapped(tmp_path) -> None:
    repo = EmailRepository(tmp_path / "not-initialized.sqlite3")

    with pytest.raises(PersistenceError):
        repo.existing_external_ids("u1")
