"""SQLite-backed store for indexed emails, sync cursors and filter rules.

Every message the pipeline has seen for a user is kept here, filtered or
not, so deduplication survives restarts. Embedding state (``vectorized_at``,
chunks and, for the SQLite vector backend, the vector itself) lives on the
same row; ``vectorized_at`` alone decides whether a row is searchable.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from email_search_agent.exceptions import PersistenceError
from email_search_agent.filtering.rules import FilterRule, RuleType
from email_search_agent.models import (
    FilterReason,
    IndexedEmail,
    PendingItem,
    RunStatus,
    SyncCursor,
    TextChunk,
    VectorStats,
)

logger = structlog.get_logger()


_SCHEMA_VERSION = 1

_EMAIL_COLUMNS = """
    id,
    user_id,
    external_id,
    thread_id,
    sender,
    recipients_json,
    subject,
    sent_at_iso,
    folder_labels_json,
    content,
    is_filtered,
    filter_reason,
    filter_detail,
    text_chunks_json,
    embedding_json,
    metadata_json,
    vectorized_at_iso,
    embedding_attempts,
    last_error,
    deleted_at_iso
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class EmailRepository:
    """Repository for indexed emails and per-user sync bookkeeping."""

    def __init__(self, db_path: Path) -> None:
        """Create a repository.

        Args:
            db_path: Path to the SQLite database file.
        """

        self._db_path = Path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        """Create or upgrade the schema."""

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                conn.commit()
                logger.info("email_repository_schema_created", version=_SCHEMA_VERSION)
                return

            if current_version != _SCHEMA_VERSION:
                raise PersistenceError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------

    def existing_external_ids(self, user_id: str) -> set[str]:
        """All external ids already stored for ``user_id``, deleted rows included."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT external_id FROM indexed_emails WHERE user_id = ?;",
                (user_id,),
            ).fetchall()
        return {row[0] for row in rows}

    def insert_emails(self, emails: list[IndexedEmail]) -> list[str]:
        """Insert new rows, skipping any ``(user_id, external_id)`` already present.

        Returns:
            Ids of the rows actually inserted.
        """

        if not emails:
            return []

        now_iso = _utcnow().isoformat()
        inserted: list[str] = []

        with self._connect() as conn:
            for email in emails:
                cur = conn.execute(
                    """
                    INSERT INTO indexed_emails (
                        id,
                        user_id,
                        external_id,
                        thread_id,
                        sender,
                        recipients_json,
                        subject,
                        sent_at_iso,
                        sent_at_ms,
                        folder_labels_json,
                        content,
                        is_filtered,
                        filter_reason,
                        filter_detail,
                        text_chunks_json,
                        embedding_attempts,
                        last_error,
                        created_at_iso,
                        updated_at_iso
                    )
                    VALUES (
                        :id,
                        :user_id,
                        :external_id,
                        :thread_id,
                        :sender,
                        :recipients_json,
                        :subject,
                        :sent_at_iso,
                        :sent_at_ms,
                        :folder_labels_json,
                        :content,
                        :is_filtered,
                        :filter_reason,
                        :filter_detail,
                        :text_chunks_json,
                        :embedding_attempts,
                        :last_error,
                        :now_iso,
                        :now_iso
                    )
                    ON CONFLICT(user_id, external_id) DO NOTHING
                    """,
                    {
                        "id": email.id,
                        "user_id": email.user_id,
                        "external_id": email.external_id,
                        "thread_id": email.thread_id,
                        "sender": email.sender,
                        "recipients_json": json.dumps(email.recipients),
                        "subject": email.subject,
                        "sent_at_iso": email.sent_at.isoformat(),
                        "sent_at_ms": _to_ms(email.sent_at),
                        "folder_labels_json": json.dumps(email.folder_labels),
                        "content": email.content,
                        "is_filtered": 1 if email.is_filtered else 0,
                        "filter_reason": email.filter_reason.value,
                        "filter_detail": email.filter_detail,
                        "text_chunks_json": _chunks_to_json(email.text_chunks),
                        "embedding_attempts": email.embedding_attempts,
                        "last_error": email.last_error,
                        "now_iso": now_iso,
                    },
                )
                if cur.rowcount == 1:
                    inserted.append(email.id)
            conn.commit()

        logger.debug("emails_inserted", requested=len(emails), inserted=len(inserted))
        return inserted

    def get_email(self, email_id: str) -> IndexedEmail | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_EMAIL_COLUMNS} FROM indexed_emails WHERE id = ?;",
                (email_id,),
            ).fetchone()
        return self._row_to_email(row) if row else None

    def get_emails(self, email_ids: Iterable[str]) -> dict[str, IndexedEmail]:
        """Fetch several rows by id; unknown ids are absent from the result."""

        ids = list(dict.fromkeys(email_ids))
        if not ids:
            return {}

        placeholders = ",".join("?" for _ in ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_EMAIL_COLUMNS} FROM indexed_emails WHERE id IN ({placeholders});",
                ids,
            ).fetchall()
        return {row["id"]: self._row_to_email(row) for row in rows}

    def get_by_external_id(self, user_id: str, external_id: str) -> IndexedEmail | None:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_EMAIL_COLUMNS} FROM indexed_emails
                WHERE user_id = ? AND external_id = ?;
                """,
                (user_id, external_id),
            ).fetchone()
        return self._row_to_email(row) if row else None

    def mark_processing_error(self, email_id: str, detail: str) -> None:
        """Exclude a row from embedding after an unrecoverable per-item failure."""

        with self._connect() as conn:
            conn.execute(
                """
                UPDATE indexed_emails
                SET is_filtered = 1,
                    filter_reason = ?,
                    filter_detail = ?,
                    last_error = ?,
                    updated_at_iso = ?
                WHERE id = ?;
                """,
                (
                    FilterReason.PROCESSING_ERROR.value,
                    detail,
                    detail,
                    _utcnow().isoformat(),
                    email_id,
                ),
            )
            conn.commit()

    def record_embedding_failure(self, email_id: str, error: str) -> None:
        """Count a failed embedding attempt; the row stays pending."""

        with self._connect() as conn:
            conn.execute(
                """
                UPDATE indexed_emails
                SET embedding_attempts = embedding_attempts + 1,
                    last_error = ?,
                    updated_at_iso = ?
                WHERE id = ?;
                """,
                (error, _utcnow().isoformat(), email_id),
            )
            conn.commit()

    def save_embedding(
        self,
        email_id: str,
        embedding: list[float] | None,
        chunks: list[TextChunk],
        metadata: dict[str, Any] | None = None,
    ) -> datetime | None:
        """Store embedding state and stamp ``vectorized_at``.

        ``embedding`` may be ``None`` when the vector lives in an external
        index; the row is still marked vectorized.

        Returns:
            The ``vectorized_at`` timestamp, or ``None`` if no such row exists.
        """

        now = _utcnow()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE indexed_emails
                SET embedding_json = ?,
                    text_chunks_json = ?,
                    metadata_json = ?,
                    vectorized_at_iso = ?,
                    embedding_attempts = embedding_attempts + 1,
                    last_error = NULL,
                    updated_at_iso = ?
                WHERE id = ?;
                """,
                (
                    json.dumps(embedding) if embedding is not None else None,
                    _chunks_to_json(chunks),
                    json.dumps(metadata or {}, default=str),
                    now.isoformat(),
                    now.isoformat(),
                    email_id,
                ),
            )
            conn.commit()
        return now if cur.rowcount == 1 else None

    def clear_embedding(self, email_id: str) -> bool:
        """Drop embedding state so the row becomes pending again."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE indexed_emails
                SET embedding_json = NULL,
                    metadata_json = NULL,
                    text_chunks_json = '[]',
                    vectorized_at_iso = NULL,
                    updated_at_iso = ?
                WHERE id = ?;
                """,
                (_utcnow().isoformat(), email_id),
            )
            conn.commit()
        return cur.rowcount == 1

    def iter_vectorized(self, user_id: str) -> Iterator[IndexedEmail]:
        """Yield searchable rows for ``user_id``."""

        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_EMAIL_COLUMNS} FROM indexed_emails
                WHERE user_id = ?
                  AND vectorized_at_iso IS NOT NULL
                  AND is_filtered = 0
                  AND deleted_at_iso IS NULL
                ORDER BY sent_at_ms DESC;
                """,
                (user_id,),
            ).fetchall()
        for row in rows:
            yield self._row_to_email(row)

    def pending_vectorization(
        self,
        user_id: str,
        limit: int = 100,
        exclude_ids: Iterable[str] = (),
    ) -> list[PendingItem]:
        """Rows awaiting an embedding, oldest first."""

        excluded = list(exclude_ids)
        query = """
            SELECT id, external_id, subject, content, sent_at_iso, embedding_attempts
            FROM indexed_emails
            WHERE user_id = ?
              AND vectorized_at_iso IS NULL
              AND is_filtered = 0
              AND deleted_at_iso IS NULL
        """
        params: list[Any] = [user_id]
        if excluded:
            query += f" AND id NOT IN ({','.join('?' for _ in excluded)})"
            params.extend(excluded)
        query += " ORDER BY sent_at_ms ASC, rowid ASC LIMIT ?;"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            PendingItem(
                id=row["id"],
                external_id=row["external_id"],
                subject=row["subject"] or "",
                content=row["content"] or "",
                sent_at=datetime.fromisoformat(row["sent_at_iso"]),
                embedding_attempts=int(row["embedding_attempts"] or 0),
            )
            for row in rows
        ]

    def vectorization_stats(self, user_id: str) -> VectorStats:
        """Counts over unfiltered, non-deleted rows."""

        with self._connect() as conn:
            total, vectorized = conn.execute(
                """
                SELECT COUNT(*), COUNT(vectorized_at_iso)
                FROM indexed_emails
                WHERE user_id = ? AND is_filtered = 0 AND deleted_at_iso IS NULL;
                """,
                (user_id,),
            ).fetchone()

        total = int(total or 0)
        vectorized = int(vectorized or 0)
        return VectorStats(total=total, vectorized=vectorized, pending=total - vectorized)

    def filter_reason_counts(self, user_id: str) -> dict[str, int]:
        """Row counts per ``filter_reason`` for ``user_id``."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT filter_reason, COUNT(*)
                FROM indexed_emails
                WHERE user_id = ? AND deleted_at_iso IS NULL
                GROUP BY filter_reason;
                """,
                (user_id,),
            ).fetchall()
        return {row[0]: int(row[1]) for row in rows}

    def mark_deleted(self, email_id: str) -> bool:
        """Soft-delete a row. Only administrative tooling calls this."""

        now_iso = _utcnow().isoformat()
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE indexed_emails
                SET deleted_at_iso = ?, updated_at_iso = ?
                WHERE id = ? AND deleted_at_iso IS NULL;
                """,
                (now_iso, now_iso, email_id),
            )
            conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Sync cursors
    # ------------------------------------------------------------------

    def get_cursor(self, user_id: str) -> SyncCursor:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT last_synced_at_iso, last_run_status, updated_at_iso
                FROM sync_cursors WHERE user_id = ?;
                """,
                (user_id,),
            ).fetchone()

        if row is None:
            return SyncCursor(user_id=user_id)

        return SyncCursor(
            user_id=user_id,
            last_synced_at=_parse_dt(row["last_synced_at_iso"]),
            last_run_status=RunStatus(row["last_run_status"]) if row["last_run_status"] else None,
            updated_at=_parse_dt(row["updated_at_iso"]),
        )

    def advance_cursor(self, user_id: str, synced_at: datetime) -> datetime:
        """Move ``last_synced_at`` forward to ``synced_at``; never backwards.

        Returns:
            The stored ``last_synced_at`` after the update.
        """

        if synced_at.tzinfo is None:
            synced_at = synced_at.replace(tzinfo=timezone.utc)

        with self._connect() as conn:
            row = conn.execute(
                "SELECT last_synced_at_iso FROM sync_cursors WHERE user_id = ?;",
                (user_id,),
            ).fetchone()
            current = _parse_dt(row["last_synced_at_iso"]) if row else None
            new_value = synced_at if current is None else max(current, synced_at)

            conn.execute(
                """
                INSERT INTO sync_cursors (user_id, last_synced_at_iso, updated_at_iso)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_synced_at_iso = excluded.last_synced_at_iso,
                    updated_at_iso = excluded.updated_at_iso;
                """,
                (user_id, new_value.isoformat(), _utcnow().isoformat()),
            )
            conn.commit()
        return new_value

    def record_run_status(self, user_id: str, status: RunStatus) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_cursors (user_id, last_run_status, updated_at_iso)
                VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    last_run_status = excluded.last_run_status,
                    updated_at_iso = excluded.updated_at_iso;
                """,
                (user_id, status.value, _utcnow().isoformat()),
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Filter rules
    # ------------------------------------------------------------------

    def list_filter_rules(self, user_id: str) -> list[FilterRule]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT rule_type, domain FROM filter_rules
                WHERE user_id = ?
                ORDER BY rowid;
                """,
                (user_id,),
            ).fetchall()
        return [FilterRule(rule_type=RuleType(row[0]), domain=row[1]) for row in rows]

    def add_filter_rule(self, user_id: str, rule: FilterRule) -> bool:
        """Persist a per-user domain rule. Returns False if it already existed."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO filter_rules (user_id, rule_type, domain, created_at_iso)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, rule_type, domain) DO NOTHING;
                """,
                (user_id, rule.rule_type.value, rule.domain, _utcnow().isoformat()),
            )
            conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=30)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self._db_path}: {e}") from e
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.Error as e:
            logger.error("persistence_error", db_path=str(self._db_path), error=str(e))
            raise PersistenceError(str(e)) from e
        finally:
            conn.close()

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS indexed_emails (
                rowid INTEGER PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                external_id TEXT NOT NULL,
                thread_id TEXT,
                sender TEXT NOT NULL,
                recipients_json TEXT NOT NULL,
                subject TEXT NOT NULL,
                sent_at_iso TEXT NOT NULL,
                sent_at_ms INTEGER NOT NULL,
                folder_labels_json TEXT NOT NULL,
                content TEXT NOT NULL,
                is_filtered INTEGER NOT NULL,
                filter_reason TEXT NOT NULL,
                filter_detail TEXT,
                text_chunks_json TEXT NOT NULL DEFAULT '[]',
                embedding_json TEXT,
                metadata_json TEXT,
                vectorized_at_iso TEXT,
                embedding_attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                deleted_at_iso TEXT,
                created_at_iso TEXT NOT NULL,
                updated_at_iso TEXT NOT NULL,
                UNIQUE(user_id, external_id)
            );

            CREATE INDEX IF NOT EXISTS idx_indexed_emails_user_sent
                ON indexed_emails(user_id, sent_at_ms);

            CREATE INDEX IF NOT EXISTS idx_indexed_emails_user_vectorized
                ON indexed_emails(user_id, vectorized_at_iso);

            CREATE TABLE IF NOT EXISTS sync_cursors (
                user_id TEXT PRIMARY KEY,
                last_synced_at_iso TEXT,
                last_run_status TEXT,
                updated_at_iso TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS filter_rules (
                rowid INTEGER PRIMARY KEY,
                user_id TEXT NOT NULL,
                rule_type TEXT NOT NULL CHECK (rule_type IN ('blacklist', 'whitelist')),
                domain TEXT NOT NULL,
                created_at_iso TEXT NOT NULL,
                UNIQUE(user_id, rule_type, domain)
            );
            """
        )

    def _row_to_email(self, row: sqlite3.Row) -> IndexedEmail:
        embedding = json.loads(row["embedding_json"]) if row["embedding_json"] else None

        return IndexedEmail(
            id=row["id"],
            user_id=row["user_id"],
            external_id=row["external_id"],
            thread_id=row["thread_id"],
            sender=row["sender"] or "",
            recipients=json.loads(row["recipients_json"]),
            subject=row["subject"] or "",
            sent_at=datetime.fromisoformat(row["sent_at_iso"]),
            folder_labels=json.loads(row["folder_labels_json"]),
            content=row["content"] or "",
            is_filtered=bool(row["is_filtered"]),
            filter_reason=FilterReason(row["filter_reason"]),
            filter_detail=row["filter_detail"],
            text_chunks=_chunks_from_json(row["text_chunks_json"]),
            embedding=embedding,
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            vectorized_at=_parse_dt(row["vectorized_at_iso"]),
            embedding_attempts=int(row["embedding_attempts"] or 0),
            last_error=row["last_error"],
            deleted_at=_parse_dt(row["deleted_at_iso"]),
        )


def _chunks_to_json(chunks: list[TextChunk]) -> str:
    return json.dumps([c.model_dump() for c in chunks])


def _chunks_from_json(raw: str | None) -> list[TextChunk]:
    if not raw:
        return []
    return [TextChunk(**item) for item in json.loads(raw)]
