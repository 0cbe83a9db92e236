"""Command-line interface for Email Search Agent.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import structlog

from email_search_agent import __version__
from email_search_agent.config import Settings, get_settings
from email_search_agent.embeddings import EmbeddingProvider, create_embedding_provider
from email_search_agent.exceptions import EmailSearchError
from email_search_agent.filtering import FilterEngine, FilterRule, RuleType
from email_search_agent.gmail.client import GmailMailboxSource, load_local_credentials
from email_search_agent.index import EmailRepository
from email_search_agent.logging_setup import configure_logging
from email_search_agent.mailbox import MailboxSource
from email_search_agent.models import FilterReason
from email_search_agent.ratelimit import RateGovernor
from email_search_agent.search import SemanticSearch
from email_search_agent.sync import SyncConfig, SyncOrchestrator
from email_search_agent.vector import VectorStore, create_vector_store

logger = structlog.get_logger()

DEFAULT_USER = "me"


def _parse_datetime(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date/time: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="email-search", description="Email Search Agent")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--user", default=DEFAULT_USER, help="User id owning the mailbox")
    common.add_argument(
        "--db",
        type=Path,
        default=None,
        help="Path to the SQLite database (default: settings db_path)",
    )

    sync_parser = subparsers.add_parser(
        "sync", parents=[common], help="Fetch new mail, filter it and embed what is kept"
    )
    sync_parser.add_argument(
        "--after",
        type=_parse_datetime,
        default=None,
        help="Sync from this ISO date/time instead of the stored cursor",
    )

    search_parser = subparsers.add_parser(
        "search", parents=[common], help="Semantic search over indexed mail"
    )
    search_parser.add_argument("question", help="Free-text question")
    search_parser.add_argument("--limit", type=int, default=None, help="Max results")
    search_parser.add_argument(
        "--threshold", type=float, default=None, help="Minimum cosine similarity"
    )

    subparsers.add_parser("stats", parents=[common], help="Show index and vectorization stats")

    pending_parser = subparsers.add_parser(
        "pending", parents=[common], help="List rows still waiting for an embedding"
    )
    pending_parser.add_argument("--limit", type=int, default=25, help="Max rows")

    rules_parser = subparsers.add_parser("rules", help="Manage per-user filter rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command", required=True)
    add_parser = rules_sub.add_parser("add", parents=[common], help="Add a domain rule")
    add_parser.add_argument("rule_type", choices=[t.value for t in RuleType])
    add_parser.add_argument("domain", help="Domain or wildcard pattern, e.g. *.example.com")
    rules_sub.add_parser("list", parents=[common], help="List domain rules")

    return parser


def _open_repository(settings: Settings, db_path: Path | None) -> EmailRepository:
    repository = EmailRepository(db_path or settings.db_path)
    repository.initialize()
    return repository


def _open_vector_store(
    settings: Settings,
    repository: EmailRepository,
    embedder: EmbeddingProvider,
) -> VectorStore:
    return create_vector_store(settings, repository, embedder.dimension, embedder.version_tag)


def build_orchestrator(
    settings: Settings,
    repository: EmailRepository,
    mailbox: MailboxSource | None = None,
) -> SyncOrchestrator:
    """Wire a sync orchestrator from settings."""
    governor = RateGovernor()
    embedder = create_embedding_provider(settings)
    return SyncOrchestrator(
        repository=repository,
        mailbox=mailbox or GmailMailboxSource.from_settings(settings, governor),
        embedder=embedder,
        vector_store=_open_vector_store(settings, repository, embedder),
        filter_engine=FilterEngine.from_settings(settings),
        governor=governor,
        config=SyncConfig.from_settings(settings),
    )


async def _cmd_sync(args: argparse.Namespace, settings: Settings) -> int:
    repository = _open_repository(settings, args.db)
    orchestrator = build_orchestrator(settings, repository)
    credentials = await asyncio.to_thread(load_local_credentials, settings)

    summary = await orchestrator.sync(args.user, credentials, after=args.after)

    print(json.dumps(summary.as_trigger_response()))
    print(
        f"Status: {summary.status.value} | processed {summary.processed}, "
        f"vectorized {summary.vectorized}, filtered {summary.filtered}, "
        f"failed {summary.failed}, skipped {summary.skipped}, "
        f"backlog {summary.backlog_vectorized}"
    )
    if summary.cursor:
        print(f"Cursor: {summary.cursor.isoformat()}")
    return 0


async def _cmd_search(args: argparse.Namespace, settings: Settings) -> int:
    repository = _open_repository(settings, args.db)
    embedder = create_embedding_provider(settings)
    searcher = SemanticSearch.from_settings(
        settings, embedder, _open_vector_store(settings, repository, embedder)
    )

    results = await searcher.search(args.user, args.question, args.limit, args.threshold)
    if not results:
        print("No matching emails.")
        return 0

    for r in results:
        subject = r.metadata.get("subject") or "(no subject)"
        sender = r.metadata.get("sender") or "(unknown sender)"
        date_part = r.sent_at.date().isoformat() if r.sent_at else "(no date)"
        print(f"{r.similarity:.3f}\t{date_part}\t{sender}\t{subject}")
    return 0


def _cmd_stats(args: argparse.Namespace, settings: Settings) -> int:
    repository = _open_repository(settings, args.db)
    stats = repository.vectorization_stats(args.user)
    cursor = repository.get_cursor(args.user)

    print(f"Indexed emails: {stats.total}")
    print(f"Vectorized: {stats.vectorized}")
    print(f"Pending: {stats.pending}")
    if cursor.last_synced_at:
        print(f"Synced up to: {cursor.last_synced_at.isoformat()}")
    if cursor.last_run_status:
        print(f"Last run: {cursor.last_run_status.value}")

    reasons = repository.filter_reason_counts(args.user)
    reasons.pop(FilterReason.NONE.value, None)
    if reasons:
        print("\nFiltered:")
        for reason, count in sorted(reasons.items(), key=lambda kv: (-kv[1], kv[0])):
            print(f"- {reason}: {count}")
    return 0


def _cmd_pending(args: argparse.Namespace, settings: Settings) -> int:
    repository = _open_repository(settings, args.db)
    for item in repository.pending_vectorization(args.user, limit=args.limit):
        subject = item.subject or "(no subject)"
        print(f"{item.sent_at.isoformat()}\t{item.embedding_attempts}\t{item.external_id}\t{subject}")
    return 0


def _cmd_rules(args: argparse.Namespace, settings: Settings) -> int:
    repository = _open_repository(settings, args.db)

    if args.rules_command == "add":
        rule = FilterRule(rule_type=RuleType(args.rule_type), domain=args.domain)
        added = repository.add_filter_rule(args.user, rule)
        print(f"{'Added' if added else 'Already present'}: {rule.rule_type.value} {rule.domain}")
        return 0

    for rule in repository.list_filter_rules(args.user):
        print(f"{rule.rule_type.value}\t{rule.domain}")
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the Email Search Agent CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    parser = _build_parser()
    parsed = parser.parse_args(args)

    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_json)
    logger.debug("email_search_agent_started", version=__version__, command=parsed.command)

    try:
        if parsed.command == "sync":
            return asyncio.run(_cmd_sync(parsed, settings))
        if parsed.command == "search":
            return asyncio.run(_cmd_search(parsed, settings))
        if parsed.command == "stats":
            return _cmd_stats(parsed, settings)
        if parsed.command == "pending":
            return _cmd_pending(parsed, settings)
        if parsed.command == "rules":
            return _cmd_rules(parsed, settings)
    except EmailSearchError as exc:
        logger.error("command_failed", command=parsed.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
