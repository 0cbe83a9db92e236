"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import pytest
import structlog

from email_search_agent.config import Settings, get_settings
from email_search_agent.index import EmailRepository
from email_search_agent.models import MailboxCredentials


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


@pytest.fixture
def credentials() -> MailboxCredentials:
    return MailboxCredentials(access_token="token", refresh_token="refresh")


@pytest.fixture
def repository(tmp_path) -> EmailRepository:
    repo = EmailRepository(tmp_path / "index.sqlite3")
    repo.initialize()
    return repo


@pytest.fixture
def clean_settings(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Settings isolated from the developer's environment and .env file."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("EMAIL_SEARCH_DB_PATH", str(tmp_path / "cli.sqlite3"))
    monkeypatch.setenv("EMAIL_SEARCH_EMBEDDING_PROVIDER", "deterministic")
    monkeypatch.setenv("EMAIL_SEARCH_EMBEDDING_DIMENSION", "16")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Settings:
    """Provide mock settings for testing."""
    return Settings(
        ollama_host="http://test:11434",
        embedding_provider="deterministic",
        embedding_dimension=8,
        log_level="DEBUG",
    )


@pytest.fixture
def sample_email_data() -> dict:
    """Gmail API message (format=full) with a plain and an HTML body."""
    return {
        "id": "msg123456",
        "threadId": "thread789",
        "labelIds": ["INBOX", "UNREAD"],
        "internalDate": "1736154000000",
        "snippet": "Weekly Newsletter - Python Tips",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "Subject", "value": "Weekly Newsletter - Python Tips"},
                {"name": "From", "value": "Python News <newsletter@python.org>"},
                {"name": "To", "value": "user@example.com"},
                {"name": "Cc", "value": "Team <team@example.com>"},
                {"name": "List-Unsubscribe", "value": "<https://python.org/unsubscribe>"},
            ],
            "parts": [
                {
                    "partId": "0",
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {
                            "partId": "0.0",
                            "mimeType": "text/plain",
                            # "Hello plain text"
                            "body": {"size": 16, "data": "SGVsbG8gcGxhaW4gdGV4dA"},
                        },
                        {
                            "partId": "0.1",
                            "mimeType": "text/html",
                            # "<p>Hello <b>html</b></p>"
                            "body": {"size": 24, "data": "PHA-SGVsbG8gPGI-aHRtbDwvYj48L3A-"},
                        },
                    ],
                },
                {
                    "partId": "1",
                    "mimeType": "text/csv",
                    "filename": "report.csv",
                    "body": {"size": 12, "attachmentId": "att-1"},
                },
                {
                    "partId": "2",
                    "mimeType": "application/pdf",
                    "filename": "scan.pdf",
                    "body": {"size": 2048, "attachmentId": "att-2"},
                },
            ],
        },
    }
