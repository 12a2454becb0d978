"""
Shared fixtures for RSS Feed Mail tests.

Provides common test fixtures for use across all test modules.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from rss_feed_mail.config import AppConfig
from rss_feed_mail.mailer import OutgoingMail
from rss_feed_mail.rss_parser import FeedFetchResult, FeedItem
from rss_feed_mail.taxonomy import FeedTree


# Path to test fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def fixtures_dir() -> Path:
    """Return path to fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture
def sample_rss_content(fixtures_dir: Path) -> str:
    """Return contents of sample RSS feed."""
    return (fixtures_dir / "sample_rss.xml").read_text()


@pytest.fixture
def sample_atom_content(fixtures_dir: Path) -> str:
    """Return contents of sample Atom feed."""
    return (fixtures_dir / "sample_atom.xml").read_text()


@pytest.fixture
def sample_config_path(fixtures_dir: Path) -> Path:
    """Return path to sample config file."""
    return fixtures_dir / "sample_config.yaml"


@pytest.fixture
def feed_config_path(fixtures_dir: Path) -> Path:
    """Return path to the sample feed taxonomy."""
    return fixtures_dir / "feed_config.json"


@pytest.fixture
def feed_tree() -> FeedTree:
    """
    Create a small taxonomy.

    Returns
    -------
    FeedTree
        ``Tech`` (one feed) with nested ``Python`` (one feed), and ``News``
        (one feed).
    """
    return FeedTree.model_validate(
        {
            "groups": [
                {
                    "name": "Tech",
                    "feeds": [{"title": "Tech Blog", "url": "https://tech.example.com/feed"}],
                    "groups": [
                        {
                            "name": "Python",
                            "feeds": [{"title": "Py Weekly", "url": "https://py.example.com/rss"}],
                        }
                    ],
                },
                {
                    "name": "News",
                    "feeds": [{"title": "Daily News", "url": "https://news.example.com/atom"}],
                },
            ]
        }
    )


@pytest.fixture
def fixed_clock():
    """Return a clock always reporting ``FIXED_NOW``."""
    return lambda: FIXED_NOW


@pytest.fixture
def make_item():
    """Factory for FeedItem instances."""

    def _make(title: str, published: datetime | None, url: str = "https://tech.example.com/feed", **kwargs: Any) -> FeedItem:
        defaults = {
            "link": f"https://example.com/{title.lower().replace(' ', '-')}",
            "summary": f"Summary of {title}",
            "content": f"<p>Content of {title}</p>",
            "feed_title": "Tech Blog",
            "feed_url": url,
        }
        defaults.update(kwargs)
        return FeedItem(title=title, published=published, **defaults)

    return _make


@pytest.fixture
def make_result():
    """Factory for FeedFetchResult instances."""

    def _make(url: str, items: list[FeedItem], title: str = "Tech Blog") -> FeedFetchResult:
        return FeedFetchResult(url=url, title=title, items=items)

    return _make


class FakeMailer:
    """In-memory mail sender recording every message."""

    def __init__(self, failures: dict[str, list[Exception]] | None = None):
        self.sent: list[OutgoingMail] = []
        self.attempts: list[str] = []
        self.failures = failures or {}
        self.closed = False

    async def send(self, mail: OutgoingMail) -> str:
        self.attempts.append(mail.subject)
        pending = self.failures.get(mail.subject)
        if pending:
            raise pending.pop(0)
        self.sent.append(mail)
        return f"<{len(self.sent)}@test>"

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_mailer() -> FakeMailer:
    """Return a recording mail sender."""
    return FakeMailer()


class FakeGmailClient:
    """In-memory stand-in for the Gmail labels and filters API."""

    def __init__(self):
        self.labels: list[dict[str, Any]] = [{"id": "INBOX", "name": "INBOX"}]
        self.filters: list[dict[str, Any]] = []
        self.fail_labels: set[str] = set()
        self.fail_filter_subjects: set[str] = set()
        self.list_error: Exception | None = None
        self.create_label_calls = 0
        self.create_filter_calls = 0

    async def list_labels(self) -> list[dict[str, Any]]:
        if self.list_error:
            raise self.list_error
        return list(self.labels)

    async def create_label(self, name: str) -> dict[str, Any]:
        self.create_label_calls += 1
        if name in self.fail_labels:
            raise OSError(f"cannot create {name}")
        label = {"id": f"Label_{len(self.labels)}", "name": name}
        self.labels.append(label)
        return label

    async def list_filters(self) -> list[dict[str, Any]]:
        return [dict(f) for f in self.filters]

    async def create_filter(self, criteria: dict[str, str], action: dict[str, list[str]]) -> dict[str, Any]:
        self.create_filter_calls += 1
        if criteria.get("subject") in self.fail_filter_subjects:
            raise OSError("filter rejected")
        created = {"id": f"Filter_{len(self.filters)}", "criteria": dict(criteria), "action": action}
        self.filters.append(created)
        return created

    def label_id(self, name: str) -> str | None:
        return next((label["id"] for label in self.labels if label["name"] == name), None)


@pytest.fixture
def fake_gmail() -> FakeGmailClient:
    """Return an empty in-memory Gmail account."""
    return FakeGmailClient()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """
    Create a minimal application configuration.

    Returns
    -------
    AppConfig
        Configuration reading the feed taxonomy from a local file and
        keeping the cursor in a temporary directory.
    """
    return AppConfig.model_validate(
        {
            "feed_config": {"path": str(FIXTURES_DIR / "feed_config.json")},
            "email": {"recipient": "reader@example.com", "sender": "Feeds <feeds@example.com>"},
            "smtp": {"password": "secret", "username": "feeds@example.com"},
            "storage": {"cursor_path": str(tmp_path / "cursor.json")},
        }
    )
