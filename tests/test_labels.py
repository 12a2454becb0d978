"""
Unit tests for Gmail label and filter provisioning.

Provisioning runs against an in-memory Gmail account, so idempotency and
partial failures can be checked end to end.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aioresponses import aioresponses
from googleapiclient.errors import HttpError

from rss_feed_mail.config import GmailConfig
from rss_feed_mail.labels import (
    GmailClient,
    LabelProvisioner,
    ProvisioningError,
    build_credentials,
    build_gmail_service,
)
from rss_feed_mail.rss_parser import FeedFetcher
from rss_feed_mail.taxonomy import FeedTree

SENDER = "feeds@example.com"


def http_error(status: int = 500) -> HttpError:
    return HttpError(resp=MagicMock(status=status, reason="err"), content=b"boom")


def filter_subjects(fake_gmail) -> list[str | None]:
    return [f["criteria"].get("subject") for f in fake_gmail.filters]


class TestProvision:
    """Tests for LabelProvisioner.provision."""

    async def test_creates_label_tree(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test that the root, group, and feed labels are created."""
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        report = await provisioner.provision(feed_tree)

        assert list(report.label_map) == [
            "RSS Feeds",
            "RSS Feeds/Tech",
            "RSS Feeds/Tech/Tech Blog",
            "RSS Feeds/Tech/Python",
            "RSS Feeds/Tech/Python/Py Weekly",
            "RSS Feeds/News",
            "RSS Feeds/News/Daily News",
        ]
        assert report.labels_created == 7
        assert report.failures == []

    async def test_creates_filters(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test the leaf, group, and sender filters."""
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        report = await provisioner.provision(feed_tree)

        assert filter_subjects(fake_gmail) == [
            "[Tech] Tech Blog",
            "[Tech][Python] Py Weekly",
            "[News] Daily News",
            "[Tech]",
            "[Tech][Python]",
            "[News]",
            None,
        ]
        assert report.filters_created == 7

        leaf = fake_gmail.filters[1]
        assert leaf["criteria"]["from"] == SENDER
        assert leaf["action"]["addLabelIds"] == [fake_gmail.label_id("RSS Feeds/Tech/Python/Py Weekly")]
        assert leaf["action"]["removeLabelIds"] == ["INBOX"]

        group = fake_gmail.filters[3]
        assert group["action"] == {"addLabelIds": [fake_gmail.label_id("RSS Feeds/Tech")]}

        catch_all = fake_gmail.filters[-1]
        assert catch_all["criteria"] == {"from": SENDER}
        assert catch_all["action"]["addLabelIds"] == [fake_gmail.label_id("RSS Feeds")]
        assert catch_all["action"]["removeLabelIds"] == ["INBOX"]

    async def test_second_run_creates_nothing(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test that provisioning is idempotent."""
        provisioner = LabelProvisioner(fake_gmail, SENDER)
        first = await provisioner.provision(feed_tree)
        labels = list(fake_gmail.labels)
        filters = list(fake_gmail.filters)

        second = await provisioner.provision(feed_tree)

        assert second.labels_created == 0
        assert second.filters_created == 0
        assert second.label_map == first.label_map
        assert fake_gmail.labels == labels
        assert fake_gmail.filters == filters

    async def test_existing_labels_reused(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test that labels are matched by exact name."""
        fake_gmail.labels.append({"id": "Existing_1", "name": "RSS Feeds/Tech"})
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        report = await provisioner.provision(feed_tree)

        assert report.label_map["RSS Feeds/Tech"] == "Existing_1"
        assert report.labels_created == 6

    async def test_title_resolver(self, fake_gmail) -> None:
        """Test that feed labels use the feed's reported title."""
        tree = FeedTree.model_validate(
            {"groups": [{"name": "Tech", "feeds": [{"title": "Configured", "url": "https://t.example.com"}]}]}
        )
        resolver = AsyncMock(return_value="Reported Title")
        provisioner = LabelProvisioner(fake_gmail, SENDER, title_resolver=resolver)

        report = await provisioner.provision(tree)

        resolver.assert_awaited_once_with("https://t.example.com", "Configured")
        assert "RSS Feeds/Tech/Reported Title" in report.label_map
        assert "[Tech] Reported Title" in filter_subjects(fake_gmail)

    async def test_custom_root_label(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test provisioning under a custom root label."""
        provisioner = LabelProvisioner(fake_gmail, SENDER, root_label="Feeds")

        report = await provisioner.provision(feed_tree)

        assert "Feeds/Tech/Python" in report.label_map
        assert "[Tech][Python]" in filter_subjects(fake_gmail)

    async def test_failed_label_is_skipped(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test that a failed label does not stop provisioning."""
        fake_gmail.fail_labels.add("RSS Feeds/News/Daily News")
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        report = await provisioner.provision(feed_tree)

        assert "RSS Feeds/News/Daily News" not in report.label_map
        assert report.failures == ["label RSS Feeds/News/Daily News"]
        assert "[News] Daily News" not in filter_subjects(fake_gmail)
        assert "[News]" not in filter_subjects(fake_gmail)
        assert "[Tech][Python] Py Weekly" in filter_subjects(fake_gmail)

    async def test_failed_filter_is_skipped(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test that a failed filter does not stop provisioning."""
        fake_gmail.fail_filter_subjects.add("[Tech] Tech Blog")
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        report = await provisioner.provision(feed_tree)

        assert report.failures == ["filter subject '[Tech] Tech Blog'"]
        assert report.filters_created == 6
        assert None in filter_subjects(fake_gmail)

    async def test_missing_root_skips_sender_filter(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test that the catch-all needs the root label."""
        fake_gmail.fail_labels.add("RSS Feeds")
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        await provisioner.provision(feed_tree)

        assert None not in filter_subjects(fake_gmail)

    async def test_listing_failure_is_fatal(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test that failing to list labels aborts provisioning."""
        fake_gmail.list_error = http_error()
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        with pytest.raises(ProvisioningError):
            await provisioner.provision(feed_tree)

        assert fake_gmail.create_label_calls == 0

    async def test_group_without_feeds_gets_no_filter(self, fake_gmail) -> None:
        """Test that empty groups get a label but no filter."""
        tree = FeedTree.model_validate({"groups": [{"name": "Empty"}]})
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        report = await provisioner.provision(tree)

        assert "RSS Feeds/Empty" in report.label_map
        assert filter_subjects(fake_gmail) == [None]

    async def test_undecodable_feed_keeps_configured_title(self, fake_gmail) -> None:
        """Test that one unreadable feed does not stop labels for the others."""
        tree = FeedTree.model_validate(
            {
                "groups": [
                    {
                        "name": "Tech",
                        "feeds": [
                            {"title": "Broken", "url": "https://broken.example.com/feed"},
                            {"title": "Good", "url": "https://good.example.com/feed"},
                        ],
                    }
                ]
            }
        )
        good_feed = (
            '<?xml version="1.0"?><rss version="2.0"><channel>'
            "<title>Good Reported</title></channel></rss>"
        )

        async with FeedFetcher() as fetcher:
            with aioresponses() as m:
                m.get(
                    "https://broken.example.com/feed",
                    body=b"<rss>\xff\xfe</rss>",
                    content_type="application/rss+xml; charset=utf-8",
                )
                m.get("https://good.example.com/feed", body=good_feed)
                provisioner = LabelProvisioner(fake_gmail, SENDER, title_resolver=fetcher.fetch_title)
                report = await provisioner.provision(tree)

        assert "RSS Feeds/Tech/Broken" in report.label_map
        assert "RSS Feeds/Tech/Good Reported" in report.label_map
        assert report.failures == []

    async def test_stale_filters_reported(self, fake_gmail, feed_tree: FeedTree) -> None:
        """Test that filters for removed groups are reported but kept."""
        fake_gmail.filters = [
            {"id": "f1", "criteria": {"subject": "[Old][Gone] Feed", "from": SENDER}, "action": {}},
            {"id": "f2", "criteria": {"subject": "[Tech][Python]", "from": SENDER}, "action": {}},
            {"id": "f3", "criteria": {"subject": "[Old] Other", "from": "someone@example.com"}, "action": {}},
        ]
        provisioner = LabelProvisioner(fake_gmail, SENDER)

        report = await provisioner.provision(feed_tree)

        assert report.stale_filters == ["[Old][Gone] Feed"]
        assert "[Old][Gone] Feed" in filter_subjects(fake_gmail)


class TestGmailClient:
    """Tests for the async Gmail API facade."""

    async def test_list_labels(self) -> None:
        """Test that label listing executes the request."""
        service = MagicMock()
        service.users().labels().list().execute.return_value = {"labels": [{"id": "1", "name": "A"}]}

        labels = await GmailClient(service).list_labels()

        assert labels == [{"id": "1", "name": "A"}]
        service.users().labels().list.assert_called_with(userId="me")

    async def test_list_filters_empty(self) -> None:
        """Test that an account without filters returns an empty list."""
        service = MagicMock()
        service.users().settings().filters().list().execute.return_value = {}

        assert await GmailClient(service).list_filters() == []

    async def test_create_label_body(self) -> None:
        """Test the label creation request body."""
        service = MagicMock()
        service.users().labels().create().execute.return_value = {"id": "L1", "name": "RSS Feeds"}

        created = await GmailClient(service).create_label("RSS Feeds")

        assert created["id"] == "L1"
        body = service.users().labels().create.call_args.kwargs["body"]
        assert body["name"] == "RSS Feeds"
        assert body["labelListVisibility"] == "labelShow"

    async def test_create_filter_body(self) -> None:
        """Test the filter creation request body."""
        service = MagicMock()
        service.users().settings().filters().create().execute.return_value = {"id": "F1"}

        await GmailClient(service).create_filter({"from": SENDER}, {"addLabelIds": ["L1"]})

        body = service.users().settings().filters().create.call_args.kwargs["body"]
        assert body == {"criteria": {"from": SENDER}, "action": {"addLabelIds": ["L1"]}}

    async def test_http_error_propagates(self) -> None:
        """Test that API errors reach the caller."""
        service = MagicMock()
        service.users().labels().list().execute.side_effect = http_error(403)

        with pytest.raises(HttpError):
            await GmailClient(service).list_labels()


class TestServiceBuilding:
    """Tests for credential and service construction."""

    def test_build_credentials(self) -> None:
        """Test that OAuth settings map onto user credentials."""
        config = GmailConfig(client_id="id", client_secret="secret", refresh_token="refresh")

        credentials = build_credentials(config)

        assert credentials.refresh_token == "refresh"
        assert credentials.client_id == "id"
        assert credentials.token is None

    def test_build_gmail_service(self) -> None:
        """Test that the Gmail v1 discovery client is requested."""
        config = GmailConfig(client_id="id", client_secret="secret", refresh_token="refresh")

        with patch("rss_feed_mail.labels.build") as mock_build:
            build_gmail_service(config)

        args, kwargs = mock_build.call_args
        assert args == ("gmail", "v1")
        assert kwargs["cache_discovery"] is False
