"""
Gmail label and filter provisioning.

Creates the nested label hierarchy mirroring the feed taxonomy, plus the
subject-matching filters that file incoming feed emails under them. Every
step is idempotent: existing labels and filters are matched by exact name
or criteria before anything is created.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from rss_feed_mail.config import GmailConfig
from rss_feed_mail.taxonomy import (
    PATH_SEPARATOR,
    ROOT_LABEL,
    FeedTree,
    format_subject_prefix,
    iter_groups,
    parse_subject_prefix,
)

logger = logging.getLogger(__name__)

GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.labels",
    "https://www.googleapis.com/auth/gmail.settings.basic",
    "https://mail.google.com/",
]

INBOX_LABEL = "INBOX"


class ProvisioningError(Exception):
    """Raised when provisioning cannot start."""


def build_credentials(config: GmailConfig) -> Credentials:
    """Create OAuth2 user credentials from a refresh token."""
    return Credentials(
        token=config.access_token,
        refresh_token=config.refresh_token,
        client_id=config.client_id,
        client_secret=config.client_secret,
        token_uri=config.token_uri,
        scopes=GMAIL_SCOPES,
    )


def build_gmail_service(config: GmailConfig) -> Any:
    """Build an authenticated Gmail v1 API service."""
    return build("gmail", "v1", credentials=build_credentials(config), cache_discovery=False)


class GmailClient:
    """
    Async facade over the Gmail labels and filters API.

    The underlying client is blocking, so each request runs in a worker
    thread.
    """

    def __init__(self, service: Any, user_id: str = "me"):
        self.service = service
        self.user_id = user_id

    async def _execute(self, request: Any) -> dict[str, Any]:
        return await asyncio.to_thread(request.execute)

    async def list_labels(self) -> list[dict[str, Any]]:
        """Return every label of the mailbox."""
        response = await self._execute(self.service.users().labels().list(userId=self.user_id))
        return response.get("labels", [])

    async def create_label(self, name: str) -> dict[str, Any]:
        """Create a visible label."""
        body = {
            "name": name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        }
        return await self._execute(
            self.service.users().labels().create(userId=self.user_id, body=body)
        )

    async def list_filters(self) -> list[dict[str, Any]]:
        """Return every filter of the mailbox."""
        response = await self._execute(
            self.service.users().settings().filters().list(userId=self.user_id)
        )
        return response.get("filter", [])

    async def create_filter(self, criteria: dict[str, str], action: dict[str, list[str]]) -> dict[str, Any]:
        """Create a filter."""
        body = {"criteria": criteria, "action": action}
        return await self._execute(
            self.service.users().settings().filters().create(userId=self.user_id, body=body)
        )


@dataclass
class ProvisioningReport:
    """Outcome of a provisioning run."""

    label_map: dict[str, str] = field(default_factory=dict)
    labels_created: int = 0
    filters_created: int = 0
    failures: list[str] = field(default_factory=list)
    stale_filters: list[str] = field(default_factory=list)


class LabelProvisioner:
    """
    Creates the label tree and filters for a feed taxonomy.

    Label paths are rooted at ``root_label``: groups map to
    ``root/Group/Sub`` and feeds to ``root/Group/Sub/Feed title``.
    """

    def __init__(
        self,
        client: GmailClient,
        sender: str,
        root_label: str = ROOT_LABEL,
        title_resolver: Callable[[str, str], Awaitable[str]] | None = None,
    ):
        """
        Initialize the provisioner.

        Parameters
        ----------
        client : GmailClient
            Gmail API facade.
        sender : str
            Bare From address of feed emails, matched by every filter.
        root_label : str
            Top-level label.
        title_resolver : Callable[[str, str], Awaitable[str]] | None
            Coroutine ``(url, configured_title) -> title`` returning the
            title the feed reports, which is the one used in subjects.
        """
        self.client = client
        self.sender = sender
        self.root_label = root_label
        self.title_resolver = title_resolver

    async def provision(self, tree: FeedTree) -> ProvisioningReport:
        """
        Upsert all labels and filters for ``tree``.

        Raises
        ------
        ProvisioningError
            If the existing labels or filters cannot be listed.
        """
        try:
            existing_labels = await self.client.list_labels()
            existing_filters = await self.client.list_filters()
        except (HttpError, RefreshError, OSError) as e:
            raise ProvisioningError(f"Could not list existing labels or filters: {e}") from e

        labels_by_name = {label["name"]: label["id"] for label in existing_labels if "name" in label}
        report = ProvisioningReport()

        feed_labels: list[tuple[str, str, str]] = []
        group_paths: list[str] = []
        known_paths: set[str] = set()

        await self._ensure_label(self.root_label, labels_by_name, report)
        for path, group in iter_groups(tree):
            group_label = f"{self.root_label}{PATH_SEPARATOR}{path}"
            group_paths.append(group_label)
            known_paths.add(path)
            await self._ensure_label(group_label, labels_by_name, report)

            for feed in group.feeds:
                title = feed.title or feed.url
                if self.title_resolver is not None:
                    title = await self.title_resolver(feed.url, title)
                feed_label = f"{group_label}{PATH_SEPARATOR}{title}"
                feed_labels.append((feed_label, path, title))
                await self._ensure_label(feed_label, labels_by_name, report)

        criteria = [f.get("criteria", {}) for f in existing_filters]
        await self._create_leaf_filters(feed_labels, report, criteria)
        await self._create_group_filters(group_paths, [f[0] for f in feed_labels], report, criteria)
        await self._create_sender_filter(report, criteria)
        self._find_stale_filters(criteria, known_paths, report)

        logger.info(
            "Provisioning done: %d label(s) known, %d created, %d filter(s) created, %d failure(s)",
            len(report.label_map),
            report.labels_created,
            report.filters_created,
            len(report.failures),
        )
        return report

    async def _ensure_label(self, name: str, labels_by_name: dict[str, str], report: ProvisioningReport) -> None:
        if name in labels_by_name:
            report.label_map[name] = labels_by_name[name]
            return

        try:
            created = await self.client.create_label(name)
        except (HttpError, OSError) as e:
            logger.error("Failed to create label '%s': %s", name, e)
            report.failures.append(f"label {name}")
            return

        labels_by_name[name] = created["id"]
        report.label_map[name] = created["id"]
        report.labels_created += 1
        logger.info("Created label '%s'", name)

    def _relative_parts(self, label_path: str) -> list[str]:
        prefix = self.root_label + PATH_SEPARATOR
        return label_path[len(prefix):].split(PATH_SEPARATOR)

    def _is_leaf(self, label_path: str, report: ProvisioningReport) -> bool:
        prefix = label_path + PATH_SEPARATOR
        return not any(other.startswith(prefix) for other in report.label_map)

    async def _create_leaf_filters(
        self,
        feed_labels: list[tuple[str, str, str]],
        report: ProvisioningReport,
        criteria: list[dict[str, str]],
    ) -> None:
        for label_path, group_path, feed_title in feed_labels:
            if label_path not in report.label_map or not self._is_leaf(label_path, report):
                continue

            subject = f"{format_subject_prefix(group_path)} {feed_title}"
            await self._ensure_filter(
                {"subject": subject, "from": self.sender},
                {"addLabelIds": [report.label_map[label_path]], "removeLabelIds": [INBOX_LABEL]},
                report,
                criteria,
            )

    async def _create_group_filters(
        self,
        group_paths: list[str],
        feed_paths: list[str],
        report: ProvisioningReport,
        criteria: list[dict[str, str]],
    ) -> None:
        for label_path in group_paths:
            if label_path not in report.label_map:
                continue
            prefix = label_path + PATH_SEPARATOR
            if not any(p.startswith(prefix) and p in report.label_map for p in feed_paths):
                continue

            subject = format_subject_prefix(PATH_SEPARATOR.join(self._relative_parts(label_path)))
            await self._ensure_filter(
                {"subject": subject, "from": self.sender},
                {"addLabelIds": [report.label_map[label_path]]},
                report,
                criteria,
            )

    async def _create_sender_filter(self, report: ProvisioningReport, criteria: list[dict[str, str]]) -> None:
        root_id = report.label_map.get(self.root_label)
        if root_id is None:
            logger.warning("Root label '%s' is missing, skipping sender filter", self.root_label)
            return

        await self._ensure_filter(
            {"from": self.sender},
            {"addLabelIds": [root_id], "removeLabelIds": [INBOX_LABEL]},
            report,
            criteria,
        )

    def _find_stale_filters(
        self, criteria: list[dict[str, str]], known_paths: set[str], report: ProvisioningReport
    ) -> None:
        """Report filters of this sender whose subject prefix names an unknown group."""
        for c in criteria:
            subject = c.get("subject")
            if not subject or c.get("from") != self.sender:
                continue
            segments = parse_subject_prefix(subject)
            if segments and PATH_SEPARATOR.join(segments) not in known_paths:
                logger.warning("Filter for subject '%s' matches no configured group", subject)
                report.stale_filters.append(subject)

    async def _ensure_filter(
        self,
        wanted: dict[str, str],
        action: dict[str, list[str]],
        report: ProvisioningReport,
        criteria: list[dict[str, str]],
    ) -> None:
        subject = wanted.get("subject")
        if subject:
            exists = any(c.get("subject") == subject for c in criteria)
        else:
            exists = any(not c.get("subject") and c.get("from") == wanted["from"] for c in criteria)

        description = f"subject '{subject}'" if subject else f"sender '{wanted['from']}'"
        if exists:
            logger.info("Filter for %s already exists, skipping", description)
            return

        try:
            await self.client.create_filter(wanted, action)
        except (HttpError, OSError) as e:
            logger.error("Failed to create filter for %s: %s", description, e)
            report.failures.append(f"filter {description}")
            return

        criteria.append(dict(wanted))
        report.filters_created += 1
        logger.info("Created filter for %s", description)
