"""
Feed-to-mailbox delivery pipeline.

One run loads the taxonomy and the cursor, fetches every feed for items
newer than its watermark, emails each new item and advances the cursor.
"""

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from rss_feed_mail.content import ArticleExtractor
from rss_feed_mail.cursor import CursorStore, CursorWriteError, parse_timestamp
from rss_feed_mail.feed_config import FeedConfigSource
from rss_feed_mail.labels import LabelProvisioner, ProvisioningReport
from rss_feed_mail.mailer import MailSender, OutgoingMail, render_item_html
from rss_feed_mail.retry import RetryPolicy, is_temporary_mail_error
from rss_feed_mail.rss_parser import FeedFetcher, FeedFetchError, FeedFetchResult, FeedItem
from rss_feed_mail.taxonomy import (
    ROOT_LABEL,
    FeedTree,
    FlatFeed,
    build_label_string,
    build_subject,
    flatten,
    resolve_group_path,
)

logger = logging.getLogger(__name__)

CURSOR_ONLY_PROMPT = (
    "Existing cursor file found. This will update the cursor and may skip previously "
    "unprocessed items. Continue? (y/n): "
)


class RunMode(enum.Enum):
    """What a run does after fetching."""

    DELIVER = "deliver"
    CURSOR_ONLY = "cursor-only"
    CREATE_LABELS = "create-labels"


@dataclass
class RunOptions:
    """
    Per-run options, usually from the command line.

    Attributes
    ----------
    mode : RunMode
        Delivery, cursor-only, or label provisioning.
    try_load_full_content : bool
        Replace short summaries with the scraped article.
    max_retries : int
        Send retries per email.
    retry_delay_ms : int
        Initial retry delay in milliseconds.
    """

    mode: RunMode = RunMode.DELIVER
    try_load_full_content: bool = False
    max_retries: int = 3
    retry_delay_ms: int = 5000


@dataclass
class DeliverableItem:
    """A feed item with its resolved group path, subject and labels."""

    item: FeedItem
    group_path: str
    subject: str
    labels: str


@dataclass
class DeliveryReport:
    """Tally of a delivery pass."""

    sent: int = 0
    failed: int = 0
    failed_subjects: list[str] = field(default_factory=list)


@dataclass
class RunResult:
    """Outcome of a pipeline run."""

    mode: RunMode
    results: dict[str, FeedFetchResult] = field(default_factory=dict)
    report: DeliveryReport = field(default_factory=DeliveryReport)
    cursor_updated: bool = False
    cancelled: bool = False
    provisioning: ProvisioningReport | None = None


class ContentEnricher(Protocol):
    async def fetch_full_content(self, url: str) -> str | None: ...


class DeliveryPipeline:
    """
    Orchestrates fetch, filter, format, send and cursor update.

    Collaborators are injected so a run can be driven entirely by fakes.
    """

    def __init__(
        self,
        config_source: FeedConfigSource,
        fetcher: FeedFetcher,
        cursor_store: CursorStore,
        mailer: MailSender | None,
        sender: str,
        recipient: str,
        root_label: str = ROOT_LABEL,
        extractor: ArticleExtractor | ContentEnricher | None = None,
        provisioner: LabelProvisioner | None = None,
        confirm: Callable[[str], bool] | None = None,
        max_concurrency: int = 10,
        full_content_word_threshold: int = 30,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the pipeline.

        Parameters
        ----------
        config_source : FeedConfigSource
            Loads the feed taxonomy.
        fetcher : FeedFetcher
            Fetches feed items newer than a watermark.
        cursor_store : CursorStore
            Reads and writes per-feed watermarks.
        mailer : MailSender
            Sends one email per item.
        sender : str
            From address of feed emails.
        recipient : str
            Mailbox receiving feed emails.
        root_label : str
            Top-level Gmail label.
        extractor : ArticleExtractor | None
            Used for full-content enrichment.
        provisioner : LabelProvisioner | None
            Used in label provisioning mode.
        confirm : Callable[[str], bool] | None
            Asks the user a yes/no question; required for a cursor-only run
            over an existing cursor.
        max_concurrency : int
            Maximum number of feeds fetched at the same time.
        full_content_word_threshold : int
            Summaries with fewer words are enriched.
        sleep : Callable[[float], Awaitable[Any]]
            Sleep coroutine used between send retries.
        """
        self.config_source = config_source
        self.fetcher = fetcher
        self.cursor_store = cursor_store
        self.mailer = mailer
        self.sender = sender
        self.recipient = recipient
        self.root_label = root_label
        self.extractor = extractor
        self.provisioner = provisioner
        self.confirm = confirm
        self.max_concurrency = max_concurrency
        self.full_content_word_threshold = full_content_word_threshold
        self.sleep = sleep

    async def run(self, options: RunOptions) -> RunResult:
        """
        Execute one run.

        Raises
        ------
        ConfigFetchError
            If the feed configuration cannot be loaded.
        CursorWriteError
            If the cursor cannot be written after delivery.
        ProvisioningError
            If label provisioning cannot list existing labels or filters.
        """
        logger.info("Starting RSS feed check (%s)", options.mode.value)
        tree = await self.config_source.load()

        if options.mode is RunMode.CREATE_LABELS:
            return await self._provision(tree)

        cursor, cursor_existed = self.cursor_store.load()
        results = await self.fetch_all(tree, cursor)
        result = RunResult(mode=options.mode, results=results)

        if options.mode is RunMode.CURSOR_ONLY:
            return await self._update_cursor_only(result, cursor_existed)

        deliverables = await self.build_deliverables(results, tree, options.try_load_full_content)
        if deliverables:
            policy = RetryPolicy(
                max_retries=options.max_retries,
                initial_delay=options.retry_delay_ms / 1000,
                is_retryable=is_temporary_mail_error,
                sleep=self.sleep,
            )
            result.report = await self.deliver(deliverables, policy)
        else:
            logger.info("No new items to send")

        if results:
            self._advance_cursor(results)
            result.cursor_updated = True

        logger.info("RSS feed check completed.")
        return result

    async def fetch_all(self, tree: FeedTree, cursor: dict[str, str]) -> dict[str, FeedFetchResult]:
        """
        Fetch every feed of the taxonomy concurrently.

        Returns
        -------
        dict[str, FeedFetchResult]
            Results for the feeds that produced at least one item, keyed by
            URL in taxonomy order. Failed and empty feeds are absent.
        """
        feeds: dict[str, FlatFeed] = {}
        for feed in flatten(tree):
            feeds.setdefault(feed.url, feed)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def fetch_one(feed: FlatFeed) -> FeedFetchResult | None:
            since = None
            if feed.url in cursor:
                since = parse_timestamp(cursor[feed.url])
                if since is None:
                    logger.warning(
                        "Unreadable watermark %r for %s, fetching the whole feed",
                        cursor[feed.url],
                        feed.url,
                    )
            async with semaphore:
                try:
                    return await self.fetcher.fetch_since(feed.url, since, feed.title)
                except FeedFetchError as e:
                    logger.error("Error fetching feed %s (%s): %s", feed.url, e.kind.value, e)
                except Exception as e:
                    logger.error("Unexpected error fetching feed %s: %s", feed.url, e)
            return None

        fetched = await asyncio.gather(*(fetch_one(feed) for feed in feeds.values()))

        results = {r.url: r for r in fetched if r is not None and r.items}
        logger.info(
            "%d of %d feed(s) have new items (%d item(s) total)",
            len(results),
            len(feeds),
            sum(len(r.items) for r in results.values()),
        )
        return results

    async def build_deliverables(
        self,
        results: dict[str, FeedFetchResult],
        tree: FeedTree,
        enrich: bool = False,
    ) -> list[DeliverableItem]:
        """Resolve group paths, optionally enrich, and render subjects."""
        deliverables = []
        for url, result in results.items():
            group_path = resolve_group_path(url, tree)
            labels = build_label_string(group_path, self.root_label)

            for item in result.items:
                if enrich and self._needs_enrichment(item):
                    item.full_content = await self.extractor.fetch_full_content(item.link)

                subject = build_subject(group_path, item.feed_title or result.title, item.title)
                deliverables.append(
                    DeliverableItem(item=item, group_path=group_path, subject=subject, labels=labels)
                )
        return deliverables

    def _needs_enrichment(self, item: FeedItem) -> bool:
        if self.extractor is None or not item.link or not item.summary:
            return False
        return item.word_count < self.full_content_word_threshold

    async def deliver(self, deliverables: list[DeliverableItem], policy: RetryPolicy) -> DeliveryReport:
        """
        Send one email per item, one at a time.

        A failed item is recorded and the remaining items are still sent.
        """
        report = DeliveryReport()
        logger.info(
            "Attempting to send %d email(s) with max %d retries...",
            len(deliverables),
            policy.max_retries,
        )

        for deliverable in deliverables:
            mail = OutgoingMail(
                recipient=self.recipient,
                sender=self.sender,
                subject=deliverable.subject,
                html=render_item_html(deliverable.item),
                labels=deliverable.labels,
            )
            try:
                await policy.run(lambda mail=mail: self.mailer.send(mail))
                report.sent += 1
            except Exception as e:
                logger.error("Failed to send email '%s': %s", deliverable.subject, e)
                report.failed += 1
                report.failed_subjects.append(deliverable.subject)

        logger.info("Email sending complete: %d sent, %d failed", report.sent, report.failed)
        if report.failed_subjects:
            logger.warning("Failed items:\n%s", "\n".join(report.failed_subjects))
        return report

    def _advance_cursor(self, results: dict[str, FeedFetchResult]) -> None:
        try:
            self.cursor_store.update(results)
        except CursorWriteError as e:
            logger.error("Could not update cursor, items may be sent again next run: %s", e)
            raise

    async def _update_cursor_only(self, result: RunResult, cursor_existed: bool) -> RunResult:
        if not result.results:
            logger.info("No new items found. Cursor remains unchanged.")
            return result

        if cursor_existed:
            if self.confirm is None:
                raise RuntimeError("A confirmation callback is required to overwrite an existing cursor")
            if not await asyncio.to_thread(self.confirm, CURSOR_ONLY_PROMPT):
                logger.info("Operation cancelled by user.")
                result.cancelled = True
                return result

        logger.info("Updating cursor to latest entries without sending emails...")
        self._advance_cursor(result.results)
        result.cursor_updated = True
        return result

    async def _provision(self, tree: FeedTree) -> RunResult:
        if self.provisioner is None:
            raise RuntimeError("Label provisioning is not configured")
        report = await self.provisioner.provision(tree)
        logger.info("Labels and filters provisioned for %d label path(s)", len(report.label_map))
        return RunResult(mode=RunMode.CREATE_LABELS, provisioning=report)
