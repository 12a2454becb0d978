"""
JSON cursor file tracking the newest delivered item per feed.

The cursor maps each feed URL to the ISO-8601 publish time of the most
recent item already processed. It is read at the start of a run and
rewritten wholesale at the end.
"""

import json
import logging
import os
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path

from rss_feed_mail.rss_parser import FeedFetchResult, utc_now

logger = logging.getLogger(__name__)


class CursorWriteError(Exception):
    """Raised when the cursor file cannot be written."""


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime | None:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken as UTC. Returns None if the value cannot
    be parsed.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class CursorStore:
    """
    Persistence for the per-feed watermark.

    Not safe against concurrent runs: two processes sharing a cursor file
    may overwrite each other's updates.
    """

    def __init__(self, path: str | Path, clock: Callable[[], datetime] = utc_now):
        """
        Initialize the store.

        Parameters
        ----------
        path : str | Path
            Location of the JSON cursor file.
        clock : Callable[[], datetime]
            Source of "now" for feeds whose newest item is undated.
        """
        self.path = Path(path)
        self.clock = clock

    def load(self) -> tuple[dict[str, str], bool]:
        """
        Read the cursor file.

        Returns
        -------
        tuple[dict[str, str], bool]
            The cursor and whether a usable file existed. Any read problem
            degrades to an empty cursor, as on a first run.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info("No cursor file at %s, it will be created after this run", self.path)
            return {}, False
        except OSError as e:
            logger.warning("Could not read cursor file %s: %s", self.path, e)
            return {}, False

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Cursor file %s is not valid JSON, ignoring it: %s", self.path, e)
            return {}, False

        if not isinstance(data, dict):
            logger.warning("Cursor file %s does not contain a JSON object, ignoring it", self.path)
            return {}, False

        cursor = {url: ts for url, ts in data.items() if isinstance(ts, str)}
        if len(cursor) != len(data):
            logger.warning("Dropped %d malformed cursor entr(ies)", len(data) - len(cursor))

        logger.info("Loaded cursor with %d feed(s) from %s", len(cursor), self.path)
        return cursor, True

    def advance(
        self,
        cursor: Mapping[str, str],
        results: Mapping[str, FeedFetchResult],
    ) -> dict[str, str]:
        """
        Move each fetched feed's watermark to its newest item.

        Parameters
        ----------
        cursor : Mapping[str, str]
            Current cursor, left untouched.
        results : Mapping[str, FeedFetchResult]
            This run's results by feed URL, items sorted newest first.

        Returns
        -------
        dict[str, str]
            The updated cursor. A watermark never moves backwards.
        """
        updated = dict(cursor)
        for url, result in results.items():
            if not result.items:
                continue

            newest = result.items[0].published or self.clock()
            current = parse_timestamp(updated.get(url, ""))
            if current is not None and current >= newest:
                logger.debug("Keeping watermark %s for %s", updated[url], url)
                continue

            updated[url] = format_timestamp(newest)
            logger.debug("Advanced watermark for %s to %s", url, updated[url])

        return updated

    def persist(self, cursor: Mapping[str, str]) -> None:
        """
        Write the whole cursor to disk.

        Raises
        ------
        CursorWriteError
            If the file cannot be written.
        """
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(dict(cursor), indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise CursorWriteError(f"Failed to write cursor file {self.path}: {e}") from e

        logger.info("Cursor file %s updated (%d feed(s))", self.path, len(cursor))

    def update(self, results: Mapping[str, FeedFetchResult]) -> dict[str, str]:
        """Reload the cursor, advance it with ``results`` and write it back."""
        cursor, _ = self.load()
        updated = self.advance(cursor, results)
        self.persist(updated)
        return updated
