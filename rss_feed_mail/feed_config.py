"""
Loading of the feed taxonomy document.

The taxonomy is a JSON document, usually served over HTTP (for example the
raw ``feed-config.json`` of a GitHub repository), read fresh on every run.
"""

import asyncio
import json
import logging
from pathlib import Path

import aiohttp
from aiohttp_socks import ProxyConnector
from pydantic import ValidationError

from rss_feed_mail.taxonomy import FeedTree, flatten

logger = logging.getLogger(__name__)


class ConfigFetchError(Exception):
    """Raised when the feed configuration cannot be loaded."""


class FeedConfigSource:
    """Loads and validates the feed taxonomy from a URL or a local file."""

    def __init__(
        self,
        url: str | None = None,
        path: str | Path | None = None,
        timeout: int = 10,
        user_agent: str = "RSS-Feed-Mail/1.0",
        proxy_url: str | None = None,
    ):
        """
        Initialize the source.

        Parameters
        ----------
        url : str | None
            HTTP(S) URL of the JSON document.
        path : str | Path | None
            Local JSON file, used instead of ``url``.
        timeout : int
            HTTP request timeout in seconds.
        user_agent : str
            User-Agent header for HTTP requests.
        proxy_url : str | None
            Optional SOCKS proxy URL.
        """
        if not url and not path:
            raise ValueError("Either url or path is required")
        self.url = url
        self.path = Path(path) if path else None
        self.timeout = timeout
        self.user_agent = user_agent
        self.proxy_url = proxy_url

    async def load(self) -> FeedTree:
        """
        Fetch and validate the taxonomy.

        Raises
        ------
        ConfigFetchError
            If the document cannot be fetched, parsed or validated.
        """
        if self.path is not None:
            logger.info("Loading feed configuration from %s", self.path)
            try:
                payload = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
                raise ConfigFetchError(f"Failed to read feed config {self.path}: {e}") from e
        else:
            payload = await self._fetch()

        try:
            tree = FeedTree.model_validate(payload)
        except ValidationError as e:
            raise ConfigFetchError(f"Invalid feed configuration: {e}") from e

        logger.info("Feed configuration loaded: %d feed(s)", len(flatten(tree)))
        return tree

    async def _fetch(self) -> object:
        logger.info("Fetching feed configuration from %s", self.url)
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        connector = ProxyConnector.from_url(self.proxy_url) if self.proxy_url else None

        try:
            async with aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": self.user_agent},
                connector=connector,
            ) as session:
                async with session.get(self.url) as response:
                    if response.status >= 400:
                        raise ConfigFetchError(
                            f"Failed to fetch feed config: {response.status} {response.reason}"
                        )
                    return await response.json(content_type=None)
        except (
            aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError, json.JSONDecodeError
        ) as e:
            raise ConfigFetchError(f"Failed to fetch feed config from {self.url}: {e}") from e
