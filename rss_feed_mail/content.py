"""
Best-effort article content extraction.

Used to replace short feed summaries with the body of the linked article.
"""

import asyncio
import logging

import aiohttp
from aiohttp_socks import ProxyConnector
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# Tried in order; the first non-empty match wins
CONTENT_SELECTORS = (
    "article",
    ".article",
    ".post-content",
    ".entry-content",
    ".content",
    "#content",
    "main",
    ".main",
)

BOILERPLATE_SELECTORS = "script, style, nav, header, footer, aside, .sidebar"


def extract_main_content(page: str) -> str:
    """
    Extract the main content region of an HTML page.

    Parameters
    ----------
    page : str
        Full HTML document.

    Returns
    -------
    str
        Inner HTML of the first matching content region, or of ``<body>``
        with boilerplate removed. Empty string if nothing is left.
    """
    soup = BeautifulSoup(page, "html.parser")

    for selector in CONTENT_SELECTORS:
        element = soup.select_one(selector)
        if element is not None:
            inner = element.decode_contents().strip()
            if inner:
                logger.debug("Extracted content using selector '%s'", selector)
                return inner

    for element in soup.select(BOILERPLATE_SELECTORS):
        element.decompose()

    body = soup.body
    if body is None:
        return ""
    return body.decode_contents().strip()


class ArticleExtractor:
    """Downloads article pages and extracts their main content."""

    def __init__(
        self,
        timeout: int = 10,
        user_agent: str = "RSS-Feed-Mail/1.0",
        proxy_url: str | None = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.proxy_url = proxy_url
        self._session: aiohttp.ClientSession | None = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            headers = {"User-Agent": self.user_agent}

            connector = None
            if self.proxy_url:
                connector = ProxyConnector.from_url(self.proxy_url)

            self._session = aiohttp.ClientSession(
                timeout=timeout, headers=headers, connector=connector
            )
        return self._session

    async def fetch_full_content(self, url: str) -> str | None:
        """
        Download an article and extract its main content.

        Returns
        -------
        str | None
            Extracted HTML, or None if the page could not be fetched or
            had no content.
        """
        if not url:
            return None

        session = await self._get_session()
        try:
            async with session.get(url) as response:
                response.raise_for_status()
                page = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
            logger.warning("Failed to fetch article content from %s: %s", url, e)
            return None

        content = extract_main_content(page)
        if not content:
            logger.info("Article contains no readable content: %s", url)
            return None
        return content

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "ArticleExtractor":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
