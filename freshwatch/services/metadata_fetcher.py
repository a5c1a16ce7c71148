"""Fetch submission pages and extract their metadata"""

import logging
import re
from typing import Any, Protocol
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from freshwatch.config import config
from freshwatch.models.content import FetchedPage
from freshwatch.services.errors import FetchTimeoutError, NetworkError

logger = logging.getLogger(__name__)

# Elements that never hold a page's main text
NOISE_TAGS = ["script", "style", "noscript", "nav", "header", "footer", "aside", "form"]


class MetadataFetcher(Protocol):
    """Anything that can fetch a URL and return its extracted metadata"""

    async def fetch(self, url: str) -> FetchedPage: ...


class HttpMetadataFetcher:
    """Fetch pages over HTTP and extract title, description, tags and images"""

    def __init__(
        self,
        timeout: float | None = None,
        user_agent: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize fetcher

        Args:
            timeout: Request timeout in seconds (defaults to config)
            user_agent: User-Agent header (defaults to config)
            client: Pre-configured client, mainly for tests
        """
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or config.fetch_timeout_seconds),
            follow_redirects=True,
            headers={"User-Agent": user_agent or config.fetch_user_agent},
        )

    async def fetch(self, url: str) -> FetchedPage:
        """
        Fetch a page and extract its metadata

        Server errors and rate limiting are reported as transient network errors;
        other responses are returned with their status code.

        Args:
            url: Page URL

        Returns:
            FetchedPage with extracted metadata

        Raises:
            FetchTimeoutError: If the request timed out
            NetworkError: If the request failed or the server answered 5xx/429
        """
        try:
            response = await self.client.get(url)
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout fetching {url}: {e}")
            raise FetchTimeoutError(url, f"timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Network error fetching {url}: {e}")
            raise NetworkError(url, str(e)) from e

        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"Server error {response.status_code} for {url}")
            raise NetworkError(url, f"HTTP {response.status_code}")

        body = response.text
        page = FetchedPage(
            url=url,
            status_code=response.status_code,
            bytes_processed=len(response.content),
            network_requests=1 + len(response.history),
        )

        if response.status_code < 400 and body.strip():
            content, metadata, images = self.parse(body, str(response.url))
            page = page.model_copy(
                update={"raw_content": content, "metadata": metadata, "images": images}
            )

        logger.debug(f"Fetched {url} ({response.status_code}, {page.bytes_processed} bytes)")
        return page

    def parse(self, html_content: str, url: str) -> tuple[str, dict[str, Any], list[str]]:
        """
        Extract main text, metadata and image URLs from HTML

        Args:
            html_content: Page HTML
            url: Page URL, used to resolve relative image links

        Returns:
            Tuple of (main text, metadata, image URLs)
        """
        soup = BeautifulSoup(html_content, "lxml")

        metadata: dict[str, Any] = {}

        title = self._meta(soup, "og:title") or (
            soup.title.get_text(strip=True) if soup.title else None
        )
        if title:
            metadata["title"] = title

        description = self._meta(soup, "og:description") or self._meta(soup, "description")
        if description:
            metadata["description"] = description

        keywords = self._meta(soup, "keywords")
        if keywords:
            metadata["tags"] = [tag.strip() for tag in keywords.split(",") if tag.strip()]

        author = self._meta(soup, "author")
        if author:
            metadata["author"] = author

        published = self._meta(soup, "article:published_time")
        if published:
            metadata["published_date"] = published

        images = []
        for key in ("og:image", "twitter:image"):
            image = self._meta(soup, key)
            if image:
                resolved = urljoin(url, image)
                if resolved not in images:
                    images.append(resolved)

        for tag in soup(NOISE_TAGS):
            tag.decompose()
        main = soup.find("main") or soup.find("article") or soup.body or soup
        content = re.sub(r"\s+", " ", main.get_text(" ", strip=True)).strip()

        return content, metadata, images

    def _meta(self, soup: BeautifulSoup, key: str) -> str | None:
        """Read a <meta> tag by name or property"""
        tag = soup.find("meta", attrs={"property": key}) or soup.find("meta", attrs={"name": key})
        if tag is None:
            return None
        value = tag.get("content")
        if not value:
            return None
        return str(value).strip() or None

    async def close(self) -> None:
        await self.client.aclose()
