"""
WebAnalyser: the tool the backend calls to extract metadata from a web page.

The chat core never calls the tool itself; it registers it with the backend
session, and the model decides when to invoke it. Every failure (malformed
URL, network error, unparsable body) is returned as text so the generation
can carry on.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx
from bs4 import BeautifulSoup

from .config import ChatConfig
from .schema import WebPageMetadata

logger = logging.getLogger("fmchat")

__all__ = ["WebAnalyserArguments", "WebAnalyserTool", "validate_url"]

_ALLOWED_SCHEMES = frozenset({"http", "https"})


@dataclass(frozen=True)
class WebAnalyserArguments:
    """Arguments of the WebAnalyser tool."""

    __guides__: ClassVar[dict[str, str]] = {"url": "The URL of the webpage to analyze"}

    url: str


def validate_url(raw: str) -> httpx.URL | None:
    """Return the parsed URL, or ``None`` when *raw* is not a fetchable http(s) URL."""
    candidate = raw.strip()
    if not candidate or any(ch.isspace() for ch in candidate):
        return None
    try:
        url = httpx.URL(candidate)
    except (httpx.InvalidURL, TypeError, ValueError):
        return None
    if url.scheme not in _ALLOWED_SCHEMES or not url.host:
        return None
    return url


def _meta_content(soup: BeautifulSoup, selector: str) -> str | None:
    tag = soup.select_one(selector)
    if tag is None:
        return None
    content = tag.get("content")
    if isinstance(content, list):
        content = " ".join(content)
    content = (content or "").strip()
    return content or None


def parse_metadata(html: str) -> WebPageMetadata:
    """Extract title, Open Graph image and description from an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    title_tag = soup.title
    title = title_tag.get_text(strip=True) if title_tag is not None else ""
    return WebPageMetadata(
        title=title,
        thumbnail=_meta_content(soup, 'meta[property="og:image"]'),
        description=_meta_content(soup, 'meta[name="description"]'),
    )


class WebAnalyserTool:
    """Fetches a page and returns its :class:`WebPageMetadata`.

    An ``httpx.AsyncClient`` may be injected (tests pass one built on
    ``httpx.MockTransport``); otherwise a short-lived client is created per
    call.
    """

    name: ClassVar[str] = "WebAnalyser"
    description: ClassVar[str] = (
        "Analyse a website and return the content in a structured way, "
        "like page title, description and thumbnail"
    )
    arguments: ClassVar[type] = WebAnalyserArguments
    result_schema: ClassVar[type] = WebPageMetadata

    def __init__(
        self,
        config: ChatConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or ChatConfig()
        self._client = client

    @classmethod
    def arguments_schema(cls) -> dict[str, Any]:
        """JSON schema of the tool arguments."""
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": WebAnalyserArguments.__guides__["url"]}
            },
            "required": ["url"],
        }

    async def call(self, arguments: Mapping[str, Any]) -> WebPageMetadata | str:
        """Entry point used by the backend."""
        return await self.extract(str(arguments.get("url") or ""))

    async def extract(self, url: str) -> WebPageMetadata | str:
        parsed = validate_url(url)
        if parsed is None:
            logger.info("[FMChat WebAnalyser] Rejected invalid URL %r", url)
            return f"Invalid URL provided: {url}"

        try:
            html = await self._fetch(parsed)
        except httpx.TimeoutException:
            return self._failure(url, f"request timed out after {self.config.fetch_timeout:.0f}s")
        except httpx.HTTPStatusError as exc:
            response = exc.response
            return self._failure(url, f"HTTP {response.status_code} {response.reason_phrase}")
        except httpx.HTTPError as exc:
            return self._failure(url, f"{type(exc).__name__}: {exc}")

        try:
            metadata = parse_metadata(html)
        except Exception as exc:
            return self._failure(url, f"could not parse page ({type(exc).__name__}: {exc})")

        logger.debug("[FMChat WebAnalyser] %s -> %r", url, metadata)
        return metadata

    async def _fetch(self, url: httpx.URL) -> str:
        if self._client is not None:
            return await self._get(self._client, url)
        async with httpx.AsyncClient(
            timeout=self.config.fetch_timeout,
            follow_redirects=self.config.follow_redirects,
            headers={"User-Agent": self.config.user_agent},
        ) as client:
            return await self._get(client, url)

    @staticmethod
    async def _get(client: httpx.AsyncClient, url: httpx.URL) -> str:
        response = await client.get(url)
        response.raise_for_status()
        return response.text

    @staticmethod
    def _failure(url: str, detail: str) -> str:
        logger.warning("[FMChat WebAnalyser] Failed to fetch %s: %s", url, detail)
        return f"Failed to fetch {url}: {detail}"
