"""Source fetching: RSS feeds and permitted notice webpages."""

from __future__ import annotations

import asyncio
import hashlib
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import feedparser
from bs4 import BeautifulSoup

from .config import PipelineConfig
from .errors import ParseError
from .http_client import HTTPClient
from .logging_config import get_logger
from .models import RawItem, Source, SourceStrategy
from .parser_utils import collapse_whitespace, html_to_text

logger = get_logger("fetcher")

DEFAULT_SELECTORS: Dict[str, str] = {
    "notices": "article, .notice",
    "title": "h1, h2, h3, h4, strong",
    "date": "time, .date",
}


async def parse_feed_text(payload: Any) -> feedparser.FeedParserDict:
    """Parse RSS/Atom content in a worker thread."""
    return await asyncio.to_thread(feedparser.parse, payload)


def parse_feed_entries(feed: feedparser.FeedParserDict, source_name: str) -> List[RawItem]:
    """Turn parsed feed entries into raw items.

    A payload that is not recognizable as RSS/Atom and produced no entries
    raises ``ParseError``. Individual entries without a title are dropped.
    """
    if not feed.entries and not feed.get("version"):
        reason = feed.get("bozo_exception") or "unrecognized feed format"
        raise ParseError(f"Malformed feed from {source_name}: {reason}")
    if feed.get("bozo"):
        logger.warning("Feed from %s parsed with errors: %s", source_name, feed.get("bozo_exception"))

    items: List[RawItem] = []
    for entry in feed.entries:
        try:
            items.append(_entry_to_item(entry, source_name))
        except ParseError as exc:
            logger.debug("Dropping entry from %s: %s", source_name, exc)
    return items


def _entry_to_item(entry: Any, source_name: str) -> RawItem:
    title = collapse_whitespace(entry.get("title"))
    if not title:
        raise ParseError("entry has no title")

    description = entry.get("summary") or entry.get("description") or ""
    if not description and entry.get("content"):
        description = entry["content"][0].get("value", "")

    return RawItem(
        title=title,
        description=html_to_text(description),
        link=(entry.get("link") or "").strip(),
        source_name=source_name,
        published_at=entry.get("published") or entry.get("updated"),
        guid=(entry.get("id") or "").strip() or None,
    )


def parse_notice_page(
    html: str,
    *,
    page_url: str,
    source_name: str,
    selectors: Optional[Dict[str, str]] = None,
) -> List[RawItem]:
    """Extract notice blocks from a permitted webpage."""
    rules = {**DEFAULT_SELECTORS, **(selectors or {})}
    soup = BeautifulSoup(html, "lxml")

    items: List[RawItem] = []
    for block in soup.select(rules["notices"]):
        text = collapse_whitespace(block.get_text(" "))
        if not text:
            continue

        title_node = block.select_one(rules["title"])
        title = collapse_whitespace(title_node.get_text(" ")) if title_node else text[:120]

        date_node = block.select_one(rules["date"])
        published_at = None
        if date_node:
            published_at = date_node.get("datetime") or collapse_whitespace(date_node.get_text(" "))

        anchor = block.find("a", href=True)
        if anchor:
            link = urljoin(page_url, anchor["href"])
            guid = link
        else:
            digest = hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]
            link = page_url
            guid = f"{page_url}#{digest}"

        items.append(
            RawItem(
                title=title,
                description=text,
                link=link,
                source_name=source_name,
                published_at=published_at,
                guid=guid,
            )
        )
    return items


class Fetcher:
    """Retrieve a source and return its raw items. Never retries."""

    def __init__(self, http_client: HTTPClient, config: Optional[PipelineConfig] = None) -> None:
        self.http_client = http_client
        self.config = config or http_client.config

    async def fetch(self, source: Source, timeout_ms: Optional[int] = None) -> List[RawItem]:
        timeout_seconds = (timeout_ms if timeout_ms is not None else self.config.fetch_timeout_ms) / 1000.0
        response = await self.http_client.get(source.fetch_url, timeout_seconds=timeout_seconds)

        if source.strategy is SourceStrategy.RSS:
            feed = await parse_feed_text(response.content)
            items = parse_feed_entries(feed, source.name)
        else:
            items = parse_notice_page(
                response.text,
                page_url=source.fetch_url,
                source_name=source.name,
                selectors=source.selectors,
            )

        logger.info("Fetched %s items from %s", len(items), source.name)
        return items
