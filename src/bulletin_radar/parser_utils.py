"""Text and date helpers shared by the fetcher and extractor."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional, Union

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

_WHITESPACE_RE = re.compile(r"\s+")


def collapse_whitespace(value: Optional[str]) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value).strip()


def html_to_text(html: Optional[str]) -> str:
    """Strip markup from an HTML fragment and return its visible text."""
    if not html:
        return ""
    if "<" not in html:
        return collapse_whitespace(html)
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return collapse_whitespace(soup.get_text(" "))


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def parse_filing_date(
    value: Optional[Union[str, datetime]],
    *,
    default: Optional[datetime] = None,
) -> datetime:
    """Parse a publication date into an aware UTC datetime.

    Naive values are treated as UTC. Anything unparseable falls back to
    ``default`` (or the current time), so the result is never None.
    """
    fallback = default or utc_now()
    if value is None:
        return fallback

    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if not text:
            return fallback
        try:
            dt = date_parser.parse(text)
        except (ValueError, OverflowError):
            return fallback

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
