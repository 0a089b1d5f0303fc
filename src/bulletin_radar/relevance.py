"""Keyword plus pattern co-occurrence filter for raw items."""

from __future__ import annotations

from typing import Optional

from .patterns import ADDRESS_RELEVANCE_PATTERN, CASE_NUMBER_PATTERNS, KEYWORD_PATTERN


def has_real_estate_keyword(text: str) -> bool:
    return KEYWORD_PATTERN.search(text) is not None


def has_case_number(text: str) -> bool:
    return any(pattern.search(text) for pattern in CASE_NUMBER_PATTERNS)


def has_ontario_address(text: str) -> bool:
    return ADDRESS_RELEVANCE_PATTERN.search(text) is not None


def is_relevant(title: Optional[str], body: Optional[str]) -> bool:
    """Return True when an item names a real-estate event and can be pinned down.

    A keyword alone is too noisy: the item must also carry a case number or
    an Ontario civic address.
    """
    text = f"{title or ''} {body or ''}"
    if not has_real_estate_keyword(text):
        return False
    return has_case_number(text) or has_ontario_address(text)
