"""Field extraction from relevant bulletin items."""

from __future__ import annotations

import re
from typing import Dict, Optional

from .models import ExtractedFields, RawItem
from .parser_utils import collapse_whitespace, parse_filing_date
from .patterns import (
    ADDRESS_FALLBACK_PATTERN,
    ADDRESS_FULL_PATTERN,
    AMOUNT_PATTERN,
    CASE_NUMBER_PATTERNS,
    EMAIL_PATTERN,
    EXECUTOR_PATTERN,
    MIN_AMOUNT,
    PHONE_PATTERN,
    POSTAL_CODE_PATTERN,
    PROVINCE_PATTERN,
)

_DOUBLE_COMMA_RE = re.compile(r"\s*,\s*,+")
_TRAILING_PUNCT_RE = re.compile(r"[.,]+$")


def extract_case_number(text: str) -> Optional[str]:
    """Return the first case number found, trying patterns in priority order."""
    for pattern in CASE_NUMBER_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        value = match.group(1) if match.groups() else match.group(0)
        value = (value or "").strip()
        if value:
            return value
    return None


def normalize_address(value: str) -> str:
    normalized = collapse_whitespace(value)
    normalized = _DOUBLE_COMMA_RE.sub(",", normalized)
    return normalized.strip(" ,")


def extract_address(text: str) -> Optional[str]:
    """Return an Ontario civic address when one can be validated.

    The full pattern (with postal code) wins. The fallback is only accepted
    when it still carries a postal code or a province token.
    """
    match = ADDRESS_FULL_PATTERN.search(text)
    if match:
        return normalize_address(match.group(0))

    for candidate in ADDRESS_FALLBACK_PATTERN.finditer(text):
        value = candidate.group(0)
        if POSTAL_CODE_PATTERN.search(value) or PROVINCE_PATTERN.search(value):
            return normalize_address(value)
    return None


def extract_amount(text: str) -> Optional[float]:
    """Return the largest dollar figure of at least 1000, if any."""
    values = []
    for match in AMOUNT_PATTERN.finditer(text):
        try:
            value = float(match.group(1).replace(",", ""))
        except ValueError:
            continue
        if value >= MIN_AMOUNT:
            values.append(value)
    return max(values) if values else None


def _clean_contact_value(match: Optional[re.Match]) -> Optional[str]:
    if not match:
        return None
    value = _TRAILING_PUNCT_RE.sub("", match.group(1).strip())
    return value or None


def parse_estate_contact(text: str) -> Dict[str, Optional[str]]:
    """Pull executor name, phone and email out of an estate notice."""
    return {
        "executor": _clean_contact_value(EXECUTOR_PATTERN.search(text)),
        "phone": _clean_contact_value(PHONE_PATTERN.search(text)),
        "email": _clean_contact_value(EMAIL_PATTERN.search(text)),
    }


class Extractor:
    """Apply the pattern library to a raw item."""

    def extract(self, item: RawItem) -> ExtractedFields:
        text = item.text
        return ExtractedFields(
            text=text,
            filing_date=parse_filing_date(item.published_at),
            case_number=extract_case_number(text),
            address=extract_address(text),
            amount=extract_amount(text),
            estate_contact=parse_estate_contact(f"{item.title}\n{item.description}\n"),
        )
