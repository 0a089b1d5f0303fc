"""Static regular expression and keyword rules used across extraction.

Everything here is compiled once at import time. Order matters in the
ordered tables: callers take the first match.
"""

from __future__ import annotations

import re
from typing import List, Pattern, Tuple

from .models import FilingType

# ----------------------------------------------------------------------
# Real-estate keywords
# ----------------------------------------------------------------------
REAL_ESTATE_KEYWORDS: Tuple[str, ...] = (
    "power of sale",
    "notice of sale",
    "foreclosure",
    "mortgage",
    "construction lien",
    "lien",
    "estate sale",
    "estate of",
    "probate",
    "notice to creditors",
    "tax sale",
    "tax arrears",
    "sheriff sale",
    "bankruptcy",
    "insolvency",
    "receivership",
    "real estate",
    "property",
    "land",
    "residential",
    "commercial",
    "condominium",
    "townhouse",
    "detached",
    "semi-detached",
)

KEYWORD_PATTERN: Pattern[str] = re.compile(
    r"\b(?:" + "|".join(re.escape(keyword).replace(r"\ ", r"\s+") for keyword in REAL_ESTATE_KEYWORDS) + r")\b",
    re.IGNORECASE,
)

# ----------------------------------------------------------------------
# Case numbers, tried in order; group 1 is preferred when present
# ----------------------------------------------------------------------
CASE_NUMBER_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b[A-Z]{2}-\d{2}-\d{6,8}\b"),
    re.compile(r"Court\s+File\s+No\.?\s*:?\s*([A-Z0-9-]*\d[A-Z0-9-]*)", re.IGNORECASE),
    re.compile(r"Case\s+No\.?\s*:?\s*([A-Z0-9-]*\d[A-Z0-9-]*)", re.IGNORECASE),
    re.compile(r"File\s+No\.?\s*:?\s*([A-Z0-9-]*\d[A-Z0-9-]*)", re.IGNORECASE),
)

# ----------------------------------------------------------------------
# Ontario civic addresses
# ----------------------------------------------------------------------
_STREET_SUFFIXES = (
    "Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Court|Ct|Boulevard|Blvd|Crescent|Cres|"
    "Way|Lane|Ln|Place|Pl|Parkway|Pkwy|Trail|Trl|Circle|Cir|Terrace|Terr|Square|Sq|"
    "Highway|Hwy|Gate|Grove|Line|Sideroad"
)
_STREET = (
    r"\b\d{1,6}\s+(?:[A-Za-z0-9'.-]+\s+){0,5}?"
    r"(?i:" + _STREET_SUFFIXES + r")\b\.?"
    r"(?:\s+(?:East|West|North|South|E|W|N|S)\b\.?)?"
)
_CITY = r"[A-Z][A-Za-z.'-]*(?:\s+[A-Z][A-Za-z.'-]*){0,3}"
_PROVINCE = r"(?:ON|Ontario)\b"
_POSTAL_CODE = r"[A-Z]\d[A-Z]\s?\d[A-Z]\d\b"

ADDRESS_FULL_PATTERN: Pattern[str] = re.compile(
    _STREET + r",?\s+" + _CITY + r",?\s+" + _PROVINCE + r"\s*" + _POSTAL_CODE
)
ADDRESS_FALLBACK_PATTERN: Pattern[str] = re.compile(
    _STREET + r"(?:,?\s+" + _CITY + r")?(?:,?\s+" + _PROVINCE + r")?(?:,?\s*" + _POSTAL_CODE + r")?"
)
# Used by the relevance filter: the province token is mandatory there.
ADDRESS_RELEVANCE_PATTERN: Pattern[str] = re.compile(
    _STREET + r"(?:,?\s+" + _CITY + r")??,?\s+" + _PROVINCE + r"(?:\s*" + _POSTAL_CODE + r")?"
)
POSTAL_CODE_PATTERN: Pattern[str] = re.compile(_POSTAL_CODE)
PROVINCE_PATTERN: Pattern[str] = re.compile(r"\b" + _PROVINCE)

# ----------------------------------------------------------------------
# Monetary amounts such as $1,250,000.00 or $5000
# ----------------------------------------------------------------------
AMOUNT_PATTERN: Pattern[str] = re.compile(r"\$\s?((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{2})?)")
MIN_AMOUNT = 1000.0

# ----------------------------------------------------------------------
# Filing type rules, evaluated in order
# ----------------------------------------------------------------------
POWER_OF_SALE_PATTERN: Pattern[str] = re.compile(
    r"power\s+of\s+sale|notice\s+of\s+sale\s+under\s+mortgage", re.IGNORECASE
)

FILING_TYPE_RULES: Tuple[Tuple[FilingType, Pattern[str]], ...] = (
    (FilingType.POWER_OF_SALE, POWER_OF_SALE_PATTERN),
    (FilingType.FORECLOSURE, re.compile(r"foreclos", re.IGNORECASE)),
    (FilingType.BANKRUPTCY, re.compile(r"bankrupt|insolven|\bBIA\b", re.IGNORECASE)),
    (FilingType.ESTATE_SALE, re.compile(r"(?<!real\s)\bestates?\b|probate", re.IGNORECASE)),
    (FilingType.TAX_SALE, re.compile(r"tax\s+sale|tax\s+arrears", re.IGNORECASE)),
    (FilingType.LIEN_PROCEEDING, re.compile(r"\blien\b|\bcharge\b", re.IGNORECASE)),
)

# ----------------------------------------------------------------------
# Priority signals: (pattern, points)
# ----------------------------------------------------------------------
PRIORITY_SIGNALS: Tuple[Tuple[Pattern[str], int], ...] = (
    (re.compile(r"\b(?:urgent|immediate(?:ly)?)\b", re.IGNORECASE), 30),
    (re.compile(r"\b(?:final|notice)\b", re.IGNORECASE), 20),
    (POWER_OF_SALE_PATTERN, 25),
    (re.compile(r"tax\s+sale", re.IGNORECASE), 25),
    (re.compile(r"foreclos", re.IGNORECASE), 20),
    (re.compile(r"receivership|receiver\b", re.IGNORECASE), 15),
)

# Highest matching tier only: (threshold, points)
AMOUNT_PRIORITY_TIERS: List[Tuple[float, int]] = [
    (2_000_000, 25),
    (1_000_000, 20),
    (500_000, 15),
]

HIGH_PRIORITY_THRESHOLD = 50
MEDIUM_PRIORITY_THRESHOLD = 25

# ----------------------------------------------------------------------
# Misc
# ----------------------------------------------------------------------
JURISDICTION_PATTERN: Pattern[str] = re.compile(
    r"\bON\b|(?i:\bOntario\b|\bToronto\b|Superior\s+Court|\bONSC\b)"
)
MIN_CONTENT_LENGTH = 100

# Estate notices
EXECUTOR_PATTERN: Pattern[str] = re.compile(r"Executor:\s*([^,\n]+)[,\n]")
PHONE_PATTERN: Pattern[str] = re.compile(r"Phone:\s*([\d-]+)")
EMAIL_PATTERN: Pattern[str] = re.compile(r"Email:\s*([\w.-]+@[\w.-]+)")
