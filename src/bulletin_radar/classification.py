"""Filing-type classification and scoring for extracted items.

The classifier turns extracted fields into a :class:`Finding`. Filing type is
chosen by an ordered rule table, and priority, accuracy and opportunity are
additive scores over fixed signals.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime
from typing import Any, Dict, Optional, Pattern, Sequence, Tuple, Union

from .models import ExtractedFields, FilingType, Finding, Priority, RawItem, Source
from .patterns import (
    AMOUNT_PRIORITY_TIERS,
    FILING_TYPE_RULES,
    HIGH_PRIORITY_THRESHOLD,
    JURISDICTION_PATTERN,
    MEDIUM_PRIORITY_THRESHOLD,
    MIN_CONTENT_LENGTH,
    PRIORITY_SIGNALS,
)
from .postprocess import dedupe_key

RuleSpec = Tuple[Union[FilingType, str], Union[str, Pattern[str]]]


def _hash_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def finding_id(title: str, filing_date: datetime) -> str:
    """Deterministic display id derived from title and filing date."""
    return _hash_text(f"{title}|{filing_date.isoformat()}")[:16]


def _update_bayes(prior: float, prob_true: float, prob_false: float, evidence: bool) -> float:
    p_given_true = prob_true if evidence else 1 - prob_true
    p_given_false = prob_false if evidence else 1 - prob_false
    return (prior * p_given_true) / (prior * p_given_true + (1 - prior) * p_given_false)


def score_executor_contact(contact: Dict[str, Optional[str]]) -> float:
    """Confidence that an estate notice names a reachable executor."""
    probability = 0.5
    probability = _update_bayes(probability, 0.9, 0.1, bool(contact.get("executor")))
    probability = _update_bayes(probability, 0.8, 0.2, bool(contact.get("phone")))
    probability = _update_bayes(probability, 0.7, 0.3, bool(contact.get("email")))
    return probability


class FindingClassifier:
    """Classifies and scores extracted bulletin items."""

    OPPORTUNITY_BASE = 40
    TYPE_BONUSES: Dict[FilingType, int] = {
        FilingType.POWER_OF_SALE: 30,
        FilingType.TAX_SALE: 25,
        FilingType.FORECLOSURE: 25,
        FilingType.BANKRUPTCY: 20,
        FilingType.ESTATE_SALE: 15,
        FilingType.LIEN_PROCEEDING: 10,
    }
    DEFAULT_TYPE_BONUS = 5
    PRIORITY_BONUSES: Dict[Priority, int] = {
        Priority.HIGH: 20,
        Priority.MEDIUM: 10,
    }

    ACCURACY_CASE_NUMBER = 25
    ACCURACY_ADDRESS = 25
    ACCURACY_AMOUNT = 20
    ACCURACY_TYPED = 15
    ACCURACY_CONTENT_LENGTH = 10
    ACCURACY_JURISDICTION = 5

    def __init__(self, custom_rules: Optional[Sequence[RuleSpec]] = None) -> None:
        self.custom_rules = list(custom_rules or [])
        self._init_rules()

    def _init_rules(self) -> None:
        """Compile custom rules ahead of the built-in table."""
        rules = []
        for filing_type, pattern in self.custom_rules:
            compiled = re.compile(pattern, re.IGNORECASE) if isinstance(pattern, str) else pattern
            rules.append((FilingType(filing_type), compiled))
        self.rules: Tuple[Tuple[FilingType, Pattern[str]], ...] = tuple(rules) + FILING_TYPE_RULES

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------
    def classify_filing_type(self, text: str) -> FilingType:
        for filing_type, pattern in self.rules:
            if pattern.search(text):
                return filing_type
        return FilingType.OTHER_LEGAL

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    @staticmethod
    def priority_score(text: str, amount: Optional[float]) -> int:
        score = sum(points for pattern, points in PRIORITY_SIGNALS if pattern.search(text))
        if amount:
            for threshold, points in AMOUNT_PRIORITY_TIERS:
                if amount > threshold:
                    score += points
                    break
        return score

    @staticmethod
    def bucket_priority(score: int) -> Priority:
        if score >= HIGH_PRIORITY_THRESHOLD:
            return Priority.HIGH
        if score >= MEDIUM_PRIORITY_THRESHOLD:
            return Priority.MEDIUM
        return Priority.LOW

    def accuracy_score(self, fields: ExtractedFields, filing_type: FilingType) -> int:
        score = 0
        if fields.case_number:
            score += self.ACCURACY_CASE_NUMBER
        if fields.address:
            score += self.ACCURACY_ADDRESS
        if fields.amount is not None:
            score += self.ACCURACY_AMOUNT
        if filing_type is not FilingType.OTHER_LEGAL:
            score += self.ACCURACY_TYPED
        if len(fields.text) >= MIN_CONTENT_LENGTH:
            score += self.ACCURACY_CONTENT_LENGTH
        if JURISDICTION_PATTERN.search(fields.text):
            score += self.ACCURACY_JURISDICTION
        return min(100, score)

    def opportunity_score(
        self,
        filing_type: FilingType,
        priority: Priority,
        accuracy: int,
        *,
        has_address: bool,
        has_case_number: bool,
    ) -> int:
        score = self.OPPORTUNITY_BASE
        score += self.TYPE_BONUSES.get(filing_type, self.DEFAULT_TYPE_BONUS)
        score += self.PRIORITY_BONUSES.get(priority, 0)
        if accuracy > 80:
            score += 10
        if has_address and has_case_number:
            score += 5
        return max(0, min(100, score))

    # ------------------------------------------------------------------
    # Finding assembly
    # ------------------------------------------------------------------
    @staticmethod
    def natural_key(item: RawItem, fields: ExtractedFields, source_name: str) -> str:
        """Persistence key: feed GUID, else link, else a content hash."""
        if item.guid:
            return item.guid
        if item.link:
            return item.link
        key = dedupe_key(fields.case_number, fields.address, item.title)
        return _hash_text(f"{source_name}|{key}")

    def build_finding(
        self,
        item: RawItem,
        fields: ExtractedFields,
        source: Optional[Source] = None,
    ) -> Finding:
        filing_type = self.classify_filing_type(fields.text)
        priority = self.bucket_priority(self.priority_score(fields.text, fields.amount))
        accuracy = self.accuracy_score(fields, filing_type)
        opportunity = self.opportunity_score(
            filing_type,
            priority,
            accuracy,
            has_address=bool(fields.address),
            has_case_number=bool(fields.case_number),
        )

        jurisdiction = source.jurisdiction if source else None
        if not jurisdiction:
            marker = JURISDICTION_PATTERN.search(fields.text)
            jurisdiction = marker.group(0) if marker else None

        metadata: Dict[str, Any] = {}
        if filing_type is FilingType.ESTATE_SALE and fields.estate_contact:
            contact = dict(fields.estate_contact)
            contact["confidence"] = round(score_executor_contact(contact), 4)
            metadata["estate_contact"] = contact

        source_name = source.name if source else item.source_name
        return Finding(
            id=finding_id(item.title, fields.filing_date),
            title=item.title,
            filing_type=filing_type,
            filing_date=fields.filing_date,
            priority=priority,
            accuracy=accuracy,
            opportunity_score=opportunity,
            source=source_name,
            link=item.link,
            raw_content=fields.text,
            natural_key=self.natural_key(item, fields, source_name),
            case_number=fields.case_number,
            address=fields.address,
            amount=fields.amount,
            jurisdiction=jurisdiction,
            metadata=metadata,
        )
