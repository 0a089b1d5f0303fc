from datetime import datetime, timezone

import pytest

from bulletin_radar.models import FilingType, Finding, Priority


@pytest.fixture
def make_finding():
    """Factory for findings with sensible defaults."""

    def _make(
        title="Power of sale",
        *,
        case_number="CV-24-00012345",
        address="123 Main Street, Toronto, ON M5V 3A8",
        priority=Priority.HIGH,
        accuracy=90,
        filing_date=None,
        natural_key=None,
        amount=750_000.0,
        filing_type=FilingType.POWER_OF_SALE,
    ):
        filed = filing_date or datetime.now(timezone.utc)
        return Finding(
            id=f"id-{title}",
            title=title,
            filing_type=filing_type,
            filing_date=filed,
            priority=priority,
            accuracy=accuracy,
            opportunity_score=80,
            source="Test Source",
            link=f"https://example.test/{title}",
            raw_content=title,
            natural_key=natural_key or f"key-{title}-{case_number}",
            case_number=case_number,
            address=address,
            amount=amount,
            jurisdiction="ONSC",
        )

    return _make
