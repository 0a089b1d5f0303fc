"""Tests for the keyword and pattern co-occurrence filter."""

from bulletin_radar.relevance import has_ontario_address, is_relevant


def test_keyword_with_case_number_is_relevant():
    assert is_relevant("Power of Sale", "Court File No. CV-24-00012345")


def test_keyword_with_address_is_relevant():
    assert is_relevant("Mortgage enforcement", "Property at 12 Bay Street, Toronto, ON M5J 2R8")


def test_keyword_with_address_without_postal_code_is_relevant():
    assert is_relevant("Tax sale", "Lands at 400 Dundas Street East, Oshawa, Ontario")


def test_keyword_only_is_rejected():
    assert not is_relevant("Residential property prices rise", "Mortgage rates are falling")


def test_case_number_without_keyword_is_rejected():
    assert not is_relevant("Motion to compel", "Court File No. CV-24-00012345")


def test_address_requires_province_token():
    assert not has_ontario_address("12 Bay Street, Toronto")
    assert has_ontario_address("12 Bay Street, Toronto, ON")


def test_missing_fields_are_tolerated():
    assert not is_relevant(None, None)
