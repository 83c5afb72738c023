"""Tests for text cleaning and field extraction."""

from datetime import datetime

from grant_harvester.core.text_cleaner import (
    calculate_quality_score,
    clean_text,
    extract_deadline,
    extract_funding_amount,
    extract_location_eligibility,
    normalize_key,
    parse_amount,
)


class TestCleanText:
    """Tests for clean_text function."""

    def test_entities_whitespace_and_ellipsis(self):
        """Test entity decoding, whitespace collapse and trailing ellipsis."""
        assert clean_text("Grant &amp; Research   Program...") == "Grant & Research Program"

    def test_idempotent(self):
        """Test cleaning already-clean text changes nothing."""
        once = clean_text("<p>Arts &amp; Culture</p>\n\n• Open call (more)")
        assert clean_text(once) == once

    def test_strips_tags(self):
        """Test markup residue is removed."""
        assert clean_text("<p>Hello <b>world</b></p>") == "Hello world"

    def test_strips_script_blocks(self):
        """Test script content does not leak into text."""
        assert clean_text("Before<script>var x = 1;</script> after") == "Before after"

    def test_list_markers(self):
        """Test leading list markers are removed per line."""
        assert clean_text("• First item\n- Second item\n1. Third") == "First item Second item Third"

    def test_keeps_list_markers_when_disabled(self):
        """Test bullets survive when remove_bullets is off."""
        assert clean_text("- Item", remove_bullets=False) == "- Item"

    def test_truncation(self):
        """Test long text is truncated with an ellipsis."""
        assert clean_text("a" * 20, max_length=10) == "a" * 10 + "..."

    def test_double_escaped(self):
        """Test double-escaped entities are fully decoded."""
        assert clean_text("Health &amp;amp; Safety") == "Health & Safety"

    def test_empty_input(self):
        """Test empty and None input give an empty string."""
        assert clean_text("") == ""
        assert clean_text(None) == ""


class TestNormalizeKey:
    """Tests for normalize_key function."""

    def test_punctuation_and_case(self):
        """Test punctuation and case are ignored."""
        assert normalize_key("The  Grant, Program!") == "the grant program"

    def test_none(self):
        """Test None gives empty key."""
        assert normalize_key(None) == ""


class TestExtractFundingAmount:
    """Tests for extract_funding_amount function."""

    def test_dollar_range(self):
        """Test dollar range with separators."""
        result = extract_funding_amount("$100,000 - $500,000")
        assert result.min == 100000
        assert result.max == 500000
        assert result.currency == "$"

    def test_suffix_range(self):
        """Test K suffixes with "to" separator."""
        result = extract_funding_amount("$100K to $500K")
        assert result.min == 100000
        assert result.max == 500000

    def test_up_to(self):
        """Test "up to" gives only a maximum."""
        result = extract_funding_amount("up to €2.5M")
        assert result.min is None
        assert result.max == 2500000
        assert result.currency == "€"

    def test_single_amount(self):
        """Test single amount sets min and max."""
        result = extract_funding_amount("Awards of $50,000 each")
        assert result.min == 50000
        assert result.max == 50000

    def test_currency_code(self):
        """Test currency codes are detected."""
        result = extract_funding_amount("EUR 850,000")
        assert result.currency == "EUR"
        assert result.max == 850000

    def test_no_amount(self):
        """Test text without amount returns None."""
        assert extract_funding_amount("TBD") is None
        assert extract_funding_amount(None) is None

    def test_parse_amount_words(self):
        """Test magnitude words."""
        assert parse_amount("500 thousand") == 500000
        assert parse_amount("3 billion") == 3_000_000_000
        assert parse_amount("abc") is None


class TestExtractDeadline:
    """Tests for extract_deadline function."""

    def test_us_numeric(self):
        """Test US month/day/year."""
        assert extract_deadline("Due 12/31/2024") == datetime(2024, 12, 31)

    def test_day_first_numeric(self):
        """Test day-first when the first number cannot be a month."""
        assert extract_deadline("31/12/2024") == datetime(2024, 12, 31)

    def test_iso(self):
        """Test ISO date."""
        assert extract_deadline("Closes 2024-06-15") == datetime(2024, 6, 15)

    def test_month_name_first(self):
        """Test "Month DD, YYYY"."""
        assert extract_deadline("Applications due March 15, 2024") == datetime(2024, 3, 15)

    def test_day_first_month_name(self):
        """Test "DD Month YYYY"."""
        assert extract_deadline("Closing 1st Sept 2025") == datetime(2025, 9, 1)

    def test_invalid_date(self):
        """Test impossible dates are rejected."""
        assert extract_deadline("2024-02-30") is None

    def test_no_date(self):
        """Test text without a date."""
        assert extract_deadline("Rolling deadline") is None


class TestExtractLocationEligibility:
    """Tests for extract_location_eligibility function."""

    def test_states_codes_and_scope(self):
        """Test states, codes and scope terms in discovery order."""
        result = extract_location_eligibility("Open to nonprofits in California and NY, or nationwide")
        assert result == ["California", "NY", "nationwide"]

    def test_lowercase_words_not_state_codes(self):
        """Test common words are not mistaken for state codes."""
        assert extract_location_eligibility("in or me") == []

    def test_deduplicates(self):
        """Test repeated mentions are reported once."""
        assert extract_location_eligibility("Texas and texas") == ["Texas"]


class TestCalculateQualityScore:
    """Tests for calculate_quality_score function."""

    def test_empty(self):
        """Test empty text scores zero."""
        assert calculate_quality_score("") == 0

    def test_rich_text_beats_stub(self):
        """Test a full description outranks a truncated stub."""
        rich = (
            "The Community Health Grant funds clinics serving rural counties. "
            "Awards range from $10,000 to $50,000. Apply before the deadline "
            "on March 15, 2024. Nonprofits and tribal organizations may apply."
        )
        assert calculate_quality_score(rich) > calculate_quality_score("Read more...")

    def test_bounds(self):
        """Test score stays within 0-100."""
        assert 0 <= calculate_quality_score("x") <= 100
