"""Tests for adapter post-processing helpers."""

from grant_harvester.core.models import GrantCategory
from grant_harvester.sources.enrichment import (
    clean_multilingual_text,
    convert_to_usd,
    currency_code,
    detect_funding_type,
    detect_language,
    extract_regions,
    extract_tags,
    first_label,
    infer_category,
    match_labels,
)


class TestLanguage:
    """Tests for language detection and funder name normalization."""

    def test_spanish(self):
        """Test indicator voting picks Spanish."""
        assert detect_language("Proyecto de desarrollo del Banco Mundial en América") == "es"

    def test_default(self):
        """Test empty or indicator-free text gives the default."""
        assert detect_language("") == "en"
        assert detect_language("xyz", default="fr") == "fr"

    def test_funder_alias(self):
        """Test local names of the funder are rewritten."""
        assert clean_multilingual_text("Financiado por el Banco Mundial", "es") == "Financiado por el World Bank"
        assert clean_multilingual_text("Banco Mundial", "en") == "Banco Mundial"
        assert clean_multilingual_text(None, "es") == ""


class TestRegions:
    """Tests for region extraction."""

    def test_regions_in_table_order(self):
        """Test regions follow the table order, once each."""
        assert extract_regions("Kenya and India", "Nigeria") == ["sub-saharan-africa", "south-asia"]

    def test_no_text(self):
        """Test missing text gives no regions."""
        assert extract_regions(None, "") == []


class TestCurrency:
    """Tests for USD conversion."""

    def test_euro(self):
        """Test euro amounts are converted at the fixed rate."""
        result = convert_to_usd("EUR 850,000")
        assert result["original_currency"] == "EUR"
        assert result["converted_amount_usd"] == {"min": 1000000.0, "max": 1000000.0}
        assert result["conversion_rate"] == 0.85

    def test_dollars_unchanged(self):
        """Test dollar amounts keep their value."""
        result = convert_to_usd("$2.5 million")
        assert result["converted_amount_usd"]["max"] == 2500000.0
        assert result["conversion_rate"] == 1.0

    def test_no_amount(self):
        """Test text without an amount."""
        assert convert_to_usd("n/a") is None
        assert convert_to_usd(None) is None

    def test_currency_code(self):
        """Test symbols and codes map to ISO codes."""
        assert currency_code(None) == "USD"
        assert currency_code("€") == "EUR"
        assert currency_code("gbp") == "GBP"


class TestClassification:
    """Tests for keyword-based classification."""

    def test_whole_word_matching(self):
        """Test short keywords do not match inside other words."""
        keywords = {GrantCategory.TECHNOLOGY_INNOVATION: ["ai"]}
        default = GrantCategory.COMMUNITY_DEVELOPMENT
        assert infer_category("maintain the roads", keywords, default) == default
        assert infer_category("AI tools for farmers", keywords, default) == GrantCategory.TECHNOLOGY_INNOVATION

    def test_count_occurrences(self):
        """Test occurrence counting changes the winner."""
        keywords = {
            GrantCategory.EDUCATION_TRAINING: ["education", "school"],
            GrantCategory.HEALTHCARE_PUBLIC_HEALTH: ["health"],
        }
        text = "education school health health health"
        default = GrantCategory.COMMUNITY_DEVELOPMENT
        assert infer_category(text, keywords, default) == GrantCategory.EDUCATION_TRAINING
        assert infer_category(text, keywords, default, count_occurrences=True) == GrantCategory.HEALTHCARE_PUBLIC_HEALTH

    def test_match_labels(self):
        """Test labels are de-duplicated in mapping order."""
        mapping = {"climate": "environment", "carbon": "environment", "gender": "equity"}
        assert match_labels("Climate, carbon and gender", mapping) == ["environment", "equity"]
        assert match_labels(None, mapping) == []

    def test_first_label(self):
        """Test the first matching label wins."""
        mapping = {"grant": ["grant"], "loan": ["loan", "credit"]}
        assert first_label("A loan for roads", mapping, "other") == "loan"
        assert first_label("Nothing here", mapping, "other") == "other"

    def test_extract_tags(self):
        """Test base tags come first and matches follow."""
        mapping = {"ida": ["ida"], "investment-lending": ["infrastructure"], "health": ["health"]}
        tags = extract_tags("ida credit for infrastructure", ["world-bank"], mapping)
        assert tags == ["world-bank", "ida", "investment-lending"]

    def test_funding_type(self):
        """Test instrument detection precedence."""
        assert detect_funding_type("Procurement notice for a contract") == "procurement"
        assert detect_funding_type("A credit line") == "loan"
        assert detect_funding_type("Trust fund grant") == "grant"
        assert detect_funding_type("Technical assistance") == "technical-assistance"
        assert detect_funding_type(None) == "development-financing"
