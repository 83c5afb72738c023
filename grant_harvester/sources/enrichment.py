"""
Post-processing helpers shared by source adapters.

Keyword-voting language detection, region extraction, currency
conversion to USD, category inference, label matching and funding-type
detection. All functions are pure and work on free text.
"""

import re
from typing import Iterable, Optional

from grant_harvester.core.models import GrantCategory
from grant_harvester.core.text_cleaner import clean_text, extract_funding_amount

# Units of each currency per 1 USD
CURRENCY_RATES = {
    "USD": 1.0,
    "EUR": 0.85,
    "GBP": 0.73,
    "JPY": 149.0,
    "CNY": 7.2,
    "INR": 83.0,
    "BRL": 5.0,
    "RUB": 92.0,
    "ZAR": 18.5,
    "SDR": 0.75,
}

CURRENCY_SYMBOLS = {
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
}

LANGUAGE_INDICATORS = {
    "es": ["proyecto", "desarrollo", "financiamiento", "banco mundial", "américa"],
    "fr": ["projet", "développement", "financement", "banque mondiale", "afrique"],
    "ar": ["مشروع", "تنمية", "تمويل", "البنك الدولي"],
    "zh": ["项目", "发展", "资金", "世界银行"],
    "en": ["project", "development", "funding", "world bank", "opportunity"],
}

REGION_COUNTRIES = {
    "sub-saharan-africa": ["africa", "african", "nigeria", "kenya", "ghana", "ethiopia", "tanzania"],
    "east-asia-pacific": ["china", "indonesia", "philippines", "vietnam", "thailand", "malaysia"],
    "south-asia": ["india", "pakistan", "bangladesh", "sri lanka", "nepal", "afghanistan"],
    "latin-america-caribbean": ["brazil", "mexico", "argentina", "colombia", "peru", "chile"],
    "middle-east-north-africa": ["egypt", "morocco", "tunisia", "jordan", "lebanon", "iraq"],
    "europe-central-asia": ["russia", "turkey", "ukraine", "poland", "romania", "kazakhstan"],
}

# Local names of the World Bank rewritten to English, per language
FUNDER_ALIASES = {
    "es": re.compile(r"\b(Banco Mundial|BM)\b", re.IGNORECASE),
    "fr": re.compile(r"\b(Banque Mondiale|BM)\b", re.IGNORECASE),
}


def _contains(text: str, keyword: str) -> bool:
    """Whole-word, case-insensitive match for Latin keywords; substring otherwise."""
    if keyword.isascii():
        return re.search(rf"\b{re.escape(keyword)}\b", text) is not None
    return keyword in text


def _count(text: str, keyword: str) -> int:
    if keyword.isascii():
        return len(re.findall(rf"\b{re.escape(keyword)}\b", text))
    return text.count(keyword)


def detect_language(text: Optional[str], default: str = "en") -> str:
    """
    Guess the language of text by indicator-word voting.

    Ties and texts without indicators give ``default``.
    """
    if not text:
        return default

    lower = text.lower()
    best, best_score = default, 0
    for language, indicators in LANGUAGE_INDICATORS.items():
        score = sum(1 for word in indicators if _contains(lower, word))
        if score > best_score:
            best, best_score = language, score
    return best


def clean_multilingual_text(text: Optional[str], language: str, max_length: int = 8000) -> str:
    """Clean text and normalize local spellings of the funder's name."""
    if not text:
        return ""
    cleaned = clean_text(text, max_length=max_length)
    pattern = FUNDER_ALIASES.get(language)
    if pattern is not None:
        cleaned = pattern.sub("World Bank", cleaned)
    return cleaned


def extract_regions(*texts: Optional[str]) -> list[str]:
    """Regions whose countries are mentioned in any of texts."""
    content = " ".join(t for t in texts if t).lower()
    return [
        region for region, countries in REGION_COUNTRIES.items()
        if any(_contains(content, country) for country in countries)
    ]


def currency_code(currency: Optional[str]) -> str:
    """ISO code for a symbol or code; unknown or missing means USD."""
    if not currency:
        return "USD"
    return CURRENCY_SYMBOLS.get(currency, currency.upper())


def convert_to_usd(funding_text: Optional[str]) -> Optional[dict]:
    """
    Parse a funding string and convert it to USD.

    Args:
        funding_text: Free-text amount such as "EUR 2.5 million"

    Returns:
        Dict with original_currency, original_amount,
        converted_amount_usd and conversion_rate, or None when no amount
        is present
    """
    amount = extract_funding_amount(funding_text)
    if amount is None:
        return None

    code = currency_code(amount.currency)
    rate = CURRENCY_RATES.get(code)

    def convert(value: Optional[float]) -> Optional[float]:
        if value is None or rate is None:
            return value
        return float(round(value / rate))

    return {
        "original_currency": code,
        "original_amount": amount.to_dict(),
        "converted_amount_usd": {"min": convert(amount.min), "max": convert(amount.max)},
        "conversion_rate": rate or 1.0,
    }


def infer_category(
    text: Optional[str],
    keywords: dict[GrantCategory, list[str]],
    default: GrantCategory,
    count_occurrences: bool = False,
) -> GrantCategory:
    """
    Pick the category whose keywords score highest in text.

    Args:
        text: Text to classify
        keywords: Keyword list per category
        default: Returned when nothing matches
        count_occurrences: Score every occurrence instead of one per keyword
    """
    if not text:
        return default

    lower = text.lower()
    best, best_score = default, 0
    for category, words in keywords.items():
        if count_occurrences:
            score = sum(_count(lower, word) for word in words)
        else:
            score = sum(1 for word in words if _contains(lower, word))
        if score > best_score:
            best, best_score = category, score
    return best


def match_labels(text: Optional[str], mapping: dict[str, str]) -> list[str]:
    """Labels whose keyword occurs in text, de-duplicated in mapping order."""
    if not text:
        return []
    lower = text.lower()
    labels: list[str] = []
    for keyword, label in mapping.items():
        if label not in labels and _contains(lower, keyword):
            labels.append(label)
    return labels


def first_label(text: Optional[str], mapping: dict[str, Iterable[str]], default: str) -> str:
    """First label having any keyword in text."""
    lower = (text or "").lower()
    for label, words in mapping.items():
        if any(_contains(lower, word) for word in words):
            return label
    return default


def extract_tags(text: Optional[str], base_tags: Iterable[str], mapping: dict[str, Iterable[str]]) -> list[str]:
    """base_tags plus every tag having a keyword in text."""
    lower = (text or "").lower()
    tags = list(base_tags)
    for tag, words in mapping.items():
        if tag not in tags and any(_contains(lower, word) for word in words):
            tags.append(tag)
    return tags


def detect_funding_type(text: Optional[str]) -> str:
    """Classify the financing instrument described in text."""
    lower = (text or "").lower()
    if _contains(lower, "procurement") or _contains(lower, "contract"):
        return "procurement"
    if _contains(lower, "loan") or _contains(lower, "credit"):
        return "loan"
    if _contains(lower, "grant") or _contains(lower, "trust fund"):
        return "grant"
    if _contains(lower, "technical assistance"):
        return "technical-assistance"
    return "development-financing"
