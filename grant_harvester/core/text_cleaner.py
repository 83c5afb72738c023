"""
Text normalization and field extraction for scraped content.

Handles:
- Markup residue, HTML entities, list markers, truncation markers
- Funding amounts ("$100K - $500K", "up to €2.5M")
- Deadlines (numeric, ISO, "Month DD, YYYY", "DD Month YYYY")
- Location eligibility (US states, countries, regions, scope terms)
- A 0-100 text quality heuristic
"""

import html
import re
from datetime import datetime
from typing import Optional

import structlog

from .models import FundingAmount

logger = structlog.get_logger(__name__)

DEFAULT_MAX_LENGTH = 10000

_SCRIPT_RE = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style\b[^>]*>.*?</style\s*>", re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_TAG_RE = re.compile(r"</?[a-zA-Z][^<>]*>")
_ATTR_RES = [
    re.compile(r"\bjavascript:\s*void\(0\)", re.IGNORECASE),
    re.compile(r"\bdata-[a-z-]+=\"[^\"]*\"", re.IGNORECASE),
    re.compile(r"\bclass=\"[^\"]*\"", re.IGNORECASE),
    re.compile(r"\bid=\"[^\"]*\"", re.IGNORECASE),
]
_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")

# Bullet glyphs may touch the text; dashes, numbers and letters need a space
_LIST_MARKER_RE = re.compile(
    r"^\s*(?:[•·▪▫‣⁃]\s*|[-*+]\s+|\d+[.)]\s+|[a-zA-Z][.)]\s+)+"
)

_TRAILING_MARKER_RES = [
    re.compile(r"\s*\.{3,}\s*$"),
    re.compile(r"\s*…\s*$"),
    re.compile(r"\s*\[\.{3}\]\s*$"),
    re.compile(r"\s*\(continued\)\s*$", re.IGNORECASE),
    re.compile(r"\s*\(more\)\s*$", re.IGNORECASE),
    re.compile(r"\s*read more\s*$", re.IGNORECASE),
]


def _unescape(text: str) -> str:
    """Decode entities until stable (handles double-escaped input)."""
    previous = None
    while previous != text:
        previous = text
        text = html.unescape(text)
    return text


def remove_html_artifacts(text: str) -> str:
    """
    Remove markup residue left over after parsing.

    Args:
        text: Text possibly containing tags, comments or attributes

    Returns:
        Text with script/style blocks, comments, tags and stray
        attributes removed
    """
    cleaned = _SCRIPT_RE.sub("", text)
    cleaned = _STYLE_RE.sub("", cleaned)
    cleaned = _COMMENT_RE.sub("", cleaned)
    cleaned = _TAG_RE.sub(" ", cleaned)
    for pattern in _ATTR_RES:
        cleaned = pattern.sub("", cleaned)

    cleaned = re.sub(r"\.{4,}", "...", cleaned)
    cleaned = re.sub(r"-{3,}", "--", cleaned)
    cleaned = re.sub(r"={3,}", "", cleaned)
    return cleaned


def strip_trailing_markers(text: str) -> str:
    """Strip trailing ellipsis, "(more)", "(continued)" and similar."""
    previous = None
    while previous != text:
        previous = text
        for pattern in _TRAILING_MARKER_RES:
            text = pattern.sub("", text)
    return text


def clean_text(
    text: Optional[str],
    max_length: int = DEFAULT_MAX_LENGTH,
    remove_bullets: bool = True,
    remove_ellipsis: bool = True,
) -> str:
    """
    Clean and normalize scraped text.

    Args:
        text: Raw text (may contain markup and entities)
        max_length: Truncate to this many characters (0 disables)
        remove_bullets: Strip leading list markers per line
        remove_ellipsis: Strip trailing truncation markers

    Returns:
        Single-line cleaned text, "" for empty input
    """
    if not text or not isinstance(text, str):
        return ""

    cleaned = _unescape(text)
    cleaned = remove_html_artifacts(cleaned)
    cleaned = _ZERO_WIDTH_RE.sub("", cleaned)

    lines = cleaned.splitlines()
    if remove_bullets:
        lines = [_LIST_MARKER_RE.sub("", line) for line in lines]
    lines = [line.strip() for line in lines if line.strip()]

    cleaned = re.sub(r"\s+", " ", " ".join(lines)).strip()

    if remove_ellipsis:
        cleaned = strip_trailing_markers(cleaned).strip()

    if max_length and len(cleaned) > max_length:
        cleaned = cleaned[:max_length].rstrip() + "..."

    return cleaned


def normalize_key(text: Optional[str]) -> str:
    """
    Normalize text for use in dedupe keys.

    Lowercases, drops punctuation and collapses whitespace.
    """
    if not text:
        return ""
    lowered = clean_text(text, max_length=0).lower()
    lowered = re.sub(r"[^\w\s]", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


# --- Funding amounts --------------------------------------------------------

_CURRENCY_RE = re.compile(r"(\$|€|£|¥|\b(?:usd|eur|gbp|jpy)\b)", re.IGNORECASE)
_AMOUNT = (
    r"[€£¥$]?\s?\d[\d,]*(?:\.\d{1,2})?"
    r"(?:\s?(?:[kmb]|thousand|million|billion)\b)?"
)
_RANGE_RE = re.compile(rf"({_AMOUNT})\s*(?:[-–—]|\bto\b)\s*({_AMOUNT})", re.IGNORECASE)
_SINGLE_RE = re.compile(rf"(?:up\s+to\s+)?({_AMOUNT})", re.IGNORECASE)
_MAGNITUDES = {
    "k": 1_000,
    "thousand": 1_000,
    "m": 1_000_000,
    "million": 1_000_000,
    "b": 1_000_000_000,
    "billion": 1_000_000_000,
}


def parse_amount(amount: str) -> Optional[float]:
    """
    Parse one amount token into a number.

    Args:
        amount: Token such as "$100,000", "2.5M" or "500 thousand"

    Returns:
        Numeric value or None if the token is not an amount
    """
    cleaned = re.sub(r"[$€£¥,\s]", "", amount).lower()
    match = re.match(r"^(\d+(?:\.\d+)?)(k|m|b|thousand|million|billion)?$", cleaned)
    if not match:
        return None

    value = float(match.group(1))
    suffix = match.group(2)
    if suffix:
        value *= _MAGNITUDES[suffix]
    return value


def detect_currency(text: str) -> Optional[str]:
    """Return the first currency symbol or code found in text."""
    match = _CURRENCY_RE.search(text or "")
    if not match:
        return None
    token = match.group(1)
    return token.upper() if token.isalpha() else token


def extract_funding_amount(text: Optional[str]) -> Optional[FundingAmount]:
    """
    Extract a funding amount or range from text.

    Supported formats:
    - "$100,000 - $500,000" -> min 100000, max 500000
    - "$100K to $500K" -> min 100000, max 500000
    - "up to €2.5M" -> max 2500000
    - "$50,000" -> min = max = 50000

    Args:
        text: Text containing an amount

    Returns:
        FundingAmount or None when no amount is present
    """
    if not text:
        return None

    currency = detect_currency(text) or "$"

    match = _RANGE_RE.search(text)
    if match:
        low = parse_amount(match.group(1))
        high = parse_amount(match.group(2))
        if low is not None and high is not None:
            return FundingAmount(min=low, max=high, currency=currency)

    match = _SINGLE_RE.search(text)
    if match:
        value = parse_amount(match.group(1))
        if value is None:
            return None
        if "up to" in text.lower():
            return FundingAmount(max=value, currency=currency)
        return FundingAmount(min=value, max=value, currency=currency)

    return None


# --- Deadlines ---------------------------------------------------------------

MONTHS = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11,
    "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "aug": 8,
    "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}
_MONTH_NAMES = "|".join(sorted(MONTHS, key=len, reverse=True))

_NUMERIC_DATE_RE = re.compile(r"\b(\d{1,2})[/-](\d{1,2})[/-](\d{4})\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_MONTH_FIRST_RE = re.compile(rf"\b({_MONTH_NAMES})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b", re.IGNORECASE)
_DAY_FIRST_RE = re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_NAMES})\.?,?\s+(\d{{4}})\b", re.IGNORECASE)


def _make_date(year: int, month: int, day: int, text: str) -> Optional[datetime]:
    try:
        return datetime(year, month, day)
    except ValueError as e:
        logger.debug("invalid_date", text=text, error=str(e))
        return None


def extract_deadline(text: Optional[str]) -> Optional[datetime]:
    """
    Extract the first valid date from text.

    Supported formats (tried in order):
    - "12/31/2024", "12-31-2024" (US order, day-first when month > 12)
    - "2024-12-31" (ISO)
    - "December 31, 2024", "Dec 31 2024"
    - "31 December 2024"

    Args:
        text: Text containing a date

    Returns:
        datetime or None if no valid date is found
    """
    if not text:
        return None

    match = _NUMERIC_DATE_RE.search(text)
    if match:
        first, second, year = (int(g) for g in match.groups())
        month, day = (first, second) if first <= 12 else (second, first)
        result = _make_date(year, month, day, text)
        if result:
            return result

    match = _ISO_DATE_RE.search(text)
    if match:
        year, month, day = (int(g) for g in match.groups())
        result = _make_date(year, month, day, text)
        if result:
            return result

    match = _MONTH_FIRST_RE.search(text)
    if match:
        month_name, day, year = match.groups()
        result = _make_date(int(year), MONTHS[month_name.lower()], int(day), text)
        if result:
            return result

    match = _DAY_FIRST_RE.search(text)
    if match:
        day, month_name, year = match.groups()
        result = _make_date(int(year), MONTHS[month_name.lower()], int(day), text)
        if result:
            return result

    return None


# --- Locations ---------------------------------------------------------------

US_STATES = [
    "alabama", "alaska", "arizona", "arkansas", "california", "colorado",
    "connecticut", "delaware", "florida", "georgia", "hawaii", "idaho",
    "illinois", "indiana", "iowa", "kansas", "kentucky", "louisiana", "maine",
    "maryland", "massachusetts", "michigan", "minnesota", "mississippi",
    "missouri", "montana", "nebraska", "nevada", "new hampshire", "new jersey",
    "new mexico", "new york", "north carolina", "north dakota", "ohio",
    "oklahoma", "oregon", "pennsylvania", "rhode island", "south carolina",
    "south dakota", "tennessee", "texas", "utah", "vermont", "west virginia",
    "virginia", "washington", "wisconsin", "wyoming",
]
US_STATE_CODES = [
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID",
    "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS",
    "MO", "MT", "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND", "OH", "OK",
    "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV",
    "WI", "WY",
]
COUNTRIES = [
    "united states", "usa", "canada", "mexico", "united kingdom",
    "australia", "germany", "france", "japan", "china", "india", "brazil",
]
REGIONS = [
    "north america", "south america", "europe", "asia", "africa", "oceania",
    "middle east",
]
SCOPE_TERMS = ["nationwide", "international", "global", "worldwide", "domestic", "local"]

# Two-letter codes are matched case-sensitively so words like "in" or "or"
# are not mistaken for states.
_LOCATION_PATTERNS = [
    re.compile(r"\b(" + "|".join(US_STATES) + r")\b", re.IGNORECASE),
    re.compile(r"\b(" + "|".join(US_STATE_CODES) + r")\b"),
    re.compile(r"\b(" + "|".join(COUNTRIES) + r")\b", re.IGNORECASE),
    re.compile(r"\b(US|UK)\b"),
    re.compile(r"\b(" + "|".join(REGIONS) + r")\b", re.IGNORECASE),
    re.compile(r"\b(" + "|".join(SCOPE_TERMS) + r")\b", re.IGNORECASE),
]


def extract_location_eligibility(text: Optional[str]) -> list[str]:
    """
    Extract location eligibility terms from text.

    Args:
        text: Eligibility or description text

    Returns:
        Matched locations in discovery order, de-duplicated
        case-insensitively
    """
    if not text:
        return []

    locations: list[str] = []
    seen: set[str] = set()
    for pattern in _LOCATION_PATTERNS:
        for match in pattern.finditer(text):
            value = match.group(1).strip()
            if value.lower() not in seen:
                seen.add(value.lower())
                locations.append(value)
    return locations


# --- Quality -----------------------------------------------------------------

def calculate_quality_score(text: Optional[str]) -> int:
    """
    Score text quality on a 0-100 scale.

    Rewards sane length, multiple sentences, lexical variety and grant
    cues (funding, dates, application language); penalizes truncation
    markers, very short text and noisy characters.
    """
    if not text or not text.strip():
        return 0

    score = 0
    length = len(text)

    if 100 <= length <= 2000:
        score += 30
    elif 50 <= length < 100:
        score += 20
    elif 2000 < length <= 5000:
        score += 20
    elif length < 50:
        score += 10

    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    if len(sentences) >= 2:
        score += 20
    if len(sentences) >= 5:
        score += 10

    words = re.findall(r"\b\w+\b", text.lower())
    if words:
        variety = len(set(words)) / len(words)
        if variety > 0.7:
            score += 20
        elif variety > 0.5:
            score += 15
        elif variety > 0.3:
            score += 10

    lowered = text.lower()
    if "$" in text or "funding" in lowered or "grant" in lowered:
        score += 10
    if re.search(r"\d{4}", text):
        score += 5
    if "deadline" in lowered or "due" in lowered or "apply" in lowered:
        score += 5

    if "..." in text or "read more" in lowered:
        score -= 10
    if length < 20:
        score -= 20
    if re.search(r"[^\w\s.,!?;:()\-'\"$%]", text):
        score -= 5

    return max(0, min(100, score))
