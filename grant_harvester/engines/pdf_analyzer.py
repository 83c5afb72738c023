"""
Pattern-based analysis of text extracted from grant documents.

Each field (title, deadline, funding, eligibility, description, url) has
an ordered table of regex patterns with a confidence score. Every match
becomes an AnalysisResult; callers usually take ``best_match``.
"""

import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Optional

MONTH_NAMES = "january|february|march|april|may|june|july|august|september|october|november|december"


@dataclass(frozen=True)
class TextPattern:
    name: str
    pattern: re.Pattern
    confidence: float
    extractor: Callable[[re.Match], Optional[str]]


@dataclass
class AnalysisResult:
    field: str
    value: str
    confidence: float
    source: str  # name of the pattern that matched


def clean_date_string(value: str) -> str:
    value = re.sub(r"[^\w\s,/\-]", "", value)
    return re.sub(r"\s+", " ", value).strip()


def clean_eligibility_text(value: str) -> str:
    value = re.sub(r"\s+", " ", value)
    value = re.sub(r"[•\-*]\s*", "", value)
    return value.strip()[:500]


def clean_description_text(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()[:1000]


def _group(index: int, cleaner: Optional[Callable[[str], str]] = None) -> Callable[[re.Match], Optional[str]]:
    def extract(match: re.Match) -> Optional[str]:
        value = match.group(index)
        if value is None:
            return None
        return cleaner(value) if cleaner else value.strip()
    return extract


def _dollars(*indexes: int) -> Callable[[re.Match], Optional[str]]:
    def extract(match: re.Match) -> Optional[str]:
        return " - ".join(f"${match.group(i)}" for i in indexes)
    return extract


TITLE_PATTERNS = [
    TextPattern("grant_title_header", re.compile(r"^([A-Z\s]{10,100})\s*$", re.M), 0.9, _group(1)),
    TextPattern("rfp_title", re.compile(r"(?:request for proposals?|rfp)[:\s]*([^\n]{10,100})", re.I), 0.85, _group(1)),
    TextPattern(
        "grant_program_title",
        re.compile(r"(?:grant program|funding opportunity)[:\s]*([^\n]{10,100})", re.I),
        0.8,
        _group(1),
    ),
    TextPattern("opportunity_title", re.compile(r"(?:opportunity|program)[:\s]*([^\n]{10,100})", re.I), 0.7, _group(1)),
]

DEADLINE_PATTERNS = [
    TextPattern(
        "explicit_deadline",
        re.compile(r"(?:deadline|due date|application due|submit by)[:\s]*([^\n]{5,50})", re.I),
        0.95,
        _group(1, clean_date_string),
    ),
    TextPattern(
        "proposals_due",
        re.compile(r"(?:proposals?|applications?)\s+(?:are\s+)?due[:\s]*([^\n]{5,50})", re.I),
        0.9,
        _group(1, clean_date_string),
    ),
    TextPattern(
        "submission_deadline",
        re.compile(r"(?:submission|submit)[:\s]*([^\n]*?)(?:by|before|on)\s+([^\n]{5,50})", re.I),
        0.85,
        _group(2, clean_date_string),
    ),
    TextPattern(
        "date_pattern",
        re.compile(rf"(\b(?:{MONTH_NAMES})\s+\d{{1,2}},?\s+\d{{4}})", re.I),
        0.7,
        _group(1, clean_date_string),
    ),
    TextPattern(
        "numeric_date",
        re.compile(r"(\d{1,2}/\d{1,2}/\d{4}|\d{1,2}-\d{1,2}-\d{4})"),
        0.8,
        _group(1, clean_date_string),
    ),
]

FUNDING_PATTERNS = [
    TextPattern(
        "funding_range",
        re.compile(r"(?:funding|award|grant)[:\s]*\$?([\d,]+)(?:\.\d{2})?\s*(?:to|-)\s*\$?([\d,]+)(?:\.\d{2})?", re.I),
        0.95,
        _dollars(1, 2),
    ),
    TextPattern(
        "up_to_amount",
        re.compile(r"(?:up to|maximum of|not to exceed)\s*\$?([\d,]+)(?:\.\d{2})?", re.I),
        0.9,
        _dollars(1),
    ),
    TextPattern(
        "award_amount",
        re.compile(r"(?:award|grant)\s+amount[:\s]*\$?([\d,]+)(?:\.\d{2})?", re.I),
        0.85,
        _dollars(1),
    ),
    TextPattern(
        "funding_available",
        re.compile(r"(?:funding|budget)\s+available[:\s]*\$?([\d,]+)(?:\.\d{2})?", re.I),
        0.8,
        _dollars(1),
    ),
    TextPattern(
        "dollar_amount",
        re.compile(r"\$\s?([\d,]+)(?:\.\d{2})?(?:\s+(?:per|each|total))?"),
        0.6,
        _dollars(1),
    ),
]

ELIGIBILITY_PATTERNS = [
    TextPattern(
        "eligibility_section",
        re.compile(r"(?:eligibility|eligible)[:\s]+((?:[^\n]+\n?){1,10}?)(?:\n\n|[A-Z]{3,})", re.I),
        0.9,
        _group(1, clean_eligibility_text),
    ),
    TextPattern(
        "requirements_section",
        re.compile(r"(?:requirements|criteria)[:\s]+((?:[^\n]+\n?){1,10}?)(?:\n\n|[A-Z]{3,})", re.I),
        0.85,
        _group(1, clean_eligibility_text),
    ),
    TextPattern(
        "applicant_must",
        re.compile(r"(?:applicants?|organizations?)\s+must[:\s]+((?:[^\n]+\n?){1,5})", re.I),
        0.8,
        _group(1, clean_eligibility_text),
    ),
    TextPattern("nonprofit_requirement", re.compile(r"(501\(c\)\(3\)[^\n]*)", re.I), 0.95, _group(1)),
]

DESCRIPTION_PATTERNS = [
    TextPattern(
        "program_overview",
        re.compile(r"(?:program overview|overview|description)[:\s]+((?:[^\n]+\n?){2,15}?)(?:\n\n|[A-Z]{3,})", re.I),
        0.9,
        _group(1, clean_description_text),
    ),
    TextPattern(
        "program_description",
        re.compile(r"(?:program description|description)[:\s]+((?:[^\n]+\n?){2,15}?)(?:\n\n|[A-Z]{3,})", re.I),
        0.85,
        _group(1, clean_description_text),
    ),
    TextPattern(
        "summary_section",
        re.compile(r"(?:summary|purpose)[:\s]+((?:[^\n]+\n?){2,10}?)(?:\n\n|[A-Z]{3,})", re.I),
        0.8,
        _group(1, clean_description_text),
    ),
]

URL_PATTERNS = [
    TextPattern(
        "application_portal",
        re.compile(r"(https?://[^\s]+(?:apply|application|portal|submit)[^\s]*)", re.I),
        0.95,
        _group(1),
    ),
    TextPattern("grant_website", re.compile(r"(https?://[^\s]+(?:grant|funding)[^\s]*)", re.I), 0.8, _group(1)),
    TextPattern("general_url", re.compile(r"(https?://[^\s]+)"), 0.6, _group(1)),
]

GRANT_TYPE_KEYWORDS = {
    "research": ["research", "study", "investigation", "scientific"],
    "education": ["education", "school", "student", "learning", "academic"],
    "health": ["health", "medical", "healthcare", "clinical", "patient"],
    "community": ["community", "social", "neighborhood", "local"],
    "environment": ["environment", "climate", "sustainability", "green"],
    "arts": ["arts", "culture", "creative", "artistic", "cultural"],
    "technology": ["technology", "innovation", "digital", "tech", "software"],
}

QUALITY_KEYWORDS = [
    "grant", "funding", "award", "application", "deadline",
    "eligibility", "proposal", "budget", "project",
]

KEY_PHRASE_BOOST = [
    "grant", "funding", "award", "research", "project", "program",
    "application", "proposal", "deadline", "eligibility", "budget",
]

STOP_WORDS = {
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
    "her", "was", "one", "our", "out", "day", "get", "has", "him", "his",
    "how", "its", "may", "new", "now", "old", "see", "two", "who", "boy",
    "did", "she", "use", "way", "will", "with", "this", "that", "have",
    "from", "they", "know", "want", "been", "good", "much", "some", "time",
    "very", "when", "come", "here", "just", "like", "long", "make", "many",
    "over", "such", "take", "than", "them", "well", "were",
}

_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}")
_WEBSITE_RE = re.compile(r"(?:www\.|https?://)[^\s]+")


class PDFTextAnalyzer:
    """
    Confidence-ranked field extraction from document text.

    Usage:
        analyzer = PDFTextAnalyzer()
        title = analyzer.best_value(analyzer.analyze_title(text))
    """

    def analyze_title(self, text: str) -> list[AnalysisResult]:
        return self._analyze(text, TITLE_PATTERNS, "title")

    def analyze_deadline(self, text: str) -> list[AnalysisResult]:
        return self._analyze(text, DEADLINE_PATTERNS, "deadline")

    def analyze_funding(self, text: str) -> list[AnalysisResult]:
        return self._analyze(text, FUNDING_PATTERNS, "funding")

    def analyze_eligibility(self, text: str) -> list[AnalysisResult]:
        return self._analyze(text, ELIGIBILITY_PATTERNS, "eligibility")

    def analyze_description(self, text: str) -> list[AnalysisResult]:
        return self._analyze(text, DESCRIPTION_PATTERNS, "description")

    def analyze_urls(self, text: str) -> list[AnalysisResult]:
        return self._analyze(text, URL_PATTERNS, "url")

    def analyze_all(self, text: str) -> dict[str, list[AnalysisResult]]:
        return {
            "title": self.analyze_title(text),
            "deadline": self.analyze_deadline(text),
            "funding": self.analyze_funding(text),
            "eligibility": self.analyze_eligibility(text),
            "description": self.analyze_description(text),
            "urls": self.analyze_urls(text),
        }

    @staticmethod
    def best_match(results: list[AnalysisResult]) -> Optional[AnalysisResult]:
        """Highest-confidence result (earliest wins ties)."""
        if not results:
            return None
        return max(results, key=lambda r: r.confidence)

    def best_value(self, results: list[AnalysisResult]) -> Optional[str]:
        best = self.best_match(results)
        return best.value if best else None

    def _analyze(self, text: str, patterns: list[TextPattern], field: str) -> list[AnalysisResult]:
        results = []
        seen = set()
        for pattern in patterns:
            for match in pattern.pattern.finditer(text):
                value = pattern.extractor(match)
                if not value or not value.strip():
                    continue
                value = value.strip()
                key = value.lower()
                if key in seen:
                    continue
                seen.add(key)
                results.append(AnalysisResult(field, value, pattern.confidence, pattern.name))

        # Stable sort keeps pattern order among equal confidences
        return sorted(results, key=lambda r: r.confidence, reverse=True)

    # --- Whole-document heuristics ----------------------------------------

    def detect_grant_type(self, text: str) -> list[str]:
        lower = text.lower()
        return [
            grant_type for grant_type, keywords in GRANT_TYPE_KEYWORDS.items()
            if any(keyword in lower for keyword in keywords)
        ]

    def extract_contact_info(self, text: str) -> dict[str, list[str]]:
        return {
            "emails": _EMAIL_RE.findall(text),
            "phones": _PHONE_RE.findall(text),
            "websites": _WEBSITE_RE.findall(text),
        }

    def calculate_text_quality(self, text: str) -> float:
        """
        Score extraction quality between 0 and 1.

        Rewards sane length, word and sentence counts and grant vocabulary;
        penalizes a high share of formatting artifacts.
        """
        if not text or len(text) < 10:
            return 0.0

        score = 0.5
        if 100 <= len(text) <= 3000:
            score += 0.2
        if 20 <= len(text.split()) <= 500:
            score += 0.1
        if 3 <= len(re.split(r"[.!?]+", text)) <= 50:
            score += 0.1

        lower = text.lower()
        keyword_count = sum(1 for keyword in QUALITY_KEYWORDS if keyword in lower)
        score += min(keyword_count * 0.05, 0.2)

        special = len(re.findall(r"[^\w\s.,!?;:()\-]", text))
        if special / len(text) > 0.1:
            score -= 0.2

        return max(0.0, min(1.0, score))

    def extract_key_phrases(self, text: str, max_phrases: int = 10) -> list[str]:
        """Most frequent non-stopword terms, grant vocabulary weighted double."""
        words = re.sub(r"[^\w\s]", " ", text.lower()).split()
        counts = Counter(w for w in words if len(w) > 3 and w not in STOP_WORDS)
        for term in KEY_PHRASE_BOOST:
            if term in counts:
                counts[term] *= 2
        return [word for word, _ in counts.most_common(max_phrases)]
