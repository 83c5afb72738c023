"""
PDF document engine using pdfplumber.

Downloads (or reads) a grant document, extracts per-page text, tables and
metadata, splits the text into headed sections and turns each
grant-related section into a record. When no section qualifies, the whole
document becomes a single record.
"""

import asyncio
import io
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx
import pdfplumber
import structlog
from pdfminer.pdfparser import PDFSyntaxError
from pdfplumber.utils.exceptions import PdfminerException

from grant_harvester.core.errors import PermanentHTTPError, ScrapingError, SourceFailedError
from grant_harvester.core.http_client import HttpClient
from grant_harvester.core.models import EngineKind, RawGrantData, SourceConfiguration
from grant_harvester.core.proxy_manager import ProxyManager
from grant_harvester.core.rate_limiter import RateLimiter

from .base import register_engine
from .pdf_analyzer import PDFTextAnalyzer

logger = structlog.get_logger(__name__)

PDF_ACCEPT = "application/pdf,*/*;q=0.8"

GRANT_KEYWORDS = (
    "grant", "funding", "award", "opportunity", "rfp", "request for proposal",
    "application", "deadline", "eligibility", "amount", "budget",
)

HEADER_PATTERNS = [
    re.compile(r"^[A-Z\s]+$"),
    re.compile(r"^\d+\.\s+[A-Z]"),
    re.compile(r"^[A-Z][a-z]+(\s+[A-Z][a-z]+)*:?$"),
    re.compile(r"^(SECTION|PART|CHAPTER)\s+", re.I),
    re.compile(r"^(ELIGIBILITY|DEADLINE|FUNDING|APPLICATION|REQUIREMENTS)", re.I),
]

PAGE_MARKER_PATTERNS = [
    re.compile(r"^page\s+\d+", re.I),
    re.compile(r"^\d+$"),
]

METADATA_KEYS = {
    "Title": "title",
    "Author": "author",
    "Subject": "subject",
    "Creator": "creator",
    "Producer": "producer",
    "CreationDate": "creation_date",
    "ModDate": "modification_date",
}


@dataclass
class PdfProcessorOptions:
    """PDF engine settings. Times are in seconds."""
    max_pages: int = 50
    timeout: float = 300.0
    max_retries: int = 3


@dataclass
class PdfSection:
    content: str
    page_number: int
    confidence: float
    title: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "content": self.content,
            "page_number": self.page_number,
            "confidence": self.confidence,
        }


@dataclass
class PdfTable:
    headers: list[str]
    rows: list[list[str]]
    page_number: int

    def to_dict(self) -> dict:
        return {"headers": self.headers, "rows": self.rows, "page_number": self.page_number}


@dataclass
class PdfDocument:
    """Everything extracted from one PDF."""
    text: str
    pages: list[str] = field(default_factory=list)
    sections: list[PdfSection] = field(default_factory=list)
    tables: list[PdfTable] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


def cleanup_pdf_text(text: str) -> str:
    """Normalize spacing and collapse blank runs in extracted page text."""
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def is_page_marker(line: str) -> bool:
    return any(pattern.search(line) for pattern in PAGE_MARKER_PATTERNS)


def is_section_header(line: str) -> bool:
    if not 3 <= len(line) <= 100:
        return False
    return any(pattern.search(line) for pattern in HEADER_PATTERNS)


def parse_sections(pages: list[str]) -> list[PdfSection]:
    """
    Split page texts into sections.

    A header line starts a new section (confidence 0.8); text before the
    first header forms an untitled section (confidence 0.6). Page number
    lines are skipped.
    """
    sections = []
    current: Optional[PdfSection] = None

    for page_number, page_text in enumerate(pages, 1):
        for line in page_text.split("\n"):
            line = line.strip()
            if not line or is_page_marker(line):
                continue

            if is_section_header(line):
                if current is not None:
                    sections.append(current)
                current = PdfSection(content="", page_number=page_number, confidence=0.8, title=line)
            elif current is not None:
                current.content = f"{current.content}\n{line}" if current.content else line
            else:
                current = PdfSection(content=line, page_number=page_number, confidence=0.6)

    if current is not None:
        sections.append(current)
    return sections


def clean_table(table: list[list[Any]], page_number: int) -> Optional[PdfTable]:
    """First row becomes the headers; tables without data rows are dropped."""
    rows = [[str(cell).strip() if cell else "" for cell in row] for row in table if row]
    if len(rows) < 2:
        return None
    return PdfTable(headers=rows[0], rows=rows[1:], page_number=page_number)


def has_grant_keywords(text: str) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in GRANT_KEYWORDS)


@register_engine(EngineKind.PDF)
class PdfProcessorEngine:
    """
    Grant extraction from PDF documents.

    ``source.url`` is either an http(s) URL or a local path
    (``file://`` URLs included).

    Usage:
        engine = PdfProcessorEngine(PdfProcessorOptions(max_pages=20))
        records = await engine.scrape(source)
    """

    def __init__(
        self,
        options: Optional[PdfProcessorOptions] = None,
        http_client: Optional[HttpClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        proxy_manager: Optional[ProxyManager] = None,
        analyzer: Optional[PDFTextAnalyzer] = None,
        pdf_opener: Callable[[Any], Any] = pdfplumber.open,
    ):
        self.options = options or PdfProcessorOptions()
        self.http_client = http_client
        self.rate_limiter = rate_limiter
        self.proxy_manager = proxy_manager
        self.analyzer = analyzer or PDFTextAnalyzer()
        self._open_pdf = pdf_opener
        self.logger = logger.bind(engine="pdf")

    async def scrape(self, source: SourceConfiguration) -> list[RawGrantData]:
        """
        Harvest grants from one PDF document.

        Raises:
            SourceFailedError: Download failed, the file is not a readable
                               PDF, or processing timed out
        """
        self.logger.info("pdf_scrape_started", source_id=source.id, url=source.url)
        try:
            data = await self.load(source)
            document = await asyncio.wait_for(
                asyncio.to_thread(self.process, data),
                timeout=self.options.timeout,
            )
        except asyncio.TimeoutError as e:
            self.logger.error("pdf_processing_timeout", source_id=source.id, timeout=self.options.timeout)
            raise SourceFailedError(
                source.id,
                source.url,
                TimeoutError(f"PDF processing timed out after {self.options.timeout}s"),
            ) from e
        except (httpx.HTTPError, ScrapingError, OSError, PdfminerException, PDFSyntaxError) as e:
            self.logger.error("pdf_processing_failed", source_id=source.id, error=str(e))
            raise SourceFailedError(source.id, source.url, e) from e

        records = self.extract_grants(document, source)
        self.logger.info("pdf_scrape_finished", source_id=source.id, records=len(records))
        return records

    async def load(self, source: SourceConfiguration) -> bytes:
        """Read document bytes from disk or over HTTP."""
        parsed = urlparse(source.url)
        if parsed.scheme in ("", "file"):
            path = Path(parsed.path if parsed.scheme == "file" else source.url)
            return await asyncio.to_thread(path.read_bytes)

        if self.http_client is not None:
            return await self._download(self.http_client, source)
        async with HttpClient(
            timeout=self.options.timeout,
            max_retries=self.options.max_retries,
            delay_between_requests=source.rate_limit.delay_between_requests,
            headers=source.headers,
            proxy_manager=self.proxy_manager,
            rate_limiter=self.rate_limiter,
        ) as client:
            return await self._download(client, source)

    async def _download(self, client: HttpClient, source: SourceConfiguration) -> bytes:
        response = await client.get(source.url, headers={"Accept": PDF_ACCEPT})
        if response.status_code != 200:
            raise PermanentHTTPError(
                response.status_code,
                source.url,
                f"Failed to download PDF from {source.url}: HTTP {response.status_code}",
            )
        return response.content

    def process(self, data: bytes) -> PdfDocument:
        """Extract text, tables, metadata and sections (blocking)."""
        pages = []
        tables = []

        with self._open_pdf(io.BytesIO(data)) as pdf:
            raw_metadata = pdf.metadata or {}
            page_count = len(pdf.pages)

            for page_number, page in enumerate(pdf.pages[: self.options.max_pages], 1):
                page_text = page.extract_text() or ""
                pages.append(cleanup_pdf_text(page_text))

                for table in page.extract_tables() or []:
                    cleaned = clean_table(table, page_number)
                    if cleaned is not None:
                        tables.append(cleaned)

        metadata: dict[str, Any] = {"pages": page_count}
        for key, name in METADATA_KEYS.items():
            value = raw_metadata.get(key)
            if value:
                metadata[name] = value.decode(errors="ignore") if isinstance(value, bytes) else str(value)

        text = "\n\n".join(p for p in pages if p)
        self.logger.info(
            "pdf_extracted",
            pages=len(pages),
            tables=len(tables),
            chars=len(text),
        )
        return PdfDocument(
            text=text,
            pages=pages,
            sections=parse_sections(pages),
            tables=tables,
            metadata=metadata,
        )

    def extract_grants(self, document: PdfDocument, source: SourceConfiguration) -> list[RawGrantData]:
        """
        One record per grant-related section, or one for the whole document.

        Records that end up without any title are dropped.
        """
        records = []
        for section in document.sections:
            if not has_grant_keywords(section.content):
                continue
            record = self._build(
                section.title or self.analyzer.best_value(self.analyzer.analyze_title(section.content)),
                section.content,
                document,
                source,
                raw_content={
                    "section": section.to_dict(),
                    "metadata": document.metadata,
                    "page_number": section.page_number,
                    "confidence": section.confidence,
                },
            )
            if record is not None:
                records.append(record)

        if records:
            return records

        record = self._build(
            document.metadata.get("title") or self.analyzer.best_value(self.analyzer.analyze_title(document.text)),
            document.text,
            document,
            source,
            raw_content={
                "full_text": document.text,
                "metadata": document.metadata,
                "sections": [s.to_dict() for s in document.sections],
                "tables": [t.to_dict() for t in document.tables],
            },
        )
        return [record] if record is not None else []

    def _build(
        self,
        title: Optional[str],
        text: str,
        document: PdfDocument,
        source: SourceConfiguration,
        raw_content: dict[str, Any],
    ) -> Optional[RawGrantData]:
        if not title or not title.strip():
            self.logger.warning("record_dropped_missing_title", source_id=source.id)
            return None

        analyzer = self.analyzer
        return RawGrantData(
            title=title,
            source_url=source.url,
            description=analyzer.best_value(analyzer.analyze_description(text)),
            deadline=analyzer.best_value(analyzer.analyze_deadline(text)),
            funding_amount=analyzer.best_value(analyzer.analyze_funding(text)),
            eligibility=analyzer.best_value(analyzer.analyze_eligibility(text)),
            application_url=analyzer.best_value(analyzer.analyze_urls(text)),
            funder_name=document.metadata.get("author", ""),
            raw_content=raw_content,
        )
