"""
Scraping engines.

Importing this package registers every engine kind with ``create_engine``.
"""

from .api_client import ApiClientEngine, ApiClientOptions
from .base import ScrapingEngine, create_engine, extract_records, register_engine
from .browser import BrowserEngine, BrowserOptions
from .pdf_analyzer import AnalysisResult, PDFTextAnalyzer
from .pdf_processor import PdfDocument, PdfProcessorEngine, PdfProcessorOptions
from .static_parser import StaticParserEngine, StaticParserOptions

__all__ = [
    "ApiClientEngine",
    "ApiClientOptions",
    "AnalysisResult",
    "BrowserEngine",
    "BrowserOptions",
    "PDFTextAnalyzer",
    "PdfDocument",
    "PdfProcessorEngine",
    "PdfProcessorOptions",
    "ScrapingEngine",
    "StaticParserEngine",
    "StaticParserOptions",
    "create_engine",
    "extract_records",
    "register_engine",
]
