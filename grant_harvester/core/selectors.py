"""
Scoped CSS extraction for listing containers.

A Selector wraps one element (a whole document or a single grant
container) and extracts fields relative to it. Empty or invalid selectors
yield "not found" instead of raising.
"""

from dataclasses import dataclass, field
from typing import Optional, Union
from urllib.parse import urljoin, urlparse

import structlog
from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from .text_cleaner import clean_text

logger = structlog.get_logger(__name__)


@dataclass
class SelectorResult:
    """Result from selector extraction."""
    value: Optional[str] = None
    values: list[str] = field(default_factory=list)
    element: Optional[Tag] = None
    elements: list[Tag] = field(default_factory=list)
    found: bool = False


def resolve_url(url: str, base_url: str) -> str:
    """
    Resolve a link against the page it was found on.

    Handles absolute ("https://..."), protocol-relative ("//host/x"),
    absolute-path ("/x") and relative-path ("x/y") forms.

    Args:
        url: Link as found in the markup
        base_url: URL of the page

    Returns:
        Fully-qualified URL
    """
    url = url.strip()
    if not url or urlparse(url).scheme in ("http", "https", "mailto"):
        return url
    return urljoin(base_url, url)


class Selector:
    """
    CSS selector scoped to one element.

    Usage:
        for container in Selector(soup, url).css(".grant").elements:
            title = Selector(container, url).css_one("h3").value
    """

    def __init__(self, root: Union[BeautifulSoup, Tag], base_url: str = ""):
        """
        Initialize selector.

        Args:
            root: Parsed document or element to search within
            base_url: Base URL for resolving relative links
        """
        self.root = root
        self.base_url = base_url

    def _select(self, selector: str, limit: int = 0) -> list[Tag]:
        if not selector or not selector.strip():
            return []
        try:
            elements = list(self.root.select(selector, limit=limit))
            # A container may itself be the field (e.g. the title is the link)
            if not elements and not isinstance(self.root, BeautifulSoup) and self.root.css.match(selector):
                elements = [self.root]
        except (SelectorSyntaxError, ValueError) as e:
            logger.debug("invalid_selector", selector=selector, error=str(e))
            return []
        return elements

    def css(self, selector: str) -> SelectorResult:
        """
        Select all elements matching selector.

        Args:
            selector: CSS selector string

        Returns:
            SelectorResult with matched elements in document order
        """
        elements = self._select(selector)
        if not elements:
            return SelectorResult(found=False)

        return SelectorResult(
            value=elements[0].get_text(" ", strip=True),
            values=[e.get_text(" ", strip=True) for e in elements],
            element=elements[0],
            elements=elements,
            found=True,
        )

    def css_one(self, selector: str) -> SelectorResult:
        """Select the first element matching selector."""
        elements = self._select(selector, limit=1)
        if not elements:
            return SelectorResult(found=False)
        return SelectorResult(
            value=elements[0].get_text(" ", strip=True),
            element=elements[0],
            found=True,
        )

    def text(self, selector: str, max_length: int = 5000) -> Optional[str]:
        """
        Cleaned text of the first match.

        Returns:
            Cleaned text, or None when nothing (or only whitespace) matched
        """
        result = self.css_one(selector)
        if not result.found:
            return None
        # Keep line breaks so list markers are stripped per line
        cleaned = clean_text(result.element.get_text("\n"), max_length=max_length)
        return cleaned or None

    def link(self, selector: str) -> Optional[str]:
        """
        Link of the first match, resolved against base_url.

        Uses the element's href (or that of the first anchor inside it);
        falls back to the element text when there is no href.
        """
        result = self.css_one(selector)
        if not result.found:
            return None

        element = result.element
        href = element.get("href")
        if not href and element.name != "a":
            anchor = element.find("a", href=True)
            href = anchor.get("href") if anchor else None

        raw = href or clean_text(result.value, max_length=0)
        if not raw:
            return None
        return resolve_url(raw, self.base_url)
