"""Tests for scoped CSS extraction."""

import pytest
from bs4 import BeautifulSoup

from grant_harvester.core.selectors import Selector, resolve_url

BASE_URL = "https://example.org/grants/"


@pytest.fixture
def sample_html():
    """Sample listing markup."""
    return """
    <html>
    <body>
        <div class="grant" id="first">
            <h3 class="title">  Arts &amp; Culture Fund  </h3>
            <ul class="eligibility"><li>Nonprofits</li><li>Schools</li></ul>
            <a class="apply" href="/apply/arts">Apply now</a>
            <p class="empty">   </p>
        </div>
        <div class="grant" id="second">
            <h3 class="title">Health Fund</h3>
            <div class="apply"><a href="health/apply">Apply</a></div>
        </div>
        <a class="grant-link" href="https://other.org/grant">Linked Grant</a>
    </body>
    </html>
    """


@pytest.fixture
def soup(sample_html):
    return BeautifulSoup(sample_html, "lxml")


class TestResolveUrl:
    """Tests for resolve_url function."""

    def test_absolute(self):
        """Test absolute URLs are unchanged."""
        assert resolve_url("https://a.org/x", BASE_URL) == "https://a.org/x"

    def test_protocol_relative(self):
        """Test protocol-relative URLs take the page scheme."""
        assert resolve_url("//cdn.org/x", BASE_URL) == "https://cdn.org/x"

    def test_absolute_path(self):
        """Test absolute paths resolve against the host."""
        assert resolve_url("/apply", BASE_URL) == "https://example.org/apply"

    def test_relative_path(self):
        """Test relative paths resolve against the page."""
        assert resolve_url("apply/1", BASE_URL) == "https://example.org/grants/apply/1"

    def test_mailto(self):
        """Test mail links are kept."""
        assert resolve_url("mailto:grants@example.org", BASE_URL) == "mailto:grants@example.org"


class TestSelector:
    """Tests for Selector class."""

    def test_css_document_order(self, soup):
        """Test all matches are returned in document order."""
        result = Selector(soup, BASE_URL).css(".grant h3")
        assert result.found
        assert result.values == ["Arts & Culture Fund", "Health Fund"]

    def test_css_not_found(self, soup):
        """Test a selector without matches."""
        result = Selector(soup, BASE_URL).css(".missing")
        assert not result.found
        assert result.elements == []

    def test_invalid_selector(self, soup):
        """Test invalid selectors give not-found instead of raising."""
        assert not Selector(soup, BASE_URL).css("[[").found

    def test_empty_selector(self, soup):
        """Test empty selectors give not-found."""
        assert not Selector(soup, BASE_URL).css("").found
        assert Selector(soup, BASE_URL).text("   ") is None

    def test_scoped_to_container(self, soup):
        """Test extraction stays inside the container."""
        second = soup.select_one("#second")
        assert Selector(second, BASE_URL).text(".title") == "Health Fund"

    def test_text_cleaned(self, soup):
        """Test text is cleaned and list items joined."""
        first = soup.select_one("#first")
        sel = Selector(first, BASE_URL)
        assert sel.text(".title") == "Arts & Culture Fund"
        assert sel.text(".eligibility") == "Nonprofits Schools"

    def test_whitespace_only_is_none(self, soup):
        """Test whitespace-only elements give None."""
        first = soup.select_one("#first")
        assert Selector(first, BASE_URL).text(".empty") is None

    def test_link_resolved(self, soup):
        """Test href is resolved against the base URL."""
        first = soup.select_one("#first")
        assert Selector(first, BASE_URL).link(".apply") == "https://example.org/apply/arts"

    def test_link_from_nested_anchor(self, soup):
        """Test the first nested anchor is used when the element has no href."""
        second = soup.select_one("#second")
        assert Selector(second, BASE_URL).link(".apply") == "https://example.org/grants/health/apply"

    def test_container_matches_itself(self, soup):
        """Test a container that is itself the field."""
        anchor = soup.select_one(".grant-link")
        sel = Selector(anchor, BASE_URL)
        assert sel.text("a") == "Linked Grant"
        assert sel.link("a") == "https://other.org/grant"
