"""
Grant Harvester - resilient multi-engine harvesting of funding opportunities.

Architecture:
- core/: Shared resilience utilities (transport, rate limiting, proxies,
  retries, stealth) plus text cleaning and data models
- engines/: Fetch-and-extract strategies (static HTML, browser, API, PDF)
- sources/: Per-funder adapters with enrichment post-processing
- config/: YAML-driven source definitions
- session: Harvest session owning the shared registries
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
