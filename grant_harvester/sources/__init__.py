"""
Source adapters.

``ADAPTERS`` maps source ids to dedicated adapter classes; any other
configured source is harvested by the plain SourceAdapter.
"""

from .base import AdapterReport, SourceAdapter, dedupe_records
from .ford_foundation import FordFoundationAdapter
from .grants_gov import GrantsGovAdapter
from .world_bank import WorldBankAdapter

ADAPTERS: dict[str, type[SourceAdapter]] = {
    "grants-gov": GrantsGovAdapter,
    "ford-foundation": FordFoundationAdapter,
    "world-bank": WorldBankAdapter,
}


def adapter_for(source_id: str) -> type[SourceAdapter]:
    """Adapter class for a source id."""
    return ADAPTERS.get(source_id, SourceAdapter)


__all__ = [
    "ADAPTERS",
    "AdapterReport",
    "FordFoundationAdapter",
    "GrantsGovAdapter",
    "SourceAdapter",
    "WorldBankAdapter",
    "adapter_for",
    "dedupe_records",
]
