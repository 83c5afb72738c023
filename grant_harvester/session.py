"""
Harvest session.

Owns the registries shared by every adapter in one run: per-source rate
limiters, proxy pools and the retry manager holding circuit-breaker
state. The session is an async context manager; leaving it stops proxy
health checks and clears limiter and circuit state.

Coordinates:
- Adapter construction per source
- Concurrent, isolated per-source harvests
- Per-source reports with a suggested resolution for failures
- JSON / JSONL output
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog

from .core.errors import ErrorResolution, resolve_error
from .core.models import CircuitBreakerConfig, ProxyConfig, RawGrantData, SourceConfiguration
from .core.proxy_manager import ProxyPool
from .core.rate_limiter import GlobalRateLimiter
from .core.retry_manager import RetryManager, RetryOptions
from .sources import AdapterReport, SourceAdapter, adapter_for

logger = structlog.get_logger(__name__)

DEFAULT_PROXY_POOL = "default"


@dataclass
class HarvestReport:
    """Per-source outcome of a session run."""
    source_id: str
    records: list[RawGrantData] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    engines_used: list[str] = field(default_factory=list)
    duration: float = 0.0  # seconds
    resolution: Optional[ErrorResolution] = None

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def succeeded(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        data = {
            "source_id": self.source_id,
            "count": self.count,
            "errors": self.errors,
            "engines_used": self.engines_used,
            "duration": round(self.duration, 3),
        }
        if self.resolution is not None:
            data["resolution"] = {
                "action": self.resolution.action.value,
                "message": self.resolution.message,
                "delay": self.resolution.delay,
            }
        return data


class HarvestSession:
    """
    One harvest run over several sources.

    Usage:
        async with HarvestSession(output_dir="output") as session:
            reports = await session.run_sources(load_sources())
            session.save_json(session.records(reports))
    """

    def __init__(
        self,
        proxies: Optional[list[ProxyConfig]] = None,
        default_requests_per_minute: int = 30,
        retry_options: Optional[RetryOptions] = None,
        circuit: Optional[CircuitBreakerConfig] = None,
        max_concurrency: int = 4,
        output_dir: str = "output",
    ):
        """
        Initialize session.

        Args:
            proxies: Proxies shared by every adapter (none by default)
            default_requests_per_minute: Rate for sources without their own
            retry_options: Retry policy for engine runs
            circuit: Breaker thresholds for engine runs
            max_concurrency: Sources harvested at the same time
            output_dir: Directory for output files
        """
        self.proxies = list(proxies or [])
        self.retry_options = retry_options
        self.circuit = circuit
        self.max_concurrency = max(1, max_concurrency)
        self.output_dir = Path(output_dir)

        self.rate_limiters = GlobalRateLimiter(default_requests_per_minute=default_requests_per_minute)
        self.proxy_pool = ProxyPool()
        self.retry_manager = RetryManager()

    async def __aenter__(self) -> "HarvestSession":
        if self.proxies:
            self.proxy_pool.create_pool(DEFAULT_PROXY_POOL, self.proxies)
        logger.info("harvest_session_started", proxies=len(self.proxies))
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.proxy_pool.close()
        self.rate_limiters.reset_all()
        self.retry_manager.reset_circuit()
        logger.info("harvest_session_closed")

    def build_adapter(self, source: SourceConfiguration) -> SourceAdapter:
        """Adapter for source wired to the session's shared registries."""
        adapter_cls = adapter_for(source.id)
        return adapter_cls(
            source=source,
            rate_limiter=self.rate_limiters.get_limiter(source.id, source.rate_limit.requests_per_minute),
            proxy_manager=self.proxy_pool.get_pool(DEFAULT_PROXY_POOL),
            retry_manager=self.retry_manager,
            retry_options=self.retry_options,
            circuit=self.circuit,
        )

    async def harvest(self, adapter: SourceAdapter) -> HarvestReport:
        """
        Harvest one adapter; failures are reported, never raised.
        """
        logger.info("processing_source", source=adapter.source_id)
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            outcome: AdapterReport = await adapter.harvest()
        except Exception as e:
            logger.error("source_processing_failed", source=adapter.source_id, error=str(e))
            return HarvestReport(
                source_id=adapter.source_id,
                errors=[str(e)],
                duration=loop.time() - started,
                resolution=resolve_error(e),
            )

        report = HarvestReport(
            source_id=adapter.source_id,
            records=outcome.records,
            errors=[str(e) for e in outcome.errors],
            engines_used=outcome.engines_used,
            duration=loop.time() - started,
        )
        if outcome.errors:
            report.resolution = resolve_error(outcome.errors[-1], attempt_number=len(outcome.errors))

        logger.info(
            "source_complete",
            source=adapter.source_id,
            records=report.count,
            errors=len(report.errors),
        )
        return report

    async def run(self, adapters: list[SourceAdapter]) -> list[HarvestReport]:
        """
        Harvest adapters concurrently.

        Returns:
            One report per adapter, in input order
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def bounded(adapter: SourceAdapter) -> HarvestReport:
            async with semaphore:
                return await self.harvest(adapter)

        reports = await asyncio.gather(*(bounded(a) for a in adapters))

        logger.info(
            "harvest_complete",
            sources=len(reports),
            records=sum(r.count for r in reports),
            failed_sources=sum(1 for r in reports if not r.count and r.errors),
        )
        return list(reports)

    async def run_sources(self, sources: list[SourceConfiguration]) -> list[HarvestReport]:
        return await self.run([self.build_adapter(source) for source in sources])

    @staticmethod
    def records(reports: list[HarvestReport]) -> list[RawGrantData]:
        """All records of reports, in report order."""
        return [record for report in reports for record in report.records]

    def _output_path(self, filename: Optional[str], suffix: str) -> Path:
        if not filename:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            filename = f"grants_{timestamp}.{suffix}"
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self.output_dir / filename

    def save_json(self, records: list[RawGrantData], filename: Optional[str] = None) -> str:
        """
        Save records to a JSON file.

        Args:
            records: Records to save
            filename: Optional filename (auto-generated if not provided)

        Returns:
            Path to saved file
        """
        filepath = self._output_path(filename, "json")

        with open(filepath, "w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in records], f, ensure_ascii=False, indent=2, default=str)

        logger.info("saved_json", path=str(filepath), grants=len(records))
        return str(filepath)

    def save_jsonl(self, records: list[RawGrantData], filename: Optional[str] = None) -> str:
        """
        Save records to a JSONL file (one JSON per line).

        Args:
            records: Records to save
            filename: Optional filename

        Returns:
            Path to saved file
        """
        filepath = self._output_path(filename, "jsonl")

        with open(filepath, "w", encoding="utf-8") as f:
            for record in records:
                f.write(json.dumps(record.to_dict(), ensure_ascii=False, default=str) + "\n")

        logger.info("saved_jsonl", path=str(filepath), grants=len(records))
        return str(filepath)
