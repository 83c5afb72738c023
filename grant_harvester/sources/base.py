"""
Base source adapter.

An adapter owns one SourceConfiguration, picks the engines that harvest
it and layers source-specific post-processing on the raw records. A
failing engine never aborts the adapter: the error is logged, kept in the
AdapterReport, and that engine contributes nothing.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Any, Optional

import structlog

from grant_harvester.core.errors import ScrapingError
from grant_harvester.core.models import CircuitBreakerConfig, EngineKind, RawGrantData, SourceConfiguration
from grant_harvester.core.proxy_manager import ProxyManager
from grant_harvester.core.rate_limiter import RateLimiter
from grant_harvester.core.retry_manager import RetryConditions, RetryManager, RetryOptions
from grant_harvester.core.text_cleaner import normalize_key
from grant_harvester.engines.base import ScrapingEngine, create_engine

logger = structlog.get_logger(__name__)

# Engine-level failures worth another attempt: transient and not auth
ENGINE_RETRY_CONDITION = RetryConditions.and_(
    RetryConditions.or_(RetryConditions.network_errors, RetryConditions.temporary_http_errors),
    RetryConditions.not_authentication_errors,
)


@dataclass
class AdapterReport:
    """Outcome of one adapter harvest; records and errors may coexist."""
    source_id: str
    records: list[RawGrantData] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)
    engines_used: list[str] = field(default_factory=list)
    duration: float = 0.0  # seconds

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def partial(self) -> bool:
        """Some records were obtained despite errors."""
        return bool(self.records) and bool(self.errors)

    @property
    def failed(self) -> bool:
        return not self.records and bool(self.errors)

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "count": self.count,
            "errors": [str(e) for e in self.errors],
            "engines_used": self.engines_used,
            "duration": round(self.duration, 3),
        }


def dedupe_records(records: list[RawGrantData]) -> list[RawGrantData]:
    """Keep the first record per normalized title + funder."""
    seen = set()
    unique = []
    for record in records:
        key = (normalize_key(record.title), normalize_key(record.funder_name))
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def merge_raw_content(record: RawGrantData, **extra: Any) -> RawGrantData:
    """Copy of record with extra keys merged into raw_content."""
    content = dict(record.raw_content)
    content.update(extra)
    return replace(record, raw_content=content)


class SourceAdapter:
    """
    Adapter for one configured source.

    Used as-is for sources defined only in YAML; subclasses override
    ``default_source`` to carry their own configuration and ``harvest`` or
    ``process`` for multi-engine strategies and enrichment.

    Usage:
        adapter = SourceAdapter(source)
        report = await adapter.harvest()
    """

    def __init__(
        self,
        source: Optional[SourceConfiguration] = None,
        engines: Optional[dict[EngineKind, ScrapingEngine]] = None,
        engine_options: Optional[dict[EngineKind, dict[str, Any]]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        proxy_manager: Optional[ProxyManager] = None,
        retry_manager: Optional[RetryManager] = None,
        retry_options: Optional[RetryOptions] = None,
        circuit: Optional[CircuitBreakerConfig] = None,
    ):
        """
        Initialize adapter.

        Args:
            source: Source configuration (``default_source()`` when omitted)
            engines: Prebuilt engines by kind; missing kinds are created
                     through the engine registry on first use
            engine_options: Constructor arguments for registry-built engines
            rate_limiter: Limiter handed to registry-built engines
            proxy_manager: Proxy source handed to registry-built engines
            retry_manager: Shared manager; engine runs are retried and
                           circuit-broken per source and engine when given
            retry_options: Retry policy for engine runs
            circuit: Breaker thresholds for engine runs
        """
        self.source = source or self.default_source()
        self._engines: dict[EngineKind, ScrapingEngine] = dict(engines or {})
        self.engine_options = self.default_engine_options()
        self.engine_options.update(engine_options or {})
        self.rate_limiter = rate_limiter
        self.proxy_manager = proxy_manager
        self.retry_manager = retry_manager
        self.retry_options = retry_options or RetryOptions(max_retries=2, retry_condition=ENGINE_RETRY_CONDITION)
        self.circuit = circuit or CircuitBreakerConfig()
        self.logger = logger.bind(source_id=self.source.id)

    def default_source(self) -> SourceConfiguration:
        raise ValueError(f"{type(self).__name__} requires a source configuration")

    def default_engine_options(self) -> dict[EngineKind, dict[str, Any]]:
        """Constructor arguments for registry-built engines, by kind."""
        return {}

    @property
    def source_id(self) -> str:
        return self.source.id

    def get_engine(self, kind: EngineKind) -> ScrapingEngine:
        """Engine for kind, built on first use."""
        kind = EngineKind(kind)
        engine = self._engines.get(kind)
        if engine is None:
            options = dict(self.engine_options.get(kind, {}))
            options.setdefault("rate_limiter", self.rate_limiter)
            options.setdefault("proxy_manager", self.proxy_manager)
            engine = create_engine(kind, **options)
            self._engines[kind] = engine
        return engine

    async def run_engine(
        self,
        kind: EngineKind,
        report: AdapterReport,
        source: Optional[SourceConfiguration] = None,
    ) -> list[RawGrantData]:
        """
        Run one engine against source (the adapter's own by default).

        Failures are recorded in report and give an empty list.
        """
        source = source or self.source
        kind = EngineKind(kind)
        engine = self.get_engine(kind)
        if kind.value not in report.engines_used:
            report.engines_used.append(kind.value)

        async def operation() -> list[RawGrantData]:
            return await engine.scrape(source)

        try:
            if self.retry_manager is not None:
                records = await self.retry_manager.execute_with_circuit_breaker(
                    operation,
                    circuit=self.circuit,
                    options=self.retry_options,
                    key=f"{self.source.id}:{kind.value}",
                )
            else:
                records = await operation()
        except ScrapingError as e:
            report.errors.append(e)
            self.logger.warning(
                "engine_failed",
                engine=kind.value,
                url=source.url,
                error=str(e),
            )
            return []

        self.logger.info("engine_finished", engine=kind.value, url=source.url, records=len(records))
        return records

    async def harvest(self) -> AdapterReport:
        """Run the configured engine, post-process and dedupe."""
        started = time.monotonic()
        report = AdapterReport(source_id=self.source.id)

        records = await self.run_engine(self.source.engine, report)
        report.records = dedupe_records(self.process(records))
        report.duration = time.monotonic() - started

        self.logger.info(
            "harvest_finished",
            records=report.count,
            errors=len(report.errors),
            engines=report.engines_used,
        )
        return report

    def process(self, records: list[RawGrantData]) -> list[RawGrantData]:
        """Source-specific post-processing hook."""
        return records
