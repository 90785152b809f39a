"""Per-entity analytics orchestration.

:class:`AnalyticsOrchestrator` owns a result cache, the analyzer sub-cache
and the profile store.  It reads records from the datastore collaborator,
fans out to the analyzers concurrently, derives confidence, health and
insight text, and caches the resulting :class:`AnalyticsResult` per entity.

Only :class:`~analytics_engine.exceptions.EntityNotFound` escapes the public
coroutines; every other collaborator failure is logged and replaced by an
empty contribution.
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .analytics_cache import AnalyticsCache
from .analytics_config import AnalyticsConfig, AnalyticsConfigManager
from .cached_analysis import CachedAnalysisEngine, entity_tag
from .exceptions import EntityNotFound, TransientAnalyzerFailure
from .interfaces import maybe_await
from .models import AnalyticsResult, EntityStatus, Record, RefreshSummary, coerce_records
from .profile_store import AnalyticsProfile, FeatureFlags, ProfileStore
from .scoring import (
    calculate_confidence,
    calculate_health_score,
    count_by_category,
    generate_insights,
    session_count,
)
from .utils.logging_config import log_analysis_run, log_collaborator_failure

logger = logging.getLogger(__name__)

RESULT_TAG = "analytics-result"

# Analyzer sub-cache holds up to four entries per entity result.
_ANALYSIS_CACHE_FACTOR = 4


def _utcnow() -> datetime:
    """Module-level clock that tests can patch."""
    return datetime.now(UTC)


def _entity_field(entity: Any, name: str, default: Any = None) -> Any:
    if isinstance(entity, dict):
        return entity.get(name, default)
    return getattr(entity, name, default)


class AnalyticsOrchestrator:
    """Coordinate caching, analyzers and lifecycle metadata for entities.

    Construct one instance per process and pass it to consumers; see
    :func:`analytics_engine.bootstrap.build_orchestrator` for default wiring.
    """

    def __init__(
        self,
        datastore: Any,
        *,
        pattern_analyzer: Any = None,
        correlation_analyzer: Any = None,
        predictive_analyzer: Any = None,
        anomaly_detector: Any = None,
        alert_generator: Any = None,
        config: Optional[AnalyticsConfig] = None,
        config_manager: Optional[AnalyticsConfigManager] = None,
        cache: Optional[AnalyticsCache] = None,
        profile_store: Optional[ProfileStore] = None,
        analysis_engine: Optional[CachedAnalysisEngine] = None,
        max_concurrent_refreshes: int = 10,
    ) -> None:
        if config is None:
            config = config_manager.get_config() if config_manager is not None else AnalyticsConfig()
        self._config = config
        self.datastore = datastore
        self.alert_generator = alert_generator
        self.max_concurrent_refreshes = max(1, max_concurrent_refreshes)

        self.cache = cache or AnalyticsCache.from_config(config.cache)
        self.profile_store = profile_store or ProfileStore(categories=config.categories.tracked)
        self.analysis_engine = analysis_engine or CachedAnalysisEngine(
            AnalyticsCache(
                max_size=config.cache.max_size * _ANALYSIS_CACHE_FACTOR,
                ttl_seconds=config.cache.ttl_seconds,
                cleanup_interval_seconds=config.cache.cleanup_interval_seconds,
            ),
            config,
            pattern_analyzer=pattern_analyzer,
            correlation_analyzer=correlation_analyzer,
            predictive_analyzer=predictive_analyzer,
            anomaly_detector=anomaly_detector,
        )

        self._in_flight: Dict[str, asyncio.Task] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None
        if config_manager is not None:
            self._unsubscribe = config_manager.subscribe(self.apply_config)

    @property
    def config(self) -> AnalyticsConfig:
        return self._config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def initialize_entity(self, entity_id: str) -> Optional[AnalyticsProfile]:
        """Create the entity's profile on first use; later calls are no-ops."""
        return self.profile_store.initialize_entity(entity_id)

    async def get_analytics(self, entity_id: str) -> AnalyticsResult:
        """Return cached analytics for ``entity_id`` or compute them.

        Concurrent calls for the same entity share one computation.

        Raises:
            EntityNotFound: the datastore does not know ``entity_id``.
        """
        self.initialize_entity(entity_id)
        self.cache.maybe_cleanup()

        cached = self.cache.get(entity_id)
        if cached is not None:
            return cached

        task = self._in_flight.get(entity_id)
        if task is None:
            task = self._start_analysis(entity_id)
        return await asyncio.shield(task)

    async def trigger_refresh(self, entity_id: str) -> AnalyticsResult:
        """Drop cached state for ``entity_id`` and run the analyzers again."""
        self.clear_cache(entity_id)
        self.initialize_entity(entity_id)
        task = self._start_analysis(entity_id)
        return await asyncio.shield(task)

    async def trigger_refresh_all(self) -> RefreshSummary:
        """Refresh every known entity; one failure never aborts the others."""
        summary = RefreshSummary()
        entities = await self.list_entities()
        entity_ids = [str(_entity_field(entity, "id")) for entity in entities if _entity_field(entity, "id")]
        if not entity_ids:
            return summary

        semaphore = asyncio.Semaphore(self.max_concurrent_refreshes)

        async def refresh_one(entity_id: str) -> str:
            async with semaphore:
                self.initialize_entity(entity_id)
                await self.trigger_refresh(entity_id)
                return entity_id

        results = await asyncio.gather(*(refresh_one(entity_id) for entity_id in entity_ids), return_exceptions=True)

        for entity_id, result in zip(entity_ids, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to refresh analytics for {entity_id}: {result}")
                summary.failed[entity_id] = f"{type(result).__name__}: {result}"
                continue
            summary.succeeded.append(entity_id)

        logger.info(
            "Bulk analytics refresh finished: %s succeeded, %s failed",
            len(summary.succeeded),
            len(summary.failed),
        )
        return summary

    async def get_status_summary(self) -> List[EntityStatus]:
        """Dashboard rows for every entity the datastore knows about."""
        statuses: List[EntityStatus] = []
        for entity in await self.list_entities():
            entity_id = _entity_field(entity, "id")
            if not entity_id:
                continue
            entity_id = str(entity_id)
            profile = self.profile_store.get(entity_id)
            cached = self.cache.peek(entity_id)
            statuses.append(
                EntityStatus(
                    id=entity_id,
                    name=str(_entity_field(entity, "name", entity_id)),
                    initialized=bool(profile and profile.is_initialized),
                    last_analyzed=profile.last_analyzed_at if profile else None,
                    health_score=profile.health_score if profile else 0,
                    has_minimum_data=bool(cached and cached.has_minimum_data),
                )
            )
        return statuses

    def clear_cache(self, entity_id: Optional[str] = None) -> None:
        """Forget cached results for one entity, or for every entity."""
        if entity_id is None:
            self.cache.clear()
            self.analysis_engine.cache.clear()
            logger.info("Cleared all cached analytics")
            return
        self.cache.delete(entity_id)
        self.cache.invalidate_by_tag(entity_tag(entity_id))
        self.analysis_engine.invalidate_entity(entity_id)

    def apply_config(self, config: AnalyticsConfig) -> None:
        """Adopt a new configuration on the live caches and profile store.

        Cache limits and tracked categories take effect immediately; cached
        results are invalidated when the configuration asks for it.
        """
        self._config = config
        limits = config.cache
        self.cache.configure(
            max_size=limits.max_size,
            ttl_seconds=limits.ttl_seconds,
            cleanup_interval_seconds=limits.cleanup_interval_seconds,
        )
        self.analysis_engine.cache.configure(
            max_size=limits.max_size * _ANALYSIS_CACHE_FACTOR,
            cleanup_interval_seconds=limits.cleanup_interval_seconds,
        )
        self.analysis_engine.update_config(config)
        self.profile_store.categories = tuple(config.categories.tracked)
        if limits.invalidate_on_config_change:
            version = self.cache.invalidate_version()
            logger.info(f"Analytics configuration changed; cache version now {version}")

    def close(self) -> None:
        """Stop listening for configuration changes."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ------------------------------------------------------------------
    # Analysis pipeline
    # ------------------------------------------------------------------
    def _start_analysis(self, entity_id: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._analyze_and_store(entity_id))
        self._in_flight[entity_id] = task

        def _release(finished: asyncio.Task) -> None:
            if self._in_flight.get(entity_id) is finished:
                del self._in_flight[entity_id]
            if not finished.cancelled() and finished.exception() is not None:
                logger.debug("Analysis for %s ended with %r", entity_id, finished.exception())

        task.add_done_callback(_release)
        return task

    async def _analyze_and_store(self, entity_id: str) -> AnalyticsResult:
        started = time.perf_counter()
        config = self._config
        result, failures = await self._generate(entity_id, config)

        if self._in_flight.get(entity_id) is not asyncio.current_task():
            # A refresh superseded this run; its result wins.
            logger.debug("Discarding superseded analysis for %s", entity_id)
            return result

        self.cache.set(entity_id, result, tags=(RESULT_TAG, entity_tag(entity_id)))
        self.profile_store.update(
            entity_id,
            last_analyzed_at=_utcnow(),
            health_score=calculate_health_score(result, config.health_score),
        )

        status = "partial" if failures else "success"
        log_analysis_run(logger, entity_id, status, (time.perf_counter() - started) * 1000)
        return result

    async def _generate(self, entity_id: str, config: AnalyticsConfig) -> Tuple[AnalyticsResult, int]:
        records = await self._read_records(entity_id)
        counts = count_by_category(records)
        has_minimum_data = any(counts.get(category, 0) > 0 for category in config.categories.tracked)

        parts: Dict[str, List[Any]] = {"patterns": [], "correlations": [], "predictions": [], "anomalies": []}
        failures = 0
        if has_minimum_data:
            profile = self.profile_store.get(entity_id)
            flags = profile.feature_flags if profile else FeatureFlags()
            jobs = await self._plan_jobs(entity_id, records, flags, config)
            names = list(jobs)
            outcomes = await asyncio.gather(*(jobs[name]() for name in names), return_exceptions=True)
            for name, outcome in zip(names, outcomes):
                if isinstance(outcome, Exception):
                    failures += 1
                    log_collaborator_failure(
                        logger, name, entity_id, TransientAnalyzerFailure(name, entity_id, outcome)
                    )
                    continue
                if name in parts:
                    parts[name] = list(outcome or [])

        last_record_at = records[-1].timestamp if records else None
        confidence = calculate_confidence(counts, config.confidence, last_record_at, now=_utcnow())
        insights = generate_insights(parts, records, config.insights, config.categories)

        result = AnalyticsResult(
            patterns=tuple(parts["patterns"]),
            correlations=tuple(parts["correlations"]),
            predictions=tuple(parts["predictions"]),
            anomalies=tuple(parts["anomalies"]),
            insights=tuple(insights),
            has_minimum_data=has_minimum_data,
            confidence=confidence,
            generated_at=_utcnow(),
        )
        return result, failures

    async def _plan_jobs(
        self,
        entity_id: str,
        records: Sequence[Record],
        flags: FeatureFlags,
        config: AnalyticsConfig,
    ) -> Dict[str, Callable[[], Awaitable[Any]]]:
        engine = self.analysis_engine
        sessions = session_count(records, config.categories)
        analysis = config.analysis
        jobs: Dict[str, Callable[[], Awaitable[Any]]] = {}

        if flags.pattern:
            jobs["patterns"] = lambda: engine.analyze_patterns(entity_id, records, analysis.analysis_period_days)
        if flags.correlation and sessions >= analysis.min_records_for_correlation:
            jobs["correlations"] = lambda: engine.analyze_correlations(entity_id, records)
        if sessions >= analysis.min_records_for_enhanced:
            if flags.prediction:
                goals = await self._read_goals(entity_id)
                jobs["predictions"] = lambda: engine.predict(entity_id, records, goals)
            if flags.anomaly:
                jobs["anomalies"] = lambda: engine.detect_anomalies(entity_id, records)
        if flags.alerting and self.alert_generator is not None and records:
            alert_generator = self.alert_generator

            async def generate_alerts() -> Any:
                return await maybe_await(alert_generator.generate(entity_id, records, settings=config.algorithms))

            jobs["alerts"] = generate_alerts
        return jobs

    # ------------------------------------------------------------------
    # Datastore access
    # ------------------------------------------------------------------
    async def _read_records(self, entity_id: str) -> List[Record]:
        try:
            raw = await maybe_await(self.datastore.get_records_for_entity(entity_id))
        except EntityNotFound:
            raise
        except Exception as exc:
            log_collaborator_failure(logger, "datastore", entity_id, exc)
            return []
        records = coerce_records(raw)
        records.sort(key=lambda record: record.timestamp)
        return records

    async def _read_goals(self, entity_id: str) -> List[Any]:
        reader = getattr(self.datastore, "get_goals_for_entity", None)
        if reader is None:
            return []
        try:
            return list(await maybe_await(reader(entity_id)) or [])
        except Exception as exc:
            log_collaborator_failure(logger, "datastore.goals", entity_id, exc)
            return []

    async def list_entities(self) -> List[Any]:
        try:
            return list(await maybe_await(self.datastore.get_entities()) or [])
        except Exception as exc:
            log_collaborator_failure(logger, "datastore.entities", None, exc)
            return []


__all__ = [
    "AnalyticsOrchestrator",
    "RESULT_TAG",
]
