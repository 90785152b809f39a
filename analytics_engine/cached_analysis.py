"""Content-addressed caching in front of the pluggable analyzers.

Each analyzer call is keyed by the owning entity, a fingerprint of its input
records, its parameters and a hash of the analyzer-relevant configuration,
so repeated calls for the same entity and inputs reuse earlier output.
Analyzers receive the current :class:`AlgorithmSettings` as ``settings``.  Entries carry the analysis name and an
``entity:<id>`` tag so one entity, or one kind of analysis, can be
invalidated in bulk.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence

from .analytics_cache import AnalyticsCache
from .analytics_config import AlgorithmSettings, AnalyticsConfig
from .interfaces import maybe_await
from .models import Record, coerce_correlations, coerce_patterns, coerce_predictions

logger = logging.getLogger(__name__)

PATTERN_ANALYSIS = "pattern-analysis"
CORRELATION_ANALYSIS = "correlation-analysis"
PREDICTIVE_ANALYSIS = "predictive-analysis"
ANOMALY_DETECTION = "anomaly-detection"

ANALYSIS_TAGS = (PATTERN_ANALYSIS, CORRELATION_ANALYSIS, PREDICTIVE_ANALYSIS, ANOMALY_DETECTION)

_MISS = object()


def entity_tag(entity_id: str) -> str:
    return f"entity:{entity_id}"


class CachedAnalysisEngine:
    """Cache analyzer outputs by input content and configuration."""

    def __init__(
        self,
        cache: AnalyticsCache,
        config: Optional[AnalyticsConfig] = None,
        *,
        pattern_analyzer: Any = None,
        correlation_analyzer: Any = None,
        predictive_analyzer: Any = None,
        anomaly_detector: Any = None,
    ) -> None:
        self.cache = cache
        self.pattern_analyzer = pattern_analyzer
        self.correlation_analyzer = correlation_analyzer
        self.predictive_analyzer = predictive_analyzer
        self.anomaly_detector = anomaly_detector
        self._config = config or AnalyticsConfig()
        self.config_hash = self._config.analysis_fingerprint()

    @property
    def settings(self) -> AlgorithmSettings:
        """Algorithm tuning handed to every analyzer call."""
        return self._config.algorithms

    # ------------------------------------------------------------------
    # Cached analyzer calls
    # ------------------------------------------------------------------
    async def analyze_patterns(self, entity_id: str, records: Sequence[Record], window_days: int) -> List[Any]:
        if self.pattern_analyzer is None:
            return []
        settings = self.settings
        return await self._cached(
            self._key(PATTERN_ANALYSIS, entity_id, records, window_days=window_days),
            PATTERN_ANALYSIS,
            entity_id,
            lambda: self.pattern_analyzer.analyze(records, window_days, settings=settings),
            coerce_patterns,
        )

    async def analyze_correlations(self, entity_id: str, records: Sequence[Record]) -> List[Any]:
        if self.correlation_analyzer is None:
            return []
        settings = self.settings
        return await self._cached(
            self._key(CORRELATION_ANALYSIS, entity_id, records),
            CORRELATION_ANALYSIS,
            entity_id,
            lambda: self.correlation_analyzer.analyze(records, settings=settings),
            coerce_correlations,
        )

    async def predict(self, entity_id: str, records: Sequence[Record], goals: Sequence[Any]) -> List[Any]:
        if self.predictive_analyzer is None:
            return []
        settings = self.settings
        return await self._cached(
            self._key(
                PREDICTIVE_ANALYSIS,
                entity_id,
                records,
                goals_fingerprint=self.cache.get_data_fingerprint(list(goals)),
            ),
            PREDICTIVE_ANALYSIS,
            entity_id,
            lambda: self.predictive_analyzer.analyze(records, goals, settings=settings),
            coerce_predictions,
        )

    async def detect_anomalies(self, entity_id: str, records: Sequence[Record]) -> List[Any]:
        if self.anomaly_detector is None:
            return []
        settings = self.settings
        return await self._cached(
            self._key(ANOMALY_DETECTION, entity_id, records),
            ANOMALY_DETECTION,
            entity_id,
            lambda: self.anomaly_detector.detect(records, settings=settings),
            lambda items: list(items or []),
        )

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------
    def invalidate_entity(self, entity_id: str) -> int:
        return self.cache.invalidate_by_tag(entity_tag(entity_id))

    def invalidate_all(self) -> int:
        return sum(self.cache.invalidate_by_tag(tag) for tag in ANALYSIS_TAGS)

    def update_config(self, config: AnalyticsConfig) -> bool:
        """Adopt ``config``; returns whether the analyzer-relevant hash changed."""
        previous = self.config_hash
        self._config = config
        self.config_hash = config.analysis_fingerprint()
        self.cache.ttl_seconds = config.cache.ttl_seconds
        changed = previous != self.config_hash
        if changed and config.cache.invalidate_on_config_change:
            removed = self.invalidate_all()
            logger.info("Analyzer configuration changed; invalidated %s cached analyses", removed)
        return changed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _key(self, analysis: str, entity_id: str, records: Sequence[Record], **params: Any) -> str:
        # Entries are owned by one entity so its tag always covers them.
        return self.cache.create_key(
            analysis,
            {
                "entity_id": entity_id,
                "fingerprint": self.cache.get_data_fingerprint(list(records)),
                "count": len(records),
                "config_hash": self.config_hash,
                **params,
            },
        )

    async def _cached(
        self,
        key: str,
        analysis: str,
        entity_id: str,
        call: Callable[[], Any],
        normalise: Callable[[Any], List[Any]],
    ) -> List[Any]:
        cached = self.cache.get(key, _MISS)
        if cached is not _MISS:
            return list(cached)
        result = normalise(await maybe_await(call()))
        self.cache.set(key, tuple(result), tags=(analysis, entity_tag(entity_id)))
        return list(result)


__all__ = [
    "ANALYSIS_TAGS",
    "ANOMALY_DETECTION",
    "CORRELATION_ANALYSIS",
    "CachedAnalysisEngine",
    "PATTERN_ANALYSIS",
    "PREDICTIVE_ANALYSIS",
    "entity_tag",
]
