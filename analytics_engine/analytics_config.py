"""Central configuration management for the analytics engine."""
from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import yaml

from .exceptions import ConfigurationError, PersistenceFailure
from .utils.cache_utils import CacheKeyBuilder

logger = logging.getLogger(__name__)

_BOOL_TRUE = {"1", "true", "yes", "on", "enabled"}
_BOOL_FALSE = {"0", "false", "no", "off", "disabled"}
_ALERT_LEVELS = {"low", "medium", "high"}

DEFAULT_CONFIG_STORAGE_KEY = "analytics_engine.config"
DEFAULT_POSITIVE_VALUES = (
    "happy",
    "calm",
    "excited",
    "content",
    "peaceful",
    "cheerful",
    "relaxed",
    "optimistic",
)


def _get_env(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    return value.strip() if isinstance(value, str) else value


def _as_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get_env(env, key)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _BOOL_TRUE:
        return True
    if lowered in _BOOL_FALSE:
        return False
    raise ValueError(f"Environment variable {key} must be boolean-like, got: {raw}")


def _as_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = _get_env(env, key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {key} must be an integer, got: {raw}") from exc


def _as_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get_env(env, key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {key} must be numeric, got: {raw}") from exc


def _as_list(env: Mapping[str, str], key: str, default: List[str]) -> List[str]:
    raw = _get_env(env, key)
    if raw is None:
        return list(default)
    return [token.strip().lower() for token in raw.split(",") if token.strip()]


def deep_merge(target: Mapping[str, Any], source: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a deep copy of ``target`` with ``source`` merged in.

    Nested mappings merge recursively; ``None`` values in ``source`` are ignored
    and every other value (lists included) replaces the target value.
    """
    result = copy.deepcopy(dict(target))
    for key, value in source.items():
        if value is None:
            continue
        current = result.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            result[key] = deep_merge(current, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ---------------------------------------------------------------------------
# Configuration sections
# ---------------------------------------------------------------------------


@dataclass
class CacheSettings:
    ttl_seconds: float = 600.0
    max_size: int = 50
    invalidate_on_config_change: bool = True
    cleanup_interval_seconds: float = 300.0


@dataclass
class InsightSettings:
    min_sessions_for_full_analytics: int = 5
    high_confidence_pattern_threshold: float = 0.6
    max_patterns: int = 2
    max_correlations: int = 2
    max_predictions: int = 2
    recent_window: int = 7
    positive_trend_threshold: float = 0.6
    negative_trend_threshold: float = 0.3


@dataclass
class ConfidenceSettings:
    """Per-category saturation thresholds and weights for data confidence."""

    thresholds: Dict[str, int] = field(
        default_factory=lambda: {"emotion": 10, "sensory": 10, "session": 5}
    )
    weights: Dict[str, float] = field(
        default_factory=lambda: {"emotion": 0.3, "sensory": 0.3, "session": 0.4}
    )
    recency_days: float = 7.0
    recency_bonus: float = 0.1


@dataclass
class HealthScoreSettings:
    patterns: int = 20
    correlations: int = 20
    predictions: int = 20
    anomalies: int = 20
    minimum_data: int = 20


@dataclass
class AnalysisSettings:
    min_records_for_correlation: int = 3
    min_records_for_enhanced: int = 2
    analysis_period_days: int = 30


@dataclass
class CategorySettings:
    """Which record categories are tracked and how they are interpreted."""

    tracked: List[str] = field(default_factory=lambda: ["emotion", "sensory", "session"])
    sentiment_category: str = "emotion"
    session_category: str = "session"
    positive_values: List[str] = field(default_factory=lambda: list(DEFAULT_POSITIVE_VALUES))


@dataclass
class AlgorithmSettings:
    """Tuning knobs handed through to analyzers; they also key the analyzer cache."""

    min_data_points: int = 3
    correlation_threshold: float = 0.25
    high_intensity_threshold: int = 4
    concern_frequency_threshold: float = 0.3
    emotion_consistency_threshold: float = 0.4
    moderate_negative_threshold: float = 0.4
    trend_threshold: float = 0.05
    anomaly_threshold: float = 1.5
    min_sample_size: int = 5
    prediction_confidence_threshold: float = 0.6
    risk_assessment_threshold: int = 3
    alert_sensitivity: str = "medium"
    emotion_intensity_multiplier: float = 1.0
    frequency_multiplier: float = 1.0
    anomaly_multiplier: float = 1.0
    recent_data_days: int = 7
    short_term_days: int = 14
    long_term_days: int = 90


_SECTIONS = {
    "cache": CacheSettings,
    "insights": InsightSettings,
    "confidence": ConfidenceSettings,
    "health_score": HealthScoreSettings,
    "analysis": AnalysisSettings,
    "categories": CategorySettings,
    "algorithms": AlgorithmSettings,
}


@dataclass
class AnalyticsConfig:
    """Configuration snapshot for cache, scoring, insight and analyzer behaviour."""

    cache: CacheSettings = field(default_factory=CacheSettings)
    insights: InsightSettings = field(default_factory=InsightSettings)
    confidence: ConfidenceSettings = field(default_factory=ConfidenceSettings)
    health_score: HealthScoreSettings = field(default_factory=HealthScoreSettings)
    analysis: AnalysisSettings = field(default_factory=AnalysisSettings)
    categories: CategorySettings = field(default_factory=CategorySettings)
    algorithms: AlgorithmSettings = field(default_factory=AlgorithmSettings)

    config_loaded_at: float = field(default_factory=time.time)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._validate()

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "AnalyticsConfig":
        """Build a configuration snapshot from ``ANALYTICS_*`` environment variables."""
        env_map: Mapping[str, str] = env if env is not None else os.environ
        defaults_confidence = ConfidenceSettings()

        try:
            cache = CacheSettings(
                ttl_seconds=_as_float(env_map, "ANALYTICS_CACHE_TTL_SECONDS", 600.0),
                max_size=_as_int(env_map, "ANALYTICS_CACHE_MAX_SIZE", 50),
                invalidate_on_config_change=_as_bool(env_map, "ANALYTICS_CACHE_INVALIDATE_ON_CONFIG_CHANGE", True),
                cleanup_interval_seconds=_as_float(env_map, "ANALYTICS_CACHE_CLEANUP_INTERVAL_SECONDS", 300.0),
            )
            insights = InsightSettings(
                min_sessions_for_full_analytics=_as_int(env_map, "ANALYTICS_MIN_SESSIONS_FOR_FULL_ANALYTICS", 5),
                high_confidence_pattern_threshold=_as_float(env_map, "ANALYTICS_HIGH_CONFIDENCE_THRESHOLD", 0.6),
                max_patterns=_as_int(env_map, "ANALYTICS_MAX_PATTERNS", 2),
                max_correlations=_as_int(env_map, "ANALYTICS_MAX_CORRELATIONS", 2),
                max_predictions=_as_int(env_map, "ANALYTICS_MAX_PREDICTIONS", 2),
                recent_window=_as_int(env_map, "ANALYTICS_RECENT_WINDOW", 7),
                positive_trend_threshold=_as_float(env_map, "ANALYTICS_POSITIVE_TREND_THRESHOLD", 0.6),
                negative_trend_threshold=_as_float(env_map, "ANALYTICS_NEGATIVE_TREND_THRESHOLD", 0.3),
            )
            confidence = ConfidenceSettings(
                thresholds={
                    "emotion": _as_int(env_map, "ANALYTICS_CONFIDENCE_EMOTION_THRESHOLD", 10),
                    "sensory": _as_int(env_map, "ANALYTICS_CONFIDENCE_SENSORY_THRESHOLD", 10),
                    "session": _as_int(env_map, "ANALYTICS_CONFIDENCE_SESSION_THRESHOLD", 5),
                },
                weights=dict(defaults_confidence.weights),
                recency_days=_as_float(env_map, "ANALYTICS_CONFIDENCE_RECENCY_DAYS", 7.0),
                recency_bonus=_as_float(env_map, "ANALYTICS_CONFIDENCE_RECENCY_BONUS", 0.1),
            )
            analysis = AnalysisSettings(
                min_records_for_correlation=_as_int(env_map, "ANALYTICS_MIN_RECORDS_FOR_CORRELATION", 3),
                min_records_for_enhanced=_as_int(env_map, "ANALYTICS_MIN_RECORDS_FOR_ENHANCED", 2),
                analysis_period_days=_as_int(env_map, "ANALYTICS_ANALYSIS_PERIOD_DAYS", 30),
            )
            categories = CategorySettings(
                tracked=_as_list(env_map, "ANALYTICS_TRACKED_CATEGORIES", ["emotion", "sensory", "session"]),
                sentiment_category=_get_env(env_map, "ANALYTICS_SENTIMENT_CATEGORY") or "emotion",
                session_category=_get_env(env_map, "ANALYTICS_SESSION_CATEGORY") or "session",
                positive_values=_as_list(env_map, "ANALYTICS_POSITIVE_VALUES", list(DEFAULT_POSITIVE_VALUES)),
            )
            alert_sensitivity = (_get_env(env_map, "ANALYTICS_ALERT_SENSITIVITY") or "medium").lower()
        except ValueError as exc:
            config = cls()
            config.errors.append(str(exc))
            logger.warning("Invalid analytics environment configuration: %s", exc)
            return config

        config = cls(
            cache=cache,
            insights=insights,
            confidence=confidence,
            analysis=analysis,
            categories=categories,
            algorithms=AlgorithmSettings(alert_sensitivity=alert_sensitivity),
        )
        return config

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalyticsConfig":
        """Build a configuration from a (possibly partial) nested mapping.

        Unknown sections and fields are ignored with a warning entry.
        """
        merged = deep_merge(cls().to_dict(), data)
        sections: Dict[str, Any] = {}
        ignored: List[str] = []
        for name, section_cls in _SECTIONS.items():
            raw = merged.get(name) or {}
            if not isinstance(raw, Mapping):
                raise ConfigurationError(f"Configuration section '{name}' must be a mapping")
            known = {f.name for f in fields(section_cls)}
            ignored.extend(f"{name}.{key}" for key in raw if key not in known)
            sections[name] = section_cls(**{key: value for key, value in raw.items() if key in known})
        ignored.extend(key for key in data if key not in _SECTIONS and key not in {"warnings", "errors", "config_loaded_at"})

        config = cls(**sections)
        for key in ignored:
            config.warnings.append(f"Unknown configuration key '{key}' ignored.")
        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "AnalyticsConfig":
        """Load overrides from a YAML file and merge them onto the defaults."""
        config_path = Path(path)
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
        logger.info("Loaded analytics configuration from %s", config_path)
        return cls.from_dict(data)

    # ------------------------------------------------------------------
    # Validation & utilities
    # ------------------------------------------------------------------
    def _validate(self) -> None:
        self.warnings.clear()
        self.errors.clear()

        if self.cache.max_size <= 0:
            self.warnings.append("Cache max size must be positive; defaulting to 50.")
            self.cache.max_size = 50
        if self.cache.ttl_seconds < 0:
            self.warnings.append("Cache TTL cannot be negative; using 0.")
            self.cache.ttl_seconds = 0.0
        if self.cache.cleanup_interval_seconds < 0:
            self.warnings.append("Cache cleanup interval cannot be negative; using 0.")
            self.cache.cleanup_interval_seconds = 0.0

        insights = self.insights
        for name in ("max_patterns", "max_correlations", "max_predictions"):
            if getattr(insights, name) < 0:
                self.warnings.append(f"Insight limit {name} cannot be negative; using 0.")
                setattr(insights, name, 0)
        if insights.recent_window <= 0:
            self.warnings.append("Recent window must be positive; defaulting to 7.")
            insights.recent_window = 7
        if insights.min_sessions_for_full_analytics < 0:
            self.warnings.append("Full analytics session threshold cannot be negative; using 0.")
            insights.min_sessions_for_full_analytics = 0
        for name in ("high_confidence_pattern_threshold", "positive_trend_threshold", "negative_trend_threshold"):
            value = getattr(insights, name)
            if not 0.0 <= value <= 1.0:
                clamped = min(max(value, 0.0), 1.0)
                self.warnings.append(f"{name} must be within [0, 1]; clamping to {clamped}.")
                setattr(insights, name, clamped)
        if insights.negative_trend_threshold > insights.positive_trend_threshold:
            self.warnings.append("Negative trend threshold exceeds positive trend threshold.")

        self._validate_confidence()

        for f in fields(self.health_score):
            if getattr(self.health_score, f.name) < 0:
                self.warnings.append(f"Health score weight {f.name} cannot be negative; using 0.")
                setattr(self.health_score, f.name, 0)
        if sum(getattr(self.health_score, f.name) for f in fields(self.health_score)) > 100:
            self.warnings.append("Health score weights sum above 100; scores will be capped.")

        analysis = self.analysis
        if analysis.analysis_period_days <= 0:
            self.warnings.append("Analysis period must be positive; defaulting to 30 days.")
            analysis.analysis_period_days = 30
        for name in ("min_records_for_correlation", "min_records_for_enhanced"):
            if getattr(analysis, name) < 0:
                self.warnings.append(f"{name} cannot be negative; using 0.")
                setattr(analysis, name, 0)

        categories = self.categories
        if not categories.tracked:
            self.warnings.append("No tracked categories configured; restoring defaults.")
            categories.tracked = list(CategorySettings().tracked)
        categories.positive_values = [value.lower() for value in categories.positive_values]

        if self.algorithms.alert_sensitivity not in _ALERT_LEVELS:
            self.warnings.append(
                f"Unknown alert sensitivity '{self.algorithms.alert_sensitivity}'; defaulting to 'medium'."
            )
            self.algorithms.alert_sensitivity = "medium"

    def _validate_confidence(self) -> None:
        settings = self.confidence
        for category, threshold in list(settings.thresholds.items()):
            if threshold <= 0:
                self.warnings.append(f"Confidence threshold for '{category}' must be positive; using 1.")
                settings.thresholds[category] = 1
        for category, weight in list(settings.weights.items()):
            if weight < 0:
                self.warnings.append(f"Confidence weight for '{category}' cannot be negative; using 0.")
                settings.weights[category] = 0.0
        total = sum(settings.weights.values())
        if total <= 0:
            self.warnings.append("Confidence weights sum to zero; restoring defaults.")
            settings.weights = dict(ConfidenceSettings().weights)
        elif abs(total - 1.0) > 1e-6:
            self.warnings.append(f"Confidence weights sum to {total:.3f}; normalising to 1.")
            settings.weights = {category: weight / total for category, weight in settings.weights.items()}
        if not 0.0 <= settings.recency_bonus <= 1.0:
            self.warnings.append("Recency bonus must be within [0, 1]; clamping.")
            settings.recency_bonus = min(max(settings.recency_bonus, 0.0), 1.0)
        if settings.recency_days < 0:
            self.warnings.append("Recency window cannot be negative; using 0.")
            settings.recency_days = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Return the section values only, ready for JSON or YAML export."""
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}

    def analysis_fingerprint(self) -> str:
        """Hash of the settings that change analyzer output."""
        return CacheKeyBuilder.fingerprint(
            {
                "algorithms": asdict(self.algorithms),
                "analysis": asdict(self.analysis),
                "categories": asdict(self.categories),
            }
        )

    def copy(self) -> "AnalyticsConfig":
        return copy.deepcopy(self)


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

PRESET_CONFIGS: Dict[str, Dict[str, Any]] = {
    "conservative": {
        "name": "Conservative",
        "description": "Higher thresholds, fewer alerts, more data required",
        "overrides": {
            "algorithms": {
                "min_data_points": 5,
                "correlation_threshold": 0.4,
                "concern_frequency_threshold": 0.4,
                "anomaly_threshold": 2.0,
                "min_sample_size": 8,
                "alert_sensitivity": "low",
                "emotion_intensity_multiplier": 0.8,
                "frequency_multiplier": 0.8,
                "anomaly_multiplier": 0.8,
            }
        },
    },
    "balanced": {
        "name": "Balanced",
        "description": "Default settings, balanced sensitivity",
        "overrides": {},
    },
    "sensitive": {
        "name": "Sensitive",
        "description": "Lower thresholds, more alerts, less data required",
        "overrides": {
            "algorithms": {
                "min_data_points": 2,
                "correlation_threshold": 0.15,
                "concern_frequency_threshold": 0.2,
                "anomaly_threshold": 1.0,
                "min_sample_size": 3,
                "alert_sensitivity": "high",
                "emotion_intensity_multiplier": 1.2,
                "frequency_multiplier": 1.2,
                "anomaly_multiplier": 1.2,
            }
        },
    },
}


def build_preset(name: str) -> AnalyticsConfig:
    """Return a fresh configuration for preset ``name``."""
    preset = PRESET_CONFIGS.get(name)
    if preset is None:
        raise ConfigurationError(
            f"Unknown analytics preset '{name}'. Available presets: {', '.join(sorted(PRESET_CONFIGS))}"
        )
    return AnalyticsConfig.from_dict(preset["overrides"])


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

ConfigListener = Callable[[AnalyticsConfig], None]


class AnalyticsConfigManager:
    """Hold the active configuration and notify subscribers of changes.

    When a persistence collaborator is supplied the active configuration is
    restored from it on construction and written back after every change.
    Persistence errors are logged and never raised.
    """

    def __init__(
        self,
        config: Optional[AnalyticsConfig] = None,
        *,
        persistence: Any = None,
        storage_key: str = DEFAULT_CONFIG_STORAGE_KEY,
    ) -> None:
        self._persistence = persistence
        self._storage_key = storage_key
        self._listeners: List[ConfigListener] = []
        self._lock = threading.RLock()
        self._config = config.copy() if config is not None else self._load() or AnalyticsConfig()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def get_config(self) -> AnalyticsConfig:
        with self._lock:
            return self._config.copy()

    def update_config(self, updates: Mapping[str, Any]) -> AnalyticsConfig:
        """Deep-merge ``updates`` into the active configuration."""
        with self._lock:
            merged = deep_merge(self._config.to_dict(), updates)
            self._config = AnalyticsConfig.from_dict(merged)
            for warning in self._config.warnings:
                logger.warning("Analytics configuration: %s", warning)
            snapshot = self._config.copy()
        self._commit(snapshot)
        return snapshot

    def set_preset(self, name: str) -> AnalyticsConfig:
        config = build_preset(name)
        with self._lock:
            self._config = config
            snapshot = config.copy()
        logger.info("Applied analytics preset '%s'", name)
        self._commit(snapshot)
        return snapshot

    def reset_to_defaults(self) -> AnalyticsConfig:
        with self._lock:
            self._config = AnalyticsConfig()
            snapshot = self._config.copy()
        self._commit(snapshot)
        return snapshot

    def subscribe(self, callback: ConfigListener) -> Callable[[], None]:
        """Register ``callback`` for change notifications; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners = [listener for listener in self._listeners if listener is not callback]

        return unsubscribe

    def export_config(self) -> str:
        with self._lock:
            return json.dumps(self._config.to_dict(), indent=2, sort_keys=True)

    def import_config(self, text: str) -> bool:
        """Replace the active configuration with a JSON export; ``False`` if invalid."""
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to import analytics configuration: %s", exc)
            return False
        if not self.validate_config(data):
            logger.error("Rejected analytics configuration import: missing required sections")
            return False
        try:
            config = AnalyticsConfig.from_dict(data)
        except (TypeError, ValueError) as exc:
            logger.error("Failed to import analytics configuration: %s", exc)
            return False
        with self._lock:
            self._config = config
            snapshot = config.copy()
        self._commit(snapshot)
        return True

    @staticmethod
    def validate_config(data: Any) -> bool:
        """Return whether ``data`` carries every configuration section as a mapping."""
        if not isinstance(data, Mapping):
            return False
        return all(isinstance(data.get(name), Mapping) for name in _SECTIONS)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _commit(self, snapshot: AnalyticsConfig) -> None:
        self._save(snapshot)
        self._notify(snapshot)

    def _notify(self, snapshot: AnalyticsConfig) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot.copy())
            except Exception:
                logger.exception("Analytics configuration listener %r failed", listener)

    def _load(self) -> Optional[AnalyticsConfig]:
        if self._persistence is None:
            return None
        try:
            stored = self._persistence.get(self._storage_key)
        except Exception as exc:
            logger.error("%s", PersistenceFailure("load", self._storage_key, exc))
            return None
        if not stored:
            return None
        try:
            data = json.loads(stored)
            if self.validate_config(data):
                return AnalyticsConfig.from_dict(data)
        except (TypeError, ValueError) as exc:
            logger.error("Stored analytics configuration is unreadable: %s", exc)
            return None
        logger.warning("Stored analytics configuration is incomplete; using defaults.")
        return None

    def _save(self, snapshot: AnalyticsConfig) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.set(self._storage_key, json.dumps(snapshot.to_dict(), sort_keys=True))
        except Exception as exc:
            logger.error("%s", PersistenceFailure("save", self._storage_key, exc))


__all__ = [
    "AlgorithmSettings",
    "AnalysisSettings",
    "AnalyticsConfig",
    "AnalyticsConfigManager",
    "CacheSettings",
    "CategorySettings",
    "ConfidenceSettings",
    "DEFAULT_CONFIG_STORAGE_KEY",
    "DEFAULT_POSITIVE_VALUES",
    "HealthScoreSettings",
    "InsightSettings",
    "PRESET_CONFIGS",
    "build_preset",
    "deep_merge",
]
