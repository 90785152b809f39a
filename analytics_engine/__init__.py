"""
Entity Analytics Engine Package
"""

__version__ = "1.0.0"
__description__ = "Tagged TTL/LRU analytics cache with per-entity analysis orchestration"

from .analytics_cache import AnalyticsCache, CacheEntry
from .analytics_config import AnalyticsConfig, AnalyticsConfigManager, PRESET_CONFIGS
from .bootstrap import build_orchestrator, ensure_initialized, load_environment
from .cached_analysis import CachedAnalysisEngine
from .exceptions import (
    AnalyticsError,
    ConfigurationError,
    EntityNotFound,
    PersistenceFailure,
    ProfileValidationError,
    TransientAnalyzerFailure,
)
from .interfaces import InMemoryDatastore
from .models import (
    AnalyticsResult,
    CorrelationResult,
    EntityStatus,
    PatternResult,
    PredictionResult,
    Record,
    RefreshSummary,
)
from .orchestrator import AnalyticsOrchestrator
from .profile_store import (
    AnalyticsProfile,
    FeatureFlags,
    InMemoryPersistence,
    JsonFilePersistence,
    ProfileStore,
    validate_profile_record,
)

__all__ = [
    "AnalyticsCache",
    "AnalyticsConfig",
    "AnalyticsConfigManager",
    "AnalyticsError",
    "AnalyticsOrchestrator",
    "AnalyticsProfile",
    "AnalyticsResult",
    "CacheEntry",
    "CachedAnalysisEngine",
    "ConfigurationError",
    "CorrelationResult",
    "EntityNotFound",
    "EntityStatus",
    "FeatureFlags",
    "InMemoryDatastore",
    "InMemoryPersistence",
    "JsonFilePersistence",
    "PRESET_CONFIGS",
    "PatternResult",
    "PersistenceFailure",
    "PredictionResult",
    "ProfileStore",
    "ProfileValidationError",
    "Record",
    "RefreshSummary",
    "TransientAnalyzerFailure",
    "build_orchestrator",
    "ensure_initialized",
    "load_environment",
    "validate_profile_record",
]
