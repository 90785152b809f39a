"""Per-entity analytics lifecycle metadata with durable persistence.

Profiles are serialised as one JSON object keyed by entity id and written
through a string key/value :class:`~analytics_engine.interfaces.Persistence`
collaborator.  Persistence failures are logged and never raised; the
in-memory map stays authoritative for the running process.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, ValidationError

from .exceptions import PersistenceFailure, ProfileValidationError

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_STORAGE_KEY = "analytics_engine.profiles"
DEFAULT_CATEGORIES = ("emotion", "sensory", "session")


class FeatureFlags(BaseModel):
    """Which analyzers run for an entity."""

    model_config = ConfigDict(extra="ignore")

    pattern: bool = True
    correlation: bool = True
    prediction: bool = True
    anomaly: bool = True
    alerting: bool = True


class AnalyticsProfile(BaseModel):
    """Lifecycle metadata for one entity."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    entity_id: StrictStr = Field(..., min_length=1)
    is_initialized: StrictBool
    last_analyzed_at: Optional[datetime] = None
    feature_flags: FeatureFlags = Field(default_factory=FeatureFlags)
    minimum_data_requirements: Dict[str, int] = Field(default_factory=dict)
    health_score: int = Field(default=0, ge=0, le=100)


@dataclass
class ProfileValidationResult:
    ok: bool
    profile: Optional[AnalyticsProfile] = None
    error: Optional[ProfileValidationError] = None


def validate_profile_record(raw: Any) -> ProfileValidationResult:
    """Check one persisted record against the profile schema."""
    if not isinstance(raw, dict):
        return ProfileValidationResult(
            ok=False, error=ProfileValidationError(f"Profile record must be an object, got {type(raw).__name__}")
        )
    try:
        profile = AnalyticsProfile.model_validate(raw)
    except ValidationError as exc:
        entity_id = raw.get("entity_id") if isinstance(raw.get("entity_id"), str) else None
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        return ProfileValidationResult(ok=False, error=ProfileValidationError(problems, entity_id=entity_id))
    return ProfileValidationResult(ok=True, profile=profile)


# ---------------------------------------------------------------------------
# Persistence backends
# ---------------------------------------------------------------------------


class InMemoryPersistence:
    """Dictionary backed persistence, mainly for tests and ephemeral runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value


class JsonFilePersistence:
    """Store each key as a file under ``directory`` using atomic replace."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)

    def _path_for(self, key: str) -> Path:
        safe = "".join(char if char.isalnum() or char in "-_." else "_" for char in key)
        return self.directory / f"{safe}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceFailure("read", key, exc) from exc

    def set(self, key: str, value: str) -> None:
        path = self._path_for(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{path.stem}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(value)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceFailure("write", key, exc) from exc


# ---------------------------------------------------------------------------
# Profile store
# ---------------------------------------------------------------------------


class ProfileStore:
    """Owns the per-entity :class:`AnalyticsProfile` map."""

    def __init__(
        self,
        persistence: Any = None,
        *,
        storage_key: str = DEFAULT_PROFILE_STORAGE_KEY,
        categories: Iterable[str] = DEFAULT_CATEGORIES,
    ) -> None:
        self._persistence = persistence
        self.storage_key = storage_key
        self.categories = tuple(categories)
        self._profiles: Dict[str, AnalyticsProfile] = {}
        self._lock = threading.RLock()
        if persistence is not None:
            self.load()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def initialize_entity(self, entity_id: str) -> Optional[AnalyticsProfile]:
        """Create a default profile for ``entity_id`` unless one exists."""
        if not isinstance(entity_id, str) or not entity_id.strip():
            logger.warning("Ignoring profile initialization for invalid entity id %r", entity_id)
            return None
        with self._lock:
            existing = self._profiles.get(entity_id)
            if existing is not None:
                return existing.model_copy(deep=True)
            profile = AnalyticsProfile(
                entity_id=entity_id,
                is_initialized=True,
                minimum_data_requirements={category: 1 for category in self.categories},
            )
            self._profiles[entity_id] = profile
            logger.debug("Initialized analytics profile for %s", entity_id)
        self.save()
        return profile.model_copy(deep=True)

    def update(
        self,
        entity_id: str,
        *,
        last_analyzed_at: Optional[datetime] = None,
        health_score: Optional[int] = None,
        feature_flags: Optional[Dict[str, bool]] = None,
    ) -> Optional[AnalyticsProfile]:
        """Merge the given fields into an existing profile and persist it."""
        with self._lock:
            current = self._profiles.get(entity_id)
            if current is None:
                logger.warning("Cannot update unknown analytics profile %s", entity_id)
                return None
            changes: Dict[str, Any] = {}
            if last_analyzed_at is not None:
                changes["last_analyzed_at"] = last_analyzed_at
            if health_score is not None:
                changes["health_score"] = max(0, min(100, int(health_score)))
            if feature_flags:
                known = {name: bool(value) for name, value in feature_flags.items() if name in FeatureFlags.model_fields}
                changes["feature_flags"] = current.feature_flags.model_copy(update=known)
            updated = current.model_copy(update=changes, deep=True)
            self._profiles[entity_id] = updated
        self.save()
        return updated.model_copy(deep=True)

    def get(self, entity_id: str) -> Optional[AnalyticsProfile]:
        with self._lock:
            profile = self._profiles.get(entity_id)
            return profile.model_copy(deep=True) if profile else None

    def all(self) -> List[AnalyticsProfile]:
        with self._lock:
            return [profile.model_copy(deep=True) for profile in self._profiles.values()]

    def load(self) -> int:
        """Replace the in-memory map with persisted profiles; returns how many loaded."""
        if self._persistence is None:
            return 0
        try:
            payload = self._persistence.get(self.storage_key)
        except Exception as exc:
            self._log_failure("load", exc)
            return 0
        if not payload:
            return 0

        try:
            raw_profiles = json.loads(payload)
        except ValueError as exc:
            logger.error("Persisted analytics profiles are not valid JSON: %s", exc)
            with self._lock:
                self._profiles.clear()
            return 0
        if not isinstance(raw_profiles, dict):
            logger.error("Persisted analytics profiles must be a JSON object keyed by entity id")
            with self._lock:
                self._profiles.clear()
            return 0

        loaded: Dict[str, AnalyticsProfile] = {}
        for key, raw in raw_profiles.items():
            result = validate_profile_record(raw)
            if not result.ok or result.profile is None:
                logger.warning("Skipping invalid analytics profile %r: %s", key, result.error)
                continue
            loaded[result.profile.entity_id] = result.profile

        with self._lock:
            self._profiles = loaded
        logger.info("Loaded %s analytics profiles (%s skipped)", len(loaded), len(raw_profiles) - len(loaded))
        return len(loaded)

    def save(self) -> bool:
        """Write every profile through the persistence collaborator."""
        if self._persistence is None:
            return False
        with self._lock:
            payload = json.dumps(
                {entity_id: profile.model_dump(mode="json") for entity_id, profile in self._profiles.items()},
                sort_keys=True,
            )
        try:
            self._persistence.set(self.storage_key, payload)
        except Exception as exc:
            self._log_failure("save", exc)
            return False
        return True

    def __contains__(self, entity_id: object) -> bool:
        with self._lock:
            return entity_id in self._profiles

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _log_failure(self, operation: str, exc: Exception) -> None:
        failure = exc if isinstance(exc, PersistenceFailure) else PersistenceFailure(operation, self.storage_key, exc)
        logger.error("Profile persistence %s failed: %s", operation, failure)


__all__ = [
    "AnalyticsProfile",
    "DEFAULT_PROFILE_STORAGE_KEY",
    "FeatureFlags",
    "InMemoryPersistence",
    "JsonFilePersistence",
    "ProfileStore",
    "ProfileValidationResult",
    "validate_profile_record",
]
