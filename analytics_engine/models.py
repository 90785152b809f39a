"""Structured representations of records and analytics results."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class Record(BaseModel):
    """A single time-series observation for an entity."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    timestamp: datetime = Field(..., description="When the observation was made")
    category: str = Field(..., min_length=1, description="Tracked category, e.g. emotion or session")
    value: Optional[str] = Field(default=None, description="Optional label such as the emotion name")
    entity_id: Optional[str] = Field(default=None, description="Owning entity id when known")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Free-form record payload")

    @field_validator("timestamp")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class PatternResult(BaseModel):
    """A detected pattern with its confidence."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    description: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class CorrelationResult(BaseModel):
    """A detected correlation with its significance bucket."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    description: str
    significance: Literal["low", "medium", "high"]


class PredictionResult(BaseModel):
    """A predictive insight with its confidence."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    description: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class AnalyticsResult(BaseModel):
    """Complete analytics for one entity. Replaced, never patched."""

    model_config = ConfigDict(frozen=True)

    patterns: Tuple[PatternResult, ...] = ()
    correlations: Tuple[CorrelationResult, ...] = ()
    predictions: Tuple[PredictionResult, ...] = ()
    anomalies: Tuple[Any, ...] = ()
    insights: Tuple[str, ...] = ()
    has_minimum_data: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def _comparable(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"generated_at"})

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AnalyticsResult):
            return NotImplemented
        return self._comparable() == other._comparable()

    def __hash__(self) -> int:
        return hash((self.insights, self.has_minimum_data, self.confidence, len(self.patterns)))


@dataclass
class EntityStatus:
    """Dashboard row describing an entity's analytics state."""

    id: str
    name: str
    initialized: bool
    last_analyzed: Optional[datetime]
    health_score: int
    has_minimum_data: bool


@dataclass
class RefreshSummary:
    """Outcome of a bulk refresh: successes and per-entity failure reasons."""

    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


def _coerce(model: type[BaseModel], items: Optional[Iterable[Any]], label: str) -> List[Any]:
    coerced: List[Any] = []
    for item in items or []:
        if isinstance(item, model):
            coerced.append(item)
            continue
        try:
            if isinstance(item, dict):
                coerced.append(model.model_validate(item))
            else:
                coerced.append(model.model_validate(item, from_attributes=True))
        except ValidationError as exc:
            logger.warning("Skipping malformed %s: %s", label, exc.errors()[0].get("msg", exc))
    return coerced


def coerce_records(items: Optional[Iterable[Any]]) -> List[Record]:
    """Normalise datastore records (dicts or objects), skipping malformed ones."""
    return _coerce(Record, items, "record")


def coerce_patterns(items: Optional[Iterable[Any]]) -> List[PatternResult]:
    return _coerce(PatternResult, items, "pattern")


def coerce_correlations(items: Optional[Iterable[Any]]) -> List[CorrelationResult]:
    return _coerce(CorrelationResult, items, "correlation")


def coerce_predictions(items: Optional[Iterable[Any]]) -> List[PredictionResult]:
    return _coerce(PredictionResult, items, "prediction")


__all__ = [
    "AnalyticsResult",
    "CorrelationResult",
    "EntityStatus",
    "PatternResult",
    "PredictionResult",
    "Record",
    "RefreshSummary",
    "coerce_correlations",
    "coerce_patterns",
    "coerce_predictions",
    "coerce_records",
]
