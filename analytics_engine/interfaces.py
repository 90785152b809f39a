"""Contracts for the collaborators consumed by the analytics engine.

Implementations may be synchronous or asynchronous; the engine awaits any
awaitable a collaborator returns (see :func:`maybe_await`). Analyzers and the
alert generator receive the active :class:`AlgorithmSettings` as the
``settings`` keyword.
"""
from __future__ import annotations

import inspect
import logging
import threading
from datetime import UTC, datetime
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, TypeVar, Union, runtime_checkable

from .analytics_config import AlgorithmSettings
from .exceptions import EntityNotFound
from .models import Record

logger = logging.getLogger(__name__)

T = TypeVar("T")

MaybeAwaitable = Union[T, Awaitable[T]]


async def maybe_await(value: MaybeAwaitable[T]) -> T:
    """Await ``value`` when it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


@runtime_checkable
class Datastore(Protocol):
    """Read access to entities and their time-ordered records.

    ``get_records_for_entity`` raises :class:`EntityNotFound` only when the id
    itself is unknown. Datastores may additionally expose
    ``get_goals_for_entity(entity_id)``; goals are passed to the predictive
    analyzer when available.
    """

    def get_entities(self) -> MaybeAwaitable[Sequence[Mapping[str, Any]]]: ...

    def get_records_for_entity(self, entity_id: str) -> MaybeAwaitable[Sequence[Any]]: ...


class PatternAnalyzer(Protocol):
    def analyze(
        self, records: Sequence[Record], window_days: int, *, settings: Optional[AlgorithmSettings] = None
    ) -> MaybeAwaitable[Sequence[Any]]: ...


class CorrelationAnalyzer(Protocol):
    def analyze(
        self, records: Sequence[Record], *, settings: Optional[AlgorithmSettings] = None
    ) -> MaybeAwaitable[Sequence[Any]]: ...


class PredictiveAnalyzer(Protocol):
    def analyze(
        self, records: Sequence[Record], goals: Sequence[Any], *, settings: Optional[AlgorithmSettings] = None
    ) -> MaybeAwaitable[Sequence[Any]]: ...


class AnomalyDetector(Protocol):
    def detect(
        self, records: Sequence[Record], *, settings: Optional[AlgorithmSettings] = None
    ) -> MaybeAwaitable[Sequence[Any]]: ...


class AlertGenerator(Protocol):
    def generate(
        self, entity_id: str, records: Sequence[Record], *, settings: Optional[AlgorithmSettings] = None
    ) -> MaybeAwaitable[Any]: ...


class DataSeeder(Protocol):
    def seed(self, datastore: Any) -> MaybeAwaitable[Any]: ...


@runtime_checkable
class Persistence(Protocol):
    """String key/value storage used for durability."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...


class InMemoryDatastore:
    """Thread-safe in-memory datastore holding entities, records and goals."""

    def __init__(self) -> None:
        self._entities: Dict[str, Dict[str, Any]] = {}
        self._records: Dict[str, List[Record]] = {}
        self._goals: Dict[str, List[Any]] = {}
        self._lock = threading.RLock()

    def add_entity(self, entity_id: str, name: Optional[str] = None) -> None:
        with self._lock:
            self._entities[entity_id] = {"id": entity_id, "name": name or entity_id}
            self._records.setdefault(entity_id, [])
            self._goals.setdefault(entity_id, [])

    def add_record(
        self,
        entity_id: str,
        category: str,
        value: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        **attributes: Any,
    ) -> Record:
        with self._lock:
            if entity_id not in self._entities:
                raise EntityNotFound(entity_id)
            record = Record(
                timestamp=timestamp or datetime.now(UTC),
                category=category,
                value=value,
                entity_id=entity_id,
                attributes=attributes,
            )
            records = self._records[entity_id]
            records.append(record)
            records.sort(key=lambda item: item.timestamp)
            return record

    def add_records(self, entity_id: str, records: Iterable[Union[Record, Mapping[str, Any]]]) -> None:
        for item in records:
            if isinstance(item, Record):
                self.add_record(entity_id, item.category, item.value, item.timestamp, **item.attributes)
            else:
                data = dict(item)
                self.add_record(
                    entity_id,
                    data.pop("category"),
                    data.pop("value", None),
                    data.pop("timestamp", None),
                    **data.pop("attributes", {}),
                )

    def add_goal(self, entity_id: str, goal: Any) -> None:
        with self._lock:
            if entity_id not in self._entities:
                raise EntityNotFound(entity_id)
            self._goals[entity_id].append(goal)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._entities

    # ------------------------------------------------------------------
    # Datastore protocol
    # ------------------------------------------------------------------
    def get_entities(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(entity) for entity in self._entities.values()]

    def get_records_for_entity(self, entity_id: str) -> List[Record]:
        with self._lock:
            if entity_id not in self._entities:
                raise EntityNotFound(entity_id)
            return list(self._records[entity_id])

    def get_goals_for_entity(self, entity_id: str) -> List[Any]:
        with self._lock:
            if entity_id not in self._entities:
                raise EntityNotFound(entity_id)
            return list(self._goals[entity_id])


__all__ = [
    "AlertGenerator",
    "AnomalyDetector",
    "CorrelationAnalyzer",
    "DataSeeder",
    "Datastore",
    "InMemoryDatastore",
    "MaybeAwaitable",
    "PatternAnalyzer",
    "Persistence",
    "PredictiveAnalyzer",
    "maybe_await",
]
