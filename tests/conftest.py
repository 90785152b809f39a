import threading
from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest

import analytics_engine.analytics_cache as analytics_cache_module
import analytics_engine.orchestrator as orchestrator_module
from analytics_engine.interfaces import InMemoryDatastore


@pytest.fixture(autouse=True, scope="session")
def load_dotenv_if_available():
    """Load environment variables from .env when one exists.

    Keeps tests flexible for local runs without committing secrets.
    """
    from dotenv import find_dotenv, load_dotenv

    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path)


class TimeStub:
    def __init__(self):
        self.current = 0.0
        self._lock = threading.Lock()

    def time(self) -> float:
        with self._lock:
            return self.current

    def sleep(self, seconds: float) -> None:
        if seconds < 0:
            seconds = 0.0
        with self._lock:
            self.current += seconds


@pytest.fixture
def time_stub(monkeypatch):
    stub = TimeStub()
    monkeypatch.setattr(analytics_cache_module, "_now_monotonic", stub.time)
    return stub


FROZEN_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def frozen_now(monkeypatch):
    monkeypatch.setattr(orchestrator_module, "_utcnow", lambda: FROZEN_NOW)
    return FROZEN_NOW


@pytest.fixture
def datastore():
    return InMemoryDatastore()


def add_history(store, entity_id, *, sessions=0, emotions=(), sensory=0, end=FROZEN_NOW):
    """Add records ending at ``end``, one hour apart, oldest first."""
    entries = [("session", None)] * sessions + [("emotion", value) for value in emotions] + [("sensory", None)] * sensory
    start = end - timedelta(hours=len(entries))
    for offset, (category, value) in enumerate(entries, start=1):
        store.add_record(entity_id, category, value, start + timedelta(hours=offset))


@pytest.fixture
def spy_analyzers():
    """Mock analyzers with realistic outputs and call-count tracking."""
    pattern = Mock()
    pattern.analyze.return_value = [{"description": "Calmer after breaks", "confidence": 0.9}]
    correlation = Mock()
    correlation.analyze.return_value = [{"description": "Noise and anxiety", "significance": "high"}]
    predictive = Mock()
    predictive.analyze.return_value = [{"description": "Goal likely met", "confidence": 0.75}]
    anomaly = Mock()
    anomaly.detect.return_value = [{"kind": "spike", "score": 2.4}]
    return {
        "pattern_analyzer": pattern,
        "correlation_analyzer": correlation,
        "predictive_analyzer": predictive,
        "anomaly_detector": anomaly,
    }


@pytest.fixture
def history():
    return add_history
