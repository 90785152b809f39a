import json
from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from analytics_engine.exceptions import PersistenceFailure, ProfileValidationError
from analytics_engine.profile_store import (
    DEFAULT_PROFILE_STORAGE_KEY,
    InMemoryPersistence,
    JsonFilePersistence,
    ProfileStore,
    validate_profile_record,
)

ANALYZED_AT = datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def store(persistence):
    return ProfileStore(persistence)


def _valid_record(entity_id, **overrides):
    record = {"entity_id": entity_id, "is_initialized": True, "health_score": 40}
    record.update(overrides)
    return record


def test_initialize_creates_default_profile_and_persists(store, persistence):
    profile = store.initialize_entity("student-1")

    assert profile.is_initialized is True
    assert profile.last_analyzed_at is None
    assert profile.health_score == 0
    assert profile.minimum_data_requirements == {"emotion": 1, "sensory": 1, "session": 1}
    flags = profile.feature_flags
    assert all([flags.pattern, flags.correlation, flags.prediction, flags.anomaly, flags.alerting])

    stored = json.loads(persistence.get(DEFAULT_PROFILE_STORAGE_KEY))
    assert "student-1" in stored


def test_initialize_is_idempotent(store):
    store.initialize_entity("student-1")
    store.update("student-1", health_score=55)

    again = store.initialize_entity("student-1")
    assert again.health_score == 55
    assert len(store) == 1


@pytest.mark.parametrize("entity_id", ["", "   ", None, 42])
def test_initialize_ignores_invalid_ids(store, entity_id):
    assert store.initialize_entity(entity_id) is None
    assert len(store) == 0


def test_update_merges_fields(store):
    store.initialize_entity("student-1")
    updated = store.update(
        "student-1",
        last_analyzed_at=ANALYZED_AT,
        health_score=150,
        feature_flags={"correlation": False, "unknown": True},
    )

    assert updated.last_analyzed_at == ANALYZED_AT
    assert updated.health_score == 100
    assert updated.feature_flags.correlation is False
    assert updated.feature_flags.pattern is True
    assert store.get("student-1").health_score == 100


def test_update_unknown_entity_returns_none(store):
    assert store.update("ghost", health_score=10) is None
    assert "ghost" not in store


def test_returned_profiles_are_copies(store):
    store.initialize_entity("student-1")
    profile = store.get("student-1")
    profile.health_score = 99
    assert store.get("student-1").health_score == 0


def test_timestamps_round_trip_as_iso_strings(store, persistence):
    store.initialize_entity("student-1")
    store.update("student-1", last_analyzed_at=ANALYZED_AT)

    raw = json.loads(persistence.get(DEFAULT_PROFILE_STORAGE_KEY))
    assert isinstance(raw["student-1"]["last_analyzed_at"], str)

    reloaded = ProfileStore(persistence)
    assert reloaded.get("student-1").last_analyzed_at == ANALYZED_AT


def test_load_skips_invalid_records():
    payload = {
        "good": _valid_record("good", last_analyzed_at="2024-01-01T12:00:00Z"),
        "empty-id": _valid_record(""),
        "bad-flag": _valid_record("bad-flag", is_initialized="yes"),
        "bad-score": _valid_record("bad-score", health_score=101),
        "not-an-object": "garbage",
    }
    persistence = InMemoryPersistence({DEFAULT_PROFILE_STORAGE_KEY: json.dumps(payload)})
    store = ProfileStore(persistence)

    assert [profile.entity_id for profile in store.all()] == ["good"]
    assert store.get("good").health_score == 40
    assert store.load() == 1


def test_unparseable_payload_leaves_store_empty():
    persistence = InMemoryPersistence({DEFAULT_PROFILE_STORAGE_KEY: "{not json"})
    store = ProfileStore(persistence)
    assert len(store) == 0
    assert store.load() == 0


def test_persistence_failures_are_not_raised():
    persistence = Mock()
    persistence.get.side_effect = OSError("read failed")
    persistence.set.side_effect = OSError("write failed")

    store = ProfileStore(persistence)
    profile = store.initialize_entity("student-1")

    assert profile is not None
    assert store.get("student-1") is not None
    assert store.save() is False


def test_store_without_persistence_is_memory_only():
    store = ProfileStore()
    store.initialize_entity("student-1")
    assert store.save() is False
    assert store.load() == 0
    assert "student-1" in store


def test_validate_profile_record_reports_errors():
    ok = validate_profile_record(_valid_record("student-1"))
    assert ok.ok is True
    assert ok.profile.entity_id == "student-1"

    failed = validate_profile_record(_valid_record("student-2", is_initialized=1))
    assert failed.ok is False
    assert isinstance(failed.error, ProfileValidationError)
    assert failed.error.entity_id == "student-2"
    assert "is_initialized" in str(failed.error)

    assert validate_profile_record(["not", "a", "dict"]).ok is False


def test_json_file_persistence_round_trip(tmp_path):
    persistence = JsonFilePersistence(tmp_path / "state")
    assert persistence.get("analytics_engine.profiles") is None

    persistence.set("analytics_engine.profiles", '{"a": 1}')
    persistence.set("analytics_engine.profiles", '{"a": 2}')

    assert persistence.get("analytics_engine.profiles") == '{"a": 2}'
    assert [path.name for path in (tmp_path / "state").iterdir()] == ["analytics_engine.profiles.json"]


def test_json_file_persistence_wraps_os_errors(tmp_path):
    blocked = tmp_path / "blocked"
    blocked.write_text("a file, not a directory", encoding="utf-8")
    persistence = JsonFilePersistence(blocked)

    with pytest.raises(PersistenceFailure):
        persistence.set("key", "value")

    store = ProfileStore(persistence)
    assert store.initialize_entity("student-1") is not None
    assert store.save() is False
