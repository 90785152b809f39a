import json
from unittest.mock import Mock

import pytest

from analytics_engine.analytics_config import (
    DEFAULT_CONFIG_STORAGE_KEY,
    AnalyticsConfig,
    AnalyticsConfigManager,
    ConfidenceSettings,
    InsightSettings,
    deep_merge,
)
from analytics_engine.exceptions import ConfigurationError
from analytics_engine.profile_store import InMemoryPersistence


def test_defaults_match_documented_values():
    config = AnalyticsConfig()
    assert config.cache.ttl_seconds == 600.0
    assert config.cache.max_size == 50
    assert config.insights.min_sessions_for_full_analytics == 5
    assert config.insights.high_confidence_pattern_threshold == 0.6
    assert config.insights.max_patterns == 2
    assert config.insights.recent_window == 7
    assert config.confidence.thresholds == {"emotion": 10, "sensory": 10, "session": 5}
    assert sum(config.confidence.weights.values()) == pytest.approx(1.0)
    assert config.health_score.patterns == 20
    assert config.analysis.min_records_for_correlation == 3
    assert config.analysis.min_records_for_enhanced == 2
    assert "calm" in config.categories.positive_values
    assert config.warnings == []


def test_from_env_parses_overrides():
    config = AnalyticsConfig.from_env(
        {
            "ANALYTICS_CACHE_TTL_SECONDS": "120",
            "ANALYTICS_MAX_PATTERNS": "3",
            "ANALYTICS_CACHE_INVALIDATE_ON_CONFIG_CHANGE": "off",
            "ANALYTICS_POSITIVE_VALUES": "Happy, calm",
            "ANALYTICS_ALERT_SENSITIVITY": "HIGH",
        }
    )
    assert config.cache.ttl_seconds == 120.0
    assert config.insights.max_patterns == 3
    assert config.cache.invalidate_on_config_change is False
    assert config.categories.positive_values == ["happy", "calm"]
    assert config.algorithms.alert_sensitivity == "high"
    assert config.errors == []


def test_from_env_records_errors_and_keeps_defaults():
    config = AnalyticsConfig.from_env({"ANALYTICS_CACHE_MAX_SIZE": "many"})
    assert config.cache.max_size == 50
    assert any("ANALYTICS_CACHE_MAX_SIZE" in error for error in config.errors)


def test_validation_clamps_and_normalises():
    config = AnalyticsConfig(
        insights=InsightSettings(high_confidence_pattern_threshold=1.5, max_patterns=-1),
        confidence=ConfidenceSettings(weights={"emotion": 1, "sensory": 1, "session": 2}),
    )
    assert config.insights.high_confidence_pattern_threshold == 1.0
    assert config.insights.max_patterns == 0
    assert config.confidence.weights == pytest.approx({"emotion": 0.25, "sensory": 0.25, "session": 0.5})
    assert len(config.warnings) == 3


def test_from_yaml_merges_onto_defaults(tmp_path):
    path = tmp_path / "analytics.yaml"
    path.write_text(
        "cache:\n  ttl_seconds: 30\ninsights:\n  max_patterns: 4\nunknown_section: 1\n",
        encoding="utf-8",
    )
    config = AnalyticsConfig.from_yaml(path)
    assert config.cache.ttl_seconds == 30
    assert config.cache.max_size == 50
    assert config.insights.max_patterns == 4
    assert "Unknown configuration key 'unknown_section' ignored." in config.warnings


def test_from_yaml_rejects_non_mapping(tmp_path):
    path = tmp_path / "analytics.yaml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        AnalyticsConfig.from_yaml(path)


def test_analysis_fingerprint_tracks_analyzer_settings_only():
    base = AnalyticsConfig()
    insights_changed = AnalyticsConfig.from_dict({"insights": {"max_patterns": 5}})
    algorithms_changed = AnalyticsConfig.from_dict({"algorithms": {"anomaly_threshold": 3.0}})
    assert base.analysis_fingerprint() == insights_changed.analysis_fingerprint()
    assert base.analysis_fingerprint() != algorithms_changed.analysis_fingerprint()


def test_deep_merge_keeps_untouched_keys():
    merged = deep_merge({"a": {"x": 1, "y": 2}, "b": [1]}, {"a": {"y": 3}, "b": [2], "c": None})
    assert merged == {"a": {"x": 1, "y": 3}, "b": [2]}


def test_manager_update_merges_and_notifies():
    manager = AnalyticsConfigManager()
    received = []
    unsubscribe = manager.subscribe(received.append)

    manager.update_config({"insights": {"max_patterns": 5}})
    config = manager.get_config()
    assert config.insights.max_patterns == 5
    assert config.insights.max_correlations == 2
    assert len(received) == 1
    assert received[0].insights.max_patterns == 5

    unsubscribe()
    manager.update_config({"insights": {"max_patterns": 1}})
    assert len(received) == 1


def test_manager_returns_copies():
    manager = AnalyticsConfigManager()
    config = manager.get_config()
    config.cache.max_size = 1
    assert manager.get_config().cache.max_size == 50


def test_failing_listener_does_not_block_others():
    manager = AnalyticsConfigManager()
    failing = Mock(side_effect=RuntimeError("listener boom"))
    healthy = Mock()
    manager.subscribe(failing)
    manager.subscribe(healthy)

    manager.reset_to_defaults()
    failing.assert_called_once()
    healthy.assert_called_once()


def test_presets_apply_and_unknown_preset_fails():
    manager = AnalyticsConfigManager()
    conservative = manager.set_preset("conservative")
    assert conservative.algorithms.alert_sensitivity == "low"
    assert conservative.algorithms.min_sample_size == 8

    sensitive = manager.set_preset("sensitive")
    assert sensitive.algorithms.anomaly_threshold == 1.0

    with pytest.raises(ConfigurationError):
        manager.set_preset("reckless")
    assert manager.get_config().algorithms.alert_sensitivity == "high"

    assert manager.reset_to_defaults().algorithms.alert_sensitivity == "medium"


def test_export_import_between_managers():
    source = AnalyticsConfigManager()
    source.update_config({"cache": {"ttl_seconds": 42.0}})
    exported = source.export_config()

    target = AnalyticsConfigManager()
    assert target.import_config(exported) is True
    assert target.get_config().cache.ttl_seconds == 42.0
    assert json.loads(target.export_config()) == json.loads(exported)


@pytest.mark.parametrize("payload", ["not json", "[]", json.dumps({"cache": {}})])
def test_import_rejects_invalid_payloads(payload):
    manager = AnalyticsConfigManager()
    assert manager.import_config(payload) is False
    assert manager.get_config().cache.ttl_seconds == 600.0


def test_manager_persists_and_restores_configuration():
    persistence = InMemoryPersistence()
    first = AnalyticsConfigManager(persistence=persistence)
    first.update_config({"insights": {"recent_window": 10}})
    assert persistence.get(DEFAULT_CONFIG_STORAGE_KEY) is not None

    restored = AnalyticsConfigManager(persistence=persistence)
    assert restored.get_config().insights.recent_window == 10


def test_manager_tolerates_persistence_failures():
    persistence = Mock()
    persistence.get.side_effect = OSError("disk gone")
    persistence.set.side_effect = OSError("disk gone")

    manager = AnalyticsConfigManager(persistence=persistence)
    updated = manager.update_config({"cache": {"max_size": 10}})
    assert updated.cache.max_size == 10
    persistence.set.assert_called_once()
