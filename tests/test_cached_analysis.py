from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from analytics_engine.analytics_cache import AnalyticsCache
from analytics_engine.analytics_config import AnalyticsConfig
from analytics_engine.cached_analysis import CORRELATION_ANALYSIS, PATTERN_ANALYSIS, CachedAnalysisEngine
from analytics_engine.models import CorrelationResult, PatternResult, Record

START = datetime(2024, 1, 1, tzinfo=UTC)


def _records(count, category="emotion"):
    return [Record(timestamp=START + timedelta(hours=i), category=category, value="calm") for i in range(count)]


@pytest.fixture
def pattern_analyzer():
    analyzer = Mock()
    analyzer.analyze.return_value = [
        {"description": "Calm after lunch", "confidence": 0.8},
        {"description": "missing confidence"},
    ]
    return analyzer


@pytest.fixture
def engine(time_stub, pattern_analyzer):
    return CachedAnalysisEngine(AnalyticsCache(max_size=20), AnalyticsConfig(), pattern_analyzer=pattern_analyzer)


@pytest.mark.asyncio
async def test_identical_inputs_reuse_cached_output(engine, pattern_analyzer):
    records = _records(3)
    first = await engine.analyze_patterns("student-1", records, 30)
    second = await engine.analyze_patterns("student-1", list(records), 30)

    assert first == second == [PatternResult(description="Calm after lunch", confidence=0.8)]
    pattern_analyzer.analyze.assert_called_once_with(records, 30, settings=engine.settings)


@pytest.mark.asyncio
async def test_changed_inputs_miss_the_cache(engine, pattern_analyzer):
    await engine.analyze_patterns("student-1", _records(3), 30)
    await engine.analyze_patterns("student-1", _records(4), 30)
    await engine.analyze_patterns("student-1", _records(4), 14)
    assert pattern_analyzer.analyze.call_count == 3


@pytest.mark.asyncio
async def test_entries_are_tagged_by_analysis_and_entity(engine):
    await engine.analyze_patterns("student-1", _records(3), 30)
    await engine.analyze_patterns("student-2", _records(5), 30)

    assert len(engine.cache.keys_for_tag(PATTERN_ANALYSIS)) == 2
    assert engine.invalidate_entity("student-1") == 1
    assert len(engine.cache.keys_for_tag("entity:student-2")) == 1
    assert engine.invalidate_all() == 1
    assert len(engine.cache) == 0


@pytest.mark.asyncio
async def test_config_change_rekeys_and_invalidates(engine, pattern_analyzer):
    records = _records(3)
    await engine.analyze_patterns("student-1", records, 30)

    changed = AnalyticsConfig.from_dict({"algorithms": {"min_sample_size": 9}})
    assert engine.update_config(changed) is True
    assert len(engine.cache) == 0

    await engine.analyze_patterns("student-1", records, 30)
    assert pattern_analyzer.analyze.call_count == 2

    assert engine.update_config(AnalyticsConfig.from_dict({"insights": {"max_patterns": 1}})) is False
    assert len(engine.cache) == 1


@pytest.mark.asyncio
async def test_async_analyzers_and_missing_analyzers(time_stub):
    correlation = Mock()
    correlation.analyze = AsyncMock(return_value=[{"description": "Noise and mood", "significance": "high"}])
    engine = CachedAnalysisEngine(AnalyticsCache(), correlation_analyzer=correlation)

    result = await engine.analyze_correlations("student-1", _records(3, "session"))
    assert result == [CorrelationResult(description="Noise and mood", significance="high")]
    assert engine.cache.keys_for_tag(CORRELATION_ANALYSIS)

    assert await engine.analyze_patterns("student-1", _records(3), 30) == []
    assert await engine.predict("student-1", _records(3), []) == []
    assert await engine.detect_anomalies("student-1", _records(3)) == []


@pytest.mark.asyncio
async def test_failures_propagate_and_are_not_cached(engine, pattern_analyzer):
    records = _records(3)
    pattern_analyzer.analyze.side_effect = [RuntimeError("analyzer down"), [{"description": "ok", "confidence": 0.7}]]

    with pytest.raises(RuntimeError):
        await engine.analyze_patterns("student-1", records, 30)
    assert len(engine.cache) == 0

    result = await engine.analyze_patterns("student-1", records, 30)
    assert result == [PatternResult(description="ok", confidence=0.7)]


@pytest.mark.asyncio
async def test_analyzers_receive_the_active_algorithm_settings(time_stub):
    config = AnalyticsConfig.from_dict({"algorithms": {"anomaly_threshold": 1.0, "alert_sensitivity": "high"}})
    detector = Mock()
    detector.detect.return_value = []
    predictive = Mock()
    predictive.analyze.return_value = []
    engine = CachedAnalysisEngine(AnalyticsCache(), config, anomaly_detector=detector, predictive_analyzer=predictive)

    await engine.detect_anomalies("student-1", _records(3))
    await engine.predict("student-1", _records(3), [{"title": "goal"}])

    settings = detector.detect.call_args.kwargs["settings"]
    assert settings.anomaly_threshold == 1.0
    assert settings.alert_sensitivity == "high"
    assert predictive.analyze.call_args.kwargs["settings"] is engine.settings


@pytest.mark.asyncio
async def test_identical_records_for_different_entities_are_cached_separately(engine, pattern_analyzer):
    records = _records(3)
    await engine.analyze_patterns("student-1", records, 30)
    await engine.analyze_patterns("student-2", records, 30)
    assert pattern_analyzer.analyze.call_count == 2

    assert engine.invalidate_entity("student-2") == 1
    await engine.analyze_patterns("student-2", records, 30)
    assert pattern_analyzer.analyze.call_count == 3
    await engine.analyze_patterns("student-1", records, 30)
    assert pattern_analyzer.analyze.call_count == 3
