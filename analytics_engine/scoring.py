"""Confidence, health score and insight text derived from analyzer output.

Every function here is pure: configuration and the reference time are
passed in explicitly so the orchestrator and the tests agree on results.
"""
from __future__ import annotations

from collections import Counter
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .analytics_config import CategorySettings, ConfidenceSettings, HealthScoreSettings, InsightSettings
from .models import CorrelationResult, PatternResult, PredictionResult, Record

NO_DATA_INSIGHT = (
    "No tracking data available yet. Start by creating your first tracking session to begin pattern analysis."
)
LIMITED_DATA_INSIGHT = (
    "Limited data available ({count} sessions). Analytics will improve as more data is collected."
)
PATTERN_INSIGHT = "Pattern detected: {description} ({percent}% confidence)"
CORRELATION_INSIGHT = "Strong correlation found: {description}"
PREDICTION_INSIGHT = "Prediction: {description} ({percent}% confidence)"
POSITIVE_TREND_INSIGHT = "Positive trend: {percent}% of recent emotions have been positive."
NEGATIVE_TREND_INSIGHT = (
    "Consider reviewing strategies - only {percent}% of recent emotions have been positive."
)
MONITORING_INSIGHT = (
    "Analytics are active and monitoring patterns. Continue collecting data for more detailed insights."
)

_SECONDS_PER_DAY = 86400.0


def round_half_up(value: float, digits: int = 0) -> Union[int, float]:
    """Round halves away from zero instead of to even (``round_half_up(0.5) == 1``)."""
    quantum = Decimal(1).scaleb(-digits)
    rounded = Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP)
    return int(rounded) if digits == 0 else float(rounded)


def count_by_category(records: Sequence[Record]) -> Dict[str, int]:
    return dict(Counter(record.category for record in records))


def session_count(records: Sequence[Record], categories: CategorySettings) -> int:
    """Number of tracking sessions; every record counts when no session category is set."""
    if not categories.session_category:
        return len(records)
    return sum(1 for record in records if record.category == categories.session_category)


def calculate_confidence(
    counts: Mapping[str, int],
    settings: ConfidenceSettings,
    last_record_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> float:
    """Weighted data-volume confidence with a recency bonus, in ``[0, 1]``.

    Each configured category contributes ``min(count / threshold, 1) * weight``.
    When the newest record is younger than ``settings.recency_days`` the
    recency bonus is added before clamping and rounding to two decimals.
    """
    base = 0.0
    for category, threshold in settings.thresholds.items():
        observed = counts.get(category, 0)
        weight = settings.weights.get(category, 0.0)
        base += min(observed / threshold, 1.0) * weight

    if last_record_at is not None:
        reference = now or datetime.now(UTC)
        if last_record_at.tzinfo is None:
            last_record_at = last_record_at.replace(tzinfo=UTC)
        age_days = (reference - last_record_at).total_seconds() / _SECONDS_PER_DAY
        if age_days < settings.recency_days:
            base += settings.recency_bonus

    return round_half_up(min(max(base, 0.0), 1.0), 2)


def calculate_health_score(result: Any, settings: HealthScoreSettings) -> int:
    """Composite ``[0, 100]`` score: one weight per non-empty signal, scaled by confidence."""
    score = 0
    if result.patterns:
        score += settings.patterns
    if result.correlations:
        score += settings.correlations
    if result.predictions:
        score += settings.predictions
    if result.anomalies:
        score += settings.anomalies
    if result.has_minimum_data:
        score += settings.minimum_data
    return max(0, min(100, round_half_up(score * result.confidence)))


def positive_rate(records: Sequence[Record], settings: InsightSettings, categories: CategorySettings) -> Optional[float]:
    """Share of positive values among the most recent sentiment records.

    Returns ``None`` until at least ``settings.recent_window`` sentiment
    records exist.
    """
    sentiment = [record for record in records if record.category == categories.sentiment_category]
    if len(sentiment) < settings.recent_window:
        return None
    recent = sentiment[-settings.recent_window:]
    positives = set(categories.positive_values)
    hits = sum(1 for record in recent if (record.value or "").lower() in positives)
    return hits / len(recent)


def generate_insights(
    result_parts: Mapping[str, Sequence[Any]],
    records: Sequence[Record],
    settings: InsightSettings,
    categories: CategorySettings,
) -> List[str]:
    """Build the ordered, human-readable insight list for one analysis run."""
    sessions = session_count(records, categories)
    if sessions == 0:
        return [NO_DATA_INSIGHT]

    insights: List[str] = []
    if sessions < settings.min_sessions_for_full_analytics:
        insights.append(LIMITED_DATA_INSIGHT.format(count=sessions))

    patterns: Sequence[PatternResult] = result_parts.get("patterns", ())
    strong = [pattern for pattern in patterns if pattern.confidence > settings.high_confidence_pattern_threshold]
    strong.sort(key=lambda pattern: pattern.confidence, reverse=True)
    for pattern in strong[: settings.max_patterns]:
        insights.append(
            PATTERN_INSIGHT.format(description=pattern.description, percent=round_half_up(pattern.confidence * 100))
        )

    correlations: Sequence[CorrelationResult] = result_parts.get("correlations", ())
    significant = [correlation for correlation in correlations if correlation.significance == "high"]
    for correlation in significant[: settings.max_correlations]:
        insights.append(CORRELATION_INSIGHT.format(description=correlation.description))

    predictions: Sequence[PredictionResult] = result_parts.get("predictions", ())
    for prediction in list(predictions)[: settings.max_predictions]:
        insights.append(
            PREDICTION_INSIGHT.format(
                description=prediction.description, percent=round_half_up(prediction.confidence * 100)
            )
        )

    rate = positive_rate(records, settings, categories)
    if rate is not None:
        percent = round_half_up(rate * 100)
        if rate > settings.positive_trend_threshold:
            insights.append(POSITIVE_TREND_INSIGHT.format(percent=percent))
        elif rate < settings.negative_trend_threshold:
            insights.append(NEGATIVE_TREND_INSIGHT.format(percent=percent))

    if not insights:
        insights.append(MONITORING_INSIGHT)
    return insights


__all__ = [
    "CORRELATION_INSIGHT",
    "LIMITED_DATA_INSIGHT",
    "MONITORING_INSIGHT",
    "NEGATIVE_TREND_INSIGHT",
    "NO_DATA_INSIGHT",
    "PATTERN_INSIGHT",
    "POSITIVE_TREND_INSIGHT",
    "PREDICTION_INSIGHT",
    "calculate_confidence",
    "calculate_health_score",
    "count_by_category",
    "generate_insights",
    "positive_rate",
    "round_half_up",
    "session_count",
]
