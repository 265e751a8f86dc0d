# adaptive_escore/safety.py
"""
Anomaly detection, rollback and weight validation for optimizer output.

Nothing here raises on bad data: anomalies come back as flags plus
human-readable messages, validation as a list of violations.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from adaptive_escore.config import (
    BOUND_EPSILON,
    DEFAULT_WEIGHTS_BY_AXIS,
    HEALTH_MIN_ACCURACY,
    HEALTH_MIN_DATA,
    HEALTH_TREND_DELTA,
    HEALTH_TREND_MIN_RECORDS,
    MIN_ACOS_SAMPLES,
    WEIGHT_SUM_TOLERANCE,
    RollbackThresholds,
    WeightConstraints,
)
from adaptive_escore.error_codes import (
    ACOS_DEGRADATION,
    INSUFFICIENT_DATA,
    NO_ANOMALY,
    SUCCESS_RATE_DROP,
)
from adaptive_escore.logging_utils import log_event
from adaptive_escore.schemas import (
    WEIGHT_FIELDS,
    FeedbackRecord,
    LearnedWeights,
    WeightHistory,
    WeightVector,
)
from adaptive_escore.weights import OptimizationResult


@dataclass
class AnomalyDetectionResult:
    is_anomalous: bool
    anomaly_type: str  # success_rate_drop | acos_degradation | insufficient_data | none
    message: str
    current_value: float
    threshold: float
    should_rollback: bool


@dataclass
class SafeOptimizationResult:
    result: OptimizationResult
    anomalies: list[AnomalyDetectionResult]
    needs_rollback: bool
    final_weights: WeightVector
    warnings: list[str] = field(default_factory=list)
    key: object | None = None
    failed: bool = False


@dataclass
class HealthCheckResult:
    healthy: bool
    current_accuracy: float
    accuracy_trend: str  # improving | stable | declining
    hours_since_last_rollback: float | None
    warnings: list[str] = field(default_factory=list)


# --- Detectors ---

def detect_success_rate_drop(
    previous_accuracy: float,
    current_accuracy: float,
    threshold: float = 0.20,
) -> AnomalyDetectionResult:
    """Anomalous iff previous - current >= threshold (inclusive)."""
    drop = previous_accuracy - current_accuracy

    if drop >= threshold - BOUND_EPSILON:
        return AnomalyDetectionResult(
            is_anomalous=True,
            anomaly_type=SUCCESS_RATE_DROP,
            message=f"Accuracy dropped by {drop * 100:.1f}% (threshold: {threshold * 100:.1f}%)",
            current_value=drop,
            threshold=threshold,
            should_rollback=True,
        )

    return AnomalyDetectionResult(
        is_anomalous=False,
        anomaly_type=NO_ANOMALY,
        message="No accuracy drop",
        current_value=drop,
        threshold=threshold,
        should_rollback=False,
    )


def detect_acos_degradation(
    records: list[FeedbackRecord],
    threshold: float = 0.30,
) -> AnomalyDetectionResult:
    """
    Mean relative ACOS change (after - before) / before across records.

    Needs MIN_ACOS_SAMPLES records with positive before and after ACOS;
    with fewer it abstains (insufficient_data, never a rollback vote).
    """
    qualifying = [
        r for r in records
        if r.evaluated and r.acos_before > 0 and r.acos_after is not None and r.acos_after > 0
    ]

    if len(qualifying) < MIN_ACOS_SAMPLES:
        return AnomalyDetectionResult(
            is_anomalous=False,
            anomaly_type=INSUFFICIENT_DATA,
            message=f"Not enough ACOS data to judge ({len(qualifying)}/{MIN_ACOS_SAMPLES})",
            current_value=0.0,
            threshold=threshold,
            should_rollback=False,
        )

    total = sum((r.acos_after - r.acos_before) / r.acos_before for r in qualifying)
    avg_change = total / len(qualifying)

    if avg_change >= threshold - BOUND_EPSILON:
        return AnomalyDetectionResult(
            is_anomalous=True,
            anomaly_type=ACOS_DEGRADATION,
            message=f"Average ACOS worsened by {avg_change * 100:.1f}% (threshold: {threshold * 100:.1f}%)",
            current_value=avg_change,
            threshold=threshold,
            should_rollback=True,
        )

    return AnomalyDetectionResult(
        is_anomalous=False,
        anomaly_type=NO_ANOMALY,
        message="No ACOS degradation",
        current_value=avg_change,
        threshold=threshold,
        should_rollback=False,
    )


def detect_anomalies(
    previous_accuracy: float,
    current_accuracy: float,
    records: list[FeedbackRecord],
    thresholds: RollbackThresholds | None = None,
) -> list[AnomalyDetectionResult]:
    t = thresholds or RollbackThresholds()
    return [
        detect_success_rate_drop(previous_accuracy, current_accuracy, t.success_rate_drop),
        detect_acos_degradation(records, t.acos_degradation),
    ]


# --- History / rollback ---

def create_weight_history(
    key,
    weights: WeightVector,
    accuracy: float,
    data_count: int,
    *,
    now: datetime | None = None,
) -> WeightHistory:
    return WeightHistory(
        history_id=uuid.uuid4().hex,
        key=key,
        weights=weights,
        accuracy=accuracy,
        data_count=data_count,
        saved_at=now or datetime.now(timezone.utc),
        rolled_back=False,
    )


def rollback_weights(current: LearnedWeights, history: WeightHistory,
                     *, now: datetime | None = None) -> LearnedWeights:
    """LearnedWeights restored to a history snapshot. Version still increments."""
    log_event(
        "weights_rolled_back",
        level=logging.WARNING,
        key=history.key.label,
        from_weights=current.weights.as_dict(),
        to_weights=history.weights.as_dict(),
    )
    return current.model_copy(update={
        "weights": history.weights,
        "accuracy": history.accuracy,
        "last_updated": now or datetime.now(timezone.utc),
        "version": current.version + 1,
    })


def reset_to_default_weights(key) -> WeightVector:
    log_event("weights_reset_to_default", level=logging.WARNING, key=key.label)
    return WeightVector(**DEFAULT_WEIGHTS_BY_AXIS[key.axis][key.value])


def apply_safety_checks(
    result: OptimizationResult,
    records: list[FeedbackRecord],
    previous_history: WeightHistory | None,
    thresholds: RollbackThresholds | None = None,
) -> SafeOptimizationResult:
    """
    Decide whether the optimizer output may be applied.

    Any detector voting for rollback => needs_rollback. The rollback target
    is the latest non-rolled-back history snapshot, or the pre-cycle weights
    when there is none.

    Args:
        result: Optimizer output
        records: Feedback the optimizer used (for the ACOS detector)
        previous_history: Latest non-rolled-back snapshot for the key, if any
        thresholds: Rollback thresholds (defaults if None)

    Returns:
        SafeOptimizationResult with final_weights to put in effect
    """
    anomalies = detect_anomalies(
        result.previous_accuracy,
        result.estimated_accuracy,
        records,
        thresholds,
    )
    needs_rollback = any(a.should_rollback for a in anomalies)
    warnings: list[str] = []

    if not needs_rollback:
        return SafeOptimizationResult(
            result=result,
            anomalies=anomalies,
            needs_rollback=False,
            final_weights=result.new_weights,
            warnings=warnings,
        )

    if previous_history is not None:
        final_weights = previous_history.weights
        warnings.append(
            f"Anomaly detected; rolling back to weights saved at {previous_history.saved_at.isoformat()}"
        )
    else:
        final_weights = result.previous_weights
        warnings.append("Anomaly detected; keeping the weights in effect before this cycle")

    for anomaly in anomalies:
        if anomaly.is_anomalous:
            log_event(
                "anomaly_detected",
                level=logging.ERROR,
                anomaly_type=anomaly.anomaly_type,
                message=anomaly.message,
                current_value=anomaly.current_value,
                threshold=anomaly.threshold,
            )
            warnings.append(anomaly.message)

    return SafeOptimizationResult(
        result=result,
        anomalies=anomalies,
        needs_rollback=True,
        final_weights=final_weights,
        warnings=warnings,
    )


# --- Validation ---

def validate_weights(weights: WeightVector, constraints: WeightConstraints | None = None) -> list[str]:
    """
    Check range, sum-to-one (0.001 absolute tolerance) and configured bounds.

    Returns:
        Human-readable violations; empty when valid
    """
    constraints = constraints or WeightConstraints()
    errors: list[str] = []

    for name in WEIGHT_FIELDS:
        value = getattr(weights, name)
        if value < -BOUND_EPSILON or value > 1 + BOUND_EPSILON:
            errors.append(f"{name} weight out of range [0, 1]: {value}")

    total = weights.total()
    if abs(total - 1) > WEIGHT_SUM_TOLERANCE:
        errors.append(f"weights do not sum to 1: {total}")

    for name in WEIGHT_FIELDS:
        value = getattr(weights, name)
        bound = getattr(constraints.bounds, name)
        if value < bound.min - BOUND_EPSILON or value > bound.max + BOUND_EPSILON:
            errors.append(f"{name} weight outside bound [{bound.min}, {bound.max}]: {value}")

    return errors


# --- Health ---

def perform_health_check(
    learned: LearnedWeights,
    recent_feedback: list[FeedbackRecord],
    last_rollback_time: datetime | None,
    *,
    now: datetime | None = None,
) -> HealthCheckResult:
    now = now or datetime.now(timezone.utc)
    warnings: list[str] = []

    current_accuracy = learned.accuracy
    if current_accuracy < HEALTH_MIN_ACCURACY:
        warnings.append(f"Accuracy is low: {current_accuracy * 100:.1f}%")

    if learned.data_count < HEALTH_MIN_DATA:
        warnings.append(f"Not enough learning data: {learned.data_count} records")

    trend = "stable"
    # Oldest first, so the second half is the most recent feedback
    scored = sorted(
        (r for r in recent_feedback if r.evaluated and r.success_score is not None),
        key=lambda r: r.recommendation_timestamp,
    )
    if len(scored) >= HEALTH_TREND_MIN_RECORDS:
        mid = len(scored) // 2
        first, second = scored[:mid], scored[mid:]
        first_avg = sum(r.success_score for r in first) / len(first)
        second_avg = sum(r.success_score for r in second) / len(second)

        if second_avg - first_avg > HEALTH_TREND_DELTA:
            trend = "improving"
        elif first_avg - second_avg > HEALTH_TREND_DELTA:
            trend = "declining"
            warnings.append("Success scores are trending down")

    hours_since: float | None = None
    if last_rollback_time is not None:
        hours_since = (now - last_rollback_time).total_seconds() / 3600
        if hours_since < 24:
            warnings.append(f"Rollback within the last 24 hours ({hours_since:.1f}h ago)")

    return HealthCheckResult(
        healthy=not warnings,
        current_accuracy=current_accuracy,
        accuracy_trend=trend,
        hours_since_last_rollback=hours_since,
        warnings=warnings,
    )
