# adaptive_escore/weights.py
"""
Weight optimizer for the E-score blend.

Pure functions with no database access. Persistence and orchestration live
in controller.py; anomaly checks in safety.py.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from adaptive_escore.config import FALLBACK_WEIGHTS, WeightConstraints
from adaptive_escore.error_codes import INSUFFICIENT_DATA
from adaptive_escore.logging_utils import log_event
from adaptive_escore.schemas import WEIGHT_FIELDS, FeedbackRecord, LearnedWeights, WeightVector


@dataclass
class OptimizationResult:
    """Output of one optimizer invocation, consumed by the safety checks."""

    previous_weights: WeightVector
    new_weights: WeightVector
    delta: WeightVector
    data_count: int
    previous_accuracy: float
    estimated_accuracy: float
    optimized_at: datetime


ZERO_DELTA = WeightVector(performance=0.0, efficiency=0.0, potential=0.0)


# --- Constraint helpers ---

def normalize_weights(weights: WeightVector) -> WeightVector:
    """Scale so the three components sum to 1. A zero vector falls back to 0.4/0.4/0.2."""
    total = weights.total()
    if total == 0:
        return WeightVector(**FALLBACK_WEIGHTS)
    return WeightVector(
        performance=weights.performance / total,
        efficiency=weights.efficiency / total,
        potential=weights.potential / total,
    )


def clip_weights(weights: WeightVector, constraints: WeightConstraints) -> WeightVector:
    """
    Clip each component into its [min, max] bound, then re-normalize.

    Normalization only rescales components not pinned at a bound, and any
    component the rescale pushes past its bound gets pinned in turn, so the
    result both sums to 1 and stays in bounds whenever the bounds allow it.
    """
    bounds = {name: getattr(constraints.bounds, name) for name in WEIGHT_FIELDS}
    values = {name: max(b.min, min(b.max, getattr(weights, name))) for name, b in bounds.items()}
    pinned: set[str] = set()

    for _ in range(len(WEIGHT_FIELDS) + 1):
        total = sum(values.values())
        if abs(total - 1) <= 1e-12:
            return WeightVector(**values)

        free = [n for n in WEIGHT_FIELDS if n not in pinned]
        free_total = sum(values[n] for n in free)
        if free_total <= 0:
            break

        factor = (1 - (total - free_total)) / free_total
        newly_pinned = False
        for n in free:
            scaled = values[n] * factor
            if scaled > bounds[n].max:
                values[n] = bounds[n].max
                pinned.add(n)
                newly_pinned = True
            elif scaled < bounds[n].min:
                values[n] = bounds[n].min
                pinned.add(n)
                newly_pinned = True
            else:
                values[n] = scaled
        if not newly_pinned:
            return WeightVector(**values)

    # Bounds cannot sum to 1; plain normalization is the best left
    return normalize_weights(WeightVector(**values))


def limit_delta(current: WeightVector, proposed: WeightVector, max_delta: float) -> WeightVector:
    """Clip each component's move from `current` to +/- max_delta, then re-normalize."""
    limited = {}
    for name in WEIGHT_FIELDS:
        base = getattr(current, name)
        move = getattr(proposed, name) - base
        limited[name] = base + max(-max_delta, min(max_delta, move))
    return normalize_weights(WeightVector(**limited))


def weight_delta(before: WeightVector, after: WeightVector) -> WeightVector:
    return WeightVector(
        performance=after.performance - before.performance,
        efficiency=after.efficiency - before.efficiency,
        potential=after.potential - before.potential,
    )


# --- Gradient and accuracy ---

def usable_records(records: Iterable[FeedbackRecord]) -> list[FeedbackRecord]:
    """Only evaluated records with a success score feed the optimizer."""
    return [r for r in records if r.evaluated and r.success_score is not None]


def compute_gradients(records: list[FeedbackRecord]) -> WeightVector:
    """
    Mean of error * normalized sub-score per dimension.

    error = e_score/100 - success_score. A positive error means the score
    overstated success, so descent lowers the weight of the sub-scores that
    were large on those records.

    Args:
        records: Usable (evaluated, scored) feedback records

    Returns:
        Gradient vector; zeros for an empty list
    """
    grads = {"performance": 0.0, "efficiency": 0.0, "potential": 0.0}
    if not records:
        return WeightVector(**grads)

    for r in records:
        error = r.e_score / 100 - r.success_score
        grads["performance"] += error * (r.performance_score / 100)
        grads["efficiency"] += error * (r.efficiency_score / 100)
        grads["potential"] += error * (r.potential_score / 100)

    n = len(records)
    return WeightVector(**{k: v / n for k, v in grads.items()})


def estimate_accuracy(records: list[FeedbackRecord], weights: WeightVector) -> float:
    """
    Accuracy of `weights` on past outcomes: 1 - mean |recomputed/100 - success|.

    The composite is recomputed from each record's sub-scores with the given
    weights, not read from the record's stored e_score.
    """
    if not records:
        return 0.0

    total_error = 0.0
    for r in records:
        recomputed = (
            r.performance_score * weights.performance
            + r.efficiency_score * weights.efficiency
            + r.potential_score * weights.potential
        )
        total_error += abs(recomputed / 100 - r.success_score)

    return max(0.0, 1 - total_error / len(records))


# --- Optimization ---

def _descent_step(
    records: list[FeedbackRecord],
    current: WeightVector,
    learning_rate: float,
    constraints: WeightConstraints,
) -> WeightVector:
    grads = compute_gradients(records)
    raw = WeightVector(
        performance=current.performance - learning_rate * grads.performance,
        efficiency=current.efficiency - learning_rate * grads.efficiency,
        potential=current.potential - learning_rate * grads.potential,
    )
    # Bound the step first, then the absolute value
    limited = limit_delta(current, raw, constraints.max_delta_per_update)
    return clip_weights(limited, constraints)


def _build_result(
    records: list[FeedbackRecord],
    previous: WeightVector,
    new: WeightVector,
    now: datetime | None,
) -> OptimizationResult:
    return OptimizationResult(
        previous_weights=previous,
        new_weights=new,
        delta=weight_delta(previous, new),
        data_count=len(records),
        previous_accuracy=estimate_accuracy(records, previous),
        estimated_accuracy=estimate_accuracy(records, new),
        optimized_at=now or datetime.now(timezone.utc),
    )


def _insufficient(records: list[FeedbackRecord], current: WeightVector, min_data: int,
                  now: datetime | None) -> OptimizationResult:
    log_event(
        "weight_optimization_skipped",
        level=logging.WARNING,
        reason=INSUFFICIENT_DATA,
        required=min_data,
        actual=len(records),
    )
    return _build_result(records, current, current, now)


def optimize_weights(
    records: list[FeedbackRecord],
    current: WeightVector,
    *,
    learning_rate: float = 0.03,
    constraints: WeightConstraints | None = None,
    min_data: int = 100,
    now: datetime | None = None,
) -> OptimizationResult:
    """
    One gradient-descent update of the blend weights.

    Steps: gradient -> raw step -> delta limit + normalize -> bound clip +
    normalize. With fewer than `min_data` usable records this is a no-op
    (new == current, zero delta).

    Args:
        records: Feedback records; unevaluated/unscored ones are ignored
        current: Weights in effect now
        learning_rate: Step size
        constraints: Bounds and max per-update delta (defaults if None)
        min_data: Minimum usable records before any update

    Returns:
        OptimizationResult with before/after weights and accuracy
    """
    constraints = constraints or WeightConstraints()
    usable = usable_records(records)

    if len(usable) < min_data:
        return _insufficient(usable, current, min_data, now)

    new = _descent_step(usable, current, learning_rate, constraints)
    result = _build_result(usable, current, new, now)

    log_event(
        "weight_optimization_completed",
        data_count=result.data_count,
        previous_accuracy=round(result.previous_accuracy, 4),
        estimated_accuracy=round(result.estimated_accuracy, 4),
        delta=result.delta.as_dict(),
    )
    return result


def decayed_learning_rates(learning_rate: float, iterations: int, decay: float = 0.9) -> list[float]:
    """Per-iteration rates: rate_i = learning_rate * decay**i."""
    return [learning_rate * decay ** i for i in range(max(0, iterations))]


def optimize_weights_multi_iteration(
    records: list[FeedbackRecord],
    current: WeightVector,
    *,
    iterations: int = 5,
    learning_rate: float = 0.03,
    constraints: WeightConstraints | None = None,
    min_data: int = 100,
    decay: float = 0.9,
    now: datetime | None = None,
) -> OptimizationResult:
    """
    Repeat the descent step with a geometrically decaying learning rate.

    Each iteration starts from the previous iteration's output. The returned
    previous_weights, previous_accuracy and delta compare the original
    weights against the final ones, not intermediate steps.
    """
    constraints = constraints or WeightConstraints()
    usable = usable_records(records)

    if iterations <= 0:
        return _build_result(usable, current, current, now)

    if len(usable) < min_data:
        return _insufficient(usable, current, min_data, now)

    weights = current
    for i, rate in enumerate(decayed_learning_rates(learning_rate, iterations, decay)):
        weights = _descent_step(usable, weights, rate, constraints)
        log_event(
            "optimization_iteration",
            level=logging.DEBUG,
            iteration=i + 1,
            iterations=iterations,
            learning_rate=rate,
        )

    result = _build_result(usable, current, weights, now)
    log_event(
        "weight_optimization_completed",
        data_count=result.data_count,
        iterations=iterations,
        previous_accuracy=round(result.previous_accuracy, 4),
        estimated_accuracy=round(result.estimated_accuracy, 4),
        delta=result.delta.as_dict(),
    )
    return result


def update_learned_weights(current: LearnedWeights, result: OptimizationResult) -> LearnedWeights:
    """New LearnedWeights value carrying the optimizer output (version + 1)."""
    return LearnedWeights(
        weights=result.new_weights,
        initial_weights=current.initial_weights,
        data_count=current.data_count + result.data_count,
        last_updated=result.optimized_at,
        accuracy=result.estimated_accuracy,
        version=current.version + 1,
    )


# --- Reporting helpers ---

@dataclass
class WeightChangeAnalysis:
    performance_change: float
    efficiency_change: float
    potential_change: float
    dominant_factor: str
    summary: str


def analyze_weight_change(initial: WeightVector, current: WeightVector) -> WeightChangeAnalysis:
    """
    Describe how far learned weights have drifted from their initial values.

    Changes smaller than 2 points are left out of the summary.
    """
    changes = weight_delta(initial, current)

    dominant = "performance"
    if current.efficiency > current.performance and current.efficiency > current.potential:
        dominant = "efficiency"
    elif current.potential > current.performance and current.potential > current.efficiency:
        dominant = "potential"

    parts: list[str] = []
    for name in WEIGHT_FIELDS:
        change = getattr(changes, name)
        if abs(change) > 0.02:
            direction = "up" if change > 0 else "down"
            parts.append(f"{name} {direction} ({change * 100:+.1f}%)")

    summary = ", ".join(parts) if parts else "no significant weight change"

    return WeightChangeAnalysis(
        performance_change=changes.performance,
        efficiency_change=changes.efficiency,
        potential_change=changes.potential,
        dominant_factor=dominant,
        summary=summary,
    )


def compute_weight_changes(before: WeightVector, after: WeightVector) -> list[dict]:
    """
    Per-component change rows for reports.

    Returns:
        List of dicts with: component, before, after, change
    """
    rows = []
    for name in WEIGHT_FIELDS:
        b = getattr(before, name)
        a = getattr(after, name)
        rows.append({
            "component": name,
            "before": b,
            "after": a,
            "change": a - b,
        })
    return rows
