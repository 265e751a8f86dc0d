# adaptive_escore/controller.py
"""
Optimization controller: runs one fetch -> optimize -> safety-check ->
persist cycle per segmentation key and owns the learned-weight map.

The storage collaborator is injected (see EScoreStore); there is no
module-level instance, so every test builds its own controller.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Protocol

from adaptive_escore.config import DEFAULT_WEIGHTS_BY_AXIS, AdaptiveConfig, load_config
from adaptive_escore.error_codes import CYCLE_FAILED
from adaptive_escore.logging_utils import log_event
from adaptive_escore.safety import (
    HealthCheckResult,
    SafeOptimizationResult,
    apply_safety_checks,
    create_weight_history,
    perform_health_check,
)
from adaptive_escore.schemas import (
    FeedbackRecord,
    LearnedWeights,
    OptimizationLogEntry,
    WeightHistory,
    WeightVector,
    all_segment_keys,
)
from adaptive_escore.weights import (
    ZERO_DELTA,
    OptimizationResult,
    analyze_weight_change,
    optimize_weights_multi_iteration,
    update_learned_weights,
)


class CycleState(str, Enum):
    IDLE = "IDLE"
    FETCHING = "FETCHING"
    OPTIMIZING = "OPTIMIZING"
    SAFETY_CHECK = "SAFETY_CHECK"
    ACCEPTING = "ACCEPTING"
    ROLLING_BACK = "ROLLING_BACK"


class EScoreStore(Protocol):
    """Storage contract. Implementations raise on I/O failure; the controller never retries."""

    def fetch_evaluated_feedback(self, key, window_days: int) -> list[FeedbackRecord]: ...

    def fetch_latest_weight_history(self, key) -> WeightHistory | None: ...

    def save_weight_history(self, history: WeightHistory) -> None: ...

    def mark_weight_history_rolled_back(self, history_id: str) -> None: ...

    def save_optimization_log(self, entry: OptimizationLogEntry) -> None: ...


@dataclass
class OptimizationStats:
    total_optimizations: int = 0
    successful_optimizations: int = 0
    rollback_count: int = 0
    failed_optimizations: int = 0
    avg_accuracy_improvement: float = 0.0
    best_accuracy: float = 0.0
    total_data_processed: int = 0
    last_rollback_at: datetime | None = None


@dataclass
class FullCycleResult:
    per_key_results: dict = field(default_factory=dict)
    overall_success: bool = True


def default_learned_weights(key, now: datetime) -> LearnedWeights:
    weights = WeightVector(**DEFAULT_WEIGHTS_BY_AXIS[key.axis][key.value])
    return LearnedWeights(
        weights=weights,
        initial_weights=weights,
        data_count=0,
        last_updated=now,
        accuracy=0.0,
        version=1,
    )


class OptimizationController:
    def __init__(
        self,
        store: EScoreStore,
        config: AdaptiveConfig | None = None,
        learned: dict | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.config = config or load_config()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._learned: dict = self._initial_learned()
        if learned:
            self._learned.update(learned)
        self._stats = OptimizationStats()
        self._states: dict = {}

    def _initial_learned(self) -> dict:
        now = self.clock()
        return {key: default_learned_weights(key, now) for key in all_segment_keys(include_seasons=True)}

    # --- State ---

    def state_of(self, key) -> CycleState:
        return self._states.get(key, CycleState.IDLE)

    def _transition(self, key, state: CycleState) -> None:
        previous = self.state_of(key)
        self._states[key] = state
        log_event("cycle_state", key=key.label, from_state=previous.value, to_state=state.value)

    @property
    def last_rollback_time(self) -> datetime | None:
        return self._stats.last_rollback_at

    def get_stats(self) -> OptimizationStats:
        return dataclasses.replace(self._stats)

    def get_learned_weights(self, key) -> LearnedWeights:
        return self._learned[key]

    def get_all_learned_weights(self) -> dict:
        return dict(self._learned)

    def reset_to_defaults(self) -> None:
        log_event("learned_weights_reset", level=logging.WARNING, keys=len(self._learned))
        self._learned = self._initial_learned()

    # --- Cycle ---

    def optimize_for_key(self, key) -> SafeOptimizationResult:
        """
        One cycle for one key. Store errors propagate to the caller.

        Accept: persist the pre-cycle snapshot and the log, then swap in the
        new LearnedWeights value. Rollback: mark the consulted snapshot, log,
        and leave LearnedWeights as it was.
        """
        cfg = self.config
        log_event("weight_optimization_started", key=key.label)

        self._transition(key, CycleState.FETCHING)
        records = self.store.fetch_evaluated_feedback(key, cfg.learning_window_days)
        previous_history = self.store.fetch_latest_weight_history(key)
        log_event("feedback_fetched", key=key.label, count=len(records))

        self._transition(key, CycleState.OPTIMIZING)
        current = self._learned[key]
        now = self.clock()
        result = optimize_weights_multi_iteration(
            records,
            current.weights,
            iterations=cfg.iterations,
            learning_rate=cfg.learning_rate,
            constraints=cfg.constraints,
            min_data=cfg.min_data_for_learning,
            decay=cfg.learning_rate_decay,
            now=now,
        )

        self._transition(key, CycleState.SAFETY_CHECK)
        safe = apply_safety_checks(result, records, previous_history, cfg.rollback_thresholds)
        safe.key = key
        anomaly_detected = any(a.is_anomalous for a in safe.anomalies)

        if not safe.needs_rollback:
            self._transition(key, CycleState.ACCEPTING)
            self.store.save_weight_history(create_weight_history(
                key,
                result.previous_weights,
                result.previous_accuracy,
                current.data_count,
                now=now,
            ))
            self.store.save_optimization_log(self._log_entry(key, result, anomaly_detected, False, now))

            self._learned[key] = update_learned_weights(current, result)
            self._record_success(result)
        else:
            self._transition(key, CycleState.ROLLING_BACK)
            if previous_history is not None:
                self.store.mark_weight_history_rolled_back(previous_history.history_id)
            self.store.save_optimization_log(self._log_entry(key, result, anomaly_detected, True, now))

            self._stats.rollback_count += 1
            self._stats.last_rollback_at = now

        self._stats.total_optimizations += 1
        self._stats.total_data_processed += result.data_count

        analysis = analyze_weight_change(current.initial_weights, safe.final_weights)
        log_event(
            "weight_optimization_finished",
            key=key.label,
            needs_rollback=safe.needs_rollback,
            summary=analysis.summary,
            dominant_factor=analysis.dominant_factor,
        )

        self._transition(key, CycleState.IDLE)
        return safe

    def _record_success(self, result: OptimizationResult) -> None:
        stats = self._stats
        stats.successful_optimizations += 1
        improvement = result.estimated_accuracy - result.previous_accuracy
        n = stats.successful_optimizations
        stats.avg_accuracy_improvement = (stats.avg_accuracy_improvement * (n - 1) + improvement) / n
        if result.estimated_accuracy > stats.best_accuracy:
            stats.best_accuracy = result.estimated_accuracy

    @staticmethod
    def _log_entry(key, result: OptimizationResult, anomaly_detected: bool, rolled_back: bool,
                   now: datetime) -> OptimizationLogEntry:
        return OptimizationLogEntry(
            key=key,
            previous_weights=result.previous_weights,
            new_weights=result.new_weights,
            delta=result.delta,
            data_count=result.data_count,
            previous_accuracy=result.previous_accuracy,
            estimated_accuracy=result.estimated_accuracy,
            anomaly_detected=anomaly_detected,
            rolled_back=rolled_back,
            logged_at=now,
        )

    def _failed_result(self, key) -> SafeOptimizationResult:
        weights = WeightVector(**DEFAULT_WEIGHTS_BY_AXIS[key.axis][key.value])
        result = OptimizationResult(
            previous_weights=weights,
            new_weights=weights,
            delta=ZERO_DELTA,
            data_count=0,
            previous_accuracy=0.0,
            estimated_accuracy=0.0,
            optimized_at=self.clock(),
        )
        return SafeOptimizationResult(
            result=result,
            anomalies=[],
            needs_rollback=True,
            final_weights=weights,
            warnings=[f"Optimization failed for {key.label}"],
            key=key,
            failed=True,
        )

    def default_keys(self) -> list:
        return all_segment_keys(include_seasons=self.config.optimize_seasons)

    def run_full_optimization_cycle(self, keys: list | None = None) -> FullCycleResult:
        """
        Run every key in turn. A failing key gets a synthetic failed result
        and the remaining keys still run.
        """
        keys = keys if keys is not None else self.default_keys()
        log_event("full_optimization_started", keys=[k.label for k in keys])

        per_key: dict = {}
        for key in keys:
            try:
                per_key[key] = self.optimize_for_key(key)
            except Exception as exc:
                log_event(
                    "optimization_failed",
                    level=logging.ERROR,
                    key=key.label,
                    error_code=CYCLE_FAILED,
                    cause_code=getattr(exc, "code", None),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._stats.failed_optimizations += 1
                self._transition(key, CycleState.IDLE)
                per_key[key] = self._failed_result(key)

        overall_success = all(not r.needs_rollback for r in per_key.values())
        log_event(
            "full_optimization_finished",
            overall_success=overall_success,
            rollbacks=sum(1 for r in per_key.values() if r.needs_rollback and not r.failed),
            failures=sum(1 for r in per_key.values() if r.failed),
        )
        return FullCycleResult(per_key_results=per_key, overall_success=overall_success)

    # --- Health ---

    def perform_health_check(self, key, window_days: int = 1) -> HealthCheckResult:
        records = self.store.fetch_evaluated_feedback(key, window_days)
        return perform_health_check(
            self._learned[key],
            records,
            self.last_rollback_time,
            now=self.clock(),
        )
