# adaptive_escore/success.py
"""
Success evaluation for past recommendations.

Turns before/after metrics into a success level and score, and aggregates
scores over feedback records. This is the step that fills the *_after fields
of a FeedbackRecord before the optimizer ever sees it.
"""
from __future__ import annotations

from datetime import datetime, timezone

from adaptive_escore.config import ACTION_SUCCESS_CRITERIA, SUCCESS_LEVEL_SCORES
from adaptive_escore.schemas import ACTION_TYPES, RANKS, FeedbackRecord, MetricsSnapshot

# Criteria keys that are lower bounds; everything else is an upper bound
_LOWER_BOUND_KEYS = ("sales_change", "cvr_change")

_LEVELS = (("excellent", "EXCELLENT"), ("good", "GOOD"), ("acceptable", "ACCEPTABLE"))


def calculate_change_rate(before: float, after: float) -> float:
    """Relative change (after - before) / before. From zero: 1 if after > 0 else 0."""
    if before == 0:
        return 1.0 if after > 0 else 0.0
    return (after - before) / before


def calculate_metrics_change(before: MetricsSnapshot, after: MetricsSnapshot) -> dict[str, float]:
    return {
        "cvr_change": calculate_change_rate(before.cvr, after.cvr),
        "ctr_change": calculate_change_rate(before.ctr, after.ctr),
        "acos_change": calculate_change_rate(before.acos, after.acos),
        "sales_change": calculate_change_rate(before.sales, after.sales),
        "clicks_change": calculate_change_rate(before.clicks, after.clicks),
    }


def _meets(changes: dict[str, float], criteria: dict[str, float]) -> bool:
    for name, limit in criteria.items():
        if name in _LOWER_BOUND_KEYS:
            if changes[name] < limit:
                return False
        elif changes[name] > limit:
            return False
    return True


def evaluate_success(before: MetricsSnapshot, after: MetricsSnapshot, action: str) -> tuple[str, float]:
    """
    Grade one recommendation by how its metrics moved.

    Levels are checked best-first against ACTION_SUCCESS_CRITERIA; the first
    level whose criteria all hold wins, otherwise POOR. Actions without
    criteria are graded ACCEPTABLE.

    Returns:
        (success_level, success_score)
    """
    criteria = ACTION_SUCCESS_CRITERIA.get(action)
    if criteria is None:
        return "ACCEPTABLE", SUCCESS_LEVEL_SCORES["ACCEPTABLE"]

    changes = calculate_metrics_change(before, after)

    level = "POOR"
    for name, candidate in _LEVELS:
        if _meets(changes, criteria[name]):
            level = candidate
            break

    return level, SUCCESS_LEVEL_SCORES[level]


def evaluate_feedback_record(
    record: FeedbackRecord,
    after: MetricsSnapshot,
    now: datetime | None = None,
) -> FeedbackRecord:
    """Evaluated copy of `record`; the input is left untouched."""
    before = MetricsSnapshot(
        cvr=record.cvr_before,
        ctr=record.ctr_before,
        acos=record.acos_before,
        sales=record.sales_before,
        clicks=record.clicks_before,
        impressions=0,
        rank=None,
        bid=record.bid_before,
    )
    level, score = evaluate_success(before, after, record.action_taken)

    return record.model_copy(update={
        "cvr_after": after.cvr,
        "ctr_after": after.ctr,
        "acos_after": after.acos,
        "sales_after": after.sales,
        "clicks_after": after.clicks,
        "bid_after": after.bid,
        "success_level": level,
        "success_score": score,
        "evaluated": True,
        "evaluation_timestamp": now or datetime.now(timezone.utc),
    })


# --- Aggregates ---

def _scored(records: list[FeedbackRecord]) -> list[FeedbackRecord]:
    return [r for r in records if r.evaluated and r.success_score is not None]


def calculate_success_rate(records: list[FeedbackRecord]) -> float:
    """Mean success score of evaluated records; 0 when there are none."""
    scored = _scored(records)
    if not scored:
        return 0.0
    return sum(r.success_score for r in scored) / len(scored)


def _rate_by(records: list[FeedbackRecord], attr: str, buckets: tuple[str, ...]) -> dict[str, dict]:
    out = {b: {"rate": 0.0, "count": 0} for b in buckets}
    for r in _scored(records):
        bucket = out[getattr(r, attr)]
        bucket["count"] += 1
        bucket["rate"] += r.success_score

    for bucket in out.values():
        if bucket["count"] > 0:
            bucket["rate"] /= bucket["count"]
    return out


def calculate_success_rate_by_action(records: list[FeedbackRecord]) -> dict[str, dict]:
    """
    Returns:
        {action: {"rate": mean score, "count": n}} for every action type
    """
    return _rate_by(records, "action_taken", ACTION_TYPES)


def calculate_success_rate_by_rank(records: list[FeedbackRecord]) -> dict[str, dict]:
    return _rate_by(records, "predicted_rank", RANKS)


def calculate_prediction_accuracy(records: list[FeedbackRecord]) -> float:
    """
    How well the stored E-scores predicted outcomes: 1 - mean |e_score/100 - success|.

    Needs at least 10 evaluated records; returns 0 below that.
    """
    scored = _scored(records)
    if len(scored) < 10:
        return 0.0

    total_error = sum(abs(r.e_score / 100 - r.success_score) for r in scored)
    return max(0.0, 1 - total_error / len(scored))
