# adaptive_escore/repo.py
"""
SQLite persistence for feedback records, weight history snapshots and the
optimization log. Functions take a connection first and commit their writes.
"""
from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone

from adaptive_escore.schemas import (
    FeedbackRecord,
    OptimizationLogEntry,
    WeightHistory,
    WeightVector,
    make_segment_key,
)

FEEDBACK_COLUMNS: tuple[str, ...] = (
    "feedback_id", "execution_id", "keyword_id", "campaign_id", "ad_group_id",
    "recommendation_timestamp", "evaluation_timestamp",
    "mode", "brand_type", "season",
    "e_score", "predicted_rank",
    "performance_score", "efficiency_score", "potential_score",
    "weight_performance", "weight_efficiency", "weight_potential",
    "action_taken", "change_rate",
    "cvr_before", "ctr_before", "acos_before", "sales_before", "clicks_before", "bid_before",
    "cvr_after", "ctr_after", "acos_after", "sales_after", "clicks_after", "bid_after",
    "success_level", "success_score", "evaluated",
)

# Segment axis -> feedback column. Never interpolate anything else into SQL.
_AXIS_COLUMNS = {"mode": "mode", "brand_type": "brand_type", "season": "season"}


def _ts(value: datetime | None) -> str | None:
    """UTC ISO string, so stored timestamps compare correctly as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _row_to_feedback(row: tuple) -> FeedbackRecord:
    data = dict(zip(FEEDBACK_COLUMNS, row))
    data["evaluated"] = bool(data["evaluated"])
    return FeedbackRecord(**data)


def _feedback_params(record: FeedbackRecord) -> tuple:
    data = record.model_dump()
    data["recommendation_timestamp"] = _ts(record.recommendation_timestamp)
    data["evaluation_timestamp"] = _ts(record.evaluation_timestamp)
    data["evaluated"] = int(record.evaluated)
    return tuple(data[c] for c in FEEDBACK_COLUMNS)


# --- Feedback ---

def insert_feedback_records(conn: sqlite3.Connection, records: list[FeedbackRecord]) -> dict:
    inserted = 0
    duplicates = 0

    placeholders = ", ".join("?" for _ in FEEDBACK_COLUMNS)
    sql = f"""
    INSERT OR IGNORE INTO escore_feedback ({", ".join(FEEDBACK_COLUMNS)})
    VALUES ({placeholders});
    """
    for record in records:
        cur = conn.execute(sql, _feedback_params(record))
        if cur.rowcount == 1:
            inserted += 1
        else:
            duplicates += 1

    conn.commit()
    return {"inserted": inserted, "duplicates": duplicates}


def get_feedback_record(conn: sqlite3.Connection, *, feedback_id: str) -> FeedbackRecord | None:
    row = conn.execute(
        f"SELECT {', '.join(FEEDBACK_COLUMNS)} FROM escore_feedback WHERE feedback_id = ?;",
        (feedback_id,),
    ).fetchone()

    if row is None:
        return None
    return _row_to_feedback(row)


def get_unevaluated_feedback_records(
    conn: sqlite3.Connection,
    *,
    older_than_hours: int = 0,
    now: datetime | None = None,
    limit: int = 1000,
) -> list[FeedbackRecord]:
    """Pending records whose recommendation is at least `older_than_hours` old, oldest first."""
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=older_than_hours)
    rows = conn.execute(
        f"""
        SELECT {", ".join(FEEDBACK_COLUMNS)}
        FROM escore_feedback
        WHERE evaluated = 0 AND recommendation_timestamp <= ?
        ORDER BY recommendation_timestamp ASC
        LIMIT ?;
        """,
        (_ts(cutoff), limit),
    ).fetchall()
    return [_row_to_feedback(r) for r in rows]


def update_feedback_evaluation(conn: sqlite3.Connection, record: FeedbackRecord) -> None:
    conn.execute(
        """
        UPDATE escore_feedback
        SET cvr_after = ?, ctr_after = ?, acos_after = ?, sales_after = ?,
            clicks_after = ?, bid_after = ?,
            success_level = ?, success_score = ?,
            evaluated = ?, evaluation_timestamp = ?
        WHERE feedback_id = ?
        """,
        (
            record.cvr_after,
            record.ctr_after,
            record.acos_after,
            record.sales_after,
            record.clicks_after,
            record.bid_after,
            record.success_level,
            record.success_score,
            int(record.evaluated),
            _ts(record.evaluation_timestamp),
            record.feedback_id,
        ),
    )
    conn.commit()


def fetch_evaluated_feedback(
    conn: sqlite3.Connection,
    *,
    axis: str,
    value: str,
    window_days: int,
    now: datetime | None = None,
) -> list[FeedbackRecord]:
    """Evaluated records for one segment within the last `window_days`, newest first."""
    column = _AXIS_COLUMNS[axis]
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=window_days)
    rows = conn.execute(
        f"""
        SELECT {", ".join(FEEDBACK_COLUMNS)}
        FROM escore_feedback
        WHERE evaluated = 1
          AND {column} = ?
          AND recommendation_timestamp >= ?
        ORDER BY recommendation_timestamp DESC;
        """,
        (value, _ts(cutoff)),
    ).fetchall()
    return [_row_to_feedback(r) for r in rows]


# --- Weight history ---

def save_weight_history(conn: sqlite3.Connection, history: WeightHistory) -> None:
    conn.execute(
        """
        INSERT INTO escore_weight_history
        (history_id, target_type, target_value, weights, accuracy, data_count, saved_at, rolled_back)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            history.history_id,
            history.key.axis,
            history.key.value,
            json.dumps(history.weights.as_dict()),
            history.accuracy,
            history.data_count,
            _ts(history.saved_at),
            int(history.rolled_back),
        ),
    )
    conn.commit()


def get_latest_weight_history(conn: sqlite3.Connection, *, axis: str, value: str) -> WeightHistory | None:
    """Most recent snapshot for the segment that has not been rolled back."""
    row = conn.execute(
        """
        SELECT history_id, target_type, target_value, weights, accuracy, data_count, saved_at, rolled_back
        FROM escore_weight_history
        WHERE target_type = ? AND target_value = ? AND rolled_back = 0
        ORDER BY saved_at DESC
        LIMIT 1;
        """,
        (axis, value),
    ).fetchone()

    if row is None:
        return None

    history_id, target_type, target_value, weights_json, accuracy, data_count, saved_at, rolled_back = row
    return WeightHistory(
        history_id=history_id,
        key=make_segment_key(target_type, target_value),
        weights=WeightVector(**json.loads(weights_json)),
        accuracy=accuracy,
        data_count=data_count,
        saved_at=datetime.fromisoformat(saved_at),
        rolled_back=bool(rolled_back),
    )


def mark_weight_history_rolled_back(conn: sqlite3.Connection, *, history_id: str) -> None:
    conn.execute(
        "UPDATE escore_weight_history SET rolled_back = 1 WHERE history_id = ?",
        (history_id,),
    )
    conn.commit()


# --- Optimization log ---

def save_optimization_log(conn: sqlite3.Connection, entry: OptimizationLogEntry) -> None:
    conn.execute(
        """
        INSERT INTO escore_optimization_log
        (target_type, target_value, previous_weights, new_weights, delta, data_count,
         previous_accuracy, estimated_accuracy, anomaly_detected, rolled_back, logged_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
        """,
        (
            entry.key.axis,
            entry.key.value,
            json.dumps(entry.previous_weights.as_dict()),
            json.dumps(entry.new_weights.as_dict()),
            json.dumps(entry.delta.as_dict()),
            entry.data_count,
            entry.previous_accuracy,
            entry.estimated_accuracy,
            int(entry.anomaly_detected),
            int(entry.rolled_back),
            _ts(entry.logged_at),
        ),
    )
    conn.commit()


def get_optimization_logs(
    conn: sqlite3.Connection,
    *,
    axis: str | None = None,
    value: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """Newest first. Filter by segment when axis and value are given."""
    where = ""
    params: tuple = ()
    if axis is not None and value is not None:
        where = "WHERE target_type = ? AND target_value = ?"
        params = (axis, value)

    rows = conn.execute(
        f"""
        SELECT target_type, target_value, previous_weights, new_weights, delta, data_count,
               previous_accuracy, estimated_accuracy, anomaly_detected, rolled_back, logged_at
        FROM escore_optimization_log
        {where}
        ORDER BY log_id DESC
        LIMIT ?;
        """,
        (*params, limit),
    ).fetchall()

    out: list[dict] = []
    for (target_type, target_value, prev_json, new_json, delta_json, data_count,
         prev_acc, est_acc, anomaly, rolled_back, logged_at) in rows:
        out.append({
            "key": f"{target_type}:{target_value}",
            "previous_weights": json.loads(prev_json),
            "new_weights": json.loads(new_json),
            "delta": json.loads(delta_json),
            "data_count": data_count,
            "previous_accuracy": prev_acc,
            "estimated_accuracy": est_acc,
            "anomaly_detected": bool(anomaly),
            "rolled_back": bool(rolled_back),
            "logged_at": logged_at,
        })
    return out
