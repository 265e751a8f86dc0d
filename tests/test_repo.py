# tests/test_repo.py
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from adaptive_escore.db import get_conn, init_db
from adaptive_escore.errors import StoreError
from adaptive_escore.repo import (
    fetch_evaluated_feedback,
    get_feedback_record,
    get_latest_weight_history,
    get_optimization_logs,
    get_unevaluated_feedback_records,
    insert_feedback_records,
    mark_weight_history_rolled_back,
    save_optimization_log,
    save_weight_history,
    update_feedback_evaluation,
)
from adaptive_escore.safety import create_weight_history
from adaptive_escore.schemas import BrandTypeKey, ModeKey, OptimizationLogEntry, WeightVector
from adaptive_escore.store import SqliteEScoreStore


NOW = datetime(2026, 1, 28, 12, 0, 0, tzinfo=timezone.utc)

W1 = WeightVector(performance=0.4, efficiency=0.4, potential=0.2)
W2 = WeightVector(performance=0.45, efficiency=0.35, potential=0.2)


def test_init_db_creates_tables(tmp_path, monkeypatch):
    monkeypatch.setenv("ESCORE_DB_PATH", str(tmp_path / "nested" / "escore.db"))

    conn = get_conn()
    try:
        init_db(conn)
        init_db(conn)  # idempotent
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()}
    finally:
        conn.close()

    assert {"escore_feedback", "escore_weight_history", "escore_optimization_log"} <= tables
    assert (tmp_path / "nested" / "escore.db").exists()


class TestFeedbackRepo:
    def test_insert_is_idempotent_and_round_trips(self, conn, make_record):
        record = make_record(feedback_id="fb-1", brand_type="BRAND", success_score=0.7, success_level="GOOD")

        r1 = insert_feedback_records(conn, [record])
        r2 = insert_feedback_records(conn, [record])

        assert r1 == {"inserted": 1, "duplicates": 0}
        assert r2 == {"inserted": 0, "duplicates": 1}
        assert get_feedback_record(conn, feedback_id="fb-1") == record

    def test_missing_record(self, conn):
        assert get_feedback_record(conn, feedback_id="nope") is None

    def test_fetch_evaluated_filters_by_segment_and_window(self, conn, make_record):
        insert_feedback_records(conn, [
            make_record(feedback_id="in-window", mode="NORMAL", recommendation_timestamp=NOW - timedelta(days=2)),
            make_record(feedback_id="newer", mode="NORMAL", recommendation_timestamp=NOW - timedelta(hours=1)),
            make_record(feedback_id="too-old", mode="NORMAL", recommendation_timestamp=NOW - timedelta(days=10)),
            make_record(feedback_id="other-mode", mode="S_MODE"),
            make_record(feedback_id="pending", mode="NORMAL", evaluated=False, success_score=None),
        ])

        rows = fetch_evaluated_feedback(conn, axis="mode", value="NORMAL", window_days=7, now=NOW)

        assert [r.feedback_id for r in rows] == ["newer", "in-window"]
        assert all(r.evaluated for r in rows)

    def test_fetch_by_brand_type(self, conn, make_record):
        insert_feedback_records(conn, [
            make_record(feedback_id="a", mode="NORMAL", brand_type="BRAND"),
            make_record(feedback_id="b", mode="S_MODE", brand_type="BRAND"),
            make_record(feedback_id="c", brand_type="GENERIC"),
        ])
        rows = fetch_evaluated_feedback(conn, axis="brand_type", value="BRAND", window_days=7, now=NOW)
        assert {r.feedback_id for r in rows} == {"a", "b"}

    def test_unknown_axis_rejected(self, conn):
        with pytest.raises(KeyError):
            fetch_evaluated_feedback(conn, axis="keyword_id; DROP TABLE x", value="x", window_days=7, now=NOW)

    def test_pending_and_update_evaluation(self, conn, make_record):
        pending = make_record(feedback_id="p1", evaluated=False, success_score=None, success_level=None,
                              acos_after=None, evaluation_timestamp=None)
        insert_feedback_records(conn, [pending, make_record(feedback_id="done")])

        rows = get_unevaluated_feedback_records(conn, now=NOW)
        assert [r.feedback_id for r in rows] == ["p1"]

        evaluated = pending.model_copy(update={
            "acos_after": 0.25, "success_level": "EXCELLENT", "success_score": 1.0,
            "evaluated": True, "evaluation_timestamp": NOW,
        })
        update_feedback_evaluation(conn, evaluated)

        assert get_unevaluated_feedback_records(conn, now=NOW) == []
        stored = get_feedback_record(conn, feedback_id="p1")
        assert stored.evaluated is True
        assert stored.success_level == "EXCELLENT"
        assert stored.acos_after == pytest.approx(0.25)

    def test_pending_respects_age(self, conn, make_record):
        insert_feedback_records(conn, [
            make_record(feedback_id="fresh", evaluated=False, success_score=None,
                        recommendation_timestamp=NOW - timedelta(hours=1)),
        ])
        assert get_unevaluated_feedback_records(conn, older_than_hours=3, now=NOW) == []


class TestWeightHistoryRepo:
    def test_latest_skips_rolled_back(self, conn):
        key = ModeKey(value="NORMAL")
        older = create_weight_history(key, W1, 0.7, 100, now=NOW - timedelta(days=2))
        newer = create_weight_history(key, W2, 0.8, 200, now=NOW - timedelta(days=1))
        save_weight_history(conn, older)
        save_weight_history(conn, newer)

        latest = get_latest_weight_history(conn, axis="mode", value="NORMAL")
        assert latest.history_id == newer.history_id
        assert latest.weights == W2
        assert latest.key == key
        assert latest.saved_at == newer.saved_at

        mark_weight_history_rolled_back(conn, history_id=newer.history_id)
        assert get_latest_weight_history(conn, axis="mode", value="NORMAL").history_id == older.history_id

    def test_none_for_other_segment(self, conn):
        save_weight_history(conn, create_weight_history(ModeKey(value="NORMAL"), W1, 0.7, 100, now=NOW))
        assert get_latest_weight_history(conn, axis="mode", value="S_MODE") is None


class TestOptimizationLogRepo:
    def test_save_and_list(self, conn):
        for key, rolled_back in [(ModeKey(value="NORMAL"), False), (BrandTypeKey(value="BRAND"), True)]:
            save_optimization_log(conn, OptimizationLogEntry(
                key=key,
                previous_weights=W1,
                new_weights=W2,
                delta=WeightVector(performance=0.05, efficiency=-0.05, potential=0.0),
                data_count=150,
                previous_accuracy=0.7,
                estimated_accuracy=0.72,
                anomaly_detected=rolled_back,
                rolled_back=rolled_back,
                logged_at=NOW,
            ))

        logs = get_optimization_logs(conn)
        assert [l["key"] for l in logs] == ["brand_type:BRAND", "mode:NORMAL"]
        assert logs[0]["rolled_back"] is True
        assert logs[1]["new_weights"] == W2.as_dict()

        only_mode = get_optimization_logs(conn, axis="mode", value="NORMAL")
        assert len(only_mode) == 1


class TestSqliteStore:
    def test_delegates_to_repo(self, conn, make_record):
        insert_feedback_records(conn, [make_record(recommendation_timestamp=NOW - timedelta(days=1))])
        store = SqliteEScoreStore(conn, clock=lambda: NOW)

        assert len(store.fetch_evaluated_feedback(ModeKey(value="NORMAL"), 7)) == 1
        assert store.fetch_latest_weight_history(ModeKey(value="NORMAL")) is None

    def test_wraps_sqlite_errors(self):
        conn = sqlite3.connect(":memory:")  # no schema
        store = SqliteEScoreStore(conn, clock=lambda: NOW)

        with pytest.raises(StoreError) as exc_info:
            store.fetch_evaluated_feedback(ModeKey(value="NORMAL"), 7)
        assert exc_info.value.code == "FETCH_FAILED"

        with pytest.raises(StoreError) as exc_info:
            store.save_weight_history(create_weight_history(ModeKey(value="NORMAL"), W1, 0.7, 1, now=NOW))
        assert exc_info.value.code == "PERSIST_FAILED"
        conn.close()

    def test_without_conn_opens_per_call(self, make_record):
        store = SqliteEScoreStore(clock=lambda: NOW)
        history = create_weight_history(ModeKey(value="NORMAL"), W1, 0.7, 10, now=NOW)

        store.save_weight_history(history)

        with ThreadPoolExecutor(max_workers=1) as pool:
            latest = pool.submit(store.fetch_latest_weight_history, ModeKey(value="NORMAL")).result()
        assert latest.history_id == history.history_id
        assert store.fetch_evaluated_feedback(BrandTypeKey(value="BRAND"), 7) == []
