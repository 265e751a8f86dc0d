# tests/test_jobs.py
"""
Tests for the optimization and feedback-evaluation CLI jobs.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest

from adaptive_escore.db import db_conn
from adaptive_escore.repo import get_feedback_record, get_optimization_logs, insert_feedback_records
from jobs import evaluate_feedback, run_optimization


@pytest.fixture
def report_dir(tmp_path, monkeypatch):
    out = tmp_path / "artifacts"
    monkeypatch.setattr("adaptive_escore.report.REPORT_DIR", out)
    return out


def seed(records):
    with db_conn() as conn:
        insert_feedback_records(conn, records)


def recent() -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=1)


class TestRunOptimizationJob:
    def test_success_writes_report_and_logs(self, make_record, report_dir, capsys):
        seed([
            make_record(e_score=80.0, success_score=0.2, performance_score=80.0,
                        efficiency_score=80.0, potential_score=80.0, recommendation_timestamp=recent())
            for _ in range(120)
        ])

        rc = run_optimization.main(["--keys", "mode:NORMAL,brand_type:GENERIC", "--date", "2026-01-28"])

        assert rc == 0
        out = capsys.readouterr().out
        assert "[ESCORE] mode:NORMAL: APPLIED" in out
        assert "[ESCORE] brand_type:GENERIC: APPLIED" in out

        report = (report_dir / "escore_optimization_2026-01-28.md").read_text()
        assert "## Cycle Results" in report
        assert "### mode:NORMAL: APPLIED" in report

        with db_conn() as conn:
            logs = get_optimization_logs(conn)
        assert {l["key"] for l in logs} == {"mode:NORMAL", "brand_type:GENERIC"}

    def test_rollback_returns_nonzero(self, make_record, report_dir):
        seed([make_record(acos_before=0.2, acos_after=0.3, recommendation_timestamp=recent()) for _ in range(150)])

        rc = run_optimization.main(["--keys", "mode:NORMAL", "--no-report"])

        assert rc == 1
        assert not report_dir.exists()

    def test_bad_date_rejected(self):
        with pytest.raises(ValueError):
            run_optimization.main(["--date", "not-a-date"])


class TestEvaluateFeedbackJob:
    def test_evaluates_pending_records(self, make_record, tmp_path, capsys):
        pending = dict(evaluated=False, success_score=None, success_level=None, evaluation_timestamp=None,
                       cvr_after=None, ctr_after=None, acos_after=None, sales_after=None,
                       clicks_after=None, bid_after=None)
        seed([
            make_record(feedback_id="fb-1", action_taken="STOP", **pending),
            make_record(feedback_id="fb-2", action_taken="STOP", **pending),
        ])
        input_path = tmp_path / "after.json"
        input_path.write_text(json.dumps({
            "fb-1": {"cvr": 0.05, "ctr": 0.01, "acos": 0.2, "sales": 800, "clicks": 80, "bid": 0.0},
        }))

        rc = evaluate_feedback.main(["--input", str(input_path)])

        assert rc == 0
        assert "Evaluated 1 records, skipped 1" in capsys.readouterr().out

        with db_conn() as conn:
            done = get_feedback_record(conn, feedback_id="fb-1")
            still_pending = get_feedback_record(conn, feedback_id="fb-2")
        assert done.evaluated is True
        assert done.success_level == "EXCELLENT"
        assert still_pending.evaluated is False

    def test_inserts_records_file_first(self, make_record, tmp_path):
        record = make_record(feedback_id="fb-new", action_taken="KEEP", evaluated=False,
                             success_score=None, success_level=None)
        records_path = tmp_path / "records.json"
        records_path.write_text(json.dumps([record.model_dump(mode="json")]))
        input_path = tmp_path / "after.json"
        input_path.write_text(json.dumps({
            "fb-new": {"cvr": 0.05, "ctr": 0.01, "acos": 0.3, "sales": 1000, "clicks": 100, "bid": 1.0},
        }))

        rc = evaluate_feedback.main(["--records", str(records_path), "--input", str(input_path)])

        assert rc == 0
        with db_conn() as conn:
            stored = get_feedback_record(conn, feedback_id="fb-new")
        assert stored.success_level == "EXCELLENT"
        assert stored.success_score == 1.0
