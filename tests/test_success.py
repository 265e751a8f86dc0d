# tests/test_success.py
"""
Tests for recommendation success evaluation.
"""
from datetime import datetime, timezone

import pytest

from adaptive_escore.schemas import MetricsSnapshot
from adaptive_escore.success import (
    calculate_change_rate,
    calculate_metrics_change,
    calculate_prediction_accuracy,
    calculate_success_rate,
    calculate_success_rate_by_action,
    calculate_success_rate_by_rank,
    evaluate_feedback_record,
    evaluate_success,
)


NOW = datetime(2026, 1, 28, 12, 0, 0, tzinfo=timezone.utc)

BEFORE = MetricsSnapshot(cvr=0.05, ctr=0.01, acos=0.30, sales=1000, clicks=100, bid=1.0)


def after(**changes) -> MetricsSnapshot:
    return BEFORE.model_copy(update=changes)


class TestChangeRate:
    def test_relative_change(self):
        assert calculate_change_rate(100, 150) == pytest.approx(0.5)
        assert calculate_change_rate(100, 50) == pytest.approx(-0.5)

    def test_zero_before(self):
        assert calculate_change_rate(0, 5) == 1.0
        assert calculate_change_rate(0, 0) == 0.0

    def test_metrics_change_keys(self):
        changes = calculate_metrics_change(BEFORE, after(sales=1100))
        assert changes["sales_change"] == pytest.approx(0.1)
        assert changes["acos_change"] == 0.0
        assert set(changes) == {"cvr_change", "ctr_change", "acos_change", "sales_change", "clicks_change"}


class TestEvaluateSuccess:
    def test_strong_up_excellent(self):
        assert evaluate_success(BEFORE, after(sales=1200), "STRONG_UP") == ("EXCELLENT", 1.0)

    def test_strong_up_good(self):
        # +10% sales, -8% cvr
        assert evaluate_success(BEFORE, after(sales=1100, cvr=0.046), "STRONG_UP") == ("GOOD", 0.7)

    def test_strong_up_acceptable_uses_acos(self):
        # +1% sales, cvr collapsed, acos +10%
        level, score = evaluate_success(BEFORE, after(sales=1010, cvr=0.03, acos=0.33), "STRONG_UP")
        assert level == "ACCEPTABLE"
        assert score == pytest.approx(0.4)

    def test_strong_up_poor(self):
        assert evaluate_success(BEFORE, after(sales=900), "STRONG_UP") == ("POOR", 0.0)

    def test_keep_stable_is_excellent(self):
        assert evaluate_success(BEFORE, after(), "KEEP")[0] == "EXCELLENT"

    def test_stop_grades_on_acos_only(self):
        assert evaluate_success(BEFORE, after(acos=0.20, sales=0), "STOP")[0] == "EXCELLENT"
        assert evaluate_success(BEFORE, after(), "STOP")[0] == "ACCEPTABLE"
        assert evaluate_success(BEFORE, after(acos=0.33), "STOP")[0] == "POOR"

    def test_mild_down_good(self):
        # -6.7% acos
        assert evaluate_success(BEFORE, after(acos=0.28), "MILD_DOWN")[0] == "GOOD"

    def test_unknown_action_is_acceptable(self):
        assert evaluate_success(BEFORE, after(sales=0), "SOMETHING_ELSE") == ("ACCEPTABLE", 0.4)


class TestEvaluateFeedbackRecord:
    def test_returns_evaluated_copy(self, make_record):
        pending = make_record(
            action_taken="STRONG_UP",
            evaluated=False,
            evaluation_timestamp=None,
            success_level=None,
            success_score=None,
            cvr_after=None, ctr_after=None, acos_after=None,
            sales_after=None, clicks_after=None, bid_after=None,
        )

        done = evaluate_feedback_record(pending, after(sales=1200, bid=1.3), now=NOW)

        assert done.evaluated is True
        assert done.success_level == "EXCELLENT"
        assert done.success_score == 1.0
        assert done.sales_after == 1200
        assert done.bid_after == pytest.approx(1.3)
        assert done.evaluation_timestamp == NOW
        # input untouched
        assert pending.evaluated is False
        assert pending.sales_after is None


class TestSuccessRates:
    def test_success_rate_ignores_unevaluated(self, make_record):
        records = [
            make_record(success_score=0.1),
            make_record(success_score=0.5),
            make_record(success_score=1.0),
            make_record(evaluated=False, success_score=None),
        ]
        assert calculate_success_rate(records) == pytest.approx(1.6 / 3)

    def test_success_rate_empty(self):
        assert calculate_success_rate([]) == 0.0

    def test_by_action(self, make_record):
        records = [
            make_record(action_taken="KEEP", success_score=1.0),
            make_record(action_taken="KEEP", success_score=0.4),
            make_record(action_taken="STOP", evaluated=False, success_score=None),
        ]
        out = calculate_success_rate_by_action(records)
        assert out["KEEP"] == {"rate": pytest.approx(0.7), "count": 2}
        assert out["STOP"] == {"rate": 0.0, "count": 0}
        assert set(out) == {"STRONG_UP", "MILD_UP", "KEEP", "MILD_DOWN", "STRONG_DOWN", "STOP"}

    def test_by_rank(self, make_record):
        records = [
            make_record(predicted_rank="S", success_score=1.0),
            make_record(predicted_rank="D", success_score=0.0),
        ]
        out = calculate_success_rate_by_rank(records)
        assert out["S"]["rate"] == 1.0
        assert out["D"]["count"] == 1
        assert out["A"]["count"] == 0


class TestPredictionAccuracy:
    def test_needs_ten_records(self, make_record):
        assert calculate_prediction_accuracy([make_record() for _ in range(9)]) == 0.0

    def test_perfect_prediction(self, make_record):
        assert calculate_prediction_accuracy([make_record() for _ in range(10)]) == pytest.approx(1.0)

    def test_over_prediction(self, make_record):
        records = [make_record(e_score=80, success_score=0.2) for _ in range(10)]
        assert calculate_prediction_accuracy(records) == pytest.approx(0.4)
