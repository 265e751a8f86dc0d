# tests/conftest.py
from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from adaptive_escore.db import init_db
from adaptive_escore.schemas import FeedbackRecord


NOW = datetime(2026, 1, 28, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _isolate_db(tmp_path, monkeypatch):
    monkeypatch.setenv("ESCORE_DB_PATH", str(tmp_path / "test.db"))


@pytest.fixture
def conn():
    """Create in-memory database with schema."""
    conn = sqlite3.connect(":memory:")
    init_db(conn)
    yield conn
    conn.close()


@pytest.fixture
def make_record():
    """
    Factory for evaluated FeedbackRecords with neutral defaults.

    Defaults: sub-scores 50/50/50, e_score 50, success 0.5, ACOS unchanged,
    recommended one day before NOW. Override any field by keyword.
    """
    def _make(**overrides) -> FeedbackRecord:
        data = {
            "feedback_id": uuid.uuid4().hex,
            "execution_id": "exec-1",
            "keyword_id": "kw-1",
            "campaign_id": "camp-1",
            "ad_group_id": "ag-1",
            "recommendation_timestamp": NOW - timedelta(days=1),
            "evaluation_timestamp": NOW,
            "mode": "NORMAL",
            "brand_type": "GENERIC",
            "season": "Q1",
            "e_score": 50.0,
            "predicted_rank": "B",
            "performance_score": 50.0,
            "efficiency_score": 50.0,
            "potential_score": 50.0,
            "weight_performance": 0.4,
            "weight_efficiency": 0.4,
            "weight_potential": 0.2,
            "action_taken": "KEEP",
            "change_rate": 0.0,
            "cvr_before": 0.05,
            "ctr_before": 0.01,
            "acos_before": 0.30,
            "sales_before": 1000.0,
            "clicks_before": 100.0,
            "bid_before": 1.0,
            "cvr_after": 0.05,
            "ctr_after": 0.01,
            "acos_after": 0.30,
            "sales_after": 1000.0,
            "clicks_after": 100.0,
            "bid_after": 1.0,
            "success_level": "ACCEPTABLE",
            "success_score": 0.5,
            "evaluated": True,
        }
        data.update(overrides)
        return FeedbackRecord(**data)

    return _make
