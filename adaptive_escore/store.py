# adaptive_escore/store.py
"""
SQLite implementation of the controller's storage contract.

Thin wrapper over repo.py: binds a clock, and turns sqlite3 errors into
StoreError with a stable code. Without a bound connection every call opens
its own via db_conn(), so the store can be shared across request threads.
"""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable

from adaptive_escore import repo
from adaptive_escore.db import db_conn
from adaptive_escore.error_codes import FETCH_FAILED, PERSIST_FAILED
from adaptive_escore.errors import StoreError
from adaptive_escore.schemas import FeedbackRecord, OptimizationLogEntry, WeightHistory


class SqliteEScoreStore:
    def __init__(
        self,
        conn: sqlite3.Connection | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.conn = conn
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @contextmanager
    def _connection(self):
        if self.conn is not None:
            yield self.conn
            return
        with db_conn() as conn:
            yield conn

    def fetch_evaluated_feedback(self, key, window_days: int) -> list[FeedbackRecord]:
        try:
            with self._connection() as conn:
                return repo.fetch_evaluated_feedback(
                    conn,
                    axis=key.axis,
                    value=key.value,
                    window_days=window_days,
                    now=self.clock(),
                )
        except sqlite3.Error as exc:
            raise StoreError(FETCH_FAILED, f"feedback for {key.label}: {exc}") from exc

    def fetch_latest_weight_history(self, key) -> WeightHistory | None:
        try:
            with self._connection() as conn:
                return repo.get_latest_weight_history(conn, axis=key.axis, value=key.value)
        except sqlite3.Error as exc:
            raise StoreError(FETCH_FAILED, f"weight history for {key.label}: {exc}") from exc

    def save_weight_history(self, history: WeightHistory) -> None:
        try:
            with self._connection() as conn:
                repo.save_weight_history(conn, history)
        except sqlite3.Error as exc:
            raise StoreError(PERSIST_FAILED, f"weight history {history.history_id}: {exc}") from exc

    def mark_weight_history_rolled_back(self, history_id: str) -> None:
        try:
            with self._connection() as conn:
                repo.mark_weight_history_rolled_back(conn, history_id=history_id)
        except sqlite3.Error as exc:
            raise StoreError(PERSIST_FAILED, f"rollback mark {history_id}: {exc}") from exc

    def save_optimization_log(self, entry: OptimizationLogEntry) -> None:
        try:
            with self._connection() as conn:
                repo.save_optimization_log(conn, entry)
        except sqlite3.Error as exc:
            raise StoreError(PERSIST_FAILED, f"optimization log for {entry.key.label}: {exc}") from exc
