# adaptive_escore/db.py
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from pathlib import Path


class InvalidDbPathError(Exception):
    """Raised when ESCORE_DB_PATH points to an invalid location."""
    pass


@contextmanager
def db_conn():
    """
    Context manager for database connections.
    Opens connection, initializes schema, yields connection, closes on exit.

    Usage:
        with db_conn() as conn:
            # use conn
    """
    conn = get_conn()
    try:
        init_db(conn)
        yield conn
    finally:
        conn.close()


def get_conn() -> sqlite3.Connection:
    """
    Open a SQLite connection to the E-score store.
    Path comes from ESCORE_DB_PATH, with a local default.
    """
    db_path = os.environ.get("ESCORE_DB_PATH", "./data/escore.db")
    if db_path == ":memory:":
        return sqlite3.connect(db_path)

    path = Path(db_path)

    if os.environ.get("ESCORE_DB_PATH"):
        root = path.anchor or (path.parts[0] if path.parts else None)
        if root and not Path(root).exists():
            raise InvalidDbPathError(
                f"ESCORE_DB_PATH is set to '{db_path}' but the root path '{root}' doesn't exist."
            )

    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)

    # check_same_thread=False: the API serves sync routes from a threadpool
    return sqlite3.connect(str(path), check_same_thread=False)


def init_db(conn: sqlite3.Connection) -> None:
    """
    Create required tables if they don't exist.
    """
    # One row per recommendation; *_after and success_* filled on evaluation
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS escore_feedback (
            feedback_id TEXT PRIMARY KEY,
            execution_id TEXT NOT NULL,
            keyword_id TEXT NOT NULL,
            campaign_id TEXT NOT NULL,
            ad_group_id TEXT NOT NULL,
            recommendation_timestamp TEXT NOT NULL,
            evaluation_timestamp TEXT,
            mode TEXT NOT NULL,
            brand_type TEXT NOT NULL,
            season TEXT NOT NULL,
            e_score REAL NOT NULL,
            predicted_rank TEXT NOT NULL,
            performance_score REAL NOT NULL,
            efficiency_score REAL NOT NULL,
            potential_score REAL NOT NULL,
            weight_performance REAL NOT NULL,
            weight_efficiency REAL NOT NULL,
            weight_potential REAL NOT NULL,
            action_taken TEXT NOT NULL,
            change_rate REAL NOT NULL DEFAULT 0,
            cvr_before REAL NOT NULL,
            ctr_before REAL NOT NULL,
            acos_before REAL NOT NULL,
            sales_before REAL NOT NULL,
            clicks_before REAL NOT NULL,
            bid_before REAL NOT NULL,
            cvr_after REAL,
            ctr_after REAL,
            acos_after REAL,
            sales_after REAL,
            clicks_after REAL,
            bid_after REAL,
            success_level TEXT,
            success_score REAL,
            evaluated INTEGER NOT NULL DEFAULT 0
        );
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_escore_feedback_learning
        ON escore_feedback (evaluated, recommendation_timestamp);
        """
    )

    # Append-only snapshots used as rollback targets
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS escore_weight_history (
            history_id TEXT PRIMARY KEY,
            target_type TEXT NOT NULL,
            target_value TEXT NOT NULL,
            weights TEXT NOT NULL,
            accuracy REAL NOT NULL,
            data_count INTEGER NOT NULL,
            saved_at TEXT NOT NULL,
            rolled_back INTEGER NOT NULL DEFAULT 0
        );
        """
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS escore_optimization_log (
            log_id INTEGER PRIMARY KEY,
            target_type TEXT NOT NULL,
            target_value TEXT NOT NULL,
            previous_weights TEXT NOT NULL,
            new_weights TEXT NOT NULL,
            delta TEXT NOT NULL,
            data_count INTEGER NOT NULL,
            previous_accuracy REAL NOT NULL,
            estimated_accuracy REAL NOT NULL,
            anomaly_detected INTEGER NOT NULL DEFAULT 0,
            rolled_back INTEGER NOT NULL DEFAULT 0,
            logged_at TEXT NOT NULL
        );
        """
    )

    conn.commit()
