# jobs/evaluate_feedback.py
"""
Evaluate pending feedback records from observed after-metrics.

The input file maps feedback_id to a MetricsSnapshot object. Pending records
without an entry are left for a later run.

Usage:
    python -m jobs.evaluate_feedback --input after_metrics.json
    python -m jobs.evaluate_feedback --records new_feedback.json --input after_metrics.json
"""
from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import argparse
import json
from pathlib import Path

from adaptive_escore.db import db_conn
from adaptive_escore.logging_utils import log_event
from adaptive_escore.repo import (
    get_unevaluated_feedback_records,
    insert_feedback_records,
    update_feedback_evaluation,
)
from adaptive_escore.schemas import FeedbackRecord, MetricsSnapshot
from adaptive_escore.success import calculate_success_rate, evaluate_feedback_record


def load_after_metrics(path: str) -> dict[str, MetricsSnapshot]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return {feedback_id: MetricsSnapshot(**snapshot) for feedback_id, snapshot in raw.items()}


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Evaluate pending E-score feedback records")
    p.add_argument("--input", required=True, help="JSON file: {feedback_id: after-metrics}")
    p.add_argument("--records", default=None, help="Optional JSON list of new feedback records to insert first")
    p.add_argument("--older-than-hours", type=int, default=0, help="Only evaluate recommendations at least this old")
    args = p.parse_args(argv)

    after_by_id = load_after_metrics(args.input)
    print(f"[ESCORE] Loaded after-metrics for {len(after_by_id)} records")

    with db_conn() as conn:
        if args.records:
            raw_records = json.loads(Path(args.records).read_text(encoding="utf-8"))
            counts = insert_feedback_records(conn, [FeedbackRecord(**r) for r in raw_records])
            print(f"[ESCORE] Inserted {counts['inserted']} records ({counts['duplicates']} duplicates)")

        pending = get_unevaluated_feedback_records(conn, older_than_hours=args.older_than_hours)
        print(f"[ESCORE] Found {len(pending)} pending records")

        evaluated = []
        for record in pending:
            after = after_by_id.get(record.feedback_id)
            if after is None:
                continue
            done = evaluate_feedback_record(record, after)
            update_feedback_evaluation(conn, done)
            evaluated.append(done)

        skipped = len(pending) - len(evaluated)
        success_rate = calculate_success_rate(evaluated)
        print(f"[ESCORE] Evaluated {len(evaluated)} records, skipped {skipped}, success rate {success_rate:.2f}")

        log_event(
            "feedback_evaluated",
            evaluated=len(evaluated),
            skipped=skipped,
            success_rate=round(success_rate, 4),
        )

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
