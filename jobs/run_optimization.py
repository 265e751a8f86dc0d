# jobs/run_optimization.py
"""
Scheduled adaptive E-score optimization run.

Runs one cycle per segmentation key against the SQLite store, prints a
per-key summary and writes a markdown report artifact.

Usage:
    python -m jobs.run_optimization
    python -m jobs.run_optimization --keys mode:NORMAL,brand_type:BRAND --date 2026-01-28
"""
from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import argparse
from datetime import date, datetime, timezone

from adaptive_escore.config import load_config
from adaptive_escore.controller import OptimizationController
from adaptive_escore.db import db_conn
from adaptive_escore.logging_utils import log_event
from adaptive_escore.report import (
    generate_optimization_report,
    render_cycle_section,
    write_optimization_report,
)
from adaptive_escore.schemas import parse_segment_key
from adaptive_escore.store import SqliteEScoreStore


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Run adaptive E-score weight optimization")
    p.add_argument("--keys", default=None, help="Comma-separated axis:value keys (default: all modes and brand types)")
    p.add_argument("--date", default=None, help="YYYY-MM-DD report date (default: today, UTC)")
    p.add_argument("--no-report", action="store_true", help="Skip writing the report artifact")
    args = p.parse_args(argv)

    run_day = date.fromisoformat(args.date).isoformat() if args.date else datetime.now(timezone.utc).date().isoformat()
    keys = [parse_segment_key(k) for k in args.keys.split(",") if k.strip()] if args.keys else None

    config = load_config()
    log_event("optimization_job_started", run_day=run_day, keys=args.keys)
    print(f"[ESCORE] Starting optimization for {run_day}")

    with db_conn() as conn:
        controller = OptimizationController(SqliteEScoreStore(conn), config=config)

        cycle = controller.run_full_optimization_cycle(keys)

        for key, safe in cycle.per_key_results.items():
            if safe.failed:
                status = "FAILED"
            elif safe.needs_rollback:
                status = "ROLLED BACK"
            else:
                status = "APPLIED"
            print(
                f"[ESCORE] {key.label}: {status} "
                f"(records={safe.result.data_count}, "
                f"accuracy {safe.result.previous_accuracy:.3f} -> {safe.result.estimated_accuracy:.3f})"
            )
            for warning in safe.warnings:
                print(f"[ESCORE]   warning: {warning}")

        if not args.no_report:
            content = generate_optimization_report(controller.get_all_learned_weights(), controller.get_stats())
            content += "\n" + render_cycle_section(cycle.per_key_results)
            path = write_optimization_report(content, run_day)
            print(f"[ESCORE] Wrote report: {path}")

        log_event(
            "optimization_job_completed",
            run_day=run_day,
            overall_success=cycle.overall_success,
            keys=len(cycle.per_key_results),
        )

    print(f"[ESCORE] Complete: {'OK' if cycle.overall_success else 'ROLLBACK OR FAILURE'}")
    return 0 if cycle.overall_success else 1


if __name__ == "__main__":
    raise SystemExit(main())
