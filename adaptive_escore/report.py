# adaptive_escore/report.py
"""
Markdown report for learned weights, optimization stats and one cycle's
per-key outcomes, plus the artifact writer.
"""
from __future__ import annotations

from pathlib import Path

from adaptive_escore.weights import analyze_weight_change, compute_weight_changes


REPORT_DIR = Path("artifacts")


def _pct(value: float) -> str:
    return f"{value * 100:.1f}%"


def generate_optimization_report(learned_by_key: dict, stats) -> str:
    """
    Render learned weights and optimization stats as a markdown text report.
    No side effects; keys are listed in label order.
    """
    last_rollback = stats.last_rollback_at.isoformat() if stats.last_rollback_at else "never"

    lines = [
        "# Adaptive E-score Optimization Report",
        "",
        "## Stats",
        f"- **Total optimizations:** {stats.total_optimizations}",
        f"- **Successful:** {stats.successful_optimizations}",
        f"- **Rollbacks:** {stats.rollback_count}",
        f"- **Failed:** {stats.failed_optimizations}",
        f"- **Avg accuracy improvement:** {stats.avg_accuracy_improvement * 100:+.2f}%",
        f"- **Best accuracy:** {_pct(stats.best_accuracy)}",
        f"- **Data processed:** {stats.total_data_processed}",
        f"- **Last rollback:** {last_rollback}",
        "",
        "## Learned Weights",
        "| Key | Performance | Efficiency | Potential | Accuracy | Data | Version |",
        "|-----|-------------|------------|-----------|----------|------|---------|",
    ]

    for key in sorted(learned_by_key, key=lambda k: k.label):
        lw = learned_by_key[key]
        w = lw.weights
        lines.append(
            f"| {key.label} | {_pct(w.performance)} | {_pct(w.efficiency)} | {_pct(w.potential)} | "
            f"{_pct(lw.accuracy)} | {lw.data_count} | {lw.version} |"
        )

    if not learned_by_key:
        lines.append("| (no learned weights) | - | - | - | - | - | - |")

    lines.extend(["", "## Drift From Initial Weights"])
    for key in sorted(learned_by_key, key=lambda k: k.label):
        lw = learned_by_key[key]
        analysis = analyze_weight_change(lw.initial_weights, lw.weights)
        lines.append(f"- {key.label}: {analysis.summary} (dominant: {analysis.dominant_factor})")

    lines.append("")
    return "\n".join(lines)


def render_cycle_section(per_key_results: dict) -> str:
    """Per-key outcome of one cycle: before/after table plus warnings."""
    lines = ["## Cycle Results"]

    for key in sorted(per_key_results, key=lambda k: k.label):
        safe = per_key_results[key]
        if safe.failed:
            status = "FAILED"
        elif safe.needs_rollback:
            status = "ROLLED BACK"
        else:
            status = "APPLIED"

        lines.extend([
            "",
            f"### {key.label}: {status}",
            f"- Records used: {safe.result.data_count}",
            f"- Accuracy: {_pct(safe.result.previous_accuracy)} -> {_pct(safe.result.estimated_accuracy)}",
            "",
            "| Component | Before | After | Change |",
            "|-----------|--------|-------|--------|",
        ])
        for row in compute_weight_changes(safe.result.previous_weights, safe.final_weights):
            delta = row["change"]
            delta_str = f"{delta:+.4f}" if delta != 0 else "-"
            lines.append(f"| {row['component']} | {row['before']:.4f} | {row['after']:.4f} | {delta_str} |")

        for warning in safe.warnings:
            lines.append(f"- WARNING: {warning}")

    lines.append("")
    return "\n".join(lines)


def write_optimization_report(content: str, day: str) -> str:
    """
    Write the report to REPORT_DIR/escore_optimization_<day>.md.
    Returns the path to the written file.
    """
    path = REPORT_DIR / f"escore_optimization_{day}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return str(path)
