# adaptive_escore/config.py
"""
Settings and default tables for the adaptive E-score loop.

Defaults live in pydantic models; load_config() layers env var overrides
on top (jobs call load_dotenv() before this runs).
"""
from __future__ import annotations

import os

from pydantic import BaseModel, Field


class WeightBound(BaseModel):
    min: float
    max: float


class WeightBounds(BaseModel):
    performance: WeightBound = Field(default_factory=lambda: WeightBound(min=0.25, max=0.65))
    efficiency: WeightBound = Field(default_factory=lambda: WeightBound(min=0.20, max=0.55))
    potential: WeightBound = Field(default_factory=lambda: WeightBound(min=0.10, max=0.35))


class WeightConstraints(BaseModel):
    bounds: WeightBounds = Field(default_factory=WeightBounds)
    # Largest per-component move allowed in one update step
    max_delta_per_update: float = 0.05


class RollbackThresholds(BaseModel):
    success_rate_drop: float = 0.20
    acos_degradation: float = 0.30
    monitoring_period_hours: int = 24


class RankThresholds(BaseModel):
    S: float = 80.0
    A: float = 60.0
    B: float = 40.0
    C: float = 20.0
    # below C => D


class AdaptiveConfig(BaseModel):
    learning_rate: float = 0.03
    min_data_for_learning: int = 100
    learning_window_days: int = 7
    iterations: int = Field(default=5, ge=1)
    learning_rate_decay: float = 0.9
    optimize_seasons: bool = False
    constraints: WeightConstraints = Field(default_factory=WeightConstraints)
    rollback_thresholds: RollbackThresholds = Field(default_factory=RollbackThresholds)
    rank_thresholds: RankThresholds = Field(default_factory=RankThresholds)


# Default weight tables: {performance, efficiency, potential}
DEFAULT_MODE_WEIGHTS: dict[str, dict[str, float]] = {
    "NORMAL": {"performance": 0.40, "efficiency": 0.40, "potential": 0.20},
    # Sale events lean on sales volume
    "S_MODE": {"performance": 0.55, "efficiency": 0.25, "potential": 0.20},
}

DEFAULT_BRAND_WEIGHTS: dict[str, dict[str, float]] = {
    "BRAND": {"performance": 0.50, "efficiency": 0.30, "potential": 0.20},
    "CONQUEST": {"performance": 0.35, "efficiency": 0.45, "potential": 0.20},
    "GENERIC": {"performance": 0.40, "efficiency": 0.40, "potential": 0.20},
}

DEFAULT_SEASON_WEIGHTS: dict[str, dict[str, float]] = {
    "Q1": {"performance": 0.40, "efficiency": 0.40, "potential": 0.20},
    "Q2": {"performance": 0.40, "efficiency": 0.40, "potential": 0.20},
    "Q3": {"performance": 0.45, "efficiency": 0.35, "potential": 0.20},  # summer sale
    "Q4": {"performance": 0.50, "efficiency": 0.30, "potential": 0.20},  # year-end
}

DEFAULT_WEIGHTS_BY_AXIS: dict[str, dict[str, dict[str, float]]] = {
    "mode": DEFAULT_MODE_WEIGHTS,
    "brand_type": DEFAULT_BRAND_WEIGHTS,
    "season": DEFAULT_SEASON_WEIGHTS,
}

FALLBACK_WEIGHTS: dict[str, float] = {"performance": 0.4, "efficiency": 0.4, "potential": 0.2}


SUCCESS_LEVEL_SCORES: dict[str, float] = {
    "EXCELLENT": 1.0,
    "GOOD": 0.7,
    "ACCEPTABLE": 0.4,
    "POOR": 0.0,
}

# Per-action thresholds on relative metric change (after - before) / before.
# salesChange/cvrChange are lower bounds, acosChange is an upper bound.
ACTION_SUCCESS_CRITERIA: dict[str, dict[str, dict[str, float]]] = {
    "STRONG_UP": {
        "excellent": {"sales_change": 0.15, "cvr_change": -0.05},
        "good": {"sales_change": 0.05, "cvr_change": -0.10},
        "acceptable": {"sales_change": 0.0, "acos_change": 0.20},
    },
    "MILD_UP": {
        "excellent": {"sales_change": 0.08, "acos_change": 0.05},
        "good": {"sales_change": 0.03, "acos_change": 0.10},
        "acceptable": {"sales_change": 0.0, "acos_change": 0.15},
    },
    "KEEP": {
        "excellent": {"sales_change": -0.02, "acos_change": 0.05},
        "good": {"sales_change": -0.05, "acos_change": 0.10},
        "acceptable": {"sales_change": -0.10, "acos_change": 0.15},
    },
    "MILD_DOWN": {
        "excellent": {"acos_change": -0.10},
        "good": {"acos_change": -0.05},
        "acceptable": {"acos_change": 0.05},
    },
    "STRONG_DOWN": {
        "excellent": {"acos_change": -0.15},
        "good": {"acos_change": -0.05},
        "acceptable": {"acos_change": 0.05},
    },
    "STOP": {
        "excellent": {"acos_change": -0.20},
        "good": {"acos_change": -0.10},
        "acceptable": {"acos_change": 0.0},
    },
}

# Minimum records with before/after ACOS before the degradation detector votes
MIN_ACOS_SAMPLES = 10

# Health check limits
HEALTH_MIN_ACCURACY = 0.5
HEALTH_MIN_DATA = 100
HEALTH_TREND_MIN_RECORDS = 20
HEALTH_TREND_DELTA = 0.05

WEIGHT_SUM_TOLERANCE = 0.001

# Float slack for range, bound and threshold comparisons
BOUND_EPSILON = 1e-9


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config() -> AdaptiveConfig:
    """
    Build AdaptiveConfig from defaults plus environment overrides.

    Env vars:
        ESCORE_LEARNING_RATE, ESCORE_MIN_DATA, ESCORE_WINDOW_DAYS,
        ESCORE_ITERATIONS, ESCORE_OPTIMIZE_SEASONS
    """
    base = AdaptiveConfig()
    # model_validate so overrides go through field validation
    return AdaptiveConfig.model_validate({
        **base.model_dump(),
        "learning_rate": _env_float("ESCORE_LEARNING_RATE", base.learning_rate),
        "min_data_for_learning": _env_int("ESCORE_MIN_DATA", base.min_data_for_learning),
        "learning_window_days": _env_int("ESCORE_WINDOW_DAYS", base.learning_window_days),
        "iterations": _env_int("ESCORE_ITERATIONS", base.iterations),
        "optimize_seasons": _env_bool("ESCORE_OPTIMIZE_SEASONS", base.optimize_seasons),
    })
