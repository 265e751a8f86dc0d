# adaptive_escore/scoring.py
"""
Score model: sub-scores from raw keyword metrics, the weighted E-score and
its rank, and context-aware weight selection.

Pure functions with no database access.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping

from pydantic import BaseModel

from adaptive_escore.config import (
    DEFAULT_BRAND_WEIGHTS,
    DEFAULT_MODE_WEIGHTS,
    DEFAULT_SEASON_WEIGHTS,
    RankThresholds,
)
from adaptive_escore.schemas import (
    BrandTypeKey,
    LearnedWeights,
    ModeKey,
    SeasonKey,
    SubScores,
    WeightVector,
)
from adaptive_escore.weights import normalize_weights


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return min(high, max(low, value))


# --- Sub-scores ---

def calculate_performance_score(
    *,
    sales: float,
    clicks: float,
    impressions: float,
    cvr: float,
    sales_baseline: float | None = None,
    clicks_baseline: float | None = None,
) -> float:
    """
    Performance sub-score (0-100): sales (<=40) + clicks (<=30) + CVR (<=30).

    With a baseline, sales/clicks are scored on the ratio to it; without one,
    on a log scale of the absolute value. CVR saturates at 5%.
    """
    score = 0.0

    if sales_baseline and sales_baseline > 0:
        score += min(40.0, (sales / sales_baseline) * 20)
    elif sales > 0:
        score += min(40.0, math.log10(sales + 1) * 10)

    if clicks_baseline and clicks_baseline > 0:
        score += min(30.0, (clicks / clicks_baseline) * 15)
    elif clicks > 0:
        score += min(30.0, math.log10(clicks + 1) * 8)

    score += min(30.0, (cvr / 0.05) * 30)

    return _clamp(score)


def calculate_efficiency_score(
    *,
    acos: float,
    acos_target: float,
    cpc: float,
    ctr: float,
    cpc_baseline: float | None = None,
) -> float:
    """
    Efficiency sub-score (0-100): ACOS vs target (<=50) + CPC vs baseline (<=25)
    + CTR (<=25, saturates at 3%).
    """
    score = 0.0

    if acos_target > 0:
        acos_ratio = acos / acos_target
        if acos_ratio <= 0.5:
            score += 50
        elif acos_ratio <= 1.0:
            score += 50 - (acos_ratio - 0.5) * 60
        elif acos_ratio <= 1.5:
            score += 20 - (acos_ratio - 1.0) * 30
        else:
            score += max(0.0, 5 - (acos_ratio - 1.5) * 10)

    if cpc_baseline and cpc_baseline > 0:
        cpc_ratio = cpc / cpc_baseline
        if cpc_ratio <= 0.8:
            score += 25
        elif cpc_ratio <= 1.0:
            score += 25 - (cpc_ratio - 0.8) * 50
        elif cpc_ratio <= 1.2:
            score += 15 - (cpc_ratio - 1.0) * 50
        else:
            score += max(0.0, 5 - (cpc_ratio - 1.2) * 25)
    else:
        # No baseline: neutral midpoint
        score += 12.5

    score += min(25.0, (ctr / 0.03) * 25)

    return _clamp(score)


def calculate_potential_score(
    *,
    rank_current: int | None,
    rank_target: int | None,
    competitor_strength: float,
    risk_penalty: float,
    impressions_growth: float | None = None,
) -> float:
    """
    Potential sub-score (0-100): rank gap (<=30) + weak competition (<=30)
    + low risk (<=20) + impression growth (<=20).
    """
    score = 0.0

    if rank_current is not None and rank_target is not None:
        gap = rank_current - rank_target
        if gap <= 0:
            score += 30
        elif gap <= 2:
            score += 25
        elif gap <= 5:
            score += 20
        elif gap <= 10:
            score += 10
        else:
            score += 5
    else:
        score += 15

    score += (1 - competitor_strength) * 30
    score += (1 - risk_penalty) * 20

    if impressions_growth is not None:
        if impressions_growth > 0.2:
            score += 20
        elif impressions_growth > 0:
            score += impressions_growth * 100
        else:
            score += max(0.0, 10 + impressions_growth * 50)
    else:
        score += 10

    return _clamp(score)


class KeywordMetrics(BaseModel):
    # performance inputs
    sales: float
    clicks: float
    impressions: float
    cvr: float
    sales_baseline: float | None = None
    clicks_baseline: float | None = None
    # efficiency inputs
    acos: float
    acos_target: float
    cpc: float
    cpc_baseline: float | None = None
    ctr: float
    # potential inputs
    rank_current: int | None = None
    rank_target: int | None = None
    competitor_strength: float = 0.5
    risk_penalty: float = 0.0
    impressions_growth: float | None = None


def compute_sub_scores(metrics: KeywordMetrics) -> SubScores:
    return SubScores(
        performance=calculate_performance_score(
            sales=metrics.sales,
            clicks=metrics.clicks,
            impressions=metrics.impressions,
            cvr=metrics.cvr,
            sales_baseline=metrics.sales_baseline,
            clicks_baseline=metrics.clicks_baseline,
        ),
        efficiency=calculate_efficiency_score(
            acos=metrics.acos,
            acos_target=metrics.acos_target,
            cpc=metrics.cpc,
            ctr=metrics.ctr,
            cpc_baseline=metrics.cpc_baseline,
        ),
        potential=calculate_potential_score(
            rank_current=metrics.rank_current,
            rank_target=metrics.rank_target,
            competitor_strength=metrics.competitor_strength,
            risk_penalty=metrics.risk_penalty,
            impressions_growth=metrics.impressions_growth,
        ),
    )


# --- Composite score ---

@dataclass
class EScoreResult:
    score: float
    rank: str
    components: SubScores
    weights: WeightVector


def determine_rank(score: float, thresholds: RankThresholds | None = None) -> str:
    t = thresholds or RankThresholds()
    if score >= t.S:
        return "S"
    if score >= t.A:
        return "A"
    if score >= t.B:
        return "B"
    if score >= t.C:
        return "C"
    return "D"


def composite_score(components: SubScores, weights: WeightVector) -> float:
    """Dot product of sub-scores and weights, clamped to [0, 100]."""
    raw = (
        components.performance * weights.performance
        + components.efficiency * weights.efficiency
        + components.potential * weights.potential
    )
    return _clamp(raw)


def calculate_escore(
    components: SubScores,
    weights: WeightVector,
    thresholds: RankThresholds | None = None,
) -> EScoreResult:
    score = composite_score(components, weights)
    return EScoreResult(
        score=score,
        rank=determine_rank(score, thresholds),
        components=components,
        weights=weights,
    )


# --- Context-dependent weight selection ---

def _blend(a: WeightVector, b: WeightVector, ratio: float) -> WeightVector:
    """ratio is the share of `a`."""
    return WeightVector(
        performance=a.performance * ratio + b.performance * (1 - ratio),
        efficiency=a.efficiency * ratio + b.efficiency * (1 - ratio),
        potential=a.potential * ratio + b.potential * (1 - ratio),
    )


def _weights_for(learned_by_key: Mapping, key, defaults: dict[str, dict[str, float]]) -> WeightVector:
    lw: LearnedWeights | None = learned_by_key.get(key)
    if lw is not None:
        return lw.weights
    return WeightVector(**defaults[key.value])


def select_adaptive_weights(
    learned_by_key: Mapping,
    *,
    mode: str,
    brand_type: str | None = None,
    season: str | None = None,
) -> WeightVector:
    """
    Pick the weights for a keyword context.

    Mode weights are the base; brand type blends in at 30% and season at 10%.
    Keys missing from learned_by_key fall back to the default tables.
    """
    weights = _weights_for(learned_by_key, ModeKey(value=mode), DEFAULT_MODE_WEIGHTS)

    if brand_type:
        brand_weights = _weights_for(learned_by_key, BrandTypeKey(value=brand_type), DEFAULT_BRAND_WEIGHTS)
        weights = _blend(weights, brand_weights, 0.7)

    if season:
        season_weights = _weights_for(learned_by_key, SeasonKey(value=season), DEFAULT_SEASON_WEIGHTS)
        weights = _blend(weights, season_weights, 0.9)

    return normalize_weights(weights)


def calculate_full_escore(
    metrics: KeywordMetrics,
    *,
    mode: str,
    brand_type: str | None = None,
    season: str | None = None,
    learned_by_key: Mapping | None = None,
    thresholds: RankThresholds | None = None,
) -> EScoreResult:
    """Sub-scores from raw metrics, weights from context, then the composite."""
    components = compute_sub_scores(metrics)
    weights = select_adaptive_weights(
        learned_by_key or {},
        mode=mode,
        brand_type=brand_type,
        season=season,
    )
    return calculate_escore(components, weights, thresholds)


def current_season(now: datetime) -> str:
    month = now.month
    if month <= 3:
        return "Q1"
    if month <= 6:
        return "Q2"
    if month <= 9:
        return "Q3"
    return "Q4"
