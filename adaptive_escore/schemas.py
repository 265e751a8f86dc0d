# adaptive_escore/schemas.py
"""Pydantic models for weights, segmentation keys, feedback and learned state."""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

OperationMode = Literal["NORMAL", "S_MODE"]
BrandCategory = Literal["BRAND", "CONQUEST", "GENERIC"]
Season = Literal["Q1", "Q2", "Q3", "Q4"]
SuccessLevel = Literal["EXCELLENT", "GOOD", "ACCEPTABLE", "POOR"]
ActionType = Literal["STRONG_UP", "MILD_UP", "KEEP", "MILD_DOWN", "STRONG_DOWN", "STOP"]
Rank = Literal["S", "A", "B", "C", "D"]

OPERATION_MODES: tuple[str, ...] = ("NORMAL", "S_MODE")
BRAND_CATEGORIES: tuple[str, ...] = ("BRAND", "CONQUEST", "GENERIC")
SEASONS: tuple[str, ...] = ("Q1", "Q2", "Q3", "Q4")
RANKS: tuple[str, ...] = ("S", "A", "B", "C", "D")
ACTION_TYPES: tuple[str, ...] = ("STRONG_UP", "MILD_UP", "KEEP", "MILD_DOWN", "STRONG_DOWN", "STOP")


class WeightVector(BaseModel):
    model_config = ConfigDict(frozen=True)

    performance: float
    efficiency: float
    potential: float

    def total(self) -> float:
        return self.performance + self.efficiency + self.potential

    def as_dict(self) -> dict[str, float]:
        return {
            "performance": self.performance,
            "efficiency": self.efficiency,
            "potential": self.potential,
        }


WEIGHT_FIELDS: tuple[str, ...] = ("performance", "efficiency", "potential")


class SubScores(BaseModel):
    """Three independent 0-100 sub-scores. Out-of-range inputs are clamped."""
    model_config = ConfigDict(frozen=True)

    performance: float
    efficiency: float
    potential: float

    @field_validator("performance", "efficiency", "potential", mode="before")
    @classmethod
    def _clamp(cls, v):
        return min(100.0, max(0.0, float(v)))


# --- Segmentation keys (tagged by axis) ---

class ModeKey(BaseModel):
    model_config = ConfigDict(frozen=True)
    axis: Literal["mode"] = "mode"
    value: OperationMode

    @property
    def label(self) -> str:
        return f"{self.axis}:{self.value}"


class BrandTypeKey(BaseModel):
    model_config = ConfigDict(frozen=True)
    axis: Literal["brand_type"] = "brand_type"
    value: BrandCategory

    @property
    def label(self) -> str:
        return f"{self.axis}:{self.value}"


class SeasonKey(BaseModel):
    model_config = ConfigDict(frozen=True)
    axis: Literal["season"] = "season"
    value: Season

    @property
    def label(self) -> str:
        return f"{self.axis}:{self.value}"


SegmentKey = Annotated[Union[ModeKey, BrandTypeKey, SeasonKey], Field(discriminator="axis")]

_KEY_TYPES = {"mode": ModeKey, "brand_type": BrandTypeKey, "season": SeasonKey}


def make_segment_key(axis: str, value: str) -> ModeKey | BrandTypeKey | SeasonKey:
    """Build a typed key. Raises ValueError (ValidationError for a bad value) on unknown axis/value."""
    key_type = _KEY_TYPES.get(axis)
    if key_type is None:
        raise ValueError(f"unknown segment axis: {axis!r}")
    return key_type(value=value)


def parse_segment_key(text: str) -> ModeKey | BrandTypeKey | SeasonKey:
    """Parse 'axis:value' (e.g. 'mode:NORMAL') into a typed key."""
    axis, sep, value = text.strip().partition(":")
    if not sep:
        raise ValueError(f"segment key must look like 'axis:value', got {text!r}")
    return make_segment_key(axis, value)


def all_segment_keys(*, include_seasons: bool = True) -> list[ModeKey | BrandTypeKey | SeasonKey]:
    keys: list = [ModeKey(value=m) for m in OPERATION_MODES]
    keys.extend(BrandTypeKey(value=b) for b in BRAND_CATEGORIES)
    if include_seasons:
        keys.extend(SeasonKey(value=s) for s in SEASONS)
    return keys


# --- Feedback ---

class MetricsSnapshot(BaseModel):
    cvr: float
    ctr: float
    acos: float
    sales: float
    clicks: float
    impressions: float = 0.0
    rank: int | None = None
    bid: float


class FeedbackRecord(BaseModel):
    """
    One past recommendation and (once evaluated) its outcome.

    Created with evaluated=False and null *_after fields; the evaluation step
    returns a filled copy (see success.evaluate_feedback_record).
    """
    model_config = ConfigDict(frozen=True)

    feedback_id: str
    execution_id: str
    keyword_id: str
    campaign_id: str
    ad_group_id: str

    recommendation_timestamp: datetime
    evaluation_timestamp: datetime | None = None

    mode: OperationMode
    brand_type: BrandCategory
    season: Season

    e_score: float
    predicted_rank: Rank
    performance_score: float
    efficiency_score: float
    potential_score: float

    weight_performance: float
    weight_efficiency: float
    weight_potential: float

    action_taken: ActionType
    change_rate: float = 0.0

    cvr_before: float
    ctr_before: float
    acos_before: float
    sales_before: float
    clicks_before: float
    bid_before: float

    cvr_after: float | None = None
    ctr_after: float | None = None
    acos_after: float | None = None
    sales_after: float | None = None
    clicks_after: float | None = None
    bid_after: float | None = None

    success_level: SuccessLevel | None = None
    success_score: float | None = None
    evaluated: bool = False


# --- Learned state and history ---

class LearnedWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    weights: WeightVector
    initial_weights: WeightVector
    data_count: int = 0
    last_updated: datetime
    accuracy: float = 0.0
    version: int = 1


class WeightHistory(BaseModel):
    history_id: str
    key: SegmentKey
    weights: WeightVector
    accuracy: float
    data_count: int
    saved_at: datetime
    rolled_back: bool = False


class OptimizationLogEntry(BaseModel):
    """Audit row written for every optimization attempt, accepted or rolled back."""
    key: SegmentKey
    previous_weights: WeightVector
    new_weights: WeightVector
    delta: WeightVector
    data_count: int
    previous_accuracy: float
    estimated_accuracy: float
    anomaly_detected: bool
    rolled_back: bool
    logged_at: datetime
