"""
fall_model.py — Hand-tuned fall score over a window of accelerometer samples.

Not a trained model: a weighted sum of normalised window features pushed
through a logistic function. All constants were tuned empirically on
phone accelerometers reporting in g and live in FallModelConfig.

Features (per window of n samples, m_i = |(x, y, z)|):
    mean, variance, max, min       of m
    range        = max − min
    jerk         = Σ |m_i − m_{i−1}|
    freefall     = #{m_i < 0.8 g}
    impact       = #{m_i > 1.6 g}

Score:
    freefall_ratio = freefall / n
    impact_ratio   = impact / n
    range_ratio    = min(1, range / 1.0)
    jerk_ratio     = min(1, jerk / (0.5 · n))

    raw = 1.4 · freefall_ratio + 1.6 · impact_ratio
        + 0.6 · range_ratio    + 0.4 · jerk_ratio
        + 0.6 [max > 1.8 g]    + 0.3 [min < 0.7 g]

    P   = 1 / (1 + e^−(raw − 1.0))
    label = "fall" iff P > 0.35
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence

import numpy as np


class FallLabel(str, Enum):
    FALL = "fall"
    NO_FALL = "no_fall"


@dataclass(frozen=True)
class Sample:
    """One accelerometer reading in g; `t` in milliseconds, None if untimed."""
    x: float
    y: float
    z: float
    t: Optional[float] = None


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class FallModelConfig:
    freefall_threshold: float = 0.8
    impact_threshold: float = 1.6
    spike_threshold: float = 1.8
    subgravity_threshold: float = 0.7
    w_freefall: float = 1.4
    w_impact: float = 1.6
    w_range: float = 0.6
    w_jerk: float = 0.4
    spike_boost: float = 0.6
    subgravity_boost: float = 0.3
    range_scale: float = 1.0
    jerk_scale: float = 0.5        # per sample
    sigmoid_center: float = 1.0
    classification_threshold: float = 0.35


@dataclass(frozen=True)
class WindowFeatures:
    mean: float
    variance: float
    max: float
    min: float
    range: float
    jerk: float
    freefall_count: int
    impact_count: int
    n: int


@dataclass(frozen=True)
class FallScore:
    probability: float
    label: FallLabel
    freefall_ratio: float
    impact_ratio: float
    range: float
    jerk: float          # normalised jerk ratio
    raw_score: float

    @property
    def is_fall(self) -> bool:
        return self.label == FallLabel.FALL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "probability": round(self.probability, 3),
            "label": self.label.value,
            "freefall_ratio": round(self.freefall_ratio, 3),
            "impact_ratio": round(self.impact_ratio, 3),
            "range": round(self.range, 3),
            "jerk": round(self.jerk, 3),
            "raw_score": round(self.raw_score, 3),
        }


NO_FALL_SCORE = FallScore(
    probability=0.0,
    label=FallLabel.NO_FALL,
    freefall_ratio=0.0,
    impact_ratio=0.0,
    range=0.0,
    jerk=0.0,
    raw_score=0.0,
)


def magnitudes(window: Sequence[Sample]) -> np.ndarray:
    xyz = np.array([[s.x, s.y, s.z] for s in window], dtype=float)
    return np.linalg.norm(xyz, axis=1)


def extract_features(
    window: Sequence[Sample], config: FallModelConfig = FallModelConfig(),
) -> WindowFeatures:
    mags = magnitudes(window)
    return WindowFeatures(
        mean=float(mags.mean()),
        variance=float(mags.var()),
        max=float(mags.max()),
        min=float(mags.min()),
        range=float(mags.max() - mags.min()),
        jerk=float(np.abs(np.diff(mags)).sum()),
        freefall_count=int((mags < config.freefall_threshold).sum()),
        impact_count=int((mags > config.impact_threshold).sum()),
        n=len(mags),
    )


def sigmoid(x: float) -> float:
    return float(1.0 / (1.0 + np.exp(-x)))


def predict(
    window: Sequence[Sample], config: FallModelConfig = FallModelConfig(),
) -> FallScore:
    """
    Score a window.

    Parameters
    ----------
    window : sequence of Sample
        Empty windows score 0 / no_fall.
    config : FallModelConfig

    Returns
    -------
    FallScore
        `probability` is not rounded, so `label` is exactly
        `probability > classification_threshold`.
    """
    if not window:
        return NO_FALL_SCORE

    f = extract_features(window, config)

    freefall_ratio = f.freefall_count / f.n
    impact_ratio = f.impact_count / f.n
    range_ratio = min(1.0, f.range / config.range_scale)
    jerk_ratio = min(1.0, f.jerk / (f.n * config.jerk_scale))

    raw = (
        config.w_freefall * freefall_ratio
        + config.w_impact * impact_ratio
        + config.w_range * range_ratio
        + config.w_jerk * jerk_ratio
    )

    # Boosts for a sudden spike / dip
    if f.max > config.spike_threshold:
        raw += config.spike_boost
    if f.min < config.subgravity_threshold:
        raw += config.subgravity_boost

    prob = sigmoid(raw - config.sigmoid_center)

    return FallScore(
        probability=prob,
        label=(
            FallLabel.FALL if prob > config.classification_threshold
            else FallLabel.NO_FALL
        ),
        freefall_ratio=freefall_ratio,
        impact_ratio=impact_ratio,
        range=f.range,
        jerk=jerk_ratio,
        raw_score=raw,
    )
