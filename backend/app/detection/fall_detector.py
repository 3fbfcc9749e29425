"""
fall_detector.py — Windowed fall detection over a sample stream.

    add_sample ─► window (FIFO, capacity N) ─► every S samples:
                                                 │
                    fewer than ⌊0.4·N⌋ samples? ─┤─► skip
                    within cooldown?            ─┤─► skip
                    P ≥ threshold and gate?     ─┴─► on_fall(score)
                                                     truncate window to last 10

Prediction is driven by sample count, not wall-clock time. The cooldown
is measured on sample timestamps (`Sample.t`, ms) so replayed or
synthetic streams behave the same as live ones; untimed samples are
stamped with the detector clock (monotonic by default).

Sequence gate: a fall is a drop (freefall) followed by a hit (impact).
With the gate on, both ratios must exceed a small floor, so a window
that is merely shaky (high jerk / range) never fires.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from backend.app.detection.fall_model import (
    FallModelConfig,
    FallScore,
    Sample,
    monotonic_ms,
    predict,
)

logger = logging.getLogger(__name__)

FallCallback = Callable[[FallScore], None]


@dataclass(frozen=True)
class FallDetectorConfig:
    window_size: int = 20
    step: int = 4
    threshold: float = 0.30
    min_impact_freefall_sequence: bool = True
    sequence_floor: float = 0.02
    cooldown_ms: float = 4000.0
    keep_after_trigger: int = 10
    min_fill_ratio: float = 0.4

    @property
    def min_samples(self) -> int:
        return int(self.window_size * self.min_fill_ratio)


class WindowedFallDetector:
    """
    Usage:
        detector = WindowedFallDetector(on_fall=session.on_fall)
        for sample in stream:
            detector.add_sample(sample)
    """

    def __init__(
        self,
        config: FallDetectorConfig = FallDetectorConfig(),
        *,
        on_fall: Optional[FallCallback] = None,
        model_config: FallModelConfig = FallModelConfig(),
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.config = config
        self.clock = clock
        self.model_config = model_config
        self.on_fall = on_fall
        self._window: Deque[Sample] = deque(maxlen=config.window_size)
        self._since_predict = 0
        self._last_fall_at: Optional[float] = None
        self.last_score: Optional[FallScore] = None

    @property
    def window(self) -> List[Sample]:
        return list(self._window)

    def add_sample(self, sample: Sample) -> Optional[FallScore]:
        """Append a sample; returns the score if a prediction ran."""
        self._window.append(sample)
        self._since_predict += 1
        if self._since_predict < self.config.step:
            return None
        self._since_predict = 0
        now = sample.t if sample.t is not None else self.clock()
        return self._run_predict(now)

    def _run_predict(self, now: float) -> Optional[FallScore]:
        cfg = self.config
        if len(self._window) < cfg.min_samples:
            return None

        score = predict(list(self._window), self.model_config)
        self.last_score = score

        if self._last_fall_at is not None and now - self._last_fall_at < cfg.cooldown_ms:
            return score

        sequence_pass = not cfg.min_impact_freefall_sequence or (
            score.freefall_ratio > cfg.sequence_floor
            and score.impact_ratio > cfg.sequence_floor
        )
        if score.probability >= cfg.threshold and sequence_pass:
            self._last_fall_at = now
            self._fire(score)
            # Keep the tail so a second event right after is not missed
            tail = list(self._window)[-cfg.keep_after_trigger:]
            self._window.clear()
            self._window.extend(tail)
        return score

    def _fire(self, score: FallScore) -> None:
        logger.info("Possible fall detected (p=%.3f)", score.probability)
        if self.on_fall is None:
            return
        try:
            self.on_fall(score)
        except Exception:
            logger.warning("on_fall callback raised", exc_info=True)

    def reset(self) -> None:
        self._window.clear()
        self._since_predict = 0
        self._last_fall_at = None
        self.last_score = None

    def dispose(self) -> None:
        self.reset()
        self.on_fall = None
