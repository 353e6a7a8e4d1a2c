"""Context-capacity ("redline") detection.

The detector blends three signals into one usage estimate per iteration:

- explicit markers the agent prints ("Context: 96%"), trusted outright when
  fresh;
- a token heuristic (output characters / chars_per_token, accumulated against
  the configured window size);
- a behavioral trend (latency rising while output quality falls).

Thresholds are tunable defaults. The behavioral channel is approximate and is
never used on its own to declare a redline.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from ..config import RedlineConfig
from ..logging_utils import log_event
from .markers import extract_context_percent

EXPLICIT_CONFIDENCE = 0.95
STALE_EXPLICIT_CONFIDENCE = 0.6
TOKEN_CONFIDENCE = 0.3
BEHAVIOR_CONFIDENCE = 0.5
BEHAVIOR_USAGE_FLOOR = 90.0
QUALITY_BASELINE_CHARS = 2000
MIN_TREND_SAMPLES = 3


class RedlineLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    WARNING = "warning"
    REDLINE = "redline"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def at_least(self, other: "RedlineLevel") -> bool:
        return self.rank >= other.rank


_LEVEL_ORDER = (
    RedlineLevel.LOW,
    RedlineLevel.MEDIUM,
    RedlineLevel.HIGH,
    RedlineLevel.WARNING,
    RedlineLevel.REDLINE,
)
# Inclusive upper bounds; anything above the last bound is a redline.
_LEVEL_BOUNDS = (
    (50.0, RedlineLevel.LOW),
    (70.0, RedlineLevel.MEDIUM),
    (85.0, RedlineLevel.HIGH),
    (95.0, RedlineLevel.WARNING),
)


class Recommendation(str, Enum):
    CONTINUE = "continue"
    FINISH_AND_REBOOT = "finish_and_reboot"
    IMMEDIATE_REBOOT = "immediate_reboot"

    @property
    def wants_reboot(self) -> bool:
        return self is not Recommendation.CONTINUE


def level_for(usage_percent: float) -> RedlineLevel:
    for bound, level in _LEVEL_BOUNDS:
        if usage_percent <= bound:
            return level
    return RedlineLevel.REDLINE


@dataclass(frozen=True)
class ContextSample:
    timestamp: float
    iteration: int
    usage_percent: float
    quality: Optional[float] = None
    latency: Optional[float] = None


@dataclass(frozen=True)
class RedlineCheckResult:
    usage_percent: float
    level: RedlineLevel
    is_redline: bool
    degradation_detected: bool
    confidence: float
    recommendation: Recommendation

    def to_dict(self) -> dict:
        return {
            "usage_percent": round(self.usage_percent, 2),
            "level": self.level.value,
            "is_redline": self.is_redline,
            "degradation_detected": self.degradation_detected,
            "confidence": round(self.confidence, 3),
            "recommendation": self.recommendation.value,
        }


def quality_score(output: str) -> float:
    """Rough 0..1 output quality: length vs a baseline blended with line uniqueness."""
    if not output or not output.strip():
        return 0.0
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    uniqueness = len(set(lines)) / len(lines) if lines else 0.0
    length = min(1.0, len(output) / QUALITY_BASELINE_CHARS)
    return round(0.5 * length + 0.5 * uniqueness, 4)


def _mean(values: Sequence[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


def _split_halves(
    window: Sequence[ContextSample],
) -> tuple[Sequence[ContextSample], Sequence[ContextSample]]:
    half = len(window) // 2
    return window[:half], window[len(window) - half :]


class RedlineDetector:
    def __init__(
        self,
        config: Optional[RedlineConfig] = None,
        *,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or RedlineConfig()
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: list[ContextSample] = []
        self._accumulated_tokens = 0.0
        self._last_explicit: Optional[float] = None
        self._last_usage = 0.0
        self._iteration = 0
        self._iterations_since_reboot = 0

    @property
    def config(self) -> RedlineConfig:
        return self._config

    @property
    def iterations_since_reboot(self) -> int:
        with self._lock:
            return self._iterations_since_reboot

    def samples(self) -> list[ContextSample]:
        with self._lock:
            return list(self._samples)

    def level_for(self, usage_percent: float) -> RedlineLevel:
        return level_for(usage_percent)

    def reset(self) -> None:
        """Forget per-session state after the external session was replaced."""
        with self._lock:
            self._samples.clear()
            self._accumulated_tokens = 0.0
            self._last_explicit = None
            self._last_usage = 0.0
            self._iterations_since_reboot = 0
        log_event(self._logger, logging.DEBUG, "redline.reset")

    def check(self, output: str, latency: Optional[float] = None) -> RedlineCheckResult:
        output = output or ""
        with self._lock:
            self._iteration += 1
            self._iterations_since_reboot += 1
            quality = quality_score(output)

            estimates: list[tuple[float, float]] = []
            explicit = extract_context_percent(output)
            explicit_confidence = 0.0
            if explicit is not None:
                self._last_explicit = explicit
                explicit_confidence = EXPLICIT_CONFIDENCE
            elif self._last_explicit is not None:
                explicit = self._last_explicit
                explicit_confidence = STALE_EXPLICIT_CONFIDENCE
            if explicit is not None:
                estimates.append((explicit, explicit_confidence))

            estimates.append((self._token_estimate(output), TOKEN_CONFIDENCE))

            behavioral = self._behavioral_estimate(quality, latency)
            if behavioral is not None:
                estimates.append((behavioral, BEHAVIOR_CONFIDENCE))

            if (
                explicit is not None
                and explicit_confidence >= self._config.explicit_confidence_threshold
            ):
                usage, confidence = explicit, explicit_confidence
            else:
                usage, confidence = self._weighted(estimates)
            usage = max(0.0, min(100.0, usage))

            self._samples.append(
                ContextSample(
                    timestamp=self._clock(),
                    iteration=self._iteration,
                    usage_percent=usage,
                    quality=quality,
                    latency=latency,
                )
            )
            overflow = len(self._samples) - 2 * self._config.sample_size
            if overflow > 0:
                del self._samples[:overflow]

            level = level_for(usage)
            degradation = self._detect_degradation()
            recommendation = self._recommend(level, degradation)
            self._last_usage = usage
            iterations_since_reboot = self._iterations_since_reboot

        result = RedlineCheckResult(
            usage_percent=usage,
            level=level,
            is_redline=level is RedlineLevel.REDLINE,
            degradation_detected=degradation,
            confidence=confidence,
            recommendation=recommendation,
        )
        log_event(
            self._logger,
            logging.INFO if recommendation.wants_reboot else logging.DEBUG,
            "redline.checked",
            iterations_since_reboot=iterations_since_reboot,
            usage_percent=round(usage, 2),
            redline_level=level.value,
            degradation_detected=degradation,
            confidence=round(confidence, 3),
            recommendation=recommendation.value,
        )
        return result

    def _token_estimate(self, output: str) -> float:
        self._accumulated_tokens += len(output) / self._config.chars_per_token
        return min(
            100.0, self._accumulated_tokens / self._config.context_window_tokens * 100.0
        )

    def _behavioral_estimate(
        self, quality: float, latency: Optional[float]
    ) -> Optional[float]:
        if latency is None:
            return None
        history: list[ContextSample] = []
        if self._config.sample_size > 1:
            history = self._samples[-(self._config.sample_size - 1) :]
        latencies = [s.latency for s in history if s.latency is not None] + [latency]
        qualities = [s.quality for s in history if s.quality is not None] + [quality]
        if len(latencies) < MIN_TREND_SAMPLES or len(qualities) < MIN_TREND_SAMPLES:
            return None
        latency_rising = latencies[-1] > latencies[0] and latencies == sorted(latencies)
        quality_falling = qualities[-1] < qualities[0] and qualities == sorted(
            qualities, reverse=True
        )
        if latency_rising and quality_falling:
            return max(self._last_usage, BEHAVIOR_USAGE_FLOOR)
        return None

    @staticmethod
    def _weighted(estimates: Sequence[tuple[float, float]]) -> tuple[float, float]:
        total_weight = sum(conf for _, conf in estimates)
        if total_weight <= 0:
            return 0.0, 0.0
        usage = sum(value * conf for value, conf in estimates) / total_weight
        confidence = sum(conf * conf for _, conf in estimates) / total_weight
        return usage, confidence

    def _detect_degradation(self) -> bool:
        window = self._samples[-self._config.sample_size :]
        if len(window) < MIN_TREND_SAMPLES:
            return False
        for previous, current in zip(window, window[1:]):
            if current.usage_percent < previous.usage_percent:
                return False
        leading, trailing = _split_halves(window)

        lead_quality = _mean([s.quality for s in leading if s.quality is not None])
        trail_quality = _mean([s.quality for s in trailing if s.quality is not None])
        if lead_quality and trail_quality is not None:
            if (lead_quality - trail_quality) / lead_quality > (
                self._config.quality_drop_ratio
            ):
                return True

        lead_latency = _mean([s.latency for s in leading if s.latency is not None])
        trail_latency = _mean([s.latency for s in trailing if s.latency is not None])
        if lead_latency and trail_latency is not None:
            if (trail_latency - lead_latency) / lead_latency > (
                self._config.latency_increase_ratio
            ):
                return True
        return False

    def _recommend(self, level: RedlineLevel, degradation: bool) -> Recommendation:
        if self._iterations_since_reboot < self._config.min_iterations_before_reboot:
            return Recommendation.CONTINUE
        if level is RedlineLevel.REDLINE or (
            degradation and level.at_least(RedlineLevel.WARNING)
        ):
            return Recommendation.IMMEDIATE_REBOOT
        if level is RedlineLevel.WARNING or degradation:
            return Recommendation.FINISH_AND_REBOOT
        return Recommendation.CONTINUE
