"""Clip/audio reconciliation: pick clips whose combined length matches a track.

A selection attempt shuffles the clip pool, greedily accumulates clips, then
decides how (or whether) the total can be brought onto the audio duration:

* within ``max_av_diff``: keep as is, the mux step trims the excess;
* shorter by at most ``shorter_max_diff``: stretch timestamps by ``A / T``,
  accepted when the speed ratio ``T / A`` is within the rate bounds;
* longer by at most ``longer_max_diff``: compress timestamps by ``A / T`` or,
  when that factor is out of bounds, cut the tail of the last clip.

``rate`` is always the factor applied to presentation timestamps
(``setpts=rate*PTS``), so the assembled duration is ``T * rate`` and lands on
the audio duration in every accepted branch.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AbstractSet, Optional, Sequence

from errors import ReconciliationExhausted

RATE_EPSILON = 1e-9


@dataclass(frozen=True)
class ReconcileBounds:
    min_clip: float = 1.5
    max_clip: float = 30.0
    min_rate: float = 0.95
    max_rate: float = 1.05
    max_av_diff: float = 0.2
    shorter_max_diff: float = 2.0
    longer_max_diff: float = 2.0
    max_attempts: int = 100

    def validate(self) -> None:
        if self.min_clip <= 0 or self.max_clip < self.min_clip:
            raise ValueError("Clip bounds must satisfy 0 < min_clip <= max_clip.")
        if self.min_rate <= 0 or self.max_rate < self.min_rate:
            raise ValueError("Rate bounds must satisfy 0 < min_rate <= max_rate.")
        if self.max_av_diff < 0:
            raise ValueError("max_av_diff must be >= 0.")
        if self.shorter_max_diff < 0 or self.longer_max_diff < 0:
            raise ValueError("Shorter/longer max diffs must be >= 0.")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0.")

    def rate_in_bounds(self, rate: float) -> bool:
        return self.min_rate - RATE_EPSILON <= rate <= self.max_rate + RATE_EPSILON


@dataclass(frozen=True)
class ClipCandidate:
    name: str
    path: Path
    duration: float


class Adjustment(str, Enum):
    AS_IS = "as_is"
    STRETCH = "stretch"
    COMPRESS = "compress"
    TRIM_TAIL = "trim_tail"


@dataclass(frozen=True)
class Decision:
    adjustment: Adjustment
    rate: float = 1.0
    trim_last_to: Optional[float] = None


@dataclass(frozen=True)
class ReconcilePlan:
    clips: tuple[ClipCandidate, ...]
    target_duration: float
    decision: Decision
    attempts: int

    @property
    def selection_key(self) -> tuple[str, ...]:
        return tuple(clip.name for clip in self.clips)

    @property
    def total_duration(self) -> float:
        return sum(clip.duration for clip in self.clips)

    @property
    def rate(self) -> float:
        return self.decision.rate

    @property
    def trim_last_to(self) -> Optional[float]:
        return self.decision.trim_last_to

    @property
    def bounded_rate(self) -> float:
        """Ratio that was checked against the rate bounds (T / A when stretching)."""
        if self.decision.adjustment == Adjustment.STRETCH:
            return self.total_duration / self.target_duration
        return self.decision.rate

    @property
    def effective_duration(self) -> float:
        return effective_duration(
            [clip.duration for clip in self.clips],
            rate=self.decision.rate,
            trim_last_to=self.decision.trim_last_to,
        )


def effective_duration(
    durations: Sequence[float],
    *,
    rate: float = 1.0,
    trim_last_to: Optional[float] = None,
) -> float:
    """Length of the assembled visual track before the final hard trim."""
    if not durations:
        return 0.0
    total = sum(durations)
    if trim_last_to is not None:
        total = total - durations[-1] + trim_last_to
    return total * rate


def accumulate_clips(
    pool: Sequence[ClipCandidate],
    order: Sequence[int],
    target: float,
    bounds: ReconcileBounds,
) -> list[ClipCandidate]:
    """Greedy pass over `order`, skipping clips outside the clip-length bounds."""
    selected: list[ClipCandidate] = []
    total = 0.0
    for index in order:
        clip = pool[index]
        if clip.duration < bounds.min_clip or clip.duration > bounds.max_clip:
            continue
        if total + clip.duration > target + bounds.max_av_diff:
            break
        selected.append(clip)
        total += clip.duration
        if total >= target:
            break
    return selected


def classify_total(
    total: float,
    target: float,
    last_clip_duration: float,
    bounds: ReconcileBounds,
) -> Optional[Decision]:
    """Decide the adjustment for a selection totalling `total` seconds, or None."""
    if total <= 0:
        return None

    diff = total - target
    if diff < -bounds.max_av_diff:
        if abs(diff) > bounds.shorter_max_diff:
            return None
        if bounds.rate_in_bounds(total / target):
            return Decision(Adjustment.STRETCH, rate=target / total)
        return None

    if diff > bounds.max_av_diff:
        if diff > bounds.longer_max_diff:
            return None
        rate = target / total
        if bounds.rate_in_bounds(rate):
            return Decision(Adjustment.COMPRESS, rate=rate)
        remainder = last_clip_duration - diff
        if remainder >= bounds.min_clip:
            return Decision(Adjustment.TRIM_TAIL, rate=1.0, trim_last_to=remainder)
        return None

    return Decision(Adjustment.AS_IS, rate=1.0)


def reconcile(
    pool: Sequence[ClipCandidate],
    target_duration: float,
    bounds: ReconcileBounds,
    *,
    used_selections: AbstractSet[tuple[str, ...]] = frozenset(),
    rng: Optional[random.Random] = None,
) -> ReconcilePlan:
    """Sample selections until one fits the target and is new to this batch.

    Raises ReconciliationExhausted after `bounds.max_attempts` attempts.
    """
    if target_duration <= 0:
        raise ValueError("Target duration must be > 0.")
    rng = rng or random.Random()
    indices = list(range(len(pool)))

    for attempt in range(1, bounds.max_attempts + 1):
        rng.shuffle(indices)
        selected = accumulate_clips(pool, indices, target_duration, bounds)
        if not selected:
            continue

        total = sum(clip.duration for clip in selected)
        decision = classify_total(total, target_duration, selected[-1].duration, bounds)
        if decision is None:
            continue

        key = tuple(clip.name for clip in selected)
        if key in used_selections:
            continue

        return ReconcilePlan(
            clips=tuple(selected),
            target_duration=target_duration,
            decision=decision,
            attempts=attempt,
        )

    raise ReconciliationExhausted(
        f"No clip selection matched {target_duration:.2f}s "
        f"after {bounds.max_attempts} attempts.",
        attempts=bounds.max_attempts,
    )
