"""Segment boundary planning.

A plan decides where every rung of the ladder is cut. The same plan is shared
by all rungs so that segment N of every variant covers the same time range,
which is what lets a player switch rungs on segment boundaries.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Union

DEFAULT_FPS = 24.0
MIN_GOP_SIZE = 24
MIN_KEYFRAME_INTERVAL = 12

# Uniform segment length by source duration: (longer than, seconds).
UNIFORM_DURATION_TIERS: tuple[tuple[float, float], ...] = (
    (1800.0, 2.0),
    (600.0, 4.0),
)

_EPSILON = 1e-6

# Boundaries are kept to millisecond precision.
MIN_SEGMENT_SECONDS = 0.001

# Longer keyframe lists switch to an ffmpeg expression; a single argv entry
# is capped at 128 KiB on Linux.
MAX_EXPLICIT_KEYFRAMES = 1000


@dataclass(frozen=True)
class UniformSegmentation:
    base_segment_seconds: float = 6.0

    def __post_init__(self) -> None:
        if self.base_segment_seconds < MIN_SEGMENT_SECONDS:
            raise ValueError("base_segment_seconds must be at least 1ms")


@dataclass(frozen=True)
class HybridSegmentation:
    """Short segments for fast start, then longer ones."""

    initial_segment_seconds: float = 10.0
    initial_segment_count: int = 3
    subsequent_segment_seconds: float = 20.0

    def __post_init__(self) -> None:
        if (
            self.initial_segment_seconds < MIN_SEGMENT_SECONDS
            or self.subsequent_segment_seconds < MIN_SEGMENT_SECONDS
        ):
            raise ValueError("segment lengths must be at least 1ms")
        if self.initial_segment_count < 0:
            raise ValueError("initial_segment_count cannot be negative")


SegmentationPolicy = Union[UniformSegmentation, HybridSegmentation]


@dataclass(frozen=True)
class SegmentationPlan:
    boundaries: tuple[float, ...]
    gop_size: int
    min_keyframe_interval: int
    target_segment_seconds: float
    keyframe_rule: str = ""

    def keyframe_times(self) -> tuple[float, ...]:
        return (0.0, *self.boundaries)

    def force_keyframe_expression(self) -> str:
        """Value for ``-force_key_frames``.

        Short plans list every timestamp. Long ones use ``keyframe_rule``, an
        ``expr:`` that places the same keyframes in constant space.
        """
        times = self.keyframe_times()
        if len(times) > MAX_EXPLICIT_KEYFRAMES and self.keyframe_rule:
            return self.keyframe_rule
        return ",".join(f"{t:.3f}" for t in times)


def plan_segments(
    duration_seconds: float,
    fps: float | None,
    policy: SegmentationPolicy,
) -> SegmentationPlan:
    frame_rate = fps if fps and fps > 0 else DEFAULT_FPS
    if isinstance(policy, HybridSegmentation):
        return _plan_hybrid(duration_seconds, frame_rate, policy)
    return _plan_uniform(duration_seconds, frame_rate, policy)


def uniform_segment_seconds(duration_seconds: float, base: float) -> float:
    for threshold, seconds in UNIFORM_DURATION_TIERS:
        if duration_seconds > threshold:
            return seconds
    return base


def _plan_uniform(
    duration: float, fps: float, policy: UniformSegmentation
) -> SegmentationPlan:
    length = uniform_segment_seconds(duration, policy.base_segment_seconds)
    gop = max(MIN_GOP_SIZE, round_half_up(fps * length))
    boundaries = (
        _strictly_increasing(_cadence(0.0, length, duration)) if duration > 0 else ()
    )
    return SegmentationPlan(
        boundaries=boundaries,
        gop_size=gop,
        min_keyframe_interval=gop,
        target_segment_seconds=length,
        keyframe_rule=f"expr:gte(t,n_forced*{_num(length)})",
    )


def _plan_hybrid(
    duration: float, fps: float, policy: HybridSegmentation
) -> SegmentationPlan:
    initial = policy.initial_segment_seconds
    subsequent = policy.subsequent_segment_seconds
    gop = max(MIN_GOP_SIZE, round_half_up(fps * subsequent))
    min_keyint = max(MIN_KEYFRAME_INTERVAL, round_half_up(fps * min(initial, subsequent)))
    target = min(initial, subsequent) if policy.initial_segment_count else subsequent

    if duration <= 0:
        return SegmentationPlan((), gop, min_keyint, target)

    first_phase_end = min(duration, initial * policy.initial_segment_count)
    boundaries: list[float] = []
    k = 1
    while policy.initial_segment_count and k * initial <= first_phase_end + _EPSILON:
        t = round(k * initial, 3)
        if t < duration - _EPSILON:
            boundaries.append(t)
        k += 1

    if duration > first_phase_end + _EPSILON:
        boundaries.extend(_cadence(first_phase_end, subsequent, duration))

    rule = _hybrid_rule(first_phase_end, initial, policy.initial_segment_count, subsequent)
    return SegmentationPlan(
        _strictly_increasing(boundaries), gop, min_keyint, target, rule
    )


def _hybrid_rule(
    first_phase_end: float, initial: float, count: int, subsequent: float
) -> str:
    # n_forced counts keyframes already forced, the one at 0 included.
    after = f"gte(t,{_num(first_phase_end)}+(n_forced-{count})*{_num(subsequent)})"
    if not count:
        return f"expr:{after}"
    return (
        f"expr:if(lt(t,{_num(first_phase_end)}),"
        f"gte(t,n_forced*{_num(initial)}),{after})"
    )


def _strictly_increasing(points: Iterable[float]) -> tuple[float, ...]:
    kept: list[float] = []
    for t in points:
        if t > 0 and (not kept or t > kept[-1]):
            kept.append(t)
    return tuple(kept)


def _num(value: float) -> str:
    return f"{value:.3f}".rstrip("0").rstrip(".") or "0"


def _cadence(start: float, step: float, duration: float) -> tuple[float, ...]:
    # Multiplied rather than accumulated so long sources do not drift.
    points = []
    k = 1
    while True:
        t = round(start + k * step, 3)
        if t >= duration - _EPSILON:
            break
        points.append(t)
        k += 1
    return tuple(points)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
