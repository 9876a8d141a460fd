"""
Arrival-rate scheduling.

A RateProfile is a piecewise-linear rate curve: a start rate followed by
stages, each ramping linearly to its target over its duration. A constant
rate is a single stage whose target equals the start rate.

RateScheduler turns the curve into Ticks. Tick k is placed at the earliest
moment the integral of the rate curve exceeds k, so the number of ticks in
any window equals the area under the curve over that window (rounded), and
no fractional error accumulates over long runs.
"""

import math
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Sequence, Tuple, Union

from load_errors import InvalidConfig


@dataclass(frozen=True)
class Stage:
    target: float
    duration: float  # seconds


@dataclass(frozen=True)
class Tick:
    """A scheduled iteration start, `offset` seconds after the scenario starts."""
    index: int
    offset: float


@dataclass(frozen=True)
class RateProfile:
    start_rate: float
    stages: Tuple[Stage, ...]
    time_unit: float = 1.0

    def __post_init__(self):
        if self.time_unit <= 0:
            raise InvalidConfig(f"time unit must be positive, got {self.time_unit}")
        if self.start_rate < 0:
            raise InvalidConfig(f"rate must be non-negative, got {self.start_rate}")
        if not self.stages:
            raise InvalidConfig("rate profile needs at least one stage")
        for stage in self.stages:
            if stage.target < 0:
                raise InvalidConfig(f"stage target must be non-negative, got {stage.target}")
            if stage.duration <= 0:
                raise InvalidConfig(f"stage duration must be positive, got {stage.duration}")

    @classmethod
    def constant(cls, rate: float, duration: float, time_unit: float = 1.0) -> "RateProfile":
        return cls(start_rate=rate, stages=(Stage(rate, duration),), time_unit=time_unit)

    @classmethod
    def ramping(
        cls,
        start_rate: float,
        stages: Iterable[Union[Stage, Sequence[float]]],
        time_unit: float = 1.0,
    ) -> "RateProfile":
        normalized = tuple(s if isinstance(s, Stage) else Stage(*s) for s in stages)
        return cls(start_rate=start_rate, stages=normalized, time_unit=time_unit)

    @property
    def duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    @property
    def is_constant(self) -> bool:
        return all(stage.target == self.start_rate for stage in self.stages)


@dataclass(frozen=True)
class _Segment:
    start: float
    length: float
    rate_from: float  # per second
    rate_to: float    # per second
    area_before: float

    @property
    def area(self) -> float:
        return (self.rate_from + self.rate_to) / 2 * self.length

    def area_until(self, elapsed: float) -> float:
        """Integral of the rate from segment start to `elapsed` into the segment."""
        slope = (self.rate_to - self.rate_from) / self.length
        return self.rate_from * elapsed + slope * elapsed * elapsed / 2

    def solve(self, amount: float) -> float:
        """Time into the segment at which `amount` iterations have accrued."""
        if amount <= 0:
            return 0.0
        half_slope = (self.rate_to - self.rate_from) / (2 * self.length)
        disc = max(self.rate_from ** 2 + 4 * half_slope * amount, 0.0)
        # stable form of the quadratic root; also covers the linear case
        elapsed = 2 * amount / (self.rate_from + math.sqrt(disc))
        return min(elapsed, self.length)


class RateScheduler:
    """Produces the lazy, time-ordered tick sequence for a rate profile."""

    def __init__(self, profile: RateProfile):
        self.profile = profile
        self._segments: List[_Segment] = []

        start = 0.0
        area = 0.0
        rate = profile.start_rate / profile.time_unit
        for stage in profile.stages:
            target = stage.target / profile.time_unit
            segment = _Segment(start, stage.duration, rate, target, area)
            self._segments.append(segment)
            start += stage.duration
            area += segment.area
            rate = target

        self.duration = start
        self.total_ticks = math.ceil(area)

    def _segment_at(self, elapsed: float) -> _Segment:
        for segment in self._segments:
            if elapsed < segment.start + segment.length:
                return segment
        return self._segments[-1]

    def rate_at(self, elapsed: float) -> float:
        """Instantaneous target rate, per second, `elapsed` seconds in."""
        if elapsed < 0 or elapsed >= self.duration:
            return 0.0
        segment = self._segment_at(elapsed)
        fraction = (elapsed - segment.start) / segment.length
        return segment.rate_from + (segment.rate_to - segment.rate_from) * fraction

    def expected_ticks(self, elapsed: float) -> float:
        """Area under the rate curve over [0, elapsed]."""
        if elapsed <= 0:
            return 0.0
        elapsed = min(elapsed, self.duration)
        segment = self._segment_at(elapsed)
        if elapsed >= segment.start + segment.length:
            return segment.area_before + segment.area
        return segment.area_before + segment.area_until(elapsed - segment.start)

    def ticks(self) -> Iterator[Tick]:
        index = 0
        for segment in self._segments:
            area_after = segment.area_before + segment.area
            while index < area_after:
                offset = segment.start + segment.solve(index - segment.area_before)
                if offset >= self.duration:
                    return
                yield Tick(index=index, offset=offset)
                index += 1

    def __iter__(self) -> Iterator[Tick]:
        return self.ticks()
