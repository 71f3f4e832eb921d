"""
window_sampler.py — Pull the two historian windows the level rules need.

For evaluation time T and one sensor tag:
  now_avg, now_std  over [T-6min, T]
  lag_avg           over [T-66min, T-60min]

Both sensors of a tank are always sampled at the same T. A failed or empty
query yields NoData for that sensor, never a numeric default.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Tuple, Union

from historian import MissingDataError

log = logging.getLogger(__name__)

NOW_WINDOW = timedelta(minutes=6)
LAG_WINDOW_START = timedelta(minutes=66)
LAG_WINDOW_END = timedelta(minutes=60)

# Legacy rule: a current average of exactly 0 means the transmitter is absent.
ABSENT_READING = 0.0


@dataclass(frozen=True)
class SensorSample:
    tag: str
    now_avg: float
    now_std: float
    lag_avg: float

    @property
    def delta(self) -> float:
        """Absolute movement between the hour-ago window and now."""
        return abs(self.now_avg - self.lag_avg)

    def to_dict(self):
        return {"tag": self.tag, "now_avg": self.now_avg,
                "now_std": self.now_std, "lag_avg": self.lag_avg}


@dataclass(frozen=True)
class NoData:
    tag: str
    reason: str

    def to_dict(self):
        return {"tag": self.tag, "no_data": True, "reason": self.reason}


Sample = Union[SensorSample, NoData]


def has_data(sample: Sample) -> bool:
    return isinstance(sample, SensorSample)


def is_absent(sample: Sample) -> bool:
    """Legacy "sensor absent" business rule, not a data-validity check."""
    return isinstance(sample, SensorSample) and sample.now_avg == ABSENT_READING


def sample_sensor(historian, tag: str, at: datetime) -> Sample:
    try:
        now = historian.window_statistics(tag, at - NOW_WINDOW, at)
        lag_avg = historian.window_average(tag, at - LAG_WINDOW_START, at - LAG_WINDOW_END)
    except MissingDataError as e:
        log.info("No data for %s at %s: %s", tag, at.isoformat(), e.reason)
        return NoData(tag, e.reason)
    return SensorSample(tag=tag, now_avg=now.mean, now_std=now.std, lag_avg=lag_avg)


def sample_pair(historian, tag_1: str, tag_2: str, at: datetime) -> Tuple[Sample, Sample]:
    """Sample both sensors at the same evaluation time."""
    return sample_sensor(historian, tag_1, at), sample_sensor(historian, tag_2, at)
