"""
fill_rate.py — Fill-rate warning from the active sensor's own windows.

rate = now_avg - lag_avg (level change over roughly one hour).
Warning when rate >= Max_Fill_Rate. Recomputed every tick, no carry-over.
"""
from __future__ import annotations

from dataclasses import dataclass

from window_sampler import SensorSample


@dataclass(frozen=True)
class FillRateResult:
    rate: float
    max_fill_rate: float
    warning: bool

    def to_dict(self):
        return {"rate": self.rate, "max_fill_rate": self.max_fill_rate,
                "warning": self.warning}


def check_fill_rate(active: SensorSample, max_fill_rate: float) -> FillRateResult:
    rate = active.now_avg - active.lag_avg
    return FillRateResult(rate=rate, max_fill_rate=max_fill_rate,
                          warning=rate >= max_fill_rate)
