"""
fault_classifier.py — Per-sensor fault suspicion for a redundant level pair.

Evaluates, in order:
1. Disagreement between the two current averages (gates steps 3-5)
2. Noise on each sensor, keeping the flag only on the noisier one
3. Range plausibility, sensor 1 checked first
4. Stuck by cross-sensor variance (names the quiet sensor)
5. Stuck by historical delta (names the sensor that did not move)

Steps 3-5 are an ordered rule list. A later rule overwrites an earlier
fault on the same sensor; faults are never OR-merged.

Thresholds are fixed fractions of the tank's Max_Fill_Rate, except the
disagreement limit and the range bounds which are in percent of span.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Tuple

from window_sampler import Sample, SensorSample, has_data

log = logging.getLogger(__name__)


class Sensor(Enum):
    SENSOR_1 = "sensor_1"
    SENSOR_2 = "sensor_2"

    @property
    def other(self) -> "Sensor":
        return Sensor.SENSOR_2 if self is Sensor.SENSOR_1 else Sensor.SENSOR_1


class FaultReason(Enum):
    NONE = "none"
    RANGE = "range"
    STUCK_BY_VARIANCE = "stuck_by_variance"
    STUCK_BY_DELTA = "stuck_by_delta"


# ── Thresholds ────────────────────────────────────────────────
DISAGREEMENT_LIMIT = 5.0     # percentage points, absolute
NOISE_FRACTION = 0.12        # × Max_Fill_Rate
VARIANCE_FRACTION = 0.05     # × Max_Fill_Rate
DELTA_FRACTION = 0.1         # × Max_Fill_Rate
RANGE_MIN = 3.0              # % of span
RANGE_MAX = 98.0


@dataclass(frozen=True)
class FaultSuspicion:
    disagreement: bool
    noise_flag: bool
    fault: FaultReason = FaultReason.NONE

    @property
    def has_fault(self) -> bool:
        return self.fault is not FaultReason.NONE

    def to_dict(self):
        return {"disagreement": self.disagreement, "noise_flag": self.noise_flag,
                "fault": self.fault.value}


@dataclass(frozen=True)
class Classification:
    disagreement: bool
    sensor_1: FaultSuspicion
    sensor_2: FaultSuspicion
    fired: Tuple[str, ...] = ()
    ambiguities: Tuple[str, ...] = ()

    def suspicion(self, sensor: Sensor) -> FaultSuspicion:
        return self.sensor_1 if sensor is Sensor.SENSOR_1 else self.sensor_2

    def to_dict(self):
        return {
            "disagreement": self.disagreement,
            "sensor_1": self.sensor_1.to_dict(),
            "sensor_2": self.sensor_2.to_dict(),
            "fired": list(self.fired),
            "ambiguities": list(self.ambiguities),
        }


# ── Disagreement-gated rules ──────────────────────────────────
# Each rule returns the (sensor, reason) assignments it makes, in order.

def _out_of_range(value: float) -> bool:
    return value < RANGE_MIN or value > RANGE_MAX


def _range_rule(samples: Dict[Sensor, SensorSample], max_fill_rate: float):
    # First match only: sensor 1 takes priority
    for sensor in (Sensor.SENSOR_1, Sensor.SENSOR_2):
        if _out_of_range(samples[sensor].now_avg):
            return [(sensor, FaultReason.RANGE)]
    return []


def _stuck_by_variance_rule(samples: Dict[Sensor, SensorSample], max_fill_rate: float):
    limit = VARIANCE_FRACTION * max_fill_rate
    out = []
    for a in (Sensor.SENSOR_1, Sensor.SENSOR_2):
        b = a.other
        if samples[a].now_std > limit and samples[b].now_std < limit:
            out.append((b, FaultReason.STUCK_BY_VARIANCE))
    return out


def _stuck_by_delta_rule(samples: Dict[Sensor, SensorSample], max_fill_rate: float):
    limit = DELTA_FRACTION * max_fill_rate
    out = []
    for a in (Sensor.SENSOR_1, Sensor.SENSOR_2):
        b = a.other
        # Names the low-delta sensor: it stayed put while the other moved
        if samples[a].delta < limit and samples[b].delta > limit:
            out.append((a, FaultReason.STUCK_BY_DELTA))
    return out


FAULT_RULES = [
    {"name": "range", "apply": _range_rule},
    {"name": "stuck_by_variance", "apply": _stuck_by_variance_rule},
    {"name": "stuck_by_delta", "apply": _stuck_by_delta_rule},
]


def _noise_flags(s1: Sample, s2: Sample, max_fill_rate: float, notes: List[str]) -> Dict[Sensor, bool]:
    limit = NOISE_FRACTION * max_fill_rate
    flags = {
        Sensor.SENSOR_1: has_data(s1) and s1.now_std > limit,
        Sensor.SENSOR_2: has_data(s2) and s2.now_std > limit,
    }
    if flags[Sensor.SENSOR_1] and flags[Sensor.SENSOR_2]:
        if s1.now_std < s2.now_std:
            flags[Sensor.SENSOR_1] = False
        elif s2.now_std < s1.now_std:
            flags[Sensor.SENSOR_2] = False
        else:
            msg = f"noise tie: both std={s1.now_std:g} > {limit:g}, both flags kept"
            log.warning("Ambiguous noise rule (%s, %s): %s", s1.tag, s2.tag, msg)
            notes.append(msg)
    return flags


def classify(s1: Sample, s2: Sample, max_fill_rate: float) -> Classification:
    """
    Run the fault rules for one evaluation tick.

    Args:
        s1, s2: samples of sensor 1 and sensor 2 taken at the same time.
            Either may be NoData; gated rules then do not run.
        max_fill_rate: tank Max_Fill_Rate, already validated > 0.

    Returns:
        A fresh Classification. Nothing is carried between ticks.
    """
    notes: List[str] = []
    fired: List[str] = []

    disagreement = (
        has_data(s1) and has_data(s2)
        and abs(s1.now_avg - s2.now_avg) > DISAGREEMENT_LIMIT
    )
    if disagreement:
        fired.append("disagreement")

    noise = _noise_flags(s1, s2, max_fill_rate, notes)
    for sensor, flagged in noise.items():
        if flagged:
            fired.append(f"noise:{sensor.value}")

    faults = {Sensor.SENSOR_1: FaultReason.NONE, Sensor.SENSOR_2: FaultReason.NONE}
    if disagreement:
        samples = {Sensor.SENSOR_1: s1, Sensor.SENSOR_2: s2}
        for rule in FAULT_RULES:
            for sensor, reason in rule["apply"](samples, max_fill_rate):
                prev = faults[sensor]
                if prev is not FaultReason.NONE:
                    msg = f"{sensor.value}: {reason.value} overwrote {prev.value}"
                    log.info("Fault overwrite (%s, %s): %s", s1.tag, s2.tag, msg)
                    notes.append(msg)
                faults[sensor] = reason
                fired.append(f"{rule['name']}:{sensor.value}")

    return Classification(
        disagreement=disagreement,
        sensor_1=FaultSuspicion(disagreement, noise[Sensor.SENSOR_1], faults[Sensor.SENSOR_1]),
        sensor_2=FaultSuspicion(disagreement, noise[Sensor.SENSOR_2], faults[Sensor.SENSOR_2]),
        fired=tuple(fired),
        ambiguities=tuple(notes),
    )
