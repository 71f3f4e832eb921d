"""
sensor_selector.py — Resolve fault suspicion into exactly one active sensor.

Rules run in order; a later rule overrides earlier assignments to the same
selection field. The final consistency rule guarantees the invariant:
exactly one of sensor 1 / sensor 2 is active.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from fault_classifier import Classification, Sensor
from window_sampler import Sample, has_data, is_absent

log = logging.getLogger(__name__)


class SelectionReason(Enum):
    """Which rule produced the selection. Provenance only, not a magnitude."""
    FAULT_ON_SENSOR_1 = "fault_on_sensor_1"
    FAULT_ON_SENSOR_2 = "fault_on_sensor_2"
    NOISE_ON_SENSOR_1 = "noise_on_sensor_1"
    NOISE_ON_SENSOR_2 = "noise_on_sensor_2"
    BOTH_HEALTHY = "both_healthy"
    BOTH_FAULTED = "both_faulted"
    SENSOR_1_ABSENT = "sensor_1_absent"
    SENSOR_2_ABSENT = "sensor_2_absent"
    SENSOR_1_NO_DATA = "sensor_1_no_data"
    SENSOR_2_NO_DATA = "sensor_2_no_data"
    BOTH_ACTIVE_SENSOR_1_WINS = "both_active_sensor_1_wins"
    NONE_ACTIVE_FALLBACK = "none_active_fallback"


@dataclass(frozen=True)
class SelectionDecision:
    active_sensor: Sensor
    reason: SelectionReason
    fired: Tuple[str, ...] = ()

    def to_dict(self):
        return {"active_sensor": self.active_sensor.value,
                "reason": self.reason.value, "fired": list(self.fired)}


# An assignment is (sensor, active?) applied to the selection fields in order.
Assignment = Tuple[Sensor, bool]


def _select(sensor: Sensor) -> List[Assignment]:
    return [(sensor, True), (sensor.other, False)]


@dataclass(frozen=True)
class _Inputs:
    classification: Classification
    samples: Dict[Sensor, Sample]

    def fault(self, s: Sensor) -> bool:
        return self.classification.suspicion(s).has_fault

    def noise(self, s: Sensor) -> bool:
        return self.classification.suspicion(s).noise_flag


def _fault_rule(x: _Inputs):
    for s in (Sensor.SENSOR_1, Sensor.SENSOR_2):
        if x.fault(s) and not x.fault(s.other):
            reason = (SelectionReason.FAULT_ON_SENSOR_1 if s is Sensor.SENSOR_1
                      else SelectionReason.FAULT_ON_SENSOR_2)
            return _select(s.other), reason
    return None


def _noise_rule(x: _Inputs):
    for s in (Sensor.SENSOR_1, Sensor.SENSOR_2):
        if x.noise(s) and not x.noise(s.other) and not x.fault(s.other):
            reason = (SelectionReason.NOISE_ON_SENSOR_1 if s is Sensor.SENSOR_1
                      else SelectionReason.NOISE_ON_SENSOR_2)
            return _select(s.other), reason
    return None


def _healthy_default_rule(x: _Inputs):
    if not any(x.fault(s) or x.noise(s) for s in Sensor):
        return _select(Sensor.SENSOR_1), SelectionReason.BOTH_HEALTHY
    return None


def _both_faulted_rule(x: _Inputs):
    if x.fault(Sensor.SENSOR_1) and x.fault(Sensor.SENSOR_2):
        return _select(Sensor.SENSOR_1), SelectionReason.BOTH_FAULTED
    return None


def _absent_rule(sensor: Sensor, reason: SelectionReason):
    def rule(x: _Inputs):
        if is_absent(x.samples[sensor]):
            return _select(sensor.other), reason
        return None
    return rule


def _no_data_rule(sensor: Sensor, reason: SelectionReason):
    def rule(x: _Inputs):
        if not has_data(x.samples[sensor]):
            return _select(sensor.other), reason
        return None
    return rule


SELECTION_RULES: List[Dict[str, object]] = [
    {"name": "single_fault", "apply": _fault_rule},
    {"name": "single_noise", "apply": _noise_rule},
    {"name": "both_healthy", "apply": _healthy_default_rule},
    {"name": "both_faulted", "apply": _both_faulted_rule},
    {"name": "sensor_1_absent", "apply": _absent_rule(Sensor.SENSOR_1, SelectionReason.SENSOR_1_ABSENT)},
    {"name": "sensor_2_absent", "apply": _absent_rule(Sensor.SENSOR_2, SelectionReason.SENSOR_2_ABSENT)},
    {"name": "sensor_1_no_data", "apply": _no_data_rule(Sensor.SENSOR_1, SelectionReason.SENSOR_1_NO_DATA)},
    {"name": "sensor_2_no_data", "apply": _no_data_rule(Sensor.SENSOR_2, SelectionReason.SENSOR_2_NO_DATA)},
]


def select_sensor(classification: Classification, s1: Sample, s2: Sample) -> SelectionDecision:
    """
    Pick the active sensor for this tick.

    Args:
        classification: output of fault_classifier.classify for the same tick.
        s1, s2: the samples the classification was built from; used by the
            availability overrides (zero reading, no data).

    Returns:
        SelectionDecision with exactly one active sensor.
    """
    x = _Inputs(classification, {Sensor.SENSOR_1: s1, Sensor.SENSOR_2: s2})
    active = {Sensor.SENSOR_1: False, Sensor.SENSOR_2: False}
    reason: Optional[SelectionReason] = None
    fired: List[str] = []

    for rule in SELECTION_RULES:
        apply: Callable = rule["apply"]  # type: ignore[assignment]
        result = apply(x)
        if result is None:
            continue
        assignments, reason = result
        for sensor, value in assignments:
            active[sensor] = value
        fired.append(rule["name"])  # type: ignore[arg-type]

    # Consistency: sensor 1 wins ties, sensor 1 is the fallback
    if active[Sensor.SENSOR_1] and active[Sensor.SENSOR_2]:
        active[Sensor.SENSOR_2] = False
        reason = SelectionReason.BOTH_ACTIVE_SENSOR_1_WINS
        fired.append("consistency_both_active")
    elif not active[Sensor.SENSOR_1] and not active[Sensor.SENSOR_2]:
        active[Sensor.SENSOR_1] = True
        reason = SelectionReason.NONE_ACTIVE_FALLBACK
        fired.append("consistency_none_active")
        log.info("No selection rule fired for (%s, %s); falling back to sensor 1",
                  s1.tag, s2.tag)

    chosen = Sensor.SENSOR_1 if active[Sensor.SENSOR_1] else Sensor.SENSOR_2
    return SelectionDecision(active_sensor=chosen, reason=reason, fired=tuple(fired))
