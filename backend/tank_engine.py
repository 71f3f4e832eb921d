"""
tank_engine.py — One evaluation tick for one tank.

Bridges configuration and the historian to the level rules:
  window_sampler → fault_classifier → sensor_selector → fill_rate

Each call is a pure function of the historian's answers for the given
evaluation time. Re-running a tick on identical historian data gives an
identical TickResult.
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fault_classifier import Classification, Sensor, classify
from fill_rate import FillRateResult, check_fill_rate
from sensor_selector import SelectionDecision, select_sensor
from window_sampler import Sample, has_data, sample_pair

log = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Tank configuration is unusable; no selection is made for that tank."""


# ── Tank Config ───────────────────────────────────────────────────

@dataclass
class TankConfig:
    name: str
    sensor1_tag: str
    sensor2_tag: str
    max_fill_rate: Any = None               # % of span per hour, checked by validate_config
    tank_id: Optional[int] = None

    def to_dict(self):
        return {"name": self.name, "sensor1_tag": self.sensor1_tag,
                "sensor2_tag": self.sensor2_tag,
                "max_fill_rate": self.max_fill_rate, "tank_id": self.tank_id}

    @classmethod
    def from_env(cls) -> "TankConfig":
        """Single-tank configuration from environment variables."""
        raw = os.getenv("MAX_FILL_RATE")
        return cls(
            name=os.getenv("TANK_NAME", "tank"),
            sensor1_tag=os.getenv("SENSOR1_TAG", ""),
            sensor2_tag=os.getenv("SENSOR2_TAG", ""),
            max_fill_rate=raw or None,
        )

    @classmethod
    def from_model(cls, tank) -> "TankConfig":
        return cls(name=tank.name, sensor1_tag=tank.sensor1_tag,
                   sensor2_tag=tank.sensor2_tag,
                   max_fill_rate=tank.max_fill_rate, tank_id=tank.id)


@dataclass
class PlantConfig:
    """Several tanks, as listed in a YAML plant file."""
    tanks: List[TankConfig] = field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: str) -> "PlantConfig":
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        tanks = []
        for i, t in enumerate(data.get("tanks") or [], start=1):
            # Missing fields surface as a config_error tick for that tank only
            tanks.append(TankConfig(
                name=str(t.get("name") or f"tank-{i}"),
                sensor1_tag=str(t.get("sensor1_tag") or ""),
                sensor2_tag=str(t.get("sensor2_tag") or ""),
                max_fill_rate=t.get("max_fill_rate"),
            ))
        return cls(tanks=tanks)


def validate_config(config: TankConfig) -> float:
    """Return Max_Fill_Rate as float, or raise ConfigurationError."""
    if not config.sensor1_tag or not config.sensor2_tag:
        raise ConfigurationError(f"{config.name}: both sensor tags are required")
    if config.max_fill_rate is None:
        raise ConfigurationError(f"{config.name}: max_fill_rate is not set")
    try:
        m = float(config.max_fill_rate)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"{config.name}: max_fill_rate {config.max_fill_rate!r} is not a number")
    if math.isnan(m) or math.isinf(m) or m <= 0:
        raise ConfigurationError(f"{config.name}: max_fill_rate must be positive, got {m}")
    return m


# ── Tick result ───────────────────────────────────────────────────

@dataclass
class TickResult:
    tank: str
    evaluated_at: datetime
    status: str                                  # ok | no_data | config_error
    sensor_1: Optional[Sample] = None
    sensor_2: Optional[Sample] = None
    classification: Optional[Classification] = None
    selection: Optional[SelectionDecision] = None
    fill_rate: Optional[FillRateResult] = None
    error: Optional[str] = None

    @property
    def fill_rate_warning(self) -> bool:
        return bool(self.fill_rate and self.fill_rate.warning)

    @property
    def active_sensor(self) -> Optional[Sensor]:
        return self.selection.active_sensor if self.selection else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tank": self.tank,
            "evaluated_at": self.evaluated_at.isoformat(),
            "status": self.status,
            "sensor_1": self.sensor_1.to_dict() if self.sensor_1 else None,
            "sensor_2": self.sensor_2.to_dict() if self.sensor_2 else None,
            "classification": self.classification.to_dict() if self.classification else None,
            "selection": self.selection.to_dict() if self.selection else None,
            "fill_rate": self.fill_rate.to_dict() if self.fill_rate else None,
            "fill_rate_warning": self.fill_rate_warning,
            "error": self.error,
        }


def evaluate_tank(historian, config: TankConfig, at: Optional[datetime] = None) -> TickResult:
    """
    Run one tick for one tank.

    Configuration problems and "both sensors without data" are reported in
    the returned TickResult status; nothing else escapes to the caller.
    """
    if at is None:
        at = datetime.now(timezone.utc)

    try:
        max_fill_rate = validate_config(config)
    except ConfigurationError as e:
        log.error("Configuration error, skipping tick: %s", e)
        return TickResult(config.name, at, "config_error", error=str(e))

    s1, s2 = sample_pair(historian, config.sensor1_tag, config.sensor2_tag, at)
    if not has_data(s1) and not has_data(s2):
        msg = f"no data for {s1.tag} ({s1.reason}) or {s2.tag} ({s2.reason})"
        log.warning("%s: %s", config.name, msg)
        return TickResult(config.name, at, "no_data", s1, s2, error=msg)

    classification = classify(s1, s2, max_fill_rate)
    selection = select_sensor(classification, s1, s2)
    active = s1 if selection.active_sensor is Sensor.SENSOR_1 else s2
    fill = check_fill_rate(active, max_fill_rate)

    log.info(
        "%s: active=%s reason=%s disagreement=%s faults=(%s, %s) noise=(%s, %s) "
        "rate=%.2f/%.2f warning=%s",
        config.name, selection.active_sensor.value, selection.reason.value,
        classification.disagreement,
        classification.sensor_1.fault.value, classification.sensor_2.fault.value,
        classification.sensor_1.noise_flag, classification.sensor_2.noise_flag,
        fill.rate, max_fill_rate, fill.warning,
    )
    return TickResult(config.name, at, "ok", s1, s2, classification, selection, fill)
