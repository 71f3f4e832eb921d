"""Tests for tank_engine: config validation and full evaluation ticks."""
from datetime import datetime, timezone

import pytest

from fault_classifier import FaultReason, Sensor
from historian import MissingDataError, WindowStats
from sensor_selector import SelectionReason
from tank_engine import (
    ConfigurationError, PlantConfig, TankConfig, evaluate_tank, validate_config,
)

T = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)


class FakeHistorian:
    """Window ending at T is 'now'; any other window is the lag window."""

    def __init__(self, readings):
        self.readings = readings          # tag -> (now_avg, now_std, lag_avg)
        self.calls = 0

    def window_statistics(self, tag, start, end):
        self.calls += 1
        if tag not in self.readings:
            raise MissingDataError(tag, "unknown tag")
        now_avg, now_std, lag_avg = self.readings[tag]
        if end == T:
            return WindowStats(now_avg, now_std, 6)
        return WindowStats(lag_avg, 0.0, 6)

    def window_average(self, tag, start, end):
        return self.window_statistics(tag, start, end).mean


def _cfg(max_fill_rate=20.0, **kw):
    return TankConfig(name="T-101", sensor1_tag="LT1", sensor2_tag="LT2",
                      max_fill_rate=max_fill_rate, **kw)


# ── Configuration ─────────────────────────────────────────────────

@pytest.mark.parametrize("bad", [None, 0, -5.0, float("nan"), float("inf"), "abc"])
def test_invalid_max_fill_rate_rejected(bad):
    with pytest.raises(ConfigurationError):
        validate_config(_cfg(bad))


def test_missing_tag_rejected():
    with pytest.raises(ConfigurationError):
        validate_config(TankConfig(name="T", sensor1_tag="LT1", sensor2_tag="",
                                   max_fill_rate=20.0))


def test_numeric_string_accepted():
    assert validate_config(_cfg("25")) == 25.0


def test_config_error_makes_no_selection():
    h = FakeHistorian({"LT1": (50.0, 0.1, 45.0), "LT2": (50.0, 0.1, 45.0)})
    r = evaluate_tank(h, _cfg(None), T)
    assert r.status == "config_error"
    assert r.selection is None
    assert r.active_sensor is None
    assert r.fill_rate_warning is False
    assert h.calls == 0


def test_from_env(monkeypatch):
    monkeypatch.setenv("TANK_NAME", "T-7")
    monkeypatch.setenv("SENSOR1_TAG", "LT7A")
    monkeypatch.setenv("SENSOR2_TAG", "LT7B")
    monkeypatch.setenv("MAX_FILL_RATE", "12.5")
    cfg = TankConfig.from_env()
    assert (cfg.name, cfg.sensor1_tag, cfg.sensor2_tag) == ("T-7", "LT7A", "LT7B")
    assert validate_config(cfg) == 12.5


def test_from_env_non_numeric_rate_is_config_error(monkeypatch):
    monkeypatch.setenv("SENSOR1_TAG", "LT7A")
    monkeypatch.setenv("SENSOR2_TAG", "LT7B")
    monkeypatch.setenv("MAX_FILL_RATE", "twenty")
    cfg = TankConfig.from_env()
    r = evaluate_tank(FakeHistorian({}), cfg, T)
    assert r.status == "config_error"
    assert "not a number" in r.error


def test_from_env_unset_rate_is_config_error(monkeypatch):
    monkeypatch.setenv("SENSOR1_TAG", "LT7A")
    monkeypatch.setenv("SENSOR2_TAG", "LT7B")
    monkeypatch.delenv("MAX_FILL_RATE", raising=False)
    assert evaluate_tank(FakeHistorian({}), TankConfig.from_env(), T).status == "config_error"


def test_plant_from_yaml(tmp_path):
    path = tmp_path / "plant.yaml"
    path.write_text(
        "tanks:\n"
        "  - name: T-101\n"
        "    sensor1_tag: LT101A\n"
        "    sensor2_tag: LT101B\n"
        "    max_fill_rate: 20\n"
        "  - name: T-102\n"
        "    sensor1_tag: LT102A\n"
        "    sensor2_tag: LT102B\n"
    )
    plant = PlantConfig.from_yaml(str(path))
    assert [t.name for t in plant.tanks] == ["T-101", "T-102"]
    assert plant.tanks[0].max_fill_rate == 20
    assert plant.tanks[1].max_fill_rate is None


def test_plant_yaml_bad_entry_only_fails_that_tank(tmp_path):
    path = tmp_path / "plant.yaml"
    path.write_text(
        "tanks:\n"
        "  - name: T-101\n"
        "    sensor1_tag: LT1\n"
        "    max_fill_rate: 20\n"
        "  - name: T-102\n"
        "    sensor1_tag: LT1\n"
        "    sensor2_tag: LT2\n"
        "    max_fill_rate: 20\n"
        "  - sensor1_tag: LT1\n"
        "    sensor2_tag: LT2\n"
        "    max_fill_rate: fast\n"
    )
    plant = PlantConfig.from_yaml(str(path))
    assert [t.name for t in plant.tanks] == ["T-101", "T-102", "tank-3"]

    h = FakeHistorian({"LT1": (50.0, 0.2, 45.0), "LT2": (51.0, 0.3, 46.0)})
    statuses = [evaluate_tank(h, t, T).status for t in plant.tanks]
    assert statuses == ["config_error", "ok", "config_error"]


# ── Ticks ─────────────────────────────────────────────────────────

def test_healthy_pair_uses_sensor_1():
    h = FakeHistorian({"LT1": (50.0, 0.2, 45.0), "LT2": (51.0, 0.3, 46.0)})
    r = evaluate_tank(h, _cfg(), T)
    assert r.status == "ok"
    assert r.active_sensor is Sensor.SENSOR_1
    assert r.selection.reason is SelectionReason.BOTH_HEALTHY
    assert r.fill_rate.rate == pytest.approx(5.0)
    assert r.fill_rate_warning is False


def test_fill_rate_from_active_sensor():
    """80 now, 50 an hour ago, max 25: warning."""
    h = FakeHistorian({"LT1": (80.0, 0.2, 50.0), "LT2": (79.0, 0.2, 49.0)})
    r = evaluate_tank(h, _cfg(25.0), T)
    assert r.fill_rate.rate == pytest.approx(30.0)
    assert r.fill_rate_warning is True


def test_stuck_sensor_1_switches_and_rate_follows():
    """Sensor 1 flat at 50, sensor 2 rose 30 in an hour: use sensor 2's rate."""
    h = FakeHistorian({"LT1": (50.0, 0.2, 50.0), "LT2": (80.0, 0.2, 50.0)})
    r = evaluate_tank(h, _cfg(20.0), T)
    assert r.classification.sensor_1.fault is FaultReason.STUCK_BY_DELTA
    assert r.active_sensor is Sensor.SENSOR_2
    assert r.fill_rate.rate == pytest.approx(30.0)
    assert r.fill_rate_warning is True


def test_absent_sensor_1_forces_sensor_2():
    h = FakeHistorian({"LT1": (0.0, 0.0, 0.0), "LT2": (40.0, 0.2, 38.0)})
    r = evaluate_tank(h, _cfg(), T)
    assert r.active_sensor is Sensor.SENSOR_2


def test_one_sensor_without_data():
    h = FakeHistorian({"LT2": (40.0, 0.2, 38.0)})
    r = evaluate_tank(h, _cfg(), T)
    assert r.status == "ok"
    assert r.active_sensor is Sensor.SENSOR_2
    assert r.selection.reason is SelectionReason.SENSOR_1_NO_DATA
    assert r.classification.disagreement is False


def test_both_sensors_without_data():
    r = evaluate_tank(FakeHistorian({}), _cfg(), T)
    assert r.status == "no_data"
    assert r.selection is None
    assert r.fill_rate_warning is False
    assert "LT1" in r.error and "LT2" in r.error


def test_tick_is_deterministic():
    h = FakeHistorian({"LT1": (99.0, 0.5, 99.0), "LT2": (40.0, 1.5, 30.0)})
    a = evaluate_tank(h, _cfg(), T)
    b = evaluate_tank(h, _cfg(), T)
    assert a.to_dict() == b.to_dict()


def test_to_dict_is_plain():
    h = FakeHistorian({"LT1": (50.0, 0.2, 45.0), "LT2": (51.0, 0.3, 46.0)})
    d = evaluate_tank(h, _cfg(), T).to_dict()
    assert d["status"] == "ok"
    assert d["evaluated_at"] == T.isoformat()
    assert d["selection"]["active_sensor"] == "sensor_1"
    assert d["sensor_1"]["lag_avg"] == 45.0
