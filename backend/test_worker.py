"""Tests for worker: evaluation ticks persisted against an in-memory DB."""
import asyncio
import json
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from models import Base, Tank, TagSample, Evaluation
from alert_engine import AlertEvent, AlertState, CONFIRM_AFTER
from historian import SqlHistorian
import worker
from worker import evaluate_and_record, WorkerSettings, _parse_redis_url

T = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)


def _make_db() -> Session:
    eng = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    return sessionmaker(bind=eng)()


def _tank(db, max_fill_rate=20.0) -> Tank:
    t = Tank(name="T-101", sensor1_tag="LT1", sensor2_tag="LT2",
             max_fill_rate=max_fill_rate)
    db.add(t)
    db.commit()
    return t


def _history(db, tag, now_value, lag_value):
    """Two samples in the now window, two in the hour-ago window."""
    for minutes in (1, 4):
        db.add(TagSample(tag=tag, ts=T - timedelta(minutes=minutes), value=now_value))
    for minutes in (61, 64):
        db.add(TagSample(tag=tag, ts=T - timedelta(minutes=minutes), value=lag_value))
    db.commit()


def test_healthy_tick_recorded():
    db = _make_db()
    tank = _tank(db)
    _history(db, "LT1", 50.0, 45.0)
    _history(db, "LT2", 51.0, 46.0)

    result = evaluate_and_record(db, tank, SqlHistorian(db), T)
    db.commit()

    assert result.status == "ok"
    ev = db.query(Evaluation).one()
    assert ev.status == "ok"
    assert ev.active_sensor == "sensor_1"
    assert ev.reason == "both_healthy"
    assert ev.fill_rate == 5.0
    assert ev.fill_rate_warning is False
    detail = json.loads(ev.detail_json)
    assert detail["sensor_1"]["now_avg"] == 50.0
    assert detail["fired_selection"] == ["both_healthy"]
    assert db.query(AlertEvent).count() == 0


def test_stuck_sensor_tick_switches_and_alerts():
    db = _make_db()
    tank = _tank(db)
    _history(db, "LT1", 50.0, 50.0)      # flat
    _history(db, "LT2", 80.0, 50.0)      # rose 30

    for i in range(CONFIRM_AFTER):
        evaluate_and_record(db, tank, SqlHistorian(db), T + timedelta(seconds=i))
        db.commit()

    ev = db.query(Evaluation).order_by(Evaluation.id.desc()).first()
    assert ev.active_sensor == "sensor_2"
    assert ev.sensor1_fault == "stuck_by_delta"
    assert ev.fill_rate_warning is True

    event = db.query(AlertEvent).one()
    assert event.tank_id == tank.id
    assert json.loads(event.details)["active_sensor"] == "sensor_2"


def test_no_data_tick_recorded():
    db = _make_db()
    tank = _tank(db)

    result = evaluate_and_record(db, tank, SqlHistorian(db), T)
    db.commit()

    assert result.status == "no_data"
    ev = db.query(Evaluation).one()
    assert ev.status == "no_data"
    assert ev.active_sensor is None
    assert "LT1" in ev.error


def test_config_error_skips_alert_sink():
    db = _make_db()
    tank = _tank(db, max_fill_rate=None)

    result = evaluate_and_record(db, tank, SqlHistorian(db), T)
    db.commit()

    assert result.status == "config_error"
    assert db.query(Evaluation).one().status == "config_error"
    assert db.query(AlertState).count() == 0


def test_parse_redis_url():
    s = _parse_redis_url("redis://:secret@redis.local:6380/2")
    assert (s.host, s.port, s.password, s.database) == ("redis.local", 6380, "secret", 2)


def test_worker_settings():
    assert [f.__name__ for f in WorkerSettings.functions] == ["run_evaluation"]
    assert len(WorkerSettings.cron_jobs) == 1


class _ClosingHistorian(SqlHistorian):
    """SqlHistorian that records close(), standing in for an HTTP client."""

    def __init__(self, db):
        super().__init__(db)
        self.closed = 0

    def close(self):
        self.closed += 1


def test_historian_built_for_one_tick_is_closed(monkeypatch):
    db = _make_db()
    tank = _tank(db)
    _history(db, "LT1", 50.0, 45.0)
    _history(db, "LT2", 51.0, 46.0)
    built = []

    def fake_make_historian(session):
        built.append(_ClosingHistorian(session))
        return built[-1]

    monkeypatch.setattr(worker, "make_historian", fake_make_historian)
    evaluate_and_record(db, tank, at=T)
    assert len(built) == 1
    assert built[0].closed == 1


def test_caller_historian_left_open():
    db = _make_db()
    tank = _tank(db)
    h = _ClosingHistorian(db)
    evaluate_and_record(db, tank, h, T)
    assert h.closed == 0


def test_cron_tick_closes_shared_historian(monkeypatch):
    eng = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    factory = sessionmaker(bind=eng)
    db = factory()
    _tank(db)
    db.add(Tank(name="T-102", sensor1_tag="LT3", sensor2_tag="LT4", max_fill_rate=20.0))
    db.commit()
    db.close()
    built = []

    def fake_make_historian(session):
        built.append(_ClosingHistorian(session))
        return built[-1]

    monkeypatch.setattr(worker, "SessionLocal", factory)
    monkeypatch.setattr(worker, "make_historian", fake_make_historian)
    asyncio.run(worker.evaluate_all_tanks({}))

    assert len(built) == 1
    assert built[0].closed == 1
    check = factory()
    assert check.query(Evaluation).count() == 2


def test_evaluated_at_stored_as_utc():
    db = _make_db()
    tank = _tank(db)
    local = T.astimezone(timezone(timedelta(hours=2)))
    evaluate_and_record(db, tank, SqlHistorian(db), local)
    db.commit()
    assert db.query(Evaluation).one().evaluated_at == T.replace(tzinfo=None)
