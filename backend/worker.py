"""
worker.py — Arq background worker for LevelGuard evaluation ticks.

Start with:  cd backend && arq worker.WorkerSettings
"""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from arq import cron
from arq.connections import RedisSettings
from dotenv import load_dotenv
from sqlalchemy.orm import Session

load_dotenv()

from models import SessionLocal, Tank, Evaluation, utc_naive
import alert_engine
from historian import make_historian
from tank_engine import TankConfig, TickResult, evaluate_tank

log = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")
EVAL_CRON_MINUTES = int(os.getenv("EVAL_CRON_MINUTES", "1"))


def _parse_redis_url(url: str) -> RedisSettings:
    """Convert a redis:// URL into arq RedisSettings."""
    parsed = urlparse(url)
    return RedisSettings(
        host=parsed.hostname or "localhost",
        port=parsed.port or 6379,
        password=parsed.password,
        database=int(parsed.path.lstrip("/") or 0),
    )


def record_evaluation(db: Session, tank: Tank, result: TickResult) -> Evaluation:
    """Persist one TickResult and feed its warning to the alarm sink."""
    c = result.classification
    detail = {
        "sensor_1": result.sensor_1.to_dict() if result.sensor_1 else None,
        "sensor_2": result.sensor_2.to_dict() if result.sensor_2 else None,
        "fired_faults": list(c.fired) if c else [],
        "fired_selection": list(result.selection.fired) if result.selection else [],
        "ambiguities": list(c.ambiguities) if c else [],
    }
    ev = Evaluation(
        tank_id=tank.id,
        evaluated_at=utc_naive(result.evaluated_at),
        status=result.status,
        active_sensor=result.active_sensor.value if result.active_sensor else None,
        reason=result.selection.reason.value if result.selection else None,
        disagreement=bool(c and c.disagreement),
        sensor1_noise=bool(c and c.sensor_1.noise_flag),
        sensor2_noise=bool(c and c.sensor_2.noise_flag),
        sensor1_fault=c.sensor_1.fault.value if c else "none",
        sensor2_fault=c.sensor_2.fault.value if c else "none",
        fill_rate=result.fill_rate.rate if result.fill_rate else None,
        fill_rate_warning=result.fill_rate_warning,
        detail_json=json.dumps(detail, default=str),
        error=result.error,
    )
    db.add(ev)

    # Config errors make no selection and emit nothing to the sink
    if result.status != "config_error":
        alert_engine.update(
            db, tank.id,
            warning=result.fill_rate_warning,
            rate=result.fill_rate.rate if result.fill_rate else None,
            max_fill_rate=tank.max_fill_rate,
            details={
                "active_sensor": ev.active_sensor,
                "reason": ev.reason,
                "status": result.status,
            },
            now=result.evaluated_at.isoformat(),
        )
    return ev


def close_historian(historian) -> None:
    """Release the historian's connection pool, if it holds one."""
    close = getattr(historian, "close", None)
    if close is not None:
        close()


def evaluate_and_record(db: Session, tank: Tank, historian=None,
                        at: Optional[datetime] = None) -> TickResult:
    """Run one tick and record it. A historian built here is closed here."""
    owned = historian is None
    if owned:
        historian = make_historian(db)
    try:
        result = evaluate_tank(historian, TankConfig.from_model(tank), at)
    finally:
        if owned:
            close_historian(historian)
    record_evaluation(db, tank, result)
    return result


async def run_evaluation(ctx: dict, tank_id: int, at_iso: Optional[str] = None) -> Dict[str, Any]:
    """Evaluate one tank now (or at at_iso) and store the result."""
    db = SessionLocal()
    try:
        tank = db.query(Tank).filter_by(id=tank_id).first()
        if not tank:
            log.error("Tank %s not found", tank_id)
            return {"status": "failed", "error": "Tank not found"}
        at = datetime.fromisoformat(at_iso) if at_iso else None
        result = evaluate_and_record(db, tank, at=at)
        db.commit()
        return result.to_dict()
    except Exception:
        log.exception("run_evaluation failed for tank %s", tank_id)
        db.rollback()
        return {"status": "failed", "error": "evaluation failed"}
    finally:
        db.close()


async def evaluate_all_tanks(ctx: dict) -> None:
    """Cron: one tick for every enabled tank, all at the same evaluation time."""
    at = datetime.now(timezone.utc)
    db = SessionLocal()
    try:
        tanks = db.query(Tank).filter_by(enabled=True).all()
        historian = make_historian(db)
        try:
            for tank in tanks:
                try:
                    evaluate_and_record(db, tank, historian, at)
                    db.commit()
                except Exception:
                    log.exception("Tick failed for tank %s (%s)", tank.id, tank.name)
                    db.rollback()
        finally:
            close_historian(historian)
        log.info("Tick %s: evaluated %d tanks", at.isoformat(), len(tanks))
    finally:
        db.close()


class WorkerSettings:
    functions = [run_evaluation]
    cron_jobs = [cron(evaluate_all_tanks,
                      minute=set(range(0, 60, max(1, EVAL_CRON_MINUTES))),
                      second=0, run_at_startup=False)]
    max_jobs = 4
    job_timeout = 120
    redis_settings = _parse_redis_url(REDIS_URL)
