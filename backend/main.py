"""
main.py — LevelGuard API

Configure tanks → historize tag samples → evaluate → read selections,
fill-rate warnings and alerts. Evaluation ticks normally come from the
arq cron in worker.py; the API can also trigger one on demand.
"""
from __future__ import annotations
import json, logging, os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import FastAPI, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from arq.connections import create_pool
from models import (
    DATABASE_URL, init_db, get_db, Tank, TagSample, Evaluation, require_tank,
    utc_naive,
)
import alert_engine  # ensures AlertState/AlertEvent register with Base before init_db()
from alert_engine import AlertEvent, AlertState
from tank_engine import TankConfig, ConfigurationError, validate_config

log = logging.getLogger(__name__)


def run_migrations() -> None:
    """Bootstrap / migrate the database on startup.

    * SQLite (dev/tests): uses init_db() (create_all).
    * Postgres (production): runs Alembic upgrade head.
    """
    if DATABASE_URL.startswith("sqlite"):
        init_db()
        return

    from alembic import command
    from alembic.config import Config

    cfg = Config(os.path.join(os.path.dirname(__file__), "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", DATABASE_URL)
    log.info("Running Alembic upgrade head")
    command.upgrade(cfg, "head")


@asynccontextmanager
async def lifespan(app):
    run_migrations()
    # Arq Redis pool for enqueuing on-demand evaluations
    try:
        from worker import REDIS_URL
        from arq.connections import RedisSettings
        from urllib.parse import urlparse
        parsed = urlparse(REDIS_URL)
        settings = RedisSettings(
            host=parsed.hostname or "localhost",
            port=parsed.port or 6379,
            password=parsed.password,
            database=int(parsed.path.lstrip("/") or 0),
            conn_timeout=2,
            conn_retries=0,
        )
        app.state.arq_pool = await create_pool(settings)
        log.info("Arq Redis pool connected")
    except Exception as e:
        log.warning("Redis not available (%s), evaluations will run in-process", e)
        app.state.arq_pool = None
    yield
    if app.state.arq_pool:
        await app.state.arq_pool.close()

app = FastAPI(title="LevelGuard API", version="1.0.0", lifespan=lifespan)

# ── Request models ────────────────────────────────────────────────

class TankCreate(BaseModel):
    name: str
    sensor1_tag: str
    sensor2_tag: str
    max_fill_rate: Optional[float] = None
    enabled: bool = True

class TankUpdate(BaseModel):
    sensor1_tag: Optional[str] = None
    sensor2_tag: Optional[str] = None
    max_fill_rate: Optional[float] = None
    enabled: Optional[bool] = None

class SampleIn(BaseModel):
    ts: datetime
    value: float

class SampleBatch(BaseModel):
    samples: List[SampleIn] = Field(default_factory=list)

class EvaluateReq(BaseModel):
    at: Optional[datetime] = None


def _tank_dict(t: Tank) -> dict:
    return {"id": t.id, "name": t.name, "sensor1_tag": t.sensor1_tag,
            "sensor2_tag": t.sensor2_tag, "max_fill_rate": t.max_fill_rate,
            "enabled": bool(t.enabled)}


def _check_config(t: Tank) -> None:
    try:
        validate_config(TankConfig.from_model(t))
    except ConfigurationError as e:
        raise HTTPException(422, str(e))

# ── Tanks ─────────────────────────────────────────────────────────

@app.get("/api/tanks")
def list_tanks(db=Depends(get_db)):
    out = []
    for t in db.query(Tank).order_by(Tank.id).all():
        last = (db.query(Evaluation).filter_by(tank_id=t.id)
                .order_by(Evaluation.evaluated_at.desc()).first())
        d = _tank_dict(t)
        d["last_evaluation"] = last.evaluated_at.isoformat() if last else None
        d["active_sensor"] = last.active_sensor if last else None
        d["fill_rate_warning"] = bool(last.fill_rate_warning) if last else False
        out.append(d)
    return out

@app.post("/api/tanks", status_code=201)
def create_tank(req: TankCreate, db=Depends(get_db)):
    if db.query(Tank).filter_by(name=req.name).first():
        raise HTTPException(400, "Tank name taken")
    t = Tank(name=req.name, sensor1_tag=req.sensor1_tag, sensor2_tag=req.sensor2_tag,
             max_fill_rate=req.max_fill_rate, enabled=req.enabled)
    _check_config(t)
    db.add(t)
    db.commit()
    db.refresh(t)
    return _tank_dict(t)

@app.get("/api/tanks/{tid}")
def get_tank(tid: int, db=Depends(get_db)):
    return _tank_dict(require_tank(db, tid))

@app.put("/api/tanks/{tid}")
def update_tank(tid: int, req: TankUpdate, db=Depends(get_db)):
    t = require_tank(db, tid)
    for key, value in req.model_dump(exclude_unset=True).items():
        setattr(t, key, value)
    _check_config(t)
    db.commit()
    return _tank_dict(t)

@app.delete("/api/tanks/{tid}")
def delete_tank(tid: int, db=Depends(get_db)):
    t = require_tank(db, tid)
    db.query(Evaluation).filter_by(tank_id=tid).delete()
    db.query(AlertEvent).filter_by(tank_id=tid).delete()
    db.query(AlertState).filter_by(tank_id=tid).delete()
    db.delete(t)
    db.commit()
    return {"status": "ok"}

# ── Tag history (SQL historian) ───────────────────────────────────

@app.post("/api/tags/{tag}/samples")
def ingest_samples(tag: str, req: SampleBatch, db=Depends(get_db)):
    db.add_all([TagSample(tag=tag, ts=utc_naive(s.ts), value=s.value) for s in req.samples])
    db.commit()
    return {"tag": tag, "received": len(req.samples)}

# ── Evaluation ────────────────────────────────────────────────────

@app.post("/api/tanks/{tid}/evaluate", status_code=202)
async def evaluate(tid: int, request: Request, req: Optional[EvaluateReq] = None,
                   db=Depends(get_db)):
    t = require_tank(db, tid)
    at_iso = req.at.isoformat() if req and req.at else None

    arq_pool = request.app.state.arq_pool
    if arq_pool:
        await arq_pool.enqueue_job("run_evaluation", t.id, at_iso)
        return {"tank_id": t.id, "status": "queued"}

    # Fallback: run in-process on the request's session
    from worker import evaluate_and_record
    at = req.at if req and req.at else datetime.now(timezone.utc)
    result = evaluate_and_record(db, t, at=at)
    db.commit()
    return result.to_dict()

@app.get("/api/tanks/{tid}/evaluations")
def get_evaluations(tid: int, limit: int = Query(50, le=500), db=Depends(get_db)):
    require_tank(db, tid)
    rows = (db.query(Evaluation).filter_by(tank_id=tid)
            .order_by(Evaluation.evaluated_at.desc()).limit(limit).all())
    return [{
        "id": e.id, "evaluated_at": e.evaluated_at.isoformat(), "status": e.status,
        "active_sensor": e.active_sensor, "reason": e.reason,
        "disagreement": bool(e.disagreement),
        "sensor1": {"noise": bool(e.sensor1_noise), "fault": e.sensor1_fault},
        "sensor2": {"noise": bool(e.sensor2_noise), "fault": e.sensor2_fault},
        "fill_rate": e.fill_rate, "fill_rate_warning": bool(e.fill_rate_warning),
        "detail": json.loads(e.detail_json) if e.detail_json else {},
        "error": e.error,
    } for e in rows]

# ── Alerts ────────────────────────────────────────────────────────

@app.get("/api/tanks/{tid}/alerts")
def get_alerts(tid: int, limit: int = Query(50, le=200), db=Depends(get_db)):
    require_tank(db, tid)
    events = (db.query(AlertEvent).filter_by(tank_id=tid)
              .order_by(AlertEvent.id.desc()).limit(limit).all())
    return [{
        "id": e.id, "tank_id": e.tank_id, "alert_key": e.alert_key, "kind": e.kind,
        "title": e.title, "message": e.message, "rate": e.rate,
        "created_at": e.created_at, "details": e.details,
    } for e in events]

@app.get("/api/tanks/{tid}/alerts/active")
def get_active_alerts(tid: int, db=Depends(get_db)):
    require_tank(db, tid)
    states = db.query(AlertState).filter_by(tank_id=tid, active=True).all()
    return [{
        "alert_key": s.alert_key, "tank_id": s.tank_id,
        "present_streak": s.present_streak, "absent_streak": s.absent_streak,
        "confirmed": bool(s.confirmed),
        "last_alerted_at": s.last_alerted_at, "last_seen_at": s.last_seen_at,
    } for s in states]

# ── Health ─────────────────────────────────────────────────────────

@app.get("/api/health")
def health():
    return {"status": "ok", "version": "1.0.0"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
