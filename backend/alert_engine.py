"""
alert_engine.py — Fill-rate alarm sink.

Receives the fill_rate_warning boolean for every tank on every tick and
records an alert event when a warning is confirmed (present for N
consecutive ticks). Delivery (email, alarm banner) reads alert_events
and is outside this service.

Tables:
  alert_state  — per-tank streak counters and active/confirmed flags
  alert_events — immutable log of fired alerts
"""
from __future__ import annotations
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, String, Text, Index
from sqlalchemy.orm import Session

from models import Base

log = logging.getLogger(__name__)

# ── Thresholds ────────────────────────────────────────────────
CONFIRM_AFTER = int(os.getenv("FILL_ALERT_CONFIRM_AFTER", "1"))    # consecutive warning ticks
CLEAR_AFTER = int(os.getenv("FILL_ALERT_CLEAR_AFTER", "3"))        # consecutive clear ticks
COOLDOWN_SECONDS = int(os.getenv("FILL_ALERT_COOLDOWN_SECONDS", "1800"))

ALERT_KIND = "fill_rate"


# ── ORM models ────────────────────────────────────────────────

class AlertState(Base):
    __tablename__ = "alert_state"
    alert_key = Column(String(128), primary_key=True)
    tank_id = Column(Integer, ForeignKey("tanks.id"), nullable=False, index=True)
    present_streak = Column(Integer, default=0)
    absent_streak = Column(Integer, default=0)
    active = Column(Boolean, default=False, nullable=False)
    confirmed = Column(Boolean, default=False, nullable=False)
    last_alerted_at = Column(String(64), default="")
    last_seen_at = Column(String(64), default="")


class AlertEvent(Base):
    __tablename__ = "alert_events"
    id = Column(Integer, primary_key=True, autoincrement=True)
    tank_id = Column(Integer, ForeignKey("tanks.id"), nullable=False)
    alert_key = Column(String(128), nullable=False)
    kind = Column(String(32), nullable=False, default=ALERT_KIND)
    title = Column(String(512), nullable=False)
    message = Column(Text, default="")
    rate = Column(Float, nullable=True)
    details = Column(Text, default="{}")
    created_at = Column(String(64), nullable=False)
    __table_args__ = (Index("ix_alert_evt_tank", "tank_id", "created_at"),)


# ── Helpers ────────────────────────────────────────────────────

def parse_iso(s: str) -> datetime:
    """Parse ISO 8601 timestamp, handling 'Z' suffix for UTC."""
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def _alert_key(tank_id: int) -> str:
    return f"{tank_id}:{ALERT_KIND}"


# ── Core engine ───────────────────────────────────────────────

def update(
    db: Session,
    tank_id: int,
    warning: bool,
    rate: Optional[float] = None,
    max_fill_rate: Optional[float] = None,
    details: Optional[Dict[str, Any]] = None,
    now: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Feed one tick's fill-rate warning into the sink.

    Args:
        db: SQLAlchemy session (caller manages commit/rollback).
        tank_id: Tank ID (matches tanks.id).
        warning: fill_rate_warning for this tick.
        rate, max_fill_rate: context stored with a fired event.
        details: extra JSON-able context (active sensor, reason, ...).
        now: ISO timestamp for this tick (default: utcnow).

    Returns:
        The alert dict if one fired this tick, else None.
    """
    if now is None:
        now = datetime.now(timezone.utc).isoformat()

    key = _alert_key(tank_id)
    state = db.query(AlertState).filter_by(alert_key=key).first()

    if not warning:
        if state is None:
            return None
        state.absent_streak += 1
        state.present_streak = 0
        if state.absent_streak >= CLEAR_AFTER:
            state.active = False
            state.confirmed = False
        return None

    if state is None:
        state = AlertState(
            alert_key=key,
            tank_id=tank_id,
            present_streak=0,
            absent_streak=0,
            active=False,
            confirmed=False,
            last_alerted_at="",
            last_seen_at="",
        )
        db.add(state)

    state.present_streak += 1
    state.absent_streak = 0
    state.active = True
    state.last_seen_at = now

    if state.present_streak < CONFIRM_AFTER or state.confirmed:
        return None

    # Cooldown: confirm silently if the last alert was too recent
    if state.last_alerted_at:
        try:
            last = parse_iso(state.last_alerted_at)
            current = parse_iso(now)
            if (current - last).total_seconds() < COOLDOWN_SECONDS:
                state.confirmed = True
                return None
        except (ValueError, TypeError):
            log.warning("Bad last_alerted_at %r on %s, ignoring cooldown",
                        state.last_alerted_at, key)

    state.confirmed = True
    state.last_alerted_at = now

    title = f"Tank {tank_id}: fill rate above maximum"
    if rate is not None and max_fill_rate is not None:
        message = f"Level rose {rate:.1f} in the last hour (max {max_fill_rate:.1f})"
    else:
        message = "Level rising faster than the configured maximum"

    db.add(AlertEvent(
        tank_id=tank_id,
        alert_key=key,
        kind=ALERT_KIND,
        title=title,
        message=message,
        rate=rate,
        details=json.dumps(details or {}, default=str),
        created_at=now,
    ))
    return {
        "alert_key": key,
        "tank_id": tank_id,
        "kind": ALERT_KIND,
        "title": title,
        "message": message,
        "rate": rate,
    }
