"""
models.py — Postgres-ready with SQLite fallback.

SQLite for local dev, Postgres in production via DATABASE_URL env var.
Holds tank configuration, the tag history read by the SQL historian,
and the evaluation audit trail.
"""
import os
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine, Column, Integer, String, Float, Text, DateTime,
    Boolean, ForeignKey, Index,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker, relationship
from fastapi import HTTPException


# Postgres in production, SQLite locally.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///levelguard.db")

# Postgres on some PaaS uses postgres:// but SQLAlchemy needs postgresql://
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

engine = create_engine(DATABASE_URL, echo=False,
                       pool_pre_ping=True)  # reconnect on stale connections
SessionLocal = sessionmaker(bind=engine)


class Base(DeclarativeBase):
    pass


class Tank(Base):
    __tablename__ = "tanks"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    sensor1_tag = Column(String(255), nullable=False)
    sensor2_tag = Column(String(255), nullable=False)
    max_fill_rate = Column(Float, nullable=True)   # % of span per hour
    enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    evaluations = relationship("Evaluation", back_populates="tank")


class TagSample(Base):
    """Historized value of one tag. Read back only through aggregate queries."""
    __tablename__ = "tag_samples"
    id = Column(Integer, primary_key=True, autoincrement=True)
    tag = Column(String(255), nullable=False)
    ts = Column(DateTime, nullable=False)
    value = Column(Float, nullable=False)
    __table_args__ = (Index("ix_tag_samples_tag_ts", "tag", "ts"),)


class Evaluation(Base):
    __tablename__ = "evaluations"
    id = Column(Integer, primary_key=True, autoincrement=True)
    tank_id = Column(Integer, ForeignKey("tanks.id"), nullable=False)
    evaluated_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False)      # ok | no_data | config_error
    active_sensor = Column(String(20), nullable=True)
    reason = Column(String(64), nullable=True)
    disagreement = Column(Boolean, default=False)
    sensor1_noise = Column(Boolean, default=False)
    sensor2_noise = Column(Boolean, default=False)
    sensor1_fault = Column(String(32), default="none")
    sensor2_fault = Column(String(32), default="none")
    fill_rate = Column(Float, nullable=True)
    fill_rate_warning = Column(Boolean, default=False)
    detail_json = Column(Text, default="{}")         # samples, ambiguities, fired rules
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    tank = relationship("Tank", back_populates="evaluations")
    __table_args__ = (Index("ix_eval_tank_time", "tank_id", "evaluated_at"),)


def utc_naive(dt: datetime) -> datetime:
    """Tag timestamps are stored as naive UTC; naive input is taken as UTC."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def init_db():
    Base.metadata.create_all(engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_tank(db, tid: int) -> Tank:
    """Return Tank or raise 404."""
    t = db.query(Tank).filter_by(id=tid).first()
    if not t:
        raise HTTPException(404, "Tank not found")
    return t
