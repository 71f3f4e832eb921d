"""Baseline — create all application tables.

Revision ID: 0001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── tanks ────────────────────────────────────────────────────
    op.create_table(
        "tanks",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("sensor1_tag", sa.String(255), nullable=False),
        sa.Column("sensor2_tag", sa.String(255), nullable=False),
        sa.Column("max_fill_rate", sa.Float, nullable=True),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime),
    )

    # ── tag_samples ──────────────────────────────────────────────
    op.create_table(
        "tag_samples",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tag", sa.String(255), nullable=False),
        sa.Column("ts", sa.DateTime, nullable=False),
        sa.Column("value", sa.Float, nullable=False),
    )
    op.create_index("ix_tag_samples_tag_ts", "tag_samples", ["tag", "ts"])

    # ── evaluations ──────────────────────────────────────────────
    op.create_table(
        "evaluations",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tank_id", sa.Integer, sa.ForeignKey("tanks.id"), nullable=False),
        sa.Column("evaluated_at", sa.DateTime, nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("active_sensor", sa.String(20), nullable=True),
        sa.Column("reason", sa.String(64), nullable=True),
        sa.Column("disagreement", sa.Boolean, server_default=sa.false()),
        sa.Column("sensor1_noise", sa.Boolean, server_default=sa.false()),
        sa.Column("sensor2_noise", sa.Boolean, server_default=sa.false()),
        sa.Column("sensor1_fault", sa.String(32), server_default="none"),
        sa.Column("sensor2_fault", sa.String(32), server_default="none"),
        sa.Column("fill_rate", sa.Float, nullable=True),
        sa.Column("fill_rate_warning", sa.Boolean, server_default=sa.false()),
        sa.Column("detail_json", sa.Text, server_default="{}"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime),
    )
    op.create_index("ix_eval_tank_time", "evaluations", ["tank_id", "evaluated_at"])

    # ── alert_state ──────────────────────────────────────────────
    op.create_table(
        "alert_state",
        sa.Column("alert_key", sa.String(128), primary_key=True),
        sa.Column("tank_id", sa.Integer, sa.ForeignKey("tanks.id"), nullable=False),
        sa.Column("present_streak", sa.Integer, server_default="0"),
        sa.Column("absent_streak", sa.Integer, server_default="0"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("confirmed", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("last_alerted_at", sa.String(64), server_default=""),
        sa.Column("last_seen_at", sa.String(64), server_default=""),
    )
    op.create_index("ix_alert_state_tank_id", "alert_state", ["tank_id"])

    # ── alert_events ─────────────────────────────────────────────
    op.create_table(
        "alert_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("tank_id", sa.Integer, sa.ForeignKey("tanks.id"), nullable=False),
        sa.Column("alert_key", sa.String(128), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False, server_default="fill_rate"),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("message", sa.Text, server_default=""),
        sa.Column("rate", sa.Float, nullable=True),
        sa.Column("details", sa.Text, server_default="{}"),
        sa.Column("created_at", sa.String(64), nullable=False),
    )
    op.create_index("ix_alert_evt_tank", "alert_events", ["tank_id", "created_at"])


def downgrade() -> None:
    op.drop_table("alert_events")
    op.drop_table("alert_state")
    op.drop_table("evaluations")
    op.drop_table("tag_samples")
    op.drop_table("tanks")
