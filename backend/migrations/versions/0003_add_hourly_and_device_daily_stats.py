"""Hourly signal stats, per-device daily stats and the per-source retention index

Revision ID: 0003_add_hourly_and_device_daily_stats
Revises: 0002_add_signal_rollups
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_add_hourly_and_device_daily_stats"
down_revision = "0002_add_signal_rollups"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "signal_stats_hourly",
        sa.Column("hour_start", sa.BigInteger(), primary_key=True),
        sa.Column("total_signals", sa.Integer(), nullable=False),
        sa.Column("unique_devices", sa.Integer(), nullable=False),
        sa.Column("avg_power", sa.Float(), nullable=False),
        sa.Column("min_power", sa.Float(), nullable=False),
        sa.Column("max_power", sa.Float(), nullable=False),
        sa.Column("avg_frequency", sa.Float(), nullable=False),
        sa.Column("min_lat", sa.Float(), nullable=False),
        sa.Column("max_lat", sa.Float(), nullable=False),
        sa.Column("min_lon", sa.Float(), nullable=False),
        sa.Column("max_lon", sa.Float(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )
    op.create_table(
        "device_stats_daily",
        sa.Column("day_start", sa.BigInteger(), primary_key=True),
        sa.Column("device_id", sa.String(), primary_key=True),
        sa.Column("signal_count", sa.Integer(), nullable=False),
        sa.Column("avg_power", sa.Float(), nullable=False),
        sa.Column("freq_min", sa.Float(), nullable=False),
        sa.Column("freq_max", sa.Float(), nullable=False),
        sa.Column("hour_mask", sa.Integer(), nullable=False),
        sa.Column("avg_lat", sa.Float(), nullable=False),
        sa.Column("avg_lon", sa.Float(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_device_stats_daily_device", "device_stats_daily", ["device_id", "day_start"])
    op.create_index("ix_signals_source_timestamp", "signals", ["source", "timestamp"])


def downgrade() -> None:
    op.drop_index("ix_signals_source_timestamp", table_name="signals")
    op.drop_index("ix_device_stats_daily_device", table_name="device_stats_daily")
    op.drop_table("device_stats_daily")
    op.drop_table("signal_stats_hourly")
