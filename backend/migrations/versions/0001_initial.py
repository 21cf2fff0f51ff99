"""Signals, devices and relationships

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "signals",
        sa.Column("signal_id", sa.String(), primary_key=True),
        sa.Column("device_id", sa.String(), nullable=True),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("altitude", sa.Float(), nullable=True),
        sa.Column("power", sa.Float(), nullable=False),
        sa.Column("frequency", sa.Float(), nullable=False),
        sa.Column("bandwidth", sa.Float(), nullable=True),
        sa.Column("modulation", sa.String(), nullable=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.Column("grid_lat", sa.Integer(), nullable=False),
        sa.Column("grid_lon", sa.Integer(), nullable=False),
    )
    op.create_index("ix_signals_device_id", "signals", ["device_id"])
    op.create_index("ix_signals_timestamp", "signals", ["timestamp"])
    op.create_index("ix_signals_grid_cell", "signals", ["grid_lat", "grid_lon", "timestamp"])

    op.create_table(
        "devices",
        sa.Column("device_id", sa.String(), primary_key=True),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("manufacturer", sa.String(), nullable=True),
        sa.Column("first_seen", sa.BigInteger(), nullable=False),
        sa.Column("last_seen", sa.BigInteger(), nullable=False),
        sa.Column("avg_power", sa.Float(), nullable=False),
        sa.Column("freq_min", sa.Float(), nullable=False),
        sa.Column("freq_max", sa.Float(), nullable=False),
        sa.Column("last_lat", sa.Float(), nullable=False),
        sa.Column("last_lon", sa.Float(), nullable=False),
        sa.Column("signal_count", sa.Integer(), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
    )
    op.create_index("ix_devices_last_seen", "devices", ["last_seen"])
    op.create_index("ix_devices_last_position", "devices", ["last_lat", "last_lon"])

    op.create_table(
        "relationships",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("device_a", sa.String(), nullable=False),
        sa.Column("device_b", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("weight", sa.Float(), nullable=False),
        sa.Column("last_observed", sa.BigInteger(), nullable=False),
        sa.UniqueConstraint("device_a", "device_b", "kind", name="uq_relationship_edge"),
    )
    op.create_index("ix_relationships_device_a", "relationships", ["device_a"])
    op.create_index("ix_relationships_device_b", "relationships", ["device_b"])


def downgrade() -> None:
    op.drop_table("relationships")
    op.drop_table("devices")
    op.drop_table("signals")
