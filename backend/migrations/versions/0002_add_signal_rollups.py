"""Signal rollups and the superseded flag

Revision ID: 0002_add_signal_rollups
Revises: 0001_initial
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_add_signal_rollups"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "signal_rollups",
        sa.Column("bucket_start", sa.BigInteger(), primary_key=True),
        sa.Column("grid_lat", sa.Integer(), primary_key=True),
        sa.Column("grid_lon", sa.Integer(), primary_key=True),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.Column("min_power", sa.Float(), nullable=False),
        sa.Column("avg_power", sa.Float(), nullable=False),
        sa.Column("max_power", sa.Float(), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
    )
    with op.batch_alter_table("signals") as batch_op:
        batch_op.add_column(sa.Column("rolled_up", sa.Boolean(), nullable=False, server_default=sa.false()))


def downgrade() -> None:
    with op.batch_alter_table("signals") as batch_op:
        batch_op.drop_column("rolled_up")
    op.drop_table("signal_rollups")
