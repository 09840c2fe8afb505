"""Create provisioning journal

Revision ID: 001_provisioning_journal
Revises:
Create Date: 2026-10-19

"""
import sqlalchemy as sa
from alembic import op

revision = "001_provisioning_journal"
down_revision = None
branch_labels = None
depends_on = None

STEPS = (
    "requested",
    "namespace_ensured",
    "seed_strategy_chosen",
    "volume_provisioned",
    "compute_launched",
    "endpoint_bound",
    "snapshot_captured",
    "ready",
)
STATUSES = ("in_progress", "completed", "failed", "abandoned")


def upgrade() -> None:
    op.create_table(
        "provisioning_records",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("project_id", sa.String(63), nullable=False),
        sa.Column("instance_name", sa.String(63), nullable=False),
        sa.Column("strategy", sa.String(32), nullable=True),
        sa.Column("step", sa.Enum(*STEPS, name="provisioning_step"), nullable=False),
        sa.Column("status", sa.Enum(*STATUSES, name="provisioning_status"), nullable=False),
        sa.Column("resources", sa.JSON, nullable=False),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_provisioning_records_project_id", "provisioning_records", ["project_id"]
    )
    op.create_index("ix_provisioning_records_status", "provisioning_records", ["status"])
    op.create_index(
        "ix_provisioning_project_instance",
        "provisioning_records",
        ["project_id", "instance_name"],
    )


def downgrade() -> None:
    op.drop_index("ix_provisioning_project_instance", table_name="provisioning_records")
    op.drop_index("ix_provisioning_records_status", table_name="provisioning_records")
    op.drop_index("ix_provisioning_records_project_id", table_name="provisioning_records")
    op.drop_table("provisioning_records")
    sa.Enum(name="provisioning_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="provisioning_step").drop(op.get_bind(), checkfirst=True)
