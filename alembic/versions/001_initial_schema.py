"""Initial schema with jobs, job queue and distributed lock tables

Revision ID: 001
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.BigInteger, autoincrement=True, nullable=False),
        sa.Column("invocation_data", sa.JSON, nullable=False),
        sa.Column("state_name", sa.String(20), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime,
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("expire_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_jobs_state_name", "jobs", ["state_name"])
    op.create_index("ix_jobs_expire_at", "jobs", ["expire_at"])

    op.create_table(
        "job_queue",
        sa.Column("id", sa.BigInteger, autoincrement=True, nullable=False),
        sa.Column("job_id", sa.BigInteger, nullable=False),
        sa.Column("queue", sa.String(50), nullable=False),
        sa.Column("fetched_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["job_id"],
            ["jobs.id"],
            name="fk_job_queue_job_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_job_queue_job_id", "job_queue", ["job_id"])
    # Index for dequeue scans
    op.create_index("ix_job_queue_queue_fetched_at", "job_queue", ["queue", "fetched_at"])

    # The primary key is what makes lock acquisition exclusive
    op.create_table(
        "distributed_locks",
        sa.Column("id", sa.String(100), nullable=False),
        sa.Column("acquired_at", sa.DateTime, nullable=False),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("distributed_locks")

    op.drop_index("ix_job_queue_queue_fetched_at", table_name="job_queue")
    op.drop_index("ix_job_queue_job_id", table_name="job_queue")
    op.drop_table("job_queue")

    op.drop_index("ix_jobs_expire_at", table_name="jobs")
    op.drop_index("ix_jobs_state_name", table_name="jobs")
    op.drop_table("jobs")
