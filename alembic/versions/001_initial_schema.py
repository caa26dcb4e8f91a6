"""Initial schema with jobs, dependency edges and related entities

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enum using raw SQL with IF NOT EXISTS
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE job_state AS ENUM ('pending', 'running', 'finished', 'failed', 'terminated', 'canceled');
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # Create jobs table
    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("command", sa.String(255), nullable=False),
        sa.Column("args", sa.Text, nullable=False, server_default="[]"),
        sa.Column(
            "state",
            postgresql.ENUM(
                "pending", "running", "finished", "failed", "terminated", "canceled",
                name="job_state",
                create_type=False,
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("queue", sa.String(50), nullable=False, server_default="default"),
        sa.Column("priority", sa.SmallInteger, nullable=False, server_default="0"),
        sa.Column("execute_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_name", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("output", sa.Text, nullable=True),
        sa.Column("error_output", sa.Text, nullable=True),
        sa.Column("exit_code", sa.SmallInteger, nullable=True),
        sa.Column("max_retries", sa.SmallInteger, nullable=False, server_default="0"),
        sa.Column("original_job_id", sa.Integer, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["original_job_id"], ["jobs.id"]),
        sa.UniqueConstraint("idempotency_key", name="uq_jobs_idempotency_key"),
    )

    op.create_index("ix_jobs_command", "jobs", ["command"])
    op.create_index("ix_jobs_state", "jobs", ["state"])
    op.create_index("ix_jobs_original_job_id", "jobs", ["original_job_id"])

    # Create partial index for queue polling
    op.execute("""
        CREATE INDEX ix_jobs_pending_poll
        ON jobs (state, priority, id)
        WHERE state = 'pending'
    """)

    # Create partial index for stale heartbeat checks
    op.execute("""
        CREATE INDEX ix_jobs_running_checked
        ON jobs (state, checked_at)
        WHERE state = 'running'
    """)

    # Dependency edges: source waits for dest
    op.create_table(
        "job_dependencies",
        sa.Column("source_job_id", sa.Integer, nullable=False),
        sa.Column("dest_job_id", sa.Integer, nullable=False),
        sa.PrimaryKeyConstraint("source_job_id", "dest_job_id"),
        sa.ForeignKeyConstraint(["source_job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["dest_job_id"], ["jobs.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_job_dependencies_dest", "job_dependencies", ["dest_job_id"])

    op.create_table(
        "job_related_entities",
        sa.Column("job_id", sa.Integer, nullable=False),
        sa.Column("type_tag", sa.String(255), nullable=False),
        sa.Column("identifier", sa.String(255), nullable=False),
        sa.PrimaryKeyConstraint("job_id", "type_tag", "identifier"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_job_related_entities_ref",
        "job_related_entities",
        ["type_tag", "identifier"],
    )


def downgrade() -> None:
    op.drop_index("ix_job_related_entities_ref")
    op.drop_table("job_related_entities")

    op.drop_index("ix_job_dependencies_dest")
    op.drop_table("job_dependencies")

    # Drop indexes
    op.execute("DROP INDEX IF EXISTS ix_jobs_running_checked")
    op.execute("DROP INDEX IF EXISTS ix_jobs_pending_poll")
    op.drop_index("ix_jobs_original_job_id")
    op.drop_index("ix_jobs_state")
    op.drop_index("ix_jobs_command")

    # Drop table
    op.drop_table("jobs")

    # Drop enum
    op.execute("DROP TYPE IF EXISTS job_state")
