"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000 UTC

Creates user_sessions (one row per login event) and training_runs (one row per
training run, keyed durably by learner_email).

uq_training_runs_active_learner is a partial unique index: at most one row with
status = 'active' per learner_email. The training engine relies on the unique
violation it raises to resolve concurrent starts.
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "user_sessions",
        sa.Column("id", sa.String(36), nullable=False, comment="UUID row identifier"),
        sa.Column(
            "session_id",
            sa.String(64),
            nullable=False,
            comment="Opaque session identifier embedded in the token",
        ),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column(
            "role",
            sa.String(16),
            nullable=False,
            comment="'learner', 'instructor' or 'administrator'",
        ),
        sa.Column(
            "session_type",
            sa.String(16),
            nullable=False,
            comment="'platform', 'staff' or 'synthetic'",
        ),
        sa.Column("is_platform_launched", sa.Boolean(), nullable=False),
        sa.Column("platform_context", postgresql.JSONB(), nullable=True),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            comment="'active', 'expired' or 'terminated'",
        ),
        sa.Column("login_count", sa.Integer(), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_user_sessions_session_id", "user_sessions", ["session_id"], unique=True)
    op.create_index("ix_user_sessions_user_id", "user_sessions", ["user_id"])
    op.create_index("ix_user_sessions_status", "user_sessions", ["status"])

    op.create_table(
        "training_runs",
        sa.Column("id", sa.String(36), nullable=False, comment="UUID row identifier"),
        sa.Column(
            "session_id",
            sa.String(64),
            nullable=False,
            comment="Login session currently driving this run",
        ),
        sa.Column("learner", postgresql.JSONB(), nullable=False),
        sa.Column(
            "learner_email",
            sa.String(320),
            nullable=False,
            comment="Copy of learner.email — reconciliation key",
        ),
        sa.Column("course_id", sa.String(255), nullable=False),
        sa.Column("course_name", sa.String(255), nullable=False),
        sa.Column("current_phase", sa.String(64), nullable=False),
        sa.Column("overall_progress", sa.Integer(), nullable=False),
        sa.Column("phases_completed", sa.Integer(), nullable=False),
        sa.Column("total_score", sa.Integer(), nullable=False),
        sa.Column("total_time_spent_seconds", sa.Integer(), nullable=False),
        sa.Column("quiz_data", postgresql.JSONB(), nullable=False),
        sa.Column("training_state", postgresql.JSONB(), nullable=True),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            comment="'active', 'completed' or 'abandoned'",
        ),
        sa.Column("final_results", postgresql.JSONB(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_training_runs_session_id", "training_runs", ["session_id"])
    op.create_index("ix_training_runs_learner_email", "training_runs", ["learner_email"])
    op.create_index(
        "uq_training_runs_active_learner",
        "training_runs",
        ["learner_email"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_training_runs_active_learner", table_name="training_runs")
    op.drop_index("ix_training_runs_learner_email", table_name="training_runs")
    op.drop_index("ix_training_runs_session_id", table_name="training_runs")
    op.drop_table("training_runs")
    op.drop_index("ix_user_sessions_status", table_name="user_sessions")
    op.drop_index("ix_user_sessions_user_id", table_name="user_sessions")
    op.drop_index("ix_user_sessions_session_id", table_name="user_sessions")
    op.drop_table("user_sessions")
