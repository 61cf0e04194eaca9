"""
models/training_run.py — SQLAlchemy ORM model for training progress.

Table: training_runs
One row per training run. The durable key is the learner's email, not the
login session: session_id is re-pointed on every relaunch.

learner_email is denormalised out of the learner JSON blob so the partial
unique index below can enforce "at most one active run per learner".
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from simportal.database import Base, JSONType


class TrainingRunORM(Base):
    """
    ORM model for one learner's pass through the phase sequence.

    learner:        embedded profile {user_id, email, full_name, institution, enrolled_at}
    quiz_data:      merged per-question answers {question_id: {correct, attempts, time_ms}}
    training_state: opaque UI resume snapshot (may be null)
    final_results:  written once, at completion
    """
    __tablename__ = "training_runs"
    __table_args__ = (
        Index(
            "uq_training_runs_active_learner",
            "learner_email",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    session_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Login session currently driving this run",
    )
    learner: Mapped[dict] = mapped_column(JSONType, nullable=False)
    learner_email: Mapped[str] = mapped_column(
        String(320),
        nullable=False,
        index=True,
        comment="Copy of learner.email, the reconciliation key",
    )
    course_id: Mapped[str] = mapped_column(String(255), nullable=False, default="default")
    course_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    current_phase: Mapped[str] = mapped_column(String(64), nullable=False, default="Phase A")
    overall_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    phases_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_time_spent_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quiz_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    training_state: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="active",
        comment="'active', 'completed' or 'abandoned'",
    )
    final_results: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
