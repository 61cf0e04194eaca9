"""
schemas.py — training Pydantic v2 data contracts.

Defines:
  - TrainingStatus    (active → completed | abandoned; no way back)
  - LearnerIdentity   (embedded learner profile; email is the durable key)
  - CourseInfo        (course a run belongs to)
  - QuizAnswer        (one question's outcome)
  - QuizSummary       (aggregate quiz performance + score)
  - FinalResults      (written once, at completion)
  - TrainingRun       (domain view of a training_runs row)
  - PhaseAdvance      (engine input for advance_phase)
  - *Request          (HTTP bodies for training routes)
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from simportal.clock import ensure_utc

DEFAULT_COURSE_ID = "default"
DEFAULT_COURSE_NAME = "Simulation Training"
DEFAULT_INSTITUTION = "Unknown Institution"
INITIAL_PHASE = "Phase A"


class TrainingStatus(str, Enum):
    active = "active"
    completed = "completed"
    abandoned = "abandoned"


# ---------------------------------------------------------------------------
# Learner / course
# ---------------------------------------------------------------------------

class LearnerIdentity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: str
    full_name: str
    institution: str = DEFAULT_INSTITUTION
    enrolled_at: datetime


class CourseInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    course_id: str = Field(DEFAULT_COURSE_ID, min_length=1, max_length=255)
    course_name: str = Field(DEFAULT_COURSE_NAME, min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Quiz
# ---------------------------------------------------------------------------

class QuizAnswer(BaseModel):
    """
    Outcome of one question. attempts counts every try, including the final
    one; an incorrect answer still reports how many tries were made.
    """
    model_config = ConfigDict(extra="ignore")

    correct: bool
    attempts: int = Field(1, ge=1)
    time_ms: int = Field(0, ge=0)


class QuizSummary(BaseModel):
    total_questions: int
    correct_first_try: int
    total_attempts: int
    average_time_ms: float
    total_score: int


class FinalResults(BaseModel):
    completed_at: datetime
    total_time_ms: int
    phases_completed: int
    total_score: int
    quiz_performance: QuizSummary
    overall_grade: str


# ---------------------------------------------------------------------------
# TrainingRun
# ---------------------------------------------------------------------------

class TrainingRun(BaseModel):
    id: str
    session_id: str
    learner: LearnerIdentity
    course_id: str
    course_name: str
    current_phase: str
    overall_progress: int
    phases_completed: int
    total_score: int
    total_time_spent_seconds: int
    quiz_data: Dict[str, QuizAnswer] = Field(default_factory=dict)
    training_state: Optional[Dict[str, Any]] = None
    status: TrainingStatus
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    final_results: Optional[FinalResults] = None

    @classmethod
    def from_row(cls, row) -> "TrainingRun":
        """Build from a TrainingRunORM row, normalising timestamps to UTC."""
        return cls(
            id=row.id,
            session_id=row.session_id,
            learner=row.learner,
            course_id=row.course_id,
            course_name=row.course_name,
            current_phase=row.current_phase,
            overall_progress=row.overall_progress,
            phases_completed=row.phases_completed,
            total_score=row.total_score,
            total_time_spent_seconds=row.total_time_spent_seconds,
            quiz_data=row.quiz_data or {},
            training_state=row.training_state,
            status=row.status,
            started_at=ensure_utc(row.started_at),
            updated_at=ensure_utc(row.updated_at),
            completed_at=ensure_utc(row.completed_at),
            final_results=row.final_results,
        )


class PhaseAdvance(BaseModel):
    time_spent_ms: int = 0
    next_phase: Optional[str] = None
    new_progress: Optional[int] = None


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class PhaseRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    phase: str = Field(..., min_length=1, max_length=64)
    time_spent_ms: int = Field(0, ge=0)
    next_phase: Optional[str] = Field(None, min_length=1, max_length=64)
    progress: Optional[int] = Field(None, ge=0)


class TimeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    time_spent_ms: int = Field(..., ge=0)


class ProgressRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    current_phase: Optional[str] = Field(None, min_length=1, max_length=64)
    overall_progress: Optional[int] = Field(None, ge=0)
    time_spent_ms: int = Field(0, ge=0)


class QuizRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    responses: Dict[str, QuizAnswer]
    total_questions: Optional[int] = Field(None, ge=0)


class CompleteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    total_time_ms: Optional[int] = Field(None, ge=0)
    phases_completed: Optional[int] = Field(None, ge=0)
    quiz_results: Optional[Dict[str, QuizAnswer]] = None


class StateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    state: Dict[str, Any]
