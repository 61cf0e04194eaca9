"""
policy.py — Role/Provenance Policy and the synthetic payloads it routes to.

decide(role, provenance) runs before any TrainingEngine call:
  synthetic provenance (stand-alone / demo login)  → DEMO       (tag "demo": true)
  instructor / administrator                        → TEST_MODE  (tag "test_mode": true)
  platform-launched learner                         → PERSIST    (full engine path)

Synthetic payloads are built purely from the request and the caller's claims.
They allocate no run ids in the store and never touch training_runs.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from simportal.auth.schemas import STAFF_ROLES, Provenance, Role, SessionClaims
from simportal.training.schemas import CourseInfo, QuizAnswer
from simportal.training.scoring import NO_GRADE, summarize_quiz

MOCK_PHASE_ORDER = ("Phase A", "Phase B", "Phase C", "Phase D")


class PersistenceDecision(str, Enum):
    persist = "persist"
    demo = "demo"
    test_mode = "test_mode"


def decide(role: Role, provenance: Provenance) -> PersistenceDecision:
    if provenance == Provenance.synthetic:
        return PersistenceDecision.demo
    if role in STAFF_ROLES:
        return PersistenceDecision.test_mode
    return PersistenceDecision.persist


def should_persist(role: Role, provenance: Provenance) -> bool:
    return decide(role, provenance) == PersistenceDecision.persist


# ---------------------------------------------------------------------------
# Synthetic payloads
# ---------------------------------------------------------------------------

def _tag(decision: PersistenceDecision) -> Dict[str, bool]:
    if decision == PersistenceDecision.persist:
        raise ValueError("Synthetic payload requested for a persisting caller")
    return {decision.value: True}


def synthetic_run_id(decision: PersistenceDecision, session_id: str) -> str:
    return f"{decision.value}_{session_id}"


def synthetic_run(
    claims: SessionClaims,
    decision: PersistenceDecision,
    course: Optional[CourseInfo] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    course = course or CourseInfo()
    started = (now or claims.issued_at).isoformat()
    return {
        "id": synthetic_run_id(decision, claims.session_id),
        "session_id": claims.session_id,
        "course_id": course.course_id,
        "course_name": course.course_name,
        "current_phase": MOCK_PHASE_ORDER[0],
        "overall_progress": 0,
        "phases_completed": 0,
        "total_score": 0,
        "total_time_spent_seconds": 0,
        "status": "active",
        "started_at": started,
        **_tag(decision),
    }


def synthetic_phase_advance(phase: str, decision: PersistenceDecision) -> Dict[str, Any]:
    """
    Mock phase sequence driven only by the reported phase name.
    Unknown names behave as "before the first phase".
    """
    index = MOCK_PHASE_ORDER.index(phase) if phase in MOCK_PHASE_ORDER else -1
    completed = index + 1
    next_phase = MOCK_PHASE_ORDER[index + 1] if index < len(MOCK_PHASE_ORDER) - 1 else phase
    return {
        "success": True,
        "phases_completed": completed,
        "next_phase": next_phase,
        "overall_progress": min(int(completed / len(MOCK_PHASE_ORDER) * 100), 100),
        "total_score": 0,
        "total_time_spent_seconds": 0,
        **_tag(decision),
    }


def synthetic_time(time_spent_ms: int, decision: PersistenceDecision) -> Dict[str, Any]:
    return {
        "success": True,
        "total_time_spent_seconds": max(0, time_spent_ms) // 1000,
        **_tag(decision),
    }


def synthetic_progress(
    current_phase: Optional[str],
    overall_progress: Optional[int],
    decision: PersistenceDecision,
) -> Dict[str, Any]:
    return {
        "success": True,
        "current_phase": current_phase or MOCK_PHASE_ORDER[0],
        "overall_progress": min(overall_progress or 0, 100),
        **_tag(decision),
    }


def synthetic_quiz(
    responses: Mapping[str, QuizAnswer],
    total_questions: Optional[int],
    decision: PersistenceDecision,
) -> Dict[str, Any]:
    summary = summarize_quiz(responses, total_questions)
    return {"success": True, "quiz": summary.model_dump(), **_tag(decision)}


def synthetic_completion(
    claims: SessionClaims,
    decision: PersistenceDecision,
    now: datetime,
) -> Dict[str, Any]:
    run = synthetic_run(claims, decision, now=now)
    run.update(
        status="completed",
        overall_progress=100,
        completed_at=now.isoformat(),
        final_results={
            "completed_at": now.isoformat(),
            "total_time_ms": 0,
            "phases_completed": 0,
            "total_score": 0,
            "quiz_performance": summarize_quiz({}).model_dump(),
            "overall_grade": NO_GRADE,
        },
    )
    return {"success": True, "run": run, **_tag(decision)}


def synthetic_state(decision: PersistenceDecision) -> Dict[str, Any]:
    return {
        "success": True,
        "state": None,
        "current_phase": MOCK_PHASE_ORDER[0],
        "overall_progress": 0,
        **_tag(decision),
    }
