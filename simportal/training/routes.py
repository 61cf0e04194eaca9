"""
Training HTTP routes — POST /api/training/start,      POST /api/training/runs,
                       GET  /api/training/runs,       POST /api/training/runs/{run_id}/resume,
                       GET  /api/training/current,    POST /api/training/phase,
                       PATCH /api/training/time,      PATCH /api/training/progress,
                       POST /api/training/quiz,       POST /api/training/complete,
                       GET|PATCH /api/training/state

Every handler runs the same three steps through training_caller:
  1. require_claims            → 401 on missing/invalid credential
  2. policy.decide()           → DEMO / TEST_MODE short-circuit to a synthetic payload,
                                 built from the claims alone with no store I/O
  3. validate_claims + engine  → PERSIST callers only
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Request

from simportal.auth.identity import require_claims
from simportal.auth.schemas import Identity, SessionClaims
from simportal.errors import InvalidCredential
from simportal.training import policy
from simportal.training.engine import TrainingEngine
from simportal.training.policy import PersistenceDecision
from simportal.training.schemas import (
    CompleteRequest,
    CourseInfo,
    PhaseAdvance,
    PhaseRequest,
    ProgressRequest,
    QuizRequest,
    StateRequest,
    TimeRequest,
    TrainingRun,
)

router = APIRouter(prefix="/api/training", tags=["training"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TrainingCaller:
    claims: SessionClaims
    decision: PersistenceDecision
    # Set only for PERSIST callers, after the Session Record check.
    identity: Optional[Identity] = None

    @property
    def synthetic(self) -> bool:
        return self.decision != PersistenceDecision.persist


async def training_caller(
    request: Request, claims: SessionClaims = Depends(require_claims)
) -> TrainingCaller:
    decision = policy.decide(claims.role, claims.provenance)
    if decision != PersistenceDecision.persist:
        logger.info(
            "Synthetic %s %s session_id=%s mode=%s",
            request.method, request.url.path, claims.session_id, decision.value,
        )
        return TrainingCaller(claims, decision)

    identity = await request.app.state.session_store.validate_claims(claims)
    if identity is None:
        raise InvalidCredential()
    return TrainingCaller(claims, decision, identity)


def _engine(request: Request) -> TrainingEngine:
    return request.app.state.training_engine


def _run_payload(run: TrainingRun) -> dict:
    return run.model_dump(mode="json", exclude={"quiz_data"})


# ---------------------------------------------------------------------------
# Start / resume
# ---------------------------------------------------------------------------

@router.post("/start")
async def start_training(
    request: Request,
    course: Optional[CourseInfo] = None,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    if caller.synthetic:
        return {
            "success": True,
            "run": policy.synthetic_run(caller.claims, caller.decision, course),
            "resumed": False,
            caller.decision.value: True,
        }

    run, resumed = await _engine(request).start_or_resume(caller.identity, course)
    return {"success": True, "run": _run_payload(run), "resumed": resumed}


@router.post("/runs")
async def start_new_run(
    request: Request,
    course: Optional[CourseInfo] = None,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    """Always a fresh run. Any stale active run for this learner is abandoned first."""
    if caller.synthetic:
        return {
            "success": True,
            "run": policy.synthetic_run(caller.claims, caller.decision, course),
            "is_new": True,
            caller.decision.value: True,
        }

    run = await _engine(request).start_new(caller.identity, course)
    return {"success": True, "run": _run_payload(run), "is_new": True}


@router.get("/runs")
async def list_runs(request: Request, caller: TrainingCaller = Depends(training_caller)) -> dict:
    if caller.synthetic:
        return {"success": True, "runs": [], caller.decision.value: True}

    runs = await _engine(request).list_active(caller.identity)
    return {"success": True, "runs": [_run_payload(r) for r in runs]}


@router.post("/runs/{run_id}/resume")
async def resume_run(
    run_id: str,
    request: Request,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    if caller.synthetic:
        return {
            "success": True,
            "run": policy.synthetic_run(caller.claims, caller.decision),
            "resumed": True,
            caller.decision.value: True,
        }

    run = await _engine(request).resume_run(caller.identity, run_id)
    return {"success": True, "run": _run_payload(run), "resumed": True}


@router.get("/current")
async def current_run(request: Request, caller: TrainingCaller = Depends(training_caller)) -> dict:
    if caller.synthetic:
        return {
            "success": True,
            "run": policy.synthetic_run(caller.claims, caller.decision),
            caller.decision.value: True,
        }

    run = await _engine(request).get_active(caller.identity)
    return {"success": True, "run": _run_payload(run) if run else None}


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

@router.post("/phase")
async def complete_phase(
    body: PhaseRequest,
    request: Request,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    """
    Count one phase completion.
    Returns phases_completed, next_phase, overall_progress, total_time_spent_seconds.
    Not idempotent — the client sends it once per finished phase.
    """
    if caller.synthetic:
        return policy.synthetic_phase_advance(body.phase, caller.decision)

    engine = _engine(request)
    run = await engine.require_active(caller.identity)
    run = await engine.advance_phase(
        run,
        PhaseAdvance(
            time_spent_ms=body.time_spent_ms,
            next_phase=body.next_phase,
            new_progress=body.progress,
        ),
    )
    return {
        "success": True,
        "run_id": run.id,
        "phases_completed": run.phases_completed,
        "next_phase": run.current_phase,
        "overall_progress": run.overall_progress,
        "total_score": run.total_score,
        "total_time_spent_seconds": run.total_time_spent_seconds,
    }


@router.patch("/time")
async def record_time(
    body: TimeRequest,
    request: Request,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    if caller.synthetic:
        return policy.synthetic_time(body.time_spent_ms, caller.decision)

    engine = _engine(request)
    run = await engine.require_active(caller.identity)
    run = await engine.record_time(run, body.time_spent_ms)
    return {"success": True, "total_time_spent_seconds": run.total_time_spent_seconds}


@router.patch("/progress")
async def update_progress(
    body: ProgressRequest,
    request: Request,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    if caller.synthetic:
        return policy.synthetic_progress(body.current_phase, body.overall_progress, caller.decision)

    engine = _engine(request)
    run = await engine.require_active(caller.identity)
    run = await engine.update_progress(
        run,
        current_phase=body.current_phase,
        overall_progress=body.overall_progress,
        time_spent_ms=body.time_spent_ms,
    )
    return {
        "success": True,
        "current_phase": run.current_phase,
        "overall_progress": run.overall_progress,
        "total_time_spent_seconds": run.total_time_spent_seconds,
    }


@router.post("/quiz")
async def record_quiz(
    body: QuizRequest,
    request: Request,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    if caller.synthetic:
        return policy.synthetic_quiz(body.responses, body.total_questions, caller.decision)

    engine = _engine(request)
    run = await engine.require_active(caller.identity)
    _, summary = await engine.record_quiz_completion(run, body.responses, body.total_questions)
    return {"success": True, "quiz": summary.model_dump()}


@router.post("/complete")
async def complete_training(
    request: Request,
    body: Optional[CompleteRequest] = None,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    if caller.synthetic:
        return policy.synthetic_completion(caller.claims, caller.decision, request.app.state.clock())

    body = body or CompleteRequest()
    engine = _engine(request)
    run = await engine.require_active(caller.identity)
    run = await engine.complete(
        run,
        total_time_ms=body.total_time_ms,
        phases_completed=body.phases_completed,
        quiz_results=body.quiz_results,
    )
    return {"success": True, "run": _run_payload(run)}


# ---------------------------------------------------------------------------
# Resume snapshot
# ---------------------------------------------------------------------------

@router.get("/state")
async def get_state(request: Request, caller: TrainingCaller = Depends(training_caller)) -> dict:
    """Saved UI snapshot plus phase/progress as a fallback when no snapshot exists."""
    if caller.synthetic:
        return policy.synthetic_state(caller.decision)

    run = await _engine(request).get_active(caller.identity)
    if run is None:
        return {"success": True, "state": None, "current_phase": None, "overall_progress": 0}
    return {
        "success": True,
        "run_id": run.id,
        "state": run.training_state,
        "current_phase": run.current_phase,
        "overall_progress": run.overall_progress,
    }


@router.patch("/state")
async def save_state(
    body: StateRequest,
    request: Request,
    caller: TrainingCaller = Depends(training_caller),
) -> dict:
    if caller.synthetic:
        return {"success": True, caller.decision.value: True}

    engine = _engine(request)
    run = await engine.require_active(caller.identity)
    run = await engine.save_state(run, body.state)
    return {"success": True, "state": run.training_state}
