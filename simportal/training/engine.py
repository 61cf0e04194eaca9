"""
engine.py — Training Progress Engine.

State machine per learner email (the durable key; session ids change on every
launch):

    absent ──start──▶ active ──complete──▶ completed
                        │
                        └──reconciliation (start_new)──▶ abandoned

At most one active run per email. The partial unique index
uq_training_runs_active_learner enforces it in the store; the engine turns the
resulting conflict into "re-read and adopt the winner" instead of an error.

Every mutation is a conditional update on (id, status='active'). If the run
left the active state in between, the update touches 0 rows and the caller
gets NoActiveRun.

Only the Role/Provenance Policy's PERSIST callers reach this class.
"""
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

from simportal.auth.schemas import Identity
from simportal.clock import Clock, utcnow
from simportal.errors import NoActiveRun, StoreUnavailable
from simportal.models.training_run import TrainingRunORM
from simportal.store import KeyedStore
from simportal.training.schemas import (
    DEFAULT_INSTITUTION,
    INITIAL_PHASE,
    CourseInfo,
    FinalResults,
    LearnerIdentity,
    PhaseAdvance,
    QuizAnswer,
    QuizSummary,
    TrainingRun,
    TrainingStatus,
)
from simportal.training.scoring import letter_grade, summarize_quiz

logger = logging.getLogger(__name__)

LTI_EMAIL_DOMAIN = "@lti.local"
DEFAULT_DISPLAY_NAME = "Learner"


# ---------------------------------------------------------------------------
# Learner identity helpers
# ---------------------------------------------------------------------------

def learner_key(identity: Identity) -> str:
    email = (identity.email or "").strip().lower()
    return email or f"lti-{identity.user_id}{LTI_EMAIL_DOMAIN}"


def display_name(full_name: Optional[str], email: str) -> str:
    if full_name and full_name.strip():
        return full_name.strip()
    local, _, domain = email.partition("@")
    if local and not local.startswith("lti-") and f"@{domain}" != LTI_EMAIL_DOMAIN:
        return local
    return DEFAULT_DISPLAY_NAME


class TrainingEngine:
    def __init__(self, store: KeyedStore, clock: Clock = utcnow) -> None:
        self._store = store
        self._clock = clock

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def _find_active_row(self, email: str) -> Optional[TrainingRunORM]:
        result = await self._store.find_one(
            TrainingRunORM,
            TrainingRunORM.learner_email == email,
            TrainingRunORM.status == TrainingStatus.active.value,
            order_by=[TrainingRunORM.started_at.desc()],
        )
        return result.unwrap()

    async def get_active(self, identity: Identity) -> Optional[TrainingRun]:
        row = await self._find_active_row(learner_key(identity))
        return TrainingRun.from_row(row) if row is not None else None

    async def require_active(self, identity: Identity) -> TrainingRun:
        run = await self.get_active(identity)
        if run is None:
            logger.info(
                "No active run session_id=%s email=%s", identity.session_id, learner_key(identity)
            )
            raise NoActiveRun()
        return run

    async def list_active(self, identity: Identity) -> List[TrainingRun]:
        result = await self._store.find_all(
            TrainingRunORM,
            TrainingRunORM.learner_email == learner_key(identity),
            TrainingRunORM.status == TrainingStatus.active.value,
            order_by=[TrainingRunORM.started_at.desc()],
        )
        return [TrainingRun.from_row(row) for row in result.unwrap()]

    # ------------------------------------------------------------------
    # start / resume
    # ------------------------------------------------------------------

    def learner_for(self, identity: Identity) -> LearnerIdentity:
        email = learner_key(identity)
        context = identity.context
        return LearnerIdentity(
            user_id=identity.user_id,
            email=email,
            full_name=display_name(context.full_name if context else None, email),
            institution=(context.institution if context else None) or DEFAULT_INSTITUTION,
            enrolled_at=self._clock(),
        )

    def _new_row(self, identity: Identity, course: CourseInfo) -> TrainingRunORM:
        now = self._clock()
        learner = self.learner_for(identity)
        return TrainingRunORM(
            id=str(uuid.uuid4()),
            session_id=identity.session_id,
            learner=learner.model_dump(mode="json"),
            learner_email=learner.email,
            course_id=course.course_id,
            course_name=course.course_name,
            current_phase=INITIAL_PHASE,
            overall_progress=0,
            phases_completed=0,
            total_score=0,
            total_time_spent_seconds=0,
            quiz_data={},
            training_state=None,
            status=TrainingStatus.active.value,
            started_at=now,
            updated_at=now,
        )

    async def _repoint(self, run: TrainingRun, session_id: str) -> TrainingRun:
        if run.session_id == session_id:
            return run
        logger.info(
            "Re-pointing run run_id=%s from session_id=%s to session_id=%s",
            run.id, run.session_id, session_id,
        )
        return await self._update_active(
            run, {"session_id": session_id, "updated_at": self._clock()}
        )

    async def _insert_or_adopt(
        self, identity: Identity, course: CourseInfo
    ) -> Tuple[TrainingRun, bool]:
        """Insert a new active run; on a uniqueness conflict adopt the concurrent winner."""
        inserted = await self._store.insert(self._new_row(identity, course))
        if inserted.ok:
            run = TrainingRun.from_row(inserted.value)
            logger.info(
                "Training run created run_id=%s session_id=%s email=%s",
                run.id, identity.session_id, run.learner.email,
            )
            return run, False
        if not inserted.conflict:
            logger.error(
                "Training run insert failed session_id=%s email=%s",
                identity.session_id, learner_key(identity),
            )
            raise StoreUnavailable() from inserted.error

        winner = await self.get_active(identity)
        if winner is None:
            logger.error(
                "Insert conflicted but no active run found email=%s", learner_key(identity)
            )
            raise StoreUnavailable()
        logger.info("Concurrent start resolved to run_id=%s", winner.id)
        return await self._repoint(winner, identity.session_id), True

    async def start_or_resume(
        self, identity: Identity, course: Optional[CourseInfo] = None
    ) -> Tuple[TrainingRun, bool]:
        """Return (run, resumed). Looks up by email, never by session id."""
        existing = await self.get_active(identity)
        if existing is not None:
            return await self._repoint(existing, identity.session_id), True
        return await self._insert_or_adopt(identity, course or CourseInfo())

    async def start_new(
        self, identity: Identity, course: Optional[CourseInfo] = None
    ) -> TrainingRun:
        """
        Reconciliation path: abandon every active run for this email, then insert.
        """
        email = learner_key(identity)
        abandoned = await self._store.update_where(
            TrainingRunORM,
            [
                TrainingRunORM.learner_email == email,
                TrainingRunORM.status == TrainingStatus.active.value,
            ],
            {"status": TrainingStatus.abandoned.value, "updated_at": self._clock()},
        )
        if not abandoned.ok:
            # The unique index still prevents a second active row.
            logger.warning("Could not abandon stale runs email=%s", email)
        elif abandoned.value:
            logger.info("Abandoned %d stale active run(s) email=%s", abandoned.value, email)

        run, _ = await self._insert_or_adopt(identity, course or CourseInfo())
        return run

    async def resume_run(self, identity: Identity, run_id: str) -> TrainingRun:
        """Re-point a specific active run, provided it belongs to the caller."""
        result = await self._store.find_one(
            TrainingRunORM,
            TrainingRunORM.id == run_id,
            TrainingRunORM.learner_email == learner_key(identity),
            TrainingRunORM.status == TrainingStatus.active.value,
        )
        row = result.unwrap()
        if row is None:
            raise NoActiveRun()
        return await self._repoint(TrainingRun.from_row(row), identity.session_id)

    # ------------------------------------------------------------------
    # mutations
    # ------------------------------------------------------------------

    async def _update_active(self, run: TrainingRun, patch: Dict[str, Any]) -> TrainingRun:
        changed = await self._store.update_where(
            TrainingRunORM,
            [
                TrainingRunORM.id == run.id,
                TrainingRunORM.status == TrainingStatus.active.value,
            ],
            patch,
        )
        if changed.unwrap() == 0:
            logger.info("Run no longer active run_id=%s", run.id)
            raise NoActiveRun()
        return TrainingRun.model_validate({**run.model_dump(), **patch})

    async def advance_phase(self, run: TrainingRun, advance: PhaseAdvance) -> TrainingRun:
        """
        Count one completed phase. Not idempotent: each call is one completion.
        Score is untouched here; it belongs to the quiz path.
        """
        patch = {
            "phases_completed": run.phases_completed + 1,
            "total_time_spent_seconds": run.total_time_spent_seconds
            + max(0, advance.time_spent_ms) // 1000,
            "current_phase": advance.next_phase or run.current_phase,
            "overall_progress": (
                min(advance.new_progress, 100)
                if advance.new_progress is not None
                else run.overall_progress
            ),
            "updated_at": self._clock(),
        }
        updated = await self._update_active(run, patch)
        logger.info(
            "Phase completed run_id=%s phases_completed=%d next_phase=%s",
            run.id, updated.phases_completed, updated.current_phase,
        )
        return updated

    async def record_time(self, run: TrainingRun, time_spent_ms: int) -> TrainingRun:
        return await self._update_active(
            run,
            {
                "total_time_spent_seconds": run.total_time_spent_seconds
                + max(0, time_spent_ms) // 1000,
                "updated_at": self._clock(),
            },
        )

    async def update_progress(
        self,
        run: TrainingRun,
        current_phase: Optional[str] = None,
        overall_progress: Optional[int] = None,
        time_spent_ms: int = 0,
    ) -> TrainingRun:
        """Move the phase marker/progress without counting a phase completion."""
        patch: Dict[str, Any] = {"updated_at": self._clock()}
        if current_phase:
            patch["current_phase"] = current_phase
        if overall_progress is not None:
            patch["overall_progress"] = min(overall_progress, 100)
        if time_spent_ms > 0:
            patch["total_time_spent_seconds"] = run.total_time_spent_seconds + time_spent_ms // 1000
        return await self._update_active(run, patch)

    async def record_quiz_completion(
        self,
        run: TrainingRun,
        responses: Mapping[str, QuizAnswer],
        total_questions: Optional[int] = None,
    ) -> Tuple[TrainingRun, QuizSummary]:
        """Merge incoming answers over the stored ones and rescore the whole map."""
        merged = {**run.quiz_data, **responses}
        summary = summarize_quiz(merged, total_questions)
        updated = await self._update_active(
            run,
            {
                "quiz_data": {qid: a.model_dump() for qid, a in merged.items()},
                "total_score": summary.total_score,
                "updated_at": self._clock(),
            },
        )
        logger.info(
            "Quiz recorded run_id=%s questions=%d total_score=%d",
            run.id, len(merged), summary.total_score,
        )
        return updated, summary

    async def complete(
        self,
        run: TrainingRun,
        total_time_ms: Optional[int] = None,
        phases_completed: Optional[int] = None,
        quiz_results: Optional[Mapping[str, QuizAnswer]] = None,
    ) -> TrainingRun:
        now = self._clock()
        merged = {**run.quiz_data, **(quiz_results or {})}
        summary = summarize_quiz(merged)
        phases = phases_completed if phases_completed is not None else run.phases_completed
        final = FinalResults(
            completed_at=now,
            total_time_ms=(
                total_time_ms if total_time_ms is not None else run.total_time_spent_seconds * 1000
            ),
            phases_completed=phases,
            total_score=summary.total_score,
            quiz_performance=summary,
            overall_grade=letter_grade(summary.total_score, phases),
        )
        updated = await self._update_active(
            run,
            {
                "status": TrainingStatus.completed.value,
                "overall_progress": 100,
                "phases_completed": phases,
                "quiz_data": {qid: a.model_dump() for qid, a in merged.items()},
                "total_score": summary.total_score,
                "final_results": final.model_dump(mode="json"),
                "completed_at": now,
                "updated_at": now,
            },
        )
        logger.info(
            "Training completed run_id=%s total_score=%d grade=%s",
            run.id, final.total_score, final.overall_grade,
        )
        return updated

    # ------------------------------------------------------------------
    # resume snapshot
    # ------------------------------------------------------------------

    async def save_state(self, run: TrainingRun, state: Mapping[str, Any]) -> TrainingRun:
        snapshot = {**state, "last_updated": self._clock().isoformat()}
        return await self._update_active(
            run, {"training_state": snapshot, "updated_at": self._clock()}
        )
