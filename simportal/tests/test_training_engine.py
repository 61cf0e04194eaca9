"""
Tests for training/engine.py against a real SQLite store.

The one-active-run-per-email invariant is checked after every scenario by
counting active rows directly.
"""
import asyncio

import pytest

from simportal.errors import NoActiveRun, StoreUnavailable
from simportal.models.training_run import TrainingRunORM
from simportal.store import StoreResult
from simportal.training.engine import TrainingEngine, display_name
from simportal.training.schemas import CourseInfo, PhaseAdvance, QuizAnswer, TrainingStatus

from conftest import down_store


async def _active_count(store, email: str) -> int:
    result = await store.count_where(
        TrainingRunORM,
        TrainingRunORM.learner_email == email,
        TrainingRunORM.status == "active",
    )
    return result.unwrap()


# ---------------------------------------------------------------------------
# start_or_resume / start_new / resume_run
# ---------------------------------------------------------------------------

class TestStartOrResume:
    @pytest.mark.asyncio
    async def test_first_start_creates_run(self, training_engine, make_identity, store):
        identity = make_identity()
        run, resumed = await training_engine.start_or_resume(
            identity, CourseInfo(course_id="PIPE101", course_name="Pipe Fitting")
        )
        assert resumed is False
        assert run.status == TrainingStatus.active
        assert run.session_id == "sess_1"
        assert run.course_id == "PIPE101"
        assert run.phases_completed == 0
        assert run.learner.full_name == "Aroha Ngata"
        assert await _active_count(store, "aroha@example.ac.nz") == 1

    @pytest.mark.asyncio
    async def test_second_call_resumes_same_run(self, training_engine, make_identity, store):
        identity = make_identity()
        first, _ = await training_engine.start_or_resume(identity)
        second, resumed = await training_engine.start_or_resume(identity)
        assert second.id == first.id
        assert resumed is True
        assert await _active_count(store, "aroha@example.ac.nz") == 1

    @pytest.mark.asyncio
    async def test_relaunch_repoints_session(self, training_engine, make_identity, store):
        first, _ = await training_engine.start_or_resume(make_identity(session_id="sess_1"))
        again, resumed = await training_engine.start_or_resume(make_identity(session_id="sess_2"))

        assert resumed is True
        assert again.id == first.id
        assert again.session_id == "sess_2"
        stored = await training_engine.get_active(make_identity(session_id="sess_3"))
        assert stored.session_id == "sess_2"
        assert await _active_count(store, "aroha@example.ac.nz") == 1

    @pytest.mark.asyncio
    async def test_email_match_is_case_insensitive(self, training_engine, make_identity):
        first, _ = await training_engine.start_or_resume(make_identity(email="Aroha@Example.ac.nz"))
        second, resumed = await training_engine.start_or_resume(make_identity(email="aroha@example.ac.nz"))
        assert resumed is True
        assert second.id == first.id

    @pytest.mark.asyncio
    async def test_concurrent_starts_converge(self, training_engine, make_identity, store):
        results = await asyncio.gather(
            training_engine.start_or_resume(make_identity(session_id="sess_tab_1")),
            training_engine.start_or_resume(make_identity(session_id="sess_tab_2")),
        )
        (run_a, resumed_a), (run_b, resumed_b) = results
        assert run_a.id == run_b.id
        assert sorted([resumed_a, resumed_b]) == [False, True]
        assert await _active_count(store, "aroha@example.ac.nz") == 1

    @pytest.mark.asyncio
    async def test_different_learners_get_separate_runs(self, training_engine, make_identity):
        a, _ = await training_engine.start_or_resume(make_identity(email="a@example.com"))
        b, _ = await training_engine.start_or_resume(make_identity(email="b@example.com"))
        assert a.id != b.id


class TestStartNew:
    @pytest.mark.asyncio
    async def test_abandons_previous_active_run(self, training_engine, make_identity, store):
        identity = make_identity()
        old, _ = await training_engine.start_or_resume(identity)
        new = await training_engine.start_new(identity)

        assert new.id != old.id
        assert await _active_count(store, "aroha@example.ac.nz") == 1
        previous = (await store.find_one(TrainingRunORM, TrainingRunORM.id == old.id)).unwrap()
        assert previous.status == "abandoned"

    @pytest.mark.asyncio
    async def test_no_previous_run(self, training_engine, make_identity, store):
        run = await training_engine.start_new(make_identity())
        assert run.status == TrainingStatus.active
        assert await _active_count(store, "aroha@example.ac.nz") == 1


class TestResumeRun:
    @pytest.mark.asyncio
    async def test_resume_own_run(self, training_engine, make_identity):
        run, _ = await training_engine.start_or_resume(make_identity(session_id="sess_1"))
        resumed = await training_engine.resume_run(make_identity(session_id="sess_9"), run.id)
        assert resumed.session_id == "sess_9"

    @pytest.mark.asyncio
    async def test_cannot_resume_someone_elses_run(self, training_engine, make_identity):
        run, _ = await training_engine.start_or_resume(make_identity(email="a@example.com"))
        with pytest.raises(NoActiveRun):
            await training_engine.resume_run(make_identity(email="b@example.com"), run.id)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

class TestAdvancePhase:
    @pytest.mark.asyncio
    async def test_counts_time_and_progress(self, training_engine, make_identity):
        run, _ = await training_engine.start_or_resume(make_identity())
        run = await training_engine.advance_phase(
            run, PhaseAdvance(time_spent_ms=61_999, next_phase="Phase B", new_progress=25)
        )
        assert run.phases_completed == 1
        assert run.total_time_spent_seconds == 61
        assert run.current_phase == "Phase B"
        assert run.overall_progress == 25
        assert run.total_score == 0

    @pytest.mark.asyncio
    async def test_defaults_and_clamping(self, training_engine, make_identity):
        run, _ = await training_engine.start_or_resume(make_identity())
        run = await training_engine.advance_phase(run, PhaseAdvance(time_spent_ms=-500, new_progress=140))
        assert run.current_phase == "Phase A"
        assert run.overall_progress == 100
        assert run.total_time_spent_seconds == 0

    @pytest.mark.asyncio
    async def test_not_idempotent(self, training_engine, make_identity):
        identity = make_identity()
        run, _ = await training_engine.start_or_resume(identity)
        await training_engine.advance_phase(run, PhaseAdvance())
        run = await training_engine.require_active(identity)
        run = await training_engine.advance_phase(run, PhaseAdvance())
        assert run.phases_completed == 2
        stored = await training_engine.require_active(identity)
        assert stored.phases_completed == 2

    @pytest.mark.asyncio
    async def test_no_active_run(self, training_engine, make_identity):
        with pytest.raises(NoActiveRun):
            await training_engine.require_active(make_identity())


class TestQuizAndCompletion:
    @pytest.mark.asyncio
    async def test_incremental_quiz_merge(self, training_engine, make_identity):
        identity = make_identity()
        run, _ = await training_engine.start_or_resume(identity)
        run, summary = await training_engine.record_quiz_completion(
            run, {"q1": QuizAnswer(correct=True, attempts=1, time_ms=1000)}
        )
        assert summary.total_score == 100
        run, summary = await training_engine.record_quiz_completion(
            run,
            {
                "q2": QuizAnswer(correct=True, attempts=3, time_ms=3000),
                "q3": QuizAnswer(correct=False, attempts=1, time_ms=2000),
            },
        )
        assert summary.total_score == 180
        assert summary.total_questions == 3
        stored = await training_engine.require_active(identity)
        assert stored.total_score == 180
        assert set(stored.quiz_data) == {"q1", "q2", "q3"}

    @pytest.mark.asyncio
    async def test_complete_writes_final_results(self, training_engine, make_identity, clock):
        identity = make_identity()
        run, _ = await training_engine.start_or_resume(identity)
        for _ in range(3):
            run = await training_engine.advance_phase(run, PhaseAdvance(time_spent_ms=60_000))
        run, _ = await training_engine.record_quiz_completion(
            run,
            {
                "q1": QuizAnswer(correct=True, attempts=1),
                "q2": QuizAnswer(correct=True, attempts=3),
                "q3": QuizAnswer(correct=True, attempts=7),
            },
        )
        clock.advance(minutes=1)
        done = await training_engine.complete(run)

        assert done.status == TrainingStatus.completed
        assert done.overall_progress == 100
        assert done.completed_at == clock()
        assert done.final_results.total_score == 230
        assert done.final_results.phases_completed == 3
        assert done.final_results.total_time_ms == 180_000
        assert done.final_results.overall_grade == "C"   # 230/300 → 77

    @pytest.mark.asyncio
    async def test_complete_with_no_phases_is_ungraded(self, training_engine, make_identity):
        run, _ = await training_engine.start_or_resume(make_identity())
        done = await training_engine.complete(run, phases_completed=0)
        assert done.final_results.overall_grade == "N/A"

    @pytest.mark.asyncio
    async def test_completed_run_is_terminal(self, training_engine, make_identity, store):
        identity = make_identity()
        run, _ = await training_engine.start_or_resume(identity)
        await training_engine.complete(run)

        with pytest.raises(NoActiveRun):
            await training_engine.advance_phase(run, PhaseAdvance())
        with pytest.raises(NoActiveRun):
            await training_engine.require_active(identity)

        fresh, resumed = await training_engine.start_or_resume(identity)
        assert resumed is False
        assert fresh.id != run.id
        assert await _active_count(store, "aroha@example.ac.nz") == 1


class TestStateSnapshot:
    @pytest.mark.asyncio
    async def test_save_state_stamps_time(self, training_engine, make_identity, clock):
        identity = make_identity()
        run, _ = await training_engine.start_or_resume(identity)
        await training_engine.save_state(run, {"mode": "guided", "task_index": 4})
        stored = await training_engine.require_active(identity)
        assert stored.training_state["task_index"] == 4
        assert stored.training_state["last_updated"] == clock().isoformat()


# ---------------------------------------------------------------------------
# Store unavailable
# ---------------------------------------------------------------------------

class TestStoreUnavailable:
    @pytest.mark.asyncio
    async def test_insert_failure_is_not_a_conflict(self, make_identity, clock):
        offline = down_store()
        offline.find_one.return_value = StoreResult(value=None)
        engine = TrainingEngine(offline, clock=clock)

        with pytest.raises(StoreUnavailable):
            await engine.start_or_resume(make_identity())

        offline.insert.assert_awaited_once()
        # A plain failure must not fall into the conflict re-read.
        assert offline.find_one.await_count == 1

    @pytest.mark.asyncio
    async def test_lookup_failure(self, make_identity, clock):
        engine = TrainingEngine(down_store(), clock=clock)
        with pytest.raises(StoreUnavailable):
            await engine.require_active(make_identity())

    @pytest.mark.asyncio
    async def test_update_failure_on_phase_advance(self, training_engine, make_identity, clock):
        run, _ = await training_engine.start_or_resume(make_identity())
        engine = TrainingEngine(down_store(), clock=clock)
        with pytest.raises(StoreUnavailable):
            await engine.advance_phase(run, PhaseAdvance(time_spent_ms=5000))


# ---------------------------------------------------------------------------
# Learner display name
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "full_name,email,expected",
    [
        ("Hemi Walker", "hemi@example.com", "Hemi Walker"),
        (None, "hemi.walker@example.com", "hemi.walker"),
        (None, "lti-8812@lti.local", "Learner"),
        ("  ", "user@lti.local", "Learner"),
    ],
)
def test_display_name(full_name, email, expected):
    assert display_name(full_name, email) == expected
