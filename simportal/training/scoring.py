"""
scoring.py — quiz scoring and letter grade. Pure functions, no I/O.

Per-question score:
    correct   → max(100 - (attempts - 1) * 10, MIN_CORRECT_SCORE)
    incorrect → 0

Letter grade from round(total_score / (phases_completed * 100) * 100):
    ≥90 A   ≥80 B   ≥70 C   ≥60 D   else F
    phases_completed == 0 → "N/A"
"""
from typing import Mapping, Optional

from simportal.training.schemas import QuizAnswer, QuizSummary

MAX_QUESTION_SCORE = 100
ATTEMPT_PENALTY = 10
# Floor for any eventually-correct answer. Not configurable per question.
MIN_CORRECT_SCORE = 50
POINTS_PER_PHASE = 100
NO_GRADE = "N/A"

_GRADE_THRESHOLDS = ((90, "A"), (80, "B"), (70, "C"), (60, "D"))


def question_score(answer: QuizAnswer) -> int:
    if not answer.correct:
        return 0
    return max(MAX_QUESTION_SCORE - (answer.attempts - 1) * ATTEMPT_PENALTY, MIN_CORRECT_SCORE)


def summarize_quiz(
    responses: Mapping[str, QuizAnswer],
    total_questions: Optional[int] = None,
) -> QuizSummary:
    answers = list(responses.values())
    count = len(answers)
    return QuizSummary(
        total_questions=total_questions if total_questions is not None else count,
        correct_first_try=sum(1 for a in answers if a.correct and a.attempts == 1),
        total_attempts=sum(a.attempts for a in answers),
        average_time_ms=(sum(a.time_ms for a in answers) / count) if count else 0.0,
        total_score=sum(question_score(a) for a in answers),
    )


def percentage(total_score: int, phases_completed: int) -> Optional[int]:
    if phases_completed <= 0:
        return None
    raw = total_score / (phases_completed * POINTS_PER_PHASE) * 100
    # Half-up rounding; Python's round() would send 84.5 to 84.
    return int(raw + 0.5)


def letter_grade(total_score: int, phases_completed: int) -> str:
    pct = percentage(total_score, phases_completed)
    if pct is None:
        return NO_GRADE
    for threshold, grade in _GRADE_THRESHOLDS:
        if pct >= threshold:
            return grade
    return "F"
