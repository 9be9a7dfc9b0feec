"""
Deterministic grading of a submitted assessment.

`score()` is pure: no I/O and no clock reads. Timing information comes in
through `SessionTiming` so identical inputs always give an identical result.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .models import (
    Answer,
    Assessment,
    AssessmentResult,
    Question,
    QuestionResponse,
    QuestionType,
    ResultMetadata,
)

logger = logging.getLogger(__name__)

_TRUE_WORDS = {"true", "t", "yes", "1"}
_FALSE_WORDS = {"false", "f", "no", "0"}


@dataclass(frozen=True)
class SessionTiming:
    time_limit_seconds: int = 0
    remaining_seconds: int = 0
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def elapsed_seconds(self) -> int:
        if self.time_limit_seconds > 0:
            return max(0, self.time_limit_seconds - self.remaining_seconds)
        if self.started_at and self.ended_at:
            return max(0, int((self.ended_at - self.started_at).total_seconds()))
        return 0


@dataclass(frozen=True)
class Grade:
    is_correct: bool
    score: float
    needs_manual_grading: bool = False


# ============ helpers ============

def parse_boolean(value: object) -> Optional[bool]:
    """Read a true/false answer or option text; None when it is neither."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return None


def normalize_text(value: str) -> str:
    return value.strip().casefold()


def is_answered(question: Question, answer: Optional[Answer]) -> bool:
    if answer is None:
        return False
    if question.type is QuestionType.TRUE_FALSE:
        # False is a real answer, only "unset" counts as unanswered
        return parse_boolean(answer) is not None
    if isinstance(answer, bool):
        return False
    return len(answer.strip()) > 0


# ============ graders (one per question type) ============

def _grade_mcq(question: Question, answer: Answer) -> Grade:
    selected = next((o for o in question.options if o.text == answer), None)
    correct = bool(selected and selected.is_correct)
    return Grade(correct, question.points if correct else 0)


def _grade_true_false(question: Question, answer: Answer) -> Grade:
    response = parse_boolean(answer)
    correct_options = question.correct_options()
    expected = parse_boolean(correct_options[0].text) if correct_options else None
    if expected is None:
        logger.warning("True/false question %s has no parsable correct option", question.id)
        return Grade(False, 0)
    correct = response is not None and response == expected
    return Grade(correct, question.points if correct else 0)


def _grade_short_answer(question: Question, answer: Answer) -> Grade:
    given = normalize_text(str(answer))
    correct = any(normalize_text(o.text) == given for o in question.correct_options())
    return Grade(correct, question.points if correct else 0)


def _grade_essay(question: Question, answer: Answer) -> Grade:
    return Grade(False, 0, needs_manual_grading=True)


GRADERS: Dict[QuestionType, Callable[[Question, Answer], Grade]] = {
    QuestionType.MCQ: _grade_mcq,
    QuestionType.TRUE_FALSE: _grade_true_false,
    QuestionType.SHORT_ANSWER: _grade_short_answer,
    QuestionType.ESSAY: _grade_essay,
}

_missing = set(QuestionType) - set(GRADERS)
if _missing:
    raise RuntimeError(f"No grader registered for question types: {sorted(t.value for t in _missing)}")


def grade_question(question: Question, answer: Optional[Answer]) -> Grade:
    if not is_answered(question, answer):
        return Grade(False, 0, needs_manual_grading=question.type is QuestionType.ESSAY)
    return GRADERS[question.type](question, answer)


# ============ aggregation ============

def percentage(earned: float, possible: float) -> float:
    if possible <= 0:
        return 0.0
    return earned / possible * 100


def _skill_scores(graded: List[Tuple[Question, Grade]]) -> Dict[str, float]:
    totals: Dict[str, List[float]] = {}
    for question, grade in graded:
        for tag in question.tags:
            earned_possible = totals.setdefault(tag, [0.0, 0.0])
            earned_possible[0] += grade.score
            earned_possible[1] += question.points
    return {tag: percentage(earned, possible) for tag, (earned, possible) in totals.items()}


def _per_question_seconds(elapsed_seconds: int, answered_count: int) -> int:
    # Approximation: elapsed time split evenly over answered questions,
    # there is no per-question stopwatch.
    if answered_count <= 0:
        return 0
    return elapsed_seconds // answered_count


def score(
    assessment: Assessment,
    responses: Mapping[str, Answer],
    timing: Optional[SessionTiming] = None,
    attempt_number: int = 1,
) -> AssessmentResult:
    timing = timing or SessionTiming(time_limit_seconds=assessment.time_limit_seconds,
                                     remaining_seconds=assessment.time_limit_seconds)

    graded: List[Tuple[Question, Grade]] = []
    answered_ids = set()
    for question in assessment.questions:
        answer = responses.get(question.id)
        if is_answered(question, answer):
            answered_ids.add(question.id)
        graded.append((question, grade_question(question, answer)))

    elapsed = timing.elapsed_seconds
    per_question = _per_question_seconds(elapsed, len(answered_ids))

    question_responses = []
    for question, grade in graded:
        answered = question.id in answered_ids
        answer = responses.get(question.id) if answered else None
        if answered and question.type is QuestionType.TRUE_FALSE:
            answer = parse_boolean(answer)
        question_responses.append(
            QuestionResponse(
                question_id=question.id,
                selected_answer=answer,
                is_correct=grade.is_correct,
                score=grade.score,
                time_spent_seconds=per_question if answered else 0,
                needs_manual_grading=grade.needs_manual_grading,
            )
        )

    total_score = sum(grade.score for _, grade in graded)
    max_possible = sum(question.points for question, _ in graded)
    pct = percentage(total_score, max_possible)

    metadata = ResultMetadata(
        start_time=timing.started_at.isoformat() if timing.started_at else None,
        end_time=timing.ended_at.isoformat() if timing.ended_at else None,
    )

    return AssessmentResult(
        assessment_id=assessment.id,
        class_id=assessment.class_id,
        subject_id=assessment.subject_id,
        total_score=total_score,
        max_possible_score=max_possible,
        percentage_score=pct,
        is_passed=pct >= assessment.passing_score,
        time_spent_minutes=math.floor(elapsed / 60),
        attempt_number=attempt_number,
        question_responses=question_responses,
        skill_scores=_skill_scores(graded),
        status="completed",
        metadata=metadata,
    )
