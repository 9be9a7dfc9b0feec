"""
Timed test-taking session.

State machine:

    Idle -> Intro -> InProgress -> Submitting -> Results
                         ^              |
                         +--(failure)---+

Entering Submitting is the only path to the network. The state check and
the transition happen with no await in between, so the timer path and a user
click can never both dispatch a submission.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .config import LOW_TIME_WARNING_SECONDS, TICK_SECONDS
from .draft_store import ANONYMOUS_STUDENT, DraftStore
from .errors import AptitudeError, SessionStateError, ValidationError
from .models import Answer, Assessment, AssessmentResult, Question, QuestionType
from .result_payload import SubmissionOutcome
from .scoring_engine import SessionTiming, is_answered, parse_boolean, score

logger = logging.getLogger(__name__)

FREE_TEXT_TYPES = (QuestionType.SHORT_ANSWER, QuestionType.ESSAY)

SubmitFn = Callable[[AssessmentResult], Awaitable[SubmissionOutcome]]
Listener = Callable[[str, Dict[str, Any]], None]


class SessionState(str, Enum):
    IDLE = "idle"
    INTRO = "intro"
    IN_PROGRESS = "in-progress"
    SUBMITTING = "submitting"
    RESULTS = "results"


class SubmitTrigger(str, Enum):
    USER = "user"
    TIMER = "timer"


_ALLOWED = {
    SessionState.IDLE: {SessionState.INTRO},
    SessionState.INTRO: {SessionState.IN_PROGRESS},
    SessionState.IN_PROGRESS: {SessionState.SUBMITTING},
    SessionState.SUBMITTING: {SessionState.RESULTS, SessionState.IN_PROGRESS},
    SessionState.RESULTS: set(),
}


@dataclass(frozen=True)
class Tick:
    remaining: int
    warning: bool = False
    expired: bool = False


class Countdown:
    """Integer-second countdown. A total of 0 means the test is untimed."""

    def __init__(self, total_seconds: int, warning_seconds: int = LOW_TIME_WARNING_SECONDS):
        self.total_seconds = max(0, int(total_seconds))
        self.remaining = self.total_seconds
        self.warning_seconds = warning_seconds

    @property
    def timed(self) -> bool:
        return self.total_seconds > 0

    def tick(self) -> Tick:
        # at zero the countdown is spent: further ticks change nothing
        if not self.timed or self.remaining <= 0:
            return Tick(self.remaining)
        previous = self.remaining
        self.remaining -= 1
        return Tick(
            remaining=self.remaining,
            warning=previous > self.warning_seconds >= self.remaining,
            expired=self.remaining == 0,
        )

    def formatted(self) -> str:
        minutes, seconds = divmod(self.remaining, 60)
        return f"{minutes:02d}:{seconds:02d}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def order_questions(assessment: Assessment, student_id: Optional[str] = None) -> List[Question]:
    questions = list(assessment.questions)
    if assessment.settings.shuffle_questions:
        # seeded so a reload shows the same order
        random.Random(f"{assessment.id}:{student_id or ''}").shuffle(questions)
    return questions


class AssessmentSession:
    def __init__(
        self,
        assessment: Assessment,
        store: DraftStore,
        submit_fn: SubmitFn,
        student_id: Optional[str] = None,
        listener: Optional[Listener] = None,
        clock: Callable[[], datetime] = _utcnow,
        warning_seconds: int = LOW_TIME_WARNING_SECONDS,
        attempt_number: int = 1,
    ):
        self.assessment = assessment
        self.store = store
        self.student_id = student_id
        self.owner = student_id or ANONYMOUS_STUDENT
        self.attempt_number = attempt_number
        self.state = SessionState.IDLE
        self.questions = order_questions(assessment, student_id)
        self.countdown = Countdown(assessment.time_limit_seconds, warning_seconds)
        self.responses: Dict[str, Answer] = {}
        self.drafts: Dict[str, str] = {}
        self.flagged: Set[str] = set()
        self.current_index = 0
        self.started_at: Optional[datetime] = None
        self.outcome: Optional[SubmissionOutcome] = None
        self.last_error: Optional[str] = None
        self.low_time_warning = False
        self._submit_fn = submit_fn
        self._listener = listener
        self._clock = clock
        self._submission: Optional["asyncio.Future[AssessmentResult]"] = None

    # ============ state machine ============

    def _transition(self, target: SessionState):
        if target not in _ALLOWED[self.state]:
            raise SessionStateError(f"Cannot move from {self.state.value} to {target.value}")
        logger.debug("Session %s: %s -> %s", self.assessment.id, self.state.value, target.value)
        self.state = target

    def _require(self, *states: SessionState):
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise SessionStateError(f"Session is {self.state.value}; expected {allowed}")

    def _emit(self, event: str, **payload: Any):
        if self._listener is not None:
            self._listener(event, {"assessment_id": self.assessment.id, **payload})

    def present(self):
        self._transition(SessionState.INTRO)

    def begin(self):
        self._require(SessionState.INTRO)
        self._restore()
        self.started_at = self._clock()
        self._transition(SessionState.IN_PROGRESS)
        logger.info(
            "Session %s started: %d questions, %d restored answers, limit %ss",
            self.assessment.id, len(self.questions), len(self.responses), self.countdown.total_seconds,
        )

    def _restore(self):
        known = {q.id for q in self.questions}
        responses, drafts = self.store.load_answers(self.owner, self.assessment.id)
        self.responses = {qid: value for qid, value in responses.items() if qid in known}
        self.drafts = {qid: value for qid, value in drafts.items() if qid in known and isinstance(value, str)}

    # ============ answers ============

    def question(self, question_id: str) -> Question:
        for q in self.questions:
            if q.id == question_id:
                return q
        raise ValidationError(f"Question {question_id} is not part of this assessment")

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    def answer(self, question_id: str, value: Optional[Answer]):
        """Commit an answer. None clears it (true/false goes back to unset)."""
        self._require(SessionState.IN_PROGRESS)
        question = self.question(question_id)
        if value is None:
            self.responses.pop(question_id, None)
            if question.type in FREE_TEXT_TYPES:
                self.drafts.pop(question_id, None)
                self.store.save_drafts(self.owner, self.assessment.id, self.drafts)
        elif question.type is QuestionType.MCQ:
            if not isinstance(value, str) or not any(o.text == value for o in question.options):
                raise ValidationError(f"{value!r} is not an option of question {question_id}")
            self.responses[question_id] = value
        elif question.type is QuestionType.TRUE_FALSE:
            parsed = parse_boolean(value)
            if parsed is None:
                raise ValidationError(f"{value!r} is not a true/false answer")
            self.responses[question_id] = parsed
        else:
            if not isinstance(value, str):
                raise ValidationError(f"Question {question_id} expects a text answer")
            self.drafts[question_id] = value
            self.store.save_drafts(self.owner, self.assessment.id, self.drafts)
            self._commit_text(question_id, value)
        self.store.save_responses(self.owner, self.assessment.id, self.responses)

    def set_draft(self, question_id: str, text: str):
        """Record free text as it is typed; it counts once it is flushed."""
        self._require(SessionState.IN_PROGRESS)
        question = self.question(question_id)
        if question.type not in FREE_TEXT_TYPES:
            raise ValidationError(f"Question {question_id} does not take free text")
        self.drafts[question_id] = text
        self.store.save_drafts(self.owner, self.assessment.id, self.drafts)

    def _commit_text(self, question_id: str, text: str):
        if text.strip():
            self.responses[question_id] = text
        else:
            self.responses.pop(question_id, None)

    def flush_draft(self):
        question = self.current_question
        if question is None or question.type not in FREE_TEXT_TYPES:
            return
        if question.id not in self.drafts:
            return
        self._commit_text(question.id, self.drafts[question.id])
        self.store.save_responses(self.owner, self.assessment.id, self.responses)

    def is_answered(self, question_id: str) -> bool:
        return is_answered(self.question(question_id), self.responses.get(question_id))

    def toggle_flag(self, question_id: str) -> bool:
        self.question(question_id)
        if question_id in self.flagged:
            self.flagged.discard(question_id)
            return False
        self.flagged.add(question_id)
        return True

    def discard_draft(self):
        """Drop every locally saved answer for this assessment."""
        self.store.clear(self.owner, self.assessment.id)
        self.responses = {}
        self.drafts = {}

    # ============ navigation ============

    def go_to(self, index: int):
        self._require(SessionState.IN_PROGRESS)
        if not 0 <= index < len(self.questions):
            raise ValidationError(f"Question index {index} is out of range")
        self.flush_draft()
        self.current_index = index

    def next(self):
        if self.current_index < len(self.questions) - 1:
            self.go_to(self.current_index + 1)
        else:
            self._require(SessionState.IN_PROGRESS)
            self.flush_draft()

    def previous(self):
        if self.current_index > 0:
            self.go_to(self.current_index - 1)
        else:
            self._require(SessionState.IN_PROGRESS)
            self.flush_draft()

    # ============ timer ============

    def tick(self) -> bool:
        """Advance the countdown one second. True only on the tick that hits zero."""
        if self.state is not SessionState.IN_PROGRESS:
            return False
        tick = self.countdown.tick()
        if tick.warning:
            self.low_time_warning = True
            logger.info("Session %s: %ss remaining", self.assessment.id, tick.remaining)
            self._emit("low-time-warning", remaining_seconds=tick.remaining)
        if tick.expired:
            logger.info("Session %s: time is up, submitting automatically", self.assessment.id)
            self._emit("time-expired")
        return tick.expired

    async def advance(self) -> Optional[AssessmentResult]:
        if self.tick():
            return await self.submit(SubmitTrigger.TIMER)
        return None

    def timing(self, ended_at: Optional[datetime] = None) -> SessionTiming:
        return SessionTiming(
            time_limit_seconds=self.countdown.total_seconds,
            remaining_seconds=self.countdown.remaining,
            started_at=self.started_at,
            ended_at=ended_at,
        )

    # ============ submission ============

    async def submit(self, trigger: SubmitTrigger = SubmitTrigger.USER) -> AssessmentResult:
        if self.state is SessionState.RESULTS and self.outcome is not None:
            return self.outcome.result
        if self.state is SessionState.SUBMITTING and self._submission is not None:
            logger.info("Session %s: %s submit joined the one already in flight", self.assessment.id, trigger.value)
            return await asyncio.shield(self._submission)
        self._require(SessionState.IN_PROGRESS)

        self.flush_draft()
        self._transition(SessionState.SUBMITTING)
        self.last_error = None
        self._submission = asyncio.ensure_future(self._dispatch(trigger))
        return await asyncio.shield(self._submission)

    async def _dispatch(self, trigger: SubmitTrigger) -> AssessmentResult:
        result = score(
            self.assessment, dict(self.responses), self.timing(self._clock()), self.attempt_number
        )
        try:
            outcome = await self._submit_fn(result)
        except Exception as e:
            self.last_error = str(e)
            self._submission = None
            self._transition(SessionState.IN_PROGRESS)
            if isinstance(e, AptitudeError):
                logger.warning("Session %s: %s submission failed: %s", self.assessment.id, trigger.value, e)
            else:
                logger.exception("Session %s: unexpected submission failure", self.assessment.id)
            self._emit("submission-failed", error=str(e))
            raise

        self.outcome = outcome
        self._transition(SessionState.RESULTS)
        try:
            self.store.clear(self.owner, self.assessment.id)
        except OSError as e:
            # the result is already on the server at this point
            logger.warning("Session %s: could not clear local answers: %s", self.assessment.id, e)
        logger.info(
            "Session %s submitted (%s): %.1f%% passed=%s",
            self.assessment.id, trigger.value, result.percentage_score, result.is_passed,
        )
        self._emit("submitted", trigger=trigger.value, passed=result.is_passed)
        return result

    # ============ reporting ============

    def progress(self) -> Dict[str, Any]:
        answered = [q.id for q in self.questions if is_answered(q, self.responses.get(q.id))]
        current = self.current_question
        return {
            "state": self.state.value,
            "current_index": self.current_index,
            "current_question_id": current.id if current else None,
            "total_questions": len(self.questions),
            "answered": len(answered),
            "answered_question_ids": answered,
            "flagged_question_ids": [q.id for q in self.questions if q.id in self.flagged],
            "remaining_seconds": self.countdown.remaining if self.countdown.timed else None,
            "remaining_display": self.countdown.formatted() if self.countdown.timed else None,
            "low_time_warning": self.low_time_warning,
            "last_error": self.last_error,
        }


def start_session(
    assessment: Assessment,
    store: DraftStore,
    submit_fn: SubmitFn,
    **kwargs: Any,
) -> AssessmentSession:
    """Create a session for a resolved test and show its intro."""
    session = AssessmentSession(assessment, store, submit_fn, **kwargs)
    session.present()
    return session


async def run_timer(session: AssessmentSession, interval: float = TICK_SECONDS):
    """Tick once per `interval` until the session reaches its results."""
    while session.state in (SessionState.IN_PROGRESS, SessionState.SUBMITTING):
        await asyncio.sleep(interval)
        try:
            await session.advance()
        except AptitudeError as e:
            # answers are kept; the learner can submit again by hand
            logger.warning("Automatic submission for %s failed: %s", session.assessment.id, e)
