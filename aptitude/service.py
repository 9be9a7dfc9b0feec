import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from .api_client import BackendClient
from .config import FINISHED_SESSION_CACHE, TICK_SECONDS
from .draft_store import DraftStore
from .errors import AptitudeError, SessionStateError, ValidationError
from .ids import require_object_id
from .models import Assessment, AssessmentResult
from .resolver import (
    AssignmentDecision,
    ResolutionContext,
    pending_tests_from_payload,
    resolve_assignment,
    subject_requires_test,
)
from .result_payload import SubmissionOutcome, submit_result
from .session import AssessmentSession, run_timer, start_session

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Optional[str]], BackendClient]
SessionKey = Tuple[str, str]


class SessionNotFound(KeyError):
    pass


class AptitudeTestService:
    """
    Wires the resolver, backend client and sessions for the HTTP layer.

    One event loop drives everything: timer ticks, requests and network
    completions interleave but never run at the same time.
    """

    def __init__(
        self,
        store: DraftStore,
        client_factory: ClientFactory = lambda token: BackendClient(token=token),
        tick_seconds: Optional[float] = TICK_SECONDS,
        finished_cache: int = FINISHED_SESSION_CACHE,
    ):
        self.store = store
        self.client_factory = client_factory
        self.tick_seconds = tick_seconds
        self.finished_cache = finished_cache
        self.sessions: Dict[SessionKey, AssessmentSession] = {}
        # submitted sessions, oldest first, so results stay readable for a while
        self.finished: "OrderedDict[SessionKey, AssessmentSession]" = OrderedDict()
        self._timers: Dict[SessionKey, asyncio.Task] = {}

    # ============ assignment ============

    async def check_status(
        self, student_id: str, token: Optional[str], context: Optional[ResolutionContext] = None
    ) -> Tuple[AssignmentDecision, ResolutionContext]:
        async with self.client_factory(token) as client:
            pending = await client.get_pending_assessments(student_id)
            enrollments = await client.get_enrollments(student_id)
        return resolve_assignment(pending_tests_from_payload(pending), enrollments, context)

    async def assign_tests(self, student_id: str, token: Optional[str]) -> str:
        async with self.client_factory(token) as client:
            assigned = await client.assign_tests(student_id)
        if not assigned:
            raise ValidationError("No aptitude tests could be assigned. Please contact support.")
        first = next(iter(assigned.values())) if isinstance(assigned, dict) else assigned[0]
        test_id = require_object_id(first, "assigned aptitude test ID")
        logger.info("Assigned aptitude test %s to student %s", test_id, student_id)
        return test_id

    async def has_subject_access(self, student_id: str, token: Optional[str], subject_id: str) -> bool:
        try:
            async with self.client_factory(token) as client:
                pending = await client.get_pending_assessments(student_id)
        except AptitudeError as e:
            # a failed check must not lock the learner out of their subjects
            logger.warning("Subject access check failed for student %s: %s", student_id, e)
            return True
        return not subject_requires_test(pending_tests_from_payload(pending), subject_id)

    # ============ sessions ============

    def get_session(self, student_id: str, assessment_id: str) -> AssessmentSession:
        key = (student_id, assessment_id)
        session = self.sessions.get(key) or self.finished.get(key)
        if session is None:
            raise SessionNotFound(assessment_id)
        return session

    async def open_session(self, student_id: str, token: Optional[str], test_id: str) -> AssessmentSession:
        assessment_id = require_object_id(test_id, "assessment ID")
        key = (student_id, assessment_id)
        existing = self.sessions.get(key)
        if existing is not None:
            return existing

        async with self.client_factory(token) as client:
            raw = await client.get_assessment(assessment_id)
        assessment = Assessment.model_validate(raw)
        if not assessment.settings.is_published:
            logger.warning("Assessment %s is not published", assessment.id)

        previous = self.finished.get(key)
        attempt_number = previous.attempt_number + 1 if previous is not None else 1
        allowed = assessment.settings.attempts_allowed
        if allowed > 0 and attempt_number > allowed:
            raise SessionStateError(
                f"All {allowed} allowed attempt(s) for this assessment have been used"
            )

        session = start_session(
            assessment,
            self.store,
            self._submitter(student_id, token),
            student_id=student_id,
            listener=self._listener(key),
            attempt_number=attempt_number,
        )
        self.sessions[key] = session
        return session

    def _submitter(self, student_id: str, token: Optional[str]):
        async def submit(result: AssessmentResult) -> SubmissionOutcome:
            async with self.client_factory(token) as client:
                return await submit_result(client, student_id, result)
        return submit

    def _listener(self, key: SessionKey):
        def on_event(event: str, payload: Dict[str, Any]):
            if event == "submitted":
                self._finish(key)
        return on_event

    def _finish(self, key: SessionKey):
        session = self.sessions.pop(key, None)
        if session is None:
            return
        self.finished[key] = session
        self.finished.move_to_end(key)
        while len(self.finished) > self.finished_cache:
            self.finished.popitem(last=False)

    def begin(self, student_id: str, assessment_id: str) -> AssessmentSession:
        session = self.get_session(student_id, assessment_id)
        session.begin()
        if self.tick_seconds and session.countdown.timed:
            key = (student_id, assessment_id)
            timer = asyncio.create_task(run_timer(session, self.tick_seconds))
            timer.add_done_callback(lambda task: self._drop_timer(key, task))
            self._timers[key] = timer
        return session

    def _drop_timer(self, key: SessionKey, task: asyncio.Task):
        if self._timers.get(key) is task:
            del self._timers[key]

    async def submit(self, student_id: str, assessment_id: str) -> AssessmentSession:
        session = self.get_session(student_id, assessment_id)
        await session.submit()
        return session

    async def abandon(self, student_id: str, assessment_id: str, discard: bool = False):
        """Leave the session without submitting. The local draft stays unless discarded."""
        key = (student_id, assessment_id)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        session = self.sessions.pop(key, None)
        self.finished.pop(key, None)
        if discard:
            if session is not None:
                session.discard_draft()
            else:
                self.store.clear(student_id, assessment_id)
        logger.info("Session %s abandoned by student %s (discard=%s)", assessment_id, student_id, discard)

    async def shutdown(self):
        for timer in list(self._timers.values()):
            timer.cancel()
        self._timers.clear()
