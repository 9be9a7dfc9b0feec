"""
Decides what the learner has to do about aptitude tests.

Backend records are inconsistent: the test id may be a plain hex string, a
populated object or a stringified object, so every id goes through
`normalize_object_id` before it is trusted.
"""

import logging
from typing import Any, Dict, Iterable, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .config import MAX_RESOLUTION_ATTEMPTS
from .errors import RedirectLoopError
from .ids import normalize_object_id, require_object_id
from .models import Enrollment, PendingTest

logger = logging.getLogger(__name__)


class ResolutionContext(BaseModel):
    """Resolution attempts so far; passed in and handed back on every call."""

    model_config = ConfigDict(frozen=True)

    attempts: int = 0

    def reset(self) -> "ResolutionContext":
        return ResolutionContext(attempts=0)


class SubjectNeedingTest(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: Optional[str] = None
    subject_name: str = "Subject"
    class_id: Optional[str] = None


class RequiresAssignment(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["requires-assignment"] = "requires-assignment"
    subjects: List[SubjectNeedingTest] = []


class Ready(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["ready"] = "ready"
    test_id: str
    source: Literal["pending-tests", "enrollment"] = "enrollment"


class AlreadyFailed(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["already-failed"] = "already-failed"
    test_id: str
    subject_id: Optional[str] = None


class NoActionNeeded(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["no-action-needed"] = "no-action-needed"


AssignmentDecision = Union[RequiresAssignment, Ready, AlreadyFailed, NoActionNeeded]

TERMINAL_DECISIONS = (Ready, AlreadyFailed, NoActionNeeded)


def _as_pending(entries: Iterable[Any]) -> List[PendingTest]:
    return [e if isinstance(e, PendingTest) else PendingTest.model_validate(e) for e in entries or []]


def _as_enrollments(entries: Iterable[Any]) -> List[Enrollment]:
    return [e if isinstance(e, Enrollment) else Enrollment.from_backend(e) for e in entries or []]


def _is_aptitude(test: PendingTest) -> bool:
    return test.type in (None, "", "aptitude")


def first_pending_test_id(pending_tests: Sequence[PendingTest]) -> Optional[str]:
    for test in pending_tests:
        if not _is_aptitude(test):
            continue
        test_id = normalize_object_id(test.id)
        if test_id:
            return test_id
    return None


def _decide(pending_tests: List[PendingTest], enrollments: List[Enrollment]) -> AssignmentDecision:
    test_id = first_pending_test_id(pending_tests)
    if test_id:
        return Ready(test_id=test_id, source="pending-tests")

    relevant = [e for e in enrollments if e.is_enrolled]
    incomplete = [e for e in relevant if not e.aptitude_test_completed]

    for enrollment in incomplete:
        test_id = normalize_object_id(enrollment.aptitude_test_id)
        if test_id:
            return Ready(test_id=test_id, source="enrollment")
        if enrollment.aptitude_test_id is not None:
            logger.warning(
                "Unresolvable aptitude test id on enrollment for subject %s: %r",
                enrollment.subject_id, enrollment.aptitude_test_id,
            )

    if incomplete:
        return RequiresAssignment(
            subjects=[
                SubjectNeedingTest(
                    subject_id=e.subject_id,
                    subject_name=e.subject_name or "Subject",
                    class_id=e.class_id,
                )
                for e in incomplete
            ]
        )

    failed = [e for e in relevant if not e.aptitude_test_passed]
    if failed:
        first = failed[0]
        return AlreadyFailed(
            test_id=require_object_id(first.aptitude_test_id, "aptitude test ID"),
            subject_id=first.subject_id,
        )

    return NoActionNeeded()


def resolve_assignment(
    pending_tests: Iterable[Any],
    enrollments: Iterable[Any],
    context: Optional[ResolutionContext] = None,
) -> Tuple[AssignmentDecision, ResolutionContext]:
    context = context or ResolutionContext()
    attempts = context.attempts + 1
    if attempts > MAX_RESOLUTION_ATTEMPTS:
        logger.error("Aptitude test resolution looped %d times", attempts)
        raise RedirectLoopError(attempts)

    decision = _decide(_as_pending(pending_tests), _as_enrollments(enrollments))
    logger.info("Aptitude test resolution (attempt %d): %s", attempts, decision.kind)

    if isinstance(decision, TERMINAL_DECISIONS):
        return decision, context.reset()
    return decision, ResolutionContext(attempts=attempts)


def subject_requires_test(pending_tests: Iterable[Any], subject_id: Optional[str] = None) -> bool:
    """True when a pending aptitude test blocks `subject_id` (or any subject if None)."""
    aptitude = [t for t in _as_pending(pending_tests) if _is_aptitude(t)]
    if not aptitude:
        return False
    if not subject_id:
        return True
    return any(t.subject_id == subject_id for t in aptitude)


def pending_tests_from_payload(payload: Optional[Dict[str, Any]]) -> List[Any]:
    if not payload or not payload.get("hasPendingTest", True):
        return []
    return list(payload.get("pendingTests") or [])
