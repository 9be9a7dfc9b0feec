import logging
from functools import lru_cache
from typing import Any, Dict, Literal, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from aptitude.config import LOG_LEVEL
from aptitude.draft_store import DraftStore
from aptitude.errors import (
    AptitudeError,
    NetworkError,
    RedirectLoopError,
    SessionStateError,
    ValidationError,
)
from aptitude.models import AssessmentResult, Question
from aptitude.resolver import (
    AlreadyFailed,
    NoActionNeeded,
    Ready,
    RequiresAssignment,
    ResolutionContext,
)
from aptitude.review import ResultReview, build_review
from aptitude.service import AptitudeTestService, SessionNotFound
from aptitude.session import AssessmentSession, SessionState

from auth.dependencies import get_current_student
from auth.schemas import CurrentStudent

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Aptitude Test API",
    version="1.0.0",
    description=(
        "Aptitude test sessions for the learning platform: test assignment, "
        "timed sessions with local drafts, scoring and result submission."
    ),
)


@lru_cache
def get_service() -> AptitudeTestService:
    return AptitudeTestService(DraftStore())


@app.on_event("shutdown")
async def stop_timers():
    if get_service.cache_info().currsize:
        await get_service().shutdown()


# ============ Error mapping ============

_STATUS_BY_ERROR = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (RedirectLoopError, status.HTTP_409_CONFLICT),
    (SessionStateError, status.HTTP_409_CONFLICT),
    (NetworkError, status.HTTP_502_BAD_GATEWAY),
]


@app.exception_handler(AptitudeError)
async def aptitude_error_handler(request: Request, exc: AptitudeError):
    code = next((c for cls, c in _STATUS_BY_ERROR if isinstance(exc, cls)), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def _session(service: AptitudeTestService, student: CurrentStudent, assessment_id: str) -> AssessmentSession:
    try:
        return service.get_session(student.student_id, assessment_id)
    except SessionNotFound:
        raise HTTPException(404, "No open session for this assessment")


# ============ Models ============

Decision = Union[RequiresAssignment, Ready, AlreadyFailed, NoActionNeeded]


class StatusResponse(BaseModel):
    decision: Decision = Field(discriminator="kind")
    attempts: int


class AssignResponse(BaseModel):
    test_id: str


class AccessResponse(BaseModel):
    subject_id: str
    has_access: bool


class AnswerRequest(BaseModel):
    value: Optional[Union[bool, str]] = None


class DraftRequest(BaseModel):
    text: str


class NavigateRequest(BaseModel):
    action: Literal["next", "previous", "go_to"]
    index: Optional[int] = None


class FlagResponse(BaseModel):
    question_id: str
    flagged: bool


class SubmitResponse(BaseModel):
    state: str
    result: AssessmentResult
    result_id: Optional[str] = None
    enrollment_status_updated: bool = False
    review: Optional[ResultReview] = None


def _question_view(session: AssessmentSession, question: Question) -> Dict[str, Any]:
    # never expose which option is correct while the test is running
    return {
        "id": question.id,
        "text": question.text,
        "type": question.type.value,
        "options": [o.text for o in question.options],
        "points": question.points,
        "difficulty_level": question.difficulty_level,
        "hints": question.hints,
        "answer": session.responses.get(question.id),
        "draft": session.drafts.get(question.id),
        "flagged": question.id in session.flagged,
    }


def _session_view(session: AssessmentSession) -> Dict[str, Any]:
    assessment = session.assessment
    view: Dict[str, Any] = {
        "assessment_id": assessment.id,
        "title": assessment.title,
        "description": assessment.description,
        "passing_score": assessment.passing_score,
        "time_limit_minutes": assessment.settings.time_limit_minutes,
        **session.progress(),
    }
    current = session.current_question
    if session.state is SessionState.IN_PROGRESS and current is not None:
        view["question"] = _question_view(session, current)
    return view


# ============ Assignment ============

@app.get("/aptitude/status", response_model=StatusResponse)
async def aptitude_status(
    attempts: int = 0,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    decision, context = await service.check_status(
        student.student_id, student.token, ResolutionContext(attempts=attempts)
    )
    return StatusResponse(decision=decision, attempts=context.attempts)


@app.post("/aptitude/assign", response_model=AssignResponse)
async def assign_aptitude_tests(
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    test_id = await service.assign_tests(student.student_id, student.token)
    return AssignResponse(test_id=test_id)


@app.get("/aptitude/access/{subject_id}", response_model=AccessResponse)
async def subject_access(
    subject_id: str,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    has_access = await service.has_subject_access(student.student_id, student.token, subject_id)
    return AccessResponse(subject_id=subject_id, has_access=has_access)


# ============ Sessions ============

@app.post("/sessions/{assessment_id}")
async def open_session(
    assessment_id: str,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    session = await service.open_session(student.student_id, student.token, assessment_id)
    return _session_view(session)


@app.post("/sessions/{assessment_id}/begin")
async def begin_session(
    assessment_id: str,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    _session(service, student, assessment_id)
    session = service.begin(student.student_id, assessment_id)
    return _session_view(session)


@app.get("/sessions/{assessment_id}")
async def get_session(
    assessment_id: str,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    return _session_view(_session(service, student, assessment_id))


@app.put("/sessions/{assessment_id}/answers/{question_id}")
async def put_answer(
    assessment_id: str,
    question_id: str,
    req: AnswerRequest,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    session = _session(service, student, assessment_id)
    session.answer(question_id, req.value)
    return _session_view(session)


@app.put("/sessions/{assessment_id}/drafts/{question_id}")
async def put_draft(
    assessment_id: str,
    question_id: str,
    req: DraftRequest,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    session = _session(service, student, assessment_id)
    session.set_draft(question_id, req.text)
    return _session_view(session)


@app.post("/sessions/{assessment_id}/navigate")
async def navigate(
    assessment_id: str,
    req: NavigateRequest,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    session = _session(service, student, assessment_id)
    if req.action == "next":
        session.next()
    elif req.action == "previous":
        session.previous()
    else:
        if req.index is None:
            raise HTTPException(400, "index is required for go_to")
        session.go_to(req.index)
    return _session_view(session)


@app.post("/sessions/{assessment_id}/flags/{question_id}", response_model=FlagResponse)
async def toggle_flag(
    assessment_id: str,
    question_id: str,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    session = _session(service, student, assessment_id)
    return FlagResponse(question_id=question_id, flagged=session.toggle_flag(question_id))


@app.post("/sessions/{assessment_id}/submit", response_model=SubmitResponse)
async def submit_session(
    assessment_id: str,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    _session(service, student, assessment_id)
    session = await service.submit(student.student_id, assessment_id)
    outcome = session.outcome
    assessment = session.assessment
    review = build_review(assessment, outcome.result) if assessment.settings.show_results else None
    return SubmitResponse(
        state=session.state.value,
        result=outcome.result,
        result_id=outcome.result_id,
        enrollment_status_updated=outcome.enrollment_status_updated,
        review=review,
    )


@app.delete("/sessions/{assessment_id}")
async def abandon_session(
    assessment_id: str,
    discard: bool = False,
    student: CurrentStudent = Depends(get_current_student),
    service: AptitudeTestService = Depends(get_service),
):
    await service.abandon(student.student_id, assessment_id, discard=discard)
    return {"message": "Session closed", "draft_kept": not discard}
