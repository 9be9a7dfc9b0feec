import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict

from .api_client import BackendClient
from .errors import AptitudeError, ValidationError
from .ids import normalize_object_id
from .models import AssessmentResult

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = [
    "assessmentId",
    "classId",
    "totalScore",
    "maxPossibleScore",
    "questionResponses",
]


class SubmissionOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: AssessmentResult
    result_id: Optional[str] = None
    enrollment_status_updated: bool = False
    server_response: Dict[str, Any] = {}


def build_result_payload(result: AssessmentResult) -> Dict[str, Any]:
    return result.model_dump(by_alias=True, mode="json")


def validate_result_payload(payload: Dict[str, Any]):
    missing = [
        field for field in REQUIRED_FIELDS
        if payload.get(field) is None or payload.get(field) == ""
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


async def update_enrollment_status(
    client: BackendClient, student_id: str, result_id: str, passed: bool
) -> bool:
    """Best effort: failures are logged, never raised."""
    try:
        await client.update_test_status(student_id, result_id, passed)
    except AptitudeError as e:
        logger.warning(
            "Could not update enrollment test status for student %s (result %s): %s",
            student_id, result_id, e,
        )
        return False
    except Exception:
        # the result is already stored at this point
        logger.exception(
            "Unexpected error updating enrollment test status for student %s (result %s)",
            student_id, result_id,
        )
        return False
    logger.info("Enrollment test status updated for student %s: passed=%s", student_id, passed)
    return True


async def submit_result(
    client: BackendClient, student_id: str, result: AssessmentResult
) -> SubmissionOutcome:
    if not student_id:
        raise ValidationError("Invalid student ID provided")

    payload = build_result_payload(result)
    validate_result_payload(payload)

    logger.info(
        "Submitting result for assessment %s (student %s): %s/%s",
        result.assessment_id, student_id, result.total_score, result.max_possible_score,
    )
    response = await client.submit_assessment_result(student_id, payload)

    raw_id = response.get("_id") if isinstance(response, dict) else None
    result_id = normalize_object_id(raw_id) or (str(raw_id) if raw_id else None)
    updated = False
    if result_id:
        updated = await update_enrollment_status(client, student_id, result_id, result.is_passed)
    else:
        logger.warning("Submission response for assessment %s carried no result id", result.assessment_id)

    return SubmissionOutcome(
        result=result,
        result_id=result_id,
        enrollment_status_updated=updated,
        server_response=response if isinstance(response, dict) else {},
    )
