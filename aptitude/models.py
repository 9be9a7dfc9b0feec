from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import DEFAULT_PASSING_SCORE
from .ids import normalize_object_id

Answer = Union[str, bool]


class QuestionType(str, Enum):
    MCQ = "mcq"
    TRUE_FALSE = "true-false"
    SHORT_ANSWER = "short-answer"
    ESSAY = "essay"


# older assessment documents still use these names
_LEGACY_QUESTION_TYPES = {
    "multiple_choice": QuestionType.MCQ.value,
    "true_false": QuestionType.TRUE_FALSE.value,
    "free_response": QuestionType.SHORT_ANSWER.value,
}


class WireModel(BaseModel):
    """Base for every model exchanged with the backend (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


def _id_field(**kwargs) -> Any:
    return Field(validation_alias=AliasChoices("_id", "id"), serialization_alias="_id", **kwargs)


def _loose_id(value: Any) -> Optional[str]:
    # populated refs ({"_id": ..., "displayName": ...}) collapse to their id
    if value is None:
        return None
    resolved = normalize_object_id(value)
    return resolved if resolved is not None else str(value)


# ============ Assessment ============

class Option(WireModel):
    text: str
    is_correct: bool = False
    explanation: Optional[str] = None


class Question(WireModel):
    id: str = _id_field()
    text: str
    type: QuestionType = QuestionType.MCQ
    options: List[Option] = Field(default_factory=list)
    points: float = Field(default=1, ge=0)
    difficulty_level: str = "beginner"
    tags: List[str] = Field(default_factory=list)
    explanation: Optional[str] = None
    hints: List[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _legacy_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _LEGACY_QUESTION_TYPES.get(value, value)
        return value

    @field_validator("difficulty_level", mode="before")
    @classmethod
    def _default_difficulty(cls, value: Any) -> str:
        return value or "beginner"

    def correct_options(self) -> List[Option]:
        return [o for o in self.options if o.is_correct]


class AssessmentSettings(WireModel):
    time_limit_minutes: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("timeLimitMinutes", "timeLimit", "time_limit_minutes"),
    )
    shuffle_questions: bool = False
    show_results: bool = True
    attempts_allowed: int = 1
    is_published: bool = True


class Assessment(WireModel):
    id: str = _id_field()
    title: str
    description: Optional[str] = None
    type: Literal["aptitude", "chapter-test", "final-exam"] = "aptitude"
    class_id: Optional[str] = None
    subject_id: Optional[str] = None
    questions: List[Question] = Field(default_factory=list)
    total_points: float = 0
    passing_score: float = Field(default=DEFAULT_PASSING_SCORE, ge=0, le=100)
    settings: AssessmentSettings = Field(default_factory=AssessmentSettings)

    @field_validator("class_id", "subject_id", mode="before")
    @classmethod
    def _normalize_refs(cls, value: Any) -> Optional[str]:
        return _loose_id(value)

    @property
    def time_limit_seconds(self) -> int:
        return self.settings.time_limit_minutes * 60

    def question(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)


# ============ Enrollment / pending tests ============

class Enrollment(WireModel):
    student_id: Optional[str] = None
    class_id: Optional[str] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    is_enrolled: bool = True
    # kept raw: may be a hex string, a populated object, or a stringified object
    aptitude_test_id: Any = None
    aptitude_test_completed: bool = False
    aptitude_test_passed: bool = False

    @field_validator("student_id", "class_id", "subject_id", mode="before")
    @classmethod
    def _normalize_refs(cls, value: Any) -> Optional[str]:
        return _loose_id(value)

    @field_validator("subject_name", mode="before")
    @classmethod
    def _subject_name(cls, value: Any) -> Optional[str]:
        return value or None

    @classmethod
    def from_backend(cls, raw: Dict[str, Any]) -> "Enrollment":
        data = dict(raw)
        subject = data.get("subjectId")
        if isinstance(subject, dict) and not data.get("subjectName"):
            data["subjectName"] = subject.get("displayName")
        return cls.model_validate(data)


class PendingTest(WireModel):
    type: Optional[str] = None
    id: Any = None
    name: Optional[str] = None
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    due_date: Optional[str] = None

    @field_validator("subject_id", mode="before")
    @classmethod
    def _normalize_subject(cls, value: Any) -> Optional[str]:
        return _loose_id(value)


# ============ Results ============

class QuestionResponse(WireModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    selected_answer: Optional[Answer] = None
    is_correct: bool = False
    score: float = 0
    time_spent_seconds: int = 0
    needs_manual_grading: bool = False


class ResultMetadata(WireModel):
    model_config = ConfigDict(frozen=True)

    start_time: Optional[str] = None
    end_time: Optional[str] = None


class AssessmentResult(WireModel):
    model_config = ConfigDict(frozen=True)

    assessment_id: str
    class_id: Optional[str] = None
    subject_id: Optional[str] = None
    total_score: float
    max_possible_score: float
    percentage_score: float
    is_passed: bool
    time_spent_minutes: int = 0
    attempt_number: int = 1
    question_responses: List[QuestionResponse] = Field(default_factory=list)
    skill_scores: Dict[str, float] = Field(default_factory=dict)
    status: str = "completed"
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)

    def response_for(self, question_id: str) -> Optional[QuestionResponse]:
        return next((r for r in self.question_responses if r.question_id == question_id), None)
