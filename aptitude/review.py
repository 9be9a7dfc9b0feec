from typing import Dict, List, Optional

from pydantic import BaseModel

from .config import DIFFICULTY_LEVELS
from .models import Answer, Assessment, AssessmentResult


class QuestionFeedback(BaseModel):
    question_id: str
    text: str
    is_correct: bool
    selected_answer: Optional[Answer] = None
    correct_answer: Optional[str] = None
    explanation: str
    needs_manual_grading: bool = False


class LevelAccuracy(BaseModel):
    level: str
    correct: int
    total: int
    accuracy: float


class ResultReview(BaseModel):
    is_passed: bool
    percentage_score: float
    passing_score: float
    message: str
    correct_answers: int
    total_questions: int
    accuracy: float
    skill_scores: Dict[str, float]
    levels: List[LevelAccuracy]
    questions: List[QuestionFeedback]


def feedback_message(percentage_score: float, passing_score: float, is_passed: bool) -> str:
    if is_passed:
        if percentage_score >= 90:
            return "Excellent! You've demonstrated exceptional understanding of the subject matter."
        if percentage_score >= 80:
            return "Great job! You show strong knowledge of the material."
        return "Good work! You've successfully passed the aptitude test."
    if percentage_score >= passing_score - 10:
        return "You were close to passing. Consider reviewing the material and trying again."
    return (
        "You need more preparation in this subject area. "
        "Review the material thoroughly before retaking the test."
    )


def build_review(assessment: Assessment, result: AssessmentResult) -> ResultReview:
    feedback = []
    for question in assessment.questions:
        response = result.response_for(question.id)
        correct = question.correct_options()
        correct_option = correct[0] if correct else None
        explanation = (
            question.explanation
            or (correct_option.explanation if correct_option else None)
            or "No explanation available."
        )
        feedback.append(
            QuestionFeedback(
                question_id=question.id,
                text=question.text,
                is_correct=bool(response and response.is_correct),
                selected_answer=response.selected_answer if response else None,
                correct_answer=correct_option.text if correct_option else None,
                explanation=explanation,
                needs_manual_grading=bool(response and response.needs_manual_grading),
            )
        )

    correct_count = sum(1 for f in feedback if f.is_correct)
    total = len(feedback)

    levels = []
    for level in DIFFICULTY_LEVELS:
        ids = {q.id for q in assessment.questions if q.difficulty_level == level}
        level_correct = sum(1 for f in feedback if f.question_id in ids and f.is_correct)
        levels.append(
            LevelAccuracy(
                level=level,
                correct=level_correct,
                total=len(ids),
                accuracy=level_correct / len(ids) * 100 if ids else 0.0,
            )
        )

    return ResultReview(
        is_passed=result.is_passed,
        percentage_score=result.percentage_score,
        passing_score=assessment.passing_score,
        message=feedback_message(result.percentage_score, assessment.passing_score, result.is_passed),
        correct_answers=correct_count,
        total_questions=total,
        accuracy=correct_count / total * 100 if total else 0.0,
        skill_scores=dict(result.skill_scores),
        levels=levels,
        questions=feedback,
    )
