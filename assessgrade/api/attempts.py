from dataclasses import asdict
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, List
from sqlalchemy.orm import Session
from assessgrade.api.deps import get_orchestrator
from assessgrade.core.auth import require_roles, get_current_user, TokenData
from assessgrade.core.database import get_db
from assessgrade.core.errors import AuthorizationError, NotFoundError, ValidationError
from assessgrade.models.orm import Attempt, AttemptStatus
from assessgrade.services import reports
from assessgrade.services.grading import GradingOrchestrator

router = APIRouter()

class AnswerIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    question_id: int = Field(alias="questionId")
    answer: Any = None

class SubmitIn(BaseModel):
    answers: List[AnswerIn] = Field(default_factory=list)


@router.post("/{attempt_id}/submit", dependencies=[Depends(require_roles("student"))])
def submit_attempt(attempt_id: int, payload: SubmitIn, user: TokenData = Depends(require_roles("student")),
                   orchestrator: GradingOrchestrator = Depends(get_orchestrator)):
    answers = {}
    for a in payload.answers:
        if a.question_id in answers: raise ValidationError(f"Question {a.question_id} answered more than once")
        answers[a.question_id] = a.answer
    report = orchestrator.submit(attempt_id, user.sub, answers)
    agg = report.aggregate
    return {
        "attemptId": report.attempt_id,
        "score": agg.total_score,
        "maxScore": agg.max_score,
        "percentage": agg.percentage,
        "status": agg.status,
        "autoGradedCount": agg.auto_graded_count,
        "manualRequiredCount": agg.manual_required_count,
        "answers": [{"questionId": r.question_id, "correct": r.is_correct, "score": r.score,
                     "gradingMethod": r.grading_method, "feedback": r.feedback} for r in report.answers],
    }


@router.get("", dependencies=[Depends(require_roles("student"))])
def my_attempts(user: TokenData = Depends(require_roles("student")), db: Session = Depends(get_db)):
    return [asdict(r) for r in reports.student_attempts(db, user.sub)]


@router.get("/{attempt_id}")
def get_attempt(attempt_id: int, user: TokenData = Depends(get_current_user), db: Session = Depends(get_db)):
    at = db.get(Attempt, attempt_id)
    if not at: raise NotFoundError(f"Attempt {attempt_id} not found")
    if not (user.is_admin() or at.student_id == user.sub or at.assessment.instructor_id == user.sub):
        raise AuthorizationError("Not allowed to view this attempt")
    completed = at.status == AttemptStatus.COMPLETED.value
    by_question = {a.question_id: a for a in at.answers}
    questions = []
    for q in at.questions:
        a = by_question.get(q.id)
        row = {"question_id": q.id, "question_order": q.question_order, "question_type": q.question_type,
               "question_text": q.question_text, "options": q.options,
               "positive_marks": q.positive_marks, "negative_marks": q.negative_marks}
        if completed:
            row["correct_answer"] = q.correct_answer
        if a:
            row.update({"answer_id": a.id, "answer": a.raw_answer, "score": a.score, "is_correct": a.is_correct,
                        "grading_method": a.grading_method, "feedback": a.feedback, "grading_notes": a.grading_notes,
                        "overridden_by": a.overridden_by})
        questions.append(row)
    return {
        "attempt_id": at.id, "assessment_id": at.assessment_id, "assessment_title": at.assessment.title,
        "student_id": at.student_id, "attempt_number": at.attempt_number, "status": at.status,
        "language": at.language, "started_at": at.started_at, "completed_at": at.completed_at,
        "score": at.score, "max_score": at.max_score, "percentage": at.percentage,
        "grading_status": at.grading_status, "auto_graded_count": at.auto_graded_count,
        "manual_required_count": at.manual_required_count, "questions": questions,
    }
