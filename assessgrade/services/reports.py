"""
Grade reports: completed attempts of one assessment for its instructor, and a
student's own attempt history.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from assessgrade.core.errors import NotFoundError
from assessgrade.models.orm import Assessment, Attempt, AttemptStatus, GeneratedQuestion, StudentAnswer
from assessgrade.services.grading import check_owner


@dataclass
class AttemptSummary:
    attempt_id: int
    assessment_id: int
    assessment_title: str
    student_id: str
    attempt_number: int
    status: str
    started_at: datetime
    completed_at: Optional[datetime]
    time_taken: Optional[float]
    total_questions: int
    correct_answers: int
    score: Optional[float]
    max_score: Optional[float]
    percentage: Optional[float]
    grading_status: Optional[str]
    auto_graded_count: int
    manual_required_count: int


def _seconds_between(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    if (start.tzinfo is None) != (end.tzinfo is None):
        # both are stored as UTC; some drivers hand them back naive
        start, end = start.replace(tzinfo=None), end.replace(tzinfo=None)
    return round((end - start).total_seconds(), 1)


def _counts(db: Session, column, *where) -> Dict[int, int]:
    rows = db.execute(select(column, func.count()).where(*where).group_by(column)).all()
    return {attempt_id: n for attempt_id, n in rows}


def _summarize(db: Session, attempts: Sequence[Attempt]) -> List[AttemptSummary]:
    ids = [at.id for at in attempts]
    if not ids:
        return []
    questions = _counts(db, GeneratedQuestion.attempt_id, GeneratedQuestion.attempt_id.in_(ids))
    correct = _counts(db, StudentAnswer.attempt_id, StudentAnswer.attempt_id.in_(ids), StudentAnswer.is_correct.is_(True))
    return [AttemptSummary(
        attempt_id=at.id, assessment_id=at.assessment_id, assessment_title=at.assessment.title,
        student_id=at.student_id, attempt_number=at.attempt_number, status=at.status,
        started_at=at.started_at, completed_at=at.completed_at,
        time_taken=_seconds_between(at.started_at, at.completed_at),
        total_questions=questions.get(at.id, 0), correct_answers=correct.get(at.id, 0),
        score=at.score, max_score=at.max_score, percentage=at.percentage, grading_status=at.grading_status,
        auto_graded_count=at.auto_graded_count or 0, manual_required_count=at.manual_required_count or 0,
    ) for at in attempts]


def assessment_results(db: Session, assessment_id: int, user) -> List[AttemptSummary]:
    """Completed attempts of an assessment, latest first. Owner or admin only."""
    assessment = db.get(Assessment, assessment_id)
    if assessment is None:
        raise NotFoundError(f"Assessment {assessment_id} not found")
    check_owner(assessment, user)
    attempts = db.scalars(
        select(Attempt)
        .where(Attempt.assessment_id == assessment_id, Attempt.status == AttemptStatus.COMPLETED.value)
        .order_by(Attempt.completed_at.desc(), Attempt.id.desc())
    ).all()
    return _summarize(db, attempts)


def student_attempts(db: Session, student_id: str) -> List[AttemptSummary]:
    attempts = db.scalars(
        select(Attempt).where(Attempt.student_id == student_id).order_by(Attempt.started_at.desc(), Attempt.id.desc())
    ).all()
    return _summarize(db, attempts)
