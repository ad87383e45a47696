"""
Manual override gate: an instructor replaces one answer's score.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from assessgrade.core.cache import attempt_lock
from assessgrade.core.errors import GradingError, NotFoundError, PersistenceError, ValidationError
from assessgrade.models.orm import AuditLog, GradingMethod, StudentAnswer
from assessgrade.services.aggregator import AggregateResult
from assessgrade.services.grading import check_owner, recompute_attempt

logger = logging.getLogger(__name__)


@dataclass
class OverrideResult:
    answer: StudentAnswer
    aggregate: AggregateResult


def _validate(new_score: Any, reason: Optional[str]) -> float:
    if not reason or not str(reason).strip():
        raise ValidationError("An override reason is required")
    if isinstance(new_score, bool):
        raise ValidationError("new_score must be a number")
    try:
        score = float(new_score)
    except (TypeError, ValueError):
        raise ValidationError("new_score must be a number") from None
    if not math.isfinite(score):
        raise ValidationError("new_score must be a finite number")
    return score


def override(db: Session, answer_id: int, new_score: Any, feedback: Optional[str], reason: str, instructor,
             *, lock_factory: Callable[[int], Any] = attempt_lock) -> OverrideResult:
    score = _validate(new_score, reason)
    attempt_id = db.scalar(select(StudentAnswer.attempt_id).where(StudentAnswer.id == answer_id))
    if attempt_id is None:
        raise NotFoundError(f"Answer {answer_id} not found")
    # same lock as a grading pass over this attempt
    with lock_factory(attempt_id):
        try:
            answer = _load_for_update(db, answer_id)
            check_owner(answer.attempt.assessment, instructor)
        except GradingError:
            db.rollback()
            raise
        return _apply(db, answer, score, feedback, reason, instructor)


def _load_for_update(db: Session, answer_id: int) -> StudentAnswer:
    answer = db.execute(
        select(StudentAnswer).where(StudentAnswer.id == answer_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if answer is None:
        raise NotFoundError(f"Answer {answer_id} not found")
    return answer


def _apply(db: Session, answer: StudentAnswer, score: float, feedback, reason: str, instructor) -> OverrideResult:
    answer_id = answer.id
    attempt = answer.attempt
    before = {"score": answer.score, "grading_method": answer.grading_method, "is_correct": answer.is_correct}
    now = datetime.now(timezone.utc)
    try:
        answer.score = score
        answer.grading_method = GradingMethod.MANUAL_OVERRIDE.value
        answer.is_correct = score >= float(answer.question.positive_marks)
        answer.feedback = feedback
        answer.grading_notes = reason.strip()
        answer.overridden_by = instructor.sub
        answer.overridden_at = now
        result = recompute_attempt(attempt)
        db.add(AuditLog(user_id=instructor.sub, action="grade_override", entity_type="student_answer",
                        entity_id=str(answer.id),
                        changes={"before": before, "after": {"score": score, "reason": answer.grading_notes},
                                 "attempt_id": attempt.id, "attempt_score": result.total_score}))
        db.commit()
    except GradingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Override of answer %s failed", answer_id)
        raise PersistenceError(f"Could not save override for answer {answer_id}") from exc
    db.refresh(answer)
    logger.info("Answer %s overridden by %s: %s -> %s", answer_id, instructor.sub, before["score"], score)
    return OverrideResult(answer=answer, aggregate=result)
