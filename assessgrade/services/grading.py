"""
Grading orchestrator.

A grading pass runs under a per-attempt lock (Redis) and a row lock on the
attempt, evaluates every question of the attempt exactly once, upserts one
answer row per question, aggregates, and commits everything in a single
transaction. Per-question failures become manual-review markers; a database
failure rolls the whole pass back and flags the attempt ``grading_failed``.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from assessgrade.core.cache import attempt_lock
from assessgrade.core.config import settings
from assessgrade.core.errors import (
    AuthorizationError, ConflictError, GradingError, NotFoundError, PersistenceError, RubricParseError, ValidationError,
)
from assessgrade.models.orm import (
    Assessment, Attempt, AttemptStatus, GeneratedQuestion, GradingMethod, GradingStatus, StudentAnswer,
)
from assessgrade.services.aggregator import AggregateResult, ScoredItem, aggregate
from assessgrade.services.evaluators import EvaluationContext, GradingOutcome, evaluate, manual_outcome
from assessgrade.services.normalizer import is_unanswered

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnswerResult:
    question_id: int
    is_correct: bool
    score: float
    grading_method: str
    feedback: Optional[str]


@dataclass
class GradingReport:
    attempt_id: int
    aggregate: AggregateResult
    answers: List[AnswerResult] = field(default_factory=list)


def check_owner(assessment: Assessment, user) -> None:
    """Instructors may only act on their own assessments; admins on any."""
    if user.is_admin():
        return
    if assessment.instructor_id != user.sub:
        raise AuthorizationError(f"Assessment {assessment.id} is not owned by {user.sub}")


def scored_items(attempt: Attempt) -> List[ScoredItem]:
    by_question = {a.question_id: a for a in attempt.answers}
    items = []
    for q in attempt.questions:
        a = by_question.get(q.id)
        items.append(ScoredItem(positive_marks=q.positive_marks,
                                scored_marks=a.score if a else None,
                                grading_method=a.grading_method if a else None))
    return items


def apply_aggregate(attempt: Attempt, result: AggregateResult) -> None:
    attempt.score = result.total_score
    attempt.raw_score = result.raw_total
    attempt.max_score = result.max_score
    attempt.percentage = result.percentage
    attempt.auto_graded_count = result.auto_graded_count
    attempt.manual_required_count = result.manual_required_count
    attempt.grading_status = result.status
    attempt.graded_at = datetime.now(timezone.utc)


def recompute_attempt(attempt: Attempt) -> AggregateResult:
    """Re-aggregate from the stored answers. The caller owns the transaction."""
    result = aggregate(scored_items(attempt))
    apply_aggregate(attempt, result)
    return result


class GradingOrchestrator:
    def __init__(self, db: Session, *, equivalence=None,
                 lock_factory: Callable[[int], Any] = attempt_lock,
                 essay_min_length: Optional[int] = None) -> None:
        self.db = db
        self.equivalence = equivalence
        self.lock_factory = lock_factory
        self.essay_min_length = essay_min_length or settings.ESSAY_MIN_LENGTH

    # ---------- entry points ----------

    def submit(self, attempt_id: int, student_id: str, answers: Mapping[int, Any]) -> GradingReport:
        def check(attempt: Attempt) -> None:
            if attempt.student_id != student_id:
                raise AuthorizationError(f"Attempt {attempt_id} does not belong to {student_id}")
            if attempt.status != AttemptStatus.IN_PROGRESS.value:
                raise ConflictError(f"Attempt {attempt_id} is not in progress")

        return self._locked_pass(attempt_id, answers=answers, check=check)

    def grade_attempt(self, attempt_id: int, answers: Optional[Mapping[int, Any]] = None) -> GradingReport:
        """(Re)grade an attempt. Without ``answers`` the stored raw answers are used."""
        return self._locked_pass(attempt_id, answers=answers)

    def regrade_assessment(self, assessment_id: int,
                           on_progress: Optional[Callable[[int, int], None]] = None) -> List[GradingReport]:
        ids = self.db.scalars(
            select(Attempt.id)
            .where(Attempt.assessment_id == assessment_id, Attempt.status == AttemptStatus.COMPLETED.value)
            .order_by(Attempt.id)
        ).all()
        reports = []
        for i, attempt_id in enumerate(ids, start=1):
            reports.append(self.grade_attempt(attempt_id))
            if on_progress:
                on_progress(i, len(ids))
        return reports

    def manual_grading_queue(self, assessment_id: int, user) -> List[StudentAnswer]:
        assessment = self.db.get(Assessment, assessment_id)
        if assessment is None:
            raise NotFoundError(f"Assessment {assessment_id} not found")
        check_owner(assessment, user)
        return list(self.db.scalars(
            select(StudentAnswer)
            .join(Attempt, StudentAnswer.attempt_id == Attempt.id)
            .where(Attempt.assessment_id == assessment_id,
                   StudentAnswer.grading_method == GradingMethod.MANUAL.value)
            .order_by(StudentAnswer.attempt_id, StudentAnswer.question_id)
        ).all())

    # ---------- internals ----------

    def _locked_pass(self, attempt_id: int, *, answers=None, check=None) -> GradingReport:
        with self.lock_factory(attempt_id):
            try:
                attempt = self._load_for_update(attempt_id)
                if check:
                    check(attempt)
                report = self._grade(attempt, answers)
                self.db.commit()
            except GradingError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.exception("Persisting grades for attempt %s failed", attempt_id)
                self._mark_failed(attempt_id)
                raise PersistenceError(f"Could not save grades for attempt {attempt_id}; retry the submission") from exc
        logger.info("Attempt %s graded: %.2f/%.2f (%s)", attempt_id, report.aggregate.total_score,
                    report.aggregate.max_score, report.aggregate.status)
        return report

    def _load_for_update(self, attempt_id: int) -> Attempt:
        attempt = self.db.execute(
            select(Attempt).where(Attempt.id == attempt_id).with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if attempt is None:
            raise NotFoundError(f"Attempt {attempt_id} not found")
        return attempt

    def _grade(self, attempt: Attempt, answers: Optional[Mapping[int, Any]]) -> GradingReport:
        questions: List[GeneratedQuestion] = list(attempt.questions)
        existing: Dict[int, StudentAnswer] = {a.question_id: a for a in attempt.answers}
        if answers is None:
            raw_answers = {qid: a.raw_answer for qid, a in existing.items()}
        else:
            unknown = set(answers) - {q.id for q in questions}
            if unknown:
                raise ValidationError(f"Answers reference questions outside attempt {attempt.id}: {sorted(unknown)}")
            raw_answers = dict(answers)

        ctx = EvaluationContext(equivalence=self.equivalence, language=attempt.language or "en",
                                essay_min_length=self.essay_min_length)
        now = datetime.now(timezone.utc)
        results = []
        for q in questions:
            row = existing.get(q.id)
            if row is not None and row.grading_method == GradingMethod.MANUAL_OVERRIDE.value:
                results.append(AnswerResult(q.id, bool(row.is_correct), row.score or 0.0, row.grading_method, row.feedback))
                continue
            raw = raw_answers.get(q.id)
            outcome = self._evaluate(q, raw, ctx)
            if row is None:
                row = StudentAnswer(attempt_id=attempt.id, question_id=q.id)
                attempt.answers.append(row)
            row.raw_answer = raw
            row.score = outcome.scored_marks
            row.is_correct = outcome.is_correct
            row.grading_method = outcome.grading_method
            row.feedback = outcome.feedback
            row.grading_notes = outcome.grading_notes or None
            row.graded_at = now
            results.append(AnswerResult(q.id, outcome.is_correct, outcome.scored_marks,
                                        outcome.grading_method, outcome.feedback))

        self.db.flush()
        result = recompute_attempt(attempt)
        attempt.status = AttemptStatus.COMPLETED.value
        attempt.completed_at = attempt.completed_at or now
        self.db.flush()
        return GradingReport(attempt_id=attempt.id, aggregate=result, answers=results)

    def _evaluate(self, question: GeneratedQuestion, raw: Any, ctx: EvaluationContext) -> GradingOutcome:
        try:
            return evaluate(question, raw, ctx)
        except RubricParseError as exc:
            logger.warning("Question %s has a malformed answer key: %s", question.id, exc.message)
            return manual_outcome("Question queued for instructor review", notes=f"Rubric error: {exc.message}",
                                  answered=not is_unanswered(raw))
        except Exception as exc:  # one broken question must not abort the attempt
            logger.exception("Evaluator failed for question %s", question.id)
            return manual_outcome("Question queued for instructor review", notes=f"Evaluation error: {exc}",
                                  answered=not is_unanswered(raw))

    def _mark_failed(self, attempt_id: int) -> None:
        try:
            self.db.execute(update(Attempt).where(Attempt.id == attempt_id)
                            .values(grading_status=GradingStatus.GRADING_FAILED.value))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Could not flag attempt %s as grading_failed", attempt_id)
