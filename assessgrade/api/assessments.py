import logging
from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, constr, model_validator
from typing import List, Literal, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select, func
from assessgrade.api.deps import get_generation_pool, get_orchestrator, get_queue
from assessgrade.core.auth import require_roles, TokenData
from assessgrade.core.config import settings
from assessgrade.core.database import get_db
from assessgrade.core.errors import AuthorizationError, ConflictError, NotFoundError
from assessgrade.jobs.regrade_job import regrade_assessment_job
from assessgrade.models.orm import Assessment, QuestionBlock, Enrollment, Attempt, AttemptStatus, GeneratedQuestion
from assessgrade.services.grading import GradingOrchestrator, check_owner
from assessgrade.services import reports
from assessgrade.services.question_generation import generate_questions

logger = logging.getLogger(__name__)
router = APIRouter()

QuestionTypeName = Literal["multiple_choice", "true_false", "short_answer", "matching", "essay"]

class BlockIn(BaseModel):
    question_type: QuestionTypeName
    question_count: int = Field(ge=1, le=100)
    duration_per_question: int = Field(ge=30, default=settings.DEFAULT_BLOCK_DURATION)
    num_options: Optional[int] = Field(default=None, ge=2)
    num_first_side: Optional[int] = Field(default=None, ge=2)
    num_second_side: Optional[int] = Field(default=None, ge=2)
    positive_marks: float = Field(ge=0, default=1.0)
    negative_marks: float = Field(ge=0, default=0.0)

    @model_validator(mode="after")
    def check_options(self):
        if self.question_type == "multiple_choice" and self.num_options is None:
            raise ValueError("multiple_choice blocks need num_options (at least 2)")
        return self

class AssessmentCreate(BaseModel):
    title: constr(min_length=1, max_length=255)
    prompt: Optional[str] = None
    blocks: List[BlockIn] = Field(min_length=1)

class EnrollIn(BaseModel):
    student_id: constr(min_length=1)

class StartAttempt(BaseModel):
    language: Literal["en", "ur", "ar", "fa"] = "en"


def _get_assessment(db: Session, assessment_id: int) -> Assessment:
    a = db.get(Assessment, assessment_id)
    if not a: raise NotFoundError(f"Assessment {assessment_id} not found")
    return a


@router.post("", status_code=201, dependencies=[Depends(require_roles("instructor","admin"))])
def create_assessment(payload: AssessmentCreate, user: TokenData = Depends(require_roles("instructor","admin")), db: Session = Depends(get_db)):
    a = Assessment(title=payload.title.strip(), prompt=(payload.prompt or "").strip() or None, instructor_id=user.sub)
    for b in payload.blocks:
        a.blocks.append(QuestionBlock(**b.model_dump()))
    db.add(a); db.commit()
    logger.info("Assessment %s created by %s with %d blocks", a.id, user.sub, len(a.blocks))
    return {"assessment_id": a.id, "title": a.title, "blocks": len(a.blocks),
            "total_questions": sum(b.question_count for b in a.blocks)}


@router.post("/{assessment_id}/enrollments", status_code=201, dependencies=[Depends(require_roles("instructor","admin"))])
def enroll_student(assessment_id: int, payload: EnrollIn, user: TokenData = Depends(require_roles("instructor","admin")), db: Session = Depends(get_db)):
    a = _get_assessment(db, assessment_id)
    check_owner(a, user)
    if not db.get(Enrollment, {"student_id": payload.student_id, "assessment_id": assessment_id}):
        db.add(Enrollment(student_id=payload.student_id, assessment_id=assessment_id)); db.commit()
    return {"assessment_id": assessment_id, "student_id": payload.student_id, "enrolled": True}


@router.post("/{assessment_id}/attempts", status_code=201, dependencies=[Depends(require_roles("student"))])
def start_attempt(assessment_id: int, payload: Optional[StartAttempt] = None, user: TokenData = Depends(require_roles("student")),
                  db: Session = Depends(get_db), pool=Depends(get_generation_pool)):
    language = payload.language if payload else "en"
    a = _get_assessment(db, assessment_id)
    if not db.get(Enrollment, {"student_id": user.sub, "assessment_id": assessment_id}):
        raise AuthorizationError("You are not enrolled for this assessment")
    in_progress = db.scalar(select(Attempt.id).where(Attempt.student_id == user.sub, Attempt.assessment_id == assessment_id,
                                                    Attempt.status == AttemptStatus.IN_PROGRESS.value))
    if in_progress: raise ConflictError(f"Attempt {in_progress} is already in progress")
    if pool is None: raise HTTPException(503, "AI question generation is not configured")
    questions = generate_questions(pool, a, a.blocks, language,
                                   max_output_tokens=settings.AI_MAX_OUTPUT_TOKENS, temperature=settings.AI_TEMPERATURE)
    previous = db.scalar(select(func.count(Attempt.id)).where(Attempt.student_id == user.sub, Attempt.assessment_id == assessment_id)) or 0
    attempt = Attempt(assessment_id=assessment_id, student_id=user.sub, attempt_number=previous + 1, language=language)
    for q in questions:
        attempt.questions.append(GeneratedQuestion(**q))
    a.is_executed = True
    db.add(attempt); db.commit()
    logger.info("Attempt %s started by %s on assessment %s", attempt.id, user.sub, assessment_id)
    return {
        "attempt_id": attempt.id,
        "attempt_number": attempt.attempt_number,
        "duration": sum(q.duration_per_question for q in attempt.questions),
        "questions": [{"id": q.id, "question_order": q.question_order, "question_type": q.question_type,
                       "question_text": q.question_text, "options": q.options, "positive_marks": q.positive_marks,
                       "negative_marks": q.negative_marks, "duration_per_question": q.duration_per_question}
                      for q in attempt.questions],
    }


@router.get("/{assessment_id}/manual-grading", dependencies=[Depends(require_roles("instructor","admin"))])
def manual_grading(assessment_id: int, user: TokenData = Depends(require_roles("instructor","admin")),
                   orchestrator: GradingOrchestrator = Depends(get_orchestrator)):
    rows = orchestrator.manual_grading_queue(assessment_id, user)
    return [{"answer_id": r.id, "attempt_id": r.attempt_id, "student_id": r.attempt.student_id, "question_id": r.question_id,
             "question_type": r.question.question_type, "question_text": r.question.question_text,
             "positive_marks": r.question.positive_marks, "raw_answer": r.raw_answer, "score": r.score,
             "feedback": r.feedback, "grading_notes": r.grading_notes} for r in rows]


@router.post("/{assessment_id}/regrade", status_code=202, dependencies=[Depends(require_roles("instructor","admin"))])
def regrade(assessment_id: int, user: TokenData = Depends(require_roles("instructor","admin")),
            db: Session = Depends(get_db), queue=Depends(get_queue)):
    check_owner(_get_assessment(db, assessment_id), user)
    job = queue.enqueue(regrade_assessment_job, assessment_id, job_timeout=settings.RQ_JOB_TIMEOUT)
    logger.info("Regrade of assessment %s queued by %s as job %s", assessment_id, user.sub, job.get_id())
    return {"job_id": job.get_id(), "assessment_id": assessment_id}


@router.get("/{assessment_id}/results", dependencies=[Depends(require_roles("instructor","admin"))])
def assessment_results(assessment_id: int, user: TokenData = Depends(require_roles("instructor","admin")),
                       db: Session = Depends(get_db)):
    rows = reports.assessment_results(db, assessment_id, user)
    return {"assessment_id": assessment_id, "attempts": [asdict(r) for r in rows]}
