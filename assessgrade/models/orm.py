from datetime import datetime, timezone
from typing import Any, List, Optional
import enum
from sqlalchemy import BigInteger, Integer, String, Text, Boolean, ForeignKey, JSON, Float, DateTime, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship
from assessgrade.core.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuestionType(str, enum.Enum):
    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    SHORT_ANSWER = "short_answer"
    MATCHING = "matching"
    ESSAY = "essay"


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class GradingMethod(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"
    MANUAL_OVERRIDE = "manual_override"


class GradingStatus(str, enum.Enum):
    FULLY_GRADED = "fully_graded"
    PARTIALLY_GRADED = "partially_graded"
    GRADING_FAILED = "grading_failed"


# ========== Authoring ==========

class Assessment(Base):
    __tablename__ = "assessments"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    title: Mapped[str] = mapped_column(String(255))
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    instructor_id: Mapped[str] = mapped_column(String(255), index=True)
    is_executed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    blocks: Mapped[List["QuestionBlock"]] = relationship(back_populates="assessment", cascade="all, delete-orphan", order_by="QuestionBlock.id")


class QuestionBlock(Base):
    __tablename__ = "question_blocks"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    assessment_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("assessments.id", ondelete="CASCADE"))
    question_type: Mapped[str] = mapped_column(String(32))
    question_count: Mapped[int] = mapped_column(Integer)
    duration_per_question: Mapped[int] = mapped_column(Integer, default=120)
    num_options: Mapped[int | None] = mapped_column(Integer, nullable=True)
    num_first_side: Mapped[int | None] = mapped_column(Integer, nullable=True)
    num_second_side: Mapped[int | None] = mapped_column(Integer, nullable=True)
    positive_marks: Mapped[float] = mapped_column(Float, default=1.0)
    negative_marks: Mapped[float] = mapped_column(Float, default=0.0)
    assessment: Mapped["Assessment"] = relationship(back_populates="blocks")


class Enrollment(Base):
    __tablename__ = "enrollments"
    student_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    assessment_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("assessments.id", ondelete="CASCADE"), primary_key=True)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# ========== Delivery ==========

class Attempt(Base):
    __tablename__ = "attempts"
    __table_args__ = (Index("idx_attempt_student_assessment", "student_id", "assessment_id"),)
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    assessment_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("assessments.id", ondelete="CASCADE"))
    student_id: Mapped[str] = mapped_column(String(255))
    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    language: Mapped[str] = mapped_column(String(8), default="en")
    status: Mapped[str] = mapped_column(String(20), default=AttemptStatus.IN_PROGRESS.value)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # aggregate, recomputed whenever an answer score changes
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    raw_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    percentage: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    auto_graded_count: Mapped[int] = mapped_column(Integer, default=0)
    manual_required_count: Mapped[int] = mapped_column(Integer, default=0)
    grading_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    graded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    assessment: Mapped["Assessment"] = relationship()
    questions: Mapped[List["GeneratedQuestion"]] = relationship(back_populates="attempt", cascade="all, delete-orphan", order_by="GeneratedQuestion.question_order")
    answers: Mapped[List["StudentAnswer"]] = relationship(back_populates="attempt", cascade="all, delete-orphan")


class GeneratedQuestion(Base):
    __tablename__ = "generated_questions"
    __table_args__ = (UniqueConstraint("attempt_id", "question_order", name="uq_question_order"),)
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    attempt_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("attempts.id", ondelete="CASCADE"))
    question_order: Mapped[int] = mapped_column(Integer)
    question_type: Mapped[str] = mapped_column(String(32))
    question_text: Mapped[str] = mapped_column(Text)
    options: Mapped[Any] = mapped_column(JSON, nullable=True)
    correct_answer: Mapped[Any] = mapped_column(JSON, nullable=True)
    positive_marks: Mapped[float] = mapped_column(Float, default=1.0)
    negative_marks: Mapped[float] = mapped_column(Float, default=0.0)
    duration_per_question: Mapped[int] = mapped_column(Integer, default=120)
    attempt: Mapped["Attempt"] = relationship(back_populates="questions")


class StudentAnswer(Base):
    __tablename__ = "student_answers"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_student_answer"),
        Index("idx_sa_grading_method", "grading_method"),
    )
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    attempt_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("attempts.id", ondelete="CASCADE"))
    question_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("generated_questions.id", ondelete="CASCADE"))
    raw_answer: Mapped[Any] = mapped_column(JSON, nullable=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_correct: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    grading_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    grading_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    graded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    overridden_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    overridden_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    attempt: Mapped["Attempt"] = relationship(back_populates="answers")
    question: Mapped["GeneratedQuestion"] = relationship()


# ========== Governance ==========

class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_al_entity", "entity_type", "entity_id"),)
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(String(50))
    entity_type: Mapped[str] = mapped_column(String(50))
    entity_id: Mapped[str] = mapped_column(String(255))
    changes: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
