import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, Float, ForeignKey, Index, Integer, JSON,
    String, Text, UniqueConstraint, func, text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
PK = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase): pass


class TestMode(str, enum.Enum):
    TUTOR = "tutor"
    TIMED = "timed"
    ASSESSMENT = "assessment"


class AttemptStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PerformanceLevel(str, enum.Enum):
    MASTERY = "mastery"
    PROFICIENT = "proficient"
    DEVELOPING = "developing"
    WEAK = "weak"


# ========== Question Bank ==========

class QuestionBank(Base):
    __tablename__ = "question_banks"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Category(Base):
    __tablename__ = "categories"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    qbank_id: Mapped[int] = mapped_column(PK, ForeignKey("question_banks.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (
        Index("idx_questions_qbank", "qbank_id"),
        Index("idx_questions_category", "category_id"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    qbank_id: Mapped[int] = mapped_column(PK, ForeignKey("question_banks.id"), nullable=False)
    question_type: Mapped[str] = mapped_column(String(50), default="single")
    prompt: Mapped[str] = mapped_column(Text, default="")
    # serialized JSON for new rows; legacy rows may hold bare scalars
    options: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    correct_answer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    explanation: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    points: Mapped[int] = mapped_column(Integer, default=1)
    tolerance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    subject: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    lesson: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    client_need_area: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category_id: Mapped[Optional[int]] = mapped_column(PK, ForeignKey("categories.id"), nullable=True)
    difficulty: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)


# ========== Enrollment & Rollups ==========

class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("student_id", "qbank_id", name="uq_enrollment_student_qbank"),)

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    student_id: Mapped[int] = mapped_column(PK, nullable=False, index=True)
    qbank_id: Mapped[int] = mapped_column(PK, ForeignKey("question_banks.id"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    questions_attempted: Mapped[int] = mapped_column(Integer, default=0)
    questions_correct: Mapped[int] = mapped_column(Integer, default=0)
    tests_completed: Mapped[int] = mapped_column(Integer, default=0)
    tutor_tests_completed: Mapped[int] = mapped_column(Integer, default=0)
    timed_tests_completed: Mapped[int] = mapped_column(Integer, default=0)
    assessment_tests_completed: Mapped[int] = mapped_column(Integer, default=0)
    average_score: Mapped[float] = mapped_column(Float, default=0.0)
    highest_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lowest_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    readiness_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    readiness_level: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    last_readiness_calculation: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    total_time_spent_minutes: Mapped[int] = mapped_column(Integer, default=0)
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    enrolled_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())


class SubjectPerformance(Base):
    __tablename__ = "subject_performance"
    __table_args__ = (UniqueConstraint("enrollment_id", "subject", name="uq_subject_performance"),)

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(PK, ForeignKey("enrollments.id"), nullable=False)
    student_id: Mapped[int] = mapped_column(PK, nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    lesson: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    client_need_area: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    questions_attempted: Mapped[int] = mapped_column(Integer, default=0)
    questions_correct: Mapped[int] = mapped_column(Integer, default=0)
    accuracy_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    performance_level: Mapped[str] = mapped_column(String(20), default=PerformanceLevel.WEAK.value)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=func.now())


class CategoryPerformance(Base):
    __tablename__ = "category_performance"
    __table_args__ = (UniqueConstraint("enrollment_id", "category_id", name="uq_category_performance"),)

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(PK, ForeignKey("enrollments.id"), nullable=False)
    student_id: Mapped[int] = mapped_column(PK, nullable=False)
    category_id: Mapped[int] = mapped_column(PK, ForeignKey("categories.id"), nullable=False)
    questions_attempted: Mapped[int] = mapped_column(Integer, default=0)
    questions_correct: Mapped[int] = mapped_column(Integer, default=0)
    accuracy_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    performance_level: Mapped[str] = mapped_column(String(20), default=PerformanceLevel.WEAK.value)
    needs_remediation: Mapped[bool] = mapped_column(Boolean, default=False)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    category: Mapped["Category"] = relationship(lazy="joined")


# ========== Delivery ==========

class TestAttempt(Base):
    __tablename__ = "test_attempts"
    __table_args__ = (
        Index("idx_ta_student_qbank", "student_id", "qbank_id"),
        Index("idx_ta_completed", "completed_at"),
        # at most one open attempt per (student, qbank)
        Index(
            "uq_ta_open_attempt", "student_id", "qbank_id", unique=True,
            postgresql_where=text("status <> 'completed'"),
            sqlite_where=text("status <> 'completed'"),
        ),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(PK, ForeignKey("enrollments.id"), nullable=False)
    student_id: Mapped[int] = mapped_column(PK, nullable=False)
    qbank_id: Mapped[int] = mapped_column(PK, ForeignKey("question_banks.id"), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), default=TestMode.TUTOR.value)
    status: Mapped[str] = mapped_column(String(20), default=AttemptStatus.NOT_STARTED.value)
    question_ids: Mapped[List[int]] = mapped_column(JSON, default=list)
    # fixed question sets reject answers to other questions; tutor sets grow
    fixed_question_set: Mapped[bool] = mapped_column(Boolean, default=False)
    category_filter: Mapped[Optional[int]] = mapped_column(PK, nullable=True)
    difficulty_filter: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    time_limit_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    time_spent_seconds: Mapped[int] = mapped_column(Integer, default=0)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    correct_count: Mapped[int] = mapped_column(Integer, default=0)
    incorrect_count: Mapped[int] = mapped_column(Integer, default=0)
    unanswered_count: Mapped[int] = mapped_column(Integer, default=0)
    is_passed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    performance_breakdown: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    @property
    def is_completed(self) -> bool:
        return self.status == AttemptStatus.COMPLETED.value


class QuestionAttempt(Base):
    __tablename__ = "question_attempts"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", "student_id", name="uq_question_attempt"),
        Index("idx_qa_attempt", "attempt_id"),
    )

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    attempt_id: Mapped[int] = mapped_column(PK, ForeignKey("test_attempts.id"), nullable=False)
    question_id: Mapped[int] = mapped_column(PK, ForeignKey("questions.id"), nullable=False)
    student_id: Mapped[int] = mapped_column(PK, nullable=False)
    submitted_answer: Mapped[str] = mapped_column(Text)
    correct_answer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    is_partially_correct: Mapped[bool] = mapped_column(Boolean, default=False)
    points_earned: Mapped[int] = mapped_column(Integer, default=0)
    is_first_attempt: Mapped[bool] = mapped_column(Boolean, default=True)
    attempted_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())


class RemediationTracking(Base):
    """Per-question remediation state for questions a student has missed."""
    __tablename__ = "remediation_tracking"
    __table_args__ = (UniqueConstraint("enrollment_id", "question_id", name="uq_remediation_question"),)

    id: Mapped[int] = mapped_column(PK, primary_key=True)
    enrollment_id: Mapped[int] = mapped_column(PK, ForeignKey("enrollments.id"), nullable=False, index=True)
    student_id: Mapped[int] = mapped_column(PK, nullable=False)
    question_id: Mapped[int] = mapped_column(PK, ForeignKey("questions.id"), nullable=False)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_correct: Mapped[int] = mapped_column(Integer, default=0)
    first_incorrect_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    needs_remediation: Mapped[bool] = mapped_column(Boolean, default=True)
    remediation_completed: Mapped[bool] = mapped_column(Boolean, default=False)

    question: Mapped["Question"] = relationship(lazy="joined")
