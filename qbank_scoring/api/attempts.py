from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from qbank_scoring.core.auth import current_student_id
from qbank_scoring.core.database import get_db
from qbank_scoring.services.attempts import AttemptManager

router = APIRouter()


class TestStart(BaseModel):
    mode: Literal["tutor", "timed", "assessment"] = "tutor"
    question_ids: Optional[List[int]] = None
    question_count: int = Field(ge=1, le=300, default=10)
    category_id: Optional[int] = None
    difficulty: Optional[str] = None
    subjects: Optional[List[str]] = None
    time_limit_minutes: Optional[int] = Field(default=None, ge=1)


class TestStarted(BaseModel):
    attempt_id: int
    mode: str
    status: str
    question_ids: List[int]
    question_count: int
    time_limit_minutes: Optional[int] = None
    started_at: Optional[datetime] = None


class AnswerSubmit(BaseModel):
    question_id: int = Field(gt=0)
    answer: Any = None
    attempt_id: Optional[int] = Field(default=None, gt=0)


class AnswerFeedback(BaseModel):
    attemptId: int
    questionId: int
    isCorrect: bool
    isPartiallyCorrect: bool
    correctAnswer: Any = None
    explanation: Optional[str] = None
    pointsEarned: int
    totalPoints: int


class TestSubmit(BaseModel):
    answers: Dict[str, Any] = Field(default_factory=dict)
    time_spent_seconds: int = Field(ge=0, default=0)


class Readiness(BaseModel):
    score: int
    level: str


class TestResult(BaseModel):
    attemptId: int
    score: float
    correctCount: int
    incorrectCount: int
    unansweredCount: int
    totalQuestions: int
    isPassed: bool
    readiness: Readiness
    performanceBreakdown: Dict[str, Any]
    message: str


@router.post("/{qbank_id}/tests/start", response_model=TestStarted, status_code=201)
def start_test(qbank_id: int, payload: TestStart, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    attempt = AttemptManager(db).start_attempt(
        student_id, qbank_id, mode=payload.mode, question_ids=payload.question_ids,
        question_count=payload.question_count, category_id=payload.category_id, difficulty=payload.difficulty,
        subjects=payload.subjects, time_limit_minutes=payload.time_limit_minutes,
    )
    ids = list(attempt.question_ids or [])
    return TestStarted(
        attempt_id=attempt.id, mode=attempt.mode, status=attempt.status, question_ids=ids,
        question_count=len(ids), time_limit_minutes=attempt.time_limit_minutes, started_at=attempt.started_at,
    )


@router.post("/{qbank_id}/tests/submit-answer", response_model=AnswerFeedback)
def submit_answer(qbank_id: int, payload: AnswerSubmit, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    return AttemptManager(db).submit_one_answer(student_id, qbank_id, payload.question_id, payload.answer, payload.attempt_id)


@router.post("/{qbank_id}/tests/{attempt_id}/submit", response_model=TestResult)
def submit_test(qbank_id: int, attempt_id: int, payload: TestSubmit, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    return AttemptManager(db).finalize_attempt(student_id, qbank_id, attempt_id, payload.answers, payload.time_spent_seconds)


@router.get("/{qbank_id}/tests/{attempt_id}")
def get_test(qbank_id: int, attempt_id: int, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    return AttemptManager(db).get_attempt(student_id, qbank_id, attempt_id)
