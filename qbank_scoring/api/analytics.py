from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from qbank_scoring.core.auth import current_student_id
from qbank_scoring.core.database import get_db
from qbank_scoring.core.errors import AuthorizationError
from qbank_scoring.models.orm import Enrollment
from qbank_scoring.services import statistics
from qbank_scoring.services.question_bank import EnrollmentDirectory, QuestionBankStore
from qbank_scoring.services.readiness import ReadinessCalculator

router = APIRouter()


class ReadinessOut(BaseModel):
    score: int
    level: str
    breakdown: Dict[str, float]
    stored_score: Optional[int] = None
    stored_level: Optional[str] = None
    tests_completed: int
    average_score: float
    progress: int


class SubjectRow(BaseModel):
    subject: str
    lesson: Optional[str] = None
    client_need_area: Optional[str] = None
    questions_attempted: int
    questions_correct: int
    accuracy_percentage: float
    performance_level: str


class CategoryRow(BaseModel):
    category_id: int
    category_name: Optional[str] = None
    questions_attempted: int
    questions_correct: int
    accuracy_percentage: float
    performance_level: str
    needs_remediation: bool


class StrengthsWeaknesses(BaseModel):
    strengths: List[CategoryRow]
    weaknesses: List[CategoryRow]


class TrendRow(BaseModel):
    attempt_id: int
    mode: str
    score: Optional[float] = None
    correct_count: int
    question_count: int
    completed_at: Optional[datetime] = None


def _enrollment(db: Session, student_id: int, qbank_id: int) -> Enrollment:
    enrollment = EnrollmentDirectory(db).get_enrollment(student_id, qbank_id)
    if enrollment is None or not enrollment.is_active:
        raise AuthorizationError("Not enrolled in this Q-Bank", {"qbank_id": qbank_id})
    return enrollment


def _category_row(r) -> CategoryRow:
    return CategoryRow(
        category_id=r.category_id, category_name=r.category.name if r.category else None,
        questions_attempted=r.questions_attempted, questions_correct=r.questions_correct,
        accuracy_percentage=r.accuracy_percentage, performance_level=r.performance_level,
        needs_remediation=r.needs_remediation,
    )


def _trend_row(a) -> TrendRow:
    return TrendRow(
        attempt_id=a.id, mode=a.mode, score=a.score, correct_count=a.correct_count,
        question_count=len(a.question_ids or []), completed_at=a.completed_at,
    )


@router.get("/{qbank_id}/analytics/readiness", response_model=ReadinessOut)
def readiness(qbank_id: int, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    e = _enrollment(db, student_id, qbank_id)
    result = ReadinessCalculator(db).calculate(e)
    return ReadinessOut(
        score=result.score, level=result.level, breakdown=result.breakdown,
        stored_score=e.readiness_score, stored_level=e.readiness_level,
        tests_completed=e.tests_completed or 0, average_score=e.average_score or 0.0, progress=e.progress or 0,
    )


@router.get("/{qbank_id}/analytics/subject-performance", response_model=List[SubjectRow])
def subject_performance(qbank_id: int, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    e = _enrollment(db, student_id, qbank_id)
    return [
        SubjectRow(
            subject=r.subject, lesson=r.lesson, client_need_area=r.client_need_area,
            questions_attempted=r.questions_attempted, questions_correct=r.questions_correct,
            accuracy_percentage=r.accuracy_percentage, performance_level=r.performance_level,
        )
        for r in statistics.subject_performance(db, e.id)
    ]


@router.get("/{qbank_id}/analytics/category-performance", response_model=List[CategoryRow])
def category_performance(qbank_id: int, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    e = _enrollment(db, student_id, qbank_id)
    return [_category_row(r) for r in statistics.category_performance(db, e.id)]


@router.get("/{qbank_id}/analytics/strengths-weaknesses", response_model=StrengthsWeaknesses)
def strengths_weaknesses(qbank_id: int, threshold: float = Query(60.0, ge=0, le=100),
                         student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    e = _enrollment(db, student_id, qbank_id)
    split = statistics.strengths_and_weaknesses(db, e.id, threshold)
    return StrengthsWeaknesses(
        strengths=[_category_row(r) for r in split["strengths"]],
        weaknesses=[_category_row(r) for r in split["weaknesses"]],
    )


@router.get("/{qbank_id}/analytics/trends", response_model=List[TrendRow])
def trends(qbank_id: int, period: Literal["7d", "30d", "all"] = "30d",
           student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    e = _enrollment(db, student_id, qbank_id)
    return [_trend_row(a) for a in statistics.performance_trends(db, e.id, period)]


class ClientNeedRow(BaseModel):
    name: str
    attempted: int
    correct: int
    score: int


class Recommendation(BaseModel):
    type: str
    priority: str
    title: str
    description: str
    action_items: List[str]
    category_id: Optional[int] = None


class RemediationRow(BaseModel):
    question_id: int
    prompt: str
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    total_attempts: int
    consecutive_correct: int
    first_incorrect_at: Optional[datetime] = None
    needs_remediation: bool
    remediation_completed: bool


class Overview(BaseModel):
    readiness: ReadinessOut
    questions_attempted: int
    questions_correct: int
    overall_accuracy: int
    total_questions: int
    highest_score: Optional[float] = None
    lowest_score: Optional[float] = None
    time_spent_minutes: int
    tutor_tests_completed: int
    timed_tests_completed: int
    assessment_tests_completed: int
    subjects: List[SubjectRow]
    recent_tests: List[TrendRow]


@router.get("/{qbank_id}/analytics/overview", response_model=Overview)
def overview(qbank_id: int, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    e = _enrollment(db, student_id, qbank_id)
    return Overview(
        readiness=readiness(qbank_id, student_id, db),
        questions_attempted=e.questions_attempted or 0,
        questions_correct=e.questions_correct or 0,
        overall_accuracy=statistics.accuracy_of(e.questions_correct or 0, e.questions_attempted or 0),
        total_questions=QuestionBankStore(db).get_total_question_count(qbank_id),
        highest_score=e.highest_score, lowest_score=e.lowest_score,
        time_spent_minutes=e.total_time_spent_minutes or 0,
        tutor_tests_completed=e.tutor_tests_completed or 0,
        timed_tests_completed=e.timed_tests_completed or 0,
        assessment_tests_completed=e.assessment_tests_completed or 0,
        subjects=subject_performance(qbank_id, student_id, db),
        recent_tests=[_trend_row(a) for a in statistics.recent_tests(db, e.id)],
    )


@router.get("/{qbank_id}/analytics/client-needs", response_model=List[ClientNeedRow])
def client_needs(qbank_id: int, student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    _enrollment(db, student_id, qbank_id)
    return [ClientNeedRow(**row) for row in statistics.client_needs_performance(db, student_id, qbank_id)]


@router.get("/{qbank_id}/analytics/recommendations", response_model=List[Recommendation])
def recommendations(qbank_id: int, threshold: float = Query(60.0, ge=0, le=100),
                    student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    e = _enrollment(db, student_id, qbank_id)
    return [Recommendation(**r) for r in statistics.generate_study_recommendations(db, e, threshold)]


@router.get("/{qbank_id}/analytics/remediation", response_model=List[RemediationRow])
def remediation(qbank_id: int, include_completed: bool = False,
                student_id: int = Depends(current_student_id), db: Session = Depends(get_db)):
    e = _enrollment(db, student_id, qbank_id)
    return [
        RemediationRow(
            question_id=t.question_id, prompt=t.question.prompt, category_id=t.question.category_id,
            category_name=name, total_attempts=t.total_attempts, consecutive_correct=t.consecutive_correct,
            first_incorrect_at=t.first_incorrect_at, needs_remediation=t.needs_remediation,
            remediation_completed=t.remediation_completed,
        )
        for t, name in statistics.remediation_questions(db, e.id, include_completed)
    ]
