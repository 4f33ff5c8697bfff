"""
Performance rollups maintained on attempt completion.

Four tiers are updated as read -> compute -> write-back cycles:
the enrollment counters, one row per subject, one row per category and
one remediation row per missed question.
None of this is atomic on its own; callers must hold the enrollment lock
(see ``qbank_scoring.core.locks``) for the whole finalize transaction.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, desc, func, select
from sqlalchemy.orm import Session

from qbank_scoring.core.config import settings
from qbank_scoring.core.errors import ValidationError
from qbank_scoring.models.orm import (
    Category, CategoryPerformance, Enrollment, PerformanceLevel, Question, QuestionAttempt, RemediationTracking,
    SubjectPerformance, TestAttempt, TestMode, AttemptStatus,
)
from qbank_scoring.services.grading import GradeResult

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
MODE_COUNTERS = {
    TestMode.TUTOR.value: "tutor_tests_completed",
    TestMode.TIMED.value: "timed_tests_completed",
    TestMode.ASSESSMENT.value: "assessment_tests_completed",
}
TREND_PERIODS = {"7d": timedelta(days=7), "30d": timedelta(days=30), "all": None}
CLIENT_NEEDS = (
    "Safe and Effective Care Environment",
    "Health Promotion and Maintenance",
    "Psychosocial Integrity",
    "Physiological Integrity",
)
CRITICAL_ACCURACY = 50
MAX_FOCUS_AREAS = 3


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def accuracy_of(correct: int, attempted: int) -> int:
    if attempted <= 0:
        return 0
    return round_half_up(correct / attempted * 100)


def performance_level(accuracy: float) -> str:
    if accuracy >= 80:
        return PerformanceLevel.MASTERY.value
    if accuracy >= 65:
        return PerformanceLevel.PROFICIENT.value
    if accuracy >= 50:
        return PerformanceLevel.DEVELOPING.value
    return PerformanceLevel.WEAK.value


def needs_remediation(accuracy: float, attempted: int) -> bool:
    return attempted >= settings.REMEDIATION_MIN_ATTEMPTS and accuracy < settings.REMEDIATION_ACCURACY_THRESHOLD


@dataclass
class GradedItem:
    question: Question
    result: GradeResult


@dataclass
class _Tally:
    attempted: int = 0
    correct: int = 0
    lesson: Optional[str] = None
    client_need_area: Optional[str] = None

    def add(self, is_correct: bool) -> None:
        self.attempted += 1
        self.correct += int(is_correct)


def tally_by_subject(items: Iterable[GradedItem]) -> Dict[str, _Tally]:
    out: Dict[str, _Tally] = {}
    for item in items:
        q = item.question
        t = out.setdefault(q.subject or UNCATEGORIZED, _Tally(lesson=q.lesson, client_need_area=q.client_need_area))
        t.add(item.result.is_correct)
    return out


def tally_by_category(items: Iterable[GradedItem]) -> Dict[int, _Tally]:
    out: Dict[int, _Tally] = {}
    for item in items:
        if item.question.category_id is None:
            continue
        out.setdefault(item.question.category_id, _Tally()).add(item.result.is_correct)
    return out


def build_breakdown(items: List[GradedItem]) -> Dict[str, Any]:
    def summarize(tallies):
        return {
            str(k): {"attempted": t.attempted, "correct": t.correct, "accuracy": accuracy_of(t.correct, t.attempted)}
            for k, t in tallies.items()
        }
    return {"bySubject": summarize(tally_by_subject(items)), "byCategory": summarize(tally_by_category(items))}


class StatisticsAggregator:
    def __init__(self, db: Session):
        self.db = db

    def apply(self, enrollment: Enrollment, attempt: TestAttempt, items: List[GradedItem],
              total_questions_in_qbank: int) -> None:
        """Fold a completed attempt into every rollup tier."""
        self.update_enrollment(enrollment, attempt, total_questions_in_qbank)
        self.update_subjects(enrollment, items)
        self.update_categories(enrollment, items)
        self.update_remediation(enrollment, items)
        self.db.flush()

    def update_enrollment(self, enrollment: Enrollment, attempt: TestAttempt, total_questions_in_qbank: int) -> None:
        score = float(attempt.score or 0.0)
        total_questions = attempt.correct_count + attempt.incorrect_count + attempt.unanswered_count
        n = (enrollment.tests_completed or 0) + 1
        old_average = enrollment.average_score or 0.0

        enrollment.questions_attempted = (enrollment.questions_attempted or 0) + total_questions
        enrollment.questions_correct = (enrollment.questions_correct or 0) + attempt.correct_count
        enrollment.tests_completed = n
        counter = MODE_COUNTERS.get(attempt.mode)
        if counter:
            setattr(enrollment, counter, (getattr(enrollment, counter) or 0) + 1)
        enrollment.average_score = (old_average * (n - 1) + score) / n
        enrollment.highest_score = max(enrollment.highest_score or 0.0, score)
        if n > 1 and enrollment.lowest_score is not None:
            enrollment.lowest_score = min(enrollment.lowest_score, score)
        else:
            enrollment.lowest_score = score
        enrollment.progress = self.progress(enrollment.questions_correct, total_questions_in_qbank)
        enrollment.total_time_spent_minutes = (enrollment.total_time_spent_minutes or 0) + (attempt.time_spent_seconds or 0) // 60
        enrollment.last_accessed_at = datetime.utcnow()
        logger.info(
            f"Enrollment {enrollment.id}: tests={n} avg={enrollment.average_score:.2f} progress={enrollment.progress}"
        )

    @staticmethod
    def progress(questions_correct: int, total_questions_in_qbank: int) -> int:
        if total_questions_in_qbank <= 0 or questions_correct <= 0:
            return 0
        return min(100, round_half_up(questions_correct / total_questions_in_qbank * 100))

    def update_subjects(self, enrollment: Enrollment, items: List[GradedItem]) -> None:
        for subject, t in tally_by_subject(items).items():
            row = self.db.scalar(
                select(SubjectPerformance).where(
                    SubjectPerformance.enrollment_id == enrollment.id, SubjectPerformance.subject == subject
                ).with_for_update(of=SubjectPerformance).execution_options(populate_existing=True)
            )
            if row is None:
                row = SubjectPerformance(
                    enrollment_id=enrollment.id, student_id=enrollment.student_id, subject=subject,
                    lesson=t.lesson, client_need_area=t.client_need_area,
                    questions_attempted=0, questions_correct=0,
                )
                self.db.add(row)
            row.questions_attempted = (row.questions_attempted or 0) + t.attempted
            row.questions_correct = (row.questions_correct or 0) + t.correct
            row.accuracy_percentage = accuracy_of(row.questions_correct, row.questions_attempted)
            row.performance_level = performance_level(row.accuracy_percentage)
            row.last_updated = datetime.utcnow()

    def update_categories(self, enrollment: Enrollment, items: List[GradedItem]) -> None:
        for category_id, t in tally_by_category(items).items():
            row = self.db.scalar(
                select(CategoryPerformance).where(
                    CategoryPerformance.enrollment_id == enrollment.id, CategoryPerformance.category_id == category_id
                ).with_for_update(of=CategoryPerformance).execution_options(populate_existing=True)
            )
            if row is None:
                row = CategoryPerformance(
                    enrollment_id=enrollment.id, student_id=enrollment.student_id, category_id=category_id,
                    questions_attempted=0, questions_correct=0,
                )
                self.db.add(row)
            row.questions_attempted = (row.questions_attempted or 0) + t.attempted
            row.questions_correct = (row.questions_correct or 0) + t.correct
            row.accuracy_percentage = accuracy_of(row.questions_correct, row.questions_attempted)
            row.performance_level = performance_level(row.accuracy_percentage)
            row.needs_remediation = needs_remediation(row.accuracy_percentage, row.questions_attempted)
            row.last_updated = datetime.utcnow()

    def update_remediation(self, enrollment: Enrollment, items: List[GradedItem]) -> None:
        """Track missed questions until they are answered correctly enough times in a row."""
        now = datetime.utcnow()
        for item in items:
            row = self.db.scalar(
                select(RemediationTracking).where(
                    RemediationTracking.enrollment_id == enrollment.id,
                    RemediationTracking.question_id == item.question.id,
                ).with_for_update(of=RemediationTracking).execution_options(populate_existing=True)
            )
            if row is None:
                if item.result.is_correct:
                    continue
                row = RemediationTracking(
                    enrollment_id=enrollment.id, student_id=enrollment.student_id, question_id=item.question.id,
                    total_attempts=0, consecutive_correct=0, first_incorrect_at=now,
                )
                self.db.add(row)
            row.total_attempts = (row.total_attempts or 0) + 1
            row.last_attempted_at = now
            if item.result.is_correct:
                row.consecutive_correct = (row.consecutive_correct or 0) + 1
                if row.consecutive_correct >= settings.REMEDIATION_CLEAR_STREAK:
                    row.needs_remediation = False
                    row.remediation_completed = True
            else:
                row.consecutive_correct = 0
                row.needs_remediation = True
                row.remediation_completed = False
                row.first_incorrect_at = row.first_incorrect_at or now


# ========== Queries ==========

def subject_performance(db: Session, enrollment_id: int) -> List[SubjectPerformance]:
    stmt = select(SubjectPerformance).where(SubjectPerformance.enrollment_id == enrollment_id).order_by(
        desc(SubjectPerformance.accuracy_percentage), SubjectPerformance.subject
    )
    return list(db.scalars(stmt).all())


def category_performance(db: Session, enrollment_id: int) -> List[CategoryPerformance]:
    stmt = select(CategoryPerformance).where(CategoryPerformance.enrollment_id == enrollment_id).order_by(
        desc(CategoryPerformance.accuracy_percentage), CategoryPerformance.category_id
    )
    return list(db.scalars(stmt).all())


def strengths_and_weaknesses(db: Session, enrollment_id: int, threshold: float = 60.0) -> Dict[str, List[CategoryPerformance]]:
    rows = category_performance(db, enrollment_id)
    strengths = [r for r in rows if r.accuracy_percentage >= threshold and not r.needs_remediation]
    weaknesses = [r for r in rows if r.accuracy_percentage < threshold or r.needs_remediation]
    return {"strengths": strengths, "weaknesses": weaknesses}


def performance_trends(db: Session, enrollment_id: int, period: str = "30d") -> List[TestAttempt]:
    if period not in TREND_PERIODS:
        raise ValidationError(f"period must be one of {sorted(TREND_PERIODS)}", {"period": period})
    stmt = select(TestAttempt).where(
        TestAttempt.enrollment_id == enrollment_id, TestAttempt.status == AttemptStatus.COMPLETED.value
    )
    window = TREND_PERIODS[period]
    if window is not None:
        stmt = stmt.where(TestAttempt.completed_at >= datetime.utcnow() - window)
    stmt = stmt.order_by(desc(TestAttempt.completed_at), desc(TestAttempt.id))
    return list(db.scalars(stmt).all())


def recent_tests(db: Session, enrollment_id: int, limit: Optional[int] = 10) -> List[TestAttempt]:
    stmt = select(TestAttempt).where(
        TestAttempt.enrollment_id == enrollment_id, TestAttempt.status == AttemptStatus.COMPLETED.value
    ).order_by(desc(TestAttempt.completed_at), desc(TestAttempt.id))
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt).all())


def remediation_questions(db: Session, enrollment_id: int,
                          include_completed: bool = False) -> List[Tuple[RemediationTracking, Optional[str]]]:
    """Tracked questions with their category name, most recently missed first."""
    stmt = (
        select(RemediationTracking, Category.name)
        .select_from(RemediationTracking)
        .join(Question, Question.id == RemediationTracking.question_id)
        .outerjoin(Category, Category.id == Question.category_id)
        .where(RemediationTracking.enrollment_id == enrollment_id)
    )
    if not include_completed:
        stmt = stmt.where(RemediationTracking.needs_remediation.is_(True))
    stmt = stmt.order_by(desc(RemediationTracking.first_incorrect_at), desc(RemediationTracking.id))
    return [(tracking, name) for tracking, name in db.execute(stmt).all()]


def client_needs_performance(db: Session, student_id: int, qbank_id: int) -> List[Dict[str, Any]]:
    """Accuracy per client need area over answers in completed tests.

    The four standard areas are always reported; other areas found on
    questions follow in name order.
    """
    stmt = (
        select(
            Question.client_need_area,
            func.count(QuestionAttempt.id),
            func.sum(case((QuestionAttempt.is_correct.is_(True), 1), else_=0)),
        )
        .select_from(QuestionAttempt)
        .join(Question, Question.id == QuestionAttempt.question_id)
        .join(TestAttempt, TestAttempt.id == QuestionAttempt.attempt_id)
        .where(
            QuestionAttempt.student_id == student_id,
            TestAttempt.qbank_id == qbank_id,
            TestAttempt.status == AttemptStatus.COMPLETED.value,
            Question.client_need_area.is_not(None),
        )
        .group_by(Question.client_need_area)
    )
    totals = {area: (int(attempted), int(correct or 0)) for area, attempted, correct in db.execute(stmt).all()}
    names = list(CLIENT_NEEDS) + sorted(a for a in totals if a not in CLIENT_NEEDS)
    out = []
    for name in names:
        attempted, correct = totals.get(name, (0, 0))
        out.append({"name": name, "attempted": attempted, "correct": correct, "score": accuracy_of(correct, attempted)})
    return out


def generate_study_recommendations(db: Session, enrollment: Enrollment, threshold: float = 60.0) -> List[Dict[str, Any]]:
    recommendations: List[Dict[str, Any]] = []

    weaknesses = strengths_and_weaknesses(db, enrollment.id, threshold)["weaknesses"]
    critical = sorted((w for w in weaknesses if w.accuracy_percentage < CRITICAL_ACCURACY),
                      key=lambda w: (w.accuracy_percentage, w.category_id))
    for row in critical[:MAX_FOCUS_AREAS]:
        name = row.category.name if row.category else f"category {row.category_id}"
        recommendations.append({
            "type": "focus_area",
            "priority": "high",
            "title": f"Focus on {name}",
            "description": f"Your accuracy in {name} is {row.accuracy_percentage:.1f}%. "
                           f"Focus on this area to improve your overall readiness.",
            "action_items": [
                f"Complete 50 questions in {name}",
                "Review explanations for incorrect answers",
                "Take a tutor-mode test focused on this category",
            ],
            "category_id": row.category_id,
        })

    if (enrollment.tutor_tests_completed or 0) > 0 and (enrollment.average_score or 0) > 0 \
            and not enrollment.timed_tests_completed:
        recommendations.append({
            "type": "test_strategy",
            "priority": "medium",
            "title": "Start Taking Timed Tests",
            "description": "You've completed tutor-mode tests. Start practicing with timed tests to simulate exam conditions.",
            "action_items": [
                "Take a 20-question timed test",
                "Practice managing time per question",
                "Build test-taking stamina",
            ],
            "category_id": None,
        })

    recent = recent_tests(db, enrollment.id, settings.RECENT_TESTS_WINDOW)
    if any(a.question_ids and (a.time_spent_seconds or 0) / len(a.question_ids) > settings.SLOW_SECONDS_PER_QUESTION
           for a in recent):
        recommendations.append({
            "type": "time_management",
            "priority": "medium",
            "title": "Improve Test Speed",
            "description": "You're spending more than 2 minutes per question on average. "
                           "Practice with timed tests to improve speed.",
            "action_items": [
                "Take shorter timed tests (10-15 questions)",
                "Set a goal of 1.5 minutes per question",
                "Skip difficult questions and return later",
            ],
            "category_id": None,
        })

    logger.debug(f"Enrollment {enrollment.id}: {len(recommendations)} recommendations")
    return recommendations
