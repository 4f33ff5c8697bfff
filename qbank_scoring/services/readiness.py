"""
Composite exam-readiness score.

readiness = accuracy*0.40 + categoryCoverage*0.20 + weakAreaImprovement*0.20
          + testModePerformance*0.10 + confidence*0.10, rounded and clamped
to [0, 100]. ``compute_readiness`` is pure; ``ReadinessCalculator`` reads
its inputs from the rollup tables.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from qbank_scoring.core.config import settings
from qbank_scoring.models.orm import AttemptStatus, CategoryPerformance, Enrollment, TestAttempt
from qbank_scoring.services.question_bank import QuestionBankStore
from qbank_scoring.services.statistics import round_half_up

logger = logging.getLogger(__name__)

WEIGHTS = {
    "accuracy": 0.40,
    "categoryCoverage": 0.20,
    "weakAreaImprovement": 0.20,
    "testModePerformance": 0.10,
    "confidenceScore": 0.10,
}
REMEDIATION_PENALTY = 10
INSUFFICIENT_DATA = "insufficient_data"

# (lower bound, level), checked top-down
LEVEL_BANDS = [
    (81, "high"),
    (61, "pass"),
    (51, "borderline"),
    (26, "low"),
    (0, "very_low"),
]


@dataclass
class ReadinessInputs:
    questions_attempted: int = 0
    questions_correct: int = 0
    tests_completed: int = 0
    categories_attempted: int = 0
    total_categories: int = 0
    remediation_count: int = 0
    recent_scores: List[float] = field(default_factory=list)


@dataclass
class ReadinessResult:
    score: int
    level: str
    breakdown: Dict[str, float]

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "level": self.level, "breakdown": self.breakdown}


def readiness_level(score: int, tests_completed: int, min_tests: Optional[int] = None) -> str:
    min_tests = settings.READINESS_MIN_TESTS if min_tests is None else min_tests
    if tests_completed < min_tests:
        return INSUFFICIENT_DATA
    for lower, level in LEVEL_BANDS:
        if score >= lower:
            return level
    return LEVEL_BANDS[-1][1]


def compute_readiness(inputs: ReadinessInputs, min_tests: Optional[int] = None) -> ReadinessResult:
    accuracy = inputs.questions_correct / inputs.questions_attempted * 100 if inputs.questions_attempted > 0 else 0.0
    coverage = inputs.categories_attempted / inputs.total_categories * 100 if inputs.total_categories > 0 else 0.0
    breakdown = {
        "accuracy": accuracy,
        "categoryCoverage": coverage,
        "weakAreaImprovement": float(max(0, 100 - REMEDIATION_PENALTY * inputs.remediation_count)),
        "testModePerformance": sum(inputs.recent_scores) / len(inputs.recent_scores) if inputs.recent_scores else 0.0,
        # proxy until per-question confidence is captured
        "confidenceScore": accuracy * 0.1,
    }
    raw = sum(breakdown[k] * w for k, w in WEIGHTS.items())
    score = max(0, min(100, round_half_up(raw)))
    return ReadinessResult(score, readiness_level(score, inputs.tests_completed, min_tests), breakdown)


class ReadinessCalculator:
    def __init__(self, db: Session, store: Optional[QuestionBankStore] = None):
        self.db = db
        self.store = store or QuestionBankStore(db)

    def gather(self, enrollment: Enrollment) -> ReadinessInputs:
        categories_attempted = self.db.scalar(
            select(func.count(func.distinct(CategoryPerformance.category_id))).where(
                CategoryPerformance.enrollment_id == enrollment.id
            )
        ) or 0
        remediation_count = self.db.scalar(
            select(func.count(CategoryPerformance.id)).where(
                CategoryPerformance.enrollment_id == enrollment.id, CategoryPerformance.needs_remediation.is_(True)
            )
        ) or 0
        recent = self.db.scalars(
            select(TestAttempt.score).where(
                TestAttempt.enrollment_id == enrollment.id, TestAttempt.status == AttemptStatus.COMPLETED.value
            ).order_by(desc(TestAttempt.completed_at), desc(TestAttempt.id)).limit(settings.RECENT_TESTS_WINDOW)
        ).all()
        return ReadinessInputs(
            questions_attempted=enrollment.questions_attempted or 0,
            questions_correct=enrollment.questions_correct or 0,
            tests_completed=enrollment.tests_completed or 0,
            categories_attempted=categories_attempted,
            total_categories=self.store.get_total_category_count(enrollment.qbank_id),
            remediation_count=remediation_count,
            recent_scores=[float(s or 0.0) for s in recent],
        )

    def calculate(self, enrollment: Enrollment) -> ReadinessResult:
        return compute_readiness(self.gather(enrollment))

    def refresh(self, enrollment: Enrollment) -> ReadinessResult:
        """Recalculate and persist readiness on the enrollment row. Caller holds the enrollment lock."""
        result = self.calculate(enrollment)
        enrollment.readiness_score = result.score
        enrollment.readiness_level = result.level
        enrollment.last_readiness_calculation = datetime.utcnow()
        logger.info(f"Enrollment {enrollment.id}: readiness={result.score} ({result.level})")
        return result
