from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from qbank_scoring.models.orm import Enrollment, Question


class QuestionBankStore:
    """Read access to question bank content."""

    def __init__(self, db: Session):
        self.db = db

    def get_question(self, qbank_id: int, question_id: int) -> Optional[Question]:
        return self.db.scalar(select(Question).where(Question.id == question_id, Question.qbank_id == qbank_id))

    def get_questions_by_ids(self, qbank_id: int, ids: Iterable[int]) -> List[Question]:
        ids = list(ids)
        if not ids:
            return []
        stmt = select(Question).where(Question.qbank_id == qbank_id, Question.id.in_(ids))
        return list(self.db.scalars(stmt).all())

    def get_total_question_count(self, qbank_id: int) -> int:
        return self.db.scalar(select(func.count(Question.id)).where(Question.qbank_id == qbank_id)) or 0

    def get_total_category_count(self, qbank_id: int) -> int:
        # categories that hold at least one question of the bank
        stmt = select(func.count(func.distinct(Question.category_id))).where(
            Question.qbank_id == qbank_id, Question.category_id.is_not(None)
        )
        return self.db.scalar(stmt) or 0

    def select_questions(self, qbank_id: int, count: int, category_id: Optional[int] = None,
                         difficulty: Optional[str] = None, subjects: Optional[List[str]] = None) -> List[Question]:
        stmt = select(Question).where(Question.qbank_id == qbank_id)
        if category_id is not None:
            stmt = stmt.where(Question.category_id == category_id)
        if difficulty:
            stmt = stmt.where(Question.difficulty == difficulty)
        if subjects:
            stmt = stmt.where(Question.subject.in_(subjects))
        stmt = stmt.order_by(func.random()).limit(count)
        return list(self.db.scalars(stmt).all())


class EnrollmentDirectory:
    """Enrollment access checks."""

    def __init__(self, db: Session):
        self.db = db

    def get_enrollment(self, student_id: int, qbank_id: int, for_update: bool = False) -> Optional[Enrollment]:
        stmt = select(Enrollment).where(Enrollment.student_id == student_id, Enrollment.qbank_id == qbank_id)
        if for_update:
            # refresh rows already in the identity map from the locked read
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.scalar(stmt)

    def is_enrolled(self, student_id: int, qbank_id: int) -> bool:
        enrollment = self.get_enrollment(student_id, qbank_id)
        return bool(enrollment and enrollment.is_active)
