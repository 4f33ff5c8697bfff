"""
Test attempt lifecycle: not_started -> in_progress -> completed.

Every mutation of an attempt or of the enrollment's rollups happens under
``enrollment_lock`` and commits before the lock is released, so retried or
duplicated finalize calls cannot double count.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from qbank_scoring.core.config import settings
from qbank_scoring.core.errors import (
    AttemptStateError, AuthorizationError, NotFoundError, PersistenceError, ValidationError,
)
from qbank_scoring.core.locks import enrollment_lock
from qbank_scoring.models.orm import AttemptStatus, Enrollment, Question, QuestionAttempt, TestAttempt, TestMode
from qbank_scoring.services.answer_keys import decode_stored, encode
from qbank_scoring.services.grading import GradeResult, grade, is_blank, validate_answer
from qbank_scoring.services.question_bank import EnrollmentDirectory, QuestionBankStore
from qbank_scoring.services.readiness import ReadinessCalculator
from qbank_scoring.services.statistics import GradedItem, StatisticsAggregator, build_breakdown

logger = logging.getLogger(__name__)

DEFAULT_QUESTION_COUNT = 10


class AttemptManager:
    def __init__(self, db: Session, store: Optional[QuestionBankStore] = None,
                 enrollments: Optional[EnrollmentDirectory] = None):
        self.db = db
        self.store = store or QuestionBankStore(db)
        self.enrollments = enrollments or EnrollmentDirectory(db)
        self.aggregator = StatisticsAggregator(db)
        self.readiness = ReadinessCalculator(db, self.store)

    # ---------- helpers ----------

    @contextmanager
    def _persisting(self, action: str) -> Iterator[None]:
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}", {"retryable": True}) from e
        except Exception:
            self.db.rollback()
            raise

    def _require_enrollment(self, student_id: int, qbank_id: int, for_update: bool = False) -> Enrollment:
        if not self.enrollments.is_enrolled(student_id, qbank_id):
            raise AuthorizationError("Not enrolled in this Q-Bank", {"qbank_id": qbank_id})
        return self.enrollments.get_enrollment(student_id, qbank_id, for_update=for_update)

    def _open_attempt(self, student_id: int, qbank_id: int) -> Optional[TestAttempt]:
        stmt = select(TestAttempt).where(
            TestAttempt.student_id == student_id,
            TestAttempt.qbank_id == qbank_id,
            TestAttempt.status != AttemptStatus.COMPLETED.value,
        ).with_for_update().execution_options(populate_existing=True)
        return self.db.scalar(stmt)

    def _load_attempt(self, student_id: int, qbank_id: int, attempt_id: int, for_update: bool = False) -> TestAttempt:
        stmt = select(TestAttempt).where(
            TestAttempt.id == attempt_id, TestAttempt.student_id == student_id, TestAttempt.qbank_id == qbank_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        attempt = self.db.scalar(stmt)
        if attempt is None:
            raise NotFoundError("Test attempt not found", {"attempt_id": attempt_id})
        return attempt

    def _new_attempt(self, enrollment: Enrollment, mode: str, question_ids: List[int], fixed: bool,
                     **filters: Any) -> TestAttempt:
        attempt = TestAttempt(
            enrollment_id=enrollment.id, student_id=enrollment.student_id, qbank_id=enrollment.qbank_id,
            mode=mode, status=AttemptStatus.IN_PROGRESS.value, question_ids=question_ids,
            fixed_question_set=fixed, started_at=datetime.utcnow(),
            correct_count=0, incorrect_count=0, unanswered_count=0, time_spent_seconds=0,
            **filters,
        )
        self.db.add(attempt)
        self.db.flush()
        logger.info(f"Created {mode} attempt {attempt.id} for student {enrollment.student_id} qbank {enrollment.qbank_id}")
        return attempt

    def _question_attempts(self, attempt: TestAttempt) -> Dict[int, QuestionAttempt]:
        rows = self.db.scalars(
            select(QuestionAttempt).where(
                QuestionAttempt.attempt_id == attempt.id, QuestionAttempt.student_id == attempt.student_id
            )
        ).all()
        return {r.question_id: r for r in rows}

    def _upsert_question_attempt(self, attempt: TestAttempt, question: Question, answer: Any,
                                 result: GradeResult, existing: Optional[QuestionAttempt] = None) -> QuestionAttempt:
        if existing is None:
            existing = self.db.scalar(
                select(QuestionAttempt).where(
                    QuestionAttempt.attempt_id == attempt.id,
                    QuestionAttempt.question_id == question.id,
                    QuestionAttempt.student_id == attempt.student_id,
                )
            )
        row = existing
        if row is None:
            row = QuestionAttempt(
                attempt_id=attempt.id, question_id=question.id, student_id=attempt.student_id, is_first_attempt=True
            )
            self.db.add(row)
        else:
            row.is_first_attempt = False
        row.submitted_answer = encode(answer)
        row.correct_answer = encode(decode_stored(question.correct_answer).value)
        row.is_correct = result.is_correct
        row.is_partially_correct = result.is_partially_correct
        row.points_earned = result.points_earned
        row.attempted_at = datetime.utcnow()
        return row

    @staticmethod
    def _resumable(attempt: TestAttempt, mode: str, question_ids: Optional[List[int]]) -> bool:
        if attempt.mode != mode:
            return False
        if question_ids:
            return attempt.fixed_question_set and set(question_ids) == set(attempt.question_ids or [])
        return True

    @staticmethod
    def _with_question(question_ids: List[int], question_id: int) -> List[int]:
        # reassign instead of appending so the JSON column is marked dirty
        return list(question_ids or []) + ([question_id] if question_id not in (question_ids or []) else [])

    # ---------- operations ----------

    def start_attempt(self, student_id: int, qbank_id: int, mode: str = TestMode.TUTOR.value,
                      question_ids: Optional[List[int]] = None, question_count: Optional[int] = None,
                      category_id: Optional[int] = None, difficulty: Optional[str] = None,
                      subjects: Optional[List[str]] = None, time_limit_minutes: Optional[int] = None) -> TestAttempt:
        """Create an in-progress attempt, or resume the open one."""
        if mode not in {m.value for m in TestMode}:
            raise ValidationError(f"Unknown test mode '{mode}'", {"mode": mode})
        self._require_enrollment(student_id, qbank_id)
        with enrollment_lock(student_id, qbank_id), self._persisting("start attempt"):
            enrollment = self.enrollments.get_enrollment(student_id, qbank_id, for_update=True)
            existing = self._open_attempt(student_id, qbank_id)
            if existing is not None:
                if not self._resumable(existing, mode, question_ids):
                    raise AttemptStateError(
                        "Another test is still open, submit it first",
                        {"attempt_id": existing.id, "mode": existing.mode},
                    )
                logger.info(f"Resuming open attempt {existing.id} for student {student_id} qbank {qbank_id}")
                return existing
            if question_ids:
                wanted = list(dict.fromkeys(question_ids))
                found = {q.id for q in self.store.get_questions_by_ids(qbank_id, wanted)}
                missing = [qid for qid in wanted if qid not in found]
                if missing:
                    raise ValidationError("Unknown questions for this Q-Bank", {"question_ids": missing})
            else:
                picked = self.store.select_questions(
                    qbank_id, question_count or DEFAULT_QUESTION_COUNT, category_id, difficulty, subjects
                )
                if not picked:
                    raise ValidationError("No questions matching your criteria found")
                wanted = [q.id for q in picked]
            return self._new_attempt(
                enrollment, mode, wanted, fixed=True,
                category_filter=category_id, difficulty_filter=difficulty,
                time_limit_minutes=time_limit_minutes or settings.DEFAULT_TIME_LIMIT_MINUTES,
            )

    def submit_one_answer(self, student_id: int, qbank_id: int, question_id: int, answer: Any,
                          attempt_id: Optional[int] = None) -> Dict[str, Any]:
        """Grade one answer with immediate feedback (tutor mode). Safe to retry."""
        self._require_enrollment(student_id, qbank_id)
        question = self.store.get_question(qbank_id, question_id)
        if question is None:
            raise ValidationError("Question not found in this Q-Bank", {"question_id": question_id})
        validate_answer(question, answer)

        with enrollment_lock(student_id, qbank_id), self._persisting("submit answer"):
            if attempt_id is not None:
                attempt = self._load_attempt(student_id, qbank_id, attempt_id, for_update=True)
                if attempt.is_completed:
                    raise AttemptStateError("Test attempt is already completed", {"attempt_id": attempt.id})
            else:
                attempt = self._open_attempt(student_id, qbank_id)
                if attempt is None:
                    enrollment = self.enrollments.get_enrollment(student_id, qbank_id)
                    attempt = self._new_attempt(enrollment, TestMode.TUTOR.value, [], fixed=False)
            if attempt.fixed_question_set and question_id not in (attempt.question_ids or []):
                raise ValidationError("Question is not part of this test", {"question_id": question_id})
            if attempt.status == AttemptStatus.NOT_STARTED.value:
                attempt.status = AttemptStatus.IN_PROGRESS.value
                attempt.started_at = attempt.started_at or datetime.utcnow()
            attempt.question_ids = self._with_question(attempt.question_ids, question_id)

            result = grade(question, answer)
            self._upsert_question_attempt(attempt, question, answer, result)
            attempt_handle = attempt.id

        return {
            "attemptId": attempt_handle,
            "questionId": question.id,
            "isCorrect": result.is_correct,
            "isPartiallyCorrect": result.is_partially_correct,
            "correctAnswer": decode_stored(question.correct_answer).value,
            "explanation": question.explanation,
            "pointsEarned": result.points_earned,
            "totalPoints": question.points,
        }

    def finalize_attempt(self, student_id: int, qbank_id: int, attempt_id: int,
                         answers: Optional[Mapping[Any, Any]] = None, time_spent_seconds: int = 0) -> Dict[str, Any]:
        """Grade every answer, complete the attempt and fold it into the rollups."""
        answers = self._normalize_answers(answers or {})
        if time_spent_seconds is None or time_spent_seconds < 0:
            raise ValidationError("time_spent_seconds must be non-negative")
        self._require_enrollment(student_id, qbank_id)

        with enrollment_lock(student_id, qbank_id), self._persisting("finalize attempt"):
            enrollment = self.enrollments.get_enrollment(student_id, qbank_id, for_update=True)
            attempt = self._load_attempt(student_id, qbank_id, attempt_id, for_update=True)
            if attempt.is_completed:
                raise AttemptStateError("Test attempt is already completed", {"attempt_id": attempt.id})

            previous = self._question_attempts(attempt)
            ordered_ids = list(dict.fromkeys(list(attempt.question_ids or []) + list(previous) + list(answers)))
            questions = {q.id: q for q in self.store.get_questions_by_ids(qbank_id, ordered_ids)}
            unknown = [qid for qid in answers if qid not in questions]
            if unknown:
                raise ValidationError("Unknown questions for this Q-Bank", {"question_ids": unknown})
            if attempt.fixed_question_set:
                outside = [qid for qid in answers if qid not in (attempt.question_ids or [])]
                if outside:
                    raise ValidationError("Questions are not part of this test", {"question_ids": outside})
            answered = {qid: a for qid, a in answers.items() if not is_blank(a)}
            for qid, a in answered.items():
                validate_answer(questions[qid], a)

            items: List[GradedItem] = []
            for qid, a in answered.items():
                result = grade(questions[qid], a)
                self._upsert_question_attempt(attempt, questions[qid], a, result, previous.get(qid))
                items.append(GradedItem(questions[qid], result))
            for qid, row in previous.items():
                # tutor-mode answers not resubmitted keep their stored grade
                if qid in answered or qid not in questions:
                    continue
                q = questions[qid]
                items.append(GradedItem(q, GradeResult(row.is_correct, row.is_partially_correct, row.points_earned, q.points)))

            total = len(ordered_ids)
            correct = sum(1 for i in items if i.result.is_correct)
            score = correct / total * 100 if total else 0.0
            breakdown = build_breakdown(items)

            attempt.question_ids = ordered_ids
            attempt.correct_count = correct
            attempt.incorrect_count = len(items) - correct
            attempt.unanswered_count = total - len(items)
            attempt.score = score
            attempt.is_passed = score >= settings.PASSING_SCORE
            attempt.time_spent_seconds = int(time_spent_seconds)
            attempt.performance_breakdown = breakdown
            attempt.status = AttemptStatus.COMPLETED.value
            attempt.completed_at = datetime.utcnow()
            self.db.flush()

            self.aggregator.apply(enrollment, attempt, items, self.store.get_total_question_count(qbank_id))
            readiness = self.readiness.refresh(enrollment)
            logger.info(f"Finalized attempt {attempt.id}: {correct}/{total} score={score:.1f}")

        return {
            "attemptId": attempt.id,
            "score": score,
            "correctCount": attempt.correct_count,
            "incorrectCount": attempt.incorrect_count,
            "unansweredCount": attempt.unanswered_count,
            "totalQuestions": total,
            "isPassed": attempt.is_passed,
            "readiness": {"score": readiness.score, "level": readiness.level},
            "performanceBreakdown": breakdown,
            "message": "Test submitted successfully",
        }

    def get_attempt(self, student_id: int, qbank_id: int, attempt_id: int) -> Dict[str, Any]:
        attempt = self._load_attempt(student_id, qbank_id, attempt_id)
        rows = self._question_attempts(attempt)
        return {
            "attemptId": attempt.id,
            "mode": attempt.mode,
            "status": attempt.status,
            "questionIds": list(attempt.question_ids or []),
            "timeLimitMinutes": attempt.time_limit_minutes,
            "startedAt": attempt.started_at,
            "completedAt": attempt.completed_at,
            "score": attempt.score,
            "correctCount": attempt.correct_count,
            "incorrectCount": attempt.incorrect_count,
            "unansweredCount": attempt.unanswered_count,
            "isPassed": attempt.is_passed,
            "performanceBreakdown": attempt.performance_breakdown,
            "answers": [
                {
                    "questionId": r.question_id,
                    "submittedAnswer": decode_stored(r.submitted_answer).value,
                    "correctAnswer": decode_stored(r.correct_answer).value,
                    "isCorrect": r.is_correct,
                    "isPartiallyCorrect": r.is_partially_correct,
                    "pointsEarned": r.points_earned,
                    "isFirstAttempt": r.is_first_attempt,
                }
                for r in rows.values()
            ],
        }

    @staticmethod
    def _normalize_answers(answers: Mapping[Any, Any]) -> Dict[int, Any]:
        out: Dict[int, Any] = {}
        for key, value in answers.items():
            try:
                out[int(key)] = value
            except (TypeError, ValueError):
                raise ValidationError("Answer keys must be question ids", {"key": str(key)})
        return out
