import pytest

from qbank_scoring.core.errors import ValidationError
from qbank_scoring.models import orm
from qbank_scoring.services import statistics
from qbank_scoring.services.attempts import AttemptManager
from qbank_scoring.services.grading import GradeResult
from qbank_scoring.services.statistics import (
    GradedItem, StatisticsAggregator, accuracy_of, build_breakdown, needs_remediation, performance_level,
)


def completed(score, mode="timed", correct=7, incorrect=3, unanswered=0, seconds=0):
    return orm.TestAttempt(
        mode=mode, score=score, correct_count=correct, incorrect_count=incorrect,
        unanswered_count=unanswered, time_spent_seconds=seconds,
    )


def fresh_enrollment():
    return orm.Enrollment(
        student_id=1, qbank_id=1, questions_attempted=0, questions_correct=0, tests_completed=0,
        tutor_tests_completed=0, timed_tests_completed=0, assessment_tests_completed=0,
        average_score=0.0, progress=0, total_time_spent_minutes=0,
    )


def test_third_test_keeps_running_average():
    e = fresh_enrollment()
    e.tests_completed, e.average_score, e.highest_score, e.lowest_score = 2, 70.0, 80.0, 60.0
    e.questions_attempted, e.questions_correct = 20, 14
    StatisticsAggregator(None).update_enrollment(e, completed(70.0, seconds=125), 100)
    assert e.average_score == 70.0
    assert e.tests_completed == 3
    assert e.timed_tests_completed == 1
    assert (e.highest_score, e.lowest_score) == (80.0, 60.0)
    assert e.questions_attempted == 30 and e.questions_correct == 21
    assert e.total_time_spent_minutes == 2
    assert e.progress == 21


def test_average_is_mean_of_all_scores():
    e = fresh_enrollment()
    scores = [55.5, 92.0, 71.25, 100.0, 0.0, 33.3]
    agg = StatisticsAggregator(None)
    for s in scores:
        agg.update_enrollment(e, completed(s, mode="tutor"), 500)
    assert e.average_score == pytest.approx(sum(scores) / len(scores))
    assert e.highest_score == 100.0
    assert e.lowest_score == 0.0
    assert e.tutor_tests_completed == len(scores)


def test_first_test_sets_lowest():
    e = fresh_enrollment()
    StatisticsAggregator(None).update_enrollment(e, completed(85.0, mode="assessment"), 10)
    assert e.lowest_score == 85.0 and e.highest_score == 85.0
    assert e.assessment_tests_completed == 1


def test_progress_bounds():
    assert StatisticsAggregator.progress(0, 10) == 0
    assert StatisticsAggregator.progress(5, 0) == 0
    assert StatisticsAggregator.progress(50, 10) == 100
    assert StatisticsAggregator.progress(1, 3) == 33
    assert StatisticsAggregator.progress(1, 8) == 13


def test_accuracy_rounds_half_up():
    assert accuracy_of(2, 3) == 67
    assert accuracy_of(1, 8) == 13
    assert accuracy_of(0, 0) == 0


def test_performance_levels():
    assert performance_level(80) == "mastery"
    assert performance_level(79) == "proficient"
    assert performance_level(65) == "proficient"
    assert performance_level(50) == "developing"
    assert performance_level(49) == "weak"


def test_remediation_needs_enough_attempts():
    assert needs_remediation(40, 5)
    assert not needs_remediation(40, 4)
    assert not needs_remediation(60, 10)


def test_breakdown_groups_by_subject_and_category():
    def item(subject, category_id, ok):
        return GradedItem(orm.Question(subject=subject, category_id=category_id), GradeResult(ok, False, int(ok), 1))
    out = build_breakdown([item("Cardiology", 1, True), item("Cardiology", 1, False), item(None, None, True)])
    assert out["bySubject"]["Cardiology"] == {"attempted": 2, "correct": 1, "accuracy": 50}
    assert out["bySubject"]["Uncategorized"]["correct"] == 1
    assert list(out["byCategory"]) == ["1"]


def test_apply_upserts_subject_and_category_rows(seeded):
    db = seeded
    e = db.query(orm.Enrollment).filter_by(student_id=42, qbank_id=1).one()
    questions = {x.id: x for x in db.query(orm.Question).filter(orm.Question.id.in_([1, 2, 3])).all()}
    items = [
        GradedItem(questions[1], GradeResult(True, False, 1, 1)),
        GradedItem(questions[2], GradeResult(False, False, 0, 1)),
        GradedItem(questions[3], GradeResult(True, False, 1, 1)),
    ]
    agg = StatisticsAggregator(db)
    for _ in range(2):
        agg.update_subjects(e, items)
        agg.update_categories(e, items)
        db.flush()
    db.commit()

    subjects = {r.subject: r for r in statistics.subject_performance(db, e.id)}
    assert subjects["Cardiology"].questions_attempted == 4
    assert subjects["Cardiology"].accuracy_percentage == 100
    assert subjects["Cardiology"].performance_level == "mastery"
    assert subjects["Pharmacology"].questions_correct == 0

    categories = {r.category_id: r for r in statistics.category_performance(db, e.id)}
    assert categories[2].questions_attempted == 2
    assert categories[2].category.name == "Pharmacology"
    assert not categories[2].needs_remediation

    split = statistics.strengths_and_weaknesses(db, e.id)
    assert [r.category_id for r in split["strengths"]] == [1]
    assert [r.category_id for r in split["weaknesses"]] == [2]


def test_trends_reject_unknown_period(seeded):
    with pytest.raises(ValidationError):
        statistics.performance_trends(seeded, 1, "90d")


def run_test(db, answers, mode="tutor", seconds=0):
    manager = AttemptManager(db)
    attempt = manager.start_attempt(42, 1, mode=mode, question_ids=[int(k) for k in answers])
    return manager.finalize_attempt(42, 1, attempt.id, answers, time_spent_seconds=seconds)


def tracked(db, question_id):
    return db.query(orm.RemediationTracking).filter_by(question_id=question_id).one_or_none()


def test_missed_question_clears_after_correct_streak(seeded):
    db = seeded
    run_test(db, {"1": "B", "2": "A"})
    row = tracked(db, 1)
    assert (row.total_attempts, row.consecutive_correct) == (1, 0)
    assert row.needs_remediation and not row.remediation_completed
    first_miss = row.first_incorrect_at
    assert tracked(db, 2) is None

    run_test(db, {"1": "A"})
    assert (row.total_attempts, row.consecutive_correct, row.needs_remediation) == (2, 1, True)

    run_test(db, {"1": "A"})
    assert row.consecutive_correct == 2
    assert not row.needs_remediation and row.remediation_completed
    assert row.first_incorrect_at == first_miss


def test_miss_resets_streak(seeded):
    db = seeded
    run_test(db, {"3": "B"})
    run_test(db, {"3": "A"})
    run_test(db, {"3": "C"})
    row = tracked(db, 3)
    assert (row.total_attempts, row.consecutive_correct) == (3, 0)
    assert row.needs_remediation


def test_remediation_questions_newest_miss_first(seeded):
    db = seeded
    run_test(db, {"1": "B"})
    run_test(db, {"2": "B"})
    run_test(db, {"5": "B"})
    run_test(db, {"5": "A"})
    run_test(db, {"5": "A"})
    e = db.query(orm.Enrollment).filter_by(student_id=42, qbank_id=1).one()

    pending = statistics.remediation_questions(db, e.id)
    assert [(t.question_id, name) for t, name in pending] == [(2, "Pharmacology"), (1, "Cardiovascular")]
    everything = statistics.remediation_questions(db, e.id, include_completed=True)
    assert [t.question_id for t, _ in everything] == [5, 2, 1]


def test_client_needs_counts_completed_answers(seeded):
    db = seeded
    db.get(orm.Question, 11).client_need_area = "Clinical Judgment"
    db.commit()
    run_test(db, {"1": "A", "2": "A", "3": "A", "4": "B", "11": ["A", "C"]}, mode="timed")
    # answers on an open attempt are not counted
    AttemptManager(db).submit_one_answer(42, 1, 5, "A")

    rows = statistics.client_needs_performance(db, 42, 1)
    assert [r["name"] for r in rows] == list(statistics.CLIENT_NEEDS) + ["Clinical Judgment"]
    by_name = {r["name"]: r for r in rows}
    assert by_name["Physiological Integrity"] == {
        "name": "Physiological Integrity", "attempted": 4, "correct": 3, "score": 75,
    }
    assert by_name["Psychosocial Integrity"]["attempted"] == 0
    assert by_name["Clinical Judgment"]["score"] == 100
    assert statistics.client_needs_performance(db, 99, 1)[3]["attempted"] == 0


def test_recommendations_for_weak_slow_tutor_only_student(seeded):
    db = seeded
    e = db.query(orm.Enrollment).filter_by(student_id=42, qbank_id=1).one()
    e.tutor_tests_completed, e.tests_completed, e.average_score = 1, 1, 40.0
    db.add_all([
        orm.CategoryPerformance(enrollment_id=e.id, student_id=42, category_id=1, questions_attempted=10,
                                questions_correct=3, accuracy_percentage=30, needs_remediation=True),
        orm.CategoryPerformance(enrollment_id=e.id, student_id=42, category_id=2, questions_attempted=10,
                                questions_correct=5, accuracy_percentage=55, needs_remediation=False),
        orm.TestAttempt(enrollment_id=e.id, student_id=42, qbank_id=1, mode="tutor", status="completed",
                        question_ids=[1, 2], score=40.0, time_spent_seconds=300),
    ])
    db.flush()

    recs = statistics.generate_study_recommendations(db, e)
    assert [r["type"] for r in recs] == ["focus_area", "test_strategy", "time_management"]
    assert recs[0]["priority"] == "high"
    assert recs[0]["title"] == "Focus on Cardiovascular"
    assert recs[0]["category_id"] == 1
    assert all(r["action_items"] for r in recs)


def test_no_recommendations_without_history(seeded):
    e = seeded.query(orm.Enrollment).filter_by(student_id=42, qbank_id=1).one()
    assert statistics.generate_study_recommendations(seeded, e) == []


def test_timed_practice_silences_strategy_advice(seeded):
    db = seeded
    run_test(db, {"1": "A", "2": "A"}, seconds=60)
    run_test(db, {"3": "A", "4": "A"}, mode="timed", seconds=60)
    e = db.query(orm.Enrollment).filter_by(student_id=42, qbank_id=1).one()
    assert statistics.generate_study_recommendations(db, e) == []
