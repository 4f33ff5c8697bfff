import threading

import pytest
from sqlalchemy import create_engine

from qbank_scoring.core import database
from qbank_scoring.core.errors import AttemptStateError
from qbank_scoring.models import orm
from qbank_scoring.services.attempts import AttemptManager

WORKERS = 4


@pytest.fixture
def engine(tmp_path):
    # one connection per thread, unlike the shared in-memory database
    eng = create_engine(
        f"sqlite:///{tmp_path / 'scoring.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}, future=True,
    )
    database.init_db(bind=eng)
    yield eng
    eng.dispose()


def test_concurrent_finalize_counts_once(seeded, session_factory):
    attempt = AttemptManager(seeded).start_attempt(42, 1, mode="timed", question_ids=[1, 2])
    barrier = threading.Barrier(WORKERS)
    outcomes = []
    guard = threading.Lock()

    def finalize():
        with session_factory() as s:
            barrier.wait()
            try:
                result = AttemptManager(s).finalize_attempt(42, 1, attempt.id, {"1": "A", "2": "B"},
                                                            time_spent_seconds=60)
                outcome = ("ok", result["score"])
            except AttemptStateError as e:
                outcome = ("conflict", e.details["attempt_id"])
        with guard:
            outcomes.append(outcome)

    threads = [threading.Thread(target=finalize) for _ in range(WORKERS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == sorted([("ok", 50.0)] + [("conflict", attempt.id)] * (WORKERS - 1))

    with session_factory() as s:
        e = s.query(orm.Enrollment).filter_by(student_id=42, qbank_id=1).one()
        assert e.tests_completed == 1 and e.timed_tests_completed == 1
        assert e.questions_attempted == 2 and e.questions_correct == 1
        assert s.query(orm.QuestionAttempt).filter_by(attempt_id=attempt.id).count() == 2
        assert s.get(orm.TestAttempt, attempt.id).status == "completed"
