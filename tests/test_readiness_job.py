import pytest

from qbank_scoring.core import database
from qbank_scoring.core.errors import NotFoundError
from qbank_scoring.jobs.readiness_job import recalculate_readiness_job
from qbank_scoring.models import orm


@pytest.fixture
def job_sessions(monkeypatch, session_factory, seeded):
    monkeypatch.setattr(database, "SessionLocal", session_factory)
    return session_factory


def test_job_persists_readiness(job_sessions):
    out = recalculate_readiness_job(42, 1)
    assert out["level"] == "insufficient_data"
    assert set(out["breakdown"]) == {
        "accuracy", "categoryCoverage", "weakAreaImprovement", "testModePerformance", "confidenceScore",
    }
    with job_sessions() as s:
        e = s.query(orm.Enrollment).filter_by(student_id=42, qbank_id=1).one()
        assert e.id == out["enrollment_id"]
        assert e.readiness_score == out["score"]
        assert e.last_readiness_calculation is not None


def test_job_missing_enrollment(job_sessions):
    with pytest.raises(NotFoundError):
        recalculate_readiness_job(42, 2)
