import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOCK_BACKEND", "local")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("APP_SECRET", "test-secret")

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from qbank_scoring.core import database
from qbank_scoring.core.auth import create_token
from qbank_scoring.models import orm

STUDENT_ID = 42
QBANK_ID = 1


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True)
    database.init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


def make_question(qid, question_type="single", correct="A", points=1, category_id=1, subject="Cardiology",
                  options=None, tolerance=None, qbank_id=QBANK_ID):
    return orm.Question(
        id=qid, qbank_id=qbank_id, question_type=question_type, prompt=f"Question {qid}",
        correct_answer=json.dumps(correct),
        options=json.dumps(options) if options is not None else None,
        explanation=f"Rationale {qid}", points=points, tolerance=tolerance,
        subject=subject, lesson=f"{subject} basics", client_need_area="Physiological Integrity",
        category_id=category_id, difficulty="medium",
    )


@pytest.fixture
def seeded(db):
    """Bank 1: ten single-answer questions (odd ids Cardiology/category 1, even ids
    Pharmacology/category 2) plus SATA, bow-tie and dosage items."""
    db.add_all([orm.QuestionBank(id=1, name="NCLEX-RN"), orm.QuestionBank(id=2, name="Other")])
    db.flush()
    db.add_all([
        orm.Category(id=1, qbank_id=1, name="Cardiovascular"),
        orm.Category(id=2, qbank_id=1, name="Pharmacology"),
    ])
    db.flush()
    for qid in range(1, 11):
        odd = qid % 2 == 1
        db.add(make_question(qid, category_id=1 if odd else 2, subject="Cardiology" if odd else "Pharmacology"))
    db.add(make_question(11, "sata", ["A", "C"]))
    db.add(make_question(12, "bowtie", {"condition": "X", "findings": ["F1", "F2", "F3"], "actions": ["A1", "A2"]}, points=5))
    db.add(make_question(13, "dosage_calculation", 50, tolerance=2))
    db.add(make_question(20, qbank_id=2, category_id=None))
    db.add_all([
        orm.Enrollment(student_id=STUDENT_ID, qbank_id=QBANK_ID),
        orm.Enrollment(student_id=7, qbank_id=QBANK_ID, is_active=False),
    ])
    db.commit()
    return db


@pytest.fixture
def client(session_factory, seeded):
    from qbank_scoring.main import app

    def override_get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[database.get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    def make(user_id=STUDENT_ID, roles=("student",)):
        return {"Authorization": f"Bearer {create_token(str(user_id), list(roles))}"}
    return make
