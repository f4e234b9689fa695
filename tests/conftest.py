from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from facultyfeedback.cohort import CohortScope
from facultyfeedback.database import init_db, make_engine, make_session_factory
from facultyfeedback.ingestion import StudentIngestor, SubjectIngestor
from facultyfeedback.main import create_app
from facultyfeedback.rating import QUESTIONS
from facultyfeedback.repositories import (
    AuditRepository,
    FeedbackRepository,
    RoundControlRepository,
    StudentRepository,
    SubjectRepository,
    SubmissionRepository,
)
from facultyfeedback.rounds import RoundController
from facultyfeedback.settings import Settings
from facultyfeedback.submission import FeedbackSubmitter, KeyedLocks, StudentIdentity

COHORT = "2025-2029"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'feedback.db'}"


@pytest.fixture
def engine(database_url):
    engine = make_engine(database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def scope():
    return CohortScope("1-1", "CSE-A", COHORT)


@pytest.fixture
def answers():
    def build(score=5, **overrides):
        return [{"question": q, "score": overrides.get(q, score)} for q in QUESTIONS]

    return build


@pytest.fixture
def rounds(db):
    return RoundController(db, RoundControlRepository(db), AuditRepository(db))


@pytest.fixture
def seed(db, rounds):
    """Load students and subjects for one cohort through the ingestion services."""

    def load(scope, students=(("Asha", "HT001"),), subjects=(("Maths", "J.Smith"), ("Physics Lab", "K. Rao"))):
        student_rows = [(i, {"name": n, "hallticket": h, "branch": scope.branch}) for i, (n, h) in enumerate(students, 1)]
        StudentIngestor(db, StudentRepository(db), SubmissionRepository(db), AuditRepository(db)).ingest(student_rows, scope)
        subject_rows = [(i, {"subject": s, "faculty": f}) for i, (s, f) in enumerate(subjects, 1)]
        SubjectIngestor(db, SubjectRepository(db), rounds, AuditRepository(db)).ingest(subject_rows, scope)

    return load


@pytest.fixture
def make_submitter():
    locks = KeyedLocks()

    def build(session):
        return FeedbackSubmitter(
            session,
            RoundControlRepository(session),
            SubmissionRepository(session),
            FeedbackRepository(session),
            StudentRepository(session),
            locks,
        )

    build.locks = locks
    return build


@pytest.fixture
def identity():
    return StudentIdentity(hallticket="HT001", branch="CSE-A", cohort_year=COHORT)


@pytest.fixture
def settings(database_url):
    return Settings(
        database_url=database_url,
        session_secret="test-secret",
        admin_username="admin",
        admin_password="admin-pass",
        bcrypt_rounds=4,
        ingest_batch_pause_seconds=0,
    )


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c
