from datetime import datetime

import pytest

from facultyfeedback.cohort import CohortScope
from facultyfeedback.errors import ValidationError
from facultyfeedback.ingestion import (
    STUDENT_COLUMNS,
    SUBJECT_COLUMNS,
    StudentIngestor,
    SubjectIngestor,
    read_rows,
)
from facultyfeedback.repositories import (
    AuditRepository,
    StudentRepository,
    SubjectRepository,
    SubmissionRepository,
)

COHORT = "2025-2029"


@pytest.fixture
def ingestor(db):
    return StudentIngestor(db, StudentRepository(db), SubmissionRepository(db), AuditRepository(db))


def rows(*students):
    return [(i, {"name": n, "hallticket": h, "branch": b}) for i, (n, h, b) in enumerate(students, 1)]


def test_read_rows_skips_header_and_blank_lines():
    text = "\ufeffname,hallticket,branch\nAsha,HT001,CSE-A\n\n Ravi , HT002 ,CSE-A\nBroken\n"
    parsed = read_rows(text, STUDENT_COLUMNS)
    assert [line for line, _ in parsed] == [2, 4, 5]
    assert parsed[0][1] == {"name": "Asha", "hallticket": "HT001", "branch": "CSE-A"}
    assert parsed[2][1]["branch"] is None


def test_read_rows_without_header():
    parsed = read_rows("Maths,J.Smith\nPhysics Lab,K. Rao\n", SUBJECT_COLUMNS)
    assert [r for _, r in parsed] == [
        {"subject": "Maths", "faculty": "J.Smith"},
        {"subject": "Physics Lab", "faculty": "K. Rao"},
    ]


def test_reimport_updates_name_and_keeps_registration(db, ingestor, scope):
    summary = ingestor.ingest(rows(("Asha", "HT001", "CSE-A")), scope)
    assert (summary.new, summary.updated, summary.processed) == (1, 0, 1)

    student = StudentRepository(db).get("HT001", COHORT)
    student.email = "asha@example.com"
    student.password_hash = "hash"
    db.commit()

    summary = ingestor.ingest(rows(("Asha Rao", "HT001", "CSE-A")), scope)
    assert (summary.new, summary.updated) == (0, 1)
    records = StudentRepository(db).all_for_hallticket("HT001")
    assert len(records) == 1
    assert records[0].name == "Asha Rao"
    assert records[0].email == "asha@example.com"
    assert records[0].password_hash == "hash"


def test_same_hallticket_in_another_cohort_gets_its_own_record(db, ingestor, scope):
    ingestor.ingest(rows(("Asha", "HT001", "CSE-A")), scope)
    first = StudentRepository(db).get("HT001", COHORT)
    first.email = "asha@example.com"
    db.commit()

    later = CohortScope("1-1", "CSE-A", "2026-2030")
    summary = ingestor.ingest(rows(("Asha", "HT001", "CSE-A")), later)
    assert summary.new == 1
    records = StudentRepository(db).all_for_hallticket("HT001")
    assert sorted(r.cohort_year for r in records) == ["2025-2029", "2026-2030"]
    assert StudentRepository(db).get("HT001", "2026-2030").email is None


def test_bad_rows_do_not_abort_the_batch(ingestor, scope):
    data = rows(("Asha", "HT001", "CSE-A"), ("", "HT002", "CSE-A"), ("Ravi", "HT003", "CSE-A"))
    data.append((4, {"name": "Mia", "hallticket": "HT004", "branch": None}))
    summary = ingestor.ingest(data, scope)
    assert summary.processed == 2
    assert summary.errors == 2
    report = summary.to_dict()
    assert report["total"] == 4
    assert [r["line"] for r in report["error_rows"]] == [2, 4]
    assert report["error_rows"][0]["hallticket"] == "HT002"


def test_submission_stub_is_created_once_and_never_reset(db, ingestor, scope):
    submissions = SubmissionRepository(db)
    ingestor.ingest(rows(("Asha", "HT001", "CSE-A")), scope)
    stub = submissions.get("HT001", scope)
    assert stub is not None
    assert (stub.initial_submitted, stub.final_submitted) == (False, False)

    assert submissions.claim_round("HT001", scope, "initial", datetime(2025, 9, 1))
    db.commit()
    ingestor.ingest(rows(("Asha", "HT001", "CSE-A")), scope)
    assert submissions.get("HT001", scope).initial_submitted is True
    assert len(submissions.list_for_scope(scope)) == 1


def test_empty_upload_is_rejected(ingestor, scope):
    with pytest.raises(ValidationError) as exc:
        ingestor.ingest([], scope)
    assert exc.value.code == "empty_upload"


def test_batches_pause_between_chunks(db, scope):
    pauses = []
    ingestor = StudentIngestor(
        db, StudentRepository(db), SubmissionRepository(db), batch_size=2, batch_pause_seconds=0.5, sleep=pauses.append
    )
    data = rows(*[(f"S{i}", f"HT{i:03d}", "CSE-A") for i in range(5)])
    summary = ingestor.ingest(data, scope)
    assert summary.new == 5
    assert pauses == [0.5, 0.5]


def test_subject_upload_replaces_the_cohort_set(db, rounds, scope):
    ingestor = SubjectIngestor(db, SubjectRepository(db), rounds, AuditRepository(db))
    ingestor.ingest([(1, {"subject": "Maths", "faculty": "J.Smith"}), (2, {"subject": "Chemistry", "faculty": "A. Devi"})], scope)
    summary = ingestor.ingest(
        [(1, {"subject": "Physics Lab", "faculty": "K. Rao"}), (2, {"subject": "", "faculty": "Nobody"})], scope
    )
    assert summary.inserted == 1
    assert summary.to_dict()["skipped"] == 1
    assert [s.subject for s in SubjectRepository(db).list_for_scope(scope)] == ["Physics Lab"]


def test_subject_upload_with_no_valid_rows(db, rounds, scope):
    ingestor = SubjectIngestor(db, SubjectRepository(db), rounds)
    with pytest.raises(ValidationError):
        ingestor.ingest([(1, {"subject": "Maths", "faculty": None})], scope)
