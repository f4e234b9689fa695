import threading

import pytest
from sqlalchemy import func, select

from facultyfeedback.errors import AuthorizationError, StateConflictError, ValidationError
from facultyfeedback.models import Feedback
from facultyfeedback.repositories import FeedbackRepository
from facultyfeedback.submission import KeyedLocks, StudentIdentity, SubjectFeedback


def feedback_count(db) -> int:
    return db.scalar(select(func.count(Feedback.id)))


@pytest.fixture
def items(answers):
    return [SubjectFeedback("Maths", "J.Smith", answers(5)), SubjectFeedback("Physics Lab", "K. Rao", answers(4))]


def test_accepts_once_then_rejects_duplicate(db, seed, scope, identity, items, make_submitter):
    seed(scope)
    submitter = make_submitter(db)
    receipt = submitter.submit(identity, "1-1", "initial", items, suggestion="  Good  ")
    assert receipt.accepted and receipt.subjects == 2
    assert submitter.is_submitted(identity, "1-1", "initial")
    assert not submitter.is_submitted(identity, "1-1", "final")

    stored = db.scalars(select(Feedback).order_by(Feedback.subject)).all()
    assert [(f.subject, f.round, f.suggestion) for f in stored] == [
        ("Maths", "initial", "Good"),
        ("Physics Lab", "initial", "Good"),
    ]

    with pytest.raises(StateConflictError) as exc:
        submitter.submit(identity, "1-1", "initial", items)
    assert exc.value.code == "already_submitted"
    assert feedback_count(db) == 2


def test_closed_round_is_rejected(db, seed, scope, identity, items, make_submitter):
    seed(scope)
    with pytest.raises(StateConflictError) as exc:
        make_submitter(db).submit(identity, "1-1", "final", items)
    assert exc.value.code == "round_closed"
    assert feedback_count(db) == 0


def test_final_round_after_enabling(db, seed, scope, rounds, identity, items, make_submitter):
    seed(scope)
    submitter = make_submitter(db)
    submitter.submit(identity, "1-1", "initial", items)
    rounds.set_enabled(scope, "final", True)
    submitter.submit(identity, "1-1", "final", items)
    assert submitter.is_submitted(identity, "1-1", "final")
    assert feedback_count(db) == 4


def test_scope_mismatch_is_unauthorized(db, seed, scope, identity, items, make_submitter):
    seed(scope)
    submitter = make_submitter(db)
    with pytest.raises(AuthorizationError):
        submitter.submit(identity, "1-1", "initial", items, branch="CSE-B")
    with pytest.raises(AuthorizationError):
        submitter.submit(identity, "1-1", "initial", items, cohort_year="2024-2028")
    stranger = StudentIdentity(hallticket="HT999", branch="CSE-A", cohort_year=identity.cohort_year)
    with pytest.raises(AuthorizationError):
        submitter.submit(stranger, "1-1", "initial", items)
    wrong_branch = StudentIdentity(hallticket="HT001", branch="CSE-B", cohort_year=identity.cohort_year)
    with pytest.raises(AuthorizationError):
        submitter.submit(wrong_branch, "1-1", "initial", items)
    assert not submitter.is_submitted(identity, "1-1", "initial")


def test_invalid_payloads(db, seed, scope, identity, answers, make_submitter):
    seed(scope)
    submitter = make_submitter(db)
    with pytest.raises(ValidationError):
        submitter.submit(identity, "1-1", "initial", [])
    with pytest.raises(ValidationError):
        submitter.submit(identity, "1-1", "initial", [SubjectFeedback("Maths", "J.Smith", answers(5)[:3])])
    with pytest.raises(ValidationError):
        submitter.submit(identity, "1-1", "midterm", [SubjectFeedback("Maths", "J.Smith", answers(5))])
    assert not submitter.is_submitted(identity, "1-1", "initial")


class FailingFeedbackRepository(FeedbackRepository):
    def __init__(self, db, fail_on_call):
        super().__init__(db)
        self.calls = 0
        self.fail_on_call = fail_on_call

    def add(self, *args, **kwargs):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise RuntimeError("disk full")
        return super().add(*args, **kwargs)


def test_partial_write_leaves_flag_unset(db, seed, scope, identity, items, make_submitter):
    seed(scope)
    submitter = make_submitter(db)
    submitter.feedback = FailingFeedbackRepository(db, fail_on_call=2)
    with pytest.raises(RuntimeError):
        submitter.submit(identity, "1-1", "initial", items)
    assert not submitter.is_submitted(identity, "1-1", "initial")
    assert feedback_count(db) == 0

    submitter.feedback = FeedbackRepository(db)
    submitter.submit(identity, "1-1", "initial", items)
    assert feedback_count(db) == 2


def test_concurrent_duplicates_only_one_succeeds(db, session_factory, seed, scope, identity, items, make_submitter):
    seed(scope)
    db.commit()
    barrier = threading.Barrier(2)
    outcomes = []

    def attempt():
        session = session_factory()
        try:
            submitter = make_submitter(session)
            barrier.wait()
            submitter.submit(identity, "1-1", "initial", items)
            outcomes.append("accepted")
        except StateConflictError as exc:
            outcomes.append(exc.code)
        finally:
            session.close()

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert sorted(outcomes) == ["accepted", "already_submitted"]
    assert feedback_count(db) == 2
    assert len(make_submitter.locks) == 0


def test_keyed_locks_serialize_same_key_only():
    locks = KeyedLocks()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def hold_a():
        with locks.hold("a"):
            entered.set()
            release.wait(5)
            order.append("first-a")

    worker = threading.Thread(target=hold_a)
    worker.start()
    entered.wait(5)
    with locks.hold("b"):
        order.append("b")
    release.set()
    with locks.hold("a"):
        order.append("second-a")
    worker.join(5)

    assert order == ["b", "first-a", "second-a"]
    assert len(locks) == 0
