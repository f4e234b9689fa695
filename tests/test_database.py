import threading

import pytest
from sqlalchemy import event

from facultyfeedback.database import begin_write
from facultyfeedback.repositories import RoundControlRepository
from facultyfeedback.rounds import RoundController


@pytest.fixture
def begins(engine):
    seen = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("BEGIN"):
            seen.append(statement)

    event.listen(engine, "before_cursor_execute", record)
    yield seen
    event.remove(engine, "before_cursor_execute", record)


def run_in_thread(fn, timeout=5):
    outcome = {}

    def target():
        try:
            outcome["value"] = fn()
        except Exception as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=target)
    worker.start()
    worker.join(timeout)
    assert not worker.is_alive(), "call blocked on the database"
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")


def test_reads_use_deferred_transactions(db, scope, begins):
    RoundControlRepository(db).get(scope)
    db.commit()
    begin_write(db)
    db.rollback()
    assert begins == ["BEGIN", "BEGIN IMMEDIATE"]


def test_begin_write_commits_open_work(db, session_factory, scope):
    RoundControlRepository(db).get_or_create(scope)
    begin_write(db)
    db.rollback()
    with session_factory() as other:
        assert RoundControlRepository(other).get(scope) is not None


def test_open_readers_do_not_block_each_other(db, session_factory, seed, scope):
    seed(scope)
    assert RoundControlRepository(db).get(scope) is not None
    assert db.in_transaction()

    def read():
        with session_factory() as other:
            return RoundControlRepository(other).get(scope).initial_enabled

    assert run_in_thread(read) is True
    db.rollback()


def test_open_reader_does_not_block_a_writer(db, session_factory, seed, scope):
    seed(scope)
    RoundControlRepository(db).get(scope)
    assert db.in_transaction()

    def write():
        with session_factory() as other:
            controller = RoundController(other, RoundControlRepository(other))
            return controller.set_enabled(scope, "final", True).final_enabled

    assert run_in_thread(write) is True
    db.rollback()
    assert RoundControlRepository(db).get(scope).final_enabled is True
