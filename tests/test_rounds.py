from datetime import datetime, timedelta

import pytest

from facultyfeedback.cohort import CohortScope
from facultyfeedback.errors import ValidationError
from facultyfeedback.ingestion import SubjectIngestor
from facultyfeedback.models import AuditLog
from facultyfeedback.repositories import AuditRepository, RoundControlRepository, SubjectRepository
from facultyfeedback.rounds import RoundController, validate_round
from sqlalchemy import select

NOW = datetime(2025, 9, 1, 10, 0, 0)


@pytest.fixture
def controller(db):
    return RoundController(db, RoundControlRepository(db), AuditRepository(db), final_window_days=7, clock=lambda: NOW)


def test_cohort_without_record_accepts_only_initial(controller, scope):
    state = controller.status(scope)
    assert state.initial_enabled is True
    assert state.final_enabled is False
    assert controller.is_open(scope, "initial")
    assert not controller.is_open(scope, "final")


def test_enabling_final_stamps_end_date_a_week_ahead(controller, scope):
    state = controller.set_enabled(scope, "final", True, actor="admin")
    assert state.final_enabled is True
    assert state.final_end_date == NOW + timedelta(days=7)
    assert state.initial_end_date is None


def test_disabling_final_keeps_its_end_date(db, scope):
    times = iter([NOW, NOW + timedelta(days=3)])
    controller = RoundController(db, RoundControlRepository(db), clock=lambda: next(times))
    controller.set_enabled(scope, "final", True)
    state = controller.set_enabled(scope, "final", False)
    assert state.final_enabled is False
    assert state.final_end_date == NOW + timedelta(days=7)


def test_initial_end_date_only_stamped_on_disable(controller, scope):
    assert controller.set_enabled(scope, "initial", True).initial_end_date is None
    state = controller.set_enabled(scope, "initial", False)
    assert state.initial_enabled is False
    assert state.initial_end_date == NOW
    assert state.final_end_date is None


def test_toggles_are_audited(db, controller, scope):
    controller.set_enabled(scope, "final", True, actor="admin")
    controller.set_enabled(scope, "final", False, actor="admin")
    actions = [a.action for a in db.scalars(select(AuditLog).order_by(AuditLog.created_at))]
    assert sorted(actions) == ["DISABLE_ROUND", "ENABLE_ROUND"]


def test_rounds_are_per_cohort(controller, scope):
    controller.set_enabled(scope, "initial", False)
    other = CohortScope(scope.class_code, "CSE-B", scope.cohort_year)
    assert controller.is_open(other, "initial")
    assert not controller.is_open(scope, "initial")


def test_invalid_round_name():
    assert validate_round(" Final ") == "final"
    with pytest.raises(ValidationError) as exc:
        validate_round("midterm")
    assert exc.value.code == "invalid_round"


def test_subject_upload_reenables_initial(db, controller, scope):
    controller.set_enabled(scope, "initial", False)
    ingestor = SubjectIngestor(db, SubjectRepository(db), controller, AuditRepository(db))
    summary = ingestor.ingest([(1, {"subject": "Maths", "faculty": "J.Smith"})], scope)
    assert summary.inserted == 1
    assert controller.is_open(scope, "initial")
    # Uploading again is idempotent for the round state.
    ingestor.ingest([(1, {"subject": "Maths", "faculty": "J.Smith"})], scope)
    assert controller.is_open(scope, "initial")
    assert len(SubjectRepository(db).list_for_scope(scope)) == 1
