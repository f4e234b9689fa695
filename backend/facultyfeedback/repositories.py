"""Per-entity data access over one Session; services receive these, not the Session."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .cohort import CohortScope
from .models import AuditLog, Feedback, FeedbackSubmission, RoundControl, Student, Subject


def scope_filters(model, class_code: Optional[str] = None, branch: Optional[str] = None, cohort_year: Optional[str] = None) -> list:
    clauses = []
    if class_code:
        clauses.append(model.class_code == class_code)
    if branch:
        clauses.append(model.branch == branch)
    if cohort_year:
        clauses.append(model.cohort_year == cohort_year)
    return clauses


class StudentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, hallticket: str, cohort_year: str) -> Optional[Student]:
        return self.db.scalar(select(Student).where(Student.hallticket == hallticket, Student.cohort_year == cohort_year))

    def find_in_other_cohort(self, hallticket: str, cohort_year: str) -> Optional[Student]:
        return self.db.scalar(
            select(Student).where(Student.hallticket == hallticket, Student.cohort_year != cohort_year).limit(1)
        )

    def all_for_hallticket(self, hallticket: str) -> list[Student]:
        return list(self.db.scalars(select(Student).where(Student.hallticket == hallticket)).all())

    def by_email(self, email: str) -> Optional[Student]:
        return self.db.scalar(select(Student).where(Student.email == email).limit(1))

    def add(self, student: Student) -> Student:
        self.db.add(student)
        self.db.flush()
        return student

    def list_for(self, branch: str, cohort_year: str) -> list[Student]:
        stmt = (
            select(Student)
            .where(Student.branch == branch, Student.cohort_year == cohort_year)
            .order_by(Student.hallticket.asc())
        )
        return list(self.db.scalars(stmt).all())

    def count_for(self, branch: str, cohort_year: str) -> int:
        stmt = select(func.count(Student.id)).where(Student.branch == branch, Student.cohort_year == cohort_year)
        return int(self.db.scalar(stmt) or 0)


class SubjectRepository:
    def __init__(self, db: Session):
        self.db = db

    def replace_for_scope(self, scope: CohortScope, rows: Iterable[tuple[str, str]]) -> int:
        self.db.execute(
            delete(Subject)
            .where(*scope_filters(Subject, scope.class_code, scope.branch, scope.cohort_year))
            .execution_options(synchronize_session=False)
        )
        inserted = 0
        for subject, faculty in rows:
            self.db.add(
                Subject(
                    subject=subject,
                    faculty=faculty,
                    class_code=scope.class_code,
                    branch=scope.branch,
                    cohort_year=scope.cohort_year,
                )
            )
            inserted += 1
        self.db.flush()
        return inserted

    def list_for_scope(self, scope: CohortScope) -> list[Subject]:
        stmt = (
            select(Subject)
            .where(*scope_filters(Subject, scope.class_code, scope.branch, scope.cohort_year))
            .order_by(Subject.subject.asc())
        )
        return list(self.db.scalars(stmt).all())

    def find_for_faculty(
        self,
        faculty: str,
        class_code: Optional[str] = None,
        branch: Optional[str] = None,
        cohort_year: Optional[str] = None,
    ) -> list[Subject]:
        stmt = select(Subject).where(Subject.faculty == faculty, *scope_filters(Subject, class_code, branch, cohort_year))
        return list(self.db.scalars(stmt).all())

    def distinct_faculties(
        self, class_code: Optional[str] = None, branch: Optional[str] = None, cohort_year: Optional[str] = None
    ) -> list[str]:
        stmt = select(Subject.faculty).where(*scope_filters(Subject, class_code, branch, cohort_year)).distinct()
        return [f for f in self.db.scalars(stmt).all() if f is not None]

    def faculty_exists(self, faculty: str) -> bool:
        return self.db.scalar(select(Subject.id).where(Subject.faculty == faculty).limit(1)) is not None

    def rename_faculty(self, original: str, new: str, class_code=None, branch=None, cohort_year=None) -> int:
        result = self.db.execute(
            update(Subject)
            .where(Subject.faculty == original, *scope_filters(Subject, class_code, branch, cohort_year))
            .values(faculty=new)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


class FeedbackRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        hallticket: str,
        scope: CohortScope,
        subject: str,
        faculty: str,
        answers: list[dict],
        suggestion: Optional[str],
        round_name: str,
    ) -> Feedback:
        row = Feedback(
            hallticket=hallticket,
            class_code=scope.class_code,
            branch=scope.branch,
            cohort_year=scope.cohort_year,
            subject=subject,
            faculty=faculty,
            answers_json=json.dumps(answers),
            suggestion=suggestion,
            round=round_name,
        )
        self.db.add(row)
        return row

    def find(
        self,
        class_code: Optional[str] = None,
        branch: Optional[str] = None,
        cohort_year: Optional[str] = None,
        round_name: Optional[str] = None,
        faculty: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> list[Feedback]:
        stmt = select(Feedback).where(*scope_filters(Feedback, class_code, branch, cohort_year))
        if round_name:
            stmt = stmt.where(Feedback.round == round_name)
        if faculty:
            stmt = stmt.where(Feedback.faculty == faculty)
        if subject:
            stmt = stmt.where(Feedback.subject == subject)
        return list(self.db.scalars(stmt.order_by(Feedback.created_at.asc())).all())

    def faculty_exists(self, faculty: str) -> bool:
        return self.db.scalar(select(Feedback.id).where(Feedback.faculty == faculty).limit(1)) is not None

    def rename_faculty(self, original: str, new: str, class_code=None, branch=None, cohort_year=None) -> int:
        result = self.db.execute(
            update(Feedback)
            .where(Feedback.faculty == original, *scope_filters(Feedback, class_code, branch, cohort_year))
            .values(faculty=new)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


class SubmissionRepository:
    def __init__(self, db: Session):
        self.db = db

    def _key(self, hallticket: str, scope: CohortScope) -> list:
        return [
            FeedbackSubmission.hallticket == hallticket,
            *scope_filters(FeedbackSubmission, scope.class_code, scope.branch, scope.cohort_year),
        ]

    def get(self, hallticket: str, scope: CohortScope) -> Optional[FeedbackSubmission]:
        # Flags change through bulk UPDATEs; always reload them.
        stmt = select(FeedbackSubmission).where(*self._key(hallticket, scope)).execution_options(populate_existing=True)
        return self.db.scalar(stmt)

    def ensure_stub(self, hallticket: str, scope: CohortScope) -> tuple[FeedbackSubmission, bool]:
        """Create the per-student submission record if missing; existing flags are never touched."""
        existing = self.get(hallticket, scope)
        if existing:
            return existing, False
        stub = FeedbackSubmission(
            hallticket=hallticket,
            class_code=scope.class_code,
            branch=scope.branch,
            cohort_year=scope.cohort_year,
            initial_submitted=False,
            final_submitted=False,
        )
        try:
            with self.db.begin_nested():
                self.db.add(stub)
        except IntegrityError:
            # Another writer created it first.
            return self.get(hallticket, scope), False
        return stub, True

    def claim_round(self, hallticket: str, scope: CohortScope, round_name: str, when: datetime) -> bool:
        """Flip the round flag false -> true. Returns False when it was already set."""
        flag = getattr(FeedbackSubmission, f"{round_name}_submitted")
        values = {f"{round_name}_submitted": True, f"{round_name}_date": when}
        result = self.db.execute(
            update(FeedbackSubmission)
            .where(*self._key(hallticket, scope), flag.is_(False))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0) == 1

    def count_submitted(self, scope: CohortScope, round_name: str) -> int:
        flag = getattr(FeedbackSubmission, f"{round_name}_submitted")
        stmt = select(func.count(FeedbackSubmission.id)).where(
            *scope_filters(FeedbackSubmission, scope.class_code, scope.branch, scope.cohort_year), flag.is_(True)
        )
        return int(self.db.scalar(stmt) or 0)

    def list_for_scope(self, scope: CohortScope) -> list[FeedbackSubmission]:
        stmt = (
            select(FeedbackSubmission)
            .where(*scope_filters(FeedbackSubmission, scope.class_code, scope.branch, scope.cohort_year))
            .order_by(FeedbackSubmission.hallticket.asc())
        )
        return list(self.db.scalars(stmt).all())

    def clear_for_student(self, hallticket: str, cohort_year: str) -> int:
        result = self.db.execute(
            update(FeedbackSubmission)
            .where(FeedbackSubmission.hallticket == hallticket, FeedbackSubmission.cohort_year == cohort_year)
            .values(initial_submitted=False, final_submitted=False, initial_date=None, final_date=None)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


class RoundControlRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, scope: CohortScope) -> Optional[RoundControl]:
        return self.db.scalar(
            select(RoundControl).where(*scope_filters(RoundControl, scope.class_code, scope.branch, scope.cohort_year))
        )

    def get_or_create(self, scope: CohortScope) -> RoundControl:
        control = self.get(scope)
        if control:
            return control
        control = RoundControl(
            class_code=scope.class_code,
            branch=scope.branch,
            cohort_year=scope.cohort_year,
            initial_enabled=True,
            final_enabled=False,
        )
        try:
            with self.db.begin_nested():
                self.db.add(control)
        except IntegrityError:
            return self.get(scope)
        return control


class AuditRepository:
    def __init__(self, db: Session):
        self.db = db

    def record(self, actor: str, action: str, entity: str, entity_id: str, payload: Optional[dict] = None) -> None:
        self.db.add(
            AuditLog(
                actor=actor,
                action=action,
                entity_type=entity,
                entity_id=entity_id,
                payload=json.dumps(payload, default=str) if payload is not None else None,
            )
        )

    def latest(self, limit: int = 200) -> list[AuditLog]:
        return list(self.db.scalars(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)).all())
