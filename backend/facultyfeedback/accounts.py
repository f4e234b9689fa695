from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .auth import hash_password, verify_password
from .cohort import cohort_start_year
from .database import begin_write
from .errors import AuthenticationError, NotFoundError, StateConflictError, ValidationError
from .models import AdminUser, Student
from .repositories import AuditRepository, StudentRepository, SubmissionRepository

logger = logging.getLogger(__name__)


def student_dict(student: Student) -> dict:
    return {
        "id": student.id,
        "name": student.name,
        "hallticket": student.hallticket,
        "branch": student.branch,
        "cohort_year": student.cohort_year,
        "email": student.email,
        "registered": student.registered,
    }


class StudentAccounts:
    """Self-registration, login and the admin registration reset."""

    def __init__(
        self,
        db: Session,
        students: StudentRepository,
        submissions: SubmissionRepository,
        audit: Optional[AuditRepository] = None,
        bcrypt_rounds: int = 12,
    ):
        self.db = db
        self.students = students
        self.submissions = submissions
        self.audit = audit
        self.bcrypt_rounds = bcrypt_rounds

    def _resolve(self, hallticket: str, cohort_year: Optional[str] = None) -> Student:
        hallticket = (hallticket or "").strip()
        if not hallticket:
            raise ValidationError("Hallticket is required", code="missing_hallticket")
        if cohort_year:
            student = self.students.get(hallticket, cohort_year.strip())
        else:
            records = self.students.all_for_hallticket(hallticket)
            student = max(records, key=lambda s: cohort_start_year(s.cohort_year)) if records else None
        if student is None:
            raise NotFoundError(f"Hallticket '{hallticket}' not found", code="student_not_found")
        return student

    def check_hallticket(self, hallticket: str) -> dict:
        records = self.students.all_for_hallticket((hallticket or "").strip())
        return {"exists": bool(records), "registered": any(s.registered for s in records)}

    def register(self, hallticket: str, email: str, password: str, cohort_year: Optional[str] = None) -> Student:
        email = (email or "").strip().lower()
        if not email or "@" not in email:
            raise ValidationError("A valid email is required", code="invalid_email")
        if not password or len(password) < 6:
            raise ValidationError("Password must be at least 6 characters", code="weak_password")
        begin_write(self.db)
        try:
            student = self._resolve(hallticket, cohort_year)
            if student.registered:
                raise StateConflictError("Student already registered", code="already_registered")
            other = self.students.by_email(email)
            if other is not None and other.id != student.id:
                raise StateConflictError("Email already in use", code="email_in_use")
            student.email = email
            student.password_hash = hash_password(password, self.bcrypt_rounds)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Student %s registered for cohort %s", student.hallticket, student.cohort_year)
        return student

    def login(self, hallticket: str, password: str, cohort_year: Optional[str] = None) -> Student:
        try:
            student = self._resolve(hallticket, cohort_year)
        except NotFoundError as exc:
            raise AuthenticationError("Invalid credentials") from exc
        if not student.registered:
            raise AuthenticationError("Student has not registered yet", code="not_registered")
        if not verify_password(password, student.password_hash):
            raise AuthenticationError("Invalid credentials")
        return student

    def list_with_status(self, branch: str, cohort_year: str) -> list[dict]:
        return [student_dict(s) for s in self.students.list_for(branch, cohort_year)]

    def reset_registration(
        self, hallticket: str, cohort_year: str, reset_submissions: bool = False, actor: str = "system"
    ) -> dict:
        begin_write(self.db)
        try:
            student = self.students.get((hallticket or "").strip(), (cohort_year or "").strip())
            if student is None:
                raise NotFoundError(f"Hallticket '{hallticket}' not found in cohort {cohort_year}", code="student_not_found")
            if not student.registered:
                raise StateConflictError("Student is not registered", code="not_registered")
            student.email = None
            student.password_hash = None
            cleared = self.submissions.clear_for_student(student.hallticket, student.cohort_year) if reset_submissions else 0
            if self.audit is not None:
                self.audit.record(
                    actor,
                    "RESET_REGISTRATION",
                    "Student",
                    student.id,
                    {"hallticket": student.hallticket, "cohort_year": student.cohort_year, "submissions_cleared": cleared},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "Registration reset for %s (%s); %d submission records cleared", student.hallticket, student.cohort_year, cleared
        )
        return {"success": True, "submissions_cleared": cleared}


class AdminAccounts:
    def __init__(self, db: Session, bcrypt_rounds: int = 12):
        self.db = db
        self.bcrypt_rounds = bcrypt_rounds

    def get(self, admin_id: str) -> Optional[AdminUser]:
        return self.db.get(AdminUser, admin_id)

    def login(self, username: str, password: str) -> AdminUser:
        admin = self.db.scalar(select(AdminUser).where(AdminUser.username == (username or "").strip()))
        if admin is None or not verify_password(password, admin.password_hash):
            raise AuthenticationError("Invalid credentials")
        return admin

    def seed(self, username: str, password: str) -> bool:
        if self.db.scalar(select(AdminUser).where(AdminUser.username == username)):
            return False
        self.db.add(AdminUser(username=username, password_hash=hash_password(password, self.bcrypt_rounds)))
        self.db.commit()
        logger.info("Seeded admin user %s", username)
        return True
