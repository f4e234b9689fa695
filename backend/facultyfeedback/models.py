from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ROUNDS = ("initial", "final")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.utcnow()


class Base(DeclarativeBase):
    pass


class AdminUser(Base):
    __tablename__ = "admin_users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String)
    role: Mapped[str] = mapped_column(String, default="ADMIN")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    actor: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Student(Base):
    __tablename__ = "students"
    # The same hallticket may be imported again under a later cohort window.
    __table_args__ = (UniqueConstraint("hallticket", "cohort_year", name="uq_student_hallticket_cohort"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    hallticket: Mapped[str] = mapped_column(String, index=True)
    branch: Mapped[str] = mapped_column(String, index=True)
    cohort_year: Mapped[str] = mapped_column(String, index=True)
    email: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    @property
    def registered(self) -> bool:
        return bool(self.email)


class Subject(Base):
    __tablename__ = "subjects"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    subject: Mapped[str] = mapped_column(String)
    faculty: Mapped[str] = mapped_column(String, index=True)
    class_code: Mapped[str] = mapped_column("class", String, index=True)
    branch: Mapped[str] = mapped_column(String, index=True)
    cohort_year: Mapped[str] = mapped_column(String, index=True)


class RoundControl(Base):
    __tablename__ = "round_controls"
    __table_args__ = (UniqueConstraint("class", "branch", "cohort_year", name="uq_round_control_scope"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    class_code: Mapped[str] = mapped_column("class", String)
    branch: Mapped[str] = mapped_column(String)
    cohort_year: Mapped[str] = mapped_column(String)
    initial_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    final_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    initial_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    final_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Feedback(Base):
    __tablename__ = "feedback"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    hallticket: Mapped[str] = mapped_column(String, index=True)
    class_code: Mapped[str] = mapped_column("class", String, index=True)
    branch: Mapped[str] = mapped_column(String, index=True)
    cohort_year: Mapped[str] = mapped_column(String, index=True)
    subject: Mapped[str] = mapped_column(String)
    faculty: Mapped[str] = mapped_column(String, index=True)
    answers_json: Mapped[str] = mapped_column(Text, default="[]")
    suggestion: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    round: Mapped[str] = mapped_column(String, default="initial")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class FeedbackSubmission(Base):
    __tablename__ = "feedback_submissions"
    __table_args__ = (
        UniqueConstraint("hallticket", "class", "branch", "cohort_year", name="uq_submission_key"),
    )
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    hallticket: Mapped[str] = mapped_column(String, index=True)
    class_code: Mapped[str] = mapped_column("class", String)
    branch: Mapped[str] = mapped_column(String)
    cohort_year: Mapped[str] = mapped_column(String)
    initial_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    final_submitted: Mapped[bool] = mapped_column(Boolean, default=False)
    initial_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    final_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
