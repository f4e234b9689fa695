from __future__ import annotations

import csv
import io
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .cohort import CohortScope
from .database import begin_write
from .errors import FeedbackError, ValidationError
from .models import Student
from .repositories import AuditRepository, StudentRepository, SubjectRepository, SubmissionRepository
from .rounds import RoundController

logger = logging.getLogger(__name__)

STUDENT_COLUMNS = ("name", "hallticket", "branch")
SUBJECT_COLUMNS = ("subject", "faculty")
HEADER_MARKERS = {"name", "subject", "hallticket"}


class StudentRowIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)
    name: str = Field(min_length=1)
    hallticket: str = Field(min_length=1)
    branch: str = Field(min_length=1)


class SubjectRowIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)
    subject: str = Field(min_length=1)
    faculty: str = Field(min_length=1)


def read_rows(text: str, columns: tuple[str, ...]) -> list[tuple[int, dict]]:
    """Positional CSV rows as ``(line_number, {column: value})``.

    A first row whose leading cell is a known column name is treated as a
    header and skipped; blank lines are ignored. Short rows keep their missing
    columns as None so validation reports them per line.
    """
    out: list[tuple[int, dict]] = []
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    first = True
    for line_no, values in enumerate(reader, start=1):
        if not any(v.strip() for v in values):
            continue
        if first and values[0].strip().lower() in HEADER_MARKERS:
            first = False
            continue
        first = False
        row = {col: (values[i] if i < len(values) else None) for i, col in enumerate(columns)}
        out.append((line_no, row))
    return out


@dataclass
class RowResult:
    line: int
    status: str
    hallticket: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "error"


@dataclass
class BatchSummary:
    results: list[RowResult] = field(default_factory=list)

    @property
    def new(self) -> int:
        return sum(1 for r in self.results if r.status == "new")

    @property
    def updated(self) -> int:
        return sum(1 for r in self.results if r.status == "updated")

    @property
    def errors(self) -> int:
        return sum(1 for r in self.results if r.status == "error")

    @property
    def processed(self) -> int:
        return self.new + self.updated

    def to_dict(self) -> dict:
        return {
            "total": len(self.results),
            "processed": self.processed,
            "new": self.new,
            "updated": self.updated,
            "errors": self.errors,
            "error_rows": [{"line": r.line, "hallticket": r.hallticket, "error": r.error} for r in self.results if not r.ok],
        }


@dataclass
class SubjectUploadSummary:
    processed: int
    inserted: int
    skipped: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"processed": self.processed, "inserted": self.inserted, "skipped": len(self.skipped), "skipped_rows": self.skipped}


def _row_error(exc: Exception) -> str:
    if isinstance(exc, FeedbackError):
        return exc.message
    return str(exc).splitlines()[0] if str(exc) else exc.__class__.__name__


class StudentIngestor:
    """Upserts student identities for one cohort from bulk rows.

    A hallticket already known in this cohort is updated in place (name and
    branch only, registration kept). A hallticket seen only under other cohorts
    gets a fresh, unregistered record here. Either way the per-class submission
    record is created if missing, never reset.
    """

    def __init__(
        self,
        db: Session,
        students: StudentRepository,
        submissions: SubmissionRepository,
        audit: Optional[AuditRepository] = None,
        batch_size: int = 25,
        batch_pause_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.students = students
        self.submissions = submissions
        self.audit = audit
        self.batch_size = max(1, batch_size)
        self.batch_pause_seconds = batch_pause_seconds
        self.sleep = sleep

    def _upsert(self, row: StudentRowIn, scope: CohortScope) -> str:
        existing = self.students.get(row.hallticket, scope.cohort_year)
        if existing:
            existing.name = row.name
            existing.branch = row.branch
            status = "updated"
        else:
            if self.students.find_in_other_cohort(row.hallticket, scope.cohort_year):
                logger.debug("Hallticket %s re-enrolled under cohort %s", row.hallticket, scope.cohort_year)
            self.students.add(
                Student(name=row.name, hallticket=row.hallticket, branch=row.branch, cohort_year=scope.cohort_year)
            )
            status = "new"
        self.submissions.ensure_stub(row.hallticket, scope)
        return status

    def ingest_row(self, line: int, raw: dict, scope: CohortScope) -> RowResult:
        hallticket = (raw.get("hallticket") or "").strip() or None
        try:
            row = StudentRowIn(**raw)
            with self.db.begin_nested():
                status = self._upsert(row, scope)
            return RowResult(line=line, status=status, hallticket=row.hallticket)
        except (ValueError, FeedbackError, SQLAlchemyError) as exc:
            logger.warning("Student row %d (%s) rejected: %s", line, hallticket or "?", _row_error(exc))
            return RowResult(line=line, status="error", hallticket=hallticket, error=_row_error(exc))

    def ingest(self, rows: Iterable[tuple[int, dict]], scope: CohortScope, actor: str = "system") -> BatchSummary:
        rows = list(rows)
        if not rows:
            raise ValidationError("No valid student data found", code="empty_upload")
        summary = BatchSummary()
        for start in range(0, len(rows), self.batch_size):
            begin_write(self.db)
            for line, raw in rows[start : start + self.batch_size]:
                summary.results.append(self.ingest_row(line, raw, scope))
            self.db.commit()
            if start + self.batch_size < len(rows) and self.batch_pause_seconds > 0:
                self.sleep(self.batch_pause_seconds)
        if self.audit is not None:
            begin_write(self.db)
            self.audit.record(
                actor,
                "UPLOAD_STUDENTS",
                "Cohort",
                f"{scope.class_code}/{scope.branch}/{scope.cohort_year}",
                {k: v for k, v in summary.to_dict().items() if k != "error_rows"},
            )
            self.db.commit()
        logger.info(
            "Student upload for %s/%s/%s: %d processed (%d new, %d updated), %d errors",
            scope.class_code,
            scope.branch,
            scope.cohort_year,
            summary.processed,
            summary.new,
            summary.updated,
            summary.errors,
        )
        return summary


class SubjectIngestor:
    """Replaces a cohort's subject list and opens the initial round."""

    def __init__(
        self,
        db: Session,
        subjects: SubjectRepository,
        round_controller: RoundController,
        audit: Optional[AuditRepository] = None,
    ):
        self.db = db
        self.subjects = subjects
        self.round_controller = round_controller
        self.audit = audit

    def ingest(self, rows: Iterable[tuple[int, dict]], scope: CohortScope, actor: str = "system") -> SubjectUploadSummary:
        valid: list[tuple[str, str]] = []
        skipped: list[dict] = []
        for line, raw in rows:
            try:
                row = SubjectRowIn(**raw)
            except ValueError as exc:
                skipped.append({"line": line, "error": _row_error(exc)})
                continue
            valid.append((row.subject, row.faculty))
        if not valid:
            raise ValidationError("No valid subject data found", code="empty_upload")
        try:
            begin_write(self.db)
            inserted = self.subjects.replace_for_scope(scope, valid)
            self.round_controller.apply(scope, "initial", True)
            summary = SubjectUploadSummary(processed=len(valid), inserted=inserted, skipped=skipped)
            if self.audit is not None:
                self.audit.record(
                    actor,
                    "UPLOAD_SUBJECTS",
                    "Cohort",
                    f"{scope.class_code}/{scope.branch}/{scope.cohort_year}",
                    {"processed": summary.processed, "inserted": inserted, "skipped": len(skipped)},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "Subject upload for %s/%s/%s: %d inserted, %d skipped; initial round enabled",
            scope.class_code,
            scope.branch,
            scope.cohort_year,
            inserted,
            len(skipped),
        )
        return summary
