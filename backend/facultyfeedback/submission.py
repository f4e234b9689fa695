from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Hashable, Iterator, Optional

from sqlalchemy.orm import Session

from .cohort import CohortScope
from .database import begin_write
from .errors import AuthorizationError, StateConflictError, ValidationError
from .models import utcnow
from .rating import normalize_answers
from .repositories import FeedbackRepository, RoundControlRepository, StudentRepository, SubmissionRepository
from .rounds import RoundState, validate_round

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StudentIdentity:
    """Who is submitting, as established by the caller's session token."""

    hallticket: str
    branch: str
    cohort_year: str


@dataclass
class SubjectFeedback:
    subject: str
    faculty: str
    answers: list[dict] = field(default_factory=list)


@dataclass
class SubmissionReceipt:
    accepted: bool
    round: str
    subjects: int
    submitted_at: datetime

    def to_dict(self) -> dict:
        return {"accepted": self.accepted, "round": self.round, "subjects": self.subjects, "submitted_at": self.submitted_at}


class KeyedLocks:
    """One mutex per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class FeedbackSubmitter:
    """Records one student's ratings for one round, at most once.

    Within a process, attempts for the same (hallticket, class, branch,
    cohort, round) are serialized by ``locks``. Across processes the flag flip
    is a conditional UPDATE that only succeeds while the flag is still false,
    committed in the same transaction as the raw feedback rows, so a failed
    write leaves the flag untouched and two writers cannot both succeed.
    """

    def __init__(
        self,
        db: Session,
        rounds: RoundControlRepository,
        submissions: SubmissionRepository,
        feedback: FeedbackRepository,
        students: StudentRepository,
        locks: KeyedLocks,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.rounds = rounds
        self.submissions = submissions
        self.feedback = feedback
        self.students = students
        self.locks = locks
        self.clock = clock

    def _authorize(self, identity: StudentIdentity, branch: Optional[str], cohort_year: Optional[str]) -> None:
        if branch and branch != identity.branch:
            raise AuthorizationError("Unauthorized to submit feedback for this branch", code="scope_mismatch")
        if cohort_year and cohort_year != identity.cohort_year:
            raise AuthorizationError("Unauthorized to submit feedback for this cohort", code="scope_mismatch")
        student = self.students.get(identity.hallticket, identity.cohort_year)
        if student is None or student.branch != identity.branch:
            raise AuthorizationError("Unauthorized to submit feedback for this branch/cohort", code="scope_mismatch")

    def _validate_items(self, items: list[SubjectFeedback]) -> list[SubjectFeedback]:
        if not items:
            raise ValidationError("At least one subject must be rated", code="invalid_answers")
        clean = []
        seen = set()
        for item in items:
            subject = (item.subject or "").strip()
            faculty = (item.faculty or "").strip()
            if not subject or not faculty:
                raise ValidationError("Every rated entry needs a subject and a faculty", code="invalid_answers")
            if (subject, faculty) in seen:
                raise ValidationError(f"Subject '{subject}' ({faculty}) rated twice", code="invalid_answers")
            seen.add((subject, faculty))
            clean.append(SubjectFeedback(subject, faculty, normalize_answers(item.answers, label=subject)))
        return clean

    def is_submitted(self, identity: StudentIdentity, class_code: str, round_name: str) -> bool:
        round_name = validate_round(round_name)
        scope = CohortScope(class_code, identity.branch, identity.cohort_year)
        record = self.submissions.get(identity.hallticket, scope)
        return bool(record and getattr(record, f"{round_name}_submitted"))

    def submit(
        self,
        identity: StudentIdentity,
        class_code: str,
        round_name: str,
        items: list[SubjectFeedback],
        suggestion: Optional[str] = None,
        branch: Optional[str] = None,
        cohort_year: Optional[str] = None,
    ) -> SubmissionReceipt:
        round_name = validate_round(round_name)
        class_code = (class_code or "").strip()
        if not class_code:
            raise ValidationError("Class is required", code="missing_scope")
        scope = CohortScope(class_code, identity.branch, identity.cohort_year)

        if not RoundState.from_control(self.rounds.get(scope)).accepts(round_name):
            logger.warning("Rejected %s feedback from %s: round closed for %s", round_name, identity.hallticket, scope)
            raise StateConflictError(f"{round_name} feedback is not currently accepted", code="round_closed")
        self._authorize(identity, branch, cohort_year)
        items = self._validate_items(items)
        suggestion = (suggestion or "").strip() or None

        key = (identity.hallticket, scope.class_code, scope.branch, scope.cohort_year, round_name)
        # Queue for the key without holding a read snapshot.
        self.db.commit()
        with self.locks.hold(key):
            try:
                begin_write(self.db)
                self.submissions.ensure_stub(identity.hallticket, scope)
                now = self.clock()
                if not self.submissions.claim_round(identity.hallticket, scope, round_name, now):
                    raise StateConflictError(
                        f"Feedback already submitted for {round_name} round this semester", code="already_submitted"
                    )
                for item in items:
                    self.feedback.add(identity.hallticket, scope, item.subject, item.faculty, item.answers, suggestion, round_name)
                self.db.commit()
            except StateConflictError:
                self.db.rollback()
                logger.warning("Rejected duplicate %s feedback from %s for %s", round_name, identity.hallticket, scope)
                raise
            except Exception:
                self.db.rollback()
                raise
        logger.info("Accepted %s feedback from %s for %s (%d subjects)", round_name, identity.hallticket, scope, len(items))
        return SubmissionReceipt(accepted=True, round=round_name, subjects=len(items), submitted_at=now)
