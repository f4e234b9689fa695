"""Faculty name grouping and scoped renames.

Faculty names arrive as free text in every subjects upload, so the same person
tends to appear as "J.Smith", "J Smith" and "Dr. J. Smith". The helpers here
group such spellings, suggest one to keep, and rename records in bulk.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from .database import begin_write
from .errors import NotFoundError, StateConflictError, ValidationError
from .repositories import AuditRepository, FeedbackRepository, SubjectRepository

logger = logging.getLogger(__name__)

PLACEHOLDER_NAMES = (
    "unknown",
    "not assigned",
    "not available",
    "na",
    "n/a",
    "tba",
    "to be announced",
    "pending",
    "null",
    "undefined",
)

_TITLE_MARKERS = ("dr", "prof")
_PROPER_CASE = re.compile(r"^[A-Z][a-z]+")


def normalization_key(name: str) -> str:
    """Grouping key for a faculty name.

    Lowercases, drops whitespace and periods, then removes "dr" and "prof"
    wherever they occur. The markers are stripped as plain substrings, so a
    name such as "Andrew" loses its "dr" too and may group with unrelated
    names; callers review variation groups before merging.
    """
    key = re.sub(r"[.\s]", "", (name or "").lower())
    for marker in _TITLE_MARKERS:
        key = key.replace(marker, "")
    return key


def name_score(name: str) -> int:
    if not name:
        return 0
    score = 0
    if "." in name:
        score += 2
    if name == name.upper():
        score -= 1
    if _PROPER_CASE.match(name):
        score += 1
    if "Dr." in name:
        score += 3
    if "Prof." in name:
        score += 3
    if len(name) > 3:
        score += 1
    return score


def suggest_canonical_name(variations: list[str]) -> str:
    best = ""
    best_score = None
    for name in variations:
        score = name_score(name)
        if best_score is None or score > best_score:
            best, best_score = name, score
    return best


def is_valid_faculty_name(name: Optional[str]) -> bool:
    """Filters out blanks, bare numbers and placeholder values such as "TBA"."""
    if not name or not isinstance(name, str):
        return False
    clean = name.strip()
    if not clean or clean.isdigit():
        return False
    lower = clean.lower()
    if lower in PLACEHOLDER_NAMES:
        return False
    return re.search(r"[a-zA-Z]", clean) is not None


@dataclass
class VariationGroup:
    key: str
    variations: list[str] = field(default_factory=list)

    @property
    def suggested(self) -> str:
        return suggest_canonical_name(self.variations)

    def to_dict(self) -> dict:
        return {"key": self.key, "variations": list(self.variations), "suggested": self.suggested}


def variation_groups(names: list[str]) -> list[VariationGroup]:
    groups: dict[str, VariationGroup] = {}
    for name in sorted({n for n in names if n and n.strip() and not n.strip().isdigit()}, key=str.lower):
        key = normalization_key(name)
        group = groups.setdefault(key, VariationGroup(key=key))
        if name not in group.variations:
            group.variations.append(name)
    return [g for g in groups.values() if len(g.variations) > 1]


@dataclass
class RenameResult:
    original_name: str
    new_name: str
    subjects_updated: int
    feedbacks_updated: int

    def to_dict(self) -> dict:
        return {
            "original_name": self.original_name,
            "new_name": self.new_name,
            "subjects_updated": self.subjects_updated,
            "feedbacks_updated": self.feedbacks_updated,
            "total_updated": self.subjects_updated + self.feedbacks_updated,
        }


class FacultyNameService:
    def __init__(self, db: Session, subjects: SubjectRepository, feedback: FeedbackRepository, audit: AuditRepository):
        self.db = db
        self.subjects = subjects
        self.feedback = feedback
        self.audit = audit

    def list_faculties(self, class_code=None, branch=None, cohort_year=None) -> list[str]:
        names = {n.strip() for n in self.subjects.distinct_faculties(class_code, branch, cohort_year) if is_valid_faculty_name(n)}
        return sorted(names, key=str.lower)

    def variations(self, class_code=None, branch=None, cohort_year=None) -> list[VariationGroup]:
        return variation_groups(self.subjects.distinct_faculties(class_code, branch, cohort_year))

    def rename(
        self,
        original_name: str,
        new_name: str,
        class_code: Optional[str] = None,
        branch: Optional[str] = None,
        cohort_year: Optional[str] = None,
        actor: str = "system",
    ) -> RenameResult:
        """Exact-match rename on subjects and raw feedback, optionally narrowed to a scope.

        A scoped rename leaves the old spelling in place outside the scope.
        """
        original_name = (original_name or "").strip()
        new_name = (new_name or "").strip()
        if not original_name or not new_name:
            raise ValidationError("Original name and new name are required", code="missing_names")
        if original_name == new_name:
            raise StateConflictError("Original and new names are the same", code="same_name")
        begin_write(self.db)
        try:
            if not self.subjects.faculty_exists(original_name) and not self.feedback.faculty_exists(original_name):
                raise NotFoundError(f"Faculty '{original_name}' not found", code="faculty_not_found")
            subjects_updated = self.subjects.rename_faculty(original_name, new_name, class_code, branch, cohort_year)
            feedbacks_updated = self.feedback.rename_faculty(original_name, new_name, class_code, branch, cohort_year)
            result = RenameResult(original_name, new_name, subjects_updated, feedbacks_updated)
            self.audit.record(
                actor,
                "RENAME_FACULTY",
                "Faculty",
                original_name,
                {**result.to_dict(), "class": class_code, "branch": branch, "cohort_year": cohort_year},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(
            "Renamed faculty %r -> %r (subjects=%d, feedback=%d, scope=%s/%s/%s)",
            original_name,
            new_name,
            subjects_updated,
            feedbacks_updated,
            class_code or "*",
            branch or "*",
            cohort_year or "*",
        )
        return result
