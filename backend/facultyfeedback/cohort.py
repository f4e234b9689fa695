"""Cohort key resolution.

Students, subjects, submissions and round state are all scoped by a cohort
window ("entry year - graduation year") rather than the calendar academic year
an administrator picks. ``resolve_cohort_year`` is the only place that mapping
is computed.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .errors import ValidationError

PROGRAM_YEARS = 4

_LEADING_INT = re.compile(r"^\s*(\d+)")


def _leading_int(raw: str) -> Optional[int]:
    m = _LEADING_INT.match(raw or "")
    return int(m.group(1)) if m else None


def class_year(class_code: Optional[str]) -> Optional[int]:
    """Year of study from a ``"N-M"`` class code.

    None when the code cannot be parsed or the year falls outside the program.
    """
    if not class_code:
        return None
    year = _leading_int(str(class_code).split("-")[0])
    if year is None or not 1 <= year <= PROGRAM_YEARS:
        return None
    return year


def resolve_cohort_year(academic_year: str, class_code: Optional[str] = None) -> str:
    """Map a calendar academic year and class code onto a cohort window.

    First-year classes and classes without a usable year get the full program
    window; later years end ``PROGRAM_YEARS - N`` years after the start year.
    """
    start = _leading_int(str(academic_year or "").split("-")[0])
    if start is None:
        raise ValidationError(f"Invalid academic year '{academic_year}'", code="invalid_academic_year")
    year_of_study = class_year(class_code)
    if year_of_study is None or year_of_study == 1:
        return f"{start}-{start + PROGRAM_YEARS}"
    return f"{start}-{start + (PROGRAM_YEARS - year_of_study)}"


def cohort_start_year(cohort_year: str) -> int:
    start = _leading_int(str(cohort_year or "").split("-")[0])
    return start if start is not None else 0


@dataclass(frozen=True)
class CohortScope:
    class_code: str
    branch: str
    cohort_year: str

    @classmethod
    def from_request(
        cls,
        class_code: Optional[str],
        branch: Optional[str],
        cohort_year: Optional[str] = None,
        academic_year: Optional[str] = None,
    ) -> "CohortScope":
        class_code = (class_code or "").strip()
        branch = (branch or "").strip()
        if not class_code or not branch:
            raise ValidationError("Class and branch are required", code="missing_scope")
        return cls(class_code=class_code, branch=branch, cohort_year=cohort_from_request(class_code, cohort_year, academic_year))


def cohort_from_request(class_code: Optional[str], cohort_year: Optional[str], academic_year: Optional[str]) -> str:
    """An explicit cohort window wins; otherwise the calendar year is resolved."""
    if cohort_year and cohort_year.strip():
        return cohort_year.strip()
    if academic_year and academic_year.strip():
        return resolve_cohort_year(academic_year.strip(), class_code)
    raise ValidationError("Either cohort_year or academic_year is required", code="missing_scope")
