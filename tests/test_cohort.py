import pytest

from facultyfeedback.cohort import CohortScope, class_year, cohort_from_request, cohort_start_year, resolve_cohort_year
from facultyfeedback.errors import ValidationError


@pytest.mark.parametrize(
    "academic_year, class_code, expected",
    [
        ("2025-2026", "1-1", "2025-2029"),
        ("2025-2026", "2-2", "2025-2027"),
        ("2025-2026", "3-1", "2025-2026"),
        ("2025-2026", "4-2", "2025-2025"),
        ("2025-2026", "", "2025-2029"),
        ("2025-2026", None, "2025-2029"),
        ("2025-2026", "x-1", "2025-2029"),
        ("2025-2026", "5-1", "2025-2029"),
        ("2025-2026", "0-2", "2025-2029"),
    ],
)
def test_resolve_cohort_year(academic_year, class_code, expected):
    assert resolve_cohort_year(academic_year, class_code) == expected


def test_resolve_is_repeatable():
    assert resolve_cohort_year("2024-2025", "2-1") == resolve_cohort_year("2024-2025", "2-1") == "2024-2026"


def test_unparseable_academic_year_is_rejected():
    with pytest.raises(ValidationError) as exc:
        resolve_cohort_year("next year", "1-1")
    assert exc.value.code == "invalid_academic_year"


def test_class_year():
    assert class_year("3-2") == 3
    assert class_year("IV-2") is None
    assert class_year("5-1") is None
    assert class_year("0-1") is None
    assert class_year(None) is None


def test_cohort_start_year():
    assert cohort_start_year("2025-2029") == 2025
    assert cohort_start_year("") == 0


def test_explicit_cohort_wins_over_academic_year():
    assert cohort_from_request("1-1", "2023-2027", "2025-2026") == "2023-2027"
    assert cohort_from_request("1-1", None, "2025-2026") == "2025-2029"


def test_scope_requires_class_branch_and_some_year():
    scope = CohortScope.from_request(" 1-1 ", "CSE-A", academic_year="2025-2026")
    assert scope == CohortScope("1-1", "CSE-A", "2025-2029")
    with pytest.raises(ValidationError):
        CohortScope.from_request("1-1", "", academic_year="2025-2026")
    with pytest.raises(ValidationError) as exc:
        CohortScope.from_request("1-1", "CSE-A")
    assert exc.value.code == "missing_scope"
