"""Percentage reports computed from raw feedback rows.

Every report reads ``Feedback`` rows for a scope on demand; nothing is cached
or precomputed. Scores are on a 1..5 scale and reported as ``avg / 5 * 100``.
"""
from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .cohort import CohortScope, cohort_start_year
from .models import ROUNDS, Feedback
from .rating import MAX_SCORE, MIN_SCORE, QUESTIONS, ratio_percentage
from .repositories import FeedbackRepository, StudentRepository, SubjectRepository, SubmissionRepository
from .rounds import validate_round

logger = logging.getLogger(__name__)

NO_DATA_ROUND = "no-data"
ERROR_ROUND = "error"


def is_lab_subject(subject: Optional[str]) -> bool:
    """Display heuristic: any subject whose name contains "lab", case-insensitively.

    Names such as "Syllabus Design" or "Collaborative Writing" match too.
    """
    return "lab" in (subject or "").lower()


def parse_answers(row: Feedback) -> list[tuple[str, int]]:
    """Stored answers as ``(question, score)`` pairs; ValueError when malformed."""
    try:
        data = json.loads(row.answers_json or "[]")
    except (TypeError, json.JSONDecodeError) as exc:
        raise ValueError(f"feedback {row.id}: answers are not valid JSON") from exc
    if not isinstance(data, list):
        raise ValueError(f"feedback {row.id}: answers must be a list")
    pairs = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"feedback {row.id}: answer entry is not an object")
        score = item.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)) or not MIN_SCORE <= score <= MAX_SCORE:
            raise ValueError(f"feedback {row.id}: score {score!r} out of range")
        pairs.append((str(item.get("question") or ""), score))
    return pairs


@dataclass
class Tally:
    total_score: float = 0.0
    responses: int = 0
    halltickets: set = field(default_factory=set)
    suggestions: int = 0
    by_question: dict = field(default_factory=dict)

    def add(self, row: Feedback) -> None:
        pairs = parse_answers(row)
        self.halltickets.add(row.hallticket)
        if (row.suggestion or "").strip():
            self.suggestions += 1
        for question, score in pairs:
            self.total_score += score
            self.responses += 1
            bucket = self.by_question.setdefault(question, [0.0, 0])
            bucket[0] += score
            bucket[1] += 1

    @property
    def overall_percentage(self) -> float:
        return ratio_percentage(self.total_score, self.responses)

    @property
    def student_count(self) -> int:
        return len(self.halltickets)

    def parameters(self) -> list[dict]:
        ordered = [q for q in QUESTIONS if q in self.by_question]
        ordered += sorted(q for q in self.by_question if q not in QUESTIONS)
        out = []
        for question in ordered:
            total, count = self.by_question[question]
            out.append(
                {
                    "question": question,
                    "avg_score": round(total / count, 2) if count else 0.0,
                    "percentage": ratio_percentage(total, count),
                    "responses": count,
                }
            )
        return out


def tally(rows: Iterable[Feedback]) -> Tally:
    result = Tally()
    for row in rows:
        result.add(row)
    return result


def _safe_tally(rows: list[Feedback], label: str) -> tuple[Tally, bool]:
    try:
        return tally(rows), False
    except ValueError:
        logger.error("Malformed feedback for %s; reporting zero metrics", label, exc_info=True)
        return Tally(halltickets={r.hallticket for r in rows}), True


def _group(rows: Iterable[Feedback], key) -> "OrderedDict[tuple, list[Feedback]]":
    groups: OrderedDict[tuple, list[Feedback]] = OrderedDict()
    for row in rows:
        groups.setdefault(key(row), []).append(row)
    return groups


class AggregationEngine:
    def __init__(
        self,
        subjects: SubjectRepository,
        feedback: FeedbackRepository,
        submissions: SubmissionRepository,
        students: StudentRepository,
    ):
        self.subjects = subjects
        self.feedback = feedback
        self.submissions = submissions
        self.students = students

    def faculty_performance(self, faculty: str, scope: CohortScope, round_name: Optional[str] = None) -> list[dict]:
        """Per-parameter averages for one faculty, one row per (subject, round)."""
        round_name = validate_round(round_name) if round_name else None
        rows = self.feedback.find(scope.class_code, scope.branch, scope.cohort_year, round_name, faculty=faculty)
        report = []
        for (subject, fac, rnd), group in _group(rows, lambda r: (r.subject, r.faculty, r.round)).items():
            stats, degraded = _safe_tally(group, f"{fac}/{subject}/{rnd}")
            report.append(
                {
                    "subject": subject,
                    "faculty": fac,
                    "round": rnd,
                    "parameters": stats.parameters(),
                    "overall_percentage": stats.overall_percentage,
                    "student_count": stats.student_count,
                    "degraded": degraded,
                }
            )
        report.sort(key=lambda r: (r["subject"], ROUNDS.index(r["round"]) if r["round"] in ROUNDS else len(ROUNDS)))
        return report

    def class_report(self, scope: CohortScope, round_name: Optional[str] = None) -> list[dict]:
        round_name = validate_round(round_name) if round_name else None
        rows = self.feedback.find(scope.class_code, scope.branch, scope.cohort_year, round_name)
        report = []
        for (subject, faculty), group in _group(rows, lambda r: (r.subject, r.faculty)).items():
            stats, degraded = _safe_tally(group, f"{faculty}/{subject}")
            report.append(
                {
                    "subject": subject,
                    "faculty": faculty,
                    "overall_percentage": stats.overall_percentage,
                    "student_count": stats.student_count,
                    "degraded": degraded,
                }
            )
        report.sort(key=lambda r: (r["subject"], r["faculty"]))
        return report

    def department_report(self, branch: str, cohort_year: str, round_name: Optional[str] = None) -> list[dict]:
        round_name = validate_round(round_name) if round_name else None
        rows = self.feedback.find(branch=branch, cohort_year=cohort_year, round_name=round_name)
        report = []
        for (class_code,), group in _group(rows, lambda r: (r.class_code,)).items():
            stats, degraded = _safe_tally(group, f"class {class_code}")
            report.append(
                {
                    "class": class_code,
                    "overall_percentage": stats.overall_percentage,
                    "student_count": stats.student_count,
                    "degraded": degraded,
                }
            )
        report.sort(key=lambda r: r["class"])
        return report

    def _history_row(self, subject) -> dict:
        row = {
            "subject": subject.subject,
            "class": subject.class_code,
            "branch": subject.branch,
            "cohort_year": subject.cohort_year,
            "is_lab": is_lab_subject(subject.subject),
        }
        try:
            rows = self.feedback.find(
                subject.class_code, subject.branch, subject.cohort_year, faculty=subject.faculty, subject=subject.subject
            )
            by_round = {name: [r for r in rows if r.round == name] for name in ROUNDS}
            suggestions = tally(rows).suggestions
            if by_round["final"]:
                chosen, stats = "final", tally(by_round["final"])
            elif by_round["initial"]:
                chosen, stats = "initial", tally(by_round["initial"])
            else:
                chosen, stats = NO_DATA_ROUND, Tally()
        except ValueError:
            logger.error("Faculty history failed for %s (%s)", subject.subject, subject.faculty, exc_info=True)
            row.update(overall_percentage=0.0, round=ERROR_ROUND, student_count=0, total_suggestions=0)
            return row
        row.update(
            overall_percentage=stats.overall_percentage,
            round=chosen,
            student_count=stats.student_count,
            total_suggestions=suggestions,
        )
        return row

    def faculty_history(
        self,
        faculty: str,
        class_code: Optional[str] = None,
        branch: Optional[str] = None,
        cohort_year: Optional[str] = None,
    ) -> list[dict]:
        """Every subject the faculty teaches, final-round numbers preferred over initial."""
        history = [self._history_row(s) for s in self.subjects.find_for_faculty(faculty, class_code, branch, cohort_year)]
        history.sort(key=lambda r: r["class"])
        history.sort(key=lambda r: cohort_start_year(r["cohort_year"]), reverse=True)
        return history

    def feedback_counts(self, scope: CohortScope) -> dict:
        total = self.students.count_for(scope.branch, scope.cohort_year)
        return {name: {"submitted": self.submissions.count_submitted(scope, name), "total": total} for name in ROUNDS}
