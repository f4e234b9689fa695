from __future__ import annotations

from typing import Iterable, Optional

from .errors import ValidationError

MIN_SCORE = 1
MAX_SCORE = 5

QUESTIONS: tuple[str, ...] = (
    "Punctuality of teacher",
    "Explanation of the topic/concepts",
    "Clarification of doubts",
    "Utilization of time",
    "Completion of syllabus in time",
    "Communication skills",
    "Teacher's commands and control of the class",
    "Attitude of the teacher towards the students",
    "Use of board & audio visual aids by the teacher",
    "Your opinion about the teacher",
)

_QUESTION_INDEX = {q: i for i, q in enumerate(QUESTIONS)}


def percentage(avg_score: float) -> float:
    return round(avg_score / MAX_SCORE * 100, 2)


def ratio_percentage(total_score: float, responses: int) -> float:
    """Average score as a percentage of the top score; 0 when nothing was answered."""
    if responses <= 0:
        return 0.0
    return percentage(total_score / responses)


def normalize_answers(answers: Iterable[dict], label: Optional[str] = None) -> list[dict]:
    """Validate one subject's answers and return them in questionnaire order.

    Every question must be answered exactly once with an integer score in
    [1, 5]; unknown questions are rejected.
    """
    where = f" for {label}" if label else ""
    by_question: dict[str, int] = {}
    for answer in answers:
        question = str((answer or {}).get("question") or "").strip()
        if question not in _QUESTION_INDEX:
            raise ValidationError(f"Unknown rating parameter '{question}'{where}", code="invalid_answers")
        if question in by_question:
            raise ValidationError(f"Duplicate rating parameter '{question}'{where}", code="invalid_answers")
        score = answer.get("score")
        if isinstance(score, bool) or not isinstance(score, int) or not MIN_SCORE <= score <= MAX_SCORE:
            raise ValidationError(
                f"Score for '{question}'{where} must be an integer between {MIN_SCORE} and {MAX_SCORE}",
                code="invalid_answers",
            )
        by_question[question] = score
    missing = [q for q in QUESTIONS if q not in by_question]
    if missing:
        raise ValidationError(f"Missing ratings{where}: {', '.join(missing)}", code="invalid_answers")
    return [{"question": q, "score": by_question[q]} for q in QUESTIONS]
