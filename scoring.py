# scoring.py
# -----------------------------------------------------------------------------
# Score = round_half_up(correct / total * 20). Fixed 0..20 scale whatever the
# question count; pass is score >= 10. Pure functions only.
# -----------------------------------------------------------------------------

from fractions import Fraction
from math import floor
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from models import ExamResult, Question

MAX_SCORE = 20
PASS_SCORE = 10


def round_half_up(value: Fraction) -> int:
    return int(floor(value + Fraction(1, 2)))


def count_correct(questions: Sequence[Question], answers: Mapping[int, Optional[int]]) -> int:
    """Unanswered or out-of-range answers count as incorrect."""
    correct = 0
    for i, q in enumerate(questions):
        chosen = answers.get(i) if answers else None
        if chosen is not None and chosen == q.correct_answer:
            correct += 1
    return correct


def score_from_counts(correct: int, total: int) -> int:
    if total <= 0:
        return 0
    return round_half_up(Fraction(correct * MAX_SCORE, total))


def score_answers(questions: Sequence[Question], answers: Mapping[int, Optional[int]]) -> int:
    return score_from_counts(count_correct(questions, answers), len(questions))


def is_passing(score: int) -> bool:
    return score >= PASS_SCORE


def percentage(score: int) -> float:
    return score * 100.0 / MAX_SCORE


def estimated_correct(score: int, total_questions: int) -> int:
    """Correct-answer count implied by a stored score (used when the trail is gone)."""
    if total_questions <= 0:
        return 0
    return round_half_up(Fraction(score * total_questions, MAX_SCORE))


def average_score(scores: Iterable[int]) -> int:
    values = list(scores)
    if not values:
        return 0
    return round_half_up(Fraction(sum(values), len(values)))


def result_stats(results: Sequence[ExamResult]) -> Dict[str, Any]:
    if not results:
        return {"count": 0, "average": 0, "highest": 0, "lowest": 0, "passing_percent": 0}
    scores = [r.score for r in results]
    passing = sum(1 for s in scores if is_passing(s))
    return {
        "count": len(scores),
        "average": average_score(scores),
        "highest": max(scores),
        "lowest": min(scores),
        "passing_percent": round_half_up(Fraction(passing * 100, len(scores))),
    }
