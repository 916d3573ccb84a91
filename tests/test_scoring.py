from fractions import Fraction

import pytest

from models import ExamResult, Question
from scoring import (
    average_score, count_correct, estimated_correct, is_passing, percentage, result_stats,
    round_half_up, score_answers, score_from_counts,
)


def _questions(n, correct=0):
    return [Question(id=str(i), text=f"q{i}", options=["a", "b", "c", "d"], correct_answer=correct)
            for i in range(n)]


def _result(score, **kw):
    base = dict(id=f"r{score}", exam_id="e", exam_name="Exam", user_id="u", username="user",
                grade="Primary 4", score=score, total_questions=10, completed_at="2024-01-01")
    base.update(kw)
    return ExamResult(**base)


@pytest.mark.parametrize("correct,total,expected", [
    (1, 3, 7),
    (2, 3, 13),
    (1, 8, 3),
    (3, 8, 8),
    (5, 8, 13),
    (0, 5, 0),
    (5, 5, 20),
    (0, 0, 0),
])
def test_score_from_counts(correct, total, expected):
    assert score_from_counts(correct, total) == expected


def test_round_half_up_is_not_bankers_rounding():
    assert round_half_up(Fraction(5, 2)) == 3
    assert round_half_up(Fraction(7, 2)) == 4
    assert round_half_up(Fraction(9, 4)) == 2


def test_unanswered_and_wrong_answers_count_as_incorrect():
    qs = _questions(4, correct=2)
    answers = {0: 2, 1: 0, 3: 2}
    assert count_correct(qs, answers) == 2
    assert score_answers(qs, answers) == 10
    assert score_answers(qs, {}) == 0


def test_pass_threshold_and_percentage():
    assert is_passing(10)
    assert not is_passing(9)
    assert percentage(15) == 75.0


def test_estimated_correct_recovers_counts():
    assert estimated_correct(score_from_counts(1, 3), 3) == 1
    assert estimated_correct(score_from_counts(3, 8), 8) == 3
    assert estimated_correct(20, 0) == 0


def test_average_rounds_half_up():
    assert average_score([10, 11]) == 11
    assert average_score([]) == 0


def test_result_stats():
    stats = result_stats([_result(20), _result(9), _result(10), _result(4)])
    assert stats == {"count": 4, "average": 11, "highest": 20, "lowest": 4, "passing_percent": 50}
    assert result_stats([])["count"] == 0
