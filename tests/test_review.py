from models import Exam, ExamResult, Question
from review import build_review, filter_results, performance_band, results_table


def _exam():
    return Exam(id="e1", name="Science", grade="Primary 6", questions=[
        Question(id="q0", text="Water boils at?", options=["90", "100", "110", "120"], correct_answer=1),
        Question(id="q1", text="Planets?", options=["7", "8", "9", "10"], correct_answer=1),
    ])


def _result(rid="r1", score=10, **kw):
    base = dict(id=rid, exam_id="e1", exam_name="Science", user_id="u1", username="mona",
                grade="Primary 6", score=score, total_questions=2, completed_at="2024-05-01T10:00:00+00:00")
    base.update(kw)
    return ExamResult(**base)


def test_performance_bands():
    assert performance_band(100) == "excellent"
    assert performance_band(90) == "excellent"
    assert performance_band(75) == "very_good"
    assert performance_band(50) == "good"
    assert performance_band(45) == "needs_study"


def test_review_with_exam_and_answer_trail():
    review = build_review(_result(score=10), _exam(), {0: 1, 1: 3})

    assert review["exam_available"] and review["answers_available"]
    assert review["correct_count"] == 1
    assert review["percentage"] == 50.0
    assert review["band"] == "good"
    assert review["stars"] == 3
    assert review["passed"] is True

    first, second = review["items"]
    assert first["is_correct"] and first["answer"] == 1
    assert not second["is_correct"] and second["answer"] == 3
    assert [o["is_selected"] for o in second["options"]] == [False, False, False, True]
    assert [o["is_correct"] for o in second["options"]] == [False, True, False, False]


def test_review_without_trail_estimates_correct_count():
    review = build_review(_result(score=20), _exam())

    assert review["exam_available"] and not review["answers_available"]
    assert review["correct_count"] == 2
    assert all(item["answer"] is None for item in review["items"])
    assert review["stars"] == 5


def test_review_after_exam_deleted_uses_snapshot_fields():
    review = build_review(_result(score=10), None, {0: 1})

    assert review["exam_available"] is False
    assert review["items"] == []
    assert review["exam_name"] == "Science"
    assert review["grade"] == "Primary 6"
    assert review["correct_count"] == 1


def test_filter_and_sort():
    results = [
        _result("r1", 12, username="mona", completed_at="2024-05-01"),
        _result("r2", 18, username="omar", exam_name="Maths", grade="Primary 4", completed_at="2024-05-03"),
        _result("r3", 6, username="salma", completed_at="2024-05-02"),
    ]

    assert [r.id for r in filter_results(results)] == ["r2", "r3", "r1"]
    assert [r.id for r in filter_results(results, sort_by="score")] == ["r2", "r1", "r3"]
    assert [r.id for r in filter_results(results, query="MATH")] == ["r2"]
    assert [r.id for r in filter_results(results, query="sal")] == ["r3"]
    assert [r.id for r in filter_results(results, grade="Primary 6")] == ["r3", "r1"]
    assert len(filter_results(results, grade="all")) == 3


def test_results_table_stats_cover_all_rows():
    results = [_result("r1", 12), _result("r2", 18, grade="Primary 4"), _result("r3", 6)]
    table = results_table(results, grade="Primary 4")

    assert [row["id"] for row in table["rows"]] == ["r2"]
    assert table["rows"][0]["passed"] is True
    assert table["stats"] == {"count": 3, "average": 12, "highest": 18, "lowest": 6, "passing_percent": 67}
