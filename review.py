# review.py
# -----------------------------------------------------------------------------
# Read side: per-question review of one result, and the admin results table.
# Works from the result's own snapshot fields when the exam is gone.
# -----------------------------------------------------------------------------

from math import ceil
from typing import Any, Dict, List, Mapping, Optional, Sequence

from models import Exam, ExamResult
from scoring import MAX_SCORE, estimated_correct, is_passing, percentage, result_stats


def performance_band(pct: float) -> str:
    if pct >= 90:
        return "excellent"
    if pct >= 75:
        return "very_good"
    if pct >= 50:
        return "good"
    return "needs_study"


def build_review(result: ExamResult, exam: Optional[Exam] = None,
                 answers: Optional[Mapping[int, int]] = None) -> Dict[str, Any]:
    pct = percentage(result.score)
    review: Dict[str, Any] = {
        "result_id": result.id,
        "exam_id": result.exam_id,
        "exam_name": result.exam_name,
        "username": result.username,
        "grade": result.grade,
        "score": result.score,
        "max_score": MAX_SCORE,
        "percentage": pct,
        "passed": is_passing(result.score),
        "band": performance_band(pct),
        "stars": int(ceil(pct / 20)),
        "total_questions": result.total_questions,
        "completed_at": result.completed_at,
        "exam_available": exam is not None,
        "answers_available": answers is not None,
        "items": [],
    }

    if exam is None:
        review["correct_count"] = estimated_correct(result.score, result.total_questions)
        return review

    items: List[Dict[str, Any]] = []
    correct_count = 0
    for i, q in enumerate(exam.questions):
        chosen = answers.get(i) if answers is not None else None
        is_correct = chosen is not None and chosen == q.correct_answer
        if is_correct:
            correct_count += 1
        items.append({
            "index": i,
            "text": q.text,
            "answer": chosen,
            "is_correct": is_correct,
            "options": [
                {"index": j, "text": opt, "is_correct": j == q.correct_answer, "is_selected": j == chosen}
                for j, opt in enumerate(q.options)
            ],
        })
    review["items"] = items
    if answers is not None:
        review["correct_count"] = correct_count
    else:
        review["correct_count"] = estimated_correct(result.score, result.total_questions)
    return review


# =========================
# Results table (admin)
# =========================
def filter_results(results: Sequence[ExamResult], query: str = "", grade: Optional[str] = None,
                   sort_by: str = "date") -> List[ExamResult]:
    out = list(results)
    q = (query or "").strip().lower()
    if q:
        out = [r for r in out if q in r.username.lower() or q in r.exam_name.lower()]
    if grade and grade != "all":
        out = [r for r in out if r.grade == grade]
    if sort_by == "score":
        out.sort(key=lambda r: r.score, reverse=True)
    else:
        out.sort(key=lambda r: r.completed_at, reverse=True)
    return out


def results_table(results: Sequence[ExamResult], query: str = "", grade: Optional[str] = None,
                  sort_by: str = "date") -> Dict[str, Any]:
    """Stats cover every result; rows honour the filters."""
    rows = filter_results(results, query=query, grade=grade, sort_by=sort_by)
    return {
        "stats": result_stats(list(results)),
        "rows": [dict(r.to_dict(), passed=is_passing(r.score)) for r in rows],
    }
