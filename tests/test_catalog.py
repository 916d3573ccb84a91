import threading

import pytest

from catalog import (
    EmptyName, ExamCatalog, IncompleteQuestion, InvalidCorrectAnswer, InvalidGrade, NoQuestions,
)
from storage import RESULTS


def _q(text="2 + 2?", options=("3", "4", "5", "6"), correct=1):
    return {"text": text, "options": list(options), "correct_answer": correct}


def test_create_and_lookup(store):
    catalog = ExamCatalog(store)
    exam = catalog.create("  Maths  ", "Primary 4", [_q(), _q("3 + 3?", correct=3)], created_by="admin1")

    assert exam.name == "Maths"
    assert exam.question_count == 2
    assert catalog.get_by_id(exam.id) == exam
    assert catalog.get_by_id("missing") is None
    assert len({q.id for q in exam.questions}) == 2


def test_list_by_grade_filters_and_orders_by_creation(store):
    catalog = ExamCatalog(store)
    first = catalog.create("A", "Primary 4", [_q()], "admin1")
    catalog.create("B", "Secondary 1", [_q()], "admin1")
    second = catalog.create("C", "Primary 4", [_q()], "admin1")

    assert [e.id for e in catalog.list_by_grade("Primary 4")] == [first.id, second.id]
    assert catalog.list_by_grade("Primary 6") == []


@pytest.mark.parametrize("name,grade,questions,error", [
    ("   ", "Primary 4", [_q()], EmptyName),
    (5, "Primary 4", [_q()], EmptyName),
    (None, "Primary 4", [_q()], EmptyName),
    ("Maths", ["Primary 4"], [_q()], InvalidGrade),
    ("Maths", "Primary 4", 7, NoQuestions),
    ("Maths", "Grade 7", [_q()], InvalidGrade),
    ("Maths", "Primary 4", [], NoQuestions),
    ("Maths", "Primary 4", [_q(text=" ")], IncompleteQuestion),
    ("Maths", "Primary 4", [_q(options=("1", "2", "3"))], IncompleteQuestion),
    ("Maths", "Primary 4", [_q(options=("1", "", "3", "4"))], IncompleteQuestion),
    ("Maths", "Primary 4", [_q(correct=4)], InvalidCorrectAnswer),
    ("Maths", "Primary 4", [_q(correct=None)], InvalidCorrectAnswer),
])
def test_invalid_exams_are_rejected_without_writing(store, db, name, grade, questions, error):
    with pytest.raises(error):
        ExamCatalog(store).create(name, grade, questions, "admin1")
    assert db.writes() == []


def test_one_bad_question_rejects_the_whole_exam(store):
    catalog = ExamCatalog(store)
    with pytest.raises(IncompleteQuestion):
        catalog.create("Maths", "Primary 4", [_q(), _q(text="")], "admin1")
    assert catalog.list_all() == []


def test_delete_keeps_results(store):
    catalog = ExamCatalog(store)
    exam = catalog.create("Maths", "Primary 4", [_q()], "admin1")
    store.append(RESULTS, {"id": "r1", "exam_id": exam.id})

    assert catalog.delete(exam.id) is True
    assert catalog.delete(exam.id) is False
    assert catalog.get_by_id(exam.id) is None
    assert store.list(RESULTS) == [{"id": "r1", "exam_id": exam.id}]


def test_counts_by_grade(store):
    catalog = ExamCatalog(store)
    catalog.create("A", "Primary 4", [_q()], "admin1")
    catalog.create("B", "Primary 4", [_q()], "admin1")
    catalog.create("C", "Secondary 3", [_q()], "admin1")

    counts = catalog.counts_by_grade()
    assert counts["Primary 4"] == 2
    assert counts["Secondary 3"] == 1
    assert counts["Primary 5"] == 0
    assert len(counts) == 9


def test_concurrent_deletes_each_remove_their_own_exam(store, db):
    catalog = ExamCatalog(store)
    exams = [catalog.create(f"E{i}", "Primary 4", [_q()], "admin1") for i in range(4)]
    db.read_delay = 0.02

    threads = [threading.Thread(target=catalog.delete, args=(e.id,)) for e in exams[:3]]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    db.read_delay = 0
    assert [e.id for e in catalog.list_all()] == [exams[3].id]
