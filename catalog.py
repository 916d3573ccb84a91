# catalog.py
# -----------------------------------------------------------------------------
# Exam Catalog: validated create, grade listing, lookup, delete.
# Deleting an exam never touches results (they carry their own snapshot).
# -----------------------------------------------------------------------------

from typing import Any, Dict, Iterable, List, Optional, Union

from models import GRADES, OPTIONS_PER_QUESTION, Exam, Question, generate_id, load_records, utc_now_iso
from storage import EXAMS, DurableStore


class CatalogError(ValueError):
    message = "Invalid exam."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class EmptyName(CatalogError):
    message = "Exam name is required."


class InvalidGrade(CatalogError):
    message = "Choose a grade from the list."


class NoQuestions(CatalogError):
    message = "An exam needs at least one question."


class IncompleteQuestion(CatalogError):
    message = "Every question needs text and four non-empty options."


class InvalidCorrectAnswer(IncompleteQuestion):
    message = "The correct answer must point at one of the options."


QuestionInput = Union[Question, Dict[str, Any]]


def _question_fields(q: QuestionInput) -> Dict[str, Any]:
    if isinstance(q, Question):
        return {"text": q.text, "options": list(q.options), "correct_answer": q.correct_answer}
    if isinstance(q, dict):
        return {
            "text": q.get("text"),
            "options": q.get("options"),
            "correct_answer": q.get("correct_answer"),
        }
    raise IncompleteQuestion()


def _clean_questions(questions: Iterable[QuestionInput]) -> List[Question]:
    cleaned: List[Question] = []
    for i, raw in enumerate(questions, start=1):
        f = _question_fields(raw)
        text = str(f["text"] or "").strip()
        if not text:
            raise IncompleteQuestion(f"Question {i}: text is required.")
        options = [str(o or "").strip() for o in (f["options"] or [])]
        if len(options) != OPTIONS_PER_QUESTION or any(not o for o in options):
            raise IncompleteQuestion(f"Question {i}: all {OPTIONS_PER_QUESTION} options are required.")
        try:
            correct = int(f["correct_answer"])
        except (TypeError, ValueError):
            raise InvalidCorrectAnswer(f"Question {i}: choose the correct answer.") from None
        if not (0 <= correct < len(options)):
            raise InvalidCorrectAnswer(f"Question {i}: choose the correct answer.")
        cleaned.append(Question(id=generate_id(), text=text, options=options, correct_answer=correct))
    return cleaned


class ExamCatalog:
    def __init__(self, store: DurableStore):
        self.store = store

    def list_all(self) -> List[Exam]:
        return load_records(self.store.list(EXAMS), Exam, "exam")

    def create(self, name: str, grade: str, questions: Iterable[QuestionInput], created_by: str) -> Exam:
        """Validate everything first; the write happens once, all or nothing."""
        name = name.strip() if isinstance(name, str) else ""
        if not name:
            raise EmptyName()
        if grade not in GRADES:
            raise InvalidGrade()
        try:
            qs = list(questions or [])
        except TypeError:
            raise NoQuestions() from None
        if not qs:
            raise NoQuestions()
        cleaned = _clean_questions(qs)

        exam = Exam(
            id=generate_id(),
            name=name,
            grade=grade,
            questions=cleaned,
            created_at=utc_now_iso(),
            created_by=created_by,
        )
        self.store.append(EXAMS, exam.to_dict())
        print(f"[catalog] created exam '{name}' ({grade}, {len(cleaned)} questions)", flush=True)
        return exam

    def list_by_grade(self, grade: str) -> List[Exam]:
        exams = [e for e in self.list_all() if e.grade == grade]
        return sorted(exams, key=lambda e: e.created_at)

    def get_by_id(self, exam_id: str) -> Optional[Exam]:
        for e in self.list_all():
            if e.id == exam_id:
                return e
        return None

    def delete(self, exam_id: str) -> bool:
        def drop(rows):
            kept = [r for r in rows if not (isinstance(r, dict) and r.get("id") == exam_id)]
            if len(kept) == len(rows):
                return False
            rows[:] = kept
            return True

        if not self.store.update(EXAMS, drop):
            return False
        print(f"[catalog] deleted exam {exam_id}", flush=True)
        return True

    def counts_by_grade(self) -> Dict[str, int]:
        exams = self.list_all()
        return {g: sum(1 for e in exams if e.grade == g) for g in GRADES}
