# models.py
# -----------------------------------------------------------------------------
# Records kept in the Durable Store. Plain dataclasses with dict round-trips;
# storage keys are snake_case, timestamps are ISO-8601 UTC strings.
# -----------------------------------------------------------------------------

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"

GRADES: List[str] = [
    "Primary 4",
    "Primary 5",
    "Primary 6",
    "Preparatory 1",
    "Preparatory 2",
    "Preparatory 3",
    "Secondary 1",
    "Secondary 2",
    "Secondary 3",
]

OPTIONS_PER_QUESTION = 4


def generate_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class User:
    id: str
    username: str
    password: str
    role: str
    grade: Optional[str] = None
    created_at: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "password": self.password,
            "role": self.role,
            "grade": self.grade,
            "created_at": self.created_at,
        }

    def public_dict(self) -> Dict[str, Any]:
        d = self.to_dict()
        d.pop("password", None)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "User":
        return cls(
            id=str(d["id"]),
            username=str(d["username"]),
            password=str(d.get("password") or ""),
            role=str(d.get("role") or ROLE_STUDENT),
            grade=d.get("grade"),
            created_at=str(d.get("created_at") or ""),
        )


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    options: List[str]
    correct_answer: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "options": list(self.options),
            "correct_answer": self.correct_answer,
        }

    def public_dict(self) -> Dict[str, Any]:
        """Shape sent to a student during an attempt: no correct answer."""
        return {"id": self.id, "text": self.text, "options": list(self.options)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Question":
        return cls(
            id=str(d.get("id") or generate_id()),
            text=str(d["text"]),
            options=[str(o) for o in (d.get("options") or [])],
            correct_answer=int(d["correct_answer"]),
        )


@dataclass(frozen=True)
class Exam:
    id: str
    name: str
    grade: str
    questions: List[Question] = field(default_factory=list)
    created_at: str = ""
    created_by: str = ""

    @property
    def question_count(self) -> int:
        return len(self.questions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "grade": self.grade,
            "questions": [q.to_dict() for q in self.questions],
            "created_at": self.created_at,
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Exam":
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            grade=str(d["grade"]),
            questions=[Question.from_dict(q) for q in (d.get("questions") or [])],
            created_at=str(d.get("created_at") or ""),
            created_by=str(d.get("created_by") or ""),
        )


@dataclass(frozen=True)
class ExamResult:
    id: str
    exam_id: str
    exam_name: str
    user_id: str
    username: str
    grade: str
    score: int
    total_questions: int
    completed_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "exam_id": self.exam_id,
            "exam_name": self.exam_name,
            "user_id": self.user_id,
            "username": self.username,
            "grade": self.grade,
            "score": self.score,
            "total_questions": self.total_questions,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ExamResult":
        return cls(
            id=str(d["id"]),
            exam_id=str(d["exam_id"]),
            exam_name=str(d.get("exam_name") or ""),
            user_id=str(d["user_id"]),
            username=str(d.get("username") or ""),
            grade=str(d.get("grade") or ""),
            score=int(d.get("score") or 0),
            total_questions=int(d.get("total_questions") or 0),
            completed_at=str(d.get("completed_at") or ""),
        )


def load_records(rows: List[Dict[str, Any]], cls, kind: str) -> List[Any]:
    """Parse stored rows, skipping any that are malformed."""
    out: List[Any] = []
    for row in rows or []:
        if not isinstance(row, dict):
            print(f"[store] skipping non-object {kind} record", flush=True)
            continue
        try:
            out.append(cls.from_dict(row))
        except (KeyError, TypeError, ValueError) as e:
            print(f"[store] skipping malformed {kind} record: {e}", flush=True)
    return out
