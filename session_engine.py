# session_engine.py
# -----------------------------------------------------------------------------
# One student's attempt at one exam.
# - Phases: active -> submitting -> completed (or active -> cancelled)
# - Active -> submitting is a compare-and-set under the session lock, so a
#   manual submit and the countdown's auto-submit never both score/write
# - Countdown is a re-armed one-second threading.Timer; every exit path
#   (submit, timeout, cancel) releases it
# - Completion is re-checked against Results right before the write
# -----------------------------------------------------------------------------

import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from catalog import ExamCatalog
from models import Exam, ExamResult, User, generate_id, load_records, utc_now_iso
from scoring import score_answers
from storage import RESULTS, DurableStore, StorageUnavailable

EXAM_DURATION_SECONDS = 900
TICK_SECONDS = 1.0


class Phase(str, Enum):
    ACTIVE = "active"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# =========================
# Errors
# =========================
class SessionError(Exception):
    message = "Exam session error."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class ExamNotFound(SessionError):
    message = "Exam not found."


class AlreadyCompleted(SessionError):
    message = "You have already completed this exam."


class InvalidAnswer(SessionError):
    message = "Invalid answer."


class SessionClosed(SessionError):
    message = "This exam session is no longer active."


# =========================
# Results lookups
# =========================
def has_completed_exam(store: DurableStore, user_id: str, exam_id: str) -> bool:
    """Always re-reads Results; never trust an earlier read."""
    for r in store.list(RESULTS):
        if isinstance(r, dict) and r.get("user_id") == user_id and r.get("exam_id") == exam_id:
            return True
    return False


def list_results(store: DurableStore) -> List[ExamResult]:
    return load_records(store.list(RESULTS), ExamResult, "result")


def results_for_user(store: DurableStore, user_id: str) -> List[ExamResult]:
    return [r for r in list_results(store) if r.user_id == user_id]


def find_result(store: DurableStore, result_id: str) -> Optional[ExamResult]:
    for r in list_results(store):
        if r.id == result_id:
            return r
    return None


# =========================
# Countdown
# =========================
class Countdown:
    """
    Calls on_tick() every `interval` seconds until it returns False or
    cancel() is called. Only one timer handle is ever armed.
    """

    def __init__(self, on_tick: Callable[[], bool], interval: float = TICK_SECONDS,
                 timer_factory: Callable[..., Any] = threading.Timer):
        self.on_tick = on_tick
        self.interval = interval
        self._timer_factory = timer_factory
        self._timer: Optional[Any] = None
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _arm(self) -> None:
        self._timer = self._timer_factory(self.interval, self._fire)
        self._timer.daemon = True
        self._timer.start()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._arm()

    def _fire(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._timer = None
        keep_going = False
        try:
            keep_going = bool(self.on_tick())
        except Exception as e:
            print(f"[exam] countdown tick failed: {e}", flush=True)
        with self._lock:
            if self._running and keep_going:
                self._arm()
            else:
                self._running = False

    def cancel(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


# =========================
# Session
# =========================
class ExamSession:
    def __init__(self, store: DurableStore, exam: Exam, user: User,
                 duration_seconds: int = EXAM_DURATION_SECONDS,
                 on_complete: Optional[Callable[["ExamSession", ExamResult], None]] = None,
                 timer_factory: Callable[..., Any] = threading.Timer,
                 tick_seconds: float = TICK_SECONDS):
        self.id = generate_id()
        self.store = store
        self.exam = exam
        self.user = user
        self.position = 0
        self.answers: Dict[int, int] = {}
        self.remaining_seconds = int(duration_seconds)
        self.phase = Phase.ACTIVE
        self.result: Optional[ExamResult] = None
        self.duplicate_detected = False
        self.started_at = utc_now_iso()
        self.on_complete = on_complete
        self._lock = threading.RLock()
        self._countdown = Countdown(self.tick, tick_seconds, timer_factory)

    @classmethod
    def start(cls, store: DurableStore, catalog: ExamCatalog, user: User, exam_id: str,
              **kwargs) -> "ExamSession":
        """Check preconditions (no writes on refusal), then arm the countdown."""
        exam = catalog.get_by_id(exam_id)
        if exam is None or not exam.questions:
            raise ExamNotFound()
        if has_completed_exam(store, user.id, exam.id):
            raise AlreadyCompleted()
        session = cls(store, exam, user, **kwargs)
        session._countdown.start()
        print(f"[exam] session {session.id} started: user={user.username} exam={exam.id}", flush=True)
        return session

    # ------------------------------- views ------------------------------------
    @property
    def exam_id(self) -> str:
        return self.exam.id

    @property
    def question_count(self) -> int:
        return len(self.exam.questions)

    @property
    def answered_count(self) -> int:
        return len(self.answers)

    @property
    def timer_running(self) -> bool:
        return self._countdown.running

    def current_question(self) -> Dict[str, Any]:
        return self.exam.questions[self.position].public_dict()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "session_id": self.id,
                "exam_id": self.exam.id,
                "exam_name": self.exam.name,
                "grade": self.exam.grade,
                "phase": self.phase.value,
                "position": self.position,
                "question_count": self.question_count,
                "answered_count": self.answered_count,
                "answers": {str(k): v for k, v in sorted(self.answers.items())},
                "remaining_seconds": self.remaining_seconds,
                "question": self.current_question(),
                "result_id": self.result.id if self.result else None,
            }

    # ------------------------------- guards -----------------------------------
    def _require_active(self) -> None:
        if self.phase is not Phase.ACTIVE:
            raise SessionClosed()

    # ------------------------------- navigation -------------------------------
    def go_to(self, index: int) -> int:
        with self._lock:
            self._require_active()
            self.position = max(0, min(int(index), self.question_count - 1))
            return self.position

    def next(self) -> int:
        with self._lock:
            return self.go_to(self.position + 1)

    def previous(self) -> int:
        with self._lock:
            return self.go_to(self.position - 1)

    # ------------------------------- answers ----------------------------------
    def set_answer(self, question_index: int, option_index: int) -> None:
        """Overwrites any earlier choice. Correctness is never checked here."""
        try:
            q_idx, o_idx = int(question_index), int(option_index)
        except (TypeError, ValueError):
            raise InvalidAnswer() from None
        with self._lock:
            self._require_active()
            if self.remaining_seconds <= 0:
                raise SessionClosed("Time is up.")
            if not (0 <= q_idx < self.question_count):
                raise InvalidAnswer(f"No question at index {q_idx}.")
            if not (0 <= o_idx < len(self.exam.questions[q_idx].options)):
                raise InvalidAnswer(f"No option at index {o_idx}.")
            self.answers[q_idx] = o_idx

    # ------------------------------- countdown --------------------------------
    def tick(self) -> bool:
        """One countdown step. Returns whether the countdown should continue."""
        with self._lock:
            if self.phase is not Phase.ACTIVE:
                return False
            if self.remaining_seconds > 0:
                self.remaining_seconds -= 1
            if self.remaining_seconds > 0:
                return True
        print(f"[exam] session {self.id}: time is up, auto-submitting", flush=True)
        try:
            self.submit()
        except StorageUnavailable as e:
            print(f"[exam] session {self.id}: auto-submit could not be saved: {e}", flush=True)
        return False

    # ------------------------------- submission -------------------------------
    def submit(self) -> Optional[ExamResult]:
        """
        Score and persist exactly once. Repeat calls return the existing
        result (None while a submit is still in flight). A storage failure
        puts the session back to active and propagates.
        """
        with self._lock:
            if self.phase is not Phase.ACTIVE:
                return self.result
            self.phase = Phase.SUBMITTING
            answers = dict(self.answers)

        try:
            result = self._record(answers)
        except StorageUnavailable:
            with self._lock:
                self.phase = Phase.ACTIVE
            raise

        with self._lock:
            self.result = result
            self.phase = Phase.COMPLETED
        self._countdown.cancel()
        print(f"[exam] session {self.id} submitted: score={result.score}/{result.total_questions} questions", flush=True)
        if self.on_complete is not None:
            self.on_complete(self, result)
        return result

    def _record(self, answers: Dict[int, int]) -> ExamResult:
        score = score_answers(self.exam.questions, answers)
        if has_completed_exam(self.store, self.user.id, self.exam.id):
            # Concurrent attempt already wrote a result; keep both.
            self.duplicate_detected = True
            print(f"[exam] WARNING duplicate result for user={self.user.id} exam={self.exam.id}", flush=True)
        result = ExamResult(
            id=generate_id(),
            exam_id=self.exam.id,
            exam_name=self.exam.name,
            user_id=self.user.id,
            username=self.user.username,
            grade=self.exam.grade,
            score=score,
            total_questions=self.question_count,
            completed_at=utc_now_iso(),
        )
        self.store.append(RESULTS, result.to_dict())
        return result

    # ------------------------------- cancellation -----------------------------
    def cancel(self) -> bool:
        """Leave without submitting. Results stay untouched; the timer is released."""
        with self._lock:
            if self.phase is not Phase.ACTIVE:
                return False
            self.phase = Phase.CANCELLED
        self._countdown.cancel()
        print(f"[exam] session {self.id} cancelled", flush=True)
        return True
