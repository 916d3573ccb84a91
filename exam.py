# exam.py
# -----------------------------------------------------------------------------
# Student side: grade dashboard, timed exam sessions, result review.
# - One live ExamSession per (user, exam) in this process; start resumes it
# - Sessions are in memory only; only the finished result is persisted
# - After completion the answer trail is kept in memory keyed by result id
# - JSON endpoints drive the exam page; every response is {"ok": ..., ...}
# -----------------------------------------------------------------------------

import os
import threading
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

from flask import Blueprint, g, jsonify, redirect, request

from auth import render_page, safe_url
from catalog import ExamCatalog
from models import Exam, ExamResult, User
from review import build_review
from scoring import MAX_SCORE, average_score
from session_engine import (
    EXAM_DURATION_SECONDS, AlreadyCompleted, ExamNotFound, ExamSession, InvalidAnswer,
    Phase, SessionClosed, find_result, results_for_user,
)
from storage import DurableStore, StorageUnavailable

# Finished sessions whose answer trail stays in memory for review.
FINISHED_KEPT = int(os.getenv("FINISHED_SESSIONS_KEPT") or 1000)


# =========================
# Live sessions
# =========================
class SessionRegistry:
    """
    Process-local map of live sessions plus the trail of finished ones.
    Only the most recent `keep_finished` completions keep their trail.
    """

    def __init__(self, keep_finished: int = FINISHED_KEPT):
        self._lock = threading.Lock()
        self.keep_finished = max(1, keep_finished)
        self._live: Dict[str, ExamSession] = {}
        self._finished: "OrderedDict[str, Tuple[str, str]]" = OrderedDict()  # sid -> (user_id, result_id)
        self._answers: "OrderedDict[str, Dict[int, int]]" = OrderedDict()    # result_id -> answers

    def add(self, session: ExamSession) -> None:
        with self._lock:
            self._live[session.id] = session

    def get(self, sid: str, user_id: str) -> Optional[ExamSession]:
        with self._lock:
            s = self._live.get(sid)
        if s is None or s.user.id != user_id:
            return None
        return s

    def find_active(self, user_id: str, exam_id: str) -> Optional[ExamSession]:
        with self._lock:
            for s in self._live.values():
                if s.user.id == user_id and s.exam_id == exam_id and s.phase is Phase.ACTIVE:
                    return s
        return None

    def complete(self, session: ExamSession, result: ExamResult) -> None:
        with self._lock:
            self._live.pop(session.id, None)
            self._finished[session.id] = (session.user.id, result.id)
            self._answers[result.id] = dict(session.answers)
            while len(self._finished) > self.keep_finished:
                self._finished.popitem(last=False)
            while len(self._answers) > self.keep_finished:
                self._answers.popitem(last=False)

    def discard(self, session: ExamSession) -> None:
        with self._lock:
            self._live.pop(session.id, None)

    def finished_result_id(self, sid: str, user_id: str) -> Optional[str]:
        with self._lock:
            owner_result = self._finished.get(sid)
        if owner_result is None or owner_result[0] != user_id:
            return None
        return owner_result[1]

    def answers_for(self, result_id: str) -> Optional[Dict[int, int]]:
        with self._lock:
            answers = self._answers.get(result_id)
        return dict(answers) if answers is not None else None


# =========================
# Page bodies
# =========================
DASHBOARD_BODY = """
<div class="bar">
  <h1>Exams for {{ user.grade }}</h1>
  <span class="muted">{{ user.username }} &middot; <a href="{{ logout_url }}">Sign out</a></span>
</div>
<form method="post" action="{{ theme_url }}"><button class="btn" type="submit">Toggle theme</button></form>
<div class="card">
  <b>{{ stats.total }}</b> exams &middot; <b>{{ stats.completed }}</b> completed &middot;
  <b>{{ stats.remaining }}</b> remaining &middot; average <b>{{ stats.average }}</b>/{{ max_score }}
</div>
{% if not cards %}<p class="muted">No exams for your grade yet.</p>{% endif %}
{% for c in cards %}
  <div class="card">
    <h3>{{ c.exam.name }}</h3>
    <p class="muted">{{ c.exam.question_count }} questions &middot; {{ minutes }} minutes</p>
    {% if c.result %}
      <p class="ok">Completed: {{ c.result.score }}/{{ max_score }}</p>
      <a href="{{ c.review_url }}">Review</a>
    {% elif c.live_url %}
      <a class="btn" href="{{ c.live_url }}">Resume</a>
    {% else %}
      <form method="post" action="{{ c.start_url }}"><button class="btn" type="submit">Start</button></form>
    {% endif %}
  </div>
{% endfor %}
"""

SESSION_BODY = """
<div class="bar">
  <h1>{{ exam_name }}</h1>
  <span id="clock" class="muted"></span>
</div>
<div id="q" class="card"></div>
<div class="bar">
  <button class="btn" id="prev">Previous</button>
  <span id="progress" class="muted"></span>
  <button class="btn" id="next">Next</button>
</div>
<p>
  <button class="btn" id="submit">Submit</button>
  <button class="btn" id="cancel">Leave without submitting</button>
</p>
<p id="msg" class="error"></p>
<script>
(function(){
  const base = {{ session_url|tojson }};
  const $ = (id) => document.getElementById(id);
  let state = null;

  async function call(path, body){
    const r = await fetch(base + path, {
      method: body === undefined ? "GET" : "POST",
      headers: {"Content-Type": "application/json"},
      body: body === undefined ? undefined : JSON.stringify(body)
    });
    const j = await r.json().catch(() => ({ok:false, error:"bad response"}));
    if (!j.ok) { $("msg").textContent = j.error || "Request failed"; }
    return j;
  }

  function finish(j){
    if (j.review_url) { window.location = j.review_url; return true; }
    if (j.dashboard_url) { window.location = j.dashboard_url; return true; }
    return false;
  }

  function render(){
    if (!state) return;
    const q = state.question;
    const m = Math.floor(state.remaining_seconds / 60), s = state.remaining_seconds % 60;
    $("clock").textContent = m + ":" + String(s).padStart(2, "0");
    $("progress").textContent = (state.position + 1) + " / " + state.question_count +
      " (" + state.answered_count + " answered)";
    const chosen = state.answers[String(state.position)];
    let html = "<h3>" + (state.position + 1) + ". </h3><p></p>";
    $("q").innerHTML = html;
    $("q").querySelector("p").textContent = q.text;
    q.options.forEach(function(opt, i){
      const b = document.createElement("button");
      b.className = "btn";
      b.style.display = "block";
      b.style.margin = "6px 0";
      b.style.opacity = (chosen === i) ? "1" : "0.6";
      b.textContent = opt;
      b.onclick = async function(){
        const j = await call("/answer", {question_index: state.position, option_index: i});
        if (j.ok) { state = j.state; render(); }
      };
      $("q").appendChild(b);
    });
  }

  async function refresh(){
    const j = await call("/state");
    if (j.ok && j.state) { state = j.state; render(); }
    else if (j.ok) { finish(j); }
  }

  $("prev").onclick = async () => { const j = await call("/navigate", {action: "previous"}); if (j.ok) { state = j.state; render(); } };
  $("next").onclick = async () => { const j = await call("/navigate", {action: "next"}); if (j.ok) { state = j.state; render(); } };
  $("submit").onclick = async () => {
    if (state && state.answered_count < state.question_count &&
        !confirm("Some questions are unanswered. Submit anyway?")) return;
    finish(await call("/submit", {}));
  };
  $("cancel").onclick = async () => {
    if (!confirm("Leave the exam? Your answers will not be saved.")) return;
    finish(await call("/cancel", {}));
  };

  refresh();
  setInterval(refresh, 1000);
})();
</script>
"""

REVIEW_BODY = """
<h1>{{ r.exam_name }}</h1>
<div class="card">
  <p><b>{{ r.score }}/{{ r.max_score }}</b> ({{ r.percentage|round(1) }}%)
     &middot; {{ "Passed" if r.passed else "Not passed" }}
     &middot; {{ band_labels[r.band] }} {{ "&#9733;"|safe * r.stars }}</p>
  <p class="muted">{{ r.correct_count }} of {{ r.total_questions }} correct &middot; {{ r.grade }} &middot; {{ r.completed_at }}</p>
</div>
{% if not r.exam_available %}
  <p class="muted">This exam has been removed; question details are no longer available.</p>
{% else %}
  {% if not r.answers_available %}<p class="muted">Your individual answers are not available for this attempt.</p>{% endif %}
  {% for item in r["items"] %}
    <div class="card">
      <p><b>{{ item.index + 1 }}.</b> {{ item.text }}</p>
      <ul>
      {% for o in item.options %}
        <li class="{{ 'ok' if o.is_correct else ('error' if o.is_selected else '') }}">
          {{ o.text }}{% if o.is_correct %} (correct){% endif %}{% if o.is_selected %} (your answer){% endif %}
        </li>
      {% endfor %}
      </ul>
    </div>
  {% endfor %}
{% endif %}
<p><a href="{{ back_url }}">Back</a></p>
"""

BAND_LABELS = {
    "excellent": "Excellent",
    "very_good": "Very good",
    "good": "Good",
    "needs_study": "Needs more study",
}


# -----------------------------------------------------------------------------
# Blueprint factory
# -----------------------------------------------------------------------------
def create_exam_blueprint(base_path: str, deps: Dict[str, Any], name: str = "exam") -> Blueprint:
    """
    Required deps: store (DurableStore)
    Optional deps: catalog, registry, session_options (kwargs for ExamSession,
    e.g. timer_factory / duration_seconds)
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or None))

    store: DurableStore = deps["store"]
    catalog: ExamCatalog = deps.get("catalog") or ExamCatalog(store)
    registry: SessionRegistry = deps.get("registry") or SessionRegistry()
    session_options: Dict[str, Any] = dict(deps.get("session_options") or {})
    duration = int(session_options.get("duration_seconds") or EXAM_DURATION_SECONDS)

    bp.registry = registry  # exposed for the app factory and tests

    # ------------------------------- helpers ----------------------------------
    def _user() -> Optional[User]:
        error = getattr(g, "identity_error", None)
        if error is not None:
            raise error
        return getattr(g, "user", None)

    def _wants_json() -> bool:
        return request.is_json or request.accept_mimetypes.best == "application/json"

    def _payload() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            return data
        return request.form.to_dict()

    def _fail(msg: str, status: int):
        return jsonify({"ok": False, "error": msg}), status

    def _guard_student(json_response: bool = True):
        """Returns (user, None) or (None, response)."""
        user = _user()
        if user is None:
            if json_response:
                return None, _fail("unauthorized", 401)
            return None, redirect(safe_url("auth.login", "/login"))
        if user.is_admin:
            return None, _fail("students only", 403)
        return user, None

    def _session_url(sid: str) -> str:
        return safe_url(f"{bp.name}.session_page", f"/sessions/{sid}", sid=sid)

    def _review_url(result_id: str) -> str:
        return safe_url(f"{bp.name}.review_page", f"/results/{result_id}", result_id=result_id)

    def _dashboard_url() -> str:
        return safe_url(f"{bp.name}.dashboard", "/exams")

    def _finished_response(result_id: str):
        return jsonify({
            "ok": True,
            "state": None,
            "phase": Phase.COMPLETED.value,
            "result_id": result_id,
            "review_url": _review_url(result_id),
        })

    def _dashboard_data(user: User) -> Dict[str, Any]:
        exams = catalog.list_by_grade(user.grade) if user.grade else []
        results = results_for_user(store, user.id)
        by_exam: Dict[str, ExamResult] = {}
        for r in results:
            by_exam.setdefault(r.exam_id, r)
        completed = sum(1 for e in exams if e.id in by_exam)
        cards = []
        for e in exams:
            live = registry.find_active(user.id, e.id)
            result = by_exam.get(e.id)
            cards.append({
                "exam": e,
                "result": result,
                "review_url": _review_url(result.id) if result else None,
                "live_id": live.id if live else None,
                "live_url": _session_url(live.id) if live else None,
                "start_url": safe_url(f"{bp.name}.start_exam", f"/exams/{e.id}/start", exam_id=e.id),
            })
        stats = {
            "total": len(exams),
            "completed": completed,
            "remaining": len(exams) - completed,
            "average": average_score(r.score for r in results),
        }
        return {"cards": cards, "stats": stats}

    @bp.errorhandler(StorageUnavailable)
    def _storage_down(e):
        print(f"[exam] storage unavailable: {e}", flush=True)
        return _fail(f"storage unavailable: {e}", 503)

    # --------------------------------- routes ---------------------------------
    @bp.get("/exams")
    def dashboard():
        user, denied = _guard_student(json_response=False)
        if denied:
            return denied
        data = _dashboard_data(user)
        return render_page(
            DASHBOARD_BODY, "Exams",
            user=user,
            cards=data["cards"],
            stats=data["stats"],
            max_score=MAX_SCORE,
            minutes=duration // 60,
            logout_url=safe_url("auth.logout", "/logout"),
            theme_url=safe_url("auth.toggle_theme", "/theme"),
        )

    @bp.get("/exams.json")
    def dashboard_json():
        user, denied = _guard_student()
        if denied:
            return denied
        data = _dashboard_data(user)
        return jsonify({
            "ok": True,
            "stats": data["stats"],
            "exams": [
                {
                    "id": c["exam"].id,
                    "name": c["exam"].name,
                    "question_count": c["exam"].question_count,
                    "completed": c["result"] is not None,
                    "score": c["result"].score if c["result"] else None,
                    "result_id": c["result"].id if c["result"] else None,
                    "live_session_id": c["live_id"],
                }
                for c in data["cards"]
            ],
        })

    @bp.post("/exams/<exam_id>/start")
    def start_exam(exam_id: str):
        user, denied = _guard_student()
        if denied:
            return denied

        exam: Optional[Exam] = catalog.get_by_id(exam_id)
        if exam is None or not exam.questions:
            return _fail(ExamNotFound.message, 404)
        if exam.grade != user.grade:
            return _fail("This exam is not for your grade.", 403)

        session = registry.find_active(user.id, exam.id)
        resumed = session is not None
        if session is None:
            try:
                session = ExamSession.start(store, catalog, user, exam.id,
                                            on_complete=registry.complete, **session_options)
            except ExamNotFound as e:
                return _fail(str(e), 404)
            except AlreadyCompleted as e:
                return _fail(str(e), 409)
            registry.add(session)

        if not _wants_json():
            return redirect(_session_url(session.id))
        return jsonify({
            "ok": True,
            "session_id": session.id,
            "resumed": resumed,
            "session_url": _session_url(session.id),
            "state": session.snapshot(),
        })

    @bp.get("/sessions/<sid>")
    def session_page(sid: str):
        user, denied = _guard_student(json_response=False)
        if denied:
            return denied
        session = registry.get(sid, user.id)
        if session is None:
            result_id = registry.finished_result_id(sid, user.id)
            if result_id:
                return redirect(_review_url(result_id))
            return render_page("<h1>Session not found</h1>", "Not found", 404)
        return render_page(SESSION_BODY, session.exam.name,
                           exam_name=session.exam.name, session_url=_session_url(sid))

    @bp.get("/sessions/<sid>/state")
    def session_state(sid: str):
        user, denied = _guard_student()
        if denied:
            return denied
        session = registry.get(sid, user.id)
        if session is None:
            result_id = registry.finished_result_id(sid, user.id)
            if result_id:
                return _finished_response(result_id)
            return _fail("session not found", 404)
        return jsonify({"ok": True, "state": session.snapshot()})

    @bp.post("/sessions/<sid>/answer")
    def session_answer(sid: str):
        user, denied = _guard_student()
        if denied:
            return denied
        session = registry.get(sid, user.id)
        if session is None:
            return _fail("session not found", 404)
        data = _payload()
        try:
            session.set_answer(data.get("question_index"), data.get("option_index"))
        except InvalidAnswer as e:
            return _fail(str(e), 400)
        except SessionClosed as e:
            return _fail(str(e), 409)
        return jsonify({"ok": True, "state": session.snapshot()})

    @bp.post("/sessions/<sid>/navigate")
    def session_navigate(sid: str):
        user, denied = _guard_student()
        if denied:
            return denied
        session = registry.get(sid, user.id)
        if session is None:
            return _fail("session not found", 404)
        data = _payload()
        action = (data.get("action") or "").strip().lower()
        try:
            if action == "next":
                session.next()
            elif action == "previous":
                session.previous()
            elif action == "goto":
                try:
                    index = int(data.get("index"))
                except (TypeError, ValueError):
                    return _fail("index must be an integer", 400)
                session.go_to(index)
            else:
                return _fail("action must be next, previous or goto", 400)
        except SessionClosed as e:
            return _fail(str(e), 409)
        return jsonify({"ok": True, "state": session.snapshot()})

    @bp.post("/sessions/<sid>/submit")
    def session_submit(sid: str):
        user, denied = _guard_student()
        if denied:
            return denied
        session = registry.get(sid, user.id)
        if session is None:
            result_id = registry.finished_result_id(sid, user.id)
            if result_id:
                return _finished_response(result_id)
            return _fail("session not found", 404)

        result = session.submit()
        if result is None:
            return _fail("submission already in progress", 409)
        return jsonify({
            "ok": True,
            "result_id": result.id,
            "score": result.score,
            "max_score": MAX_SCORE,
            "duplicate": session.duplicate_detected,
            "review_url": _review_url(result.id),
        })

    @bp.post("/sessions/<sid>/cancel")
    def session_cancel(sid: str):
        user, denied = _guard_student()
        if denied:
            return denied
        session = registry.get(sid, user.id)
        if session is None:
            return _fail("session not found", 404)
        if not session.cancel():
            return _fail(SessionClosed.message, 409)
        registry.discard(session)
        return jsonify({"ok": True, "dashboard_url": _dashboard_url()})

    def _review_for(result_id: str):
        user = _user()
        if user is None:
            return None, _fail("unauthorized", 401)
        result = find_result(store, result_id)
        if result is None or (result.user_id != user.id and not user.is_admin):
            return None, _fail("result not found", 404)
        exam = catalog.get_by_id(result.exam_id)
        return build_review(result, exam, registry.answers_for(result.id)), None

    @bp.get("/results/<result_id>")
    def review_page(result_id: str):
        if _user() is None:
            return redirect(safe_url("auth.login", "/login"))
        review, err = _review_for(result_id)
        if err:
            return render_page("<h1>Result not found</h1>", "Not found", 404)
        back = safe_url("admin.admin_results", "/admin/results") if _user().is_admin else _dashboard_url()
        return render_page(REVIEW_BODY, review["exam_name"], r=review,
                           band_labels=BAND_LABELS, back_url=back)

    @bp.get("/results/<result_id>/review.json")
    def review_json(result_id: str):
        review, err = _review_for(result_id)
        if err:
            return err
        return jsonify({"ok": True, "review": review})

    return bp
