# admin.py
# -----------------------------------------------------------------------------
# Admin area: overview, exam builder, exam deletion, results table.
# Every route calls require_admin() first.
# -----------------------------------------------------------------------------

import os
from typing import Any, Dict, List, Optional

from flask import Blueprint, abort, g, jsonify, redirect, request, url_for

from auth import render_page, safe_url
from catalog import CatalogError, ExamCatalog
from models import GRADES, OPTIONS_PER_QUESTION
from review import results_table
from scoring import MAX_SCORE
from session_engine import list_results
from storage import DurableStore, StorageUnavailable

BLANK_QUESTION_SLOTS = int(os.getenv("ADMIN_BLANK_QUESTIONS") or 5)
SORT_KEYS = ("date", "score")


# =========================
# Form parsing
# =========================
def questions_from_form(form) -> List[Dict[str, Any]]:
    """
    Reads q-<i>-text, q-<i>-option-<j>, q-<i>-correct.
    Fully blank blocks are skipped; partly filled ones go to the catalog as-is.
    """
    indices = set()
    for key in form.keys():
        if key.startswith("q-"):
            part = key.split("-", 2)[1]
            if part.isdigit():
                indices.add(int(part))

    out: List[Dict[str, Any]] = []
    for i in sorted(indices):
        text = (form.get(f"q-{i}-text") or "").strip()
        options = [(form.get(f"q-{i}-option-{j}") or "").strip() for j in range(OPTIONS_PER_QUESTION)]
        correct = form.get(f"q-{i}-correct")
        if not text and not any(options):
            continue
        out.append({"text": text, "options": options, "correct_answer": correct})
    return out


# =========================
# Page bodies
# =========================
ADMIN_HOME_BODY = """
<div class="bar">
  <h1>Admin</h1>
  <span class="muted">{{ user.username }} &middot; <a href="{{ results_url }}">Results</a> &middot; <a href="{{ logout_url }}">Sign out</a></span>
</div>
{% if msg %}<p class="ok">{{ msg }}</p>{% endif %}
{% if err %}<p class="error">{{ err }}</p>{% endif %}
<div class="card">
  <b>{{ overview.exam_count }}</b> exams &middot; <b>{{ overview.question_count }}</b> questions &middot;
  <b>{{ overview.result_count }}</b> results &middot; <b>{{ overview.student_count }}</b> students
  <p class="muted">{% for grade, n in overview.exams_by_grade.items() %}{{ grade }}: {{ n }}{% if not loop.last %} &middot; {% endif %}{% endfor %}</p>
</div>

<h2>Exams</h2>
{% for e in exams %}
  <div class="card bar">
    <span><b>{{ e.name }}</b> <span class="muted">{{ e.grade }} &middot; {{ e.question_count }} questions &middot; {{ e.created_at }}</span></span>
    <form method="post" action="{{ delete_url(e.id) }}" onsubmit="return confirm('Delete this exam? Results are kept.');">
      <button class="btn" type="submit">Delete</button>
    </form>
  </div>
{% else %}
  <p class="muted">No exams yet.</p>
{% endfor %}

<h2>New exam</h2>
<form method="post" action="{{ create_url }}" class="card">
  <p><label>Name <input name="name" required></label></p>
  <p><label>Grade
    <select name="grade">{% for g in grades %}<option value="{{ g }}">{{ g }}</option>{% endfor %}</select>
  </label></p>
  {% for i in range(slots) %}
    <fieldset class="card">
      <legend>Question {{ i + 1 }}</legend>
      <p><input name="q-{{ i }}-text" placeholder="Question text" style="width:100%"></p>
      {% for j in range(options_per_question) %}
        <p><label><input type="radio" name="q-{{ i }}-correct" value="{{ j }}" {% if j == 0 %}checked{% endif %}>
           <input name="q-{{ i }}-option-{{ j }}" placeholder="Option {{ j + 1 }}"></label></p>
      {% endfor %}
    </fieldset>
  {% endfor %}
  <p class="muted">Blank question blocks are ignored. <a href="?questions={{ slots + 5 }}">More question slots</a></p>
  <button class="btn" type="submit">Create exam</button>
</form>
"""

RESULTS_BODY = """
<div class="bar">
  <h1>Results</h1>
  <span class="muted"><a href="{{ home_url }}">Admin</a></span>
</div>
<div class="card">
  average <b>{{ table.stats.average }}</b>/{{ max_score }} &middot; highest <b>{{ table.stats.highest }}</b>
  &middot; lowest <b>{{ table.stats.lowest }}</b> &middot; passing <b>{{ table.stats.passing_percent }}%</b>
  &middot; {{ table.stats.count }} results
</div>
<form method="get" class="card">
  <input name="q" value="{{ q }}" placeholder="Search student or exam">
  <select name="grade">
    <option value="all">All grades</option>
    {% for g in grades %}<option value="{{ g }}" {% if g == grade %}selected{% endif %}>{{ g }}</option>{% endfor %}
  </select>
  <select name="sort">
    <option value="date" {% if sort == 'date' %}selected{% endif %}>Newest first</option>
    <option value="score" {% if sort == 'score' %}selected{% endif %}>Highest score</option>
  </select>
  <button class="btn" type="submit">Filter</button>
</form>
<table style="width:100%">
  <tr><th align="left">Student</th><th align="left">Exam</th><th>Grade</th><th>Score</th><th>Completed</th><th></th></tr>
  {% for r in table.rows %}
  <tr>
    <td>{{ r.username }}</td><td>{{ r.exam_name }}</td><td>{{ r.grade }}</td>
    <td class="{{ 'ok' if r.passed else 'error' }}">{{ r.score }}/{{ max_score }}</td>
    <td class="muted">{{ r.completed_at }}</td>
    <td><a href="{{ review_url(r.id) }}">Review</a></td>
  </tr>
  {% else %}
  <tr><td colspan="6" class="muted">No results.</td></tr>
  {% endfor %}
</table>
"""


def create_admin_blueprint(base_path: str, deps: Dict[str, Any], name: str = "admin") -> Blueprint:
    """
    Required deps: store (DurableStore)
    Optional deps: catalog
    """
    mount_prefix = f"{(base_path or '').rstrip('/')}/admin"
    bp = Blueprint(name, __name__, url_prefix=mount_prefix)

    store: DurableStore = deps["store"]
    catalog: ExamCatalog = deps.get("catalog") or ExamCatalog(store)

    # ---------- Gate ----------
    def require_admin():
        error = getattr(g, "identity_error", None)
        if error is not None:
            raise error
        user = getattr(g, "user", None)
        if user is None or not user.is_admin:
            abort(403)
        return user

    @bp.errorhandler(StorageUnavailable)
    def _storage_down(e):
        print(f"[admin] storage unavailable: {e}", flush=True)
        return jsonify({"ok": False, "error": f"storage unavailable: {e}"}), 503

    def _home(msg: Optional[str] = None, err: Optional[str] = None):
        args = {}
        if msg:
            args["msg"] = msg
        if err:
            args["err"] = err
        return redirect(url_for(f"{bp.name}.admin_home", **args))

    def _overview() -> Dict[str, Any]:
        exams = catalog.list_all()
        results = list_results(store)
        return {
            "exam_count": len(exams),
            "question_count": sum(e.question_count for e in exams),
            "result_count": len(results),
            "student_count": len({r.user_id for r in results}),
            "exams_by_grade": catalog.counts_by_grade(),
        }

    def _filters() -> Dict[str, Any]:
        sort = (request.args.get("sort") or "date").strip().lower()
        return {
            "q": (request.args.get("q") or "").strip(),
            "grade": (request.args.get("grade") or "all").strip(),
            "sort": sort if sort in SORT_KEYS else "date",
        }

    # ---------- Admin Home ----------
    @bp.get("/")
    def admin_home():
        user = require_admin()
        try:
            slots = max(1, min(int(request.args.get("questions") or BLANK_QUESTION_SLOTS), 100))
        except ValueError:
            slots = BLANK_QUESTION_SLOTS
        exams = sorted(catalog.list_all(), key=lambda e: e.created_at, reverse=True)
        return render_page(
            ADMIN_HOME_BODY, "Admin",
            user=user,
            overview=_overview(),
            exams=exams,
            slots=slots,
            options_per_question=OPTIONS_PER_QUESTION,
            msg=request.args.get("msg"),
            err=request.args.get("err"),
            create_url=url_for(f"{bp.name}.create_exam"),
            delete_url=lambda exam_id: url_for(f"{bp.name}.delete_exam", exam_id=exam_id),
            results_url=url_for(f"{bp.name}.admin_results"),
            logout_url=safe_url("auth.logout", "/logout"),
        )

    @bp.get("/overview.json")
    def admin_overview_json():
        require_admin()
        return jsonify({"ok": True, "overview": _overview()})

    # ---------- Exams ----------
    @bp.post("/exams")
    def create_exam():
        user = require_admin()
        data = request.get_json(silent=True)
        from_json = isinstance(data, dict)
        if from_json:
            name = data.get("name") or ""
            grade = data.get("grade") or ""
            questions = data.get("questions") or []
        else:
            name = request.form.get("name") or ""
            grade = request.form.get("grade") or ""
            questions = questions_from_form(request.form)

        try:
            exam = catalog.create(name, grade, questions, created_by=user.id)
        except CatalogError as e:
            if from_json:
                return jsonify({"ok": False, "error": str(e)}), 400
            return _home(err=str(e))

        print(f"[admin] '{user.username}' created exam {exam.id}", flush=True)
        if from_json:
            return jsonify({"ok": True, "exam": exam.to_dict()}), 201
        return _home(msg=f"Exam '{exam.name}' created.")

    @bp.post("/exams/<exam_id>/delete")
    def delete_exam(exam_id: str):
        user = require_admin()
        deleted = catalog.delete(exam_id)
        if deleted:
            print(f"[admin] '{user.username}' deleted exam {exam_id}", flush=True)
        if request.is_json or request.accept_mimetypes.best == "application/json":
            if not deleted:
                return jsonify({"ok": False, "error": "exam not found"}), 404
            return jsonify({"ok": True})
        if not deleted:
            return _home(err="Exam not found.")
        return _home(msg="Exam deleted.")

    # ---------- Results ----------
    @bp.get("/results")
    def admin_results():
        require_admin()
        f = _filters()
        table = results_table(list_results(store), query=f["q"], grade=f["grade"], sort_by=f["sort"])
        return render_page(
            RESULTS_BODY, "Results",
            table=table,
            max_score=MAX_SCORE,
            home_url=url_for(f"{bp.name}.admin_home"),
            review_url=lambda rid: safe_url("exam.review_page", f"/results/{rid}", result_id=rid),
            **f,
        )

    @bp.get("/results.json")
    def admin_results_json():
        require_admin()
        f = _filters()
        table = results_table(list_results(store), query=f["q"], grade=f["grade"], sort_by=f["sort"])
        return jsonify({"ok": True, "filters": f, **table})

    return bp
