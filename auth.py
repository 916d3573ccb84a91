# auth.py
# -----------------------------------------------------------------------------
# Sign-in / registration / sign-out / theme, plus the shared page shell.
# The current-user and theme slots live in the signed Flask session cookie,
# i.e. per browser; users themselves live in the Durable Store.
# -----------------------------------------------------------------------------

from typing import Any, Dict, Optional

from flask import Blueprint, g, redirect, render_template_string, request, session, url_for
from werkzeug.routing import BuildError

from identity import IdentityError, SessionContext
from models import GRADES
from storage import THEME, DurableStore, StorageUnavailable

THEMES = ("light", "dark")


# =========================
# Cookie-backed slots
# =========================
class CookieSlots:
    """Slot contract (get_slot / set_slot) over flask.session."""

    PREFIX = "slot:"

    def get_slot(self, slot: str, default: Any = None) -> Any:
        return session.get(self.PREFIX + slot, default)

    def set_slot(self, slot: str, value: Any) -> None:
        if value is None:
            session.pop(self.PREFIX + slot, None)
        else:
            session[self.PREFIX + slot] = value


def current_theme() -> str:
    theme = CookieSlots().get_slot(THEME, "light")
    return theme if theme in THEMES else "light"


def safe_url(endpoint: str, fallback: str, **values) -> str:
    try:
        return url_for(endpoint, **values)
    except BuildError:
        return fallback


# =========================
# Page shell
# =========================
LAYOUT_TOP = """<!doctype html><html><head><meta charset="utf-8"/>
<title>{{ title }}</title>
<meta name="viewport" content="width=device-width,initial-scale=1"/>
<style>
  :root{--ink:#111827;--muted:#6b7280;--line:#e5e7eb;--bg:#fff}
  body.dark{--ink:#f3f4f6;--muted:#9ca3af;--line:#374151;--bg:#111827}
  body{font-family:system-ui,-apple-system,Segoe UI,Roboto,sans-serif;margin:0;line-height:1.55;color:var(--ink);background:var(--bg)}
  main{max-width:860px;margin:0 auto;padding:24px}
  .card{border:1px solid var(--line);border-radius:10px;padding:14px;margin:12px 0}
  .btn{display:inline-block;padding:8px 14px;border-radius:8px;background:#111827;color:#fff;border:0;cursor:pointer}
  .muted{color:var(--muted);font-size:13px}
  .error{color:#991b1b}
  .ok{color:#065f46}
  .bar{display:flex;justify-content:space-between;align-items:center}
</style></head>
<body class="{{ theme }}"><main>
"""

LAYOUT_BOTTOM = """
</main></body></html>
"""


def render_page(body: str, title: str, status: int = 200, **context):
    ctx: Dict[str, Any] = {"title": title, "theme": current_theme(), "grades": GRADES}
    ctx.update(context)
    return render_template_string(LAYOUT_TOP + body + LAYOUT_BOTTOM, **ctx), status


LOGIN_BODY = """
<h1>Sign in</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" class="card">
  <p><label>Username <input name="username" value="{{ username or '' }}" required></label></p>
  <p><label>Password <input name="password" type="password" required></label></p>
  <button class="btn" type="submit">Sign in</button>
</form>
<p class="muted">No account? <a href="{{ register_url }}">Register</a></p>
"""

REGISTER_BODY = """
<h1>Create account</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" class="card">
  <p><label>Username <input name="username" value="{{ username or '' }}" required></label></p>
  <p><label>Password <input name="password" type="password" required></label></p>
  <p><label>Grade
    <select name="grade">
      <option value="">-</option>
      {% for g in grades %}<option value="{{ g }}" {% if g == grade %}selected{% endif %}>{{ g }}</option>{% endfor %}
    </select></label></p>
  <button class="btn" type="submit">Register</button>
</form>
<p class="muted">Have an account? <a href="{{ login_url }}">Sign in</a></p>
"""


def create_auth_blueprint(base_path: str, deps: Dict[str, Any], name: str = "auth") -> Blueprint:
    """
    Required deps: store (DurableStore)
    Attaches g.user (or None) before every request of the app.
    """
    bp = Blueprint(name, __name__, url_prefix=(base_path or None))
    store: DurableStore = deps["store"]

    def _context() -> SessionContext:
        return SessionContext(CookieSlots(), store)

    def _home_for(user) -> str:
        if user is not None and user.is_admin:
            return safe_url("admin.admin_home", "/admin")
        if user is not None:
            return safe_url("exam.dashboard", "/exams")
        return url_for(f"{bp.name}.login")

    @bp.before_app_request
    def _attach_identity():
        g.user = None
        g.identity_error = None
        try:
            g.user = _context().current_user()
        except StorageUnavailable as e:
            # Guards re-raise this so protected routes answer 503, not 401.
            g.identity_error = e
            print(f"[auth] identity lookup failed: {e}", flush=True)

    @bp.errorhandler(StorageUnavailable)
    def _storage_down(e):
        return render_page("<h1>Storage unavailable</h1><p class='error'>{{ msg }}</p>",
                           "Unavailable", 503, msg=str(e))

    # --------------------------------- routes ---------------------------------
    @bp.get("/")
    def index():
        return redirect(_home_for(getattr(g, "user", None)))

    @bp.route("/login", methods=["GET", "POST"])
    def login():
        ctx = {"register_url": url_for(f"{bp.name}.register"), "error": None, "username": ""}
        if request.method == "POST":
            username = request.form.get("username") or ""
            password = request.form.get("password") or ""
            ctx["username"] = username
            try:
                user = _context().login(username, password)
            except IdentityError as e:
                ctx["error"] = str(e)
                return render_page(LOGIN_BODY, "Sign in", 401, **ctx)
            print(f"[auth] '{user.username}' signed in", flush=True)
            return redirect(_home_for(user))
        return render_page(LOGIN_BODY, "Sign in", **ctx)

    @bp.route("/register", methods=["GET", "POST"])
    def register():
        ctx = {"login_url": url_for(f"{bp.name}.login"), "error": None, "username": "", "grade": ""}
        if request.method == "POST":
            username = request.form.get("username") or ""
            password = request.form.get("password") or ""
            grade: Optional[str] = (request.form.get("grade") or "").strip() or None
            ctx.update(username=username, grade=grade or "")
            try:
                user = _context().register(username, password, grade)
            except IdentityError as e:
                ctx["error"] = str(e)
                return render_page(REGISTER_BODY, "Register", 400, **ctx)
            return redirect(_home_for(user))
        return render_page(REGISTER_BODY, "Register", **ctx)

    @bp.get("/logout")
    def logout():
        _context().sign_out()
        return redirect(url_for(f"{bp.name}.login"))

    @bp.post("/theme")
    def toggle_theme():
        wanted = (request.form.get("theme") or "").strip().lower()
        if wanted not in THEMES:
            wanted = "dark" if current_theme() == "light" else "light"
        CookieSlots().set_slot(THEME, wanted)
        return redirect(request.referrer or url_for(f"{bp.name}.index"))

    return bp
