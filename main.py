# main.py: exam portal app (psycopg3 + pooling, BASE_PATH-aware)
# All durable state lives in one key/value table (public.app_storage).

import os
from contextlib import contextmanager
from typing import Any, Dict, Optional

from flask import Flask

# Database (psycopg 3)
import psycopg
from psycopg.conninfo import conninfo_to_dict, make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from admin import create_admin_blueprint
from auth import create_auth_blueprint
from catalog import ExamCatalog
from exam import SessionRegistry, create_exam_blueprint
from storage import DurableStore, StorageUnavailable

# =============================================================================
# Config
# =============================================================================
BASE_PATH = (os.getenv("BASE_PATH", "") or "").rstrip("/")
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
SESSION_COOKIE_SECURE = os.getenv("SESSION_COOKIE_SECURE", "1").lower() in {"1", "true", "yes"}
STORAGE_NAMESPACE = os.getenv("STORAGE_NAMESPACE", "examportal")

DB_USER = os.getenv("DB_USER")
DB_PASS = os.getenv("DB_PASS") or os.getenv("DB_PASSWORD")  # support either name
DB_NAME = os.getenv("DB_NAME")
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_URL_LOCAL = os.getenv("DATABASE_URL_LOCAL")
DB_HOST_OVERRIDE = os.getenv("DB_HOST")
DB_PORT_OVERRIDE = os.getenv("DB_PORT")

if SECRET_KEY == "dev-secret":
    print("[auth] SECRET_KEY not set; using the development key.", flush=True)


# =============================================================================
# DB configuration
# =============================================================================
_CONN_DEFAULTS = {"connect_timeout": 10, "options": "-c search_path=public"}


def _log_choice(params: dict, origin: str):
    host = params.get("host") or "localhost"
    port = params.get("port") or 5432
    print(f"[DB] {origin}: {host}:{port}/{params.get('dbname')}", flush=True)


def _normalize_url(url: str) -> str:
    # SQLAlchemy-style schemes
    for pref in ("postgresql+psycopg://", "postgres+psycopg://",
                 "postgresql+psycopg2://", "postgres+psycopg2://"):
        if url.startswith(pref):
            return "postgresql://" + url.split("://", 1)[1]
    return url


def _url_conninfo(url: str) -> str:
    url = _normalize_url(url.strip())
    if not url.startswith(("postgresql://", "postgres://")):
        raise ValueError("expected a postgresql:// URL")
    try:
        params = conninfo_to_dict(url)
    except psycopg.ProgrammingError as e:
        raise ValueError(str(e)) from None
    if not params.get("dbname"):
        raise ValueError("URL has no database name")
    return make_conninfo(url, **_CONN_DEFAULTS)


def _settings_conninfo() -> str:
    if not all([DB_NAME, DB_USER, DB_PASS]):
        raise RuntimeError("Set DATABASE_URL, or DB_NAME, DB_USER and DB_PASS.")
    return make_conninfo(
        host=DB_HOST_OVERRIDE or "127.0.0.1",
        port=int(DB_PORT_OVERRIDE or "5432"),
        dbname=DB_NAME,
        user=DB_USER,
        password=DB_PASS,
        sslmode="disable",
        **_CONN_DEFAULTS,
    )


def connection_conninfo() -> str:
    """DATABASE_URL_LOCAL, then DATABASE_URL, then the DB_* settings."""
    for origin, url in (("DATABASE_URL_LOCAL", DATABASE_URL_LOCAL), ("DATABASE_URL", DATABASE_URL)):
        if not url:
            continue
        try:
            conninfo = _url_conninfo(url)
        except ValueError as e:
            print(f"[DB] Ignoring {origin}: {e}", flush=True)
            continue
        _log_choice(conninfo_to_dict(conninfo), f"Using {origin}")
        return conninfo

    conninfo = _settings_conninfo()
    _log_choice(conninfo_to_dict(conninfo), "Using DB_* settings")
    return conninfo


# =============================================================================
# psycopg3 Connection Pool + helpers
# =============================================================================
_pg_pool: Optional[ConnectionPool] = None


def init_pool():
    global _pg_pool
    if _pg_pool is None:
        _pg_pool = ConnectionPool(conninfo=connection_conninfo(), min_size=1, max_size=6, open=True)


@contextmanager
def get_conn():
    if _pg_pool is None:
        init_pool()
    with _pg_pool.connection() as conn:
        yield conn


def fetch_all(q, params=None):
    with get_conn() as conn, conn.cursor(row_factory=dict_row) as cur:
        cur.execute(q, params or ())
        return cur.fetchall()


def fetch_one(q, params=None):
    rows = fetch_all(q, params)
    return rows[0] if rows else None


def execute(q, params=None):
    # pool connections commit on clean exit from the context block
    with get_conn() as conn:
        conn.execute(q, params or ())


# =============================================================================
# App factory
# =============================================================================
def create_app(store: DurableStore, base_path: str = "",
               session_options: Optional[Dict[str, Any]] = None) -> Flask:
    static_url_path = (base_path + "/static") if base_path else "/static"
    app = Flask(__name__, static_folder="static", static_url_path=static_url_path)
    app.url_map.strict_slashes = False
    app.secret_key = SECRET_KEY
    app.config.update(
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=SESSION_COOKIE_SECURE,
    )

    schema_ready = {"done": False}

    # Registered before the blueprints so the table exists before identity lookup.
    @app.before_request
    def _ensure_schema():
        if schema_ready["done"]:
            return
        try:
            store.ensure_schema()
            schema_ready["done"] = True
        except StorageUnavailable as e:
            print(f"[store] schema check failed (will retry): {e}", flush=True)

    @app.get("/healthz")
    def healthz():
        try:
            store.get_slot("healthz")
            return ("ok", 200)
        except StorageUnavailable as e:
            return (f"error: {e}", 500)

    @app.get("/favicon.ico")
    def favicon():
        return ("", 204)

    catalog = ExamCatalog(store)
    deps = {
        "store": store,
        "catalog": catalog,
        "registry": SessionRegistry(),
        "session_options": session_options or {},
    }
    app.register_blueprint(create_auth_blueprint(base_path, deps, name="auth"))
    app.register_blueprint(create_exam_blueprint(base_path, deps, name="exam"))
    app.register_blueprint(create_admin_blueprint(base_path, deps, name="admin"))
    return app


store = DurableStore(fetch_one, execute, namespace=STORAGE_NAMESPACE)
app = create_app(store, BASE_PATH)

# =============================================================================
# Local dev entry
# =============================================================================
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    app.run(host="0.0.0.0", port=port, debug=True)
