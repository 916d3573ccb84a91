import sys
import time
from pathlib import Path

import pytest
from flask import Flask, g

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from storage import DurableStore  # noqa: E402


class FakeDB:
    """In-memory stand-in for public.app_storage, speaking the same SQL."""

    def __init__(self):
        self.rows = {}
        self.executed = []
        self.fail_reads = False
        self.fail_writes = False
        self.read_delay = 0

    def fetch_one(self, sql, params=()):
        if self.fail_reads:
            raise RuntimeError("database is down")
        if self.read_delay:
            time.sleep(self.read_delay)
        if "FROM public.app_storage" in sql:
            key = params[0]
            if key in self.rows:
                return {"value": self.rows[key]}
            return None
        return None

    def execute(self, sql, params=()):
        if self.fail_writes:
            raise RuntimeError("database is down")
        self.executed.append((sql, params))
        if "INSERT INTO public.app_storage" in sql:
            key, value = params
            self.rows[key] = value
        elif "DELETE FROM public.app_storage" in sql:
            self.rows.pop(params[0], None)

    def writes(self):
        return [p for sql, p in self.executed if "INSERT INTO" in sql or "DELETE FROM" in sql]


class FakeTimer:
    """threading.Timer replacement; fire() runs the callback synchronously."""

    created = []

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function()


@pytest.fixture
def db():
    return FakeDB()


@pytest.fixture
def store(db):
    return DurableStore(db.fetch_one, db.execute, namespace="test")


@pytest.fixture
def timers():
    FakeTimer.created = []
    return FakeTimer


def make_app(*blueprints, user=None):
    """Bare Flask app with the given blueprints; `user` is attached to g."""
    app = Flask(__name__)
    app.testing = True
    app.secret_key = "test"
    app.url_map.strict_slashes = False

    @app.before_request
    def _set_user():
        g.user = user() if callable(user) else user

    for bp in blueprints:
        app.register_blueprint(bp)
    return app
