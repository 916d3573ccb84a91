import pytest

import identity
import main
from storage import USERS


@pytest.fixture
def client(store, timers, monkeypatch):
    monkeypatch.setattr(identity, "ADMIN_USERNAME", "boss")
    app = main.create_app(store, session_options={"timer_factory": timers})
    app.testing = True
    app.config["SESSION_COOKIE_SECURE"] = False
    return app.test_client()


def _register(client, username="mona", password="pass1", grade="Primary 4"):
    return client.post("/register", data={"username": username, "password": password, "grade": grade})


def test_schema_is_ensured_on_first_request(client, db):
    assert client.get("/healthz").status_code == 200
    assert any("CREATE TABLE IF NOT EXISTS public.app_storage" in sql for sql, _ in db.executed)


def test_register_signs_in_and_lands_on_dashboard(client):
    resp = _register(client)
    assert resp.status_code == 302
    assert resp.headers["Location"].endswith("/exams")

    page = client.get("/exams")
    assert page.status_code == 200
    assert "mona" in page.get_data(as_text=True)


def test_register_error_is_shown(client, store):
    resp = _register(client, username="ab")
    assert resp.status_code == 400
    assert "at least 3 characters" in resp.get_data(as_text=True)
    assert store.list(USERS) == []


def test_login_errors(client):
    _register(client)
    client.get("/logout")

    resp = client.post("/login", data={"username": "nobody", "password": "x"})
    assert resp.status_code == 401
    assert "Username does not exist." in resp.get_data(as_text=True)

    resp = client.post("/login", data={"username": "mona", "password": "wrong"})
    assert resp.status_code == 401
    assert "Incorrect password." in resp.get_data(as_text=True)


def test_admin_login_lands_on_admin(client):
    _register(client, username="boss", grade="")
    client.get("/logout")

    resp = client.post("/login", data={"username": "boss", "password": "pass1"})
    assert resp.status_code == 302
    assert "/admin" in resp.headers["Location"]
    assert client.get("/admin/").status_code == 200
    assert client.post("/exams/x/start", json={}).status_code == 403


def test_logout_clears_identity(client):
    _register(client)
    resp = client.get("/logout")
    assert resp.status_code == 302

    assert client.get("/exams").status_code == 302
    assert client.post("/exams/x/start", json={}).status_code == 401


def test_root_redirects_by_role(client):
    assert client.get("/").headers["Location"].endswith("/login")
    _register(client)
    assert client.get("/").headers["Location"].endswith("/exams")


def test_theme_toggle(client):
    assert 'class="light"' in client.get("/login").get_data(as_text=True)

    client.post("/theme")
    assert 'class="dark"' in client.get("/login").get_data(as_text=True)

    client.post("/theme", data={"theme": "light"})
    assert 'class="light"' in client.get("/login").get_data(as_text=True)


def test_deleted_user_is_signed_out(client, store):
    _register(client)
    store.replace_all(USERS, [])
    assert client.get("/exams").status_code == 302


def test_storage_outage_during_identity_lookup_is_503(client, db):
    _register(client)
    db.fail_reads = True

    resp = client.post("/exams/x/start", json={})
    assert resp.status_code == 503
    assert resp.get_json()["ok"] is False
    assert client.get("/admin/overview.json").status_code == 503

    db.fail_reads = False
    assert client.get("/exams").status_code == 200
