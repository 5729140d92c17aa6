from datetime import datetime

from app.autoexplora.db import session_scope
from app.autoexplora.models import AuditEvent, AuthToken, User

from tests.conftest import PASSWORD, login


def _register(client, email="nueva@example.com", password="Clave1234"):
    return client.post("/api/auth/register", json={"name": "Nueva Persona", "email": email, "password": password})


def test_register_creates_unverified_user_with_token(app, client):
    r = _register(client)
    assert r.status_code == 201
    assert r.json["user"]["email"] == "nueva@example.com"
    assert r.json["user"]["email_verified"] is False

    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "nueva@example.com").one()
        tok = s.query(AuthToken).filter(AuthToken.user_id == u.id, AuthToken.purpose == "verify_email").one()
        token = tok.token

    r = client.post("/api/auth/verify-email", json={"token": token})
    assert r.status_code == 200

    # tokens are single use
    r = client.post("/api/auth/verify-email", json={"token": token})
    assert r.status_code == 400


def test_register_rejects_weak_password_and_duplicates(client):
    r = _register(client, password="corta")
    assert r.status_code == 400
    assert "details" in r.json

    assert _register(client).status_code == 201
    r = _register(client)
    assert r.status_code == 400
    assert "Ya existe" in r.json["error"]


def test_login_me_logout(client):
    assert client.get("/api/auth/me").status_code == 401
    r = login(client)
    assert "admin" in r.json["user"]["roles"]
    assert r.json["user"]["is_staff"] is True

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json["user"]["email"] == "admin@example.com"

    assert client.post("/api/auth/logout").status_code == 200
    assert client.get("/api/auth/me").status_code == 401


def test_login_wrong_password_is_audited(app, client):
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 401
    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "auth.login_failed").count() == 1


def test_login_rate_limited_after_five_attempts(client):
    for _ in range(5):
        assert client.post("/api/auth/login", json={"email": "admin@example.com", "password": "bad"}).status_code == 401
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD})
    assert r.status_code == 429


def test_banned_user_cannot_login_and_session_is_dropped(app, client):
    login(client)
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "admin@example.com").one()
        u.banned_at = datetime.utcnow()
        u.ban_reason = "Fraude"
    assert client.get("/api/auth/me").status_code == 401
    r = client.post("/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD})
    assert r.status_code == 401
    assert "suspendida" in r.json["error"]


def test_forgot_and_reset_password(app, client):
    r = client.post("/api/auth/forgot-password", json={"email": "admin@example.com"})
    assert r.status_code == 200
    # unknown e-mails get the same answer
    assert client.post("/api/auth/forgot-password", json={"email": "nadie@example.com"}).json == r.json

    with session_scope(app) as s:
        token = s.query(AuthToken).filter(AuthToken.purpose == "reset_password").one().token

    r = client.post("/api/auth/reset-password", json={"token": token, "password": "NuevaClave9"})
    assert r.status_code == 200
    login(client, password="NuevaClave9")


def test_change_password_requires_current(client):
    login(client)
    r = client.post("/api/auth/change-password", json={"current_password": "mala", "new_password": "OtraClave1"})
    assert r.status_code == 400
    r = client.post("/api/auth/change-password", json={"current_password": PASSWORD, "new_password": "OtraClave1"})
    assert r.status_code == 200


def test_mutating_api_requires_csrf(app, world):
    c = app.test_client()
    r = c.post("/api/auth/login", json={"email": "buyer@example.com", "password": PASSWORD})
    assert r.status_code == 200
    r = c.post(f"/api/favorites/{world['corolla_id']}")
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_login_page_renders(client):
    r = client.get("/login")
    assert r.status_code == 200
