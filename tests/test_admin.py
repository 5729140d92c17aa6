from app.autoexplora.db import session_scope
from app.autoexplora.models import User

from tests.conftest import PASSWORD, login, make_user


def _user_id(app, email):
    with session_scope(app) as s:
        return s.query(User.id).filter(User.email == email).scalar()


def test_admin_pages_require_login(client):
    r = client.get("/admin/")
    assert r.status_code == 302
    assert "/login" in r.headers["Location"]


def test_admin_pages_render_for_staff(client, world):
    login(client)
    r = client.get("/admin/")
    assert r.status_code == 200
    assert client.get("/admin/audit?action=auth").status_code == 200


def test_admin_pages_forbidden_for_regular_users(client, world):
    login(client, "buyer@example.com")
    assert client.get("/admin/").status_code == 403


def test_dashboard(client, world):
    login(client)
    r = client.get("/api/admin/dashboard")
    assert r.status_code == 200
    assert r.json["users"]["total"] == 5
    assert r.json["dealers"]["ACTIVE"] == 1
    assert r.json["vehicles"]["ACTIVE"] == 2
    assert r.json["open_reports"] == 0


def test_users_list_filters(client, world):
    login(client)
    assert client.get("/api/admin/users").json["total"] == 5
    r = client.get("/api/admin/users?q=autosdelsur")
    assert r.json["total"] == 3
    r = client.get("/api/admin/users?role=admin")
    assert [u["email"] for u in r.json["items"]] == ["admin@example.com"]

    detail = client.get(f"/api/admin/users/{world['owner_id']}").json
    assert detail["dealer"]["role"] == "OWNER"
    assert detail["vehicle_count"] == 2
    assert client.get("/api/admin/users/99999").status_code == 404


def test_ban_and_unban_user(client, world, app):
    login(client)
    url = f"/api/admin/users/{world['buyer_id']}"
    r = client.patch(url, json={"banned": True})
    assert r.status_code == 400
    assert "motivo" in r.json["error"]

    r = client.patch(url, json={"banned": True, "ban_reason": "Publicaciones fraudulentas"})
    assert r.json["is_banned"] is True
    assert client.get("/api/admin/users?status=banned").json["total"] == 1

    other = app.test_client()
    r = other.post("/api/auth/login", json={"email": "buyer@example.com", "password": PASSWORD})
    assert r.status_code == 401

    assert client.patch(url, json={"banned": False}).json["is_banned"] is False
    assert other.post("/api/auth/login", json={"email": "buyer@example.com", "password": PASSWORD}).status_code == 200


def test_admin_cannot_lock_themselves_out(client, world, app):
    login(client)
    admin_id = _user_id(app, "admin@example.com")
    url = f"/api/admin/users/{admin_id}"
    assert client.patch(url, json={"banned": True, "ban_reason": "x"}).status_code == 400
    assert client.patch(url, json={"is_active": False}).status_code == 400
    assert client.patch(url, json={"role": "moderator"}).status_code == 400


def test_role_changes_need_admin(client, world, app):
    login(client)
    r = client.patch(f"/api/admin/users/{world['buyer_id']}", json={"role": "moderator"})
    assert r.json["roles"] == ["moderator"]
    client.post("/api/auth/logout")

    with session_scope(app) as s:
        make_user(s, "mod2@autoexplora.cl", roles=("moderator",))
    login(client, "mod2@autoexplora.cl")
    # moderators can list users but cannot manage them
    assert client.get("/api/admin/users").status_code == 200
    assert client.patch(f"/api/admin/users/{world['sales_id']}", json={"role": "admin"}).status_code == 403
    assert client.get("/api/admin/settings").status_code == 403


def test_site_settings(client, world):
    login(client)
    r = client.get("/api/admin/settings")
    assert r.json["site_name"] == "AutoExplora"

    assert client.put("/api/admin/settings", json={"contact_email": "no-es-email"}).status_code == 400
    r = client.put("/api/admin/settings", json={"maintenance_banner": "Mantención el domingo", "contact_email": "hola@autoexplora.cl"})
    assert r.json["maintenance_banner"] == "Mantención el domingo"
    assert client.get("/api/admin/settings").json["contact_email"] == "hola@autoexplora.cl"

    audit = client.get("/api/admin/audit?action=settings").json
    assert audit["total"] == 1
    assert audit["items"][0]["actor_email"] == "admin@example.com"
    assert audit["items"][0]["entity_type"] == "SiteSetting"


def test_audit_filters(client, world):
    client.post("/api/auth/login", json={"email": "buyer@example.com", "password": "mala"})
    login(client)
    r = client.get("/api/admin/audit?action=login_failed")
    assert r.json["total"] == 1
    assert client.get("/api/admin/audit?date_from=2000-01-01&date_to=2000-01-02").json["total"] == 0
