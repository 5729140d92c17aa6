from app.autoexplora.db import session_scope
from app.autoexplora.models import AuditEvent

from tests.conftest import login, make_user


def _report(client, vehicle_id, reason="FRAUD", **extra):
    return client.post("/api/reports", json={"vehicle_id": vehicle_id, "reason": reason, **extra})


def test_report_vehicle(client, world):
    assert _report(client, world["corolla_id"]).status_code == 401
    login(client, "buyer@example.com")
    r = _report(client, world["corolla_id"], description="Pide transferencia por adelantado")
    assert r.status_code == 201
    assert r.json["report_id"]

    # one open report per user and vehicle
    r = _report(client, world["corolla_id"], reason="other")
    assert r.status_code == 400
    assert "Ya has reportado" in r.json["error"]


def test_report_validation(client, world):
    login(client, "buyer@example.com")
    assert _report(client, world["corolla_id"], reason="SPAM").status_code == 400
    assert _report(client, None).status_code == 400
    assert _report(client, 999999).status_code == 404
    assert _report(client, world["corolla_id"], description="x" * 1001).status_code == 400

    client.post("/api/auth/logout")
    login(client, "owner@autosdelsur.cl")
    assert "propio" in _report(client, world["corolla_id"]).json["error"]


def test_admin_review_flow(client, world, app):
    login(client, "buyer@example.com")
    report_id = _report(client, world["cx5_id"], reason="WRONG_INFO").json["report_id"]
    client.post("/api/auth/logout")

    with session_scope(app) as s:
        make_user(s, "mod@autoexplora.cl", roles=("moderator",))
    login(client, "mod@autoexplora.cl")

    r = client.get("/api/admin/reports?status=pending")
    assert [x["id"] for x in r.json["items"]] == [report_id]
    assert client.get("/api/admin/reports?reason=FRAUD").json["total"] == 0

    r = client.patch(f"/api/admin/reports/{report_id}", json={"status": "UNDER_REVIEW"})
    assert r.json["status"] == "UNDER_REVIEW"
    assert r.json["resolved_at"] is None

    r = client.patch(f"/api/admin/reports/{report_id}", json={"status": "RESOLVED", "resolution": "Kilometraje corregido"})
    assert r.json["status"] == "RESOLVED"
    assert r.json["resolution"] == "Kilometraje corregido"
    assert r.json["resolved_by"]["email"] == "mod@autoexplora.cl"

    # closed reports stay closed
    assert client.patch(f"/api/admin/reports/{report_id}", json={"status": "PENDING"}).status_code == 400

    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "report.status").count() == 2

    # a closed report lets the user report again
    client.post("/api/auth/logout")
    login(client, "buyer@example.com")
    assert _report(client, world["cx5_id"]).status_code == 201


def test_admin_delete_report(client, world):
    login(client, "buyer@example.com")
    report_id = _report(client, world["cx5_id"]).json["report_id"]
    client.post("/api/auth/logout")
    login(client)
    assert client.get(f"/api/admin/reports/{report_id}").json["reporter"]["email"] == "buyer@example.com"
    assert client.delete(f"/api/admin/reports/{report_id}").status_code == 200
    assert client.get(f"/api/admin/reports/{report_id}").status_code == 404


def test_reports_admin_requires_permission(client, world):
    login(client, "owner@autosdelsur.cl")
    assert client.get("/api/admin/reports").status_code == 403
