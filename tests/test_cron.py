from datetime import datetime, timedelta

from app.autoexplora.db import session_scope
from app.autoexplora.modules.crm import models as crm
from app.autoexplora.modules.crm.models import AutoResponseConfig, DealerLead, LeadPreferences, LeadTask, MessageTemplate
from app.autoexplora.modules.cron.service import run_reminders
from app.autoexplora.modules.notifications.models import Notification
from app.autoexplora.modules.vehicles.models import Vehicle


def _lead(s, world, **kwargs):
    lead = DealerLead(
        dealer_id=world["dealer_id"],
        vehicle_id=world["corolla_id"],
        name="María González",
        email="maria@example.com",
        message="¿Está disponible?",
        **kwargs,
    )
    s.add(lead)
    s.flush()
    return lead


def _types(s, user_id):
    return sorted(n.type for n in s.query(Notification).filter(Notification.user_id == user_id).all())


def test_cron_requires_secret_when_configured(client, app):
    app.config["CRON_SECRET"] = "s3cret"
    assert client.get("/api/cron/reminders").status_code == 401
    assert client.get("/api/cron/reminders", headers={"Authorization": "Bearer otro"}).status_code == 401
    r = client.get("/api/cron/reminders", headers={"Authorization": "Bearer s3cret"})
    assert r.status_code == 200
    assert r.json["success"] is True
    assert r.json["tasks"] == {"processed": 0, "successful": 0}


def test_cron_is_exempt_from_csrf(app):
    app.config["CRON_SECRET"] = "s3cret"
    bare = app.test_client()
    r = bare.post("/api/cron/inventory-match", json={}, headers={"Authorization": "Bearer s3cret"})
    assert r.status_code == 400
    assert r.json["error"] == "vehicle_id es requerido"


def test_task_and_test_drive_reminders(app, world):
    now = datetime.utcnow()
    with session_scope(app) as s:
        lead = _lead(s, world, assigned_to_id=world["sales_id"])
        s.add(LeadTask(lead_id=lead.id, assigned_to_id=world["sales_id"], title="Llamar", due_at=now + timedelta(minutes=30)))
        s.add(LeadTask(lead_id=lead.id, assigned_to_id=world["sales_id"], title="Más tarde", due_at=now + timedelta(days=2)))
        s.add(crm.TestDrive(lead_id=lead.id, vehicle_id=world["corolla_id"], scheduled_at=now + timedelta(minutes=45)))

    with session_scope(app) as s:
        result = run_reminders(s, now)
    assert result["tasks"]["processed"] == 1
    assert result["test_drives"]["processed"] == 1

    with session_scope(app) as s:
        assert _types(s, world["sales_id"]) == ["FOLLOW_UP_REMINDER", "TEST_DRIVE_REMINDER"]

    # reminders are sent once
    with session_scope(app) as s:
        again = run_reminders(s, now)
    assert again["tasks"]["processed"] == 0
    assert again["test_drives"]["processed"] == 0


def test_overdue_tasks_are_not_reminded(app, world):
    now = datetime.utcnow()
    with session_scope(app) as s:
        lead = _lead(s, world, assigned_to_id=world["sales_id"])
        s.add(LeadTask(lead_id=lead.id, assigned_to_id=world["sales_id"], title="Vencida", due_at=now - timedelta(days=3)))
        s.add(LeadTask(lead_id=lead.id, assigned_to_id=world["sales_id"], title="Recién vencida", due_at=now - timedelta(minutes=1)))

    with session_scope(app) as s:
        result = run_reminders(s, now)
    assert result["tasks"] == {"processed": 0, "successful": 0}
    with session_scope(app) as s:
        assert _types(s, world["sales_id"]) == []


def test_unassigned_test_drive_reminds_managers(app, world):
    now = datetime.utcnow()
    with session_scope(app) as s:
        lead = _lead(s, world)
        s.add(crm.TestDrive(lead_id=lead.id, vehicle_id=world["cx5_id"], scheduled_at=now + timedelta(minutes=10)))
    with session_scope(app) as s:
        run_reminders(s, now)
    with session_scope(app) as s:
        assert _types(s, world["owner_id"]) == ["TEST_DRIVE_REMINDER"]
        assert _types(s, world["manager_id"]) == ["TEST_DRIVE_REMINDER"]
        assert _types(s, world["sales_id"]) == []


def test_delayed_auto_response(app, world):
    now = datetime.utcnow()
    with session_scope(app) as s:
        tpl = MessageTemplate(dealer_id=world["dealer_id"], name="Bienvenida", channel="EMAIL", subject="Hola {nombre}", content="Gracias {nombre}")
        s.add(tpl)
        s.flush()
        s.add(AutoResponseConfig(dealer_id=world["dealer_id"], enabled=True, email_template_id=tpl.id, delay_minutes=30))
        due = _lead(s, world, created_at=now - timedelta(hours=1)).id
        fresh = _lead(s, world, created_at=now - timedelta(minutes=5)).id
        stale = _lead(s, world, created_at=now - timedelta(days=3)).id

    with app.app_context():
        with session_scope(app) as s:
            result = run_reminders(s, now)
    assert result["auto_responses"]["processed"] == 1

    with session_scope(app) as s:
        assert s.get(DealerLead, due).responded_at is not None
        assert s.get(DealerLead, fresh).responded_at is None
        assert s.get(DealerLead, stale).responded_at is None


def test_reminders_expire_listings_and_prune_notifications(app, world):
    now = datetime.utcnow()
    with session_scope(app) as s:
        s.get(Vehicle, world["cx5_id"]).expires_at = now - timedelta(hours=1)
        s.add(Notification(user_id=world["owner_id"], type="SYSTEM", title="Viejo", message="x", is_read=True, created_at=now - timedelta(days=60)))
        s.add(Notification(user_id=world["owner_id"], type="SYSTEM", title="Sin leer", message="x", created_at=now - timedelta(days=60)))

    with session_scope(app) as s:
        result = run_reminders(s, now)
    assert result["expired_listings"] == 1
    assert result["pruned_notifications"] == 1

    with session_scope(app) as s:
        assert s.get(Vehicle, world["cx5_id"]).status == "EXPIRED"
        assert [n.title for n in s.query(Notification).all()] == ["Sin leer"]


def test_inventory_match_endpoint(client, app, world):
    with session_scope(app) as s:
        lead = _lead(s, world, assigned_to_id=world["sales_id"])
        s.add(LeadPreferences(lead_id=lead.id, brand_ids=[world["mazda_id"]], model_ids=[]))
        closed = _lead(s, world, status="LOST")
        s.add(LeadPreferences(lead_id=closed.id, brand_ids=[world["mazda_id"]], model_ids=[]))

    r = client.post("/api/cron/inventory-match", json={"vehicle_id": world["cx5_id"]})
    assert r.json == {"success": True, "matched_leads": 1}
    with session_scope(app) as s:
        assert _types(s, world["sales_id"]) == ["INVENTORY_MATCH"]

    assert client.post("/api/cron/inventory-match", json={"vehicle_id": 999999}).status_code == 404
