from datetime import datetime, timedelta

from app.autoexplora.db import session_scope
from app.autoexplora.modules.crm.models import DealerLead, LeadPreferences
from app.autoexplora.modules.notifications.models import Notification

from tests.conftest import login


def _capture(client, world, **overrides):
    payload = {
        "dealer_id": world["dealer_id"],
        "vehicle_id": world["corolla_id"],
        "name": "María González",
        "email": "maria@example.com",
        "phone": "+56 9 5555 1234",
        "message": "¿Sigue disponible el Corolla?",
    }
    payload.update(overrides)
    return client.post("/api/leads", json=payload)


def test_public_lead_capture_notifies_owner_and_manager(client, world, app):
    r = _capture(client, world)
    assert r.status_code == 201
    lead_id = r.json["id"]
    with session_scope(app) as s:
        lead = s.get(DealerLead, lead_id)
        assert lead.status == "NEW"
        assert lead.source == "marketplace"
        notified = {n.user_id for n in s.query(Notification).filter(Notification.type == "NEW_LEAD")}
    assert notified == {world["owner_id"], world["manager_id"]}


def test_public_lead_capture_validation(client, world, app):
    r = _capture(client, world, message="")
    assert r.status_code == 400
    assert _capture(client, world, email="no-es-email").status_code == 400
    assert _capture(client, world, dealer_id=999).status_code == 404

    from app.autoexplora.modules.dealers.models import Dealer

    with session_scope(app) as s:
        s.get(Dealer, world["dealer_id"]).status = "SUSPENDED"
    assert _capture(client, world).status_code == 404


def test_public_lead_rejects_vehicle_from_other_dealer(client, world, app):
    from tests.conftest import make_dealer, make_user, make_vehicle
    from app.autoexplora.modules.catalog.models import Brand, Region, VehicleModel

    with session_scope(app) as s:
        region = s.get(Region, world["region_id"])
        other = make_dealer(s, region, slug="otra-automotora", rut="123456785")
        seller = make_user(s, "otro@example.com", dealer=other, dealer_role="OWNER")
        v = make_vehicle(s, seller, s.get(Brand, world["toyota_id"]), s.get(VehicleModel, world["rav4_model_id"]), region, dealer=other)
        other_vehicle_id = v.id
    assert _capture(client, world, vehicle_id=other_vehicle_id).status_code == 404


def test_microsite_source_is_kept(client, world, app):
    r = _capture(client, world, source="microsite")
    with session_scope(app) as s:
        assert s.get(DealerLead, r.json["id"]).source == "microsite"
    # unknown sources fall back to the marketplace
    r = _capture(client, world, source="facebook", email="otro@example.com")
    with session_scope(app) as s:
        assert s.get(DealerLead, r.json["id"]).source == "marketplace"


def test_dealer_leads_list_requires_dealer_membership(client, world):
    assert client.get("/api/dealer/leads").status_code == 401
    login(client, "buyer@example.com")
    assert client.get("/api/dealer/leads").status_code == 403


def test_dealer_leads_list_and_counts(client, world):
    _capture(client, world)
    _capture(client, world, email="pedro@example.com", name="Pedro Soto", vehicle_id=None)
    login(client, "sales@autosdelsur.cl")
    r = client.get("/api/dealer/leads")
    assert r.status_code == 200
    assert r.json["total"] == 2
    assert r.json["counts"]["NEW"] == 2
    assert client.get("/api/dealer/leads?q=pedro").json["total"] == 1
    assert client.get("/api/dealer/leads?assigned_to=me").json["total"] == 0


def test_lead_status_transitions_and_assignment(client, world, app):
    lead_id = _capture(client, world).json["id"]
    login(client, "manager@autosdelsur.cl")

    r = client.patch(f"/api/dealer/leads/{lead_id}", json={"status": "CONTACTED", "assigned_to_id": world["sales_id"]})
    assert r.status_code == 200
    assert r.json["status"] == "CONTACTED"
    assert r.json["assigned_to"]["id"] == world["sales_id"]
    assert r.json["last_contact_at"] is not None
    types = [a["type"] for a in r.json["activities"]]
    assert "STATUS_CHANGE" in types and "ASSIGNMENT" in types

    with session_scope(app) as s:
        assert s.query(Notification).filter(Notification.user_id == world["sales_id"], Notification.type == "LEAD_ASSIGNED").count() == 1

    # CONTACTED cannot go back to NEW
    assert client.patch(f"/api/dealer/leads/{lead_id}", json={"status": "NEW"}).status_code == 400
    # assignee must be on the team
    assert client.patch(f"/api/dealer/leads/{lead_id}", json={"assigned_to_id": world["buyer_id"]}).status_code == 400


def test_sales_member_cannot_delete_lead(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "sales@autosdelsur.cl")
    assert client.delete(f"/api/dealer/leads/{lead_id}").status_code == 403
    client.post("/api/auth/logout")
    login(client, "owner@autosdelsur.cl")
    assert client.delete(f"/api/dealer/leads/{lead_id}").status_code == 200
    assert client.get(f"/api/dealer/leads/{lead_id}").status_code == 404


def test_manual_lead_and_activities(client, world):
    login(client, "sales@autosdelsur.cl")
    r = client.post("/api/dealer/leads", json={"name": "Walk-in", "email": "walkin@example.com", "estimated_value": 12_000_000})
    assert r.status_code == 201
    assert r.json["source"] == "manual"
    lead_id = r.json["id"]

    r = client.post(f"/api/dealer/leads/{lead_id}/activities", json={"type": "CALL", "content": "Llamada de seguimiento"})
    assert r.status_code == 201
    assert client.get(f"/api/dealer/leads/{lead_id}").json["last_contact_at"] is not None
    # system-only activity types cannot be logged by hand
    assert client.post(f"/api/dealer/leads/{lead_id}/activities", json={"type": "ASSIGNMENT", "content": "x"}).status_code == 400


def test_preferences_upsert_is_idempotent(client, world, app):
    lead_id = _capture(client, world).json["id"]
    login(client, "owner@autosdelsur.cl")
    payload = {"brand_ids": [world["mazda_id"], world["mazda_id"]], "min_price": 15_000_000, "max_price": 25_000_000}
    r1 = client.put(f"/api/dealer/leads/{lead_id}/preferences", json=payload)
    r2 = client.put(f"/api/dealer/leads/{lead_id}/preferences", json=payload)
    assert r1.status_code == r2.status_code == 200
    assert r2.json["preferences"]["brand_ids"] == [world["mazda_id"]]
    with session_scope(app) as s:
        assert s.query(LeadPreferences).filter(LeadPreferences.lead_id == lead_id).count() == 1

    bad = client.put(f"/api/dealer/leads/{lead_id}/preferences", json={"min_price": 20_000_000, "max_price": 10_000_000})
    assert bad.status_code == 400


def test_match_scores_dealer_inventory(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "owner@autosdelsur.cl")
    client.put(
        f"/api/dealer/leads/{lead_id}/preferences",
        json={"brand_ids": [world["mazda_id"]], "model_ids": [world["cx5_model_id"]], "min_year": 2021},
    )
    r = client.get(f"/api/dealer/leads/{lead_id}/match")
    assert r.status_code == 200
    items = r.json["items"]
    assert [i["id"] for i in items] == [world["cx5_id"]]
    # brand 30 + model 40 + year 10
    assert items[0]["match_score"] == 80


def test_new_listing_notifies_matching_leads(client, world, app):
    lead_id = _capture(client, world).json["id"]
    login(client, "owner@autosdelsur.cl")
    client.put(f"/api/dealer/leads/{lead_id}/preferences", json={"model_ids": [world["rav4_model_id"]]})
    r = client.post(
        "/api/vehicles",
        json={
            "title": "Toyota RAV4 2022 híbrida",
            "vehicle_type": "AUTO",
            "category": "SUV",
            "condition": "USADO",
            "brand_id": world["toyota_id"],
            "model_id": world["rav4_model_id"],
            "region_id": world["region_id"],
            "year": 2022,
            "mileage": 20000,
            "price": 24_990_000,
            "contact_phone": "+56912345678",
            "images": [{"url": f"/media/x/{i}.jpg"} for i in range(3)],
        },
    )
    assert r.status_code == 201
    with session_scope(app) as s:
        recipients = {n.user_id for n in s.query(Notification).filter(Notification.type == "INVENTORY_MATCH")}
    assert recipients == {world["owner_id"], world["manager_id"]}


def test_tasks_scoping_for_sales(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "manager@autosdelsur.cl")
    due = (datetime.utcnow() + timedelta(days=1)).isoformat()
    r = client.post(f"/api/dealer/leads/{lead_id}/tasks", json={"title": "Llamar", "assigned_to_id": world["sales_id"], "due_at": due})
    assert r.status_code == 201
    task_id = r.json["id"]
    client.post(f"/api/dealer/leads/{lead_id}/tasks", json={"title": "Enviar cotización", "assigned_to_id": world["manager_id"], "due_at": due})
    assert client.get(f"/api/dealer/leads/{lead_id}").json["next_follow_up"] is not None
    assert client.get("/api/dealer/tasks?scope=all").json["total"] == 2
    client.post("/api/auth/logout")

    login(client, "sales@autosdelsur.cl")
    # SALES always sees only their own tasks
    r = client.get("/api/dealer/tasks?scope=all")
    assert [t["id"] for t in r.json["items"]] == [task_id]
    r = client.post(f"/api/dealer/leads/{lead_id}/tasks/{task_id}/complete")
    assert r.status_code == 200
    assert client.get("/api/dealer/tasks").json["total"] == 0
    assert client.get("/api/dealer/tasks?state=completed").json["total"] == 1


def test_task_reassignment_reports_new_assignee(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "owner@autosdelsur.cl")
    due = (datetime.utcnow() + timedelta(days=1)).isoformat()
    task_id = client.post(
        f"/api/dealer/leads/{lead_id}/tasks", json={"title": "Llamar", "assigned_to_id": world["sales_id"], "due_at": due}
    ).json["id"]
    r = client.patch(f"/api/dealer/leads/{lead_id}/tasks/{task_id}", json={"assigned_to_id": world["manager_id"]})
    assert r.status_code == 200
    assert r.json["assigned_to"]["id"] == world["manager_id"]
    assert r.json["assigned_to"]["email"] == "manager@autosdelsur.cl"


def test_next_follow_up_follows_pending_tasks(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "owner@autosdelsur.cl")
    due = (datetime.utcnow() + timedelta(days=1)).replace(microsecond=0)
    client.post(f"/api/dealer/leads/{lead_id}/tasks", json={"title": "Llamar", "assigned_to_id": world["sales_id"], "due_at": due.isoformat()})

    r = client.patch(f"/api/dealer/leads/{lead_id}", json={"next_follow_up": "2030-01-01T00:00:00", "notes": "Prefiere WhatsApp"})
    assert r.status_code == 200
    assert r.json["notes"] == "Prefiere WhatsApp"
    assert r.json["next_follow_up"] == due.isoformat()


def test_opportunity_vehicle_change_is_reported(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "owner@autosdelsur.cl")
    opp_id = client.post(
        f"/api/dealer/leads/{lead_id}/opportunities",
        json={"estimated_value": 12_500_000, "vehicle_id": world["corolla_id"]},
    ).json["id"]
    r = client.patch(f"/api/dealer/leads/{lead_id}/opportunities/{opp_id}", json={"vehicle_id": world["cx5_id"]})
    assert r.status_code == 200
    assert r.json["vehicle"]["id"] == world["cx5_id"]
    r = client.patch(f"/api/dealer/leads/{lead_id}/opportunities/{opp_id}", json={"vehicle_id": None})
    assert r.json["vehicle"] is None


def test_opportunity_won_converts_lead(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "owner@autosdelsur.cl")
    r = client.post(
        f"/api/dealer/leads/{lead_id}/opportunities",
        json={"estimated_value": 12_500_000, "probability": 60, "vehicle_id": world["corolla_id"]},
    )
    assert r.status_code == 201
    opp_id = r.json["id"]

    summary = client.get("/api/dealer/opportunities").json["summary"]
    assert summary["open_value"] == 12_500_000
    assert summary["weighted_value"] == 7_500_000

    r = client.patch(f"/api/dealer/leads/{lead_id}/opportunities/{opp_id}", json={"status": "WON"})
    assert r.status_code == 200
    assert client.get(f"/api/dealer/leads/{lead_id}").json["status"] == "CONVERTED"
    # closed opportunities stay closed
    assert client.patch(f"/api/dealer/leads/{lead_id}/opportunities/{opp_id}", json={"status": "LOST"}).status_code == 400


def test_opportunity_validation(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "owner@autosdelsur.cl")
    assert client.post(f"/api/dealer/leads/{lead_id}/opportunities", json={"estimated_value": 0}).status_code == 400
    r = client.post(f"/api/dealer/leads/{lead_id}/opportunities", json={"estimated_value": 1_000_000, "probability": 150})
    assert r.status_code == 400


def test_test_drive_schedule(client, world):
    lead_id = _capture(client, world).json["id"]
    login(client, "sales@autosdelsur.cl")
    when = (datetime.utcnow() + timedelta(days=2)).replace(microsecond=0).isoformat()
    r = client.post(f"/api/dealer/leads/{lead_id}/test-drives", json={"vehicle_id": world["cx5_id"], "scheduled_at": when})
    assert r.status_code == 201
    assert r.json["status"] == "SCHEDULED"
    assert [td["id"] for td in client.get("/api/dealer/test-drives").json["items"]] == [r.json["id"]]
    bad = client.post(f"/api/dealer/leads/{lead_id}/test-drives", json={"vehicle_id": world["cx5_id"], "scheduled_at": when, "duration": 5})
    assert bad.status_code == 400


def test_templates_crud_and_validation(client, world):
    login(client, "owner@autosdelsur.cl")
    r = client.post(
        "/api/dealer/templates",
        json={"name": "Bienvenida", "channel": "EMAIL", "subject": "Hola {nombre}", "content": "Gracias por consultar por {vehiculo}."},
    )
    assert r.status_code == 201
    template_id = r.json["id"]

    bad = client.post("/api/dealer/templates", json={"name": "Mala", "channel": "EMAIL", "content": "Hola {apodo}"})
    assert bad.status_code == 400
    assert "apodo" in bad.json["error"]

    listing = client.get("/api/dealer/templates").json
    assert [t["id"] for t in listing["items"]] == [template_id]
    assert "nombre" in listing["variables"]

    preview = client.post("/api/dealer/templates/preview", json={"content": "Hola {nombre} {apodo}"}).json
    assert preview["content"].startswith("Hola Juan Pérez")
    assert preview["unknown_variables"] == ["apodo"]

    client.post("/api/auth/logout")
    login(client, "sales@autosdelsur.cl")
    assert client.patch(f"/api/dealer/templates/{template_id}", json={"name": "X"}).status_code == 403


def test_immediate_auto_response_marks_lead_responded(client, world, app):
    login(client, "owner@autosdelsur.cl")
    template_id = client.post(
        "/api/dealer/templates",
        json={"name": "Auto", "channel": "EMAIL", "content": "Hola {nombre}, te contactaremos pronto."},
    ).json["id"]
    assert client.put("/api/dealer/auto-response", json={"enabled": True}).status_code == 400
    r = client.put("/api/dealer/auto-response", json={"enabled": True, "email_template_id": template_id, "delay_minutes": 0})
    assert r.status_code == 200
    client.post("/api/auth/logout")

    lead_id = _capture(client, world).json["id"]
    with session_scope(app) as s:
        # SMTP is not configured in tests; the attempt is still recorded
        assert s.get(DealerLead, lead_id).responded_at is not None
