from app.autoexplora.db import session_scope
from app.autoexplora.models import AuditEvent, AuthToken, User
from app.autoexplora.modules.dealers.models import Dealer

from tests.conftest import login


def _registration(world, **overrides):
    payload = {
        "type": "AUTOMOTORA",
        "business_name": "Comercial Norte Limitada",
        "trade_name": "Autos Norte",
        "rut": "12.345.678-5",
        "region_id": world["region_id"],
        "comuna_id": world["comuna_id"],
        "email": "ventas@autosnorte.cl",
        "phone": "+56 9 5555 1234",
        "address": "Av. Argentina 450, Antofagasta",
        "user_name": "Pedro Soto",
        "user_email": "pedro@autosnorte.cl",
        "user_password": "Norte2024x",
        "user_password_confirm": "Norte2024x",
    }
    payload.update(overrides)
    return payload


def test_register_creates_pending_dealer_and_owner(client, world, app):
    r = client.post("/api/dealers/register", json=_registration(world))
    assert r.status_code == 201, r.json
    assert r.json["dealer"]["status"] == "PENDING"
    assert r.json["dealer"]["slug"] == "autos-norte"

    with session_scope(app) as s:
        dealer = s.get(Dealer, r.json["dealer"]["id"])
        assert dealer.rut == "123456785"
        owner = s.query(User).filter(User.email == "pedro@autosnorte.cl").one()
        assert owner.dealer_id == dealer.id
        assert owner.dealer_role == "OWNER"

    # pending dealers cannot use the back-office yet
    login(client, "pedro@autosnorte.cl", "Norte2024x")
    r = client.get("/api/dealer/profile")
    assert r.status_code == 403


def test_register_validation(client, world):
    r = client.post(
        "/api/dealers/register",
        json=_registration(world, type="TALLER", rut="12.345.678-9", phone="123", user_password_confirm="otra"),
    )
    assert r.status_code == 400
    details = r.json["details"]
    assert "Tipo de automotora inválido" in details
    assert "RUT inválido. Verifica el dígito verificador." in details
    assert "El teléfono debe tener al menos 9 dígitos" in details
    assert "Las contraseñas no coinciden" in details


def test_register_rejects_duplicate_rut_and_email(client, world):
    r = client.post("/api/dealers/register", json=_registration(world, rut="76.123.456-0"))
    assert r.status_code == 400
    assert "RUT" in r.json["error"]

    r = client.post("/api/dealers/register", json=_registration(world, user_email="buyer@example.com"))
    assert r.status_code == 400
    assert "email" in r.json["error"]


def test_admin_approves_pending_dealer(client, world, app):
    dealer_id = client.post("/api/dealers/register", json=_registration(world)).json["dealer"]["id"]
    login(client)

    r = client.get("/api/admin/dealers?status=PENDING")
    assert [d["id"] for d in r.json["items"]] == [dealer_id]
    assert r.json["counts"]["PENDING"] == 1

    assert client.patch(f"/api/admin/dealers/{dealer_id}", json={}).json["error"] == "Estado requerido"
    # PENDING cannot jump to SUSPENDED
    assert client.patch(f"/api/admin/dealers/{dealer_id}", json={"status": "SUSPENDED"}).status_code == 400

    r = client.patch(f"/api/admin/dealers/{dealer_id}", json={"status": "ACTIVE"})
    assert r.status_code == 200
    assert r.json["dealer"]["status"] == "ACTIVE"
    assert r.json["dealer"]["verified_at"] is not None

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "dealer.status").one()
        assert ev.entity_id == str(dealer_id)

    client.post("/api/auth/logout")
    login(client, "pedro@autosnorte.cl", "Norte2024x")
    assert client.get("/api/dealer/profile").json["membership"]["dealer_role"] == "OWNER"


def test_suspended_dealer_hidden_from_directory(client, world):
    assert client.get("/api/dealers").json["items"][0]["vehicle_count"] == 2
    login(client)
    r = client.patch(f"/api/admin/dealers/{world['dealer_id']}", json={"status": "SUSPENDED", "reason": "Reclamos"})
    assert r.json["dealer"]["rejection_reason"] == "Reclamos"
    assert client.get("/api/dealers").json["total"] == 0
    assert client.get(f"/api/dealers/{world['dealer_slug']}").status_code == 404


def test_public_dealer_profile(client, world):
    r = client.get(f"/api/dealers/{world['dealer_slug']}")
    assert r.status_code == 200
    assert r.json["trade_name"] == "Autos del Sur"
    assert "rut" not in r.json
    assert r.json["vehicles"]["total"] == 2


def test_admin_dealer_detail(client, world):
    login(client)
    r = client.get(f"/api/admin/dealers/{world['dealer_id']}")
    assert r.json["rut"] == "76.123.456-0"
    assert {m["dealer_role"] for m in r.json["members"]} == {"OWNER", "MANAGER", "SALES"}
    assert r.json["stats"]["active_vehicles"] == 2


def test_profile_update_by_manager(client, world):
    login(client, "manager@autosdelsur.cl")
    r = client.patch("/api/dealer/profile", json={"description": "Más de 20 años en el rubro", "website": "https://autosdelsur.cl"})
    assert r.status_code == 200
    assert r.json["website"] == "https://autosdelsur.cl"
    assert client.patch("/api/dealer/profile", json={"website": "no es url"}).status_code == 400

    client.post("/api/auth/logout")
    login(client, "sales@autosdelsur.cl")
    assert client.patch("/api/dealer/profile", json={"description": "x"}).status_code == 403
    assert client.get("/api/dealer/profile").status_code == 200


def test_profile_location_change_is_reported(client, world, app):
    from app.autoexplora.modules.catalog.models import Comuna, Region

    with session_scope(app) as s:
        region = Region(name="Valparaíso", slug="valparaiso", order=5)
        s.add(region)
        s.flush()
        comuna = Comuna(region_id=region.id, name="Viña del Mar", slug="vina-del-mar")
        s.add(comuna)
        s.flush()
        region_id, comuna_id = region.id, comuna.id

    login(client, "owner@autosdelsur.cl")
    r = client.patch("/api/dealer/profile", json={"region_id": region_id, "comuna_id": comuna_id})
    assert r.status_code == 200
    assert r.json["region"]["id"] == region_id
    assert r.json["region"]["name"] == "Valparaíso"
    assert r.json["comuna"]["name"] == "Viña del Mar"

    r = client.patch("/api/dealer/profile", json={"region_id": world["region_id"], "comuna_id": None})
    assert r.json["region"]["id"] == world["region_id"]
    assert r.json["comuna"] is None
    # comuna must belong to the region
    assert client.patch("/api/dealer/profile", json={"comuna_id": comuna_id}).status_code == 400


def test_non_member_gets_forbidden(client, world):
    login(client, "buyer@example.com")
    assert client.get("/api/dealer/profile").status_code == 403


def test_team_management(client, world, app):
    login(client, "owner@autosdelsur.cl")
    team = client.get("/api/dealer/team").json["items"]
    assert [m["dealer_role"] for m in team] == ["OWNER", "MANAGER", "SALES"]

    # existing account without a dealer is attached directly
    r = client.post("/api/dealer/team", json={"email": "buyer@example.com", "name": "Buyer", "role": "SALES"})
    assert r.status_code == 200
    assert r.json["user"]["dealer_role"] == "SALES"

    # unknown e-mail gets a new account and an invitation token
    r = client.post("/api/dealer/team", json={"email": "nuevo@autosdelsur.cl", "name": "Nuevo Vendedor", "role": "MANAGER"})
    assert r.status_code == 201
    new_id = r.json["user"]["id"]
    with session_scope(app) as s:
        assert s.query(AuthToken).filter(AuthToken.user_id == new_id, AuthToken.purpose == "reset_password").count() == 1

    r = client.patch(f"/api/dealer/team/{new_id}", json={"role": "SALES"})
    assert r.json["dealer_role"] == "SALES"
    assert client.patch(f"/api/dealer/team/{world['owner_id']}", json={"role": "SALES"}).status_code == 403
    assert client.delete(f"/api/dealer/team/{world['owner_id']}").status_code == 403

    assert client.delete(f"/api/dealer/team/{new_id}").status_code == 200
    with session_scope(app) as s:
        assert s.get(User, new_id).dealer_id is None


def test_team_rejects_member_of_another_dealer(client, world):
    login(client, "owner@autosdelsur.cl")
    r = client.post("/api/dealer/team", json={"email": "manager@autosdelsur.cl", "name": "Manager", "role": "SALES"})
    assert r.status_code == 400


def test_team_is_owner_only(client, world):
    login(client, "manager@autosdelsur.cl")
    assert client.get("/api/dealer/team").status_code == 403


def test_dealer_stats(client, world):
    login(client, "sales@autosdelsur.cl")
    r = client.get("/api/dealer/stats")
    assert r.json["stats"]["active_vehicles"] == 2
    assert client.get("/api/dealer/stats/funnel").status_code == 403

    client.post("/api/auth/logout")
    login(client, "owner@autosdelsur.cl")
    assert client.get("/api/dealer/stats/funnel?period=7").status_code == 200
    assert client.get("/api/dealer/stats/traffic").status_code == 200
    assert client.get("/api/dealer/stats/contacts").status_code == 200
