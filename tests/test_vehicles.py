from app.autoexplora.db import session_scope
from app.autoexplora.models import AuditEvent
from app.autoexplora.modules.vehicles.models import Vehicle
from app.autoexplora.modules.vehicles.service import expire_listings

from tests.conftest import login

IMAGES = [{"url": f"/media/vehicles/test/{i}.jpg"} for i in range(3)]


def _payload(world, **overrides):
    payload = {
        "title": "Toyota RAV4 2021 full equipo",
        "description": "Único dueño, mantenciones en concesionario.",
        "vehicle_type": "AUTO",
        "category": "SUV",
        "condition": "USADO",
        "brand_id": world["toyota_id"],
        "model_id": world["rav4_model_id"],
        "region_id": world["region_id"],
        "comuna_id": world["comuna_id"],
        "year": 2021,
        "mileage": 38000,
        "price": 18_990_000,
        "fuel_type": "BENCINA",
        "transmission": "AUTOMATICA",
        "contact_phone": "+56 9 8765 4321",
        "images": IMAGES,
    }
    payload.update(overrides)
    return payload


def test_search_lists_only_active(client, world, app):
    with session_scope(app) as s:
        s.get(Vehicle, world["cx5_id"]).status = "PAUSED"
    r = client.get("/api/vehicles")
    assert r.status_code == 200
    assert r.json["total"] == 1
    assert r.json["items"][0]["id"] == world["corolla_id"]


def test_search_filters(client, world):
    assert client.get("/api/vehicles?brand=mazda").json["total"] == 1
    assert client.get(f"/api/vehicles?brand={world['toyota_id']}").json["items"][0]["brand"]["slug"] == "toyota"
    assert client.get("/api/vehicles?model=cx-5").json["items"][0]["id"] == world["cx5_id"]
    assert client.get("/api/vehicles?region=metropolitana").json["total"] == 2
    assert client.get("/api/vehicles?min_price=15000000").json["total"] == 1
    assert client.get("/api/vehicles?max_price=15000000&min_year=2019").json["items"][0]["id"] == world["corolla_id"]
    assert client.get("/api/vehicles?min_year=2023").json["total"] == 0
    assert client.get("/api/vehicles?q=corolla").json["total"] == 1


def test_search_sorts(client, world):
    asc = [v["price"] for v in client.get("/api/vehicles?sort=price_asc").json["items"]]
    assert asc == [12_990_000, 21_500_000]
    years = [v["year"] for v in client.get("/api/vehicles?sort=year_desc").json["items"]]
    assert years == [2022, 2020]


def test_detail_by_slug_counts_views(client, world, app):
    r = client.get(f"/api/vehicles/{world['corolla_slug']}")
    assert r.status_code == 200
    assert r.json["views"] == 1
    assert r.json["dealer"]["slug"] == world["dealer_slug"]
    # contact phone is public only when show_phone is set
    assert r.json["contact_phone"] == "+56 9 1234 5678"
    assert client.get(f"/api/vehicles/{world['corolla_id']}").json["views"] == 2


def test_detail_hides_drafts(client, world, app):
    with session_scope(app) as s:
        s.get(Vehicle, world["corolla_id"]).status = "DRAFT"
    assert client.get(f"/api/vehicles/{world['corolla_id']}").status_code == 404


def test_create_requires_login(client, world):
    assert client.post("/api/vehicles", json=_payload(world)).status_code == 401


def test_private_seller_creates_active_listing(client, world, app):
    login(client, "buyer@example.com")
    r = client.post("/api/vehicles", json=_payload(world))
    assert r.status_code == 201, r.json
    assert r.json["status"] == "ACTIVE"
    assert r.json["dealer"] is None
    assert r.json["slug"].startswith("2021-toyota-rav4-")
    assert r.json["slug"].endswith(f"-{r.json['id']}")
    assert r.json["expires_at"] is not None
    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "vehicle.create").count() == 1


def test_dealer_member_listing_belongs_to_dealer(client, world):
    login(client, "sales@autosdelsur.cl")
    r = client.post("/api/vehicles", json=_payload(world))
    assert r.status_code == 201
    assert r.json["dealer"]["id"] == world["dealer_id"]


def test_publishing_requires_three_images(client, world):
    login(client, "buyer@example.com")
    r = client.post("/api/vehicles", json=_payload(world, images=IMAGES[:2]))
    assert r.status_code == 400
    assert "3 imágenes" in r.json["error"]

    # drafts may be saved without images, but not published
    r = client.post("/api/vehicles", json=_payload(world, images=[], status="DRAFT"))
    assert r.status_code == 201
    vid = r.json["id"]
    assert r.json["status"] == "DRAFT"
    assert client.post(f"/api/vehicles/{vid}/status", json={"status": "ACTIVE"}).status_code == 400


def test_create_validation(client, world):
    login(client, "buyer@example.com")
    r = client.post(
        "/api/vehicles",
        json=_payload(world, price=50_000, model_id=world["cx5_model_id"], category="SCOOTER", contact_phone="22345678"),
    )
    assert r.status_code == 400
    details = r.json["details"]
    assert "El precio mínimo es $100.000" in details
    assert "Modelo no válido para esta marca" in details
    assert "Categoría inválida para el tipo de vehículo" in details
    assert any("+56 9" in d for d in details)


def test_owner_status_transitions(client, world):
    login(client, "owner@autosdelsur.cl")
    vid = world["corolla_id"]
    r = client.post(f"/api/vehicles/{vid}/status", json={"status": "PAUSED"})
    assert r.status_code == 200
    assert r.json["status"] == "PAUSED"
    r = client.post(f"/api/vehicles/{vid}/status", json={"status": "SOLD"})
    assert r.json["status"] == "SOLD"
    assert r.json["sold_at"] is not None
    # SOLD is terminal for owners
    assert client.post(f"/api/vehicles/{vid}/status", json={"status": "ACTIVE"}).status_code == 400


def test_sales_member_cannot_manage_others_listing(client, world):
    login(client, "sales@autosdelsur.cl")
    r = client.patch(f"/api/vehicles/{world['corolla_id']}", json={"price": 11_990_000})
    assert r.status_code == 403

    client.post("/api/auth/logout")
    login(client, "manager@autosdelsur.cl")
    r = client.patch(f"/api/vehicles/{world['corolla_id']}", json={"price": 11_990_000})
    assert r.status_code == 200
    assert r.json["price"] == 11_990_000


def test_update_title_rebuilds_slug(client, world):
    login(client, "owner@autosdelsur.cl")
    r = client.patch(f"/api/vehicles/{world['corolla_id']}", json={"title": "Corolla híbrido como nuevo"})
    assert r.status_code == 200
    assert r.json["slug"] == f"2020-toyota-corolla-corolla-hibrido-como-nuevo-{world['corolla_id']}"


def test_update_location_and_model_is_reported(client, world, app):
    from app.autoexplora.modules.catalog.models import Comuna, Region

    with session_scope(app) as s:
        region = Region(name="Biobío", slug="biobio", order=11)
        s.add(region)
        s.flush()
        comuna = Comuna(region_id=region.id, name="Concepción", slug="concepcion")
        s.add(comuna)
        s.flush()
        region_id, comuna_id = region.id, comuna.id

    login(client, "owner@autosdelsur.cl")
    r = client.patch(
        f"/api/vehicles/{world['corolla_id']}",
        json={"region_id": region_id, "comuna_id": comuna_id, "model_id": world["rav4_model_id"]},
    )
    assert r.status_code == 200
    assert r.json["region"]["name"] == "Biobío"
    assert r.json["comuna"]["id"] == comuna_id
    assert r.json["model"]["slug"] == "rav4"
    assert r.json["slug"].startswith("2020-toyota-rav4-")


def test_admin_moderation(client, world):
    login(client)
    # expiry is left to the scheduled job
    assert client.patch(f"/api/admin/vehicles/{world['cx5_id']}", json={"status": "EXPIRED"}).status_code == 400
    r = client.patch(f"/api/admin/vehicles/{world['cx5_id']}", json={"status": "REJECTED", "reason": "Fotos falsas"})
    assert r.status_code == 200
    assert r.json["status"] == "REJECTED"
    r = client.get("/api/admin/vehicles?status=REJECTED")
    assert r.json["total"] == 1
    assert r.json["counts"]["REJECTED"] == 1
    assert client.patch(f"/api/admin/vehicles/{world['cx5_id']}", json={"featured": True}).json["featured"] is True


def test_admin_moderation_requires_permission(client, world):
    login(client, "buyer@example.com")
    assert client.get("/api/admin/vehicles").status_code == 403


def test_favorites(client, world):
    login(client, "buyer@example.com")
    vid = world["cx5_id"]
    assert client.post(f"/api/favorites/{vid}").json["favorited"] is True
    # idempotent
    assert client.post(f"/api/favorites/{vid}").status_code == 200
    items = client.get("/api/favorites").json["items"]
    assert [i["id"] for i in items] == [vid]
    client.delete(f"/api/favorites/{vid}")
    assert client.get("/api/favorites").json["items"] == []
    assert client.post("/api/favorites/999999").status_code == 404


def test_delete_listing(client, world, app):
    login(client, "owner@autosdelsur.cl")
    assert client.delete(f"/api/vehicles/{world['cx5_id']}").status_code == 200
    with session_scope(app) as s:
        assert s.get(Vehicle, world["cx5_id"]) is None


def test_upload_image_rejects_wrong_type(client, world):
    import io

    login(client, "buyer@example.com")
    r = client.post(
        "/api/uploads/images",
        data={"file": (io.BytesIO(b"%PDF-1.4"), "doc.pdf", "application/pdf")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400

    r = client.post(
        "/api/uploads/images",
        data={"file": (io.BytesIO(b"\xff\xd8\xff fake jpeg"), "foto.jpg", "image/jpeg")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    assert r.json["storage_key"].startswith("vehicles/")


def test_expire_listings(app, world):
    from datetime import datetime, timedelta

    with session_scope(app) as s:
        s.get(Vehicle, world["corolla_id"]).expires_at = datetime.utcnow() - timedelta(days=1)
    with session_scope(app) as s:
        assert expire_listings(s) == 1
    with session_scope(app) as s:
        assert s.get(Vehicle, world["corolla_id"]).status == "EXPIRED"
        assert s.get(Vehicle, world["cx5_id"]).status == "ACTIVE"
