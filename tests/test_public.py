from app.autoexplora.db import session_scope
from app.autoexplora.modules.vehicles.models import Vehicle


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_home_page(client, world):
    r = client.get("/")
    assert r.status_code == 200
    assert "Corolla" in r.get_data(as_text=True)


def test_vehicles_page_filters(client, world):
    r = client.get("/vehiculos?brand=mazda")
    assert r.status_code == 200
    body = r.get_data(as_text=True)
    assert "CX-5" in body
    assert "Toyota Corolla 2020" not in body


def test_vehicle_page_counts_view(client, world, app):
    r = client.get(f"/vehiculos/{world['corolla_slug']}")
    assert r.status_code == 200
    with session_scope(app) as s:
        assert s.get(Vehicle, world["corolla_id"]).views == 1
    assert client.get("/vehiculos/no-existe").status_code == 404


def test_dealer_pages(client, world):
    r = client.get("/automotoras")
    assert r.status_code == 200
    assert "Autos del Sur" in r.get_data(as_text=True)
    assert client.get(f"/automotora/{world['dealer_slug']}").status_code == 200
    assert client.get("/automotora/nadie").status_code == 404


def test_unknown_page_renders_html_404(client):
    r = client.get("/no-existe/para-nada")
    assert r.status_code == 404
    assert r.mimetype == "text/html"


def test_unknown_api_path_returns_json_404(client):
    r = client.get("/api/no-existe")
    assert r.status_code == 404
    assert "error" in r.json


def test_sitemap_and_robots(client, world):
    xml = client.get("/sitemap.xml").get_data(as_text=True)
    assert f"https://autoexplora.cl/vehiculos/{world['corolla_slug']}" in xml
    assert f"https://autoexplora.cl/automotora/{world['dealer_slug']}" in xml
    assert "https://autoexplora.cl/vehiculos?brand=toyota" in xml

    robots = client.get("/robots.txt").get_data(as_text=True)
    assert "Disallow: /api/" in robots
    assert "Sitemap: https://autoexplora.cl/sitemap.xml" in robots


def test_stats(client, world):
    r = client.get("/api/stats")
    assert r.json == {"vehicles": 2, "dealers": 1, "brands": 2, "users": 5}


def test_track_contact_click(client, world, app):
    r = client.post("/api/events/track", json={"type": "contact_click", "vehicle_id": world["cx5_id"]})
    assert r.json["tracked"] is True
    with session_scope(app) as s:
        assert s.get(Vehicle, world["cx5_id"]).contact_clicks == 1
    assert client.post("/api/events/track", json={"type": "share", "vehicle_id": world["cx5_id"]}).status_code == 400


def test_catalog_endpoints(client, world):
    slugs = [b["slug"] for b in client.get("/api/brands").json["items"]]
    assert slugs == ["mazda", "toyota"]
    names = [m["name"] for m in client.get(f"/api/brands/{world['toyota_id']}/models").json["items"]]
    assert "Corolla" in names
    assert client.get("/api/brands/999/models").status_code == 404
    regions = client.get("/api/regions").json["items"]
    assert regions[0]["slug"] == "metropolitana"


def test_media_served_from_local_storage(client, app):
    from app.autoexplora.storage import storage_from_config

    storage_from_config(app.config).put_bytes("vehicles/1/foto.jpg", b"\xff\xd8\xff", content_type="image/jpeg")
    r = client.get("/media/vehicles/1/foto.jpg")
    assert r.status_code == 200
    assert r.mimetype == "image/jpeg"
    assert client.get("/media/vehicles/1/otra.jpg").status_code == 404
