import dns.resolver
import pytest

from app.autoexplora.db import session_scope
from app.autoexplora.modules.crm.models import DealerLead
from app.autoexplora.modules.microsite import domains
from app.autoexplora.modules.microsite.models import DealerDomain

from tests.conftest import login

TENANT = "http://autos-del-sur.autoexplora.cl"


@pytest.fixture()
def owner(client, world):
    login(client, "owner@autosdelsur.cl")
    return client


def _activate(client, **extra):
    r = client.patch("/api/dealer/microsite", json={"is_active": True, **extra})
    assert r.status_code == 200, r.json
    return r.json["config"]


def _fake_dns(monkeypatch, records=None, exc=None):
    def fake(domain):
        if exc is not None:
            raise exc
        return list(records or [])

    monkeypatch.setattr(domains, "resolve_cname", fake)


def test_config_created_on_first_access(owner):
    r = owner.get("/api/dealer/microsite")
    assert r.status_code == 200
    cfg = r.json["config"]
    assert cfg["is_active"] is False
    assert cfg["subdomain"] == "autos-del-sur.autoexplora.cl"
    assert cfg["url"] == "https://autos-del-sur.autoexplora.cl"
    assert cfg["hero_title"] == "Autos del Sur"
    assert r.json["cname_target"] == "sites.autoexplora.cl"


def test_config_update_validation(owner):
    r = owner.patch("/api/dealer/microsite", json={"primary_color": "blue", "header_style": "fancy"})
    assert r.status_code == 400
    assert "Color inválido (formato #RRGGBB)" in r.json["details"]
    assert "Estilo de cabecera inválido" in r.json["details"]

    cfg = _activate(owner, primary_color="#112233", hero_subtitle="Los mejores usados del sur")
    assert cfg["is_active"] is True
    assert cfg["activated_at"] is not None
    assert cfg["primary_color"] == "#112233"


def test_sales_member_cannot_edit_microsite(client, world):
    login(client, "sales@autosdelsur.cl")
    assert client.get("/api/dealer/microsite").status_code == 403


def test_add_domain_rules(owner):
    r = owner.post("/api/dealer/microsite/domains", json={"domain": "https://WWW.AutosDelSur.cl/inicio"})
    assert r.status_code == 201
    assert r.json["domain"]["domain"] == "www.autosdelsur.cl"
    assert r.json["domain"]["status"] == "PENDING"

    assert owner.post("/api/dealer/microsite/domains", json={"domain": "www.autosdelsur.cl"}).status_code == 409
    r = owner.post("/api/dealer/microsite/domains", json={"domain": "tienda.autoexplora.cl"})
    assert r.status_code == 400
    assert "subdominios" in r.json["error"]
    assert owner.post("/api/dealer/microsite/domains", json={"domain": "sin_punto"}).status_code == 400


def test_verify_domain_and_make_primary(owner, monkeypatch):
    domain_id = owner.post("/api/dealer/microsite/domains", json={"domain": "www.autosdelsur.cl"}).json["domain"]["id"]

    # pending domains cannot be primary
    assert owner.post(f"/api/dealer/microsite/domains/{domain_id}/primary").status_code == 400

    _fake_dns(monkeypatch, records=["edge-1.sites.autoexplora.cl"])
    r = owner.post(f"/api/dealer/microsite/domains/{domain_id}/verify")
    assert r.status_code == 200
    assert r.json["verified"] is True
    assert r.json["domain"]["status"] == "VERIFIED"
    assert r.json["domain"]["verified_at"] is not None

    r = owner.post(f"/api/dealer/microsite/domains/{domain_id}/primary")
    assert r.json["domain"]["is_primary"] is True
    assert owner.get("/api/dealer/microsite").json["config"]["url"] == "https://www.autosdelsur.cl"


def test_failed_verification_clears_primary(owner, monkeypatch, app):
    domain_id = owner.post("/api/dealer/microsite/domains", json={"domain": "www.autosdelsur.cl"}).json["domain"]["id"]
    _fake_dns(monkeypatch, records=["sites.autoexplora.cl."])
    owner.post(f"/api/dealer/microsite/domains/{domain_id}/verify")
    owner.post(f"/api/dealer/microsite/domains/{domain_id}/primary")

    _fake_dns(monkeypatch, records=["otro-hosting.com"])
    r = owner.post(f"/api/dealer/microsite/domains/{domain_id}/verify")
    assert r.json["verified"] is False
    assert "otro-hosting.com" in r.json["error"]
    assert r.json["domain"]["status"] == "FAILED"
    assert r.json["domain"]["is_primary"] is False
    assert r.json["domain"]["last_checked_at"] is not None


def test_verify_without_cname_record(owner, monkeypatch):
    domain_id = owner.post("/api/dealer/microsite/domains", json={"domain": "autosdelsur.cl"}).json["domain"]["id"]
    _fake_dns(monkeypatch, exc=dns.resolver.NXDOMAIN())
    r = owner.post(f"/api/dealer/microsite/domains/{domain_id}/verify")
    assert r.json["verified"] is False
    assert "CNAME" in r.json["error"]


def test_domain_of_other_dealer_is_not_found(owner, app, world):
    from tests.conftest import make_dealer
    from app.autoexplora.modules.catalog.models import Region
    from app.autoexplora.modules.microsite.models import DealerSiteConfig

    with session_scope(app) as s:
        other = make_dealer(s, s.get(Region, world["region_id"]), slug="otra", rut="123456785")
        cfg = DealerSiteConfig(dealer_id=other.id)
        s.add(cfg)
        s.flush()
        d = DealerDomain(site_config_id=cfg.id, domain="otra.cl")
        s.add(d)
        s.flush()
        other_domain_id = d.id
    assert owner.delete(f"/api/dealer/microsite/domains/{other_domain_id}").status_code == 404


def test_pages_crud_and_reorder(owner):
    r = owner.post(
        "/api/dealer/microsite/pages",
        json={
            "title": "Quiénes somos",
            "slug": "nosotros",
            "is_published": True,
            "content": [{"type": "heading", "text": "Nuestra historia"}, {"type": "paragraph", "text": "Desde 1995."}],
        },
    )
    assert r.status_code == 201
    about = r.json["page"]["id"]
    financing = owner.post("/api/dealer/microsite/pages", json={"title": "Financiamiento", "slug": "financiamiento"}).json["page"]["id"]

    assert owner.post("/api/dealer/microsite/pages", json={"title": "Dup", "slug": "nosotros"}).status_code == 400
    r = owner.post("/api/dealer/microsite/pages", json={"title": "Autos", "slug": "vehiculos"})
    assert r.json["error"] == "Este slug está reservado"
    r = owner.post("/api/dealer/microsite/pages", json={"title": "Mala", "slug": "mala", "content": [{"type": "marquee"}]})
    assert r.status_code == 400

    r = owner.put("/api/dealer/microsite/pages/reorder", json={"page_ids": [financing, about]})
    assert [p["id"] for p in r.json["items"]] == [financing, about]
    # every page exactly once
    assert owner.put("/api/dealer/microsite/pages/reorder", json={"page_ids": [about]}).status_code == 400

    r = owner.patch(f"/api/dealer/microsite/pages/{financing}", json={"is_published": True})
    assert r.json["page"]["is_published"] is True
    assert owner.delete(f"/api/dealer/microsite/pages/{about}").status_code == 200
    assert [p["id"] for p in owner.get("/api/dealer/microsite/pages").json["items"]] == [financing]


def test_inactive_site_is_not_served(client, world):
    assert client.get("/", base_url=TENANT).status_code == 404
    assert client.get("/microsite/autos-del-sur/").status_code == 404


def test_robots_for_inactive_site_disallows_all(owner):
    owner.get("/api/dealer/microsite")
    r = owner.get("/robots.txt", base_url=TENANT)
    assert r.status_code == 200
    assert "Disallow: /" in r.get_data(as_text=True)


def test_subdomain_routes_to_storefront(owner, world):
    _activate(owner, hero_title="Bienvenidos a Autos del Sur")
    r = owner.get("/", base_url=TENANT)
    assert r.status_code == 200
    body = r.get_data(as_text=True)
    assert "Bienvenidos a Autos del Sur" in body
    # links stay host-relative on tenant hosts
    assert 'href="/vehiculos"' in body

    r = owner.get("/vehiculos", base_url=TENANT)
    assert r.status_code == 200
    assert "Corolla" in r.get_data(as_text=True)

    r = owner.get(f"/vehiculos/{world['corolla_slug']}", base_url=TENANT)
    assert r.status_code == 200

    # platform API still answers on tenant hosts
    assert owner.get("/api/vehicles", base_url=TENANT).status_code == 200


def test_forwarded_host_does_not_select_tenant(owner):
    _activate(owner, hero_title="Bienvenidos a Autos del Sur")
    r = owner.get("/", headers={"X-Forwarded-Host": "autos-del-sur.autoexplora.cl"})
    assert r.status_code == 200
    assert "Bienvenidos a Autos del Sur" not in r.get_data(as_text=True)


def test_storefront_by_path_on_platform_host(owner):
    _activate(owner)
    r = owner.get("/microsite/autos-del-sur/")
    assert r.status_code == 200
    assert 'href="/microsite/autos-del-sur/vehiculos"' in r.get_data(as_text=True)


def test_custom_domain_routes_to_storefront(owner, monkeypatch):
    _activate(owner)
    domain_id = owner.post("/api/dealer/microsite/domains", json={"domain": "www.autosdelsur.cl"}).json["domain"]["id"]
    # unverified domains are not served
    assert owner.get("/", base_url="http://www.autosdelsur.cl").status_code == 404

    _fake_dns(monkeypatch, records=["sites.autoexplora.cl"])
    owner.post(f"/api/dealer/microsite/domains/{domain_id}/verify")
    assert owner.get("/", base_url="http://www.autosdelsur.cl").status_code == 200


def test_storefront_hides_other_dealers_vehicles(owner, app, world):
    from tests.conftest import make_dealer, make_user, make_vehicle
    from app.autoexplora.modules.catalog.models import Brand, Region, VehicleModel

    _activate(owner)
    with session_scope(app) as s:
        region = s.get(Region, world["region_id"])
        other = make_dealer(s, region, slug="otra", rut="123456785")
        seller = make_user(s, "otra@example.com", dealer=other, dealer_role="OWNER")
        slug = make_vehicle(s, seller, s.get(Brand, world["toyota_id"]), s.get(VehicleModel, world["rav4_model_id"]), region, dealer=other).slug
    assert owner.get(f"/microsite/autos-del-sur/vehiculos/{slug}").status_code == 404


def test_custom_page_and_sitemap(owner, world):
    _activate(owner)
    owner.post(
        "/api/dealer/microsite/pages",
        json={"title": "Servicios", "slug": "servicios", "is_published": True, "content": [{"type": "list", "items": ["Mantención", "Desabolladura"]}]},
    )
    owner.post("/api/dealer/microsite/pages", json={"title": "Borrador", "slug": "borrador"})

    r = owner.get("/servicios", base_url=TENANT)
    assert r.status_code == 200
    assert "Desabolladura" in r.get_data(as_text=True)
    assert owner.get("/borrador", base_url=TENANT).status_code == 404

    xml = owner.get("/sitemap.xml", base_url=TENANT).get_data(as_text=True)
    assert "https://autos-del-sur.autoexplora.cl/servicios" in xml
    assert f"https://autos-del-sur.autoexplora.cl/vehiculos/{world['corolla_slug']}" in xml
    assert "borrador" not in xml


def test_contact_form_creates_microsite_lead(owner, app, world):
    _activate(owner)
    r = owner.post(
        "/microsite/autos-del-sur/contacto",
        data={"name": "Ana Rojas", "email": "ana@example.com", "phone": "+56 9 4444 3333", "message": "Quiero cotizar", "vehicle_id": world["cx5_id"]},
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/microsite/autos-del-sur/contacto")
    with session_scope(app) as s:
        lead = s.query(DealerLead).filter(DealerLead.email == "ana@example.com").one()
        assert lead.source == "microsite"
        assert lead.vehicle_id == world["cx5_id"]

    items = owner.get("/api/dealer/microsite/leads").json["items"]
    assert [i["email"] for i in items] == ["ana@example.com"]


def test_contact_form_validation_rerenders(owner):
    _activate(owner)
    r = owner.post("/microsite/autos-del-sur/contacto", data={"name": "Ana", "email": "ana@example.com", "message": ""})
    assert r.status_code == 400
    assert "Faltan campos requeridos" in r.get_data(as_text=True)


def test_admin_manages_any_microsite(client, world, monkeypatch):
    login(client)
    base = f"/api/admin/dealers/{world['dealer_id']}/microsite"
    r = client.patch(base, json={"is_active": True})
    assert r.status_code == 200
    assert r.json["config"]["is_active"] is True
    r = client.post(f"{base}/domains", json={"domain": "autosdelsur.cl"})
    assert r.status_code == 201
    domain_id = r.json["domain"]["id"]

    assert client.post(f"{base}/domains/{domain_id}/primary").status_code == 400
    _fake_dns(monkeypatch, records=["sites.autoexplora.cl"])
    assert client.post(f"{base}/domains/{domain_id}/verify").json["verified"] is True
    r = client.post(f"{base}/domains/{domain_id}/primary")
    assert r.status_code == 200
    assert r.json["domain"]["is_primary"] is True

    about = client.post(f"{base}/pages", json={"title": "Nosotros", "slug": "nosotros"})
    assert about.status_code == 201
    about_id = about.json["page"]["id"]
    offers_id = client.post(f"{base}/pages", json={"title": "Ofertas", "slug": "ofertas"}).json["page"]["id"]
    r = client.put(f"{base}/pages/reorder", json={"page_ids": [offers_id, about_id]})
    assert [p["id"] for p in r.json["items"]] == [offers_id, about_id]
    r = client.patch(f"{base}/pages/{about_id}", json={"is_published": True})
    assert r.json["page"]["is_published"] is True
    assert client.delete(f"{base}/pages/{offers_id}").status_code == 200
    assert [p["id"] for p in client.get(f"{base}/pages").json["items"]] == [about_id]
    assert client.get("/api/admin/dealers/999999/microsite/pages").status_code == 404


def test_admin_microsite_pages_require_permission(client, world):
    login(client, "owner@autosdelsur.cl")
    r = client.post(f"/api/admin/dealers/{world['dealer_id']}/microsite/pages", json={"title": "Nosotros", "slug": "nosotros"})
    assert r.status_code == 403
