from __future__ import annotations

import mimetypes
from datetime import datetime

from flask import Blueprint, Response, abort, current_app, jsonify, render_template, request, send_file
from sqlalchemy import func

from app.autoexplora.constants import DEFAULT_PAGE_SIZE
from app.autoexplora.db import db_session
from app.autoexplora.errors import NotFoundError, ValidationError
from app.autoexplora.storage import LocalStorage, StorageError, storage_from_config
from app.autoexplora.utils import json_payload, paginate, parse_int

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    from app.autoexplora.modules.catalog.service import popular_brands
    from app.autoexplora.modules.vehicles import service as vehicles_svc

    s = db_session()
    return render_template(
        "public/index.html",
        featured=vehicles_svc.featured_vehicles(s, 8),
        recent=vehicles_svc.recent_vehicles(s, 8),
        brands=popular_brands(s, 12),
    )


@bp.get("/vehiculos")
def vehicles_page():
    from app.autoexplora.modules.catalog.service import list_brands, list_regions
    from app.autoexplora.modules.vehicles import service as vehicles_svc

    s = db_session()
    page = max(parse_int(request.args.get("page"), 1) or 1, 1)
    rows, total, total_pages = paginate(vehicles_svc.search_vehicles(s, request.args), page, DEFAULT_PAGE_SIZE)
    return render_template(
        "public/vehicles.html",
        vehicles=rows,
        total=total,
        page=page,
        total_pages=total_pages,
        filters=request.args,
        brands=list_brands(s),
        regions=list_regions(s),
    )


@bp.get("/vehiculos/<slug>")
def vehicle_page(slug: str):
    from app.autoexplora.modules.vehicles import service as vehicles_svc

    s = db_session()
    try:
        v = vehicles_svc.get_public_vehicle(s, slug)
    except NotFoundError:
        abort(404)
    if v.status == "ACTIVE":
        vehicles_svc.increment_counter(s, v.id, "view")
        s.commit()
    return render_template("public/vehicle_detail.html", vehicle=v, related=vehicles_svc.related_vehicles(s, v))


@bp.get("/automotoras")
def dealers_page():
    from app.autoexplora.modules.dealers.service import list_public_dealers

    s = db_session()
    page = max(parse_int(request.args.get("page"), 1) or 1, 1)
    q = list_public_dealers(
        s,
        region_id=parse_int(request.args.get("region")),
        dealer_type=(request.args.get("type") or "").upper() or None,
        search=(request.args.get("q") or "").strip() or None,
        sort=request.args.get("sort") or "recent",
    )
    rows, total, total_pages = paginate(q, page, DEFAULT_PAGE_SIZE)
    return render_template("public/dealers.html", rows=rows, total=total, page=page, total_pages=total_pages)


@bp.get("/automotora/<slug>")
def dealer_page(slug: str):
    from app.autoexplora.modules.dealers.service import get_public_dealer
    from app.autoexplora.modules.vehicles import service as vehicles_svc

    s = db_session()
    try:
        dealer = get_public_dealer(s, slug)
    except NotFoundError:
        abort(404)
    vehicles = vehicles_svc.search_vehicles(s, {"dealer_id": dealer.id}).limit(48).all()
    return render_template("public/dealer.html", dealer=dealer, vehicles=vehicles)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON."""
    return {"ok": True}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200


@bp.get("/media/<path:key>")
def media(key: str):
    """Serve uploads for the local storage backend; S3 serves its own URLs."""
    storage = storage_from_config(current_app.config)
    if not isinstance(storage, LocalStorage):
        abort(404)
    try:
        if not storage.exists(key):
            abort(404)
        fh = storage.open(key)
    except StorageError:
        abort(404)
    mimetype = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return send_file(fh, mimetype=mimetype, max_age=86400)


# ---------- SEO ----------
def sitemap_entries(s, site_url: str) -> list[dict]:
    from app.autoexplora.modules.catalog.models import Brand, Region
    from app.autoexplora.modules.dealers.models import Dealer
    from app.autoexplora.modules.vehicles.models import Vehicle

    now = datetime.utcnow()
    entries = [
        {"loc": site_url, "lastmod": now, "changefreq": "daily", "priority": "1.0"},
        {"loc": f"{site_url}/vehiculos", "lastmod": now, "changefreq": "hourly", "priority": "0.9"},
        {"loc": f"{site_url}/automotoras", "lastmod": now, "changefreq": "daily", "priority": "0.8"},
    ]
    for (slug,) in s.query(Brand.slug).filter(Brand.is_active.is_(True)).order_by(Brand.name).all():
        entries.append({"loc": f"{site_url}/vehiculos?brand={slug}", "lastmod": now, "changefreq": "daily", "priority": "0.7"})
    for (slug,) in s.query(Region.slug).order_by(Region.order).all():
        entries.append({"loc": f"{site_url}/vehiculos?region={slug}", "lastmod": now, "changefreq": "daily", "priority": "0.7"})
    for slug, updated_at in (
        s.query(Vehicle.slug, Vehicle.updated_at).filter(Vehicle.status == "ACTIVE").order_by(Vehicle.published_at.desc()).all()
    ):
        entries.append({"loc": f"{site_url}/vehiculos/{slug}", "lastmod": updated_at, "changefreq": "weekly", "priority": "0.8"})
    for slug, updated_at in s.query(Dealer.slug, Dealer.updated_at).filter(Dealer.status == "ACTIVE").all():
        entries.append({"loc": f"{site_url}/automotora/{slug}", "lastmod": updated_at, "changefreq": "weekly", "priority": "0.6"})
    return entries


@bp.get("/sitemap.xml")
def sitemap():
    entries = sitemap_entries(db_session(), current_app.config["SITE_URL"])
    return Response(render_template("sitemap.xml", entries=entries), mimetype="application/xml")


@bp.get("/robots.txt")
def robots():
    site_url = current_app.config["SITE_URL"]
    body = "\n".join(
        [
            "User-agent: *",
            "Allow: /",
            "Disallow: /api/",
            "Disallow: /admin",
            "Disallow: /dealer",
            "",
            f"Sitemap: {site_url}/sitemap.xml",
        ]
    )
    return Response(body, mimetype="text/plain")


# ---------- Public JSON ----------
@bp.get("/api/stats")
def api_stats():
    from app.autoexplora.models import User
    from app.autoexplora.modules.catalog.models import Brand
    from app.autoexplora.modules.dealers.models import Dealer
    from app.autoexplora.modules.vehicles.models import Vehicle

    s = db_session()
    return jsonify(
        {
            "vehicles": s.query(func.count(Vehicle.id)).filter(Vehicle.status == "ACTIVE").scalar() or 0,
            "dealers": s.query(func.count(Dealer.id)).filter(Dealer.status == "ACTIVE").scalar() or 0,
            "brands": s.query(func.count(Brand.id)).filter(Brand.is_active.is_(True)).scalar() or 0,
            "users": s.query(func.count(User.id)).scalar() or 0,
        }
    )


@bp.post("/api/events/track")
def api_track_event():
    from app.autoexplora.modules.vehicles.service import increment_counter

    payload = json_payload()
    event = payload.get("type")
    counter = {"view": "view", "contact_click": "contact_click"}.get(event or "")
    vehicle_id = parse_int(payload.get("vehicle_id"))
    if not counter or not vehicle_id:
        raise ValidationError("Evento inválido")
    s = db_session()
    tracked = increment_counter(s, vehicle_id, counter)
    s.commit()
    return jsonify({"success": True, "tracked": tracked})
