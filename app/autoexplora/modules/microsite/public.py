"""
Public dealer storefront.

Reached through the tenant middleware (`/microsite/<key>/...` after the host
rewrite) or directly by path on the platform domain.
"""
from __future__ import annotations

from flask import Blueprint, Response, abort, current_app, flash, g, redirect, render_template, request

from app.autoexplora.constants import DEFAULT_PAGE_SIZE
from app.autoexplora.db import db_session
from app.autoexplora.errors import AppError
from app.autoexplora.modules.microsite import service as svc
from app.autoexplora.modules.vehicles import service as vehicles_svc
from app.autoexplora.tenancy import ENVIRON_KEY
from app.autoexplora.utils import paginate, parse_int

bp = Blueprint("microsite_public", __name__)


@bp.url_value_preprocessor
def _load_site(endpoint, values):
    key = (values or {}).pop("key", None)
    seo_only = endpoint in ("microsite_public.sitemap", "microsite_public.robots")
    cfg = svc.resolve_site(db_session(), key or "", active_only=not seo_only)
    if cfg is None:
        abort(404)
    g.site = cfg
    g.site_key = key
    # links are host-relative when the request came in through a tenant host
    g.site_prefix = "" if request.environ.get(ENVIRON_KEY) else f"/microsite/{key}"


@bp.url_defaults
def _add_key(_endpoint, values):
    if "key" not in values and getattr(g, "site_key", None):
        values["key"] = g.site_key


def _base_url() -> str:
    return svc.site_base_url(g.site, current_app.config["ROOT_DOMAIN"])


def _render(template: str, **ctx):
    cfg = g.site
    return render_template(
        template,
        site=cfg,
        dealer=cfg.dealer,
        nav_pages=[p for p in svc.published_pages(cfg) if p.show_in_nav],
        prefix=g.site_prefix,
        base_url=_base_url(),
        **ctx,
    )


@bp.get("/", strict_slashes=False)
def home():
    cfg = g.site
    featured = []
    if cfg.show_featured_vehicles:
        featured = vehicles_svc.featured_vehicles(db_session(), cfg.featured_vehicles_limit, dealer_id=cfg.dealer_id)
    return _render("microsite/home.html", featured=featured)


@bp.get("/vehiculos")
def vehicles():
    s = db_session()
    filters = request.args.to_dict()
    filters["dealer_id"] = g.site.dealer_id
    page = max(parse_int(request.args.get("page"), 1) or 1, 1)
    rows, total, total_pages = paginate(vehicles_svc.search_vehicles(s, filters), page, DEFAULT_PAGE_SIZE)
    return _render("microsite/vehicles.html", vehicles=rows, total=total, page=page, total_pages=total_pages, filters=request.args)


@bp.get("/vehiculos/<slug>")
def vehicle_detail(slug: str):
    s = db_session()
    v = vehicles_svc.get_public_vehicle(s, slug, dealer_id=g.site.dealer_id)
    if v.status == "ACTIVE":
        vehicles_svc.increment_counter(s, v.id, "view")
        s.commit()
    return _render("microsite/vehicle_detail.html", vehicle=v)


@bp.get("/contacto")
def contact():
    return _render("microsite/contact.html", vehicle_id=request.args.get("vehiculo"), form={})


@bp.post("/contacto")
def contact_submit():
    from app.autoexplora.modules.crm.api import after_lead_captured
    from app.autoexplora.modules.crm.service import capture_public_lead

    s = db_session()
    payload = request.form.to_dict()
    payload["dealer_id"] = g.site.dealer_id
    try:
        lead, recipients = capture_public_lead(s, payload, source="microsite")
    except AppError as e:
        s.rollback()
        flash(e.message, "danger")
        return _render("microsite/contact.html", vehicle_id=payload.get("vehicle_id"), form=payload), e.status_code
    s.commit()
    current_app.logger.info("Microsite lead captured: id=%s dealer=%s", lead.id, lead.dealer_id)
    after_lead_captured(lead, recipients)
    flash("¡Gracias! Te contactaremos pronto.", "success")
    return redirect(f"{g.site_prefix}/contacto")


@bp.get("/sitemap.xml")
def sitemap():
    entries = svc.sitemap_entries(db_session(), g.site, _base_url())
    return Response(render_template("sitemap.xml", entries=entries), mimetype="application/xml")


@bp.get("/robots.txt")
def robots():
    return Response(svc.robots_txt(g.site, _base_url()), mimetype="text/plain")


@bp.get("/<page_slug>")
def custom_page(page_slug: str):
    page = next((p for p in svc.published_pages(g.site) if p.slug == page_slug), None)
    if page is None:
        abort(404)
    return _render("microsite/page.html", page=page)
