from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.autoexplora.db import db_session
from app.autoexplora.errors import NotFoundError
from app.autoexplora.mailer import send_lead_assigned_email
from app.autoexplora.modules.crm import service as crm_svc
from app.autoexplora.modules.dealers.service import get_dealer
from app.autoexplora.modules.microsite import service as svc
from app.autoexplora.modules.microsite.models import DealerSiteConfig
from app.autoexplora.rbac import current_user, require_dealer, require_permission
from app.autoexplora.utils import json_payload, page_response, paginate, pagination_args

bp = Blueprint("microsite", __name__)


def _root() -> str:
    return current_app.config["ROOT_DOMAIN"]


def _config_response(cfg: DealerSiteConfig):
    return jsonify({"config": svc.serialize_config(cfg, _root()), "cname_target": current_app.config["CNAME_TARGET"]})


# Shared handlers; dealer and admin routes differ only in how the config is found.
def _get_config(s, cfg: DealerSiteConfig):
    s.commit()
    return _config_response(cfg)


def _update_config(s, cfg: DealerSiteConfig):
    svc.update_config(s, cfg, json_payload(), current_user())
    s.commit()
    return _config_response(cfg)


def _add_domain(s, cfg: DealerSiteConfig):
    d = svc.add_domain(s, cfg, json_payload().get("domain"), _root(), current_user())
    s.commit()
    return jsonify({"domain": svc.serialize_domain(d), "cname_target": current_app.config["CNAME_TARGET"]}), 201


def _verify_domain(s, cfg: DealerSiteConfig, domain_id: int):
    result = svc.verify_domain(s, svc.get_domain(s, cfg, domain_id), current_app.config["CNAME_TARGET"], current_user())
    s.commit()
    current_app.logger.info("Domain verification: domain=%s verified=%s", result.domain.domain, result.verified)
    return jsonify({"domain": svc.serialize_domain(result.domain), "verified": result.verified, "error": result.error})


def _primary_domain(s, cfg: DealerSiteConfig, domain_id: int):
    d = svc.set_primary_domain(s, cfg, svc.get_domain(s, cfg, domain_id))
    s.commit()
    return jsonify({"domain": svc.serialize_domain(d)})


def _delete_domain(s, cfg: DealerSiteConfig, domain_id: int):
    svc.delete_domain(s, svc.get_domain(s, cfg, domain_id), current_user())
    s.commit()
    return jsonify({"success": True})


def _list_pages(s, cfg: DealerSiteConfig):
    s.commit()
    return jsonify({"items": [svc.serialize_page(p, with_content=False) for p in cfg.pages]})


def _create_page(s, cfg: DealerSiteConfig):
    page = svc.create_page(s, cfg, json_payload())
    s.commit()
    return jsonify({"page": svc.serialize_page(page)}), 201


def _reorder_pages(s, cfg: DealerSiteConfig):
    pages = svc.reorder_pages(cfg, json_payload().get("page_ids"))
    s.commit()
    return jsonify({"items": [svc.serialize_page(p, with_content=False) for p in pages]})


def _update_page(s, cfg: DealerSiteConfig, page_id: int):
    page = svc.update_page(s, cfg, svc.get_page(s, cfg, page_id), json_payload())
    s.commit()
    return jsonify({"page": svc.serialize_page(page)})


def _delete_page(s, cfg: DealerSiteConfig, page_id: int):
    s.delete(svc.get_page(s, cfg, page_id))
    s.commit()
    return jsonify({"success": True})


# ---------- Dealer back-office ----------
def _dealer_config(s) -> DealerSiteConfig:
    return svc.get_or_create_config(s, g.dealer)


@bp.get("/dealer/microsite")
@require_dealer("OWNER", "MANAGER")
def dealer_microsite_get():
    s = db_session()
    return _get_config(s, _dealer_config(s))


@bp.patch("/dealer/microsite")
@require_dealer("OWNER", "MANAGER")
def dealer_microsite_update():
    s = db_session()
    return _update_config(s, _dealer_config(s))


@bp.post("/dealer/microsite/domains")
@require_dealer("OWNER", "MANAGER")
def dealer_domains_add():
    s = db_session()
    return _add_domain(s, _dealer_config(s))


@bp.delete("/dealer/microsite/domains/<int:domain_id>")
@require_dealer("OWNER", "MANAGER")
def dealer_domains_delete(domain_id: int):
    s = db_session()
    return _delete_domain(s, _dealer_config(s), domain_id)


@bp.post("/dealer/microsite/domains/<int:domain_id>/verify")
@require_dealer("OWNER", "MANAGER")
def dealer_domains_verify(domain_id: int):
    s = db_session()
    return _verify_domain(s, _dealer_config(s), domain_id)


@bp.post("/dealer/microsite/domains/<int:domain_id>/primary")
@require_dealer("OWNER", "MANAGER")
def dealer_domains_primary(domain_id: int):
    s = db_session()
    return _primary_domain(s, _dealer_config(s), domain_id)


@bp.get("/dealer/microsite/pages")
@require_dealer("OWNER", "MANAGER")
def dealer_pages_list():
    s = db_session()
    return _list_pages(s, _dealer_config(s))


@bp.post("/dealer/microsite/pages")
@require_dealer("OWNER", "MANAGER")
def dealer_pages_create():
    s = db_session()
    return _create_page(s, _dealer_config(s))


@bp.put("/dealer/microsite/pages/reorder")
@require_dealer("OWNER", "MANAGER")
def dealer_pages_reorder():
    s = db_session()
    return _reorder_pages(s, _dealer_config(s))


@bp.get("/dealer/microsite/pages/<int:page_id>")
@require_dealer("OWNER", "MANAGER")
def dealer_pages_detail(page_id: int):
    s = db_session()
    return jsonify({"page": svc.serialize_page(svc.get_page(s, _dealer_config(s), page_id))})


@bp.patch("/dealer/microsite/pages/<int:page_id>")
@require_dealer("OWNER", "MANAGER")
def dealer_pages_update(page_id: int):
    s = db_session()
    return _update_page(s, _dealer_config(s), page_id)


@bp.delete("/dealer/microsite/pages/<int:page_id>")
@require_dealer("OWNER", "MANAGER")
def dealer_pages_delete(page_id: int):
    s = db_session()
    return _delete_page(s, _dealer_config(s), page_id)


# ---------- Microsite leads ----------
@bp.get("/dealer/microsite/leads")
@require_dealer()
def dealer_microsite_leads():
    s = db_session()
    page, limit = pagination_args(default_limit=20, max_limit=100)
    q = crm_svc.lead_query(
        s,
        g.dealer,
        g.current_user,
        status=(request.args.get("status") or "").upper() or None,
        search=(request.args.get("q") or "").strip() or None,
        source="microsite",
    )
    rows, total, total_pages = paginate(q, page, limit)
    return jsonify(page_response([crm_svc.serialize_lead(lead) for lead in rows], total, page, total_pages))


@bp.patch("/dealer/microsite/leads/<int:lead_id>")
@require_dealer()
def dealer_microsite_lead_update(lead_id: int):
    s = db_session()
    lead = crm_svc.get_lead(s, g.dealer, lead_id)
    if lead.source != "microsite":
        raise NotFoundError("Lead no encontrado")
    assignee = crm_svc.update_lead(s, lead, json_payload(), g.current_user)
    s.commit()
    if assignee is not None:
        ok, err = send_lead_assigned_email(assignee.email, assignee.name, lead.name, lead.id, g.current_user.display_name)
        if not ok:
            current_app.logger.warning("Lead-assigned e-mail not sent to %s: %s", assignee.email, err)
    return jsonify(crm_svc.serialize_lead(lead, detail=True))


# ---------- Admin ----------
def _admin_config(s, dealer_id: int) -> DealerSiteConfig:
    return svc.get_or_create_config(s, get_dealer(s, dealer_id))


@bp.get("/admin/dealers/<int:dealer_id>/microsite")
@require_permission("microsites.manage")
def admin_microsite_get(dealer_id: int):
    s = db_session()
    return _get_config(s, _admin_config(s, dealer_id))


@bp.patch("/admin/dealers/<int:dealer_id>/microsite")
@require_permission("microsites.manage")
def admin_microsite_update(dealer_id: int):
    s = db_session()
    return _update_config(s, _admin_config(s, dealer_id))


@bp.post("/admin/dealers/<int:dealer_id>/microsite/domains")
@require_permission("microsites.manage")
def admin_domains_add(dealer_id: int):
    s = db_session()
    return _add_domain(s, _admin_config(s, dealer_id))


@bp.delete("/admin/dealers/<int:dealer_id>/microsite/domains/<int:domain_id>")
@require_permission("microsites.manage")
def admin_domains_delete(dealer_id: int, domain_id: int):
    s = db_session()
    return _delete_domain(s, _admin_config(s, dealer_id), domain_id)


@bp.post("/admin/dealers/<int:dealer_id>/microsite/domains/<int:domain_id>/verify")
@require_permission("microsites.manage")
def admin_domains_verify(dealer_id: int, domain_id: int):
    s = db_session()
    return _verify_domain(s, _admin_config(s, dealer_id), domain_id)


@bp.post("/admin/dealers/<int:dealer_id>/microsite/domains/<int:domain_id>/primary")
@require_permission("microsites.manage")
def admin_domains_primary(dealer_id: int, domain_id: int):
    s = db_session()
    return _primary_domain(s, _admin_config(s, dealer_id), domain_id)


@bp.get("/admin/dealers/<int:dealer_id>/microsite/pages")
@require_permission("microsites.manage")
def admin_pages_list(dealer_id: int):
    s = db_session()
    return _list_pages(s, _admin_config(s, dealer_id))


@bp.post("/admin/dealers/<int:dealer_id>/microsite/pages")
@require_permission("microsites.manage")
def admin_pages_create(dealer_id: int):
    s = db_session()
    return _create_page(s, _admin_config(s, dealer_id))


@bp.put("/admin/dealers/<int:dealer_id>/microsite/pages/reorder")
@require_permission("microsites.manage")
def admin_pages_reorder(dealer_id: int):
    s = db_session()
    return _reorder_pages(s, _admin_config(s, dealer_id))


@bp.patch("/admin/dealers/<int:dealer_id>/microsite/pages/<int:page_id>")
@require_permission("microsites.manage")
def admin_pages_update(dealer_id: int, page_id: int):
    s = db_session()
    return _update_page(s, _admin_config(s, dealer_id), page_id)


@bp.delete("/admin/dealers/<int:dealer_id>/microsite/pages/<int:page_id>")
@require_permission("microsites.manage")
def admin_pages_delete(dealer_id: int, page_id: int):
    s = db_session()
    return _delete_page(s, _admin_config(s, dealer_id), page_id)
