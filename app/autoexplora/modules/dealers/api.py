from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.autoexplora.db import db_session
from app.autoexplora.errors import ValidationError
from app.autoexplora.mailer import send_password_reset_email
from app.autoexplora.modules.dealers import service as svc
from app.autoexplora.modules.dealers.models import Dealer
from app.autoexplora.rbac import require_dealer, require_permission
from app.autoexplora.utils import json_payload, page_response, paginate, pagination_args, parse_int

bp = Blueprint("dealers", __name__)


# ---------- Public ----------
@bp.post("/dealers/register")
def dealers_register():
    s = db_session()
    dealer, user = svc.register_dealer(s, json_payload())
    s.commit()
    current_app.logger.info("Dealer registered: id=%s slug=%s owner=%s", dealer.id, dealer.slug, user.email)
    return (
        jsonify(
            {
                "success": True,
                "message": "Solicitud enviada. Revisaremos tu información y te contactaremos pronto.",
                "dealer": {"id": dealer.id, "slug": dealer.slug, "status": dealer.status},
            }
        ),
        201,
    )


@bp.get("/dealers")
def dealers_directory():
    s = db_session()
    page, limit = pagination_args(default_limit=12, max_limit=48)
    q = svc.list_public_dealers(
        s,
        region_id=parse_int(request.args.get("region")),
        dealer_type=(request.args.get("type") or "").strip().upper() or None,
        search=(request.args.get("q") or "").strip() or None,
        sort=request.args.get("sort") or "recent",
    )
    rows, total, total_pages = paginate(q, page, limit)
    items = [svc.serialize_dealer(d) | {"vehicle_count": int(n or 0)} for d, n in rows]
    return jsonify(page_response(items, total, page, total_pages))


@bp.get("/dealers/<slug>")
def dealers_public_profile(slug: str):
    from app.autoexplora.modules.vehicles import service as vehicles_svc

    s = db_session()
    dealer = svc.get_public_dealer(s, slug)
    page, limit = pagination_args(default_limit=12, max_limit=48)
    q = vehicles_svc.search_vehicles(s, {"dealer_id": dealer.id})
    rows, total, total_pages = paginate(q, page, limit)
    data = svc.serialize_dealer(dealer)
    data["vehicles"] = page_response([vehicles_svc.serialize_vehicle_card(v) for v in rows], total, page, total_pages)
    return jsonify(data)


# ---------- Dealer back-office ----------
@bp.get("/dealer/profile")
@require_dealer()
def dealer_profile_get():
    member = g.current_user
    data = svc.serialize_dealer(g.dealer, private=True)
    data["membership"] = {"user_id": member.id, "dealer_role": member.dealer_role}
    return jsonify(data)


@bp.patch("/dealer/profile")
@require_dealer("OWNER", "MANAGER")
def dealer_profile_update():
    s = db_session()
    dealer = svc.update_profile(s, g.dealer, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_dealer(dealer, private=True))


@bp.get("/dealer/team")
@require_dealer("OWNER")
def dealer_team_list():
    s = db_session()
    return jsonify({"items": [svc.serialize_member(u) for u in svc.list_team(s, g.dealer)]})


@bp.post("/dealer/team")
@require_dealer("OWNER")
def dealer_team_add():
    s = db_session()
    member, token = svc.add_team_member(s, g.dealer, json_payload(), g.current_user)
    s.commit()
    if token is None:
        return jsonify({"success": True, "message": "Usuario agregado al equipo", "user": svc.serialize_member(member)})
    ok, err = send_password_reset_email(member.email, member.name, token.token)
    if not ok:
        current_app.logger.warning("Team invitation e-mail not sent to %s: %s", member.email, err)
    return (
        jsonify({"success": True, "message": "Invitación enviada correctamente", "user": svc.serialize_member(member)}),
        201,
    )


@bp.patch("/dealer/team/<int:user_id>")
@require_dealer("OWNER")
def dealer_team_update(user_id: int):
    s = db_session()
    member = svc.update_member_role(s, g.dealer, user_id, json_payload().get("role") or "", g.current_user)
    s.commit()
    return jsonify(svc.serialize_member(member))


@bp.delete("/dealer/team/<int:user_id>")
@require_dealer("OWNER")
def dealer_team_remove(user_id: int):
    s = db_session()
    svc.remove_member(s, g.dealer, user_id, g.current_user)
    s.commit()
    return jsonify({"success": True})


@bp.get("/dealer/stats")
@require_dealer()
def dealer_stats():
    return jsonify(svc.dealer_stats(db_session(), g.dealer))


@bp.get("/dealer/stats/funnel")
@require_dealer("OWNER", "MANAGER")
def dealer_stats_funnel():
    days = parse_int(request.args.get("period"), 30) or 30
    return jsonify(svc.funnel_stats(db_session(), g.dealer, days))


@bp.get("/dealer/stats/traffic")
@require_dealer("OWNER", "MANAGER")
def dealer_stats_traffic():
    return jsonify(svc.traffic_stats(db_session(), g.dealer))


@bp.get("/dealer/stats/contacts")
@require_dealer("OWNER", "MANAGER")
def dealer_stats_contacts():
    days = parse_int(request.args.get("period"), 30) or 30
    return jsonify(svc.contact_stats(db_session(), g.dealer, days))


# ---------- Admin ----------
@bp.get("/admin/dealers")
@require_permission("dealers.manage")
def admin_dealers_list():
    s = db_session()
    page, limit = pagination_args()
    q = s.query(Dealer)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Dealer.status == status)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            Dealer.trade_name.ilike(like)
            | Dealer.business_name.ilike(like)
            | Dealer.email.ilike(like)
            | Dealer.rut.ilike(f"%{search.replace('.', '').replace('-', '')}%")
        )
    q = q.order_by(Dealer.created_at.desc(), Dealer.id.desc())
    rows, total, total_pages = paginate(q, page, limit)
    return jsonify(
        page_response(
            [svc.serialize_dealer(d, private=True) for d in rows],
            total,
            page,
            total_pages,
            counts=svc.dealer_counts_by_status(s),
        )
    )


@bp.get("/admin/dealers/<int:dealer_id>")
@require_permission("dealers.manage")
def admin_dealer_detail(dealer_id: int):
    s = db_session()
    dealer = svc.get_dealer(s, dealer_id)
    data = svc.serialize_dealer(dealer, private=True)
    data["members"] = [svc.serialize_member(u) for u in svc.list_team(s, dealer)]
    data["stats"] = svc.dealer_stats(s, dealer)["stats"]
    return jsonify(data)


@bp.patch("/admin/dealers/<int:dealer_id>")
@require_permission("dealers.manage")
def admin_dealer_status(dealer_id: int):
    s = db_session()
    payload = json_payload()
    status = (payload.get("status") or "").strip().upper()
    if not status:
        raise ValidationError("Estado requerido")
    dealer = svc.get_dealer(s, dealer_id)
    message = svc.set_dealer_status(s, dealer, status, g.current_user, payload.get("reason"))
    s.commit()
    return jsonify({"success": True, "message": message, "dealer": svc.serialize_dealer(dealer, private=True)})
