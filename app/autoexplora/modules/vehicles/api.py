from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.autoexplora.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from app.autoexplora.db import db_session
from app.autoexplora.errors import ValidationError
from app.autoexplora.modules.vehicles import service as svc
from app.autoexplora.modules.vehicles.models import Vehicle
from app.autoexplora.rbac import require_dealer, require_login, require_permission
from app.autoexplora.storage import storage_from_config
from app.autoexplora.utils import json_payload, page_response, paginate, pagination_args, parse_bool, parse_int

bp = Blueprint("vehicles", __name__)


def _match_inventory(vehicle: Vehicle) -> None:
    """Notify matching CRM leads about a newly active dealer listing."""
    if not vehicle.dealer_id or vehicle.status != "ACTIVE":
        return
    from app.autoexplora.modules.crm.matcher import notify_matching_leads

    s = db_session()
    matched = notify_matching_leads(s, vehicle)
    s.commit()
    if matched:
        current_app.logger.info("Inventory match: vehicle=%s leads=%s", vehicle.id, matched)


# ---------- Public ----------
@bp.get("/vehicles")
def vehicles_search():
    s = db_session()
    page, limit = pagination_args(default_limit=DEFAULT_PAGE_SIZE, max_limit=MAX_PAGE_SIZE)
    rows, total, total_pages = paginate(svc.search_vehicles(s, request.args), page, limit)
    return jsonify(page_response([svc.serialize_vehicle_card(v) for v in rows], total, page, total_pages))


@bp.get("/vehicles/recent")
def vehicles_recent():
    s = db_session()
    limit = min(parse_int(request.args.get("limit"), 8) or 8, MAX_PAGE_SIZE)
    return jsonify({"items": [svc.serialize_vehicle_card(v) for v in svc.recent_vehicles(s, limit)]})


@bp.get("/vehicles/<key>")
def vehicles_detail(key: str):
    s = db_session()
    v = svc.get_public_vehicle(s, key)
    if v.status == "ACTIVE":
        svc.increment_counter(s, v.id, "view")
        s.commit()
        s.refresh(v)
    data = svc.serialize_vehicle(v)
    data["related"] = [svc.serialize_vehicle_card(r) for r in svc.related_vehicles(s, v)]
    return jsonify(data)


# ---------- Owner ----------
@bp.post("/vehicles")
@require_login
def vehicles_create():
    s = db_session()
    v = svc.create_vehicle(s, g.current_user, json_payload())
    s.commit()
    _match_inventory(v)
    return jsonify(svc.serialize_vehicle(v, private=True)), 201


@bp.get("/me/vehicles")
@require_login
def my_vehicles():
    s = db_session()
    page, limit = pagination_args()
    q = s.query(Vehicle).filter(Vehicle.user_id == g.current_user.id)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Vehicle.status == status)
    rows, total, total_pages = paginate(q.order_by(Vehicle.created_at.desc()), page, limit)
    return jsonify(page_response([svc.serialize_vehicle(v, private=True) for v in rows], total, page, total_pages))


@bp.get("/me/vehicles/<int:vehicle_id>")
@require_login
def my_vehicle_detail(vehicle_id: int):
    v = svc.get_managed_vehicle(db_session(), vehicle_id, g.current_user)
    return jsonify(svc.serialize_vehicle(v, private=True))


@bp.patch("/vehicles/<int:vehicle_id>")
@require_login
def vehicles_update(vehicle_id: int):
    s = db_session()
    v = svc.get_managed_vehicle(s, vehicle_id, g.current_user)
    svc.update_vehicle(s, v, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_vehicle(v, private=True))


@bp.post("/vehicles/<int:vehicle_id>/status")
@require_login
def vehicles_status(vehicle_id: int):
    s = db_session()
    v = svc.get_managed_vehicle(s, vehicle_id, g.current_user)
    was_active = v.status == "ACTIVE"
    status = (json_payload().get("status") or "").strip().upper()
    svc.change_status(s, v, status, g.current_user)
    s.commit()
    if not was_active:
        _match_inventory(v)
    return jsonify(svc.serialize_vehicle(v, private=True))


@bp.delete("/vehicles/<int:vehicle_id>")
@require_login
def vehicles_delete(vehicle_id: int):
    s = db_session()
    v = svc.get_managed_vehicle(s, vehicle_id, g.current_user)
    svc.delete_vehicle(s, v, g.current_user, storage_from_config(current_app.config))
    s.commit()
    return jsonify({"success": True})


@bp.post("/uploads/images")
@require_login
def upload_image():
    storage = storage_from_config(current_app.config)
    return jsonify(svc.store_vehicle_image(storage, request.files.get("file"), g.current_user)), 201


# ---------- Favorites ----------
@bp.get("/favorites")
@require_login
def favorites_list():
    favs = svc.list_favorites(db_session(), g.current_user)
    return jsonify({"items": [svc.serialize_vehicle_card(f.vehicle) | {"favorited_at": f.created_at.isoformat()} for f in favs]})


@bp.post("/favorites/<int:vehicle_id>")
@require_login
def favorites_add(vehicle_id: int):
    s = db_session()
    svc.add_favorite(s, g.current_user, vehicle_id)
    s.commit()
    return jsonify({"success": True, "favorited": True})


@bp.delete("/favorites/<int:vehicle_id>")
@require_login
def favorites_remove(vehicle_id: int):
    s = db_session()
    svc.remove_favorite(s, g.current_user, vehicle_id)
    s.commit()
    return jsonify({"success": True, "favorited": False})


# ---------- Dealer inventory ----------
@bp.get("/dealer/vehicles")
@require_dealer()
def dealer_inventory():
    s = db_session()
    page, limit = pagination_args()
    q = s.query(Vehicle).filter(Vehicle.dealer_id == g.dealer.id)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Vehicle.status == status)
    search = (request.args.get("q") or "").strip()
    if search:
        q = q.filter(Vehicle.title.ilike(f"%{search}%"))
    rows, total, total_pages = paginate(q.order_by(Vehicle.created_at.desc()), page, limit)
    return jsonify(page_response([svc.serialize_vehicle(v, private=True) for v in rows], total, page, total_pages))


# ---------- Admin ----------
@bp.get("/admin/vehicles")
@require_permission("vehicles.moderate")
def admin_vehicles_list():
    s = db_session()
    page, limit = pagination_args()
    q = s.query(Vehicle)
    status = (request.args.get("status") or "").strip().upper()
    if status:
        q = q.filter(Vehicle.status == status)
    dealer_id = parse_int(request.args.get("dealer_id"))
    if dealer_id:
        q = q.filter(Vehicle.dealer_id == dealer_id)
    featured = parse_bool(request.args.get("featured"))
    if featured is not None:
        q = q.filter(Vehicle.featured.is_(featured))
    search = (request.args.get("q") or "").strip()
    if search:
        q = q.filter(Vehicle.title.ilike(f"%{search}%"))
    rows, total, total_pages = paginate(q.order_by(Vehicle.created_at.desc()), page, limit)
    return jsonify(
        page_response(
            [svc.serialize_vehicle(v, private=True) for v in rows],
            total,
            page,
            total_pages,
            counts=svc.vehicle_counts_by_status(s),
        )
    )


@bp.get("/admin/vehicles/<int:vehicle_id>")
@require_permission("vehicles.moderate")
def admin_vehicle_detail(vehicle_id: int):
    return jsonify(svc.serialize_vehicle(svc.get_vehicle(db_session(), vehicle_id), private=True))


@bp.patch("/admin/vehicles/<int:vehicle_id>")
@require_permission("vehicles.moderate")
def admin_vehicle_update(vehicle_id: int):
    s = db_session()
    v = svc.get_vehicle(s, vehicle_id)
    payload = json_payload()
    if "status" not in payload and "featured" not in payload:
        raise ValidationError("Nada que actualizar")
    if "featured" in payload:
        v.featured = bool(parse_bool(payload.get("featured"), False))
    if payload.get("status") and payload["status"].upper() != v.status:
        svc.change_status(s, v, payload["status"].upper(), g.current_user, as_admin=True, reason=payload.get("reason"))
    s.commit()
    return jsonify(svc.serialize_vehicle(v, private=True))


@bp.delete("/admin/vehicles/<int:vehicle_id>")
@require_permission("vehicles.moderate")
def admin_vehicle_delete(vehicle_id: int):
    s = db_session()
    v = svc.get_vehicle(s, vehicle_id)
    svc.delete_vehicle(s, v, g.current_user, storage_from_config(current_app.config))
    s.commit()
    return jsonify({"success": True})
