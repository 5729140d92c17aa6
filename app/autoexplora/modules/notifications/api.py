from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.autoexplora.db import db_session
from app.autoexplora.modules.notifications import service as svc
from app.autoexplora.rbac import require_login
from app.autoexplora.utils import page_response, paginate, pagination_args, parse_bool

bp = Blueprint("notifications", __name__)


@bp.get("/notifications")
@require_login
def notifications_list():
    s = db_session()
    page, limit = pagination_args()
    unread_only = bool(parse_bool(request.args.get("unread"), False))
    rows, total, total_pages = paginate(svc.list_notifications(s, g.current_user.id, unread_only=unread_only), page, limit)
    return jsonify(
        page_response(
            [svc.serialize_notification(n) for n in rows],
            total,
            page,
            total_pages,
            unread_count=svc.unread_count(s, g.current_user.id),
        )
    )


@bp.get("/notifications/unread-count")
@require_login
def notifications_unread_count():
    return jsonify({"count": svc.unread_count(db_session(), g.current_user.id)})


@bp.post("/notifications/<int:notification_id>/read")
@require_login
def notifications_mark_read(notification_id: int):
    s = db_session()
    n = svc.mark_read(s, g.current_user.id, notification_id)
    s.commit()
    return jsonify(svc.serialize_notification(n))


@bp.post("/notifications/read-all")
@require_login
def notifications_mark_all_read():
    s = db_session()
    updated = svc.mark_all_read(s, g.current_user.id)
    s.commit()
    return jsonify({"success": True, "updated": updated})


@bp.delete("/notifications/<int:notification_id>")
@require_login
def notifications_delete(notification_id: int):
    s = db_session()
    svc.delete_notification(s, g.current_user.id, notification_id)
    s.commit()
    return jsonify({"success": True})
