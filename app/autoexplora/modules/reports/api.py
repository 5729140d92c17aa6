from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.autoexplora.db import db_session
from app.autoexplora.modules.reports import service as svc
from app.autoexplora.rbac import require_login, require_permission
from app.autoexplora.utils import json_payload, page_response, paginate, pagination_args

bp = Blueprint("reports", __name__)


@bp.post("/reports")
@require_login
def reports_create():
    s = db_session()
    report = svc.create_report(s, g.current_user, json_payload())
    s.commit()
    return jsonify({"success": True, "report_id": report.id}), 201


@bp.get("/admin/reports")
@require_permission("reports.manage")
def admin_reports_list():
    s = db_session()
    page, limit = pagination_args()
    q = svc.report_query(s, (request.args.get("status") or "").upper() or None, (request.args.get("reason") or "").upper() or None)
    rows, total, total_pages = paginate(q, page, limit)
    return jsonify(page_response([svc.serialize_report(r) for r in rows], total, page, total_pages))


@bp.get("/admin/reports/<int:report_id>")
@require_permission("reports.manage")
def admin_reports_detail(report_id: int):
    return jsonify(svc.serialize_report(svc.get_report(db_session(), report_id)))


@bp.patch("/admin/reports/<int:report_id>")
@require_permission("reports.manage")
def admin_reports_update(report_id: int):
    s = db_session()
    payload = json_payload()
    report = svc.update_report_status(s, svc.get_report(s, report_id), payload.get("status"), g.current_user, payload.get("resolution"))
    s.commit()
    return jsonify(svc.serialize_report(report))


@bp.delete("/admin/reports/<int:report_id>")
@require_permission("reports.manage")
def admin_reports_delete(report_id: int):
    s = db_session()
    svc.delete_report(s, svc.get_report(s, report_id), g.current_user)
    s.commit()
    return jsonify({"success": True})
