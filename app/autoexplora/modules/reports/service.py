from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from app.autoexplora.audit import record_event
from app.autoexplora.constants import (
    MAX_REPORT_DESCRIPTION,
    OPEN_REPORT_STATUSES,
    REPORT_REASONS,
    REPORT_STATUSES,
    REPORT_TRANSITIONS,
)
from app.autoexplora.errors import NotFoundError, ValidationError
from app.autoexplora.modules.reports.models import Report
from app.autoexplora.utils import clean_str, iso, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.autoexplora.models import User


def _user(u: "User | None") -> dict | None:
    return {"id": u.id, "name": u.display_name, "email": u.email} if u else None


def serialize_report(r: Report) -> dict:
    v = r.vehicle
    return {
        "id": r.id,
        "vehicle": {"id": v.id, "slug": v.slug, "title": v.title, "status": v.status},
        "reporter": _user(r.reporter),
        "reason": r.reason,
        "description": r.description,
        "status": r.status,
        "resolution": r.resolution,
        "resolved_by": _user(r.resolved_by),
        "resolved_at": iso(r.resolved_at),
        "created_at": iso(r.created_at),
    }


def create_report(s: "Session", user: "User", payload: dict) -> Report:
    from app.autoexplora.modules.vehicles.models import Vehicle

    vehicle_id = parse_int(payload.get("vehicle_id"))
    if not vehicle_id:
        raise ValidationError("ID de vehículo requerido")
    reason = (payload.get("reason") or "").upper()
    if reason not in REPORT_REASONS:
        raise ValidationError("Razón inválida")
    description = clean_str(payload.get("description"))
    if description and len(description) > MAX_REPORT_DESCRIPTION:
        raise ValidationError(f"La descripción no puede exceder {MAX_REPORT_DESCRIPTION} caracteres")

    vehicle = s.get(Vehicle, vehicle_id)
    if not vehicle:
        raise NotFoundError("Vehículo no encontrado")
    if vehicle.user_id == user.id:
        raise ValidationError("No puedes reportar tu propio vehículo")
    existing = (
        s.query(Report.id)
        .filter(Report.vehicle_id == vehicle.id, Report.reporter_id == user.id, Report.status.in_(OPEN_REPORT_STATUSES))
        .first()
    )
    if existing:
        raise ValidationError("Ya has reportado este vehículo")

    report = Report(vehicle_id=vehicle.id, reporter_id=user.id, reason=reason, description=description, status="PENDING")
    s.add(report)
    s.flush()
    return report


def report_query(s: "Session", status: str | None = None, reason: str | None = None):
    q = s.query(Report)
    if status in REPORT_STATUSES:
        q = q.filter(Report.status == status)
    if reason in REPORT_REASONS:
        q = q.filter(Report.reason == reason)
    return q.order_by(Report.created_at.desc(), Report.id.desc())


def get_report(s: "Session", report_id: int) -> Report:
    r = s.get(Report, report_id)
    if not r:
        raise NotFoundError("Reporte no encontrado")
    return r


def update_report_status(s: "Session", r: Report, status: str | None, actor: "User", resolution: str | None = None) -> Report:
    status = (status or "").upper()
    if status not in REPORT_STATUSES:
        raise ValidationError("Estado inválido")
    if status not in REPORT_TRANSITIONS.get(r.status, ()):
        raise ValidationError(f"No se puede cambiar de {r.status} a {status}")
    old = r.status
    r.status = status
    if status in ("RESOLVED", "DISMISSED"):
        r.resolved_by = actor
        r.resolved_at = datetime.utcnow()
        if clean_str(resolution):
            r.resolution = clean_str(resolution)
    r.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="report.status",
        entity_type="Report",
        entity_id=str(r.id),
        reason=r.resolution,
        metadata={"old": old, "new": status},
    )
    return r


def delete_report(s: "Session", r: Report, actor: "User") -> None:
    record_event(s, actor=actor, action="report.delete", entity_type="Report", entity_id=str(r.id))
    s.delete(r)


def open_report_count(s: "Session") -> int:
    return s.query(Report).filter(Report.status.in_(OPEN_REPORT_STATUSES)).count()
