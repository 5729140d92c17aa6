from datetime import date, datetime, time, timedelta

from flask import Blueprint, flash, g, jsonify, render_template, request
from sqlalchemy import func, or_

from app.autoexplora.audit import record_event
from app.autoexplora.db import db_session
from app.autoexplora.errors import ForbiddenError, NotFoundError, ValidationError
from app.autoexplora.models import AuditEvent, Role, SiteSetting, User
from app.autoexplora.rbac import ROLE_NAMES, require_permission, user_has_permission
from app.autoexplora.utils import clean_str, is_valid_email, iso, json_payload, page_response, paginate, pagination_args

bp = Blueprint("admin", __name__)
api_bp = Blueprint("admin_api", __name__)

SITE_SETTING_KEYS = ("site_name", "contact_email", "maintenance_banner")
SITE_SETTING_DEFAULTS = {"site_name": "AutoExplora", "contact_email": "", "maintenance_banner": ""}


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def dashboard_stats(s) -> dict:
    from app.autoexplora.modules.crm.models import DealerLead
    from app.autoexplora.modules.dealers.service import dealer_counts_by_status
    from app.autoexplora.modules.reports.service import open_report_count
    from app.autoexplora.modules.vehicles.service import vehicle_counts_by_status

    since = datetime.utcnow() - timedelta(days=30)
    return {
        "users": {
            "total": s.query(func.count(User.id)).scalar() or 0,
            "banned": s.query(func.count(User.id)).filter(User.banned_at.is_not(None)).scalar() or 0,
            "new_last_30_days": s.query(func.count(User.id)).filter(User.created_at >= since).scalar() or 0,
        },
        "dealers": dealer_counts_by_status(s),
        "vehicles": vehicle_counts_by_status(s),
        "open_reports": open_report_count(s),
        "leads_last_30_days": s.query(func.count(DealerLead.id)).filter(DealerLead.created_at >= since).scalar() or 0,
    }


def get_site_settings(s) -> dict:
    values = dict(SITE_SETTING_DEFAULTS)
    for row in s.query(SiteSetting).filter(SiteSetting.key.in_(SITE_SETTING_KEYS)).all():
        values[row.key] = row.value or ""
    return values


def serialize_admin_user(u: User) -> dict:
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "phone": u.phone,
        "is_active": u.is_active,
        "is_banned": u.is_banned,
        "banned_at": iso(u.banned_at),
        "ban_reason": u.ban_reason,
        "email_verified": u.email_verified_at is not None,
        "roles": sorted(r.key for r in u.roles),
        "dealer": {"id": u.dealer.id, "trade_name": u.dealer.trade_name, "role": u.dealer_role} if u.dealer else None,
        "created_at": iso(u.created_at),
    }


def update_user(s, user: User, payload: dict, actor: User) -> User:
    """Ban/unban, activate/deactivate and platform role changes."""
    changes: dict = {}
    if "banned" in payload:
        banned = bool(payload.get("banned"))
        if banned and user.id == actor.id:
            raise ValidationError("No puedes suspender tu propia cuenta")
        if banned and not user.is_banned:
            reason = clean_str(payload.get("ban_reason"))
            if not reason:
                raise ValidationError("Debes indicar el motivo de la suspensión")
            user.banned_at = datetime.utcnow()
            user.ban_reason = reason
            changes["banned"] = {"old": False, "new": True, "reason": reason}
        elif not banned and user.is_banned:
            user.banned_at = None
            user.ban_reason = None
            changes["banned"] = {"old": True, "new": False}
    if "is_active" in payload:
        active = bool(payload.get("is_active"))
        if not active and user.id == actor.id:
            raise ValidationError("No puedes desactivar tu propia cuenta")
        if active != user.is_active:
            changes["is_active"] = {"old": user.is_active, "new": active}
            user.is_active = active
    if "role" in payload:
        if not user_has_permission(actor, "users.roles"):
            raise ForbiddenError("Solo los administradores pueden cambiar roles")
        role_key = (payload.get("role") or "none").lower()
        if role_key not in ("admin", "moderator", "none"):
            raise ValidationError("Rol inválido")
        if user.id == actor.id and role_key != "admin":
            raise ValidationError("No puedes quitarte tu propio rol de administrador")
        old_roles = sorted(r.key for r in user.roles)
        user.roles = [] if role_key == "none" else [_role(s, role_key)]
        changes["roles"] = {"old": old_roles, "new": [] if role_key == "none" else [role_key]}
    if changes:
        user.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="user.update",
            entity_type="User",
            entity_id=str(user.id),
            reason=user.ban_reason,
            metadata={"changes": changes},
        )
    return user


def _role(s, key: str) -> Role:
    role = s.query(Role).filter(Role.key == key).one_or_none()
    if role is None:
        role = Role(key=key, name=ROLE_NAMES.get(key, key))
        s.add(role)
        s.flush()
    return role


def audit_query(s, *, action: str = "", actor_email: str = "", entity_type: str = "", date_from: date | None = None, date_to: date | None = None):
    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))
    return q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())


# ---------- HTML ----------
@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    return render_template("admin/index.html", stats=dashboard_stats(s), settings=get_site_settings(s))


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """
    Minimal audit trail UI (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")
    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from debe tener formato AAAA-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to debe tener formato AAAA-MM-DD", "danger")

    events = audit_query(s, action=action, actor_email=actor_email, date_from=date_from, date_to=date_to).limit(200).all()
    return render_template("admin/audit.html", events=events, action=action, actor_email=actor_email)


# ---------- JSON API ----------
@api_bp.get("/dashboard")
@require_permission("admin.view")
def api_dashboard():
    return jsonify(dashboard_stats(db_session()))


@api_bp.get("/users")
@require_permission("users.view")
def api_users_list():
    s = db_session()
    page, limit = pagination_args()
    q = s.query(User)
    search = (request.args.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.email.ilike(like), User.name.ilike(like)))
    status = (request.args.get("status") or "").lower()
    if status == "banned":
        q = q.filter(User.banned_at.is_not(None))
    elif status == "inactive":
        q = q.filter(User.is_active.is_(False))
    role = (request.args.get("role") or "").lower()
    if role in ("admin", "moderator"):
        q = q.filter(User.roles.any(Role.key == role))
    rows, total, total_pages = paginate(q.order_by(User.created_at.desc(), User.id.desc()), page, limit)
    return jsonify(page_response([serialize_admin_user(u) for u in rows], total, page, total_pages))


@api_bp.get("/users/<int:user_id>")
@require_permission("users.view")
def api_users_detail(user_id: int):
    from app.autoexplora.modules.vehicles.models import Vehicle

    s = db_session()
    user = s.get(User, user_id)
    if not user:
        raise NotFoundError("Usuario no encontrado")
    data = serialize_admin_user(user)
    data["vehicle_count"] = s.query(func.count(Vehicle.id)).filter(Vehicle.user_id == user.id).scalar() or 0
    return jsonify(data)


@api_bp.patch("/users/<int:user_id>")
@require_permission("users.manage")
def api_users_update(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        raise NotFoundError("Usuario no encontrado")
    update_user(s, user, json_payload(), g.current_user)
    s.commit()
    return jsonify(serialize_admin_user(user))


@api_bp.get("/settings")
@require_permission("settings.manage")
def api_settings_get():
    return jsonify(get_site_settings(db_session()))


@api_bp.put("/settings")
@require_permission("settings.manage")
def api_settings_put():
    s = db_session()
    payload = json_payload()
    email = clean_str(payload.get("contact_email"))
    if email and not is_valid_email(email):
        raise ValidationError("Email de contacto inválido")
    changed: dict = {}
    for key in SITE_SETTING_KEYS:
        if key not in payload:
            continue
        value = clean_str(payload.get(key)) or ""
        row = s.get(SiteSetting, key)
        if row is None:
            row = SiteSetting(key=key)
            s.add(row)
        if row.value != value:
            changed[key] = {"old": row.value, "new": value}
        row.value = value
        row.updated_at = datetime.utcnow()
    if changed:
        record_event(s, actor=g.current_user, action="settings.update", entity_type="SiteSetting", metadata={"changes": changed})
    s.commit()
    return jsonify(get_site_settings(s))


@api_bp.get("/audit")
@require_permission("audit.view")
def api_audit_list():
    s = db_session()
    page, limit = pagination_args(default_limit=50, max_limit=200)
    q = audit_query(
        s,
        action=(request.args.get("action") or "").strip(),
        actor_email=(request.args.get("actor_email") or "").strip(),
        entity_type=(request.args.get("entity_type") or "").strip(),
        date_from=_parse_date(request.args.get("date_from") or ""),
        date_to=_parse_date(request.args.get("date_to") or ""),
    )
    rows, total, total_pages = paginate(q, page, limit)
    items = [
        {
            "id": e.id,
            "created_at": iso(e.created_at),
            "actor_email": e.actor_user_email,
            "action": e.action,
            "entity_type": e.entity_type,
            "entity_id": e.entity_id,
            "reason": e.reason,
            "metadata": e.metadata_json,
            "request_id": e.request_id,
        }
        for e in rows
    ]
    return jsonify(page_response(items, total, page, total_pages))
