from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func
from werkzeug.security import generate_password_hash

from app.autoexplora.audit import record_event
from app.autoexplora.constants import DEALER_ROLES, DEALER_STATUSES, DEALER_TRANSITIONS, DEALER_TYPES, LEAD_STATUSES
from app.autoexplora.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.autoexplora.models import AuthToken, User
from app.autoexplora.modules.dealers.models import Dealer
from app.autoexplora.modules.dealers.rut import clean_rut, format_rut, validate_rut
from app.autoexplora.security import new_token, validate_password
from app.autoexplora.utils import clean_str, iso, is_valid_email, parse_int, slugify, unique_slug

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

PHONE_CHARS_RE = re.compile(r"^[\d\s+()-]+$")
URL_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)

STATUS_MESSAGES = {
    "ACTIVE": "Automotora aprobada correctamente",
    "REJECTED": "Automotora rechazada",
    "SUSPENDED": "Automotora suspendida",
}


def serialize_dealer(d: Dealer, *, private: bool = False) -> dict:
    data = {
        "id": d.id,
        "slug": d.slug,
        "trade_name": d.trade_name,
        "type": d.type,
        "email": d.email,
        "phone": d.phone,
        "whatsapp": d.whatsapp,
        "website": d.website,
        "address": d.address,
        "region": {"id": d.region.id, "name": d.region.name, "slug": d.region.slug} if d.region else None,
        "comuna": {"id": d.comuna.id, "name": d.comuna.name} if d.comuna else None,
        "logo": d.logo,
        "banner": d.banner,
        "description": d.description,
        "schedule": d.schedule,
        "verified_at": iso(d.verified_at),
    }
    if private:
        data.update(
            {
                "business_name": d.business_name,
                "rut": format_rut(d.rut),
                "status": d.status,
                "rejection_reason": d.rejection_reason,
                "created_at": iso(d.created_at),
                "updated_at": iso(d.updated_at),
            }
        )
    return data


def serialize_member(u: User) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "image": u.image,
        "dealer_role": u.dealer_role,
        "created_at": iso(u.created_at),
    }


def get_dealer(s: "Session", dealer_id: int) -> Dealer:
    dealer = s.get(Dealer, dealer_id)
    if not dealer:
        raise NotFoundError("Automotora no encontrada")
    return dealer


# ---------- Registration ----------
def _length(errors: list[str], value: str | None, label: str, lo: int, hi: int) -> None:
    n = len(value or "")
    if n < lo:
        errors.append(f"{label} debe tener al menos {lo} caracteres")
    elif n > hi:
        errors.append(f"{label} no puede exceder {hi} caracteres")


def _validate_contact_fields(errors: list[str], payload: dict, *, partial: bool) -> None:
    if not partial or "email" in payload:
        if not is_valid_email(payload.get("email")):
            errors.append("Email inválido")
    if not partial or "phone" in payload:
        phone = clean_str(payload.get("phone")) or ""
        if len(phone) < 9:
            errors.append("El teléfono debe tener al menos 9 dígitos")
        elif not PHONE_CHARS_RE.match(phone):
            errors.append("Formato de teléfono inválido")
    whatsapp = clean_str(payload.get("whatsapp"))
    if whatsapp and not PHONE_CHARS_RE.match(whatsapp):
        errors.append("Formato de WhatsApp inválido")
    for field, label in (("website", "URL inválida"), ("logo", "URL de logo inválida"), ("banner", "URL de banner inválida")):
        value = clean_str(payload.get(field))
        if value and not (URL_RE.match(value) or value.startswith("/media/")):
            errors.append(label)
    if not partial or "address" in payload:
        _length(errors, clean_str(payload.get("address")), "La dirección", 5, 200)
    description = payload.get("description") or ""
    if len(description) > 2000:
        errors.append("La descripción no puede exceder 2000 caracteres")


def validate_registration_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if (payload.get("type") or "") not in DEALER_TYPES:
        errors.append("Tipo de automotora inválido")
    _length(errors, clean_str(payload.get("business_name")), "La razón social", 3, 100)
    _length(errors, clean_str(payload.get("trade_name")), "El nombre de fantasía", 2, 80)
    if not validate_rut(payload.get("rut")):
        errors.append("RUT inválido. Verifica el dígito verificador.")
    if not parse_int(payload.get("region_id")):
        errors.append("Selecciona una región")
    _validate_contact_fields(errors, payload, partial=False)
    _length(errors, clean_str(payload.get("user_name")), "El nombre", 2, 50)
    if not is_valid_email(payload.get("user_email")):
        errors.append("Email de usuario inválido")
    errors.extend(validate_password(payload.get("user_password")))
    confirm = payload.get("user_password_confirm")
    if confirm is not None and confirm != payload.get("user_password"):
        errors.append("Las contraseñas no coinciden")
    return errors


def generate_dealer_slug(s: "Session", trade_name: str) -> str:
    base = slugify(trade_name) or "automotora"
    return unique_slug(base, lambda c: s.query(Dealer.id).filter(Dealer.slug == c).first() is not None)


def _resolve_location(s: "Session", region_id, comuna_id):
    from app.autoexplora.modules.catalog.models import Comuna, Region

    region = s.get(Region, parse_int(region_id) or 0)
    if not region:
        raise ValidationError("Región no encontrada")
    comuna = None
    cid = parse_int(comuna_id)
    if cid:
        comuna = s.get(Comuna, cid)
        if not comuna or comuna.region_id != region.id:
            raise ValidationError("La comuna no pertenece a la región seleccionada")
    return region, comuna


def register_dealer(s: "Session", payload: dict) -> tuple[Dealer, User]:
    """
    Create a PENDING dealer and its OWNER user. Caller commits; both rows go in one transaction.
    """
    errors = validate_registration_payload(payload)
    if errors:
        raise ValidationError.from_errors(errors)

    rut = clean_rut(payload["rut"])
    if s.query(Dealer.id).filter(Dealer.rut == rut).first():
        raise ValidationError("Ya existe una automotora registrada con este RUT")
    user_email = payload["user_email"].strip().lower()
    if s.query(User.id).filter(User.email == user_email).first():
        raise ValidationError("Ya existe una cuenta con este email")

    region, comuna = _resolve_location(s, payload.get("region_id"), payload.get("comuna_id"))
    trade_name = clean_str(payload.get("trade_name")) or ""
    now = datetime.utcnow()
    dealer = Dealer(
        slug=generate_dealer_slug(s, trade_name),
        business_name=clean_str(payload.get("business_name")) or "",
        trade_name=trade_name,
        rut=rut,
        type=payload["type"],
        email=payload["email"].strip().lower(),
        phone=clean_str(payload.get("phone")) or "",
        whatsapp=clean_str(payload.get("whatsapp")),
        website=clean_str(payload.get("website")),
        address=clean_str(payload.get("address")) or "",
        region_id=region.id,
        comuna_id=comuna.id if comuna else None,
        logo=clean_str(payload.get("logo")),
        description=clean_str(payload.get("description")),
        status="PENDING",
        created_at=now,
        updated_at=now,
    )
    s.add(dealer)
    s.flush()

    user = User(
        email=user_email,
        name=clean_str(payload.get("user_name")),
        password_hash=generate_password_hash(payload["user_password"]),
        is_active=True,
        dealer_id=dealer.id,
        dealer_role="OWNER",
        created_at=now,
        updated_at=now,
    )
    s.add(user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="dealer.register",
        entity_type="Dealer",
        entity_id=str(dealer.id),
        metadata={"slug": dealer.slug, "trade_name": dealer.trade_name},
    )
    return dealer, user


# ---------- Status / profile ----------
def set_dealer_status(s: "Session", dealer: Dealer, status: str, actor: User, reason: str | None = None) -> str:
    """Apply an admin moderation transition; returns the user-facing message."""
    if status not in ("ACTIVE", "REJECTED", "SUSPENDED"):
        raise ValidationError("Estado inválido")
    if status not in DEALER_TRANSITIONS.get(dealer.status, ()):
        raise ValidationError(f"No se puede cambiar de {dealer.status} a {status}")
    old = dealer.status
    dealer.status = status
    if status == "ACTIVE":
        dealer.verified_at = datetime.utcnow()
        dealer.rejection_reason = None
    else:
        dealer.rejection_reason = clean_str(reason)
    dealer.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="dealer.status",
        entity_type="Dealer",
        entity_id=str(dealer.id),
        reason=clean_str(reason),
        metadata={"old": old, "new": status},
    )
    return STATUS_MESSAGES[status]


PROFILE_FIELDS = ("trade_name", "email", "phone", "whatsapp", "website", "address", "logo", "banner", "description")


def update_profile(s: "Session", dealer: Dealer, payload: dict, user: User) -> Dealer:
    errors: list[str] = []
    if "trade_name" in payload:
        _length(errors, clean_str(payload.get("trade_name")), "El nombre de fantasía", 2, 80)
    _validate_contact_fields(errors, payload, partial=True)
    schedule = payload.get("schedule")
    if schedule is not None and not isinstance(schedule, dict):
        errors.append("Horario inválido")
    if errors:
        raise ValidationError.from_errors(errors)

    changes: dict = {}
    for field in PROFILE_FIELDS:
        if field not in payload:
            continue
        new = clean_str(payload.get(field))
        if field == "email" and new:
            new = new.lower()
        if new != getattr(dealer, field):
            changes[field] = {"old": getattr(dealer, field), "new": new}
            setattr(dealer, field, new)
    if "region_id" in payload or "comuna_id" in payload:
        region, comuna = _resolve_location(
            s, payload.get("region_id", dealer.region_id), payload.get("comuna_id", dealer.comuna_id)
        )
        dealer.region = region
        dealer.comuna = comuna
    if schedule is not None:
        dealer.schedule = schedule
    dealer.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="dealer.profile_edit", entity_type="Dealer", entity_id=str(dealer.id), metadata={"changes": changes})
    return dealer


# ---------- Team ----------
def list_team(s: "Session", dealer: Dealer) -> list[User]:
    members = s.query(User).filter(User.dealer_id == dealer.id).all()
    order = {role: i for i, role in enumerate(DEALER_ROLES)}
    return sorted(members, key=lambda u: (order.get(u.dealer_role or "", 99), u.created_at))


def add_team_member(s: "Session", dealer: Dealer, payload: dict, actor: User) -> tuple[User, AuthToken | None]:
    """
    Attach an existing dealer-less account, or create a new one with a password-reset token
    so the invitee can choose a password. Returns (user, token or None).
    """
    email = (payload.get("email") or "").strip().lower()
    name = clean_str(payload.get("name"))
    role = payload.get("role") or ""
    errors: list[str] = []
    if not is_valid_email(email):
        errors.append("Email inválido")
    if not name or len(name) < 2:
        errors.append("El nombre debe tener al menos 2 caracteres")
    if role not in ("MANAGER", "SALES"):
        errors.append("Rol inválido")
    if errors:
        raise ValidationError.from_errors(errors)

    existing = s.query(User).filter(User.email == email).one_or_none()
    token: AuthToken | None = None
    if existing:
        if existing.dealer_id:
            raise ValidationError("Este correo ya está asociado a otra cuenta")
        existing.dealer = dealer
        existing.dealer_role = role
        member = existing
    else:
        member = User(email=email, name=name, password_hash=None, is_active=True, dealer_id=dealer.id, dealer_role=role)
        s.add(member)
        s.flush()
        token = AuthToken(
            user_id=member.id,
            purpose="reset_password",
            token=new_token(),
            expires_at=datetime.utcnow() + timedelta(days=7),
        )
        s.add(token)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="dealer.team_add",
        entity_type="User",
        entity_id=str(member.id),
        metadata={"dealer_id": dealer.id, "role": role, "new_account": token is not None},
    )
    return member, token


def _get_member(s: "Session", dealer: Dealer, user_id: int) -> User:
    member = s.get(User, user_id)
    if not member or member.dealer_id != dealer.id:
        raise NotFoundError("Usuario no encontrado en el equipo")
    return member


def update_member_role(s: "Session", dealer: Dealer, user_id: int, role: str, actor: User) -> User:
    if role not in ("MANAGER", "SALES"):
        raise ValidationError("Rol inválido")
    member = _get_member(s, dealer, user_id)
    if member.dealer_role == "OWNER":
        raise ForbiddenError("No se puede cambiar el rol del dueño")
    old = member.dealer_role
    member.dealer_role = role
    record_event(s, actor=actor, action="dealer.team_role", entity_type="User", entity_id=str(member.id), metadata={"old": old, "new": role})
    return member


def remove_member(s: "Session", dealer: Dealer, user_id: int, actor: User) -> None:
    member = _get_member(s, dealer, user_id)
    if member.dealer_role == "OWNER":
        raise ForbiddenError("No se puede eliminar al dueño de la automotora")
    member.dealer = None
    member.dealer_role = None
    record_event(s, actor=actor, action="dealer.team_remove", entity_type="User", entity_id=str(member.id), metadata={"dealer_id": dealer.id})


def dealer_managers(s: "Session", dealer_id: int) -> list[User]:
    """OWNER and MANAGER members; recipients of dealer-wide notifications."""
    return (
        s.query(User)
        .filter(User.dealer_id == dealer_id, User.dealer_role.in_(("OWNER", "MANAGER")), User.is_active.is_(True))
        .all()
    )


def dealer_owner(s: "Session", dealer_id: int) -> User | None:
    return s.query(User).filter(User.dealer_id == dealer_id, User.dealer_role == "OWNER").first()


# ---------- Public directory ----------
def list_public_dealers(
    s: "Session", *, region_id: int | None = None, dealer_type: str | None = None, search: str | None = None, sort: str = "recent"
):
    """Query of ACTIVE dealers with their ACTIVE listing count, as (Dealer, count) rows."""
    from app.autoexplora.modules.vehicles.models import Vehicle

    vehicle_count = (
        s.query(func.count(Vehicle.id))
        .filter(Vehicle.dealer_id == Dealer.id, Vehicle.status == "ACTIVE")
        .correlate(Dealer)
        .scalar_subquery()
    )
    q = s.query(Dealer, vehicle_count.label("vehicle_count")).filter(Dealer.status == "ACTIVE")
    if region_id:
        q = q.filter(Dealer.region_id == region_id)
    if dealer_type and dealer_type in DEALER_TYPES:
        q = q.filter(Dealer.type == dealer_type)
    if search:
        q = q.filter(Dealer.trade_name.ilike(f"%{search}%"))
    if sort == "name":
        q = q.order_by(Dealer.trade_name.asc())
    elif sort == "vehicles":
        q = q.order_by(vehicle_count.desc(), Dealer.trade_name.asc())
    else:
        q = q.order_by(Dealer.verified_at.desc(), Dealer.id.desc())
    return q


def get_public_dealer(s: "Session", slug: str) -> Dealer:
    dealer = s.query(Dealer).filter(Dealer.slug == slug, Dealer.status == "ACTIVE").one_or_none()
    if not dealer:
        raise NotFoundError("Automotora no encontrada")
    return dealer


# ---------- Stats ----------
def dealer_stats(s: "Session", dealer: Dealer) -> dict:
    from app.autoexplora.modules.vehicles.models import Vehicle

    base = s.query(Vehicle).filter(Vehicle.dealer_id == dealer.id)
    total_views = s.query(func.coalesce(func.sum(Vehicle.views), 0)).filter(Vehicle.dealer_id == dealer.id).scalar()
    recent = base.order_by(Vehicle.created_at.desc()).limit(5).all()
    return {
        "stats": {
            "total_vehicles": base.count(),
            "active_vehicles": base.filter(Vehicle.status == "ACTIVE").count(),
            "sold_vehicles": base.filter(Vehicle.status == "SOLD").count(),
            "total_views": int(total_views or 0),
        },
        "recent_vehicles": [
            {"id": v.id, "title": v.title, "slug": v.slug, "status": v.status, "views": v.views, "created_at": iso(v.created_at)}
            for v in recent
        ],
    }


def _period_start(days: int) -> datetime:
    days = days if days in (7, 30, 90) else 30
    start = datetime.utcnow() - timedelta(days=days)
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


def funnel_stats(s: "Session", dealer: Dealer, days: int = 30) -> dict:
    """Leads created in the period, grouped by pipeline status, plus conversion rate."""
    from app.autoexplora.modules.crm.models import DealerLead

    start = _period_start(days)
    rows = (
        s.query(DealerLead.status, func.count(DealerLead.id))
        .filter(DealerLead.dealer_id == dealer.id, DealerLead.created_at >= start)
        .group_by(DealerLead.status)
        .all()
    )
    counts = {status: 0 for status in LEAD_STATUSES}
    counts.update({status: int(n) for status, n in rows})
    total = sum(counts.values())
    converted = counts["CONVERTED"]
    return {
        "period_days": days if days in (7, 30, 90) else 30,
        "total_leads": total,
        "by_status": counts,
        "conversion_rate": round(converted * 100 / total, 1) if total else 0,
    }


def traffic_stats(s: "Session", dealer: Dealer, limit: int = 10) -> dict:
    from app.autoexplora.modules.vehicles.models import Vehicle

    totals = (
        s.query(func.coalesce(func.sum(Vehicle.views), 0), func.coalesce(func.sum(Vehicle.contact_clicks), 0))
        .filter(Vehicle.dealer_id == dealer.id)
        .one()
    )
    top = (
        s.query(Vehicle)
        .filter(Vehicle.dealer_id == dealer.id)
        .order_by(Vehicle.views.desc(), Vehicle.id.desc())
        .limit(limit)
        .all()
    )
    views, clicks = int(totals[0] or 0), int(totals[1] or 0)
    return {
        "total_views": views,
        "total_contact_clicks": clicks,
        "contact_rate": round(clicks * 100 / views, 1) if views else 0,
        "top_vehicles": [
            {"id": v.id, "title": v.title, "slug": v.slug, "views": v.views, "contact_clicks": v.contact_clicks}
            for v in top
        ],
    }


def contact_stats(s: "Session", dealer: Dealer, days: int = 30) -> dict:
    from app.autoexplora.modules.crm.models import DealerLead

    start = _period_start(days)
    rows = (
        s.query(DealerLead.source, func.count(DealerLead.id))
        .filter(DealerLead.dealer_id == dealer.id, DealerLead.created_at >= start)
        .group_by(DealerLead.source)
        .all()
    )
    by_source = {source or "manual": int(n) for source, n in rows}
    return {"period_days": days if days in (7, 30, 90) else 30, "total": sum(by_source.values()), "by_source": by_source}


def dealer_counts_by_status(s: "Session") -> dict:
    rows = s.query(Dealer.status, func.count(Dealer.id)).group_by(Dealer.status).all()
    counts = {status: 0 for status in DEALER_STATUSES}
    counts.update({status: int(n) for status, n in rows})
    return counts
