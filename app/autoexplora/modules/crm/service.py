from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import or_

from app.autoexplora.audit import record_event
from app.autoexplora.constants import (
    CONDITIONS,
    CONTACT_ACTIVITY_TYPES,
    LEAD_SOURCES,
    LEAD_STATUSES,
    LEAD_TRANSITIONS,
    OPPORTUNITY_STATUSES,
    TASK_PRIORITIES,
    TEMPLATE_CHANNELS,
    TEST_DRIVE_STATUSES,
    USER_ACTIVITY_TYPES,
    VEHICLE_TYPES,
)
from app.autoexplora.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.autoexplora.models import User
from app.autoexplora.modules.crm import templating
from app.autoexplora.modules.crm.models import (
    AutoResponseConfig,
    DealerLead,
    LeadActivity,
    LeadPreferences,
    LeadTask,
    MessageTemplate,
    Opportunity,
    TestDrive,
)
from app.autoexplora.modules.notifications import service as notifications
from app.autoexplora.utils import clean_str, iso, is_valid_email, money, parse_datetime, parse_decimal, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.autoexplora.modules.dealers.models import Dealer

DUPLICATE_WINDOW_DAYS = 30


# ---------- Serialization ----------
def _user_ref(u: User | None) -> dict | None:
    return {"id": u.id, "name": u.display_name, "email": u.email} if u else None


def serialize_lead(lead: DealerLead, *, detail: bool = False) -> dict:
    v = lead.vehicle
    data = {
        "id": lead.id,
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "message": lead.message,
        "source": lead.source,
        "status": lead.status,
        "assigned_to": _user_ref(lead.assigned_to),
        "vehicle": {"id": v.id, "title": v.title, "slug": v.slug, "price": money(v.price)} if v else None,
        "conversation_id": lead.conversation_id,
        "estimated_value": money(lead.estimated_value),
        "last_contact_at": iso(lead.last_contact_at),
        "next_follow_up": iso(lead.next_follow_up),
        "responded_at": iso(lead.responded_at),
        "created_at": iso(lead.created_at),
        "updated_at": iso(lead.updated_at),
    }
    if detail:
        data["notes"] = lead.notes
        data["preferences"] = serialize_preferences(lead.preferences) if lead.preferences else None
        data["activities"] = [serialize_activity(a) for a in lead.activities[:20]]
    return data


def serialize_preferences(p: LeadPreferences) -> dict:
    return {
        "brand_ids": list(p.brand_ids or []),
        "model_ids": list(p.model_ids or []),
        "min_price": money(p.min_price),
        "max_price": money(p.max_price),
        "min_year": p.min_year,
        "max_year": p.max_year,
        "vehicle_type": p.vehicle_type,
        "condition": p.condition,
        "updated_at": iso(p.updated_at),
    }


def serialize_activity(a: LeadActivity) -> dict:
    return {
        "id": a.id,
        "type": a.type,
        "content": a.content,
        "metadata": a.metadata_json,
        "user": _user_ref(a.user),
        "created_at": iso(a.created_at),
    }


def serialize_task(t: LeadTask) -> dict:
    return {
        "id": t.id,
        "lead": {"id": t.lead.id, "name": t.lead.name},
        "title": t.title,
        "description": t.description,
        "assigned_to": _user_ref(t.assigned_to),
        "due_at": iso(t.due_at),
        "priority": t.priority,
        "completed_at": iso(t.completed_at),
        "is_overdue": t.completed_at is None and t.due_at < datetime.utcnow(),
        "created_at": iso(t.created_at),
    }


def serialize_opportunity(o: Opportunity) -> dict:
    v = o.vehicle
    return {
        "id": o.id,
        "lead": {"id": o.lead.id, "name": o.lead.name, "status": o.lead.status},
        "vehicle": {"id": v.id, "title": v.title, "slug": v.slug} if v else None,
        "estimated_value": money(o.estimated_value),
        "probability": o.probability,
        "expected_close_date": iso(o.expected_close_date),
        "status": o.status,
        "notes": o.notes,
        "closed_at": iso(o.closed_at),
        "created_at": iso(o.created_at),
    }


def serialize_test_drive(td: TestDrive) -> dict:
    return {
        "id": td.id,
        "lead": {"id": td.lead.id, "name": td.lead.name, "phone": td.lead.phone},
        "vehicle": {"id": td.vehicle.id, "title": td.vehicle.title, "slug": td.vehicle.slug},
        "scheduled_at": iso(td.scheduled_at),
        "duration": td.duration,
        "status": td.status,
        "notes": td.notes,
        "created_at": iso(td.created_at),
    }


def serialize_template(t: MessageTemplate) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "channel": t.channel,
        "subject": t.subject,
        "content": t.content,
        "is_active": t.is_active,
        "variables": templating.extract_variables(t.content),
        "created_at": iso(t.created_at),
        "updated_at": iso(t.updated_at),
    }


def serialize_auto_response(c: AutoResponseConfig | None) -> dict:
    if c is None:
        return {"enabled": False, "email_template_id": None, "delay_minutes": 0}
    return {"enabled": c.enabled, "email_template_id": c.email_template_id, "delay_minutes": c.delay_minutes}


# ---------- Helpers ----------
def get_lead(s: "Session", dealer: "Dealer", lead_id: int) -> DealerLead:
    lead = s.get(DealerLead, lead_id)
    if not lead or lead.dealer_id != dealer.id:
        raise NotFoundError("Lead no encontrado")
    return lead


def team_member(s: "Session", dealer_id: int, user_id) -> User:
    member = s.get(User, parse_int(user_id) or 0)
    if not member or member.dealer_id != dealer_id:
        raise ValidationError("Usuario no encontrado en el equipo")
    return member


def dealer_vehicle(s: "Session", dealer_id: int, vehicle_id):
    from app.autoexplora.modules.vehicles.models import Vehicle

    v = s.get(Vehicle, parse_int(vehicle_id) or 0)
    if not v or v.dealer_id != dealer_id:
        raise NotFoundError("Vehículo no encontrado")
    return v


def log_activity(s: "Session", lead: DealerLead, user: User | None, type: str, content: str, metadata: dict | None = None) -> LeadActivity:
    activity = LeadActivity(lead_id=lead.id, user_id=user.id if user else None, type=type, content=content, metadata_json=metadata)
    s.add(activity)
    return activity


def _touch(lead: DealerLead) -> None:
    lead.updated_at = datetime.utcnow()


def is_duplicate_lead(s: "Session", dealer_id: int, email: str, phone: str | None, exclude_id: int | None = None) -> bool:
    """Same e-mail or phone for this dealer within the last 30 days."""
    since = datetime.utcnow() - timedelta(days=DUPLICATE_WINDOW_DAYS)
    conds = [DealerLead.email == email]
    if phone:
        conds.append(DealerLead.phone == phone)
    q = s.query(DealerLead.id).filter(DealerLead.dealer_id == dealer_id, DealerLead.created_at >= since, or_(*conds))
    if exclude_id:
        q = q.filter(DealerLead.id != exclude_id)
    return q.first() is not None


# ---------- Lead creation ----------
def _notify_dealer_of_lead(s: "Session", lead: DealerLead) -> list[User]:
    from app.autoexplora.modules.dealers.service import dealer_managers

    recipients = dealer_managers(s, lead.dealer_id)
    notifications.notify_new_lead(
        s, [u.id for u in recipients], lead.name, lead.vehicle.title if lead.vehicle else None, lead.id
    )
    return recipients


def capture_public_lead(s: "Session", payload: dict, *, source: str = "marketplace") -> tuple[DealerLead, list[User]]:
    """
    Contact-form lead. Returns the lead and the OWNER/MANAGER users notified. Caller commits.
    """
    from app.autoexplora.modules.dealers.models import Dealer

    dealer_id = parse_int(payload.get("dealer_id"))
    name = clean_str(payload.get("name"))
    email = (clean_str(payload.get("email")) or "").lower()
    message = clean_str(payload.get("message"))
    if not dealer_id or not name or not email or not message:
        raise ValidationError("Faltan campos requeridos (dealer_id, name, email, message)")
    if not is_valid_email(email):
        raise ValidationError("Email inválido")
    if len(message) > 2000:
        raise ValidationError("El mensaje no puede exceder 2000 caracteres")

    dealer = s.get(Dealer, dealer_id)
    if not dealer or dealer.status != "ACTIVE":
        raise NotFoundError("Dealer no encontrado")
    vehicle = dealer_vehicle(s, dealer.id, payload.get("vehicle_id")) if payload.get("vehicle_id") else None

    lead = DealerLead(
        dealer_id=dealer.id,
        vehicle_id=vehicle.id if vehicle else None,
        name=name,
        email=email,
        phone=clean_str(payload.get("phone")),
        message=message,
        source=source if source in LEAD_SOURCES else "marketplace",
        status="NEW",
    )
    s.add(lead)
    s.flush()
    s.refresh(lead, attribute_names=["vehicle", "dealer"])
    recipients = _notify_dealer_of_lead(s, lead)
    return lead, recipients


def create_manual_lead(s: "Session", dealer: "Dealer", payload: dict, user: User) -> DealerLead:
    name = clean_str(payload.get("name"))
    email = (clean_str(payload.get("email")) or "").lower()
    if not name or not is_valid_email(email):
        raise ValidationError("Nombre y email válidos son requeridos")
    vehicle = dealer_vehicle(s, dealer.id, payload.get("vehicle_id")) if payload.get("vehicle_id") else None
    lead = DealerLead(
        dealer_id=dealer.id,
        vehicle_id=vehicle.id if vehicle else None,
        name=name,
        email=email,
        phone=clean_str(payload.get("phone")),
        message=clean_str(payload.get("message")),
        notes=clean_str(payload.get("notes")),
        estimated_value=parse_decimal(payload.get("estimated_value")),
        source="manual",
        status="NEW",
    )
    s.add(lead)
    s.flush()
    record_event(s, actor=user, action="lead.create", entity_type="DealerLead", entity_id=str(lead.id), metadata={"source": "manual"})
    return lead


def create_lead_from_conversation(s: "Session", dealer: "Dealer", conversation_id, user: User) -> tuple[DealerLead, bool]:
    """Returns (lead, is_duplicate). One lead per conversation (409 otherwise)."""
    from app.autoexplora.modules.messaging.models import Conversation, Message

    conv = s.get(Conversation, parse_int(conversation_id) or 0)
    if not conv:
        raise NotFoundError("Conversación no encontrada")
    if conv.vehicle.dealer_id != dealer.id:
        raise ForbiddenError("No autorizado para esta conversación")
    existing = (
        s.query(DealerLead)
        .filter(DealerLead.conversation_id == conv.id, DealerLead.dealer_id == dealer.id)
        .first()
    )
    if existing:
        raise ConflictError("Ya existe un lead para esta conversación", details=[f"lead_id={existing.id}"])

    buyer = conv.buyer
    duplicate = is_duplicate_lead(s, dealer.id, buyer.email, buyer.phone)
    first = (
        s.query(Message)
        .filter(Message.conversation_id == conv.id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .first()
    )
    lead = DealerLead(
        dealer_id=dealer.id,
        vehicle_id=conv.vehicle_id,
        conversation_id=conv.id,
        name=buyer.name or "Usuario",
        email=buyer.email,
        phone=buyer.phone,
        message=first.content if first else "Consulta desde chat",
        source="conversation",
        status="NEW",
    )
    s.add(lead)
    s.flush()
    log_activity(
        s,
        lead,
        user,
        "NOTE",
        "Lead creado desde conversación",
        {"conversation_id": conv.id, "is_duplicate": duplicate},
    )
    record_event(s, actor=user, action="lead.create", entity_type="DealerLead", entity_id=str(lead.id), metadata={"source": "conversation"})
    return lead, duplicate


# ---------- Listing / update ----------
def lead_query(s: "Session", dealer: "Dealer", user: User, *, status: str | None = None, assigned_to: str | None = None, search: str | None = None, source: str | None = None):
    q = s.query(DealerLead).filter(DealerLead.dealer_id == dealer.id)
    if status and status in LEAD_STATUSES:
        q = q.filter(DealerLead.status == status)
    if source and source in LEAD_SOURCES:
        q = q.filter(DealerLead.source == source)
    if assigned_to == "me":
        q = q.filter(DealerLead.assigned_to_id == user.id)
    elif assigned_to == "unassigned":
        q = q.filter(DealerLead.assigned_to_id.is_(None))
    elif assigned_to and parse_int(assigned_to):
        q = q.filter(DealerLead.assigned_to_id == parse_int(assigned_to))
    if search:
        like = f"%{search}%"
        q = q.filter(or_(DealerLead.name.ilike(like), DealerLead.email.ilike(like), DealerLead.phone.ilike(like)))
    return q.order_by(DealerLead.created_at.desc(), DealerLead.id.desc())


def lead_status_counts(s: "Session", dealer: "Dealer") -> dict:
    from sqlalchemy import func

    rows = (
        s.query(DealerLead.status, func.count(DealerLead.id))
        .filter(DealerLead.dealer_id == dealer.id)
        .group_by(DealerLead.status)
        .all()
    )
    counts = {status: 0 for status in LEAD_STATUSES}
    counts.update({status: int(n) for status, n in rows})
    return counts


def change_lead_status(s: "Session", lead: DealerLead, new_status: str, user: User | None) -> None:
    if new_status not in LEAD_STATUSES:
        raise ValidationError("Estado inválido")
    if new_status == lead.status:
        return
    if new_status not in LEAD_TRANSITIONS.get(lead.status, ()):
        raise ValidationError(f"No se puede cambiar de {lead.status} a {new_status}")
    _set_status(s, lead, new_status, user)


def _set_status(s: "Session", lead: DealerLead, new_status: str, user: User | None) -> None:
    old = lead.status
    lead.status = new_status
    if new_status == "CONTACTED" and old == "NEW":
        lead.last_contact_at = datetime.utcnow()
    log_activity(
        s,
        lead,
        user,
        "STATUS_CHANGE",
        f"Estado cambiado de {old} a {new_status}",
        {"old_status": old, "new_status": new_status},
    )
    _touch(lead)


def update_lead(s: "Session", lead: DealerLead, payload: dict, user: User) -> User | None:
    """
    Apply status, assignment, notes and value changes. next_follow_up is derived from the pending tasks.
    Returns the newly assigned user when someone other than `user` was assigned (caller e-mails them).
    """
    if payload.get("status"):
        change_lead_status(s, lead, payload["status"], user)

    notify: User | None = None
    if "assigned_to_id" in payload:
        new_id = parse_int(payload.get("assigned_to_id"))
        if new_id != lead.assigned_to_id:
            old_id = lead.assigned_to_id
            if new_id:
                assignee = team_member(s, lead.dealer_id, new_id)
                lead.assigned_to_id = assignee.id
                lead.assigned_to = assignee
                log_activity(
                    s,
                    lead,
                    user,
                    "ASSIGNMENT",
                    f"Lead asignado a {assignee.display_name}",
                    {"old_assignee_id": old_id, "new_assignee_id": assignee.id, "assigned_to_name": assignee.display_name},
                )
                if assignee.id != user.id:
                    notifications.notify_lead_assigned(s, assignee.id, lead.name, user.display_name, lead.id)
                    notify = assignee
            else:
                lead.assigned_to_id = None
                lead.assigned_to = None
                log_activity(
                    s,
                    lead,
                    user,
                    "ASSIGNMENT",
                    "Lead sin asignar",
                    {"old_assignee_id": old_id, "new_assignee_id": None, "assigned_to_name": "Sin asignar"},
                )
    if "notes" in payload:
        lead.notes = clean_str(payload.get("notes"))
    if "estimated_value" in payload:
        lead.estimated_value = parse_decimal(payload.get("estimated_value"))
    _touch(lead)
    return notify


def delete_lead(s: "Session", lead: DealerLead, user: User) -> None:
    record_event(s, actor=user, action="lead.delete", entity_type="DealerLead", entity_id=str(lead.id), metadata={"name": lead.name})
    s.delete(lead)


# ---------- Preferences ----------
def _id_list(value) -> list[int]:
    if value in (None, ""):
        return []
    if not isinstance(value, list):
        raise ValidationError("Se esperaba una lista de ids")
    ids = [parse_int(v) for v in value]
    if any(i is None for i in ids):
        raise ValidationError("Lista de ids inválida")
    return list(dict.fromkeys(ids))


def upsert_preferences(s: "Session", lead: DealerLead, payload: dict) -> LeadPreferences:
    """Replace the lead's preferences with `payload`. Repeating the same payload yields the same state."""
    min_price, max_price = parse_decimal(payload.get("min_price")), parse_decimal(payload.get("max_price"))
    min_year, max_year = parse_int(payload.get("min_year")), parse_int(payload.get("max_year"))
    if min_price is not None and max_price is not None and min_price > max_price:
        raise ValidationError("El precio mínimo no puede ser mayor al máximo")
    if min_year is not None and max_year is not None and min_year > max_year:
        raise ValidationError("El año mínimo no puede ser mayor al máximo")
    vehicle_type = clean_str(payload.get("vehicle_type"))
    if vehicle_type and vehicle_type not in VEHICLE_TYPES:
        raise ValidationError("Tipo de vehículo inválido")
    condition = clean_str(payload.get("condition"))
    if condition and condition not in CONDITIONS:
        raise ValidationError("Condición inválida")

    prefs = lead.preferences
    if prefs is None:
        prefs = LeadPreferences(lead_id=lead.id)
        lead.preferences = prefs
    prefs.brand_ids = _id_list(payload.get("brand_ids"))
    prefs.model_ids = _id_list(payload.get("model_ids"))
    prefs.min_price, prefs.max_price = min_price, max_price
    prefs.min_year, prefs.max_year = min_year, max_year
    prefs.vehicle_type = vehicle_type
    prefs.condition = condition
    prefs.updated_at = datetime.utcnow()
    return prefs


# ---------- Activities ----------
def add_activity(s: "Session", lead: DealerLead, payload: dict, user: User) -> LeadActivity:
    type_ = (payload.get("type") or "").upper()
    content = clean_str(payload.get("content"))
    if type_ not in USER_ACTIVITY_TYPES:
        raise ValidationError("Tipo de actividad inválido")
    if not content:
        raise ValidationError("El contenido es requerido")
    metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None
    activity = log_activity(s, lead, user, type_, content, metadata)
    if type_ in CONTACT_ACTIVITY_TYPES:
        lead.last_contact_at = datetime.utcnow()
    _touch(lead)
    s.flush()
    return activity


# ---------- Tasks ----------
def refresh_next_follow_up(s: "Session", lead: DealerLead) -> None:
    s.flush()
    nxt = (
        s.query(LeadTask.due_at)
        .filter(LeadTask.lead_id == lead.id, LeadTask.completed_at.is_(None))
        .order_by(LeadTask.due_at.asc())
        .first()
    )
    lead.next_follow_up = nxt[0] if nxt else None


def lead_tasks(s: "Session", lead: DealerLead) -> list[LeadTask]:
    # pending first, then by due date
    return (
        s.query(LeadTask)
        .filter(LeadTask.lead_id == lead.id)
        .order_by(LeadTask.completed_at.is_not(None), LeadTask.due_at.asc())
        .all()
    )


def create_task(s: "Session", lead: DealerLead, payload: dict, user: User) -> LeadTask:
    title = clean_str(payload.get("title"))
    due_at = parse_datetime(payload.get("due_at"))
    if not title or not payload.get("assigned_to_id") or not due_at:
        raise ValidationError("Título, asignado y fecha son requeridos")
    assignee = team_member(s, lead.dealer_id, payload.get("assigned_to_id"))
    priority = (payload.get("priority") or "MEDIUM").upper()
    if priority not in TASK_PRIORITIES:
        raise ValidationError("Prioridad inválida")
    task = LeadTask(
        lead_id=lead.id,
        assigned_to_id=assignee.id,
        created_by_id=user.id,
        title=title[:200],
        description=clean_str(payload.get("description")),
        due_at=due_at,
        priority=priority,
    )
    s.add(task)
    refresh_next_follow_up(s, lead)
    return task


def get_task(s: "Session", lead: DealerLead, task_id: int) -> LeadTask:
    task = s.get(LeadTask, task_id)
    if not task or task.lead_id != lead.id:
        raise NotFoundError("Tarea no encontrada")
    return task


def update_task(s: "Session", task: LeadTask, payload: dict) -> LeadTask:
    if "title" in payload:
        title = clean_str(payload.get("title"))
        if not title:
            raise ValidationError("El título es requerido")
        task.title = title[:200]
    if "description" in payload:
        task.description = clean_str(payload.get("description"))
    if "assigned_to_id" in payload:
        task.assigned_to = team_member(s, task.lead.dealer_id, payload.get("assigned_to_id"))
    if "due_at" in payload:
        due_at = parse_datetime(payload.get("due_at"))
        if not due_at:
            raise ValidationError("Fecha inválida")
        if due_at != task.due_at:
            task.notified_at = None
        task.due_at = due_at
    if "priority" in payload:
        priority = (payload.get("priority") or "").upper()
        if priority not in TASK_PRIORITIES:
            raise ValidationError("Prioridad inválida")
        task.priority = priority
    if "completed" in payload or "completed_at" in payload:
        done = payload.get("completed", payload.get("completed_at"))
        task.completed_at = (parse_datetime(done) or datetime.utcnow()) if done else None
    task.updated_at = datetime.utcnow()
    refresh_next_follow_up(s, task.lead)
    return task


def complete_task(s: "Session", task: LeadTask) -> LeadTask:
    if task.completed_at is None:
        task.completed_at = datetime.utcnow()
        task.updated_at = task.completed_at
    refresh_next_follow_up(s, task.lead)
    return task


def delete_task(s: "Session", task: LeadTask) -> None:
    lead = task.lead
    s.delete(task)
    refresh_next_follow_up(s, lead)


def dealer_tasks(s: "Session", dealer: "Dealer", user: User, *, scope: str = "mine", state: str = "pending"):
    q = s.query(LeadTask).join(DealerLead, LeadTask.lead_id == DealerLead.id).filter(DealerLead.dealer_id == dealer.id)
    if scope != "all" or user.dealer_role == "SALES":
        q = q.filter(LeadTask.assigned_to_id == user.id)
    now = datetime.utcnow()
    if state == "pending":
        q = q.filter(LeadTask.completed_at.is_(None))
    elif state == "overdue":
        q = q.filter(LeadTask.completed_at.is_(None), LeadTask.due_at < now)
    elif state == "completed":
        q = q.filter(LeadTask.completed_at.is_not(None))
    return q.order_by(LeadTask.due_at.asc(), LeadTask.id.asc())


# ---------- Opportunities ----------
def _probability(value) -> int:
    p = parse_int(value, 50)
    if p is None or p < 0 or p > 100:
        raise ValidationError("La probabilidad debe estar entre 0 y 100")
    return p


def create_opportunity(s: "Session", lead: DealerLead, payload: dict, user: User) -> Opportunity:
    value = parse_decimal(payload.get("estimated_value"))
    if value is None or value <= 0:
        raise ValidationError("El valor estimado debe ser mayor a 0")
    vehicle = dealer_vehicle(s, lead.dealer_id, payload.get("vehicle_id")) if payload.get("vehicle_id") else None
    opp = Opportunity(
        lead_id=lead.id,
        vehicle_id=vehicle.id if vehicle else None,
        estimated_value=value,
        probability=_probability(payload.get("probability")),
        expected_close_date=parse_datetime(payload.get("expected_close_date")),
        notes=clean_str(payload.get("notes")),
        status="OPEN",
    )
    s.add(opp)
    s.flush()
    log_activity(s, lead, user, "NOTE", f"Oportunidad creada por ${int(value):,}".replace(",", "."), {"opportunity_id": opp.id})
    return opp


def get_opportunity(s: "Session", lead: DealerLead, opportunity_id: int) -> Opportunity:
    opp = s.get(Opportunity, opportunity_id)
    if not opp or opp.lead_id != lead.id:
        raise NotFoundError("Oportunidad no encontrada")
    return opp


def update_opportunity(s: "Session", opp: Opportunity, payload: dict, user: User) -> Opportunity:
    if "estimated_value" in payload:
        value = parse_decimal(payload.get("estimated_value"))
        if value is None or value <= 0:
            raise ValidationError("El valor estimado debe ser mayor a 0")
        opp.estimated_value = value
    if "probability" in payload:
        opp.probability = _probability(payload.get("probability"))
    if "expected_close_date" in payload:
        opp.expected_close_date = parse_datetime(payload.get("expected_close_date"))
    if "notes" in payload:
        opp.notes = clean_str(payload.get("notes"))
    if "vehicle_id" in payload:
        opp.vehicle = dealer_vehicle(s, opp.lead.dealer_id, payload["vehicle_id"]) if payload["vehicle_id"] else None
    status = (payload.get("status") or "").upper()
    if status and status != opp.status:
        if status not in OPPORTUNITY_STATUSES:
            raise ValidationError("Estado inválido")
        if opp.status != "OPEN":
            raise ValidationError("La oportunidad ya está cerrada")
        opp.status = status
        opp.closed_at = datetime.utcnow()
        lead = opp.lead
        target = "CONVERTED" if status == "WON" else "LOST"
        if lead.status != target and lead.status != "CONVERTED":
            _set_status(s, lead, target, user)
    opp.updated_at = datetime.utcnow()
    return opp


def pipeline(s: "Session", dealer: "Dealer", status: str | None = None):
    q = s.query(Opportunity).join(DealerLead, Opportunity.lead_id == DealerLead.id).filter(DealerLead.dealer_id == dealer.id)
    if status and status in OPPORTUNITY_STATUSES:
        q = q.filter(Opportunity.status == status)
    return q.order_by(Opportunity.created_at.desc())


def pipeline_summary(opps: list[Opportunity]) -> dict:
    open_opps = [o for o in opps if o.status == "OPEN"]
    return {
        "open_count": len(open_opps),
        "open_value": sum(int(o.estimated_value) for o in open_opps),
        "weighted_value": sum(int(o.estimated_value) * o.probability // 100 for o in open_opps),
        "won_value": sum(int(o.estimated_value) for o in opps if o.status == "WON"),
    }


# ---------- Test drives ----------
def schedule_test_drive(s: "Session", lead: DealerLead, payload: dict, user: User) -> TestDrive:
    scheduled_at = parse_datetime(payload.get("scheduled_at"))
    if not payload.get("vehicle_id") or not scheduled_at:
        raise ValidationError("Vehículo y fecha son requeridos")
    vehicle = dealer_vehicle(s, lead.dealer_id, payload.get("vehicle_id"))
    duration = parse_int(payload.get("duration"), 30) or 30
    if duration < 15 or duration > 240:
        raise ValidationError("Duración inválida")
    td = TestDrive(
        lead_id=lead.id,
        vehicle_id=vehicle.id,
        scheduled_at=scheduled_at,
        duration=duration,
        notes=clean_str(payload.get("notes")),
        status="SCHEDULED",
    )
    s.add(td)
    s.flush()
    log_activity(
        s,
        lead,
        user,
        "TEST_DRIVE",
        f"Test drive agendado: {vehicle.title} el {scheduled_at:%d/%m/%Y %H:%M}",
        {"test_drive_id": td.id, "vehicle_id": vehicle.id},
    )
    _touch(lead)
    return td


def get_test_drive(s: "Session", lead: DealerLead, test_drive_id: int) -> TestDrive:
    td = s.get(TestDrive, test_drive_id)
    if not td or td.lead_id != lead.id:
        raise NotFoundError("Test drive no encontrado")
    return td


def update_test_drive(s: "Session", td: TestDrive, payload: dict, user: User) -> TestDrive:
    status = (payload.get("status") or "").upper()
    if status and status != td.status:
        if status not in TEST_DRIVE_STATUSES:
            raise ValidationError("Estado inválido")
        if td.status != "SCHEDULED":
            raise ValidationError("El test drive ya fue cerrado")
        td.status = status
        log_activity(s, td.lead, user, "TEST_DRIVE", f"Test drive {status.lower()}", {"test_drive_id": td.id, "status": status})
    if "scheduled_at" in payload:
        if td.status != "SCHEDULED":
            raise ValidationError("Solo se pueden reagendar test drives pendientes")
        scheduled_at = parse_datetime(payload.get("scheduled_at"))
        if not scheduled_at:
            raise ValidationError("Fecha inválida")
        td.scheduled_at = scheduled_at
        td.reminded_at = None
    if "duration" in payload:
        td.duration = parse_int(payload.get("duration"), td.duration) or td.duration
    if "notes" in payload:
        td.notes = clean_str(payload.get("notes"))
    td.updated_at = datetime.utcnow()
    return td


def dealer_test_drives(s: "Session", dealer: "Dealer", *, upcoming: bool = True):
    q = s.query(TestDrive).join(DealerLead, TestDrive.lead_id == DealerLead.id).filter(DealerLead.dealer_id == dealer.id)
    if upcoming:
        q = q.filter(TestDrive.status == "SCHEDULED", TestDrive.scheduled_at >= datetime.utcnow() - timedelta(hours=1))
        return q.order_by(TestDrive.scheduled_at.asc())
    return q.order_by(TestDrive.scheduled_at.desc())


# ---------- Templates ----------
def _validate_template_payload(payload: dict, template: MessageTemplate | None = None) -> list[str]:
    errors: list[str] = []
    partial = template is not None
    if not partial or "name" in payload:
        name = clean_str(payload.get("name"))
        if not name or len(name) > 100:
            errors.append("Nombre requerido (máximo 100 caracteres)")
    if not partial or "channel" in payload:
        if (payload.get("channel") or "").upper() not in TEMPLATE_CHANNELS:
            errors.append("Canal inválido")
    if not partial or "content" in payload:
        content = payload.get("content") or ""
        if not content.strip():
            errors.append("El contenido es requerido")
        unknown = templating.validate_template(content) + templating.validate_template(payload.get("subject") or "")
        if unknown:
            errors.append("Variables desconocidas: " + ", ".join(sorted(set(unknown))))
    return errors


def list_templates(s: "Session", dealer: "Dealer", channel: str | None = None) -> list[MessageTemplate]:
    q = s.query(MessageTemplate).filter(MessageTemplate.dealer_id == dealer.id)
    if channel:
        q = q.filter(MessageTemplate.channel == channel.upper())
    return q.order_by(MessageTemplate.name.asc()).all()


def get_template(s: "Session", dealer: "Dealer", template_id: int) -> MessageTemplate:
    t = s.get(MessageTemplate, template_id)
    if not t or t.dealer_id != dealer.id:
        raise NotFoundError("Plantilla no encontrada")
    return t


def create_template(s: "Session", dealer: "Dealer", payload: dict) -> MessageTemplate:
    errors = _validate_template_payload(payload)
    if errors:
        raise ValidationError.from_errors(errors)
    t = MessageTemplate(
        dealer_id=dealer.id,
        name=clean_str(payload.get("name")),
        channel=payload["channel"].upper(),
        subject=clean_str(payload.get("subject")),
        content=payload["content"],
        is_active=payload.get("is_active", True) is not False,
    )
    s.add(t)
    s.flush()
    return t


def update_template(s: "Session", t: MessageTemplate, payload: dict) -> MessageTemplate:
    errors = _validate_template_payload(payload, t)
    if errors:
        raise ValidationError.from_errors(errors)
    if "name" in payload:
        t.name = clean_str(payload.get("name"))
    if "channel" in payload:
        t.channel = payload["channel"].upper()
    if "subject" in payload:
        t.subject = clean_str(payload.get("subject"))
    if "content" in payload:
        t.content = payload["content"]
    if "is_active" in payload:
        t.is_active = bool(payload.get("is_active"))
    t.updated_at = datetime.utcnow()
    return t


def delete_template(s: "Session", t: MessageTemplate) -> None:
    s.query(AutoResponseConfig).filter(AutoResponseConfig.email_template_id == t.id).update(
        {AutoResponseConfig.email_template_id: None}, synchronize_session=False
    )
    s.delete(t)


# ---------- Auto-response ----------
def get_auto_response(s: "Session", dealer: "Dealer") -> AutoResponseConfig | None:
    return s.query(AutoResponseConfig).filter(AutoResponseConfig.dealer_id == dealer.id).one_or_none()


def upsert_auto_response(s: "Session", dealer: "Dealer", payload: dict) -> AutoResponseConfig:
    template_id = parse_int(payload.get("email_template_id"))
    t = None
    if template_id:
        t = get_template(s, dealer, template_id)
        if t.channel != "EMAIL":
            raise ValidationError("La plantilla debe ser de email")
    delay = parse_int(payload.get("delay_minutes"), 0) or 0
    if delay < 0 or delay > 1440:
        raise ValidationError("El retraso debe estar entre 0 y 1440 minutos")
    enabled = bool(payload.get("enabled"))
    if enabled and not template_id:
        raise ValidationError("Selecciona una plantilla de email")
    config = get_auto_response(s, dealer)
    if config is None:
        config = AutoResponseConfig(dealer_id=dealer.id)
        s.add(config)
    config.enabled = enabled
    config.email_template = t
    config.delay_minutes = delay
    config.updated_at = datetime.utcnow()
    s.flush()
    return config


def process_auto_response(s: "Session", lead: DealerLead, config: AutoResponseConfig | None = None) -> bool:
    """
    Send the dealer's auto-response e-mail to the lead. Stamps responded_at once the
    attempt was made so the lead is never answered twice. Caller commits.
    """
    from app.autoexplora.mailer import send_email
    from app.autoexplora.modules.dealers.service import dealer_owner

    config = config or s.query(AutoResponseConfig).filter(AutoResponseConfig.dealer_id == lead.dealer_id).one_or_none()
    if config is None or not config.enabled or lead.responded_at is not None:
        return False
    template = config.email_template
    sent = False
    if template and template.is_active and template.channel == "EMAIL":
        context = templating.lead_context(lead)
        subject = templating.interpolate(template.subject or "Gracias por tu consulta", context)
        body = templating.interpolate(template.content, context)
        html = "<div style=\"font-family: Arial, sans-serif\">" + body.replace("\n", "<br>") + "</div>"
        sent, err = send_email(lead.email, subject, html, body)
        if sent:
            log_activity(s, lead, dealer_owner(s, lead.dealer_id), "EMAIL", "Respuesta automática enviada", {"auto": True, "template_id": template.id})
        else:
            from flask import current_app

            current_app.logger.warning("Auto-response e-mail not sent for lead %s: %s", lead.id, err)
    lead.responded_at = datetime.utcnow()
    return sent


def pending_auto_responses(s: "Session", now: datetime | None = None) -> list[DealerLead]:
    """Leads with no response yet whose dealer auto-response delay has elapsed."""
    now = now or datetime.utcnow()
    rows = (
        s.query(DealerLead, AutoResponseConfig)
        .join(AutoResponseConfig, AutoResponseConfig.dealer_id == DealerLead.dealer_id)
        .filter(
            AutoResponseConfig.enabled.is_(True),
            DealerLead.responded_at.is_(None),
            DealerLead.created_at >= now - timedelta(days=2),
        )
        .all()
    )
    return [lead for lead, cfg in rows if lead.created_at + timedelta(minutes=cfg.delay_minutes) <= now]


# ---------- Reminders ----------
def due_task_reminders(s: "Session", now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    tasks = (
        s.query(LeadTask)
        .filter(
            LeadTask.completed_at.is_(None),
            LeadTask.notified_at.is_(None),
            LeadTask.due_at >= now,
            LeadTask.due_at <= now + timedelta(hours=1),
        )
        .all()
    )
    for task in tasks:
        notifications.notify_follow_up(s, task.assigned_to_id, task.lead.name, task.title, task.lead_id, task.id)
        task.notified_at = now
    return len(tasks)


def due_test_drive_reminders(s: "Session", now: datetime | None = None) -> int:
    from app.autoexplora.modules.dealers.service import dealer_managers

    now = now or datetime.utcnow()
    drives = (
        s.query(TestDrive)
        .filter(
            TestDrive.status == "SCHEDULED",
            TestDrive.reminded_at.is_(None),
            TestDrive.scheduled_at >= now,
            TestDrive.scheduled_at <= now + timedelta(hours=1),
        )
        .all()
    )
    for td in drives:
        lead = td.lead
        recipients = [lead.assigned_to_id] if lead.assigned_to_id else [u.id for u in dealer_managers(s, lead.dealer_id)]
        for uid in recipients:
            notifications.notify_test_drive(s, uid, lead.name, td.vehicle.title, td.scheduled_at, lead.id, td.id)
        td.reminded_at = now
    return len(drives)
