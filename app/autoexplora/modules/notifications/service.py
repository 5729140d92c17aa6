from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable

from app.autoexplora.constants import NOTIFICATION_RETENTION_DAYS, NOTIFICATION_TYPES
from app.autoexplora.errors import NotFoundError
from app.autoexplora.modules.notifications.models import Notification
from app.autoexplora.utils import iso

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

LEAD_STATUS_LABELS = {
    "NEW": "Nuevo",
    "CONTACTED": "Contactado",
    "QUALIFIED": "Calificado",
    "CONVERTED": "Convertido",
    "LOST": "Perdido",
}


def serialize_notification(n: Notification) -> dict:
    return {
        "id": n.id,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "link": n.link,
        "metadata": n.metadata_json,
        "is_read": n.is_read,
        "read_at": iso(n.read_at),
        "created_at": iso(n.created_at),
    }


def create_notification(
    s: "Session",
    user_id: int,
    type: str,
    title: str,
    message: str,
    *,
    link: str | None = None,
    metadata: dict | None = None,
) -> Notification:
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {type}")
    n = Notification(user_id=user_id, type=type, title=title, message=message, link=link, metadata_json=metadata)
    s.add(n)
    return n


def create_for_users(s: "Session", user_ids: Iterable[int], type: str, title: str, message: str, **kwargs) -> list[Notification]:
    return [create_notification(s, uid, type, title, message, **kwargs) for uid in dict.fromkeys(user_ids)]


def list_notifications(s: "Session", user_id: int, *, unread_only: bool = False):
    q = s.query(Notification).filter(Notification.user_id == user_id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.created_at.desc(), Notification.id.desc())


def unread_count(s: "Session", user_id: int) -> int:
    return s.query(Notification).filter(Notification.user_id == user_id, Notification.is_read.is_(False)).count()


def mark_read(s: "Session", user_id: int, notification_id: int) -> Notification:
    n = s.get(Notification, notification_id)
    if not n or n.user_id != user_id:
        raise NotFoundError("Notificación no encontrada")
    if not n.is_read:
        n.is_read = True
        n.read_at = datetime.utcnow()
    return n


def mark_all_read(s: "Session", user_id: int) -> int:
    return (
        s.query(Notification)
        .filter(Notification.user_id == user_id, Notification.is_read.is_(False))
        .update({Notification.is_read: True, Notification.read_at: datetime.utcnow()}, synchronize_session=False)
    )


def delete_notification(s: "Session", user_id: int, notification_id: int) -> None:
    n = s.get(Notification, notification_id)
    if not n or n.user_id != user_id:
        raise NotFoundError("Notificación no encontrada")
    s.delete(n)


def delete_old_read(s: "Session", days: int = NOTIFICATION_RETENTION_DAYS, now: datetime | None = None) -> int:
    cutoff = (now or datetime.utcnow()) - timedelta(days=days)
    return (
        s.query(Notification)
        .filter(Notification.is_read.is_(True), Notification.created_at < cutoff)
        .delete(synchronize_session=False)
    )


# ---------- Event helpers ----------
def _lead_link(lead_id: int) -> str:
    return f"/dealer/leads/{lead_id}"


def notify_new_lead(s: "Session", user_ids: Iterable[int], lead_name: str, vehicle_title: str | None, lead_id: int):
    if vehicle_title:
        message = f"{lead_name} consultó sobre {vehicle_title}"
    else:
        message = f"{lead_name} envió una consulta general"
    return create_for_users(s, user_ids, "NEW_LEAD", "Nuevo Lead", message, link=_lead_link(lead_id), metadata={"lead_id": lead_id})


def notify_lead_assigned(s: "Session", user_id: int, lead_name: str, assigned_by: str, lead_id: int):
    return create_notification(
        s,
        user_id,
        "LEAD_ASSIGNED",
        "Lead Asignado",
        f"{assigned_by} te asignó el lead de {lead_name}",
        link=_lead_link(lead_id),
        metadata={"lead_id": lead_id},
    )


def notify_lead_status_change(s: "Session", user_id: int, lead_name: str, new_status: str, lead_id: int):
    label = LEAD_STATUS_LABELS.get(new_status, new_status)
    return create_notification(
        s,
        user_id,
        "LEAD_STATUS_CHANGE",
        "Cambio de Estado",
        f"El lead de {lead_name} cambió a {label}",
        link=_lead_link(lead_id),
        metadata={"lead_id": lead_id, "new_status": new_status},
    )


def notify_follow_up(s: "Session", user_id: int, lead_name: str, task_title: str, lead_id: int, task_id: int):
    return create_notification(
        s,
        user_id,
        "FOLLOW_UP_REMINDER",
        "Recordatorio de Seguimiento",
        f"Tarea pendiente: {task_title} - {lead_name}",
        link=_lead_link(lead_id),
        metadata={"lead_id": lead_id, "task_id": task_id},
    )


def notify_test_drive(
    s: "Session", user_id: int, lead_name: str, vehicle_title: str, scheduled_at: datetime, lead_id: int, test_drive_id: int
):
    return create_notification(
        s,
        user_id,
        "TEST_DRIVE_REMINDER",
        "Recordatorio de Test Drive",
        f"Test drive de {vehicle_title} con {lead_name} a las {scheduled_at:%H:%M}",
        link="/dealer/test-drives",
        metadata={"lead_id": lead_id, "test_drive_id": test_drive_id},
    )


def notify_new_message(s: "Session", user_id: int, sender_name: str, vehicle_title: str, conversation_id: int):
    return create_notification(
        s,
        user_id,
        "NEW_MESSAGE",
        "Nuevo Mensaje",
        f"{sender_name} te escribió sobre {vehicle_title}",
        link=f"/mensajes/{conversation_id}",
        metadata={"conversation_id": conversation_id},
    )


def notify_inventory_match(s: "Session", user_ids: Iterable[int], lead_name: str, vehicle_title: str, lead_id: int, vehicle_id: int):
    return create_for_users(
        s,
        user_ids,
        "INVENTORY_MATCH",
        "Vehículo Compatible",
        f"{vehicle_title} coincide con las preferencias de {lead_name}",
        link=_lead_link(lead_id),
        metadata={"lead_id": lead_id, "vehicle_id": vehicle_id},
    )
