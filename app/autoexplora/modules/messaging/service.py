from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import and_, func, or_

from app.autoexplora.constants import MAX_MESSAGE_LENGTH
from app.autoexplora.errors import ForbiddenError, NotFoundError, ValidationError
from app.autoexplora.modules.messaging.models import Conversation, Message
from app.autoexplora.utils import clean_str, iso, money, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.autoexplora.models import User


def _participant(u: "User") -> dict:
    return {"id": u.id, "name": u.display_name, "image": u.image}


def serialize_message(m: Message) -> dict:
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "sender": _participant(m.sender),
        "content": m.content,
        "is_read": m.is_read,
        "read_at": iso(m.read_at),
        "created_at": iso(m.created_at),
    }


def serialize_conversation(c: Conversation, user: "User", last_message: Message | None = None) -> dict:
    v = c.vehicle
    primary = v.primary_image
    is_buyer = c.buyer_id == user.id
    return {
        "id": c.id,
        "vehicle": {
            "id": v.id,
            "slug": v.slug,
            "title": v.title,
            "price": money(v.price),
            "status": v.status,
            "image": primary.url if primary else None,
        },
        "buyer": _participant(c.buyer),
        "seller": _participant(c.seller),
        "role": "buyer" if is_buyer else "seller",
        "unread_count": c.buyer_unread_count if is_buyer else c.seller_unread_count,
        "last_message_at": iso(c.last_message_at),
        "last_message": (
            {"content": last_message.content, "sender_id": last_message.sender_id, "created_at": iso(last_message.created_at)}
            if last_message
            else None
        ),
        "created_at": iso(c.created_at),
    }


def get_conversation(s: "Session", conversation_id: int, user: "User") -> Conversation:
    c = s.get(Conversation, conversation_id)
    if not c:
        raise NotFoundError("Conversación no encontrada")
    if user.id not in (c.buyer_id, c.seller_id):
        raise ForbiddenError("No tienes acceso a esta conversación")
    return c


def start_conversation(s: "Session", user: "User", vehicle_id) -> tuple[Conversation, bool]:
    """
    Create or fetch the buyer's conversation about an ACTIVE vehicle.
    Returns (conversation, created). An archived conversation is restored for the buyer.
    """
    from app.autoexplora.modules.vehicles.models import Vehicle

    vid = parse_int(vehicle_id)
    if not vid:
        raise ValidationError("ID de vehículo requerido")
    vehicle = s.query(Vehicle).filter(Vehicle.id == vid, Vehicle.status == "ACTIVE").one_or_none()
    if not vehicle:
        raise NotFoundError("Vehículo no encontrado o no disponible")
    if vehicle.user_id == user.id:
        raise ValidationError("No puedes enviar mensajes sobre tu propio vehículo")

    existing = (
        s.query(Conversation)
        .filter(Conversation.buyer_id == user.id, Conversation.vehicle_id == vehicle.id)
        .one_or_none()
    )
    if existing:
        if existing.is_archived_by_buyer:
            existing.is_archived_by_buyer = False
        return existing, False

    c = Conversation(vehicle_id=vehicle.id, buyer_id=user.id, seller_id=vehicle.user_id)
    s.add(c)
    s.flush()
    s.refresh(c)
    return c, True


def list_conversations(s: "Session", user: "User") -> list[tuple[Conversation, Message | None]]:
    convs = (
        s.query(Conversation)
        .filter(
            or_(
                and_(Conversation.buyer_id == user.id, Conversation.is_archived_by_buyer.is_(False)),
                and_(Conversation.seller_id == user.id, Conversation.is_archived_by_seller.is_(False)),
            )
        )
        .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        .all()
    )
    if not convs:
        return []
    # newest message per conversation
    latest = (
        s.query(Message.conversation_id, func.max(Message.id).label("last_id"))
        .filter(Message.conversation_id.in_([c.id for c in convs]))
        .group_by(Message.conversation_id)
        .subquery()
    )
    last_by_conv = {m.conversation_id: m for m in s.query(Message).join(latest, Message.id == latest.c.last_id).all()}
    return [(c, last_by_conv.get(c.id)) for c in convs]


def conversation_messages(s: "Session", c: Conversation) -> list[Message]:
    return (
        s.query(Message)
        .filter(Message.conversation_id == c.id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .all()
    )


def send_message(s: "Session", c: Conversation, user: "User", content) -> Message:
    """
    Append a message, bump the other side's unread counter and unarchive it for them.
    All in the caller's transaction. Notifies the recipient.
    """
    from app.autoexplora.modules.notifications.service import notify_new_message

    text = clean_str(content)
    if not text:
        raise ValidationError("El mensaje no puede estar vacío")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"El mensaje no puede exceder {MAX_MESSAGE_LENGTH} caracteres")

    now = datetime.utcnow()
    msg = Message(conversation_id=c.id, sender_id=user.id, content=text, created_at=now)
    s.add(msg)

    is_buyer = user.id == c.buyer_id
    if is_buyer:
        values = {
            Conversation.seller_unread_count: Conversation.seller_unread_count + 1,
            Conversation.is_archived_by_seller: False,
        }
        recipient_id = c.seller_id
    else:
        values = {
            Conversation.buyer_unread_count: Conversation.buyer_unread_count + 1,
            Conversation.is_archived_by_buyer: False,
        }
        recipient_id = c.buyer_id
    values[Conversation.last_message_at] = now
    s.query(Conversation).filter(Conversation.id == c.id).update(values, synchronize_session=False)
    s.flush()
    s.refresh(c)
    s.refresh(msg)

    notify_new_message(s, recipient_id, user.display_name, c.vehicle.title, c.id)
    return msg


def mark_conversation_read(s: "Session", c: Conversation, user: "User") -> int:
    """Mark the other side's messages read and reset the caller's counter. Returns messages updated."""
    updated = (
        s.query(Message)
        .filter(Message.conversation_id == c.id, Message.sender_id != user.id, Message.is_read.is_(False))
        .update({Message.is_read: True, Message.read_at: datetime.utcnow()}, synchronize_session=False)
    )
    if user.id == c.buyer_id:
        c.buyer_unread_count = 0
    else:
        c.seller_unread_count = 0
    return int(updated or 0)


def set_archived(c: Conversation, user: "User", archived: bool = True) -> Conversation:
    if user.id == c.buyer_id:
        c.is_archived_by_buyer = archived
    else:
        c.is_archived_by_seller = archived
    return c


def total_unread(s: "Session", user: "User") -> int:
    buyer_side = (
        s.query(func.coalesce(func.sum(Conversation.buyer_unread_count), 0))
        .filter(Conversation.buyer_id == user.id, Conversation.is_archived_by_buyer.is_(False))
        .scalar()
    )
    seller_side = (
        s.query(func.coalesce(func.sum(Conversation.seller_unread_count), 0))
        .filter(Conversation.seller_id == user.id, Conversation.is_archived_by_seller.is_(False))
        .scalar()
    )
    return int(buyer_side or 0) + int(seller_side or 0)
