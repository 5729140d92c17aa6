from __future__ import annotations

from flask import Blueprint, g, jsonify

from app.autoexplora.db import db_session
from app.autoexplora.modules.messaging import service as svc
from app.autoexplora.rbac import require_login
from app.autoexplora.utils import json_payload, parse_bool

bp = Blueprint("messaging", __name__)


@bp.get("/messages/conversations")
@require_login
def conversations_list():
    s = db_session()
    rows = svc.list_conversations(s, g.current_user)
    items = [svc.serialize_conversation(c, g.current_user, last) for c, last in rows]
    return jsonify({"items": items, "total": len(items)})


@bp.post("/messages/conversations")
@require_login
def conversations_start():
    s = db_session()
    conv, created = svc.start_conversation(s, g.current_user, json_payload().get("vehicle_id"))
    s.commit()
    return jsonify({"conversation_id": conv.id, "is_new": created}), 201 if created else 200


@bp.get("/messages/conversations/<int:conversation_id>")
@require_login
def conversations_detail(conversation_id: int):
    s = db_session()
    conv = svc.get_conversation(s, conversation_id, g.current_user)
    return jsonify(
        {
            "conversation": svc.serialize_conversation(conv, g.current_user),
            "messages": [svc.serialize_message(m) for m in svc.conversation_messages(s, conv)],
        }
    )


@bp.post("/messages/conversations/<int:conversation_id>/messages")
@require_login
def conversations_send(conversation_id: int):
    s = db_session()
    conv = svc.get_conversation(s, conversation_id, g.current_user)
    msg = svc.send_message(s, conv, g.current_user, json_payload().get("content"))
    s.commit()
    return jsonify({"message": svc.serialize_message(msg)}), 201


@bp.post("/messages/conversations/<int:conversation_id>/read")
@require_login
def conversations_read(conversation_id: int):
    s = db_session()
    conv = svc.get_conversation(s, conversation_id, g.current_user)
    updated = svc.mark_conversation_read(s, conv, g.current_user)
    s.commit()
    return jsonify({"success": True, "updated": updated})


@bp.post("/messages/conversations/<int:conversation_id>/archive")
@require_login
def conversations_archive(conversation_id: int):
    s = db_session()
    conv = svc.get_conversation(s, conversation_id, g.current_user)
    svc.set_archived(conv, g.current_user, bool(parse_bool(json_payload().get("archived"), True)))
    s.commit()
    return jsonify({"success": True})


@bp.get("/messages/unread")
@require_login
def messages_unread():
    return jsonify({"count": svc.total_unread(db_session(), g.current_user)})
