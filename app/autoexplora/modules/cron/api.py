from __future__ import annotations

from functools import wraps

from flask import Blueprint, current_app, jsonify, request

from app.autoexplora.db import db_session
from app.autoexplora.errors import UnauthorizedError
from app.autoexplora.modules.cron import service as svc
from app.autoexplora.security import validate_cron_secret
from app.autoexplora.utils import json_payload

bp = Blueprint("cron", __name__)


def require_cron_secret(fn):
    @wraps(fn)
    def wrapped(*args, **kwargs):
        if not validate_cron_secret(request):
            current_app.logger.warning("Cron call rejected from %s", request.remote_addr)
            raise UnauthorizedError()
        return fn(*args, **kwargs)

    return wrapped


@bp.get("/cron/reminders")
@require_cron_secret
def cron_reminders():
    return jsonify({"success": True, **svc.run_reminders(db_session())})


@bp.post("/cron/inventory-match")
@require_cron_secret
def cron_inventory_match():
    return jsonify(svc.run_inventory_match(db_session(), json_payload().get("vehicle_id")))
