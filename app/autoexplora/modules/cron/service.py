"""
Periodic jobs. Triggered externally: `GET /api/cron/reminders` or `scripts/run_cron.py`.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from app.autoexplora.errors import NotFoundError, ValidationError
from app.autoexplora.utils import parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


def run_reminders(s: "Session", now: datetime | None = None) -> dict:
    """
    Follow-up and test-drive reminders, delayed auto-responses, listing expiry and
    notification pruning. Commits after each step so one failure does not undo the rest.
    """
    from app.autoexplora.modules.crm import service as crm
    from app.autoexplora.modules.notifications.service import delete_old_read
    from app.autoexplora.modules.vehicles.service import expire_listings

    now = now or datetime.utcnow()

    tasks = crm.due_task_reminders(s, now)
    s.commit()
    drives = crm.due_test_drive_reminders(s, now)
    s.commit()

    pending = crm.pending_auto_responses(s, now)
    sent = 0
    for lead in pending:
        if crm.process_auto_response(s, lead):
            sent += 1
        s.commit()

    expired = expire_listings(s, now)
    pruned = delete_old_read(s, now=now)
    s.commit()

    result = {
        "tasks": {"processed": tasks, "successful": tasks},
        "test_drives": {"processed": drives, "successful": drives},
        "auto_responses": {"processed": len(pending), "successful": sent},
        "expired_listings": expired,
        "pruned_notifications": pruned,
        "timestamp": now.isoformat(),
    }
    logger.info("Cron reminders: %s", result)
    return result


def run_inventory_match(s: "Session", vehicle_id) -> dict:
    from app.autoexplora.modules.crm.matcher import notify_matching_leads
    from app.autoexplora.modules.vehicles.models import Vehicle

    vid = parse_int(vehicle_id)
    if not vid:
        raise ValidationError("vehicle_id es requerido")
    vehicle = s.get(Vehicle, vid)
    if not vehicle or not vehicle.dealer_id:
        raise NotFoundError("Vehículo no encontrado")
    matched = notify_matching_leads(s, vehicle)
    s.commit()
    return {"success": True, "matched_leads": matched}
