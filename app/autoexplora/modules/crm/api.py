from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.autoexplora.db import db_session
from app.autoexplora.mailer import send_lead_assigned_email, send_new_lead_email
from app.autoexplora.modules.crm import matcher, templating
from app.autoexplora.modules.crm import service as svc
from app.autoexplora.modules.crm.models import DealerLead, LeadPreferences
from app.autoexplora.modules.vehicles.service import serialize_vehicle_card
from app.autoexplora.rbac import require_dealer
from app.autoexplora.utils import json_payload, page_response, paginate, pagination_args, parse_int

bp = Blueprint("crm", __name__)


def after_lead_captured(lead: DealerLead, recipients) -> None:
    """E-mail the notified dealer users and run an immediate auto-response. Runs after commit."""
    for user in recipients:
        ok, err = send_new_lead_email(user.email, lead.dealer.trade_name, lead.name, lead.message)
        if not ok:
            current_app.logger.warning("New-lead e-mail not sent to %s: %s", user.email, err)
    s = db_session()
    config = svc.get_auto_response(s, lead.dealer)
    if config and config.enabled and config.delay_minutes == 0:
        svc.process_auto_response(s, lead, config)
        s.commit()


# ---------- Public lead capture ----------
@bp.post("/leads")
def leads_capture():
    s = db_session()
    payload = json_payload()
    source = payload.get("source") if payload.get("source") in ("microsite", "marketplace") else "marketplace"
    lead, recipients = svc.capture_public_lead(s, payload, source=source)
    s.commit()
    current_app.logger.info("Lead captured: id=%s dealer=%s source=%s", lead.id, lead.dealer_id, lead.source)
    after_lead_captured(lead, recipients)
    return jsonify({"success": True, "id": lead.id}), 201


# ---------- Leads ----------
@bp.get("/dealer/leads")
@require_dealer()
def dealer_leads_list():
    s = db_session()
    page, limit = pagination_args(default_limit=20, max_limit=100)
    q = svc.lead_query(
        s,
        g.dealer,
        g.current_user,
        status=(request.args.get("status") or "").upper() or None,
        assigned_to=request.args.get("assigned_to"),
        search=(request.args.get("q") or request.args.get("search") or "").strip() or None,
        source=request.args.get("source"),
    )
    rows, total, total_pages = paginate(q, page, limit)
    return jsonify(
        page_response([svc.serialize_lead(lead) for lead in rows], total, page, total_pages, counts=svc.lead_status_counts(s, g.dealer))
    )


@bp.post("/dealer/leads")
@require_dealer()
def dealer_leads_create():
    s = db_session()
    lead = svc.create_manual_lead(s, g.dealer, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_lead(lead, detail=True)), 201


@bp.post("/dealer/leads/from-conversation")
@require_dealer()
def dealer_leads_from_conversation():
    s = db_session()
    lead, duplicate = svc.create_lead_from_conversation(s, g.dealer, json_payload().get("conversation_id"), g.current_user)
    s.commit()
    return jsonify({"lead": svc.serialize_lead(lead), "is_duplicate": duplicate}), 201


@bp.get("/dealer/leads/<int:lead_id>")
@require_dealer()
def dealer_lead_detail(lead_id: int):
    return jsonify(svc.serialize_lead(svc.get_lead(db_session(), g.dealer, lead_id), detail=True))


@bp.patch("/dealer/leads/<int:lead_id>")
@require_dealer()
def dealer_lead_update(lead_id: int):
    s = db_session()
    lead = svc.get_lead(s, g.dealer, lead_id)
    assignee = svc.update_lead(s, lead, json_payload(), g.current_user)
    s.commit()
    if assignee is not None:
        ok, err = send_lead_assigned_email(assignee.email, assignee.name, lead.name, lead.id, g.current_user.display_name)
        if not ok:
            current_app.logger.warning("Lead-assigned e-mail not sent to %s: %s", assignee.email, err)
    return jsonify(svc.serialize_lead(lead, detail=True))


@bp.delete("/dealer/leads/<int:lead_id>")
@require_dealer("OWNER", "MANAGER")
def dealer_lead_delete(lead_id: int):
    s = db_session()
    svc.delete_lead(s, svc.get_lead(s, g.dealer, lead_id), g.current_user)
    s.commit()
    return jsonify({"success": True})


# ---------- Preferences / matching ----------
@bp.get("/dealer/leads/<int:lead_id>/preferences")
@require_dealer()
def dealer_lead_preferences_get(lead_id: int):
    lead = svc.get_lead(db_session(), g.dealer, lead_id)
    return jsonify({"preferences": svc.serialize_preferences(lead.preferences) if lead.preferences else None})


@bp.put("/dealer/leads/<int:lead_id>/preferences")
@require_dealer()
def dealer_lead_preferences_put(lead_id: int):
    s = db_session()
    lead = svc.get_lead(s, g.dealer, lead_id)
    prefs = svc.upsert_preferences(s, lead, json_payload())
    s.commit()
    return jsonify({"preferences": svc.serialize_preferences(prefs)})


@bp.get("/dealer/leads/<int:lead_id>/match")
@require_dealer()
def dealer_lead_match(lead_id: int):
    s = db_session()
    lead = svc.get_lead(s, g.dealer, lead_id)
    prefs = lead.preferences or LeadPreferences(brand_ids=[], model_ids=[])
    limit = min(parse_int(request.args.get("limit"), matcher.DEFAULT_MATCH_LIMIT) or matcher.DEFAULT_MATCH_LIMIT, 20)
    matches = matcher.match_vehicles_for_lead(s, g.dealer.id, prefs, limit)
    return jsonify(
        {
            "items": [
                serialize_vehicle_card(m.vehicle) | {"match_score": m.score, "match_reasons": m.reasons}
                for m in matches
            ]
        }
    )


# ---------- Activities ----------
@bp.get("/dealer/leads/<int:lead_id>/activities")
@require_dealer()
def dealer_lead_activities(lead_id: int):
    lead = svc.get_lead(db_session(), g.dealer, lead_id)
    return jsonify({"items": [svc.serialize_activity(a) for a in lead.activities]})


@bp.post("/dealer/leads/<int:lead_id>/activities")
@require_dealer()
def dealer_lead_activity_create(lead_id: int):
    s = db_session()
    lead = svc.get_lead(s, g.dealer, lead_id)
    activity = svc.add_activity(s, lead, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_activity(activity)), 201


# ---------- Tasks ----------
@bp.get("/dealer/leads/<int:lead_id>/tasks")
@require_dealer()
def dealer_lead_tasks(lead_id: int):
    s = db_session()
    lead = svc.get_lead(s, g.dealer, lead_id)
    return jsonify({"items": [svc.serialize_task(t) for t in svc.lead_tasks(s, lead)]})


@bp.post("/dealer/leads/<int:lead_id>/tasks")
@require_dealer()
def dealer_lead_task_create(lead_id: int):
    s = db_session()
    lead = svc.get_lead(s, g.dealer, lead_id)
    task = svc.create_task(s, lead, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_task(task)), 201


@bp.patch("/dealer/leads/<int:lead_id>/tasks/<int:task_id>")
@require_dealer()
def dealer_lead_task_update(lead_id: int, task_id: int):
    s = db_session()
    task = svc.get_task(s, svc.get_lead(s, g.dealer, lead_id), task_id)
    svc.update_task(s, task, json_payload())
    s.commit()
    return jsonify(svc.serialize_task(task))


@bp.post("/dealer/leads/<int:lead_id>/tasks/<int:task_id>/complete")
@require_dealer()
def dealer_lead_task_complete(lead_id: int, task_id: int):
    s = db_session()
    task = svc.get_task(s, svc.get_lead(s, g.dealer, lead_id), task_id)
    svc.complete_task(s, task)
    s.commit()
    return jsonify(svc.serialize_task(task))


@bp.delete("/dealer/leads/<int:lead_id>/tasks/<int:task_id>")
@require_dealer()
def dealer_lead_task_delete(lead_id: int, task_id: int):
    s = db_session()
    svc.delete_task(s, svc.get_task(s, svc.get_lead(s, g.dealer, lead_id), task_id))
    s.commit()
    return jsonify({"success": True})


@bp.get("/dealer/tasks")
@require_dealer()
def dealer_tasks_list():
    s = db_session()
    page, limit = pagination_args(default_limit=50, max_limit=100)
    q = svc.dealer_tasks(
        s,
        g.dealer,
        g.current_user,
        scope=request.args.get("scope") or "mine",
        state=request.args.get("state") or "pending",
    )
    rows, total, total_pages = paginate(q, page, limit)
    return jsonify(page_response([svc.serialize_task(t) for t in rows], total, page, total_pages))


# ---------- Opportunities ----------
@bp.get("/dealer/leads/<int:lead_id>/opportunities")
@require_dealer()
def dealer_lead_opportunities(lead_id: int):
    lead = svc.get_lead(db_session(), g.dealer, lead_id)
    return jsonify({"items": [svc.serialize_opportunity(o) for o in lead.opportunities]})


@bp.post("/dealer/leads/<int:lead_id>/opportunities")
@require_dealer()
def dealer_lead_opportunity_create(lead_id: int):
    s = db_session()
    lead = svc.get_lead(s, g.dealer, lead_id)
    opp = svc.create_opportunity(s, lead, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_opportunity(opp)), 201


@bp.patch("/dealer/leads/<int:lead_id>/opportunities/<int:opportunity_id>")
@require_dealer()
def dealer_lead_opportunity_update(lead_id: int, opportunity_id: int):
    s = db_session()
    opp = svc.get_opportunity(s, svc.get_lead(s, g.dealer, lead_id), opportunity_id)
    svc.update_opportunity(s, opp, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_opportunity(opp))


@bp.delete("/dealer/leads/<int:lead_id>/opportunities/<int:opportunity_id>")
@require_dealer()
def dealer_lead_opportunity_delete(lead_id: int, opportunity_id: int):
    s = db_session()
    s.delete(svc.get_opportunity(s, svc.get_lead(s, g.dealer, lead_id), opportunity_id))
    s.commit()
    return jsonify({"success": True})


@bp.get("/dealer/opportunities")
@require_dealer()
def dealer_pipeline():
    s = db_session()
    opps = svc.pipeline(s, g.dealer, (request.args.get("status") or "").upper() or None).all()
    return jsonify({"items": [svc.serialize_opportunity(o) for o in opps], "summary": svc.pipeline_summary(opps)})


# ---------- Test drives ----------
@bp.get("/dealer/leads/<int:lead_id>/test-drives")
@require_dealer()
def dealer_lead_test_drives(lead_id: int):
    lead = svc.get_lead(db_session(), g.dealer, lead_id)
    drives = sorted(lead.test_drives, key=lambda td: td.scheduled_at, reverse=True)
    return jsonify({"items": [svc.serialize_test_drive(td) for td in drives]})


@bp.post("/dealer/leads/<int:lead_id>/test-drives")
@require_dealer()
def dealer_lead_test_drive_create(lead_id: int):
    s = db_session()
    lead = svc.get_lead(s, g.dealer, lead_id)
    td = svc.schedule_test_drive(s, lead, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_test_drive(td)), 201


@bp.patch("/dealer/leads/<int:lead_id>/test-drives/<int:test_drive_id>")
@require_dealer()
def dealer_lead_test_drive_update(lead_id: int, test_drive_id: int):
    s = db_session()
    td = svc.get_test_drive(s, svc.get_lead(s, g.dealer, lead_id), test_drive_id)
    svc.update_test_drive(s, td, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_test_drive(td))


@bp.delete("/dealer/leads/<int:lead_id>/test-drives/<int:test_drive_id>")
@require_dealer()
def dealer_lead_test_drive_delete(lead_id: int, test_drive_id: int):
    s = db_session()
    s.delete(svc.get_test_drive(s, svc.get_lead(s, g.dealer, lead_id), test_drive_id))
    s.commit()
    return jsonify({"success": True})


@bp.get("/dealer/test-drives")
@require_dealer()
def dealer_test_drives_list():
    s = db_session()
    upcoming = request.args.get("scope", "upcoming") == "upcoming"
    drives = svc.dealer_test_drives(s, g.dealer, upcoming=upcoming).limit(200).all()
    return jsonify({"items": [svc.serialize_test_drive(td) for td in drives]})


# ---------- Templates ----------
@bp.get("/dealer/templates")
@require_dealer()
def dealer_templates_list():
    templates = svc.list_templates(db_session(), g.dealer, request.args.get("channel"))
    return jsonify({"items": [svc.serialize_template(t) for t in templates], "variables": templating.TEMPLATE_VARIABLES})


@bp.post("/dealer/templates")
@require_dealer("OWNER", "MANAGER")
def dealer_templates_create():
    s = db_session()
    t = svc.create_template(s, g.dealer, json_payload())
    s.commit()
    return jsonify(svc.serialize_template(t)), 201


@bp.post("/dealer/templates/preview")
@require_dealer()
def dealer_templates_preview():
    payload = json_payload()
    content = payload.get("content") or ""
    return jsonify(
        {
            "subject": templating.preview(payload.get("subject") or ""),
            "content": templating.preview(content),
            "unknown_variables": templating.validate_template(content),
        }
    )


@bp.get("/dealer/templates/<int:template_id>")
@require_dealer()
def dealer_template_detail(template_id: int):
    return jsonify(svc.serialize_template(svc.get_template(db_session(), g.dealer, template_id)))


@bp.patch("/dealer/templates/<int:template_id>")
@require_dealer("OWNER", "MANAGER")
def dealer_template_update(template_id: int):
    s = db_session()
    t = svc.update_template(s, svc.get_template(s, g.dealer, template_id), json_payload())
    s.commit()
    return jsonify(svc.serialize_template(t))


@bp.delete("/dealer/templates/<int:template_id>")
@require_dealer("OWNER", "MANAGER")
def dealer_template_delete(template_id: int):
    s = db_session()
    svc.delete_template(s, svc.get_template(s, g.dealer, template_id))
    s.commit()
    return jsonify({"success": True})


# ---------- Auto-response ----------
@bp.get("/dealer/auto-response")
@require_dealer("OWNER", "MANAGER")
def dealer_auto_response_get():
    return jsonify(svc.serialize_auto_response(svc.get_auto_response(db_session(), g.dealer)))


@bp.put("/dealer/auto-response")
@require_dealer("OWNER", "MANAGER")
def dealer_auto_response_put():
    s = db_session()
    config = svc.upsert_auto_response(s, g.dealer, json_payload())
    s.commit()
    return jsonify(svc.serialize_auto_response(config))
