"""
Lead <-> inventory matching.

`match_vehicles_for_lead` ranks a dealer's ACTIVE vehicles against a lead's stored
preferences. `find_matching_leads` goes the other way for a newly published vehicle.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from app.autoexplora.constants import CONDITIONS, OPEN_LEAD_STATUSES, VEHICLE_TYPES

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.autoexplora.modules.crm.models import DealerLead, LeadPreferences
    from app.autoexplora.modules.vehicles.models import Vehicle

BRAND_SCORE = 30
MODEL_SCORE = 40
PRICE_SCORE = 20
YEAR_SCORE = 10
DEFAULT_MATCH_LIMIT = 5


@dataclass
class Match:
    vehicle: "Vehicle"
    score: int = 0
    reasons: list[str] = field(default_factory=list)


def _in_range(value, lo, hi) -> bool:
    return (not lo or value >= lo) and (not hi or value <= hi)


def score_vehicle(prefs: "LeadPreferences", vehicle: "Vehicle") -> Match:
    match = Match(vehicle=vehicle)
    brand_ids = prefs.brand_ids or []
    model_ids = prefs.model_ids or []
    if brand_ids and vehicle.brand_id in brand_ids:
        match.score += BRAND_SCORE
        match.reasons.append(f"Marca: {vehicle.brand.name}")
    if model_ids and vehicle.model_id in model_ids:
        match.score += MODEL_SCORE
        match.reasons.append(f"Modelo: {vehicle.model.name}")
    if (prefs.min_price or prefs.max_price) and _in_range(vehicle.price, prefs.min_price, prefs.max_price):
        match.score += PRICE_SCORE
        match.reasons.append("Dentro del presupuesto")
    if (prefs.min_year or prefs.max_year) and _in_range(vehicle.year, prefs.min_year, prefs.max_year):
        match.score += YEAR_SCORE
        match.reasons.append(f"Año {vehicle.year}")
    return match


def match_vehicles_for_lead(s: "Session", dealer_id: int, prefs: "LeadPreferences", limit: int = DEFAULT_MATCH_LIMIT) -> list[Match]:
    from app.autoexplora.modules.vehicles.models import Vehicle

    q = s.query(Vehicle).filter(Vehicle.dealer_id == dealer_id, Vehicle.status == "ACTIVE")
    if prefs.brand_ids:
        q = q.filter(Vehicle.brand_id.in_(prefs.brand_ids))
    if prefs.model_ids:
        q = q.filter(Vehicle.model_id.in_(prefs.model_ids))
    if prefs.min_price:
        q = q.filter(Vehicle.price >= prefs.min_price)
    if prefs.max_price:
        q = q.filter(Vehicle.price <= prefs.max_price)
    if prefs.min_year:
        q = q.filter(Vehicle.year >= prefs.min_year)
    if prefs.max_year:
        q = q.filter(Vehicle.year <= prefs.max_year)
    if prefs.vehicle_type in VEHICLE_TYPES:
        q = q.filter(Vehicle.vehicle_type == prefs.vehicle_type)
    if prefs.condition in CONDITIONS:
        q = q.filter(Vehicle.condition == prefs.condition)

    # over-fetch, then rank
    candidates = q.order_by(Vehicle.created_at.desc()).limit(limit * 2).all()
    scored = [m for m in (score_vehicle(prefs, v) for v in candidates) if m.score > 0]
    scored.sort(key=lambda m: m.score, reverse=True)
    return scored[:limit]


def preferences_match_vehicle(prefs: "LeadPreferences", vehicle: "Vehicle") -> bool:
    if vehicle.brand_id in (prefs.brand_ids or []):
        return True
    if vehicle.model_id in (prefs.model_ids or []):
        return True
    return bool(
        prefs.min_price is not None
        and prefs.max_price is not None
        and prefs.min_price <= vehicle.price <= prefs.max_price
    )


def find_matching_leads(s: "Session", vehicle: "Vehicle") -> list["DealerLead"]:
    from app.autoexplora.modules.crm.models import DealerLead, LeadPreferences

    if not vehicle.dealer_id:
        return []
    rows = (
        s.query(LeadPreferences)
        .join(DealerLead, LeadPreferences.lead_id == DealerLead.id)
        .filter(DealerLead.dealer_id == vehicle.dealer_id, DealerLead.status.in_(OPEN_LEAD_STATUSES))
        .all()
    )
    return [p.lead for p in rows if preferences_match_vehicle(p, vehicle)]


def notify_matching_leads(s: "Session", vehicle: "Vehicle") -> int:
    """
    Notify the assignee of every matching lead (or the dealer's OWNER/MANAGERs when unassigned).
    Returns the number of matching leads. Caller commits.
    """
    from app.autoexplora.modules.dealers.service import dealer_managers
    from app.autoexplora.modules.notifications.service import notify_inventory_match

    leads = find_matching_leads(s, vehicle)
    if not leads:
        return 0
    managers: list[int] | None = None
    for lead in leads:
        if lead.assigned_to_id:
            recipients = [lead.assigned_to_id]
        else:
            if managers is None:
                managers = [u.id for u in dealer_managers(s, vehicle.dealer_id)]
            recipients = managers
        notify_inventory_match(s, recipients, lead.name, vehicle.title, lead.id, vehicle.id)
    return len(leads)
