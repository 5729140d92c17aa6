"""
Message template interpolation.

Templates reference variables as `{name}`. Known variables are replaced, unknown
ones are reported by `validate_template` and stripped by `interpolate`.
"""
from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal

TEMPLATE_VARIABLES = {
    "nombre": "Nombre del cliente",
    "email": "Email del cliente",
    "telefono": "Teléfono del cliente",
    "vehiculo": "Nombre del vehículo",
    "vehiculo_precio": "Precio del vehículo",
    "dealer_nombre": "Nombre de la automotora",
    "dealer_telefono": "Teléfono de la automotora",
    "dealer_direccion": "Dirección de la automotora",
    "fecha": "Fecha actual",
    "hora": "Hora actual",
}

SAMPLE_CONTEXT = {
    "nombre": "Juan Pérez",
    "email": "juan@ejemplo.com",
    "telefono": "+56 9 1234 5678",
    "vehiculo": "Toyota Corolla 2023",
    "vehiculo_precio": "$ 15.990.000",
    "dealer_nombre": "Automotora Ejemplo",
    "dealer_telefono": "+56 2 2345 6789",
    "dealer_direccion": "Av. Principal 123, Santiago",
}

_VAR_RE = re.compile(r"\{([a-z_]+)\}")

_MONTHS = (
    "enero",
    "febrero",
    "marzo",
    "abril",
    "mayo",
    "junio",
    "julio",
    "agosto",
    "septiembre",
    "octubre",
    "noviembre",
    "diciembre",
)


def format_clp(amount: int | Decimal | None) -> str:
    """15990000 -> '$ 15.990.000'."""
    if amount is None:
        return ""
    return "$ " + f"{int(amount):,}".replace(",", ".")


def format_date_es(dt: datetime) -> str:
    return f"{dt.day} de {_MONTHS[dt.month - 1]} de {dt.year}"


def extract_variables(template: str) -> list[str]:
    seen: list[str] = []
    for name in _VAR_RE.findall(template or ""):
        if name not in seen:
            seen.append(name)
    return seen


def validate_template(template: str) -> list[str]:
    """Unknown variable names used in `template`."""
    return [name for name in extract_variables(template) if name not in TEMPLATE_VARIABLES]


def interpolate(template: str, context: dict, *, now: datetime | None = None) -> str:
    now = now or datetime.now()
    values = {"fecha": format_date_es(now), "hora": now.strftime("%H:%M")}
    values.update({k: v for k, v in context.items() if v is not None})

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name in TEMPLATE_VARIABLES and name in values:
            return str(values[name])
        return ""

    return _VAR_RE.sub(_sub, template or "")


def preview(template: str) -> str:
    return interpolate(template, SAMPLE_CONTEXT)


def lead_context(lead) -> dict:
    """Interpolation context for a DealerLead."""
    dealer = lead.dealer
    vehicle = lead.vehicle
    return {
        "nombre": lead.name,
        "email": lead.email,
        "telefono": lead.phone or "",
        "vehiculo": vehicle.title if vehicle else "",
        "vehiculo_precio": format_clp(vehicle.price) if vehicle else "",
        "dealer_nombre": dealer.trade_name,
        "dealer_telefono": dealer.phone or "",
        "dealer_direccion": dealer.address or "",
    }
