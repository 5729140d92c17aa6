from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from flask import current_app
from sqlalchemy import func, or_

from app.autoexplora.audit import record_event
from app.autoexplora.constants import (
    ALLOWED_IMAGE_TYPES,
    CONDITIONS,
    FUEL_TYPES,
    LISTING_ADMIN_TRANSITIONS,
    LISTING_OWNER_TRANSITIONS,
    LISTING_STATUSES,
    MAX_IMAGE_BYTES,
    MAX_IMAGES,
    MAX_MILEAGE,
    MAX_PRICE,
    MIN_IMAGES,
    MIN_PRICE,
    MIN_YEAR,
    TRACTIONS,
    TRANSMISSIONS,
    VEHICLE_CATEGORIES,
    VEHICLE_TYPES,
)
from app.autoexplora.errors import ForbiddenError, NotFoundError, ValidationError
from app.autoexplora.modules.vehicles.models import Favorite, Vehicle, VehicleImage
from app.autoexplora.utils import clean_str, iso, is_valid_cl_phone, money, parse_bool, parse_decimal, parse_int, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.autoexplora.models import User
    from app.autoexplora.storage import Storage

PUBLIC_STATUSES = ("ACTIVE", "SOLD")

SORTS = {
    "price_asc": (Vehicle.price.asc(),),
    "price_desc": (Vehicle.price.desc(),),
    "year_desc": (Vehicle.year.desc(),),
    "year_asc": (Vehicle.year.asc(),),
    "mileage_asc": (Vehicle.mileage.asc(),),
    "recent": (Vehicle.published_at.desc(),),
}


# ---------- Serialization ----------
def serialize_image(img: VehicleImage) -> dict:
    return {"id": img.id, "url": img.url, "is_primary": img.is_primary, "order": img.order}


def serialize_vehicle_card(v: Vehicle) -> dict:
    primary = v.primary_image
    return {
        "id": v.id,
        "slug": v.slug,
        "title": v.title,
        "price": money(v.price),
        "negotiable": v.negotiable,
        "vehicle_type": v.vehicle_type,
        "category": v.category,
        "condition": v.condition,
        "year": v.year,
        "mileage": v.mileage,
        "fuel_type": v.fuel_type,
        "transmission": v.transmission,
        "brand": {"id": v.brand.id, "name": v.brand.name, "slug": v.brand.slug},
        "model": {"id": v.model.id, "name": v.model.name, "slug": v.model.slug},
        "region": {"id": v.region.id, "name": v.region.name, "slug": v.region.slug},
        "image": primary.url if primary else None,
        "featured": v.featured,
        "status": v.status,
        "dealer": {"id": v.dealer.id, "slug": v.dealer.slug, "trade_name": v.dealer.trade_name} if v.dealer else None,
        "published_at": iso(v.published_at),
    }


def serialize_vehicle(v: Vehicle, *, private: bool = False) -> dict:
    data = serialize_vehicle_card(v)
    data.update(
        {
            "description": v.description,
            "version": {"id": v.version.id, "name": v.version.name} if v.version else None,
            "comuna": {"id": v.comuna.id, "name": v.comuna.name} if v.comuna else None,
            "traction": v.traction,
            "engine_size": v.engine_size,
            "color": v.color,
            "doors": v.doors,
            "contact_phone": v.contact_phone if (v.show_phone or private) else None,
            "contact_whatsapp": v.contact_whatsapp,
            "show_phone": v.show_phone,
            "images": [serialize_image(img) for img in v.images],
            "views": v.views,
            "seller": {"id": v.user.id, "name": v.user.display_name, "image": v.user.image},
        }
    )
    if private:
        data.update(
            {
                "contact_clicks": v.contact_clicks,
                "expires_at": iso(v.expires_at),
                "sold_at": iso(v.sold_at),
                "created_at": iso(v.created_at),
                "updated_at": iso(v.updated_at),
            }
        )
    return data


# ---------- Validation ----------
def validate_vehicle_payload(s: "Session", payload: dict, *, vehicle: Vehicle | None = None) -> list[str]:
    """
    Validate a create (vehicle is None) or a partial update payload. Returns a list of error strings.
    Cross-entity checks (model in brand, version in model, comuna in region) use the stored values
    for fields the payload does not change.
    """
    from app.autoexplora.modules.catalog.models import Brand, Comuna, Region, Version, VehicleModel

    errors: list[str] = []
    partial = vehicle is not None

    def present(key: str) -> bool:
        return not partial or key in payload

    def current(key: str):
        if key in payload:
            return payload.get(key)
        return getattr(vehicle, key) if vehicle is not None else None

    vehicle_type = current("vehicle_type")
    if present("vehicle_type") and vehicle_type not in VEHICLE_TYPES:
        errors.append("Tipo de vehículo inválido")
    if present("category") or present("vehicle_type"):
        if current("category") not in VEHICLE_CATEGORIES.get(vehicle_type or "", ()):
            errors.append("Categoría inválida para el tipo de vehículo")
    if present("condition") and payload.get("condition") not in CONDITIONS:
        errors.append("Condición inválida")

    if present("title"):
        title = clean_str(payload.get("title")) or ""
        if len(title) < 10:
            errors.append("El título debe tener al menos 10 caracteres")
        elif len(title) > 100:
            errors.append("El título no puede exceder 100 caracteres")
    if len(payload.get("description") or "") > 2000:
        errors.append("La descripción es muy larga")

    if present("price"):
        price = parse_decimal(payload.get("price"))
        if price is None:
            errors.append("Ingresa el precio")
        elif price < MIN_PRICE:
            errors.append("El precio mínimo es $100.000")
        elif price > MAX_PRICE:
            errors.append("El precio máximo es $500.000.000")

    if present("year"):
        year = parse_int(payload.get("year"))
        if year is None or year < MIN_YEAR:
            errors.append(f"El año debe ser {MIN_YEAR} o posterior")
        elif year > datetime.utcnow().year + 1:
            errors.append("Año inválido")
    if present("mileage"):
        mileage = parse_int(payload.get("mileage"))
        if mileage is None:
            errors.append("Ingresa el kilometraje")
        elif mileage < 0:
            errors.append("El kilometraje no puede ser negativo")
        elif mileage > MAX_MILEAGE:
            errors.append("Kilometraje inválido")

    if payload.get("fuel_type") and payload["fuel_type"] not in FUEL_TYPES:
        errors.append("Combustible inválido")
    if payload.get("transmission") and payload["transmission"] not in TRANSMISSIONS:
        errors.append("Transmisión inválida")
    if payload.get("traction") and payload["traction"] not in TRACTIONS:
        errors.append("Tracción inválida")
    doors = payload.get("doors")
    if doors not in (None, ""):
        n = parse_int(doors)
        if n is None or n < 2 or n > 6:
            errors.append("Número de puertas inválido")

    if present("contact_phone") and not is_valid_cl_phone(payload.get("contact_phone")):
        errors.append("Formato inválido. Ej: +56 9 1234 5678")
    whatsapp = clean_str(payload.get("contact_whatsapp"))
    if whatsapp and not is_valid_cl_phone(whatsapp):
        errors.append("Formato de WhatsApp inválido. Ej: +56 9 1234 5678")

    # Catalog / location integrity
    brand_id = parse_int(current("brand_id"))
    model_id = parse_int(current("model_id"))
    version_id = parse_int(current("version_id"))
    if present("brand_id") or present("model_id") or present("version_id"):
        brand = s.get(Brand, brand_id) if brand_id else None
        if not brand:
            errors.append("Marca no válida")
        else:
            model = s.get(VehicleModel, model_id) if model_id else None
            if not model or model.brand_id != brand.id:
                errors.append("Modelo no válido para esta marca")
            elif version_id:
                version = s.get(Version, version_id)
                if not version or version.model_id != model.id:
                    errors.append("Versión no válida para este modelo")
    region_id = parse_int(current("region_id"))
    comuna_id = parse_int(current("comuna_id"))
    if present("region_id") or present("comuna_id"):
        region = s.get(Region, region_id) if region_id else None
        if not region:
            errors.append("Región no válida")
        elif comuna_id:
            comuna = s.get(Comuna, comuna_id)
            if not comuna or comuna.region_id != region.id:
                errors.append("Comuna no válida para esta región")

    images = payload.get("images")
    if images is not None:
        if not isinstance(images, list):
            errors.append("Imágenes inválidas")
        elif len(images) > MAX_IMAGES:
            errors.append(f"Máximo {MAX_IMAGES} imágenes")
        elif any(not isinstance(img, dict) or not clean_str(img.get("url")) for img in images):
            errors.append("Imagen sin URL")
    return errors


# ---------- Slug ----------
def build_vehicle_slug(v: Vehicle) -> str:
    """`{year}-{brand}-{model}-{first title words}-{id}`; the id suffix keeps it unique."""
    title_words = "-".join(slugify(v.title).split("-")[:5])
    parts = [str(v.year), v.brand.slug, v.model.slug, title_words, str(v.id)]
    return "-".join(p for p in parts if p)


# ---------- Create / update ----------
_SCALAR_FIELDS = (
    "title",
    "description",
    "vehicle_type",
    "category",
    "condition",
    "fuel_type",
    "transmission",
    "traction",
    "engine_size",
    "color",
    "contact_phone",
    "contact_whatsapp",
)
_INT_FIELDS = ("brand_id", "model_id", "version_id", "region_id", "comuna_id", "year", "mileage", "doors")


def _apply_fields(v: Vehicle, payload: dict) -> dict:
    changes: dict = {}

    def put(field: str, value) -> None:
        old = getattr(v, field)
        if old != value:
            changes[field] = {"old": old, "new": value}
            setattr(v, field, value)

    for field in _SCALAR_FIELDS:
        if field in payload:
            put(field, clean_str(payload.get(field)))
    for field in _INT_FIELDS:
        if field in payload:
            put(field, parse_int(payload.get(field)))
    if "price" in payload:
        put("price", parse_decimal(payload.get("price")))
    if "negotiable" in payload:
        put("negotiable", bool(parse_bool(payload.get("negotiable"), False)))
    if "show_phone" in payload:
        put("show_phone", bool(parse_bool(payload.get("show_phone"), True)))
    return changes


def _replace_images(v: Vehicle, images: list[dict]) -> None:
    v.images.clear()
    has_primary = any(parse_bool(img.get("is_primary"), False) for img in images)
    for i, img in enumerate(images):
        v.images.append(
            VehicleImage(
                url=img["url"].strip(),
                storage_key=clean_str(img.get("storage_key")),
                is_primary=bool(parse_bool(img.get("is_primary"), False)) if has_primary else i == 0,
                order=parse_int(img.get("order"), i) if img.get("order") is not None else i,
            )
        )


def _publish(v: Vehicle, now: datetime) -> None:
    if len(v.images) < MIN_IMAGES:
        raise ValidationError(f"Debes subir al menos {MIN_IMAGES} imágenes")
    ttl = int(current_app.config.get("LISTING_TTL_DAYS", 30))
    v.status = "ACTIVE"
    v.published_at = now
    v.expires_at = now + timedelta(days=ttl)


def create_vehicle(s: "Session", user: "User", payload: dict) -> Vehicle:
    """
    Create a listing for `user`. Published immediately unless `status` is DRAFT.
    Listings from dealer members belong to the member's dealer.
    """
    errors = validate_vehicle_payload(s, payload)
    if errors:
        raise ValidationError.from_errors(errors)

    dealer_id = None
    if user.dealer_id:
        from app.autoexplora.rbac import resolve_dealer_membership

        dealer_id = resolve_dealer_membership(user).id

    now = datetime.utcnow()
    v = Vehicle(user_id=user.id, dealer_id=dealer_id, status="DRAFT", created_at=now, updated_at=now)
    v.slug = f"tmp-{uuid.uuid4().hex}"
    _apply_fields(v, payload)
    _replace_images(v, payload.get("images") or [])
    if (payload.get("status") or "ACTIVE").upper() != "DRAFT":
        _publish(v, now)
    s.add(v)
    s.flush()
    s.refresh(v, attribute_names=["brand", "model"])
    v.slug = build_vehicle_slug(v)
    record_event(
        s,
        actor=user,
        action="vehicle.create",
        entity_type="Vehicle",
        entity_id=str(v.id),
        metadata={"status": v.status, "dealer_id": dealer_id},
    )
    return v


def update_vehicle(s: "Session", v: Vehicle, payload: dict, user: "User") -> Vehicle:
    errors = validate_vehicle_payload(s, payload, vehicle=v)
    if errors:
        raise ValidationError.from_errors(errors)
    changes = _apply_fields(v, payload)
    if payload.get("images") is not None:
        if v.status == "ACTIVE" and len(payload["images"]) < MIN_IMAGES:
            raise ValidationError(f"Debes subir al menos {MIN_IMAGES} imágenes")
        _replace_images(v, payload["images"])
        changes["images"] = len(payload["images"])
    v.updated_at = datetime.utcnow()
    stale = [field[:-3] for field in _INT_FIELDS if field.endswith("_id") and field in changes]
    if stale:
        s.flush()
        s.refresh(v, attribute_names=stale)
    if {"title", "year", "brand_id", "model_id"} & changes.keys():
        v.slug = build_vehicle_slug(v)
    record_event(s, actor=user, action="vehicle.update", entity_type="Vehicle", entity_id=str(v.id), metadata={"changes": changes})
    return v


def change_status(s: "Session", v: Vehicle, new_status: str, user: "User", *, as_admin: bool = False, reason: str | None = None) -> Vehicle:
    if new_status not in LISTING_STATUSES:
        raise ValidationError("Estado inválido")
    transitions = LISTING_ADMIN_TRANSITIONS if as_admin else LISTING_OWNER_TRANSITIONS
    if new_status not in transitions.get(v.status, ()):
        raise ValidationError(f"No se puede cambiar de {v.status} a {new_status}")
    old = v.status
    now = datetime.utcnow()
    if new_status == "ACTIVE" and old in ("DRAFT", "EXPIRED", "REJECTED"):
        _publish(v, now)
    else:
        v.status = new_status
    if new_status == "SOLD":
        v.sold_at = now
    v.updated_at = now
    record_event(
        s,
        actor=user,
        action="vehicle.status",
        entity_type="Vehicle",
        entity_id=str(v.id),
        reason=clean_str(reason),
        metadata={"old": old, "new": new_status, "admin": as_admin},
    )
    return v


def delete_vehicle(s: "Session", v: Vehicle, user: "User", storage: "Storage | None" = None) -> None:
    keys = [img.storage_key for img in v.images if img.storage_key]
    record_event(s, actor=user, action="vehicle.delete", entity_type="Vehicle", entity_id=str(v.id), metadata={"title": v.title})
    s.delete(v)
    s.flush()
    if storage is not None:
        for key in keys:
            storage.delete(key)


def can_manage(user: "User", v: Vehicle) -> bool:
    """Publisher, or an OWNER/MANAGER of the listing's dealer."""
    if v.user_id == user.id:
        return True
    return bool(v.dealer_id and user.dealer_id == v.dealer_id and user.dealer_role in ("OWNER", "MANAGER"))


def get_vehicle(s: "Session", vehicle_id: int) -> Vehicle:
    v = s.get(Vehicle, vehicle_id)
    if not v:
        raise NotFoundError("Vehículo no encontrado")
    return v


def get_managed_vehicle(s: "Session", vehicle_id: int, user: "User") -> Vehicle:
    v = get_vehicle(s, vehicle_id)
    if not can_manage(user, v):
        raise ForbiddenError("No tienes permisos para modificar este vehículo")
    return v


# ---------- Public queries ----------
def search_vehicles(s: "Session", filters: dict, *, statuses: tuple[str, ...] = ("ACTIVE",)):
    """Build the listing search query. `filters` uses request-arg names."""
    from app.autoexplora.modules.catalog.models import Brand, Region, VehicleModel

    q = s.query(Vehicle).filter(Vehicle.status.in_(statuses))

    def arg(name: str) -> str | None:
        return clean_str(filters.get(name))

    for name, column in (
        ("vehicle_type", Vehicle.vehicle_type),
        ("category", Vehicle.category),
        ("condition", Vehicle.condition),
        ("fuel_type", Vehicle.fuel_type),
        ("transmission", Vehicle.transmission),
    ):
        value = arg(name)
        if value:
            q = q.filter(column == value.upper())

    # brand/model/region accept an id or a slug
    brand = arg("brand") or arg("brand_id")
    if brand:
        q = q.filter(Vehicle.brand_id == int(brand)) if brand.isdigit() else q.join(Brand, Vehicle.brand).filter(Brand.slug == brand)
    model = arg("model") or arg("model_id")
    if model:
        q = q.filter(Vehicle.model_id == int(model)) if model.isdigit() else q.join(VehicleModel, Vehicle.model).filter(VehicleModel.slug == model)
    region = arg("region") or arg("region_id")
    if region:
        q = q.filter(Vehicle.region_id == int(region)) if region.isdigit() else q.join(Region, Vehicle.region).filter(Region.slug == region)

    dealer_id = parse_int(filters.get("dealer_id"))
    if dealer_id:
        q = q.filter(Vehicle.dealer_id == dealer_id)

    min_price, max_price = parse_decimal(filters.get("min_price")), parse_decimal(filters.get("max_price"))
    if min_price is not None:
        q = q.filter(Vehicle.price >= min_price)
    if max_price is not None:
        q = q.filter(Vehicle.price <= max_price)
    min_year, max_year = parse_int(filters.get("min_year")), parse_int(filters.get("max_year"))
    if min_year is not None:
        q = q.filter(Vehicle.year >= min_year)
    if max_year is not None:
        q = q.filter(Vehicle.year <= max_year)

    search = arg("q") or arg("search")
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Vehicle.title.ilike(like), Vehicle.description.ilike(like)))

    sort = arg("sort")
    if sort in SORTS:
        q = q.order_by(*SORTS[sort], Vehicle.id.desc())
    else:
        q = q.order_by(Vehicle.featured.desc(), Vehicle.published_at.desc(), Vehicle.id.desc())
    return q


def recent_vehicles(s: "Session", limit: int = 8) -> list[Vehicle]:
    return (
        s.query(Vehicle)
        .filter(Vehicle.status == "ACTIVE")
        .order_by(Vehicle.published_at.desc(), Vehicle.id.desc())
        .limit(limit)
        .all()
    )


def featured_vehicles(s: "Session", limit: int = 8, dealer_id: int | None = None) -> list[Vehicle]:
    q = s.query(Vehicle).filter(Vehicle.status == "ACTIVE")
    if dealer_id:
        q = q.filter(Vehicle.dealer_id == dealer_id)
    return q.order_by(Vehicle.featured.desc(), Vehicle.views.desc(), Vehicle.published_at.desc()).limit(limit).all()


def get_public_vehicle(s: "Session", key: str, *, dealer_id: int | None = None) -> Vehicle:
    """Look up by numeric id or slug. Only ACTIVE and SOLD listings are public."""
    q = s.query(Vehicle).filter(Vehicle.status.in_(PUBLIC_STATUSES))
    q = q.filter(Vehicle.id == int(key)) if key.isdigit() else q.filter(Vehicle.slug == key)
    if dealer_id:
        q = q.filter(Vehicle.dealer_id == dealer_id)
    v = q.one_or_none()
    if not v:
        raise NotFoundError("Vehículo no encontrado")
    return v


def related_vehicles(s: "Session", v: Vehicle, limit: int = 4) -> list[Vehicle]:
    return (
        s.query(Vehicle)
        .filter(Vehicle.status == "ACTIVE", Vehicle.id != v.id, or_(Vehicle.model_id == v.model_id, Vehicle.category == v.category))
        .order_by(Vehicle.published_at.desc())
        .limit(limit)
        .all()
    )


def increment_counter(s: "Session", vehicle_id: int, counter: str) -> bool:
    """Atomic `views`/`contact_clicks` bump on an ACTIVE listing; False when nothing matched."""
    column = {"view": Vehicle.views, "contact_click": Vehicle.contact_clicks}[counter]
    updated = (
        s.query(Vehicle)
        .filter(Vehicle.id == vehicle_id, Vehicle.status == "ACTIVE")
        .update({column: column + 1}, synchronize_session=False)
    )
    return bool(updated)


# ---------- Favorites ----------
def add_favorite(s: "Session", user: "User", vehicle_id: int) -> Favorite:
    v = get_vehicle(s, vehicle_id)
    existing = s.query(Favorite).filter(Favorite.user_id == user.id, Favorite.vehicle_id == v.id).one_or_none()
    if existing:
        return existing
    fav = Favorite(user_id=user.id, vehicle_id=v.id)
    s.add(fav)
    s.flush()
    return fav


def remove_favorite(s: "Session", user: "User", vehicle_id: int) -> None:
    s.query(Favorite).filter(Favorite.user_id == user.id, Favorite.vehicle_id == vehicle_id).delete(synchronize_session=False)


def list_favorites(s: "Session", user: "User") -> list[Favorite]:
    return s.query(Favorite).filter(Favorite.user_id == user.id).order_by(Favorite.created_at.desc()).all()


# ---------- Images ----------
def store_vehicle_image(storage: "Storage", file_storage, user: "User") -> dict:
    """Validate and persist one uploaded image; returns {"url", "storage_key"}."""
    if not file_storage or not file_storage.filename:
        raise ValidationError("No se proporcionó archivo")
    content_type = (file_storage.mimetype or "").lower()
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise ValidationError("Tipo de archivo no permitido. Usa JPG, PNG o WebP")
    data = file_storage.read()
    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationError("El archivo es muy grande. Máximo 10MB")
    if not data:
        raise ValidationError("Archivo vacío")
    ext = {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"}[content_type]
    key = f"vehicles/{user.id}/{datetime.utcnow():%Y%m}/{uuid.uuid4().hex}.{ext}"
    storage.put_bytes(key, data, content_type=content_type)
    return {"url": storage.url(key), "storage_key": key}


# ---------- Maintenance / stats ----------
def expire_listings(s: "Session", now: datetime | None = None) -> int:
    now = now or datetime.utcnow()
    count = (
        s.query(Vehicle)
        .filter(Vehicle.status == "ACTIVE", Vehicle.expires_at.is_not(None), Vehicle.expires_at < now)
        .update({Vehicle.status: "EXPIRED", Vehicle.updated_at: now}, synchronize_session=False)
    )
    return int(count or 0)


def vehicle_counts_by_status(s: "Session") -> dict:
    rows = s.query(Vehicle.status, func.count(Vehicle.id)).group_by(Vehicle.status).all()
    counts = {status: 0 for status in LISTING_STATUSES}
    counts.update({status: int(n) for status, n in rows})
    return counts
