from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.autoexplora.audit import record_event
from app.autoexplora.constants import VEHICLE_TYPES
from app.autoexplora.errors import ConflictError, NotFoundError, ValidationError
from app.autoexplora.modules.catalog.models import Brand, Comuna, Region, VehicleModel, Version
from app.autoexplora.utils import clean_str, parse_int, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.autoexplora.models import User


# ---------- Serialization ----------
def serialize_brand(b: Brand, *, vehicle_count: int | None = None) -> dict:
    data = {
        "id": b.id,
        "name": b.name,
        "slug": b.slug,
        "logo": b.logo,
        "is_active": b.is_active,
        "vehicle_types": list(b.vehicle_types or []),
    }
    if vehicle_count is not None:
        data["vehicle_count"] = vehicle_count
    return data


def serialize_model(m: VehicleModel) -> dict:
    return {"id": m.id, "brand_id": m.brand_id, "name": m.name, "slug": m.slug}


def serialize_version(v: Version) -> dict:
    return {
        "id": v.id,
        "model_id": v.model_id,
        "name": v.name,
        "slug": v.slug,
        "engine_size": v.engine_size,
        "horse_power": v.horse_power,
        "transmission": v.transmission,
        "drivetrain": v.drivetrain,
        "trim_level": v.trim_level,
    }


def serialize_region(r: Region, *, with_comunas: bool = False) -> dict:
    data = {"id": r.id, "name": r.name, "slug": r.slug, "order": r.order}
    if with_comunas:
        data["comunas"] = [serialize_comuna(c) for c in r.comunas]
    return data


def serialize_comuna(c: Comuna) -> dict:
    return {"id": c.id, "region_id": c.region_id, "name": c.name, "slug": c.slug}


# ---------- Public queries ----------
def list_brands(s: "Session", *, vehicle_type: str | None = None, include_inactive: bool = False) -> list[Brand]:
    q = s.query(Brand)
    if not include_inactive:
        q = q.filter(Brand.is_active.is_(True))
    brands = q.order_by(Brand.name.asc()).all()
    if vehicle_type:
        # Brands with no tagged types are offered for every type.
        brands = [b for b in brands if not b.vehicle_types or vehicle_type in b.vehicle_types]
    return brands


def popular_brands(s: "Session", limit: int = 12) -> list[tuple[Brand, int]]:
    """Brands ordered by number of ACTIVE listings."""
    from app.autoexplora.modules.vehicles.models import Vehicle

    rows = (
        s.query(Brand, func.count(Vehicle.id).label("cnt"))
        .join(Vehicle, Vehicle.brand_id == Brand.id)
        .filter(Vehicle.status == "ACTIVE", Brand.is_active.is_(True))
        .group_by(Brand.id)
        .order_by(func.count(Vehicle.id).desc(), Brand.name.asc())
        .limit(limit)
        .all()
    )
    return [(b, int(cnt)) for b, cnt in rows]


def get_brand(s: "Session", brand_id: int) -> Brand:
    brand = s.get(Brand, brand_id)
    if not brand:
        raise NotFoundError("Marca no encontrada")
    return brand


def get_model(s: "Session", model_id: int, brand_id: int | None = None) -> VehicleModel:
    model = s.get(VehicleModel, model_id)
    if not model or (brand_id is not None and model.brand_id != brand_id):
        raise NotFoundError("Modelo no encontrado")
    return model


def get_version(s: "Session", version_id: int) -> Version:
    version = s.get(Version, version_id)
    if not version:
        raise NotFoundError("Versión no encontrada")
    return version


def get_region(s: "Session", region_id: int) -> Region:
    region = s.get(Region, region_id)
    if not region:
        raise NotFoundError("Región no encontrada")
    return region


def get_comuna(s: "Session", comuna_id: int) -> Comuna:
    comuna = s.get(Comuna, comuna_id)
    if not comuna:
        raise NotFoundError("Comuna no encontrada")
    return comuna


def list_regions(s: "Session") -> list[Region]:
    return s.query(Region).order_by(Region.order.asc(), Region.name.asc()).all()


# ---------- Admin writes ----------
def _name_and_slug(payload: dict, label: str) -> tuple[str, str]:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValidationError(f"Nombre requerido ({label})")
    if len(name) > 128:
        raise ValidationError("El nombre no puede superar 128 caracteres")
    slug = slugify(clean_str(payload.get("slug")) or name)
    if not slug:
        raise ValidationError("Slug inválido")
    return name, slug


def _vehicle_types(payload: dict) -> list[str] | None:
    raw = payload.get("vehicle_types")
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = [t.strip() for t in raw.split(",") if t.strip()]
    types = [str(t).upper() for t in raw]
    bad = [t for t in types if t not in VEHICLE_TYPES]
    if bad:
        raise ValidationError(f"Tipo de vehículo inválido: {', '.join(bad)}")
    return types


def create_brand(s: "Session", payload: dict, user: "User") -> Brand:
    name, slug = _name_and_slug(payload, "marca")
    if s.query(Brand).filter(Brand.slug == slug).first():
        raise ConflictError("Ya existe una marca con ese slug")
    now = datetime.utcnow()
    brand = Brand(
        name=name,
        slug=slug,
        logo=clean_str(payload.get("logo")),
        is_active=payload.get("is_active", True) is not False,
        vehicle_types=_vehicle_types(payload) or [],
        created_at=now,
        updated_at=now,
    )
    s.add(brand)
    s.flush()
    record_event(s, actor=user, action="catalog.brand.create", entity_type="Brand", entity_id=str(brand.id), metadata={"name": name, "slug": slug})
    return brand


def update_brand(s: "Session", brand: Brand, payload: dict, user: "User") -> Brand:
    changes: dict = {}
    if "name" in payload or "slug" in payload:
        merged = {"name": payload.get("name", brand.name), "slug": payload.get("slug") or (None if "name" in payload else brand.slug)}
        name, slug = _name_and_slug(merged, "marca")
        if slug != brand.slug and s.query(Brand).filter(Brand.slug == slug, Brand.id != brand.id).first():
            raise ConflictError("Ya existe una marca con ese slug")
        if name != brand.name:
            changes["name"] = {"old": brand.name, "new": name}
            brand.name = name
        if slug != brand.slug:
            changes["slug"] = {"old": brand.slug, "new": slug}
            brand.slug = slug
    if "logo" in payload:
        brand.logo = clean_str(payload.get("logo"))
    if "is_active" in payload:
        new_active = bool(payload.get("is_active"))
        if new_active != brand.is_active:
            changes["is_active"] = {"old": brand.is_active, "new": new_active}
            brand.is_active = new_active
    types = _vehicle_types(payload)
    if types is not None:
        brand.vehicle_types = types
    brand.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="catalog.brand.edit", entity_type="Brand", entity_id=str(brand.id), metadata={"changes": changes})
    return brand


def _ensure_unreferenced(s: "Session", column, value: int, message: str) -> None:
    from app.autoexplora.modules.vehicles.models import Vehicle

    in_use = s.query(func.count(Vehicle.id)).filter(column == value).scalar() or 0
    if in_use:
        raise ConflictError(f"{message} ({in_use} publicaciones)")


def delete_brand(s: "Session", brand: Brand, user: "User") -> None:
    from app.autoexplora.modules.vehicles.models import Vehicle

    _ensure_unreferenced(s, Vehicle.brand_id, brand.id, "No se puede eliminar una marca con vehículos asociados")
    record_event(s, actor=user, action="catalog.brand.delete", entity_type="Brand", entity_id=str(brand.id), metadata={"name": brand.name})
    s.delete(brand)


def create_model(s: "Session", brand: Brand, payload: dict, user: "User") -> VehicleModel:
    name, slug = _name_and_slug(payload, "modelo")
    exists = s.query(VehicleModel).filter(VehicleModel.brand_id == brand.id, VehicleModel.slug == slug).first()
    if exists:
        raise ConflictError("Ya existe un modelo con ese slug para esta marca")
    model = VehicleModel(brand_id=brand.id, name=name, slug=slug)
    s.add(model)
    s.flush()
    record_event(s, actor=user, action="catalog.model.create", entity_type="VehicleModel", entity_id=str(model.id), metadata={"brand": brand.name, "name": name})
    return model


def update_model(s: "Session", model: VehicleModel, payload: dict, user: "User") -> VehicleModel:
    merged = {"name": payload.get("name", model.name), "slug": payload.get("slug") or (None if "name" in payload else model.slug)}
    name, slug = _name_and_slug(merged, "modelo")
    clash = (
        s.query(VehicleModel)
        .filter(VehicleModel.brand_id == model.brand_id, VehicleModel.slug == slug, VehicleModel.id != model.id)
        .first()
    )
    if clash:
        raise ConflictError("Ya existe un modelo con ese slug para esta marca")
    old = {"name": model.name, "slug": model.slug}
    model.name, model.slug = name, slug
    record_event(s, actor=user, action="catalog.model.edit", entity_type="VehicleModel", entity_id=str(model.id), metadata={"before": old, "after": {"name": name, "slug": slug}})
    return model


def delete_model(s: "Session", model: VehicleModel, user: "User") -> None:
    from app.autoexplora.modules.vehicles.models import Vehicle

    _ensure_unreferenced(s, Vehicle.model_id, model.id, "No se puede eliminar un modelo con vehículos asociados")
    record_event(s, actor=user, action="catalog.model.delete", entity_type="VehicleModel", entity_id=str(model.id), metadata={"name": model.name})
    s.delete(model)


def _apply_version_specs(version: Version, payload: dict) -> None:
    for field in ("engine_size", "transmission", "drivetrain", "trim_level"):
        if field in payload:
            setattr(version, field, clean_str(payload.get(field)))
    if "horse_power" in payload:
        version.horse_power = parse_int(payload.get("horse_power"))


def create_version(s: "Session", model: VehicleModel, payload: dict, user: "User") -> Version:
    name, slug = _name_and_slug(payload, "versión")
    if s.query(Version).filter(Version.model_id == model.id, Version.slug == slug).first():
        raise ConflictError("Ya existe una versión con ese slug para este modelo")
    version = Version(model_id=model.id, name=name, slug=slug)
    _apply_version_specs(version, payload)
    s.add(version)
    s.flush()
    record_event(s, actor=user, action="catalog.version.create", entity_type="Version", entity_id=str(version.id), metadata={"model": model.name, "name": name})
    return version


def update_version(s: "Session", version: Version, payload: dict, user: "User") -> Version:
    merged = {"name": payload.get("name", version.name), "slug": payload.get("slug") or (None if "name" in payload else version.slug)}
    name, slug = _name_and_slug(merged, "versión")
    clash = (
        s.query(Version)
        .filter(Version.model_id == version.model_id, Version.slug == slug, Version.id != version.id)
        .first()
    )
    if clash:
        raise ConflictError("Ya existe una versión con ese slug para este modelo")
    version.name, version.slug = name, slug
    _apply_version_specs(version, payload)
    record_event(s, actor=user, action="catalog.version.edit", entity_type="Version", entity_id=str(version.id))
    return version


def delete_version(s: "Session", version: Version, user: "User") -> None:
    from app.autoexplora.modules.vehicles.models import Vehicle

    _ensure_unreferenced(s, Vehicle.version_id, version.id, "No se puede eliminar una versión con vehículos asociados")
    record_event(s, actor=user, action="catalog.version.delete", entity_type="Version", entity_id=str(version.id), metadata={"name": version.name})
    s.delete(version)


def create_region(s: "Session", payload: dict, user: "User") -> Region:
    name, slug = _name_and_slug(payload, "región")
    if s.query(Region).filter(Region.slug == slug).first():
        raise ConflictError("Ya existe una región con ese slug")
    order = parse_int(payload.get("order"))
    if order is None:
        order = (s.query(func.max(Region.order)).scalar() or 0) + 1
    region = Region(name=name, slug=slug, order=order)
    s.add(region)
    s.flush()
    record_event(s, actor=user, action="catalog.region.create", entity_type="Region", entity_id=str(region.id), metadata={"name": name})
    return region


def update_region(s: "Session", region: Region, payload: dict, user: "User") -> Region:
    merged = {"name": payload.get("name", region.name), "slug": payload.get("slug") or (None if "name" in payload else region.slug)}
    name, slug = _name_and_slug(merged, "región")
    if s.query(Region).filter(Region.slug == slug, Region.id != region.id).first():
        raise ConflictError("Ya existe una región con ese slug")
    region.name, region.slug = name, slug
    if "order" in payload:
        region.order = parse_int(payload.get("order"), region.order) or 0
    record_event(s, actor=user, action="catalog.region.edit", entity_type="Region", entity_id=str(region.id))
    return region


def delete_region(s: "Session", region: Region, user: "User") -> None:
    from app.autoexplora.modules.vehicles.models import Vehicle

    _ensure_unreferenced(s, Vehicle.region_id, region.id, "No se puede eliminar una región con vehículos asociados")
    record_event(s, actor=user, action="catalog.region.delete", entity_type="Region", entity_id=str(region.id), metadata={"name": region.name})
    s.delete(region)


def create_comuna(s: "Session", region: Region, payload: dict, user: "User") -> Comuna:
    name, slug = _name_and_slug(payload, "comuna")
    if s.query(Comuna).filter(Comuna.region_id == region.id, Comuna.slug == slug).first():
        raise ConflictError("Ya existe una comuna con ese slug en esta región")
    comuna = Comuna(region_id=region.id, name=name, slug=slug)
    s.add(comuna)
    s.flush()
    record_event(s, actor=user, action="catalog.comuna.create", entity_type="Comuna", entity_id=str(comuna.id), metadata={"region": region.name, "name": name})
    return comuna


def update_comuna(s: "Session", comuna: Comuna, payload: dict, user: "User") -> Comuna:
    merged = {"name": payload.get("name", comuna.name), "slug": payload.get("slug") or (None if "name" in payload else comuna.slug)}
    name, slug = _name_and_slug(merged, "comuna")
    clash = s.query(Comuna).filter(Comuna.region_id == comuna.region_id, Comuna.slug == slug, Comuna.id != comuna.id).first()
    if clash:
        raise ConflictError("Ya existe una comuna con ese slug en esta región")
    comuna.name, comuna.slug = name, slug
    record_event(s, actor=user, action="catalog.comuna.edit", entity_type="Comuna", entity_id=str(comuna.id))
    return comuna


def delete_comuna(s: "Session", comuna: Comuna, user: "User") -> None:
    from app.autoexplora.modules.vehicles.models import Vehicle

    _ensure_unreferenced(s, Vehicle.comuna_id, comuna.id, "No se puede eliminar una comuna con vehículos asociados")
    record_event(s, actor=user, action="catalog.comuna.delete", entity_type="Comuna", entity_id=str(comuna.id), metadata={"name": comuna.name})
    s.delete(comuna)


# ---------- Stats / CSV ----------
def catalog_stats(s: "Session") -> dict:
    from app.autoexplora.modules.vehicles.models import Vehicle

    empty_brands = (
        s.query(func.count(Brand.id))
        .filter(~Brand.id.in_(s.query(VehicleModel.brand_id).distinct()))
        .scalar()
        or 0
    )
    return {
        "brands": s.query(func.count(Brand.id)).scalar() or 0,
        "models": s.query(func.count(VehicleModel.id)).scalar() or 0,
        "versions": s.query(func.count(Version.id)).scalar() or 0,
        "regions": s.query(func.count(Region.id)).scalar() or 0,
        "comunas": s.query(func.count(Comuna.id)).scalar() or 0,
        "brands_without_models": empty_brands,
        "vehicles": s.query(func.count(Vehicle.id)).scalar() or 0,
    }


EXPORT_HEADERS = ["brand", "brand_slug", "model", "model_slug", "version", "version_slug", "engine_size", "horse_power", "transmission", "drivetrain", "trim_level"]


def export_catalog_csv(s: "Session") -> str:
    """One row per version; brands/models without children still get a row."""
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(EXPORT_HEADERS)
    for brand in s.query(Brand).order_by(Brand.name.asc()).all():
        if not brand.models:
            w.writerow([brand.name, brand.slug] + [""] * 9)
            continue
        for model in brand.models:
            if not model.versions:
                w.writerow([brand.name, brand.slug, model.name, model.slug] + [""] * 7)
                continue
            for v in model.versions:
                w.writerow([
                    brand.name, brand.slug, model.name, model.slug, v.name, v.slug,
                    v.engine_size or "", v.horse_power if v.horse_power is not None else "",
                    v.transmission or "", v.drivetrain or "", v.trim_level or "",
                ])
    # BOM so Excel opens accented names correctly.
    return "﻿" + out.getvalue()


@dataclass(frozen=True)
class CsvRowError:
    row_number: int
    message: str


def _get(row: dict[str, str], *names: str) -> str:
    for n in names:
        if n in row and row[n] is not None:
            return str(row[n]).strip()
    return ""


def import_catalog_csv(s: "Session", file_bytes: bytes, user: "User") -> dict:
    """
    Upsert brand/model/version rows. Headers: brand, model, version (model/version optional),
    plus optional version detail columns. Existing rows are matched by slug.
    """
    text = file_bytes.decode("utf-8-sig", errors="replace")
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValidationError("El archivo está vacío o mal formateado")
    headers = {h.strip().lower() for h in reader.fieldnames if h}
    if not ({"brand", "marca"} & headers):
        raise ValidationError("El archivo debe tener una columna 'brand'")

    created = {"brands": 0, "models": 0, "versions": 0}
    updated = 0
    errors: list[CsvRowError] = []
    brands = {b.slug: b for b in s.query(Brand).all()}

    for idx, raw in enumerate(reader, start=2):  # 1 = header
        row = {(k or "").strip().lower(): v for k, v in raw.items()}
        if all((v or "").strip() == "" for v in row.values()):
            continue
        brand_name = _get(row, "brand", "marca")
        if not brand_name:
            errors.append(CsvRowError(idx, "Falta la marca"))
            continue
        brand_slug = slugify(_get(row, "brand_slug") or brand_name)
        brand = brands.get(brand_slug)
        if brand is None:
            brand = Brand(name=brand_name, slug=brand_slug, vehicle_types=[])
            s.add(brand)
            s.flush()
            brands[brand_slug] = brand
            created["brands"] += 1

        model_name = _get(row, "model", "modelo")
        if not model_name:
            continue
        model_slug = slugify(_get(row, "model_slug") or model_name)
        model = s.query(VehicleModel).filter(VehicleModel.brand_id == brand.id, VehicleModel.slug == model_slug).one_or_none()
        if model is None:
            model = VehicleModel(brand_id=brand.id, name=model_name, slug=model_slug)
            s.add(model)
            s.flush()
            created["models"] += 1

        version_name = _get(row, "version", "versión")
        if not version_name:
            continue
        version_slug = slugify(_get(row, "version_slug") or version_name)
        version = s.query(Version).filter(Version.model_id == model.id, Version.slug == version_slug).one_or_none()
        specs = {k: row.get(k) for k in ("engine_size", "horse_power", "transmission", "drivetrain", "trim_level") if row.get(k)}
        if version is None:
            version = Version(model_id=model.id, name=version_name, slug=version_slug)
            _apply_version_specs(version, specs)
            s.add(version)
            s.flush()
            created["versions"] += 1
        elif specs:
            _apply_version_specs(version, specs)
            updated += 1

    record_event(
        s,
        actor=user,
        action="catalog.import_csv",
        entity_type="Catalog",
        metadata={"created": created, "updated": updated, "errors": len(errors)},
    )
    return {
        "created": created,
        "updated": updated,
        "errors": [{"row": e.row_number, "message": e.message} for e in errors],
    }
