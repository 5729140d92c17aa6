from __future__ import annotations

from datetime import date

from flask import Blueprint, Response, g, jsonify, request

from app.autoexplora.db import db_session
from app.autoexplora.errors import ValidationError
from app.autoexplora.modules.catalog import service as svc
from app.autoexplora.modules.catalog.models import Brand, Version
from app.autoexplora.rbac import require_permission
from app.autoexplora.utils import json_payload, parse_int

bp = Blueprint("catalog", __name__)


# ---------- Public ----------
@bp.get("/brands")
def brands_list():
    s = db_session()
    vehicle_type = (request.args.get("vehicle_type") or "").strip().upper() or None
    brands = svc.list_brands(s, vehicle_type=vehicle_type)
    return jsonify({"items": [svc.serialize_brand(b) for b in brands]})


@bp.get("/brands/popular")
def brands_popular():
    s = db_session()
    limit = min(parse_int(request.args.get("limit"), 12) or 12, 50)
    rows = svc.popular_brands(s, limit=limit)
    return jsonify({"items": [svc.serialize_brand(b, vehicle_count=cnt) for b, cnt in rows]})


@bp.get("/brands/<int:brand_id>/models")
def brand_models(brand_id: int):
    s = db_session()
    brand = svc.get_brand(s, brand_id)
    return jsonify({"items": [svc.serialize_model(m) for m in brand.models]})


@bp.get("/brands/<int:brand_id>/models/<int:model_id>/versions")
def model_versions(brand_id: int, model_id: int):
    s = db_session()
    model = svc.get_model(s, model_id, brand_id=brand_id)
    return jsonify({"items": [svc.serialize_version(v) for v in model.versions]})


@bp.get("/regions")
def regions_list():
    s = db_session()
    return jsonify({"items": [svc.serialize_region(r, with_comunas=True) for r in svc.list_regions(s)]})


# ---------- Admin: brands ----------
@bp.get("/admin/brands")
@require_permission("catalog.manage")
def admin_brands_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    q = s.query(Brand)
    if search:
        q = q.filter(Brand.name.ilike(f"%{search}%"))
    brands = q.order_by(Brand.name.asc()).all()
    return jsonify({"items": [svc.serialize_brand(b) | {"model_count": len(b.models)} for b in brands]})


@bp.post("/admin/brands")
@require_permission("catalog.manage")
def admin_brands_create():
    s = db_session()
    brand = svc.create_brand(s, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_brand(brand)), 201


@bp.get("/admin/brands/<int:brand_id>")
@require_permission("catalog.manage")
def admin_brand_detail(brand_id: int):
    s = db_session()
    brand = svc.get_brand(s, brand_id)
    data = svc.serialize_brand(brand)
    data["models"] = [svc.serialize_model(m) | {"version_count": len(m.versions)} for m in brand.models]
    return jsonify(data)


@bp.patch("/admin/brands/<int:brand_id>")
@require_permission("catalog.manage")
def admin_brand_update(brand_id: int):
    s = db_session()
    brand = svc.update_brand(s, svc.get_brand(s, brand_id), json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_brand(brand))


@bp.delete("/admin/brands/<int:brand_id>")
@require_permission("catalog.manage")
def admin_brand_delete(brand_id: int):
    s = db_session()
    svc.delete_brand(s, svc.get_brand(s, brand_id), g.current_user)
    s.commit()
    return jsonify({"success": True})


# ---------- Admin: models ----------
@bp.post("/admin/models")
@require_permission("catalog.manage")
def admin_models_create():
    s = db_session()
    payload = json_payload()
    brand = svc.get_brand(s, parse_int(payload.get("brand_id"), 0))
    model = svc.create_model(s, brand, payload, g.current_user)
    s.commit()
    return jsonify(svc.serialize_model(model)), 201


@bp.patch("/admin/models/<int:model_id>")
@require_permission("catalog.manage")
def admin_model_update(model_id: int):
    s = db_session()
    model = svc.update_model(s, svc.get_model(s, model_id), json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_model(model))


@bp.delete("/admin/models/<int:model_id>")
@require_permission("catalog.manage")
def admin_model_delete(model_id: int):
    s = db_session()
    svc.delete_model(s, svc.get_model(s, model_id), g.current_user)
    s.commit()
    return jsonify({"success": True})


# ---------- Admin: versions ----------
@bp.get("/admin/versions")
@require_permission("catalog.manage")
def admin_versions_list():
    s = db_session()
    q = s.query(Version)
    model_id = request.args.get("model_id")
    if model_id:
        q = q.filter(Version.model_id == parse_int(model_id, 0))
    versions = q.order_by(Version.name.asc()).limit(500).all()
    return jsonify({"items": [svc.serialize_version(v) for v in versions]})


@bp.post("/admin/versions")
@require_permission("catalog.manage")
def admin_versions_create():
    s = db_session()
    payload = json_payload()
    model = svc.get_model(s, parse_int(payload.get("model_id"), 0))
    version = svc.create_version(s, model, payload, g.current_user)
    s.commit()
    return jsonify(svc.serialize_version(version)), 201


@bp.patch("/admin/versions/<int:version_id>")
@require_permission("catalog.manage")
def admin_version_update(version_id: int):
    s = db_session()
    version = svc.update_version(s, svc.get_version(s, version_id), json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_version(version))


@bp.delete("/admin/versions/<int:version_id>")
@require_permission("catalog.manage")
def admin_version_delete(version_id: int):
    s = db_session()
    svc.delete_version(s, svc.get_version(s, version_id), g.current_user)
    s.commit()
    return jsonify({"success": True})


# ---------- Admin: regions / comunas ----------
@bp.post("/admin/regions")
@require_permission("catalog.manage")
def admin_regions_create():
    s = db_session()
    region = svc.create_region(s, json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_region(region)), 201


@bp.patch("/admin/regions/<int:region_id>")
@require_permission("catalog.manage")
def admin_region_update(region_id: int):
    s = db_session()
    region = svc.update_region(s, svc.get_region(s, region_id), json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_region(region))


@bp.delete("/admin/regions/<int:region_id>")
@require_permission("catalog.manage")
def admin_region_delete(region_id: int):
    s = db_session()
    svc.delete_region(s, svc.get_region(s, region_id), g.current_user)
    s.commit()
    return jsonify({"success": True})


@bp.post("/admin/comunas")
@require_permission("catalog.manage")
def admin_comunas_create():
    s = db_session()
    payload = json_payload()
    region = svc.get_region(s, parse_int(payload.get("region_id"), 0))
    comuna = svc.create_comuna(s, region, payload, g.current_user)
    s.commit()
    return jsonify(svc.serialize_comuna(comuna)), 201


@bp.patch("/admin/comunas/<int:comuna_id>")
@require_permission("catalog.manage")
def admin_comuna_update(comuna_id: int):
    s = db_session()
    comuna = svc.update_comuna(s, svc.get_comuna(s, comuna_id), json_payload(), g.current_user)
    s.commit()
    return jsonify(svc.serialize_comuna(comuna))


@bp.delete("/admin/comunas/<int:comuna_id>")
@require_permission("catalog.manage")
def admin_comuna_delete(comuna_id: int):
    s = db_session()
    svc.delete_comuna(s, svc.get_comuna(s, comuna_id), g.current_user)
    s.commit()
    return jsonify({"success": True})


# ---------- Admin: stats / import / export ----------
@bp.get("/admin/catalog/stats")
@require_permission("catalog.manage")
def admin_catalog_stats():
    return jsonify(svc.catalog_stats(db_session()))


@bp.get("/admin/catalog/export")
@require_permission("catalog.manage")
def admin_catalog_export():
    csv_text = svc.export_catalog_csv(db_session())
    filename = f"catalogo-{date.today().isoformat()}.csv"
    return Response(
        csv_text,
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@bp.post("/admin/catalog/import")
@require_permission("catalog.manage")
def admin_catalog_import():
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("No se proporcionó archivo")
    s = db_session()
    result = svc.import_catalog_csv(s, f.read(), g.current_user)
    s.commit()
    return jsonify(result)
