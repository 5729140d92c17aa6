from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from app.autoexplora.audit import record_event
from app.autoexplora.constants import FOOTER_STYLES, HEADER_STYLES, RESERVED_PAGE_SLUGS
from app.autoexplora.errors import ConflictError, NotFoundError, ValidationError
from app.autoexplora.modules.microsite.domains import check_cname
from app.autoexplora.modules.microsite.models import DealerDomain, DealerPage, DealerSiteConfig
from app.autoexplora.utils import clean_str, iso, is_valid_email, parse_bool, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.autoexplora.models import User
    from app.autoexplora.modules.dealers.models import Dealer

DOMAIN_RE = re.compile(r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,}$")
PAGE_SLUG_RE = re.compile(r"^[a-z0-9-]+$")
COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")
BLOCK_TYPES = ("heading", "paragraph", "image", "video", "cta", "divider", "list")

CONFIG_FIELDS = (
    "is_active",
    "primary_color",
    "accent_color",
    "logo",
    "favicon",
    "header_style",
    "footer_style",
    "show_whatsapp_button",
    "meta_title",
    "meta_description",
    "og_image",
    "google_analytics_id",
    "meta_pixel_id",
    "contact_email",
    "contact_phone",
    "contact_whatsapp",
    "hero_title",
    "hero_subtitle",
    "show_featured_vehicles",
    "featured_vehicles_limit",
)
_BOOL_FIELDS = ("is_active", "show_whatsapp_button", "show_featured_vehicles")
_LENGTHS = {
    "meta_title": 70,
    "meta_description": 160,
    "hero_title": 120,
    "hero_subtitle": 255,
    "google_analytics_id": 32,
    "meta_pixel_id": 32,
}


# ---------- Serialization ----------
def serialize_domain(d: DealerDomain) -> dict:
    return {
        "id": d.id,
        "domain": d.domain,
        "is_custom": d.is_custom,
        "is_primary": d.is_primary,
        "status": d.status,
        "verified_at": iso(d.verified_at),
        "last_checked_at": iso(d.last_checked_at),
        "created_at": iso(d.created_at),
    }


def serialize_page(p: DealerPage, *, with_content: bool = True) -> dict:
    data = {
        "id": p.id,
        "title": p.title,
        "slug": p.slug,
        "is_published": p.is_published,
        "show_in_nav": p.show_in_nav,
        "order": p.order,
        "meta_title": p.meta_title,
        "meta_description": p.meta_description,
        "updated_at": iso(p.updated_at),
    }
    if with_content:
        data["content"] = p.content or []
    return data


def serialize_config(cfg: DealerSiteConfig, root_domain: str) -> dict:
    data = {field: getattr(cfg, field) for field in CONFIG_FIELDS}
    data.update(
        {
            "id": cfg.id,
            "dealer_id": cfg.dealer_id,
            "activated_at": iso(cfg.activated_at),
            "subdomain": f"{cfg.dealer.slug}.{root_domain}",
            "url": site_base_url(cfg, root_domain),
            "domains": [serialize_domain(d) for d in cfg.domains],
            "pages": [serialize_page(p, with_content=False) for p in cfg.pages],
        }
    )
    return data


# ---------- Config ----------
def get_or_create_config(s: "Session", dealer: "Dealer") -> DealerSiteConfig:
    cfg = s.query(DealerSiteConfig).filter(DealerSiteConfig.dealer_id == dealer.id).one_or_none()
    if cfg is None:
        cfg = DealerSiteConfig(dealer_id=dealer.id, is_active=False, hero_title=dealer.trade_name)
        s.add(cfg)
        s.flush()
        s.refresh(cfg)
    return cfg


def update_config(s: "Session", cfg: DealerSiteConfig, payload: dict, user: "User") -> DealerSiteConfig:
    """Apply the allowed fields of `payload`; anything else is ignored."""
    errors: list[str] = []
    updates: dict = {}
    for field in CONFIG_FIELDS:
        if field not in payload:
            continue
        value = payload.get(field)
        if field in _BOOL_FIELDS:
            updates[field] = bool(parse_bool(value, False))
        elif field == "featured_vehicles_limit":
            n = parse_int(value)
            if n is None or n < 1 or n > 24:
                errors.append("La cantidad de vehículos destacados debe estar entre 1 y 24")
            updates[field] = n
        else:
            updates[field] = clean_str(value)

    for field in ("primary_color", "accent_color"):
        if field in updates and not (updates[field] and COLOR_RE.match(updates[field])):
            errors.append("Color inválido (formato #RRGGBB)")
    if "header_style" in updates and updates["header_style"] not in HEADER_STYLES:
        errors.append("Estilo de cabecera inválido")
    if "footer_style" in updates and updates["footer_style"] not in FOOTER_STYLES:
        errors.append("Estilo de pie de página inválido")
    if updates.get("contact_email") and not is_valid_email(updates["contact_email"]):
        errors.append("Email de contacto inválido")
    for field, max_len in _LENGTHS.items():
        if updates.get(field) and len(updates[field]) > max_len:
            errors.append(f"{field} no puede exceder {max_len} caracteres")
    if errors:
        raise ValidationError.from_errors(errors)

    changes: dict = {}
    for field, value in updates.items():
        old = getattr(cfg, field)
        if old != value:
            changes[field] = {"old": old, "new": value}
            setattr(cfg, field, value)
    if changes.get("is_active", {}).get("new") is True:
        cfg.activated_at = datetime.utcnow()
    cfg.updated_at = datetime.utcnow()
    if changes:
        record_event(s, actor=user, action="microsite.update", entity_type="DealerSiteConfig", entity_id=str(cfg.id), metadata={"changes": changes})
    return cfg


# ---------- Domains ----------
def normalize_domain(raw: str | None) -> str:
    value = (raw or "").strip().lower()
    value = re.sub(r"^https?://", "", value)
    value = re.sub(r"/.*$", "", value)
    return value.rstrip(".")


def add_domain(s: "Session", cfg: DealerSiteConfig, raw: str | None, root_domain: str, user: "User") -> DealerDomain:
    if not clean_str(raw):
        raise ValidationError("El dominio es requerido")
    domain = normalize_domain(raw)
    if not DOMAIN_RE.match(domain):
        raise ValidationError("Formato de dominio inválido")
    if domain == root_domain or domain.endswith(f".{root_domain}"):
        raise ValidationError(f"No puedes agregar subdominios de {root_domain}")
    if s.query(DealerDomain.id).filter(DealerDomain.domain == domain).first():
        raise ConflictError("Este dominio ya está registrado")
    d = DealerDomain(site_config_id=cfg.id, domain=domain, is_custom=True, is_primary=False, status="PENDING")
    s.add(d)
    s.flush()
    record_event(s, actor=user, action="microsite.domain_add", entity_type="DealerDomain", entity_id=str(d.id), metadata={"domain": domain})
    return d


def get_domain(s: "Session", cfg: DealerSiteConfig, domain_id: int) -> DealerDomain:
    d = s.get(DealerDomain, domain_id)
    if not d or d.site_config_id != cfg.id:
        raise NotFoundError("Dominio no encontrado")
    return d


def delete_domain(s: "Session", d: DealerDomain, user: "User") -> None:
    record_event(s, actor=user, action="microsite.domain_delete", entity_type="DealerDomain", entity_id=str(d.id), metadata={"domain": d.domain})
    s.delete(d)


def set_primary_domain(s: "Session", cfg: DealerSiteConfig, d: DealerDomain) -> DealerDomain:
    if d.status != "VERIFIED":
        raise ValidationError("Solo un dominio verificado puede ser principal")
    for other in cfg.domains:
        other.is_primary = other.id == d.id
    return d


@dataclass
class VerificationResult:
    domain: DealerDomain
    verified: bool
    error: str | None


def verify_domain(s: "Session", d: DealerDomain, target: str, user: "User | None" = None) -> VerificationResult:
    """One CNAME lookup; writes VERIFIED or FAILED and always stamps last_checked_at."""
    check = check_cname(d.domain, target)
    now = datetime.utcnow()
    d.status = "VERIFIED" if check.verified else "FAILED"
    d.verified_at = now if check.verified else None
    d.last_checked_at = now
    if not check.verified and d.is_primary:
        d.is_primary = False
    record_event(
        s,
        actor=user,
        action="microsite.domain_verify",
        entity_type="DealerDomain",
        entity_id=str(d.id),
        metadata={"domain": d.domain, "verified": check.verified, "records": list(check.records)},
    )
    return VerificationResult(domain=d, verified=check.verified, error=check.error)


# ---------- Pages ----------
def validate_blocks(content) -> list[str]:
    if not isinstance(content, list):
        return ["El contenido debe ser una lista de bloques"]
    errors: list[str] = []
    for i, block in enumerate(content, start=1):
        if not isinstance(block, dict) or block.get("type") not in BLOCK_TYPES:
            errors.append(f"Bloque {i}: tipo inválido")
            continue
        kind = block["type"]
        if kind in ("heading", "paragraph") and not clean_str(block.get("text")):
            errors.append(f"Bloque {i}: texto requerido")
        elif kind in ("image", "video") and not clean_str(block.get("url")):
            errors.append(f"Bloque {i}: URL requerida")
        elif kind == "cta" and not (clean_str(block.get("text")) and clean_str(block.get("url"))):
            errors.append(f"Bloque {i}: texto y URL requeridos")
        elif kind == "list" and not (isinstance(block.get("items"), list) and block["items"]):
            errors.append(f"Bloque {i}: la lista debe tener elementos")
        if kind == "heading" and block.get("level", 2) not in (2, 3):
            errors.append(f"Bloque {i}: nivel de título inválido")
    return errors


def _validate_page(s: "Session", cfg: DealerSiteConfig, payload: dict, page: DealerPage | None = None) -> list[str]:
    errors: list[str] = []
    partial = page is not None
    if not partial or "title" in payload:
        title = clean_str(payload.get("title"))
        if not title or len(title) > 100:
            errors.append("El título es requerido (máximo 100 caracteres)")
    if not partial or "slug" in payload:
        slug = (payload.get("slug") or "").strip().lower()
        if not PAGE_SLUG_RE.match(slug):
            errors.append("El slug solo puede contener letras minúsculas, números y guiones")
        elif slug in RESERVED_PAGE_SLUGS:
            errors.append("Este slug está reservado")
        else:
            q = s.query(DealerPage.id).filter(DealerPage.site_config_id == cfg.id, DealerPage.slug == slug)
            if page is not None:
                q = q.filter(DealerPage.id != page.id)
            if q.first():
                errors.append("Ya existe una página con este slug")
    if "content" in payload:
        errors.extend(validate_blocks(payload.get("content")))
    return errors


def get_page(s: "Session", cfg: DealerSiteConfig, page_id: int) -> DealerPage:
    p = s.get(DealerPage, page_id)
    if not p or p.site_config_id != cfg.id:
        raise NotFoundError("Página no encontrada")
    return p


def create_page(s: "Session", cfg: DealerSiteConfig, payload: dict) -> DealerPage:
    errors = _validate_page(s, cfg, payload)
    if errors:
        raise ValidationError.from_errors(errors)
    max_order = max((p.order for p in cfg.pages), default=-1)
    page = DealerPage(
        site_config_id=cfg.id,
        title=clean_str(payload.get("title")),
        slug=payload["slug"].strip().lower(),
        content=payload.get("content") or [],
        is_published=bool(parse_bool(payload.get("is_published"), False)),
        show_in_nav=bool(parse_bool(payload.get("show_in_nav"), True)),
        order=max_order + 1,
        meta_title=clean_str(payload.get("meta_title")),
        meta_description=clean_str(payload.get("meta_description")),
    )
    s.add(page)
    s.flush()
    return page


def update_page(s: "Session", cfg: DealerSiteConfig, page: DealerPage, payload: dict) -> DealerPage:
    errors = _validate_page(s, cfg, payload, page)
    if errors:
        raise ValidationError.from_errors(errors)
    if "title" in payload:
        page.title = clean_str(payload.get("title"))
    if "slug" in payload:
        page.slug = payload["slug"].strip().lower()
    if "content" in payload:
        page.content = payload.get("content") or []
    for field in ("is_published", "show_in_nav"):
        if field in payload:
            setattr(page, field, bool(parse_bool(payload.get(field), False)))
    for field in ("meta_title", "meta_description"):
        if field in payload:
            setattr(page, field, clean_str(payload.get(field)))
    page.updated_at = datetime.utcnow()
    return page


def reorder_pages(cfg: DealerSiteConfig, page_ids) -> list[DealerPage]:
    if not isinstance(page_ids, list):
        raise ValidationError("Se esperaba una lista de páginas")
    by_id = {p.id: p for p in cfg.pages}
    ids = [parse_int(i) for i in page_ids]
    if sorted(i for i in ids if i is not None) != sorted(by_id) or len(ids) != len(by_id):
        raise ValidationError("La lista debe incluir todas las páginas exactamente una vez")
    for order, pid in enumerate(ids):
        by_id[pid].order = order
    return sorted(cfg.pages, key=lambda p: p.order)


# ---------- Public resolution ----------
def resolve_site(s: "Session", key: str, *, active_only: bool = True) -> DealerSiteConfig | None:
    """
    Map a tenant key (custom domain or dealer slug) to an active site config.
    Verified custom domains win over slugs. With `active_only=False` an inactive
    config is still returned (sitemap and robots answer for it).
    """
    from app.autoexplora.modules.dealers.models import Dealer

    key = (key or "").strip().lower()
    if not key:
        return None
    domain = (
        s.query(DealerDomain)
        .filter(DealerDomain.domain == key, DealerDomain.status == "VERIFIED")
        .one_or_none()
    )
    cfg: DealerSiteConfig | None = None
    if domain is not None:
        cfg = domain.site_config
    else:
        dealer = s.query(Dealer).filter(Dealer.slug == key, Dealer.status == "ACTIVE").one_or_none()
        if dealer is not None:
            cfg = dealer.site_config
    if cfg is None or cfg.dealer.status != "ACTIVE":
        return None
    if active_only and not cfg.is_active:
        return None
    return cfg


def site_base_url(cfg: DealerSiteConfig, root_domain: str) -> str:
    for d in cfg.domains:
        if d.is_primary and d.status == "VERIFIED":
            return f"https://{d.domain}"
    return f"https://{cfg.dealer.slug}.{root_domain}"


def published_pages(cfg: DealerSiteConfig) -> list[DealerPage]:
    return [p for p in cfg.pages if p.is_published]


def sitemap_entries(s: "Session", cfg: DealerSiteConfig | None, base_url: str) -> list[dict]:
    """URL entries for the microsite sitemap; empty when the site is missing or inactive."""
    from app.autoexplora.modules.vehicles.models import Vehicle

    if cfg is None or not cfg.is_active:
        return []
    now = datetime.utcnow()
    entries = [
        {"loc": base_url, "lastmod": now, "changefreq": "daily", "priority": "1.0"},
        {"loc": f"{base_url}/vehiculos", "lastmod": now, "changefreq": "daily", "priority": "0.9"},
        {"loc": f"{base_url}/contacto", "lastmod": now, "changefreq": "monthly", "priority": "0.7"},
    ]
    vehicles = (
        s.query(Vehicle.slug, Vehicle.updated_at)
        .filter(Vehicle.dealer_id == cfg.dealer_id, Vehicle.status == "ACTIVE")
        .order_by(Vehicle.published_at.desc())
        .all()
    )
    for slug, updated_at in vehicles:
        entries.append({"loc": f"{base_url}/vehiculos/{slug}", "lastmod": updated_at, "changefreq": "weekly", "priority": "0.8"})
    for page in published_pages(cfg):
        entries.append({"loc": f"{base_url}/{page.slug}", "lastmod": page.updated_at, "changefreq": "monthly", "priority": "0.6"})
    return entries


def robots_txt(cfg: DealerSiteConfig | None, base_url: str) -> str:
    if cfg is None or not cfg.is_active:
        return "User-agent: *\nDisallow: /"
    return f"User-agent: *\nAllow: /\n\nSitemap: {base_url}/sitemap.xml"
