from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.autoexplora.models import Base

if TYPE_CHECKING:
    from app.autoexplora.modules.dealers.models import Dealer


class DealerSiteConfig(Base):
    __tablename__ = "dealer_site_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(ForeignKey("dealers.id", ondelete="CASCADE"), nullable=False, unique=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Branding / layout
    primary_color: Mapped[str] = mapped_column(String(16), nullable=False, default="#2563eb")
    accent_color: Mapped[str] = mapped_column(String(16), nullable=False, default="#f97316")
    logo: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    favicon: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    header_style: Mapped[str] = mapped_column(String(16), nullable=False, default="default")
    footer_style: Mapped[str] = mapped_column(String(16), nullable=False, default="default")
    show_whatsapp_button: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # SEO / tracking
    meta_title: Mapped[str | None] = mapped_column(String(70), nullable=True)
    meta_description: Mapped[str | None] = mapped_column(String(160), nullable=True)
    og_image: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    google_analytics_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    meta_pixel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Contact overrides
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contact_whatsapp: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Home page
    hero_title: Mapped[str | None] = mapped_column(String(120), nullable=True)
    hero_subtitle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    show_featured_vehicles: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    featured_vehicles_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=6)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    dealer: Mapped["Dealer"] = relationship(back_populates="site_config", lazy="selectin")
    domains: Mapped[list["DealerDomain"]] = relationship(
        back_populates="site_config", cascade="all, delete-orphan", order_by="DealerDomain.created_at", lazy="selectin"
    )
    pages: Mapped[list["DealerPage"]] = relationship(
        back_populates="site_config", cascade="all, delete-orphan", order_by="DealerPage.order", lazy="selectin"
    )


class DealerDomain(Base):
    __tablename__ = "dealer_domains"
    __table_args__ = (Index("idx_dealer_domains_status", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_config_id: Mapped[int] = mapped_column(ForeignKey("dealer_site_configs.id", ondelete="CASCADE"), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    is_custom: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    site_config: Mapped[DealerSiteConfig] = relationship(back_populates="domains")


class DealerPage(Base):
    __tablename__ = "dealer_pages"
    __table_args__ = (UniqueConstraint("site_config_id", "slug", name="uq_dealer_pages_config_slug"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_config_id: Mapped[int] = mapped_column(ForeignKey("dealer_site_configs.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    content: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # list of blocks
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    show_in_nav: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta_title: Mapped[str | None] = mapped_column(String(70), nullable=True)
    meta_description: Mapped[str | None] = mapped_column(String(160), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    site_config: Mapped[DealerSiteConfig] = relationship(back_populates="pages")
