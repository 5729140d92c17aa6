from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.autoexplora.models import Base

if TYPE_CHECKING:
    from app.autoexplora.models import User
    from app.autoexplora.modules.catalog.models import Brand, Comuna, Region, Version, VehicleModel
    from app.autoexplora.modules.dealers.models import Dealer


class Vehicle(Base):
    __tablename__ = "vehicles"
    __table_args__ = (
        Index("idx_vehicles_status_published", "status", "published_at"),
        Index("idx_vehicles_dealer_id", "dealer_id"),
        Index("idx_vehicles_user_id", "user_id"),
        Index("idx_vehicles_brand_model", "brand_id", "model_id"),
        Index("idx_vehicles_region_id", "region_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    dealer_id: Mapped[int | None] = mapped_column(ForeignKey("dealers.id", ondelete="SET NULL"), nullable=True)

    title: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 0), nullable=False)  # CLP, no decimals
    negotiable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    vehicle_type: Mapped[str] = mapped_column(String(16), nullable=False)  # AUTO, MOTO, COMERCIAL
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    condition: Mapped[str] = mapped_column(String(16), nullable=False)  # NUEVO, USADO

    brand_id: Mapped[int] = mapped_column(ForeignKey("brands.id", ondelete="RESTRICT"), nullable=False)
    model_id: Mapped[int] = mapped_column(ForeignKey("vehicle_models.id", ondelete="RESTRICT"), nullable=False)
    version_id: Mapped[int | None] = mapped_column(ForeignKey("vehicle_versions.id", ondelete="RESTRICT"), nullable=True)

    year: Mapped[int] = mapped_column(Integer, nullable=False)
    mileage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fuel_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    transmission: Mapped[str | None] = mapped_column(String(16), nullable=True)
    traction: Mapped[str | None] = mapped_column(String(8), nullable=True)
    engine_size: Mapped[str | None] = mapped_column(String(16), nullable=True)
    color: Mapped[str | None] = mapped_column(String(32), nullable=True)
    doors: Mapped[int | None] = mapped_column(Integer, nullable=True)

    region_id: Mapped[int] = mapped_column(ForeignKey("regions.id", ondelete="RESTRICT"), nullable=False)
    comuna_id: Mapped[int | None] = mapped_column(ForeignKey("comunas.id", ondelete="RESTRICT"), nullable=True)

    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contact_whatsapp: Mapped[str | None] = mapped_column(String(32), nullable=True)
    show_phone: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    contact_clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    sold_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped["User"] = relationship(lazy="selectin")
    dealer: Mapped["Dealer | None"] = relationship(lazy="selectin")
    brand: Mapped["Brand"] = relationship(lazy="selectin")
    model: Mapped["VehicleModel"] = relationship(lazy="selectin")
    version: Mapped["Version | None"] = relationship(lazy="selectin")
    region: Mapped["Region"] = relationship(lazy="selectin")
    comuna: Mapped["Comuna | None"] = relationship(lazy="selectin")
    images: Mapped[list["VehicleImage"]] = relationship(
        back_populates="vehicle",
        cascade="all, delete-orphan",
        order_by="VehicleImage.order",
        lazy="selectin",
    )

    @property
    def primary_image(self) -> "VehicleImage | None":
        for img in self.images:
            if img.is_primary:
                return img
        return self.images[0] if self.images else None


class VehicleImage(Base):
    __tablename__ = "vehicle_images"
    __table_args__ = (Index("idx_vehicle_images_vehicle_id", "vehicle_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    vehicle: Mapped[Vehicle] = relationship(back_populates="images")


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "vehicle_id", name="uq_favorites_user_vehicle"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    vehicle: Mapped[Vehicle] = relationship(lazy="selectin")
