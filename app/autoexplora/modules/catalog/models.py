from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.autoexplora.models import Base


class Brand(Base):
    __tablename__ = "brands"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    logo: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Which vehicle types the brand builds, e.g. ["AUTO", "MOTO"]. Empty means all.
    vehicle_types: Mapped[list | None] = mapped_column(JSON, nullable=True, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    models: Mapped[list["VehicleModel"]] = relationship(
        back_populates="brand",
        cascade="all, delete-orphan",
        order_by="VehicleModel.name",
    )


class VehicleModel(Base):
    __tablename__ = "vehicle_models"
    __table_args__ = (
        UniqueConstraint("brand_id", "slug", name="uq_vehicle_models_brand_slug"),
        Index("idx_vehicle_models_brand_id", "brand_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    brand_id: Mapped[int] = mapped_column(ForeignKey("brands.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    brand: Mapped[Brand] = relationship(back_populates="models", lazy="selectin")
    versions: Mapped[list["Version"]] = relationship(
        back_populates="model",
        cascade="all, delete-orphan",
        order_by="Version.name",
    )


class Version(Base):
    __tablename__ = "vehicle_versions"
    __table_args__ = (
        UniqueConstraint("model_id", "slug", name="uq_vehicle_versions_model_slug"),
        Index("idx_vehicle_versions_model_id", "model_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    model_id: Mapped[int] = mapped_column(ForeignKey("vehicle_models.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False)
    engine_size: Mapped[str | None] = mapped_column(String(32), nullable=True)  # e.g. "1.6"
    horse_power: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transmission: Mapped[str | None] = mapped_column(String(32), nullable=True)
    drivetrain: Mapped[str | None] = mapped_column(String(32), nullable=True)
    trim_level: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    model: Mapped[VehicleModel] = relationship(back_populates="versions", lazy="selectin")


class Region(Base):
    __tablename__ = "regions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    comunas: Mapped[list["Comuna"]] = relationship(
        back_populates="region",
        cascade="all, delete-orphan",
        order_by="Comuna.name",
        lazy="selectin",
    )


class Comuna(Base):
    __tablename__ = "comunas"
    __table_args__ = (
        UniqueConstraint("region_id", "slug", name="uq_comunas_region_slug"),
        Index("idx_comunas_region_id", "region_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    region_id: Mapped[int] = mapped_column(ForeignKey("regions.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False)

    region: Mapped[Region] = relationship(back_populates="comunas")
