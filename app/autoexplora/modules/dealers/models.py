from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.autoexplora.models import Base

if TYPE_CHECKING:
    from app.autoexplora.models import User
    from app.autoexplora.modules.catalog.models import Comuna, Region
    from app.autoexplora.modules.microsite.models import DealerSiteConfig


class Dealer(Base):
    __tablename__ = "dealers"
    __table_args__ = (
        Index("idx_dealers_status", "status"),
        Index("idx_dealers_region_id", "region_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    business_name: Mapped[str] = mapped_column(String(100), nullable=False)  # razón social
    trade_name: Mapped[str] = mapped_column(String(80), nullable=False)  # nombre de fantasía
    rut: Mapped[str] = mapped_column(String(12), nullable=False, unique=True)  # cleaned, e.g. "761234563"
    type: Mapped[str] = mapped_column(String(32), nullable=False)  # CONCESIONARIO, AUTOMOTORA, RENT_A_CAR

    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    whatsapp: Mapped[str | None] = mapped_column(String(32), nullable=True)
    website: Mapped[str | None] = mapped_column(String(512), nullable=True)

    address: Mapped[str] = mapped_column(String(200), nullable=False)
    region_id: Mapped[int] = mapped_column(ForeignKey("regions.id", ondelete="RESTRICT"), nullable=False)
    comuna_id: Mapped[int | None] = mapped_column(ForeignKey("comunas.id", ondelete="SET NULL"), nullable=True)

    logo: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    banner: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # {"lunes": {"open": "09:00", "close": "19:00"}, ...}
    schedule: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    rejection_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    region: Mapped["Region"] = relationship(lazy="selectin")
    comuna: Mapped["Comuna | None"] = relationship(lazy="selectin")
    members: Mapped[list["User"]] = relationship("User", back_populates="dealer")
    site_config: Mapped["DealerSiteConfig | None"] = relationship(
        "DealerSiteConfig",
        back_populates="dealer",
        uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def is_active(self) -> bool:
        return self.status == "ACTIVE"
