from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.autoexplora.models import Base

if TYPE_CHECKING:
    from app.autoexplora.models import User
    from app.autoexplora.modules.dealers.models import Dealer
    from app.autoexplora.modules.messaging.models import Conversation
    from app.autoexplora.modules.vehicles.models import Vehicle


class DealerLead(Base):
    __tablename__ = "dealer_leads"
    __table_args__ = (
        Index("idx_dealer_leads_dealer_status", "dealer_id", "status"),
        Index("idx_dealer_leads_assigned_to", "assigned_to_id"),
        Index("idx_dealer_leads_created_at", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(ForeignKey("dealers.id", ondelete="CASCADE"), nullable=False)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    conversation_id: Mapped[int | None] = mapped_column(ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="marketplace")

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="NEW")
    assigned_to_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    estimated_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 0), nullable=True)

    last_contact_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    next_follow_up: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    dealer: Mapped["Dealer"] = relationship(lazy="selectin")
    vehicle: Mapped["Vehicle | None"] = relationship(lazy="selectin")
    conversation: Mapped["Conversation | None"] = relationship()
    assigned_to: Mapped["User | None"] = relationship(lazy="selectin")
    preferences: Mapped["LeadPreferences | None"] = relationship(
        back_populates="lead", uselist=False, cascade="all, delete-orphan", lazy="selectin"
    )
    activities: Mapped[list["LeadActivity"]] = relationship(
        back_populates="lead", cascade="all, delete-orphan", order_by="LeadActivity.created_at.desc()"
    )
    tasks: Mapped[list["LeadTask"]] = relationship(back_populates="lead", cascade="all, delete-orphan")
    opportunities: Mapped[list["Opportunity"]] = relationship(back_populates="lead", cascade="all, delete-orphan")
    test_drives: Mapped[list["TestDrive"]] = relationship(back_populates="lead", cascade="all, delete-orphan")


class LeadPreferences(Base):
    __tablename__ = "lead_preferences"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("dealer_leads.id", ondelete="CASCADE"), nullable=False, unique=True)
    brand_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    model_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    min_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 0), nullable=True)
    max_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 0), nullable=True)
    min_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    vehicle_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    condition: Mapped[str | None] = mapped_column(String(16), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lead: Mapped[DealerLead] = relationship(back_populates="preferences")


class LeadActivity(Base):
    __tablename__ = "lead_activities"
    __table_args__ = (Index("idx_lead_activities_lead_id", "lead_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("dealer_leads.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lead: Mapped[DealerLead] = relationship(back_populates="activities")
    user: Mapped["User | None"] = relationship(lazy="selectin")


class LeadTask(Base):
    __tablename__ = "lead_tasks"
    __table_args__ = (
        Index("idx_lead_tasks_lead_id", "lead_id"),
        Index("idx_lead_tasks_due_at", "due_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("dealer_leads.id", ondelete="CASCADE"), nullable=False)
    assigned_to_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_by_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="MEDIUM")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lead: Mapped[DealerLead] = relationship(back_populates="tasks", lazy="selectin")
    assigned_to: Mapped["User"] = relationship(foreign_keys=[assigned_to_id], lazy="selectin")


class Opportunity(Base):
    __tablename__ = "opportunities"
    __table_args__ = (Index("idx_opportunities_lead_id", "lead_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("dealer_leads.id", ondelete="CASCADE"), nullable=False)
    vehicle_id: Mapped[int | None] = mapped_column(ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    estimated_value: Mapped[Decimal] = mapped_column(Numeric(12, 0), nullable=False)
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=50)
    expected_close_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lead: Mapped[DealerLead] = relationship(back_populates="opportunities", lazy="selectin")
    vehicle: Mapped["Vehicle | None"] = relationship(lazy="selectin")


class TestDrive(Base):
    __tablename__ = "test_drives"
    __table_args__ = (Index("idx_test_drives_scheduled_at", "scheduled_at"),)
    __test__ = False  # keep pytest from collecting the model

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("dealer_leads.id", ondelete="CASCADE"), nullable=False)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=30)  # minutes
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="SCHEDULED")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    lead: Mapped[DealerLead] = relationship(back_populates="test_drives", lazy="selectin")
    vehicle: Mapped["Vehicle"] = relationship(lazy="selectin")


class MessageTemplate(Base):
    __tablename__ = "message_templates"
    __table_args__ = (Index("idx_message_templates_dealer_id", "dealer_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(ForeignKey("dealers.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)  # EMAIL, WHATSAPP
    subject: Mapped[str | None] = mapped_column(String(200), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class AutoResponseConfig(Base):
    __tablename__ = "auto_response_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    dealer_id: Mapped[int] = mapped_column(ForeignKey("dealers.id", ondelete="CASCADE"), nullable=False, unique=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    email_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("message_templates.id", ondelete="SET NULL"), nullable=True
    )
    delay_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    email_template: Mapped["MessageTemplate | None"] = relationship(lazy="selectin")
