"""Subscription ORM models — recurring flower deliveries and customer billing settings."""

import uuid
from datetime import datetime
from sqlalchemy import String, Numeric, Boolean, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, JSONType


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    customer_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String(30))

    # Plan
    plan_id: Mapped[str | None] = mapped_column(String(64))
    plan_name: Mapped[str] = mapped_column(String(255), default="Flower subscription")
    tier: Mapped[str] = mapped_column(String(20), nullable=False)  # weekly, bi-weekly, monthly
    per_delivery_amount: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    monday_slots: Mapped[list] = mapped_column(JSONType, default=list)
    delivery_address: Mapped[dict] = mapped_column(JSONType, default=dict)

    # Payment
    payment_method: Mapped[str] = mapped_column(String(20), default="payfast")  # payfast, eft
    payment_approval_status: Mapped[str] = mapped_column(String(20), default="not-required")

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default="active")  # active, paused, cancelled
    current_cycle_month: Mapped[str | None] = mapped_column(String(7))
    next_billing_month: Mapped[str | None] = mapped_column(String(7))

    # [{id, label, amount, basis: flat|per-delivery, status: active|removed, ...}]
    recurring_charges: Mapped[list] = mapped_column(JSONType, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class CustomerBillingSettings(Base):
    """Per-customer billing flags managed by admins (EFT is approval-only)."""

    __tablename__ = "customer_billing_settings"

    customer_id: Mapped[uuid.UUID] = mapped_column(primary_key=True)
    eft_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    notes: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
