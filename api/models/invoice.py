"""SubscriptionInvoice ORM model — one document per billed cycle (plus top-ups)."""

import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Numeric, Boolean, DateTime, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, JSONType


class SubscriptionInvoice(Base):
    __tablename__ = "subscription_invoices"

    # Content-derived id: sha256(subscription_id, cycle_month, type)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("subscriptions.id"), nullable=False, index=True)
    customer_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)

    invoice_type: Mapped[str] = mapped_column(String(10), default="cycle")  # cycle, topup
    base_invoice_id: Mapped[str | None] = mapped_column(String(64))
    cycle_month: Mapped[str] = mapped_column(String(7), nullable=False, index=True)
    invoice_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)

    # Pricing
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    per_delivery_amount: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    base_amount: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    adjustments: Mapped[list] = mapped_column(JSONType, default=list)
    adjustments_total: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    amount: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    is_prorated: Mapped[bool] = mapped_column(Boolean, default=False)
    proration_ratio: Mapped[float] = mapped_column(Numeric(6, 4), default=1)

    # Frozen at creation
    delivery_schedule: Mapped[dict] = mapped_column(JSONType, default=dict)

    # Payment
    payment_method: Mapped[str] = mapped_column(String(20), default="payfast")
    payment_approval_status: Mapped[str] = mapped_column(String(20), default="not-required")
    payment_reference: Mapped[str | None] = mapped_column(String(64))  # active PayFast session
    payfast: Mapped[dict | None] = mapped_column(JSONType)
    eft_proof: Mapped[dict | None] = mapped_column(JSONType)

    status: Mapped[str] = mapped_column(String(20), default="pending-payment")  # pending-payment, paid, cancelled
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[str | None] = mapped_column(Text)

    # Email outcome: sent, failed, skipped
    email_status: Mapped[str | None] = mapped_column(String(10))
    email_error: Mapped[str | None] = mapped_column(Text)
    email_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    email_send_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)