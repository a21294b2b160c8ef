"""PaymentSession ORM model — a PayFast checkout awaiting its ITN."""

import uuid
from datetime import datetime
from sqlalchemy import String, Numeric, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, JSONType


class PaymentSession(Base):
    __tablename__ = "payment_sessions"

    # Payment reference posted to PayFast as m_payment_id / custom_str1
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(30), nullable=False)  # subscription-invoice, order
    invoice_id: Mapped[str | None] = mapped_column(String(64), index=True)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column()
    order_id: Mapped[uuid.UUID | None] = mapped_column()

    # Amount captured when the session was created
    amount: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    mode: Mapped[str] = mapped_column(String(10), default="sandbox")

    # Retail checkout snapshot
    customer: Mapped[dict | None] = mapped_column(JSONType)
    items: Mapped[list | None] = mapped_column(JSONType)

    # pending → completed | validation-failed | superseded
    status: Mapped[str] = mapped_column(String(20), default="pending")
    failure_reasons: Mapped[list] = mapped_column(JSONType, default=list)
    last_payment_status: Mapped[str | None] = mapped_column(String(20))
    amount_paid: Mapped[float | None] = mapped_column(Numeric(10, 2))
    gateway: Mapped[dict | None] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
