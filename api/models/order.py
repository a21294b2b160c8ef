"""Retail Order and Counter ORM models."""

import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Numeric, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, JSONType


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    order_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)

    customer: Mapped[dict] = mapped_column(JSONType, nullable=False)
    items: Mapped[list] = mapped_column(JSONType, nullable=False)
    total_price: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)

    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, processing, cancelled
    payment_method: Mapped[str] = mapped_column(String(20), default="payfast")
    payment_status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, paid
    payment_approval_status: Mapped[str] = mapped_column(String(20), default="not-required")
    payment_reference: Mapped[str | None] = mapped_column(String(64))
    payfast: Mapped[dict | None] = mapped_column(JSONType)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Counter(Base):
    """Monotonic named sequence (invoice numbers are shared by orders and subscription invoices)."""

    __tablename__ = "counters"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
