"""AdminAuditLog and BillingRun ORM models."""

import uuid
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, Text, event
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, JSONType


class AdminAuditLog(Base):
    __tablename__ = "admin_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    target_type: Mapped[str] = mapped_column(String(30), nullable=False)  # subscription, invoice, order, customer
    target_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[uuid.UUID | None] = mapped_column()
    actor_email: Mapped[str | None] = mapped_column(String(255))
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    before: Mapped[dict | None] = mapped_column(JSONType)
    after: Mapped[dict | None] = mapped_column(JSONType)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


@event.listens_for(AdminAuditLog, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ValueError("Audit records are append-only")


@event.listens_for(AdminAuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ValueError("Audit records are append-only")


class BillingRun(Base):
    """One row per daily billing run, aggregating every per-subscription outcome."""

    __tablename__ = "billing_runs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    run_date: Mapped[str] = mapped_column(String(10), nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)  # day1-fallback, prebill, skip
    target_cycle_month: Mapped[str | None] = mapped_column(String(7))
    created_count: Mapped[int] = mapped_column(Integer, default=0)
    resent_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    emails_sent: Mapped[int] = mapped_column(Integer, default=0)
    emails_failed: Mapped[int] = mapped_column(Integer, default=0)
    emails_skipped: Mapped[int] = mapped_column(Integer, default=0)
    results: Mapped[list] = mapped_column(JSONType, default=list)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
