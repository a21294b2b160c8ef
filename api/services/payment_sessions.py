"""Payment sessions — create, look up and supersede PayFast checkouts."""

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.payment_session import PaymentSession

logger = logging.getLogger(__name__)

SESSION_PENDING = "pending"
SESSION_COMPLETED = "completed"
SESSION_VALIDATION_FAILED = "validation-failed"
SESSION_SUPERSEDED = "superseded"

KIND_SUBSCRIPTION_INVOICE = "subscription-invoice"
KIND_ORDER = "order"


def new_payment_reference() -> str:
    return uuid.uuid4().hex


async def supersede_invoice_sessions(db: AsyncSession, invoice_id: str, reason: str) -> int:
    """Move every pending session for the invoice to superseded. Returns the count."""
    result = await db.execute(
        select(PaymentSession)
        .where(
            PaymentSession.invoice_id == invoice_id,
            PaymentSession.status == SESSION_PENDING,
        )
        .with_for_update()
    )
    sessions = result.scalars().all()
    now = datetime.utcnow()
    for session in sessions:
        session.status = SESSION_SUPERSEDED
        session.superseded_at = now
        session.failure_reasons = [*(session.failure_reasons or []), f"superseded: {reason}"]
    if sessions:
        logger.info("Superseded %d payment session(s) for invoice %s (%s)", len(sessions), invoice_id, reason)
    return len(sessions)


async def open_invoice_session(db: AsyncSession, invoice) -> PaymentSession:
    """
    Start a new checkout for a pending invoice at its current amount.

    Any older pending session is superseded first and the invoice's active
    reference is rotated, so only the newest link can complete.
    """
    await supersede_invoice_sessions(db, invoice.id, "new payment link issued")
    session = PaymentSession(
        id=new_payment_reference(),
        kind=KIND_SUBSCRIPTION_INVOICE,
        invoice_id=invoice.id,
        subscription_id=invoice.subscription_id,
        amount=invoice.amount,
        mode=settings.payfast_mode,
        status=SESSION_PENDING,
    )
    db.add(session)
    invoice.payment_reference = session.id
    await db.flush()
    return session


async def open_order_session(db: AsyncSession, customer: dict, items: list, total_price) -> PaymentSession:
    session = PaymentSession(
        id=new_payment_reference(),
        kind=KIND_ORDER,
        amount=total_price,
        mode=settings.payfast_mode,
        customer=customer,
        items=items,
        status=SESSION_PENDING,
    )
    db.add(session)
    await db.flush()
    return session


async def get_session_for_update(db: AsyncSession, reference: str) -> PaymentSession | None:
    result = await db.execute(
        select(PaymentSession)
        .where(PaymentSession.id == reference)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
