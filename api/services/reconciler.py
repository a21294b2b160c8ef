"""
Payment Gateway Reconciler — turns PayFast ITNs into paid invoices and orders.

Every ITN is checked independently for:
  signature           md5 over the posted fields
  source-ip           caller resolves from PayFast's published hosts
  gateway-validation  PayFast confirms the ITN via /eng/query/validate
  invoice-amount      amount_gross equals the invoice's current amount
  amount              (retail sessions) amount_gross equals the session amount
  payment-reference   reference is still the invoice's active reference
  session-state       the session is still pending

A payment is accepted only when payment_status == COMPLETE and every check
passes. Rejections are recorded on the session with every failing check
name; the invoice or order is left untouched. Only an ITN that passes the
sender checks (signature, source-ip, gateway-validation) can move its
session to validation-failed. When the only problem is a check that could
not run (DNS or gateway outage) nothing is recorded and
TransientVerificationError is raised so PayFast retries.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from urllib.parse import parse_qsl

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.order import Order
from models.subscription import Subscription
from services import payfast
from services.errors import (
    BillingValidationError,
    NotFoundError,
    TransientVerificationError,
)
from services.invoices import STATUS_PENDING, load_invoice, mark_invoice_paid
from services.payment_sessions import (
    KIND_ORDER,
    KIND_SUBSCRIPTION_INVOICE,
    SESSION_COMPLETED,
    SESSION_PENDING,
    SESSION_VALIDATION_FAILED,
    get_session_for_update,
)
from services.proration import round_money
from services.sequence import allocate_invoice_number

logger = logging.getLogger(__name__)

PAYMENT_COMPLETE = "COMPLETE"

OUTCOME_PAID = "paid"
OUTCOME_ALREADY_PAID = "already-paid"
OUTCOME_REJECTED = "rejected"
OUTCOME_NOT_COMPLETE = "not-complete"

# Checks proving the ITN came from PayFast
SENDER_CHECKS = ("signature", "source-ip", "gateway-validation")


@dataclass
class ItnResult:
    reference: str
    outcome: str
    payment_status: str
    failed_checks: list[str] = field(default_factory=list)
    invoice_id: str | None = None
    order_id: str | None = None
    order_number: int | None = None

    @property
    def accepted(self) -> bool:
        return self.outcome in (OUTCOME_PAID, OUTCOME_ALREADY_PAID)

    def to_dict(self) -> dict:
        return {
            "reference": self.reference,
            "outcome": self.outcome,
            "accepted": self.accepted,
            "payment_status": self.payment_status,
            "failed_checks": self.failed_checks,
            "invoice_id": self.invoice_id,
            "order_id": self.order_id,
            "order_number": self.order_number,
        }


def parse_itn(raw_body: str) -> dict:
    """Posted fields in their original order (the signature depends on it)."""
    return dict(parse_qsl(raw_body or "", keep_blank_values=True))


def _paid_amount(params: dict) -> Decimal | None:
    raw = params.get("amount_gross") or params.get("amount")
    if raw in (None, ""):
        return None
    try:
        return round_money(raw)
    except (BillingValidationError, InvalidOperation):
        return None


def _gateway_details(params: dict, source_ip: str | None) -> dict:
    return {
        "pf_payment_id": params.get("pf_payment_id"),
        "payment_status": params.get("payment_status"),
        "amount_gross": params.get("amount_gross"),
        "amount_fee": params.get("amount_fee"),
        "amount_net": params.get("amount_net"),
        "source_ip": source_ip,
        "received_at": datetime.utcnow().isoformat(),
    }


async def _network_checks(params: dict, raw_body: str, source_ip: str | None) -> tuple[list[str], list[str]]:
    """Returns (failed, unavailable) check names for the checks that need the network."""
    failed, unavailable = [], []

    if not payfast.verify_signature(params, settings.PAYFAST_PASSPHRASE):
        failed.append("signature")

    try:
        if not await payfast.is_valid_source_ip(source_ip):
            failed.append("source-ip")
    except TransientVerificationError as e:
        logger.warning("Source IP check unavailable: %s", e)
        unavailable.append("source-ip")

    try:
        if not await payfast.validate_with_payfast(raw_body):
            failed.append("gateway-validation")
    except TransientVerificationError as e:
        logger.warning("Gateway validation unavailable: %s", e)
        unavailable.append("gateway-validation")

    return failed, unavailable


def _sender_verified(failed: list[str]) -> bool:
    return not any(check in SENDER_CHECKS for check in failed)


async def _reject(db: AsyncSession, session, failed: list[str], details: dict) -> None:
    """
    Record a rejected ITN on its session.

    Only an ITN that passed the sender checks can end the session: anyone can
    post a known reference, and PayFast's genuine notification must still be
    able to complete it afterwards.
    """
    session.failure_reasons = [*(session.failure_reasons or []), *failed]
    if not _sender_verified(failed):
        await db.commit()
        return
    if session.status == SESSION_PENDING:
        session.status = SESSION_VALIDATION_FAILED
    session.gateway = details
    await db.commit()


async def _complete_invoice(db: AsyncSession, session, invoice, details: dict) -> None:
    subscription = await db.get(Subscription, invoice.subscription_id, with_for_update=True)
    await mark_invoice_paid(db, invoice, subscription, payfast=details)
    session.status = SESSION_COMPLETED


async def _complete_order(db: AsyncSession, session, details: dict) -> Order:
    number = await allocate_invoice_number(db)
    order = Order(
        order_number=number,
        customer=session.customer or {},
        items=session.items or [],
        total_price=session.amount,
        status="processing",
        payment_method="payfast",
        payment_status="paid",
        payment_reference=session.id,
        payfast=details,
        paid_at=datetime.utcnow(),
    )
    db.add(order)
    await db.flush()
    session.order_id = order.id
    session.status = SESSION_COMPLETED
    return order


async def handle_itn(db: AsyncSession, raw_body: str, source_ip: str | None) -> ItnResult:
    """
    Verify and apply one ITN.

    Raises BillingValidationError when no payment reference is posted,
    NotFoundError for an unknown reference and TransientVerificationError
    when verification could not complete.
    """
    params = parse_itn(raw_body)
    reference = (params.get("m_payment_id") or params.get("custom_str1") or "").strip()
    if not reference:
        raise BillingValidationError("ITN carries no payment reference")
    payment_status = (params.get("payment_status") or "").strip().upper()
    amount_paid = _paid_amount(params)
    details = _gateway_details(params, source_ip)

    # Network calls happen before any row is locked
    failed, unavailable = await _network_checks(params, raw_body, source_ip)

    session = await get_session_for_update(db, reference)
    if session is None:
        raise NotFoundError(f"Payment session {reference} not found")

    result = ItnResult(reference=reference, outcome=OUTCOME_REJECTED, payment_status=payment_status)

    if session.status == SESSION_COMPLETED:
        # PayFast redelivers ITNs; the first verified one already applied
        logger.info("ITN for completed session %s ignored", reference)
        result.outcome = OUTCOME_ALREADY_PAID
        result.invoice_id = session.invoice_id
        result.order_id = str(session.order_id) if session.order_id else None
        await db.commit()
        return result

    invoice = None
    if session.kind == KIND_SUBSCRIPTION_INVOICE:
        invoice = await load_invoice(db, session.invoice_id, lock=True)
        result.invoice_id = session.invoice_id
        if invoice is None:
            failed.append("invoice-missing")
        else:
            if amount_paid is None or amount_paid != round_money(invoice.amount):
                failed.append("invoice-amount")
            if invoice.payment_reference != reference:
                failed.append("payment-reference")
            if invoice.status != STATUS_PENDING:
                failed.append("invoice-state")
    elif session.kind == KIND_ORDER:
        if amount_paid is None or amount_paid != round_money(session.amount):
            failed.append("amount")
    else:
        failed.append("session-kind")

    if session.status != SESSION_PENDING:
        failed.append("session-state")

    if _sender_verified(failed):
        session.last_payment_status = payment_status
        session.amount_paid = amount_paid

    if failed:
        await _reject(db, session, failed, details)
        result.failed_checks = failed
        logger.warning(
            "ITN %s rejected (status=%s): %s", reference, payment_status, ", ".join(failed)
        )
        return result

    if unavailable:
        await db.rollback()
        raise TransientVerificationError(
            f"ITN {reference} could not be verified: {', '.join(unavailable)} unavailable"
        )

    if payment_status != PAYMENT_COMPLETE:
        session.gateway = details
        await db.commit()
        result.outcome = OUTCOME_NOT_COMPLETE
        logger.info("ITN %s recorded with status %s; nothing applied", reference, payment_status)
        return result

    if invoice is not None:
        await _complete_invoice(db, session, invoice, details)
    else:
        order = await _complete_order(db, session, details)
        result.order_id = str(order.id)
        result.order_number = order.order_number
    session.gateway = details
    await db.commit()

    result.outcome = OUTCOME_PAID
    logger.info(
        "ITN %s accepted: %s %s paid %s",
        reference, session.kind, result.invoice_id or result.order_number, amount_paid,
    )
    return result
