"""
Invoice Lifecycle Manager — subscription invoices, adjustments and totals.

Invariants:
  - One cycle invoice per (subscription, cycle month); the id is a hash of both,
    so racing creators collide on the primary key instead of duplicating
  - Top-up invoices get a randomized id and always reference their base invoice
  - amount == round2(base_amount + Σ active adjustments), recomputed on every change
  - Any change to a pending invoice's amount supersedes its open payment sessions
  - Paid and cancelled invoices are terminal
"""

import hashlib
import logging
import secrets
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.invoice import SubscriptionInvoice
from models.subscription import Subscription
from services.delivery_calendar import compare_month_keys, normalize_month_key
from services.delivery_schedule import rebuild_schedule
from services.errors import BillingValidationError, InvalidStateError, NotFoundError
from services.payment_sessions import supersede_invoice_sessions
from services.proration import InvoiceQuote, calculate_charge_amount, proration_ratio, round_money
from services.sequence import allocate_invoice_number

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending-payment"
STATUS_PAID = "paid"
STATUS_CANCELLED = "cancelled"

TYPE_CYCLE = "cycle"
TYPE_TOPUP = "topup"

ADJUSTMENT_MODES = ("one-time", "recurring")


# ── Identity ───────────────────────────────────────────────

def cycle_invoice_id(subscription_id, cycle_month: str) -> str:
    key = f"{subscription_id}:{normalize_month_key(cycle_month)}:{TYPE_CYCLE}"
    return hashlib.sha256(key.encode()).hexdigest()


def topup_invoice_id(subscription_id, cycle_month: str) -> str:
    nonce = secrets.token_hex(8)
    key = f"{subscription_id}:{normalize_month_key(cycle_month)}:{TYPE_TOPUP}:{nonce}"
    return hashlib.sha256(key.encode()).hexdigest()


def approval_status_for(payment_method: str) -> str:
    return "pending" if payment_method == "eft" else "not-required"


# ── Adjustments & totals ───────────────────────────────────

def invoice_deliveries(invoice: SubscriptionInvoice) -> int:
    schedule = invoice.delivery_schedule or {}
    return int(schedule.get("included_deliveries") or 0)


def build_adjustment(
    label: str,
    unit_amount,
    basis: str,
    mode: str,
    source: str,
    deliveries: int,
    actor_id=None,
    reason: str | None = None,
    charge_id: str | None = None,
) -> dict:
    if mode not in ADJUSTMENT_MODES:
        raise BillingValidationError(f"Unknown adjustment mode: {mode!r}")
    amount = calculate_charge_amount(unit_amount, basis, deliveries)
    return {
        "id": uuid.uuid4().hex,
        "label": (label or "").strip() or "Additional charge",
        "unit_amount": float(round_money(unit_amount)),
        "basis": basis,
        "deliveries": deliveries if basis == "per-delivery" else 1,
        "amount": float(amount),
        "mode": mode,
        "source": source,
        "charge_id": charge_id,
        "status": "active",
        "created_at": datetime.utcnow().isoformat(),
        "created_by": str(actor_id) if actor_id else None,
        "reason": reason,
    }


def recurring_charge_adjustments(subscription: Subscription, deliveries: int) -> list[dict]:
    """Adjustments for every active recurring charge on the subscription."""
    return [
        build_adjustment(
            label=charge.get("label", "Recurring charge"),
            unit_amount=charge["amount"],
            basis=charge.get("basis", "flat"),
            mode="recurring",
            source="recurring-charge",
            deliveries=deliveries,
            charge_id=charge["id"],
        )
        for charge in subscription.recurring_charges or []
        if charge.get("status") == "active"
    ]


def active_adjustments(invoice: SubscriptionInvoice) -> list[dict]:
    return [a for a in invoice.adjustments or [] if a.get("status", "active") == "active"]


def recompute_invoice_total(invoice: SubscriptionInvoice) -> Decimal:
    """Replay base + active adjustments; the stored amount is never trusted."""
    base = round_money(invoice.base_amount)
    adjustments_total = round_money(
        sum((round_money(a["amount"]) for a in active_adjustments(invoice)), Decimal("0"))
    )
    amount = round_money(base + adjustments_total)
    if amount < 0:
        raise BillingValidationError(f"Invoice total cannot be negative ({amount})")
    invoice.base_amount = base
    invoice.adjustments_total = adjustments_total
    invoice.amount = amount
    return amount


def _require_pending(invoice: SubscriptionInvoice) -> None:
    if invoice.status != STATUS_PENDING:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is {invoice.status}; only pending invoices can change")


async def _invalidate_payment(db: AsyncSession, invoice: SubscriptionInvoice, reason: str) -> int:
    invoice.payment_reference = None
    return await supersede_invoice_sessions(db, invoice.id, reason)


# ── Lookups ────────────────────────────────────────────────

async def load_invoice(db: AsyncSession, invoice_id: str, lock: bool = False) -> SubscriptionInvoice | None:
    query = select(SubscriptionInvoice).where(SubscriptionInvoice.id == invoice_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query.execution_options(populate_existing=True))
    return result.scalar_one_or_none()


async def get_invoice(db: AsyncSession, invoice_id: str, lock: bool = False) -> SubscriptionInvoice:
    invoice = await load_invoice(db, invoice_id, lock=lock)
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


async def find_pending_invoices(db: AsyncSession, subscription_id, lock: bool = False) -> list[SubscriptionInvoice]:
    query = (
        select(SubscriptionInvoice)
        .where(
            SubscriptionInvoice.subscription_id == subscription_id,
            SubscriptionInvoice.status == STATUS_PENDING,
        )
        .order_by(SubscriptionInvoice.cycle_month, SubscriptionInvoice.invoice_number)
    )
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_cycle_invoice(db: AsyncSession, subscription_id, cycle_month: str, lock: bool = False):
    return await load_invoice(db, cycle_invoice_id(subscription_id, cycle_month), lock=lock)


# ── Creation ───────────────────────────────────────────────

async def get_or_create_cycle_invoice(
    db: AsyncSession,
    subscription: Subscription,
    quote: InvoiceQuote,
    adjustments: list[dict] | None = None,
) -> tuple[SubscriptionInvoice, bool]:
    """
    Idempotent per (subscription, cycle month). Returns (invoice, created).

    Existence check, number allocation and insert share one savepoint; a
    concurrent loser's savepoint rolls back (releasing its counter increment)
    and it returns the winner's committed invoice.
    """
    if not subscription.tier or subscription.per_delivery_amount is None:
        raise BillingValidationError(f"Subscription {subscription.id} has no tier/price")
    cycle_month = normalize_month_key(quote.cycle_month)
    invoice_id = cycle_invoice_id(subscription.id, cycle_month)

    existing = await load_invoice(db, invoice_id)
    if existing is not None:
        return existing, False

    try:
        async with db.begin_nested():
            number = await allocate_invoice_number(db)
            invoice = SubscriptionInvoice(
                id=invoice_id,
                subscription_id=subscription.id,
                customer_id=subscription.customer_id,
                customer_email=subscription.customer_email,
                invoice_type=TYPE_CYCLE,
                cycle_month=cycle_month,
                invoice_number=number,
                tier=quote.tier,
                per_delivery_amount=quote.per_delivery_amount,
                base_amount=quote.base_amount,
                adjustments=list(adjustments or []),
                is_prorated=quote.is_prorated,
                proration_ratio=quote.proration_ratio,
                delivery_schedule=quote.schedule.to_dict(),
                payment_method=subscription.payment_method,
                payment_approval_status=approval_status_for(subscription.payment_method),
                status=STATUS_PENDING,
            )
            recompute_invoice_total(invoice)
            db.add(invoice)
    except IntegrityError:
        existing = await load_invoice(db, invoice_id)
        if existing is None:
            raise
        logger.info("Cycle invoice %s for %s created concurrently; reusing it", invoice_id[:12], cycle_month)
        return existing, False

    logger.info(
        "Created invoice #%s for subscription %s cycle %s amount %s",
        invoice.invoice_number, subscription.id, cycle_month, invoice.amount,
    )
    return invoice, True


async def create_topup_invoice(
    db: AsyncSession,
    subscription: Subscription,
    base_invoice: SubscriptionInvoice,
    amount,
    label: str,
    actor_id=None,
    reason: str | None = None,
) -> SubscriptionInvoice:
    """Supplementary invoice against an already-issued cycle."""
    amount = round_money(amount)
    if amount <= 0:
        raise BillingValidationError("Top-up amount must be greater than zero")
    number = await allocate_invoice_number(db)
    invoice = SubscriptionInvoice(
        id=topup_invoice_id(subscription.id, base_invoice.cycle_month),
        subscription_id=subscription.id,
        customer_id=subscription.customer_id,
        customer_email=subscription.customer_email,
        invoice_type=TYPE_TOPUP,
        base_invoice_id=base_invoice.id,
        cycle_month=base_invoice.cycle_month,
        invoice_number=number,
        tier=subscription.tier,
        per_delivery_amount=subscription.per_delivery_amount,
        base_amount=amount,
        adjustments=[],
        is_prorated=False,
        proration_ratio=Decimal("1"),
        delivery_schedule=dict(base_invoice.delivery_schedule or {}, topup_label=label,
                               topup_reason=reason, topup_created_by=str(actor_id) if actor_id else None),
        payment_method=subscription.payment_method,
        payment_approval_status=approval_status_for(subscription.payment_method),
        status=STATUS_PENDING,
    )
    recompute_invoice_total(invoice)
    db.add(invoice)
    await db.flush()
    logger.info("Created top-up invoice #%s (base %s) amount %s", number, base_invoice.invoice_number, amount)
    return invoice


# ── Mutations ──────────────────────────────────────────────

async def add_adjustment(db: AsyncSession, invoice: SubscriptionInvoice, adjustment: dict) -> Decimal:
    _require_pending(invoice)
    invoice.adjustments = [*(invoice.adjustments or []), adjustment]
    amount = recompute_invoice_total(invoice)
    await _invalidate_payment(db, invoice, "invoice amount changed")
    await db.flush()
    return amount


def _mark_removed(adjustment: dict, actor_id, reason: str | None) -> dict:
    return {
        **adjustment,
        "status": "removed",
        "removed_at": datetime.utcnow().isoformat(),
        "removed_by": str(actor_id) if actor_id else None,
        "removed_reason": reason,
    }


async def remove_adjustment(
    db: AsyncSession,
    invoice: SubscriptionInvoice,
    adjustment_id: str,
    actor_id=None,
    reason: str | None = None,
) -> dict:
    _require_pending(invoice)
    removed = None
    updated = []
    for adjustment in invoice.adjustments or []:
        if adjustment.get("id") == adjustment_id and adjustment.get("status", "active") == "active":
            removed = _mark_removed(adjustment, actor_id, reason)
            updated.append(removed)
        else:
            updated.append(adjustment)
    if removed is None:
        raise NotFoundError(f"Active adjustment {adjustment_id} not found on invoice {invoice.invoice_number}")

    invoice.adjustments = updated
    recompute_invoice_total(invoice)
    await _invalidate_payment(db, invoice, "invoice amount changed")
    await db.flush()
    return removed


async def remove_recurring_charge(
    db: AsyncSession,
    subscription: Subscription,
    charge_id: str,
    actor_id=None,
    reason: str | None = None,
) -> tuple[dict, list[SubscriptionInvoice]]:
    """Retire a subscription charge and drop it from every pending invoice."""
    removed = None
    charges = []
    for charge in subscription.recurring_charges or []:
        if charge.get("id") == charge_id and charge.get("status") == "active":
            removed = _mark_removed(charge, actor_id, reason)
            charges.append(removed)
        else:
            charges.append(charge)
    if removed is None:
        raise NotFoundError(f"Active recurring charge {charge_id} not found")
    subscription.recurring_charges = charges

    affected = []
    for invoice in await find_pending_invoices(db, subscription.id, lock=True):
        matches = [a for a in active_adjustments(invoice) if a.get("charge_id") == charge_id]
        if not matches:
            continue
        invoice.adjustments = [
            _mark_removed(a, actor_id, reason) if a in matches else a
            for a in invoice.adjustments
        ]
        recompute_invoice_total(invoice)
        await _invalidate_payment(db, invoice, "recurring charge removed")
        affected.append(invoice)

    await db.flush()
    return removed, affected


def schedule_for_tier(invoice: SubscriptionInvoice, tier: str, slots: list[str] | None) -> dict:
    """
    The invoice's delivery schedule under tier.

    Same tier: the frozen snapshot. Another tier: the invoice's month
    re-resolved for that tier, keeping a signup invoice's cutoff.
    """
    if tier == invoice.tier:
        return dict(invoice.delivery_schedule or {})
    return rebuild_schedule(invoice.delivery_schedule, tier, slots, invoice.cycle_month).to_dict()


def _rescale_per_delivery(adjustment: dict, deliveries: int) -> dict:
    if adjustment.get("status", "active") != "active" or adjustment.get("basis") != "per-delivery":
        return adjustment
    amount = calculate_charge_amount(adjustment["unit_amount"], "per-delivery", deliveries)
    return {**adjustment, "deliveries": deliveries, "amount": float(amount)}


async def update_base_amount(
    db: AsyncSession,
    invoice: SubscriptionInvoice,
    per_delivery_amount,
    tier: str,
    slots: list[str] | None = None,
) -> Decimal:
    """
    Reprice a pending invoice in place.

    A price-only change keeps the frozen schedule. A tier change re-resolves
    the month's Mondays for the new tier and rescales per-delivery charges.
    """
    _require_pending(invoice)
    price = round_money(per_delivery_amount)
    if tier != invoice.tier:
        schedule = schedule_for_tier(invoice, tier, slots)
        deliveries = schedule["included_deliveries"]
        if deliveries <= 0:
            raise InvalidStateError(
                f"Invoice {invoice.invoice_number} would have no {tier} deliveries left in {invoice.cycle_month}"
            )
        invoice.delivery_schedule = schedule
        invoice.is_prorated = deliveries < schedule["total_deliveries"]
        invoice.proration_ratio = proration_ratio(deliveries, schedule["total_deliveries"])
        invoice.adjustments = [_rescale_per_delivery(a, deliveries) for a in invoice.adjustments or []]
    invoice.per_delivery_amount = price
    invoice.tier = tier
    invoice.base_amount = round_money(price * invoice_deliveries(invoice))
    amount = recompute_invoice_total(invoice)
    await _invalidate_payment(db, invoice, "plan reassigned")
    await db.flush()
    return amount


async def mark_invoice_paid(
    db: AsyncSession,
    invoice: SubscriptionInvoice,
    subscription: Subscription | None = None,
    payfast: dict | None = None,
    approval_status: str | None = None,
) -> bool:
    """Flip a pending invoice to paid. Returns False when it was already paid."""
    if invoice.status == STATUS_PAID:
        return False
    if invoice.status == STATUS_CANCELLED:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is cancelled")

    invoice.status = STATUS_PAID
    invoice.paid_at = datetime.utcnow()
    if payfast is not None:
        invoice.payfast = payfast
    if approval_status is not None:
        invoice.payment_approval_status = approval_status

    if subscription is not None and invoice.invoice_type == TYPE_CYCLE:
        current = subscription.current_cycle_month
        if not current or compare_month_keys(invoice.cycle_month, current) > 0:
            subscription.current_cycle_month = invoice.cycle_month
    await db.flush()
    return True


async def cancel_invoice(db: AsyncSession, invoice: SubscriptionInvoice, reason: str) -> None:
    _require_pending(invoice)
    invoice.status = STATUS_CANCELLED
    invoice.cancelled_at = datetime.utcnow()
    invoice.cancel_reason = reason
    await _invalidate_payment(db, invoice, "invoice cancelled")
    await db.flush()


async def cancel_pending_invoices_for_subscription(db: AsyncSession, subscription: Subscription, reason: str) -> list[str]:
    cancelled = []
    for invoice in await find_pending_invoices(db, subscription.id, lock=True):
        await cancel_invoice(db, invoice, reason)
        cancelled.append(invoice.id)
    return cancelled
