"""
Admin Override Service — privileged corrections, each with a mandatory reason
and an append-only audit record.

Every call:
  - rejects an empty reason with BillingValidationError
  - captures before/after snapshots of the document it touches
  - writes one AdminAuditLog row in the same transaction as the change
  - returns the new state with "audit_logged": True
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from models.audit import AdminAuditLog
from models.order import Order
from models.subscription import CustomerBillingSettings, Subscription
from services.delivery_calendar import business_today, month_key_for
from services.delivery_schedule import normalize_slots_for_tier, normalize_tier
from services.errors import BillingValidationError, InvalidStateError, NotFoundError
from services.invoices import (
    STATUS_CANCELLED,
    STATUS_PAID,
    STATUS_PENDING,
    TYPE_CYCLE,
    active_adjustments,
    add_adjustment,
    build_adjustment,
    cancel_invoice,
    create_topup_invoice,
    find_pending_invoices,
    get_cycle_invoice,
    get_invoice,
    invoice_deliveries,
    mark_invoice_paid,
    remove_adjustment,
    remove_recurring_charge as remove_subscription_charge,
    schedule_for_tier,
    update_base_amount,
)
from services.payment_sessions import supersede_invoice_sessions
from services.proration import CHARGE_BASES, positive_price, round_money
from services.subscriptions import apply_status_change

logger = logging.getLogger(__name__)

REVIEW_DECISIONS = ("approve", "reject")


@dataclass(frozen=True)
class AdminActor:
    id: uuid.UUID | None = None
    email: str | None = None


def require_reason(reason: str | None) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise BillingValidationError("A reason is required for admin overrides")
    return cleaned


async def write_audit(
    db: AsyncSession,
    actor: AdminActor,
    action: str,
    target_type: str,
    target_id,
    reason: str,
    before: dict | None,
    after: dict | None,
    metadata: dict | None = None,
) -> AdminAuditLog:
    entry = AdminAuditLog(
        action=action,
        target_type=target_type,
        target_id=str(target_id),
        actor_id=actor.id,
        actor_email=actor.email,
        reason=reason,
        before=before,
        after=after,
        metadata_json=metadata or {},
    )
    db.add(entry)
    await db.flush()
    logger.info(
        "Admin %s: %s %s %s (%s)", actor.email or actor.id, action, target_type, target_id, reason,
    )
    return entry


# ── Snapshots ──────────────────────────────────────────────

def subscription_snapshot(subscription: Subscription) -> dict:
    return {
        "id": str(subscription.id),
        "customer_id": str(subscription.customer_id),
        "status": subscription.status,
        "plan_id": subscription.plan_id,
        "plan_name": subscription.plan_name,
        "tier": subscription.tier,
        "per_delivery_amount": float(subscription.per_delivery_amount),
        "monday_slots": list(subscription.monday_slots or []),
        "payment_method": subscription.payment_method,
        "current_cycle_month": subscription.current_cycle_month,
        "next_billing_month": subscription.next_billing_month,
        "recurring_charges": list(subscription.recurring_charges or []),
    }


def invoice_snapshot(invoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "invoice_type": invoice.invoice_type,
        "base_invoice_id": invoice.base_invoice_id,
        "subscription_id": str(invoice.subscription_id),
        "cycle_month": invoice.cycle_month,
        "status": invoice.status,
        "tier": invoice.tier,
        "per_delivery_amount": float(invoice.per_delivery_amount),
        "base_amount": float(invoice.base_amount),
        "adjustments": list(invoice.adjustments or []),
        "adjustments_total": float(invoice.adjustments_total or 0),
        "amount": float(invoice.amount),
        "payment_method": invoice.payment_method,
        "payment_approval_status": invoice.payment_approval_status,
        "payment_reference": invoice.payment_reference,
    }


def order_snapshot(order: Order) -> dict:
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "status": order.status,
        "total_price": float(order.total_price),
        "payment_method": order.payment_method,
        "payment_status": order.payment_status,
        "payment_approval_status": order.payment_approval_status,
    }


async def _get_subscription(db: AsyncSession, subscription_id) -> Subscription:
    subscription = await db.get(Subscription, subscription_id, with_for_update=True, populate_existing=True)
    if subscription is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription


# ── Subscription & invoice status ──────────────────────────

async def override_subscription_status(
    db: AsyncSession, subscription_id, status: str, reason: str, actor: AdminActor,
) -> dict:
    reason = require_reason(reason)
    subscription = await _get_subscription(db, subscription_id)
    before = subscription_snapshot(subscription)

    cancelled = await apply_status_change(db, subscription, status, reason)
    after = subscription_snapshot(subscription)
    await write_audit(
        db, actor, "subscription.status", "subscription", subscription.id, reason, before, after,
        {"cancelled_invoices": cancelled},
    )
    await db.commit()
    return {"subscription": after, "cancelled_invoices": cancelled, "audit_logged": True}


async def override_invoice_status(
    db: AsyncSession, invoice_id: str, status: str, reason: str, actor: AdminActor,
) -> dict:
    reason = require_reason(reason)
    if status not in (STATUS_PAID, STATUS_CANCELLED):
        raise BillingValidationError(f"Invoices can only be overridden to paid or cancelled, not {status!r}")
    invoice = await get_invoice(db, invoice_id, lock=True)
    if invoice.status != STATUS_PENDING:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is {invoice.status}; only pending invoices can change")
    before = invoice_snapshot(invoice)

    if status == STATUS_PAID:
        subscription = await db.get(Subscription, invoice.subscription_id, with_for_update=True)
        await supersede_invoice_sessions(db, invoice.id, "marked paid by admin")
        invoice.payment_reference = None
        approval = "approved" if invoice.payment_method == "eft" else None
        await mark_invoice_paid(db, invoice, subscription, approval_status=approval)
    else:
        await cancel_invoice(db, invoice, reason)

    after = invoice_snapshot(invoice)
    await write_audit(db, actor, "invoice.status", "invoice", invoice.id, reason, before, after)
    await db.commit()
    return {"invoice": after, "audit_logged": True}


# ── Charges ────────────────────────────────────────────────

async def add_invoice_charge(
    db: AsyncSession,
    invoice_id: str,
    label: str,
    amount,
    basis: str,
    mode: str,
    reason: str,
    actor: AdminActor,
) -> dict:
    """
    Add a charge to a pending invoice.

    A recurring charge is also stored on the subscription so every future
    cycle invoice picks it up.
    """
    reason = require_reason(reason)
    if basis not in CHARGE_BASES:
        raise BillingValidationError(f"Unknown charge basis: {basis!r}")
    unit_amount = positive_price(amount)
    invoice = await get_invoice(db, invoice_id, lock=True)
    before = invoice_snapshot(invoice)

    charge_id = None
    if mode == "recurring":
        subscription = await _get_subscription(db, invoice.subscription_id)
        charge_id = uuid.uuid4().hex
        subscription.recurring_charges = [
            *(subscription.recurring_charges or []),
            {
                "id": charge_id,
                "label": (label or "").strip() or "Recurring charge",
                "amount": float(unit_amount),
                "basis": basis,
                "status": "active",
                "created_at": datetime.utcnow().isoformat(),
                "created_by": str(actor.id) if actor.id else None,
                "reason": reason,
            },
        ]

    adjustment = build_adjustment(
        label=label,
        unit_amount=unit_amount,
        basis=basis,
        mode=mode,
        source="admin",
        deliveries=invoice_deliveries(invoice),
        actor_id=actor.id,
        reason=reason,
        charge_id=charge_id,
    )
    await add_adjustment(db, invoice, adjustment)

    after = invoice_snapshot(invoice)
    await write_audit(
        db, actor, "invoice.charge.add", "invoice", invoice.id, reason, before, after,
        {"adjustment_id": adjustment["id"], "charge_id": charge_id},
    )
    await db.commit()
    return {"invoice": after, "adjustment": adjustment, "audit_logged": True}


async def remove_invoice_charge(
    db: AsyncSession, invoice_id: str, adjustment_id: str, reason: str, actor: AdminActor,
) -> dict:
    reason = require_reason(reason)
    invoice = await get_invoice(db, invoice_id, lock=True)
    match = next((a for a in active_adjustments(invoice) if a.get("id") == adjustment_id), None)
    if match is not None and match.get("mode") == "recurring":
        raise InvalidStateError("Recurring charges are removed from the subscription, not a single invoice")
    before = invoice_snapshot(invoice)

    removed = await remove_adjustment(db, invoice, adjustment_id, actor.id, reason)
    after = invoice_snapshot(invoice)
    await write_audit(
        db, actor, "invoice.charge.remove", "invoice", invoice.id, reason, before, after,
        {"adjustment_id": adjustment_id},
    )
    await db.commit()
    return {"invoice": after, "adjustment": removed, "audit_logged": True}


async def remove_recurring_charge(
    db: AsyncSession, subscription_id, charge_id: str, reason: str, actor: AdminActor,
) -> dict:
    reason = require_reason(reason)
    subscription = await _get_subscription(db, subscription_id)
    before = subscription_snapshot(subscription)

    removed, affected = await remove_subscription_charge(db, subscription, charge_id, actor.id, reason)
    after = subscription_snapshot(subscription)
    await write_audit(
        db, actor, "subscription.charge.remove", "subscription", subscription.id, reason, before, after,
        {"charge_id": charge_id, "affected_invoices": [i.id for i in affected]},
    )
    await db.commit()
    return {
        "subscription": after,
        "charge": removed,
        "invoices": [invoice_snapshot(i) for i in affected],
        "audit_logged": True,
    }


# ── Plan reassignment ──────────────────────────────────────

async def reassign_plan(
    db: AsyncSession,
    subscription_id,
    tier: str,
    per_delivery_amount,
    reason: str,
    actor: AdminActor,
    plan_id: str | None = None,
    plan_name: str | None = None,
    cycle_month: str | None = None,
) -> dict:
    """
    Move a subscription to a new plan.

    Pending cycle invoices are repriced in place; a tier change re-resolves
    their Mondays for the new tier. A paid current-cycle invoice is never
    touched: a positive difference against what the new plan owes for that
    month becomes a top-up invoice, a negative one is ignored.
    """
    reason = require_reason(reason)
    tier = normalize_tier(tier)
    price = positive_price(per_delivery_amount)
    subscription = await _get_subscription(db, subscription_id)
    if subscription.status == "cancelled":
        raise InvalidStateError("Cancelled subscriptions cannot change plan")
    before = subscription_snapshot(subscription)

    subscription.tier = tier
    subscription.per_delivery_amount = price
    subscription.monday_slots = normalize_slots_for_tier(tier, subscription.monday_slots)
    if plan_id is not None:
        subscription.plan_id = plan_id
    if plan_name is not None:
        subscription.plan_name = plan_name

    repriced = []
    for invoice in await find_pending_invoices(db, subscription.id, lock=True):
        if invoice.invoice_type != TYPE_CYCLE:
            continue
        await update_base_amount(db, invoice, price, tier, subscription.monday_slots)
        repriced.append(invoice_snapshot(invoice))

    topup = None
    current_month = cycle_month or month_key_for(business_today())
    current = await get_cycle_invoice(db, subscription.id, current_month, lock=True)
    if current is not None and current.status == STATUS_PAID:
        owed = int(schedule_for_tier(current, tier, subscription.monday_slots).get("included_deliveries") or 0)
        delta = round_money(price * owed) - round_money(current.base_amount)
        if delta > 0:
            invoice = await create_topup_invoice(
                db, subscription, current, delta,
                label=f"Plan change to {subscription.plan_name} ({tier})",
                actor_id=actor.id, reason=reason,
            )
            topup = invoice_snapshot(invoice)

    after = subscription_snapshot(subscription)
    await write_audit(
        db, actor, "subscription.plan.reassign", "subscription", subscription.id, reason, before, after,
        {"repriced_invoices": [i["id"] for i in repriced], "topup_invoice": topup["id"] if topup else None},
    )
    await db.commit()
    return {"subscription": after, "repriced_invoices": repriced, "topup_invoice": topup, "audit_logged": True}


# ── EFT ────────────────────────────────────────────────────

def _require_decision(decision: str) -> None:
    if decision not in REVIEW_DECISIONS:
        raise BillingValidationError(f"Decision must be approve or reject, not {decision!r}")


async def review_eft_payment(
    db: AsyncSession, invoice_id: str, decision: str, reason: str, actor: AdminActor,
) -> dict:
    reason = require_reason(reason)
    _require_decision(decision)
    invoice = await get_invoice(db, invoice_id, lock=True)
    if invoice.payment_method != "eft":
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is not an EFT invoice")
    if invoice.status != STATUS_PENDING:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is {invoice.status}")
    before = invoice_snapshot(invoice)

    if decision == "approve":
        subscription = await db.get(Subscription, invoice.subscription_id, with_for_update=True)
        await mark_invoice_paid(db, invoice, subscription, approval_status="approved")
    else:
        invoice.payment_approval_status = "rejected"

    after = invoice_snapshot(invoice)
    await write_audit(db, actor, f"invoice.eft.{decision}", "invoice", invoice.id, reason, before, after)
    await db.commit()
    return {"invoice": after, "audit_logged": True}


async def set_eft_eligibility(
    db: AsyncSession, customer_id, approved: bool, reason: str, actor: AdminActor, notes: str | None = None,
) -> dict:
    reason = require_reason(reason)
    billing = await db.get(CustomerBillingSettings, customer_id, with_for_update=True)
    before = {"eft_approved": billing.eft_approved, "notes": billing.notes} if billing else None
    if billing is None:
        billing = CustomerBillingSettings(customer_id=customer_id)
        db.add(billing)
    billing.eft_approved = bool(approved)
    if notes is not None:
        billing.notes = notes

    after = {"eft_approved": billing.eft_approved, "notes": billing.notes}
    await write_audit(db, actor, "customer.eft.eligibility", "customer", customer_id, reason, before, after)
    await db.commit()
    return {"customer_id": str(customer_id), **after, "audit_logged": True}


async def review_order_payment(
    db: AsyncSession, order_id, decision: str, reason: str, actor: AdminActor,
) -> dict:
    reason = require_reason(reason)
    _require_decision(decision)
    order = await db.get(Order, order_id, with_for_update=True, populate_existing=True)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    if order.payment_method != "eft" or order.payment_status != "pending":
        raise InvalidStateError(f"Order #{order.order_number} has no EFT payment awaiting review")
    before = order_snapshot(order)

    if decision == "approve":
        order.payment_status = "paid"
        order.payment_approval_status = "approved"
        order.status = "processing"
        order.paid_at = datetime.utcnow()
    else:
        order.payment_approval_status = "rejected"

    after = order_snapshot(order)
    await write_audit(db, actor, f"order.eft.{decision}", "order", order.id, reason, before, after)
    await db.commit()
    return {"order": after, "audit_logged": True}
