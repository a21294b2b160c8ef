"""
Subscription Service — customer signup, status changes, delivery preferences,
invoice pay links and EFT proof-of-payment uploads.

EFT is an admin-approved payment method: a customer may only subscribe with
EFT once CustomerBillingSettings.eft_approved is set for them.
"""

import logging
import uuid
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from models.invoice import SubscriptionInvoice
from models.subscription import CustomerBillingSettings, Subscription
from services import payfast
from services.delivery_calendar import business_today, next_month_key
from services.delivery_schedule import normalize_slots_for_tier, normalize_tier
from services.errors import BillingValidationError, InvalidStateError, NotFoundError
from services.invoices import (
    STATUS_PENDING,
    approval_status_for,
    cancel_pending_invoices_for_subscription,
    get_invoice,
    get_or_create_cycle_invoice,
)
from services.notifications import notify_admin, send_invoice_email
from services.payment_sessions import open_invoice_session
from services.proration import calculate_signup_invoice, positive_price
from services.storage import safe_file_name, save_file

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("payfast", "eft")
SUBSCRIPTION_STATUSES = ("active", "paused", "cancelled")

EFT_PROOF_CONTENT_TYPES = ("application/pdf", "image/jpeg", "image/png")
EFT_PROOF_MAX_BYTES = 10 * 1024 * 1024


def quote_to_dict(quote) -> dict:
    return {
        "cycle_month": quote.cycle_month,
        "tier": quote.tier,
        "per_delivery_amount": float(quote.per_delivery_amount),
        "base_amount": float(quote.base_amount),
        "cycle_amount": float(quote.cycle_amount),
        "total_deliveries": quote.total_deliveries,
        "charged_deliveries": quote.charged_deliveries,
        "proration_ratio": float(quote.proration_ratio),
        "is_prorated": quote.is_prorated,
        "starts_next_cycle": quote.starts_next_cycle,
        "delivery_schedule": quote.schedule.to_dict(),
    }


def quote_signup(tier: str, per_delivery_amount, slots: list[str] | None, signup_date: date | None = None) -> dict:
    """Preview of the first invoice a signup today would produce."""
    quote = calculate_signup_invoice(tier, per_delivery_amount, slots, signup_date or business_today())
    return quote_to_dict(quote)


async def is_eft_approved(db: AsyncSession, customer_id) -> bool:
    billing = await db.get(CustomerBillingSettings, customer_id)
    return bool(billing and billing.eft_approved)


async def get_customer_subscription(db: AsyncSession, subscription_id, customer_id, lock: bool = False) -> Subscription:
    subscription = await db.get(Subscription, subscription_id, with_for_update=lock or None, populate_existing=lock)
    if subscription is None or (customer_id is not None and subscription.customer_id != customer_id):
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription


async def get_customer_invoice(db: AsyncSession, invoice_id: str, customer_id, lock: bool = False) -> SubscriptionInvoice:
    invoice = await get_invoice(db, invoice_id, lock=lock)
    if customer_id is not None and invoice.customer_id != customer_id:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


# ── Signup ─────────────────────────────────────────────────

async def create_subscription(
    db: AsyncSession,
    customer_id: uuid.UUID,
    customer_name: str,
    customer_email: str,
    tier: str,
    per_delivery_amount,
    monday_slots: list[str] | None = None,
    delivery_address: dict | None = None,
    payment_method: str = "payfast",
    customer_phone: str | None = None,
    plan_id: str | None = None,
    plan_name: str | None = None,
    signup_date: date | None = None,
) -> tuple[Subscription, SubscriptionInvoice]:
    """Create the subscription and its first (possibly prorated) invoice, then email it."""
    tier = normalize_tier(tier)
    price = positive_price(per_delivery_amount)
    if payment_method not in PAYMENT_METHODS:
        raise BillingValidationError(f"Unsupported payment method: {payment_method!r}")
    if payment_method == "eft" and not await is_eft_approved(db, customer_id):
        raise InvalidStateError("EFT is only available once an administrator has approved it for this account")

    slots = normalize_slots_for_tier(tier, monday_slots)
    quote = calculate_signup_invoice(tier, price, slots, signup_date or business_today())

    subscription = Subscription(
        id=uuid.uuid4(),
        customer_id=customer_id,
        customer_name=customer_name,
        customer_email=customer_email,
        customer_phone=customer_phone,
        plan_id=plan_id,
        plan_name=plan_name or f"{tier.title()} flower subscription",
        tier=tier,
        per_delivery_amount=price,
        monday_slots=slots,
        delivery_address=delivery_address or {},
        payment_method=payment_method,
        payment_approval_status=approval_status_for(payment_method),
        status="active",
        next_billing_month=next_month_key(quote.cycle_month),
        recurring_charges=[],
    )
    db.add(subscription)
    await db.flush()

    invoice, _ = await get_or_create_cycle_invoice(db, subscription, quote)
    await db.commit()
    logger.info(
        "Subscription %s created for %s (%s, %s) first invoice #%s %s",
        subscription.id, customer_email, tier, payment_method, invoice.invoice_number, invoice.amount,
    )

    await send_invoice_email(invoice, subscription)
    await db.commit()
    return subscription, invoice


# ── Status & preferences ───────────────────────────────────

async def apply_status_change(db: AsyncSession, subscription: Subscription, status: str, reason: str) -> list[str]:
    """
    Move a subscription to status. Returns ids of invoices cancelled on the way.

    Cancelled subscriptions are terminal; cancelling also cancels every pending
    invoice (and supersedes its open payment sessions).
    """
    if status not in SUBSCRIPTION_STATUSES:
        raise BillingValidationError(f"Unknown subscription status: {status!r}")
    if subscription.status == "cancelled" and status != "cancelled":
        raise InvalidStateError("Cancelled subscriptions cannot be reactivated")

    cancelled = []
    now = datetime.utcnow()
    if status == "paused" and subscription.status != "paused":
        subscription.paused_at = now
    elif status == "active":
        subscription.paused_at = None
    elif status == "cancelled" and subscription.status != "cancelled":
        subscription.cancelled_at = now
        cancelled = await cancel_pending_invoices_for_subscription(db, subscription, reason)
    subscription.status = status
    await db.flush()
    return cancelled


async def update_subscription_status(db: AsyncSession, subscription_id, customer_id, status: str) -> Subscription:
    subscription = await get_customer_subscription(db, subscription_id, customer_id, lock=True)
    previous = subscription.status
    await apply_status_change(db, subscription, status, reason=f"customer set subscription {status}")
    await db.commit()
    logger.info("Subscription %s: %s → %s by customer", subscription.id, previous, status)
    return subscription


async def update_delivery_preferences(
    db: AsyncSession,
    subscription_id,
    customer_id,
    monday_slots: list[str] | None = None,
    delivery_address: dict | None = None,
) -> Subscription:
    """New slots apply from the next billed cycle; issued invoices keep their frozen schedule."""
    subscription = await get_customer_subscription(db, subscription_id, customer_id, lock=True)
    if subscription.status == "cancelled":
        raise InvalidStateError("Cancelled subscriptions cannot be changed")
    if monday_slots is not None:
        subscription.monday_slots = normalize_slots_for_tier(subscription.tier, monday_slots)
    if delivery_address is not None:
        subscription.delivery_address = dict(delivery_address)
    await db.commit()
    return subscription


# ── Paying invoices ────────────────────────────────────────

async def create_invoice_payment(
    db: AsyncSession,
    invoice_id: str,
    customer_id,
    return_url: str | None = None,
    cancel_url: str | None = None,
) -> dict:
    """Open a fresh PayFast session for a pending invoice at its current amount."""
    payfast.ensure_payfast_config()
    invoice = await get_customer_invoice(db, invoice_id, customer_id, lock=True)
    if invoice.status != STATUS_PENDING:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is {invoice.status}")
    if invoice.payment_method != "payfast":
        raise InvalidStateError("This invoice is payable by EFT only")
    subscription = await db.get(Subscription, invoice.subscription_id)

    session = await open_invoice_session(db, invoice)
    fields = payfast.build_checkout_fields(
        reference=session.id,
        amount=invoice.amount,
        item_name=f"Invoice #{invoice.invoice_number} ({invoice.cycle_month})",
        item_description=f"{subscription.plan_name if subscription else 'Flower subscription'} {invoice.tier}",
        customer={
            "full_name": subscription.customer_name if subscription else "",
            "email": invoice.customer_email,
            "phone": subscription.customer_phone if subscription else None,
        },
        return_url=return_url,
        cancel_url=cancel_url,
        custom_str2=f"subscription-invoice:{invoice.id}",
    )
    await db.commit()
    logger.info("PayFast session %s opened for invoice #%s (%s)", session.id, invoice.invoice_number, invoice.amount)
    return {
        "reference": session.id,
        "invoice_id": invoice.id,
        "amount": float(invoice.amount),
        "payment_url": payfast.checkout_url(),
        "fields": fields,
    }


async def attach_eft_proof(
    db: AsyncSession,
    invoice_id: str,
    customer_id,
    file_name: str,
    content: bytes,
    content_type: str,
) -> SubscriptionInvoice:
    """Upload a proof of payment for a pending EFT invoice and flag it for review."""
    if content_type not in EFT_PROOF_CONTENT_TYPES:
        raise BillingValidationError("Proof of payment must be a PDF, JPEG or PNG")
    if not content or len(content) > EFT_PROOF_MAX_BYTES:
        raise BillingValidationError("Proof of payment must be between 1 byte and 10 MB")

    invoice = await get_customer_invoice(db, invoice_id, customer_id)
    if invoice.payment_method != "eft":
        raise InvalidStateError("Proof of payment applies to EFT invoices only")
    if invoice.status != STATUS_PENDING:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is {invoice.status}")
    await db.commit()

    path = f"eft-proofs/subscription-invoices/{invoice.id}/{uuid.uuid4().hex}-{safe_file_name(file_name)}"
    stored = await save_file(path, content, content_type)

    invoice = await get_customer_invoice(db, invoice_id, customer_id, lock=True)
    if invoice.status != STATUS_PENDING:
        raise InvalidStateError(f"Invoice {invoice.invoice_number} is {invoice.status}")
    invoice.eft_proof = {
        "path": stored["path"],
        "download_url": stored.get("download_url"),
        "file_name": file_name,
        "content_type": content_type,
        "size": len(content),
        "uploaded_at": datetime.utcnow().isoformat(),
    }
    invoice.payment_approval_status = "pending"
    await db.commit()

    await notify_admin(
        f"EFT proof uploaded for invoice #{invoice.invoice_number}",
        f"<p>Invoice #{invoice.invoice_number} ({invoice.cycle_month}, R{float(invoice.amount):.2f}) "
        f"has a new proof of payment awaiting review.</p>",
    )
    return invoice
