"""
Recurring Billing Scheduler — the daily cron that issues cycle invoices.

Billing window (business timezone):
  day 1 of the month          → day1-fallback, bill the current month
  last PREBILL_WINDOW_DAYS    → prebill, bill next month
  any other day               → skip

Per subscription:
  1. A pending invoice for the target cycle or earlier is re-emailed and
     nothing new is created; a pending invoice for a later cycle means the
     subscription is already ahead, so it is skipped without a resend
  2. next_billing_month later than the target → skip
  3. Otherwise create the full-price cycle invoice (plus active recurring
     charges) and advance next_billing_month

Billing state is committed before any email goes out; the email outcome is
committed afterwards on its own.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.audit import BillingRun
from models.subscription import Subscription
from services.delivery_calendar import (
    business_today,
    compare_month_keys,
    days_in_month,
    month_key_for,
    next_month_key,
    normalize_month_key,
)
from services.errors import BillingError, NotFoundError
from services.invoices import (
    find_pending_invoices,
    get_or_create_cycle_invoice,
    recurring_charge_adjustments,
)
from services.notifications import EMAIL_FAILED, EMAIL_SENT, EMAIL_SKIPPED, send_invoice_email
from services.proration import calculate_cycle_invoice

logger = logging.getLogger(__name__)

MODE_DAY1_FALLBACK = "day1-fallback"
MODE_PREBILL = "prebill"
MODE_SKIP = "skip"

ACTION_CREATED = "created"
ACTION_RESENT = "resent"
ACTION_SKIPPED = "skipped"
ACTION_FAILED = "failed"


@dataclass(frozen=True)
class BillingWindow:
    mode: str
    target_cycle_month: str | None


def resolve_billing_window(today: date) -> BillingWindow:
    if today.day == 1:
        return BillingWindow(MODE_DAY1_FALLBACK, month_key_for(today))
    last_day = days_in_month(today.year, today.month)
    if today.day > last_day - settings.PREBILL_WINDOW_DAYS:
        return BillingWindow(MODE_PREBILL, next_month_key(month_key_for(today)))
    return BillingWindow(MODE_SKIP, None)


def _invoice_summary(invoice) -> dict:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "cycle_month": invoice.cycle_month,
        "amount": float(invoice.amount),
    }


async def _apply_billing(db: AsyncSession, subscription_id, target_month: str) -> tuple[dict, list, Subscription | None]:
    """Billing decision inside the caller's transaction. Returns (result, invoices to email, subscription)."""
    subscription = await db.get(Subscription, subscription_id, with_for_update=True, populate_existing=True)
    if subscription is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")

    result = {"subscription_id": str(subscription.id), "target_cycle_month": target_month, "invoices": []}

    if subscription.status != "active":
        result.update(action=ACTION_SKIPPED, reason=f"subscription is {subscription.status}")
        return result, [], subscription

    pending = await find_pending_invoices(db, subscription.id, lock=True)
    if pending:
        due = [i for i in pending if compare_month_keys(i.cycle_month, target_month) <= 0]
        if not due:
            result.update(action=ACTION_SKIPPED, reason="pending invoice for a later cycle")
            return result, [], subscription
        result.update(action=ACTION_RESENT, reason="pending invoice outstanding")
        result["invoices"] = [_invoice_summary(i) for i in due]
        return result, due, subscription

    if subscription.next_billing_month and compare_month_keys(subscription.next_billing_month, target_month) > 0:
        result.update(action=ACTION_SKIPPED, reason=f"next billing month is {subscription.next_billing_month}")
        return result, [], subscription

    quote = calculate_cycle_invoice(
        subscription.tier, subscription.per_delivery_amount, subscription.monday_slots, target_month,
    )
    adjustments = recurring_charge_adjustments(subscription, quote.schedule.included_deliveries)
    invoice, created = await get_or_create_cycle_invoice(db, subscription, quote, adjustments)
    subscription.next_billing_month = next_month_key(target_month)

    result["invoices"] = [_invoice_summary(invoice)]
    if not created:
        result.update(action=ACTION_SKIPPED, reason=f"cycle already invoiced ({invoice.status})")
        return result, [], subscription
    result.update(action=ACTION_CREATED, reason=None)
    return result, [invoice], subscription


async def process_subscription(db: AsyncSession, subscription_id, target_month: str) -> dict:
    """Bill one subscription for target_month, commit, then email. Never raises."""
    target_month = normalize_month_key(target_month)
    try:
        result, to_email, subscription = await _apply_billing(db, subscription_id, target_month)
        await db.commit()
    except (BillingError, SQLAlchemyError) as e:
        await db.rollback()
        logger.error("Billing failed for subscription %s (%s): %s", subscription_id, target_month, e)
        return {
            "subscription_id": str(subscription_id),
            "target_cycle_month": target_month,
            "action": ACTION_FAILED,
            "reason": str(e),
            "invoices": [],
            "emails": [],
        }

    emails = []
    for invoice in to_email:
        outcome = await send_invoice_email(invoice, subscription)
        emails.append(outcome["status"])
    if to_email:
        await db.commit()
    result["emails"] = emails
    return result


async def bill_subscription_now(db: AsyncSession, subscription_id, now: datetime | None = None) -> dict:
    """On-demand invoice for a subscription's next unbilled cycle, same path as the cron."""
    subscription = await db.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    target = subscription.next_billing_month or month_key_for(business_today(now))
    return await process_subscription(db, subscription_id, target)


async def run_daily_billing(db: AsyncSession, now: datetime | None = None) -> BillingRun:
    """Run the billing window for today and persist one aggregated BillingRun."""
    today = business_today(now)
    window = resolve_billing_window(today)
    run = BillingRun(
        run_date=today.isoformat(),
        mode=window.mode,
        target_cycle_month=window.target_cycle_month,
        started_at=datetime.utcnow(),
        results=[],
    )

    counts = {ACTION_CREATED: 0, ACTION_RESENT: 0, ACTION_SKIPPED: 0, ACTION_FAILED: 0}
    email_counts = {EMAIL_SENT: 0, EMAIL_FAILED: 0, EMAIL_SKIPPED: 0}
    results = []

    if window.mode != MODE_SKIP:
        ids = (await db.execute(
            select(Subscription.id).where(Subscription.status == "active").order_by(Subscription.created_at)
        )).scalars().all()
        await db.commit()

        for subscription_id in ids:
            result = await process_subscription(db, subscription_id, window.target_cycle_month)
            counts[result["action"]] += 1
            for status in result["emails"]:
                email_counts[status] += 1
            results.append(result)

    run.created_count = counts[ACTION_CREATED]
    run.resent_count = counts[ACTION_RESENT]
    run.skipped_count = counts[ACTION_SKIPPED]
    run.failed_count = counts[ACTION_FAILED]
    run.emails_sent = email_counts[EMAIL_SENT]
    run.emails_failed = email_counts[EMAIL_FAILED]
    run.emails_skipped = email_counts[EMAIL_SKIPPED]
    run.results = results
    run.finished_at = datetime.utcnow()
    db.add(run)
    await db.commit()

    logger.info(
        "Billing run %s mode=%s target=%s created=%d resent=%d skipped=%d failed=%d "
        "emails sent=%d failed=%d skipped=%d",
        run.run_date, run.mode, run.target_cycle_month,
        run.created_count, run.resent_count, run.skipped_count, run.failed_count,
        run.emails_sent, run.emails_failed, run.emails_skipped,
    )
    return run
