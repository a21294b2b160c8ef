"""Tests for admin overrides and the append-only audit log."""

import uuid
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from models.audit import AdminAuditLog
from models.invoice import SubscriptionInvoice
from models.order import Order
from models.payment_session import PaymentSession
from services import admin_overrides
from services.admin_overrides import AdminActor
from services.errors import BillingValidationError, InvalidStateError
from services.invoices import get_or_create_cycle_invoice, mark_invoice_paid
from services.payment_sessions import open_invoice_session
from services.proration import calculate_cycle_invoice, calculate_signup_invoice

ACTOR = AdminActor(id=uuid.uuid4(), email="ops@bethanyblooms.co.za")


async def _pending_invoice(db, subscription, month="2025-04"):
    quote = calculate_cycle_invoice(subscription.tier, subscription.per_delivery_amount, subscription.monday_slots, month)
    invoice, _ = await get_or_create_cycle_invoice(db, subscription, quote)
    await db.commit()
    return invoice


async def _audit_rows(db) -> list[AdminAuditLog]:
    return list((await db.execute(select(AdminAuditLog).order_by(AdminAuditLog.id))).scalars().all())


@pytest.mark.asyncio
@pytest.mark.parametrize("reason", ["", "   ", None])
async def test_reason_is_required(db, make_subscription, reason):
    subscription = await make_subscription()
    with pytest.raises(BillingValidationError):
        await admin_overrides.override_subscription_status(db, subscription.id, "paused", reason, ACTOR)
    assert await _audit_rows(db) == []


@pytest.mark.asyncio
async def test_add_charge_is_audited_and_supersedes_payment(db, make_subscription):
    subscription = await make_subscription()
    invoice = await _pending_invoice(db, subscription)
    session = await open_invoice_session(db, invoice)
    await db.commit()

    result = await admin_overrides.add_invoice_charge(
        db, invoice.id, "Gift wrap", 40, "flat", "one-time", "customer asked by phone", ACTOR,
    )

    assert result["audit_logged"] is True
    assert result["invoice"]["amount"] == 1438.0
    stored = await db.get(PaymentSession, session.id, populate_existing=True)
    assert stored.status == "superseded"

    [entry] = await _audit_rows(db)
    assert entry.action == "invoice.charge.add"
    assert entry.actor_email == "ops@bethanyblooms.co.za"
    assert entry.before["amount"] == 1398.0
    assert entry.after["amount"] == 1438.0


@pytest.mark.asyncio
async def test_recurring_charge_is_stored_on_subscription(db, make_subscription):
    subscription = await make_subscription()
    invoice = await _pending_invoice(db, subscription)

    result = await admin_overrides.add_invoice_charge(
        db, invoice.id, "Vase rental", 20, "per-delivery", "recurring", "standing order", ACTOR,
    )

    assert result["invoice"]["amount"] == 1438.0
    charge = subscription.recurring_charges[0]
    assert charge["status"] == "active"
    assert result["adjustment"]["charge_id"] == charge["id"]

    removed = await admin_overrides.remove_recurring_charge(
        db, subscription.id, charge["id"], "customer cancelled the add-on", ACTOR,
    )
    assert removed["invoices"][0]["amount"] == 1398.0
    assert len(await _audit_rows(db)) == 2


@pytest.mark.asyncio
async def test_remove_invoice_charge_refuses_recurring(db, make_subscription):
    subscription = await make_subscription()
    invoice = await _pending_invoice(db, subscription)
    result = await admin_overrides.add_invoice_charge(
        db, invoice.id, "Vase rental", 20, "flat", "recurring", "standing order", ACTOR,
    )
    with pytest.raises(InvalidStateError):
        await admin_overrides.remove_invoice_charge(db, invoice.id, result["adjustment"]["id"], "oops", ACTOR)


@pytest.mark.asyncio
async def test_reassign_plan_reprices_pending_invoice_in_place(db, make_subscription):
    subscription = await make_subscription()
    invoice = await _pending_invoice(db, subscription)

    result = await admin_overrides.reassign_plan(
        db, subscription.id, "bi-weekly", 799, "upgrade to premium stems", ACTOR, cycle_month="2025-04",
    )

    assert result["topup_invoice"] is None
    assert [i["id"] for i in result["repriced_invoices"]] == [invoice.id]
    assert invoice.amount == Decimal("1598.00")
    assert await db.scalar(select(func.count()).select_from(SubscriptionInvoice)) == 1


@pytest.mark.asyncio
async def test_reassign_plan_on_paid_invoice_issues_topup_for_the_delta(db, make_subscription):
    subscription = await make_subscription()
    invoice = await _pending_invoice(db, subscription)
    await mark_invoice_paid(db, invoice, subscription)
    await db.commit()

    result = await admin_overrides.reassign_plan(
        db, subscription.id, "bi-weekly", 799, "upgrade mid-cycle", ACTOR, cycle_month="2025-04",
    )

    topup = result["topup_invoice"]
    assert topup["amount"] == 200.0
    assert topup["base_invoice_id"] == invoice.id
    assert invoice.status == "paid"
    assert invoice.amount == Decimal("1398.00")


@pytest.mark.asyncio
async def test_downgrade_on_paid_invoice_creates_nothing(db, make_subscription):
    subscription = await make_subscription()
    invoice = await _pending_invoice(db, subscription)
    await mark_invoice_paid(db, invoice, subscription)
    await db.commit()

    result = await admin_overrides.reassign_plan(
        db, subscription.id, "bi-weekly", 599, "downgrade", ACTOR, cycle_month="2025-04",
    )
    assert result["topup_invoice"] is None
    assert await db.scalar(select(func.count()).select_from(SubscriptionInvoice)) == 1


@pytest.mark.asyncio
async def test_tier_change_reschedules_pending_invoice(db, make_subscription):
    subscription = await make_subscription(tier="monthly", per_delivery_amount=399, monday_slots=["first"])
    invoice = await _pending_invoice(db, subscription)
    await admin_overrides.add_invoice_charge(
        db, invoice.id, "Vase rental", 20, "per-delivery", "one-time", "vase per delivery", ACTOR,
    )

    await admin_overrides.reassign_plan(
        db, subscription.id, "weekly", 399, "moved to weekly", ACTOR, cycle_month="2025-04",
    )

    # April 2025 has four Mondays
    assert invoice.tier == "weekly"
    assert invoice.delivery_schedule["included_dates"] == ["2025-04-07", "2025-04-14", "2025-04-21", "2025-04-28"]
    assert invoice.base_amount == Decimal("1596.00")
    assert invoice.adjustments[0]["amount"] == 80.0
    assert invoice.amount == Decimal("1676.00")
    assert invoice.is_prorated is False


@pytest.mark.asyncio
async def test_tier_change_keeps_signup_cutoff(db, make_subscription):
    subscription = await make_subscription()
    quote = calculate_signup_invoice("bi-weekly", 699, ["first", "third"], date(2025, 3, 10))
    invoice, _ = await get_or_create_cycle_invoice(db, subscription, quote)
    await db.commit()

    await admin_overrides.reassign_plan(
        db, subscription.id, "weekly", 699, "moved to weekly", ACTOR, cycle_month="2025-03",
    )

    assert invoice.delivery_schedule["included_dates"] == ["2025-03-17", "2025-03-24", "2025-03-31"]
    assert invoice.amount == Decimal("2097.00")
    assert invoice.is_prorated is True
    assert invoice.proration_ratio == Decimal("0.6")


@pytest.mark.asyncio
async def test_tier_change_leaving_no_deliveries_is_refused(db, make_subscription):
    subscription = await make_subscription()
    quote = calculate_signup_invoice("bi-weekly", 699, ["first", "third"], date(2025, 3, 10))
    await get_or_create_cycle_invoice(db, subscription, quote)
    await db.commit()

    # the only monthly delivery (3 March) was before signup
    with pytest.raises(InvalidStateError):
        await admin_overrides.reassign_plan(
            db, subscription.id, "monthly", 699, "moved to monthly", ACTOR, cycle_month="2025-03",
        )
    await db.rollback()
    assert await _audit_rows(db) == []


@pytest.mark.asyncio
async def test_tier_change_on_paid_invoice_tops_up_the_extra_deliveries(db, make_subscription):
    subscription = await make_subscription(tier="monthly", per_delivery_amount=399, monday_slots=["first"])
    invoice = await _pending_invoice(db, subscription)
    await mark_invoice_paid(db, invoice, subscription)
    await db.commit()

    result = await admin_overrides.reassign_plan(
        db, subscription.id, "weekly", 399, "moved to weekly", ACTOR, cycle_month="2025-04",
    )

    assert result["topup_invoice"]["amount"] == 1197.0
    assert invoice.tier == "monthly"
    assert invoice.amount == Decimal("399.00")


@pytest.mark.asyncio
async def test_cancel_subscription_cancels_pending_invoices(db, make_subscription):
    subscription = await make_subscription()
    invoice = await _pending_invoice(db, subscription)

    result = await admin_overrides.override_subscription_status(
        db, subscription.id, "cancelled", "customer emigrated", ACTOR,
    )

    assert result["cancelled_invoices"] == [invoice.id]
    assert invoice.status == "cancelled"
    with pytest.raises(InvalidStateError):
        await admin_overrides.override_subscription_status(db, subscription.id, "active", "undo", ACTOR)


@pytest.mark.asyncio
async def test_override_invoice_paid(db, make_subscription):
    subscription = await make_subscription()
    invoice = await _pending_invoice(db, subscription)
    result = await admin_overrides.override_invoice_status(db, invoice.id, "paid", "cash at market stall", ACTOR)
    assert result["invoice"]["status"] == "paid"
    assert subscription.current_cycle_month == "2025-04"
    with pytest.raises(InvalidStateError):
        await admin_overrides.override_invoice_status(db, invoice.id, "cancelled", "too late", ACTOR)


@pytest.mark.asyncio
async def test_eft_review(db, make_subscription):
    subscription = await make_subscription(payment_method="eft", payment_approval_status="pending")
    invoice = await _pending_invoice(db, subscription)
    assert invoice.payment_approval_status == "pending"

    rejected = await admin_overrides.review_eft_payment(db, invoice.id, "reject", "amount short", ACTOR)
    assert rejected["invoice"]["status"] == "pending-payment"
    assert rejected["invoice"]["payment_approval_status"] == "rejected"

    approved = await admin_overrides.review_eft_payment(db, invoice.id, "approve", "funds cleared", ACTOR)
    assert approved["invoice"]["status"] == "paid"
    assert approved["invoice"]["payment_approval_status"] == "approved"


@pytest.mark.asyncio
async def test_set_eft_eligibility_creates_settings(db):
    customer_id = uuid.uuid4()
    result = await admin_overrides.set_eft_eligibility(db, customer_id, True, "long-standing client", ACTOR)
    assert result["eft_approved"] is True
    [entry] = await _audit_rows(db)
    assert entry.before is None
    assert entry.target_type == "customer"


@pytest.mark.asyncio
async def test_review_order_payment(db):
    order = Order(
        order_number=1500, customer={"full_name": "A", "email": "a@b.co"}, items=[], total_price=100,
        payment_method="eft", payment_status="pending", payment_approval_status="pending",
    )
    db.add(order)
    await db.commit()

    result = await admin_overrides.review_order_payment(db, order.id, "approve", "bank confirmed", ACTOR)
    assert result["order"]["payment_status"] == "paid"
    assert result["order"]["status"] == "processing"


@pytest.mark.asyncio
async def test_audit_log_is_append_only(db, make_subscription):
    subscription = await make_subscription()
    await admin_overrides.override_subscription_status(db, subscription.id, "paused", "holiday", ACTOR)
    [entry] = await _audit_rows(db)

    entry.reason = "rewritten"
    with pytest.raises(ValueError):
        await db.flush()
    await db.rollback()

    await db.refresh(entry)
    await db.delete(entry)
    with pytest.raises(ValueError):
        await db.flush()
