"""
Admin back-office endpoints — overrides, EFT reviews and audit history.

Every mutating call needs a non-empty reason and is written to the audit log.
The acting admin is identified by the X-Admin-Id / X-Admin-Email headers set
by the upstream auth proxy.
"""

import uuid

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from models.audit import AdminAuditLog, BillingRun
from models.invoice import SubscriptionInvoice
from schemas import (
    AdminReason,
    BillingRunResponse,
    EftEligibilityUpdate,
    InvoiceChargeCreate,
    InvoiceResponse,
    InvoiceStatusOverride,
    PaymentReview,
    PlanReassign,
    SubscriptionStatusOverride,
)
from services import admin_overrides
from services.admin_overrides import AdminActor
from services.billing_scheduler import bill_subscription_now

router = APIRouter()


def get_actor(
    x_admin_id: str | None = Header(None),
    x_admin_email: str | None = Header(None),
) -> AdminActor:
    if not x_admin_id and not x_admin_email:
        raise HTTPException(status_code=401, detail="Admin identity headers missing")
    actor_id = None
    if x_admin_id:
        try:
            actor_id = uuid.UUID(x_admin_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="X-Admin-Id must be a UUID")
    return AdminActor(id=actor_id, email=x_admin_email)


# ── Subscriptions ──────────────────────────────────────────

@router.patch("/subscriptions/{subscription_id}/status")
async def override_subscription_status(
    subscription_id: uuid.UUID,
    data: SubscriptionStatusOverride,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await admin_overrides.override_subscription_status(
        db, subscription_id, data.status.value, data.reason, actor,
    )


@router.post("/subscriptions/{subscription_id}/plan")
async def reassign_plan(
    subscription_id: uuid.UUID,
    data: PlanReassign,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Change tier/price; unpaid invoices are repriced, paid ones get a top-up."""
    return await admin_overrides.reassign_plan(
        db, subscription_id, data.tier.value, data.per_delivery_amount, data.reason, actor,
        plan_id=data.plan_id, plan_name=data.plan_name, cycle_month=data.cycle_month,
    )


@router.post("/subscriptions/{subscription_id}/recurring-charges/{charge_id}/remove")
async def remove_recurring_charge(
    subscription_id: uuid.UUID,
    charge_id: str,
    data: AdminReason,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await admin_overrides.remove_recurring_charge(db, subscription_id, charge_id, data.reason, actor)


@router.post("/subscriptions/{subscription_id}/send-invoice")
async def send_invoice_now(
    subscription_id: uuid.UUID,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await bill_subscription_now(db, subscription_id)


# ── Invoices ───────────────────────────────────────────────

@router.get("/invoices", response_model=list[InvoiceResponse])
async def list_invoices(
    status: str | None = None,
    cycle_month: str | None = None,
    payment_method: str | None = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
):
    query = select(SubscriptionInvoice).order_by(SubscriptionInvoice.invoice_number.desc()).limit(limit)
    if status:
        query = query.where(SubscriptionInvoice.status == status)
    if cycle_month:
        query = query.where(SubscriptionInvoice.cycle_month == cycle_month)
    if payment_method:
        query = query.where(SubscriptionInvoice.payment_method == payment_method)
    result = await db.execute(query)
    return result.scalars().all()


@router.patch("/invoices/{invoice_id}/status")
async def override_invoice_status(
    invoice_id: str,
    data: InvoiceStatusOverride,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await admin_overrides.override_invoice_status(db, invoice_id, data.status.value, data.reason, actor)


@router.post("/invoices/{invoice_id}/charges")
async def add_invoice_charge(
    invoice_id: str,
    data: InvoiceChargeCreate,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await admin_overrides.add_invoice_charge(
        db, invoice_id, data.label, data.amount, data.basis.value, data.mode.value, data.reason, actor,
    )


@router.post("/invoices/{invoice_id}/charges/{adjustment_id}/remove")
async def remove_invoice_charge(
    invoice_id: str,
    adjustment_id: str,
    data: AdminReason,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await admin_overrides.remove_invoice_charge(db, invoice_id, adjustment_id, data.reason, actor)


@router.post("/invoices/{invoice_id}/eft-review")
async def review_eft_payment(
    invoice_id: str,
    data: PaymentReview,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await admin_overrides.review_eft_payment(db, invoice_id, data.decision.value, data.reason, actor)


# ── Customers & orders ─────────────────────────────────────

@router.put("/customers/{customer_id}/eft-eligibility")
async def set_eft_eligibility(
    customer_id: uuid.UUID,
    data: EftEligibilityUpdate,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await admin_overrides.set_eft_eligibility(db, customer_id, data.approved, data.reason, actor, data.notes)


@router.post("/orders/{order_id}/payment-review")
async def review_order_payment(
    order_id: uuid.UUID,
    data: PaymentReview,
    actor: AdminActor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await admin_overrides.review_order_payment(db, order_id, data.decision.value, data.reason, actor)


# ── History ────────────────────────────────────────────────

@router.get("/audit-log")
async def audit_log(
    target_id: str | None = None,
    action: str | None = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    """Audit entries, latest first."""
    query = select(AdminAuditLog).order_by(AdminAuditLog.created_at.desc()).limit(limit)
    if target_id:
        query = query.where(AdminAuditLog.target_id == target_id)
    if action:
        query = query.where(AdminAuditLog.action == action)
    entries = (await db.execute(query)).scalars().all()
    return [
        {
            "id": e.id,
            "action": e.action,
            "target_type": e.target_type,
            "target_id": e.target_id,
            "actor_id": str(e.actor_id) if e.actor_id else None,
            "actor_email": e.actor_email,
            "reason": e.reason,
            "before": e.before,
            "after": e.after,
            "metadata": e.metadata_json,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in entries
    ]


@router.get("/billing-runs", response_model=list[BillingRunResponse])
async def billing_runs(limit: int = 30, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(BillingRun).order_by(BillingRun.started_at.desc()).limit(limit))
    return result.scalars().all()
