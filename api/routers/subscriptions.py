"""
Customer subscription endpoints — signup, quotes, status, delivery preferences,
invoice payment and EFT proof uploads.

Callers identify the customer with customer_id; authentication happens
upstream of this service.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from models.invoice import SubscriptionInvoice
from schemas import (
    CheckoutResponse,
    DeliveryPreferencesUpdate,
    InvoicePaymentRequest,
    InvoiceResponse,
    SignupQuoteRequest,
    SubscriptionCreate,
    SubscriptionCreatedResponse,
    SubscriptionResponse,
    SubscriptionStatusUpdate,
)
from services.billing_scheduler import ACTION_FAILED, bill_subscription_now
from services.subscriptions import (
    attach_eft_proof,
    create_invoice_payment,
    create_subscription,
    get_customer_subscription,
    quote_signup,
    update_delivery_preferences,
    update_subscription_status,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/quote")
async def preview_signup_invoice(data: SignupQuoteRequest):
    """Preview the first invoice (prorated or next-cycle) for a signup."""
    return quote_signup(
        data.tier.value,
        data.per_delivery_amount,
        [s.value for s in data.monday_slots],
        data.signup_date,
    )


@router.post("", response_model=SubscriptionCreatedResponse, status_code=201)
async def subscribe(data: SubscriptionCreate, db: AsyncSession = Depends(get_db)):
    """Create a subscription and email its first invoice."""
    subscription, invoice = await create_subscription(
        db,
        customer_id=data.customer_id,
        customer_name=data.customer_name,
        customer_email=data.customer_email,
        customer_phone=data.customer_phone,
        plan_id=data.plan_id,
        plan_name=data.plan_name,
        tier=data.tier.value,
        per_delivery_amount=data.per_delivery_amount,
        monday_slots=[s.value for s in data.monday_slots],
        delivery_address=data.delivery_address.model_dump() if data.delivery_address else None,
        payment_method=data.payment_method.value,
    )
    return SubscriptionCreatedResponse(
        subscription=SubscriptionResponse.model_validate(subscription),
        invoice=InvoiceResponse.model_validate(invoice),
    )


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(subscription_id: uuid.UUID, customer_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await get_customer_subscription(db, subscription_id, customer_id)


@router.get("/{subscription_id}/invoices", response_model=list[InvoiceResponse])
async def list_subscription_invoices(
    subscription_id: uuid.UUID,
    customer_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Invoices for a subscription, newest cycle first."""
    await get_customer_subscription(db, subscription_id, customer_id)
    result = await db.execute(
        select(SubscriptionInvoice)
        .where(SubscriptionInvoice.subscription_id == subscription_id)
        .order_by(SubscriptionInvoice.cycle_month.desc(), SubscriptionInvoice.invoice_number.desc())
    )
    return result.scalars().all()


@router.patch("/{subscription_id}/status", response_model=SubscriptionResponse)
async def change_subscription_status(
    subscription_id: uuid.UUID,
    data: SubscriptionStatusUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Pause, resume or cancel. Cancelling also cancels unpaid invoices."""
    return await update_subscription_status(db, subscription_id, data.customer_id, data.status.value)


@router.patch("/{subscription_id}/delivery-preferences", response_model=SubscriptionResponse)
async def change_delivery_preferences(
    subscription_id: uuid.UUID,
    data: DeliveryPreferencesUpdate,
    db: AsyncSession = Depends(get_db),
):
    """New Monday slots apply from the next cycle invoice."""
    return await update_delivery_preferences(
        db,
        subscription_id,
        data.customer_id,
        monday_slots=[s.value for s in data.monday_slots] if data.monday_slots is not None else None,
        delivery_address=data.delivery_address.model_dump() if data.delivery_address else None,
    )


@router.post("/{subscription_id}/send-invoice")
async def send_invoice_now(subscription_id: uuid.UUID, customer_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    """Issue (or resend) the next cycle invoice right away."""
    await get_customer_subscription(db, subscription_id, customer_id)
    result = await bill_subscription_now(db, subscription_id)
    if result["action"] == ACTION_FAILED:
        raise HTTPException(status_code=422, detail=result["reason"])
    return result


@router.post("/invoices/{invoice_id}/pay", response_model=CheckoutResponse)
async def pay_invoice(invoice_id: str, data: InvoicePaymentRequest, db: AsyncSession = Depends(get_db)):
    """Start a PayFast checkout for a pending invoice."""
    return await create_invoice_payment(db, invoice_id, data.customer_id, data.return_url, data.cancel_url)


@router.post("/invoices/{invoice_id}/eft-proof", response_model=InvoiceResponse)
async def upload_eft_proof(
    invoice_id: str,
    customer_id: uuid.UUID = Form(...),
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
):
    """Attach a proof of payment to a pending EFT invoice."""
    content = await file.read()
    return await attach_eft_proof(
        db, invoice_id, customer_id, file.filename or "proof", content, file.content_type or "",
    )
