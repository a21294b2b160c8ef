"""Pydantic schemas for API request/response models."""

from __future__ import annotations
import uuid
from datetime import date, datetime
from enum import Enum
from pydantic import BaseModel, EmailStr, Field


# ── Enums ──────────────────────────────────────────────────

class Tier(str, Enum):
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"
    MONTHLY = "monthly"


class MondaySlot(str, Enum):
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    FOURTH = "fourth"
    LAST = "last"


class PaymentMethod(str, Enum):
    PAYFAST = "payfast"
    EFT = "eft"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class InvoiceOverrideStatus(str, Enum):
    PAID = "paid"
    CANCELLED = "cancelled"


class ChargeBasis(str, Enum):
    FLAT = "flat"
    PER_DELIVERY = "per-delivery"


class ChargeMode(str, Enum):
    ONE_TIME = "one-time"
    RECURRING = "recurring"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


# ── Subscriptions ──────────────────────────────────────────

class DeliveryAddress(BaseModel):
    street: str
    suburb: str | None = None
    city: str
    postal_code: str | None = None
    notes: str | None = None


class SignupQuoteRequest(BaseModel):
    tier: Tier
    per_delivery_amount: float = Field(..., gt=0)
    monday_slots: list[MondaySlot] = []
    signup_date: date | None = None


class SubscriptionCreate(BaseModel):
    customer_id: uuid.UUID
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: EmailStr
    customer_phone: str | None = None
    plan_id: str | None = None
    plan_name: str | None = None
    tier: Tier
    per_delivery_amount: float = Field(..., gt=0)
    monday_slots: list[MondaySlot] = []
    delivery_address: DeliveryAddress | None = None
    payment_method: PaymentMethod = PaymentMethod.PAYFAST


class SubscriptionResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    customer_name: str
    customer_email: str
    plan_id: str | None
    plan_name: str
    tier: str
    per_delivery_amount: float
    monday_slots: list[str]
    delivery_address: dict
    payment_method: str
    payment_approval_status: str
    status: str
    current_cycle_month: str | None
    next_billing_month: str | None
    recurring_charges: list[dict]
    created_at: datetime

    class Config:
        from_attributes = True


class SubscriptionStatusUpdate(BaseModel):
    customer_id: uuid.UUID
    status: SubscriptionStatus


class DeliveryPreferencesUpdate(BaseModel):
    customer_id: uuid.UUID
    monday_slots: list[MondaySlot] | None = None
    delivery_address: DeliveryAddress | None = None


class InvoiceResponse(BaseModel):
    id: str
    subscription_id: uuid.UUID
    invoice_type: str
    base_invoice_id: str | None
    invoice_number: int
    cycle_month: str
    tier: str
    per_delivery_amount: float
    base_amount: float
    adjustments: list[dict]
    adjustments_total: float
    amount: float
    is_prorated: bool
    proration_ratio: float
    delivery_schedule: dict
    payment_method: str
    payment_approval_status: str
    status: str
    email_status: str | None
    eft_proof: dict | None
    paid_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class SubscriptionCreatedResponse(BaseModel):
    subscription: SubscriptionResponse
    invoice: InvoiceResponse


class InvoicePaymentRequest(BaseModel):
    customer_id: uuid.UUID
    return_url: str | None = None
    cancel_url: str | None = None


class CheckoutResponse(BaseModel):
    reference: str
    amount: float
    payment_url: str
    fields: dict
    invoice_id: str | None = None


# ── Retail orders ──────────────────────────────────────────

class CartItem(BaseModel):
    id: str | None = None
    name: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    price: float = Field(..., gt=0)


class RetailCustomer(BaseModel):
    full_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str | None = None
    address: DeliveryAddress | None = None


class RetailCheckoutRequest(BaseModel):
    customer: RetailCustomer
    items: list[CartItem] = Field(..., min_length=1)
    return_url: str | None = None
    cancel_url: str | None = None


class EftOrderRequest(BaseModel):
    customer: RetailCustomer
    items: list[CartItem] = Field(..., min_length=1)


class OrderResponse(BaseModel):
    id: uuid.UUID
    order_number: int
    customer: dict
    items: list[dict]
    total_price: float
    status: str
    payment_method: str
    payment_status: str
    payment_approval_status: str
    created_at: datetime

    class Config:
        from_attributes = True


# ── Admin overrides ────────────────────────────────────────

class AdminReason(BaseModel):
    # Blank reasons are rejected by the service layer with a 422
    reason: str = ""


class SubscriptionStatusOverride(AdminReason):
    status: SubscriptionStatus


class InvoiceStatusOverride(AdminReason):
    status: InvoiceOverrideStatus


class InvoiceChargeCreate(AdminReason):
    label: str = Field(..., min_length=1, max_length=120)
    amount: float = Field(..., gt=0)
    basis: ChargeBasis = ChargeBasis.FLAT
    mode: ChargeMode = ChargeMode.ONE_TIME


class PlanReassign(AdminReason):
    tier: Tier
    per_delivery_amount: float = Field(..., gt=0)
    plan_id: str | None = None
    plan_name: str | None = None
    cycle_month: str | None = Field(None, pattern=r"^\d{4}-\d{2}$")


class PaymentReview(AdminReason):
    decision: ReviewDecision


class EftEligibilityUpdate(AdminReason):
    approved: bool
    notes: str | None = None


# ── Billing ────────────────────────────────────────────────

class BillingRunResponse(BaseModel):
    id: int
    run_date: str
    mode: str
    target_cycle_month: str | None
    created_count: int
    resent_count: int
    skipped_count: int
    failed_count: int
    emails_sent: int
    emails_failed: int
    emails_skipped: int
    results: list[dict]
    started_at: datetime
    finished_at: datetime | None

    class Config:
        from_attributes = True
