"""Tests for ITN reconciliation (signature, amount, reference and session checks)."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch
from urllib.parse import urlencode

import pytest
from sqlalchemy import select

from models.order import Order
from models.payment_session import PaymentSession
from services import invoices
from services.errors import NotFoundError, TransientVerificationError
from services.invoices import build_adjustment, get_or_create_cycle_invoice
from services.payfast import create_signature
from services.payment_sessions import open_invoice_session, open_order_session
from services.proration import calculate_cycle_invoice
from services.reconciler import handle_itn

PASSPHRASE = "jt7NOE43FZPn"
PAYFAST_IP = "197.97.145.144"


def itn_body(reference: str, amount: str, status: str = "COMPLETE", passphrase: str = PASSPHRASE) -> str:
    params = {
        "m_payment_id": reference,
        "pf_payment_id": "1089250",
        "payment_status": status,
        "item_name": "Invoice",
        "amount_gross": amount,
        "amount_fee": "-8.05",
        "amount_net": str(Decimal(amount) - Decimal("8.05")),
        "custom_str1": reference,
        "merchant_id": "10000100",
    }
    params["signature"] = create_signature(params, passphrase)
    return urlencode(params)


@pytest.fixture
def gateway_ok():
    with patch("services.payfast.is_valid_source_ip", new=AsyncMock(return_value=True)) as ip_check, \
         patch("services.payfast.validate_with_payfast", new=AsyncMock(return_value=True)) as validate:
        yield ip_check, validate


async def _invoice_with_session(db, make_subscription):
    subscription = await make_subscription()
    quote = calculate_cycle_invoice("bi-weekly", 699, ["first", "third"], "2025-04")
    invoice, _ = await get_or_create_cycle_invoice(db, subscription, quote)
    session = await open_invoice_session(db, invoice)
    await db.commit()
    return subscription, invoice, session


@pytest.mark.asyncio
async def test_complete_itn_marks_invoice_paid(db, make_subscription, gateway_ok):
    subscription, invoice, session = await _invoice_with_session(db, make_subscription)

    result = await handle_itn(db, itn_body(session.id, "1398.00"), PAYFAST_IP)

    assert result.outcome == "paid"
    assert result.failed_checks == []
    assert invoice.status == "paid"
    assert invoice.payfast["pf_payment_id"] == "1089250"
    assert subscription.current_cycle_month == "2025-04"
    assert session.status == "completed"


@pytest.mark.asyncio
async def test_redelivered_itn_is_acknowledged_once(db, make_subscription, gateway_ok):
    _, invoice, session = await _invoice_with_session(db, make_subscription)
    await handle_itn(db, itn_body(session.id, "1398.00"), PAYFAST_IP)
    again = await handle_itn(db, itn_body(session.id, "1398.00"), PAYFAST_IP)
    assert again.outcome == "already-paid"
    assert again.accepted is True


@pytest.mark.asyncio
async def test_stale_session_after_charge_is_rejected(db, make_subscription, gateway_ok):
    """Paying the old amount after an admin charge must not mark the invoice paid."""
    _, invoice, session = await _invoice_with_session(db, make_subscription)
    await invoices.add_adjustment(db, invoice, build_adjustment("Vase", 150, "flat", "one-time", "admin", 2))
    await db.commit()

    result = await handle_itn(db, itn_body(session.id, "1398.00"), PAYFAST_IP)

    assert result.outcome == "rejected"
    assert "invoice-amount" in result.failed_checks
    assert "payment-reference" in result.failed_checks
    assert "session-state" in result.failed_checks
    assert invoice.status == "pending-payment"
    stored = await db.get(PaymentSession, session.id, populate_existing=True)
    assert stored.status == "superseded"
    assert "invoice-amount" in stored.failure_reasons


@pytest.mark.asyncio
async def test_forged_itn_does_not_block_the_genuine_one(db, make_subscription, gateway_ok):
    _, invoice, session = await _invoice_with_session(db, make_subscription)
    ip_check, _ = gateway_ok
    ip_check.return_value = False

    forged = await handle_itn(db, itn_body(session.id, "1.00", passphrase="wrong"), "6.6.6.6")

    assert forged.failed_checks == ["signature", "source-ip", "invoice-amount"]
    stored = await db.get(PaymentSession, session.id, populate_existing=True)
    assert stored.status == "pending"
    assert stored.failure_reasons == ["signature", "source-ip", "invoice-amount"]
    assert stored.amount_paid is None

    ip_check.return_value = True
    genuine = await handle_itn(db, itn_body(session.id, "1398.00"), PAYFAST_IP)

    assert genuine.outcome == "paid"
    await db.refresh(invoice)
    assert invoice.status == "paid"


@pytest.mark.asyncio
async def test_verified_amount_mismatch_ends_the_session(db, make_subscription, gateway_ok):
    _, invoice, session = await _invoice_with_session(db, make_subscription)

    result = await handle_itn(db, itn_body(session.id, "1000.00"), PAYFAST_IP)

    assert result.failed_checks == ["invoice-amount"]
    stored = await db.get(PaymentSession, session.id, populate_existing=True)
    assert stored.status == "validation-failed"
    assert invoice.status == "pending-payment"


@pytest.mark.asyncio
async def test_every_failing_check_is_reported(db, make_subscription):
    _, _, session = await _invoice_with_session(db, make_subscription)
    with patch("services.payfast.is_valid_source_ip", new=AsyncMock(return_value=False)), \
         patch("services.payfast.validate_with_payfast", new=AsyncMock(return_value=False)):
        result = await handle_itn(db, itn_body(session.id, "10.00", passphrase="wrong"), "10.0.0.1")
    assert result.failed_checks == ["signature", "source-ip", "gateway-validation", "invoice-amount"]


@pytest.mark.asyncio
async def test_gateway_outage_is_retryable(db, make_subscription):
    _, invoice, session = await _invoice_with_session(db, make_subscription)
    with patch("services.payfast.is_valid_source_ip", new=AsyncMock(return_value=True)), \
         patch("services.payfast.validate_with_payfast",
               new=AsyncMock(side_effect=TransientVerificationError("timeout"))):
        with pytest.raises(TransientVerificationError):
            await handle_itn(db, itn_body(session.id, "1398.00"), PAYFAST_IP)

    stored = await db.get(PaymentSession, session.id, populate_existing=True)
    assert stored.status == "pending"
    await db.refresh(invoice)
    assert invoice.status == "pending-payment"


@pytest.mark.asyncio
async def test_non_complete_status_changes_nothing(db, make_subscription, gateway_ok):
    _, invoice, session = await _invoice_with_session(db, make_subscription)
    result = await handle_itn(db, itn_body(session.id, "1398.00", status="CANCELLED"), PAYFAST_IP)
    assert result.outcome == "not-complete"
    assert session.status == "pending"
    assert session.last_payment_status == "CANCELLED"
    assert invoice.status == "pending-payment"


@pytest.mark.asyncio
async def test_unknown_reference(db, gateway_ok):
    with pytest.raises(NotFoundError):
        await handle_itn(db, itn_body("nope", "10.00"), PAYFAST_IP)


@pytest.mark.asyncio
async def test_retail_itn_creates_numbered_order(db, gateway_ok):
    customer = {"full_name": "Lerato Dube", "email": "lerato@example.co.za"}
    items = [{"name": "Rose bouquet", "quantity": 1, "price": 450.0}]
    session = await open_order_session(db, customer, items, Decimal("450.00"))
    await db.commit()

    result = await handle_itn(db, itn_body(session.id, "450.00"), PAYFAST_IP)

    assert result.outcome == "paid"
    order = (await db.execute(select(Order))).scalar_one()
    assert order.order_number == result.order_number == 1000
    assert order.payment_status == "paid"
    assert order.items == items


@pytest.mark.asyncio
async def test_retail_amount_mismatch(db, gateway_ok):
    session = await open_order_session(db, {"full_name": "A B", "email": "a@b.co"}, [], Decimal("450.00"))
    await db.commit()
    result = await handle_itn(db, itn_body(session.id, "45.00"), PAYFAST_IP)
    assert result.failed_checks == ["amount"]
    assert (await db.execute(select(Order))).scalar_one_or_none() is None
