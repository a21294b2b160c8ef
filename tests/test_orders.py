"""Tests for retail checkout: PayFast sessions and EFT orders."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from models.payment_session import PaymentSession
from services.errors import BillingValidationError
from services.orders import create_eft_order, create_order_checkout, normalize_items
from services.payfast import create_signature

CUSTOMER = {"full_name": "Lerato Dube", "email": "lerato@example.co.za", "phone": " 0821234567 "}
ITEMS = [
    {"id": "rose-bunch", "name": "Rose bunch", "quantity": 2, "price": 249.5},
    {"id": "vase", "name": "Glass vase", "quantity": 1, "price": 120},
]


def test_cart_total_is_sum_of_line_totals():
    lines, total = normalize_items(ITEMS)
    assert total == Decimal("619.00")
    assert [line["line_total"] for line in lines] == [499.0, 120.0]


@pytest.mark.parametrize("items", [
    [],
    [{"name": "Rose bunch", "quantity": 0, "price": 10}],
    [{"name": "", "quantity": 1, "price": 10}],
    [{"name": "Rose bunch", "quantity": 1, "price": 0}],
])
def test_invalid_carts_are_rejected(items):
    with pytest.raises(BillingValidationError):
        normalize_items(items)


@pytest.mark.asyncio
async def test_checkout_stores_a_pending_session_with_the_cart(db):
    checkout = await create_order_checkout(db, CUSTOMER, ITEMS)

    assert checkout["amount"] == 619.0
    fields = checkout["fields"]
    assert fields["m_payment_id"] == checkout["reference"]
    assert fields["amount"] == "619.00"
    unsigned = {k: v for k, v in fields.items() if k != "signature"}
    assert fields["signature"] == create_signature(unsigned, "jt7NOE43FZPn")

    session = (await db.execute(
        select(PaymentSession).where(PaymentSession.id == checkout["reference"])
    )).scalar_one()
    assert session.kind == "order"
    assert session.status == "pending"
    assert session.customer["phone"] == "0821234567"
    assert len(session.items) == 2


@pytest.mark.asyncio
async def test_eft_order_is_numbered_and_awaits_approval(db, sent_emails):
    order = await create_eft_order(db, CUSTOMER, ITEMS)

    assert order.order_number == 1000
    assert order.payment_method == "eft"
    assert order.payment_approval_status == "pending"
    assert float(order.total_price) == 619.0

    recipients = [call.args[0] for call in sent_emails.await_args_list]
    assert "lerato@example.co.za" in recipients
    assert len(recipients) == 2


@pytest.mark.asyncio
async def test_eft_order_requires_customer_email(db):
    with pytest.raises(BillingValidationError):
        await create_eft_order(db, {"full_name": "No Mail"}, ITEMS)
