"""
Retail Order Service — cart checkout through PayFast or EFT.

PayFast orders only exist once a verified ITN arrives (see reconciler); the
checkout step stores a pending payment session holding the cart snapshot.
EFT orders are created immediately and wait for an admin to approve the
transfer. Both share the invoice/order number counter.
"""

import logging
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.order import Order
from services import payfast
from services.errors import BillingValidationError
from services.notifications import notify_admin, send_email_with_retry
from services.payment_sessions import open_order_session
from services.proration import positive_price, round_money
from services.sequence import allocate_invoice_number

logger = logging.getLogger(__name__)


def normalize_customer(customer: dict) -> dict:
    full_name = (customer.get("full_name") or "").strip()
    email = (customer.get("email") or "").strip()
    if not full_name or not email:
        raise BillingValidationError("Customer name and email are required")
    return {
        "full_name": full_name,
        "email": email,
        "phone": (customer.get("phone") or "").strip() or None,
        "address": customer.get("address") or {},
    }


def normalize_items(items: list[dict]) -> tuple[list[dict], Decimal]:
    """Validated cart lines and their total."""
    if not items:
        raise BillingValidationError("Cart is empty")
    lines = []
    total = Decimal("0")
    for item in items:
        name = (item.get("name") or "").strip()
        quantity = int(item.get("quantity") or 0)
        if not name or quantity < 1:
            raise BillingValidationError("Every cart line needs a name and a quantity of at least 1")
        price = positive_price(item.get("price"))
        line_total = round_money(price * quantity)
        total += line_total
        lines.append({
            "id": item.get("id"),
            "name": name,
            "quantity": quantity,
            "price": float(price),
            "line_total": float(line_total),
        })
    return lines, round_money(total)


async def create_order_checkout(
    db: AsyncSession,
    customer: dict,
    items: list[dict],
    return_url: str | None = None,
    cancel_url: str | None = None,
) -> dict:
    payfast.ensure_payfast_config()
    customer = normalize_customer(customer)
    lines, total = normalize_items(items)

    session = await open_order_session(db, customer, lines, total)
    fields = payfast.build_checkout_fields(
        reference=session.id,
        amount=total,
        item_name="Bethany Blooms Order",
        item_description=", ".join(f"{line['quantity']} x {line['name']}" for line in lines),
        customer=customer,
        return_url=return_url,
        cancel_url=cancel_url,
        custom_str2="order",
    )
    await db.commit()
    logger.info("Retail PayFast session %s opened for %s (%s)", session.id, customer["email"], total)
    return {
        "reference": session.id,
        "amount": float(total),
        "payment_url": payfast.checkout_url(),
        "fields": fields,
    }


def _eft_instructions(order: Order) -> str:
    return (
        f"<p>Hi {order.customer.get('full_name')},</p>"
        f"<p>Thank you for order <b>#{order.order_number}</b> (R{float(order.total_price):.2f}).</p>"
        "<p>Please pay by EFT:<br>"
        f"Account name: {settings.EFT_ACCOUNT_NAME}<br>"
        f"Bank: {settings.EFT_BANK_NAME}<br>"
        f"Account number: {settings.EFT_ACCOUNT_NUMBER}<br>"
        f"Branch code: {settings.EFT_BRANCH_CODE}<br>"
        f"Reference: Order #{order.order_number}</p>"
    )


async def create_eft_order(db: AsyncSession, customer: dict, items: list[dict]) -> Order:
    customer = normalize_customer(customer)
    lines, total = normalize_items(items)

    number = await allocate_invoice_number(db)
    order = Order(
        order_number=number,
        customer=customer,
        items=lines,
        total_price=total,
        status="pending",
        payment_method="eft",
        payment_status="pending",
        payment_approval_status="pending",
    )
    db.add(order)
    await db.commit()
    logger.info("EFT order #%s created for %s (%s)", number, customer["email"], total)

    await send_email_with_retry(customer["email"], f"Bethany Blooms order #{number}", _eft_instructions(order))
    await notify_admin(
        f"New EFT order #{number}",
        f"<p>Order #{number} for {customer['full_name']} (R{float(total):.2f}) awaits payment approval.</p>",
    )
    return order
