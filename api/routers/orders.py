"""Retail order endpoints — PayFast cart checkout and EFT orders."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from models.order import Order
from schemas import CheckoutResponse, EftOrderRequest, OrderResponse, RetailCheckoutRequest
from services.orders import create_eft_order, create_order_checkout

router = APIRouter()


def _customer_payload(customer) -> dict:
    data = customer.model_dump()
    data["address"] = data.get("address") or {}
    return data


@router.post("/checkout", response_model=CheckoutResponse)
async def start_checkout(data: RetailCheckoutRequest, db: AsyncSession = Depends(get_db)):
    """Signed PayFast form for a cart; the order is created when payment is verified."""
    return await create_order_checkout(
        db,
        _customer_payload(data.customer),
        [item.model_dump() for item in data.items],
        return_url=data.return_url,
        cancel_url=data.cancel_url,
    )


@router.post("/eft", response_model=OrderResponse, status_code=201)
async def place_eft_order(data: EftOrderRequest, db: AsyncSession = Depends(get_db)):
    """Create an order paid by EFT; it stays pending until an admin approves the transfer."""
    return await create_eft_order(db, _customer_payload(data.customer), [item.model_dump() for item in data.items])


@router.get("/{order_number}", response_model=OrderResponse)
async def get_order(order_number: int, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Order).where(Order.order_number == order_number))
    order = result.scalar_one_or_none()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order
