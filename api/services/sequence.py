"""
Invoice numbering — one monotonic counter shared by retail orders and
subscription invoices. Allocation row-locks the counter inside the caller's
transaction, so a rolled-back invoice never consumes a number.
"""

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.order import Counter

logger = logging.getLogger(__name__)


async def _ensure_counter(db: AsyncSession, name: str) -> None:
    if await db.get(Counter, name) is not None:
        return
    try:
        async with db.begin_nested():
            db.add(Counter(name=name, value=settings.ORDER_COUNTER_START))
    except IntegrityError:
        # Another writer created it first
        logger.info("Counter %s created concurrently", name)


async def allocate_invoice_number(db: AsyncSession, name: str | None = None) -> int:
    """Increment and return the next number. Caller owns the transaction."""
    name = name or settings.ORDER_COUNTER_NAME
    await _ensure_counter(db, name)

    result = await db.execute(
        select(Counter)
        .where(Counter.name == name)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    counter = result.scalar_one()
    counter.value = int(counter.value) + 1
    await db.flush()
    return counter.value
