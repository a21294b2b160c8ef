"""Billing cron endpoint — called once a day by the scheduler (n8n / cron)."""

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import get_db
from schemas import BillingRunResponse
from services.billing_scheduler import resolve_billing_window, run_daily_billing
from services.delivery_calendar import business_today

router = APIRouter()


def require_cron_secret(x_cron_secret: str | None = Header(None)) -> None:
    if not settings.CRON_SECRET:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
        raise HTTPException(status_code=403, detail="Invalid cron secret")


@router.get("/window")
async def billing_window():
    """Today's billing mode and target cycle, in the business timezone."""
    today = business_today()
    window = resolve_billing_window(today)
    return {"date": today.isoformat(), "mode": window.mode, "target_cycle_month": window.target_cycle_month}


@router.post("/run", response_model=BillingRunResponse, dependencies=[Depends(require_cron_secret)])
async def run_billing(db: AsyncSession = Depends(get_db)):
    """Issue or resend cycle invoices for today's billing window."""
    return await run_daily_billing(db)
