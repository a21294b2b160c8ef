"""
PayFast endpoints — the ITN (instant transaction notification) webhook.

Responses tell PayFast what to do next:
  200 → accepted, or rejected permanently (do not retry)
  503 → verification could not complete; PayFast retries later
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import get_db
from services.errors import TransientVerificationError
from services.reconciler import handle_itn

logger = logging.getLogger(__name__)

router = APIRouter()


def client_ip(request: Request) -> str | None:
    """
    Caller IP for the source allow-list.

    X-Forwarded-For is only read when the direct peer is a trusted proxy, and
    then from the right: the first hop not added by one of our own proxies is
    the caller. Anything left of that was supplied by the client.
    """
    peer = request.client.host if request.client else None
    trusted = set(settings.TRUSTED_PROXIES)
    if not settings.TRUST_FORWARDED_FOR or peer not in trusted:
        return peer

    hops = [hop.strip() for hop in request.headers.get("x-forwarded-for", "").split(",") if hop.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer


@router.post("/payfast/itn")
async def payfast_itn(request: Request, db: AsyncSession = Depends(get_db)):
    """PayFast posts form-encoded fields; the raw body is needed for validation."""
    raw_body = (await request.body()).decode("utf-8", errors="replace")
    source_ip = client_ip(request)
    try:
        result = await handle_itn(db, raw_body, source_ip)
    except TransientVerificationError as e:
        logger.warning("ITN from %s deferred: %s", source_ip, e)
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()
