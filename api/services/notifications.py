"""
Notification Service — transactional email through the email API collaborator.

The core never assumes delivery succeeded: every send reports an outcome
(sent / failed / skipped) and gets exactly one retry after a fixed delay.
"""

import asyncio
import logging
from datetime import datetime

import httpx
from config import settings

logger = logging.getLogger(__name__)

EMAIL_SENT = "sent"
EMAIL_FAILED = "failed"
EMAIL_SKIPPED = "skipped"


async def send_email(
    to: str,
    subject: str,
    html: str,
    attachments: list[dict] | None = None,
) -> dict:
    """Send one email. Returns {} on success, {"error": "..."} otherwise."""
    if not settings.EMAIL_API_URL:
        return {"error": "Email API is not configured"}
    try:
        async with httpx.AsyncClient(timeout=15.0) as client:
            payload = {
                "from": settings.EMAIL_FROM,
                "to": [to],
                "subject": subject,
                "html": html,
            }
            if attachments:
                payload["attachments"] = attachments

            resp = await client.post(
                settings.EMAIL_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {settings.EMAIL_API_KEY}"},
            )
            if resp.status_code >= 400:
                return {"error": f"Email API returned {resp.status_code}: {resp.text[:200]}"}
            return {}
    except httpx.HTTPError as e:
        return {"error": f"Email transport error: {e}"}


async def send_email_with_retry(
    to: str | None,
    subject: str,
    html: str,
    attachments: list[dict] | None = None,
) -> dict:
    """
    Send with one retry after EMAIL_RETRY_DELAY_SEC.

    Returns {"status": sent|failed|skipped, "error": str | None, "attempts": n}.
    """
    if not to:
        return {"status": EMAIL_SKIPPED, "error": "No recipient address", "attempts": 0}

    result = await send_email(to, subject, html, attachments)
    if not result.get("error"):
        return {"status": EMAIL_SENT, "error": None, "attempts": 1}

    logger.warning("Email to %s failed (%s); retrying once", to, result["error"])
    await asyncio.sleep(settings.EMAIL_RETRY_DELAY_SEC)
    result = await send_email(to, subject, html, attachments)
    if not result.get("error"):
        return {"status": EMAIL_SENT, "error": None, "attempts": 2}

    logger.error("Email to %s failed after retry: %s", to, result["error"])
    return {"status": EMAIL_FAILED, "error": result["error"], "attempts": 2}


def _format_money(value) -> str:
    return f"R{float(value or 0):.2f}"


def invoice_pay_url(invoice) -> str:
    return f"{settings.SITE_URL.rstrip('/')}/account/subscriptions/invoices/{invoice.id}/pay"


def build_invoice_email(invoice, subscription) -> tuple[str, str]:
    """Subject and minimal HTML body for a subscription invoice."""
    type_label = "Top-up invoice" if invoice.invoice_type == "topup" else "Invoice"
    subject = f"Bethany Blooms {type_label.lower()} #{invoice.invoice_number} — {invoice.cycle_month}"

    schedule = invoice.delivery_schedule or {}
    dates = ", ".join(schedule.get("included_dates") or []) or "—"
    lines = [
        f"<p>Hi {subscription.customer_name},</p>",
        f"<p>{type_label} <b>#{invoice.invoice_number}</b> for your {subscription.plan_name} "
        f"({invoice.tier}) covering <b>{invoice.cycle_month}</b>.</p>",
        f"<p>Deliveries: {dates}</p>",
        f"<p>Base: {_format_money(invoice.base_amount)}<br>",
    ]
    for adjustment in invoice.adjustments or []:
        if adjustment.get("status", "active") == "active":
            lines.append(f"{adjustment.get('label')}: {_format_money(adjustment.get('amount'))}<br>")
    lines.append(f"<b>Total due: {_format_money(invoice.amount)}</b></p>")

    if invoice.payment_method == "eft":
        lines.append(
            "<p>Please pay by EFT:<br>"
            f"Account name: {settings.EFT_ACCOUNT_NAME}<br>"
            f"Bank: {settings.EFT_BANK_NAME}<br>"
            f"Account number: {settings.EFT_ACCOUNT_NUMBER}<br>"
            f"Branch code: {settings.EFT_BRANCH_CODE}<br>"
            f"Reference: Invoice #{invoice.invoice_number}</p>"
        )
    else:
        lines.append(f'<p><a href="{invoice_pay_url(invoice)}">Pay now with PayFast</a></p>')

    return subject, "\n".join(lines)


async def send_invoice_email(invoice, subscription) -> dict:
    """Email an invoice and record the outcome on it; the caller commits."""
    subject, html = build_invoice_email(invoice, subscription)
    outcome = await send_email_with_retry(invoice.customer_email, subject, html)
    invoice.email_status = outcome["status"]
    invoice.email_error = outcome["error"]
    invoice.email_send_count = (invoice.email_send_count or 0) + (1 if outcome["status"] == EMAIL_SENT else 0)
    if outcome["status"] == EMAIL_SENT:
        invoice.email_sent_at = datetime.utcnow()
    return outcome


async def notify_admin(subject: str, html: str) -> dict:
    """Send an operational alert to the admin mailbox."""
    return await send_email_with_retry(settings.ADMIN_EMAIL, f"[Admin] {subject}", html)
