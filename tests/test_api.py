"""HTTP-level tests: status codes the webhook, cron and admin callers rely on."""

import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

import main
from config import settings
from db.database import get_db
from routers.payments import client_ip
from services.errors import StorageUnavailableError, TransientVerificationError
from services.invoices import get_or_create_cycle_invoice
from services.payment_sessions import open_invoice_session
from services.proration import calculate_cycle_invoice
from test_reconciler import itn_body

ADMIN_HEADERS = {"X-Admin-Id": str(uuid.uuid4()), "X-Admin-Email": "ops@bethanyblooms.co.za"}


@pytest_asyncio.fixture
async def client(db):
    async def _override_db():
        yield db

    main.app.dependency_overrides[get_db] = _override_db
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    main.app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_itn_outage_returns_503(client, db, make_subscription):
    subscription = await make_subscription()
    quote = calculate_cycle_invoice("bi-weekly", 699, ["first", "third"], "2025-04")
    invoice, _ = await get_or_create_cycle_invoice(db, subscription, quote)
    session = await open_invoice_session(db, invoice)
    await db.commit()

    with patch("services.payfast.is_valid_source_ip", new=AsyncMock(return_value=True)), \
         patch("services.payfast.validate_with_payfast",
               new=AsyncMock(side_effect=TransientVerificationError("timeout"))):
        resp = await client.post(
            "/api/payments/payfast/itn",
            content=itn_body(session.id, "1398.00"),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_spoofed_forwarded_for_does_not_pass_the_ip_check(client, db, make_subscription):
    subscription = await make_subscription()
    quote = calculate_cycle_invoice("bi-weekly", 699, ["first", "third"], "2025-04")
    invoice, _ = await get_or_create_cycle_invoice(db, subscription, quote)
    session = await open_invoice_session(db, invoice)
    await db.commit()

    with patch("services.payfast.get_valid_ips", new=AsyncMock(return_value={"197.97.145.144"})), \
         patch("services.payfast.validate_with_payfast", new=AsyncMock(return_value=True)):
        resp = await client.post(
            "/api/payments/payfast/itn",
            content=itn_body(session.id, "1398.00"),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "X-Forwarded-For": "197.97.145.144",
            },
        )

    assert resp.status_code == 200
    body = resp.json()
    assert body["outcome"] == "rejected"
    assert body["failed_checks"] == ["source-ip"]
    await db.refresh(invoice)
    assert invoice.status == "pending-payment"


@pytest.mark.asyncio
async def test_itn_for_unknown_reference_returns_404(client):
    with patch("services.payfast.is_valid_source_ip", new=AsyncMock(return_value=True)), \
         patch("services.payfast.validate_with_payfast", new=AsyncMock(return_value=True)):
        resp = await client.post(
            "/api/payments/payfast/itn",
            content=itn_body("does-not-exist", "10.00"),
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_eft_proof_upload_during_storage_outage_is_503(client, db, make_subscription):
    subscription = await make_subscription(payment_method="eft")
    quote = calculate_cycle_invoice("bi-weekly", 699, ["first", "third"], "2025-04")
    invoice, _ = await get_or_create_cycle_invoice(db, subscription, quote)
    await db.commit()

    failing = AsyncMock(side_effect=StorageUnavailableError("Document storage unavailable"))
    with patch("services.subscriptions.save_file", new=failing):
        resp = await client.post(
            f"/api/subscriptions/invoices/{invoice.id}/eft-proof",
            data={"customer_id": str(subscription.customer_id)},
            files={"file": ("pop.pdf", b"%PDF-1.4", "application/pdf")},
        )

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_billing_run_requires_cron_secret(client):
    resp = await client.post("/api/billing/run", headers={"X-Cron-Secret": "wrong"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_override_without_reason_is_422(client, make_subscription):
    subscription = await make_subscription()
    resp = await client.patch(
        f"/api/admin/subscriptions/{subscription.id}/status",
        json={"status": "paused", "reason": "  "},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_admin_override_without_identity_is_401(client, make_subscription):
    subscription = await make_subscription()
    resp = await client.patch(
        f"/api/admin/subscriptions/{subscription.id}/status",
        json={"status": "paused", "reason": "customer asked by phone"},
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_customer_cannot_read_someone_elses_subscription(client, make_subscription):
    subscription = await make_subscription()
    resp = await client.get(f"/api/subscriptions/{subscription.id}", params={"customer_id": str(uuid.uuid4())})
    assert resp.status_code == 404


def _request(peer: str, forwarded: str | None = None):
    headers = {"x-forwarded-for": forwarded} if forwarded else {}
    return SimpleNamespace(client=SimpleNamespace(host=peer), headers=headers)


def test_forwarded_for_is_ignored_by_default():
    assert client_ip(_request("6.6.6.6", "197.97.145.144")) == "6.6.6.6"


def test_forwarded_for_from_untrusted_peer_is_ignored():
    with patch.object(settings, "TRUST_FORWARDED_FOR", True), \
         patch.object(settings, "TRUSTED_PROXIES", ["10.0.0.2"]):
        assert client_ip(_request("6.6.6.6", "197.97.145.144")) == "6.6.6.6"


def test_right_most_untrusted_hop_is_the_caller():
    with patch.object(settings, "TRUST_FORWARDED_FOR", True), \
         patch.object(settings, "TRUSTED_PROXIES", ["10.0.0.2", "10.0.0.3"]):
        # client-supplied 197.97.145.144 sits left of the real caller
        request = _request("10.0.0.2", "197.97.145.144, 6.6.6.6, 10.0.0.3")
        assert client_ip(request) == "6.6.6.6"
