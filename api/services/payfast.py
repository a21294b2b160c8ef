"""
PayFast Gateway — signing, checkout payloads and ITN trust checks.

Wire contract:
  - Checkout: POST to https://<host>/eng/process with the signed field set
  - Signature: md5 over "key=encodeURIComponent(value)" pairs (spaces as "+")
    joined by "&", empty values and "signature" skipped,
    "passphrase=<passphrase>" appended last
  - ITN validation: POST the raw ITN body back to /eng/query/validate → "VALID"
  - ITN source IPs must resolve from PayFast's published hostnames
"""

import asyncio
import hashlib
import hmac
import ipaddress
import json
import logging
import time
from urllib.parse import quote

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from config import settings
from services.errors import BillingValidationError, ConfigurationError, TransientVerificationError
from services.proration import round_money

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None

IP_CACHE_KEY = "payfast:valid_ips"


async def get_redis() -> aioredis.Redis:
    """Singleton Redis connection."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis


def ensure_payfast_config() -> None:
    missing = []
    if not settings.PAYFAST_MERCHANT_ID:
        missing.append("PAYFAST_MERCHANT_ID")
    if not settings.PAYFAST_MERCHANT_KEY:
        missing.append("PAYFAST_MERCHANT_KEY")
    if not settings.PAYFAST_NOTIFY_URL:
        missing.append("PAYFAST_NOTIFY_URL")
    if missing:
        raise ConfigurationError(f"Missing PayFast configuration: {', '.join(missing)}.")


def to_currency(value) -> str:
    """Amount as PayFast expects it: plain 2 dp string."""
    try:
        return f"{round_money(value):.2f}"
    except BillingValidationError:
        return "0.00"


# ── Signatures ─────────────────────────────────────────────

# encodeURIComponent-compatible: !'()* stay literal, spaces become "+"
URI_COMPONENT_SAFE = "!'()*"


def _encode(value) -> str:
    return quote(str(value).strip(), safe=URI_COMPONENT_SAFE).replace("%20", "+")


def create_signature(params: dict, passphrase: str | None = None) -> str:
    """md5 of the canonical parameter string, in the order given."""
    parts = []
    for key, value in params.items():
        if key == "signature" or value is None or value == "":
            continue
        parts.append(f"{key}={_encode(value)}")
    if passphrase:
        parts.append(f"passphrase={_encode(passphrase)}")
    return hashlib.md5("&".join(parts).encode()).hexdigest()


def verify_signature(params: dict, passphrase: str | None = None) -> bool:
    posted = (params.get("signature") or "").strip().lower()
    if not posted:
        return False
    return hmac.compare_digest(posted, create_signature(params, passphrase))


# ── Checkout payloads ──────────────────────────────────────

def checkout_url() -> str:
    return f"https://{settings.payfast_host}/eng/process"


def build_checkout_fields(
    reference: str,
    amount,
    item_name: str,
    item_description: str,
    customer: dict,
    return_url: str | None = None,
    cancel_url: str | None = None,
    custom_str2: str | None = None,
) -> dict:
    """Signed field set for the hosted checkout form."""
    ensure_payfast_config()

    full_name = (customer.get("full_name") or "").strip()
    name_parts = full_name.split()
    site = settings.SITE_URL.rstrip("/")

    fields = {}

    def append(name, value):
        if value is None or value == "":
            return
        fields[name] = value

    append("merchant_id", settings.PAYFAST_MERCHANT_ID)
    append("merchant_key", settings.PAYFAST_MERCHANT_KEY)
    append("return_url", return_url or settings.PAYFAST_RETURN_URL or f"{site}/payment/success")
    append("cancel_url", cancel_url or settings.PAYFAST_CANCEL_URL or f"{site}/payment/cancel")
    append("notify_url", settings.PAYFAST_NOTIFY_URL)
    append("name_first", name_parts[0] if name_parts else full_name)
    append("name_last", " ".join(name_parts[1:]))
    append("email_address", customer.get("email"))
    append("cell_number", customer.get("phone"))
    append("m_payment_id", reference)
    append("amount", to_currency(amount))
    append("item_name", (item_name or "Bethany Blooms Order")[:100])
    append("item_description", (item_description or "")[:255])
    append("custom_str1", reference)
    append("custom_str2", (custom_str2 or "")[:255])
    append("email_confirmation", 1)
    append("confirmation_address", customer.get("email"))

    fields["signature"] = create_signature(fields, settings.PAYFAST_PASSPHRASE)
    return fields


# ── Gateway validation callback ────────────────────────────

async def validate_with_payfast(raw_body: str) -> bool:
    """
    Ask PayFast whether it really sent this ITN.

    Returns False on an explicit non-VALID answer; raises
    TransientVerificationError on timeout, network error or a 5xx.
    """
    url = f"https://{settings.payfast_host}/eng/query/validate"
    try:
        async with httpx.AsyncClient(timeout=settings.PAYFAST_VALIDATE_TIMEOUT_SEC) as client:
            resp = await client.post(
                url,
                content=raw_body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
    except httpx.HTTPError as e:
        logger.warning("PayFast validation call failed: %s", e)
        raise TransientVerificationError(f"PayFast validation unavailable: {e}")

    if resp.status_code >= 500:
        raise TransientVerificationError(f"PayFast validation returned {resp.status_code}")
    return resp.text.strip().lower() == "valid"


# ── Source IP allow-list ───────────────────────────────────

async def _resolve_hosts(hosts: list[str]) -> set[str]:
    loop = asyncio.get_running_loop()
    ips: set[str] = set()
    for host in hosts:
        try:
            infos = await asyncio.wait_for(loop.getaddrinfo(host, None), timeout=settings.DNS_TIMEOUT_SEC)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("DNS lookup for %s failed: %s", host, e)
            continue
        ips.update(info[4][0] for info in infos)
    return ips


async def _read_ip_cache() -> dict | None:
    try:
        r = await get_redis()
        raw = await r.get(IP_CACHE_KEY)
    except RedisError as e:
        logger.warning("PayFast IP cache read failed: %s", e)
        return None
    if not raw:
        return None
    try:
        data = json.loads(raw)
        return {"ips": list(data["ips"]), "resolved_at": float(data["resolved_at"])}
    except (ValueError, KeyError, TypeError):
        logger.warning("PayFast IP cache entry is corrupt; ignoring")
        return None


async def _write_ip_cache(ips: set[str], resolved_at: float) -> None:
    try:
        r = await get_redis()
        # No Redis expiry: stale entries stay available as a fallback
        await r.set(IP_CACHE_KEY, json.dumps({"ips": sorted(ips), "resolved_at": resolved_at}))
    except RedisError as e:
        logger.warning("PayFast IP cache write failed: %s", e)


async def get_valid_ips() -> set[str]:
    """
    Resolved PayFast IPs, cached for PAYFAST_IP_CACHE_TTL_SEC.

    When resolution fails a stale cache is reused; with no cache at all the
    check cannot run and TransientVerificationError is raised (never fail open).
    """
    cached = await _read_ip_cache()
    now = time.time()
    if cached and now - cached["resolved_at"] < settings.PAYFAST_IP_CACHE_TTL_SEC:
        return set(cached["ips"])

    ips = await _resolve_hosts(settings.PAYFAST_VALID_HOSTS)
    if ips:
        await _write_ip_cache(ips, now)
        return ips

    if cached:
        logger.warning("PayFast host resolution failed; reusing stale allow-list (%d IPs)", len(cached["ips"]))
        return set(cached["ips"])

    raise TransientVerificationError("PayFast hosts could not be resolved and no cached allow-list exists")


def _normalize_ip(value: str) -> str | None:
    try:
        ip = ipaddress.ip_address((value or "").strip())
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        return str(ip.ipv4_mapped)
    return str(ip)


async def is_valid_source_ip(source_ip: str | None) -> bool:
    ip = _normalize_ip(source_ip or "")
    if ip is None:
        return False
    valid = {_normalize_ip(v) for v in await get_valid_ips()}
    return ip in valid
