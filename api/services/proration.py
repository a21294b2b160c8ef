"""
Proration Engine — subscription invoice amounts.

Revenue rules:
  1. Signup: bill only the deliveries still owed this month (price × remaining)
  2. Signup too late for any delivery: skip this month, bill next month in full
  3. Recurring cycles: always price × the cycle's delivery count, never prorated
  4. Money is rounded to 2 dp at every computation boundary
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from services.delivery_calendar import month_key_for, next_month_key
from services.delivery_schedule import DeliverySchedule, build_schedule, normalize_tier
from services.errors import BillingValidationError

CENT = Decimal("0.01")

CHARGE_BASES = ("flat", "per-delivery")


# ── Data classes ───────────────────────────────────────────

@dataclass
class InvoiceQuote:
    cycle_month: str
    tier: str
    per_delivery_amount: Decimal
    base_amount: Decimal
    cycle_amount: Decimal
    total_deliveries: int
    charged_deliveries: int
    proration_ratio: Decimal
    is_prorated: bool
    starts_next_cycle: bool
    schedule: DeliverySchedule


# ── Core Functions ─────────────────────────────────────────

def round_money(value) -> Decimal:
    """Round to cents (half-up). Floats go through str() to avoid binary noise."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise BillingValidationError(f"Invalid money amount: {value!r}")
    if not amount.is_finite():
        raise BillingValidationError(f"Invalid money amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def positive_price(value) -> Decimal:
    amount = round_money(value)
    if amount <= 0:
        raise BillingValidationError(f"Per-delivery price must be greater than zero, got {value!r}")
    return amount


def calculate_charge_amount(unit_amount, basis: str, deliveries: int) -> Decimal:
    """Flat charges apply once; per-delivery charges scale with the invoice's delivery count."""
    if basis not in CHARGE_BASES:
        raise BillingValidationError(f"Unknown charge basis: {basis!r}")
    unit = round_money(unit_amount)
    if basis == "per-delivery":
        return round_money(unit * deliveries)
    return unit


def proration_ratio(charged: int, total: int) -> Decimal:
    return (Decimal(charged) / Decimal(total)).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)


def _quote(
    tier: str,
    price: Decimal,
    schedule: DeliverySchedule,
    starts_next_cycle: bool = False,
) -> InvoiceQuote:
    total = schedule.total_deliveries
    charged = schedule.included_deliveries
    if total <= 0:
        raise BillingValidationError(f"No deliveries resolved for {schedule.cycle_month}")
    ratio = proration_ratio(charged, total)
    return InvoiceQuote(
        cycle_month=schedule.cycle_month,
        tier=tier,
        per_delivery_amount=price,
        base_amount=round_money(price * charged),
        cycle_amount=round_money(price * total),
        total_deliveries=total,
        charged_deliveries=charged,
        proration_ratio=ratio,
        is_prorated=charged < total,
        starts_next_cycle=starts_next_cycle,
        schedule=schedule,
    )


def calculate_signup_invoice(
    tier: str,
    per_delivery_amount,
    slots: list[str] | None,
    signup_date: date,
) -> InvoiceQuote:
    """
    Quote the first invoice of a new subscription.

    Bills the deliveries remaining after the signup cutoff against the current
    month. When none remain the customer would receive nothing this month, so
    the quote rolls to a full-price invoice for next month instead.
    """
    tier = normalize_tier(tier)
    price = positive_price(per_delivery_amount)
    if not isinstance(signup_date, date):
        raise BillingValidationError(f"Invalid signup date: {signup_date!r}")

    month_key = month_key_for(signup_date)
    schedule = build_schedule(tier, slots, month_key, reference_date=signup_date)
    if schedule.included_deliveries > 0:
        return _quote(tier, price, schedule)

    next_schedule = build_schedule(tier, slots, next_month_key(month_key))
    return _quote(tier, price, next_schedule, starts_next_cycle=True)


def calculate_cycle_invoice(
    tier: str,
    per_delivery_amount,
    slots: list[str] | None,
    month_key: str,
) -> InvoiceQuote:
    """Full-price quote for a recurring cycle."""
    tier = normalize_tier(tier)
    price = positive_price(per_delivery_amount)
    schedule = build_schedule(tier, slots, month_key)
    return _quote(tier, price, schedule)
