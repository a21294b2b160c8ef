"""
Delivery Schedule Builder — which Mondays a subscription owes in a cycle.

Tiers (deliveries per month, not weeks):
  weekly    → every Monday of the month (4 or 5)
  bi-weekly → 2 chosen ordinal Mondays (default: first, third)
  monthly   → 1 chosen ordinal Monday (default: first)

Cutoff rule "next-monday-only": a delivery is still owed only if it falls
strictly after the reference calendar day.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date

from services.delivery_calendar import MONDAY_SLOTS, list_mondays, monday_slot_map
from services.errors import BillingValidationError

SLOT_MODEL = "monday-ordinal"
CUTOFF_NEXT_MONDAY_ONLY = "next-monday-only"

TIERS = ("weekly", "bi-weekly", "monthly")

REQUIRED_DELIVERIES = {
    "weekly": 5,
    "bi-weekly": 2,
    "monthly": 1,
}

DEFAULT_SLOTS = {
    "weekly": list(MONDAY_SLOTS),
    "bi-weekly": ["first", "third"],
    "monthly": ["first"],
}


@dataclass(frozen=True)
class DeliverySchedule:
    cycle_month: str
    cycle_dates: tuple[date, ...]
    included_dates: tuple[date, ...]
    slot_model: str = SLOT_MODEL
    cutoff_rule: str = CUTOFF_NEXT_MONDAY_ONLY
    slots: tuple[str, ...] = field(default_factory=tuple)
    reference_date: date | None = None

    @property
    def total_deliveries(self) -> int:
        return len(self.cycle_dates)

    @property
    def included_deliveries(self) -> int:
        return len(self.included_dates)

    def to_dict(self) -> dict:
        """Snapshot stored on the invoice; never edited after attaching."""
        return {
            "cycle_month": self.cycle_month,
            "slot_model": self.slot_model,
            "cutoff_rule": self.cutoff_rule,
            "slots": list(self.slots),
            "cycle_dates": [d.isoformat() for d in self.cycle_dates],
            "included_dates": [d.isoformat() for d in self.included_dates],
            "total_deliveries": self.total_deliveries,
            "included_deliveries": self.included_deliveries,
            "reference_date": self.reference_date.isoformat() if self.reference_date else None,
        }


def normalize_tier(tier: str) -> str:
    normalized = (tier or "").strip().lower()
    if normalized == "biweekly":
        normalized = "bi-weekly"
    if normalized not in TIERS:
        raise BillingValidationError(f"Unknown subscription tier: {tier!r}")
    return normalized


def required_delivery_count(tier: str) -> int:
    return REQUIRED_DELIVERIES[normalize_tier(tier)]


def normalize_slots_for_tier(tier: str, slots: list[str] | None) -> list[str]:
    """De-duplicate valid ordinals, truncate to the tier count, back-fill with defaults."""
    tier = normalize_tier(tier)
    if tier == "weekly":
        return list(MONDAY_SLOTS)

    required = REQUIRED_DELIVERIES[tier]
    normalized: list[str] = []
    for slot in slots or []:
        value = (slot or "").strip().lower()
        if value in MONDAY_SLOTS and value not in normalized:
            normalized.append(value)

    if len(normalized) >= required:
        return normalized[:required]

    for slot in DEFAULT_SLOTS[tier]:
        if len(normalized) >= required:
            break
        if slot not in normalized:
            normalized.append(slot)
    return normalized[:required]


def resolve_cycle_delivery_dates(tier: str, slots: list[str] | None, month_key: str) -> list[date]:
    """
    Concrete Mondays owed in the month.

    Always returns exactly the tier's delivery count (weekly: every Monday),
    back-filling with the next unused Mondays when chosen slots collide
    (e.g. "fourth" and "last" in a 4-Monday month).
    """
    tier = normalize_tier(tier)
    mondays = list_mondays(month_key)
    if tier == "weekly":
        return mondays

    required = REQUIRED_DELIVERIES[tier]
    slot_map = monday_slot_map(month_key)

    selected: list[date] = []
    for slot in normalize_slots_for_tier(tier, slots):
        resolved = slot_map.get(slot)
        if resolved and resolved not in selected:
            selected.append(resolved)

    for monday in mondays:
        if len(selected) >= required:
            break
        if monday not in selected:
            selected.append(monday)

    return sorted(selected[:required])


def filter_remaining(
    dates: list[date],
    reference_date: date,
    cutoff_rule: str = CUTOFF_NEXT_MONDAY_ONLY,
) -> list[date]:
    """Deliveries still owed after the reference day (same-timezone calendar days)."""
    if cutoff_rule != CUTOFF_NEXT_MONDAY_ONLY:
        raise BillingValidationError(f"Unknown cutoff rule: {cutoff_rule!r}")
    return [d for d in dates if d > reference_date]


def build_schedule(
    tier: str,
    slots: list[str] | None,
    month_key: str,
    reference_date: date | None = None,
) -> DeliverySchedule:
    """Full cycle schedule; when reference_date is given only remaining dates are included."""
    cycle_dates = resolve_cycle_delivery_dates(tier, slots, month_key)
    included = cycle_dates if reference_date is None else filter_remaining(cycle_dates, reference_date)
    return DeliverySchedule(
        cycle_month=month_key,
        cycle_dates=tuple(cycle_dates),
        included_dates=tuple(included),
        slots=tuple(normalize_slots_for_tier(tier, slots)),
        reference_date=reference_date,
    )


def rebuild_schedule(snapshot: dict, tier: str, slots: list[str] | None, month_key: str) -> DeliverySchedule:
    """Re-resolve a frozen snapshot's month for another tier, keeping its signup cutoff."""
    raw_reference = (snapshot or {}).get("reference_date")
    try:
        reference = date.fromisoformat(raw_reference) if raw_reference else None
    except (TypeError, ValueError):
        raise BillingValidationError(f"Invalid schedule reference date: {raw_reference!r}")
    return build_schedule(tier, slots, month_key, reference_date=reference)
