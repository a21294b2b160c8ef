"""Tests for the Monday calendar and delivery schedule builder."""

from datetime import date

import pytest

from services.delivery_calendar import (
    compare_month_keys,
    list_mondays,
    month_key_for,
    monday_slot_map,
    next_month_key,
    normalize_month_key,
)
from services.delivery_schedule import (
    build_schedule,
    filter_remaining,
    normalize_slots_for_tier,
    normalize_tier,
    rebuild_schedule,
    required_delivery_count,
    resolve_cycle_delivery_dates,
)
from services.errors import BillingValidationError


def test_list_mondays_five_monday_month():
    assert list_mondays("2025-03") == [
        date(2025, 3, 3), date(2025, 3, 10), date(2025, 3, 17), date(2025, 3, 24), date(2025, 3, 31),
    ]


def test_list_mondays_february():
    assert list_mondays("2025-02") == [date(2025, 2, 3), date(2025, 2, 10), date(2025, 2, 17), date(2025, 2, 24)]


def test_last_aliases_fourth_in_four_monday_month():
    slots = monday_slot_map("2025-02")
    assert slots["fourth"] == slots["last"] == date(2025, 2, 24)


def test_last_is_fifth_monday_when_present():
    slots = monday_slot_map("2025-03")
    assert slots["fourth"] == date(2025, 3, 24)
    assert slots["last"] == date(2025, 3, 31)


def test_month_keys_across_year_boundary():
    assert next_month_key("2025-12") == "2026-01"
    assert compare_month_keys("2025-12", "2026-01") == -1
    assert compare_month_keys("2026-01", "2026-01") == 0


@pytest.mark.parametrize("bad", ["2025-13", "2025-3", "March", "", None])
def test_invalid_month_key(bad):
    with pytest.raises(BillingValidationError):
        normalize_month_key(bad)


def test_tier_aliases_and_counts():
    assert normalize_tier("BiWeekly") == "bi-weekly"
    assert required_delivery_count("weekly") == 5
    assert required_delivery_count("bi-weekly") == 2
    assert required_delivery_count("monthly") == 1
    with pytest.raises(BillingValidationError):
        normalize_tier("daily")


def test_slot_normalization():
    assert normalize_slots_for_tier("bi-weekly", ["third", "third", "bogus"]) == ["third", "first"]
    assert normalize_slots_for_tier("monthly", ["second", "fourth"]) == ["second"]
    assert normalize_slots_for_tier("monthly", []) == ["first"]
    assert normalize_slots_for_tier("weekly", ["first"]) == ["first", "second", "third", "fourth", "last"]


def test_weekly_gets_every_monday():
    assert len(resolve_cycle_delivery_dates("weekly", [], "2025-03")) == 5
    assert len(resolve_cycle_delivery_dates("weekly", [], "2025-02")) == 4


def test_colliding_slots_backfill_next_unused_monday():
    # fourth and last are the same Monday in February 2025
    dates = resolve_cycle_delivery_dates("bi-weekly", ["fourth", "last"], "2025-02")
    assert dates == [date(2025, 2, 3), date(2025, 2, 24)]


def test_remaining_excludes_the_reference_day():
    dates = [date(2025, 3, 3), date(2025, 3, 17)]
    assert filter_remaining(dates, date(2025, 3, 17)) == []
    assert filter_remaining(dates, date(2025, 3, 16)) == [date(2025, 3, 17)]


def test_schedule_snapshot():
    schedule = build_schedule("bi-weekly", ["first", "third"], "2025-03", reference_date=date(2025, 3, 10))
    assert schedule.total_deliveries == 2
    assert schedule.included_deliveries == 1
    snapshot = schedule.to_dict()
    assert snapshot["slot_model"] == "monday-ordinal"
    assert snapshot["cutoff_rule"] == "next-monday-only"
    assert snapshot["cycle_dates"] == ["2025-03-03", "2025-03-17"]
    assert snapshot["included_dates"] == ["2025-03-17"]


def _months(start: str, count: int) -> list[str]:
    months = [start]
    while len(months) < count:
        months.append(next_month_key(months[-1]))
    return months


# 2025-01..2026-12: crosses a year end and both 4-Monday Februaries
SWEEP_MONTHS = _months("2025-01", 24)
SWEEP_SLOTS = [
    [],
    ["first"],
    ["last"],
    ["first", "third"],
    ["second", "fourth"],
    ["fourth", "last"],
    ["last", "last"],
    ["last", "first"],
]


@pytest.mark.parametrize("month", SWEEP_MONTHS)
@pytest.mark.parametrize("slots", SWEEP_SLOTS, ids=lambda s: "-".join(s) or "default")
@pytest.mark.parametrize("tier", ["weekly", "bi-weekly", "monthly"])
def test_every_cycle_resolves_the_tier_count_of_mondays(tier, slots, month):
    dates = resolve_cycle_delivery_dates(tier, slots, month)

    expected = len(list_mondays(month)) if tier == "weekly" else required_delivery_count(tier)
    assert len(dates) == expected
    assert len(set(dates)) == len(dates)
    assert dates == sorted(dates)
    for d in dates:
        assert d.weekday() == 0
        assert month_key_for(d) == month


def test_sweep_covers_four_monday_februaries():
    assert "2026-02" in SWEEP_MONTHS
    assert len(list_mondays("2026-02")) == 4


def test_rebuild_keeps_the_signup_cutoff():
    snapshot = build_schedule("bi-weekly", ["first", "third"], "2025-03", reference_date=date(2025, 3, 10)).to_dict()
    weekly = rebuild_schedule(snapshot, "weekly", None, "2025-03")
    assert weekly.included_dates == (date(2025, 3, 17), date(2025, 3, 24), date(2025, 3, 31))
    assert weekly.total_deliveries == 5

    monthly = rebuild_schedule(snapshot, "monthly", ["first"], "2025-03")
    assert monthly.included_deliveries == 0


def test_rebuild_of_full_cycle_snapshot_bills_every_delivery():
    snapshot = build_schedule("monthly", ["first"], "2025-04").to_dict()
    weekly = rebuild_schedule(snapshot, "weekly", None, "2025-04")
    assert weekly.included_deliveries == 4
    assert weekly.reference_date is None


def test_rebuild_rejects_a_corrupt_reference_date():
    with pytest.raises(BillingValidationError):
        rebuild_schedule({"reference_date": "10 March"}, "weekly", None, "2025-03")
