"""
Timelock extraction tests.
"""

from __future__ import annotations

from custody.timelock import (
    DepositAnchor,
    due_timelocks,
    extract_absolute_timelocks,
    extract_relative_offsets,
    extract_timelock_triggers,
)

JAN_15_2026_UTC = 1_768_435_200_000


def test_date_only_is_midnight_utc():
    (trigger,) = extract_absolute_timelocks("Funds are withdrawable after January 15, 2026.")
    assert trigger.timestamp_ms == JAN_15_2026_UTC
    assert trigger.id == f"absolute:{JAN_15_2026_UTC}"


def test_time_and_pacific_timezone():
    (trigger,) = extract_absolute_timelocks(
        "The agent may withdraw on or after January 15, 2026 12:00AM PST."
    )
    assert trigger.timestamp_ms == JAN_15_2026_UTC + 8 * 3_600_000


def test_pm_time_without_timezone_is_utc():
    (trigger,) = extract_absolute_timelocks("after March 1, 2026 3:30 PM")
    assert trigger.timestamp_ms == 1_772_379_000_000


def test_relative_offset_per_deposit():
    rules = "Each deposit may be withdrawn five minutes after deposit."
    assert [offset for offset, _ in extract_relative_offsets(rules)] == [300_000]

    deposits = [DepositAnchor("0xaa", 1_000_000), DepositAnchor("0xbb", 2_000_000)]
    triggers = extract_timelock_triggers(rules, deposits)
    assert [(t.id, t.timestamp_ms) for t in triggers] == [
        ("relative:0xaa:300000", 1_300_000),
        ("relative:0xbb:300000", 2_300_000),
    ]


def test_numeric_hours_offset():
    assert extract_relative_offsets("2 hours after deposit")[0][0] == 7_200_000


def test_due_filter():
    rules = "Withdraw 10 minutes after deposit."
    triggers = extract_timelock_triggers(rules, [DepositAnchor("d", 0)])
    assert due_timelocks(triggers, 599_999) == []
    assert [t.id for t in due_timelocks(triggers, 600_000)] == ["relative:d:600000"]


def test_no_timelocks_in_plain_rules():
    assert extract_timelock_triggers("Only transfers to the agent are allowed.", []) == []
    assert extract_timelock_triggers(None) == []
