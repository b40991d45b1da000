from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from opsgate.core.errors import ValidationFailed
from opsgate.services.credits import _to_amount, build_weekly_timeline, week_start


def test_week_start_is_sunday() -> None:
    # 2026-10-14 is a Wednesday; its week starts on Sunday 2026-10-11.
    assert week_start(datetime(2026, 10, 14, 9, 30, tzinfo=timezone.utc)) == "2026-10-11"
    assert week_start(datetime(2026, 10, 11, 0, 0, tzinfo=timezone.utc)) == "2026-10-11"
    assert week_start(datetime(2026, 10, 17, 23, 59, tzinfo=timezone.utc)) == "2026-10-11"


def test_week_start_accepts_naive_datetimes() -> None:
    # SQLite returns naive values; they are read as UTC.
    assert week_start(datetime(2026, 10, 18, 12, 0)) == "2026-10-18"


def test_timeline_splits_credits_and_debits_by_week() -> None:
    # Positive amounts are credits, negatives are debits, both reported as absolute sums.
    rows = [
        (datetime(2026, 10, 5, tzinfo=timezone.utc), Decimal("100.00")),
        (datetime(2026, 10, 6, tzinfo=timezone.utc), Decimal("-12.50")),
        (datetime(2026, 10, 12, tzinfo=timezone.utc), Decimal("-7.25")),
        (datetime(2026, 10, 13, tzinfo=timezone.utc), Decimal("20")),
    ]
    timeline = build_weekly_timeline(rows)
    assert timeline == [
        {"week": "2026-10-04", "credits": 100.0, "debits": 12.5},
        {"week": "2026-10-11", "credits": 20.0, "debits": 7.25},
    ]


def test_timeline_is_sorted_and_empty_for_no_rows() -> None:
    assert build_weekly_timeline([]) == []
    rows = [
        (datetime(2026, 10, 20, tzinfo=timezone.utc), 5),
        (datetime(2026, 9, 1, tzinfo=timezone.utc), 5),
    ]
    weeks = [bucket["week"] for bucket in build_weekly_timeline(rows)]
    assert weeks == sorted(weeks)


@pytest.mark.parametrize("value", [None, "abc", 0, -5, "NaN", "Infinity"])
def test_grant_amount_rejects_non_positive_values(value) -> None:
    # Every invalid amount maps to the same field-level validation error.
    with pytest.raises(ValidationFailed) as exc_info:
        _to_amount(value)
    assert exc_info.value.details["field"] == "amount"


def test_grant_amount_normalizes_to_cents() -> None:
    assert _to_amount("10.1") == Decimal("10.10")
    assert _to_amount(42) == Decimal("42.00")
    assert _to_amount("999999999999.99") == Decimal("999999999999.99")


@pytest.mark.parametrize("value", ["10.005", "10.129", 0.001])
def test_grant_amount_rejects_sub_cent_values(value) -> None:
    # Amounts are never silently rounded.
    with pytest.raises(ValidationFailed) as exc_info:
        _to_amount(value)
    assert exc_info.value.details["field"] == "amount"


@pytest.mark.parametrize("value", ["1000000000000", "1e30"])
def test_grant_amount_rejects_values_beyond_column_range(value) -> None:
    with pytest.raises(ValidationFailed) as exc_info:
        _to_amount(value)
    assert exc_info.value.details["maximum"] == "999999999999.99"
