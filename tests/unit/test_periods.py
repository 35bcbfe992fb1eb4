"""Unit tests for calendar-month period helpers."""

from datetime import datetime

import pytest

from ticketmeter.billing.periods import (
    add_months,
    months_between,
    period_bounds,
    period_key,
    previous_period,
    shift_period,
    validate_period,
)


@pytest.mark.unit
class TestPeriodKeys:
    def test_period_key_pads_month(self) -> None:
        assert period_key(datetime(2025, 3, 31, 23, 59, 59)) == "2025-03"

    def test_validate_accepts_well_formed_key(self) -> None:
        assert validate_period("2024-12") == "2024-12"

    @pytest.mark.parametrize("bad", ["2024-13", "2024-00", "2024-1", "24-01", "2024/01", ""])
    def test_validate_rejects_malformed_key(self, bad: str) -> None:
        with pytest.raises(ValueError):
            validate_period(bad)

    def test_shift_across_year_boundary(self) -> None:
        assert shift_period("2024-12", 1) == "2025-01"
        assert shift_period("2025-01", -1) == "2024-12"
        assert shift_period("2025-03", -15) == "2023-12"

    def test_previous_period(self) -> None:
        assert previous_period("2025-01") == "2024-12"


@pytest.mark.unit
class TestPeriodBounds:
    def test_bounds_are_half_open_month(self) -> None:
        start, end = period_bounds("2024-02")
        assert start == datetime(2024, 2, 1)
        assert end == datetime(2024, 3, 1)

    def test_december_ends_next_january(self) -> None:
        _, end = period_bounds("2024-12")
        assert end == datetime(2025, 1, 1)

    def test_last_instant_belongs_to_period(self) -> None:
        start, end = period_bounds("2025-03")
        moment = datetime(2025, 3, 31, 23, 59, 59, 999999)
        assert start <= moment < end
        assert period_key(moment) == "2025-03"


@pytest.mark.unit
class TestMonthArithmetic:
    def test_add_months_clamps_day(self) -> None:
        assert add_months(datetime(2025, 1, 31), 1) == datetime(2025, 2, 28)
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)

    def test_add_twelve_months(self) -> None:
        assert add_months(datetime(2025, 3, 15, 8, 30), 12) == datetime(2026, 3, 15, 8, 30)

    def test_months_between_uses_mean_month(self) -> None:
        start = datetime(2025, 1, 1)
        assert months_between(start, start) == 0
        assert months_between(start, datetime(2026, 1, 1)) == pytest.approx(11.99, abs=0.01)
