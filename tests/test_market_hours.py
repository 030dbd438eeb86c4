"""Tests for the market-hours gate (no wall clock)."""

from datetime import datetime, time

import pytest

from agent.market_hours import is_market_open, market_now, next_market_open, parse_hhmm
from config.loader import MarketHoursConfig
from conftest import IST, ist

HOURS = MarketHoursConfig()


def test_parse_hhmm() -> None:
    assert parse_hhmm("09:15") == time(9, 15)
    assert parse_hhmm("15:30") == time(15, 30)


# ---------------------------------------------------------------------------
# is_market_open
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "h,mi,expected",
    [
        (9, 14, False),
        (9, 15, True),
        (12, 0, True),
        (15, 30, True),
        (15, 31, False),
        (20, 0, False),
    ],
)
def test_session_bounds_inclusive(h: int, mi: int, expected: bool) -> None:
    # 2026-03-02 is a Monday
    assert is_market_open(HOURS, ist(2026, 3, 2, h, mi)) is expected


def test_seconds_past_close_are_closed() -> None:
    assert is_market_open(HOURS, datetime(2026, 3, 2, 15, 30, 30, tzinfo=IST)) is False


@pytest.mark.parametrize("day", [7, 8])
def test_weekend_closed(day: int) -> None:
    assert is_market_open(HOURS, ist(2026, 3, day, 11, 0)) is False


def test_weekend_open_when_weekdays_only_off() -> None:
    hours = MarketHoursConfig(weekdays_only=False)
    assert is_market_open(hours, ist(2026, 3, 7, 11, 0)) is True


def test_naive_now_is_utc() -> None:
    # 03:45 UTC == 09:15 IST
    assert is_market_open(HOURS, datetime(2026, 3, 2, 3, 45)) is True
    assert is_market_open(HOURS, datetime(2026, 3, 2, 3, 44)) is False


def test_market_now_converts_zone() -> None:
    local = market_now(HOURS, datetime(2026, 3, 2, 0, 0))
    assert (local.hour, local.minute) == (5, 30)
    assert local.utcoffset().total_seconds() == 5.5 * 3600


def test_custom_session() -> None:
    hours = MarketHoursConfig(open="10:00", close="11:00")
    assert is_market_open(hours, ist(2026, 3, 2, 9, 30)) is False
    assert is_market_open(hours, ist(2026, 3, 2, 11, 0)) is True


# ---------------------------------------------------------------------------
# next_market_open
# ---------------------------------------------------------------------------


def test_next_open_same_day_before_session() -> None:
    assert next_market_open(HOURS, ist(2026, 3, 2, 8, 0)) == ist(2026, 3, 2, 9, 15)


def test_next_open_during_session_is_tomorrow() -> None:
    assert next_market_open(HOURS, ist(2026, 3, 2, 11, 0)) == ist(2026, 3, 3, 9, 15)


def test_next_open_friday_evening_skips_weekend() -> None:
    assert next_market_open(HOURS, ist(2026, 3, 6, 16, 0)) == ist(2026, 3, 9, 9, 15)


def test_next_open_from_saturday_morning() -> None:
    assert next_market_open(HOURS, ist(2026, 3, 7, 8, 0)) == ist(2026, 3, 9, 9, 15)
