"""
Market-hours gate.

NSE regular session: 09:15 - 15:30 Asia/Kolkata, both bounds inclusive.
Weekends are closed unless ``weekdays_only`` is switched off. Exchange
holidays are not modelled.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

from config.loader import MarketHoursConfig


def parse_hhmm(text: str) -> time:
    hour, minute = text.split(":")
    return time(int(hour), int(minute))


def market_now(hours: MarketHoursConfig, now: datetime | None = None) -> datetime:
    """*now* (or the wall clock) in the exchange timezone. Naive input is taken as UTC."""
    tz = ZoneInfo(hours.timezone)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        now = now.replace(tzinfo=ZoneInfo("UTC"))
    return now.astimezone(tz)


def _at(day: datetime, t: time) -> datetime:
    return day.replace(hour=t.hour, minute=t.minute, second=0, microsecond=0)


def _trading_day(day: datetime, hours: MarketHoursConfig) -> bool:
    return not hours.weekdays_only or day.weekday() < 5


def is_market_open(hours: MarketHoursConfig, now: datetime | None = None) -> bool:
    """True if *now* falls within the session, bounds included."""
    local = market_now(hours, now)
    if not _trading_day(local, hours):
        return False
    return _at(local, parse_hhmm(hours.open)) <= local <= _at(local, parse_hhmm(hours.close))


def next_market_open(hours: MarketHoursConfig, now: datetime | None = None) -> datetime:
    """Next session open in the exchange timezone, skipping weekends."""
    local = market_now(hours, now)
    open_t = parse_hhmm(hours.open)
    today_open = _at(local, open_t)
    if local < today_open and _trading_day(local, hours):
        return today_open

    candidate = _at(local + timedelta(days=1), open_t)
    while not _trading_day(candidate, hours):
        candidate += timedelta(days=1)
    return candidate
