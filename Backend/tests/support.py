"""Shared constants and helpers for the test suite."""
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

SAO_PAULO = ZoneInfo("America/Sao_Paulo")

# 2030-01-07 is a Monday; far enough ahead that no slot is ever "past".
MONDAY = date(2030, 1, 7)
SUNDAY = date(2030, 1, 6)
# Fixed "now" for engine calls that accept one: the Sunday before, 12:00 local.
FIXED_NOW = datetime(2030, 1, 6, 15, 0, tzinfo=timezone.utc)


def local_dt(day: date, hhmm: str) -> datetime:
    hour, minute = map(int, hhmm.split(":"))
    return datetime.combine(day, time(hour, minute), tzinfo=SAO_PAULO)
