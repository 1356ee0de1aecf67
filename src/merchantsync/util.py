from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo


Clock = Callable[[], datetime]


def now_utc_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def local_clock(timezone_name: str) -> Clock:
    tz = ZoneInfo(timezone_name)

    def _now() -> datetime:
        return datetime.now(tz=tz)

    return _now


def next_local_midnight(now: datetime) -> datetime:
    # Aware arithmetic on the local date keeps DST days correct.
    tomorrow = now.date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=now.tzinfo)


def iso_week_key(day: date) -> str:
    year, week, _ = day.isocalendar()
    return f"{year:04d}-W{week:02d}"


def week_bounds(week_key: str) -> tuple[date, date]:
    """Monday..Sunday of an ISO week key such as ``2026-W07``."""
    year_s, week_s = week_key.split("-W", 1)
    monday = date.fromisocalendar(int(year_s), int(week_s), 1)
    return monday, monday + timedelta(days=6)


def iter_days(start: date, end: date):
    cur = start
    while cur <= end:
        yield cur
        cur += timedelta(days=1)


def humanize_seconds(seconds: float) -> str:
    s = max(0, int(seconds))
    if s < 60:
        return f"{s} sec"
    if s < 3600:
        return f"{s // 60} min"
    hours, rem = divmod(s, 3600)
    return f"{hours} hr {rem // 60} min" if rem >= 60 else f"{hours} hr"


def preview_secret(value: str) -> str:
    return f"{value[:4]}...{value[-4:]}" if len(value) > 8 else "TOO_SHORT"
