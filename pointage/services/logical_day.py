from __future__ import annotations

import calendar
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from pointage.errors import invalid
from pointage.settings import get_settings

PERIOD_PATTERN = re.compile(r"^\d{4}_\d{2}$")
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True, slots=True)
class PunchRow:
    employee_id: int
    ts_utc: datetime


def normalize_ts(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or "Africa/Tunis"
    try:
        return ZoneInfo(raw_name)
    except Exception:
        return ZoneInfo("Africa/Tunis")


def to_local(ts: datetime) -> datetime:
    return normalize_ts(ts).astimezone(attendance_timezone())


def logical_date_for(ts: datetime, *, start_hour: int | None = None) -> date:
    """Logical day owning ``ts``: local times before the start hour belong to the previous date."""
    boundary = get_settings().logical_day_start_hour if start_hour is None else start_hour
    local = to_local(ts)
    if local.hour < boundary:
        return local.date() - timedelta(days=1)
    return local.date()


def logical_day_bounds(day: date, *, start_hour: int | None = None) -> tuple[datetime, datetime]:
    boundary = get_settings().logical_day_start_hour if start_hour is None else start_hour
    tz = attendance_timezone()
    local_start = datetime.combine(day, time(hour=boundary), tzinfo=tz)
    local_end = datetime.combine(day + timedelta(days=1), time(hour=boundary), tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def local_at(day: date, value: time) -> datetime:
    """UTC instant of a local wall-clock time on ``day``."""
    return datetime.combine(day, value, tzinfo=attendance_timezone()).astimezone(timezone.utc)


def dedupe_punches(punches: Iterable[PunchRow], *, window_minutes: int | None = None) -> list[PunchRow]:
    window = timedelta(minutes=get_settings().punch_dedup_minutes if window_minutes is None else window_minutes)
    ordered = sorted(punches, key=lambda item: (item.employee_id, item.ts_utc))
    kept: list[PunchRow] = []
    last_kept: dict[int, datetime] = {}
    for punch in ordered:
        previous = last_kept.get(punch.employee_id)
        if previous is not None and punch.ts_utc - previous <= window:
            continue
        kept.append(punch)
        last_kept[punch.employee_id] = punch.ts_utc
    return sorted(kept, key=lambda item: (item.ts_utc, item.employee_id))


def period_for(day: date) -> str:
    return f"{day.year:04d}_{day.month:02d}"


def parse_period(period: str) -> tuple[int, int]:
    value = (period or "").strip()
    if not PERIOD_PATTERN.match(value):
        raise invalid("INVALID_PERIOD", f"Period must look like YYYY_MM, got {period!r}.")
    year, month = int(value[:4]), int(value[5:])
    if not 1 <= month <= 12:
        raise invalid("INVALID_PERIOD", f"Month out of range in {period!r}.")
    return year, month


def period_days(period: str) -> list[date]:
    year, month = parse_period(period)
    return [date(year, month, day) for day in range(1, calendar.monthrange(year, month)[1] + 1)]


def parse_hhmm(value: str) -> time:
    match = TIME_PATTERN.match((value or "").strip())
    if match is None:
        raise invalid("INVALID_TIME", f"Time must look like HH:MM, got {value!r}.")
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        raise invalid("INVALID_TIME", f"Time out of range: {value!r}.")
    return time(hour=hours, minute=minutes)
