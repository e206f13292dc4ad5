"""
Business hours — per-device weekly schedule in the device's timezone.

Days follow the 0 = Sunday … 6 = Saturday convention. A day with no
window is closed; windows are inclusive at both ends ("09:00"–"17:00"
accepts 17:00). An unknown timezone falls back to UTC with a warning.
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.errors import ValidationError
from models.schemas import BusinessHoursWindow, DeviceBotConfig

logger = structlog.get_logger()

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")


def resolve_timezone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("invalid_timezone", timezone=name, fallback="UTC")
        return timezone.utc


def _hhmm(value: str) -> str:
    hours, minutes = value.split(":")
    return f"{int(hours):02d}:{minutes}"


def is_within_business_hours(
    windows: list[BusinessHoursWindow], tz_name: str = "UTC", now: Optional[datetime] = None,
) -> bool:
    """True when `now` (default: current time) falls inside today's window."""
    now = now or datetime.now(timezone.utc)
    local = now.astimezone(resolve_timezone(tz_name))
    day = (local.weekday() + 1) % 7          # Python Monday=0 → Sunday=0
    current = local.strftime("%H:%M")

    for window in windows:
        if window.day == day and _hhmm(window.start) <= current <= _hhmm(window.end):
            return True
    return False


def is_off_hours(config: DeviceBotConfig, now: Optional[datetime] = None) -> bool:
    """Off-hours only applies when enabled and a schedule exists; otherwise always open."""
    if not config.off_hours_enabled or not config.business_hours:
        return False
    return not is_within_business_hours(config.business_hours, config.timezone, now)


def validate_business_hours(schedule: list[Any]) -> list[BusinessHoursWindow]:
    if not isinstance(schedule, list):
        raise ValidationError("business_hours must be a list")

    errors = []
    windows = []
    for i, raw in enumerate(schedule):
        raw = raw.model_dump() if isinstance(raw, BusinessHoursWindow) else raw
        if not isinstance(raw, dict):
            errors.append(f"schedule {i}: must be an object")
            continue
        day, start, end = raw.get("day"), raw.get("start", ""), raw.get("end", "")
        if not isinstance(day, int) or isinstance(day, bool) or not 0 <= day <= 6:
            errors.append(f"schedule {i}: invalid day (must be 0-6)")
        start_ok = isinstance(start, str) and bool(_TIME_RE.match(start))
        end_ok = isinstance(end, str) and bool(_TIME_RE.match(end))
        if not start_ok:
            errors.append(f"schedule {i}: invalid start time (use HH:MM)")
        if not end_ok:
            errors.append(f"schedule {i}: invalid end time (use HH:MM)")
        if start_ok and end_ok and _hhmm(start) >= _hhmm(end):
            errors.append(f"schedule {i}: start must be before end")
        if not errors:
            windows.append(BusinessHoursWindow(day=day, start=start, end=end))

    if errors:
        raise ValidationError("Invalid business hours", errors)
    return windows


def default_business_hours() -> list[BusinessHoursWindow]:
    """Monday to Friday, 09:00–17:00."""
    return [BusinessHoursWindow(day=d, start="09:00", end="17:00") for d in range(1, 6)]
