from __future__ import annotations

import datetime as dt
import re
from typing import Any, Dict, Optional

_LAP_TIME_RE = re.compile(r"^(?:(\d+):)?(\d+)(?:\.(\d{1,3}))?$")

MIN_LAP_MS = 10_000
MAX_LAP_MS = 1_800_000


def format_lap_time(ms: int) -> str:
    """Render milliseconds as ``m:ss.sss`` (e.g. ``92345`` -> ``1:32.345``)."""

    minutes, remainder = divmod(int(ms), 60_000)
    seconds, millis = divmod(remainder, 1000)
    return f"{minutes}:{seconds:02d}.{millis:03d}"


def parse_lap_time(value: str) -> Optional[int]:
    """Parse ``m:ss.sss`` or ``ss.sss`` into milliseconds, ``None`` if invalid."""

    match = _LAP_TIME_RE.match((value or "").strip())
    if not match:
        return None

    minutes = int(match.group(1)) if match.group(1) else 0
    seconds = int(match.group(2))
    millis = int(match.group(3).ljust(3, "0")) if match.group(3) else 0

    if seconds >= 60:
        return None

    return minutes * 60_000 + seconds * 1000 + millis


def time_difference(first_ms: int, second_ms: int) -> str:
    diff = first_ms - second_ms
    if diff == 0:
        return "0.000"
    sign = "+" if diff > 0 else "-"
    return f"{sign}{abs(diff) / 1000:.3f}"


def is_valid_lap_time(ms: int) -> bool:
    return MIN_LAP_MS <= ms <= MAX_LAP_MS


def parse_timestamp(value: Any) -> Optional[dt.datetime]:
    """Parse a Supabase timestamp into an aware UTC datetime."""

    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def car_display_name(car: Optional[Dict[str, Any]]) -> str:
    """``Manufacturer Name 'YY`` with the year suffix omitted when unknown."""

    if not isinstance(car, dict):
        return ""
    manufacturer = str(car.get("manufacturer") or "").strip()
    name = str(car.get("name") or "").strip()
    label = f"{manufacturer} {name}".strip()
    year = car.get("year")
    if year:
        label = f"{label} '{str(year)[-2:]}"
    return label


def track_display_name(track: Optional[Dict[str, Any]]) -> str:
    if not isinstance(track, dict):
        return ""
    name = str(track.get("name") or "").strip()
    layout = str(track.get("layout") or "").strip()
    return f"{name} - {layout}" if layout else name


def user_display_name(user: Optional[Dict[str, Any]]) -> str:
    """Prefer gamertag, then name, then the local part of the email."""

    if not isinstance(user, dict):
        return ""
    for key in ("gamertag", "name"):
        value = user.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    email = user.get("email")
    if isinstance(email, str) and email.strip():
        return email.split("@", 1)[0].strip()
    return ""
