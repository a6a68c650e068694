from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .timefmt import car_display_name, parse_timestamp, track_display_name, user_display_name


@dataclass(frozen=True)
class LapTime:
    """A single recorded lap.

    Laps are never edited after they are recorded. ``build_name`` is the
    build's name at the moment the lap was saved, so it survives renames and
    deletion of the build itself.
    """

    id: str
    time_ms: int
    user_id: str
    car_id: str
    build_id: Optional[str] = None
    track_id: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    notes: Optional[str] = None
    conditions: Optional[str] = None
    session_type: str = "R"

    # Display fields resolved from joined rows
    user_name: str = ""
    car_name: str = ""
    track_name: str = ""
    build_name: Optional[str] = None

    def __post_init__(self) -> None:
        if self.time_ms <= 0:
            raise ValueError(f"lap time must be positive, got {self.time_ms}")
        # Naive timestamps are taken as UTC so every lap compares with every other
        object.__setattr__(self, "created_at", parse_timestamp(self.created_at))

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LapTime":
        """Build a lap from a PostgREST ``LapTime`` row.

        Joined ``user``/``car``/``track`` objects are optional; when present
        their ids take precedence over missing foreign key columns.
        """

        user = row.get("user") if isinstance(row.get("user"), dict) else None
        car = row.get("car") if isinstance(row.get("car"), dict) else None
        track = row.get("track") if isinstance(row.get("track"), dict) else None

        try:
            time_ms = int(row.get("timeMs"))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid timeMs {row.get('timeMs')!r} for lap {row.get('id')}") from exc

        return cls(
            id=str(row.get("id") or ""),
            time_ms=time_ms,
            user_id=str(row.get("userId") or (user or {}).get("id") or ""),
            car_id=str(row.get("carId") or (car or {}).get("id") or ""),
            build_id=_optional_str(row.get("buildId")),
            track_id=_optional_str(row.get("trackId") or (track or {}).get("id")),
            created_at=parse_timestamp(row.get("createdAt")),
            notes=_optional_str(row.get("notes")),
            conditions=_optional_str(row.get("conditions")),
            session_type=str(row.get("sessionType") or "R"),
            user_name=user_display_name(user),
            car_name=car_display_name(car),
            track_name=track_display_name(track),
            build_name=_optional_str(row.get("buildName")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timeMs": self.time_ms,
            "userId": self.user_id,
            "userName": self.user_name or None,
            "carId": self.car_id,
            "carName": self.car_name or None,
            "buildId": self.build_id,
            "buildName": self.build_name,
            "trackId": self.track_id,
            "trackName": self.track_name or None,
            "notes": self.notes,
            "conditions": self.conditions,
            "sessionType": self.session_type,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
