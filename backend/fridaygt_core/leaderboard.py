from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Iterable, List, Optional

from .laptime import LapTime

DEFAULT_LIMIT = 10
RECENT_PER_GROUP = 5
RECENT_ACTIVITY = 10

# Laps without a timestamp sort after every dated lap
_UNDATED = dt.datetime.max.replace(tzinfo=dt.timezone.utc)
_EPOCH = dt.datetime.min.replace(tzinfo=dt.timezone.utc)


@dataclass
class LeaderboardEntry:
    position: int
    user_id: str
    user_name: str
    car_id: str
    car_name: str
    build_id: Optional[str]
    build_name: Optional[str]
    best_time: int
    total_laps: int
    best_lap_id: str
    last_improvement: Optional[dt.datetime]


@dataclass
class Statistics:
    total_laps: int = 0
    fastest_time: Optional[int] = None
    average_time: Optional[int] = None
    unique_drivers: int = 0
    unique_tracks: int = 0
    unique_cars: int = 0


@dataclass
class LeaderboardResults:
    entries: List[LeaderboardEntry] = field(default_factory=list)
    ranked: List[LeaderboardEntry] = field(default_factory=list)
    statistics: Statistics = field(default_factory=Statistics)


@dataclass
class PersonalBestGroup:
    """Per-track (or per-car) personal best with the latest laps."""

    key: str
    label: str
    personal_best: int
    total_laps: int
    recent_laps: List[LapTime] = field(default_factory=list)


@dataclass
class DriverSummary:
    user_id: str
    total_laps: int
    best_time: int
    average_time: int
    position: Optional[int]
    recent_laps: List[LapTime] = field(default_factory=list)


class Leaderboard:
    """Ranks personal bests per (driver, car, build)."""

    def __init__(self, laps: Iterable[LapTime] | None = None) -> None:
        self.laps: List[LapTime] = list(laps or [])

    def add_lap(self, lap: LapTime) -> None:
        self.laps.append(lap)

    def rank(self, limit: Optional[int] = DEFAULT_LIMIT) -> LeaderboardResults:
        if not self.laps:
            return LeaderboardResults()

        groups = _group_by(self.laps, key=lambda lap: (lap.user_id, lap.car_id, lap.build_id))

        ranked: List[LeaderboardEntry] = []
        for laps in groups.values():
            best = _best_lap(laps)
            first = laps[0]
            ranked.append(
                LeaderboardEntry(
                    position=0,
                    user_id=first.user_id,
                    user_name=first.user_name,
                    car_id=first.car_id,
                    car_name=first.car_name,
                    build_id=first.build_id,
                    build_name=best.build_name or first.build_name,
                    best_time=best.time_ms,
                    total_laps=len(laps),
                    best_lap_id=best.id,
                    last_improvement=best.created_at,
                )
            )

        # Groups are already in first-appearance order, so a stable sort keeps
        # that as the final tie-break.
        ranked.sort(key=lambda entry: (entry.best_time, entry.last_improvement or _UNDATED))
        for position, entry in enumerate(ranked, start=1):
            entry.position = position

        entries = ranked if limit is None else ranked[: max(limit, 0)]
        return LeaderboardResults(
            entries=entries,
            ranked=ranked,
            statistics=compute_statistics(self.laps),
        )


def build_leaderboard(laps: Iterable[LapTime], limit: Optional[int] = DEFAULT_LIMIT) -> LeaderboardResults:
    return Leaderboard(laps).rank(limit=limit)


def compute_statistics(laps: Iterable[LapTime]) -> Statistics:
    laps = list(laps)
    if not laps:
        return Statistics()

    times = [lap.time_ms for lap in laps]
    return Statistics(
        total_laps=len(laps),
        fastest_time=min(times),
        average_time=_rounded_mean(times),
        unique_drivers=len({lap.user_id for lap in laps}),
        unique_tracks=len({lap.track_id for lap in laps if lap.track_id}),
        unique_cars=len({lap.car_id for lap in laps}),
    )


def personal_bests_by_track(laps: Iterable[LapTime], recent: int = RECENT_PER_GROUP) -> List[PersonalBestGroup]:
    return _personal_bests(
        (lap for lap in laps if lap.track_id),
        key=lambda lap: lap.track_id,
        label=lambda lap: lap.track_name,
        recent=recent,
    )


def personal_bests_by_car(laps: Iterable[LapTime], recent: int = RECENT_PER_GROUP) -> List[PersonalBestGroup]:
    return _personal_bests(
        (lap for lap in laps if lap.car_id),
        key=lambda lap: lap.car_id,
        label=lambda lap: lap.car_name,
        recent=recent,
    )


def most_recent(laps: Iterable[LapTime], limit: int = RECENT_ACTIVITY) -> List[LapTime]:
    """Newest laps first; laps recorded at the same instant keep input order."""

    ordered = sorted(laps, key=lambda lap: lap.created_at or _EPOCH, reverse=True)
    return ordered[: max(limit, 0)]


def driver_summary(
    laps: Iterable[LapTime],
    user_id: str,
    ranked: Iterable[LeaderboardEntry] = (),
    recent: int = RECENT_ACTIVITY,
) -> Optional[DriverSummary]:
    own = [lap for lap in laps if lap.user_id == user_id]
    if not own:
        return None

    times = [lap.time_ms for lap in own]
    position = next((entry.position for entry in ranked if entry.user_id == user_id), None)
    return DriverSummary(
        user_id=user_id,
        total_laps=len(own),
        best_time=min(times),
        average_time=_rounded_mean(times),
        position=position,
        recent_laps=most_recent(own, limit=recent),
    )


def _personal_bests(
    laps: Iterable[LapTime],
    key: Callable[[LapTime], Hashable],
    label: Callable[[LapTime], str],
    recent: int,
) -> List[PersonalBestGroup]:
    groups = _group_by(laps, key=key)
    return [
        PersonalBestGroup(
            key=str(group_key),
            label=label(members[0]),
            personal_best=min(lap.time_ms for lap in members),
            total_laps=len(members),
            recent_laps=most_recent(members, limit=recent),
        )
        for group_key, members in groups.items()
    ]


def _group_by(laps: Iterable[LapTime], key: Callable[[LapTime], Hashable]) -> Dict[Hashable, List[LapTime]]:
    groups: Dict[Hashable, List[LapTime]] = {}
    for lap in laps:
        groups.setdefault(key(lap), []).append(lap)
    return groups


def _best_lap(laps: List[LapTime]) -> LapTime:
    # min() returns the first minimum, so equal timestamps fall back to input order
    return min(laps, key=lambda lap: (lap.time_ms, lap.created_at or _UNDATED))


def _rounded_mean(times: List[int]) -> Optional[int]:
    if not times:
        return None
    total = sum(times)
    count = len(times)
    # Round half up
    return (2 * total + count) // (2 * count)
