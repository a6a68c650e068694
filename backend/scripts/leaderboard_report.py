"""CLI helper that prints the leaderboard for one car/track combination."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from fridaygt_core.leaderboard import LeaderboardResults, build_leaderboard
from fridaygt_core.loader import DataStore
from fridaygt_core.timefmt import format_lap_time, time_difference


def _format_table(results: LeaderboardResults) -> str:
    if not results.entries:
        return "No lap times recorded."

    leader = results.entries[0].best_time
    lines = []
    for entry in results.entries:
        gap = "" if entry.position == 1 else f"  {time_difference(entry.best_time, leader)}"
        build = f" [{entry.build_name}]" if entry.build_name else ""
        lines.append(
            f"{entry.position:>3}. {format_lap_time(entry.best_time)}{gap}  "
            f"{entry.user_name or entry.user_id}{build}  ({entry.total_laps} laps)"
        )

    stats = results.statistics
    lines.append("")
    lines.append(
        f"{stats.total_laps} laps by {stats.unique_drivers} drivers, "
        f"average {format_lap_time(stats.average_time or 0)}"
    )
    return "\n".join(lines)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("car", help="car slug")
    parser.add_argument("track", help="track slug")
    parser.add_argument("--limit", type=int, default=None, help="number of rows to print")
    args = parser.parse_args(argv)

    store = DataStore()
    try:
        car, track, laps = store.fetch_combo_laps(args.car, args.track)
    except (ValueError, RuntimeError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    limit = args.limit if args.limit is not None else store.leaderboard_size
    print(f"{car.get('name', args.car)} @ {track.get('name', args.track)}")
    print()
    print(_format_table(build_leaderboard(laps, limit=limit)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
