from __future__ import annotations

import datetime as dt
import logging
import os
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .build_state import BuildDraft, MAX_GEARS
from .laptime import LapTime
from .leaderboard import (
    DEFAULT_LIMIT,
    DriverSummary,
    LeaderboardEntry,
    PersonalBestGroup,
    Statistics,
    build_leaderboard,
    compute_statistics,
    driver_summary,
    most_recent,
    personal_bests_by_car,
    personal_bests_by_track,
)
from .parts import FIELD_DEPENDENCIES, FieldSpec, index_specs, invalid_values
from .timefmt import is_valid_lap_time


logger = logging.getLogger(__name__)

USER_SELECT = "id,name,email,gamertag"
CAR_SELECT = "id,name,slug,manufacturer,year,category"
TRACK_SELECT = "id,name,slug,location,layout,category,length"
LAP_SELECT = (
    "id,timeMs,notes,conditions,sessionType,createdAt,userId,carId,trackId,buildId,buildName,"
    f"user:User({USER_SELECT}),car:Car({CAR_SELECT}),track:Track({TRACK_SELECT})"
)
BUILD_SUMMARY_SELECT = (
    "id,name,description,isPublic,createdAt,updatedAt,userId,carId,"
    f"user:User({USER_SELECT}),car:Car({CAR_SELECT})"
)
BUILD_DETAIL_SELECT = (
    f"*,user:User({USER_SELECT}),car:Car({CAR_SELECT}),"
    "upgrades:CarBuildUpgrade(*),settings:CarBuildSetting(*)"
)

STAT_TABLES = {
    "tracks": "track",
    "cars": "car",
    "builds": "build",
    "races": "race",
    "lap-times": "lap",
    "users": "user",
}


class DataStore:
    """Reads and writes FridayGT data through Supabase's REST API."""

    def __init__(self) -> None:
        self.supabase_url = os.getenv("SUPABASE_URL", "")
        self.supabase_key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_ANON_KEY")
            or ""
        )
        self.supabase_schema = os.getenv("SUPABASE_SCHEMA", "public")
        self.tables = {
            "user": os.getenv("SUPABASE_USERS_TABLE", "User"),
            "car": os.getenv("SUPABASE_CARS_TABLE", "Car"),
            "track": os.getenv("SUPABASE_TRACKS_TABLE", "Track"),
            "build": os.getenv("SUPABASE_BUILDS_TABLE", "CarBuild"),
            "build_upgrade": os.getenv("SUPABASE_BUILD_UPGRADES_TABLE", "CarBuildUpgrade"),
            "build_setting": os.getenv("SUPABASE_BUILD_SETTINGS_TABLE", "CarBuildSetting"),
            "lap": os.getenv("SUPABASE_LAP_TIMES_TABLE", "LapTime"),
            "part": os.getenv("SUPABASE_PARTS_TABLE", "Part"),
            "setting": os.getenv("SUPABASE_TUNING_SETTINGS_TABLE", "TuningSetting"),
            "race": os.getenv("SUPABASE_RACES_TABLE", "Race"),
        }
        try:
            self.leaderboard_size = int(os.getenv("FRIDAYGT_LEADERBOARD_SIZE", str(DEFAULT_LIMIT)))
        except ValueError:
            self.leaderboard_size = DEFAULT_LIMIT
        self._part_specs: List[FieldSpec] | None = None
        self._setting_specs: List[FieldSpec] | None = None

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    # ------------------------------------------------------------------
    # Users

    def resolve_user(self, auth_user: Dict[str, Any]) -> Dict[str, Any]:
        """Map a verified Supabase auth user onto the application ``User`` row."""

        email = str(auth_user.get("email") or "").strip()
        if not email:
            raise ValueError("Authenticated user has no email address")

        row = self._select_one(
            self.tables["user"],
            {"select": f"{USER_SELECT},role", "email": f"eq.{email}"},
        )
        if row is None:
            raise ValueError("User not found")
        if str(row.get("role") or "").upper() == "PENDING":
            raise PermissionError("Account is awaiting approval")
        return row

    @staticmethod
    def _is_admin(user: Optional[Dict[str, Any]]) -> bool:
        return bool(user) and str(user.get("role") or "").upper() == "ADMIN"

    def _can_modify(self, user: Dict[str, Any], owner_id: Any) -> bool:
        return self._is_admin(user) or str(owner_id or "") == str(user.get("id") or "")

    # ------------------------------------------------------------------
    # Reference data

    def load_part_specs(self) -> List[FieldSpec]:
        if self._part_specs is not None:
            return self._part_specs

        rows = self._select(
            self.tables["part"],
            {
                "select": "id,name,categoryId,isActive,category:PartCategory(id,name)",
                "isActive": "eq.true",
                "order": "name.asc",
            },
        )
        self._part_specs = self._specs_from_rows(rows, FieldSpec.from_part_row)
        return self._part_specs

    def load_setting_specs(self) -> List[FieldSpec]:
        if self._setting_specs is not None:
            return self._setting_specs

        rows = self._select(
            self.tables["setting"],
            {
                "select": "id,name,inputType,options,defaultValue,isActive,section:TuningSection(id,name)",
                "isActive": "eq.true",
                "order": "name.asc",
            },
        )
        self._setting_specs = self._specs_from_rows(rows, FieldSpec.from_setting_row)
        return self._setting_specs

    @staticmethod
    def _specs_from_rows(rows: List[Dict[str, Any]], factory) -> List[FieldSpec]:
        specs: List[FieldSpec] = []
        for row in rows:
            try:
                specs.append(factory(row))
            except ValueError as exc:
                logger.warning("Skipping catalogue row %s: %s", row.get("id"), exc)
        return specs

    def fetch_reference(self) -> Dict[str, Any]:
        return {
            "parts": [spec.to_dict() for spec in self.load_part_specs()],
            "settings": [spec.to_dict() for spec in self.load_setting_specs()],
            "dependencies": [
                {"field": dependent, "dependsOn": controller, "value": required}
                for dependent, (controller, required) in FIELD_DEPENDENCIES.items()
            ],
        }

    def count_rows(self, kind: str) -> int:
        table_key = STAT_TABLES.get(kind)
        if table_key is None:
            raise ValueError("Invalid stat type")
        return self._count(self.tables[table_key])

    # ------------------------------------------------------------------
    # Cars and tracks

    def list_cars(
        self,
        search: Optional[str] = None,
        manufacturer: Optional[str] = None,
        category: Optional[str] = None,
        drive_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Cars matching the filters plus every manufacturer for a filter list.

        A filter value of ``"all"`` is the same as no filter.
        """

        params: Dict[str, Any] = {"select": "*", "order": "manufacturer.asc,name.asc"}
        search = (search or "").strip()
        if search:
            params["or"] = f"(name.ilike.*{search}*,manufacturer.ilike.*{search}*)"
        for column, value in (("manufacturer", manufacturer), ("category", category), ("driveType", drive_type)):
            if value and value != "all":
                params[column] = f"eq.{value}"
        cars = self._select(self.tables["car"], params)

        manufacturers: List[str] = []
        for row in self._select(self.tables["car"], {"select": "manufacturer", "order": "manufacturer.asc"}):
            name = row.get("manufacturer")
            if name and name not in manufacturers:
                manufacturers.append(name)
        return {"cars": cars, "manufacturers": manufacturers}

    def fetch_car(self, slug: str) -> Dict[str, Any]:
        car = self._select_one(self.tables["car"], {"select": "*", "slug": f"eq.{slug}"})
        if car is None:
            raise ValueError("Car not found")
        return car

    def list_tracks(self) -> List[Dict[str, Any]]:
        return self._select(self.tables["track"], {"select": "*", "order": "category.asc"})

    def fetch_track(self, slug: str) -> Dict[str, Any]:
        track = self._select_one(self.tables["track"], {"select": "*", "slug": f"eq.{slug}"})
        if track is None:
            raise ValueError("Track not found")
        return track

    # ------------------------------------------------------------------
    # Builds

    def list_builds(
        self,
        car_id: Optional[str] = None,
        user_id: Optional[str] = None,
        public_only: bool = False,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"select": BUILD_SUMMARY_SELECT, "order": "createdAt.desc"}
        if car_id:
            params["carId"] = f"eq.{car_id}"
        if user_id:
            params["userId"] = f"eq.{user_id}"
        if public_only:
            params["isPublic"] = "eq.true"
        return self._select(self.tables["build"], params)

    def fetch_build(self, build_id: str, viewer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        build = self._fetch_build_row(build_id)
        if build is None:
            raise ValueError("Build not found")

        if not build.get("isPublic") and not (viewer and self._can_modify(viewer, build.get("userId"))):
            raise PermissionError("This build is private")

        lap_rows = self._select(
            self.tables["lap"],
            {"select": "id,timeMs,userId,carId,trackId,buildId,createdAt", "buildId": f"eq.{build_id}"},
        )
        laps = self._laps_from_rows(lap_rows)
        return {**build, "statistics": statistics_payload(compute_statistics(laps))}

    def create_build(self, user: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        car_id = str(payload.get("carId") or "").strip()
        name = str(payload.get("name") or "").strip()
        if not car_id or not name:
            raise ValueError("Missing required fields: carId, name")

        if self._select_one(self.tables["car"], {"select": "id", "id": f"eq.{car_id}"}) is None:
            raise ValueError("Car not found")

        build_id = str(uuid.uuid4())
        draft = BuildDraft.from_build(
            {"id": build_id, "name": name, "isPublic": False},
            self.load_part_specs(),
            self.load_setting_specs(),
        )
        draft.apply(payload)
        self._validate_draft(draft)

        now = self._utc_now_iso()
        record = {
            "id": build_id,
            "userId": user.get("id"),
            "carId": car_id,
            "name": draft.name,
            "description": draft.description or None,
            "isPublic": draft.is_public,
            "createdAt": now,
            "updatedAt": now,
            **draft.gears.to_columns(),
        }
        self._insert(self.tables["build"], [record])
        self._replace_build_children(build_id, draft)
        return self.fetch_build(build_id, viewer=user)

    def create_quick_build(self, user: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        """Create a private build with no parts or tuning yet."""

        car_id = str(payload.get("carId") or "").strip()
        if not car_id:
            raise ValueError("carId is required")
        name = str(payload.get("name") or "").strip()
        if not name:
            raise ValueError("name is required")
        if self._select_one(self.tables["car"], {"select": "id", "id": f"eq.{car_id}"}) is None:
            raise ValueError("Car not found")

        build_id = str(uuid.uuid4())
        now = self._utc_now_iso()
        record = {
            "id": build_id,
            "userId": user.get("id"),
            "carId": car_id,
            "name": name,
            "description": str(payload.get("description") or "").strip() or None,
            "isPublic": False,
            "createdAt": now,
            "updatedAt": now,
        }
        rows = self._insert(self.tables["build"], [record], select=f"*,car:Car({CAR_SELECT})")
        return rows[0] if rows else record

    def update_build(
        self,
        user: Dict[str, Any],
        build_id: str,
        changes: Dict[str, Any],
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Apply an edit to a build through :class:`BuildDraft`.

        With ``dry_run`` nothing is written; the changed fields and the
        payload that would be persisted are returned instead.
        """

        build = self._fetch_build_row(build_id)
        if build is None:
            raise ValueError("Build not found")
        if not self._can_modify(user, build.get("userId")):
            raise PermissionError("Unauthorized to modify this build")

        draft = BuildDraft.from_build(build, self.load_part_specs(), self.load_setting_specs())
        draft.apply(changes)
        self._validate_draft(draft)

        if dry_run:
            return {"changed": draft.changed_fields(), "submission": draft.to_payload()}

        record = {
            "name": draft.name,
            "description": draft.description or None,
            "isPublic": draft.is_public,
            "updatedAt": self._utc_now_iso(),
            **draft.gears.to_columns(),
        }
        self._update(self.tables["build"], {"id": f"eq.{build_id}"}, record)
        self._replace_build_children(build_id, draft, previous=build)
        return self.fetch_build(build_id, viewer=user)

    def delete_build(self, user: Dict[str, Any], build_id: str) -> None:
        build = self._select_one(self.tables["build"], {"select": "id,userId", "id": f"eq.{build_id}"})
        if build is None:
            raise ValueError("Build not found")
        if not self._can_modify(user, build.get("userId")):
            raise PermissionError("Unauthorized to delete this build")
        # Upgrade and setting rows cascade in the database
        self._delete(self.tables["build"], {"id": f"eq.{build_id}"})

    def clone_build(self, user: Dict[str, Any], build_id: str) -> Dict[str, Any]:
        original = self._fetch_build_row(build_id)
        if original is None:
            raise ValueError("Build not found")
        if not (original.get("isPublic") or str(original.get("userId")) == str(user.get("id"))):
            raise PermissionError("Cannot clone private build")

        owner = original.get("user") if isinstance(original.get("user"), dict) else {}
        owner_label = owner.get("name") or owner.get("email") or "another driver"
        note = f"Cloned from {owner_label}'s build"
        description = original.get("description")

        new_id = str(uuid.uuid4())
        now = self._utc_now_iso()
        record = {
            "id": new_id,
            "userId": user.get("id"),
            "carId": original.get("carId"),
            "name": f"{original.get('name')} (Copy)",
            "description": f"{description}\n\n{note}" if description else note,
            "isPublic": False,
            "createdAt": now,
            "updatedAt": now,
            "finalDrive": original.get("finalDrive"),
        }
        for slot in range(1, MAX_GEARS + 1):
            record[f"gear{slot}"] = original.get(f"gear{slot}")
        self._insert(self.tables["build"], [record])

        upgrades = [
            {
                "id": str(uuid.uuid4()),
                "buildId": new_id,
                "partId": row.get("partId"),
                "category": row.get("category"),
                "part": row.get("part"),
                "value": row.get("value"),
            }
            for row in original.get("upgrades") or []
            if isinstance(row, dict)
        ]
        settings = [
            {
                "id": str(uuid.uuid4()),
                "buildId": new_id,
                "settingId": row.get("settingId"),
                "category": row.get("category"),
                "setting": row.get("setting"),
                "value": row.get("value"),
            }
            for row in original.get("settings") or []
            if isinstance(row, dict)
        ]
        self._insert_children(self.tables["build_upgrade"], upgrades)
        self._insert_children(self.tables["build_setting"], settings)
        return self.fetch_build(new_id, viewer=user)

    def _fetch_build_row(self, build_id: str) -> Optional[Dict[str, Any]]:
        return self._select_one(self.tables["build"], {"select": BUILD_DETAIL_SELECT, "id": f"eq.{build_id}"})

    def _validate_draft(self, draft: BuildDraft) -> None:
        if not draft.name:
            raise ValueError("Build name is required")

        submitted_upgrades = {item["fieldId"]: item["value"] for item in draft.upgrades.to_submission_list()}
        submitted_settings = {item["fieldId"]: item["value"] for item in draft.settings.to_submission_list()}
        problems = invalid_values(submitted_upgrades, draft.upgrades.specs)
        problems += invalid_values(submitted_settings, draft.settings.specs)
        if problems:
            raise ValueError("; ".join(problems))

    def _replace_build_children(
        self,
        build_id: str,
        draft: BuildDraft,
        previous: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Persist the draft's part and setting rows.

        A new build (no ``previous`` row) gets a best-effort insert. For an
        existing build the new rows are upserted first and stale rows deleted
        afterwards, so a failed write raises with the stored rows intact.
        """

        parts = index_specs(self.load_part_specs())
        settings = index_specs(self.load_setting_specs())

        upgrade_rows: List[Dict[str, Any]] = []
        for item in draft.upgrades.to_submission_list():
            spec = parts.get(item["fieldId"])
            value = item["value"]
            upgrade_rows.append(
                {
                    "id": str(uuid.uuid4()),
                    "buildId": build_id,
                    "partId": item["fieldId"],
                    "category": spec.category if spec else "",
                    "part": spec.name if spec else "",
                    # Checkbox parts are stored without a value
                    "value": None if value is True else value,
                }
            )

        setting_rows: List[Dict[str, Any]] = []
        for item in draft.settings.to_submission_list():
            spec = settings.get(item["fieldId"])
            setting_rows.append(
                {
                    "id": str(uuid.uuid4()),
                    "buildId": build_id,
                    "settingId": item["fieldId"],
                    "category": spec.category if spec else "",
                    "setting": spec.name if spec else "",
                    "value": item["value"],
                }
            )

        if previous is None:
            self._insert_children(self.tables["build_upgrade"], upgrade_rows)
            self._insert_children(self.tables["build_setting"], setting_rows)
            return

        self._sync_children(self.tables["build_upgrade"], "part", upgrade_rows, previous.get("upgrades"))
        self._sync_children(self.tables["build_setting"], "setting", setting_rows, previous.get("settings"))

    def _sync_children(
        self,
        table: str,
        name_column: str,
        rows: List[Dict[str, Any]],
        existing: Any,
    ) -> None:
        # Rows are unique per (buildId, category, name_column)
        existing_rows = [row for row in existing or [] if isinstance(row, dict)]
        ids_by_key = {(row.get("category"), row.get(name_column)): row.get("id") for row in existing_rows}

        kept = set()
        for row in rows:
            key = (row["category"], row[name_column])
            if ids_by_key.get(key):
                row["id"] = ids_by_key[key]
            kept.add(key)

        if rows:
            self._insert(table, rows, upsert_on=f"buildId,category,{name_column}")

        stale = [
            str(row["id"])
            for row in existing_rows
            if row.get("id") and (row.get("category"), row.get(name_column)) not in kept
        ]
        if stale:
            self._delete(table, {"id": f"in.({','.join(stale)})"})

    def _insert_children(self, table: str, rows: List[Dict[str, Any]]) -> None:
        if not rows:
            return
        try:
            self._insert(table, rows)
        except (ValueError, RuntimeError) as exc:
            logger.exception("Failed to insert %d rows into %s: %s", len(rows), table, exc)

    # ------------------------------------------------------------------
    # Lap times

    def list_lap_times(
        self,
        user: Dict[str, Any],
        track_id: Optional[str] = None,
        car_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if limit is not None and limit < 1:
            raise ValueError("Limit must be a positive number")

        params: Dict[str, Any] = {
            "select": LAP_SELECT,
            "userId": f"eq.{user.get('id')}",
            "order": "createdAt.desc",
        }
        if track_id:
            params["trackId"] = f"eq.{track_id}"
        if car_id:
            params["carId"] = f"eq.{car_id}"
        if limit:
            params["limit"] = limit

        return [lap.to_dict() for lap in self._laps_from_rows(self._select(self.tables["lap"], params))]

    def create_lap_time(self, user: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            time_ms = int(payload.get("timeMs"))
        except (TypeError, ValueError) as exc:
            raise ValueError("Lap time is required") from exc
        if not is_valid_lap_time(time_ms):
            raise ValueError("Lap time must be between 10 seconds and 30 minutes")

        track_id = str(payload.get("trackId") or "").strip()
        car_id = str(payload.get("carId") or "").strip()
        if self._select_one(self.tables["track"], {"select": "id", "id": f"eq.{track_id}"}) is None:
            raise ValueError("Track not found")
        if self._select_one(self.tables["car"], {"select": "id", "id": f"eq.{car_id}"}) is None:
            raise ValueError("Car not found")

        build_id = payload.get("buildId") or None
        build_name = None
        if build_id:
            build = self._select_one(self.tables["build"], {"select": "name", "id": f"eq.{build_id}"})
            if build is not None:
                build_name = build.get("name")

        now = self._utc_now_iso()
        record = {
            "id": str(uuid.uuid4()),
            "userId": user.get("id"),
            "trackId": track_id,
            "carId": car_id,
            "buildId": build_id,
            "buildName": build_name,
            "timeMs": time_ms,
            "notes": payload.get("notes") or None,
            "conditions": payload.get("conditions") or None,
            "sessionType": payload.get("sessionType") or "R",
            "createdAt": now,
            "updatedAt": now,
        }
        rows = self._insert(self.tables["lap"], [record], select=LAP_SELECT)
        return LapTime.from_row(rows[0] if rows else record).to_dict()

    def delete_lap_time(self, user: Dict[str, Any], lap_id: str) -> None:
        lap = self._select_one(self.tables["lap"], {"select": "id,userId", "id": f"eq.{lap_id}"})
        if lap is None:
            raise ValueError("Lap time not found")
        if not self._can_modify(user, lap.get("userId")):
            raise PermissionError("You can only delete your own lap times")
        self._delete(self.tables["lap"], {"id": f"eq.{lap_id}"})

    # ------------------------------------------------------------------
    # Leaderboards

    def fetch_car_lap_times(
        self,
        slug: str,
        track_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        car = self._select_one(self.tables["car"], {"select": CAR_SELECT, "slug": f"eq.{slug}"})
        if car is None:
            raise ValueError("Car not found")

        params: Dict[str, Any] = {"select": LAP_SELECT, "carId": f"eq.{car['id']}", "order": "createdAt.desc"}
        if track_id:
            params["trackId"] = f"eq.{track_id}"
        if user_id:
            params["userId"] = f"eq.{user_id}"
        laps = self._laps_from_rows(self._select(self.tables["lap"], params))

        return {
            "car": car,
            "lapTimesByTrack": [group_payload(group, "track") for group in personal_bests_by_track(laps)],
            "statistics": statistics_payload(compute_statistics(laps)),
            "allLapTimes": [lap.to_dict() for lap in laps],
        }

    def fetch_track_lap_times(
        self,
        slug: str,
        car_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        track = self._select_one(self.tables["track"], {"select": TRACK_SELECT, "slug": f"eq.{slug}"})
        if track is None:
            raise ValueError("Track not found")

        params: Dict[str, Any] = {"select": LAP_SELECT, "trackId": f"eq.{track['id']}", "order": "createdAt.desc"}
        if car_id:
            params["carId"] = f"eq.{car_id}"
        if user_id:
            params["userId"] = f"eq.{user_id}"
        laps = self._laps_from_rows(self._select(self.tables["lap"], params))

        return {
            "track": track,
            "lapTimesByCar": [group_payload(group, "car") for group in personal_bests_by_car(laps)],
            "statistics": statistics_payload(compute_statistics(laps)),
            "allLapTimes": [lap.to_dict() for lap in laps],
        }

    def fetch_combo(self, car_slug: str, track_slug: str, viewer_id: Optional[str] = None) -> Dict[str, Any]:
        car = self._select_one(self.tables["car"], {"select": CAR_SELECT, "slug": f"eq.{car_slug}"})
        if car is None:
            raise ValueError("Car not found")
        track = self._select_one(self.tables["track"], {"select": TRACK_SELECT, "slug": f"eq.{track_slug}"})
        if track is None:
            raise ValueError("Track not found")

        rows = self._select(
            self.tables["lap"],
            {
                "select": LAP_SELECT,
                "carId": f"eq.{car['id']}",
                "trackId": f"eq.{track['id']}",
                "order": "timeMs.asc",
            },
        )
        laps = self._laps_from_rows(rows)
        results = build_leaderboard(laps, limit=self.leaderboard_size)
        summary = driver_summary(laps, viewer_id, results.ranked) if viewer_id else None

        statistics = statistics_payload(results.statistics)
        statistics["worldRecord"] = entry_payload(results.ranked[0]) if results.ranked else None

        return {
            "car": car,
            "track": track,
            "leaderboard": [entry_payload(entry) for entry in results.entries],
            "userStats": summary_payload(summary) if summary else None,
            "statistics": statistics,
            "recentActivity": [lap.to_dict() for lap in most_recent(laps)],
        }

    def fetch_combo_laps(self, car_slug: str, track_slug: str) -> Tuple[Dict[str, Any], Dict[str, Any], List[LapTime]]:
        """Raw laps for a car/track pair, used by the reporting script."""

        car = self._select_one(self.tables["car"], {"select": CAR_SELECT, "slug": f"eq.{car_slug}"})
        track = self._select_one(self.tables["track"], {"select": TRACK_SELECT, "slug": f"eq.{track_slug}"})
        if car is None or track is None:
            raise ValueError("Car or track not found")
        rows = self._select(
            self.tables["lap"],
            {"select": LAP_SELECT, "carId": f"eq.{car['id']}", "trackId": f"eq.{track['id']}"},
        )
        return car, track, self._laps_from_rows(rows)

    @staticmethod
    def _laps_from_rows(rows: List[Dict[str, Any]]) -> List[LapTime]:
        laps: List[LapTime] = []
        for row in rows:
            try:
                laps.append(LapTime.from_row(row))
            except ValueError as exc:
                logger.warning("Ignoring malformed lap row %s: %s", row.get("id"), exc)
        return laps

    # ---- internal Supabase helpers -------------------------------------------------

    def _supabase_endpoint(self, table: str) -> str:
        return f"{self.supabase_url.rstrip('/')}/rest/v1/{table}"

    def _supabase_headers(self, prefer: str | None = None, include_content_profile: bool = True) -> Dict[str, str]:
        headers = {
            "apikey": self.supabase_key,
            "Authorization": f"Bearer {self.supabase_key}",
            "Accept": "application/json",
        }
        if include_content_profile and self.supabase_schema and self.supabase_schema != "public":
            headers["Content-Profile"] = self.supabase_schema
        if self.supabase_schema and self.supabase_schema != "public":
            headers["Accept-Profile"] = self.supabase_schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _require_configured(self) -> None:
        if not self.configured:
            raise RuntimeError("Supabase is not configured")

    def _select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._require_configured()
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(include_content_profile=False)

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(endpoint, params=params, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to query {table}: {exc}") from exc

        if isinstance(rows, list):
            return [row for row in rows if isinstance(row, dict)]
        if isinstance(rows, dict):
            return [rows]
        logger.warning("Supabase %s query returned unexpected payload: %s", table, type(rows))
        return []

    def _select_one(self, table: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self._select(table, {**params, "limit": 1})
        return rows[0] if rows else None

    def _insert(
        self,
        table: str,
        records: List[Dict[str, Any]],
        select: str | None = None,
        upsert_on: str | None = None,
    ) -> List[Dict[str, Any]]:
        self._require_configured()
        endpoint = self._supabase_endpoint(table)
        params = {"select": select} if select else {}
        if upsert_on:
            headers = self._supabase_headers(prefer="resolution=merge-duplicates,return=representation")
            params["on_conflict"] = upsert_on
        else:
            headers = self._supabase_headers(prefer="return=representation")

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(endpoint, params=params, json=records, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_supabase_detail(exc.response)
            if exc.response is not None and exc.response.status_code in (400, 409, 422):
                raise ValueError(detail or f"Supabase rejected insert into {table}") from exc
            raise RuntimeError(f"Failed to insert into {table}: {detail or exc}") from exc
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to insert into {table}: {exc}") from exc

        if isinstance(rows, list):
            return [row for row in rows if isinstance(row, dict)]
        if isinstance(rows, dict):
            return [rows]
        return []

    def _update(self, table: str, filters: Dict[str, Any], values: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._require_configured()
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(prefer="return=representation")

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.patch(endpoint, params=filters, json=values, headers=headers)
                response.raise_for_status()
                rows = response.json()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_supabase_detail(exc.response)
            if exc.response is not None and exc.response.status_code in (400, 409, 422):
                raise ValueError(detail or f"Supabase rejected update of {table}") from exc
            raise RuntimeError(f"Failed to update {table}: {detail or exc}") from exc
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to update {table}: {exc}") from exc

        return [row for row in rows if isinstance(row, dict)] if isinstance(rows, list) else []

    def _delete(self, table: str, filters: Dict[str, Any]) -> None:
        self._require_configured()
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers()

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.delete(endpoint, params=filters, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to delete from {table}: {exc}") from exc

    def _count(self, table: str) -> int:
        self._require_configured()
        endpoint = self._supabase_endpoint(table)
        headers = self._supabase_headers(prefer="count=exact", include_content_profile=False)

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(endpoint, params={"select": "id", "limit": 1}, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise RuntimeError(f"Failed to count {table}: {exc}") from exc

        return self._parse_content_range(response.headers.get("content-range"))

    @staticmethod
    def _parse_content_range(value: str | None) -> int:
        # PostgREST answers with "0-0/42", or "*/0" for an empty table
        if not value:
            return 0
        match = re.search(r"/(\d+)$", value.strip())
        return int(match.group(1)) if match else 0

    @staticmethod
    def _utc_now_iso() -> str:
        return dt.datetime.now(dt.timezone.utc).isoformat()

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, list) and payload:
            payload = payload[0]
        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        return None


# ----------------------------------------------------------------------
# Payload shaping


def statistics_payload(stats: Statistics) -> Dict[str, Any]:
    return {
        "totalLaps": stats.total_laps,
        "fastestTime": stats.fastest_time,
        "averageTime": stats.average_time,
        "uniqueDrivers": stats.unique_drivers,
        "uniqueTracks": stats.unique_tracks,
        "uniqueCars": stats.unique_cars,
    }


def entry_payload(entry: LeaderboardEntry) -> Dict[str, Any]:
    return {
        "position": entry.position,
        "userId": entry.user_id,
        "userName": entry.user_name or None,
        "carId": entry.car_id,
        "carName": entry.car_name or None,
        "buildId": entry.build_id,
        "buildName": entry.build_name,
        "bestTime": entry.best_time,
        "totalLaps": entry.total_laps,
        "bestLapId": entry.best_lap_id,
        "lastImprovement": entry.last_improvement.isoformat() if entry.last_improvement else None,
    }


def group_payload(group: PersonalBestGroup, key_name: str) -> Dict[str, Any]:
    return {
        f"{key_name}Id": group.key,
        f"{key_name}Name": group.label or None,
        "personalBest": group.personal_best,
        "totalLaps": group.total_laps,
        "recentLapTimes": [lap.to_dict() for lap in group.recent_laps],
    }


def summary_payload(summary: DriverSummary) -> Dict[str, Any]:
    return {
        "userId": summary.user_id,
        "totalLaps": summary.total_laps,
        "bestTime": summary.best_time,
        "averageTime": summary.average_time,
        "position": summary.position,
        "recentLaps": [lap.to_dict() for lap in summary.recent_laps],
    }
