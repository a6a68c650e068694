from __future__ import annotations

import datetime as dt
import os
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional, Union

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from fridaygt_core import DataStore, LapTime, build_leaderboard
from fridaygt_core.loader import entry_payload, statistics_payload
from fridaygt_core.timefmt import parse_timestamp

app = FastAPI(title="FridayGT API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class StatisticsModel(BaseModel):
    total_laps: int = Field(alias="totalLaps")
    fastest_time: Optional[int] = Field(default=None, alias="fastestTime")
    average_time: Optional[int] = Field(default=None, alias="averageTime")
    unique_drivers: int = Field(default=0, alias="uniqueDrivers")
    unique_tracks: int = Field(default=0, alias="uniqueTracks")
    unique_cars: int = Field(default=0, alias="uniqueCars")

    model_config = ConfigDict(populate_by_name=True)


class LeaderboardEntryModel(BaseModel):
    position: int
    user_id: str = Field(alias="userId")
    user_name: Optional[str] = Field(default=None, alias="userName")
    car_id: str = Field(alias="carId")
    car_name: Optional[str] = Field(default=None, alias="carName")
    build_id: Optional[str] = Field(default=None, alias="buildId")
    build_name: Optional[str] = Field(default=None, alias="buildName")
    best_time: int = Field(alias="bestTime")
    total_laps: int = Field(alias="totalLaps")
    best_lap_id: str = Field(alias="bestLapId")
    last_improvement: Optional[str] = Field(default=None, alias="lastImprovement")

    model_config = ConfigDict(populate_by_name=True)


class LapTimeModel(BaseModel):
    id: str
    time_ms: int = Field(alias="timeMs")
    user_id: str = Field(alias="userId")
    user_name: Optional[str] = Field(default=None, alias="userName")
    car_id: str = Field(alias="carId")
    car_name: Optional[str] = Field(default=None, alias="carName")
    build_id: Optional[str] = Field(default=None, alias="buildId")
    build_name: Optional[str] = Field(default=None, alias="buildName")
    track_id: Optional[str] = Field(default=None, alias="trackId")
    track_name: Optional[str] = Field(default=None, alias="trackName")
    notes: Optional[str] = None
    conditions: Optional[str] = None
    session_type: str = Field(default="R", alias="sessionType")
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class LapTimeCreatePayload(BaseModel):
    track_id: str = Field(alias="trackId", min_length=1)
    car_id: str = Field(alias="carId", min_length=1)
    build_id: Optional[str] = Field(default=None, alias="buildId")
    time_ms: int = Field(alias="timeMs", gt=0)
    notes: Optional[str] = None
    conditions: Optional[str] = None
    session_type: Literal["R", "Q"] = Field(default="R", alias="sessionType")

    model_config = ConfigDict(populate_by_name=True)


class LapTimeListResponse(BaseModel):
    lap_times: List[LapTimeModel] = Field(alias="lapTimes")

    model_config = ConfigDict(populate_by_name=True)


class DriverSummaryModel(BaseModel):
    user_id: str = Field(alias="userId")
    total_laps: int = Field(alias="totalLaps")
    best_time: int = Field(alias="bestTime")
    average_time: int = Field(alias="averageTime")
    position: Optional[int] = None
    recent_laps: List[LapTimeModel] = Field(default_factory=list, alias="recentLaps")

    model_config = ConfigDict(populate_by_name=True)


class ComboStatisticsModel(StatisticsModel):
    world_record: Optional[LeaderboardEntryModel] = Field(default=None, alias="worldRecord")


class ComboResponse(BaseModel):
    car: Dict[str, Any]
    track: Dict[str, Any]
    leaderboard: List[LeaderboardEntryModel]
    user_stats: Optional[DriverSummaryModel] = Field(default=None, alias="userStats")
    statistics: ComboStatisticsModel
    recent_activity: List[LapTimeModel] = Field(alias="recentActivity")

    model_config = ConfigDict(populate_by_name=True)


class LapInput(BaseModel):
    id: str
    time_ms: int = Field(alias="timeMs", gt=0)
    user_id: str = Field(alias="userId")
    car_id: str = Field(alias="carId")
    build_id: Optional[str] = Field(default=None, alias="buildId")
    track_id: Optional[str] = Field(default=None, alias="trackId")
    created_at: Optional[dt.datetime] = Field(default=None, alias="createdAt")
    user_name: str = Field(default="", alias="userName")
    car_name: str = Field(default="", alias="carName")
    build_name: Optional[str] = Field(default=None, alias="buildName")

    model_config = ConfigDict(populate_by_name=True)


class LeaderboardRequest(BaseModel):
    laps: List[LapInput]
    limit: Optional[int] = Field(default=None, ge=0)


class LeaderboardResponse(BaseModel):
    entries: List[LeaderboardEntryModel]
    statistics: StatisticsModel


class BuildEditPayload(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_public: Optional[bool] = Field(default=None, alias="isPublic")
    upgrades: Dict[str, Union[bool, str]] = Field(default_factory=dict)
    settings: Dict[str, str] = Field(default_factory=dict)
    reset: List[str] = Field(default_factory=list)
    clear: List[str] = Field(default_factory=list)
    gears: Dict[int, Optional[str]] = Field(default_factory=dict)
    add_gears: int = Field(default=0, alias="addGears", ge=0, le=20)
    remove_gears: List[int] = Field(default_factory=list, alias="removeGears")
    final_drive: Optional[str] = Field(default=None, alias="finalDrive")

    model_config = ConfigDict(populate_by_name=True)


class BuildCreatePayload(BaseModel):
    car_id: str = Field(alias="carId", min_length=1)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    is_public: bool = Field(default=False, alias="isPublic")
    upgrades: Dict[str, Union[bool, str]] = Field(default_factory=dict)
    settings: Dict[str, str] = Field(default_factory=dict)
    gears: Dict[int, Optional[str]] = Field(default_factory=dict)
    add_gears: int = Field(default=0, alias="addGears", ge=0, le=20)
    final_drive: Optional[str] = Field(default=None, alias="finalDrive")

    model_config = ConfigDict(populate_by_name=True)


class QuickBuildPayload(BaseModel):
    car_id: str = Field(alias="carId", min_length=1)
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class BuildPreviewResponse(BaseModel):
    changed: Dict[str, List[Any]]
    submission: Dict[str, Any]


class CountResponse(BaseModel):
    count: int


@lru_cache(maxsize=1)
def store() -> DataStore:
    return DataStore()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ValueError):
        status = 404 if str(exc).endswith("not found") else 400
        return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))


def require_user(authorization: str = Header(default="")) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Authorization token is required")

    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Authorization token is required")

    supabase_url = os.getenv("SUPABASE_URL", "").rstrip("/")
    supabase_anon_key = os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_SERVICE_KEY")
    if not supabase_url or not supabase_anon_key:
        raise HTTPException(status_code=500, detail="Supabase configuration is incomplete")

    endpoint = f"{supabase_url}/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": supabase_anon_key,
    }

    try:
        with httpx.Client(timeout=10.0) as client:
            response = client.get(endpoint, headers=headers)
            response.raise_for_status()
            payload = response.json()
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code if exc.response else 502
        if status in (401, 403):
            raise HTTPException(status_code=401, detail="Invalid authentication token") from exc
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc
    except httpx.HTTPError as exc:
        raise HTTPException(status_code=502, detail="Failed to verify authentication token") from exc

    user_id = str(payload.get("id") or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    payload["id"] = user_id
    return payload


def current_user(auth_user: Dict[str, Any] = Depends(require_user)) -> Dict[str, Any]:
    """The application ``User`` row for the bearer token."""

    try:
        return store().resolve_user(auth_user)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc


def optional_user(authorization: str = Header(default="")) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    return current_user(require_user(authorization))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/reference")
def reference() -> dict:
    try:
        return store().fetch_reference()
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.get("/stats/{kind}", response_model=CountResponse)
def stats(kind: str):
    try:
        count = store().count_rows(kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return CountResponse(count=count)


@app.post("/leaderboard", response_model=LeaderboardResponse)
def leaderboard(payload: LeaderboardRequest):
    laps = [
        LapTime(
            id=item.id,
            time_ms=item.time_ms,
            user_id=item.user_id,
            car_id=item.car_id,
            build_id=item.build_id,
            track_id=item.track_id,
            created_at=parse_timestamp(item.created_at),
            user_name=item.user_name,
            car_name=item.car_name,
            build_name=item.build_name,
        )
        for item in payload.laps
    ]
    results = build_leaderboard(laps, limit=payload.limit if payload.limit is not None else store().leaderboard_size)
    return LeaderboardResponse(
        entries=[LeaderboardEntryModel(**entry_payload(entry)) for entry in results.entries],
        statistics=StatisticsModel(**statistics_payload(results.statistics)),
    )


@app.get("/builds")
def list_builds(
    carId: Optional[str] = Query(default=None, alias="carId"),
    userId: Optional[str] = Query(default=None, alias="userId"),
    myBuilds: bool = Query(default=False, alias="myBuilds"),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
) -> dict:
    if myBuilds and user is None:
        raise HTTPException(status_code=401, detail="Authorization token is required")

    try:
        if myBuilds:
            builds = store().list_builds(car_id=carId, user_id=user["id"])
        else:
            builds = store().list_builds(car_id=carId, user_id=userId, public_only=True)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"builds": builds}


@app.post("/builds", status_code=201)
def create_build(payload: BuildCreatePayload, user: Dict[str, Any] = Depends(current_user)) -> dict:
    try:
        return store().create_build(user, payload.model_dump(by_alias=True, exclude_unset=True))
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.post("/builds/quick", status_code=201)
def create_quick_build(payload: QuickBuildPayload, user: Dict[str, Any] = Depends(current_user)) -> dict:
    try:
        return store().create_quick_build(user, payload.model_dump(by_alias=True))
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.get("/builds/{build_id}")
def get_build(build_id: str, user: Optional[Dict[str, Any]] = Depends(optional_user)) -> dict:
    try:
        return store().fetch_build(build_id, viewer=user)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.patch("/builds/{build_id}")
def update_build(build_id: str, payload: BuildEditPayload, user: Dict[str, Any] = Depends(current_user)) -> dict:
    try:
        return store().update_build(user, build_id, payload.model_dump(by_alias=True, exclude_unset=True))
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.post("/builds/{build_id}/preview", response_model=BuildPreviewResponse)
def preview_build(build_id: str, payload: BuildEditPayload, user: Dict[str, Any] = Depends(current_user)):
    try:
        preview = store().update_build(
            user,
            build_id,
            payload.model_dump(by_alias=True, exclude_unset=True),
            dry_run=True,
        )
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return BuildPreviewResponse(**preview)


@app.post("/builds/{build_id}/clone", status_code=201)
def clone_build(build_id: str, user: Dict[str, Any] = Depends(current_user)) -> dict:
    try:
        return store().clone_build(user, build_id)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.delete("/builds/{build_id}")
def delete_build(build_id: str, user: Dict[str, Any] = Depends(current_user)) -> dict:
    try:
        store().delete_build(user, build_id)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return {"success": True}


@app.get("/lap-times", response_model=LapTimeListResponse)
def list_lap_times(
    trackId: Optional[str] = Query(default=None, alias="trackId"),
    carId: Optional[str] = Query(default=None, alias="carId"),
    limit: Optional[int] = Query(default=None, ge=1),
    user: Dict[str, Any] = Depends(current_user),
):
    try:
        laps = store().list_lap_times(user, track_id=trackId, car_id=carId, limit=limit)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return LapTimeListResponse(lapTimes=[LapTimeModel(**lap) for lap in laps])


@app.post("/lap-times", response_model=LapTimeModel, status_code=201)
def create_lap_time(payload: LapTimeCreatePayload, user: Dict[str, Any] = Depends(current_user)):
    try:
        record = store().create_lap_time(user, payload.model_dump(by_alias=True))
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return LapTimeModel(**record)


@app.delete("/lap-times/{lap_id}")
def delete_lap_time(lap_id: str, user: Dict[str, Any] = Depends(current_user)) -> dict:
    try:
        store().delete_lap_time(user, lap_id)
    except (ValueError, PermissionError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return {"success": True}


@app.get("/cars")
def list_cars(
    search: Optional[str] = Query(default=None),
    manufacturer: Optional[str] = Query(default=None),
    category: Optional[str] = Query(default=None),
    driveType: Optional[str] = Query(default=None, alias="driveType"),
) -> dict:
    try:
        return store().list_cars(search=search, manufacturer=manufacturer, category=category, drive_type=driveType)
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.get("/cars/{slug}")
def get_car(slug: str) -> dict:
    try:
        return {"car": store().fetch_car(slug)}
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.get("/tracks")
def list_tracks() -> dict:
    try:
        return {"tracks": store().list_tracks()}
    except RuntimeError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@app.get("/tracks/{slug}")
def get_track(slug: str) -> dict:
    try:
        return {"track": store().fetch_track(slug)}
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.get("/cars/{slug}/lap-times")
def car_lap_times(
    slug: str,
    trackId: Optional[str] = Query(default=None, alias="trackId"),
    userOnly: bool = Query(default=False, alias="userOnly"),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
) -> dict:
    user_id = user["id"] if userOnly and user else None
    try:
        return store().fetch_car_lap_times(slug, track_id=trackId, user_id=user_id)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.get("/tracks/{slug}/lap-times")
def track_lap_times(
    slug: str,
    carId: Optional[str] = Query(default=None, alias="carId"),
    userOnly: bool = Query(default=False, alias="userOnly"),
    user: Optional[Dict[str, Any]] = Depends(optional_user),
) -> dict:
    user_id = user["id"] if userOnly and user else None
    try:
        return store().fetch_track_lap_times(slug, car_id=carId, user_id=user_id)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc


@app.get("/combos/{car_slug}/{track_slug}", response_model=ComboResponse)
def combo(car_slug: str, track_slug: str, user: Optional[Dict[str, Any]] = Depends(optional_user)):
    try:
        payload = store().fetch_combo(car_slug, track_slug, viewer_id=user["id"] if user else None)
    except (ValueError, RuntimeError) as exc:
        raise _http_error(exc) from exc
    return ComboResponse(**payload)
