from typing import Any, Dict, List, Optional

import httpx
import pytest

from fridaygt_core import DataStore
from fridaygt_core import loader as loader_module


ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
    "SUPABASE_SCHEMA",
    "SUPABASE_LAP_TIMES_TABLE",
    "FRIDAYGT_LEADERBOARD_SIZE",
)


class _FakeSupabase:
    """Serves canned rows per table and records every request."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self.tables = tables or {}
        self.calls: List[Dict[str, Any]] = []
        self.failures: Dict[str, httpx.Response] = {}
        self.count_header = "0-0/0"

    def client_factory(self):
        fake = self

        class _Client:
            def __init__(self, *args: Any, **kwargs: Any) -> None:
                pass

            def __enter__(self) -> "_Client":
                return self

            def __exit__(self, exc_type, exc, tb) -> None:
                return None

            def get(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
                return fake.handle("GET", endpoint, params, headers)

            def post(self, endpoint: str, params: Dict[str, Any], json: Any, headers: Dict[str, str]) -> httpx.Response:
                return fake.handle("POST", endpoint, params, headers, json)

            def patch(self, endpoint: str, params: Dict[str, Any], json: Any, headers: Dict[str, str]) -> httpx.Response:
                return fake.handle("PATCH", endpoint, params, headers, json)

            def delete(self, endpoint: str, params: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
                return fake.handle("DELETE", endpoint, params, headers)

        return _Client

    def handle(self, method, endpoint, params, headers, body=None) -> httpx.Response:
        table = endpoint.rsplit("/", 1)[-1]
        self.calls.append({"method": method, "table": table, "params": dict(params), "headers": headers, "json": body})
        request = httpx.Request(method, endpoint)

        failure = self.failures.get(f"{method} {table}")
        if failure is not None:
            return httpx.Response(failure.status_code, content=failure.content, request=request)

        if method == "GET":
            if headers.get("Prefer") == "count=exact":
                return httpx.Response(200, json=[], headers={"content-range": self.count_header}, request=request)
            rows = [row for row in self.tables.get(table, []) if _matches(row, params)]
            return httpx.Response(200, json=rows, request=request)
        if method == "POST":
            self.tables.setdefault(table, []).extend(body)
            return httpx.Response(201, json=body, request=request)
        if method == "PATCH":
            updated = []
            for row in self.tables.get(table, []):
                if _matches(row, params):
                    row.update(body)
                    updated.append(row)
            return httpx.Response(200, json=updated, request=request)
        self.tables[table] = [row for row in self.tables.get(table, []) if not _matches(row, params)]
        return httpx.Response(204, request=request)

    def calls_to(self, method: str, table: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method and call["table"] == table]


def _matches(row: Dict[str, Any], params: Dict[str, Any]) -> bool:
    for key, value in params.items():
        if not isinstance(value, str):
            continue
        actual = row.get(key)
        if isinstance(actual, bool):
            actual = "true" if actual else "false"
        if value.startswith("eq."):
            if str(actual) != value[3:]:
                return False
        elif value.startswith("in.(") and value.endswith(")"):
            if str(actual) not in value[4:-1].split(","):
                return False
    return True


@pytest.fixture(autouse=True)
def reset_env(monkeypatch: pytest.MonkeyPatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def supabase(monkeypatch: pytest.MonkeyPatch) -> _FakeSupabase:
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "test-key")
    fake = _FakeSupabase(
        {
            "User": [
                {"id": "u1", "email": "ana@example.com", "name": "Ana", "gamertag": "AnaGT", "role": "USER"},
                {"id": "u2", "email": "ben@example.com", "name": "Ben", "gamertag": None, "role": "USER"},
                {"id": "u3", "email": "new@example.com", "name": "New", "gamertag": None, "role": "PENDING"},
                {"id": "admin", "email": "boss@example.com", "name": "Boss", "gamertag": None, "role": "ADMIN"},
            ],
            "Car": [
                {"id": "c1", "slug": "nissan-gtr", "name": "GT-R", "manufacturer": "Nissan", "year": 2017, "category": "Gr.3"},
                {"id": "c2", "slug": "toyota-supra", "name": "Supra", "manufacturer": "Toyota", "year": 2019, "category": "Gr.4"},
                {"id": "c3", "slug": "nissan-z", "name": "Z", "manufacturer": "Nissan", "year": 2023, "category": "Gr.4"},
            ],
            "Track": [
                {"id": "t1", "slug": "suzuka", "name": "Suzuka", "layout": "Full", "category": "Circuit"},
                {"id": "t2", "slug": "nurburgring", "name": "Nurburgring", "layout": "Nordschleife", "category": "Circuit"},
            ],
            "Part": [
                {"id": "p-exhaust", "name": "Racing Exhaust", "isActive": True, "category": {"name": "Engine"}},
                {"id": "p-wing", "name": "Wing", "isActive": True, "category": {"name": "Aero"}},
                {"id": "p-wing-height", "name": "Wing Height", "isActive": True, "category": {"name": "Aero"}},
            ],
            "TuningSetting": [
                {
                    "id": "s-lsd",
                    "name": "LSD Mode",
                    "inputType": "select",
                    "options": '["1-way", "2-way"]',
                    "isActive": True,
                    "section": {"name": "Differential"},
                }
            ],
            "CarBuild": [
                {
                    "id": "b1",
                    "userId": "u1",
                    "carId": "c1",
                    "name": "Grip",
                    "description": "Stable",
                    "isPublic": False,
                    "gear1": "3.100",
                    "finalDrive": "4.000",
                    "user": {"id": "u1", "name": "Ana", "email": "ana@example.com"},
                    "upgrades": [
                        {"id": "bu1", "partId": "p-exhaust", "category": "Engine", "part": "Racing Exhaust", "value": None},
                        {"id": "bu2", "partId": "p-wing", "category": "Aero", "part": "Wing", "value": "Custom"},
                    ],
                    "settings": [{"id": "bs1", "settingId": "s-lsd", "category": "Differential", "setting": "LSD Mode", "value": "1-way"}],
                }
            ],
            "LapTime": [
                {"id": "l1", "userId": "u1", "carId": "c1", "trackId": "t1", "buildId": "b1", "timeMs": 90000,
                 "createdAt": "2024-05-01T20:00:00Z", "user": {"id": "u1", "gamertag": "AnaGT"}},
                {"id": "l2", "userId": "u1", "carId": "c1", "trackId": "t1", "buildId": "b1", "timeMs": 88000,
                 "createdAt": "2024-05-01T20:05:00Z", "user": {"id": "u1", "gamertag": "AnaGT"}},
                {"id": "l3", "userId": "u2", "carId": "c1", "trackId": "t1", "buildId": None, "timeMs": 95000,
                 "createdAt": "2024-05-01T20:10:00Z", "user": {"id": "u2", "name": "Ben"}},
            ],
        }
    )
    monkeypatch.setattr(loader_module.httpx, "Client", fake.client_factory())
    return fake


ANA = {"id": "u1", "role": "USER"}
BEN = {"id": "u2", "role": "USER"}
ADMIN = {"id": "admin", "role": "ADMIN"}


def test_unconfigured_store_raises_runtime_error() -> None:
    store = DataStore()

    assert not store.configured
    with pytest.raises(RuntimeError):
        store.list_builds()


def test_headers_include_profiles_for_custom_schema(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co/")
    monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service")
    monkeypatch.setenv("SUPABASE_SCHEMA", "racing")
    monkeypatch.setenv("SUPABASE_LAP_TIMES_TABLE", "lap_times")

    store = DataStore()
    headers = store._supabase_headers(prefer="return=representation")

    assert store._supabase_endpoint(store.tables["lap"]) == "https://example.supabase.co/rest/v1/lap_times"
    assert headers["apikey"] == "service"
    assert headers["Accept-Profile"] == "racing"
    assert headers["Content-Profile"] == "racing"
    assert headers["Prefer"] == "return=representation"


def test_leaderboard_size_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FRIDAYGT_LEADERBOARD_SIZE", "25")
    assert DataStore().leaderboard_size == 25

    monkeypatch.setenv("FRIDAYGT_LEADERBOARD_SIZE", "lots")
    assert DataStore().leaderboard_size == 10


def test_resolve_user_by_email(supabase: _FakeSupabase) -> None:
    store = DataStore()

    assert store.resolve_user({"id": "auth-1", "email": "ana@example.com"})["id"] == "u1"
    with pytest.raises(PermissionError):
        store.resolve_user({"email": "new@example.com"})
    with pytest.raises(ValueError, match="User not found"):
        store.resolve_user({"email": "ghost@example.com"})


def test_count_rows_parses_content_range(supabase: _FakeSupabase) -> None:
    supabase.count_header = "0-0/42"
    store = DataStore()

    assert store.count_rows("lap-times") == 42
    call = supabase.calls_to("GET", "LapTime")[-1]
    assert call["headers"]["Prefer"] == "count=exact"

    supabase.count_header = "*/0"
    assert store.count_rows("tracks") == 0

    with pytest.raises(ValueError, match="Invalid stat type"):
        store.count_rows("boats")


def test_reference_lists_catalogue_and_dependencies(supabase: _FakeSupabase) -> None:
    reference = DataStore().fetch_reference()

    parts = {item["name"]: item for item in reference["parts"]}
    assert parts["Racing Exhaust"]["kind"] == "boolean"
    assert parts["Wing"]["inputType"] == "select"
    assert reference["settings"][0]["options"] == ["1-way", "2-way"]
    assert {"field": "Wing Height", "dependsOn": "Wing", "value": "Custom"} in reference["dependencies"]


def test_private_build_only_visible_to_owner(supabase: _FakeSupabase) -> None:
    store = DataStore()

    with pytest.raises(PermissionError, match="This build is private"):
        store.fetch_build("b1", viewer=BEN)
    with pytest.raises(PermissionError):
        store.fetch_build("b1")

    build = store.fetch_build("b1", viewer=ANA)
    assert build["statistics"]["totalLaps"] == 2
    assert build["statistics"]["fastestTime"] == 88000
    assert build["statistics"]["averageTime"] == 89000
    assert build["statistics"]["uniqueTracks"] == 1

    with pytest.raises(ValueError, match="Build not found"):
        store.fetch_build("missing", viewer=ANA)


def test_update_build_dry_run_reports_changes_without_writing(supabase: _FakeSupabase) -> None:
    store = DataStore()

    preview = store.update_build(ANA, "b1", {"clear": ["p-wing"], "settings": {"s-lsd": "2-way"}}, dry_run=True)

    assert preview["changed"]["upgrades"] == ["p-wing"]
    assert preview["changed"]["settings"] == ["s-lsd"]
    assert preview["submission"]["upgrades"] == [{"fieldId": "p-exhaust", "value": True}]
    assert supabase.calls_to("PATCH", "CarBuild") == []
    assert supabase.calls_to("POST", "CarBuildUpgrade") == []


def test_update_build_persists_draft(supabase: _FakeSupabase) -> None:
    store = DataStore()

    store.update_build(ANA, "b1", {"name": "Grip v2", "upgrades": {"p-exhaust": False}, "gears": {2: "2.400"}})

    patch = supabase.calls_to("PATCH", "CarBuild")[0]
    assert patch["params"] == {"id": "eq.b1"}
    assert patch["json"]["name"] == "Grip v2"
    assert patch["json"]["gear1"] == "3.100"
    assert patch["json"]["gear2"] == "2.400"

    upsert = supabase.calls_to("POST", "CarBuildUpgrade")[0]
    assert upsert["params"]["on_conflict"] == "buildId,category,part"
    assert upsert["headers"]["Prefer"] == "resolution=merge-duplicates,return=representation"
    assert [(row["id"], row["partId"], row["value"]) for row in upsert["json"]] == [("bu2", "p-wing", "Custom")]
    assert upsert["json"][0]["part"] == "Wing"
    assert supabase.calls_to("DELETE", "CarBuildUpgrade")[0]["params"] == {"id": "in.(bu1)"}
    assert supabase.calls_to("DELETE", "CarBuildSetting") == []

    methods = [(call["method"], call["table"]) for call in supabase.calls]
    assert methods.index(("POST", "CarBuildUpgrade")) < methods.index(("DELETE", "CarBuildUpgrade"))


def test_failed_upgrade_write_keeps_stored_rows(supabase: _FakeSupabase) -> None:
    supabase.failures["POST CarBuildUpgrade"] = httpx.Response(500, text="down")

    with pytest.raises(RuntimeError, match="Failed to insert into CarBuildUpgrade"):
        DataStore().update_build(ANA, "b1", {"upgrades": {"p-exhaust": False}})

    assert supabase.calls_to("DELETE", "CarBuildUpgrade") == []
    assert supabase.calls_to("DELETE", "CarBuildSetting") == []


def test_update_build_rejects_values_outside_option_set(supabase: _FakeSupabase) -> None:
    with pytest.raises(ValueError, match="'LSD Mode' does not accept '3-way'"):
        DataStore().update_build(ANA, "b1", {"settings": {"s-lsd": "3-way"}})


def test_update_build_requires_owner_or_admin(supabase: _FakeSupabase) -> None:
    store = DataStore()

    with pytest.raises(PermissionError):
        store.update_build(BEN, "b1", {"name": "Mine now"})

    store.update_build(ADMIN, "b1", {"isPublic": True})
    assert supabase.calls_to("PATCH", "CarBuild")[0]["json"]["isPublic"] is True


def test_create_build_stores_checkbox_parts_without_value(supabase: _FakeSupabase) -> None:
    store = DataStore()

    build = store.create_build(
        BEN,
        {"carId": "c1", "name": "Drift", "upgrades": {"p-exhaust": True, "p-wing": "Type A"}, "isPublic": True},
    )

    inserted = supabase.calls_to("POST", "CarBuild")[0]["json"][0]
    assert inserted["userId"] == "u2"
    assert inserted["isPublic"] is True
    assert build["id"] == inserted["id"]
    rows = {row["partId"]: row["value"] for row in supabase.calls_to("POST", "CarBuildUpgrade")[0]["json"]}
    assert rows == {"p-exhaust": None, "p-wing": "Type A"}


def test_create_build_requires_existing_car(supabase: _FakeSupabase) -> None:
    with pytest.raises(ValueError, match="Car not found"):
        DataStore().create_build(ANA, {"carId": "nope", "name": "X"})


def test_quick_build_is_private_and_has_no_children(supabase: _FakeSupabase) -> None:
    build = DataStore().create_quick_build(BEN, {"carId": "c2", "name": "  Sprint  ", "description": "   "})

    insert = supabase.calls_to("POST", "CarBuild")[0]
    assert insert["params"]["select"] == f"*,car:Car({loader_module.CAR_SELECT})"
    record = insert["json"][0]
    assert (record["userId"], record["carId"], record["name"]) == ("u2", "c2", "Sprint")
    assert record["description"] is None
    assert record["isPublic"] is False
    assert build["id"] == record["id"]
    assert supabase.calls_to("POST", "CarBuildUpgrade") == []
    assert supabase.calls_to("POST", "CarBuildSetting") == []


@pytest.mark.parametrize(
    "payload,message",
    [
        ({"name": "Sprint"}, "carId is required"),
        ({"carId": "c2", "name": "   "}, "name is required"),
        ({"carId": "nope", "name": "Sprint"}, "Car not found"),
    ],
)
def test_quick_build_validation(supabase: _FakeSupabase, payload, message) -> None:
    with pytest.raises(ValueError, match=message):
        DataStore().create_quick_build(BEN, payload)
    assert supabase.calls_to("POST", "CarBuild") == []


def test_list_cars_filters_and_lists_manufacturers(supabase: _FakeSupabase) -> None:
    result = DataStore().list_cars(search="nis", manufacturer="all", category="Gr.4")

    query = supabase.calls_to("GET", "Car")[0]["params"]
    assert query["or"] == "(name.ilike.*nis*,manufacturer.ilike.*nis*)"
    assert query["order"] == "manufacturer.asc,name.asc"
    assert query["category"] == "eq.Gr.4"
    assert "manufacturer" not in query
    assert [car["id"] for car in result["cars"]] == ["c2", "c3"]
    assert result["manufacturers"] == ["Nissan", "Toyota"]


def test_car_and_track_lookup_by_slug(supabase: _FakeSupabase) -> None:
    store = DataStore()

    assert store.fetch_car("nissan-z")["name"] == "Z"
    assert store.fetch_track("nurburgring")["layout"] == "Nordschleife"
    assert [track["id"] for track in store.list_tracks()] == ["t1", "t2"]
    assert supabase.calls_to("GET", "Track")[-1]["params"]["order"] == "category.asc"
    with pytest.raises(ValueError, match="Car not found"):
        store.fetch_car("missing")
    with pytest.raises(ValueError, match="Track not found"):
        store.fetch_track("missing")


def test_clone_copies_private_build_for_owner_only(supabase: _FakeSupabase) -> None:
    store = DataStore()

    with pytest.raises(PermissionError):
        store.clone_build(BEN, "b1")

    clone = store.clone_build(ANA, "b1")

    record = supabase.calls_to("POST", "CarBuild")[0]["json"][0]
    assert record["name"] == "Grip (Copy)"
    assert record["description"] == "Stable\n\nCloned from Ana's build"
    assert record["isPublic"] is False
    assert record["gear1"] == "3.100"
    assert clone["id"] == record["id"] != "b1"
    copied = supabase.calls_to("POST", "CarBuildUpgrade")[0]["json"]
    assert {row["buildId"] for row in copied} == {record["id"]}


def test_create_lap_time_validates_and_snapshots_build_name(supabase: _FakeSupabase) -> None:
    store = DataStore()

    with pytest.raises(ValueError, match="between 10 seconds and 30 minutes"):
        store.create_lap_time(ANA, {"trackId": "t1", "carId": "c1", "timeMs": 9000})
    with pytest.raises(ValueError, match="Track not found"):
        store.create_lap_time(ANA, {"trackId": "t9", "carId": "c1", "timeMs": 90000})

    lap = store.create_lap_time(ANA, {"trackId": "t1", "carId": "c1", "buildId": "b1", "timeMs": 87000})

    assert lap["buildName"] == "Grip"
    assert lap["timeMs"] == 87000
    assert lap["sessionType"] == "R"
    insert = supabase.calls_to("POST", "LapTime")[0]
    assert insert["params"]["select"] == loader_module.LAP_SELECT
    assert insert["headers"]["Prefer"] == "return=representation"


def test_insert_conflict_becomes_value_error(supabase: _FakeSupabase) -> None:
    supabase.failures["POST LapTime"] = httpx.Response(409, json={"message": "duplicate key value"})

    with pytest.raises(ValueError, match="duplicate key value"):
        DataStore().create_lap_time(ANA, {"trackId": "t1", "carId": "c1", "timeMs": 87000})


def test_delete_lap_time_checks_ownership(supabase: _FakeSupabase) -> None:
    store = DataStore()

    with pytest.raises(PermissionError, match="your own lap times"):
        store.delete_lap_time(BEN, "l1")
    with pytest.raises(ValueError, match="Lap time not found"):
        store.delete_lap_time(ANA, "missing")

    store.delete_lap_time(ADMIN, "l1")
    assert supabase.calls_to("DELETE", "LapTime")[0]["params"] == {"id": "eq.l1"}


def test_combo_builds_leaderboard_and_viewer_summary(supabase: _FakeSupabase) -> None:
    combo = DataStore().fetch_combo("nissan-gtr", "suzuka", viewer_id="u2")

    assert [entry["userId"] for entry in combo["leaderboard"]] == ["u1", "u2"]
    assert combo["leaderboard"][0]["bestTime"] == 88000
    assert combo["leaderboard"][0]["userName"] == "AnaGT"
    assert combo["statistics"]["worldRecord"]["bestLapId"] == "l2"
    assert combo["statistics"]["averageTime"] == 91000
    assert combo["userStats"]["position"] == 2
    assert combo["userStats"]["totalLaps"] == 1
    assert [lap["id"] for lap in combo["recentActivity"]] == ["l3", "l2", "l1"]


def test_combo_unknown_track(supabase: _FakeSupabase) -> None:
    with pytest.raises(ValueError, match="Track not found"):
        DataStore().fetch_combo("nissan-gtr", "monza")


def test_car_lap_times_grouped_by_track(supabase: _FakeSupabase) -> None:
    result = DataStore().fetch_car_lap_times("nissan-gtr", user_id="u1")

    assert result["car"]["id"] == "c1"
    assert result["statistics"]["totalLaps"] == 2
    (group,) = result["lapTimesByTrack"]
    assert group["trackId"] == "t1"
    assert group["personalBest"] == 88000


def test_query_failure_raises_runtime_error(supabase: _FakeSupabase) -> None:
    supabase.failures["GET Track"] = httpx.Response(500, text="boom")

    with pytest.raises(RuntimeError, match="Failed to query Track"):
        DataStore().fetch_track_lap_times("suzuka")
