from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from app import main as main_module


class _FakeStore:
    leaderboard_size = 10

    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def count_rows(self, kind: str) -> int:
        if kind != "cars":
            raise ValueError("Invalid stat type")
        return 12

    def fetch_build(self, build_id: str, viewer: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if build_id == "missing":
            raise ValueError("Build not found")
        if viewer is None:
            raise PermissionError("This build is private")
        return {"id": build_id, "statistics": {"totalLaps": 0}}

    def update_build(self, user, build_id, changes, dry_run=False) -> Dict[str, Any]:
        self.calls.append(("update_build", user["id"], build_id, changes, dry_run))
        return {"changed": {"upgrades": ["p1"], "settings": [], "gears": [], "finalDrive": []}, "submission": {}}

    def list_cars(self, search=None, manufacturer=None, category=None, drive_type=None) -> Dict[str, Any]:
        self.calls.append(("list_cars", search, manufacturer, category, drive_type))
        return {"cars": [{"id": "c1", "slug": "nissan-gtr"}], "manufacturers": ["Nissan"]}

    def fetch_car(self, slug: str) -> Dict[str, Any]:
        if slug != "nissan-gtr":
            raise ValueError("Car not found")
        return {"id": "c1", "slug": slug}

    def list_tracks(self) -> List[Dict[str, Any]]:
        return [{"id": "t1", "slug": "suzuka"}]

    def fetch_track(self, slug: str) -> Dict[str, Any]:
        raise ValueError("Track not found")

    def create_quick_build(self, user, payload) -> Dict[str, Any]:
        self.calls.append(("create_quick_build", user["id"], payload))
        return {"id": "b9", "carId": payload["carId"], "name": payload["name"], "isPublic": False}

    def create_lap_time(self, user, payload) -> Dict[str, Any]:
        self.calls.append(("create_lap_time", payload))
        return {
            "id": "lap-9",
            "timeMs": payload["timeMs"],
            "userId": user["id"],
            "carId": payload["carId"],
            "trackId": payload["trackId"],
            "sessionType": payload["sessionType"],
        }

    def delete_lap_time(self, user, lap_id) -> None:
        raise RuntimeError("Failed to delete from LapTime: timeout")

    def fetch_combo(self, car_slug, track_slug, viewer_id=None) -> Dict[str, Any]:
        raise ValueError("Car not found")


USER = {"id": "u1", "role": "USER"}


@pytest.fixture
def fake_store(monkeypatch: pytest.MonkeyPatch) -> _FakeStore:
    fake = _FakeStore()
    monkeypatch.setattr(main_module, "store", lambda: fake)
    return fake


@pytest.fixture
def client(fake_store: _FakeStore):
    main_module.app.dependency_overrides[main_module.current_user] = lambda: USER
    main_module.app.dependency_overrides[main_module.optional_user] = lambda: None
    yield TestClient(main_module.app)
    main_module.app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_stats_counts_and_rejects_unknown_kind(client: TestClient) -> None:
    assert client.get("/stats/cars").json() == {"count": 12}

    response = client.get("/stats/boats")
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid stat type"


def test_leaderboard_ranks_posted_laps(client: TestClient) -> None:
    response = client.post(
        "/leaderboard",
        json={
            "laps": [
                {"id": "a", "timeMs": 90000, "userId": "u1", "carId": "c1", "buildId": "b1", "createdAt": "2024-05-01T20:00:00Z"},
                {"id": "b", "timeMs": 88000, "userId": "u1", "carId": "c1", "buildId": "b1", "createdAt": "2024-05-01T20:05:00Z"},
                {"id": "c", "timeMs": 95000, "userId": "u2", "carId": "c1", "createdAt": "2024-05-01T20:10:00Z"},
            ]
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert [entry["bestTime"] for entry in body["entries"]] == [88000, 95000]
    assert body["entries"][0]["totalLaps"] == 2
    assert body["entries"][0]["bestLapId"] == "b"
    assert body["statistics"]["averageTime"] == 91000


def test_private_build_maps_to_forbidden(client: TestClient) -> None:
    response = client.get("/builds/b1")
    assert response.status_code == 403

    assert client.get("/builds/missing").status_code == 404


def test_preview_passes_edit_as_dry_run(client: TestClient, fake_store: _FakeStore) -> None:
    response = client.post("/builds/b1/preview", json={"clear": ["p1"], "addGears": 2})

    assert response.status_code == 200
    assert response.json()["changed"]["upgrades"] == ["p1"]
    name, user_id, build_id, changes, dry_run = fake_store.calls[0]
    assert (user_id, build_id, dry_run) == ("u1", "b1", True)
    assert changes == {"clear": ["p1"], "addGears": 2}


def test_build_edit_validates_payload(client: TestClient) -> None:
    response = client.patch("/builds/b1", json={"name": ""})

    assert response.status_code == 422


def test_create_lap_time_defaults_to_race_session(client: TestClient, fake_store: _FakeStore) -> None:
    response = client.post("/lap-times", json={"trackId": "t1", "carId": "c1", "timeMs": 91234})

    assert response.status_code == 201
    assert response.json()["sessionType"] == "R"
    assert fake_store.calls[0][1]["buildId"] is None


def test_lap_time_session_type_is_restricted(client: TestClient) -> None:
    response = client.post("/lap-times", json={"trackId": "t1", "carId": "c1", "timeMs": 91234, "sessionType": "P"})

    assert response.status_code == 422


def test_storage_failures_map_to_bad_gateway(client: TestClient) -> None:
    response = client.delete("/lap-times/l1")

    assert response.status_code == 502


def test_unknown_combo_is_not_found(client: TestClient) -> None:
    response = client.get("/combos/unknown/suzuka")

    assert response.status_code == 404
    assert response.json()["detail"] == "Car not found"


def test_protected_routes_require_token(fake_store: _FakeStore) -> None:
    response = TestClient(main_module.app).get("/lap-times")

    assert response.status_code == 401


def test_car_catalogue_routes(client: TestClient, fake_store: _FakeStore) -> None:
    response = client.get("/cars", params={"search": "gt", "driveType": "4WD"})

    assert response.status_code == 200
    assert response.json()["manufacturers"] == ["Nissan"]
    assert fake_store.calls[0] == ("list_cars", "gt", None, None, "4WD")
    assert client.get("/cars/nissan-gtr").json() == {"car": {"id": "c1", "slug": "nissan-gtr"}}
    assert client.get("/cars/missing").status_code == 404


def test_track_catalogue_routes(client: TestClient) -> None:
    assert client.get("/tracks").json() == {"tracks": [{"id": "t1", "slug": "suzuka"}]}

    response = client.get("/tracks/monza")
    assert response.status_code == 404
    assert response.json()["detail"] == "Track not found"


def test_quick_build_created(client: TestClient, fake_store: _FakeStore) -> None:
    response = client.post("/builds/quick", json={"carId": "c1", "name": "Sprint"})

    assert response.status_code == 201
    assert response.json()["id"] == "b9"
    assert fake_store.calls[0] == ("create_quick_build", "u1", {"carId": "c1", "name": "Sprint", "description": None})
    assert client.post("/builds/quick", json={"name": "Sprint"}).status_code == 422
