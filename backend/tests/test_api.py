from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base, get_db  # noqa: E402
from main import app  # noqa: E402
from services import achievement_service  # noqa: E402


@pytest.fixture()
def client(monkeypatch):
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def _override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _override_get_db
    monkeypatch.setattr(achievement_service, "SessionLocal", factory)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)


def _create_user(client: TestClient, username: str = "api_user") -> int:
    res = client.post("/api/users", json={"username": username, "timezone": "America/Edmonton"})
    assert res.status_code == 201, res.text
    return int(res.json()["id"])


def test_health(client):
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"
    assert res.headers["X-Content-Type-Options"] == "nosniff"


def test_user_validation(client):
    _create_user(client, "dupe")
    assert client.post("/api/users", json={"username": "DUPE"}).status_code == 409
    assert client.post("/api/users", json={"username": "tz", "timezone": "Mars/Base"}).status_code == 400
    assert client.get("/api/users/9999").status_code == 404


def test_plan_lifecycle_and_current_resolution(client):
    user_id = _create_user(client)
    base = f"/api/users/{user_id}"

    first = client.post(
        f"{base}/meal-plans?today=2024-01-10",
        json={
            "name": "Week one",
            "slots": [
                {"recipe_id": "oats", "day_index": 0, "meal_type": "breakfast"},
                {"recipe_id": "stew", "day_index": 2, "meal_type": "dinner"},
            ],
            "span_days": 7,
        },
    )
    assert first.status_code == 201, first.text
    first_body = first.json()
    assert first_body["start_date"] == "2024-01-10"
    assert first_body["is_current"] is True
    assert first_body["effective_span"] == 3

    second = client.post(f"{base}/meal-plans?today=2024-01-10", json={"name": "Week two", "span_days": 7})
    assert second.status_code == 201
    second_id = second.json()["id"]
    assert second.json()["start_date"] == "2024-01-17"
    assert second.json()["is_current"] is False

    listing = client.get(f"{base}/meal-plans?today=2024-01-10").json()["meal_plans"]
    timings = {row["id"]: row["timing"] for row in listing}
    assert timings == {first_body["id"]: "current", second_id: "next"}

    pinned = client.post(f"{base}/meal-plans/{second_id}/current?today=2024-01-10")
    assert pinned.status_code == 200
    current = client.get(f"{base}/meal-plans/current?today=2024-01-10").json()
    assert current["meal_plan"]["id"] == second_id

    slots = client.get(f"{base}/slots?day=2024-01-12&today=2024-01-10").json()["slots"]
    assert [slot["recipe_id"] for slot in slots] == ["stew"]

    week = client.get(f"{base}/meal-plans/week?today=2024-01-10").json()
    assert week["week_start"] == "2024-01-07"
    assert {row["id"] for row in week["meal_plans"]} == {first_body["id"]}


def test_plan_errors_map_to_status_codes(client):
    user_id = _create_user(client, "error_user")
    base = f"/api/users/{user_id}"

    bad_slot = client.post(
        f"{base}/meal-plans",
        json={"name": "Bad", "slots": [{"recipe_id": "x", "day_index": -2, "meal_type": "lunch"}]},
    )
    assert bad_slot.status_code == 409

    bad_meal = client.post(
        f"{base}/meal-plans",
        json={"name": "Bad", "slots": [{"recipe_id": "x", "day_index": 0, "meal_type": "brunch"}]},
    )
    assert bad_meal.status_code == 400

    assert client.get(f"{base}/meal-plans/4242").status_code == 404

    plan_id = client.post(f"{base}/meal-plans?today=2024-01-10", json={"name": "Ok"}).json()["id"]
    inverted = client.patch(f"{base}/meal-plans/{plan_id}", json={"start_date": "2024-02-10", "end_date": "2024-02-01"})
    assert inverted.status_code == 409

    client.post(f"{base}/meal-plans/{plan_id}/archive")
    assert client.post(f"{base}/meal-plans/{plan_id}/current").status_code == 409


def test_slot_cooked_favorite_export_and_delete(client):
    user_id = _create_user(client, "slot_user")
    base = f"/api/users/{user_id}"
    plan = client.post(
        f"{base}/meal-plans?today=2024-01-10",
        json={"name": "Cook & Eat", "slots": [{"recipe_id": "soup", "day_index": 0, "meal_type": "lunch"}]},
    ).json()
    slot_id = plan["recipes"][0]["id"]

    flipped = client.post(f"{base}/meal-plans/{plan['id']}/slots/{slot_id}/cooked")
    assert flipped.json()["is_cooked"] is True
    set_false = client.post(f"{base}/meal-plans/{plan['id']}/slots/{slot_id}/cooked", json={"is_cooked": False})
    assert set_false.json()["is_cooked"] is False

    fav = client.post(f"{base}/meal-plans/{plan['id']}/favorite")
    assert fav.json()["is_favorite"] is True

    replaced = client.put(
        f"{base}/meal-plans/{plan['id']}/slots",
        json={"slots": [{"recipe_id": "salad", "day_index": 1, "meal_type": "dinner"}]},
    )
    assert [slot["recipe_id"] for slot in replaced.json()["recipes"]] == ["salad"]

    exported = client.get(f"{base}/meal-plans/{plan['id']}/export")
    assert exported.status_code == 200
    assert exported.json()["version"] == "1.0"
    assert 'filename="Cook_Eat.json"' in exported.headers["content-disposition"]

    assert client.delete(f"{base}/meal-plans/{plan['id']}").status_code == 200
    assert client.get(f"{base}/meal-plans/{plan['id']}").status_code == 404


def test_progress_streaks_and_achievements(client):
    user_id = _create_user(client, "progress_api_user")
    base = f"/api/users/{user_id}"

    for day in ("2024-01-01", "2024-01-02", "2024-01-03", "2024-01-05", "2024-01-06"):
        res = client.put(f"{base}/progress", json={"day": day, "breakfast": True})
        assert res.status_code == 200, res.text
    client.put(f"{base}/progress", json={"day": "2024-01-04", "snack": True})
    retry = client.put(f"{base}/progress", json={"day": "2024-01-06", "breakfast": True})
    assert retry.json()["breakfast_completed"] is True

    assert client.get(f"{base}/streaks").json() == {"current_streak": 2, "longest_streak": 3}

    shopping = client.post(f"{base}/progress/shopping", json={"day": "2024-01-06"})
    assert shopping.json()["shopping_completed"] is True
    assert shopping.json()["breakfast_completed"] is True

    day = client.get(f"{base}/progress?day=2024-01-04").json()
    assert day["snack_completed"] is True
    empty = client.get(f"{base}/progress?day=2023-12-25").json()
    assert empty["id"] is None

    rows = client.get(f"{base}/progress/range?start=2024-01-01&end=2024-01-31").json()["progress"]
    assert len(rows) == 6
    assert client.get(f"{base}/progress/range?start=2024-01-31&end=2024-01-01").status_code == 400

    assert client.put(f"{base}/progress", json={"day": "2024-01-07", "meal_plan_id": 999, "lunch": True}).status_code == 404

    achievements = {row["name"]: row for row in client.get(f"{base}/achievements").json()["achievements"]}
    assert achievements["On a Roll"]["completed"] is True
    assert achievements["Shopping Starter"]["completed"] is True

    stats = client.get(f"{base}/stats").json()
    assert stats["longest_streak"] == 3
    assert stats["completed_achievements"] >= 2


def test_refresh_runs_once_per_day(client):
    user_id = _create_user(client, "refresh_user")
    base = f"/api/users/{user_id}"
    client.post(f"{base}/meal-plans?today=2024-01-10", json={"name": "Plan"})

    first = client.post(f"{base}/meal-plans/refresh?today=2024-01-11").json()
    second = client.post(f"{base}/meal-plans/refresh?today=2024-01-11").json()

    assert first["ran"] is True
    assert second["ran"] is False
    assert second["current_plan_id"] == first["current_plan_id"]


def test_operational_error_maps_to_503(client):
    def _broken_db():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        yield  # pragma: no cover

    app.dependency_overrides[get_db] = _broken_db
    res = TestClient(app, raise_server_exceptions=False).get("/api/users/1")
    assert res.status_code == 503
    assert res.headers["Retry-After"] == "1"
