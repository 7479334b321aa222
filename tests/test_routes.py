from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import USER
from tracker.main import create_app

HEADERS = {"X-Backend-Token": "test-secret", "X-User-Email": USER}


@pytest.fixture
def client(settings, fake_calendar):
    app = create_app(settings, client_factory=lambda access_token: fake_calendar)
    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_requests_need_backend_token(client):
    assert client.get("/v1/habits", headers={"X-User-Email": USER}).status_code == 401
    assert client.get("/v1/habits", headers={"X-Backend-Token": "test-secret"}).status_code == 401


def test_habit_flow(client):
    created = client.post(
        "/v1/habits",
        json={"title": "Stretch", "schedule_type": "weekly", "schedule_days": [0, 1, 2, 3, 4, 5, 6]},
        headers=HEADERS,
    )
    assert created.status_code == 200
    habit_id = created.json()["id"]

    toggled = client.post(f"/v1/habits/{habit_id}/toggle", headers=HEADERS).json()
    assert toggled["completed_today"] is True
    assert toggled["streak"] == 1

    today = client.get("/v1/habits/today", headers=HEADERS).json()["items"]
    assert [item["id"] for item in today] == [habit_id]

    patched = client.patch(f"/v1/habits/{habit_id}", json={"schedule_type": "interval", "schedule_interval": 2}, headers=HEADERS)
    assert patched.json()["schedule_type"] == "interval"

    assert client.delete(f"/v1/habits/{habit_id}", headers=HEADERS).json() == {"ok": True}
    assert client.get("/v1/habits", headers=HEADERS).json()["items"] == []


def test_weekly_habit_without_days_is_rejected(client):
    response = client.post("/v1/habits", json={"title": "Gym", "schedule_type": "weekly"}, headers=HEADERS)
    assert response.status_code == 400


def test_todo_flow(client):
    tag = client.post("/v1/tags", json={"name": "home"}, headers=HEADERS).json()
    created = client.post(
        "/v1/todos",
        json={"title": "Fix sink", "due_date": "2024-03-01", "start_time": "18:00", "tag_ids": [tag["id"]]},
        headers=HEADERS,
    )
    assert created.status_code == 200
    todo = created.json()
    assert todo["start_time"] == "18:00"
    assert todo["tags"] == ["home"]

    subtask = client.post(f"/v1/todos/{todo['id']}/subtasks", json={"title": "Buy washer"}, headers=HEADERS).json()
    assert client.patch(f"/v1/subtasks/{subtask['id']}", json={"completed": True}, headers=HEADERS).json()["completed"]

    patched = client.patch(f"/v1/todos/{todo['id']}", json={"notes": "call plumber", "due_date": None}, headers=HEADERS)
    assert patched.json()["notes"] == "call plumber"
    assert patched.json()["due_date"] is None

    completed = client.post(f"/v1/todos/{todo['id']}/complete", headers=HEADERS).json()
    assert completed["completed"] is True

    items = client.get("/v1/todos", headers=HEADERS).json()["items"]
    assert [item["subtasks"][0]["title"] for item in items] == ["Buy washer"]

    assert client.delete(f"/v1/todos/{todo['id']}", headers=HEADERS).json() == {"ok": True}
    assert client.patch(f"/v1/todos/{todo['id']}", json={"title": "x"}, headers=HEADERS).status_code == 404


def test_null_title_is_rejected(client):
    todo = client.post("/v1/todos", json={"title": "Fix sink"}, headers=HEADERS).json()
    assert client.patch(f"/v1/todos/{todo['id']}", json={"title": None}, headers=HEADERS).status_code == 422


def test_lists_and_tags(client):
    work = client.post("/v1/lists", json={"name": "Work"}, headers=HEADERS).json()
    assert [item["name"] for item in client.get("/v1/lists", headers=HEADERS).json()["items"]] == ["Work"]
    assert client.post("/v1/tags", json={"name": "a"}, headers=HEADERS).status_code == 200
    assert client.post("/v1/tags", json={"name": "A"}, headers=HEADERS).status_code == 400
    assert client.delete(f"/v1/lists/{work['id']}", headers=HEADERS).json() == {"ok": True}
    assert client.get("/v1/lists", headers=HEADERS).json()["items"] == []


def test_sync_endpoints_without_connection(client):
    status = client.get("/v1/sync/status", headers=HEADERS).json()
    assert status["connected"] is False
    assert status["last_error"] is None

    run = client.post("/v1/sync/run", headers=HEADERS).json()
    assert run["ok"] is False
    assert run["connected"] is False

    events = client.get("/v1/calendar/events", params={"start": "2024-01-01", "end": "2024-01-07"}, headers=HEADERS)
    assert events.json() == {"connected": False, "items": []}


def test_calendar_events_validates_range(client):
    response = client.get("/v1/calendar/events", params={"start": "2024-01-07", "end": "2024-01-01"}, headers=HEADERS)
    assert response.status_code == 400


def test_connect_url(client):
    url = client.get("/v1/oauth/google/connect", headers=HEADERS).json()["url"]
    assert url.startswith("https://accounts.google.com/")
    assert "state=someone%40example.com" not in url


def test_callback_rejects_state_it_did_not_issue(client):
    response = client.get("/v1/oauth/google/callback", params={"code": "attacker-code", "state": "victim@example.com"})
    assert response.status_code == 400
    assert client.get("/v1/sync/status", headers={**HEADERS, "X-User-Email": "victim@example.com"}).json()["connected"] is False


def test_callback_connects_the_user_who_asked(settings, fake_calendar):
    def token_endpoint(request):
        return httpx.Response(200, json={"access_token": "fresh", "refresh_token": "long-lived", "expires_in": 3600})

    http = httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint))
    app = create_app(settings, http=http, client_factory=lambda access_token: fake_calendar)
    with TestClient(app) as client:
        url = client.get("/v1/oauth/google/connect", headers=HEADERS).json()["url"]
        [state] = parse_qs(urlparse(url).query)["state"]

        response = client.get("/v1/oauth/google/callback", params={"code": "auth-code", "state": state})
        assert response.json() == {"ok": True}
        assert client.get("/v1/sync/status", headers=HEADERS).json()["connected"] is True

        replay = client.get("/v1/oauth/google/callback", params={"code": "auth-code", "state": state})
        assert replay.status_code == 400
