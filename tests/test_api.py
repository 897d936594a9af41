import pytest
from fastapi.testclient import TestClient

from tutordesk.services.scheduling import main

HEADERS = {"x-api-key": "test-key", "x-teacher-id": "1001"}


@pytest.fixture
def client(monkeypatch, scheduling):
    monkeypatch.setattr(main, "service", scheduling)
    return TestClient(main.app)


def draft(student_id: int, **fields) -> dict:
    body = {"student_ids": [student_id], "lesson_date": "2024-01-01", "start_time": "18:00"}
    body.update(fields)
    return body


def test_requests_need_key_and_teacher(client, student):
    assert client.post("/lessons", json=draft(student.id)).status_code == 401
    assert client.post("/lessons", json=draft(student.id), headers={"x-api-key": "test-key"}).status_code == 400


def test_create_and_list(client, student):
    created = client.post("/lessons", json=draft(student.id), headers=HEADERS)
    assert created.status_code == 200
    assert created.json()["start_at"].startswith("2024-01-01T15:00")

    listed = client.get(
        "/lessons",
        params={"start": "2024-01-01T00:00:00Z", "end": "2024-01-02T00:00:00Z"},
        headers=HEADERS,
    )
    assert [row["id"] for row in listed.json()] == [created.json()["id"]]


def test_errors_map_to_status_codes(client, student):
    assert client.post("/lessons", json=draft(student.id, lesson_date="01/01/2024"), headers=HEADERS).status_code == 400
    assert client.get("/lessons/999", headers=HEADERS).status_code == 404


def test_series_delete_without_scope_asks_first(client, student):
    created = client.post(
        "/lessons/recurring",
        json=draft(student.id, is_recurring=True, weekdays=[1, 3], repeat_until="2024-01-14"),
        headers=HEADERS,
    ).json()

    asked = client.delete(f"/lessons/{created[1]['id']}", headers=HEADERS)
    assert asked.status_code == 409
    assert asked.json()["options"] == ["SINGLE", "SERIES"]

    done = client.delete(f"/lessons/{created[1]['id']}", params={"scope": "SERIES"}, headers=HEADERS)
    assert done.status_code == 200
    assert sorted(done.json()["deleted_ids"]) == sorted(row["id"] for row in created[1:])
