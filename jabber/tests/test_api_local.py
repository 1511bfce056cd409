from fastapi.testclient import TestClient

from jabber.storage import SQLiteDatabase


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_index_page_is_served(client: TestClient) -> None:
    response = client.get("/")
    assert response.status_code == 200
    assert "Jabber" in response.text


def test_memory_create_and_list_most_recent_first(client: TestClient) -> None:
    for key, value in [("name", "Sam"), ("city", "Lisbon"), ("pet", "cat")]:
        response = client.post("/api/memories", json={"key": key, "value": value})
        assert response.status_code == 200
        assert response.json()["key"] == key

    memories = client.get("/api/memories").json()["memories"]
    assert [memory["key"] for memory in memories] == ["pet", "city", "name"]
    assert memories[0]["value"] == "cat"


def test_memory_requires_key_and_value(client: TestClient, database: SQLiteDatabase) -> None:
    response = client.post("/api/memories", json={"key": "name"})
    assert response.status_code == 400
    assert response.json() == {"error": "key and value required"}
    assert database.fetch_all("SELECT id FROM memories") == []


def test_event_without_end_is_stored_with_empty_end(client: TestClient) -> None:
    response = client.post(
        "/api/events", json={"title": "Standup", "start": "2024-01-01T09:00:00Z"}
    )
    assert response.status_code == 200
    assert response.json()["end"] == ""

    events = client.get("/api/events").json()["events"]
    assert [(event["title"], event["end"]) for event in events] == [("Standup", "")]


def test_events_are_listed_by_start_regardless_of_insertion(client: TestClient) -> None:
    for title, start in [
        ("Dinner", "2024-01-03T19:00:00Z"),
        ("Gym", "2024-01-01T07:00:00Z"),
        ("Call", "2024-01-02T15:00:00Z"),
    ]:
        client.post("/api/events", json={"title": title, "start": start})

    titles = [event["title"] for event in client.get("/api/events").json()["events"]]
    assert titles == ["Gym", "Call", "Dinner"]


def test_event_requires_title_and_start(client: TestClient) -> None:
    response = client.post("/api/events", json={"title": "Standup"})
    assert response.status_code == 400
    assert response.json() == {"error": "title and start required"}


def test_malformed_body_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/memories", content="not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert "error" in response.json()


def test_storage_failure_is_reported_as_json(
    client: TestClient, database: SQLiteDatabase
) -> None:
    database.execute("DROP TABLE memories")
    response = client.get("/api/memories")
    assert response.status_code == 500
    assert response.json()["error"].startswith("Storage failure")


def test_unknown_api_route_returns_json_error(client: TestClient) -> None:
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert "error" in response.json()
