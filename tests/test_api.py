import pytest
from conftest import FakeCache
from fastapi.testclient import TestClient

from dayplanner.api.routes import get_cache
from dayplanner.main import app


client = TestClient(app)


def definition_json(template_id, **overrides):
    payload = {
        "id": template_id,
        "duration_minutes": 30,
        "start_date": "2024-03-04",
        "recurrence": {"frequency": "daily"},
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def fake_cache():
    cache = FakeCache()
    app.dependency_overrides[get_cache] = lambda: cache
    yield cache
    app.dependency_overrides.clear()


@pytest.fixture
def day_payload():
    return {
        "date": "2024-03-04",
        "definitions": [
            definition_json("meeting", scheduling_type="fixed", fixed_time="09:00", is_mandatory=True),
            definition_json("notes", time_window="morning", duration_minutes=20, depends_on="meeting"),
            definition_json("gym", time_window="evening", duration_minutes=60, min_duration_minutes=30),
        ],
    }


class TestScheduleEndpoint:
    """Integration tests for /api/v1/schedule/day."""

    def test_schedule_day(self, fake_cache, day_payload):
        """Schedule endpoint should place every task with wall-clock times."""
        response = client.post("/api/v1/schedule/day", json=day_payload)

        assert response.status_code == 200
        data = response.json()
        assert len(data["blocks"]) == 3
        assert data["impossible_day"] is False
        assert data["cached"] is False
        notes = next(b for b in data["blocks"] if b["template_id"] == "notes")
        assert notes["start_time"] == "09:35"
        assert notes["instance_id"] == "notes@2024-03-04"

    def test_second_call_served_from_cache(self, fake_cache, day_payload):
        first = client.post("/api/v1/schedule/day", json=day_payload).json()
        second = client.post("/api/v1/schedule/day", json=day_payload).json()

        assert len(fake_cache.store) == 1
        assert second["cached"] is True
        assert second["blocks"] == first["blocks"]

    def test_changed_input_misses_cache(self, fake_cache, day_payload):
        client.post("/api/v1/schedule/day", json=day_payload)
        day_payload["definitions"][2]["duration_minutes"] = 45
        response = client.post("/api/v1/schedule/day", json=day_payload)

        assert response.json()["cached"] is False
        assert len(fake_cache.store) == 2

    def test_explicit_instances_and_sleep(self, fake_cache, day_payload):
        day_payload["instances"] = [
            {"id": "meeting@2024-03-04", "template_id": "meeting", "date": "2024-03-04",
             "scheduled_time_override": "14:00"},
        ]
        day_payload["sleep"] = {"wake_time": "13:00", "sleep_time": "13:20"}
        data = client.post("/api/v1/schedule/day", json=day_payload).json()

        assert [b["start_time"] for b in data["blocks"]] == ["14:00"]
        assert data["impossible_day"] is True
        assert data["impossibility"]["available_minutes"] == 20

    def test_invalid_definition_rejected(self, fake_cache, day_payload):
        """Definition invariants surface as 400."""
        day_payload["definitions"][2]["min_duration_minutes"] = 90
        response = client.post("/api/v1/schedule/day", json=day_payload)
        assert response.status_code == 400

    def test_malformed_time_rejected(self, fake_cache, day_payload):
        day_payload["definitions"][0]["fixed_time"] = "9am"
        response = client.post("/api/v1/schedule/day", json=day_payload)
        assert response.status_code == 422

    def test_cycle_reported(self, fake_cache):
        payload = {
            "date": "2024-03-04",
            "definitions": [
                definition_json("a", depends_on="b"),
                definition_json("b", depends_on="a"),
            ],
        }
        data = client.post("/api/v1/schedule/day", json=payload).json()
        assert len(data["cycles"]) == 1
        assert {c["kind"] for c in data["conflicts"]} == {"dependency_violation"}

    def test_self_dependency_reported(self, fake_cache):
        payload = {"date": "2024-03-04", "definitions": [definition_json("a", depends_on="a")]}
        response = client.post("/api/v1/schedule/day", json=payload)
        assert response.status_code == 200
        assert response.json()["cycles"] == [["a@2024-03-04"]]


class TestRecurrenceEndpoints:
    """Integration tests for /api/v1/recurrence/*."""

    def test_occurrences(self):
        payload = {
            "definition": definition_json("rent", start_date="2024-01-31",
                                          recurrence={"frequency": "monthly"}),
            "start": "2024-01-01",
            "end": "2024-04-30",
        }
        response = client.post("/api/v1/recurrence/occurrences", json=payload)
        assert response.status_code == 200
        assert response.json()["dates"] == ["2024-01-31", "2024-02-29", "2024-03-31", "2024-04-30"]

    def test_occurrences_limit(self):
        payload = {"definition": definition_json("walk"), "start": "2024-03-04", "end": "2024-12-31", "limit": 3}
        assert client.post("/api/v1/recurrence/occurrences", json=payload).json()["dates"] == [
            "2024-03-04", "2024-03-05", "2024-03-06",
        ]

    def test_occurrences_reversed_range(self):
        payload = {"definition": definition_json("walk"), "start": "2024-03-10", "end": "2024-03-01"}
        assert client.post("/api/v1/recurrence/occurrences", json=payload).status_code == 400

    def test_next_occurrence(self):
        payload = {
            "definition": definition_json("review", start_date="2024-03-04",
                                          recurrence={"frequency": "weekly", "days_of_week": [5]}),
            "from_date": "2024-03-09",
        }
        assert client.post("/api/v1/recurrence/next", json=payload).json() == {"next": "2024-03-15"}

    def test_validate_rule(self):
        response = client.post("/api/v1/recurrence/validate", json={"rule": {"frequency": "weekly"}})
        data = response.json()
        assert data["valid"] is False
        assert data["issues"][0]["field"] == "days_of_week"

        response = client.post("/api/v1/recurrence/validate", json={"rule": {"frequency": "daily"}})
        assert response.json() == {"valid": True, "issues": []}


class TestDependencyEndpoint:
    """Integration tests for /api/v1/dependencies/resolve."""

    def test_resolve_order_and_missing(self):
        payload = {
            "date": "2024-03-04",
            "definitions": [
                definition_json("a"),
                definition_json("b", depends_on="a"),
                definition_json("c", depends_on="ghost"),
            ],
            "instances": [
                {"id": "b1", "template_id": "b", "date": "2024-03-04"},
                {"id": "a1", "template_id": "a", "date": "2024-03-04"},
                {"id": "c1", "template_id": "c", "date": "2024-03-04"},
            ],
        }
        data = client.post("/api/v1/dependencies/resolve", json=payload).json()
        assert data["order"].index("a1") < data["order"].index("b1")
        assert data["cycles"] == []
        assert data["flags"]["c1"][0]["kind"] == "missing_dependency"


class TestHealth:
    def test_health(self, fake_cache):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["cache"] == "ok"
