import pytest
from fastapi.testclient import TestClient

from ride_dispatch.api import create_app
from ride_dispatch.context import build_context
from ride_dispatch.providers import EnvSettingsProvider
from ride_dispatch.settings import DatabaseSettings, Settings

RIDE = {
    "customer_name": "Dana Shapiro",
    "customer_phone": "050-123-4567",
    "pickup": "Herzl 1, Haifa",
    "destination": "Ben Gurion Airport",
    "region": "north",
    "distance_km": 10,
    "duration_min": 20,
}


@pytest.fixture
def context(clock, settings_provider):
    settings = Settings(database=DatabaseSettings(backend="memory"))
    context = build_context(settings, clock=clock, settings_provider=settings_provider)
    context.directory.register_driver("d1", "Avi Cohen", "052-1111111", region="north")
    context.directory.register_driver("d2", "Noa Levi", "053-2222222", region="north")
    return context


@pytest.fixture
def client(context):
    with TestClient(create_app(context)) as test_client:
        yield test_client


@pytest.fixture
def ride_id(client):
    response = client.post("/rides", json=RIDE)
    assert response.status_code == 201
    return response.json()["ride_id"]


@pytest.mark.unit
class TestRideEndpoints:
    def test_create_ride(self, client):
        response = client.post("/rides", params={"actor": "dispatcher:7"}, json=RIDE)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "created"
        assert body["price"] == 55.0
        assert body["ride_number"] == 1
        assert body["trip"]["customer_phone"] == "0501234567"
        assert body["action_history"][0]["performed_by"] == "dispatcher:7"

    def test_invalid_ride_is_422(self, client):
        response = client.post("/rides", json={**RIDE, "customer_phone": "123"})

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "ValidationError"
        assert body["details"]["errors"]

    def test_unknown_ride_is_404(self, client):
        response = client.get("/rides/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    def test_invalid_transition_is_409(self, client, ride_id):
        response = client.post(f"/rides/{ride_id}/actions/approve", json={"actor": "ops"})

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "InvalidTransition"
        assert body["details"]["status"] == "created"

    def test_unknown_action_rejected(self, client, ride_id):
        response = client.post(f"/rides/{ride_id}/actions/teleport", json={"actor": "ops"})

        assert response.status_code == 422

    def test_list_by_status(self, client, ride_id):
        created = client.get("/rides", params={"status": "created"}).json()
        sent = client.get("/rides").json()

        assert [r["ride_id"] for r in created] == [ride_id]
        assert sent == []

    def test_cancel(self, client, ride_id):
        response = client.post(
            f"/rides/{ride_id}/actions/cancel",
            json={"actor": "customer", "reason": "plans changed"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancel_reason"] == "plans changed"

    def test_update_trip(self, client, ride_id):
        response = client.patch(
            f"/rides/{ride_id}/trip", json={"actor": "ops", "destination": "Haifa Port"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["trip"]["destination"] == "Haifa Port"
        assert body["action_history"][-1]["changed_fields"] == ["destination"]

    def test_issue_lifecycle(self, client, ride_id):
        response = client.post(
            f"/rides/{ride_id}/issues",
            json={"type": "route_problem", "description": "Road closed", "reported_by": "d1"},
        )
        assert response.status_code == 201
        issue_id = response.json()["issues"][0]["issue_id"]

        response = client.post(
            f"/rides/{ride_id}/issues/{issue_id}/resolve",
            json={"resolution": "Rerouted", "resolved_by": "ops"},
        )
        assert response.status_code == 200
        assert response.json()["issues"][0]["resolved"] is True

        again = client.post(
            f"/rides/{ride_id}/issues/{issue_id}/resolve",
            json={"resolution": "Rerouted", "resolved_by": "ops"},
        )
        assert again.status_code == 409


@pytest.mark.unit
class TestDispatchEndpoints:
    def test_offer_confirm_and_drive(self, client, ride_id):
        offer = client.post(f"/rides/{ride_id}/offer", json={})
        assert offer.status_code == 200
        assert offer.json()["ride"]["status"] == "sent"
        assert offer.json()["deliveries"] == {"d1": "delivered", "d2": "delivered"}

        lock = client.post(f"/rides/{ride_id}/acquire", json={"driver_id": "d1"})
        assert lock.status_code == 200
        assert lock.json()["driver_id"] == "d1"

        taken = client.post(f"/rides/{ride_id}/confirm", json={"driver_id": "d2"})
        assert taken.status_code == 409
        assert taken.json()["error"] == "AlreadyLocked"

        confirmed = client.post(f"/rides/{ride_id}/confirm", json={"driver_id": "d1"})
        assert confirmed.status_code == 200
        assert confirmed.json()["status"] == "assigned"
        assert confirmed.json()["driver_name"] == "Avi Cohen"

        for action in ("approve", "enroute", "arrive", "finish"):
            response = client.post(f"/rides/{ride_id}/actions/{action}", json={"actor": "d1"})
            assert response.status_code == 200

        finished = client.get(f"/rides/{ride_id}").json()
        assert finished["status"] == "finished"
        assert finished["completed_at"] is not None

    def test_release(self, client, ride_id):
        client.post(f"/rides/{ride_id}/offer", json={})
        client.post(f"/rides/{ride_id}/acquire", json={"driver_id": "d1"})

        response = client.post(f"/rides/{ride_id}/release", json={"driver_id": "d1"})
        assert response.status_code == 200
        assert response.json()["released"] is True
        assert response.json()["ride"]["status"] == "sent"

        again = client.post(f"/rides/{ride_id}/release", json={"driver_id": "d1"})
        assert again.json() == {"released": False, "ride": None}

    def test_expired_lock_is_409(self, client, ride_id, clock):
        client.post(f"/rides/{ride_id}/offer", json={"ttl_seconds": 30})
        client.post(f"/rides/{ride_id}/acquire", json={"driver_id": "d1"})
        clock.advance(31)
        client.post(f"/rides/{ride_id}/confirm", json={"driver_id": "d2"})

        response = client.post(f"/rides/{ride_id}/confirm", json={"driver_id": "d1"})

        assert response.status_code == 409
        assert response.json()["error"] == "LockExpired"

    def test_redispatch(self, client, ride_id):
        client.post(f"/rides/{ride_id}/offer", json={})
        client.post(f"/rides/{ride_id}/confirm", json={"driver_id": "d1"})

        response = client.post(
            f"/rides/{ride_id}/redispatch", json={"actor": "ops", "reason": "flat tyre"}
        )

        assert response.status_code == 200
        assert response.json()["ride"]["status"] == "sent"
        assert response.json()["ride"]["driver_id"] is None

    def test_rate_finished_ride(self, client, ride_id):
        client.post(f"/rides/{ride_id}/offer", json={})
        client.post(f"/rides/{ride_id}/confirm", json={"driver_id": "d1"})
        early = client.post(f"/rides/{ride_id}/rating", json={"rating": 5, "rated_by": "customer"})
        for action in ("approve", "enroute", "arrive", "finish"):
            client.post(f"/rides/{ride_id}/actions/{action}", json={"actor": "d1"})

        response = client.post(
            f"/rides/{ride_id}/rating",
            json={"rating": 4, "rated_by": "customer", "comment": "Smooth ride"},
        )
        again = client.post(f"/rides/{ride_id}/rating", json={"rating": 1, "rated_by": "customer"})
        out_of_range = client.post(
            f"/rides/{ride_id}/rating", json={"rating": 6, "rated_by": "customer"}
        )

        assert early.status_code == 409
        assert response.status_code == 200
        assert response.json()["rating"] == 4
        assert response.json()["action_history"][-1]["comment"] == "Smooth ride"
        assert again.status_code == 409
        assert out_of_range.status_code == 422

    def test_busy_driver_is_409(self, client, ride_id):
        client.post(f"/rides/{ride_id}/offer", json={})
        client.post(f"/rides/{ride_id}/confirm", json={"driver_id": "d1"})
        other = client.post("/rides", json=RIDE).json()["ride_id"]
        offer = client.post(f"/rides/{other}/offer", json={})

        response = client.post(f"/rides/{other}/acquire", json={"driver_id": "d1"})

        assert offer.json()["deliveries"] == {"d1": "skipped", "d2": "delivered"}
        assert response.status_code == 409
        assert response.json()["error"] == "AlreadyLocked"

    def test_unknown_driver_is_404(self, client, ride_id):
        client.post(f"/rides/{ride_id}/offer", json={})

        response = client.post(f"/rides/{ride_id}/acquire", json={"driver_id": "ghost"})

        assert response.status_code == 404


@pytest.mark.unit
class TestDriverEndpoints:
    def test_register_and_list(self, client):
        response = client.post(
            "/drivers",
            json={
                "driver_id": "d9",
                "name": "Eli Ben David",
                "phone": "058-9999999",
                "region": "south",
            },
        )
        assert response.status_code == 201

        drivers = {d["driver_id"]: d for d in client.get("/drivers").json()}
        assert drivers["d9"]["region"] == "south"
        assert drivers["d9"]["active"] is True

    def test_inactive_driver_gets_no_offers(self, client, ride_id):
        response = client.put("/drivers/d2/availability", json={"active": False})
        assert response.status_code == 200
        assert response.json()["active"] is False

        offer = client.post(f"/rides/{ride_id}/offer", json={})
        assert list(offer.json()["deliveries"]) == ["d1"]

    def test_availability_of_unknown_driver(self, client):
        response = client.put("/drivers/ghost/availability", json={"active": False})

        assert response.status_code == 404


@pytest.mark.unit
class TestRecurrenceEndpoints:
    def test_run_due_materializes_templates(self, client):
        template = client.post(
            "/rides",
            json={
                **RIDE,
                "recurrence": {"frequency": "weekly", "day_of_week": 0, "time_of_day": "09:00"},
            },
        ).json()
        assert template["recurring"]["next_occurrence"].startswith("2026-03-09T09:00:00")

        assert client.get("/recurrence/due").json() == []

        response = client.post("/recurrence/run", json={"as_of": "2026-03-09T09:30:00Z"})

        assert response.status_code == 200
        created = response.json()["created"]
        assert len(created) == 1
        assert created[0]["occurrence_of"]["template_id"] == template["ride_id"]

    def test_materialize_not_due_is_422(self, client):
        template = client.post(
            "/rides",
            json={**RIDE, "recurrence": {"frequency": "daily", "time_of_day": "09:00"}},
        ).json()

        response = client.post(
            f"/recurrence/templates/{template['ride_id']}/materialize", json={}
        )

        assert response.status_code == 422

    def test_naive_as_of_rejected(self, client):
        response = client.post("/recurrence/run", json={"as_of": "2026-03-09T09:30:00"})

        assert response.status_code == 422


@pytest.mark.unit
def test_invalid_pricing_timezone_is_503(clock, monkeypatch):
    monkeypatch.setenv("PRICING_TIMEZONE", "Nowhere/Zone")
    settings = Settings(database=DatabaseSettings(backend="memory"))
    context = build_context(settings, clock=clock, settings_provider=EnvSettingsProvider())

    with TestClient(create_app(context)) as client:
        response = client.post("/rides", json=RIDE)

    assert response.status_code == 503
    assert response.json()["error"] == "ConfigurationError"


@pytest.mark.unit
def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "active_locks": 0, "drivers": 2}
