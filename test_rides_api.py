import pytest

from conftest import in_days
from models import Outbox


def publish(client, headers=None, **overrides):
    payload = {
        "originCity": "Dakar",
        "destinationCity": "Saint-Louis",
        "departureAt": "2031-05-04T08:30:00Z",
        "seatsTotal": 3,
        "pricePerSeat": 20,
    }
    payload.update(overrides)
    return client.post("/rides", json=payload, headers=headers or {})


# ============================================================================
# Publishing
# ============================================================================

def test_publish_ride_defaults(client):
    resp = publish(client, driverId="driver-9")

    assert resp.status_code == 201
    ride = resp.get_json()
    assert ride["id"]
    assert ride["driverId"] == "driver-9"
    assert ride["status"] == "PUBLISHED"
    assert ride["seatsTotal"] == 3
    assert ride["seatsAvailable"] == 3
    assert ride["departureAt"] == "2031-05-04T08:30:00.000Z"
    assert ride["liveTrackingMode"] == "FULL"
    assert ride["createdAt"]


def test_publish_ride_with_seat_override(client):
    resp = publish(client, driverId="driver-9", seatsTotal=4, seatsAvailable=1)

    assert resp.get_json()["seatsAvailable"] == 1


def test_publish_rejects_more_available_than_total(client):
    resp = publish(client, driverId="driver-9", seatsTotal=2, seatsAvailable=3)

    assert resp.status_code == 400
    assert resp.get_json() == {"error": "seats_available_too_high"}


@pytest.mark.parametrize("overrides, code", [
    ({"seatsTotal": 0}, "invalid_seats_total"),
    ({"seatsTotal": "four"}, "invalid_seats_total"),
    ({"pricePerSeat": -1}, "invalid_price_per_seat"),
    ({"originCity": None}, "invalid_origin_city"),
    ({"destinationCity": "   "}, "destination_required"),
    ({"departureAt": "tomorrow"}, "invalid_departure"),
    ({"liveTrackingMode": "SOMETIMES"}, "invalid_live_tracking_mode"),
])
def test_publish_validation(client, overrides, code):
    resp = publish(client, driverId="driver-9", **overrides)

    assert resp.status_code == 400
    assert resp.get_json()["error"] == code


def test_publish_requires_json_object(client):
    resp = client.post("/rides", data="not json", content_type="text/plain")

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_body"


def test_publish_without_driver_or_token_is_rejected(client, identity):
    resp = publish(client)

    assert resp.status_code == 400
    assert resp.get_json() == {"error": "driver_required"}
    assert identity.calls == []


def test_publish_resolves_driver_from_profile(client, identity):
    identity.profile = {"id": "user-42", "fullName": "Awa Ndiaye", "profilePhotoUrl": "https://cdn/awa.png"}

    resp = publish(client, headers={"Authorization": "Bearer abc"})

    assert resp.status_code == 201
    ride = resp.get_json()
    assert ride["driverId"] == "user-42"
    assert ride["driverLabel"] == "Awa Ndiaye"
    assert ride["driverPhotoUrl"] == "https://cdn/awa.png"
    assert identity.calls == ["Bearer abc"]


def test_explicit_driver_label_wins_over_profile(client, identity):
    identity.profile = {"id": "user-42", "fullName": "Awa Ndiaye"}

    resp = publish(client, headers={"Authorization": "Bearer abc"}, driverLabel="Navette Awa")

    assert resp.get_json()["driverLabel"] == "Navette Awa"


def test_unresolvable_profile_means_driver_required(client, identity):
    identity.profile = None

    resp = publish(client, headers={"Authorization": "Bearer abc"})

    assert resp.status_code == 400
    assert resp.get_json() == {"error": "driver_required"}


def test_non_bearer_authorization_is_ignored(client, identity):
    identity.profile = {"id": "user-42"}

    resp = publish(client, headers={"Authorization": "Basic dXNlcjpwYXNz"})

    assert resp.status_code == 400
    assert identity.calls == []


def test_publish_writes_outbox_event(app, client):
    ride = publish(client, driverId="driver-9").get_json()

    with app.extensions["db"].get_session() as session:
        events = session.query(Outbox).all()
        assert len(events) == 1
        assert events[0].topic == "ride.published"
        assert events[0].sent is False
        assert events[0].payload["rideId"] == ride["id"]
        assert events[0].payload["seatsAvailable"] == 3


def test_publish_records_metrics(client, registry):
    publish(client, driverId="driver-9", pricePerSeat=12)

    assert registry.get_sample_value(
        "ride_published_total", {"origin_city": "Dakar", "destination_city": "Saint-Louis"}
    ) == 1.0
    assert registry.get_sample_value("ride_price_per_seat_cfa_count") == 1.0
    assert registry.get_sample_value("ride_status_total", {"status": "PUBLISHED"}) == 1.0


def test_publish_failure_is_reported_and_rolled_back(app, client, monkeypatch):
    def broken_event(ride):
        raise RuntimeError("outbox unavailable")

    monkeypatch.setattr("rides._published_event", broken_event)

    resp = publish(client, driverId="driver-9")

    assert resp.status_code == 500
    assert resp.get_json()["error"] == "create_failed"
    assert app.extensions["db"].health_check()["rides"] == 0


# ============================================================================
# Lookup, health and metrics endpoints
# ============================================================================

def test_get_ride(client, make_ride):
    ride = make_ride(departureAt=in_days(1))

    resp = client.get(f"/rides/{ride['id']}")

    assert resp.status_code == 200
    assert resp.get_json() == ride


def test_get_unknown_ride(client):
    resp = client.get("/rides/unknown")

    assert resp.status_code == 404
    assert resp.get_json() == {"error": "not_found"}


def test_health(client, make_ride):
    make_ride()

    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "status": "healthy", "database": "connected", "rides": 1}


def test_metrics_endpoint_exposes_lock_metrics(client, make_ride):
    ride = make_ride()
    client.post(f"/rides/{ride['id']}/lock", json={"seats": 1})

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert resp.mimetype == "text/plain"
    body = resp.get_data(as_text=True)
    assert 'ride_lock_attempt_total{result="success"} 1.0' in body
    assert "ride_lock_duration_seconds_count 1.0" in body
    assert "ride_http_server_duration_seconds" in body
