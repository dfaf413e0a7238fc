import pytest
from datetime import datetime, timedelta, timezone
from prometheus_client import CollectorRegistry

from app import create_app
from config import Settings
from metrics import RideMetrics

INTERNAL_KEY = "test-internal-key"


class StubIdentity:
    """Stands in for the identity service; records every lookup."""

    def __init__(self, profile=None):
        self.profile = profile
        self.calls = []

    def fetch_profile(self, authorization):
        self.calls.append(authorization)
        return self.profile


def in_days(days, hours=0):
    return (datetime.now(timezone.utc) + timedelta(days=days, hours=hours)).isoformat()


@pytest.fixture
def identity():
    return StubIdentity()


@pytest.fixture
def lock_strategy():
    return "conditional_update"


@pytest.fixture
def internal_key():
    return INTERNAL_KEY


@pytest.fixture
def app(tmp_path, identity, lock_strategy, internal_key):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'rides.db'}",
        internal_api_key=internal_key,
        lock_strategy=lock_strategy,
        fleet_metrics_refresh_seconds=60,
    )
    app = create_app(settings, metrics=RideMetrics(CollectorRegistry()), identity=identity)
    app.config["TESTING"] = True
    yield app
    app.extensions["fleet_manager"].shutdown()
    app.extensions["db"].dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers(internal_key):
    return {"X-Internal-Key": internal_key}


@pytest.fixture
def registry(app):
    return app.extensions["ride_metrics"].registry


@pytest.fixture
def ride_manager(app):
    return app.extensions["ride_manager"]


@pytest.fixture
def fleet_manager(app):
    return app.extensions["fleet_manager"]


@pytest.fixture
def make_ride(client):
    """Publish a ride through the API and return its JSON representation."""

    def _make_ride(**overrides):
        payload = {
            "driverId": "driver-1",
            "originCity": "Dakar",
            "destinationCity": "Thies",
            "departureAt": in_days(2),
            "seatsTotal": 4,
            "pricePerSeat": 15,
        }
        payload.update(overrides)
        resp = client.post("/rides", json=payload)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()

    return _make_ride
