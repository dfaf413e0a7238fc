"""
Seat lock behaviour over HTTP: happy path, rejections and metrics.

Every sequential scenario runs against all three lock strategies; they only
differ under contention (see test_ride_concurrency.py).
"""

import pytest

STRATEGIES = ["conditional_update", "row_lock", "read_check_write"]


def lock(client, ride_id, **body):
    return client.post(f"/rides/{ride_id}/lock", json=body)


def seats_available(client, ride_id):
    return client.get(f"/rides/{ride_id}").get_json()["seatsAvailable"]


def lock_attempts(registry, result):
    return registry.get_sample_value("ride_lock_attempt_total", {"result": result}) or 0.0


def lock_observations(registry):
    return registry.get_sample_value("ride_lock_duration_seconds_count") or 0.0


# ============================================================================
# Basic seat locking
# ============================================================================

@pytest.mark.parametrize("lock_strategy", STRATEGIES)
def test_lock_decrements_availability(client, make_ride, lock_strategy):
    ride = make_ride(seatsTotal=4)

    resp = lock(client, ride["id"], seats=2)

    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "seatsAvailable": 2}
    assert seats_available(client, ride["id"]) == 2


@pytest.mark.parametrize("lock_strategy", STRATEGIES)
def test_lock_defaults_to_one_seat(client, make_ride, lock_strategy):
    ride = make_ride(seatsTotal=3)

    resp = client.post(f"/rides/{ride['id']}/lock")

    assert resp.status_code == 200
    assert resp.get_json()["seatsAvailable"] == 2


def test_lock_with_null_seats_uses_default(client, make_ride):
    ride = make_ride(seatsTotal=3)

    resp = lock(client, ride["id"], seats=None)

    assert resp.get_json() == {"ok": True, "seatsAvailable": 2}


def test_lock_accepts_numeric_string(client, make_ride):
    ride = make_ride(seatsTotal=5)

    resp = lock(client, ride["id"], seats="3")

    assert resp.status_code == 200
    assert resp.get_json()["seatsAvailable"] == 2


def test_lock_can_take_the_last_seats_exactly(client, make_ride):
    ride = make_ride(seatsTotal=4)

    assert lock(client, ride["id"], seats=4).get_json() == {"ok": True, "seatsAvailable": 0}
    assert lock(client, ride["id"], seats=1).status_code == 409


# ============================================================================
# Rejections
# ============================================================================

@pytest.mark.parametrize("lock_strategy", STRATEGIES)
def test_not_enough_seats_leaves_row_unchanged(client, make_ride, lock_strategy):
    ride = make_ride(seatsTotal=4, seatsAvailable=1)

    resp = lock(client, ride["id"], seats=3)

    assert resp.status_code == 409
    assert resp.get_json() == {"error": "not_enough_seats"}
    assert seats_available(client, ride["id"]) == 1


@pytest.mark.parametrize("lock_strategy", STRATEGIES)
@pytest.mark.parametrize("seats", [5, 10 ** 20, "1e20"])
def test_oversized_requests_conflict(client, make_ride, registry, lock_strategy, seats):
    ride = make_ride(seatsTotal=4)

    resp = lock(client, ride["id"], seats=seats)

    assert resp.status_code == 409
    assert resp.get_json() == {"error": "not_enough_seats"}
    assert lock_attempts(registry, "conflict") == 1.0
    assert lock_attempts(registry, "error") == 0.0
    assert seats_available(client, ride["id"]) == 4


@pytest.mark.parametrize("lock_strategy", STRATEGIES)
@pytest.mark.parametrize("seats", [0, -5, "abc", "", 1.5, True, [2], {"n": 1}])
def test_invalid_seat_counts_are_rejected(client, make_ride, lock_strategy, seats):
    ride = make_ride(seatsTotal=4)

    resp = lock(client, ride["id"], seats=seats)

    assert resp.status_code == 400
    assert resp.get_json() == {"error": "invalid_seats"}
    assert seats_available(client, ride["id"]) == 4


@pytest.mark.parametrize("lock_strategy", STRATEGIES)
def test_unknown_ride_is_not_found(client, lock_strategy):
    resp = lock(client, "0b1c7e52-0000-4000-8000-000000000000", seats=1)

    assert resp.status_code == 404
    assert resp.get_json() == {"error": "not_found"}


def test_unknown_ride_wins_over_invalid_seats(client):
    resp = lock(client, "missing-ride", seats=-1)

    assert resp.status_code == 404


def test_closed_ride_cannot_be_locked(client, make_ride, admin_headers):
    ride = make_ride(seatsTotal=4)
    client.post(f"/admin/rides/{ride['id']}/close", headers=admin_headers)

    resp = lock(client, ride["id"], seats=1)

    assert resp.status_code == 409


@pytest.mark.parametrize("lock_strategy", STRATEGIES)
def test_failed_attempts_never_change_availability(client, make_ride, lock_strategy):
    ride = make_ride(seatsTotal=4, seatsAvailable=2)

    for _ in range(5):
        assert lock(client, ride["id"], seats=3).status_code == 409
        assert lock(client, ride["id"], seats=0).status_code == 400
        assert lock(client, "missing-ride", seats=1).status_code == 404

    assert seats_available(client, ride["id"]) == 2


def test_storage_failure_reports_lock_failed(client, make_ride, ride_manager, monkeypatch):
    ride = make_ride()

    def broken(ride_id, seats_raw):
        raise RuntimeError("database unavailable")

    monkeypatch.setitem(ride_manager._lockers, ride_manager.lock_strategy, broken)

    resp = lock(client, ride["id"], seats=1)

    assert resp.status_code == 500
    assert resp.get_json() == {"error": "lock_failed"}


# ============================================================================
# Metrics
# ============================================================================

def test_each_outcome_is_counted_once(client, make_ride, ride_manager, registry, monkeypatch):
    ride = make_ride(seatsTotal=2)

    assert lock(client, "missing-ride").status_code == 404
    assert lock(client, ride["id"], seats="abc").status_code == 400
    assert lock(client, ride["id"], seats=5).status_code == 409
    assert lock(client, ride["id"], seats=1).status_code == 200

    def broken(ride_id, seats_raw):
        raise RuntimeError("boom")

    monkeypatch.setitem(ride_manager._lockers, ride_manager.lock_strategy, broken)
    assert lock(client, ride["id"], seats=1).status_code == 500

    for result in ("not_found", "invalid_request", "conflict", "success", "error"):
        assert lock_attempts(registry, result) == 1.0, result
    assert lock_observations(registry) == 5.0


def test_successful_lock_refreshes_seat_gauges(client, make_ride, registry):
    ride = make_ride(seatsTotal=6)
    assert registry.get_sample_value("ride_seats_available_total") == 6.0

    lock(client, ride["id"], seats=4)

    assert registry.get_sample_value("ride_seats_available_total") == 2.0
    assert registry.get_sample_value("ride_seats_capacity_total") == 6.0
