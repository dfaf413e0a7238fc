"""Prometheus instrumentation for the ride service."""

from datetime import datetime, timezone
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)
from sqlalchemy import func

from models import (
    FleetVehicle,
    Ride,
    RideStatus,
    ScheduleStatus,
    VehicleSchedule,
    VehicleStatus,
)

LOCK_RESULTS = ("not_found", "invalid_request", "conflict", "success", "error")


class RideMetrics:
    """
    Metrics sink handed to the request handlers.

    Every instance owns its registry so several apps (tests, workers) can
    live in one process without colliding on metric names.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        ProcessCollector(registry=self.registry)
        PlatformCollector(registry=self.registry)
        GCCollector(registry=self.registry)

        # ========== Ride Publishing ==========
        self.ride_published = Counter(
            'ride_published_total',
            'Number of published rides',
            ['origin_city', 'destination_city'],
            registry=self.registry,
        )

        self.ride_price = Histogram(
            'ride_price_per_seat_cfa',
            'Distribution of the price per seat',
            buckets=[5, 10, 15, 20, 30, 40, 60],
            registry=self.registry,
        )

        # ========== Seat Locking ==========
        self.ride_lock_attempts = Counter(
            'ride_lock_attempt_total',
            'Seat lock attempts by outcome',
            ['result'],
            registry=self.registry,
        )

        self.ride_lock_duration = Histogram(
            'ride_lock_duration_seconds',
            'Duration of seat lock operations',
            buckets=[0.01, 0.05, 0.1, 0.3, 0.5, 1, 2],
            registry=self.registry,
        )

        # ========== Ride Aggregates ==========
        self.ride_seats_available = Gauge(
            'ride_seats_available_total',
            'Seats still available across all rides',
            registry=self.registry,
        )

        self.ride_seats_capacity = Gauge(
            'ride_seats_capacity_total',
            'Published seat capacity across all rides',
            registry=self.registry,
        )

        self.ride_status = Gauge(
            'ride_status_total',
            'Number of rides by status',
            ['status'],
            registry=self.registry,
        )

        # ========== Fleet Aggregates ==========
        self.fleet_vehicles = Gauge(
            'ride_fleet_vehicle_total',
            'Number of fleet vehicles by status',
            ['status'],
            registry=self.registry,
        )

        self.fleet_seats = Gauge(
            'ride_fleet_vehicle_seats_total',
            'Seat capacity of active fleet vehicles',
            registry=self.registry,
        )

        self.fleet_upcoming = Gauge(
            'ride_fleet_upcoming_trips_total',
            'Planned upcoming trips across all vehicles',
            registry=self.registry,
        )

        # ========== HTTP ==========
        self.http_duration = Histogram(
            'ride_http_server_duration_seconds',
            'Duration of HTTP requests served by the ride service',
            ['method', 'path', 'status'],
            buckets=[0.01, 0.05, 0.1, 0.3, 0.5, 1, 2, 5],
            registry=self.registry,
        )

    # ========== Helper Methods ==========

    def lock_timer(self):
        """Context manager observing one lock duration on exit, however it exits."""
        return self.ride_lock_duration.time()

    def record_lock_attempt(self, result: str):
        if result not in LOCK_RESULTS:
            raise ValueError(f"unknown lock result {result!r}")
        self.ride_lock_attempts.labels(result=result).inc()

    def record_ride_published(self, *, origin_city: str, destination_city: str, price_per_seat: int):
        self.ride_published.labels(origin_city=origin_city, destination_city=destination_city).inc()
        self.ride_price.observe(price_per_seat)

    def observe_http_request(self, *, method: str, path: str, status: int, duration: float):
        self.http_duration.labels(method=method, path=path, status=str(status)).observe(duration)

    def refresh_ride_gauges(self, session):
        """Recompute ride aggregates from the database."""
        rows = session.query(Ride.status, func.count(Ride.id)).group_by(Ride.status).all()
        counts = {status: count for status, count in rows}
        for status in RideStatus:
            self.ride_status.labels(status=status.value).set(counts.get(status, 0))

        total_seats, available_seats = session.query(
            func.coalesce(func.sum(Ride.seats_total), 0),
            func.coalesce(func.sum(Ride.seats_available), 0),
        ).one()
        self.ride_seats_capacity.set(total_seats)
        self.ride_seats_available.set(available_seats)

    def refresh_fleet_gauges(self, session):
        """Recompute fleet aggregates from the database."""
        rows = session.query(FleetVehicle.status, func.count(FleetVehicle.id)).group_by(
            FleetVehicle.status
        ).all()
        counts = {status: count for status, count in rows}
        for status in VehicleStatus:
            self.fleet_vehicles.labels(status=status.value).set(counts.get(status, 0))

        active_seats = session.query(func.coalesce(func.sum(FleetVehicle.seats), 0)).filter(
            FleetVehicle.status == VehicleStatus.ACTIVE
        ).scalar()
        self.fleet_seats.set(active_seats)

        upcoming = session.query(func.count(VehicleSchedule.id)).filter(
            VehicleSchedule.status == ScheduleStatus.PLANNED,
            VehicleSchedule.departure_at >= datetime.now(timezone.utc),
        ).scalar()
        self.fleet_upcoming.set(upcoming)

    def render(self) -> bytes:
        return generate_latest(self.registry)
