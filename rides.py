"""Ride publishing, seat locking and the admin ride operations."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional
import logging
import math

from sqlalchemy import or_, update

from database_manager import DatabaseManager
from errors import (
    ConflictError,
    InternalError,
    InvalidRequestError,
    NotFoundError,
    RideServiceError,
)
from identity_client import IdentityClient, driver_fields_from_profile
from metrics import RideMetrics
from models import Outbox, Ride, RideStatus
from validation import (
    parse_iso_datetime,
    parse_pagination,
    parse_seat_count,
    to_iso_string,
    validate_admin_ride_update,
    validate_create_ride,
)

logger = logging.getLogger(__name__)

RIDE_PUBLISHED_TOPIC = 'ride.published'
MAX_BATCH_IDS = 200

_SORT_ORDERS = {
    'departure_asc': Ride.departure_at.asc(),
    'departure_desc': Ride.departure_at.desc(),
    'price_asc': Ride.price_per_seat.asc(),
    'price_desc': Ride.price_per_seat.desc(),
}


class RideManager:
    """Owns every read and write against the ``rides`` table."""

    def __init__(
        self,
        db: DatabaseManager,
        metrics: RideMetrics,
        identity: Optional[IdentityClient] = None,
        lock_strategy: str = 'conditional_update',
    ):
        self.db = db
        self.metrics = metrics
        self.identity = identity
        self._lockers = {
            'conditional_update': self._lock_conditional_update,
            'row_lock': self._lock_row_lock,
            'read_check_write': self._lock_read_check_write,
        }
        if lock_strategy not in self._lockers:
            raise ValueError(f"unknown lock strategy {lock_strategy!r}")
        self.lock_strategy = lock_strategy

    # ------------------------------------------------------------------
    # publishing
    # ------------------------------------------------------------------

    def create_ride(self, data: Mapping[str, Any], authorization: Optional[str] = None) -> Dict:
        """Publish a ride, resolving the driver from the caller's profile when absent."""
        payload = validate_create_ride(data)

        if not payload.get('driver_id'):
            resolved = self._resolve_driver(authorization)
            if resolved:
                payload['driver_id'] = resolved['driver_id']
                payload.setdefault('driver_label', resolved['driver_label'])
                payload.setdefault('driver_photo_url', resolved['driver_photo_url'])
        if not payload.get('driver_id'):
            raise InvalidRequestError('driver_required')

        payload.setdefault('seats_available', payload['seats_total'])

        try:
            with self.db.get_session() as session:
                ride = Ride(status=RideStatus.PUBLISHED, **payload)
                session.add(ride)
                session.flush()
                saved = ride.to_dict()
                session.add(Outbox(topic=RIDE_PUBLISHED_TOPIC, payload=_published_event(saved), sent=False))
        except RideServiceError:
            raise
        except Exception as e:
            logger.error(f"Ride creation failed: {e}")
            raise InternalError('create_failed', str(e)) from e

        self.metrics.record_ride_published(
            origin_city=saved['originCity'],
            destination_city=saved['destinationCity'],
            price_per_seat=saved['pricePerSeat'],
        )
        self.refresh_aggregates()
        logger.info(f"Ride published: {saved['id']} ({saved['originCity']} -> {saved['destinationCity']})")
        return saved

    def _resolve_driver(self, authorization: Optional[str]) -> Optional[Dict]:
        if self.identity is None or not isinstance(authorization, str):
            return None
        if not authorization.lower().startswith('bearer '):
            return None
        profile = self.identity.fetch_profile(authorization)
        if not profile or not profile.get('id'):
            return None
        return driver_fields_from_profile(profile)

    def get_ride(self, ride_id: str, missing_code: str = 'not_found') -> Dict:
        with self.db.get_session() as session:
            ride = session.get(Ride, ride_id)
            if ride is None:
                raise NotFoundError(missing_code)
            return ride.to_dict()

    # ------------------------------------------------------------------
    # seat locking
    # ------------------------------------------------------------------

    def lock_seats(self, ride_id: str, seats_raw: Any = None) -> int:
        """
        Reserve seats on a ride and return the remaining availability.

        Preconditions are checked in order: the ride exists, the seat count
        is a positive integer, enough seats remain. Exactly one attempt
        result is counted and one duration observed per call.
        """
        with self.metrics.lock_timer():
            try:
                remaining = self._lockers[self.lock_strategy](ride_id, seats_raw)
            except NotFoundError:
                self.metrics.record_lock_attempt('not_found')
                raise
            except InvalidRequestError:
                self.metrics.record_lock_attempt('invalid_request')
                raise
            except ConflictError:
                self.metrics.record_lock_attempt('conflict')
                raise
            except Exception as e:
                self.metrics.record_lock_attempt('error')
                logger.error(f"Ride lock failed: {e}")
                raise InternalError('lock_failed') from e

            self.metrics.record_lock_attempt('success')
            logger.info(f"Seats locked on ride {ride_id}: {remaining} remaining")
            self.refresh_aggregates()
            return remaining

    def _lock_conditional_update(self, ride_id: str, seats_raw: Any) -> int:
        """Check and decrement in one statement; the database serialises writers."""
        with self.db.get_session() as session:
            current = session.query(Ride.seats_available).filter(Ride.id == ride_id).first()
            if current is None:
                raise NotFoundError('not_found')
            seats = parse_seat_count(seats_raw)
            # Also keeps oversized counts from reaching the driver
            if seats > current.seats_available:
                raise ConflictError('not_enough_seats')

            result = session.execute(
                update(Ride)
                .where(Ride.id == ride_id, Ride.seats_available >= seats)
                .values(seats_available=Ride.seats_available - seats)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConflictError('not_enough_seats')

            # The row stays locked by our update until commit, so this is exact
            return session.query(Ride.seats_available).filter(Ride.id == ride_id).scalar()

    def _lock_row_lock(self, ride_id: str, seats_raw: Any) -> int:
        """SELECT FOR UPDATE then decrement inside a single transaction."""
        with self.db.get_session() as session:
            ride = session.query(Ride).filter(Ride.id == ride_id).with_for_update().first()
            if ride is None:
                raise NotFoundError('not_found')
            seats = parse_seat_count(seats_raw)
            if ride.seats_available < seats:
                raise ConflictError('not_enough_seats')

            ride.seats_available -= seats
            return ride.seats_available

    def _lock_read_check_write(self, ride_id: str, seats_raw: Any) -> int:
        """
        Load, check and write back in separate round-trips with no guard.

        Another request may load the same row between our load and our
        write; both then pass the check and both write, over-granting seats.
        """
        ride = self._load_ride(ride_id)
        if ride is None:
            raise NotFoundError('not_found')
        seats = parse_seat_count(seats_raw)
        if ride.seats_available < seats:
            raise ConflictError('not_enough_seats')

        remaining = ride.seats_available - seats
        self._store_seats_available(ride_id, remaining)
        return remaining

    def _load_ride(self, ride_id: str) -> Optional[Ride]:
        with self.db.get_session() as session:
            ride = session.get(Ride, ride_id)
            if ride is not None:
                session.expunge(ride)
            return ride

    def _store_seats_available(self, ride_id: str, seats_available: int):
        with self.db.get_session() as session:
            session.execute(
                update(Ride)
                .where(Ride.id == ride_id)
                .values(seats_available=seats_available)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # admin
    # ------------------------------------------------------------------

    def list_rides(self, query: Mapping[str, Any]) -> Dict:
        """Filtered, sorted and paginated ride listing with a page summary."""
        limit, offset = parse_pagination(query, default_limit=20, max_limit=500)

        with self.db.get_session() as session:
            q = session.query(Ride)

            if query.get('driverId'):
                q = q.filter(Ride.driver_id == query['driverId'])
            if query.get('status'):
                try:
                    status = RideStatus(query['status'])
                except ValueError:
                    raise InvalidRequestError('invalid_status')
                q = q.filter(Ride.status == status)
            if query.get('search'):
                pattern = f"%{query['search'].strip()}%"
                q = q.filter(or_(Ride.origin_city.ilike(pattern), Ride.destination_city.ilike(pattern)))
            if query.get('origin'):
                q = q.filter(Ride.origin_city.ilike(f"%{query['origin'].strip()}%"))
            if query.get('destination'):
                q = q.filter(Ride.destination_city.ilike(f"%{query['destination'].strip()}%"))
            if query.get('departureAfter'):
                q = q.filter(Ride.departure_at >= query['departureAfter'])
            if query.get('departureBefore'):
                q = q.filter(Ride.departure_at <= query['departureBefore'])

            total = q.count()

            order = _SORT_ORDERS.get((query.get('sort') or '').lower(), Ride.created_at.desc())
            items = q.order_by(order, Ride.id).offset(offset).limit(limit).all()
            data = [ride.to_dict() for ride in items]

        return {
            "data": data,
            "total": total,
            "offset": offset,
            "limit": limit,
            "summary": compute_summary(data),
        }

    def batch(self, ids_raw: Optional[str]) -> Dict:
        ids = []
        if isinstance(ids_raw, str):
            ids = [item.strip() for item in ids_raw.split(',') if item.strip()][:MAX_BATCH_IDS]
        if not ids:
            return {"data": []}

        with self.db.get_session() as session:
            rides = session.query(Ride).filter(Ride.id.in_(ids)).all()
            return {"data": [ride.to_dict() for ride in rides]}

    def update_ride(self, ride_id: str, data: Mapping[str, Any]) -> Dict:
        """Apply an admin edit, keeping already-reserved seats consistent."""
        changes = validate_admin_ride_update(data)

        with self.db.get_session() as session:
            ride = session.get(Ride, ride_id)
            if ride is None:
                raise NotFoundError('ride_not_found')

            reserved = ride.seats_total - ride.seats_available
            next_total = changes.get('seats_total', ride.seats_total)
            if next_total < reserved:
                raise InvalidRequestError('seats_total_too_low')

            next_available = changes.get('seats_available', ride.seats_available)
            if 'seats_total' in changes and 'seats_available' not in changes:
                next_available = max(0, next_total - reserved)
            if next_available > next_total:
                raise InvalidRequestError('seats_available_too_high')

            if 'origin_city' in changes:
                origin = changes['origin_city'].strip()
                if not origin:
                    raise InvalidRequestError('origin_required')
                ride.origin_city = origin

            if 'destination_city' in changes:
                destination = changes['destination_city'].strip()
                if not destination:
                    raise InvalidRequestError('destination_required')
                ride.destination_city = destination

            if 'departure_at' in changes:
                ride.departure_at = to_iso_string(changes['departure_at'])
            if 'price_per_seat' in changes:
                ride.price_per_seat = changes['price_per_seat']

            ride.seats_total = next_total
            ride.seats_available = next_available

            if 'status' in changes:
                ride.status = changes['status']
                if changes['status'] == RideStatus.CLOSED:
                    ride.seats_available = 0

            session.flush()
            saved = ride.to_dict()

        logger.info(f"Ride updated by admin: {ride_id}")
        self.refresh_aggregates()
        return saved

    def close_ride(self, ride_id: str) -> Dict:
        with self.db.get_session() as session:
            ride = session.get(Ride, ride_id)
            if ride is None:
                raise NotFoundError('ride_not_found')

            ride.status = RideStatus.CLOSED
            ride.seats_available = 0
            session.flush()
            saved = ride.to_dict()

        logger.info(f"Ride closed: {ride_id}")
        self.refresh_aggregates()
        return saved

    def refresh_aggregates(self):
        """Recompute the ride gauges; a failure here never fails the request."""
        try:
            with self.db.get_session() as session:
                self.metrics.refresh_ride_gauges(session)
        except Exception as e:
            logger.warning(f"refreshAggregates failed: {e}")


def _published_event(ride: Dict) -> Dict:
    return {
        "rideId": ride["id"],
        "status": ride["status"],
        "driverId": ride["driverId"],
        "driverLabel": ride["driverLabel"],
        "driverPhotoUrl": ride["driverPhotoUrl"],
        "originCity": ride["originCity"],
        "destinationCity": ride["destinationCity"],
        "departureAt": ride["departureAt"],
        "pricePerSeat": ride["pricePerSeat"],
        "seatsTotal": ride["seatsTotal"],
        "seatsAvailable": ride["seatsAvailable"],
    }


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_summary(rides: List[Dict]) -> Dict:
    """Aggregate a page of serialised rides for the admin dashboard."""
    now = datetime.now(timezone.utc)
    upcoming = 0
    for ride in rides:
        try:
            if parse_iso_datetime(ride["departureAt"], "invalid_departure") > now:
                upcoming += 1
        except InvalidRequestError:
            continue

    published = sum(1 for ride in rides if ride["status"] == RideStatus.PUBLISHED.value)
    seats_booked = sum(ride["seatsTotal"] - ride["seatsAvailable"] for ride in rides)
    seats_total = sum(ride["seatsTotal"] for ride in rides)
    average_price = (
        _round_half_up(sum(ride["pricePerSeat"] for ride in rides) / len(rides)) if rides else 0
    )

    by_status: Dict[str, int] = {}
    routes: Dict[str, Dict] = {}
    for ride in rides:
        by_status[ride["status"]] = by_status.get(ride["status"], 0) + 1
        key = f"{ride['originCity']}→{ride['destinationCity']}"
        route = routes.setdefault(
            key, {"origin": ride["originCity"], "destination": ride["destinationCity"], "count": 0}
        )
        route["count"] += 1

    return {
        "upcoming": upcoming,
        "published": published,
        "seatsBooked": seats_booked,
        "seatsTotal": seats_total,
        "averagePrice": average_price,
        "occupancyRate": seats_booked / seats_total if seats_total > 0 else 0,
        "byStatus": by_status,
        "topRoutes": sorted(routes.values(), key=lambda route: -route["count"])[:5],
    }
