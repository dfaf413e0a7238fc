"""Company fleet vehicles, their planned schedules and company operations."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping
import logging
import math
import threading

from sqlalchemy import func, or_

from database_manager import DatabaseManager
from errors import InvalidRequestError, NotFoundError
from metrics import RideMetrics
from models import (
    ApprovalStatus,
    CompanyPolicy,
    FleetVehicle,
    ScheduleApproval,
    ScheduleRecurrence,
    ScheduleStatus,
    VehicleSchedule,
    VehicleStatus,
    as_utc,
)
from validation import (
    parse_pagination,
    trimmed_list,
    validate_approval,
    validate_auto_assign,
    validate_create_schedule,
    validate_create_vehicle,
    validate_policy_update,
    validate_update_schedule,
    validate_update_vehicle,
)

logger = logging.getLogger(__name__)

DEPARTURE_GRACE = timedelta(minutes=5)
UPCOMING_SAMPLES_PER_VEHICLE = 3


def _blank_to_none(value):
    if value is None:
        return None
    return value.strip() or None


class FleetManager:
    """Vehicle and schedule administration scoped to one company at a time."""

    def __init__(self, db: DatabaseManager, metrics: RideMetrics, refresh_delay: float = 5.0):
        self.db = db
        self.metrics = metrics
        self.refresh_delay = refresh_delay
        self._refresh_timer = None
        self._refresh_lock = threading.Lock()
        self._refresh_in_flight = False

    # ------------------------------------------------------------------
    # gauge refresh
    # ------------------------------------------------------------------

    def refresh_fleet_aggregates(self):
        """Recompute fleet gauges unless a refresh is already running."""
        with self._refresh_lock:
            if self._refresh_in_flight:
                return
            self._refresh_in_flight = True
        try:
            with self.db.get_session() as session:
                self.metrics.refresh_fleet_gauges(session)
        except Exception as e:
            logger.warning(f"Fleet gauge refresh failed: {e}")
        finally:
            with self._refresh_lock:
                self._refresh_in_flight = False

    def queue_refresh(self):
        """Debounce gauge refreshes so bursts of edits trigger a single recount."""
        with self._refresh_lock:
            if self._refresh_timer is not None:
                return
            timer = threading.Timer(self.refresh_delay, self._run_queued_refresh)
            timer.daemon = True
            self._refresh_timer = timer
        timer.start()

    def _run_queued_refresh(self):
        with self._refresh_lock:
            self._refresh_timer = None
        self.refresh_fleet_aggregates()

    def shutdown(self):
        with self._refresh_lock:
            timer, self._refresh_timer = self._refresh_timer, None
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    # vehicles
    # ------------------------------------------------------------------

    def list_vehicles(self, company_id: str, query: Mapping[str, Any]) -> Dict:
        limit, offset = parse_pagination(query, default_limit=20, max_limit=200)
        raw_status = query.get('status') or VehicleStatus.ACTIVE.value
        status_filter = None
        if raw_status != 'ALL':
            try:
                status_filter = VehicleStatus(raw_status)
            except ValueError:
                raise InvalidRequestError('invalid_status')

        now = datetime.now(timezone.utc)

        with self.db.get_session() as session:
            q = session.query(FleetVehicle).filter(FleetVehicle.company_id == company_id)
            if status_filter is not None:
                q = q.filter(FleetVehicle.status == status_filter)

            search = (query.get('search') or '').strip()
            if search:
                pattern = f"%{search}%"
                q = q.filter(or_(
                    FleetVehicle.label.ilike(pattern),
                    FleetVehicle.plate_number.ilike(pattern),
                    FleetVehicle.brand.ilike(pattern),
                    FleetVehicle.model.ilike(pattern),
                ))

            total = q.count()
            vehicles = q.order_by(FleetVehicle.created_at.desc(), FleetVehicle.id).offset(offset).limit(limit).all()

            upcoming_by_vehicle: Dict[str, Dict] = {}
            vehicle_ids = [vehicle.id for vehicle in vehicles]
            if vehicle_ids:
                upcoming = session.query(VehicleSchedule).filter(
                    VehicleSchedule.vehicle_id.in_(vehicle_ids),
                    VehicleSchedule.status == ScheduleStatus.PLANNED,
                    VehicleSchedule.departure_at > now,
                ).order_by(VehicleSchedule.departure_at.asc()).all()

                for schedule in upcoming:
                    entry = upcoming_by_vehicle.setdefault(
                        schedule.vehicle_id, {"count": 0, "next_departure": None, "samples": []}
                    )
                    entry["count"] += 1
                    if entry["next_departure"] is None:
                        entry["next_departure"] = schedule.to_dict()["departureAt"]
                    if len(entry["samples"]) < UPCOMING_SAMPLES_PER_VEHICLE:
                        entry["samples"].append(schedule.to_dict())

            active_count = session.query(func.count(FleetVehicle.id)).filter(
                FleetVehicle.company_id == company_id, FleetVehicle.status == VehicleStatus.ACTIVE
            ).scalar()
            inactive_count = session.query(func.count(FleetVehicle.id)).filter(
                FleetVehicle.company_id == company_id, FleetVehicle.status == VehicleStatus.INACTIVE
            ).scalar()
            fleet_seats = session.query(func.coalesce(func.sum(FleetVehicle.seats), 0)).filter(
                FleetVehicle.company_id == company_id
            ).scalar()
            upcoming_total = session.query(func.count(VehicleSchedule.id)).filter(
                VehicleSchedule.company_id == company_id,
                VehicleSchedule.status == ScheduleStatus.PLANNED,
                VehicleSchedule.departure_at > now,
            ).scalar()

            data = []
            for vehicle in vehicles:
                stats = upcoming_by_vehicle.get(vehicle.id, {})
                item = vehicle.to_dict()
                item["metrics"] = {
                    "upcomingTrips": stats.get("count", 0),
                    "nextDepartureAt": stats.get("next_departure"),
                }
                item["upcomingSchedules"] = stats.get("samples", [])
                data.append(item)

        return {
            "data": data,
            "total": total,
            "offset": offset,
            "limit": limit,
            "summary": {
                "active": active_count,
                "inactive": inactive_count,
                "fleetSeats": int(fleet_seats or 0),
                "upcomingTrips": upcoming_total,
            },
        }

    def create_vehicle(self, company_id: str, data: Mapping[str, Any]) -> Dict:
        payload = validate_create_vehicle(data)
        plate = payload['plate_number'].strip().upper()

        with self.db.get_session() as session:
            if session.query(FleetVehicle.id).filter(FleetVehicle.plate_number == plate).first():
                raise InvalidRequestError('plate_already_registered')

            vehicle = FleetVehicle(
                company_id=company_id,
                label=payload['label'].strip(),
                plate_number=plate,
                category=payload['category'].strip().upper(),
                seats=payload['seats'],
                brand=_blank_to_none(payload.get('brand')),
                model=_blank_to_none(payload.get('model')),
                year=payload.get('year'),
                amenities=trimmed_list(payload.get('amenities')),
                specs=payload.get('specs'),
                status=VehicleStatus.ACTIVE,
            )
            session.add(vehicle)
            session.flush()
            saved = vehicle.to_dict()

        logger.info(f"Vehicle registered: {saved['id']} ({plate}) for company {company_id}")
        self.queue_refresh()
        return saved

    def update_vehicle(self, company_id: str, vehicle_id: str, data: Mapping[str, Any]) -> Dict:
        changes = validate_update_vehicle(data)

        with self.db.get_session() as session:
            vehicle = self._get_vehicle(session, company_id, vehicle_id)

            if 'label' in changes:
                vehicle.label = changes['label'].strip()
            if 'category' in changes:
                vehicle.category = changes['category'].strip().upper()
            if 'brand' in changes:
                vehicle.brand = _blank_to_none(changes['brand'])
            if 'model' in changes:
                vehicle.model = _blank_to_none(changes['model'])
            if 'year' in changes:
                vehicle.year = changes['year']
            if 'seats' in changes:
                vehicle.seats = changes['seats']
            if 'amenities' in changes:
                vehicle.amenities = trimmed_list(changes['amenities'])
            if 'specs' in changes:
                vehicle.specs = changes['specs']
            if 'status' in changes:
                vehicle.status = changes['status']

            session.flush()
            saved = vehicle.to_dict()

        self.queue_refresh()
        return saved

    def archive_vehicle(self, company_id: str, vehicle_id: str) -> Dict:
        with self.db.get_session() as session:
            vehicle = self._get_vehicle(session, company_id, vehicle_id)
            vehicle.status = VehicleStatus.INACTIVE
            session.flush()
            saved = vehicle.to_dict()

        logger.info(f"Vehicle archived: {vehicle_id}")
        self.queue_refresh()
        return saved

    @staticmethod
    def _get_vehicle(session, company_id: str, vehicle_id: str) -> FleetVehicle:
        vehicle = session.query(FleetVehicle).filter(
            FleetVehicle.id == vehicle_id, FleetVehicle.company_id == company_id
        ).first()
        if vehicle is None:
            raise NotFoundError('vehicle_not_found')
        return vehicle

    # ------------------------------------------------------------------
    # schedules
    # ------------------------------------------------------------------

    def list_schedules(self, company_id: str, vehicle_id: str, query: Mapping[str, Any]) -> Dict:
        limit, offset = parse_pagination(query, default_limit=50, max_limit=200)
        raw_status = query.get('status')
        status_filter = None
        if raw_status and raw_status != 'ALL':
            try:
                status_filter = ScheduleStatus(raw_status)
            except ValueError:
                raise InvalidRequestError('invalid_status')

        now = datetime.now(timezone.utc)

        with self.db.get_session() as session:
            self._get_vehicle(session, company_id, vehicle_id)

            q = session.query(VehicleSchedule).filter(
                VehicleSchedule.company_id == company_id,
                VehicleSchedule.vehicle_id == vehicle_id,
            )
            if status_filter is not None:
                q = q.filter(VehicleSchedule.status == status_filter)

            window = query.get('window')
            if window == 'upcoming':
                q = q.filter(VehicleSchedule.departure_at >= now)
                order = VehicleSchedule.departure_at.asc()
            elif window == 'past':
                q = q.filter(VehicleSchedule.departure_at < now)
                order = VehicleSchedule.departure_at.desc()
            else:
                order = VehicleSchedule.departure_at.desc()

            total = q.count()
            items = q.order_by(order, VehicleSchedule.id).offset(offset).limit(limit).all()
            data = [schedule.to_dict() for schedule in items]

            rows = session.query(VehicleSchedule.status, func.count(VehicleSchedule.id)).filter(
                VehicleSchedule.company_id == company_id,
                VehicleSchedule.vehicle_id == vehicle_id,
            ).group_by(VehicleSchedule.status).all()
            counts = {status: count for status, count in rows}

        return {
            "data": data,
            "total": total,
            "offset": offset,
            "limit": limit,
            "summary": {
                "planned": counts.get(ScheduleStatus.PLANNED, 0),
                "completed": counts.get(ScheduleStatus.COMPLETED, 0),
                "cancelled": counts.get(ScheduleStatus.CANCELLED, 0),
            },
        }

    def create_schedule(self, company_id: str, vehicle_id: str, data: Mapping[str, Any]) -> Dict:
        payload = validate_create_schedule(data)

        with self.db.get_session() as session:
            vehicle = self._get_vehicle(session, company_id, vehicle_id)

            departure = payload['departure_at']
            if departure < datetime.now(timezone.utc) - DEPARTURE_GRACE:
                raise InvalidRequestError('departure_in_past')

            arrival = payload.get('arrival_estimate')
            if arrival is not None and arrival <= departure:
                raise InvalidRequestError('arrival_before_departure')

            planned_seats = payload.get('planned_seats', vehicle.seats)
            if planned_seats > vehicle.seats:
                raise InvalidRequestError('planned_seats_exceed_vehicle_capacity')

            schedule = VehicleSchedule(
                company_id=company_id,
                vehicle_id=vehicle.id,
                origin_city=payload['origin_city'].strip(),
                destination_city=payload['destination_city'].strip(),
                departure_at=departure,
                arrival_estimate=arrival,
                planned_seats=planned_seats,
                reserved_seats=0,
                price_per_seat=payload.get('price_per_seat', 0),
                recurrence=payload.get('recurrence', ScheduleRecurrence.NONE),
                status=ScheduleStatus.PLANNED,
                notes=_blank_to_none(payload.get('notes')),
                metadata_=payload.get('metadata'),
            )
            session.add(schedule)
            session.flush()
            saved = schedule.to_dict()

        logger.info(f"Schedule planned: {saved['id']} on vehicle {vehicle_id}")
        self.queue_refresh()
        return saved

    def update_schedule(self, company_id: str, vehicle_id: str, schedule_id: str,
                        data: Mapping[str, Any]) -> Dict:
        changes = validate_update_schedule(data)

        with self.db.get_session() as session:
            schedule = self._get_schedule(session, company_id, vehicle_id, schedule_id)

            if 'origin_city' in changes:
                schedule.origin_city = changes['origin_city'].strip()
            if 'destination_city' in changes:
                schedule.destination_city = changes['destination_city'].strip()

            next_departure = changes.get('departure_at', as_utc(schedule.departure_at))
            if 'departure_at' in changes and next_departure < datetime.now(timezone.utc) - DEPARTURE_GRACE:
                raise InvalidRequestError('departure_in_past')

            next_arrival = changes['arrival_estimate'] if 'arrival_estimate' in changes \
                else as_utc(schedule.arrival_estimate)
            if next_arrival is not None and next_arrival <= next_departure:
                raise InvalidRequestError('arrival_before_departure')

            next_planned = changes.get('planned_seats', schedule.planned_seats)
            if next_planned is None or next_planned <= 0:
                raise InvalidRequestError('invalid_planned_seats')
            if 'planned_seats' in changes:
                vehicle = self._get_vehicle(session, company_id, vehicle_id)
                if next_planned > vehicle.seats:
                    raise InvalidRequestError('planned_seats_exceed_vehicle_capacity')

            next_reserved = changes.get('reserved_seats', schedule.reserved_seats)
            if next_reserved is None or next_reserved < 0:
                raise InvalidRequestError('invalid_reserved_seats')
            if next_reserved > next_planned:
                raise InvalidRequestError('reserved_seats_exceed_planned')

            if 'price_per_seat' in changes:
                schedule.price_per_seat = changes['price_per_seat']
            if 'recurrence' in changes:
                schedule.recurrence = changes['recurrence']
            if 'notes' in changes:
                schedule.notes = _blank_to_none(changes['notes'])
            if 'metadata' in changes:
                schedule.metadata_ = changes['metadata']
            if 'status' in changes:
                schedule.status = changes['status']

            schedule.departure_at = next_departure
            schedule.arrival_estimate = next_arrival
            schedule.planned_seats = next_planned
            schedule.reserved_seats = next_reserved

            session.flush()
            saved = schedule.to_dict()

        self.queue_refresh()
        return saved

    def cancel_schedule(self, company_id: str, vehicle_id: str, schedule_id: str) -> Dict:
        with self.db.get_session() as session:
            schedule = self._get_schedule(session, company_id, vehicle_id, schedule_id)
            schedule.status = ScheduleStatus.CANCELLED
            session.flush()
            saved = schedule.to_dict()

        logger.info(f"Schedule cancelled: {schedule_id}")
        self.queue_refresh()
        return saved

    @staticmethod
    def _get_schedule(session, company_id: str, vehicle_id: str, schedule_id: str) -> VehicleSchedule:
        schedule = session.query(VehicleSchedule).filter(
            VehicleSchedule.id == schedule_id,
            VehicleSchedule.vehicle_id == vehicle_id,
            VehicleSchedule.company_id == company_id,
        ).first()
        if schedule is None:
            raise NotFoundError('schedule_not_found')
        return schedule

    # ------------------------------------------------------------------
    # company operations
    # ------------------------------------------------------------------

    def get_policy(self, company_id: str) -> Dict:
        with self.db.get_session() as session:
            policy = session.query(CompanyPolicy).filter(CompanyPolicy.company_id == company_id).first()
            if policy is None:
                return {"companyId": company_id, "requireApproval": False}
            return policy.to_dict()

    def update_policy(self, company_id: str, data: Mapping[str, Any]) -> Dict:
        """Create or patch the company's policy."""
        changes = validate_policy_update(data)

        with self.db.get_session() as session:
            policy = session.query(CompanyPolicy).filter(CompanyPolicy.company_id == company_id).first()
            if policy is None:
                policy = CompanyPolicy(company_id=company_id, require_approval=False)
                session.add(policy)

            if 'max_price_per_seat' in changes:
                policy.max_price_per_seat = changes['max_price_per_seat']
            if 'allowed_origins' in changes:
                policy.allowed_origins = trimmed_list(changes['allowed_origins'])
            if 'allowed_destinations' in changes:
                policy.allowed_destinations = trimmed_list(changes['allowed_destinations'])
            if 'blackout_windows' in changes:
                policy.blackout_windows = changes['blackout_windows']
            if 'require_approval' in changes:
                policy.require_approval = changes['require_approval']

            session.flush()
            saved = policy.to_dict()

        logger.info(f"Policy updated for company {company_id}")
        return saved

    def approve_schedule(self, company_id: str, schedule_id: str, data: Mapping[str, Any]) -> Dict:
        return self._decide_schedule(company_id, schedule_id, data, ApprovalStatus.APPROVED)

    def reject_schedule(self, company_id: str, schedule_id: str, data: Mapping[str, Any]) -> Dict:
        return self._decide_schedule(company_id, schedule_id, data, ApprovalStatus.REJECTED)

    def _decide_schedule(self, company_id: str, schedule_id: str, data: Mapping[str, Any],
                         decision: ApprovalStatus) -> Dict:
        """Record the decision; approved schedules are planned, rejected ones cancelled."""
        payload = validate_approval(data)
        actor_id = _blank_to_none(payload.get('actor_id'))

        with self.db.get_session() as session:
            schedule = session.query(VehicleSchedule).filter(
                VehicleSchedule.id == schedule_id, VehicleSchedule.company_id == company_id
            ).first()
            if schedule is None:
                raise NotFoundError('schedule_not_found')

            approval = session.query(ScheduleApproval).filter(
                ScheduleApproval.company_id == company_id, ScheduleApproval.schedule_id == schedule_id
            ).first()
            if approval is None:
                approval = ScheduleApproval(company_id=company_id, schedule_id=schedule_id, requested_by=actor_id)
                session.add(approval)

            approval.status = decision
            approval.decided_by = actor_id
            approval.note = _blank_to_none(payload.get('note'))
            approval.decided_at = datetime.now(timezone.utc)

            if decision == ApprovalStatus.APPROVED:
                schedule.status = ScheduleStatus.PLANNED
            else:
                schedule.status = ScheduleStatus.CANCELLED

            session.flush()
            result = {"ok": True, "schedule": schedule.to_dict(), "approval": approval.to_dict()}

        logger.info(f"Schedule {schedule_id} {decision.value.lower()} for company {company_id}")
        self.queue_refresh()
        return result

    def auto_assign_schedule(self, company_id: str, data: Mapping[str, Any]) -> Dict:
        """Plan a trip on the smallest active vehicle that seats everyone."""
        payload = validate_auto_assign(data)
        departure = payload['departure_at']
        if departure < datetime.now(timezone.utc) - DEPARTURE_GRACE:
            raise InvalidRequestError('departure_in_past')

        with self.db.get_session() as session:
            vehicle = session.query(FleetVehicle).filter(
                FleetVehicle.company_id == company_id,
                FleetVehicle.status == VehicleStatus.ACTIVE,
                FleetVehicle.seats >= payload['planned_seats'],
            ).order_by(FleetVehicle.seats.asc(), FleetVehicle.created_at.asc()).first()
            if vehicle is None:
                raise NotFoundError('no_vehicle_available')

            schedule = VehicleSchedule(
                company_id=company_id,
                vehicle_id=vehicle.id,
                origin_city=payload['origin_city'],
                destination_city=payload['destination_city'],
                departure_at=departure,
                planned_seats=payload['planned_seats'],
                reserved_seats=0,
                price_per_seat=payload.get('price_per_seat', 0),
                recurrence=payload.get('recurrence', ScheduleRecurrence.NONE),
                status=ScheduleStatus.PLANNED,
            )
            session.add(schedule)
            session.flush()
            result = {"schedule": schedule.to_dict(), "vehicle": vehicle.to_dict()}

        logger.info(f"Schedule {result['schedule']['id']} auto-assigned to vehicle {result['vehicle']['id']}")
        self.queue_refresh()
        return result

    def dashboard(self, company_id: str) -> Dict:
        """Schedule counts and seat fill rate across the whole company."""
        with self.db.get_session() as session:
            rows = session.query(
                VehicleSchedule.status,
                func.count(VehicleSchedule.id),
                func.coalesce(func.sum(VehicleSchedule.planned_seats), 0),
                func.coalesce(func.sum(VehicleSchedule.reserved_seats), 0),
            ).filter(VehicleSchedule.company_id == company_id).group_by(VehicleSchedule.status).all()

        counts = {status: count for status, count, _, _ in rows}
        seats_planned = int(sum(planned for _, _, planned, _ in rows))
        seats_reserved = int(sum(reserved for _, _, _, reserved in rows))
        fill_rate = int(math.floor(seats_reserved * 100 / seats_planned + 0.5)) if seats_planned > 0 else 0

        return {
            "total": sum(counts.values()),
            "planned": counts.get(ScheduleStatus.PLANNED, 0),
            "completed": counts.get(ScheduleStatus.COMPLETED, 0),
            "cancelled": counts.get(ScheduleStatus.CANCELLED, 0),
            "seatsPlanned": seats_planned,
            "seatsReserved": seats_reserved,
            "fillRate": fill_rate,
        }
