"""ORM model definitions describing the ride and fleet schema."""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import enum
import uuid

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive timestamps; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    if value is None:
        return None
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RideStatus(str, enum.Enum):
    """Publication state of a ride offer."""
    PUBLISHED = 'PUBLISHED'
    CLOSED = 'CLOSED'


class LiveTrackingMode(str, enum.Enum):
    FULL = 'FULL'
    CITY_ALERTS = 'CITY_ALERTS'


class VehicleStatus(str, enum.Enum):
    ACTIVE = 'ACTIVE'
    INACTIVE = 'INACTIVE'


class ScheduleStatus(str, enum.Enum):
    PLANNED = 'PLANNED'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class ApprovalStatus(str, enum.Enum):
    PENDING = 'PENDING'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


class ScheduleRecurrence(str, enum.Enum):
    NONE = 'NONE'
    DAILY = 'DAILY'
    WEEKLY = 'WEEKLY'


def _enum_column(enum_cls, name: str, **kwargs) -> Column:
    return Column(
        Enum(enum_cls, name=name, native_enum=False, length=16, validate_strings=True),
        nullable=False,
        **kwargs,
    )


class Ride(Base):
    __tablename__ = 'rides'

    id = Column(String(36), primary_key=True, default=_new_id)
    driver_id = Column(String, nullable=False)
    driver_label = Column(String(255))
    driver_photo_url = Column(String(1024))
    driver_email_verified = Column(Boolean, default=False, nullable=False)
    driver_phone_verified = Column(Boolean, default=False, nullable=False)
    driver_verified = Column(Boolean, default=False, nullable=False)
    comfort_level = Column(String(32))
    estimated_duration_minutes = Column(Integer)
    stops = Column(JSON)

    origin_city = Column(String, nullable=False)
    destination_city = Column(String, nullable=False)
    # ISO-8601 text, compared lexicographically by the admin filters
    departure_at = Column(String, nullable=False)

    seats_total = Column(Integer, nullable=False)
    seats_available = Column(Integer, nullable=False)
    price_per_seat = Column(Integer, nullable=False)
    status = _enum_column(RideStatus, 'ride_status_enum', default=RideStatus.PUBLISHED)

    live_tracking_enabled = Column(Boolean, default=False, nullable=False)
    live_tracking_mode = _enum_column(
        LiveTrackingMode, 'live_tracking_mode_enum', default=LiveTrackingMode.FULL
    )
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(Text)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('seats_available >= 0', name='ck_rides_seats_available_non_negative'),
        Index('idx_rides_driver_status_departure', 'driver_id', 'status', 'departure_at'),
        Index('idx_rides_status', 'status'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "driverId": self.driver_id,
            "driverLabel": self.driver_label,
            "driverPhotoUrl": self.driver_photo_url,
            "driverEmailVerified": bool(self.driver_email_verified),
            "driverPhoneVerified": bool(self.driver_phone_verified),
            "driverVerified": bool(self.driver_verified),
            "comfortLevel": self.comfort_level,
            "estimatedDurationMinutes": self.estimated_duration_minutes,
            "stops": self.stops,
            "originCity": self.origin_city,
            "destinationCity": self.destination_city,
            "departureAt": self.departure_at,
            "seatsTotal": self.seats_total,
            "seatsAvailable": self.seats_available,
            "pricePerSeat": self.price_per_seat,
            "status": self.status.value,
            "liveTrackingEnabled": bool(self.live_tracking_enabled),
            "liveTrackingMode": self.live_tracking_mode.value,
            "cancelledAt": isoformat(self.cancelled_at),
            "cancellationReason": self.cancellation_reason,
            "createdAt": isoformat(self.created_at),
        }


class FleetVehicle(Base):
    __tablename__ = 'fleet_vehicles'

    id = Column(String(36), primary_key=True, default=_new_id)
    company_id = Column(String, nullable=False, index=True)
    label = Column(String(160), nullable=False)
    plate_number = Column(String(32), nullable=False, unique=True)
    category = Column(String(32), nullable=False, default='MINIBUS')
    brand = Column(String(120))
    model = Column(String(120))
    seats = Column(Integer, nullable=False)
    year = Column(Integer)
    status = _enum_column(VehicleStatus, 'vehicle_status_enum', default=VehicleStatus.ACTIVE)
    amenities = Column(JSON)
    specs = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    schedules = relationship('VehicleSchedule', back_populates='vehicle', cascade='all, delete-orphan')

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "companyId": self.company_id,
            "label": self.label,
            "plateNumber": self.plate_number,
            "category": self.category,
            "brand": self.brand,
            "model": self.model,
            "seats": self.seats,
            "year": self.year,
            "status": self.status.value,
            "amenities": self.amenities,
            "specs": self.specs,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class VehicleSchedule(Base):
    __tablename__ = 'vehicle_schedules'

    id = Column(String(36), primary_key=True, default=_new_id)
    company_id = Column(String, nullable=False, index=True)
    vehicle_id = Column(
        String(36), ForeignKey('fleet_vehicles.id', ondelete='CASCADE'), nullable=False, index=True
    )
    origin_city = Column(String(160), nullable=False)
    destination_city = Column(String(160), nullable=False)
    departure_at = Column(DateTime(timezone=True), nullable=False)
    arrival_estimate = Column(DateTime(timezone=True))
    planned_seats = Column(Integer, nullable=False)
    reserved_seats = Column(Integer, nullable=False, default=0)
    price_per_seat = Column(Integer, nullable=False, default=0)
    recurrence = _enum_column(ScheduleRecurrence, 'schedule_recurrence_enum', default=ScheduleRecurrence.NONE)
    status = _enum_column(ScheduleStatus, 'schedule_status_enum', default=ScheduleStatus.PLANNED)
    notes = Column(Text)
    metadata_ = Column('metadata', JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    vehicle = relationship('FleetVehicle', back_populates='schedules')

    __table_args__ = (
        Index('idx_vehicle_schedules_vehicle_status_departure', 'vehicle_id', 'status', 'departure_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "companyId": self.company_id,
            "vehicleId": self.vehicle_id,
            "originCity": self.origin_city,
            "destinationCity": self.destination_city,
            "departureAt": isoformat(self.departure_at),
            "arrivalEstimate": isoformat(self.arrival_estimate),
            "plannedSeats": self.planned_seats,
            "reservedSeats": self.reserved_seats,
            "pricePerSeat": self.price_per_seat,
            "recurrence": self.recurrence.value,
            "status": self.status.value,
            "notes": self.notes,
            "metadata": self.metadata_,
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class CompanyPolicy(Base):
    """Operating rules a company sets for its fleet schedules."""
    __tablename__ = 'company_policies'

    id = Column(String(36), primary_key=True, default=_new_id)
    company_id = Column(String, nullable=False, unique=True)
    max_price_per_seat = Column(Integer)
    allowed_origins = Column(JSON)
    allowed_destinations = Column(JSON)
    blackout_windows = Column(JSON)
    require_approval = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "companyId": self.company_id,
            "maxPricePerSeat": self.max_price_per_seat,
            "allowedOrigins": self.allowed_origins,
            "allowedDestinations": self.allowed_destinations,
            "blackoutWindows": self.blackout_windows,
            "requireApproval": bool(self.require_approval),
            "createdAt": isoformat(self.created_at),
            "updatedAt": isoformat(self.updated_at),
        }


class ScheduleApproval(Base):
    __tablename__ = 'schedule_approvals'

    id = Column(String(36), primary_key=True, default=_new_id)
    company_id = Column(String, nullable=False, index=True)
    schedule_id = Column(
        String(36), ForeignKey('vehicle_schedules.id', ondelete='CASCADE'), nullable=False
    )
    status = _enum_column(ApprovalStatus, 'approval_status_enum', default=ApprovalStatus.PENDING)
    requested_by = Column(String)
    decided_by = Column(String)
    note = Column(Text)
    decided_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('company_id', 'schedule_id', name='uq_schedule_approvals_company_schedule'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "companyId": self.company_id,
            "scheduleId": self.schedule_id,
            "status": self.status.value,
            "requestedBy": self.requested_by,
            "decidedBy": self.decided_by,
            "note": self.note,
            "decidedAt": isoformat(self.decided_at),
            "createdAt": isoformat(self.created_at),
        }


class Outbox(Base):
    __tablename__ = 'outbox'

    id = Column(String(36), primary_key=True, default=_new_id)
    topic = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    sent = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
