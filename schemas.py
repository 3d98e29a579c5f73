"""
Database Schemas for the Plug-In charger sharing marketplace

Each Pydantic model represents a document collection. Collection names are
plural and lowercase: "users", "chargers", "bookings". Documents are stored
without their id (the store keeps it as the document key) and enums are
stored as their values.
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, ValidationError as PydanticValidationError

from errors import DecodeError

USERS = "users"
CHARGERS = "chargers"
BOOKINGS = "bookings"

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    ACTIVE = "active"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"


class ChargerStatus(str, Enum):
    AVAILABLE = "available"
    IN_USE = "in_use"
    OFFLINE = "offline"


class ChargerType(str, Enum):
    LEVEL1 = "Level 1"
    LEVEL2 = "Level 2"
    DC_FAST = "DC Fast Charge"


class ConnectorType(str, Enum):
    TESLA_NACS = "Tesla NACS"
    J1772 = "J1772 (Type 1)"
    CCS = "CCS"
    CHADEMO = "CHAdeMO"


class UserRole(str, Enum):
    DRIVER = "driver"
    HOST = "host"


class PaymentMode(str, Enum):
    CREDITS = "credits"
    CURRENCY = "currency"


class Entity(BaseModel):
    """Base for stored entities: an optional id plus the document body."""
    id: Optional[str] = Field(None, description="Document id, assigned by the store")

    def to_document(self) -> Dict[str, Any]:
        return _plain(self.model_dump(exclude={"id"}))

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]):
        try:
            return cls.model_validate({**data, "id": doc_id})
        except PydanticValidationError as e:
            raise DecodeError(f"{cls.__name__} {doc_id} is malformed: {e.error_count()} invalid field(s)")


class GeoPoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class DayAvailability(BaseModel):
    """Allowed hours for one weekday. end_hour is exclusive."""
    day: int = Field(..., ge=0, le=6, description="0 = Sunday")
    start_hour: int = Field(8, ge=0, le=24)
    end_hour: int = Field(22, ge=0, le=24)
    is_available: bool = Field(True)

    @property
    def day_name(self) -> str:
        return DAY_NAMES[self.day]

    @property
    def short_day_name(self) -> str:
        return DAY_NAMES[self.day][:3]

    @staticmethod
    def default_week() -> List["DayAvailability"]:
        return [DayAvailability(day=d, start_hour=8, end_hour=22, is_available=True) for d in range(7)]


class User(Entity):
    """
    Account record holding the green credit balance.
    Collection: "users"
    """
    email: EmailStr = Field(..., description="Unique email address, immutable after signup")
    name: str = Field("Unknown User", description="Display name")
    roles: List[UserRole] = Field(default_factory=lambda: [UserRole.DRIVER])
    green_credits: int = Field(0, description="Balance; may be negative transiently")
    profile_image_url: Optional[str] = None
    phone_number: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    # Host-specific
    is_verified: Optional[bool] = None
    total_bookings: Optional[int] = None
    rating: Optional[float] = None

    @property
    def is_host(self) -> bool:
        return UserRole.HOST in self.roles

    @property
    def is_driver(self) -> bool:
        return UserRole.DRIVER in self.roles


class Charger(Entity):
    """
    A physical charging point offered by a host.
    Collection: "chargers"
    """
    host_id: str = Field(..., description="Owner user id")
    location: GeoPoint
    address: str
    type: ChargerType
    connector_type: ConnectorType
    price_per_hour: float = Field(..., ge=0)
    credits_per_hour: int = Field(..., ge=0)
    status: ChargerStatus = Field(ChargerStatus.AVAILABLE)
    max_speed: float = Field(..., ge=0, description="kW")
    has_tethered_cable: bool = Field(False)
    access_instructions: Optional[str] = None
    current_booking_id: Optional[str] = None
    rating: float = Field(0.0)
    total_bookings: int = Field(0)
    created_at: datetime = Field(default_factory=utcnow)
    availability_schedule: Optional[List[DayAvailability]] = Field(
        None, description="One entry per weekday; null means always available"
    )


class Booking(Entity):
    """
    A charge session request between a driver and a host's charger.
    Collection: "bookings"
    """
    charger_id: str
    host_id: str
    driver_id: str
    status: BookingStatus = Field(BookingStatus.PENDING)
    requested_at: datetime = Field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    estimated_duration: float = Field(..., gt=0, description="Seconds")
    credits_used: Optional[int] = Field(None, ge=0)
    amount_paid: Optional[float] = Field(None, ge=0)
    driver_rating: Optional[int] = Field(None, ge=1, le=5)
    host_rating: Optional[int] = Field(None, ge=1, le=5)
    scheduled_start_time: Optional[datetime] = Field(None, description="Null means as soon as possible")
    driver_debited_at: Optional[datetime] = Field(None, description="Set once the driver has been charged")

    @property
    def is_active(self) -> bool:
        return self.status in (BookingStatus.ACCEPTED, BookingStatus.ACTIVE)

    @property
    def scheduled_end_time(self) -> Optional[datetime]:
        if self.scheduled_start_time is None:
            return None
        return self.scheduled_start_time + timedelta(seconds=self.estimated_duration)
