# schemas.py
import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from errors import ValidationFailed

Gender = Literal["MALE", "FEMALE", "OTHER"]
TrainStatus = Literal["ACTIVE", "INACTIVE", "MAINTENANCE"]
ScheduleStatus = Literal["SCHEDULED", "DEPARTED", "ARRIVED", "CANCELLED", "DELAYED"]
BookingStatus = Literal["CONFIRMED", "CANCELLED", "WAITLISTED", "COMPLETED"]
PaymentStatus = Literal["PENDING", "COMPLETED", "FAILED", "REFUNDED"]
AccountStatus = Literal["ACTIVE", "INACTIVE", "SUSPENDED"]
AdminRole = Literal["ADMIN", "SUPER_ADMIN", "OPERATOR"]
UserType = Literal["passenger", "admin"]

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class Patch(BaseModel):
    """Partial update body: only named fields, unknown keys are rejected."""
    model_config = ConfigDict(extra="forbid")


def parse_patch(model, payload: dict):
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "body"
        raise ValidationFailed(f"{field}: {first['msg']}")


# ---------------------------------------------------------
# AUTH
# ---------------------------------------------------------
class PassengerRegister(BaseModel):
    username: str = Field(min_length=3, max_length=30, pattern=r"^[A-Za-z0-9]+$")
    email: str = Field(max_length=128, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6)
    full_name: str = Field(min_length=2, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    date_of_birth: Optional[datetime.date] = None
    gender: Optional[Gender] = None


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class AdminCreate(BaseModel):
    username: str = Field(min_length=3, max_length=30, pattern=r"^[A-Za-z0-9]+$")
    email: str = Field(max_length=128, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=6)
    full_name: str = Field(min_length=2, max_length=100)
    employee_id: Optional[str] = Field(None, max_length=20)
    role: AdminRole = "ADMIN"


class PassengerProfilePatch(Patch):
    full_name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=128, pattern=EMAIL_PATTERN)


class AdminProfilePatch(Patch):
    full_name: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[str] = Field(None, max_length=128, pattern=EMAIL_PATTERN)


class ChangePassword(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


class UserStatusUpdate(BaseModel):
    status: AccountStatus
    user_type: UserType


# ---------------------------------------------------------
# CATALOG
# ---------------------------------------------------------
class StationCreate(BaseModel):
    station_name: str = Field(min_length=1, max_length=100)
    station_code: str = Field(min_length=1, max_length=10)
    city: str = Field(min_length=1, max_length=64)
    state: Optional[str] = Field(None, max_length=64)


class StationPatch(Patch):
    station_name: Optional[str] = Field(None, min_length=1, max_length=100)
    station_code: Optional[str] = Field(None, min_length=1, max_length=10)
    city: Optional[str] = Field(None, min_length=1, max_length=64)
    state: Optional[str] = Field(None, max_length=64)


class RouteCreate(BaseModel):
    route_name: str = Field(min_length=1, max_length=100)
    route_code: str = Field(min_length=1, max_length=20)
    total_distance: Optional[Decimal] = Field(None, ge=0)


class RoutePatch(Patch):
    route_name: Optional[str] = Field(None, min_length=1, max_length=100)
    route_code: Optional[str] = Field(None, min_length=1, max_length=20)
    total_distance: Optional[Decimal] = Field(None, ge=0)


class RouteStopCreate(BaseModel):
    station_id: int
    stop_sequence: int = Field(gt=0)
    distance_from_start: Decimal = Field(Decimal("0"), ge=0)


class TrainCreate(BaseModel):
    train_name: str = Field(min_length=1, max_length=100)
    train_number: Optional[str] = Field(None, max_length=20)
    train_type: str = Field(min_length=1, max_length=32)
    total_capacity: int = Field(gt=0)
    status: TrainStatus = "ACTIVE"
    route_id: Optional[int] = None


class TrainPatch(Patch):
    train_name: Optional[str] = Field(None, min_length=1, max_length=100)
    train_number: Optional[str] = Field(None, max_length=20)
    train_type: Optional[str] = Field(None, min_length=1, max_length=32)
    total_capacity: Optional[int] = Field(None, gt=0)
    status: Optional[TrainStatus] = None
    route_id: Optional[int] = None


class ScheduleCreate(BaseModel):
    train_id: int
    departure_station_id: int
    arrival_station_id: int
    departure_time: datetime.datetime
    arrival_time: datetime.datetime
    base_fare: Decimal = Field(ge=0)
    available_seats: Optional[int] = Field(None, ge=0)
    status: ScheduleStatus = "SCHEDULED"

    @model_validator(mode="after")
    def check_legs(self):
        if self.departure_station_id == self.arrival_station_id:
            raise ValueError("Departure and arrival stations must be different")
        if self.arrival_time <= self.departure_time:
            raise ValueError("Arrival time must be after departure time")
        return self


class SchedulePatch(Patch):
    train_id: Optional[int] = None
    departure_station_id: Optional[int] = None
    arrival_station_id: Optional[int] = None
    departure_time: Optional[datetime.datetime] = None
    arrival_time: Optional[datetime.datetime] = None
    base_fare: Optional[Decimal] = Field(None, ge=0)
    available_seats: Optional[int] = Field(None, ge=0)


class ScheduleStatusUpdate(BaseModel):
    status: ScheduleStatus


# ---------------------------------------------------------
# RESERVATIONS
# ---------------------------------------------------------
class ReservationCreate(BaseModel):
    schedule_id: int
    passenger_name: str = Field(min_length=1, max_length=100)
    passenger_age: int = Field(gt=0, le=150)
    passenger_gender: Gender
    seat_number: Optional[str] = Field(None, min_length=1, max_length=16)


class ReservationPassengerPatch(Patch):
    passenger_name: Optional[str] = Field(None, min_length=1, max_length=100)
    passenger_age: Optional[int] = Field(None, gt=0, le=150)
    passenger_gender: Optional[Gender] = None


class ReservationAdminPatch(ReservationPassengerPatch):
    seat_number: Optional[str] = Field(None, min_length=1, max_length=16)
    booking_status: Optional[BookingStatus] = None


class ReservationStatusUpdate(BaseModel):
    booking_status: BookingStatus


# ---------------------------------------------------------
# PAYMENTS
# ---------------------------------------------------------
class PaymentCreate(BaseModel):
    reservation_id: int
    payment_method: str = Field(min_length=1, max_length=32)
    amount: Optional[Decimal] = Field(None, gt=0)


class PaymentPassengerPatch(Patch):
    payment_method: Optional[str] = Field(None, min_length=1, max_length=32)


class PaymentAdminPatch(Patch):
    payment_status: Optional[PaymentStatus] = None
    transaction_id: Optional[str] = Field(None, min_length=1, max_length=64)
    refund_amount: Optional[Decimal] = Field(None, ge=0)
    refund_date: Optional[datetime.datetime] = None


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class RefundRequest(BaseModel):
    refund_amount: Decimal = Field(gt=0)
