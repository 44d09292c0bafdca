# booking_engine.py
"""
Reservation flow: availability check, booking reference allocation, seat
assignment and the atomic write that claims one seat of a schedule.

All coordination between concurrent bookings is left to the database. The
seat counter is decremented with a conditional UPDATE (which also takes the
row lock on the schedule), and the partial unique index on
(schedule_id, seat_number) for CONFIRMED rows rejects double-assigned seats.
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from errors import (
    AlreadyCancelled, Conflict, DuplicateReference, InvalidTransition, NotBookable,
    ReservationNotFound, ScheduleNotFound, SeatTaken, SoldOut, StateConflict,
    ValidationFailed
)
from identifiers import BOOKING_PREFIX, booking_code, generate_unique_code
from models_all import (
    BOOKABLE_STATUSES, Reservation, Schedule, Train, utcnow
)

logger = logging.getLogger(__name__)

SEAT_PREFIX = "S"


# ---------------------------------------------------------
# AVAILABILITY CHECKER
# ---------------------------------------------------------
def _schedule_query():
    return select(Schedule).options(
        joinedload(Schedule.train),
        joinedload(Schedule.departure_station),
        joinedload(Schedule.arrival_station),
    )


def check_bookable(db: Session, schedule_id: int) -> Schedule:
    schedule = db.execute(
        _schedule_query()
        .where(Schedule.schedule_id == schedule_id)
        .execution_options(populate_existing=True)
    ).scalars().first()

    if schedule is None:
        raise ScheduleNotFound()
    if schedule.status not in BOOKABLE_STATUSES:
        raise NotBookable()
    if schedule.available_seats <= 0:
        raise SoldOut()
    return schedule


# ---------------------------------------------------------
# IDENTIFIERS
# ---------------------------------------------------------
def booking_reference_exists(db: Session, code: str) -> bool:
    found = db.execute(
        select(Reservation.reservation_id).where(Reservation.booking_reference == code)
    ).first()
    return found is not None


def new_booking_reference(db: Session, max_attempts: int = 5) -> str:
    return generate_unique_code(
        BOOKING_PREFIX,
        lambda code: booking_reference_exists(db, code),
        make_code=booking_code,
        max_attempts=max_attempts,
    )


# ---------------------------------------------------------
# SEAT ALLOCATOR
# ---------------------------------------------------------
def taken_seats(db: Session, schedule_id: int) -> set:
    rows = db.execute(
        select(Reservation.seat_number).where(
            Reservation.schedule_id == schedule_id,
            Reservation.booking_status == "CONFIRMED",
        )
    ).scalars()
    return set(rows)


def assign_seat(db: Session, schedule_id: int, requested_seat: Optional[str] = None) -> str:
    """
    Return the caller's seat as-is, or the lowest free label S1..S<capacity>.

    A requested seat is not checked here; the unique index rejects it at
    insert time if another CONFIRMED reservation holds it.
    """
    if requested_seat:
        return requested_seat.strip()

    capacity = db.execute(
        select(Train.total_capacity)
        .join(Schedule, Schedule.train_id == Train.train_id)
        .where(Schedule.schedule_id == schedule_id)
    ).scalar()
    if capacity is None:
        raise ScheduleNotFound()

    taken = taken_seats(db, schedule_id)
    for number in range(1, capacity + 1):
        label = f"{SEAT_PREFIX}{number}"
        if label not in taken:
            return label

    raise SoldOut()


# ---------------------------------------------------------
# RESERVATION WRITER
# ---------------------------------------------------------
def _reservation_conflict(exc: IntegrityError):
    message = str(exc.orig)
    if "booking_reference" in message:
        return DuplicateReference()
    if "seat_number" in message or "uq_reservations_schedule_seat_confirmed" in message:
        return SeatTaken()
    return Conflict("Reservation conflicts with existing data")


def _claim_seat(db: Session, schedule_id: int) -> bool:
    result = db.execute(
        update(Schedule)
        .where(
            Schedule.schedule_id == schedule_id,
            Schedule.available_seats > 0,
            Schedule.status.in_(BOOKABLE_STATUSES),
        )
        .values(available_seats=Schedule.available_seats - 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def create_reservation(db: Session, passenger_id: int, schedule_id: int, passenger_name: str,
                       passenger_age: int, passenger_gender: str,
                       seat_number: Optional[str] = None, max_attempts: int = 5) -> dict:
    schedule = check_bookable(db, schedule_id)
    details = {
        "fare_amount": schedule.base_fare,
        "train_name": schedule.train.train_name,
        "departure_station": schedule.departure_station.station_name,
        "arrival_station": schedule.arrival_station.station_name,
    }

    booking_reference = new_booking_reference(db, max_attempts=max_attempts)

    try:
        if not _claim_seat(db, schedule_id):
            db.rollback()
            # re-read to report why the claim failed (status change or sold out)
            check_bookable(db, schedule_id)
            raise SoldOut()

        # the claim above holds the schedule row lock until commit
        seat = assign_seat(db, schedule_id, seat_number)

        reservation = Reservation(
            passenger_id=passenger_id,
            schedule_id=schedule_id,
            seat_number=seat,
            booking_reference=booking_reference,
            passenger_name=passenger_name,
            passenger_age=passenger_age,
            passenger_gender=passenger_gender,
            fare_amount=details["fare_amount"],
            booking_status="CONFIRMED",
        )
        db.add(reservation)
        db.flush()
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise _reservation_conflict(exc) from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Reservation %s created: ref=%s schedule=%s seat=%s passenger=%s",
        reservation.reservation_id, booking_reference, schedule_id, seat, passenger_id,
    )

    return {
        "reservation_id": reservation.reservation_id,
        "booking_reference": booking_reference,
        "passenger_name": passenger_name,
        "seat_number": seat,
        "booking_status": "CONFIRMED",
        **details,
    }


# ---------------------------------------------------------
# LOOKUPS
# ---------------------------------------------------------
def _reservation_query():
    return select(Reservation).options(
        joinedload(Reservation.schedule).joinedload(Schedule.train),
        joinedload(Reservation.schedule).joinedload(Schedule.departure_station),
        joinedload(Reservation.schedule).joinedload(Schedule.arrival_station),
    ).execution_options(populate_existing=True)


def get_reservation(db: Session, reservation_id: int, actor) -> Reservation:
    """Passengers only see their own reservations; anything else is NotFound."""
    query = _reservation_query().where(Reservation.reservation_id == reservation_id)
    if not actor.is_admin:
        query = query.where(Reservation.passenger_id == actor.user_id)

    reservation = db.execute(query).scalars().first()
    if reservation is None:
        raise ReservationNotFound()
    return reservation


def list_reservations(db: Session, actor, status: Optional[str] = None,
                      page: int = 1, limit: int = 10) -> list:
    query = _reservation_query()
    if not actor.is_admin:
        query = query.where(Reservation.passenger_id == actor.user_id)
    if status:
        query = query.where(Reservation.booking_status == status)

    query = (
        query.order_by(Reservation.booking_date.desc(), Reservation.reservation_id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(db.execute(query).scalars().unique())


def find_by_booking_reference(db: Session, booking_reference: str) -> Reservation:
    reservation = db.execute(
        _reservation_query().where(Reservation.booking_reference == booking_reference)
    ).scalars().first()
    if reservation is None:
        raise ReservationNotFound("Booking not found")
    return reservation


def list_for_schedule(db: Session, schedule_id: int) -> list:
    query = (
        select(Reservation)
        .where(Reservation.schedule_id == schedule_id)
        .order_by(Reservation.seat_number, Reservation.booking_date)
    )
    return list(db.execute(query).scalars())


def reservation_to_dict(reservation: Reservation, with_schedule: bool = True) -> dict:
    data = {
        "reservation_id": reservation.reservation_id,
        "passenger_id": reservation.passenger_id,
        "schedule_id": reservation.schedule_id,
        "seat_number": reservation.seat_number,
        "booking_reference": reservation.booking_reference,
        "passenger_name": reservation.passenger_name,
        "passenger_age": reservation.passenger_age,
        "passenger_gender": reservation.passenger_gender,
        "booking_status": reservation.booking_status,
        "fare_amount": reservation.fare_amount,
        "booking_date": reservation.booking_date,
    }
    if with_schedule:
        schedule = reservation.schedule
        data.update({
            "departure_time": schedule.departure_time,
            "arrival_time": schedule.arrival_time,
            "schedule_status": schedule.status,
            "train_name": schedule.train.train_name,
            "train_type": schedule.train.train_type,
            "departure_station": schedule.departure_station.station_name,
            "departure_code": schedule.departure_station.station_code,
            "arrival_station": schedule.arrival_station.station_name,
            "arrival_code": schedule.arrival_station.station_code,
        })
    return data


# ---------------------------------------------------------
# CANCELLATION
# ---------------------------------------------------------
def _restore_one_seat(db: Session, schedule_id: int):
    capacity = (
        select(Train.total_capacity)
        .where(Train.train_id == Schedule.train_id)
        .scalar_subquery()
    )
    db.execute(
        update(Schedule)
        .where(Schedule.schedule_id == schedule_id, Schedule.available_seats < capacity)
        .values(available_seats=Schedule.available_seats + 1)
        .execution_options(synchronize_session=False)
    )


def _mark_cancelled(db: Session, reservation: Reservation, restore_seat: bool) -> bool:
    """Flip one reservation to CANCELLED inside the caller's transaction.

    Returns whether a seat was handed back to the schedule.
    """
    result = db.execute(
        update(Reservation)
        .where(
            Reservation.reservation_id == reservation.reservation_id,
            Reservation.booking_status != "CANCELLED",
        )
        .values(booking_status="CANCELLED", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AlreadyCancelled()

    restored = bool(restore_seat and reservation.booking_status == "CONFIRMED")
    if restored:
        _restore_one_seat(db, reservation.schedule_id)
    return restored


def cancel_reservation(db: Session, reservation_id: int, actor, restore_seat: bool = False) -> dict:
    """
    Soft-cancel a reservation; the row is kept.

    NOTE: by default the schedule's available_seats is NOT given back on
    cancellation, matching the long-standing behaviour of this system.
    Pass restore_seat=True (RESTORE_SEATS_ON_CANCEL) to return the seat.
    """
    reservation = get_reservation(db, reservation_id, actor)
    if reservation.booking_status == "CANCELLED":
        raise AlreadyCancelled()

    try:
        restored = _mark_cancelled(db, reservation, restore_seat)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Reservation %s cancelled by %s %s", reservation_id, actor.user_type, actor.user_id)
    return {
        "reservation_id": reservation_id,
        "booking_reference": reservation.booking_reference,
        "booking_status": "CANCELLED",
        "seat_restored": restored,
    }


# ---------------------------------------------------------
# UPDATES
# ---------------------------------------------------------
def _check_status_transition(current: str, new: str):
    if current == "CANCELLED" and new != "CANCELLED":
        raise InvalidTransition("Cancelled reservations cannot be reopened")


def _apply_reservation_changes(db: Session, reservation: Reservation, changes: dict,
                               cancel: bool = False, restore_seat: bool = False):
    for field, value in changes.items():
        setattr(reservation, field, value)
    reservation.updated_at = utcnow()
    try:
        if cancel:
            _mark_cancelled(db, reservation, restore_seat)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise _reservation_conflict(exc) from exc
    except Exception:
        db.rollback()
        raise
    if cancel:
        db.refresh(reservation)


def _is_cancelling(reservation: Reservation, changes: dict) -> bool:
    return changes.get("booking_status") == "CANCELLED" and reservation.booking_status != "CANCELLED"


def update_reservation(db: Session, reservation_id: int, actor, patch,
                       restore_seat: bool = False) -> Reservation:
    """Apply a typed patch (passenger or admin shape, validated by the caller).

    A patch that cancels goes through the same path as cancel_reservation.
    """
    reservation = get_reservation(db, reservation_id, actor)
    changes = patch.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailed("No valid fields to update")

    if not actor.is_admin and reservation.booking_status != "CONFIRMED":
        raise StateConflict("Cannot modify cancelled or completed reservations")

    if "booking_status" in changes:
        _check_status_transition(reservation.booking_status, changes["booking_status"])
    if changes.get("seat_number"):
        changes["seat_number"] = changes["seat_number"].strip()

    cancel = _is_cancelling(reservation, changes)
    fields = {k: v for k, v in changes.items() if not (cancel and k == "booking_status")}
    _apply_reservation_changes(db, reservation, fields, cancel=cancel, restore_seat=restore_seat)
    logger.info("Reservation %s updated: %s", reservation_id, sorted(changes))
    return reservation


def update_reservation_status(db: Session, reservation_id: int, booking_status: str,
                              restore_seat: bool = False) -> Reservation:
    reservation = db.get(Reservation, reservation_id, populate_existing=True)
    if reservation is None:
        raise ReservationNotFound("Reservation not found")

    _check_status_transition(reservation.booking_status, booking_status)
    if _is_cancelling(reservation, {"booking_status": booking_status}):
        _apply_reservation_changes(db, reservation, {}, cancel=True, restore_seat=restore_seat)
    else:
        _apply_reservation_changes(db, reservation, {"booking_status": booking_status})
    logger.info("Reservation %s status set to %s", reservation_id, booking_status)
    return reservation
