# payment_engine.py
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from errors import (
    DuplicatePayment, DuplicateReference, ExceedsAmount, InvalidTransition, NotCompleted,
    NotConfirmed, PaymentNotFound, ReservationNotFound, StateConflict, ValidationFailed
)
from identifiers import TRANSACTION_PREFIX, generate_unique_code, transaction_code
from models_all import Payment, Reservation, utcnow

logger = logging.getLogger(__name__)

LIVE_PAYMENT_STATUSES = ("PENDING", "COMPLETED")

# manual status changes; REFUNDED is reached only through refunds
PAYMENT_TRANSITIONS = {
    "PENDING": ("COMPLETED", "FAILED"),
}


# ---------------------------------------------------------
# IDENTIFIERS
# ---------------------------------------------------------
def transaction_id_exists(db: Session, code: str) -> bool:
    found = db.execute(
        select(Payment.payment_id).where(Payment.transaction_id == code)
    ).first()
    return found is not None


def new_transaction_id(db: Session, max_attempts: int = 5) -> str:
    return generate_unique_code(
        TRANSACTION_PREFIX,
        lambda code: transaction_id_exists(db, code),
        make_code=transaction_code,
        max_attempts=max_attempts,
    )


def _payment_conflict(exc: IntegrityError):
    message = str(exc.orig)
    if "transaction_id" in message:
        return DuplicateReference("Transaction id already in use")
    return DuplicatePayment()


# ---------------------------------------------------------
# PAYMENT WRITER
# ---------------------------------------------------------
def create_payment(db: Session, reservation_id: int, actor, payment_method: str,
                   amount: Optional[Decimal] = None, max_attempts: int = 5) -> dict:
    reservation = db.execute(
        select(Reservation)
        .where(
            Reservation.reservation_id == reservation_id,
            Reservation.passenger_id == actor.user_id,
        )
        .execution_options(populate_existing=True)
    ).scalars().first()
    if reservation is None:
        raise ReservationNotFound()
    if reservation.booking_status != "CONFIRMED":
        raise NotConfirmed()

    existing = db.execute(
        select(Payment.payment_id).where(
            Payment.reservation_id == reservation_id,
            Payment.payment_status.in_(LIVE_PAYMENT_STATUSES),
        )
    ).first()
    if existing is not None:
        raise DuplicatePayment()

    if amount is None:
        amount = reservation.fare_amount

    transaction_id = new_transaction_id(db, max_attempts=max_attempts)

    payment = Payment(
        reservation_id=reservation_id,
        amount=amount,
        payment_method=payment_method,
        transaction_id=transaction_id,
        payment_status="PENDING",
        refund_amount=0,
    )
    try:
        db.add(payment)
        db.flush()
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise _payment_conflict(exc) from exc
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Payment %s initiated for reservation %s: txn=%s amount=%s",
        payment.payment_id, reservation_id, transaction_id, amount,
    )
    return {
        "payment_id": payment.payment_id,
        "reservation_id": reservation_id,
        "amount": amount,
        "payment_method": payment_method,
        "transaction_id": transaction_id,
        "payment_status": "PENDING",
        "booking_reference": reservation.booking_reference,
    }


# ---------------------------------------------------------
# REFUNDS
# ---------------------------------------------------------
def _load_payment(db: Session, payment_id: int) -> Optional[Payment]:
    return db.execute(
        select(Payment)
        .where(Payment.payment_id == payment_id)
        .execution_options(populate_existing=True)
    ).scalars().first()


def process_refund(db: Session, payment_id: int, refund_amount: Decimal) -> dict:
    """
    Add ``refund_amount`` to the cumulative refund of a COMPLETED payment.

    The bound check and the increment happen in one conditional UPDATE, so
    two concurrent refunds can never push the total past the paid amount.
    The payment becomes REFUNDED once the cumulative refund covers it.
    """
    if refund_amount is None or refund_amount <= 0:
        raise ValidationFailed("Valid refund amount is required")

    # rounded to cents: SQLite stores Numeric columns as floats
    total_after = func.round(Payment.refund_amount + refund_amount, 2)
    try:
        result = db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment_id,
                Payment.payment_status == "COMPLETED",
                total_after <= Payment.amount,
            )
            .values(
                refund_amount=total_after,
                refund_date=utcnow(),
                payment_status=case(
                    (total_after >= Payment.amount, "REFUNDED"),
                    else_=Payment.payment_status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            payment = _load_payment(db, payment_id)
            if payment is None:
                raise PaymentNotFound("Payment not found")
            if payment.payment_status != "COMPLETED":
                raise NotCompleted()
            raise ExceedsAmount()
        db.commit()
    except Exception:
        db.rollback()
        raise

    payment = _load_payment(db, payment_id)
    logger.info(
        "Refund of %s on payment %s (total %s of %s, status %s)",
        refund_amount, payment_id, payment.refund_amount, payment.amount, payment.payment_status,
    )
    return {
        "payment_id": payment_id,
        "refund_amount": refund_amount,
        "total_refund_amount": payment.refund_amount,
        "original_amount": payment.amount,
        "payment_status": payment.payment_status,
    }


# ---------------------------------------------------------
# LOOKUPS
# ---------------------------------------------------------
def _payment_query(actor):
    query = (
        select(Payment)
        .join(Reservation, Payment.reservation_id == Reservation.reservation_id)
        .options(joinedload(Payment.reservation))
        .execution_options(populate_existing=True)
    )
    if not actor.is_admin:
        query = query.where(Reservation.passenger_id == actor.user_id)
    return query


def get_payment(db: Session, payment_id: int, actor) -> Payment:
    payment = db.execute(
        _payment_query(actor).where(Payment.payment_id == payment_id)
    ).scalars().first()
    if payment is None:
        raise PaymentNotFound()
    return payment


def list_payments(db: Session, actor, status: Optional[str] = None,
                  page: int = 1, limit: int = 10) -> list:
    query = _payment_query(actor)
    if status:
        query = query.where(Payment.payment_status == status)
    query = (
        query.order_by(Payment.payment_date.desc(), Payment.payment_id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(db.execute(query).scalars().unique())


def list_for_reservation(db: Session, reservation_id: int, actor) -> list:
    query = (
        _payment_query(actor)
        .where(Payment.reservation_id == reservation_id)
        .order_by(Payment.payment_date.desc(), Payment.payment_id.desc())
    )
    return list(db.execute(query).scalars().unique())


def payment_to_dict(payment: Payment) -> dict:
    reservation = payment.reservation
    return {
        "payment_id": payment.payment_id,
        "reservation_id": payment.reservation_id,
        "amount": payment.amount,
        "payment_method": payment.payment_method,
        "payment_status": payment.payment_status,
        "transaction_id": payment.transaction_id,
        "payment_date": payment.payment_date,
        "refund_amount": payment.refund_amount,
        "refund_date": payment.refund_date,
        "booking_reference": reservation.booking_reference,
        "passenger_name": reservation.passenger_name,
        "seat_number": reservation.seat_number,
    }


# ---------------------------------------------------------
# UPDATES
# ---------------------------------------------------------
def _check_transition(current: str, new: str):
    if new == current:
        return
    if new == "REFUNDED":
        raise InvalidTransition("Payments become REFUNDED only once refunds cover the amount")
    if new not in PAYMENT_TRANSITIONS.get(current, ()):
        raise InvalidTransition(f"Payment cannot move from {current} to {new}")


def _commit_payment(db: Session):
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise _payment_conflict(exc) from exc
    except Exception:
        db.rollback()
        raise


def update_payment(db: Session, payment_id: int, actor, patch) -> Payment:
    payment = get_payment(db, payment_id, actor)
    changes = patch.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailed("No valid fields to update")

    if not actor.is_admin and payment.payment_status != "PENDING":
        raise StateConflict("Cannot modify completed or failed payments")

    if "payment_status" in changes:
        _check_transition(payment.payment_status, changes["payment_status"])
        if changes["payment_status"] == payment.payment_status:
            del changes["payment_status"]

    refund_total = changes.pop("refund_amount", None)
    refund_date = None
    if refund_total is not None:
        _check_refund_total(payment, refund_total)
        refund_date = changes.pop("refund_date", None)

    for field, value in changes.items():
        setattr(payment, field, value)
    try:
        if refund_total is not None:
            _set_refund_total(db, payment, refund_total, refund_date)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise _payment_conflict(exc) from exc
    except Exception:
        db.rollback()
        raise

    if refund_total is not None:
        db.refresh(payment)
        changes["refund_amount"] = refund_total
    logger.info("Payment %s updated: %s", payment_id, sorted(changes))
    return payment


def _check_refund_total(payment: Payment, total: Decimal):
    if payment.payment_status != "COMPLETED":
        raise NotCompleted()
    if total > payment.amount:
        raise ExceedsAmount()
    if total < payment.refund_amount:
        raise ValidationFailed("Refund total cannot be lowered")


def _set_refund_total(db: Session, payment: Payment, total: Decimal, refund_date=None):
    # same guards as process_refund, re-checked in the UPDATE itself
    result = db.execute(
        update(Payment)
        .where(
            Payment.payment_id == payment.payment_id,
            Payment.payment_status == "COMPLETED",
            Payment.refund_amount <= total,
        )
        .values(
            refund_amount=total,
            refund_date=refund_date or utcnow(),
            payment_status="REFUNDED" if total >= payment.amount else "COMPLETED",
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflict("Payment changed during the update, please retry")


def update_payment_status(db: Session, payment_id: int, payment_status: str) -> Payment:
    payment = _load_payment(db, payment_id)
    if payment is None:
        raise PaymentNotFound("Payment not found")

    _check_transition(payment.payment_status, payment_status)
    payment.payment_status = payment_status
    _commit_payment(db)

    logger.info("Payment %s status set to %s", payment_id, payment_status)
    return payment
