# main.py
import datetime
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import accounts
import booking_engine
import catalog
import payment_engine
from auth import CurrentUser, get_current_user, require_admin, require_passenger
from config import Settings, get_settings
from errors import ServiceError, StorageError
from models_all import Database, get_db
from schemas import (
    BookingStatus, PaymentAdminPatch, PaymentCreate, PaymentPassengerPatch, PaymentStatus,
    PaymentStatusUpdate, RefundRequest, ReservationAdminPatch, ReservationCreate,
    ReservationPassengerPatch, ReservationStatusUpdate, parse_patch
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------
# LOGGING
# ---------------------------------------------------------
def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# ---------------------------------------------------------
# ERROR HANDLERS
# ---------------------------------------------------------
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = [str(part) for part in first.get("loc", ()) if part != "body"]
        detail = f"{'.'.join(loc) or 'body'}: {first.get('msg', 'Invalid value')}"
    else:
        detail = "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"success": False, "kind": "ValidationError", "code": "VALIDATION_ERROR",
                 "detail": detail},
    )


async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    error = StorageError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ---------------------------------------------------------
# HEALTH
# ---------------------------------------------------------
@router.get("/health")
def health():
    return {
        "status": "OK",
        "message": "Railway reservation service is running",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    }


# ---------------------------------------------------------
# RESERVATIONS
# ---------------------------------------------------------
@router.post("/reservations", status_code=201)
def create_reservation(body: ReservationCreate, request: Request, db: Session = Depends(get_db),
                       user: CurrentUser = Depends(require_passenger)):
    return booking_engine.create_reservation(
        db,
        passenger_id=user.user_id,
        schedule_id=body.schedule_id,
        passenger_name=body.passenger_name,
        passenger_age=body.passenger_age,
        passenger_gender=body.passenger_gender,
        seat_number=body.seat_number,
        max_attempts=request.app.state.settings.id_max_attempts,
    )


@router.get("/reservations")
def list_reservations(status: Optional[BookingStatus] = None,
                      page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                      db: Session = Depends(get_db),
                      user: CurrentUser = Depends(get_current_user)):
    reservations = booking_engine.list_reservations(db, user, status=status, page=page, limit=limit)
    return [booking_engine.reservation_to_dict(r) for r in reservations]


@router.get("/reservations/booking/{booking_reference}")
def get_by_booking_reference(booking_reference: str, db: Session = Depends(get_db)):
    reservation = booking_engine.find_by_booking_reference(db, booking_reference)
    return booking_engine.reservation_to_dict(reservation)


@router.get("/reservations/schedule/{schedule_id}")
def reservations_for_schedule(schedule_id: int, db: Session = Depends(get_db),
                              admin: CurrentUser = Depends(require_admin)):
    reservations = booking_engine.list_for_schedule(db, schedule_id)
    return [booking_engine.reservation_to_dict(r, with_schedule=False) for r in reservations]


@router.get("/reservations/{reservation_id}")
def get_reservation(reservation_id: int, db: Session = Depends(get_db),
                    user: CurrentUser = Depends(get_current_user)):
    reservation = booking_engine.get_reservation(db, reservation_id, user)
    return booking_engine.reservation_to_dict(reservation)


@router.put("/reservations/{reservation_id}")
def update_reservation(reservation_id: int, request: Request, payload: dict = Body(...),
                       db: Session = Depends(get_db),
                       user: CurrentUser = Depends(get_current_user)):
    model = ReservationAdminPatch if user.is_admin else ReservationPassengerPatch
    patch = parse_patch(model, payload)
    reservation = booking_engine.update_reservation(
        db, reservation_id, user, patch,
        restore_seat=request.app.state.settings.restore_seats_on_cancel,
    )
    return booking_engine.reservation_to_dict(reservation, with_schedule=False)


@router.delete("/reservations/{reservation_id}")
def cancel_reservation(reservation_id: int, request: Request, db: Session = Depends(get_db),
                       user: CurrentUser = Depends(get_current_user)):
    return booking_engine.cancel_reservation(
        db, reservation_id, user,
        restore_seat=request.app.state.settings.restore_seats_on_cancel,
    )


@router.put("/reservations/{reservation_id}/status")
def update_reservation_status(reservation_id: int, body: ReservationStatusUpdate, request: Request,
                              db: Session = Depends(get_db),
                              admin: CurrentUser = Depends(require_admin)):
    reservation = booking_engine.update_reservation_status(
        db, reservation_id, body.booking_status,
        restore_seat=request.app.state.settings.restore_seats_on_cancel,
    )
    return booking_engine.reservation_to_dict(reservation, with_schedule=False)


# ---------------------------------------------------------
# PAYMENTS
# ---------------------------------------------------------
@router.post("/payments", status_code=201)
def create_payment(body: PaymentCreate, request: Request, db: Session = Depends(get_db),
                   user: CurrentUser = Depends(require_passenger)):
    return payment_engine.create_payment(
        db,
        reservation_id=body.reservation_id,
        actor=user,
        payment_method=body.payment_method,
        amount=body.amount,
        max_attempts=request.app.state.settings.id_max_attempts,
    )


@router.get("/payments")
def list_payments(status: Optional[PaymentStatus] = None,
                  page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                  db: Session = Depends(get_db),
                  user: CurrentUser = Depends(get_current_user)):
    payments = payment_engine.list_payments(db, user, status=status, page=page, limit=limit)
    return [payment_engine.payment_to_dict(p) for p in payments]


@router.get("/payments/reservation/{reservation_id}")
def payments_for_reservation(reservation_id: int, db: Session = Depends(get_db),
                             user: CurrentUser = Depends(get_current_user)):
    payments = payment_engine.list_for_reservation(db, reservation_id, user)
    return [payment_engine.payment_to_dict(p) for p in payments]


@router.get("/payments/{payment_id}")
def get_payment(payment_id: int, db: Session = Depends(get_db),
                user: CurrentUser = Depends(get_current_user)):
    return payment_engine.payment_to_dict(payment_engine.get_payment(db, payment_id, user))


@router.put("/payments/{payment_id}")
def update_payment(payment_id: int, payload: dict = Body(...), db: Session = Depends(get_db),
                   user: CurrentUser = Depends(get_current_user)):
    model = PaymentAdminPatch if user.is_admin else PaymentPassengerPatch
    patch = parse_patch(model, payload)
    payment = payment_engine.update_payment(db, payment_id, user, patch)
    return payment_engine.payment_to_dict(payment)


@router.put("/payments/{payment_id}/status")
def update_payment_status(payment_id: int, body: PaymentStatusUpdate,
                          db: Session = Depends(get_db),
                          admin: CurrentUser = Depends(require_admin)):
    payment = payment_engine.update_payment_status(db, payment_id, body.payment_status)
    return payment_engine.payment_to_dict(payment)


@router.post("/payments/{payment_id}/refund")
def refund_payment(payment_id: int, body: RefundRequest, db: Session = Depends(get_db),
                   admin: CurrentUser = Depends(require_admin)):
    return payment_engine.process_refund(db, payment_id, body.refund_amount)


# ---------------------------------------------------------
# APP FACTORY
# ---------------------------------------------------------
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = Database(settings)
        database.init_db()
        app.state.database = database
        logger.info("Database ready (%s environment)", settings.environment)
        yield
        database.dispose()

    app = FastAPI(
        title="Railway Reservation - API",
        version="1.0",
        description="Train Catalog + Seat Reservation + Payments",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %s (%.1f ms)",
                    request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)

    app.include_router(router)
    app.include_router(accounts.router)
    app.include_router(catalog.router)
    return app


app = create_app()
