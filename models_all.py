# models_all.py
import datetime
import logging
from contextlib import contextmanager

from fastapi import Request
from sqlalchemy import (
    CheckConstraint, Column, Date, DateTime, ForeignKey, Index, Integer,
    Numeric, String, UniqueConstraint, create_engine, event, text
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from config import Settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# -------------------------
# STATUS VALUES
# -------------------------

TRAIN_STATUSES = ("ACTIVE", "INACTIVE", "MAINTENANCE")
SCHEDULE_STATUSES = ("SCHEDULED", "DEPARTED", "ARRIVED", "CANCELLED", "DELAYED")
BOOKABLE_STATUSES = ("SCHEDULED", "DELAYED")
BOOKING_STATUSES = ("CONFIRMED", "CANCELLED", "WAITLISTED", "COMPLETED")
PAYMENT_STATUSES = ("PENDING", "COMPLETED", "FAILED", "REFUNDED")
ACCOUNT_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED")
ADMIN_ROLES = ("ADMIN", "SUPER_ADMIN", "OPERATOR")
GENDERS = ("MALE", "FEMALE", "OTHER")

# -------------------------
# MODELS
# -------------------------

class Station(Base):
    __tablename__ = "stations"
    station_id = Column(Integer, primary_key=True, index=True)
    station_name = Column(String(100), nullable=False)
    station_code = Column(String(10), nullable=False, unique=True)
    city = Column(String(64), nullable=False)
    state = Column(String(64))
    created_at = Column(DateTime, default=utcnow)


class Route(Base):
    __tablename__ = "routes"
    route_id = Column(Integer, primary_key=True, index=True)
    route_name = Column(String(100), nullable=False)
    route_code = Column(String(20), nullable=False, unique=True)
    total_distance = Column(Numeric(10, 2))
    created_at = Column(DateTime, default=utcnow)

    stops = relationship(
        "RouteStation",
        back_populates="route",
        cascade="all, delete-orphan",
        order_by="RouteStation.stop_sequence",
    )
    trains = relationship("Train", back_populates="route", passive_deletes="all")


class RouteStation(Base):
    __tablename__ = "route_stations"
    __table_args__ = (
        UniqueConstraint("route_id", "station_id", name="uq_route_stations_station"),
        UniqueConstraint("route_id", "stop_sequence", name="uq_route_stations_sequence"),
        CheckConstraint("stop_sequence > 0", name="ck_route_stations_sequence"),
        CheckConstraint("distance_from_start >= 0", name="ck_route_stations_distance"),
    )
    route_station_id = Column(Integer, primary_key=True, index=True)
    route_id = Column(Integer, ForeignKey("routes.route_id"), nullable=False)
    station_id = Column(Integer, ForeignKey("stations.station_id"), nullable=False)
    stop_sequence = Column(Integer, nullable=False)
    distance_from_start = Column(Numeric(10, 2), nullable=False, default=0)

    route = relationship("Route", back_populates="stops")
    station = relationship("Station")


class Train(Base):
    __tablename__ = "trains"
    __table_args__ = (
        CheckConstraint("total_capacity > 0", name="ck_trains_capacity"),
    )
    train_id = Column(Integer, primary_key=True, index=True)
    train_name = Column(String(100), nullable=False)
    train_number = Column(String(20), unique=True)
    train_type = Column(String(32), nullable=False)
    total_capacity = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="ACTIVE")
    route_id = Column(Integer, ForeignKey("routes.route_id"))
    created_at = Column(DateTime, default=utcnow)

    route = relationship("Route", back_populates="trains")
    schedules = relationship("Schedule", back_populates="train", passive_deletes="all")


class Schedule(Base):
    __tablename__ = "schedules"
    __table_args__ = (
        CheckConstraint("available_seats >= 0", name="ck_schedules_seats"),
        CheckConstraint("base_fare >= 0", name="ck_schedules_fare"),
        CheckConstraint(
            "departure_station_id <> arrival_station_id", name="ck_schedules_stations"
        ),
    )
    schedule_id = Column(Integer, primary_key=True, index=True)
    train_id = Column(Integer, ForeignKey("trains.train_id"), nullable=False)
    departure_station_id = Column(Integer, ForeignKey("stations.station_id"), nullable=False)
    arrival_station_id = Column(Integer, ForeignKey("stations.station_id"), nullable=False)
    departure_time = Column(DateTime, nullable=False)
    arrival_time = Column(DateTime, nullable=False)
    base_fare = Column(Numeric(10, 2), nullable=False)
    available_seats = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="SCHEDULED")
    created_at = Column(DateTime, default=utcnow)

    train = relationship("Train", back_populates="schedules")
    departure_station = relationship("Station", foreign_keys=[departure_station_id])
    arrival_station = relationship("Station", foreign_keys=[arrival_station_id])
    reservations = relationship("Reservation", back_populates="schedule", passive_deletes="all")


class Passenger(Base):
    __tablename__ = "passengers"
    passenger_id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), nullable=False, unique=True)
    email = Column(String(128), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(100), nullable=False)
    phone = Column(String(20))
    date_of_birth = Column(Date)
    gender = Column(String(8))
    status = Column(String(16), nullable=False, default="ACTIVE")
    created_at = Column(DateTime, default=utcnow)

    reservations = relationship("Reservation", back_populates="passenger")


class Admin(Base):
    __tablename__ = "admins"
    admin_id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), nullable=False, unique=True)
    email = Column(String(128), nullable=False, unique=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(100), nullable=False)
    employee_id = Column(String(20))
    role = Column(String(16), nullable=False, default="ADMIN")
    status = Column(String(16), nullable=False, default="ACTIVE")
    created_by = Column(Integer, ForeignKey("admins.admin_id"))
    created_at = Column(DateTime, default=utcnow)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        # a seat label is held by at most one CONFIRMED reservation per schedule
        Index(
            "uq_reservations_schedule_seat_confirmed",
            "schedule_id",
            "seat_number",
            unique=True,
            sqlite_where=text("booking_status = 'CONFIRMED'"),
            postgresql_where=text("booking_status = 'CONFIRMED'"),
        ),
        CheckConstraint("passenger_age > 0", name="ck_reservations_age"),
    )
    reservation_id = Column(Integer, primary_key=True, index=True)
    passenger_id = Column(Integer, ForeignKey("passengers.passenger_id"), nullable=False)
    schedule_id = Column(Integer, ForeignKey("schedules.schedule_id"), nullable=False)
    seat_number = Column(String(16), nullable=False)
    booking_reference = Column(String(32), nullable=False, unique=True)
    passenger_name = Column(String(100), nullable=False)
    passenger_age = Column(Integer, nullable=False)
    passenger_gender = Column(String(8), nullable=False)
    fare_amount = Column(Numeric(10, 2), nullable=False)
    booking_status = Column(String(16), nullable=False, default="CONFIRMED")
    booking_date = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    passenger = relationship("Passenger", back_populates="reservations")
    schedule = relationship("Schedule", back_populates="reservations")
    payments = relationship("Payment", back_populates="reservation", passive_deletes="all")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        # at most one live (PENDING or COMPLETED) payment per reservation
        Index(
            "uq_payments_reservation_active",
            "reservation_id",
            unique=True,
            sqlite_where=text("payment_status IN ('PENDING', 'COMPLETED')"),
            postgresql_where=text("payment_status IN ('PENDING', 'COMPLETED')"),
        ),
        CheckConstraint("amount > 0", name="ck_payments_amount"),
        CheckConstraint(
            "refund_amount >= 0 AND refund_amount <= amount", name="ck_payments_refund"
        ),
    )
    payment_id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.reservation_id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(String(32), nullable=False)
    transaction_id = Column(String(64), nullable=False, unique=True)
    payment_status = Column(String(16), nullable=False, default="PENDING")
    payment_date = Column(DateTime, nullable=False, default=utcnow)
    refund_amount = Column(Numeric(10, 2), nullable=False, default=0)
    refund_date = Column(DateTime)

    reservation = relationship("Reservation", back_populates="payments")


# -------------------------
# DATABASE SETUP
# -------------------------

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _engine_options(settings: Settings) -> dict:
    timeout = settings.db_timeout_seconds
    if settings.is_sqlite:
        return {
            "connect_args": {"check_same_thread": False, "timeout": timeout},
        }

    options = {
        "pool_size": settings.db_pool_min,
        "max_overflow": max(settings.db_pool_max - settings.db_pool_min, 0),
        "pool_timeout": timeout,
        "pool_pre_ping": True,
    }
    if settings.database_url.startswith("postgresql"):
        options["connect_args"] = {"options": f"-c statement_timeout={timeout * 1000}"}
    return options


class Database:
    """Owns the engine (and its connection pool) plus the session factory.

    Built once at application startup and disposed at shutdown; request
    handlers reach it through ``get_db``.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = create_engine(settings.database_url, **_engine_options(settings))
        if settings.is_sqlite:
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    def init_db(self):
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self):
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()
        logger.info("Database connection pool closed")


# -------------------------
# FASTAPI DEPENDENCY
# -------------------------

def get_db(request: Request):
    with request.app.state.database.session() as db:
        yield db
