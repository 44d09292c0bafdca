import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from auth import CurrentUser, create_access_token, hash_password
from config import Settings
from main import create_app
from models_all import Admin, Database, Passenger, Schedule, Station, Train


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'railway-test.db'}",
        jwt_secret="test-secret",
        log_level="WARNING",
    )


@pytest.fixture
def database(settings):
    database = Database(settings)
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def db(database):
    with database.session() as session:
        yield session


@pytest.fixture
def stations(db):
    origin = Station(station_name="New Delhi", station_code="NDLS", city="New Delhi")
    destination = Station(station_name="Agra Cantt", station_code="AGC", city="Agra")
    db.add_all([origin, destination])
    db.commit()
    return origin, destination


@pytest.fixture
def make_schedule(db, stations):
    origin, destination = stations
    counter = {"n": 0}

    def _make(seats=1, fare="500.00", status="SCHEDULED", capacity=None):
        counter["n"] += 1
        train = Train(
            train_name=f"Test Express {counter['n']}",
            train_number=f"T{counter['n']:04d}",
            train_type="EXPRESS",
            total_capacity=capacity or max(seats, 1),
        )
        db.add(train)
        db.flush()
        departure = datetime.datetime(2030, 1, 1, 8, 0) + datetime.timedelta(days=counter["n"])
        schedule = Schedule(
            train_id=train.train_id,
            departure_station_id=origin.station_id,
            arrival_station_id=destination.station_id,
            departure_time=departure,
            arrival_time=departure + datetime.timedelta(hours=2),
            base_fare=Decimal(fare),
            available_seats=seats,
            status=status,
        )
        db.add(schedule)
        db.commit()
        return schedule.schedule_id

    return _make


def _add_passenger(db, username):
    passenger = Passenger(
        username=username,
        email=f"{username}@example.com",
        password_hash=hash_password("secret123"),
        full_name=username.title(),
    )
    db.add(passenger)
    db.commit()
    return passenger


@pytest.fixture
def passenger(db):
    p = _add_passenger(db, "alice")
    return CurrentUser(user_id=p.passenger_id, user_type="passenger", username=p.username)


@pytest.fixture
def other_passenger(db):
    p = _add_passenger(db, "bob")
    return CurrentUser(user_id=p.passenger_id, user_type="passenger", username=p.username)


@pytest.fixture
def admin(db):
    a = Admin(
        username="root",
        email="root@example.com",
        password_hash=hash_password("admin123"),
        full_name="Root Admin",
        role="SUPER_ADMIN",
    )
    db.add(a)
    db.commit()
    return CurrentUser(user_id=a.admin_id, user_type="admin", username=a.username, role=a.role)


# -------------------------
# HTTP
# -------------------------

@pytest.fixture
def client(settings, database):
    app = create_app(settings)
    with TestClient(app) as test_client:
        yield test_client


def _headers(settings, user):
    token = create_access_token(settings, user.user_id, user.user_type, user.username, role=user.role)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def passenger_headers(settings, passenger):
    return _headers(settings, passenger)


@pytest.fixture
def other_headers(settings, other_passenger):
    return _headers(settings, other_passenger)


@pytest.fixture
def admin_headers(settings, admin):
    return _headers(settings, admin)
