# seed_all.py
import datetime
import logging
from decimal import Decimal

from sqlalchemy import select

from auth import hash_password
from config import get_settings
from models_all import (
    Admin, Database, Passenger, Route, RouteStation, Schedule, Station, Train
)

logger = logging.getLogger(__name__)

STATIONS = [
    ("NDLS", "New Delhi", "New Delhi", "Delhi"),
    ("AGC", "Agra Cantt", "Agra", "Uttar Pradesh"),
    ("BPL", "Bhopal Junction", "Bhopal", "Madhya Pradesh"),
    ("NGP", "Nagpur Junction", "Nagpur", "Maharashtra"),
    ("MAS", "Chennai Central", "Chennai", "Tamil Nadu"),
]

TRAINS = [
    ("12621", "Tamil Nadu Express", "EXPRESS", 72),
    ("12001", "Bhopal Shatabdi", "SHATABDI", 56),
    ("20425", "Vande Bharat", "VANDE_BHARAT", 48),
]

# (train number, from, to, days ahead, departure hour, hours, fare)
SCHEDULES = [
    ("12621", "NDLS", "MAS", 1, 22, 33, "1450.00"),
    ("12621", "NDLS", "NGP", 2, 22, 15, "890.00"),
    ("12001", "NDLS", "BPL", 1, 6, 8, "1205.00"),
    ("12001", "AGC", "BPL", 3, 8, 6, "760.00"),
    ("20425", "NDLS", "AGC", 1, 7, 2, "650.00"),
]


def _get_or_create(db, model, lookup: dict, **values):
    existing = db.execute(select(model).filter_by(**lookup)).scalars().first()
    if existing:
        return existing, False
    obj = model(**lookup, **values)
    db.add(obj)
    db.flush()
    return obj, True


def seed(db):
    """Insert demo catalog data and two accounts; safe to run repeatedly."""
    # --- stations (idempotent)
    stations = {}
    for code, name, city, state in STATIONS:
        stations[code], _ = _get_or_create(
            db, Station, {"station_code": code}, station_name=name, city=city, state=state
        )
    db.commit()

    # --- route with ordered stops
    route, created = _get_or_create(
        db, Route, {"route_code": "NDLS-MAS"},
        route_name="Delhi - Chennai Grand Trunk", total_distance=Decimal("2182"),
    )
    if created:
        distances = [0, 195, 705, 1095, 2182]
        for sequence, (code, distance) in enumerate(zip(stations, distances), start=1):
            route.stops.append(RouteStation(
                station_id=stations[code].station_id,
                stop_sequence=sequence,
                distance_from_start=Decimal(distance),
            ))
    db.commit()

    # --- trains
    trains = {}
    for number, name, train_type, capacity in TRAINS:
        trains[number], _ = _get_or_create(
            db, Train, {"train_number": number},
            train_name=name, train_type=train_type, total_capacity=capacity,
            route_id=route.route_id,
        )
    db.commit()

    # --- schedules, only for trains that have none yet
    today = datetime.datetime.now().replace(minute=0, second=0, microsecond=0)
    schedules_added = 0
    for number, src, dst, days, hour, hours, fare in SCHEDULES:
        train = trains[number]
        has_schedules = db.execute(
            select(Schedule.schedule_id).where(
                Schedule.train_id == train.train_id,
                Schedule.departure_station_id == stations[src].station_id,
                Schedule.arrival_station_id == stations[dst].station_id,
            )
        ).first()
        if has_schedules:
            continue
        departure = (today + datetime.timedelta(days=days)).replace(hour=hour)
        db.add(Schedule(
            train_id=train.train_id,
            departure_station_id=stations[src].station_id,
            arrival_station_id=stations[dst].station_id,
            departure_time=departure,
            arrival_time=departure + datetime.timedelta(hours=hours),
            base_fare=Decimal(fare),
            available_seats=train.total_capacity,
        ))
        schedules_added += 1
    db.commit()

    # --- demo accounts
    _get_or_create(
        db, Admin, {"username": "admin"},
        email="admin@railway.example", password_hash=hash_password("admin123"),
        full_name="System Administrator", employee_id="EMP001", role="SUPER_ADMIN",
    )
    _get_or_create(
        db, Passenger, {"username": "demo"},
        email="demo@example.com", password_hash=hash_password("demo123"),
        full_name="Demo Passenger", phone="9999999999", gender="OTHER",
    )
    db.commit()

    logger.info("Seeded %d stations, %d trains, %d new schedules",
                len(stations), len(trains), schedules_added)
    return {"stations": len(stations), "trains": len(trains), "schedules_added": schedules_added}


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    database = Database(get_settings())
    database.init_db()
    with database.session() as db:
        seed(db)
    database.dispose()
    logger.info("Seeding complete!")
