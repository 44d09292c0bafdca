# catalog.py
import datetime
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, joinedload

from auth import CurrentUser, require_admin
from errors import Conflict, NotFound, ValidationFailed
from models_all import Route, RouteStation, Schedule, Station, Train, get_db
from schemas import (
    RouteCreate, RoutePatch, RouteStopCreate, ScheduleCreate, SchedulePatch,
    ScheduleStatusUpdate, StationCreate, StationPatch, TrainCreate, TrainPatch
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------
# UTIL
# ---------------------------------------------------------
def _commit(db: Session, conflict_message: str):
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict(conflict_message) from exc


def _get_or_404(db: Session, model, pk, label: str):
    obj = db.get(model, pk)
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


def station_to_dict(s: Station) -> dict:
    return {
        "station_id": s.station_id,
        "station_name": s.station_name,
        "station_code": s.station_code,
        "city": s.city,
        "state": s.state,
    }


def route_to_dict(r: Route, with_stops: bool = False) -> dict:
    data = {
        "route_id": r.route_id,
        "route_name": r.route_name,
        "route_code": r.route_code,
        "total_distance": r.total_distance,
    }
    if with_stops:
        data["stations"] = [stop_to_dict(stop) for stop in r.stops]
    return data


def stop_to_dict(stop: RouteStation) -> dict:
    return {
        "station_id": stop.station_id,
        "station_name": stop.station.station_name,
        "station_code": stop.station.station_code,
        "city": stop.station.city,
        "stop_sequence": stop.stop_sequence,
        "distance_from_start": stop.distance_from_start,
    }


def train_to_dict(t: Train) -> dict:
    return {
        "train_id": t.train_id,
        "train_name": t.train_name,
        "train_number": t.train_number,
        "train_type": t.train_type,
        "total_capacity": t.total_capacity,
        "status": t.status,
        "route_id": t.route_id,
    }


def schedule_to_dict(s: Schedule) -> dict:
    return {
        "schedule_id": s.schedule_id,
        "train_id": s.train_id,
        "train_name": s.train.train_name,
        "train_type": s.train.train_type,
        "total_capacity": s.train.total_capacity,
        "departure_station_id": s.departure_station_id,
        "departure_station": s.departure_station.station_name,
        "departure_code": s.departure_station.station_code,
        "arrival_station_id": s.arrival_station_id,
        "arrival_station": s.arrival_station.station_name,
        "arrival_code": s.arrival_station.station_code,
        "departure_time": s.departure_time,
        "arrival_time": s.arrival_time,
        "base_fare": s.base_fare,
        "available_seats": s.available_seats,
        "status": s.status,
    }


def _schedule_query():
    return select(Schedule).options(
        joinedload(Schedule.train),
        joinedload(Schedule.departure_station),
        joinedload(Schedule.arrival_station),
    )


# ---------------------------------------------------------
# STATIONS
# ---------------------------------------------------------
@router.get("/stations")
def list_stations(city: Optional[str] = None, db: Session = Depends(get_db)):
    query = select(Station).order_by(Station.station_name)
    if city:
        query = query.where(func.lower(Station.city) == city.lower())
    return [station_to_dict(s) for s in db.execute(query).scalars()]


@router.get("/stations/search/{term}")
def search_stations(term: str, db: Session = Depends(get_db)):
    pattern = f"%{term}%"
    query = (
        select(Station)
        .where(or_(Station.station_name.ilike(pattern), Station.station_code.ilike(pattern)))
        .order_by(Station.station_name)
    )
    return [station_to_dict(s) for s in db.execute(query).scalars()]


@router.get("/stations/{station_id}")
def get_station(station_id: int, db: Session = Depends(get_db)):
    return station_to_dict(_get_or_404(db, Station, station_id, "Station"))


@router.post("/stations", status_code=201)
def create_station(body: StationCreate, db: Session = Depends(get_db),
                   admin: CurrentUser = Depends(require_admin)):
    station = Station(
        station_name=body.station_name,
        station_code=body.station_code.upper(),
        city=body.city,
        state=body.state,
    )
    db.add(station)
    _commit(db, "Station code already exists")
    logger.info("Station %s (%s) created by admin %s",
                station.station_id, station.station_code, admin.user_id)
    return station_to_dict(station)


@router.put("/stations/{station_id}")
def update_station(station_id: int, body: StationPatch, db: Session = Depends(get_db),
                   admin: CurrentUser = Depends(require_admin)):
    station = _get_or_404(db, Station, station_id, "Station")
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailed("No valid fields to update")
    if "station_code" in changes:
        changes["station_code"] = changes["station_code"].upper()

    for field, value in changes.items():
        setattr(station, field, value)
    _commit(db, "Station code already exists")
    logger.info("Station %s updated: %s", station_id, sorted(changes))
    return station_to_dict(station)


@router.delete("/stations/{station_id}")
def delete_station(station_id: int, db: Session = Depends(get_db),
                   admin: CurrentUser = Depends(require_admin)):
    station = _get_or_404(db, Station, station_id, "Station")
    db.delete(station)
    _commit(db, "Station is referenced by routes or schedules")
    logger.info("Station %s deleted by admin %s", station_id, admin.user_id)
    return {"message": "Station deleted successfully", "station_id": station_id}


# ---------------------------------------------------------
# ROUTES
# ---------------------------------------------------------
def _load_route(db: Session, route_id: int) -> Route:
    route = db.execute(
        select(Route)
        .where(Route.route_id == route_id)
        .options(joinedload(Route.stops).joinedload(RouteStation.station))
        .execution_options(populate_existing=True)
    ).unique().scalars().first()
    if route is None:
        raise NotFound("Route not found")
    return route


@router.get("/routes")
def list_routes(db: Session = Depends(get_db)):
    routes = db.execute(select(Route).order_by(Route.route_name)).scalars()
    return [route_to_dict(r) for r in routes]


@router.get("/routes/{route_id}")
def get_route(route_id: int, db: Session = Depends(get_db)):
    return route_to_dict(_load_route(db, route_id), with_stops=True)


@router.post("/routes", status_code=201)
def create_route(body: RouteCreate, db: Session = Depends(get_db),
                 admin: CurrentUser = Depends(require_admin)):
    route = Route(
        route_name=body.route_name,
        route_code=body.route_code.upper(),
        total_distance=body.total_distance,
    )
    db.add(route)
    _commit(db, "Route code already exists")
    logger.info("Route %s (%s) created by admin %s",
                route.route_id, route.route_code, admin.user_id)
    return route_to_dict(route)


@router.put("/routes/{route_id}")
def update_route(route_id: int, body: RoutePatch, db: Session = Depends(get_db),
                 admin: CurrentUser = Depends(require_admin)):
    route = _get_or_404(db, Route, route_id, "Route")
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailed("No valid fields to update")
    if "route_code" in changes:
        changes["route_code"] = changes["route_code"].upper()

    for field, value in changes.items():
        setattr(route, field, value)
    _commit(db, "Route code already exists")
    logger.info("Route %s updated: %s", route_id, sorted(changes))
    return route_to_dict(route)


@router.delete("/routes/{route_id}")
def delete_route(route_id: int, db: Session = Depends(get_db),
                 admin: CurrentUser = Depends(require_admin)):
    route = _load_route(db, route_id)
    db.delete(route)
    _commit(db, "Route is referenced by trains")
    logger.info("Route %s deleted by admin %s", route_id, admin.user_id)
    return {"message": "Route deleted successfully", "route_id": route_id}


@router.get("/routes/{route_id}/stations")
def list_route_stations(route_id: int, db: Session = Depends(get_db)):
    return [stop_to_dict(stop) for stop in _load_route(db, route_id).stops]


@router.post("/routes/{route_id}/stations", status_code=201)
def add_station_to_route(route_id: int, body: RouteStopCreate, db: Session = Depends(get_db),
                         admin: CurrentUser = Depends(require_admin)):
    _get_or_404(db, Route, route_id, "Route")
    _get_or_404(db, Station, body.station_id, "Station")

    db.add(RouteStation(
        route_id=route_id,
        station_id=body.station_id,
        stop_sequence=body.stop_sequence,
        distance_from_start=body.distance_from_start,
    ))
    _commit(db, "Station or stop sequence already used on this route")
    logger.info("Station %s added to route %s at stop %s",
                body.station_id, route_id, body.stop_sequence)
    return route_to_dict(_load_route(db, route_id), with_stops=True)


@router.delete("/routes/{route_id}/stations/{station_id}")
def remove_station_from_route(route_id: int, station_id: int, db: Session = Depends(get_db),
                              admin: CurrentUser = Depends(require_admin)):
    stop = db.execute(
        select(RouteStation).where(
            RouteStation.route_id == route_id, RouteStation.station_id == station_id
        )
    ).scalars().first()
    if stop is None:
        raise NotFound("Station is not part of this route")

    db.delete(stop)
    _commit(db, "Route stop could not be removed")
    logger.info("Station %s removed from route %s", station_id, route_id)
    return {"message": "Station removed from route", "route_id": route_id, "station_id": station_id}


# ---------------------------------------------------------
# TRAINS
# ---------------------------------------------------------
@router.get("/trains")
def list_trains(status: Optional[str] = None, db: Session = Depends(get_db)):
    query = select(Train).order_by(Train.train_name)
    if status:
        query = query.where(Train.status == status.upper())
    return [train_to_dict(t) for t in db.execute(query).scalars()]


@router.get("/trains/route/{route_id}")
def list_trains_by_route(route_id: int, db: Session = Depends(get_db)):
    query = select(Train).where(Train.route_id == route_id).order_by(Train.train_name)
    return [train_to_dict(t) for t in db.execute(query).scalars()]


@router.get("/trains/{train_id}")
def get_train(train_id: int, db: Session = Depends(get_db)):
    return train_to_dict(_get_or_404(db, Train, train_id, "Train"))


@router.post("/trains", status_code=201)
def create_train(body: TrainCreate, db: Session = Depends(get_db),
                 admin: CurrentUser = Depends(require_admin)):
    if body.route_id is not None:
        _get_or_404(db, Route, body.route_id, "Route")

    train = Train(**body.model_dump())
    db.add(train)
    _commit(db, "Train number already exists")
    logger.info("Train %s (%s) created by admin %s",
                train.train_id, train.train_number, admin.user_id)
    return train_to_dict(train)


@router.put("/trains/{train_id}")
def update_train(train_id: int, body: TrainPatch, db: Session = Depends(get_db),
                 admin: CurrentUser = Depends(require_admin)):
    train = _get_or_404(db, Train, train_id, "Train")
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailed("No valid fields to update")
    if "route_id" in changes:
        _get_or_404(db, Route, changes["route_id"], "Route")

    if "total_capacity" in changes:
        most_free = db.execute(
            select(func.max(Schedule.available_seats)).where(Schedule.train_id == train_id)
        ).scalar()
        if most_free is not None and changes["total_capacity"] < most_free:
            raise ValidationFailed(
                f"Capacity cannot drop below available seats of existing schedules ({most_free})"
            )

    for field, value in changes.items():
        setattr(train, field, value)
    _commit(db, "Train number already exists")
    logger.info("Train %s updated: %s", train_id, sorted(changes))
    return train_to_dict(train)


@router.delete("/trains/{train_id}")
def delete_train(train_id: int, db: Session = Depends(get_db),
                 admin: CurrentUser = Depends(require_admin)):
    train = _get_or_404(db, Train, train_id, "Train")
    db.delete(train)
    _commit(db, "Train has schedules and cannot be deleted")
    logger.info("Train %s deleted by admin %s", train_id, admin.user_id)
    return {"message": "Train deleted successfully", "train_id": train_id}


# ---------------------------------------------------------
# SCHEDULES
# ---------------------------------------------------------
def _load_schedule(db: Session, schedule_id: int) -> Schedule:
    schedule = db.execute(
        _schedule_query()
        .where(Schedule.schedule_id == schedule_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if schedule is None:
        raise NotFound("Schedule not found")
    return schedule


def _check_schedule(db: Session, train_id, departure_station_id, arrival_station_id,
                    departure_time, arrival_time, available_seats):
    train = _get_or_404(db, Train, train_id, "Train")
    _get_or_404(db, Station, departure_station_id, "Departure station")
    _get_or_404(db, Station, arrival_station_id, "Arrival station")

    if departure_station_id == arrival_station_id:
        raise ValidationFailed("Departure and arrival stations must be different")
    if arrival_time <= departure_time:
        raise ValidationFailed("Arrival time must be after departure time")
    if available_seats is not None and available_seats > train.total_capacity:
        raise ValidationFailed(
            f"Available seats cannot exceed train capacity ({train.total_capacity})"
        )
    return train


def _day_bounds(day: datetime.date):
    return (
        datetime.datetime.combine(day, datetime.time.min),
        datetime.datetime.combine(day, datetime.time.max),
    )


@router.get("/schedules")
def list_schedules(
    status: Optional[str] = None,
    date_from: Optional[datetime.date] = None,
    date_to: Optional[datetime.date] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    query = _schedule_query()
    if status:
        query = query.where(Schedule.status == status.upper())
    if date_from:
        query = query.where(Schedule.departure_time >= _day_bounds(date_from)[0])
    if date_to:
        query = query.where(Schedule.departure_time <= _day_bounds(date_to)[1])

    query = query.order_by(Schedule.departure_time).offset((page - 1) * limit).limit(limit)
    return [schedule_to_dict(s) for s in db.execute(query).scalars()]


@router.get("/schedules/search/routes")
def search_schedules(
    departure_station: str,
    arrival_station: str,
    travel_date: Optional[datetime.date] = None,
    db: Session = Depends(get_db),
):
    dep = aliased(Station)
    arr = aliased(Station)
    dep_pattern = f"%{departure_station}%"
    arr_pattern = f"%{arrival_station}%"

    query = (
        _schedule_query()
        .join(dep, Schedule.departure_station_id == dep.station_id)
        .join(arr, Schedule.arrival_station_id == arr.station_id)
        .where(
            or_(dep.station_name.ilike(dep_pattern), dep.station_code.ilike(dep_pattern)),
            or_(arr.station_name.ilike(arr_pattern), arr.station_code.ilike(arr_pattern)),
            Schedule.status.in_(("SCHEDULED", "DELAYED")),
        )
    )
    if travel_date:
        start, end = _day_bounds(travel_date)
        query = query.where(Schedule.departure_time >= start, Schedule.departure_time <= end)

    query = query.order_by(Schedule.departure_time)
    return [schedule_to_dict(s) for s in db.execute(query).scalars()]


@router.get("/schedules/train/{train_id}")
def list_schedules_by_train(train_id: int, db: Session = Depends(get_db)):
    query = _schedule_query().where(Schedule.train_id == train_id).order_by(Schedule.departure_time)
    return [schedule_to_dict(s) for s in db.execute(query).scalars()]


@router.get("/schedules/{schedule_id}")
def get_schedule(schedule_id: int, db: Session = Depends(get_db)):
    return schedule_to_dict(_load_schedule(db, schedule_id))


@router.post("/schedules", status_code=201)
def create_schedule(body: ScheduleCreate, db: Session = Depends(get_db),
                    admin: CurrentUser = Depends(require_admin)):
    train = _check_schedule(
        db, body.train_id, body.departure_station_id, body.arrival_station_id,
        body.departure_time, body.arrival_time, body.available_seats,
    )
    seats = body.available_seats if body.available_seats is not None else train.total_capacity

    schedule = Schedule(
        train_id=body.train_id,
        departure_station_id=body.departure_station_id,
        arrival_station_id=body.arrival_station_id,
        departure_time=body.departure_time,
        arrival_time=body.arrival_time,
        base_fare=body.base_fare,
        available_seats=seats,
        status=body.status,
    )
    db.add(schedule)
    _commit(db, "Schedule could not be created")
    logger.info("Schedule %s created for train %s with %s seats",
                schedule.schedule_id, schedule.train_id, seats)
    return schedule_to_dict(_load_schedule(db, schedule.schedule_id))


@router.put("/schedules/{schedule_id}")
def update_schedule(schedule_id: int, body: SchedulePatch, db: Session = Depends(get_db),
                    admin: CurrentUser = Depends(require_admin)):
    schedule = _load_schedule(db, schedule_id)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailed("No valid fields to update")

    merged = {
        "train_id": schedule.train_id,
        "departure_station_id": schedule.departure_station_id,
        "arrival_station_id": schedule.arrival_station_id,
        "departure_time": schedule.departure_time,
        "arrival_time": schedule.arrival_time,
        "available_seats": schedule.available_seats,
    }
    merged.update({k: v for k, v in changes.items() if k in merged})
    _check_schedule(db, **merged)

    for field, value in changes.items():
        setattr(schedule, field, value)
    _commit(db, "Schedule could not be updated")
    logger.info("Schedule %s updated: %s", schedule_id, sorted(changes))
    return schedule_to_dict(_load_schedule(db, schedule_id))


@router.put("/schedules/{schedule_id}/status")
def update_schedule_status(schedule_id: int, body: ScheduleStatusUpdate,
                           db: Session = Depends(get_db),
                           admin: CurrentUser = Depends(require_admin)):
    schedule = _get_or_404(db, Schedule, schedule_id, "Schedule")
    schedule.status = body.status
    _commit(db, "Schedule status could not be updated")
    logger.info("Schedule %s status set to %s", schedule_id, body.status)
    return {"message": "Schedule status updated successfully",
            "schedule_id": schedule_id, "status": body.status}


@router.delete("/schedules/{schedule_id}")
def delete_schedule(schedule_id: int, db: Session = Depends(get_db),
                    admin: CurrentUser = Depends(require_admin)):
    schedule = _get_or_404(db, Schedule, schedule_id, "Schedule")
    db.delete(schedule)
    _commit(db, "Schedule has reservations and cannot be deleted")
    logger.info("Schedule %s deleted by admin %s", schedule_id, admin.user_id)
    return {"message": "Schedule deleted successfully", "schedule_id": schedule_id}
