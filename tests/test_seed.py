from sqlalchemy import func, select

from models_all import Schedule, Station
from seed_all import seed


def test_seed_is_idempotent(db):
    first = seed(db)
    second = seed(db)

    assert first["schedules_added"] == 5
    assert second["schedules_added"] == 0
    assert db.execute(select(func.count(Station.station_id))).scalar() == 5
    assert db.execute(select(func.count(Schedule.schedule_id))).scalar() == 5
