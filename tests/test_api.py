import logging
from contextlib import contextmanager

from sqlalchemy import update

from models_all import Passenger


def reserve(client, headers, schedule_id, **extra):
    body = {
        "schedule_id": schedule_id,
        "passenger_name": "Alice",
        "passenger_age": 30,
        "passenger_gender": "FEMALE",
        **extra,
    }
    return client.post("/reservations", json=body, headers=headers)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "OK"


def test_request_sessions_come_from_the_database(client, monkeypatch):
    database = client.app.state.database
    opened = []
    original = database.session

    @contextmanager
    def counting_session():
        with original() as session:
            opened.append(session)
            yield session

    monkeypatch.setattr(database, "session", counting_session)

    assert client.get("/stations").status_code == 200
    assert len(opened) == 1


# -------------------------
# RESERVATIONS
# -------------------------

def test_booking_requires_a_token(client, make_schedule):
    schedule_id = make_schedule(seats=1)
    res = reserve(client, {}, schedule_id)
    assert res.status_code == 401
    assert res.json()["kind"] == "Unauthorized"


def test_booking_rejects_garbage_token(client, make_schedule):
    schedule_id = make_schedule(seats=1)
    res = reserve(client, {"Authorization": "Bearer not-a-jwt"}, schedule_id)
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid token"


def test_admins_do_not_book(client, admin_headers, make_schedule):
    schedule_id = make_schedule(seats=1)
    res = reserve(client, admin_headers, schedule_id)
    assert res.status_code == 403


def test_missing_fields_are_a_validation_error(client, passenger_headers, make_schedule):
    schedule_id = make_schedule(seats=1)
    res = client.post("/reservations", json={"schedule_id": schedule_id}, headers=passenger_headers)
    assert res.status_code == 400
    assert res.json()["kind"] == "ValidationError"


def test_unknown_schedule_is_404(client, passenger_headers):
    res = reserve(client, passenger_headers, 9999)
    assert res.status_code == 404
    assert res.json()["code"] == "SCHEDULE_NOT_FOUND"


def test_booking_lifecycle(client, passenger_headers, other_headers, make_schedule):
    schedule_id = make_schedule(seats=1, fare="500.00")

    res = reserve(client, passenger_headers, schedule_id)
    assert res.status_code == 201
    booking = res.json()
    assert booking["booking_status"] == "CONFIRMED"
    assert booking["seat_number"] == "S1"
    assert booking["fare_amount"] == 500
    assert booking["departure_station"] == "New Delhi"

    sold_out = reserve(client, passenger_headers, schedule_id)
    assert sold_out.status_code == 400
    assert sold_out.json()["code"] == "SOLD_OUT"

    reservation_id = booking["reservation_id"]
    mine = client.get(f"/reservations/{reservation_id}", headers=passenger_headers)
    assert mine.status_code == 200
    assert mine.json()["booking_reference"] == booking["booking_reference"]

    theirs = client.get(f"/reservations/{reservation_id}", headers=other_headers)
    assert theirs.status_code == 404

    by_ref = client.get(f"/reservations/booking/{booking['booking_reference']}")
    assert by_ref.status_code == 200
    assert by_ref.json()["reservation_id"] == reservation_id

    cancelled = client.delete(f"/reservations/{reservation_id}", headers=passenger_headers)
    assert cancelled.status_code == 200
    assert cancelled.json()["booking_status"] == "CANCELLED"

    again = client.delete(f"/reservations/{reservation_id}", headers=passenger_headers)
    assert again.status_code == 400
    assert again.json()["code"] == "ALREADY_CANCELLED"

    schedule = client.get(f"/schedules/{schedule_id}").json()
    assert schedule["available_seats"] == 0


def test_cancel_restores_seat_when_configured(client, settings, passenger_headers, make_schedule):
    client.app.state.settings = settings.model_copy(update={"restore_seats_on_cancel": True})
    schedule_id = make_schedule(seats=1)

    booking = reserve(client, passenger_headers, schedule_id).json()
    res = client.delete(f"/reservations/{booking['reservation_id']}", headers=passenger_headers)
    assert res.json()["seat_restored"] is True
    assert client.get(f"/schedules/{schedule_id}").json()["available_seats"] == 1


def test_admin_status_cancel_restores_seat_when_configured(client, settings, passenger_headers,
                                                          admin_headers, make_schedule):
    client.app.state.settings = settings.model_copy(update={"restore_seats_on_cancel": True})
    schedule_id = make_schedule(seats=1)

    booking = reserve(client, passenger_headers, schedule_id).json()
    res = client.put(f"/reservations/{booking['reservation_id']}/status",
                     json={"booking_status": "CANCELLED"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["booking_status"] == "CANCELLED"
    assert client.get(f"/schedules/{schedule_id}").json()["available_seats"] == 1


def test_passenger_patch_is_typed(client, passenger_headers, make_schedule):
    schedule_id = make_schedule(seats=1)
    reservation_id = reserve(client, passenger_headers, schedule_id).json()["reservation_id"]

    forbidden = client.put(f"/reservations/{reservation_id}", json={"seat_number": "S9"},
                           headers=passenger_headers)
    assert forbidden.status_code == 400
    assert forbidden.json()["kind"] == "ValidationError"

    empty = client.put(f"/reservations/{reservation_id}", json={}, headers=passenger_headers)
    assert empty.status_code == 400

    ok = client.put(f"/reservations/{reservation_id}", json={"passenger_name": "Alicia"},
                    headers=passenger_headers)
    assert ok.status_code == 200
    assert ok.json()["passenger_name"] == "Alicia"


def test_admin_lists_reservations_for_schedule(client, passenger_headers, admin_headers,
                                                make_schedule):
    schedule_id = make_schedule(seats=2)
    reserve(client, passenger_headers, schedule_id)
    reserve(client, passenger_headers, schedule_id)

    res = client.get(f"/reservations/schedule/{schedule_id}", headers=admin_headers)
    assert res.status_code == 200
    assert sorted(r["seat_number"] for r in res.json()) == ["S1", "S2"]

    denied = client.get(f"/reservations/schedule/{schedule_id}", headers=passenger_headers)
    assert denied.status_code == 403


# -------------------------
# PAYMENTS
# -------------------------

def test_payment_and_refund_flow(client, passenger_headers, admin_headers, make_schedule):
    schedule_id = make_schedule(seats=1, fare="500.00")
    reservation_id = reserve(client, passenger_headers, schedule_id).json()["reservation_id"]

    created = client.post("/payments", json={"reservation_id": reservation_id,
                                             "payment_method": "CARD", "amount": "1000.00"},
                          headers=passenger_headers)
    assert created.status_code == 201
    payment = created.json()
    assert payment["payment_status"] == "PENDING"
    assert payment["transaction_id"].startswith("TXN")

    duplicate = client.post("/payments", json={"reservation_id": reservation_id,
                                               "payment_method": "CARD"},
                            headers=passenger_headers)
    assert duplicate.status_code == 400
    assert duplicate.json()["code"] == "DUPLICATE_PAYMENT"

    payment_id = payment["payment_id"]
    early = client.post(f"/payments/{payment_id}/refund", json={"refund_amount": 100},
                        headers=admin_headers)
    assert early.json()["code"] == "NOT_COMPLETED"

    done = client.put(f"/payments/{payment_id}/status", json={"payment_status": "COMPLETED"},
                      headers=admin_headers)
    assert done.status_code == 200

    denied = client.post(f"/payments/{payment_id}/refund", json={"refund_amount": 100},
                         headers=passenger_headers)
    assert denied.status_code == 403

    partial = client.post(f"/payments/{payment_id}/refund", json={"refund_amount": 400},
                          headers=admin_headers)
    assert partial.status_code == 200
    assert partial.json()["total_refund_amount"] == 400

    too_much = client.post(f"/payments/{payment_id}/refund", json={"refund_amount": 700},
                           headers=admin_headers)
    assert too_much.status_code == 400
    assert too_much.json()["code"] == "EXCEEDS_AMOUNT"

    stored = client.get(f"/payments/{payment_id}", headers=passenger_headers).json()
    assert stored["refund_amount"] == 400
    assert stored["payment_status"] == "COMPLETED"


def test_refund_amount_must_be_positive(client, admin_headers):
    res = client.post("/payments/1/refund", json={"refund_amount": 0}, headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["kind"] == "ValidationError"


# -------------------------
# ACCOUNTS
# -------------------------

def test_register_and_login(client):
    body = {"username": "carol", "email": "carol@example.com", "password": "secret123",
            "full_name": "Carol Rider"}
    res = client.post("/auth/passenger/register", json=body)
    assert res.status_code == 201
    assert res.json()["token"]

    duplicate = client.post("/auth/passenger/register", json=body)
    assert duplicate.status_code == 409

    login = client.post("/auth/passenger/login",
                        json={"username": "carol", "password": "secret123"})
    assert login.status_code == 200
    token = login.json()["token"]

    wrong = client.post("/auth/passenger/login", json={"username": "carol", "password": "nope"})
    assert wrong.status_code == 401

    profile = client.get("/auth/profile", headers={"Authorization": f"Bearer {token}"})
    assert profile.status_code == 200
    assert profile.json()["email"] == "carol@example.com"


def test_suspended_passenger_cannot_log_in(client, db, passenger):
    db.execute(update(Passenger).where(Passenger.passenger_id == passenger.user_id)
               .values(status="SUSPENDED"))
    db.commit()

    res = client.post("/auth/passenger/login", json={"username": "alice", "password": "secret123"})
    assert res.status_code == 401


def test_change_password(client, passenger_headers):
    bad = client.post("/auth/change-password",
                      json={"current_password": "wrong", "new_password": "another123"},
                      headers=passenger_headers)
    assert bad.status_code == 400

    ok = client.post("/auth/change-password",
                     json={"current_password": "secret123", "new_password": "another123"},
                     headers=passenger_headers)
    assert ok.status_code == 200

    login = client.post("/auth/passenger/login",
                        json={"username": "alice", "password": "another123"})
    assert login.status_code == 200


def test_admin_login_and_user_listing(client, admin, passenger, passenger_headers):
    login = client.post("/auth/admin/login", json={"username": "root", "password": "admin123"})
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['token']}"}

    users = client.get("/admin/users", headers=headers)
    assert users.status_code == 200
    assert {u["user_type"] for u in users.json()} == {"passenger", "admin"}

    only_passengers = client.get("/admin/users?user_type=passenger", headers=headers)
    assert [u["username"] for u in only_passengers.json()] == ["alice"]

    assert client.get("/admin/users", headers=passenger_headers).status_code == 403


def test_admin_reads_a_single_user(client, admin, passenger, admin_headers, passenger_headers):
    found = client.get(f"/admin/users/{passenger.user_id}?user_type=passenger",
                       headers=admin_headers)
    assert found.status_code == 200
    assert found.json()["username"] == "alice"
    assert found.json()["user_type"] == "passenger"

    as_admin = client.get(f"/admin/users/{admin.user_id}?user_type=admin", headers=admin_headers)
    assert as_admin.json()["username"] == "root"
    assert as_admin.json()["user_type"] == "admin"

    assert client.get("/admin/users/4242", headers=admin_headers).status_code == 404
    assert client.get("/admin/users/1?user_type=robot", headers=admin_headers).status_code == 400
    assert client.get(f"/admin/users/{passenger.user_id}",
                      headers=passenger_headers).status_code == 403


def test_admin_sets_user_status(client, admin, passenger, admin_headers):
    res = client.put(f"/admin/users/{passenger.user_id}/status",
                     json={"status": "SUSPENDED", "user_type": "passenger"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "SUSPENDED"
    login = client.post("/auth/passenger/login",
                        json={"username": "alice", "password": "secret123"})
    assert login.status_code == 401

    res = client.put(f"/admin/users/{admin.user_id}/status",
                     json={"status": "SUSPENDED", "user_type": "admin"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["user_type"] == "admin"
    login = client.post("/auth/admin/login", json={"username": "root", "password": "admin123"})
    assert login.status_code == 401

    missing = client.put("/admin/users/4242/status",
                         json={"status": "ACTIVE", "user_type": "admin"}, headers=admin_headers)
    assert missing.status_code == 404
    untyped = client.put(f"/admin/users/{admin.user_id}/status",
                         json={"status": "ACTIVE"}, headers=admin_headers)
    assert untyped.status_code == 400


# -------------------------
# CATALOG
# -------------------------

def test_catalog_writes_are_admin_only(client, admin_headers, passenger_headers):
    body = {"station_name": "Bhopal Junction", "station_code": "bpl", "city": "Bhopal"}

    assert client.post("/stations", json=body, headers=passenger_headers).status_code == 403

    created = client.post("/stations", json=body, headers=admin_headers)
    assert created.status_code == 201
    assert created.json()["station_code"] == "BPL"

    duplicate = client.post("/stations", json=body, headers=admin_headers)
    assert duplicate.status_code == 409


def test_catalog_writes_are_logged(client, admin_headers, caplog):
    body = {"station_name": "Bhopal Junction", "station_code": "BPL", "city": "Bhopal"}

    with caplog.at_level(logging.INFO, logger="catalog"):
        station_id = client.post("/stations", json=body, headers=admin_headers).json()["station_id"]
        client.put(f"/stations/{station_id}", json={"city": "Bhopal City"}, headers=admin_headers)
        client.delete(f"/stations/{station_id}", headers=admin_headers)

    messages = [r.getMessage() for r in caplog.records if r.name == "catalog"]
    assert any(m.startswith(f"Station {station_id} (BPL) created") for m in messages)
    assert f"Station {station_id} updated: ['city']" in messages
    assert any(m.startswith(f"Station {station_id} deleted") for m in messages)


def test_schedule_creation_and_search(client, admin_headers, stations):
    origin, destination = stations
    train = client.post("/trains", json={"train_name": "Gatimaan", "train_number": "12049",
                                         "train_type": "EXPRESS", "total_capacity": 40},
                        headers=admin_headers)
    assert train.status_code == 201
    train_id = train.json()["train_id"]

    same_station = client.post("/schedules", json={
        "train_id": train_id,
        "departure_station_id": origin.station_id,
        "arrival_station_id": origin.station_id,
        "departure_time": "2030-03-01T08:00:00",
        "arrival_time": "2030-03-01T10:00:00",
        "base_fare": "650.00",
    }, headers=admin_headers)
    assert same_station.status_code == 400

    created = client.post("/schedules", json={
        "train_id": train_id,
        "departure_station_id": origin.station_id,
        "arrival_station_id": destination.station_id,
        "departure_time": "2030-03-01T08:00:00",
        "arrival_time": "2030-03-01T10:00:00",
        "base_fare": "650.00",
    }, headers=admin_headers)
    assert created.status_code == 201
    assert created.json()["available_seats"] == 40

    found = client.get("/schedules/search/routes",
                       params={"departure_station": "NDLS", "arrival_station": "agra",
                               "travel_date": "2030-03-01"})
    assert found.status_code == 200
    assert [s["train_name"] for s in found.json()] == ["Gatimaan"]
