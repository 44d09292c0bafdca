# accounts.py
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import (
    CurrentUser, create_access_token, get_current_user, hash_password, require_admin,
    verify_password
)
from errors import Conflict, NotFound, Unauthorized, ValidationFailed
from models_all import Admin, Passenger, get_db
from schemas import (
    AdminCreate, AdminProfilePatch, ChangePassword, LoginRequest, PassengerProfilePatch,
    PassengerRegister, UserStatusUpdate, UserType, parse_patch
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------
# UTIL
# ---------------------------------------------------------
def passenger_to_dict(p: Passenger) -> dict:
    return {
        "passenger_id": p.passenger_id,
        "username": p.username,
        "email": p.email,
        "full_name": p.full_name,
        "phone": p.phone,
        "date_of_birth": p.date_of_birth,
        "gender": p.gender,
        "status": p.status,
        "created_at": p.created_at,
    }


def admin_to_dict(a: Admin) -> dict:
    return {
        "admin_id": a.admin_id,
        "username": a.username,
        "email": a.email,
        "full_name": a.full_name,
        "employee_id": a.employee_id,
        "role": a.role,
        "status": a.status,
        "created_at": a.created_at,
    }


def _account_exists(db: Session, model, username: str, email: str) -> bool:
    found = db.execute(
        select(model).where(or_(model.username == username, model.email == email))
    ).first()
    return found is not None


def _commit(db: Session, conflict_message: str):
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise Conflict(conflict_message) from exc


def _load_account(db: Session, user: CurrentUser):
    model = Admin if user.is_admin else Passenger
    account = db.get(model, user.user_id)
    if account is None:
        raise NotFound("User not found")
    return account


def _login(db: Session, model, body: LoginRequest):
    account = db.execute(
        select(model).where(model.username == body.username)
    ).scalars().first()
    if account is None:
        raise Unauthorized("Invalid username or password")
    if account.status != "ACTIVE":
        raise Unauthorized("Account is not active")
    if not verify_password(body.password, account.password_hash):
        raise Unauthorized("Invalid username or password")
    return account


# ---------------------------------------------------------
# AUTH
# ---------------------------------------------------------
@router.post("/auth/passenger/register", status_code=201)
def register_passenger(body: PassengerRegister, request: Request, db: Session = Depends(get_db)):
    if _account_exists(db, Passenger, body.username, body.email):
        raise Conflict("Username or email already exists")

    passenger = Passenger(
        username=body.username,
        email=body.email,
        password_hash=hash_password(body.password),
        full_name=body.full_name,
        phone=body.phone or None,
        date_of_birth=body.date_of_birth,
        gender=body.gender,
    )
    db.add(passenger)
    _commit(db, "Username or email already exists")
    logger.info("Passenger %s registered", passenger.passenger_id)

    token = create_access_token(
        request.app.state.settings, passenger.passenger_id, "passenger", passenger.username
    )
    return {**passenger_to_dict(passenger), "token": token}


@router.post("/auth/passenger/login")
def login_passenger(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    passenger = _login(db, Passenger, body)
    token = create_access_token(
        request.app.state.settings, passenger.passenger_id, "passenger", passenger.username
    )
    return {**passenger_to_dict(passenger), "token": token}


@router.post("/auth/admin/login")
def login_admin(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    admin = _login(db, Admin, body)
    token = create_access_token(
        request.app.state.settings, admin.admin_id, "admin", admin.username, role=admin.role
    )
    return {**admin_to_dict(admin), "token": token}


@router.post("/auth/admin/create", status_code=201)
def create_admin(body: AdminCreate, db: Session = Depends(get_db),
                 current: CurrentUser = Depends(require_admin)):
    if _account_exists(db, Admin, body.username, body.email):
        raise Conflict("Username or email already exists")

    admin = Admin(
        username=body.username,
        email=body.email,
        password_hash=hash_password(body.password),
        full_name=body.full_name,
        employee_id=body.employee_id,
        role=body.role,
        created_by=current.user_id,
    )
    db.add(admin)
    _commit(db, "Username or email already exists")
    logger.info("Admin %s created by admin %s", admin.admin_id, current.user_id)
    return admin_to_dict(admin)


@router.get("/auth/profile")
def get_profile(db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    account = _load_account(db, user)
    if user.is_admin:
        return admin_to_dict(account)
    return passenger_to_dict(account)


@router.put("/auth/profile")
def update_profile(payload: dict = Body(...), db: Session = Depends(get_db),
                   user: CurrentUser = Depends(get_current_user)):
    patch = parse_patch(AdminProfilePatch if user.is_admin else PassengerProfilePatch, payload)
    changes = patch.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        raise ValidationFailed("No valid fields to update")

    account = _load_account(db, user)
    for field, value in changes.items():
        setattr(account, field, value)
    _commit(db, "Email already in use")

    if user.is_admin:
        return admin_to_dict(account)
    return passenger_to_dict(account)


@router.post("/auth/change-password")
def change_password(body: ChangePassword, db: Session = Depends(get_db),
                    user: CurrentUser = Depends(get_current_user)):
    account = _load_account(db, user)
    if not verify_password(body.current_password, account.password_hash):
        raise ValidationFailed("Current password is incorrect")

    account.password_hash = hash_password(body.new_password)
    db.commit()
    logger.info("Password changed for %s %s", user.user_type, user.user_id)
    return {"message": "Password changed successfully"}


@router.post("/auth/logout")
def logout():
    # tokens are stateless; the client discards its copy
    return {"message": "Logout successful"}


# ---------------------------------------------------------
# ADMIN
# ---------------------------------------------------------
@router.get("/admin/users")
def list_users(user_type: Optional[str] = Query(None, pattern="^(passenger|admin)$"),
               db: Session = Depends(get_db), admin: CurrentUser = Depends(require_admin)):
    users = []
    if user_type in (None, "passenger"):
        passengers = db.execute(select(Passenger).order_by(Passenger.passenger_id)).scalars()
        users += [{**passenger_to_dict(p), "user_type": "passenger"} for p in passengers]
    if user_type in (None, "admin"):
        admins = db.execute(select(Admin).order_by(Admin.admin_id)).scalars()
        users += [{**admin_to_dict(a), "user_type": "admin"} for a in admins]
    return users


def _find_user(db: Session, user_id: int, user_type: Optional[str]):
    # passengers first when the type is not given, as in the user listing
    if user_type in (None, "passenger"):
        passenger = db.get(Passenger, user_id)
        if passenger is not None:
            return {**passenger_to_dict(passenger), "user_type": "passenger"}
    if user_type in (None, "admin"):
        admin = db.get(Admin, user_id)
        if admin is not None:
            return {**admin_to_dict(admin), "user_type": "admin"}
    raise NotFound("User not found")


@router.get("/admin/users/{user_id}")
def get_user(user_id: int, user_type: Optional[UserType] = None,
             db: Session = Depends(get_db), admin: CurrentUser = Depends(require_admin)):
    return _find_user(db, user_id, user_type)


@router.put("/admin/users/{user_id}/status")
def update_user_status(user_id: int, body: UserStatusUpdate, db: Session = Depends(get_db),
                       admin: CurrentUser = Depends(require_admin)):
    model = Admin if body.user_type == "admin" else Passenger
    account = db.get(model, user_id)
    if account is None:
        raise NotFound("User not found")

    account.status = body.status
    db.commit()
    logger.info("%s %s status set to %s by admin %s",
                body.user_type.title(), user_id, body.status, admin.user_id)
    return {"message": "User status updated successfully",
            "user_id": user_id, "user_type": body.user_type, "status": body.status}
