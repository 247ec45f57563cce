from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from typing import List, Optional

import admin_schemas as schemas
import auth_utils
import models
from database import get_db
from errors import InvalidOperation, NotFound, Conflict

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    responses={404: {"description": "Not found"}},
)


def _get_user(user_id: int, db: Session) -> models.User:
    db_user = db.get(models.User, user_id)
    if db_user is None:
        raise NotFound("User not found")
    return db_user


# User Management Endpoints
@router.get("/users", response_model=List[schemas.UserResponse])
def read_users(
    skip: int = 0,
    limit: int = 100,
    role: Optional[models.UserRole] = None,
    db: Session = Depends(get_db),
    _staff: models.User = Depends(auth_utils.get_librarian_user),
):
    query = db.query(models.User)
    if role:
        query = query.filter(models.User.role == role.value)
    return query.order_by(models.User.id).offset(skip).limit(limit).all()


@router.get("/users/{user_id}", response_model=schemas.UserResponse)
def read_user(
    user_id: int,
    db: Session = Depends(get_db),
    _staff: models.User = Depends(auth_utils.get_librarian_user),
):
    return _get_user(user_id, db)


@router.patch("/users/{user_id}", response_model=schemas.UserResponse)
def update_user_role(
    user_id: int,
    payload: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_admin_user),
):
    db_user = _get_user(user_id, db)
    if db_user.id == current_user.id and payload.role != models.UserRole.ADMIN:
        raise InvalidOperation("Cannot remove your own admin role")
    db_user.role = payload.role.value
    db.commit()
    db.refresh(db_user)
    return db_user


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_admin_user),
):
    if user_id == current_user.id:
        raise InvalidOperation("Cannot delete yourself")
    db_user = _get_user(user_id, db)
    if db.query(models.Borrow).filter(models.Borrow.user_id == user_id).first():
        raise Conflict("User has borrow history and cannot be deleted")
    db.query(models.Notification).filter(models.Notification.user_id == user_id).delete(synchronize_session=False)
    db.query(models.BookRequest).filter(models.BookRequest.user_id == user_id).delete(synchronize_session=False)
    db.delete(db_user)
    db.commit()
    return None


# Scheduled sweeps, on demand
@router.post("/sweeps/{key}")
def run_sweep(
    key: str,
    request: Request,
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    scheduler = request.app.state.scheduler
    sweep = scheduler.get(key)
    if sweep is None:
        raise NotFound("Unknown sweep")
    count = sweep.run(scheduler.registry, raise_errors=True)
    if count is None:
        raise Conflict(f"{sweep.name} is already running")
    return {"sweep": sweep.key, "notified": count}
