from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

import auth_utils
import crud
import models
import notifier
import schemas
from connections import get_registry
from database import get_db

router = APIRouter(
    prefix="/book-requests",
    tags=["Book Requests"],
    responses={404: {"description": "Not found"}},
)


@router.post("", response_model=schemas.BookRequestOut, status_code=status.HTTP_201_CREATED)
def create_book_request(
    payload: schemas.BookRequestCreate,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    current_user: models.User = Depends(auth_utils.get_member_user),
):
    request = crud.add_book_request(current_user.id, payload, db)
    notifier.book_request_created(db, registry, request)
    return request


@router.get("", response_model=List[schemas.BookRequestWithUser])
def list_book_requests(
    db: Session = Depends(get_db),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    return crud.list_book_requests(db)


@router.get("/mine", response_model=List[schemas.BookRequestOut])
def my_book_requests(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_member_user),
):
    return crud.list_book_requests(db, user_id=current_user.id)


def _transition(request_id: int, action: str, db: Session, registry, comment=None):
    request = crud.transition_book_request(request_id, action, db, comment=comment)
    notifier.book_request_changed(db, registry, request)
    return request


@router.put("/{request_id}/approve", response_model=schemas.BookRequestOut)
def approve_book_request(
    request_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    return _transition(request_id, "approve", db, registry)


@router.put("/{request_id}/reject", response_model=schemas.BookRequestOut)
def reject_book_request(
    request_id: int,
    payload: schemas.RejectRequest,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    return _transition(request_id, "reject", db, registry, comment=payload.comment)


@router.put("/{request_id}/start-acquisition", response_model=schemas.BookRequestOut)
def start_acquisition(
    request_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    return _transition(request_id, "start_acquisition", db, registry)


@router.put("/{request_id}/complete-acquisition", response_model=schemas.BookRequestOut)
def complete_acquisition(
    request_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    _admin: models.User = Depends(auth_utils.get_admin_user),
):
    return _transition(request_id, "complete_acquisition", db, registry)
