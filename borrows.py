import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

import auth_utils
import crud
import models
import notifier
import schemas
from connections import get_registry
from database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/borrows", tags=["Borrows"])


@router.post("", response_model=schemas.BorrowOut, status_code=status.HTTP_201_CREATED)
def borrow_book(
    payload: schemas.BorrowCreate,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    current_user: models.User = Depends(auth_utils.get_any_role_user),
):
    borrow = crud.borrow_book(current_user.id, payload.book_id, payload.return_date, db)
    logger.info("User %s borrowed book %s (borrow %s)", current_user.id, borrow.book_id, borrow.id)
    notifier.book_borrowed(db, registry, borrow, borrow.book, current_user)
    return borrow


@router.put("/{borrow_id}/return", response_model=schemas.BorrowOut)
def return_book(
    borrow_id: int,
    db: Session = Depends(get_db),
    registry=Depends(get_registry),
    current_user: models.User = Depends(auth_utils.get_any_role_user),
):
    borrow = crud.get_borrow_by_id(borrow_id, db)
    if current_user.role == models.UserRole.MEMBER.value and borrow.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to perform this action",
        )
    borrow = crud.return_book(borrow_id, db)
    logger.info("Borrow %s returned", borrow.id)
    notifier.book_returned(db, registry, borrow, borrow.book, borrow.user)
    return borrow


@router.get("/user", response_model=List[schemas.BorrowWithStatus])
def user_borrows(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth_utils.get_current_user),
):
    return crud.list_user_borrows(current_user.id, db)


@router.get("", response_model=List[schemas.BorrowWithStatus])
def all_borrows(
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    _staff: models.User = Depends(auth_utils.get_librarian_user),
):
    return crud.list_borrows(db, skip=skip, limit=limit)
