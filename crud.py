from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Book, Borrow, BookRequest, Notification, BorrowStatus, RequestStatus
from schemas import BookCreate, BookUpdate, BookRequestCreate
from errors import NotFound, InvalidOperation, InvalidState, Conflict


def _integrity_message(e: IntegrityError) -> str:
    return str(e.orig) if getattr(e, 'orig', None) else str(e)


# --- Book CRUD ---
def add_book(book_data: BookCreate, db: Session) -> Book:
    # Guard against duplicates before hitting DB constraints
    if db.query(Book).filter(Book.isbn == book_data.isbn).first():
        raise Conflict("A book with this ISBN already exists.")
    if book_data.barcode and db.query(Book).filter(Book.barcode == book_data.barcode).first():
        raise Conflict("A book with this barcode already exists.")

    available = book_data.available_quantity
    new_book = Book(
        title=book_data.title,
        author=book_data.author,
        isbn=book_data.isbn,
        quantity=book_data.quantity,
        available_quantity=book_data.quantity if available is None else available,
        category=book_data.category,
        barcode=book_data.barcode,
    )
    db.add(new_book)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        # Convert DB error to clear message for API layer
        raise Conflict(_integrity_message(e))
    db.refresh(new_book)
    return new_book


def get_books(db: Session, skip: int = 0, limit: int = 100, search: Optional[str] = None,
              category: Optional[str] = None) -> List[Book]:
    query = db.query(Book)
    if search:
        like = f"%{search}%"
        query = query.filter(
            or_(Book.title.ilike(like), Book.author.ilike(like), Book.isbn.ilike(like), Book.barcode.ilike(like))
        )
    if category:
        query = query.filter(Book.category == category)
    return query.order_by(Book.title).offset(skip).limit(limit).all()


def get_book_by_id(book_id: int, db: Session) -> Book:
    book = db.get(Book, book_id)
    if not book:
        raise NotFound("Book not found")
    return book


CLEARABLE_BOOK_FIELDS = {"barcode"}


def update_book(book_id: int, book_data: BookUpdate, db: Session) -> Book:
    book = get_book_by_id(book_id, db)
    data = book_data.model_dump(exclude_unset=True)

    # If changing identifiers, ensure uniqueness
    if data.get("isbn") and data["isbn"] != book.isbn:
        if db.query(Book).filter(Book.isbn == data["isbn"]).first():
            raise Conflict("A book with this ISBN already exists.")
    if data.get("barcode") and data["barcode"] != book.barcode:
        if db.query(Book).filter(Book.barcode == data["barcode"]).first():
            raise Conflict("A book with this barcode already exists.")

    new_quantity = data.pop("quantity", None)
    if new_quantity is not None and new_quantity != book.quantity:
        lent_out = book.quantity - book.available_quantity
        if new_quantity < lent_out:
            raise InvalidOperation(f"Cannot reduce quantity below the {lent_out} copies currently borrowed.")
        book.available_quantity = new_quantity - lent_out
        book.quantity = new_quantity

    for key, value in data.items():
        # an explicit null clears optional columns only
        if value is None and key not in CLEARABLE_BOOK_FIELDS:
            continue
        setattr(book, key, value)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise Conflict(_integrity_message(e))
    db.refresh(book)
    return book


def delete_book(book_id: int, db: Session) -> None:
    book = get_book_by_id(book_id, db)
    if db.query(Borrow).filter(Borrow.book_id == book_id).first():
        raise Conflict("Book has borrow history and cannot be deleted.")
    db.delete(book)
    db.commit()


def books_stats(db: Session, now: Optional[datetime] = None) -> dict:
    """Return aggregated copy counts for the dashboard."""
    now = now or datetime.utcnow()
    total = db.query(func.coalesce(func.sum(Book.quantity), 0)).scalar()
    available = db.query(func.coalesce(func.sum(Book.available_quantity), 0)).scalar()
    overdue = db.query(Borrow).filter(Borrow.actual_return_date.is_(None), Borrow.return_date < now).count()
    return {
        'total_books': total,
        'available_books': available,
        'borrowed_books': total - available,
        'overdue_books': overdue,
    }


# --- Borrow / Return ---
def derive_status(borrow: Borrow, now: datetime) -> BorrowStatus:
    """Status of a borrow at `now`. Never stored."""
    if borrow.actual_return_date is not None:
        return BorrowStatus.RETURNED
    if borrow.return_date < now:
        return BorrowStatus.OVERDUE
    return BorrowStatus.BORROWED


def borrow_book(user_id: int, book_id: int, return_date: datetime, db: Session) -> Borrow:
    """Lend one copy of a book.

    The availability check and the decrement are a single conditional
    UPDATE, so concurrent borrows of the last copy cannot both succeed.
    """
    now = datetime.utcnow()
    if return_date.tzinfo is not None:
        # stored as naive UTC
        return_date = (return_date - return_date.utcoffset()).replace(tzinfo=None)
    if return_date <= now:
        raise InvalidOperation("Return date must be in the future")

    book = get_book_by_id(book_id, db)
    if book.available_quantity <= 0:
        raise InvalidOperation("Book is not available")

    try:
        updated = (
            db.query(Book)
            .filter(Book.id == book_id, Book.available_quantity > 0)
            .update({Book.available_quantity: Book.available_quantity - 1}, synchronize_session=False)
        )
        if updated == 0:
            raise InvalidOperation("Book is not available")
        borrow = Borrow(
            user_id=user_id,
            book_id=book_id,
            borrow_date=now,
            return_date=return_date,
            actual_return_date=None,
            notification_sent=False,
            reminder_sent=False,
        )
        db.add(borrow)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(borrow)
    return borrow


def get_borrow_by_id(borrow_id: int, db: Session) -> Borrow:
    borrow = db.get(Borrow, borrow_id)
    if not borrow:
        raise NotFound("Borrow record not found")
    return borrow


def return_book(borrow_id: int, db: Session) -> Borrow:
    borrow = get_borrow_by_id(borrow_id, db)
    if borrow.actual_return_date is not None:
        raise InvalidOperation("Book already returned")

    try:
        marked = (
            db.query(Borrow)
            .filter(Borrow.id == borrow_id, Borrow.actual_return_date.is_(None))
            .update({Borrow.actual_return_date: datetime.utcnow()}, synchronize_session=False)
        )
        if marked == 0:
            raise InvalidOperation("Book already returned")
        restocked = (
            db.query(Book)
            .filter(Book.id == borrow.book_id, Book.available_quantity < Book.quantity)
            .update({Book.available_quantity: Book.available_quantity + 1}, synchronize_session=False)
        )
        if restocked == 0:
            raise InvalidOperation("Book stock is already complete")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(borrow)
    return borrow


def _with_status(borrow: Borrow, now: datetime) -> dict:
    return {
        'id': borrow.id,
        'user_id': borrow.user_id,
        'book_id': borrow.book_id,
        'borrow_date': borrow.borrow_date,
        'return_date': borrow.return_date,
        'actual_return_date': borrow.actual_return_date,
        'notification_sent': borrow.notification_sent,
        'reminder_sent': borrow.reminder_sent,
        'status': derive_status(borrow, now),
        'book': {'title': borrow.book.title, 'author': borrow.book.author} if borrow.book else None,
    }


def list_user_borrows(user_id: int, db: Session, now: Optional[datetime] = None) -> List[dict]:
    now = now or datetime.utcnow()
    borrows = (
        db.query(Borrow)
        .filter(Borrow.user_id == user_id)
        .order_by(Borrow.borrow_date.desc(), Borrow.id.desc())
        .all()
    )
    return [_with_status(b, now) for b in borrows]


def list_borrows(db: Session, skip: int = 0, limit: int = 100, now: Optional[datetime] = None) -> List[dict]:
    now = now or datetime.utcnow()
    borrows = db.query(Borrow).order_by(Borrow.borrow_date.desc(), Borrow.id.desc()).offset(skip).limit(limit).all()
    return [_with_status(b, now) for b in borrows]


# --- Book requests ---
# action -> (required state, resulting state)
REQUEST_TRANSITIONS = {
    'approve': (RequestStatus.PENDING, RequestStatus.APPROVED),
    'reject': (RequestStatus.PENDING, RequestStatus.REJECTED),
    'start_acquisition': (RequestStatus.APPROVED, RequestStatus.IN_PROGRESS),
    'complete_acquisition': (RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED),
}


def add_book_request(user_id: int, request_data: BookRequestCreate, db: Session) -> BookRequest:
    new_request = BookRequest(
        user_id=user_id,
        title=request_data.title,
        author=request_data.author,
        external_link=request_data.external_link,
        status=RequestStatus.PENDING.value,
    )
    db.add(new_request)
    db.commit()
    db.refresh(new_request)
    return new_request


def list_book_requests(db: Session, user_id: Optional[int] = None) -> List[BookRequest]:
    query = db.query(BookRequest)
    if user_id is not None:
        query = query.filter(BookRequest.user_id == user_id)
    return query.order_by(BookRequest.created_at.desc(), BookRequest.id.desc()).all()


def get_book_request_by_id(request_id: int, db: Session) -> BookRequest:
    request = db.get(BookRequest, request_id)
    if not request:
        raise NotFound("Request not found")
    return request


def transition_book_request(request_id: int, action: str, db: Session, comment: Optional[str] = None) -> BookRequest:
    """Move a request along its lifecycle.

    The status change is conditional on the request still being in the
    required state, so a stale or repeated action changes nothing.
    """
    required, target = REQUEST_TRANSITIONS[action]
    request = get_book_request_by_id(request_id, db)
    if request.status != required.value:
        raise InvalidState(f"Cannot {action.replace('_', ' ')} a request that is {request.status}")

    values = {BookRequest.status: target.value, BookRequest.updated_at: datetime.utcnow()}
    if action == 'reject':
        comment = (comment or '').strip()
        if not comment:
            raise InvalidOperation("A comment is required to reject a request")
        values[BookRequest.admin_comment] = comment

    try:
        changed = (
            db.query(BookRequest)
            .filter(BookRequest.id == request_id, BookRequest.status == required.value)
            .update(values, synchronize_session=False)
        )
        if changed == 0:
            raise InvalidState(f"Cannot {action.replace('_', ' ')} a request that is no longer {required.value}")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(request)
    return request


# --- Notifications ---
def list_notifications(user_id: int, db: Session) -> List[Notification]:
    return (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .all()
    )


def unread_count(user_id: int, db: Session) -> int:
    return db.query(Notification).filter(Notification.user_id == user_id, Notification.read.is_(False)).count()


def mark_notification_read(notification_id: int, user_id: int, db: Session) -> Notification:
    notification = (
        db.query(Notification)
        .filter(Notification.id == notification_id, Notification.user_id == user_id)
        .first()
    )
    if not notification:
        raise NotFound("Notification not found")
    if not notification.read:
        notification.read = True
        db.commit()
        db.refresh(notification)
    return notification


def mark_all_notifications_read(user_id: int, db: Session) -> int:
    count = (
        db.query(Notification)
        .filter(Notification.user_id == user_id, Notification.read.is_(False))
        .update({Notification.read: True}, synchronize_session=False)
    )
    db.commit()
    return count


def clear_notifications(user_id: int, db: Session) -> int:
    count = (
        db.query(Notification)
        .filter(Notification.user_id == user_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return count


# --- Sweeps ---
def overdue_candidates(db: Session, now: datetime) -> List[Borrow]:
    return (
        db.query(Borrow)
        .filter(
            Borrow.actual_return_date.is_(None),
            Borrow.return_date < now,
            Borrow.notification_sent.is_(False),
        )
        .order_by(Borrow.id)
        .all()
    )


def due_soon_candidates(db: Session, now: datetime, days: int) -> List[Borrow]:
    return (
        db.query(Borrow)
        .filter(
            Borrow.actual_return_date.is_(None),
            Borrow.return_date >= now,
            Borrow.return_date <= now + timedelta(days=days),
            Borrow.reminder_sent.is_(False),
        )
        .order_by(Borrow.id)
        .all()
    )


def claim_flag(borrow_id: int, flag: str, db: Session) -> bool:
    """Atomically flip a borrow's sweep flag from False to True.

    Returns False if another run already claimed it.
    """
    column = getattr(Borrow, flag)
    claimed = (
        db.query(Borrow)
        .filter(Borrow.id == borrow_id, column.is_(False))
        .update({column: True}, synchronize_session=False)
    )
    db.commit()
    return claimed == 1
