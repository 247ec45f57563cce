"""Notification fan-out.

Every event is delivered over three independent channels, in order: a
persisted ``Notification`` row, a live push to the recipient's WebSocket
and an email. Each channel is attempted even if an earlier one failed;
failures are logged and reported in the returned ``Delivery`` but never
raised, because the business change that triggered the event has already
been committed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import email_service
import models
from connections import ConnectionRegistry
from errors import ExternalServiceFailure
from schemas import NotificationOut

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    user_id: int
    notification: Optional[models.Notification] = None
    pushed: bool = False
    emailed: bool = False
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def persisted(self) -> bool:
        return self.notification is not None


def _persist(db: Session, delivery: Delivery, **values) -> None:
    notification = models.Notification(read=False, **values)
    db.add(notification)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Could not store notification for user %s: %s", delivery.user_id, e)
        delivery.errors["persist"] = str(e)
        return
    db.refresh(notification)
    delivery.notification = notification


def _push(registry: Optional[ConnectionRegistry], delivery: Delivery, payload: dict) -> None:
    if registry is None:
        return
    try:
        delivery.pushed = registry.push(delivery.user_id, {"type": "NOTIFICATION", "notification": payload})
    except Exception as e:
        logger.error("Push to user %s failed: %s", delivery.user_id, e)
        delivery.errors["push"] = str(e)


def _email(user: models.User, delivery: Delivery, title: str, message: str) -> None:
    # titles and messages carry user-entered text; the email body is HTML
    body = email_service.render(escape(title), f"Hello {escape(user.first_name)},<br><br>{escape(message)}")
    try:
        email_service.send_email(user.email, title, body)
    except ExternalServiceFailure as e:
        logger.warning("Email to %s not sent: %s", user.email, e.message)
        delivery.errors["email"] = e.message
        return
    except Exception as e:
        logger.error("Email to %s failed: %s", user.email, e)
        delivery.errors["email"] = str(e)
        return
    delivery.emailed = True


def dispatch(
    db: Session,
    registry: Optional[ConnectionRegistry],
    user: models.User,
    title: str,
    message: str,
    type_: models.NotificationType,
    borrow_id: Optional[int] = None,
    book_request_id: Optional[int] = None,
    persist: bool = True,
    push: bool = True,
    email: bool = True,
) -> Delivery:
    """Fan one event out to `user` over the enabled channels."""
    delivery = Delivery(user_id=user.id)

    if persist:
        _persist(
            db, delivery,
            user_id=user.id, title=title, message=message, type=type_.value,
            borrow_id=borrow_id, book_request_id=book_request_id,
        )

    if push:
        if delivery.notification is not None:
            payload = NotificationOut.model_validate(delivery.notification).model_dump(mode="json")
        else:
            payload = {
                "user_id": user.id, "title": title, "message": message, "type": type_.value,
                "read": False, "borrow_id": borrow_id, "book_request_id": book_request_id,
                "created_at": datetime.utcnow().isoformat(),
            }
        _push(registry, delivery, payload)

    if email:
        _email(user, delivery, title, message)

    return delivery


def admins(db: Session) -> List[models.User]:
    return db.query(models.User).filter(models.User.role == models.UserRole.ADMIN.value).all()


def notify_admins(db: Session, registry: Optional[ConnectionRegistry], title: str, message: str,
                  type_: models.NotificationType, **kwargs) -> List[Delivery]:
    return [dispatch(db, registry, admin, title, message, type_, **kwargs) for admin in admins(db)]


# --- Borrow events ---

def book_borrowed(db: Session, registry, borrow: models.Borrow, book: models.Book, borrower: models.User):
    due = borrow.return_date.strftime("%Y-%m-%d")
    dispatch(
        db, registry, borrower,
        "Book Borrowed", f'You have successfully borrowed "{book.title}". Please return it by {due}.',
        models.NotificationType.BORROW, borrow_id=borrow.id, email=False,
    )
    notify_admins(
        db, registry,
        "Book Borrowed", f'{borrower.full_name} ({borrower.email}) borrowed "{book.title}", due {due}.',
        models.NotificationType.BORROW, borrow_id=borrow.id,
    )


def book_returned(db: Session, registry, borrow: models.Borrow, book: models.Book, borrower: models.User):
    notify_admins(
        db, registry,
        "Book Returned", f'{borrower.full_name} ({borrower.email}) returned "{book.title}".',
        models.NotificationType.RETURN, borrow_id=borrow.id, persist=False, push=False,
    )


def borrow_overdue(db: Session, registry, borrow: models.Borrow) -> Delivery:
    return dispatch(
        db, registry, borrow.user,
        "Book Overdue",
        f'Your borrowed book "{borrow.book.title}" is overdue. Please return it as soon as possible.',
        models.NotificationType.OVERDUE, borrow_id=borrow.id,
    )


def borrow_due_soon(db: Session, registry, borrow: models.Borrow, days: int) -> Delivery:
    return dispatch(
        db, registry, borrow.user,
        "Return Reminder",
        f'Your borrowed book "{borrow.book.title}" is due within {days} days '
        f'({borrow.return_date.strftime("%Y-%m-%d")}).',
        models.NotificationType.REMINDER, borrow_id=borrow.id, email=False,
    )


# --- Book request events ---

REQUEST_MESSAGES = {
    models.RequestStatus.APPROVED: (
        models.NotificationType.BOOK_REQUEST_APPROVED, "Book Request Approved",
        'Your request for "{title}" by {author} has been approved.',
    ),
    models.RequestStatus.REJECTED: (
        models.NotificationType.BOOK_REQUEST_REJECTED, "Book Request Rejected",
        'Your request for "{title}" by {author} has been rejected. Reason: {comment}',
    ),
    models.RequestStatus.IN_PROGRESS: (
        models.NotificationType.BOOK_REQUEST_IN_PROGRESS, "Book Acquisition Started",
        'We have started acquiring "{title}" by {author}.',
    ),
    models.RequestStatus.COMPLETED: (
        models.NotificationType.BOOK_REQUEST_COMPLETED, "Book Acquired",
        '"{title}" by {author} has been acquired and will be available soon.',
    ),
}


def book_request_created(db: Session, registry, request: models.BookRequest) -> List[Delivery]:
    requester = request.user
    return notify_admins(
        db, registry,
        "New Book Request",
        f'{requester.full_name} requested "{request.title}" by {request.author}.',
        models.NotificationType.BOOK_REQUEST_CREATED, book_request_id=request.id,
    )


def book_request_changed(db: Session, registry, request: models.BookRequest) -> Delivery:
    type_, title, template = REQUEST_MESSAGES[models.RequestStatus(request.status)]
    message = template.format(title=request.title, author=request.author, comment=request.admin_comment or "")
    return dispatch(db, registry, request.user, title, message, type_, book_request_id=request.id)


# --- Account events ---

def password_reset_completed(registry: Optional[ConnectionRegistry], user: models.User) -> None:
    if registry is None:
        return
    try:
        registry.push(user.id, {
            "type": "PASSWORD_RESET_COMPLETED",
            "message": "Your password has been successfully reset",
        })
    except Exception as e:
        logger.error("Push to user %s failed: %s", user.id, e)
