from enum import Enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship

from database import Base


class UserRole(str, Enum):
    ADMIN = "admin"
    LIBRARIAN = "librarian"
    MEMBER = "member"


class BorrowStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class NotificationType(str, Enum):
    BORROW = "borrow"
    RETURN = "return"
    OVERDUE = "overdue"
    REMINDER = "reminder"
    BOOK_REQUEST_CREATED = "book_request_created"
    BOOK_REQUEST_APPROVED = "book_request_approved"
    BOOK_REQUEST_REJECTED = "book_request_rejected"
    BOOK_REQUEST_IN_PROGRESS = "book_request_in_progress"
    BOOK_REQUEST_COMPLETED = "book_request_completed"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False)
    role = Column(String, nullable=False, default=UserRole.MEMBER.value)  # admin / librarian / member
    reset_token = Column(String, nullable=True)
    reset_token_expiry = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("available_quantity >= 0", name="ck_books_available_non_negative"),
        CheckConstraint("available_quantity <= quantity", name="ck_books_available_le_quantity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    isbn = Column(String, unique=True, index=True, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    available_quantity = Column(Integer, nullable=False, default=0)
    category = Column(String, nullable=False)
    barcode = Column(String, unique=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Borrow(Base):
    __tablename__ = "borrows"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), index=True, nullable=False)
    borrow_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    return_date = Column(DateTime, nullable=False)  # due date
    actual_return_date = Column(DateTime, nullable=True)
    notification_sent = Column(Boolean, nullable=False, default=False)  # overdue notice
    reminder_sent = Column(Boolean, nullable=False, default=False)  # due-soon notice

    user = relationship("User")
    book = relationship("Book")


class BookRequest(Base):
    __tablename__ = "book_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    title = Column(String, nullable=False)
    author = Column(String, nullable=False)
    external_link = Column(String, nullable=True)
    status = Column(String, nullable=False, default=RequestStatus.PENDING.value)
    admin_comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    # back-references for navigation only
    borrow_id = Column(Integer, ForeignKey("borrows.id", ondelete="SET NULL"), nullable=True)
    book_request_id = Column(Integer, ForeignKey("book_requests.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
