from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import List, Optional

from models import BorrowStatus, RequestStatus


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=200)
    isbn: str = Field(..., min_length=1, max_length=50)
    quantity: int = Field(1, ge=0)
    available_quantity: Optional[int] = Field(None, ge=0, description="Defaults to quantity")
    category: str = Field(..., min_length=1, max_length=100)
    barcode: Optional[str] = Field(None, max_length=100)

    @model_validator(mode="after")
    def check_available(self):
        if self.available_quantity is not None and self.available_quantity > self.quantity:
            raise ValueError("available_quantity cannot exceed quantity")
        return self


class BookUpdate(BaseModel):
    # all fields optional for updates; availability follows quantity
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=200)
    isbn: Optional[str] = Field(None, min_length=1, max_length=50)
    quantity: Optional[int] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1, max_length=100)
    barcode: Optional[str] = Field(None, max_length=100)


class BookOut(BaseModel):
    id: int
    title: str
    author: str
    isbn: str
    quantity: int
    available_quantity: int
    category: str
    barcode: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class BookStats(BaseModel):
    total_books: int
    available_books: int
    borrowed_books: int
    overdue_books: int


class BorrowCreate(BaseModel):
    book_id: int
    return_date: datetime


class BorrowBook(BaseModel):
    title: str
    author: str
    model_config = ConfigDict(from_attributes=True)


class BorrowOut(BaseModel):
    id: int
    user_id: int
    book_id: int
    borrow_date: datetime
    return_date: datetime
    actual_return_date: Optional[datetime] = None
    notification_sent: bool = False
    reminder_sent: bool = False
    model_config = ConfigDict(from_attributes=True)


class BorrowWithStatus(BorrowOut):
    status: BorrowStatus
    book: Optional[BorrowBook] = None


class BookRequestCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=200)
    external_link: Optional[str] = Field(None, max_length=1024)


class RejectRequest(BaseModel):
    comment: Optional[str] = None


class Requester(BaseModel):
    id: int
    first_name: str
    last_name: str
    email: str
    model_config = ConfigDict(from_attributes=True)


class BookRequestOut(BaseModel):
    id: int
    user_id: int
    title: str
    author: str
    external_link: Optional[str] = None
    status: RequestStatus
    admin_comment: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class BookRequestWithUser(BookRequestOut):
    user: Optional[Requester] = None


class NotificationOut(BaseModel):
    id: int
    user_id: int
    title: str
    message: str
    type: str
    read: bool
    borrow_id: Optional[int] = None
    book_request_id: Optional[int] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class UnreadCount(BaseModel):
    unread: int


class Message(BaseModel):
    message: str


class BulkResult(BaseModel):
    updated: int
