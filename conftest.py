import os
import tempfile
from datetime import datetime, timedelta

# Configure before any project module reads the environment
_db_dir = tempfile.mkdtemp(prefix="library-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_db_dir, "test.db")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["ENVIRONMENT"] = "test"
for _name in ("SMTP_USER", "SMTP_PASS", "ALLOWED_EMAIL_DOMAIN"):
    os.environ.pop(_name, None)

import pytest
from fastapi.testclient import TestClient

import auth_utils
import email_service
import main
import models
from database import Base, SessionLocal, engine


@pytest.fixture(autouse=True)
def fresh_db():
    # Every test starts from empty tables
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def sent_emails(monkeypatch):
    sent = []

    def fake_send_email(to, subject, html_content):
        sent.append({"to": to, "subject": subject, "html": html_content})

    monkeypatch.setattr(email_service, "send_email", fake_send_email)
    return sent


@pytest.fixture
def make_user(db):
    def _make(email, role="member", password="secret123", first_name="Test", last_name="User"):
        user = models.User(
            email=email,
            hashed_password=auth_utils.get_password_hash(password),
            first_name=first_name,
            last_name=last_name,
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_book(db):
    counter = {"n": 0}

    def _make(quantity=2, available=None, title="Dune", author="Frank Herbert", category="Fiction"):
        counter["n"] += 1
        book = models.Book(
            title=title,
            author=author,
            isbn=f"978000000{counter['n']:04d}",
            quantity=quantity,
            available_quantity=quantity if available is None else available,
            category=category,
        )
        db.add(book)
        db.commit()
        db.refresh(book)
        return book
    return _make


@pytest.fixture
def make_borrow(db):
    def _make(user, book, due_in=timedelta(days=7), returned=False):
        now = datetime.utcnow()
        borrow = models.Borrow(
            user_id=user.id,
            book_id=book.id,
            borrow_date=now - timedelta(days=14),
            return_date=now + due_in,
            actual_return_date=now if returned else None,
        )
        db.add(borrow)
        db.commit()
        db.refresh(borrow)
        return borrow
    return _make


@pytest.fixture
def admin(make_user):
    return make_user("ada@library.org", role="admin", first_name="Ada", last_name="Admin")


@pytest.fixture
def librarian(make_user):
    return make_user("lee@library.org", role="librarian", first_name="Lee", last_name="Librarian")


@pytest.fixture
def member(make_user):
    return make_user("max@library.org", first_name="Max", last_name="Member")


@pytest.fixture
def headers():
    def _headers(user):
        return {"Authorization": f"Bearer {auth_utils.token_for_user(user)}"}
    return _headers


@pytest.fixture
def due_in():
    def _due_in(days=7):
        return (datetime.utcnow() + timedelta(days=days)).isoformat()
    return _due_in
