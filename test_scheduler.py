import logging
import threading
from datetime import datetime, time, timedelta

import pytest

import main
import models
import notifier
import scheduler
from scheduler import Sweep, check_overdue_books, check_upcoming_due_books


def notes_of_type(db, type_):
    db.expire_all()
    return db.query(models.Notification).filter_by(type=type_).all()


def test_overdue_sweep_notifies_once(db, member, make_book, make_borrow, sent_emails):
    book = make_book(quantity=3, available=0)
    late = make_borrow(member, book, due_in=timedelta(days=-1))
    make_borrow(member, book, due_in=timedelta(days=-4), returned=True)
    make_borrow(member, book, due_in=timedelta(days=4))

    assert check_overdue_books(db) == 1
    assert check_overdue_books(db) == 0

    [note] = notes_of_type(db, "overdue")
    assert note.user_id == member.id
    assert note.borrow_id == late.id
    assert [e['to'] for e in sent_emails] == [member.email]
    assert db.get(models.Borrow, late.id).notification_sent is True


def test_upcoming_due_window(db, member, make_book, make_borrow, sent_emails):
    book = make_book(quantity=2, available=0)
    soon = make_borrow(member, book, due_in=timedelta(days=2))
    make_borrow(member, book, due_in=timedelta(days=5))

    assert check_upcoming_due_books(db, days=3) == 1
    assert check_upcoming_due_books(db, days=3) == 0

    [note] = notes_of_type(db, "reminder")
    assert note.borrow_id == soon.id
    assert sent_emails == []


def test_sweeps_push_to_connected_borrowers(db, member, make_book, make_borrow):
    class Registry:
        def __init__(self):
            self.users = []

        def push(self, user_id, event):
            self.users.append(user_id)
            return True

    registry = Registry()
    make_borrow(member, make_book(quantity=1, available=0), due_in=timedelta(days=-1))
    check_overdue_books(db, registry)
    assert registry.users == [member.id]


def test_sweep_skips_overlapping_run():
    started, release = threading.Event(), threading.Event()
    results = []

    def slow(db, registry):
        started.set()
        release.wait(5)
        return 7

    sweep = Sweep("slow", "slow sweep", time(0, 0), slow)
    worker = threading.Thread(target=lambda: results.append(sweep.run()))
    worker.start()
    assert started.wait(5)

    assert sweep.run() is None

    release.set()
    worker.join(5)
    assert results == [7]


def test_sweep_swallows_errors_unless_asked():
    def broken(db, registry):
        raise RuntimeError("boom")

    sweep = Sweep("broken", "broken sweep", time(0, 0), broken)
    assert sweep.run() == 0
    with pytest.raises(RuntimeError):
        sweep.run(raise_errors=True)
    # the guard is released after a failure
    assert sweep.run() == 0


@pytest.mark.parametrize("now, expected", [
    (datetime(2025, 6, 1, 8, 0), timedelta(hours=1)),
    (datetime(2025, 6, 1, 9, 0), timedelta(days=1)),
    (datetime(2025, 6, 1, 23, 30), timedelta(hours=9, minutes=30)),
])
def test_seconds_until_next(now, expected):
    sweep = Sweep("upcoming-due", "reminders", time(9, 0), check_upcoming_due_books)
    assert sweep.seconds_until_next(now) == expected.total_seconds()


def test_parse_time():
    assert scheduler.parse_time("09:30") == time(9, 30)


def test_default_sweeps():
    assert [s.key for s in scheduler.default_sweeps()] == ["overdue", "upcoming-due"]
    assert main.app.state.scheduler.get("missing") is None


def test_admin_runs_sweep_on_demand(client, db, admin, member, make_book, make_borrow, headers, sent_emails):
    make_borrow(member, make_book(quantity=1, available=0), due_in=timedelta(days=-2))

    resp = client.post('/admin/sweeps/overdue', headers=headers(admin))
    assert resp.status_code == 200
    assert resp.json() == {"sweep": "overdue", "notified": 1}

    again = client.post('/admin/sweeps/overdue', headers=headers(admin))
    assert again.json() == {"sweep": "overdue", "notified": 0}


def test_sweep_endpoint_errors(client, admin, librarian, headers):
    assert client.post('/admin/sweeps/nightly', headers=headers(admin)).status_code == 404
    assert client.post('/admin/sweeps/overdue', headers=headers(librarian)).status_code == 403


def test_overdue_sweep_logs_unstored_notice(db, member, make_book, make_borrow, monkeypatch, caplog):
    def failing_persist(db, delivery, **values):
        delivery.errors["persist"] = "database is locked"

    monkeypatch.setattr(notifier, "_persist", failing_persist)
    late = make_borrow(member, make_book(quantity=1, available=0), due_in=timedelta(days=-1))

    with caplog.at_level(logging.ERROR, logger="scheduler"):
        assert check_overdue_books(db) == 1

    assert f"borrow {late.id} was not stored" in caplog.text
    assert db.get(models.Borrow, late.id).notification_sent is True
