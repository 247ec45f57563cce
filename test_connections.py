import asyncio
import threading

import pytest

from connections import ConnectionRegistry


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.delivered = threading.Event()

    async def send_json(self, data):
        if self.fail:
            self.delivered.set()
            raise RuntimeError("connection reset")
        self.sent.append(data)
        self.delivered.set()


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    yield loop
    loop.call_soon_threadsafe(loop.stop)
    thread.join(5)
    loop.close()


def test_push_to_offline_user():
    assert ConnectionRegistry().push(1, {"type": "NOTIFICATION"}) is False


def test_push_delivers_on_socket_loop(loop):
    registry = ConnectionRegistry()
    ws = FakeSocket()
    registry.connect(7, ws, loop=loop)

    assert registry.push(7, {"type": "NOTIFICATION", "n": 1}) is True
    assert ws.delivered.wait(5)
    assert ws.sent == [{"type": "NOTIFICATION", "n": 1}]


def test_connect_and_disconnect(loop):
    registry = ConnectionRegistry()
    registry.connect(1, FakeSocket(), loop=loop)
    registry.connect(2, FakeSocket(), loop=loop)
    assert len(registry) == 2
    assert registry.is_connected(1)

    registry.disconnect(1)
    registry.disconnect(1)
    assert not registry.is_connected(1)
    assert len(registry) == 1


def test_newer_connection_replaces_older(loop):
    registry = ConnectionRegistry()
    old, new = FakeSocket(), FakeSocket()
    registry.connect(1, old, loop=loop)
    registry.connect(1, new, loop=loop)

    # closing the stale socket must not drop the live one
    registry.disconnect(1, old)
    assert registry.is_connected(1)

    registry.push(1, {"type": "NOTIFICATION"})
    assert new.delivered.wait(5)
    assert old.sent == []


def test_failed_send_drops_connection(loop):
    registry = ConnectionRegistry()
    ws = FakeSocket(fail=True)
    registry.connect(3, ws, loop=loop)

    assert registry.push(3, {"type": "NOTIFICATION"}) is True
    assert ws.delivered.wait(5)
    # the done-callback runs on the loop right after the send fails
    asyncio.run_coroutine_threadsafe(asyncio.sleep(0), loop).result(5)
    assert not registry.is_connected(3)


def test_push_to_closed_loop():
    registry = ConnectionRegistry()
    dead = asyncio.new_event_loop()
    dead.close()
    registry.connect(4, FakeSocket(), loop=dead)

    assert registry.push(4, {"type": "NOTIFICATION"}) is False
    assert not registry.is_connected(4)
