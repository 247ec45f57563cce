import asyncio
import logging
import threading
from typing import Dict, Optional, Tuple

from fastapi import Request, WebSocket

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Live WebSocket connections, at most one per user.

    Sockets are registered from the event loop that serves them; ``push`` may
    be called from any thread (sync endpoints and scheduler sweeps run in
    worker threads) and schedules the send on the socket's own loop.
    Delivery is fire-and-forget: nothing is queued for offline users.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._clients: Dict[int, Tuple[WebSocket, asyncio.AbstractEventLoop]] = {}

    def connect(self, user_id: int, websocket: WebSocket, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        with self._lock:
            # a newer connection replaces any older one for the same user
            self._clients[user_id] = (websocket, loop)
            total = len(self._clients)
        logger.info("Client connected. UserId: %s. Total clients: %s", user_id, total)

    def disconnect(self, user_id: int, websocket: Optional[WebSocket] = None) -> None:
        with self._lock:
            entry = self._clients.get(user_id)
            if entry is None:
                return
            if websocket is not None and entry[0] is not websocket:
                return
            del self._clients[user_id]
            total = len(self._clients)
        logger.info("Client disconnected. UserId: %s. Total clients: %s", user_id, total)

    def is_connected(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._clients

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def push(self, user_id: int, event: dict) -> bool:
        """Schedule `event` for the user's socket. Returns False if the user is offline."""
        with self._lock:
            entry = self._clients.get(user_id)
        if entry is None:
            return False
        websocket, loop = entry
        if loop.is_closed():
            self.disconnect(user_id, websocket)
            return False

        future = asyncio.run_coroutine_threadsafe(websocket.send_json(event), loop)

        def _done(f):
            if f.cancelled():
                return
            exc = f.exception()
            if exc is not None:
                logger.error("Error sending notification to user %s: %s", user_id, exc)
                self.disconnect(user_id, websocket)

        future.add_done_callback(_done)
        return True


# FastAPI dependency
def get_registry(request: Request) -> Optional[ConnectionRegistry]:
    return getattr(request.app.state, "connections", None)
