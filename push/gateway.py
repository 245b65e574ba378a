"""
Push transport. A gateway delivers one JSON payload to one connection and
raises GoneError when the connection no longer exists at the transport.
"""

import logging
import threading
from abc import ABC, abstractmethod

from websockets.exceptions import ConnectionClosed

from ledger.base import dumps


logger = logging.getLogger(__name__)


class GoneError(Exception):
    """The target connection is gone; its registry entry should be dropped."""

    def __init__(self, connection_id):
        self.connection_id = connection_id
        super().__init__(f"Connection {connection_id} is gone")


class PushGateway(ABC):

    @abstractmethod
    def post(self, connection_id: str, payload: dict) -> None:
        """Deliver *payload*. Raises GoneError for dead connections."""


class WebSocketGateway(PushGateway):
    """Delivers to sockets held by this process's WebSocket server."""

    def __init__(self):
        self._sockets = {}
        self._lock = threading.Lock()

    def register(self, connection_id, websocket):
        with self._lock:
            self._sockets[connection_id] = websocket

    def unregister(self, connection_id):
        with self._lock:
            self._sockets.pop(connection_id, None)

    def post(self, connection_id, payload):
        with self._lock:
            ws = self._sockets.get(connection_id)
        if ws is None:
            raise GoneError(connection_id)
        try:
            ws.send(dumps(payload))
        except ConnectionClosed as exc:
            self.unregister(connection_id)
            raise GoneError(connection_id) from exc
