"""
WebSocket front end for the push protocol (websockets, threaded server).

Each socket gets a fresh connection id. The trader id, when known, is
passed by the upstream auth layer as the ``traderId`` query parameter.
"""

import logging
import threading
import uuid
from urllib.parse import parse_qs, urlparse

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import serve

from ledger.base import dumps


logger = logging.getLogger(__name__)


class PushServer:

    def __init__(self, handlers, gateway, host="0.0.0.0", port=8765):
        self.handlers = handlers
        self.gateway = gateway
        self.host = host
        self.port = port
        self._server = None
        self._thread = None

    def _trader_id(self, websocket):
        request = getattr(websocket, "request", None)
        if request is None:
            return None
        query = parse_qs(urlparse(request.path).query)
        values = query.get("traderId")
        return values[0] if values else None

    def handle(self, websocket):
        connection_id = uuid.uuid4().hex
        self.gateway.register(connection_id, websocket)
        self.handlers.on_connect(connection_id, self._trader_id(websocket))
        try:
            for raw in websocket:
                response = self.handlers.on_message(connection_id, raw)
                websocket.send(dumps(response.body))
        except ConnectionClosed:
            logger.debug("Connection %s closed", connection_id)
        finally:
            self.gateway.unregister(connection_id)
            self.handlers.on_disconnect(connection_id)

    def start(self):
        self._server = serve(self.handle, self.host, self.port)
        self._thread = threading.Thread(target=self._server.serve_forever,
                                        daemon=True)
        self._thread.start()
        logger.info("Push server listening on ws://%s:%d", self.host, self.bound_port)
        return self

    @property
    def bound_port(self):
        """Actual listening port (useful with port=0)."""
        return self._server.socket.getsockname()[1]

    def stop(self):
        if self._server is not None:
            self._server.shutdown()
            self._server = None
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
