"""
Real-time push: connection registry, channel fan-out and the WebSocket
front end.
"""

from push.dispatcher import FanOutDispatcher
from push.gateway import GoneError, PushGateway, WebSocketGateway
from push.registry import ConnectionRegistry
