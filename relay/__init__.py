"""Websocket relay that shares one room store between processes."""

from .client import RemoteRoomStore
from .protocol import RelayConfig
from .server import RelayServer

__all__ = ["RelayConfig", "RelayServer", "RemoteRoomStore"]
