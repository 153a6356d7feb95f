"""
Protocol module - talking to an agent over ACP.

Includes:
- LineFramer / MessageStream: newline-delimited JSON framing
- Connection: bidirectional JSON-RPC with handler tables
- ClientConnection: typed ACP client methods and callback hooks
- Error taxonomy: FramingError, RemoteError, UnhandledMethod, ConnectionClosed
"""

from .client import AGENT_METHODS, CLIENT_METHODS, ClientConnection, PermissionPolicy
from .connection import Connection
from .errors import (
    ConnectionClosed,
    FramingError,
    ProtocolError,
    RemoteError,
    UnhandledMethod,
)
from .framing import LineFramer, MessageStream

__all__ = [
    "AGENT_METHODS",
    "CLIENT_METHODS",
    "ClientConnection",
    "Connection",
    "ConnectionClosed",
    "FramingError",
    "LineFramer",
    "MessageStream",
    "PermissionPolicy",
    "ProtocolError",
    "RemoteError",
    "UnhandledMethod",
]
