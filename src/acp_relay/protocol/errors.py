"""
Protocol error taxonomy.

Every failure the connection can surface derives from ProtocolError so
callers can catch the whole family at once, while each kind stays
distinguishable:

- FramingError: a line on the wire could not be decoded (fatal)
- RemoteError: the peer answered a call with an error payload
- UnhandledMethod: an incoming call named a method nobody registered
- ConnectionClosed: the connection went away while a call was pending
"""

from typing import Any

# JSON-RPC 2.0 reserved error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ProtocolError(Exception):
    """Base class for all protocol failures."""


class FramingError(ProtocolError):
    """A line on the transport could not be decoded as a message."""

    def __init__(self, message: str, line: bytes = b""):
        super().__init__(message)
        self.line = line


class RemoteError(ProtocolError):
    """An error payload returned by the peer for one call."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
        self.data = data

    def to_error_obj(self) -> dict[str, Any]:
        """Render as a JSON-RPC error object."""
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    @classmethod
    def from_error_obj(cls, error: Any) -> "RemoteError":
        if not isinstance(error, dict):
            return cls(INTERNAL_ERROR, str(error))
        return cls(
            error.get("code", INTERNAL_ERROR),
            error.get("message", "Error"),
            error.get("data"),
        )

    @classmethod
    def method_not_found(cls, method: str) -> "RemoteError":
        return cls(METHOD_NOT_FOUND, "Method not found", {"method": method})

    @classmethod
    def invalid_params(cls, data: Any = None) -> "RemoteError":
        return cls(INVALID_PARAMS, "Invalid params", data)

    @classmethod
    def internal_error(cls, data: Any = None) -> "RemoteError":
        return cls(INTERNAL_ERROR, "Internal error", data)


class UnhandledMethod(RemoteError):
    """An incoming call named a method with no registered handler."""

    def __init__(self, method: str):
        super().__init__(METHOD_NOT_FOUND, "Method not found", {"method": method})
        self.method = method


class ConnectionClosed(ProtocolError):
    """The connection was torn down while a call was still pending.

    ``reason`` holds the exception that brought the connection down
    (a FramingError, for example) or None for a clean close or EOF.
    """

    def __init__(self, message: str = "Connection closed", reason: BaseException | None = None):
        super().__init__(message)
        self.reason = reason
