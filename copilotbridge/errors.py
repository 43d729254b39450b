"""Error taxonomy shared by the credential and streaming layers."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for copilotbridge failures."""


class AuthenticationError(BridgeError):
    """Raised when no valid upstream credential can be obtained."""


class TransportError(BridgeError):
    """Raised for non-success upstream status codes and connection failures."""

    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is None:
            return base
        return f"{base} (status={self.status} body={self.body!r})"


class FrameDecodeError(BridgeError):
    """Raised when one stream frame payload is not valid JSON."""


class ToolArgumentDecodeError(BridgeError):
    """Raised when accumulated tool-call arguments fail to parse at finalization."""

    def __init__(self, message: str, *, tool_name: str = "", raw_arguments: str = "") -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.raw_arguments = raw_arguments


class UnknownModelError(BridgeError):
    """Raised when a model id is not in the account's model catalog."""
