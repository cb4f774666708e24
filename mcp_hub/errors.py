"""Error taxonomy shared by every hub component."""

from pathlib import Path
from typing import List, Optional, Union


class HubError(Exception):
    """Base class for all hub errors."""


class ConfigError(HubError):
    """Malformed or contradictory configuration.

    Fatal to loading the affected server (or layer), never to the hub itself.
    """

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        self.issues = list(issues) if issues else [message]
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.issues == [base]:
            return base
        return base + "\n" + "\n".join(f"  - {issue}" for issue in self.issues)


class ServerConnectionError(HubError, ConnectionError):
    """A server could not be reached, or is currently disconnected."""

    def __init__(self, server: str, message: str):
        self.server = server
        super().__init__(f"[{server}] {message}")


class TransportError(HubError):
    """A failure in the middle of an operation on an established transport."""

    def __init__(
        self,
        message: str,
        server: Optional[str] = None,
        code: Optional[int] = None,
    ):
        self.message = message
        self.server = server
        self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        if self.server:
            return f"[{self.server}] {self.message}"
        return self.message


class CallTimeoutError(HubError, TimeoutError):
    """A call exceeded its time budget."""

    def __init__(self, server: str, operation: str, timeout: float):
        self.server = server
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"[{server}] {operation} timed out after {timeout:g}s")


class ToolPermissionError(HubError, PermissionError):
    """The caller attempted to use a tool that is disabled for the server."""

    def __init__(self, server: str, tool: str):
        self.server = server
        self.tool = tool
        super().__init__(f"[{server}] tool '{tool}' is disabled")


class UnknownServerError(HubError, KeyError):
    """No server with the given name is configured."""

    def __init__(self, server: str):
        self.server = server
        super().__init__(server)

    def __str__(self) -> str:
        return f"Server '{self.server}' is not configured"


class WriteError(HubError):
    """An atomic write failed. The target file was left untouched."""

    def __init__(self, path: Union[str, Path], message: str):
        self.path = Path(path)
        super().__init__(f"Failed to write {self.path}: {message}")


class CorruptDocumentError(HubError):
    """A persisted document exists but cannot be parsed."""

    def __init__(self, path: Union[str, Path], message: str):
        self.path = Path(path)
        super().__init__(f"Corrupt document {self.path}: {message}")
