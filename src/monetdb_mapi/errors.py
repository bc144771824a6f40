"""
Exception types for the MAPI client core.

Every failure surfaced by a session is one of:
- MapiConnectionError: the TCP transport could not be established
- ConnectionLostError: the stream ended, timed out or produced an empty line
- ProtocolError: malformed challenge, bad version token, misuse of framing
- UnsupportedProtocolError: no handler registered for the advertised version
- ServerError: explicit error line sent by the server
"""

from typing import Optional


class MapiError(Exception):
    """Base exception for all MAPI client errors."""
    pass


class MapiConnectionError(MapiError):
    """Raised when the transport to the server cannot be established."""

    def __init__(self, message: str, host: Optional[str] = None, port: Optional[int] = None):
        self.host = host
        self.port = port
        super().__init__(message)


class ConnectionLostError(MapiError):
    """
    Raised when the server stream closes before a line completes, a read
    times out, or an empty line shows up where a meaningful one was expected.
    """
    pass


class ProtocolError(MapiError):
    """Raised when the server (or the caller) breaks the MAPI protocol."""
    pass


class UnsupportedProtocolError(ProtocolError):
    """Raised when no protocol handler is registered for a server version."""

    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Unsupported protocol version {version}")

    def __repr__(self) -> str:
        return f"UnsupportedProtocolError(version={self.version!r})"


class ServerError(MapiError):
    """
    Raised for an error line ('!') returned by the server.

    The message is the line content with the leading marker removed.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"ServerError(message={self.message!r})"
