"""
MonetDB MAPI Client Core

Client-side implementation of the MonetDB line-oriented wire protocol (MAPI):
challenge-response login, chunked query submission with continuation framing,
response line classification and single-redirect failover.
"""

from .errors import (
    MapiError,
    MapiConnectionError,
    ConnectionLostError,
    ProtocolError,
    UnsupportedProtocolError,
    ServerError,
)
from .config import MapiConfig
from .session import Session, SessionFactory

__version__ = "0.1.0"
__author__ = "MonetDB MAPI Team"

__all__ = [
    "__version__",
    "__author__",
    "MapiError",
    "MapiConnectionError",
    "ConnectionLostError",
    "ProtocolError",
    "UnsupportedProtocolError",
    "ServerError",
    "MapiConfig",
    "Session",
    "SessionFactory",
]
