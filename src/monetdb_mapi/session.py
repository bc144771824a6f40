"""
MAPI Session

One logged-in connection to a MonetDB server. The session owns exactly one
ConnectionChannel at a time; following a redirect swaps in a new channel and
a config pointing at the new host/port/database, credentials unchanged.

Usage:
    factory = SessionFactory(MapiConfig.from_env())
    with factory.connect() as session:
        session.execute_control("auto_commit 1")
        session.execute("SELECT 1")
        line = session.read_response()
"""

import time
from dataclasses import replace
from typing import List, Optional

import structlog

from .channel import ConnectionChannel, FramingState
from .classifier import ResponseLine, classify_line
from .config import MapiConfig
from .dispatcher import QueryDispatcher
from .errors import ProtocolError, ServerError
from .handshake import AuthenticationHandshake
from .protocols import ProtocolHandlerRegistry, default_registry
from .redirect import RedirectResolver

logger = structlog.get_logger()

MAX_REDIRECTS = 1


class Session:
    """
    A single MAPI session.

    Not thread safe: callers serialize query and control calls. close() is
    the only method meant to be called from another thread.
    """

    def __init__(self, config: MapiConfig, registry: ProtocolHandlerRegistry,
                 resolver: Optional[RedirectResolver] = None):
        self.config = config
        self.registry = registry
        self.resolver = resolver or RedirectResolver()
        self.created = time.time()

        self.channel = self._new_channel()
        self.warnings: List[str] = []

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def username(self) -> str:
        return self.config.username

    @property
    def database(self) -> str:
        return self.config.database

    @property
    def framing_state(self) -> FramingState:
        return self.channel.framing_state

    def _new_channel(self) -> ConnectionChannel:
        return ConnectionChannel(self.config.receive_timeout, self.config.send_buffer_size)

    def connect(self, redirects_left: int = MAX_REDIRECTS) -> List[str]:
        """
        Open the transport to the configured server and log in.

        Returns:
            Warnings sent by the server during login

        Raises:
            MapiConnectionError, ConnectionLostError, ProtocolError,
            UnsupportedProtocolError, ServerError
        """
        config = self.config
        self.channel.close()
        channel = self.channel = self._new_channel()

        logger.info("Connecting", host=config.host, port=config.port,
                    username=config.username, database=config.database)
        try:
            channel.open(config.host, config.port)
            handshake = AuthenticationHandshake(channel, self.registry, config.language,
                                                config.hash_algorithm)
            result = handshake.authenticate(config.username, config.password, config.database)
        except Exception as e:
            logger.error("Login failed", host=config.host, port=config.port,
                         database=config.database, error=str(e))
            channel.close()
            raise

        if result.redirects:
            if redirects_left <= 0:
                channel.close()
                raise ProtocolError(f"Too many redirects, last one was {result.redirects[0]}")
            try:
                self.warnings = self.resolver.follow(self, result.redirects,
                                                     redirects_left=redirects_left - 1)
            except Exception:
                self.channel.close()
                raise
            return self.warnings

        for warning in result.warnings:
            logger.warning("Server warning during login", host=config.host, warning=warning)
        logger.info("Connected", host=config.host, port=config.port, database=config.database)

        self.warnings = result.warnings
        return self.warnings

    def retarget(self, config: MapiConfig, redirects_left: int = 0) -> List[str]:
        """Replace the session config and log in to its server"""
        self.channel.close()
        self.config = config
        return self.connect(redirects_left=redirects_left)

    def execute(self, sql: str) -> int:
        """
        Send a query. Results are read back with read_line()/read_response().

        Returns:
            Number of continuation fragments written before the final one
        """
        try:
            return QueryDispatcher(self.channel).execute(sql)
        except Exception as e:
            logger.error("Query dispatch failed", host=self.host, error=str(e))
            self.close()
            raise

    def execute_control(self, statement: str) -> None:
        """
        Send an administrative statement such as 'auto_commit 1'.

        A ServerError leaves the session usable; any other failure closes it.
        """
        try:
            QueryDispatcher(self.channel).execute_control(statement)
        except ServerError:
            raise
        except Exception as e:
            logger.error("Control command failed", host=self.host, statement=statement, error=str(e))
            self.close()
            raise

    def read_line(self) -> str:
        """Next raw server line, for result consumers"""
        return self.channel.read_line()

    def read_response(self) -> ResponseLine:
        """Next server line, classified"""
        return classify_line(self.channel.read_line())

    def close(self) -> None:
        """Hard close of the transport. Safe to call repeatedly."""
        self.channel.close()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (f"Session(host={self.host!r}, port={self.port!r}, "
                f"username={self.username!r}, database={self.database!r})")


class SessionFactory:
    """
    Creates sessions sharing one protocol handler registry.

    The registry is built once here and only read afterwards.
    """

    def __init__(self, config: Optional[MapiConfig] = None,
                 registry: Optional[ProtocolHandlerRegistry] = None):
        self.config = config or MapiConfig()
        self.registry = registry if registry is not None else default_registry()

    def create(self, **overrides) -> Session:
        """Unconnected session; keyword overrides replace config fields"""
        config = self.config
        if overrides:
            config = replace(config, **overrides)
        return Session(config, self.registry)

    def connect(self, **overrides) -> Session:
        """Connected session (login warnings are on session.warnings)"""
        session = self.create(**overrides)
        session.connect()
        return session
