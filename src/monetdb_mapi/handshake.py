"""
MAPI Authentication Handshake

Login sequence on a freshly opened channel:
1. Read the challenge line and discard the prompt that follows it
2. Parse the challenge and select the handler for its protocol version
3. Send the login response built by that handler
4. Drain reply lines up to the terminator (or the prompt closing the server
   message), collecting warnings and redirects
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from .channel import ConnectionChannel
from .classifier import LineType, TERMINATOR, classify_line
from .errors import ConnectionLostError, ProtocolError, ServerError, UnsupportedProtocolError
from .protocols import ProtocolHandlerRegistry

logger = structlog.get_logger()

MIN_CHALLENGE_TOKENS = 5


@dataclass(frozen=True)
class Challenge:
    """Parsed server challenge line"""
    raw: str
    tokens: Tuple[str, ...]

    @classmethod
    def parse(cls, line: str) -> "Challenge":
        """
        Raises:
            ProtocolError: fewer than 5 colon-delimited tokens
        """
        tokens = tuple(line.split(":"))
        if len(tokens) < MIN_CHALLENGE_TOKENS:
            raise ProtocolError(
                f"Server challenge unusable! Challenge contains too few tokens: {line}")
        return cls(raw=line, tokens=tokens)

    @property
    def salt(self) -> str:
        return self.tokens[0]

    @property
    def server_id(self) -> str:
        return self.tokens[1]

    @property
    def hash_algorithms(self) -> List[str]:
        return [name for name in self.tokens[3].split(",") if name]

    @property
    def version(self) -> int:
        """
        Raises:
            ProtocolError: version token is not an integer
        """
        try:
            return int(self.tokens[2])
        except ValueError:
            raise ProtocolError(f"Unknown Mapi protocol {self.tokens[2]}") from None


@dataclass
class HandshakeResult:
    """Outcome of draining the login reply"""
    warnings: List[str]
    redirects: List[str]


class AuthenticationHandshake:
    """
    Drives one login exchange over an open channel.

    A handshake object is single use: the challenge it reads is consumed by
    exactly one login attempt.
    """

    def __init__(self, channel: ConnectionChannel, registry: ProtocolHandlerRegistry,
                 language: str = "sql", hash_algorithm: Optional[str] = None):
        self.channel = channel
        self.registry = registry
        self.language = language
        self.hash_algorithm = hash_algorithm
        self.challenge: Optional[Challenge] = None

    def build_response(self, challenge: Challenge, username: str, password: str, database: str) -> str:
        """
        Build the login line for a parsed challenge.

        Raises:
            ProtocolError: non-numeric version
            UnsupportedProtocolError: no handler for the version
        """
        version = challenge.version
        handler = self.registry.lookup(version)
        if handler is None:
            raise UnsupportedProtocolError(version)

        logger.debug("Protocol handler selected", version=version, server_id=challenge.server_id)
        return handler(username, password, self.language, list(challenge.tokens),
                       database, self.hash_algorithm)

    def authenticate(self, username: str, password: str, database: str) -> HandshakeResult:
        """
        Run the full login exchange.

        Returns:
            Warnings and redirect candidates, in server order

        Raises:
            ServerError: the server rejected the login
            ConnectionLostError: stream ended or an empty line appeared
            ProtocolError / UnsupportedProtocolError: unusable challenge
        """
        if self.challenge is not None:
            raise ProtocolError("Handshake challenge already consumed")

        raw = self.channel.read_line()
        # the server sends a prompt before it accepts input
        self.channel.read_line()

        self.challenge = Challenge.parse(raw)
        response = self.build_response(self.challenge, username, password, database)

        self.channel.write_line(response)
        self.channel.flush()
        logger.debug("Login response sent", username=username, database=database,
                     version=self.challenge.version)

        return self.drain()

    def drain(self) -> HandshakeResult:
        """
        Read reply lines until the terminator line or the prompt that closes
        the server message.
        """
        warnings: List[str] = []
        redirects: List[str] = []

        while True:
            line = self.channel.read_line()
            if line == TERMINATOR:
                self.channel.discard_reply()
                break
            if not line:
                raise ConnectionLostError("Connection to the server was lost")

            response = classify_line(line)
            if response.tag is LineType.PROMPT:
                break
            elif response.tag is LineType.ERROR:
                raise ServerError(response.payload)
            elif response.tag is LineType.INFO:
                warnings.append(response.payload)
            elif response.tag is LineType.REDIRECT:
                redirects.append(response.payload)

        return HandshakeResult(warnings=warnings, redirects=redirects)
