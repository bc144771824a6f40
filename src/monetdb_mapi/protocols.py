"""
MAPI login response builders, keyed by protocol version.

A handler turns the parsed server challenge plus credentials into the single
line the client sends back. Handlers are plain callables stored in an
immutable ProtocolHandlerRegistry; selection is an exact version lookup.

Challenge tokens (colon separated):
    0 salt
    1 server identity
    2 protocol version
    3 comma separated hash algorithms the server accepts
    4 server byte order
    5 password pre-hash algorithm (protocol 9)
"""

import hashlib
from types import MappingProxyType
from typing import Callable, Dict, Iterator, Mapping, Optional, Sequence

import structlog

from .errors import ProtocolError

logger = structlog.get_logger()

# Login response signature:
# (username, password, language, tokens, database, hash_algorithm) -> response line
ProtocolHandler = Callable[[str, str, str, Sequence[str], str, Optional[str]], str]

# Strongest first
HASH_PREFERENCE = ("SHA512", "SHA384", "SHA256", "SHA224", "SHA1", "MD5", "RIPEMD160")

BYTE_ORDER = "BIG"


def _hashlib_name(algorithm: str) -> str:
    return algorithm.replace("-", "").lower()


def is_hash_supported(algorithm: str) -> bool:
    """True if hashlib can compute the given MAPI algorithm name"""
    try:
        hashlib.new(_hashlib_name(algorithm))
    except ValueError:
        return False
    return True


def _hexdigest(algorithm: str, data: str) -> str:
    try:
        h = hashlib.new(_hashlib_name(algorithm))
    except ValueError as e:
        raise ProtocolError(f"Hash algorithm {algorithm} is not available") from e
    h.update(data.encode('utf-8'))
    return h.hexdigest()


def select_hash_algorithm(advertised: str, override: Optional[str] = None) -> str:
    """
    Pick the algorithm for the salted password hash.

    Args:
        advertised: Challenge token 3 (comma separated)
        override: Explicit algorithm; must be among the advertised ones

    Raises:
        ProtocolError: nothing usable was advertised
    """
    offered = {name.strip().upper() for name in advertised.split(",") if name.strip()}

    if override is not None:
        wanted = override.upper()
        if wanted not in offered:
            raise ProtocolError(
                f"Requested hash algorithm {override} not supported by server: {advertised}")
        return wanted

    for algorithm in HASH_PREFERENCE:
        if algorithm in offered and is_hash_supported(algorithm):
            logger.debug("Hash algorithm selected", algorithm=algorithm, advertised=advertised)
            return algorithm

    raise ProtocolError(f"Unsupported hash algorithms required for login: {advertised}")


def _login_line(username: str, pwhash: str, language: str, database: str) -> str:
    return ":".join([BYTE_ORDER, username, pwhash, language, database]) + ":"


def build_v8_response(username: str, password: str, language: str, tokens: Sequence[str],
                      database: str, hash_algorithm: Optional[str] = None) -> str:
    """Protocol 8: {ALGO}hex(ALGO(password + salt))"""
    salt = tokens[0]
    algorithm = select_hash_algorithm(tokens[3], hash_algorithm)
    pwhash = "{%s}%s" % (algorithm, _hexdigest(algorithm, password + salt))
    return _login_line(username, pwhash, language, database)


def build_v9_response(username: str, password: str, language: str, tokens: Sequence[str],
                      database: str, hash_algorithm: Optional[str] = None) -> str:
    """Protocol 9: password is pre-hashed with the algorithm from token 5"""
    if len(tokens) < 6 or not tokens[5]:
        raise ProtocolError("Protocol 9 challenge does not name a password hash algorithm: "
                            + ":".join(tokens))
    prehashed = _hexdigest(tokens[5], password)
    return build_v8_response(username, prehashed, language, tokens, database, hash_algorithm)


class ProtocolHandlerRegistry(Mapping[int, ProtocolHandler]):
    """
    Read-only mapping from protocol version to login response builder.

    Build one per session factory and never mutate it afterwards.
    """

    def __init__(self, handlers: Mapping[int, ProtocolHandler]):
        self._handlers = MappingProxyType(dict(handlers))

    def __getitem__(self, version: int) -> ProtocolHandler:
        return self._handlers[version]

    def __iter__(self) -> Iterator[int]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def lookup(self, version: int) -> Optional[ProtocolHandler]:
        """Exact version match, None when unregistered"""
        return self._handlers.get(version)

    def __repr__(self) -> str:
        return f"ProtocolHandlerRegistry(versions={sorted(self._handlers)})"


def default_registry() -> ProtocolHandlerRegistry:
    """Registry with the protocol versions this client speaks (8 and 9)"""
    handlers: Dict[int, ProtocolHandler] = {
        8: build_v8_response,
        9: build_v9_response,
    }
    return ProtocolHandlerRegistry(handlers)
