"""
Connection settings for MAPI sessions.

Settings can be built directly or loaded from MAPI_* environment variables:

    MAPI_HOST, MAPI_PORT, MAPI_USER, MAPI_PASSWORD, MAPI_DATABASE,
    MAPI_LANGUAGE, MAPI_TIMEOUT, MAPI_HASH
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

DEFAULT_PORT = 50000
DEFAULT_RECEIVE_TIMEOUT = 60 * 2.0  # seconds
DEFAULT_SEND_BUFFER_SIZE = 60 * 2 * 1000


@dataclass(frozen=True)
class MapiConfig:
    """Everything needed to open and log into one MAPI session"""
    host: str = "localhost"
    port: int = DEFAULT_PORT
    username: str = "monetdb"
    password: str = field(default="monetdb", repr=False)
    database: str = "demo"
    language: str = "sql"
    receive_timeout: float = DEFAULT_RECEIVE_TIMEOUT
    send_buffer_size: int = DEFAULT_SEND_BUFFER_SIZE
    hash_algorithm: Optional[str] = None

    @classmethod
    def from_env(cls, prefix: str = "MAPI_", environ: Optional[Mapping[str, str]] = None) -> "MapiConfig":
        """
        Build a config from environment variables.

        Unset variables keep their defaults. Numeric variables that do not
        parse raise ValueError naming the variable.

        Args:
            prefix: Variable name prefix
            environ: Mapping to read from (defaults to os.environ)
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        for key, attr in (("HOST", "host"), ("USER", "username"), ("PASSWORD", "password"),
                          ("DATABASE", "database"), ("LANGUAGE", "language"),
                          ("HASH", "hash_algorithm")):
            value = env.get(prefix + key)
            if value:
                values[attr] = value

        port = env.get(prefix + "PORT")
        if port:
            try:
                values["port"] = int(port)
            except ValueError:
                raise ValueError(f"{prefix}PORT must be an integer, got {port!r}") from None

        timeout = env.get(prefix + "TIMEOUT")
        if timeout:
            try:
                values["receive_timeout"] = float(timeout)
            except ValueError:
                raise ValueError(f"{prefix}TIMEOUT must be a number, got {timeout!r}") from None

        return cls(**values)

    def with_target(self, host: str, port: int, database: str) -> "MapiConfig":
        """Same credentials and settings aimed at another endpoint"""
        return replace(self, host=host, port=port, database=database)
