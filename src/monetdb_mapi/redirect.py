"""
Redirect following.

A login reply may carry '^' lines whose payload is a URI such as
mapi:monetdb://host:port/database?lang=sql. Only the first candidate is
followed; the session is moved to a brand-new channel for it.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Sequence
from urllib.parse import urlsplit

import structlog

from .config import DEFAULT_PORT
from .errors import ProtocolError

if TYPE_CHECKING:
    from .session import Session

logger = structlog.get_logger()

MAPI_URI_PREFIX = "mapi:"


@dataclass(frozen=True)
class RedirectTarget:
    host: str
    port: int
    database: str


def parse_redirect(uri: str) -> RedirectTarget:
    """
    Extract host, port and database from a redirect payload.

    Raises:
        ProtocolError: no host, or a port that is not a number
    """
    text = uri.strip()
    if text.startswith(MAPI_URI_PREFIX):
        text = text[len(MAPI_URI_PREFIX):]

    parts = urlsplit(text)
    try:
        port = parts.port
    except ValueError as e:
        raise ProtocolError(f"Invalid port in redirect {uri!r}") from e

    if not parts.hostname:
        raise ProtocolError(f"Redirect without host: {uri!r}")

    database = parts.path.lstrip("/")
    return RedirectTarget(host=parts.hostname, port=port or DEFAULT_PORT, database=database)


class RedirectResolver:
    """Moves a session to the first redirect target and logs in again"""

    def follow(self, session: "Session", candidates: Sequence[str],
               redirects_left: int = 0) -> List[str]:
        """
        Returns:
            Warnings of the new connection only

        Raises:
            ProtocolError: the first candidate is not a usable MAPI URI
        """
        # hard close, no logout exchange with the old server
        session.channel.close()

        target = parse_redirect(candidates[0])
        if len(candidates) > 1:
            logger.debug("Ignoring additional redirect candidates", ignored=list(candidates[1:]))

        logger.info("Following redirect", from_host=session.host, from_port=session.port,
                    host=target.host, port=target.port, database=target.database)

        config = session.config.with_target(target.host, target.port, target.database)
        return session.retarget(config, redirects_left=redirects_left)
