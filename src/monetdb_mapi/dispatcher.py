"""
Query and control command submission.

Queries go out as 's<sql>;' split into fragments of at most MAX_QUERY_SIZE
bytes. All fragments but the last are flushed with the channel in
CONTINUING_QUERY so the server waits for the rest. Control commands go out
as one 'X<statement>' line and are acknowledged by a prompt.
"""

import structlog

from .channel import ConnectionChannel, FramingState, LINE_TERMINATOR
from .classifier import LineType, classify_line
from .errors import ConnectionLostError, ProtocolError, ServerError

logger = structlog.get_logger()

MAX_QUERY_SIZE = 1020  # block limit of 1024 minus framing
COMMAND_QUERY = b"s"
COMMAND_CONTROL = "X"
STATEMENT_SEPARATOR = b";"


class QueryDispatcher:
    """Writes commands to a channel; reading results is left to the caller"""

    def __init__(self, channel: ConnectionChannel, max_query_size: int = MAX_QUERY_SIZE):
        self.channel = channel
        self.max_query_size = max_query_size

    def execute(self, sql: str) -> int:
        """
        Send a query, chunked with continuation framing.

        Returns:
            Number of non-final fragments written
        """
        channel = self.channel
        data = sql.encode('utf-8')
        size = self.max_query_size

        if channel.framing_state is FramingState.IDLE:
            channel.write(COMMAND_QUERY)

        continued = 0
        offset = 0
        # separators are dropped from the tail only; fragment count follows the full length
        end = len(data.rstrip(STATEMENT_SEPARATOR))
        while len(data) - offset > size:
            channel.write(data[offset:min(offset + size, end)])
            channel.begin_continuation()
            channel.flush()
            offset += size
            continued += 1

        channel.write(data[offset:end] + STATEMENT_SEPARATOR + LINE_TERMINATOR)
        channel.end_continuation()
        channel.flush()

        logger.debug("Query sent", bytes=len(data), fragments=continued + 1)
        return continued

    def execute_control(self, statement: str) -> None:
        """
        Send an administrative statement and wait for its acknowledgement.

        Raises:
            ServerError: the server answered with an error line
            ProtocolError: any reply other than a prompt or an error
        """
        channel = self.channel
        channel.require_idle("control command")

        channel.write_line(COMMAND_CONTROL + statement)
        channel.flush()

        line = channel.read_line()
        if not line:
            raise ConnectionLostError("Connection to the server was lost")

        response = classify_line(line)
        if response.tag is LineType.PROMPT:
            logger.debug("Control command acknowledged", statement=statement)
            return
        if response.tag is LineType.ERROR:
            # drop the rest of the error message if it arrived with this line
            channel.discard_reply()
            raise ServerError(response.payload)
        raise ProtocolError(f"Unexpected reply to control command: {line!r}")
