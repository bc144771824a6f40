"""
MAPI Connection Channel

Owns the TCP transport of one session and exposes line oriented I/O:
- read_line(): next newline-terminated UTF-8 line from the server
- write()/write_line()/flush(): buffered output sent as MAPI blocks

Block format, both directions:
- Int16 (little endian): (payload length << 1) | last-block bit
- Byte[]: payload (at most MAX_BLOCK_SIZE bytes)

While the channel is CONTINUING_QUERY every outbound block goes out with the
last-block bit cleared, so the server keeps waiting for the rest of the
logical message. Inbound, the end of a server message (a block with the
last-block bit set) is surfaced as a prompt line.
"""

import socket
import struct
import threading
from enum import Enum
from typing import Optional, Union

import structlog

from .config import DEFAULT_RECEIVE_TIMEOUT, DEFAULT_SEND_BUFFER_SIZE
from .errors import ConnectionLostError, MapiConnectionError, ProtocolError

logger = structlog.get_logger()

LINE_TERMINATOR = b"\n"
# what read_line() returns at the end of every server message
PROMPT_LINE = b"\x01\x01\n"
BLOCK_HEADER_SIZE = 2
MAX_BLOCK_SIZE = 8190  # 8 KiB block minus the 2 byte header
RECV_SIZE = 8192


class FramingState(Enum):
    """Continuation framing state of the outbound stream"""
    IDLE = "idle"
    CONTINUING_QUERY = "continuing_query"


def encode_blocks(payload: bytes, final: bool, max_block_size: int = MAX_BLOCK_SIZE) -> bytes:
    """
    Frame a payload as MAPI blocks.

    Args:
        payload: Bytes to frame (may be empty)
        final: Set the last-block bit on the final block
        max_block_size: Maximum payload bytes per block

    Returns:
        Header-prefixed blocks, concatenated
    """
    blocks = []
    offset = 0
    while True:
        chunk = payload[offset:offset + max_block_size]
        offset += len(chunk)
        is_last = offset >= len(payload)
        header = (len(chunk) << 1) | (1 if final and is_last else 0)
        blocks.append(struct.pack('<H', header) + chunk)
        if is_last:
            break
    return b"".join(blocks)


class ConnectionChannel:
    """
    TCP transport for one MAPI session.

    Blocking I/O only. close() may be called from another thread to abort a
    blocked read, which then fails with ConnectionLostError.
    """

    def __init__(self, receive_timeout: float = DEFAULT_RECEIVE_TIMEOUT,
                 send_buffer_size: int = DEFAULT_SEND_BUFFER_SIZE):
        self.receive_timeout = receive_timeout
        self.send_buffer_size = send_buffer_size
        self.host: Optional[str] = None
        self.port: Optional[int] = None
        self.framing_state = FramingState.IDLE

        self._sock: Optional[socket.socket] = None
        self._raw_buffer = bytearray()
        self._read_buffer = bytearray()
        self._write_buffer = bytearray()
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._sock is not None and not self._closed

    def open(self, host: str, port: int) -> "ConnectionChannel":
        """
        Establish the TCP stream.

        Raises:
            MapiConnectionError: any transport failure while connecting
        """
        self.host = host
        self.port = port
        try:
            sock = socket.create_connection((host, port), timeout=self.receive_timeout)
        except OSError as e:
            logger.error("Connection failed", host=host, port=port, error=str(e))
            raise MapiConnectionError(f"Unable to connect to {host}:{port}: {e}", host=host, port=port) from e

        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, self.send_buffer_size)
            sock.settimeout(self.receive_timeout)
        except OSError as e:
            sock.close()
            raise MapiConnectionError(f"Unable to configure socket for {host}:{port}: {e}",
                                      host=host, port=port) from e

        self._sock = sock
        self._closed = False
        logger.debug("Channel opened", host=host, port=port, timeout=self.receive_timeout)
        return self

    def read_line(self) -> str:
        """
        Read the next line, terminator stripped.

        Raises:
            ConnectionLostError: stream closed, timed out or failed mid-line
        """
        sock = self._require_socket()
        while True:
            idx = self._read_buffer.find(LINE_TERMINATOR)
            if idx >= 0:
                raw = bytes(self._read_buffer[:idx])
                del self._read_buffer[:idx + 1]
                try:
                    return raw.decode('utf-8')
                except UnicodeDecodeError as e:
                    raise ProtocolError(f"Server sent invalid UTF-8: {e}") from e

            self._read_block(sock)

    def discard_reply(self) -> None:
        """
        Drop what is left of an already received server message, up to and
        including its closing prompt. Never blocks.
        """
        idx = self._read_buffer.find(PROMPT_LINE)
        if idx >= 0:
            del self._read_buffer[:idx + len(PROMPT_LINE)]

    def _read_block(self, sock: socket.socket) -> None:
        """Decode one inbound block into the line buffer"""
        (header,) = struct.unpack('<H', self._recv_exact(sock, BLOCK_HEADER_SIZE))
        payload = self._recv_exact(sock, header >> 1)
        self._read_buffer.extend(payload)

        if header & 1:
            if self._read_buffer and not self._read_buffer.endswith(LINE_TERMINATOR):
                self._read_buffer.extend(LINE_TERMINATOR)
            self._read_buffer.extend(PROMPT_LINE)

    def _recv_exact(self, sock: socket.socket, size: int) -> bytes:
        while len(self._raw_buffer) < size:
            try:
                data = sock.recv(RECV_SIZE)
            except OSError as e:
                raise ConnectionLostError(f"Connection to the server was lost: {e}") from e

            if not data:
                raise ConnectionLostError("Connection to the server was lost")
            self._raw_buffer.extend(data)

        chunk = bytes(self._raw_buffer[:size])
        del self._raw_buffer[:size]
        return chunk

    def write(self, data: Union[str, bytes]) -> None:
        """Buffer payload bytes without a line terminator"""
        if isinstance(data, str):
            data = data.encode('utf-8')
        self._write_buffer.extend(data)

    def write_line(self, text: str) -> None:
        """Buffer text followed by the protocol line terminator"""
        self.write(text.encode('utf-8') + LINE_TERMINATOR)

    def flush(self) -> None:
        """
        Send the buffered payload as MAPI blocks.

        The last-block bit is only set when the channel is IDLE.
        """
        sock = self._require_socket()
        payload = bytes(self._write_buffer)
        self._write_buffer.clear()
        final = self.framing_state is FramingState.IDLE
        try:
            sock.sendall(encode_blocks(payload, final))
        except OSError as e:
            raise ConnectionLostError(f"Connection to the server was lost: {e}") from e

    def begin_continuation(self) -> None:
        """Mark following flushes as fragments of a larger message"""
        self.framing_state = FramingState.CONTINUING_QUERY

    def end_continuation(self) -> None:
        """Return to IDLE so the next flush completes the message"""
        self.framing_state = FramingState.IDLE

    def require_idle(self, command: str) -> None:
        """
        Raises:
            ProtocolError: a continued query is still in flight
        """
        if self.framing_state is not FramingState.IDLE:
            raise ProtocolError(f"Cannot start {command} while a query is being continued")

    def close(self) -> None:
        """Release the socket and buffers. Safe to call repeatedly."""
        with self._close_lock:
            if self._closed and self._sock is None:
                return
            self._closed = True
            sock, self._sock = self._sock, None

        self._raw_buffer.clear()
        self._read_buffer.clear()
        self._write_buffer.clear()
        self.framing_state = FramingState.IDLE

        if sock is None:
            return
        try:
            # wakes up a recv() blocked in another thread
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError:
            pass
        logger.debug("Channel closed", host=self.host, port=self.port)

    def _require_socket(self) -> socket.socket:
        sock = self._sock
        if sock is None or self._closed:
            raise ConnectionLostError("Connection to the server was lost")
        return sock

    def __enter__(self) -> "ConnectionChannel":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
