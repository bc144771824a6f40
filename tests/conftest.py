"""
Pytest configuration for MAPI client tests

- FakeSocket: scripted socket double patched into socket.create_connection
- frame_block()/frame_message()/frame_lines(): server side MAPI block framing
- decode_blocks(): split captured client output back into MAPI blocks
- FakeMapiServer: threaded loopback server for integration tests
"""

import socket
import struct
import threading
from typing import Callable, List, Optional, Tuple
from unittest.mock import patch

import pytest
import structlog

logger = structlog.get_logger()


def decode_blocks(data: bytes) -> List[Tuple[bytes, bool]]:
    """Split framed client output into (payload, last) pairs"""
    blocks = []
    offset = 0
    while offset < len(data):
        (header,) = struct.unpack('<H', data[offset:offset + 2])
        length = header >> 1
        payload = data[offset + 2:offset + 2 + length]
        blocks.append((payload, bool(header & 1)))
        offset += 2 + length
    return blocks


def flush_payload(data: bytes) -> Tuple[bytes, bool]:
    """Payload of one flush and whether it completed the message"""
    blocks = decode_blocks(data)
    return b"".join(payload for payload, _ in blocks), blocks[-1][1]


def frame_block(payload: bytes, last: bool = False) -> bytes:
    """One server block: 2-byte header then the payload"""
    return struct.pack('<H', (len(payload) << 1) | (1 if last else 0)) + payload


def frame_message(*lines: str) -> bytes:
    """A complete server message: all lines in one final block"""
    return frame_block(b"".join(line.encode('utf-8') + b"\n" for line in lines), last=True)


def frame_lines(lines: List[str]) -> bytes:
    """Each line in its own non-final block, so scripted lines come back verbatim"""
    return b"".join(frame_block(line.encode('utf-8') + b"\n") for line in lines)


class FakeSocket:
    """Socket double: serves scripted lines, records every sendall()"""

    def __init__(self, lines: Optional[List[str]] = None, chunk_size: int = 7):
        self.incoming = frame_lines(lines or [])
        self.chunk_size = chunk_size
        self.sent: List[bytes] = []
        self.options = {}
        self.timeout = None
        self.shutdown_calls = 0
        self.close_calls = 0

    def recv(self, size: int) -> bytes:
        chunk = self.incoming[:min(size, self.chunk_size)]
        self.incoming = self.incoming[len(chunk):]
        return chunk

    def sendall(self, data: bytes) -> None:
        self.sent.append(data)

    def setsockopt(self, level, option, value) -> None:
        self.options[(level, option)] = value

    def settimeout(self, timeout) -> None:
        self.timeout = timeout

    def shutdown(self, how) -> None:
        self.shutdown_calls += 1

    def close(self) -> None:
        self.close_calls += 1

    def flushes(self) -> List[Tuple[bytes, bool]]:
        return [flush_payload(data) for data in self.sent]


@pytest.fixture
def fake_socket_factory():
    """
    Patch socket.create_connection.

    Yields a register(address, lines) function; each registered address gets
    its own FakeSocket. Connecting to an unregistered address raises
    ConnectionRefusedError.
    """
    sockets = {}
    attempts = []

    def create_connection(address, timeout=None):
        attempts.append(address)
        if address not in sockets:
            raise ConnectionRefusedError(111, "Connection refused")
        return sockets[address]

    def register(address: Tuple[str, int], lines: List[str]) -> FakeSocket:
        sock = FakeSocket(lines)
        sockets[address] = sock
        return sock

    register.attempts = attempts
    with patch("monetdb_mapi.channel.socket.create_connection", side_effect=create_connection):
        yield register


class FakeMapiServer:
    """
    Minimal MAPI server on the loopback interface.

    The handler receives a ServerConnection per accepted client and scripts
    the exchange. Exceptions raised by the handler are kept in .errors.
    """

    def __init__(self, handler: Callable[["ServerConnection"], None]):
        self.handler = handler
        self.errors: List[BaseException] = []
        self.connections = 0
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(5)
        self.host, self.port = self._listener.getsockname()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._stopped = threading.Event()

    def start(self) -> "FakeMapiServer":
        self._thread.start()
        return self

    def _serve(self) -> None:
        while not self._stopped.is_set():
            try:
                conn, _ = self._listener.accept()
            except OSError:
                return
            if self._stopped.is_set():
                conn.close()
                return
            self.connections += 1
            with conn:
                try:
                    self.handler(ServerConnection(conn))
                except Exception as e:
                    logger.warning("Fake server handler failed", error=str(e))
                    self.errors.append(e)

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        # closing the listener does not wake accept(), a connection does
        try:
            socket.create_connection((self.host, self.port), timeout=1).close()
        except OSError:
            pass
        self._listener.close()
        self._thread.join(timeout=5)


class ServerConnection:
    """Server side of one client connection"""

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self.sock.settimeout(5)

    def send_lines(self, *lines: str) -> None:
        """Send one complete message; no lines at all is a bare prompt"""
        self.sock.sendall(frame_message(*lines))

    def _recv_exact(self, size: int) -> bytes:
        data = b""
        while len(data) < size:
            chunk = self.sock.recv(size - len(data))
            if not chunk:
                raise ConnectionError("client went away")
            data += chunk
        return data

    def read_message(self) -> Tuple[bytes, int]:
        """Read blocks up to the last-block bit; returns (payload, block count)"""
        payload = b""
        blocks = 0
        while True:
            (header,) = struct.unpack('<H', self._recv_exact(2))
            payload += self._recv_exact(header >> 1)
            blocks += 1
            if header & 1:
                return payload, blocks

    def wait_closed(self) -> None:
        try:
            while self.sock.recv(1024):
                pass
        except OSError:
            pass


@pytest.fixture
def mapi_server():
    """Start a FakeMapiServer with the given handler; stopped after the test"""
    servers = []

    def start(handler):
        server = FakeMapiServer(handler).start()
        servers.append(server)
        return server

    yield start

    for server in servers:
        server.stop()
