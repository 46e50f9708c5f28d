# pkauth/net/transport.py
"""
Byte-level transports the handshake runs on.

The codec and the sessions only need two blocking operations:
  - read(buffer): fill some of `buffer`, return the byte count, 0 on clean EOF
  - write_all(data): write every byte or fail
Anything offering those over an already-secured stream will do.
"""
import socket
from typing import BinaryIO, Protocol

from pkauth.common.errors import TransportError


class Transport(Protocol):
    def read(self, buffer: memoryview) -> int:
        ...

    def write_all(self, data: bytes) -> None:
        ...


class SocketTransport:
    """Plain or TLS-wrapped socket (ssl.SSLSocket is a socket subclass)."""

    def __init__(self, sock: socket.socket):
        self.sock = sock

    def read(self, buffer: memoryview) -> int:
        try:
            return self.sock.recv_into(buffer)
        except OSError as exc:
            raise TransportError(f"IO read error: {exc}") from exc

    def write_all(self, data: bytes) -> None:
        try:
            self.sock.sendall(data)
        except OSError as exc:
            raise TransportError(f"IO write error: {exc}") from exc


class StreamTransport:
    """
    Buffered binary stream, e.g. sock.makefile("rwb").

    Uses readinto1() so a read returns as soon as the stream has anything,
    instead of blocking until the whole buffer is full.
    """

    def __init__(self, stream: BinaryIO):
        self.stream = stream

    def read(self, buffer: memoryview) -> int:
        try:
            n = self.stream.readinto1(buffer)
        except OSError as exc:
            raise TransportError(f"IO read error: {exc}") from exc
        # Non-blocking streams report "nothing yet" as None.
        if n is None:
            raise TransportError("IO read error: stream would block")
        return n

    def write_all(self, data: bytes) -> None:
        try:
            self.stream.write(data)
            self.stream.flush()
        except OSError as exc:
            raise TransportError(f"IO write error: {exc}") from exc
