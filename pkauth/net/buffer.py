# pkauth/net/buffer.py
from typing import Iterator, Optional

from pkauth.common.codec import decode_message
from pkauth.common.protocol import Message

DEFAULT_CAPACITY = 4096


class ReceiveBuffer:
    """
    Growable receive buffer with a cursor.

    Bytes before the cursor have been received but not decoded yet; bytes
    from the cursor on are free space for the next read. Decoded frames are
    shifted out straight away, so the buffer never keeps consumed data.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("Buffer capacity must be positive")
        self._buffer = bytearray(capacity)
        self._cursor = 0

    def __len__(self) -> int:
        return self._cursor

    @property
    def capacity(self) -> int:
        return len(self._buffer)

    def is_empty(self) -> bool:
        return self._cursor == 0

    def consumable(self) -> bytes:
        return bytes(self._buffer[:self._cursor])

    def writable(self) -> memoryview:
        """
        View over the free space. Release it (or use it as a context manager)
        before calling add_consumable(), which may grow the buffer.
        """
        return memoryview(self._buffer)[self._cursor:]

    def add_consumable(self, n: int) -> None:
        if n < 0 or self._cursor + n > len(self._buffer):
            raise ValueError(f"Cannot mark {n} bytes as received")
        self._cursor += n

        # Out of room: double rather than fail.
        if self._cursor == len(self._buffer):
            self._buffer.extend(bytes(len(self._buffer)))

    def feed(self, data: bytes) -> None:
        """Copy `data` into the buffer, growing it as needed."""
        pos = 0
        while pos < len(data):
            with self.writable() as free:
                n = min(len(free), len(data) - pos)
                free[:n] = data[pos:pos + n]
            self.add_consumable(n)
            pos += n

    def discard(self, n: int) -> None:
        if n < 0 or n > self._cursor:
            raise ValueError(f"Cannot discard {n} of {self._cursor} bytes")
        remaining = self._cursor - n
        # Same-length slice assignment keeps the capacity.
        self._buffer[:remaining] = self._buffer[n:self._cursor]
        self._cursor = remaining

    def parse_frame(self) -> Optional[Message]:
        """Decode one frame and drop its bytes; None if it is incomplete."""
        with memoryview(self._buffer) as whole, whole[:self._cursor] as pending:
            result = decode_message(pending)
        if result is None:
            return None
        message, consumed = result
        self.discard(consumed)
        return message

    def frames(self) -> Iterator[Message]:
        """Yield every complete frame currently buffered, in order."""
        while True:
            message = self.parse_frame()
            if message is None:
                return
            yield message
