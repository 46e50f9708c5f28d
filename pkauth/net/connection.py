# pkauth/net/connection.py
import logging

from pkauth.common.codec import encode_message
from pkauth.common.errors import ConnectionReset
from pkauth.common.protocol import Message, NoMessage
from pkauth.net.buffer import DEFAULT_CAPACITY, ReceiveBuffer
from pkauth.net.transport import Transport

log = logging.getLogger(__name__)


class Connection:
    """Framed message I/O over a Transport."""

    def __init__(self, transport: Transport, capacity: int = DEFAULT_CAPACITY):
        self.transport = transport
        self.buf = ReceiveBuffer(capacity)
        # Set once the peer has closed with nothing buffered.
        self.at_eof = False

    def send(self, message: Message) -> None:
        data = encode_message(message)
        log.debug("-> %s (%d bytes)", message.type, len(data))
        self.transport.write_all(data)

    def receive(self) -> Message:
        """
        Block until one whole message is available.

        Returns NoMessage and sets at_eof if the peer closed with nothing
        buffered; a NoMessage decoded from the wire leaves at_eof unset. Raises
        ConnectionReset if it closed in the middle of a frame, FramingError
        on garbage and TransportError on I/O failure.
        """
        while True:
            message = self.buf.parse_frame()
            if message is not None:
                log.debug("<- %s", message.type)
                return message

            with self.buf.writable() as free:
                n = self.transport.read(free)

            if n == 0:
                if self.buf.is_empty():
                    self.at_eof = True
                    return NoMessage()
                raise ConnectionReset(
                    f"connection reset by peer with {len(self.buf)} bytes of a partial frame"
                )
            self.buf.add_consumable(n)
