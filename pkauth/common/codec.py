# pkauth/common/codec.py
"""
Binary framing for protocol messages.

Each frame is:
  - u32 little-endian variant tag (see protocol.MESSAGE_TYPES)
  - every field in declaration order; str and bytes fields are written as a
    u64 little-endian length followed by the raw bytes (UTF-8 for str)

There is no end-of-frame marker: a frame ends where its last field ends, so
frames can be packed back to back and split apart only by decoding them.
"""
import struct
from typing import List, Optional, Tuple, Type

from pydantic import BaseModel

from pkauth.common.errors import FramingError
from pkauth.common.protocol import MESSAGE_TYPES, TAG_BY_TYPE, Message

TAG_STRUCT = struct.Struct("<I")
LENGTH_STRUCT = struct.Struct("<Q")

# Longest str/bytes field accepted; a longer length prefix is malformed.
MAX_FIELD_LENGTH = 4 * 1024 * 1024


def _wire_fields(cls: Type[BaseModel]) -> List[Tuple[str, type]]:
    return [
        (name, info.annotation)
        for name, info in cls.model_fields.items()
        if name != "type"
    ]


# Field layouts are fixed per variant, compute them once.
_LAYOUTS = {cls: _wire_fields(cls) for cls in MESSAGE_TYPES}


def encode_message(message: Message) -> bytes:
    cls = type(message)
    try:
        tag = TAG_BY_TYPE[cls]
    except KeyError:
        raise TypeError(f"Not a protocol message: {cls.__name__}") from None

    out = bytearray(TAG_STRUCT.pack(tag))
    for name, kind in _LAYOUTS[cls]:
        value = getattr(message, name)
        raw = value.encode("utf-8") if kind is str else bytes(value)
        out += LENGTH_STRUCT.pack(len(raw))
        out += raw
    return bytes(out)


def decode_message(data) -> Optional[Tuple[Message, int]]:
    """
    Try to decode one frame from the start of `data`.

    Returns (message, bytes_consumed) when a whole frame is present and None
    when more bytes are needed. Raises FramingError when the bytes can never
    form a valid frame.
    """
    # Release the view on every exit path; the receive buffer cannot grow
    # while a view onto it is alive.
    with memoryview(data) as view:
        return _decode(view)


def _decode(view: memoryview) -> Optional[Tuple[Message, int]]:
    if len(view) < TAG_STRUCT.size:
        return None

    (tag,) = TAG_STRUCT.unpack_from(view, 0)
    if tag >= len(MESSAGE_TYPES):
        raise FramingError(f"Unknown message tag {tag}")
    cls = MESSAGE_TYPES[tag]
    pos = TAG_STRUCT.size

    fields = {}
    for name, kind in _LAYOUTS[cls]:
        if len(view) - pos < LENGTH_STRUCT.size:
            return None
        (length,) = LENGTH_STRUCT.unpack_from(view, pos)
        if length > MAX_FIELD_LENGTH:
            raise FramingError(f"Field '{name}' too large: {length} > {MAX_FIELD_LENGTH}")
        pos += LENGTH_STRUCT.size

        if len(view) - pos < length:
            return None
        raw = bytes(view[pos:pos + length])
        pos += length

        if kind is str:
            try:
                fields[name] = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise FramingError(f"Field '{name}' is not valid UTF-8") from exc
        else:
            fields[name] = raw

    return cls(**fields), pos
