"""Wire structures of the ODIN download protocol."""

from __future__ import annotations

import itertools
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable

REQUEST_SIZE = 1024
RESPONSE_SIZE = 8
DATA_INT_SIZE = 9
DATA_CHAR_SIZE = 128
MD5_SIZE = 32

_HEADER = struct.Struct("<ii")
_INTS = struct.Struct(f"<{DATA_INT_SIZE}i")
_RESPONSE = struct.Struct("<ii")
_INTS_OFFSET = _HEADER.size
_CHARS_OFFSET = _INTS_OFFSET + _INTS.size


class RqtCommandType(IntEnum):
    """Top-level request identifiers."""

    EMPTY = 0
    INIT = 100
    PIT = 101
    XMIT = 102
    CLOSE = 103


class InitParam(IntEnum):
    """Parameters of an INIT request."""

    TARGET = 0
    RESETTIME = 1
    TOTALSIZE = 2
    OEMSTATE = 3
    NOOEMSTATE = 4
    PACKETSIZE = 5
    XMIT_SIZE = 6


class PitParam(IntEnum):
    """Parameters of a PIT request."""

    SET = 0
    GET = 1
    START = 2
    COMPLETE = 3


class XmitParam(IntEnum):
    """Parameters of an XMIT request, plain and compressed."""

    DOWNLOAD = 0
    DUMP = 1
    START = 2
    COMPLETE = 3
    SMD = 4
    COMPRESSED_DOWNLOAD = 5
    COMPRESSED_START = 6
    COMPRESSED_COMPLETE = 7


class CloseParam(IntEnum):
    """Parameters of a CLOSE request."""

    END = 0
    REBOOT = 1
    DISCONNECT = 2
    REBOOT_RECOVERY = 3


class ProtocolVersion(IntEnum):
    """Protocol versions announced by the bootloader."""

    NONE = 0
    VER1 = 1
    VER2 = 2
    VER3 = 3
    VER4 = 4
    VER5 = 5


def _to_int32(value: int) -> int:
    """Truncate an integer to a signed 32-bit two's complement value."""
    value = int(value) & 0xFFFFFFFF
    return value - 0x1_0000_0000 if value & 0x8000_0000 else value


@dataclass(frozen=True)
class ResponseBox:
    """The 8-byte reply the device sends to every request."""

    id: int
    ack: int

    @classmethod
    def from_bytes(cls, data: bytes) -> ResponseBox:
        if len(data) != RESPONSE_SIZE:
            raise ValueError(f"response must be {RESPONSE_SIZE} bytes, got {len(data)}")
        rid, ack = _RESPONSE.unpack(bytes(data))
        return cls(rid, ack)

    def to_bytes(self) -> bytes:
        return _RESPONSE.pack(_to_int32(self.id), _to_int32(self.ack))


def make_request(command: int, param: int, ints: Iterable[int] = (), chars: bytes = b"") -> bytes:
    """Build a 1024-byte request packet.

    At most 9 integers and 128 character bytes are kept; integers are
    truncated to 32 bits.
    """
    buf = bytearray(REQUEST_SIZE)
    _HEADER.pack_into(buf, 0, _to_int32(command), _to_int32(param))

    values = [_to_int32(v) for v in itertools.islice(ints, DATA_INT_SIZE)]
    values.extend([0] * (DATA_INT_SIZE - len(values)))
    _INTS.pack_into(buf, _INTS_OFFSET, *values)

    char_bytes = bytes(chars)[:DATA_CHAR_SIZE]
    buf[_CHARS_OFFSET:_CHARS_OFFSET + len(char_bytes)] = char_bytes
    return bytes(buf)