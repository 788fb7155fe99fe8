"""Per-packet transfer steps and the windows of image data they carry."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterator, Union

from brokkr.commands import OdinCommands
from brokkr.flash import LZ4_FRAME_MAGIC, ONE_MIB, FlashError, round_up64
from brokkr.wire import RqtCommandType

Payload = Union[bytes, bytearray, memoryview]


class StepOp(Enum):
    """What a device worker does in one lock-step round."""

    QUIT = "quit"
    BEGIN = "begin"
    DATA = "data"
    END = "end"


@dataclass(frozen=True)
class Step:
    """One command that every active device performs in the same round.

    ``a`` is the size announced by BEGIN (bytes to receive) or END (bytes to
    write); ``payload`` is the packet sent by DATA.
    """

    op: StepOp = StepOp.QUIT
    comp: bool = False
    a: int = 0
    payload: Payload = b""
    part_id: int = 0
    dev_type: int = 0
    last: bool = False


@dataclass(frozen=True)
class Window:
    """A chunk of an image, padded with zeros to a whole number of packets.

    ``begin`` is the size announced before the chunk is sent, ``end`` the
    size reported when it is complete, ``rounded`` the padded length.
    """

    data: bytes
    begin: int
    end: int
    rounded: int
    last: bool


def _read_exact(stream: BinaryIO, size: int, what: str) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = stream.read(size - len(buf))
        if not chunk:
            raise FlashError(f"Short read: {what}")
        buf += chunk
    return bytes(buf)


class Lz4BlockReader:
    """Reads an LZ4 frame block by block without decompressing it.

    Each block is returned with its 4-byte size prefix; block checksums, if
    the frame has them, are dropped. Every block but the last is taken to
    decompress to 1 MiB.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        magic, flg, _bd = struct.unpack("<IBB", _read_exact(stream, 6, "LZ4 frame header"))
        if magic != LZ4_FRAME_MAGIC:
            raise FlashError("LZ4 frame: bad magic")
        if flg >> 6 != 1:
            raise FlashError("LZ4 frame: unsupported version")
        if not flg & 0x08:
            raise FlashError("LZ4 frame has no content size")
        (self._content_size,) = struct.unpack("<Q", _read_exact(stream, 8, "LZ4 frame header"))
        if flg & 0x01:
            _read_exact(stream, 4, "LZ4 frame header")
        _read_exact(stream, 1, "LZ4 frame header")
        self._block_checksum = bool(flg & 0x10)
        self._consumed = 0

    def content_size(self) -> int:
        """The decompressed size the frame declares."""
        return self._content_size

    def blocks_remaining(self) -> int:
        """How many 1 MiB blocks are still to be read."""
        remaining = self._content_size - self._consumed
        return -(-remaining // ONE_MIB) if remaining > 0 else 0

    def read_blocks(self, count: int) -> bytes:
        """Read ``count`` blocks and return them, size prefixes included."""
        out = bytearray()
        for _ in range(count):
            prefix = _read_exact(self._stream, 4, "LZ4 block header")
            (word,) = struct.unpack("<I", prefix)
            if word == 0:
                raise FlashError("LZ4 stream ended before the declared content size")
            out += prefix
            out += _read_exact(self._stream, word & 0x7FFF_FFFF, "LZ4 block")
            if self._block_checksum:
                _read_exact(self._stream, 4, "LZ4 block checksum")
            self._consumed += min(ONE_MIB, self._content_size - self._consumed)
        return bytes(out)


def _padded(data: bytes, rounded: int) -> bytes:
    return data + bytes(rounded - len(data))


def iter_raw_windows(stream: BinaryIO, size: int, buffer_bytes: int, packet_size: int) -> Iterator[Window]:
    """Cut ``size`` bytes of ``stream`` into windows of at most ``buffer_bytes``."""
    sent = 0
    while sent < size:
        actual = min(size - sent, buffer_bytes)
        rounded = round_up64(actual, packet_size)
        data = _read_exact(stream, actual, "image data")
        sent += actual
        yield Window(data=_padded(data, rounded), begin=rounded, end=actual, rounded=rounded, last=sent >= size)


def iter_lz4_windows(reader: Lz4BlockReader, max_blocks: int, packet_size: int) -> Iterator[Window]:
    """Group LZ4 blocks into windows of at most ``max_blocks`` 1 MiB blocks.

    The final window takes every block that is left.
    """
    if max_blocks <= 0:
        raise FlashError("buffer_bytes too small for compressed download (needs >= 1MiB)")
    total = reader.content_size()
    window_bytes = max_blocks * ONE_MIB
    sent = 0
    while sent < total:
        remaining = total - sent
        last = remaining <= window_bytes
        decomp = remaining if last else window_bytes
        blocks = reader.blocks_remaining() if last else decomp // ONE_MIB
        comp = reader.read_blocks(blocks)
        rounded = round_up64(len(comp), packet_size)
        sent += decomp
        yield Window(data=_padded(comp, rounded), begin=len(comp), end=decomp, rounded=rounded, last=last)


def raw_progress(window: Window, packet_size: int) -> list[int]:
    """Bytes of real data carried by each packet of an uncompressed window."""
    remaining = window.end
    out = []
    for _ in range(window.rounded // packet_size):
        add = min(packet_size, remaining)
        remaining -= add
        out.append(add)
    return out


def lz4_progress(window: Window, packets: int) -> list[int]:
    """Share of the decompressed size credited to each packet of a compressed window."""
    if packets <= 0:
        return []
    end = window.end
    return [((p + 1) * end) // packets - (p * end) // packets for p in range(packets)]


def execute_step(odin: OdinCommands, step: Step) -> None:
    """Perform one step on one device; raises on any protocol failure."""
    if step.op is StepOp.BEGIN:
        if step.comp:
            odin.begin_download_compressed(step.a)
        else:
            odin.begin_download(step.a)
    elif step.op is StepOp.DATA:
        odin.send_raw(bytes(step.payload))
        odin.recv_checked_response(RqtCommandType.EMPTY)
    elif step.op is StepOp.END:
        if step.comp:
            odin.end_download_compressed(step.a, step.part_id, step.dev_type, step.last)
        else:
            odin.end_download(step.a, step.part_id, step.dev_type, step.last)