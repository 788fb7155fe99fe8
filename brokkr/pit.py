"""Parsing of PIT (partition information table) images."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

PIT_MAGIC = 0x12349876

HEADER = struct.Struct("<ii8s8sHH")
PARTITION = struct.Struct("<9i32s32s32s")

_WHITESPACE = " \t\r\n"


class PitError(ValueError):
    """A PIT image could not be parsed."""


@dataclass(frozen=True)
class Partition:
    """One partition as described by the PIT."""

    id: int = 0
    dev_type: int = 0
    begin_block: int = 0
    block_bytes: int = 0
    block_size: int = 0
    file_size: int = 0
    name: str = ""
    file_name: str = ""


@dataclass
class PitTable:
    """A parsed PIT: header fields and the partition list in PIT order."""

    com_tar2: str = ""
    cpu_bl_id: str = ""
    lu_count: int = 0
    partitions: list[Partition] = field(default_factory=list)

    def find_by_file_name(self, basename: str) -> Partition | None:
        """Return the first partition whose file name equals ``basename``."""
        if not basename:
            return None
        return next((p for p in self.partitions if p.file_name == basename), None)

    def common_block_size(self) -> int | None:
        """Return the block size in bytes if every partition shares it."""
        if not self.partitions:
            return None
        size = self.partitions[0].block_bytes
        if size <= 0:
            return None
        if all(p.block_bytes == size for p in self.partitions):
            return size
        return None


@dataclass(frozen=True)
class _RawEntry:
    dev_type: int
    id: int
    block_size: int
    block_length: int
    offset: int
    name: str
    file_name: str


def _nul_terminated(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("latin-1")


def _fixed_field(raw: bytes) -> str:
    return _nul_terminated(raw).rstrip(_WHITESPACE)


def _block_bytes_for_dev_type(dev_type: int) -> int:
    return 4096 if dev_type == 8 else 512


def parse(data: bytes) -> PitTable:
    """Parse a PIT image and derive each partition's extent.

    Partitions are grouped by device type and ordered by their first block;
    each one spans up to the next partition's start, and the last one of a
    device takes the length the PIT declares for it.
    """
    data = bytes(data)
    if len(data) < HEADER.size:
        raise PitError("PIT parse: buffer too small for header")

    magic, count, com_tar2, cpu_bl_id, lu_count, _reserved = HEADER.unpack_from(data)
    if magic != PIT_MAGIC:
        raise PitError("PIT parse: bad magic")
    if count < 0:
        raise PitError("PIT parse: negative partition count")

    required = HEADER.size + count * PARTITION.size
    if len(data) < required:
        raise PitError("PIT parse: buffer smaller than declared partition table")

    raw = [
        _RawEntry(
            dev_type=dev_type,
            id=part_id,
            block_size=block_size,
            block_length=block_length,
            offset=offset,
            name=_nul_terminated(name),
            file_name=_nul_terminated(file_name),
        )
        for (
            _bin_type,
            dev_type,
            part_id,
            _attribute,
            _update_attribute,
            block_size,
            block_length,
            offset,
            _file_size,
            name,
            file_name,
            _delta_name,
        ) in PARTITION.iter_unpack(data[HEADER.size:required])
    ]

    max_block_size = max([0, *(e.block_size for e in raw)])
    max_offset = max([0, *(e.offset for e in raw)])
    block_size_is_begin = max_block_size > 4096 and max_offset <= 4096

    begins = [e.block_size if block_size_is_begin else e.offset for e in raw]

    by_dev: dict[int, list[int]] = {}
    for index, entry in enumerate(raw):
        by_dev.setdefault(entry.dev_type, []).append(index)

    blocks = [0] * len(raw)
    for indexes in by_dev.values():
        indexes.sort(key=begins.__getitem__)
        for cur, nxt in zip(indexes, [*indexes[1:], None]):
            if nxt is not None:
                blocks[cur] = max(begins[nxt] - begins[cur], 0)
            else:
                blocks[cur] = max(raw[cur].block_length, 0)

    partitions = []
    for entry, begin, block_count in zip(raw, begins, blocks):
        block_bytes = _block_bytes_for_dev_type(entry.dev_type)
        partitions.append(
            Partition(
                id=entry.id,
                dev_type=entry.dev_type,
                begin_block=begin,
                block_bytes=block_bytes,
                block_size=block_count,
                file_size=max(block_bytes, 0) * max(block_count, 0),
                name=entry.name,
                file_name=entry.file_name,
            )
        )

    table = PitTable(
        com_tar2=_fixed_field(com_tar2),
        cpu_bl_id=_fixed_field(cpu_bl_id),
        lu_count=lu_count,
        partitions=partitions,
    )
    log.debug("Parsed PIT: %d partitions, cpu_bl_id='%s'", len(partitions), table.cpu_bl_id)
    return table