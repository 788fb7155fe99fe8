"""Turning firmware inputs into flashable images and mapping them onto a PIT."""

from __future__ import annotations

import io
import logging
import struct
import tarfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Iterable

from brokkr.pit import Partition, PitTable

log = logging.getLogger(__name__)

ONE_MIB = 1024 * 1024
MAX_NONFINAL_LZ4_BLOCKS = 31
U64_MAX = 0xFFFF_FFFF_FFFF_FFFF

LZ4_FRAME_MAGIC = 0x184D2204
_DOWNLOAD_LIST_NAMES = frozenset({"meta-data/download-list.txt", "./meta-data/download-list.txt"})
_DOWNLOAD_LIST_MAX = 128 * 1024
_WHITESPACE = " \t\r\n"


class FlashError(Exception):
    """Inputs could not be prepared for flashing."""


class ImageKind(Enum):
    RAW_FILE = "raw_file"
    TAR_ENTRY = "tar_entry"


class _SectionReader(io.RawIOBase):
    """Reads a byte range of a file as if it were a file of its own."""

    def __init__(self, path: Path, offset: int, size: int) -> None:
        super().__init__()
        self._file = open(path, "rb")
        self._offset = offset
        self._size = size
        self._pos = 0

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        remaining = self._size - self._pos
        if remaining <= 0:
            return 0
        view = memoryview(buffer).cast("B")
        self._file.seek(self._offset + self._pos)
        data = self._file.read(min(len(view), remaining))
        view[: len(data)] = data
        self._pos += len(data)
        return len(data)

    def seek(self, pos: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_SET:
            target = pos
        elif whence == io.SEEK_CUR:
            target = self._pos + pos
        elif whence == io.SEEK_END:
            target = self._size + pos
        else:
            raise ValueError(f"invalid whence: {whence}")
        if target < 0:
            raise ValueError("negative seek position")
        self._pos = target
        return self._pos

    def tell(self) -> int:
        return self._pos

    def close(self) -> None:
        if not self.closed:
            self._file.close()
        super().close()


@dataclass(frozen=True)
class _TarMember:
    name: str
    offset: int
    size: int


@dataclass
class ImageSpec:
    """One image to flash, either a plain file or an entry of a tar archive."""

    kind: ImageKind
    path: Path
    basename: str = ""
    source_basename: str = ""
    size: int = 0
    disk_size: int = 0
    lz4: bool = False
    download_list_mode: bool = False
    display: str = ""
    entry_name: str = ""
    entry_offset: int = 0

    def open(self) -> BinaryIO:
        """Open the image's bytes as stored on disk (still compressed if LZ4)."""
        try:
            if self.kind is ImageKind.RAW_FILE:
                return open(self.path, "rb")
            if self.kind is ImageKind.TAR_ENTRY:
                return _SectionReader(self.path, self.entry_offset, self.disk_size)
        except OSError as exc:
            raise FlashError(f"cannot open {self.display or self.path}: {exc}") from exc
        raise FlashError("ImageSpec.open: invalid kind")


@dataclass(frozen=True)
class FlashItem:
    """An image paired with the partition it is written to."""

    part: Partition
    spec: ImageSpec


def checked_add_u64(acc: int, value: int, what: str) -> int:
    """Return ``acc + value``, raising if the sum leaves the unsigned 64-bit range."""
    if U64_MAX - acc < value:
        raise FlashError(f"Overflow while computing {what}")
    return acc + value


def round_up64(n: int, base: int) -> int:
    """Round ``n`` up to a multiple of ``base``; a zero base leaves ``n`` alone."""
    if base == 0:
        return n
    rem = n % base
    return n + (base - rem) if rem else n


def lz4_nonfinal_block_limit(buffer_bytes: int) -> int:
    """How many 1 MiB LZ4 blocks fit in one non-final window."""
    return min(buffer_bytes // ONE_MIB, MAX_NONFINAL_LZ4_BLOCKS)


def lz4_content_size(stream: BinaryIO) -> int:
    """Read an LZ4 frame header and return the declared decompressed size."""
    header = stream.read(6)
    if len(header) < 6:
        raise FlashError("LZ4 frame header truncated")
    magic, flg, _bd = struct.unpack("<IBB", header)
    if magic != LZ4_FRAME_MAGIC:
        raise FlashError("LZ4 frame: bad magic")
    if flg >> 6 != 1:
        raise FlashError("LZ4 frame: unsupported version")
    if not flg & 0x08:
        raise FlashError("LZ4 frame has no content size")
    raw = stream.read(8)
    if len(raw) < 8:
        raise FlashError("LZ4 frame header truncated")
    return struct.unpack("<Q", raw)[0]


def _is_lz4_name(name: str) -> bool:
    return name.lower().endswith(".lz4")


def _strip_lz4(name: str) -> str:
    return name[:-4] if _is_lz4_name(name) else name


def _basename(name: str) -> str:
    return name.rsplit("/", 1)[-1]


def _is_tar(path: Path) -> bool:
    if not path.is_file():
        return False
    try:
        with tarfile.open(path, "r:"):
            return True
    except (tarfile.TarError, OSError):
        return False


def _tar_members(path: Path) -> list[_TarMember]:
    try:
        with tarfile.open(path, "r:") as archive:
            return [_TarMember(m.name, m.offset_data, m.size) for m in archive.getmembers() if m.isfile()]
    except (tarfile.TarError, OSError) as exc:
        raise FlashError(f"cannot read tar archive {path}: {exc}") from exc


def _raw_size(path: Path) -> int:
    try:
        with open(path, "rb") as fh:
            return fh.seek(0, io.SEEK_END)
    except OSError as exc:
        raise FlashError(f"cannot open {path}: {exc}") from exc


def _read_download_list(path: Path, member: _TarMember) -> list[str]:
    if member.size > _DOWNLOAD_LIST_MAX:
        raise FlashError("read_text: too large: download-list.txt")
    with _SectionReader(path, member.offset, member.size) as reader:
        data = reader.read()
    if len(data) < member.size:
        raise FlashError("Short read: download-list.txt")
    return _parse_download_list(data.decode("utf-8", "surrogateescape"))


def _parse_download_list(text: str) -> list[str]:
    names: list[str] = []
    seen: set[str] = set()
    for line in text.split("\n"):
        name = line.strip(_WHITESPACE)
        if not name:
            continue
        if name in seen:
            raise FlashError(f"download-list.txt contains duplicate entry: {name}")
        seen.add(name)
        names.append(name)
    if not names:
        raise FlashError("download-list.txt is empty")
    return names


def _make_spec(
    kind: ImageKind,
    path: Path,
    member: _TarMember | None,
    display: str,
    source_basename: str,
    disk_size: int,
    download_list_mode: bool,
) -> ImageSpec:
    lz4 = _is_lz4_name(source_basename)
    spec = ImageSpec(
        kind=kind,
        path=path,
        basename=_strip_lz4(source_basename) if lz4 else source_basename,
        source_basename=source_basename,
        disk_size=disk_size,
        lz4=lz4,
        download_list_mode=download_list_mode,
        display=display,
        entry_name=member.name if member else "",
        entry_offset=member.offset if member else 0,
    )
    if lz4:
        with spec.open() as stream:
            spec.size = lz4_content_size(stream)
    else:
        spec.size = disk_size
    return spec


@dataclass(frozen=True)
class _Candidate:
    kind: ImageKind
    path: Path
    member: _TarMember | None
    source_basename: str
    display: str
    disk_size: int

    @property
    def basename(self) -> str:
        return _strip_lz4(self.source_basename)


def _collect_candidates(inputs: list[Path]) -> dict[str, _Candidate]:
    candidates: dict[str, _Candidate] = {}

    def merge(cand: _Candidate) -> None:
        if cand.basename:
            candidates[cand.basename] = cand

    for path in inputs:
        if _is_tar(path):
            for member in _tar_members(path):
                if member.name in _DOWNLOAD_LIST_NAMES:
                    continue
                source = _basename(member.name)
                if not source:
                    continue
                merge(_Candidate(ImageKind.TAR_ENTRY, path, member, source, f"{path}:{member.name}", member.size))
        else:
            merge(_Candidate(ImageKind.RAW_FILE, path, None, path.name, str(path), _raw_size(path)))
    return candidates


def expand_inputs_tar_or_raw(inputs: Iterable[str | Path]) -> list[ImageSpec]:
    """Expand input files and tar archives into image specs.

    If any archive carries ``meta-data/download-list.txt``, only the images it
    names are returned, in its order; otherwise every tar entry and raw file
    is returned in input order.
    """
    paths = [Path(p) for p in inputs]

    download_list: list[str] | None = None
    for path in paths:
        if not _is_tar(path):
            continue
        member = next((m for m in _tar_members(path) if m.name in _DOWNLOAD_LIST_NAMES), None)
        if member is None:
            continue
        names = _read_download_list(path, member)
        if download_list is None:
            download_list = names
        elif download_list != names:
            raise FlashError("Multiple download-list.txt files found with different contents")

    if download_list is not None:
        candidates = _collect_candidates(paths)
        out: list[ImageSpec] = []
        for name in download_list:
            cand = candidates.get(name)
            if cand is None:
                log.warning("download-list.txt references missing file: %s (skipping)", name)
                continue
            out.append(
                _make_spec(
                    cand.kind, cand.path, cand.member, cand.display, cand.source_basename, cand.disk_size, True
                )
            )
        return out

    out = []
    for path in paths:
        if _is_tar(path):
            for member in _tar_members(path):
                if member.name in _DOWNLOAD_LIST_NAMES:
                    continue
                source = _basename(member.name)
                if not source:
                    continue
                out.append(
                    _make_spec(
                        ImageKind.TAR_ENTRY, path, member, f"{path}:{member.name}", source, member.size, False
                    )
                )
        else:
            out.append(_make_spec(ImageKind.RAW_FILE, path, None, str(path), path.name, _raw_size(path), False))
    return out


def map_to_pit(pit_table: PitTable, sources: Iterable[ImageSpec]) -> list[FlashItem]:
    """Pair each source with the PIT partition of the same file name.

    A later source for the same partition replaces the earlier one in place.
    """
    items: list[FlashItem] = []
    by_part: dict[int, int] = {}

    for spec in sources:
        if not spec.basename:
            continue
        part = pit_table.find_by_file_name(spec.basename)
        if part is None:
            continue
        item = FlashItem(part=part, spec=spec)
        if part.id in by_part:
            items[by_part[part.id]] = item
        else:
            by_part[part.id] = len(items)
            items.append(item)

    if not items:
        raise FlashError("No flashable items after PIT mapping")
    log.debug("PIT mapping: %d items", len(items))
    return items