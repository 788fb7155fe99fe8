import io
import struct
import tarfile

import pytest

from brokkr.flash import (
    MAX_NONFINAL_LZ4_BLOCKS,
    ONE_MIB,
    U64_MAX,
    FlashError,
    ImageKind,
    checked_add_u64,
    expand_inputs_tar_or_raw,
    lz4_content_size,
    lz4_nonfinal_block_limit,
    map_to_pit,
    round_up64,
)
from brokkr.pit import Partition, PitTable


def _lz4_header(content_size, flg=0x68):
    return struct.pack("<IBB", 0x184D2204, flg, 0x70) + struct.pack("<Q", content_size) + b"\x00"


def _make_tar(path, files):
    with tarfile.open(path, "w") as tf:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return path


def test_round_up64():
    assert round_up64(0, 512) == 0
    assert round_up64(1, 512) == 512
    assert round_up64(512, 512) == 512
    assert round_up64(513, 512) == 1024
    assert round_up64(7, 0) == 7


def test_lz4_nonfinal_block_limit():
    assert lz4_nonfinal_block_limit(30 * ONE_MIB) == 30
    assert lz4_nonfinal_block_limit(100 * ONE_MIB) == MAX_NONFINAL_LZ4_BLOCKS
    assert lz4_nonfinal_block_limit(ONE_MIB - 1) == 0


def test_checked_add_u64():
    assert checked_add_u64(10, 5, "x") == 15
    assert checked_add_u64(U64_MAX - 1, 1, "x") == U64_MAX
    with pytest.raises(FlashError, match="TOTALSIZE"):
        checked_add_u64(U64_MAX, 1, "TOTALSIZE")


def test_lz4_content_size():
    assert lz4_content_size(io.BytesIO(_lz4_header(12345) + b"payload")) == 12345


def test_lz4_content_size_errors():
    with pytest.raises(FlashError):
        lz4_content_size(io.BytesIO(b"\x00" * 20))
    with pytest.raises(FlashError):
        lz4_content_size(io.BytesIO(_lz4_header(1, flg=0x60)))
    with pytest.raises(FlashError):
        lz4_content_size(io.BytesIO(b"\x04\x22"))


def test_raw_file(tmp_path):
    p = tmp_path / "boot.img"
    p.write_bytes(b"hello world")
    (spec,) = expand_inputs_tar_or_raw([p])
    assert spec.kind is ImageKind.RAW_FILE
    assert spec.basename == "boot.img"
    assert spec.size == spec.disk_size == len(b"hello world")
    assert not spec.lz4
    assert not spec.download_list_mode
    with spec.open() as fh:
        assert fh.read() == b"hello world"


def test_raw_lz4_file(tmp_path):
    data = _lz4_header(4096) + b"compressed"
    p = tmp_path / "super.IMG.LZ4"
    p.write_bytes(data)
    (spec,) = expand_inputs_tar_or_raw([str(p)])
    assert spec.lz4
    assert spec.basename == "super.IMG"
    assert spec.source_basename == "super.IMG.LZ4"
    assert spec.size == 4096
    assert spec.disk_size == len(data)


def test_missing_raw_file(tmp_path):
    with pytest.raises(FlashError):
        expand_inputs_tar_or_raw([tmp_path / "nope.img"])


def test_tar_without_download_list(tmp_path):
    tar = _make_tar(tmp_path / "AP.tar", {"boot.img": b"BOOT" * 10, "dir/recovery.img": b"REC"})
    specs = expand_inputs_tar_or_raw([tar])
    assert [s.basename for s in specs] == ["boot.img", "recovery.img"]
    assert all(s.kind is ImageKind.TAR_ENTRY for s in specs)
    assert specs[1].display == f"{tar}:dir/recovery.img"
    with specs[0].open() as fh:
        assert fh.read() == b"BOOT" * 10
    with specs[1].open() as fh:
        assert fh.read(2) == b"RE"
        assert fh.read() == b"C"


def test_tar_with_download_list(tmp_path, caplog):
    tar = _make_tar(
        tmp_path / "AP.tar",
        {
            "meta-data/download-list.txt": b"  system.img \r\n\nboot.img\nmissing.img\n",
            "boot.img": b"old",
            "system.img.lz4": _lz4_header(777) + b"x",
            "extra.img": b"unused",
        },
    )
    override = tmp_path / "boot.img"
    override.write_bytes(b"newer")
    specs = expand_inputs_tar_or_raw([tar, override])
    assert [s.basename for s in specs] == ["system.img", "boot.img"]
    assert all(s.download_list_mode for s in specs)
    assert specs[0].size == 777
    assert specs[1].kind is ImageKind.RAW_FILE
    assert "missing.img" in caplog.text


def test_download_list_duplicate(tmp_path):
    tar = _make_tar(tmp_path / "a.tar", {"meta-data/download-list.txt": b"a.img\na.img\n", "a.img": b"1"})
    with pytest.raises(FlashError, match="duplicate"):
        expand_inputs_tar_or_raw([tar])


def test_download_list_empty(tmp_path):
    tar = _make_tar(tmp_path / "a.tar", {"./meta-data/download-list.txt": b" \n\n", "a.img": b"1"})
    with pytest.raises(FlashError, match="empty"):
        expand_inputs_tar_or_raw([tar])


def test_download_lists_must_match(tmp_path):
    t1 = _make_tar(tmp_path / "a.tar", {"meta-data/download-list.txt": b"a.img\n", "a.img": b"1"})
    t2 = _make_tar(tmp_path / "b.tar", {"meta-data/download-list.txt": b"b.img\n", "b.img": b"2"})
    with pytest.raises(FlashError, match="different contents"):
        expand_inputs_tar_or_raw([t1, t2])
    t3 = _make_tar(tmp_path / "c.tar", {"meta-data/download-list.txt": b"a.img\n"})
    specs = expand_inputs_tar_or_raw([t1, t3])
    assert [s.basename for s in specs] == ["a.img"]


def _pit():
    return PitTable(
        cpu_bl_id="CPU",
        partitions=[
            Partition(id=1, dev_type=2, name="BOOT", file_name="boot.img"),
            Partition(id=2, dev_type=2, name="SYSTEM", file_name="system.img"),
        ],
    )


def _spec(tmp_path, name, content=b"x"):
    p = tmp_path / name
    p.write_bytes(content)
    (spec,) = expand_inputs_tar_or_raw([p])
    return spec


def test_map_to_pit(tmp_path):
    boot = _spec(tmp_path, "boot.img")
    other = _spec(tmp_path, "other.img")
    system = _spec(tmp_path, "system.img")
    items = map_to_pit(_pit(), [boot, other, system])
    assert [(i.part.id, i.spec.basename) for i in items] == [(1, "boot.img"), (2, "system.img")]


def test_map_to_pit_later_source_replaces(tmp_path):
    first = _spec(tmp_path, "boot.img", b"a")
    (tmp_path / "sub").mkdir()
    second = _spec(tmp_path / "sub", "boot.img", b"bb")
    system = _spec(tmp_path, "system.img")
    items = map_to_pit(_pit(), [first, system, second])
    assert [i.part.id for i in items] == [1, 2]
    assert items[0].spec is second


def test_map_to_pit_nothing_matches(tmp_path):
    with pytest.raises(FlashError, match="No flashable items"):
        map_to_pit(_pit(), [_spec(tmp_path, "other.img")])