import struct

import pytest

from brokkr.commands import ByteTransport, OdinCommands, OdinError, TransportKind
from brokkr.pit import PIT_MAGIC, PitError, parse
from brokkr.pit_transfer import download_pit_bytes, download_pit_table
from brokkr.wire import PitParam, ResponseBox, RqtCommandType


class FakeDevice(ByteTransport):
    """Answers PIT requests from an in-memory image."""

    def __init__(self, pit, size=None):
        self.pit = pit
        self.size = len(pit) if size is None else size
        self.out = bytearray()
        self.requests = []

    def connected(self):
        return True

    def kind(self):
        return TransportKind.USB_BULK

    def send(self, data, retries=8):
        data = bytes(data)
        cmd, param = struct.unpack_from("<ii", data)
        self.requests.append((cmd, param))
        if cmd == RqtCommandType.PIT:
            if param == PitParam.GET:
                self.out += ResponseBox(int(RqtCommandType.PIT), self.size).to_bytes()
            elif param == PitParam.START:
                (index,) = struct.unpack_from("<i", data, 8)
                self.out += self.pit[index * 500:(index + 1) * 500]
            elif param == PitParam.COMPLETE:
                self.out += ResponseBox(int(RqtCommandType.PIT), 0).to_bytes()
        return len(data)

    def recv(self, size, retries=8):
        chunk = bytes(self.out[:size])
        del self.out[:size]
        return chunk


def _partition(part_id, offset, length, file_name):
    return struct.pack(
        "<9i32s32s32s", 0, 2, part_id, 0, 0, 0, length, offset, 0, b"PART", file_name, b""
    )


def _pit(count):
    parts = [_partition(i, i * 100, 10, f"p{i}.img".encode()) for i in range(count)]
    return struct.pack("<ii8s8sHH", PIT_MAGIC, count, b"COM", b"TESTCPU", 0, 0) + b"".join(parts)


def test_download_bytes_multi_part():
    image = _pit(4)
    device = FakeDevice(image)
    assert len(image) > 500
    assert download_pit_bytes(OdinCommands(device)) == image


def test_download_requests_one_start_per_part():
    image = _pit(4)
    device = FakeDevice(image)
    download_pit_bytes(OdinCommands(device))
    starts = [r for r in device.requests if r == (int(RqtCommandType.PIT), int(PitParam.START))]
    assert len(starts) == 2
    assert device.requests[-1] == (int(RqtCommandType.PIT), int(PitParam.COMPLETE))


def test_download_table_matches_parse():
    image = _pit(3)
    table = download_pit_table(OdinCommands(FakeDevice(image)))
    assert table == parse(image)
    assert table.cpu_bl_id == "TESTCPU"


def test_zero_size_rejected():
    with pytest.raises(OdinError, match="invalid PIT size"):
        download_pit_bytes(OdinCommands(FakeDevice(b"")))


def test_negative_size_rejected():
    with pytest.raises(OdinError, match="invalid PIT size"):
        download_pit_bytes(OdinCommands(FakeDevice(b"", size=-3)))


def test_garbage_pit_fails_to_parse():
    with pytest.raises(PitError):
        download_pit_table(OdinCommands(FakeDevice(b"\x00" * 64)))