import struct

import pytest

from brokkr.wire import (
    CloseParam,
    InitParam,
    PitParam,
    ProtocolVersion,
    ResponseBox,
    RqtCommandType,
    XmitParam,
    make_request,
)


def _ints(req):
    return struct.unpack_from("<9i", req, 8)


def test_request_is_fixed_size():
    assert len(make_request(RqtCommandType.INIT, InitParam.TARGET)) == 1024


def test_request_header_wire_bytes():
    req = make_request(RqtCommandType.INIT, InitParam.TARGET)
    assert req[:8] == b"\x64\x00\x00\x00\x00\x00\x00\x00"


def test_request_header_values():
    req = make_request(RqtCommandType.XMIT, XmitParam.COMPRESSED_COMPLETE)
    assert struct.unpack_from("<ii", req, 0) == (102, 7)


def test_request_close_header():
    req = make_request(RqtCommandType.CLOSE, CloseParam.REBOOT)
    assert struct.unpack_from("<ii", req, 0) == (103, 1)


def test_ints_are_placed_and_padded():
    req = make_request(RqtCommandType.PIT, PitParam.START, [ProtocolVersion.VER5, 42])
    assert _ints(req) == (5, 42, 0, 0, 0, 0, 0, 0, 0)


def test_ints_are_truncated_to_nine():
    values = list(range(1, 13))
    req = make_request(RqtCommandType.INIT, InitParam.TOTALSIZE, values)
    assert _ints(req) == tuple(values[:9])
    assert req[44:] == bytes(1024 - 44)


def test_ints_accept_generator():
    req = make_request(RqtCommandType.INIT, InitParam.PACKETSIZE, (v for v in [7, 8]))
    assert _ints(req)[:2] == (7, 8)


def test_unsigned_int_wraps_to_signed():
    req = make_request(RqtCommandType.INIT, InitParam.TOTALSIZE, [0xFFFFFFFF])
    assert _ints(req)[0] == -1


def test_chars_are_copied_and_truncated():
    chars = bytes(range(200))
    req = make_request(RqtCommandType.INIT, InitParam.TARGET, (), chars)
    assert req[44:44 + 128] == chars[:128]
    assert req[44 + 128:] == bytes(1024 - 44 - 128)


def test_empty_payload_is_zero():
    req = make_request(RqtCommandType.PIT, PitParam.GET)
    assert req[8:] == bytes(1016)


def test_response_round_trip():
    box = ResponseBox(101, -3)
    assert ResponseBox.from_bytes(box.to_bytes()) == box


def test_response_is_little_endian():
    data = struct.pack("<ii", 102, 1234)
    assert ResponseBox.from_bytes(data) == ResponseBox(102, 1234)
    assert len(ResponseBox(102, 1234).to_bytes()) == 8


@pytest.mark.parametrize("size", [0, 7, 9])
def test_response_wrong_length(size):
    with pytest.raises(ValueError):
        ResponseBox.from_bytes(bytes(size))