"""ODIN command layer over a byte transport."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from brokkr.wire import (
    RESPONSE_SIZE,
    CloseParam,
    InitParam,
    PitParam,
    ProtocolVersion,
    ResponseBox,
    RqtCommandType,
    XmitParam,
    make_request,
)

log = logging.getLogger(__name__)

_BOOTLOADER_FAIL = -1
_INT32_MIN = -0x8000_0000
_INT32_MAX = 0x7FFF_FFFF
_PIT_TRANSMIT_UNIT = 500
_HANDSHAKE_BUFFER = 64
_EXPECTED_HANDSHAKE = b"LOKE"


class OdinError(Exception):
    """A protocol or transport failure while talking to a device."""


class TransportKind(Enum):
    USB_BULK = "usb_bulk"
    TCP = "tcp"


class ByteTransport(ABC):
    """A connection that moves raw bytes to and from a device."""

    timeout_ms: int | None = None

    @abstractmethod
    def connected(self) -> bool:
        """Whether the link is usable."""

    @abstractmethod
    def kind(self) -> TransportKind:
        """The kind of link."""

    @abstractmethod
    def send(self, data: bytes, retries: int = 8) -> int:
        """Send some of ``data``; return the count sent, or <= 0 on failure."""

    @abstractmethod
    def recv(self, size: int, retries: int = 8) -> bytes:
        """Receive up to ``size`` bytes; empty bytes mean failure."""

    def recv_zlp(self) -> bool:
        """Consume a zero-length packet if the link has them."""
        return False

    def set_timeout_ms(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms


@dataclass
class InitTargetInfo:
    """The device's answer to the version query."""

    ack_word: int = 0

    def proto_raw(self) -> int:
        return (self.ack_word >> 16) & 0xFFFF

    def protocol(self) -> ProtocolVersion | int:
        raw = self.proto_raw()
        if raw == 0:
            return ProtocolVersion.VER1
        signed = raw - 0x10000 if raw & 0x8000 else raw
        try:
            return ProtocolVersion(signed)
        except ValueError:
            return signed

    def supports_compressed_download(self) -> bool:
        return bool(self.ack_word & 0x8000)


class ShutdownMode(Enum):
    NO_REBOOT = "no_reboot"
    REBOOT = "reboot"


def _lo32(value: int) -> int:
    v = value & 0xFFFFFFFF
    return v - 0x1_0000_0000 if v & 0x8000_0000 else v


def _hi32(value: int) -> int:
    return _lo32(value >> 32)


class OdinCommands:
    """Issues ODIN requests over a transport and checks the replies."""

    def __init__(self, conn: ByteTransport) -> None:
        self._conn = conn

    def _require_connected(self) -> None:
        if not self._conn.connected():
            raise OdinError("transport not connected")

    def send_raw(self, data: bytes, retries: int = 8) -> None:
        self._require_connected()
        view = memoryview(bytes(data))
        off = 0
        while off < len(view):
            sent = self._conn.send(view[off:], retries)
            if sent <= 0:
                raise OdinError("send failed")
            off += sent

    def recv_raw(self, size: int, retries: int = 8) -> bytes:
        self._require_connected()
        buf = bytearray()
        while len(buf) < size:
            chunk = self._conn.recv(size - len(buf), retries)
            if not chunk:
                raise OdinError("receive failed")
            buf += chunk
        return bytes(buf[:size])

    def send_request(self, request: bytes, retries: int = 8) -> None:
        self.send_raw(request, retries)

    def recv_checked_response(self, expected_id: int, want_ack: bool = False, retries: int = 8) -> ResponseBox:
        """Receive a reply and validate it.

        A negative ack is an error unless ``want_ack`` is set, in which case
        the caller reads the ack from the returned box.
        """
        response = ResponseBox.from_bytes(self.recv_raw(RESPONSE_SIZE, retries))
        if response.id == _BOOTLOADER_FAIL:
            raise OdinError("Bootloader returned FAIL")
        if response.id == _INT32_MIN:
            raise OdinError("Invalid response id (INT_MIN)")
        if response.id != int(expected_id):
            raise OdinError("Unexpected response id")
        if not want_ack and response.ack < 0:
            raise OdinError(f"Operation failed ({response.ack})")
        return response

    def _rpc(
        self,
        command: RqtCommandType,
        param: int,
        ints: Iterable[int] = (),
        chars: bytes = b"",
        want_ack: bool = False,
        retries: int = 8,
    ) -> ResponseBox:
        self.send_request(make_request(command, param, ints, chars), retries)
        return self.recv_checked_response(int(command), want_ack, retries)

    def handshake(self, retries: int = 8) -> None:
        self._require_connected()
        ping = b"ODIN\x00" if self._conn.kind() is TransportKind.USB_BULK else b"ODIN"
        self.send_raw(ping, retries)

        resp = bytearray()
        while len(resp) < len(_EXPECTED_HANDSHAKE):
            chunk = self._conn.recv(_HANDSHAKE_BUFFER - len(resp), retries)
            if not chunk:
                raise OdinError("Handshake receive failed")
            resp += chunk

        if bytes(resp[: len(_EXPECTED_HANDSHAKE)]) != _EXPECTED_HANDSHAKE:
            log.error("Dump of handshake response (%d bytes):", len(resp))
            log.error("%s", " ".join(str(b) for b in resp))
            printable = "".join(chr(b) if 32 <= b <= 126 else "." for b in resp[:_HANDSHAKE_BUFFER])
            log.debug("Trying it as a string: %s", printable)
            raise OdinError("Handshake failed (expected LOKE)")

        log.debug("ODIN handshake OK")

    def get_version(self, retries: int = 8) -> InitTargetInfo:
        response = self._rpc(
            RqtCommandType.INIT, InitParam.TARGET, [ProtocolVersion.VER5], want_ack=True, retries=retries
        )
        info = InitTargetInfo(response.ack & 0xFFFFFFFF)
        log.debug(
            "ODIN target ack word: 0x%08X (protocol v%d, compressed download %s)",
            info.ack_word,
            int(info.protocol()),
            info.supports_compressed_download(),
        )
        return info

    def setup_transfer_options(self, packet_size: int, retries: int = 8) -> None:
        self._rpc(RqtCommandType.INIT, InitParam.PACKETSIZE, [packet_size], retries=retries)

    def send_total_size(self, total_size: int, proto: int, retries: int = 8) -> None:
        if total_size < 0:
            raise OdinError("TOTALSIZE must not be negative")
        if proto <= ProtocolVersion.VER1:
            if total_size > _INT32_MAX:
                raise OdinError("TOTALSIZE exceeds ODIN int32 limit on protocol v0/v1")
            ints = [total_size]
        else:
            ints = [_lo32(total_size), _hi32(total_size)]
        self._rpc(RqtCommandType.INIT, InitParam.TOTALSIZE, ints, retries=retries)

    def get_pit_size(self, retries: int = 8) -> int:
        return self._rpc(RqtCommandType.PIT, PitParam.GET, want_ack=True, retries=retries).ack

    def get_pit(self, size: int, retries: int = 8) -> bytes:
        """Download ``size`` bytes of PIT in 500-byte parts."""
        if size <= 0:
            raise OdinError("PIT output buffer empty")

        out = bytearray()
        for index, offset in enumerate(range(0, size, _PIT_TRANSMIT_UNIT)):
            self.send_request(make_request(RqtCommandType.PIT, PitParam.START, [index]), retries)
            out += self.recv_raw(min(_PIT_TRANSMIT_UNIT, size - offset), retries)

        self._conn.recv_zlp()
        self._rpc(RqtCommandType.PIT, PitParam.COMPLETE, retries=retries)
        return bytes(out)

    def set_pit(self, pit: bytes, retries: int = 8) -> None:
        if not pit:
            raise OdinError("PIT buffer empty")
        if len(pit) > _INT32_MAX:
            raise OdinError("PIT too large for ODIN int32")

        self._rpc(RqtCommandType.PIT, PitParam.SET, retries=retries)
        self._rpc(RqtCommandType.PIT, PitParam.START, [len(pit)], retries=retries)
        self.send_raw(pit, retries)
        ResponseBox.from_bytes(self.recv_raw(RESPONSE_SIZE, retries))
        self._rpc(RqtCommandType.PIT, PitParam.COMPLETE, [len(pit)], retries=retries)

    def begin_download(self, rounded_total_size: int, retries: int = 8) -> None:
        self._rpc(RqtCommandType.XMIT, XmitParam.DOWNLOAD, retries=retries)
        self._rpc(RqtCommandType.XMIT, XmitParam.START, [rounded_total_size], retries=retries)

    def begin_download_compressed(self, comp_size: int, retries: int = 8) -> None:
        self._rpc(RqtCommandType.XMIT, XmitParam.COMPRESSED_DOWNLOAD, retries=retries)
        self._rpc(RqtCommandType.XMIT, XmitParam.COMPRESSED_START, [comp_size], retries=retries)

    def _end_download(
        self,
        complete_param: XmitParam,
        size_to_flash: int,
        part_id: int,
        dev_type: int,
        is_last: bool,
        bin_type: int,
        efs_clear: bool,
        boot_update: bool,
        retries: int,
    ) -> None:
        data = [
            0,
            size_to_flash,
            bin_type,
            dev_type,
            part_id,
            int(bool(is_last)),
            int(bool(efs_clear)),
            int(bool(boot_update)),
        ]
        self._rpc(RqtCommandType.XMIT, complete_param, data, retries=retries)

    def end_download(
        self,
        size_to_flash: int,
        part_id: int,
        dev_type: int,
        is_last: bool,
        bin_type: int = 0,
        efs_clear: bool = False,
        boot_update: bool = False,
        retries: int = 8,
    ) -> None:
        self._end_download(
            XmitParam.COMPLETE, size_to_flash, part_id, dev_type, is_last, bin_type, efs_clear, boot_update, retries
        )

    def end_download_compressed(
        self,
        decomp_size_to_flash: int,
        part_id: int,
        dev_type: int,
        is_last: bool,
        bin_type: int = 0,
        efs_clear: bool = False,
        boot_update: bool = False,
        retries: int = 8,
    ) -> None:
        self._end_download(
            XmitParam.COMPRESSED_COMPLETE,
            decomp_size_to_flash,
            part_id,
            dev_type,
            is_last,
            bin_type,
            efs_clear,
            boot_update,
            retries,
        )

    def _close(self, param: CloseParam, retries: int) -> None:
        try:
            self._rpc(RqtCommandType.CLOSE, param, retries=retries)
        except OdinError as exc:
            level = logging.DEBUG if param is CloseParam.REBOOT else logging.ERROR
            log.log(level, "Failed to send shutdown command %s: %s", param.name, exc)
            raise
        log.debug("Sent shutdown command %s", param.name)

    def shutdown(self, mode: ShutdownMode | bool, retries: int = 8) -> None:
        """End the session; with REBOOT also ask the device to restart.

        A failed reboot request is tolerated, as the device is usually
        already restarting.
        """
        self._require_connected()
        if isinstance(mode, bool):
            mode = ShutdownMode.REBOOT if mode else ShutdownMode.NO_REBOOT
        if not isinstance(mode, ShutdownMode):
            raise OdinError("Invalid shutdown mode")

        self._close(CloseParam.END, retries)
        if mode is ShutdownMode.REBOOT:
            try:
                self._close(CloseParam.REBOOT, retries)
            except OdinError as exc:
                log.debug("Reboot command failed (device likely already rebooting): %s", exc)