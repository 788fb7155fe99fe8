"""Devices, configuration and progress callbacks of a flashing session."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from brokkr.commands import ByteTransport, InitTargetInfo
from brokkr.pit import PitTable
from brokkr.wire import ProtocolVersion

log = logging.getLogger(__name__)


@dataclass
class Target:
    """One device taking part in a session, and what was learned about it."""

    id: str = ""
    link: Optional[ByteTransport] = None
    init: InitTargetInfo = field(default_factory=InitTargetInfo)
    proto: ProtocolVersion | int = ProtocolVersion.NONE
    pit_bytes: bytes = b""
    pit_table: PitTable = field(default_factory=PitTable)


class PlanKind(Enum):
    PIT = "pit"
    PART = "part"


@dataclass
class PlanItem:
    """One line of the flashing plan shown to the user."""

    kind: PlanKind = PlanKind.PART
    part_id: int = -1
    dev_type: int = 0
    part_name: str = ""
    pit_file_name: str = ""
    source_base: str = ""
    size: int = 0


@dataclass
class Cfg:
    """Tunables of a flashing session."""

    buffer_bytes: int = 30 * 1024 * 1024
    pkt_all_v2plus: int = 1024 * 1024
    pkt_any_old: int = 128 * 1024
    preflash_timeout_ms: int = 1000
    preflash_retries: int = 2
    flash_timeout_ms: int = 45_000
    reboot_after: bool = True


@dataclass
class Ui:
    """Optional callbacks through which a session reports its progress."""

    on_devices: Optional[Callable[[int, list[str]], None]] = None
    on_model: Optional[Callable[[str], None]] = None
    on_stage: Optional[Callable[[str], None]] = None
    on_plan: Optional[Callable[[list[PlanItem], int], None]] = None
    on_item_active: Optional[Callable[[int], None]] = None
    on_item_done: Optional[Callable[[int], None]] = None
    on_progress: Optional[Callable[[int, int, int, int], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    on_done: Optional[Callable[[], None]] = None

    def stage(self, name: str) -> None:
        """Report the stage the session has entered."""
        if self.on_stage:
            self.on_stage(str(name))

    def device_failed(self, index: int, message: str) -> None:
        """Report that the device at ``index`` dropped out of the session."""
        if self.on_error:
            self.on_error(f"DEVFAIL idx={index} {message}")
        else:
            log.error("DEVFAIL idx=%d %s", index, message)