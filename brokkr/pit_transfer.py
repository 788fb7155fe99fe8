"""Downloading the PIT from a device."""

from __future__ import annotations

import logging

from brokkr.commands import OdinCommands, OdinError
from brokkr.pit import PitTable, parse

log = logging.getLogger(__name__)


def download_pit_bytes(odin: OdinCommands, retries: int = 8) -> bytes:
    """Ask the device for its PIT size, then download the PIT image."""
    size = odin.get_pit_size(retries)
    if size <= 0:
        raise OdinError("Device returned invalid PIT size")

    data = odin.get_pit(size, retries)
    log.debug("Downloaded PIT bytes: %d", len(data))
    return data


def download_pit_table(odin: OdinCommands, retries: int = 8) -> PitTable:
    """Download the device's PIT and parse it."""
    return parse(download_pit_bytes(odin, retries))