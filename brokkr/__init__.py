"""ODIN download-mode protocol, PIT parsing, image discovery and multi-device flashing."""

__version__ = "1.3.10"

__all__ = [
    "commands",
    "flash",
    "flasher",
    "pit",
    "pit_transfer",
    "session",
    "transfer",
    "wire",
]