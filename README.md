# brokkr

A pure-Python library for talking to devices in ODIN download mode. It
builds and decodes the fixed-size wire messages, runs the command sequence
(handshake, version query, PIT transfer, downloads, shutdown), parses PIT
partition tables, works out which images in a set of tar archives or raw
files map onto which partitions, and drives a flash session across one or
more devices at once.

It has no third-party dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Supplying a transport

The library does not open USB or TCP links itself. You supply a subclass of
`brokkr.commands.ByteTransport` and implement:

- `connected()` – whether the link is usable;
- `kind()` – a `TransportKind` (`USB_BULK` or `TCP`); over USB bulk the
  handshake ping carries a trailing NUL byte;
- `send(data, retries)` – send some of `data`, return the number of bytes
  sent, or a value `<= 0` on failure;
- `recv(size, retries)` – return up to `size` bytes; empty bytes mean failure.

`recv_zlp()` (returns `False`) and `set_timeout_ms(timeout_ms)` (stores the
value in `timeout_ms`) have default implementations you may override.

## Modules

- `brokkr.wire` – `make_request(command, param, ints, chars)` builds a
  1024-byte request; `ResponseBox` decodes and encodes the 8-byte reply.
  Enums: `RqtCommandType`, `InitParam`, `PitParam`, `XmitParam`,
  `CloseParam`, `ProtocolVersion`.
- `brokkr.commands` – `OdinCommands`, one method per protocol operation
  (`handshake`, `get_version`, `setup_transfer_options`, `send_total_size`,
  `get_pit_size`, `get_pit`, `set_pit`, `begin_download`,
  `begin_download_compressed`, `end_download`, `end_download_compressed`,
  `shutdown`, plus the raw `send_raw` / `recv_raw` / `send_request` /
  `recv_checked_response`). Every failure raises `OdinError`.
  `InitTargetInfo` decodes the version reply (`protocol()`,
  `supports_compressed_download()`); `ShutdownMode` selects reboot or not.
- `brokkr.pit` – `parse(data)` turns PIT bytes into a `PitTable` of
  `Partition` entries and raises `PitError` on malformed input;
  `PitTable.find_by_file_name` and `PitTable.common_block_size` query it.
- `brokkr.pit_transfer` – `download_pit_bytes(odin)` and
  `download_pit_table(odin)`.
- `brokkr.flash` – `expand_inputs_tar_or_raw(inputs)` expands tar archives
  and raw files into `ImageSpec`s. If an archive contains
  `meta-data/download-list.txt`, only the images it lists are returned, in
  its order. Names ending in `.lz4` are treated as LZ4 frames whose size is
  taken from the frame header. `map_to_pit(pit_table, sources)` pairs images
  with partitions as `FlashItem`s. Errors raise `FlashError`.
- `brokkr.session` – `Target` (one device), `Cfg` (buffer and packet sizes,
  timeouts, retries, `reboot_after`), `Ui` (optional callbacks such as
  `on_stage`, `on_plan`, `on_progress`, `on_error`, `on_done`) and
  `PlanItem`.
- `brokkr.transfer` – the lock-step `Step`s, the `Window`s an image is cut
  into (`iter_raw_windows`, `iter_lz4_windows`), `Lz4BlockReader` and
  `execute_step`.
- `brokkr.flasher` – `flash(devs, sources, pit_to_upload, cfg, ui)` runs a
  whole session on every target in parallel. With sources it flashes them;
  with only a PIT it repartitions; with neither it just ends the session
  (and reboots if `cfg.reboot_after`). A device that fails drops out and is
  reported through `ui.on_error`; `flash` raises if any device failed.

## Example

```python
from brokkr.commands import OdinCommands
from brokkr.pit_transfer import download_pit_table

odin = OdinCommands(transport)  # your ByteTransport
odin.handshake()
info = odin.get_version()
print(info.protocol(), info.supports_compressed_download())

table = download_pit_table(odin)
for part in table.partitions:
    print(part.id, part.name, part.file_name, part.file_size)
```

Flashing several devices:

```python
from brokkr.flash import expand_inputs_tar_or_raw
from brokkr.flasher import flash
from brokkr.session import Cfg, Target, Ui

sources = expand_inputs_tar_or_raw(["AP.tar", "BL.tar"])
targets = [Target(id="dev0", link=transport_a), Target(id="dev1", link=transport_b)]
ui = Ui(on_stage=print, on_progress=lambda done, total, item_done, item_total: None)
flash(targets, sources, None, Cfg(), ui)
```

## What it does not do

- There is no command-line program or graphical front end; it is a library.
- It does not find devices or open USB or network connections; the caller
  provides the `ByteTransport`.
- It does not decompress LZ4 images. An `.lz4` image is sent as-is using
  the compressed download commands, so every device in the session must
  report compressed-download support; otherwise flashing that image fails.
- It does not verify MD5 checksums appended to firmware archives.