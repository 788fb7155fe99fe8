"""Flashing a group of devices in lock-step."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Callable, Iterable, Iterator, Optional, Sequence

from brokkr.commands import OdinCommands, OdinError, ShutdownMode
from brokkr.flash import (
    FlashError,
    FlashItem,
    ImageSpec,
    checked_add_u64,
    lz4_nonfinal_block_limit,
    map_to_pit,
)
from brokkr.pit import parse as parse_pit
from brokkr.pit_transfer import download_pit_bytes
from brokkr.session import Cfg, PlanItem, PlanKind, Target, Ui
from brokkr.transfer import (
    Lz4BlockReader,
    Step,
    StepOp,
    Window,
    execute_step,
    iter_lz4_windows,
    iter_raw_windows,
    lz4_progress,
    raw_progress,
)
from brokkr.wire import ProtocolVersion

log = logging.getLogger(__name__)

_HANDSHAKE = "ODIN handshake"
_PKT_FLASH = "Negotiating transfer options"
_PIT_DL = "Downloading PIT(s)"
_PIT_UP = "Uploading PIT"
_CPU_CHECK = "Checking if devices are equal"
_MAP_CHECK = "Verifying PIT mapping"
_TOTAL_SEND = "Sending total size"
_FLASH_FAST = "Flashing (Speed: Enhanced)"
_FLASH_NORM = "Flashing (Speed: Normal)"
_REBOOTING = "Rebooting devices"


class _Intent(Enum):
    REBOOT_ONLY = "reboot_only"
    PIT_ONLY = "pit_only"
    FLASH = "flash"


def choose_packet_size(devs: Sequence[Target], cfg: Cfg) -> int:
    """Use the small packet size if any device speaks a protocol older than v2."""
    if any(d.proto < ProtocolVersion.VER2 for d in devs):
        return cfg.pkt_any_old
    return cfg.pkt_all_v2plus


def sources_common_mapping(devs: Sequence[Target], sources: Iterable[ImageSpec]) -> list[ImageSpec]:
    """Keep the sources that map to the same partition on every device.

    A source missing on any device is skipped; one that maps to different
    partitions on different devices is an error.
    """
    if not devs:
        return []
    out = []
    for spec in sources:
        ref = devs[0].pit_table.find_by_file_name(spec.basename)
        if ref is None:
            log.debug("Source '%s' has no matching PIT entry - skipped", spec.basename)
            continue
        parts = [d.pit_table.find_by_file_name(spec.basename) for d in devs]
        if any(p is None for p in parts):
            log.debug("Source '%s' missing on one or more devices - skipped", spec.basename)
            continue
        if any(p.id != ref.id or p.dev_type != ref.dev_type for p in parts):
            raise FlashError("PIT mapping differs across devices")
        out.append(spec)
    return out


def _parallel(targets: Sequence, fn: Callable) -> list[Optional[Exception]]:
    def call(target) -> Optional[Exception]:
        try:
            fn(target)
        except Exception as exc:  # a device failure never stops the others
            return exc
        return None

    if not targets:
        return []
    with ThreadPoolExecutor(max_workers=len(targets)) as pool:
        return list(pool.map(call, targets))


def _shutdown_mode(cfg: Cfg) -> ShutdownMode:
    return ShutdownMode.REBOOT if cfg.reboot_after else ShutdownMode.NO_REBOOT


def _final_stage(mode: ShutdownMode) -> str:
    return "Finalizing + reboot" if mode is ShutdownMode.REBOOT else "Finalizing"


class _Run:
    def __init__(self, devs: Sequence[Target], sources: Sequence[ImageSpec], pit: bytes, cfg: Cfg, ui: Ui) -> None:
        self.sources = list(sources)
        self.pit = pit
        self.cfg = cfg
        self.ui = ui
        self.total_devices = len(devs)
        self.active: list[tuple[int, Target]] = list(enumerate(devs))
        self.failed_total = 0
        self.first_err: Optional[Exception] = None
        self.pkt = 0
        self.items: list[FlashItem] = []
        self.effective: list[ImageSpec] = []
        self.plan: list[PlanItem] = []
        self.total = 0

    def set_error(self, exc: Exception) -> None:
        if self.first_err is None:
            self.first_err = exc

    def fanout(self, fn: Callable[[Target], None]) -> None:
        if not self.active:
            raise OdinError("No active devices")
        errors = _parallel([t for _, t in self.active], fn)
        survivors = []
        for (idx, target), err in zip(self.active, errors):
            if err is None:
                survivors.append((idx, target))
                continue
            self.failed_total += 1
            self.set_error(err)
            self.ui.device_failed(idx, str(err))
        self.active = survivors
        if not self.active:
            raise self.first_err or OdinError("All devices failed")

    def summary(self, failed: int) -> None:
        ok = self.total_devices - failed if failed <= self.total_devices else 0
        log.info("%d threads succeeded, %d failed.", ok, min(failed, self.total_devices))

    def finish(self, error: Optional[Exception], call_done_always: bool) -> None:
        if error is not None:
            self.summary(self.total_devices)
            raise error
        if call_done_always and self.ui.on_done:
            self.ui.on_done()
        self.summary(self.failed_total)
        if self.failed_total > 0 or self.first_err is not None:
            raise self.first_err or OdinError("flash failed")
        if self.ui.on_done:
            self.ui.on_done()

    def set_flash_timeout(self) -> None:
        for _, target in self.active:
            target.link.set_timeout_ms(self.cfg.flash_timeout_ms)

    def shutdown_active(self, mode: ShutdownMode, stage: str) -> None:
        log.info("Reset" if mode is ShutdownMode.REBOOT else "No Reboot")
        self.ui.stage(stage)
        self.fanout(lambda d: OdinCommands(d.link).shutdown(mode))

    # -- steps --------------------------------------------------------------

    def handshake(self) -> None:
        log.info("HANDSHAKE")
        self.ui.stage(_HANDSHAKE)

        def one(d: Target) -> None:
            d.link.set_timeout_ms(self.cfg.preflash_timeout_ms)
            odin = OdinCommands(d.link)
            odin.handshake(self.cfg.preflash_retries)
            d.init = odin.get_version(self.cfg.preflash_retries)
            d.proto = d.init.protocol()

        self.fanout(one)

    def negotiate(self) -> None:
        if not self.active:
            raise OdinError("No active devices")
        self.pkt = choose_packet_size([t for _, t in self.active], self.cfg)
        self.ui.stage(_PKT_FLASH)

        def one(d: Target) -> None:
            if d.proto < ProtocolVersion.VER2:
                return
            d.link.set_timeout_ms(self.cfg.preflash_timeout_ms)
            OdinCommands(d.link).setup_transfer_options(self.pkt, self.cfg.preflash_retries)

        self.fanout(one)
        self.set_flash_timeout()

    def upload_pit(self) -> None:
        log.info("Uploading PIT")
        self.ui.stage(_PIT_UP)
        self.fanout(lambda d: OdinCommands(d.link).set_pit(self.pit, self.cfg.preflash_retries))

    def download_pits(self) -> None:
        log.info("Get PIT for mapping")
        self.ui.stage(_PIT_DL)
        self.set_flash_timeout()

        def one(d: Target) -> None:
            d.pit_bytes = download_pit_bytes(OdinCommands(d.link))
            d.pit_table = parse_pit(d.pit_bytes)

        self.fanout(one)

    def _pit_plan_item(self) -> PlanItem:
        return PlanItem(
            kind=PlanKind.PIT,
            part_name="PIT (repartition)",
            pit_file_name="PIT",
            source_base="PIT",
            size=len(self.pit),
        )

    def report_pit_only(self) -> None:
        table = parse_pit(self.pit)
        ui = self.ui
        if ui.on_model:
            ui.on_model(table.cpu_bl_id)
        n = len(self.pit)
        if ui.on_plan:
            ui.on_plan([self._pit_plan_item()], n)
        if ui.on_item_active:
            ui.on_item_active(0)
        if ui.on_progress:
            ui.on_progress(0, n, 0, n)
            ui.on_progress(n, n, n, n)
        if ui.on_item_done:
            ui.on_item_done(0)

    def check_cpu(self) -> None:
        if not self.active:
            raise OdinError("No active devices")
        self.ui.stage(_CPU_CHECK)
        ref = self.active[0][1].pit_table.cpu_bl_id
        if not ref:
            raise FlashError("PIT cpu_bl_id missing")
        if any(t.pit_table.cpu_bl_id != ref for _, t in self.active):
            raise FlashError("cpu_bl_id mismatch across devices")
        if self.ui.on_model:
            self.ui.on_model(ref)

    def verify_mapping(self) -> None:
        log.info("Verifying PIT mapping")
        self.ui.stage(_MAP_CHECK)
        targets = [t for _, t in self.active]
        self.effective = sources_common_mapping(targets, self.sources)
        if not self.effective and not self.pit:
            raise FlashError("No sources matched any PIT partition - nothing to flash")
        if len(self.effective) < len(self.sources):
            log.debug("%d of %d source(s) matched PIT entries", len(self.effective), len(self.sources))

        self.items = map_to_pit(targets[0].pit_table, self.effective)
        self.total = 0
        for item in self.items:
            self.total = checked_add_u64(self.total, item.spec.size, "TOTALSIZE")

        self.plan = [self._pit_plan_item()] if self.pit else []
        for item in self.items:
            self.plan.append(
                PlanItem(
                    kind=PlanKind.PART,
                    part_id=item.part.id,
                    dev_type=item.part.dev_type,
                    part_name=item.part.name or item.part.file_name,
                    pit_file_name=item.part.file_name,
                    source_base=item.spec.source_basename or item.spec.basename,
                    size=item.spec.size,
                )
            )
        if self.ui.on_plan:
            self.ui.on_plan(self.plan, self.total)

    def send_total(self) -> None:
        self.ui.stage(_TOTAL_SEND)
        self.fanout(
            lambda d: OdinCommands(d.link).send_total_size(self.total, d.proto, self.cfg.preflash_retries)
        )

    def transfer(self) -> None:
        log.info("Flashing has begun!")
        use_lz4 = any(s.lz4 for s in self.effective) and all(
            t.init.supports_compressed_download() for _, t in self.active
        )
        log.info("Speed: %s", "Enhanced" if use_lz4 else "Normal")
        self.ui.stage(_FLASH_FAST if use_lz4 else _FLASH_NORM)

        ndevs = len(self.active)
        if not ndevs:
            raise OdinError("No active devices")

        workers = [(idx, OdinCommands(t.link)) for idx, t in self.active]
        dead: set[int] = set()
        batch_err: list[Exception] = []

        def all_dead() -> bool:
            return len(dead) >= ndevs

        def emit(step: Step) -> None:
            alive = [pos for pos in range(ndevs) if pos not in dead]
            errors = _parallel(alive, lambda pos: execute_step(workers[pos][1], step))
            for pos, err in zip(alive, errors):
                if err is None:
                    continue
                dead.add(pos)
                if not batch_err:
                    batch_err.append(err)
                self.ui.device_failed(workers[pos][0], str(err))

        try:
            self._coordinate(use_lz4, emit, all_dead)
        except Exception as exc:
            if not batch_err:
                batch_err.append(exc)

        emit(Step(op=StepOp.QUIT))

        self.failed_total += len(dead)
        if dead and batch_err:
            self.set_error(batch_err[0])
        self.active = [entry for pos, entry in enumerate(self.active) if pos not in dead]

    def _coordinate(self, use_lz4: bool, emit: Callable[[Step], None], all_dead: Callable[[], bool]) -> None:
        ui = self.ui
        pkt = self.pkt
        overall = 0
        plan_off = 0
        if self.pit:
            if ui.on_item_active:
                ui.on_item_active(0)
            if ui.on_item_done:
                ui.on_item_done(0)
            plan_off = 1

        for idx, item in enumerate(self.items):
            if all_dead():
                break
            spec = item.spec
            plan_idx = plan_off + idx
            file_name = spec.source_basename or spec.basename
            if file_name:
                log.info("%s", file_name)
            if ui.on_item_active:
                ui.on_item_active(plan_idx)

            item_total = spec.size
            item_done = 0
            comp = bool(spec.lz4 and use_lz4)

            with spec.open() as stream:
                windows: Iterator[Window]
                if comp:
                    reader = Lz4BlockReader(stream)
                    if not reader.content_size():
                        raise FlashError(f"LZ4 content size is zero: {spec.display}")
                    max_blocks = lz4_nonfinal_block_limit(self.cfg.buffer_bytes)
                    if not max_blocks:
                        raise FlashError("buffer_bytes too small for compressed download (needs >= 1MiB)")
                    windows = iter_lz4_windows(reader, max_blocks, pkt)
                else:
                    if spec.lz4:
                        raise FlashError(f"LZ4 image needs compressed download support: {spec.display}")
                    size = spec.disk_size
                    if not size:
                        raise FlashError(f"Empty source: {spec.display}")
                    windows = iter_raw_windows(stream, size, self.cfg.buffer_bytes, pkt)

                if ui.on_progress:
                    ui.on_progress(overall, self.total, item_done, item_total)

                for window in windows:
                    if all_dead():
                        break
                    packets = window.rounded // pkt
                    emit(Step(op=StepOp.BEGIN, comp=comp, a=window.begin))
                    shares = lz4_progress(window, packets) if comp else raw_progress(window, pkt)
                    view = memoryview(window.data)
                    for p, add in zip(range(packets), shares):
                        if all_dead():
                            break
                        emit(Step(op=StepOp.DATA, comp=comp, payload=view[p * pkt:(p + 1) * pkt]))
                        item_done += add
                        overall += add
                        if ui.on_progress:
                            ui.on_progress(overall, self.total, item_done, item_total)
                    emit(
                        Step(
                            op=StepOp.END,
                            comp=comp,
                            a=window.end,
                            part_id=item.part.id,
                            dev_type=item.part.dev_type,
                            last=window.last,
                        )
                    )
                    if window.last or all_dead():
                        break

            if ui.on_item_done:
                ui.on_item_done(plan_idx)

    def finalize(self) -> None:
        if not self.active:
            return
        mode = _shutdown_mode(self.cfg)
        try:
            self.shutdown_active(mode, _final_stage(mode))
        except Exception as exc:
            self.set_error(exc)
            for idx, _ in self.active:
                self.ui.device_failed(idx, str(exc))
            self.failed_total += len(self.active)
            raise


def flash(
    devs: Sequence[Target],
    sources: Sequence[ImageSpec] = (),
    pit_to_upload: Optional[bytes] = None,
    cfg: Optional[Cfg] = None,
    ui: Optional[Ui] = None,
) -> None:
    """Run a whole session on every device; raises if any device failed."""
    cfg = cfg or Cfg()
    ui = ui or Ui()
    if not devs:
        raise OdinError("flash: no devices")
    for d in devs:
        if d is None or d.link is None or not d.link.connected():
            raise OdinError("flash: transport not connected")

    pit = bytes(pit_to_upload or b"")
    if sources:
        intent = _Intent.FLASH
    elif pit:
        intent = _Intent.PIT_ONLY
    else:
        intent = _Intent.REBOOT_ONLY

    run = _Run(devs, sources, pit, cfg, ui)
    final_mode = _shutdown_mode(cfg)

    steps: list[Callable[[], None]] = [run.handshake]
    if intent is not _Intent.REBOOT_ONLY:
        steps.append(run.negotiate)
    if pit:
        steps.append(run.upload_pit)
    if intent is not _Intent.PIT_ONLY:
        steps.append(run.download_pits)
    if intent is _Intent.REBOOT_ONLY:
        steps.append(lambda: run.shutdown_active(final_mode, _REBOOTING))
    if intent is _Intent.PIT_ONLY:
        steps.append(run.report_pit_only)
        steps.append(lambda: run.shutdown_active(final_mode, _final_stage(final_mode)))
    if intent is _Intent.FLASH:
        steps.extend([run.check_cpu, run.verify_mapping, run.send_total, run.transfer, run.finalize])

    call_done_always = intent is not _Intent.FLASH
    for step in steps:
        try:
            step()
        except Exception as exc:
            run.finish(exc, call_done_always)
    run.finish(None, call_done_always)