from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from pcapsidecar.capture.base import (
    FORMAT_JSON,
    FORMAT_PCAP,
    CaptureConfig,
    CaptureEngine,
    CaptureError,
    RecordSink,
)
from pcapsidecar.capture.decoded import DecodedEngine
from pcapsidecar.capture.sinks import RotatingJsonFileSink, StdoutSink
from pcapsidecar.capture.tcpdump import TcpdumpEngine
from pcapsidecar.config_loader import SidecarSettings
from pcapsidecar.devices import Device
from pcapsidecar.logging_setup import EMPTY_CONTEXT

LOGGER = logging.getLogger(__name__)

EngineFactory = Callable[[CaptureConfig], CaptureEngine]
FileSinkFactory = Callable[[str, str, str, int], RecordSink]
StdoutSinkFactory = Callable[[], RecordSink]

_LOG = {"category": "TASKS", "execution": EMPTY_CONTEXT}
_ERR = {"category": "ERRORS", "execution": EMPTY_CONTEXT}


@dataclass(frozen=True)
class Task:
    """One capture engine plus the sinks consuming its decoded output."""

    engine: CaptureEngine
    sinks: Tuple[RecordSink, ...] = ()
    label: str = ""


@dataclass(frozen=True)
class CaptureOptions:
    directory: Path
    extension: str = FORMAT_PCAP
    filter: str = ""
    snaplen: int = 0
    interval: int = 60
    timezone: str = "UTC"
    tcpdump: bool = True
    jsondump: bool = False
    jsonlog: bool = False
    ordered: bool = False

    @classmethod
    def from_settings(cls, settings: SidecarSettings) -> "CaptureOptions":
        return cls(
            directory=settings.directory,
            extension=settings.extension,
            filter=settings.filter,
            snaplen=settings.snaplen,
            interval=settings.interval,
            timezone=settings.timezone,
            tcpdump=settings.tcpdump,
            jsondump=settings.jsondump,
            jsonlog=settings.jsonlog,
            ordered=settings.ordered,
        )

    @property
    def decoded_enabled(self) -> bool:
        return self.jsondump or self.jsonlog


def output_template(directory: Path, device: Device) -> str:
    return str(directory / f"part__{device.index}_{device.name}__%Y%m%d_%H%M%S")


class TaskFactory:
    """
    Builds capture tasks for every selected device.

    Each device, format and sink is skipped on its own failure; the caller
    decides what an empty result means.
    """

    def __init__(
        self,
        options: CaptureOptions,
        raw_engine: EngineFactory = TcpdumpEngine,
        decoded_engine: EngineFactory = DecodedEngine,
        file_sink: FileSinkFactory = RotatingJsonFileSink,
        stdout_sink: StdoutSinkFactory = StdoutSink,
    ) -> None:
        self.options = options
        self._raw_engine = raw_engine
        self._decoded_engine = decoded_engine
        self._file_sink = file_sink
        self._stdout_sink = stdout_sink

    def capture_config(self, device: Device, fmt: str) -> CaptureConfig:
        opts = self.options
        return CaptureConfig(
            iface=device.name,
            output=output_template(opts.directory, device),
            format=fmt,
            extension=opts.extension if fmt == FORMAT_PCAP else FORMAT_JSON,
            promisc=True,
            snaplen=opts.snaplen,
            filter=opts.filter,
            interval=opts.interval,
            ordered=opts.ordered if fmt == FORMAT_JSON else False,
            timezone=opts.timezone,
        )

    def build(self, devices: Sequence[Device]) -> List[Task]:
        tasks: List[Task] = []
        for device in devices:
            LOGGER.info("configuring PCAP for iface: %s", device.label, extra=_LOG)
            raw = self._raw_task(device)
            if raw is not None:
                tasks.append(raw)
            if not self.options.decoded_enabled:
                continue
            decoded = self._decoded_task(device)
            if decoded is not None:
                tasks.append(decoded)
        LOGGER.info("PCAP tasks configured count=%s", len(tasks), extra=_LOG)
        return tasks

    def _raw_task(self, device: Device) -> Optional[Task]:
        if not self.options.tcpdump:
            LOGGER.error("tcpdump task creation failed: %s (disabled)", device.label, extra=_ERR)
            return None
        try:
            engine = self._raw_engine(self.capture_config(device, FORMAT_PCAP))
        except (CaptureError, OSError) as exc:
            LOGGER.error("tcpdump task creation failed: %s (%s)", device.label, exc, extra=_ERR)
            return None
        LOGGER.info("configured 'tcpdump' for iface: %s", device.label, extra=_LOG)
        return Task(engine=engine, sinks=(), label=f"{FORMAT_PCAP}@{device.label}")

    def _decoded_task(self, device: Device) -> Optional[Task]:
        cfg = self.capture_config(device, FORMAT_JSON)
        try:
            engine = self._decoded_engine(cfg)
        except (CaptureError, OSError) as exc:
            LOGGER.error("jsondump task creation failed: %s (%s)", device.label, exc, extra=_ERR)
            return None

        sinks: List[RecordSink] = []
        if self.options.jsondump:
            try:
                sinks.append(self._file_sink(cfg.output, cfg.extension, cfg.timezone, cfg.interval))
            except (CaptureError, OSError) as exc:
                LOGGER.error("jsondump file writer creation failed: %s (%s)", device.label, exc, extra=_ERR)

        if self.options.jsonlog:
            try:
                sinks.append(self._stdout_sink())
            except (CaptureError, OSError) as exc:
                LOGGER.error("jsondump stdout writer creation failed: %s (%s)", device.label, exc, extra=_ERR)
                for sink in sinks:
                    sink.close()
                return None

        if not sinks:
            LOGGER.error("jsondump task creation failed: %s (no writers available)", device.label, extra=_ERR)
            return None

        LOGGER.info("configured 'jsondump' for iface: %s", device.label, extra=_LOG)
        return Task(engine=engine, sinks=tuple(sinks), label=f"{FORMAT_JSON}@{device.label}")

