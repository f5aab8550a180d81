from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List

from pcapsidecar.scope import ExecutionScope

FORMAT_PCAP = "pcap"
FORMAT_JSON = "json"


class CaptureError(Exception):
    """Base error for capture engines and sinks."""


class EngineError(CaptureError):
    """A capture engine could not be constructed."""


class SinkError(CaptureError):
    """An output sink could not be constructed."""


@dataclass(frozen=True)
class CaptureConfig:
    """One capture unit: one interface, one output format."""

    iface: str
    output: str
    format: str = FORMAT_PCAP
    extension: str = FORMAT_PCAP
    promisc: bool = True
    snaplen: int = 0
    filter: str = ""
    interval: int = 60
    ordered: bool = False
    timezone: str = "UTC"

    @property
    def output_pattern(self) -> str:
        return f"{self.output}.{self.extension}"


class RecordSink(ABC):
    """Consumer of decoded capture records."""

    @abstractmethod
    def accept(self, record: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        """Release underlying resources; safe to call more than once."""


class CaptureEngine(ABC):
    """Performs capture on one interface until its scope ends."""

    def __init__(self, config: CaptureConfig) -> None:
        self.config = config

    @abstractmethod
    def run(self, scope: ExecutionScope, sinks: List[RecordSink]) -> None:
        """
        Capture until ``scope`` ends or the engine stops by itself.

        Engines that own their output (raw capture) receive an empty sink list.
        Pending output must be flushed before returning.
        """
