from __future__ import annotations

import datetime as dt
import logging
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from scapy.error import Scapy_Exception
from scapy.layers.inet import ICMP, IP, TCP, UDP
from scapy.layers.inet6 import IPv6
from scapy.packet import Packet
from scapy.sendrecv import AsyncSniffer

from pcapsidecar.capture.base import FORMAT_JSON, CaptureConfig, CaptureEngine, EngineError, RecordSink
from pcapsidecar.logging_setup import EMPTY_CONTEXT, ExecutionContext, execution_scope, get_execution
from pcapsidecar.scope import ExecutionScope

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5
DECODE_WORKERS = 4
STARTUP_WAIT_SECONDS = 5.0


def packet_record(packet: Packet, iface: str, snaplen: int = 0) -> Dict[str, Any]:
    """Flatten a captured packet into a JSON-serialisable record."""
    wire_len = int(getattr(packet, "wirelen", None) or len(packet))
    record: Dict[str, Any] = {
        "timestamp": dt.datetime.fromtimestamp(float(packet.time), tz=dt.timezone.utc).isoformat(),
        "iface": iface,
        "len": wire_len,
        "caplen": min(wire_len, snaplen) if snaplen > 0 else wire_len,
        "layers": [layer.__name__ for layer in packet.layers()],
        "summary": packet.summary(),
    }
    l3: Optional[Packet] = None
    if packet.haslayer(IP):
        l3 = packet[IP]
    elif packet.haslayer(IPv6):
        l3 = packet[IPv6]
    if l3 is not None:
        record["l3"] = {"proto": l3.name, "src": l3.src, "dst": l3.dst}
    for layer in (TCP, UDP):
        if packet.haslayer(layer):
            l4 = packet[layer]
            record["l4"] = {"proto": layer.__name__, "sport": int(l4.sport), "dport": int(l4.dport)}
            if layer is TCP:
                record["l4"]["flags"] = str(l4.flags)
            break
    else:
        if packet.haslayer(ICMP):
            icmp = packet[ICMP]
            record["l4"] = {"proto": "ICMP", "type": int(icmp.type), "code": int(icmp.code)}
    return record


class DecodedEngine(CaptureEngine):
    """
    Live capture decoded by scapy and handed to record sinks.

    With ``ordered`` set, records reach the sinks in capture order from the
    sniffer thread; otherwise decoding is spread over a small worker pool and
    records are delivered as they complete.
    """

    def __init__(self, config: CaptureConfig) -> None:
        super().__init__(config)
        if config.format != FORMAT_JSON:
            raise EngineError(f"unsupported format for decoded capture: {config.format}")
        try:
            socket.if_nametoindex(config.iface)
        except OSError as exc:
            raise EngineError(f"unknown iface {config.iface}: {exc}") from exc

    def _sniffer(self, callback) -> AsyncSniffer:
        kwargs: Dict[str, Any] = {
            "iface": self.config.iface,
            "prn": callback,
            "store": False,
            "promisc": self.config.promisc,
        }
        if self.config.filter:
            kwargs["filter"] = self.config.filter
        return AsyncSniffer(**kwargs)

    def _deliver(self, packet: Packet, sinks: List[RecordSink], ctx: ExecutionContext = EMPTY_CONTEXT) -> None:
        # Called from the sniffer thread or a decode worker.
        record = packet_record(packet, self.config.iface, self.config.snaplen)
        with execution_scope(ctx):
            for sink in sinks:
                try:
                    sink.accept(record)
                except (OSError, ValueError) as exc:
                    LOGGER.error(
                        "sink write failed iface=%s sink=%s error=%s",
                        self.config.iface,
                        type(sink).__name__,
                        exc,
                        extra={"category": "ERRORS", "execution": ctx},
                    )

    def run(self, scope: ExecutionScope, sinks: List[RecordSink]) -> None:
        ctx = get_execution()
        executor: Optional[ThreadPoolExecutor] = None
        if self.config.ordered:
            def on_packet(packet: Packet) -> None:
                self._deliver(packet, sinks, ctx)
        else:
            executor = ThreadPoolExecutor(max_workers=DECODE_WORKERS, thread_name_prefix=f"decode-{self.config.iface}")

            def on_packet(packet: Packet) -> None:
                executor.submit(self._deliver, packet, sinks, ctx)

        LOGGER.info(
            "starting decoded capture iface=%s ordered=%s sinks=%s",
            self.config.iface,
            self.config.ordered,
            [type(sink).__name__ for sink in sinks],
            extra={"category": "CAPTURE", "execution": ctx},
        )
        started = time.monotonic()
        sniffer = self._sniffer(on_packet)
        sniffer.start()
        ready_by = time.monotonic() + STARTUP_WAIT_SECONDS
        while not sniffer.running and sniffer.thread.is_alive() and time.monotonic() < ready_by:
            time.sleep(0.05)
        try:
            while not scope.wait(POLL_INTERVAL_SECONDS):
                if sniffer.thread is None or not sniffer.thread.is_alive():
                    LOGGER.info(
                        "decoded capture ended by itself iface=%s",
                        self.config.iface,
                        extra={"category": "CAPTURE", "execution": ctx},
                    )
                    break
        finally:
            if sniffer.running:
                try:
                    sniffer.stop(join=True)
                except Scapy_Exception as exc:
                    LOGGER.error(
                        "decoded capture stop failed iface=%s error=%s",
                        self.config.iface,
                        exc,
                        extra={"category": "ERRORS", "execution": ctx},
                    )
            elif sniffer.thread is not None:
                sniffer.join(STARTUP_WAIT_SECONDS)
            if executor is not None:
                executor.shutdown(wait=True)
            for sink in sinks:
                sink.close()
        LOGGER.info(
            "decoded capture stopped iface=%s duration_ms=%s",
            self.config.iface,
            int((time.monotonic() - started) * 1000),
            extra={"category": "CAPTURE", "execution": ctx},
        )
