from __future__ import annotations

import collections
import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Deque, List

from pcapsidecar.capture.base import CaptureConfig, CaptureEngine, EngineError, RecordSink
from pcapsidecar.logging_setup import ExecutionContext, get_execution
from pcapsidecar.scope import ExecutionScope
from pcapsidecar.utils import ensure_dir, require_binary

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5
STOP_GRACE_SECONDS = 5.0
STDERR_TAIL_LINES = 20


class TcpdumpEngine(CaptureEngine):
    """Raw capture through ``tcpdump``; rotation is delegated to ``-G``."""

    def __init__(self, config: CaptureConfig, binary: str = "tcpdump") -> None:
        super().__init__(config)
        if config.interval <= 0:
            raise EngineError(f"invalid rotation interval: {config.interval}")
        try:
            self._binary = require_binary(binary)
            ensure_dir(Path(config.output).parent)
        except OSError as exc:
            raise EngineError(str(exc)) from exc

    def command(self) -> List[str]:
        cfg = self.config
        cmd = [
            self._binary,
            "-n",
            "-U",
            "-i",
            cfg.iface,
            "-s",
            str(cfg.snaplen),
            "-G",
            str(cfg.interval),
            "-w",
            cfg.output_pattern,
            "-Z",
            "root",
        ]
        if not cfg.promisc:
            cmd.append("-p")
        if cfg.filter:
            cmd.append(cfg.filter)
        return cmd

    def run(self, scope: ExecutionScope, sinks: List[RecordSink]) -> None:
        ctx = get_execution()
        cmd = self.command()
        env = dict(os.environ)
        env["TZ"] = self.config.timezone
        LOGGER.info(
            "starting tcpdump iface=%s output=%s",
            self.config.iface,
            self.config.output_pattern,
            extra={"category": "CAPTURE", "execution": ctx},
        )
        LOGGER.debug("tcpdump command args=%s", cmd, extra={"category": "CAPTURE", "execution": ctx})
        started = time.monotonic()
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            env=env,
            text=True,
        )
        stderr_tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        drain = threading.Thread(
            target=self._drain_stderr,
            args=(proc, stderr_tail, ctx),
            name=f"tcpdump-stderr-{self.config.iface}",
            daemon=True,
        )
        drain.start()
        stopped = False
        try:
            while proc.poll() is None:
                if scope.wait(POLL_INTERVAL_SECONDS):
                    self._stop(proc, ctx)
                    stopped = True
                    break
        finally:
            if proc.poll() is None:
                self._stop(proc, ctx)
            drain.join(timeout=STOP_GRACE_SECONDS)
            for sink in sinks:
                sink.close()

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if not stopped and proc.returncode != 0:
            LOGGER.error(
                "tcpdump exited iface=%s exit_code=%s stderr=%s",
                self.config.iface,
                proc.returncode,
                " | ".join(stderr_tail)[:500],
                extra={"category": "ERRORS", "execution": ctx},
            )
            return
        LOGGER.info(
            "tcpdump stopped iface=%s exit_code=%s duration_ms=%s",
            self.config.iface,
            proc.returncode,
            elapsed_ms,
            extra={"category": "CAPTURE", "execution": ctx},
        )

    def _stop(self, proc: subprocess.Popen, ctx: ExecutionContext) -> None:
        # SIGTERM makes tcpdump flush and close the current file.
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=STOP_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            LOGGER.error(
                "tcpdump did not stop within grace period iface=%s grace_s=%s",
                self.config.iface,
                STOP_GRACE_SECONDS,
                extra={"category": "ERRORS", "execution": ctx},
            )
            proc.kill()
            proc.wait()

    def _drain_stderr(self, proc: subprocess.Popen, tail: Deque[str], ctx: ExecutionContext) -> None:
        if proc.stderr is None:
            return
        for line in proc.stderr:
            text = line.rstrip()
            if not text:
                continue
            tail.append(text)
            LOGGER.debug(
                "tcpdump stderr iface=%s line=%s",
                self.config.iface,
                text,
                extra={"category": "CAPTURE", "execution": ctx},
            )
