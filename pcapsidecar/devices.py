from __future__ import annotations

import logging
import re
import socket
from dataclasses import dataclass
from typing import Callable, Iterable, List

from pcapsidecar.logging_setup import EMPTY_CONTEXT

LOGGER = logging.getLogger(__name__)

Enumerator = Callable[[], Iterable[str]]
IndexResolver = Callable[[str], int]


@dataclass(frozen=True)
class Device:
    name: str
    index: int

    @property
    def label(self) -> str:
        return f"{self.index}/{self.name}"


def interface_pattern(pattern: str) -> "re.Pattern[str]":
    """Optional ``ipvlan-`` prefix, the literal pattern, then a numeric suffix."""
    return re.compile(rf"^(?:ipvlan-)?{re.escape(pattern)}\d+.*")


def list_interfaces() -> List[str]:
    # Lazy import: scapy's interface table is only needed here.
    from scapy.interfaces import get_if_list

    return list(get_if_list())


def find_devices(
    pattern: str,
    enumerator: Enumerator = list_interfaces,
    resolve: IndexResolver = socket.if_nametoindex,
) -> List[Device]:
    matcher = interface_pattern(pattern)
    try:
        names = [name for name in enumerator() if matcher.match(name)]
    except (OSError, RuntimeError) as exc:
        LOGGER.error(
            "could not enumerate interfaces pattern=%s (%s)",
            pattern,
            exc,
            extra={"category": "ERRORS", "execution": EMPTY_CONTEXT},
        )
        return []

    devices: dict[str, Device] = {}
    for name in names:
        if name in devices:
            continue
        try:
            index = int(resolve(name))
        except OSError as exc:
            LOGGER.error(
                "invalid iface: %s (%s)",
                name,
                exc,
                extra={"category": "ERRORS", "execution": EMPTY_CONTEXT},
            )
            continue
        devices[name] = Device(name=name, index=index)

    selected = sorted(devices.values(), key=lambda device: (device.index, device.name))
    LOGGER.info(
        "selected ifaces pattern=%s devices=%s",
        pattern,
        [device.label for device in selected],
        extra={"category": "DEVICES", "execution": EMPTY_CONTEXT},
    )
    return selected
