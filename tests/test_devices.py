import logging

import pytest

from pcapsidecar.devices import Device, find_devices, interface_pattern

INDEXES = {"lo": 1, "eth0": 2, "ipvlan-eth1": 3, "eth10": 4, "eth0.100": 5}


def _resolve(name: str) -> int:
    if name not in INDEXES:
        raise OSError(19, "No such device")
    return INDEXES[name]


@pytest.mark.parametrize(
    "name",
    ["eth0", "eth1", "eth10", "ipvlan-eth1", "eth0.100", "eth2-peer"],
)
def test_pattern_accepts_numeric_suffix(name: str) -> None:
    assert interface_pattern("eth").match(name)


@pytest.mark.parametrize(
    "name",
    ["eth", "ethX", "eth-a", "veth0", "lo", "ipvlan-eth", "macvlan-eth0", "xipvlan-eth0"],
)
def test_pattern_rejects_other_names(name: str) -> None:
    assert not interface_pattern("eth").match(name)


def test_pattern_is_literal() -> None:
    assert interface_pattern("en.").match("en.0")
    assert not interface_pattern("en.").match("enx0")


def test_find_devices_selects_matching_interfaces() -> None:
    devices = find_devices("eth", enumerator=lambda: ["eth0", "lo", "ipvlan-eth1"], resolve=_resolve)

    assert devices == [Device("eth0", 2), Device("ipvlan-eth1", 3)]
    assert devices[0].label == "2/eth0"


def test_find_devices_skips_unresolvable_interface(caplog) -> None:
    caplog.set_level(logging.INFO)

    devices = find_devices("eth", enumerator=lambda: ["eth0", "eth7"], resolve=_resolve)

    assert devices == [Device("eth0", 2)]
    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "invalid iface: eth7" in errors[0].getMessage()


def test_find_devices_deduplicates_names() -> None:
    devices = find_devices("eth", enumerator=lambda: ["eth0", "eth0"], resolve=_resolve)
    assert devices == [Device("eth0", 2)]


def test_find_devices_returns_empty_when_enumeration_fails(caplog) -> None:
    def broken() -> list:
        raise OSError("no permission")

    assert find_devices("eth", enumerator=broken, resolve=_resolve) == []
    assert any(r.levelno == logging.ERROR for r in caplog.records)
