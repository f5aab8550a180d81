import logging
from pathlib import Path
from typing import List

import pytest

from pcapsidecar.capture.base import FORMAT_JSON, FORMAT_PCAP, CaptureConfig, CaptureEngine, EngineError, SinkError
from pcapsidecar.devices import Device, find_devices
from pcapsidecar.tasks import CaptureOptions, TaskFactory, output_template


class DummyEngine(CaptureEngine):
    def run(self, scope, sinks) -> None:
        scope.wait()


class DummySink:
    def __init__(self, *args) -> None:
        self.args = args
        self.closed = False

    def accept(self, record) -> None:
        pass

    def close(self) -> None:
        self.closed = True


def _failing(message: str, exc_type=EngineError):
    def factory(*_args):
        raise exc_type(message)

    return factory


def _factory(options: CaptureOptions, **overrides) -> TaskFactory:
    kwargs = {
        "raw_engine": DummyEngine,
        "decoded_engine": DummyEngine,
        "file_sink": DummySink,
        "stdout_sink": DummySink,
    }
    kwargs.update(overrides)
    return TaskFactory(options, **kwargs)


@pytest.fixture
def devices() -> List[Device]:
    return [Device("eth0", 2), Device("eth1", 3)]


def test_output_template_names_index_and_iface() -> None:
    assert output_template(Path("/pcap"), Device("eth0", 2)) == "/pcap/part__2_eth0__%Y%m%d_%H%M%S"


def test_capture_config_per_format(tmp_path) -> None:
    factory = _factory(CaptureOptions(directory=tmp_path, extension="cap", interval=30, ordered=True, filter="tcp"))

    raw = factory.capture_config(Device("eth0", 2), FORMAT_PCAP)
    decoded = factory.capture_config(Device("eth0", 2), FORMAT_JSON)

    assert raw.output_pattern == f"{tmp_path}/part__2_eth0__%Y%m%d_%H%M%S.cap"
    assert raw.interval == 30
    assert raw.filter == "tcp"
    assert not raw.ordered
    assert decoded.extension == "json"
    assert decoded.ordered


def test_scenario_single_raw_task_per_matching_iface(tmp_path) -> None:
    indexes = {"eth0": 2, "lo": 1, "ipvlan-eth1": 3}
    devices = find_devices("eth", enumerator=lambda: list(indexes), resolve=indexes.__getitem__)

    tasks = _factory(CaptureOptions(directory=tmp_path)).build(devices)

    assert [t.label for t in tasks] == ["pcap@2/eth0", "pcap@3/ipvlan-eth1"]
    assert [t.engine.config.iface for t in tasks] == ["eth0", "ipvlan-eth1"]
    assert all(t.sinks == () for t in tasks)


def test_raw_failure_on_one_iface_keeps_the_other(tmp_path, devices, caplog) -> None:
    def raw_engine(config: CaptureConfig) -> CaptureEngine:
        if config.iface == "eth0":
            raise EngineError("tcpdump not found")
        return DummyEngine(config)

    tasks = _factory(CaptureOptions(directory=tmp_path), raw_engine=raw_engine).build(devices)

    assert [t.label for t in tasks] == ["pcap@3/eth1"]
    errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
    assert errors == ["tcpdump task creation failed: 2/eth0 (tcpdump not found)"]


def test_disabled_raw_capture_logs_and_builds_nothing(tmp_path, devices, caplog) -> None:
    tasks = _factory(CaptureOptions(directory=tmp_path, tcpdump=False)).build(devices)

    assert tasks == []
    errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 2
    assert all("disabled" in message for message in errors)


def test_decoded_task_with_file_and_stdout_sinks(tmp_path) -> None:
    options = CaptureOptions(directory=tmp_path, jsondump=True, jsonlog=True)

    tasks = _factory(options).build([Device("eth0", 2)])

    assert [t.label for t in tasks] == ["pcap@2/eth0", "json@2/eth0"]
    file_sink, stdout_sink = tasks[1].sinks
    assert file_sink.args == (f"{tmp_path}/part__2_eth0__%Y%m%d_%H%M%S", "json", "UTC", 60)
    assert stdout_sink.args == ()


def test_jsonlog_alone_enables_decoded_capture(tmp_path) -> None:
    tasks = _factory(CaptureOptions(directory=tmp_path, tcpdump=False, jsonlog=True)).build([Device("eth0", 2)])

    assert [t.label for t in tasks] == ["json@2/eth0"]
    assert len(tasks[0].sinks) == 1


def test_file_sink_failure_falls_back_to_stdout(tmp_path) -> None:
    options = CaptureOptions(directory=tmp_path, jsondump=True, jsonlog=True)

    tasks = _factory(options, file_sink=_failing("read-only", SinkError)).build([Device("eth0", 2)])

    decoded = [t for t in tasks if t.label.startswith("json@")]
    assert len(decoded) == 1
    assert len(decoded[0].sinks) == 1


def test_file_sink_failure_without_stdout_drops_decoded_task(tmp_path) -> None:
    options = CaptureOptions(directory=tmp_path, jsondump=True)

    tasks = _factory(options, file_sink=_failing("read-only", OSError)).build([Device("eth0", 2)])

    assert [t.label for t in tasks] == ["pcap@2/eth0"]


def test_stdout_failure_aborts_decoded_task_and_closes_file_sink(tmp_path, caplog) -> None:
    created = []

    def file_sink(*args):
        sink = DummySink(*args)
        created.append(sink)
        return sink

    options = CaptureOptions(directory=tmp_path, jsondump=True, jsonlog=True)
    tasks = _factory(options, file_sink=file_sink, stdout_sink=_failing("closed", SinkError)).build(
        [Device("eth0", 2)]
    )

    assert [t.label for t in tasks] == ["pcap@2/eth0"]
    assert created and created[0].closed
    assert any("stdout writer creation failed" in r.getMessage() for r in caplog.records)


def test_decoded_engine_failure_keeps_raw_task(tmp_path) -> None:
    options = CaptureOptions(directory=tmp_path, jsondump=True)

    tasks = _factory(options, decoded_engine=_failing("no such iface")).build([Device("eth0", 2)])

    assert [t.label for t in tasks] == ["pcap@2/eth0"]


def test_no_devices_no_tasks(tmp_path) -> None:
    assert _factory(CaptureOptions(directory=tmp_path, jsondump=True)).build([]) == []
