from pathlib import Path

import pytest
from click.testing import CliRunner

from pcapsidecar import cli


class FakeSupervisor:
    exit_code = 0
    settings = None

    def __init__(self, settings) -> None:
        FakeSupervisor.settings = settings

    def run(self) -> int:
        return FakeSupervisor.exit_code


@pytest.fixture
def runner(monkeypatch) -> CliRunner:
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    monkeypatch.setattr(cli, "Supervisor", FakeSupervisor)
    FakeSupervisor.exit_code = 0
    FakeSupervisor.settings = None
    for name in ("PCAP_IFACE", "PCAP_CONFIG", "PCAP_DIRECTORY", "PCAP_TIMEOUT", "PROJECT_ID", "APP_SERVICE"):
        monkeypatch.delenv(name, raising=False)
    return CliRunner()


def test_flags_build_settings(runner: CliRunner) -> None:
    result = runner.invoke(
        cli.main,
        ["--iface", "eth", "--directory", "/pcap", "--use-cron", "--cron-exp", "*/5 * * * *", "--jsondump"],
    )

    assert result.exit_code == 0, result.output
    settings = FakeSupervisor.settings
    assert settings.iface_pattern == "eth"
    assert settings.directory == Path("/pcap")
    assert settings.use_cron is True
    assert settings.cron_exp == "*/5 * * * *"
    assert settings.jsondump is True
    assert settings.tcpdump is True


def test_environment_provides_settings_and_tags(runner: CliRunner) -> None:
    env = {
        "PCAP_IFACE": "ens",
        "PCAP_DIRECTORY": "/pcap",
        "PCAP_TIMEOUT": "45",
        "PROJECT_ID": "proj",
        "APP_SERVICE": "svc",
        "APP_SIDECAR": "pcap-sidecar",
        "PROC_NAME": "pcap",
    }
    result = runner.invoke(cli.main, [], env=env)

    assert result.exit_code == 0, result.output
    settings = FakeSupervisor.settings
    assert settings.iface_pattern == "ens"
    assert settings.timeout == 45
    assert settings.tags[:2] == ("proj", "svc")
    assert settings.sidecar == "pcap-sidecar"
    assert settings.module == "pcap"


def test_config_file_is_overridden_by_flags(runner: CliRunner, tmp_path: Path) -> None:
    config_file = tmp_path / "sidecar.yaml"
    config_file.write_text("iface_pattern: eth\ndirectory: /from-file\ntimeout: 10\n", encoding="utf-8")

    result = runner.invoke(cli.main, ["--config", str(config_file), "--timeout", "20"])

    assert result.exit_code == 0, result.output
    assert FakeSupervisor.settings.directory == Path("/from-file")
    assert FakeSupervisor.settings.timeout == 20


def test_invalid_config_file_is_a_usage_error(runner: CliRunner, tmp_path: Path) -> None:
    config_file = tmp_path / "sidecar.yaml"
    config_file.write_text("bucket: captures\n", encoding="utf-8")

    result = runner.invoke(cli.main, ["--config", str(config_file)])

    assert result.exit_code == 2
    assert "bucket" in result.output
    assert FakeSupervisor.settings is None


def test_missing_iface_is_a_usage_error(runner: CliRunner) -> None:
    result = runner.invoke(cli.main, ["--directory", "/pcap"])

    assert result.exit_code == 2
    assert FakeSupervisor.settings is None


def test_supervisor_exit_code_is_propagated(runner: CliRunner) -> None:
    FakeSupervisor.exit_code = 1

    result = runner.invoke(cli.main, ["--iface", "eth", "--directory", "/pcap"])

    assert result.exit_code == 1
