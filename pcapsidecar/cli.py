from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

import click

from pcapsidecar.config_loader import build_settings, load_config, tags_from_env
from pcapsidecar.logging_setup import setup_logging
from pcapsidecar.supervisor import Supervisor

LOGGER = logging.getLogger(__name__)


def _load_config_file(ctx: click.Context, _param: click.Parameter, value: Optional[Path]) -> Optional[Path]:
    if value is None:
        return None
    try:
        values = load_config(value)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    # Flags and PCAP_* variables still take precedence over file values.
    ctx.default_map = {**(ctx.default_map or {}), **values}
    return value


@click.command(context_settings={"show_default": True})
@click.option(
    "--config",
    type=click.Path(path_type=Path, dir_okay=False),
    envvar="PCAP_CONFIG",
    is_eager=True,
    expose_value=False,
    callback=_load_config_file,
    help="YAML file with default settings.",
)
@click.option("--iface", "iface_pattern", envvar="PCAP_IFACE", default="", help="Interface name prefix, e.g. eth.")
@click.option("--use-cron/--no-use-cron", "use_cron", envvar="PCAP_USE_CRON", default=False, help="Capture on a cron schedule.")
@click.option("--cron-exp", "cron_exp", envvar="PCAP_CRON_EXP", default="", help="Cron expression, e.g. '*/5 * * * *'.")
@click.option("--timezone", envvar="PCAP_TIMEZONE", default="UTC", help="Time zone for schedules and file names.")
@click.option("--timeout", type=int, envvar="PCAP_TIMEOUT", default=0, help="Seconds per capture execution (0 = unbounded).")
@click.option("--interval", type=int, envvar="PCAP_INTERVAL", default=60, help="Seconds between output file rotations.")
@click.option("--snaplen", type=int, envvar="PCAP_SNAPLEN", default=0, help="Bytes captured per packet (0 = default).")
@click.option("--filter", "filter", envvar="PCAP_FILTER", default="", help="BPF filter expression.")
@click.option("--extension", envvar="PCAP_EXTENSION", default="pcap", help="Extension for raw capture files.")
@click.option("--directory", envvar="PCAP_DIRECTORY", default="", help="Directory where capture files are written.")
@click.option("--tcpdump/--no-tcpdump", "tcpdump", envvar="PCAP_TCPDUMP", default=True, help="Raw capture with tcpdump.")
@click.option("--jsondump/--no-jsondump", "jsondump", envvar="PCAP_JSONDUMP", default=False, help="Decoded capture to JSON files.")
@click.option("--jsonlog/--no-jsonlog", "jsonlog", envvar="PCAP_JSONLOG", default=False, help="Mirror decoded capture to stdout.")
@click.option("--ordered/--no-ordered", "ordered", envvar="PCAP_ORDERED", default=False, help="Keep decoded records in capture order.")
def main(**values: Any) -> None:
    """Run packet captures once or on a cron schedule."""
    sidecar = os.environ.get("APP_SIDECAR", "")
    module = os.environ.get("PROC_NAME", "")
    setup_logging(sidecar=sidecar, module=module)
    values.update(sidecar=sidecar, module=module, tags=tags_from_env())
    try:
        settings = build_settings(values)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc
    LOGGER.debug("CLI bootstrap completed", extra={"category": "CONFIG"})
    sys.exit(Supervisor(settings).run())


if __name__ == "__main__":
    main()
