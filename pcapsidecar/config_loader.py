from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

LOGGER = logging.getLogger(__name__)

TAG_ENV_VARS = ("PROJECT_ID", "APP_SERVICE", "GCP_REGION", "APP_REVISION", "INSTANCE_ID")


class SidecarSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    use_cron: bool = False
    cron_exp: str = ""
    timezone: str = "UTC"
    timeout: int = Field(default=0, ge=0)
    interval: int = Field(default=60, gt=0)
    snaplen: int = Field(default=0, ge=0)
    filter: str = ""
    extension: str = "pcap"
    directory: Path
    tcpdump: bool = True
    jsondump: bool = False
    jsonlog: bool = False
    ordered: bool = False
    iface_pattern: str
    sidecar: str = ""
    module: str = ""
    tags: Tuple[str, ...] = ()

    @field_validator("cron_exp", "timezone", "filter", "iface_pattern", "sidecar", "module", mode="before")
    @classmethod
    def strip_text(cls, value: object) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("timezone")
    @classmethod
    def default_timezone(cls, value: str) -> str:
        return value or "UTC"

    @field_validator("extension", mode="before")
    @classmethod
    def normalize_extension(cls, value: object) -> str:
        text = "" if value is None else str(value).strip().lstrip(".")
        if not text:
            raise ValueError("extension must not be empty")
        return text

    @field_validator("directory", mode="before")
    @classmethod
    def normalize_directory(cls, value: object) -> Path:
        text = "" if value is None else str(value).strip()
        if not text:
            raise ValueError("directory is required")
        return Path(text).expanduser()

    @field_validator("iface_pattern")
    @classmethod
    def require_iface_pattern(cls, value: str) -> str:
        if not value:
            raise ValueError("interface pattern is required (PCAP_IFACE)")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def drop_empty_tags(cls, value: object) -> Tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.split(",")
        return tuple(str(tag).strip() for tag in value if str(tag).strip())

    @model_validator(mode="after")
    def require_cron_when_scheduling(self) -> "SidecarSettings":
        if self.use_cron and not self.cron_exp:
            raise ValueError("cron_exp is required when use_cron is enabled")
        return self


def tags_from_env(environ: Optional[Mapping[str, str]] = None) -> Tuple[str, ...]:
    env = os.environ if environ is None else environ
    return tuple(env.get(name, "").strip() for name in TAG_ENV_VARS if env.get(name, "").strip())


def build_settings(values: Dict[str, Any]) -> SidecarSettings:
    try:
        settings = SidecarSettings.model_validate(values)
    except ValidationError as exc:
        LOGGER.error("Settings validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc
    return settings


def load_config(config_path: Path) -> Dict[str, Any]:
    """Read a YAML settings file; keys are settings names (``-`` or ``_``)."""
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    values = {str(key).strip().replace("-", "_"): value for key, value in parsed.items()}
    unknown = sorted(set(values) - set(SidecarSettings.model_fields))
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
    LOGGER.info("Config loaded keys=%s", sorted(values), extra={"category": "CONFIG"})
    return values


def settings_summary(settings: SidecarSettings) -> str:
    return (
        "args[use_cron:{use_cron}|cron_exp:{cron_exp}|timezone:{timezone}|timeout:{timeout}|"
        "extension:{extension}|directory:{directory}|snaplen:{snaplen}|filter:{filter}|"
        "interval:{interval}|tcpdump:{tcpdump}|jsondump:{jsondump}|jsonlog:{jsonlog}|ordered:{ordered}]"
    ).format(
        use_cron=str(settings.use_cron).lower(),
        cron_exp=settings.cron_exp,
        timezone=settings.timezone,
        timeout=settings.timeout,
        extension=settings.extension,
        directory=settings.directory,
        snaplen=settings.snaplen,
        filter=settings.filter,
        interval=settings.interval,
        tcpdump=str(settings.tcpdump).lower(),
        jsondump=str(settings.jsondump).lower(),
        jsonlog=str(settings.jsonlog).lower(),
        ordered=str(settings.ordered).lower(),
    )
