from __future__ import annotations

import logging
import shutil
from pathlib import Path

LOGGER = logging.getLogger(__name__)


def require_binary(name: str) -> str:
    LOGGER.debug("Checking required binary=%s", name, extra={"category": "CONFIG"})
    path = shutil.which(name)
    if path is None:
        LOGGER.error("Missing required binary=%s", name, extra={"category": "ERRORS"})
        raise FileNotFoundError(f"Missing required binary in PATH: {name}")
    return path


def ensure_dir(path: Path) -> None:
    LOGGER.debug("Ensuring directory exists path=%s", path, extra={"category": "CONFIG"})
    path.mkdir(parents=True, exist_ok=True)
