from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from .config_loader import PipelineConfig

LOG_LEVEL_ENV = "CONTACT_DIRECTORY_LOG_LEVEL"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def parse_level(level_name: Optional[str]) -> int:
    """Numeric level for names like ``"debug"`` or ``"10"``; unknown names map to INFO."""
    text = str(level_name or "INFO").strip().upper()
    if text.isdigit():
        return int(text)
    level = logging.getLevelName(text)
    return level if isinstance(level, int) else logging.INFO


def _has_file_handler(root: logging.Logger, path: str) -> bool:
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == path
        for handler in root.handlers
    )


def configure_logging(config: PipelineConfig, level_override: Optional[str] = None) -> int:
    """
    Set up the root logger for a CLI run and return the level applied.

    ``CONTACT_DIRECTORY_LOG_LEVEL`` wins over ``level_override`` (the
    ``--log-level`` flag), which wins over ``logging.level`` from the YAML
    file; WARNING is the fallback. With ``logging.file`` set, records are
    also appended to that file.
    """
    level = parse_level(
        os.getenv(LOG_LEVEL_ENV) or level_override or config.logging.level or "WARNING"
    )
    fmt = config.logging.format or DEFAULT_FORMAT

    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=fmt)
    root.setLevel(level)

    if config.logging.file:
        path = os.path.abspath(config.logging.file)
        if not _has_file_handler(root, path):
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(path, encoding="utf-8")
            handler.setFormatter(logging.Formatter(fmt))
            root.addHandler(handler)
    return level
