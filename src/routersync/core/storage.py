"""Local storage helpers for retrieved backups."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping

import yaml

from routersync.core.models import Device

DEFAULT_LOCAL_CONFIG = Path("config/local.yml")


def ensure_directory(path: Path) -> Path:
    """Ensure the target directory exists and return it."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def render_backup_dir(template: str, device: Device) -> str:
    """Substitute ``{host.name}`` and ``{host.ip}`` in a backup directory template."""

    return template.replace("{host.name}", device.name).replace("{host.ip}", device.host)


def resolve_backup_dir(base_dir: Path, template: str, device: Device) -> Path:
    """Render the template for ``device`` and anchor relative paths at ``base_dir``."""

    candidate = Path(render_backup_dir(template, device)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate


def load_local_config(
    config_path: str | Path | None = None, logger: logging.Logger | None = None
) -> Mapping[str, Any] | None:
    """Load local.yml if it exists and return the mapping."""

    config_file = Path(config_path) if config_path else DEFAULT_LOCAL_CONFIG

    if logger:
        logger.debug("loading local config from %s", config_file)

    if not config_file.exists():
        if logger:
            logger.debug("local config not found at %s", config_file)
        return None

    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        if logger:
            logger.warning('unable to read local config file=%s reason="%s"', config_file, exc)
        return None

    return data if isinstance(data, Mapping) else None
