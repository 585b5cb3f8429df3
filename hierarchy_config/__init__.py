"""
hierarchy_config -- Engine settings.

Public API:
    get_engine_settings(config_path=None) -> EngineSettings

Architecture:
    hierarchy_config may import from hierarchy_kernel (for logging only).
    hierarchy_kernel MUST NOT import from hierarchy_config.
    hierarchy_services bridges the two.
"""

from __future__ import annotations

import logging
from pathlib import Path

from hierarchy_config.loader import compute_checksum, load_yaml_file, parse_engine_settings
from hierarchy_config.schema import EngineSettings, StateVerticalCatalog, StateVerticals

_logger = logging.getLogger("hierarchy_kernel.config")

_DEFAULT_CONFIG = Path(__file__).parent / "sets" / "default.yaml"


def get_engine_settings(config_path: Path | str | None = None) -> EngineSettings:
    """
    Load and parse engine settings.

    Args:
        config_path: YAML file to load. Defaults to the bundled
            ``sets/default.yaml``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file contains unknown keys or wrong types.
    """
    path = Path(config_path) if config_path is not None else _DEFAULT_CONFIG
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    settings = parse_engine_settings(load_yaml_file(path))
    checksum = compute_checksum(settings)
    _logger.info(
        "config_loaded",
        extra={
            "config_path": str(path),
            "checksum": checksum,
            "state_count": len(settings.state_verticals.entries),
        },
    )
    return settings


__all__ = [
    "EngineSettings",
    "StateVerticalCatalog",
    "StateVerticals",
    "compute_checksum",
    "get_engine_settings",
]
