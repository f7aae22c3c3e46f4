"""Configuration the front end runs with.

``serve`` resolves its file once: an explicit path wins, then the
``ALMOND_CONFIG`` environment variable, then ``~/.almondcloud/config.json``.
"""

from __future__ import annotations

import os
from pathlib import Path

from loguru import logger

from almondcloud.config.loader import get_config_path, load_config
from almondcloud.config.schema import AlmondConfig

CONFIG_PATH_ENV = "ALMOND_CONFIG"

_cached: tuple[Path, AlmondConfig] | None = None


def resolve_config_path(config_path: Path | None = None) -> Path:
    if config_path is None:
        env_path = os.environ.get(CONFIG_PATH_ENV)
        config_path = Path(env_path) if env_path else get_config_path()
    return Path(config_path).expanduser().resolve()


def get_config(*, config_path: Path | None = None, force_reload: bool = False) -> AlmondConfig:
    """Load the front-end config, reusing the last load when the path is unchanged."""
    global _cached
    path = resolve_config_path(config_path)
    if force_reload or _cached is None or _cached[0] != path:
        config = load_config(path)
        _report(config, path)
        _cached = (path, config)
    return _cached[1]


def clear_config_cache() -> None:
    global _cached
    _cached = None


def _report(config: AlmondConfig, path: Path) -> None:
    source = path if path.exists() else "defaults"
    logger.info("Config from {}: engine at {}, origin {}", source, config.backend.address, config.server_origin)
    if not config.api.tokens:
        logger.warning("No API tokens configured; every authenticated request will be rejected")
