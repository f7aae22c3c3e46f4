"""Configuration module for almondcloud."""

from almondcloud.config.access import clear_config_cache, get_config
from almondcloud.config.loader import get_config_path, load_config, save_config
from almondcloud.config.schema import AlmondConfig, ApiConfig, ApiUserEntry, BackendConfig

__all__ = [
    "AlmondConfig",
    "ApiConfig",
    "ApiUserEntry",
    "BackendConfig",
    "clear_config_cache",
    "get_config",
    "get_config_path",
    "load_config",
    "save_config",
]
