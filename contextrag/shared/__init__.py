# Shared utilities package
from .config import Config, Settings, get_config, get_settings, init_config
from .connections import ConnectionManager, close_connections, get_connection_manager

__all__ = [
    "Config",
    "Settings",
    "get_config",
    "get_settings",
    "init_config",
    "ConnectionManager",
    "get_connection_manager",
    "close_connections",
]
