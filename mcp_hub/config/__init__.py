"""Configuration system for the MCP hub."""

from .loader import ConfigLoader, merge_server_entries, snapshot
from .models import HubConfig, HubSettings, ServerConfig
from .secrets import EnvironmentSecrets, MappingSecrets, SecretsProvider

__all__ = [
    "ConfigLoader",
    "HubConfig",
    "HubSettings",
    "ServerConfig",
    "SecretsProvider",
    "EnvironmentSecrets",
    "MappingSecrets",
    "merge_server_entries",
    "snapshot",
]
