"""Configuration loader: reads, validates and merges global + project layers."""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from .models import CONNECTION_KEYS, HubConfig, HubSettings, ServerConfig
from .secrets import EnvironmentSecrets, SecretsProvider, substitute

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

LAYER_KEYS = {"hub", "servers"}
SERVER_KEYS = {
    field.alias or name for name, field in ServerConfig.model_fields.items()
} | set(ServerConfig.model_fields)
# Fields that may carry ${VAR} references
SECRET_FIELDS = ("command", "args", "env", "cwd", "url", "headers")


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of keeping the last."""


def _construct_unique_mapping(loader, node, deep=False):
    loader.flatten_mapping(node)
    seen = set()
    for key_node, _ in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in seen:
            raise yaml.constructor.ConstructorError(
                "while constructing a mapping",
                node.start_mark,
                f"found duplicate key '{key}'",
                key_node.start_mark,
            )
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG, _construct_unique_mapping
)


class _Layer:
    """Raw, shape-checked contents of one configuration file."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path
        self.hub: Dict[str, Any] = {}
        self.servers: Dict[str, Dict[str, Any]] = {}
        self.issues: List[str] = []

    @property
    def label(self) -> str:
        return str(self.path) if self.path else "<none>"


class ConfigLoader:
    """Loads server configuration from a global and a project YAML file."""

    def __init__(self, secrets: Optional[SecretsProvider] = None):
        self.secrets = secrets or EnvironmentSecrets()

    def load(
        self, global_path: Optional[PathLike], project_path: Optional[PathLike]
    ) -> Dict[str, ServerConfig]:
        """Load, validate, merge and resolve both layers.

        Raises:
            ConfigError: on any schema violation in either layer.
        """
        config = self.load_layers(global_path, project_path, strict=True)
        return self.resolve(config).servers

    def load_layers(
        self,
        global_path: Optional[PathLike],
        project_path: Optional[PathLike],
        strict: bool = True,
    ) -> HubConfig:
        """Merge both layers into a validated config, without secret expansion.

        With ``strict=False`` invalid servers are dropped (and reported in
        ``HubConfig.errors``) instead of failing the whole load. Unparsable
        files and invalid hub settings always raise.
        """
        global_layer = self._read_layer(global_path)
        project_layer = self._read_layer(project_path)

        issues = global_layer.issues + project_layer.issues
        servers: Dict[str, ServerConfig] = {}

        for name in self._merged_names(global_layer, project_layer):
            global_entry = global_layer.servers.get(name)
            project_entry = project_layer.servers.get(name)
            sources = ", ".join(
                layer.label
                for layer, entry in (
                    (global_layer, global_entry),
                    (project_layer, project_entry),
                )
                if entry is not None
            )
            merged = merge_server_entries(global_entry, project_entry)
            try:
                servers[name] = ServerConfig.model_validate({**merged, "name": name})
            except ValidationError as e:
                issues.extend(
                    _format_validation_error(e, f"server '{name}' ({sources})")
                )

        try:
            hub = HubSettings.model_validate({**global_layer.hub, **project_layer.hub})
        except ValidationError as e:
            raise ConfigError(
                "Invalid hub settings", _format_validation_error(e, "hub settings")
            )

        if issues:
            if strict:
                raise ConfigError("Configuration validation failed", issues)
            for issue in issues:
                logger.error(f"Skipping invalid server configuration: {issue}")
            servers = {
                name: server
                for name, server in servers.items()
                if not _has_issue(name, issues)
            }

        return HubConfig(hub=hub, servers=servers, errors=issues)

    def resolve(self, config: HubConfig) -> HubConfig:
        """Expand secret references in connection parameters."""
        resolved = {}
        for name, server in config.servers.items():
            updates = {
                field: substitute(
                    getattr(server, field), self.secrets, f"servers.{name}.{field}"
                )
                for field in SECRET_FIELDS
            }
            resolved[name] = server.model_copy(update=updates)
        return config.model_copy(update={"servers": resolved})

    def _read_layer(self, path: Optional[PathLike]) -> _Layer:
        if path is None:
            return _Layer()

        path = Path(path).expanduser()
        layer = _Layer(path)
        if not path.exists():
            logger.debug(f"Configuration layer not found, treating as empty: {path}")
            return layer

        try:
            with open(path, "r") as f:
                data = yaml.load(f, Loader=_UniqueKeyLoader)
        except yaml.YAMLError as e:
            raise ConfigError(f"{path}: invalid YAML: {e}")
        except OSError as e:
            raise ConfigError(f"{path}: cannot read configuration: {e}")

        if data is None:
            return layer
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: top level must be a mapping")

        unknown = sorted(str(key) for key in set(data) - LAYER_KEYS)
        if unknown:
            raise ConfigError(f"{path}: unknown top-level keys: {', '.join(unknown)}")

        hub = data.get("hub") or {}
        if not isinstance(hub, dict):
            raise ConfigError(f"{path}: 'hub' must be a mapping")
        layer.hub = hub

        raw_servers = data.get("servers") or {}
        if not isinstance(raw_servers, dict):
            raise ConfigError(f"{path}: 'servers' must be a mapping of name to server")

        for name, entry in raw_servers.items():
            name = str(name)
            where = f"server '{name}' ({path})"
            if entry is None:
                entry = {}
            if not isinstance(entry, dict):
                layer.issues.append(f"{where}: entry must be a mapping")
                continue

            entry = dict(entry)
            declared = str(entry.pop("name", name))
            if declared != name:
                layer.issues.append(
                    f"{where}: field 'name': '{declared}' does not match its key"
                )
            for key in sorted(str(key) for key in set(entry) - SERVER_KEYS):
                layer.issues.append(f"{where}: field '{key}': unknown field")
                del entry[key]
            layer.servers[name] = entry
        return layer

    @staticmethod
    def _merged_names(global_layer: _Layer, project_layer: _Layer) -> List[str]:
        names = list(global_layer.servers)
        names.extend(name for name in project_layer.servers if name not in names)
        return names


def merge_server_entries(
    global_entry: Optional[Dict[str, Any]], project_entry: Optional[Dict[str, Any]]
) -> Dict[str, Any]:
    """Overlay the keys present in the project entry onto the global entry.

    Every key is replaced wholesale (lists and dicts are never unioned). When
    the project entry names a transport, the whole connection group comes from
    the project entry alone.
    """
    if global_entry is None:
        return copy.deepcopy(project_entry or {})
    merged = copy.deepcopy(global_entry)
    if project_entry is None:
        return merged
    if "transport" in project_entry:
        for key in CONNECTION_KEYS:
            merged.pop(key, None)
    merged.update(copy.deepcopy(project_entry))
    return merged


def snapshot(config: HubConfig) -> Dict[str, Any]:
    """JSON-ready view of a merged configuration."""
    return config.model_dump(mode="json", by_alias=True)


def _format_validation_error(error: ValidationError, where: str) -> List[str]:
    issues = []
    for detail in error.errors():
        loc = ".".join(str(part) for part in detail["loc"]) or "(entry)"
        issues.append(f"{where}: field '{loc}': {detail['msg']}")
    return issues


def _has_issue(name: str, issues: List[str]) -> bool:
    prefix = f"server '{name}' "
    return any(issue.startswith(prefix) for issue in issues)
