"""Secrets providers used to expand ${VAR} references in server configs."""

import logging
import os
import re
from typing import Any, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class SecretsProvider(Protocol):
    def get(self, key: str) -> Optional[str]: ...


class EnvironmentSecrets:
    """Reads secrets from the process environment."""

    def get(self, key: str) -> Optional[str]:
        return os.environ.get(key)


class MappingSecrets:
    """Serves secrets from an explicit mapping."""

    def __init__(self, values: Mapping[str, str]):
        self.values = dict(values)

    def get(self, key: str) -> Optional[str]:
        return self.values.get(key)


def substitute(value: Any, provider: SecretsProvider, where: str = "") -> Any:
    """Recursively expand ${VAR} references in strings, lists and dicts.

    Unknown references are left as-is so the server sees the literal value
    and the operator gets a warning naming the location.
    """
    if isinstance(value, dict):
        return {k: substitute(v, provider, f"{where}.{k}") for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(item, provider, where) for item in value]
    if not isinstance(value, str):
        return value

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        secret = provider.get(key)
        if secret is None:
            logger.warning(f"Unresolved secret reference ${{{key}}} in {where}")
            return match.group(0)
        return secret

    return _REFERENCE.sub(_replace, value)
