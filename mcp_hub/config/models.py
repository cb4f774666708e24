"""Configuration data models."""

from typing import Dict, FrozenSet, List, Literal, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)

TransportType = Literal["stdio", "sse", "streamableHttp"]

# Keys whose change requires tearing the transport down and reconnecting.
CONNECTION_KEYS = ("transport", "command", "args", "env", "cwd", "url", "headers")


class ServerConfig(BaseModel):
    model_config = ConfigDict(
        extra="forbid", populate_by_name=True, coerce_numbers_to_str=True
    )

    name: str
    transport: TransportType = "stdio"

    # stdio
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None

    # sse / streamableHttp
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    timeout_seconds: int = Field(60, ge=1, le=3600, alias="timeoutSeconds")
    watch_paths: List[str] = Field(default_factory=list, alias="watchPaths")
    always_allow: FrozenSet[str] = Field(default_factory=frozenset, alias="alwaysAllow")
    disabled_tools: FrozenSet[str] = Field(
        default_factory=frozenset, alias="disabledTools"
    )
    disabled: bool = False

    @model_validator(mode="after")
    def _check_transport_fields(self) -> "ServerConfig":
        if self.transport == "stdio":
            if not self.command:
                raise ValueError("transport 'stdio' requires 'command'")
            if self.url or self.headers:
                raise ValueError(
                    "'url' and 'headers' are only valid for sse/streamableHttp"
                )
        else:
            if not self.url:
                raise ValueError(f"transport '{self.transport}' requires 'url'")
            if self.command or self.args or self.cwd:
                raise ValueError("'command', 'args' and 'cwd' are only valid for stdio")
        return self

    @field_serializer("always_allow", "disabled_tools")
    def _sorted_names(self, value: FrozenSet[str]) -> List[str]:
        return sorted(value)

    def connection_params(self) -> Tuple:
        """Everything that identifies the underlying transport connection."""
        return (
            self.transport,
            self.command,
            tuple(self.args),
            tuple(sorted(self.env.items())),
            self.cwd,
            self.url,
            tuple(sorted(self.headers.items())),
        )


class HubSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "mcp-hub"
    version: str = "1.0.0"
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        "info", alias="logLevel"
    )
    state_dir: str = Field(".mcp-hub", alias="stateDir")
    debounce_seconds: float = Field(0.3, ge=0.05, le=5.0, alias="debounceSeconds")
    poll_interval_seconds: float = Field(
        0.1, gt=0, le=10.0, alias="pollIntervalSeconds"
    )
    retry_delays: List[float] = Field(
        default_factory=lambda: [2.0, 4.0, 8.0, 16.0], alias="retryDelays"
    )
    watch_config: bool = Field(True, alias="watchConfig")

    @field_validator("retry_delays")
    @classmethod
    def _positive_delays(cls, value: List[float]) -> List[float]:
        if any(delay <= 0 for delay in value):
            raise ValueError("retry delays must be positive")
        return value


class HubConfig(BaseModel):
    hub: HubSettings = Field(default_factory=HubSettings)
    servers: Dict[str, ServerConfig] = Field(default_factory=dict)
    # Issues for servers dropped by a non-strict load
    errors: List[str] = Field(default_factory=list, exclude=True)
