"""
Tests for configuration loading, validation and layer merging.
"""
import json

import pytest

from mcp_hub.config import ConfigLoader, MappingSecrets, merge_server_entries, snapshot
from mcp_hub.config.models import ServerConfig
from mcp_hub.errors import ConfigError


@pytest.fixture
def layers(tmp_path, write_yaml):
    """Return a helper writing the global and project layers."""

    def _layers(global_text: str = "", project_text: str = ""):
        global_path = write_yaml(tmp_path / "global" / "servers.yaml", global_text)
        project_path = write_yaml(tmp_path / "project" / "mcp-hub.yaml", project_text)
        return global_path, project_path

    return _layers


class TestMerge:
    """Test global + project merge semantics."""

    def test_fields_merge_across_layers(self, layers):
        """Test global alwaysAllow and project disabledTools both survive."""
        global_path, project_path = layers(
            """
servers:
  fs:
    command: npx
    args: ["-y", "server-filesystem"]
    alwaysAllow: [read]
""",
            """
servers:
  fs:
    disabledTools: [write]
""",
        )

        servers = ConfigLoader().load(global_path, project_path)

        fs = servers["fs"]
        assert fs.always_allow == frozenset({"read"})
        assert fs.disabled_tools == frozenset({"write"})
        assert fs.command == "npx"
        assert fs.args == ["-y", "server-filesystem"]

    def test_lists_are_replaced_not_unioned(self, layers):
        """Test a project list replaces the global one wholesale."""
        global_path, project_path = layers(
            """
servers:
  fs:
    command: npx
    alwaysAllow: [read, list]
    watchPaths: [a.env]
""",
            """
servers:
  fs:
    alwaysAllow: [stat]
    watchPaths: []
""",
        )

        fs = ConfigLoader().load(global_path, project_path)["fs"]

        assert fs.always_allow == frozenset({"stat"})
        assert fs.watch_paths == []

    def test_project_only_and_global_only_servers(self, layers):
        """Test servers defined in one layer stand alone, in a stable order."""
        global_path, project_path = layers(
            """
servers:
  zeta: {command: z}
  alpha: {command: a}
""",
            """
servers:
  local: {command: l}
  alpha: {timeoutSeconds: 5}
""",
        )

        servers = ConfigLoader().load(global_path, project_path)

        assert list(servers) == ["zeta", "alpha", "local"]
        assert servers["alpha"].timeout_seconds == 5
        assert servers["alpha"].command == "a"
        assert servers["local"].command == "l"

    def test_transport_override_replaces_connection_group(self, layers):
        """Test switching transport in the project drops stdio-only fields."""
        global_path, project_path = layers(
            """
servers:
  search:
    command: search-server
    args: [--port, "0"]
    alwaysAllow: [query]
""",
            """
servers:
  search:
    transport: sse
    url: http://localhost:8080/sse
    headers: {Authorization: Bearer token}
""",
        )

        search = ConfigLoader().load(global_path, project_path)["search"]

        assert search.transport == "sse"
        assert search.url == "http://localhost:8080/sse"
        assert search.command is None
        assert search.args == []
        assert search.always_allow == frozenset({"query"})

    def test_merge_is_deterministic(self, layers):
        """Test merging the same pair twice yields identical results."""
        global_path, project_path = layers(
            """
servers:
  fs: {command: npx, alwaysAllow: [b, a, c], env: {B: "2", A: "1"}}
  git: {command: git-mcp}
""",
            """
servers:
  fs: {disabledTools: [z, y]}
  web: {transport: streamableHttp, url: "http://localhost/mcp"}
""",
        )
        loader = ConfigLoader()

        first = loader.load_layers(global_path, project_path)
        second = loader.load_layers(global_path, project_path)

        assert first == second
        assert list(first.servers) == list(second.servers)
        assert json.dumps(snapshot(first)) == json.dumps(snapshot(second))

    def test_merge_server_entries_does_not_mutate_inputs(self):
        """Test merging copies both entries."""
        global_entry = {"command": "npx", "args": ["a"]}
        project_entry = {"args": ["b"]}

        merged = merge_server_entries(global_entry, project_entry)
        merged["args"].append("c")

        assert global_entry == {"command": "npx", "args": ["a"]}
        assert project_entry == {"args": ["b"]}

    def test_hub_settings_merge_field_by_field(self, layers):
        """Test project hub settings override global ones per field."""
        global_path, project_path = layers(
            """
hub:
  logLevel: debug
  stateDir: /var/lib/mcp-hub
""",
            """
hub:
  logLevel: warning
""",
        )

        config = ConfigLoader().load_layers(global_path, project_path)

        assert config.hub.log_level == "warning"
        assert config.hub.state_dir == "/var/lib/mcp-hub"
        assert config.hub.retry_delays == [2.0, 4.0, 8.0, 16.0]


class TestValidation:
    """Test schema violations are rejected with useful messages."""

    def test_unknown_field_is_rejected(self, layers):
        """Test a misspelled field names the server and field."""
        global_path, project_path = layers(
            "",
            """
servers:
  fs:
    command: npx
    timeoutSecs: 30
""",
        )

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader().load(global_path, project_path)

        message = str(exc_info.value)
        assert "fs" in message
        assert "timeoutSecs" in message
        assert str(project_path) in message

    def test_duplicate_server_name_is_rejected(self, layers):
        """Test duplicate names inside one layer are an error."""
        global_path, project_path = layers(
            """
servers:
  fs: {command: a}
  fs: {command: b}
""",
        )

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader().load(global_path, project_path)
        assert "duplicate key 'fs'" in str(exc_info.value)

    @pytest.mark.parametrize("timeout", [0, 3601, -5])
    def test_timeout_out_of_bounds(self, layers, timeout):
        """Test timeoutSeconds must lie within 1..3600."""
        global_path, project_path = layers(
            f"""
servers:
  fs: {{command: npx, timeoutSeconds: {timeout}}}
""",
        )

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader().load(global_path, project_path)
        assert "timeoutSeconds" in str(exc_info.value)

    def test_timeout_bounds_are_inclusive(self):
        """Test the boundary values are accepted."""
        assert ServerConfig(name="a", command="x", timeoutSeconds=1).timeout_seconds == 1
        assert (
            ServerConfig(name="a", command="x", timeoutSeconds=3600).timeout_seconds
            == 3600
        )

    def test_unknown_transport_is_rejected(self, layers):
        """Test only stdio, sse and streamableHttp are accepted."""
        global_path, project_path = layers(
            """
servers:
  fs: {transport: websocket, url: "ws://localhost"}
""",
        )

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader().load(global_path, project_path)
        assert "transport" in str(exc_info.value)

    def test_transport_specific_fields(self):
        """Test stdio needs a command and network transports need a url."""
        with pytest.raises(ValueError):
            ServerConfig(name="a")
        with pytest.raises(ValueError):
            ServerConfig(name="a", transport="sse")
        with pytest.raises(ValueError):
            ServerConfig(name="a", command="x", url="http://localhost")
        with pytest.raises(ValueError):
            ServerConfig(name="a", transport="sse", url="http://x", command="x")

    def test_name_must_match_key(self, layers):
        """Test an explicit name differing from its key is reported."""
        global_path, project_path = layers(
            """
servers:
  fs: {name: files, command: npx}
""",
        )

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader().load(global_path, project_path)
        assert "does not match its key" in str(exc_info.value)

    def test_every_issue_is_reported(self, layers):
        """Test all invalid servers are listed, not just the first."""
        global_path, project_path = layers(
            """
servers:
  one: {command: a, timeoutSeconds: 0}
  two: {transport: sse}
""",
        )

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader().load(global_path, project_path)

        issues = exc_info.value.issues
        assert any("server 'one'" in issue for issue in issues)
        assert any("server 'two'" in issue for issue in issues)

    def test_unparsable_layer_always_raises(self, layers):
        """Test broken YAML fails even a non-strict load."""
        global_path, project_path = layers("servers: [unclosed")

        with pytest.raises(ConfigError):
            ConfigLoader().load_layers(global_path, project_path, strict=False)

    def test_unknown_top_level_key(self, layers):
        """Test typos at the top level are rejected."""
        global_path, project_path = layers("server:\n  fs: {command: npx}\n")

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader().load(global_path, project_path)
        assert "server" in str(exc_info.value)

    def test_non_strict_load_skips_invalid_servers(self, layers):
        """Test one bad server does not prevent loading the others."""
        global_path, project_path = layers(
            """
servers:
  good: {command: npx}
  bad: {command: npx, timeoutSeconds: 99999}
""",
        )

        config = ConfigLoader().load_layers(global_path, project_path, strict=False)

        assert list(config.servers) == ["good"]
        assert len(config.errors) == 1
        assert "server 'bad'" in config.errors[0]

    def test_missing_layers_are_empty(self, tmp_path):
        """Test absent config files load as empty layers."""
        config = ConfigLoader().load_layers(
            tmp_path / "missing-global.yaml", tmp_path / "missing-project.yaml"
        )

        assert config.servers == {}
        assert config.hub.name == "mcp-hub"

    def test_disabled_servers_are_kept(self, layers):
        """Test a project layer can disable a global server without redefining it."""
        global_path, project_path = layers(
            """
servers:
  fs: {command: npx}
""",
            """
servers:
  fs: {disabled: true}
""",
        )

        config = ConfigLoader().load_layers(global_path, project_path)

        assert config.servers["fs"].disabled
        assert config.servers["fs"].command == "npx"


class TestSecrets:
    """Test ${VAR} substitution in connection parameters."""

    def test_references_are_resolved(self, layers):
        """Test secrets are expanded in env, args, url and headers."""
        global_path, project_path = layers(
            """
servers:
  fs:
    command: npx
    args: ["--token=${TOKEN}"]
    env: {API_KEY: "${TOKEN}"}
  web:
    transport: streamableHttp
    url: "https://${HOST}/mcp"
    headers: {Authorization: "Bearer ${TOKEN}"}
""",
        )
        loader = ConfigLoader(MappingSecrets({"TOKEN": "s3cret", "HOST": "example.com"}))

        servers = loader.load(global_path, project_path)

        assert servers["fs"].args == ["--token=s3cret"]
        assert servers["fs"].env == {"API_KEY": "s3cret"}
        assert servers["web"].url == "https://example.com/mcp"
        assert servers["web"].headers == {"Authorization": "Bearer s3cret"}

    def test_unresolved_references_are_left_intact(self, layers):
        """Test unknown references stay literal."""
        global_path, project_path = layers(
            """
servers:
  fs: {command: npx, env: {API_KEY: "${MISSING}"}}
""",
        )

        servers = ConfigLoader(MappingSecrets({})).load(global_path, project_path)

        assert servers["fs"].env == {"API_KEY": "${MISSING}"}

    def test_environment_is_default_provider(self, layers, monkeypatch):
        """Test the process environment is used when no provider is given."""
        monkeypatch.setenv("MCP_HUB_TEST_TOKEN", "from-env")
        global_path, project_path = layers(
            """
servers:
  fs: {command: npx, env: {API_KEY: "${MCP_HUB_TEST_TOKEN}"}}
""",
        )

        servers = ConfigLoader().load(global_path, project_path)

        assert servers["fs"].env == {"API_KEY": "from-env"}

    def test_unresolved_snapshot_keeps_references(self, layers):
        """Test the snapshot of an unresolved config never contains secrets."""
        global_path, project_path = layers(
            """
servers:
  fs: {command: npx, env: {API_KEY: "${TOKEN}"}}
""",
        )
        loader = ConfigLoader(MappingSecrets({"TOKEN": "s3cret"}))

        data = json.dumps(snapshot(loader.load_layers(global_path, project_path)))

        assert "s3cret" not in data
        assert "${TOKEN}" in data


class TestConfigError:
    """Test the rendering of configuration errors."""

    def test_single_issue_names_server_and_field(self, layers):
        """Test one bad field in one server is spelled out in the message."""
        global_path, project_path = layers(
            """
servers:
  fs: {command: npx, timeoutSeconds: 0}
""",
        )

        with pytest.raises(ConfigError) as exc_info:
            ConfigLoader().load(global_path, project_path)

        assert len(exc_info.value.issues) == 1
        message = str(exc_info.value)
        assert message.startswith("Configuration validation failed")
        assert "server 'fs'" in message
        assert "timeoutSeconds" in message

    def test_message_only_error_is_not_repeated(self):
        error = ConfigError("servers.yaml: top level must be a mapping")

        assert error.issues == ["servers.yaml: top level must be a mapping"]
        assert str(error) == "servers.yaml: top level must be a mapping"

    def test_issues_are_listed(self):
        error = ConfigError("Configuration validation failed", ["first", "second"])

        assert str(error) == (
            "Configuration validation failed\n  - first\n  - second"
        )
