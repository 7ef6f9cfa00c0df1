"""Tests for uloop_sdk.client.config."""

import json

import pytest

from uloop_sdk.client.config import (
    ClientConfig,
    CompileConfig,
    ConnectionConfig,
    DEFAULT_CLIENT_NAME,
    RecoveryConfig,
    generate_example_config,
    get_config_paths,
    load_client_config,
    parse_port,
    resolve_client_name,
    resolve_unity_port,
)
from uloop_sdk.errors import ConfigurationError


def _write_config(root, data):
    config_dir = root / ".uloop"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "client.json").write_text(json.dumps(data), encoding="utf-8")


class TestDefaults:

    def test_defaults(self):
        config = ClientConfig()
        assert config.connection.host == "127.0.0.1"
        assert config.connection.port is None
        assert config.connection.request_timeout == 180.0
        assert config.recovery.health_check_attempts == 1
        assert config.compile.result_timeout == 90.0
        assert config.compile.poll_interval == 0.1
        assert config.client.include_development_only is False

    @pytest.mark.parametrize("factory", [
        lambda: ConnectionConfig(connect_timeout=0),
        lambda: ConnectionConfig(request_timeout=-1),
        lambda: RecoveryConfig(health_check_attempts=0),
        lambda: CompileConfig(poll_interval=0),
        lambda: CompileConfig(result_timeout=1.0, poll_interval=2.0),
    ])
    def test_validation(self, factory):
        with pytest.raises(ValueError):
            factory()


class TestPortResolution:
    """UNITY_TCP_PORT must be present and in 1..65535."""

    def test_env_port(self):
        assert resolve_unity_port(environ={"UNITY_TCP_PORT": "8700"}) == 8700

    def test_env_wins_over_config(self):
        config = ClientConfig(connection=ConnectionConfig(port=9000))
        assert resolve_unity_port(config, {"UNITY_TCP_PORT": "8700"}) == 8700

    def test_config_port_used_without_env(self):
        config = ClientConfig(connection=ConnectionConfig(port=9000))
        assert resolve_unity_port(config, {}) == 9000

    def test_missing(self):
        with pytest.raises(ConfigurationError, match="UNITY_TCP_PORT is not set"):
            resolve_unity_port(environ={})

    @pytest.mark.parametrize("value", ["abc", "0", "65536", "-1", "80.5"])
    def test_invalid(self, value):
        with pytest.raises(ConfigurationError):
            resolve_unity_port(environ={"UNITY_TCP_PORT": value})

    @pytest.mark.parametrize("value", [1, "1", " 65535 "])
    def test_bounds(self, value):
        assert parse_port(value) == int(str(value).strip())


class TestClientName:

    def test_env_wins(self):
        config = ClientConfig()
        config.client.name = "from-config"
        assert resolve_client_name(config, {"MCP_CLIENT_NAME": "cursor"}) == "cursor"

    def test_config(self):
        config = ClientConfig()
        config.client.name = "from-config"
        assert resolve_client_name(config, {}) == "from-config"

    def test_default(self):
        assert resolve_client_name(None, {}) == DEFAULT_CLIENT_NAME


class TestLoadClientConfig:
    """Layering: defaults < user file < project file < environment."""

    def test_no_files(self, clean_env):
        config = load_client_config(environ={})
        assert config == ClientConfig()

    def test_user_then_project(self, clean_env):
        home = clean_env / "home"
        project = clean_env / "project"
        _write_config(home, {"connection": {"request_timeout": 30.0, "connect_timeout": 2.0}})
        _write_config(project, {"connection": {"request_timeout": 60.0}})

        config = load_client_config(project, environ={})
        assert config.connection.request_timeout == 60.0
        assert config.connection.connect_timeout == 2.0

    def test_env_overrides_files(self, clean_env):
        project = clean_env / "project"
        _write_config(project, {"compile": {"result_timeout": 30.0}})

        config = load_client_config(project, environ={
            "ULOOP_COMPILE_RESULT_TIMEOUT": "45",
            "ULOOP_INCLUDE_DEVELOPMENT_TOOLS": "true",
            "MCP_CLIENT_NAME": "claude",
        })
        assert config.compile.result_timeout == 45.0
        assert config.client.include_development_only is True
        assert config.client.name == "claude"

    def test_port_left_for_resolution(self, clean_env):
        config = load_client_config(environ={"UNITY_TCP_PORT": "not-a-port"})
        assert config.connection.port is None

    def test_bad_env_value_is_ignored(self, clean_env, caplog):
        config = load_client_config(environ={"ULOOP_REQUEST_TIMEOUT": "soon"})
        assert config.connection.request_timeout == 180.0
        assert "ULOOP_REQUEST_TIMEOUT" in caplog.text

    def test_invalid_json_falls_back(self, clean_env, caplog):
        project = clean_env / "project"
        (project / ".uloop").mkdir(parents=True)
        (project / ".uloop" / "client.json").write_text("{not json", encoding="utf-8")
        assert load_client_config(project, environ={}) == ClientConfig()
        assert "Invalid JSON" in caplog.text

    def test_invalid_section_values_use_defaults(self, clean_env):
        project = clean_env / "project"
        _write_config(project, {"compile": {"poll_interval": -1}, "bogus": {}})
        config = load_client_config(project, environ={})
        assert config.compile == CompileConfig()

    def test_unknown_keys_are_ignored(self, clean_env, caplog):
        project = clean_env / "project"
        _write_config(project, {"connection": {"request_timeout": 5.0, "colour": "blue"}})
        config = load_client_config(project, environ={})
        assert config.connection.request_timeout == 5.0
        assert "colour" in caplog.text


class TestHelpers:

    def test_example_config_loads(self, clean_env):
        project = clean_env / "project"
        _write_config(project, json.loads(generate_example_config()))
        config = load_client_config(project, environ={})
        assert config.connection.port == 8700
        assert resolve_unity_port(config, {}) == 8700
        assert config.recovery.discovery_interval == 1.0
        assert config.compile.lock_grace_period == 0.5

    def test_config_paths(self, tmp_path):
        paths = get_config_paths(tmp_path)
        assert paths["project"] == tmp_path / ".uloop" / "client.json"
        assert paths["user"].name == "client.json"
