"""Tests for gateway_sdk.client.config - layered configuration loading."""

import json
from pathlib import Path

import pytest

from gateway_sdk.client.config import (
    ClientConfig,
    GatewayConfig,
    RecoveryConfig,
    generate_example_config,
    get_config_paths,
    load_client_config,
)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Empty workspace with an isolated home directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setattr(Path, "home", lambda: home)
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


def _write_project_config(workspace: Path, data) -> None:
    config_dir = workspace / ".gateway-chat"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "client.json").write_text(json.dumps(data) if not isinstance(data, str) else data)


class TestGatewayConfig:

    def test_defaults(self):
        config = ClientConfig()

        assert config.gateway.url == "ws://127.0.0.1:18789"
        assert config.gateway.token == ""
        assert config.gateway.has_token is False
        assert config.gateway.session_key == "webchat"
        assert config.gateway.history_limit == 200
        assert config.gateway.request_timeout == 120.0
        assert config.recovery.enabled is True
        assert config.recovery.reconnect_delay == 5.0

    def test_legacy_session_key_is_migrated(self):
        assert GatewayConfig(session_key="main").session_key == "webchat"

    def test_blank_session_key_falls_back_to_default(self):
        assert GatewayConfig(session_key="  ").session_key == "webchat"

    def test_token_is_trimmed(self):
        config = GatewayConfig(token="  secret \n")

        assert config.token == "secret"
        assert config.has_token is True

    def test_whitespace_token_is_no_token(self):
        assert GatewayConfig(token="   ").has_token is False

    @pytest.mark.parametrize("kwargs", [
        {"url": ""},
        {"history_limit": 0},
        {"request_timeout": 0},
    ])
    def test_invalid_values_raise(self, kwargs):
        with pytest.raises(ValueError):
            GatewayConfig(**kwargs)

    def test_negative_reconnect_delay_raises(self):
        with pytest.raises(ValueError):
            RecoveryConfig(reconnect_delay=-1)


class TestLoadClientConfig:

    def test_no_sources_gives_defaults(self, workspace):
        config = load_client_config(workspace, environ={})

        assert config == ClientConfig()

    def test_environment_overrides(self, workspace):
        config = load_client_config(workspace, environ={
            "GATEWAY_URL": "ws://gateway.local:9000",
            "GATEWAY_TOKEN": "tok",
            "GATEWAY_HISTORY_LIMIT": "50",
            "GATEWAY_AUTO_RECONNECT": "false",
            "GATEWAY_RECONNECT_DELAY": "2.5",
        })

        assert config.gateway.url == "ws://gateway.local:9000"
        assert config.gateway.token == "tok"
        assert config.gateway.history_limit == 50
        assert config.recovery.enabled is False
        assert config.recovery.reconnect_delay == 2.5

    def test_precedence_file_then_dotenv_then_environment(self, workspace):
        _write_project_config(workspace, {
            "gateway": {"url": "ws://from-file", "token": "file-token", "session_key": "ops"},
        })
        (workspace / ".env").write_text("GATEWAY_TOKEN=dotenv-token\nGATEWAY_URL=ws://from-dotenv\n")

        config = load_client_config(workspace, environ={"GATEWAY_URL": "ws://from-env"})

        assert config.gateway.url == "ws://from-env"
        assert config.gateway.token == "dotenv-token"
        assert config.gateway.session_key == "ops"

    def test_project_config_overrides_user_config(self, workspace):
        user_dir = Path.home() / ".gateway-chat"
        user_dir.mkdir()
        (user_dir / "client.json").write_text(json.dumps({
            "gateway": {"url": "ws://user", "history_limit": 10},
        }))
        _write_project_config(workspace, {"gateway": {"url": "ws://project"}})

        config = load_client_config(workspace, environ={})

        assert config.gateway.url == "ws://project"
        assert config.gateway.history_limit == 10

    def test_legacy_session_key_from_environment(self, workspace):
        config = load_client_config(workspace, environ={"GATEWAY_SESSION_KEY": "main"})

        assert config.gateway.session_key == "webchat"

    def test_invalid_env_value_is_ignored(self, workspace):
        config = load_client_config(workspace, environ={"GATEWAY_HISTORY_LIMIT": "many"})

        assert config.gateway.history_limit == 200

    def test_invalid_json_file_is_skipped(self, workspace):
        _write_project_config(workspace, "{not json")

        config = load_client_config(workspace, environ={})

        assert config == ClientConfig()

    def test_invalid_section_values_fall_back_to_defaults(self, workspace):
        _write_project_config(workspace, {"recovery": {"reconnect_delay": -3}})

        config = load_client_config(workspace, environ={})

        assert config.recovery == RecoveryConfig()

    def test_env_file_can_be_disabled(self, workspace):
        (workspace / ".env").write_text("GATEWAY_TOKEN=dotenv-token\n")

        config = load_client_config(workspace, env_file=None, environ={})

        assert config.gateway.token == ""


class TestHelpers:

    def test_example_config_loads_back(self, workspace):
        _write_project_config(workspace, generate_example_config())

        config = load_client_config(workspace, environ={})

        assert config == ClientConfig()

    def test_config_paths(self, workspace):
        paths = get_config_paths(workspace)

        assert paths["user"] == Path.home() / ".gateway-chat" / "client.json"
        assert paths["project"] == workspace / ".gateway-chat" / "client.json"
