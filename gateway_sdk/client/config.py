"""Client configuration loading with layered precedence.

Sources, lowest precedence first:

1. Built-in defaults
2. User config (``~/.gateway-chat/client.json``)
3. Project config (``<workspace>/.gateway-chat/client.json``)
4. ``.env`` file values (``GATEWAY_*``, read without touching os.environ)
5. Process environment (``GATEWAY_*``)

Usage:
    from gateway_sdk.client.config import load_client_config

    config = load_client_config(workspace_path=Path.cwd())
    print(config.gateway.url, config.recovery.reconnect_delay)

Environment Variables:
    GATEWAY_URL: Websocket address of the gateway (default: ws://127.0.0.1:18789)
    GATEWAY_TOKEN: Auth token sent in the connect handshake (default: empty)
    GATEWAY_SESSION_KEY: Chat session to bind to (default: webchat)
    GATEWAY_HISTORY_LIMIT: Messages requested per history fetch (default: 200)
    GATEWAY_REQUEST_TIMEOUT: Per-request timeout seconds (default: 120.0)
    GATEWAY_AUTO_RECONNECT: Reconnect after unclean closes (default: true)
    GATEWAY_RECONNECT_DELAY: Seconds before a reconnect attempt (default: 5.0)
    GATEWAY_CONNECT_TIMEOUT: Seconds allowed to open the websocket (default: 10.0)
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Type

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".gateway-chat"
CONFIG_FILE_NAME = "client.json"

DEFAULT_GATEWAY_URL = "ws://127.0.0.1:18789"
DEFAULT_SESSION_KEY = "webchat"

# Older clients defaulted to "main"; the gateway reserves it now.
LEGACY_SESSION_KEYS = {"main": DEFAULT_SESSION_KEY}

_TRUE_STRINGS = ("true", "1", "yes", "on")


@dataclass
class GatewayConfig:
    """Where and as whom to connect.

    Attributes:
        url: Websocket address of the gateway.
        token: Auth token; connecting without one is a configuration error.
        session_key: Chat session the client is bound to.
        history_limit: Number of messages requested per history fetch.
        request_timeout: Seconds before a pending request fails.
        locale: Locale reported in the handshake (None = detect).
    """
    url: str = DEFAULT_GATEWAY_URL
    token: str = ""
    session_key: str = DEFAULT_SESSION_KEY
    history_limit: int = 200
    request_timeout: float = 120.0
    locale: Optional[str] = None

    def __post_init__(self):
        if not self.url:
            raise ValueError("url must not be empty")
        if self.history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        self.session_key = (self.session_key or "").strip() or DEFAULT_SESSION_KEY
        self.session_key = LEGACY_SESSION_KEYS.get(self.session_key, self.session_key)
        self.token = (self.token or "").strip()

    @property
    def has_token(self) -> bool:
        return bool(self.token)


@dataclass
class RecoveryConfig:
    """Connection recovery settings.

    The client waits a fixed delay after an unclean close before trying
    again; each new close schedules a fresh attempt.

    Attributes:
        enabled: Reconnect automatically after unclean closes.
        reconnect_delay: Seconds to wait before a reconnection attempt.
        connect_timeout: Seconds allowed for opening the websocket.
    """
    enabled: bool = True
    reconnect_delay: float = 5.0
    connect_timeout: float = 10.0

    def __post_init__(self):
        if self.reconnect_delay < 0:
            raise ValueError("reconnect_delay must not be negative")
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")


@dataclass
class ClientConfig:
    """Complete client configuration.

    Attributes:
        gateway: Connection target, credentials and session.
        recovery: Reconnection settings.
    """
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)


# Environment variable for each (section, field)
ENV_VAR_MAPPING: Dict[str, str] = {
    "gateway.url": "GATEWAY_URL",
    "gateway.token": "GATEWAY_TOKEN",
    "gateway.session_key": "GATEWAY_SESSION_KEY",
    "gateway.history_limit": "GATEWAY_HISTORY_LIMIT",
    "gateway.request_timeout": "GATEWAY_REQUEST_TIMEOUT",
    "recovery.enabled": "GATEWAY_AUTO_RECONNECT",
    "recovery.reconnect_delay": "GATEWAY_RECONNECT_DELAY",
    "recovery.connect_timeout": "GATEWAY_CONNECT_TIMEOUT",
}

_SECTION_TYPES: Dict[str, Type] = {
    "gateway": GatewayConfig,
    "recovery": RecoveryConfig,
}


def get_config_paths(workspace_path: Optional[Path] = None) -> Dict[str, Path]:
    """Where client.json files are looked up.

    Returns:
        ``{"user": ...}`` plus ``"project"`` when a workspace is given.
    """
    paths = {"user": Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME}
    if workspace_path:
        paths["project"] = Path(workspace_path) / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    return paths


def _existing_config_files(workspace_path: Optional[Path]) -> List[Path]:
    """Config files that exist, user before project."""
    return [p for p in get_config_paths(workspace_path).values() if p.is_file()]


def _read_config_file(path: Path) -> Dict[str, Any]:
    """Parse one client.json; problems are logged and yield ``{}``."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning(f"Invalid JSON in {path}: {e}")
        return {}
    except OSError as e:
        logger.warning(f"Cannot read {path}: {e}")
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: top level must be an object")
        return {}
    logger.debug(f"Loaded config from {path}")
    return data


def _merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; ``overlay`` wins on conflicts."""
    merged = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        merged[key] = _merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _coerce(raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the field's default."""
    if isinstance(default, bool):
        return raw.strip().lower() in _TRUE_STRINGS
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def _load_env_file(env_file: Optional[str], workspace_path: Optional[Path]) -> Dict[str, str]:
    """GATEWAY_* values from a .env file (relative paths resolve against the workspace)."""
    if not env_file:
        return {}
    env_path = Path(env_file)
    if not env_path.is_absolute() and workspace_path:
        env_path = Path(workspace_path) / env_path
    if not env_path.is_file():
        return {}
    logger.debug(f"Reading env file {env_path}")
    return {k: v for k, v in dotenv_values(env_path).items() if v is not None}


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Dict[str, Any]]:
    """Nested ``{section: {field: value}}`` built from GATEWAY_* variables.

    Values that do not convert are logged and skipped.
    """
    overrides: Dict[str, Dict[str, Any]] = {}
    for path, env_var in ENV_VAR_MAPPING.items():
        raw = environ.get(env_var)
        if raw is None:
            continue
        section, name = path.split(".")
        default = getattr(_SECTION_TYPES[section](), name)
        try:
            overrides.setdefault(section, {})[name] = _coerce(raw, default)
        except ValueError:
            logger.warning(f"Ignoring {env_var}={raw!r}: expected {type(default).__name__}")
    return overrides


def _build_section(section: str, data: Any) -> Any:
    """Instantiate one section dataclass.

    Unknown keys are logged and dropped (keys starting with ``_`` are
    comments); invalid values make the whole section fall back to defaults.
    """
    section_type = _SECTION_TYPES[section]
    if not isinstance(data, dict):
        logger.warning(f"'{section}' config must be an object, using defaults")
        return section_type()

    known = {f.name for f in fields(section_type)}
    unknown = sorted(k for k in data if k not in known and not k.startswith("_"))
    if unknown:
        logger.warning(f"Unknown {section} config keys ignored: {', '.join(unknown)}")

    try:
        return section_type(**{k: v for k, v in data.items() if k in known})
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid {section} config, using defaults: {e}")
        return section_type()


def load_client_config(
    workspace_path: Optional[Path] = None,
    env_file: Optional[str] = ".env",
    environ: Optional[Mapping[str, str]] = None,
) -> ClientConfig:
    """Load client configuration with layered precedence.

    Args:
        workspace_path: Project directory holding ``.gateway-chat/client.json``;
            relative ``env_file`` paths resolve against it.
        env_file: ``.env`` file to read (None disables).
        environ: Variables to read overrides from (defaults to os.environ).

    Returns:
        Merged ClientConfig instance.

    Example:
        config = load_client_config(Path.cwd())
        if not config.gateway.has_token:
            print("Set GATEWAY_TOKEN first")
    """
    merged: Dict[str, Any] = {}
    for path in _existing_config_files(workspace_path):
        merged = _merge(merged, _read_config_file(path))

    variables = _load_env_file(env_file, workspace_path)
    variables.update(os.environ if environ is None else environ)
    merged = _merge(merged, _env_overrides(variables))

    return ClientConfig(
        gateway=_build_section("gateway", merged.get("gateway", {})),
        recovery=_build_section("recovery", merged.get("recovery", {})),
    )


def generate_example_config() -> str:
    """Example client.json with every setting at its default."""
    example = {
        "_comment": "Gateway chat client configuration",
        "gateway": {
            "url": DEFAULT_GATEWAY_URL,
            "token": "",
            "session_key": DEFAULT_SESSION_KEY,
            "history_limit": 200,
            "request_timeout": 120.0,
        },
        "recovery": {
            "_comment": "Reconnection after unclean closes",
            "enabled": True,
            "reconnect_delay": 5.0,
            "connect_timeout": 10.0,
        },
    }
    return json.dumps(example, indent=2)


__all__ = [
    "ClientConfig",
    "ENV_VAR_MAPPING",
    "GatewayConfig",
    "RecoveryConfig",
    "generate_example_config",
    "get_config_paths",
    "load_client_config",
]
