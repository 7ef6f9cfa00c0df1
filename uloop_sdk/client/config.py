"""Client configuration loading with layered precedence.

Configuration precedence (highest wins):
1. Environment variables (ULOOP_*, UNITY_TCP_PORT, MCP_CLIENT_NAME)
2. Project config (<project>/.uloop/client.json)
3. User config (~/.uloop/client.json)
4. Built-in defaults

Usage:
    from uloop_sdk.client.config import load_client_config, resolve_unity_port

    config = load_client_config(project_path=Path.cwd())
    port = resolve_unity_port(config)

Environment Variables:
    UNITY_TCP_PORT: Port the Unity bridge listens on (required, 1-65535)
    MCP_CLIENT_NAME: Name this client registers with Unity
    ULOOP_HOST: Unity host (default: 127.0.0.1)
    ULOOP_CONNECT_TIMEOUT: Per-attempt connect timeout seconds (default: 5.0)
    ULOOP_REQUEST_TIMEOUT: Per-request timeout seconds (default: 180.0)
    ULOOP_HEALTH_CHECK_TIMEOUT: Liveness probe timeout seconds (default: 1.0)
    ULOOP_INIT_CONNECT_TIMEOUT: Session connect wait seconds (default: 10.0)
    ULOOP_HEALTH_CHECK_ATTEMPTS: Probes before declaring unhealthy (default: 1)
    ULOOP_DISCOVERY_INTERVAL: Reconnect attempt interval after a drop (default: 1.0)
    ULOOP_COMPILE_RESULT_TIMEOUT: Max wait for a compile result (default: 90.0)
    ULOOP_COMPILE_POLL_INTERVAL: Result store poll interval (default: 0.1)
    ULOOP_COMPILE_SETTLE_TIMEOUT: Wait after Unity is back (default: 10.0)
    ULOOP_COMPILE_LOCK_GRACE_PERIOD: Lock-free time before a result counts (default: 0.5)
    ULOOP_PUSH_IDLE_TIMEOUT: Drop silent push peers after (default: 30.0)
    ULOOP_INCLUDE_DEVELOPMENT_TOOLS: Expose development-only tools (default: false)
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Type, get_type_hints

from uloop_sdk.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".uloop"
CONFIG_FILE_NAME = "client.json"

PORT_ENV_VAR = "UNITY_TCP_PORT"
CLIENT_NAME_ENV_VAR = "MCP_CLIENT_NAME"
DEFAULT_CLIENT_NAME = "uloop-sdk"
DEFAULT_HOST = "127.0.0.1"


def _parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_value(value: str, target_type: Type) -> Any:
    """Parse environment variable value to target type."""
    # Extract inner type from Optional
    args = getattr(target_type, '__args__', ())
    if args and type(None) in args:
        inner_types = [a for a in args if a is not type(None)]
        if inner_types:
            target_type = inner_types[0]

    if target_type == bool:
        return _parse_bool(value)
    elif target_type == int:
        return int(value)
    elif target_type == float:
        return float(value)
    return value


@dataclass
class ConnectionConfig:
    """Request/response channel settings.

    Attributes:
        host: Address of the Unity bridge.
        port: Unity bridge port. None means "read UNITY_TCP_PORT".
        connect_timeout: Timeout for one connection attempt in seconds.
        request_timeout: Default timeout for a single request in seconds.
        health_check_timeout: Timeout for the ping used as a liveness probe.
        init_connect_timeout: How long session initialization waits for
            the connection before reporting that Unity is not running.
    """
    host: str = DEFAULT_HOST
    port: Optional[int] = None
    connect_timeout: float = 5.0
    request_timeout: float = 180.0
    health_check_timeout: float = 1.0
    init_connect_timeout: float = 10.0

    def __post_init__(self):
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.health_check_timeout <= 0:
            raise ValueError("health_check_timeout must be positive")
        if self.init_connect_timeout <= 0:
            raise ValueError("init_connect_timeout must be positive")


@dataclass
class RecoveryConfig:
    """Connection recovery settings.

    Attributes:
        health_check_attempts: Liveness probes to try before declaring the
            connection unhealthy. One probe matches the classic behavior;
            raise it on machines where Unity stalls under load.
        health_check_timeout: Upper bound for each probe in seconds.
        discovery_interval: Delay between reconnect attempts after the
            connection drops, in seconds.
    """
    health_check_attempts: int = 1
    health_check_timeout: float = 1.0
    discovery_interval: float = 1.0

    def __post_init__(self):
        if self.health_check_attempts < 1:
            raise ValueError("health_check_attempts must be at least 1")
        if self.health_check_timeout <= 0:
            raise ValueError("health_check_timeout must be positive")
        if self.discovery_interval <= 0:
            raise ValueError("discovery_interval must be positive")


@dataclass
class CompileConfig:
    """Result recovery for state-losing operations (force recompile).

    Attributes:
        result_timeout: Total time to wait for a stored result in seconds.
        poll_interval: Delay between result store reads in seconds.
        settle_timeout: Once Unity is connected and idle again, how long to
            keep polling before giving up early.
        lock_grace_period: How long Unity must stay free of lock files
            before a stored result is accepted.
    """
    result_timeout: float = 90.0
    poll_interval: float = 0.1
    settle_timeout: float = 10.0
    lock_grace_period: float = 0.5

    def __post_init__(self):
        if self.result_timeout <= 0:
            raise ValueError("result_timeout must be positive")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if self.poll_interval > self.result_timeout:
            raise ValueError("poll_interval must be <= result_timeout")
        if self.settle_timeout <= 0:
            raise ValueError("settle_timeout must be positive")
        if self.lock_grace_period < 0:
            raise ValueError("lock_grace_period must not be negative")


@dataclass
class PushConfig:
    """Push-notification receiver settings."""
    host: str = DEFAULT_HOST
    idle_timeout: float = 30.0

    def __post_init__(self):
        if self.idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")


@dataclass
class IdentityConfig:
    """How this client presents itself to Unity."""
    name: Optional[str] = None
    include_development_only: bool = False


@dataclass
class ClientConfig:
    """Root client configuration."""
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    compile: CompileConfig = field(default_factory=CompileConfig)
    push: PushConfig = field(default_factory=PushConfig)
    client: IdentityConfig = field(default_factory=IdentityConfig)


SECTION_TYPES: Dict[str, Type] = {
    "connection": ConnectionConfig,
    "recovery": RecoveryConfig,
    "compile": CompileConfig,
    "push": PushConfig,
    "client": IdentityConfig,
}

# Maps "section.field" paths to environment variable names
ENV_VAR_MAPPING: Dict[str, str] = {
    "connection.host": "ULOOP_HOST",
    "connection.port": PORT_ENV_VAR,
    "connection.connect_timeout": "ULOOP_CONNECT_TIMEOUT",
    "connection.request_timeout": "ULOOP_REQUEST_TIMEOUT",
    "connection.health_check_timeout": "ULOOP_HEALTH_CHECK_TIMEOUT",
    "connection.init_connect_timeout": "ULOOP_INIT_CONNECT_TIMEOUT",
    "recovery.health_check_attempts": "ULOOP_HEALTH_CHECK_ATTEMPTS",
    "recovery.health_check_timeout": "ULOOP_HEALTH_CHECK_TIMEOUT",
    "recovery.discovery_interval": "ULOOP_DISCOVERY_INTERVAL",
    "compile.result_timeout": "ULOOP_COMPILE_RESULT_TIMEOUT",
    "compile.poll_interval": "ULOOP_COMPILE_POLL_INTERVAL",
    "compile.settle_timeout": "ULOOP_COMPILE_SETTLE_TIMEOUT",
    "compile.lock_grace_period": "ULOOP_COMPILE_LOCK_GRACE_PERIOD",
    "push.idle_timeout": "ULOOP_PUSH_IDLE_TIMEOUT",
    "client.name": CLIENT_NAME_ENV_VAR,
    "client.include_development_only": "ULOOP_INCLUDE_DEVELOPMENT_TOOLS",
}


def _validate_port(port: Any, source: str) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise ConfigurationError(f"{source} must be an integer, got {port!r}")
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"{source} must be between 1 and 65535, got {port}")
    return port


def parse_port(value: Any, source: str = PORT_ENV_VAR) -> int:
    """Parse and range-check a port value from config or environment.

    Raises:
        ConfigurationError: If the value is missing, not an integer, or
            outside 1-65535.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigurationError(
            f"{source} is not set. Set it to the port shown in the Unity "
            "uLoopMCP window."
        )
    if isinstance(value, str):
        try:
            value = int(value.strip(), 10)
        except ValueError:
            raise ConfigurationError(f"{source} must be an integer, got {value!r}") from None
    return _validate_port(value, source)


def resolve_unity_port(
    config: Optional[ClientConfig] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    """Resolve the port Unity is expected to listen on.

    The environment wins over the config file, like every other setting.

    Raises:
        ConfigurationError: If no valid port is configured.
    """
    env = os.environ if environ is None else environ
    raw = env.get(PORT_ENV_VAR)
    if raw is not None and raw.strip():
        return parse_port(raw, PORT_ENV_VAR)
    if config is not None and config.connection.port is not None:
        return parse_port(config.connection.port, "connection.port")
    return parse_port(None, PORT_ENV_VAR)


def resolve_client_name(
    config: Optional[ClientConfig] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    env = os.environ if environ is None else environ
    name = env.get(CLIENT_NAME_ENV_VAR)
    if name:
        return name
    if config is not None and config.client.name:
        return config.client.name
    return DEFAULT_CLIENT_NAME


def _find_config_files(project_path: Optional[Path] = None) -> List[Path]:
    """Find configuration files in order of precedence (lowest first).

    Searches for client.json in:
    1. ~/.uloop/client.json (user-level, lowest precedence)
    2. <project>/.uloop/client.json (project-level, higher precedence)
    """
    files = []

    user_config = Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    if user_config.exists():
        files.append(user_config)

    if project_path:
        project_config = project_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME
        if project_config.exists():
            files.append(project_config)

    return files


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base, returning new dict.

    Lists and other non-dict values are replaced, not merged.
    """
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _get_field_type(dataclass_type: Type, field_name: str) -> Type:
    try:
        hints = get_type_hints(dataclass_type)
        return hints.get(field_name, str)
    except Exception:
        return str


def _apply_env_overrides(
    config_dict: Dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Apply environment variable overrides to config dict.

    Unparseable values are logged and skipped. The port is handled by
    resolve_unity_port() so a bad UNITY_TCP_PORT surfaces as a
    ConfigurationError instead of being silently ignored here.
    """
    env = os.environ if environ is None else environ
    result = {k: (v.copy() if isinstance(v, dict) else v) for k, v in config_dict.items()}

    for path, env_var in ENV_VAR_MAPPING.items():
        env_value = env.get(env_var)
        if env_value is None or path == "connection.port":
            continue

        section, field_name = path.split(".")
        current = result.get(section)
        if not isinstance(current, dict):
            current = {}
            result[section] = current

        target_type = _get_field_type(SECTION_TYPES[section], field_name)
        try:
            current[field_name] = _parse_env_value(env_value, target_type)
            logger.debug(f"Applied env override: {env_var}={env_value}")
        except (ValueError, TypeError) as e:
            logger.warning(f"Invalid value for {env_var}: {env_value} ({e})")

    return result


def _dict_to_section(name: str, data: Dict[str, Any]) -> Any:
    """Convert one section dict to its dataclass, falling back to defaults."""
    section_type = SECTION_TYPES[name]
    valid_fields = {f.name for f in fields(section_type)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    unknown = set(data.keys()) - valid_fields
    if unknown:
        logger.warning(f"Unknown {name} config keys (ignored): {unknown}")

    try:
        return section_type(**filtered)
    except (TypeError, ValueError) as e:
        logger.warning(f"Invalid {name} config values, using defaults: {e}")
        return section_type()


def _dict_to_config(data: Dict[str, Any]) -> ClientConfig:
    sections = {}
    for name in SECTION_TYPES:
        section_data = data.get(name, {})
        if not isinstance(section_data, dict):
            logger.warning(f"Invalid '{name}' config (expected dict), using defaults")
            section_data = {}
        sections[name] = _dict_to_section(name, section_data)
    return ClientConfig(**sections)


def load_client_config(
    project_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ClientConfig:
    """Load client configuration with layered precedence.

    Args:
        project_path: Unity project (or workspace) root for project-level
            config. If None, only user config and environment are used.
        environ: Environment mapping, defaults to os.environ.

    Returns:
        Merged ClientConfig instance. The port is left as configured;
        call resolve_unity_port() to validate it.
    """
    merged: Dict[str, Any] = {}

    for config_file in _find_config_files(project_path):
        try:
            with open(config_file, encoding="utf-8") as f:
                file_config = json.load(f)

            if not isinstance(file_config, dict):
                logger.warning(f"Invalid config format in {config_file} (expected object)")
                continue

            merged = _deep_merge(merged, file_config)
            logger.debug(f"Loaded config from {config_file}")

        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in {config_file}: {e}")
        except OSError as e:
            logger.warning(f"Failed to read {config_file}: {e}")

    merged = _apply_env_overrides(merged, environ)
    return _dict_to_config(merged)


def generate_example_config() -> str:
    """Generate an example client.json configuration file."""
    example = {
        "_comment": "uloop client configuration",
        "connection": {
            "host": DEFAULT_HOST,
            "port": 8700,
            "connect_timeout": 5.0,
            "request_timeout": 180.0,
            "health_check_timeout": 1.0,
            "init_connect_timeout": 10.0,
        },
        "recovery": {
            "health_check_attempts": 1,
            "health_check_timeout": 1.0,
            "discovery_interval": 1.0,
        },
        "compile": {
            "result_timeout": 90.0,
            "poll_interval": 0.1,
            "settle_timeout": 10.0,
            "lock_grace_period": 0.5,
        },
        "push": {
            "idle_timeout": 30.0,
        },
        "client": {
            "name": DEFAULT_CLIENT_NAME,
            "include_development_only": False,
        },
    }
    return json.dumps(example, indent=2)


def get_config_paths(project_path: Optional[Path] = None) -> Dict[str, Path]:
    """Get the paths where config files are searched."""
    paths = {
        "user": Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME,
    }
    if project_path:
        paths["project"] = project_path / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    return paths


__all__ = [
    "ConnectionConfig",
    "RecoveryConfig",
    "CompileConfig",
    "PushConfig",
    "IdentityConfig",
    "ClientConfig",
    "ENV_VAR_MAPPING",
    "PORT_ENV_VAR",
    "CLIENT_NAME_ENV_VAR",
    "DEFAULT_CLIENT_NAME",
    "parse_port",
    "resolve_unity_port",
    "resolve_client_name",
    "load_client_config",
    "generate_example_config",
    "get_config_paths",
]
