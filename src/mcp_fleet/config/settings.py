"""
Settings models for mcp-fleet.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field

from mcp_fleet.utils.secrets import resolve_token

SUPPORTED_TRANSPORTS = ("sse",)
KNOWN_TRANSPORTS = ("sse", "websocket", "stdio")

DEFAULT_CONFIG_FILENAME = "mcp_fleet.config.yaml"
ENV_PREFIX = "MCP_FLEET_"


class ServerRootSettings(BaseModel):
    """A filesystem or URI root exposed to a server through ``roots/list``."""

    model_config = ConfigDict(frozen=True)

    uri: str
    name: Optional[str] = None
    server_uri_alias: Optional[str] = None


class ServerAuthSettings(BaseModel):
    """Credentials sent to a server on every connection."""

    model_config = ConfigDict(frozen=True)

    type: Literal["bearer", "apikey", "oauth"] = "bearer"
    token: Optional[str] = None
    token_env: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)

    def resolved_token(self) -> Optional[str]:
        return resolve_token(self.token, self.token_env)


class ServerCapabilities(BaseModel):
    """Capability flags declared to the server during ``initialize``."""

    model_config = ConfigDict(frozen=True)

    tools: bool = True
    resources: bool = True
    prompts: bool = True
    roots: bool = True
    sampling: bool = False


class RetrySettings(BaseModel):
    """Connection retry policy."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)

    def delay_for_attempt(self, attempt: int) -> float:
        """
        Delay in seconds before retry ``attempt`` (1-based).
        """
        return (self.retry_delay_ms / 1000.0) * self.backoff_multiplier ** (attempt - 1)


class ServerConfig(BaseModel):
    """
    Identity and policy for one remote MCP server.

    Instances are immutable: to change policy, replace the server entry.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    transport: str = "sse"
    auth: Optional[ServerAuthSettings] = None
    capabilities: ServerCapabilities = Field(default_factory=ServerCapabilities)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    timeout_ms: int = Field(default=30000, gt=0)
    health_check_interval_ms: int = Field(default=30000, gt=0)
    roots: List[ServerRootSettings] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def timeout(self) -> float:
        """Request timeout in seconds."""
        return self.timeout_ms / 1000.0

    @property
    def health_check_interval(self) -> float:
        """Health-check period in seconds."""
        return self.health_check_interval_ms / 1000.0


class MCPSettings(BaseModel):
    """Settings for MCP configuration."""

    servers: Dict[str, ServerConfig] = Field(default_factory=dict)


class SessionSettings(BaseModel):
    """Retention policy for the chat session store."""

    idle_horizon_hours: float = Field(default=24.0, gt=0)
    sweep_interval_seconds: float = Field(default=3600.0, gt=0)


class LoggingSettings(BaseModel):
    """Settings for logging configuration."""

    level: str = "info"
    file_path: Optional[str] = None
    console: bool = True


class Settings(BaseModel):
    """Root settings object for mcp-fleet."""

    model_config = ConfigDict(extra="allow")

    mcp: MCPSettings = Field(default_factory=MCPSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def create_server_config(name: str, url: str, transport: str = "sse") -> ServerConfig:
    """
    Build a server config with the documented defaults.

    All capabilities are declared except sampling; retries are 3 attempts
    starting at one second and doubling; requests time out after 30 seconds.
    """
    return ServerConfig(name=name, url=url, transport=transport)


def validate_server_config(config: ServerConfig) -> List[str]:
    """
    Return human-readable problems with a server config (empty when valid).
    """
    errors: List[str] = []

    if not config.name:
        errors.append("Server name is required")
    if not config.url:
        errors.append("Server URL is required")
    if config.transport not in KNOWN_TRANSPORTS:
        errors.append("Invalid transport type")
    elif config.transport not in SUPPORTED_TRANSPORTS:
        errors.append(f"Transport type {config.transport} not supported")

    return errors


def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load and validate the configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.
            If None, look for 'mcp_fleet.config.yaml' in the current directory.

    Returns:
        Settings: Validated configuration object.
    """
    if config_path is None:
        config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILENAME)

    config_data: Dict[str, Any] = {}

    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}

    secrets_path = Path(config_path).with_suffix(".secrets.yaml")
    if secrets_path.exists():
        with open(secrets_path, "r") as f:
            secrets_data = yaml.safe_load(f) or {}
        _merge_dicts(config_data, secrets_data)

    env_config = _load_from_env()
    if env_config:
        _merge_dicts(config_data, env_config)

    # Server names come from the mapping keys when not repeated in the body
    servers = config_data.get("mcp", {}).get("servers", {})
    for name, server in servers.items():
        if isinstance(server, dict):
            server.setdefault("name", name)

    return Settings.model_validate(config_data)


def _load_from_env() -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    ``MCP_FLEET_SESSIONS_IDLE_HORIZON_HOURS=12`` becomes
    ``{"sessions": {"idle_horizon_hours": "12"}}``; the first segment selects
    the section and the remainder is the field name.
    """
    config: Dict[str, Any] = {}

    _set_nested_dict(config, ["logging", "level"], os.environ.get("LOG_LEVEL"))
    _set_nested_dict(config, ["logging", "file_path"], os.environ.get("LOG_FILE"))

    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        section, _, field = key[len(ENV_PREFIX):].lower().partition("_")
        if section and field:
            _set_nested_dict(config, [section, field], value)

    return config


def _set_nested_dict(d: Dict[str, Any], path: List[str], value: Any) -> None:
    """
    Set a value in a nested dictionary based on a path.
    """
    if value is None:
        return

    if len(path) == 1:
        d[path[0]] = value
        return

    if not isinstance(d.get(path[0]), dict):
        d[path[0]] = {}

    _set_nested_dict(d[path[0]], path[1:], value)


def _merge_dicts(target: Dict, source: Dict) -> None:
    """
    Recursively merge source dictionary into target dictionary.
    Values in source override values in target.
    """
    for key, value in source.items():
        if key in target and isinstance(target[key], dict) and isinstance(value, dict):
            _merge_dicts(target[key], value)
        else:
            target[key] = value
