"""
Configuration management for mcp-fleet.
"""

from .settings import (
    Settings,
    MCPSettings,
    ServerConfig,
    ServerAuthSettings,
    ServerCapabilities,
    ServerRootSettings,
    RetrySettings,
    SessionSettings,
    LoggingSettings,
    create_server_config,
    validate_server_config,
    load_config,
)

__all__ = [
    "Settings",
    "MCPSettings",
    "ServerConfig",
    "ServerAuthSettings",
    "ServerCapabilities",
    "ServerRootSettings",
    "RetrySettings",
    "SessionSettings",
    "LoggingSettings",
    "create_server_config",
    "validate_server_config",
    "load_config",
]
