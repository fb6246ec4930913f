"""
Secret management utilities for mcp-fleet.

Server credentials can be given inline in the configuration or referenced by
environment variable name. ``.env`` files are loaded for local development.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Paths to check for .env files, in order of precedence
ENV_PATHS = [
    Path.cwd() / ".env",
    Path.cwd() / ".secrets.env",
    Path.home() / ".mcp_fleet" / ".env",
]


def load_env_files(paths: Optional[list[Path]] = None) -> Optional[Path]:
    """
    Load the first existing .env file.

    Args:
        paths: Candidate files; defaults to ``ENV_PATHS``.

    Returns:
        The path that was loaded, or None if no file exists.
    """
    for env_path in paths or ENV_PATHS:
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)
            return env_path
    return None


def get_secret(key: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret from environment variables with fallback.

    Args:
        key: The environment variable name containing the secret.
        default: Default value if the secret is not found.

    Returns:
        The secret value or default if not found.
    """
    return os.environ.get(key, default)


def resolve_token(token: Optional[str], token_env: Optional[str]) -> Optional[str]:
    """
    Resolve a server credential.

    An inline token wins; otherwise the named environment variable is read.
    """
    if token:
        return token
    if token_env:
        return get_secret(token_env)
    return None