"""
Chat sessions for mcp-fleet.
"""

from .models import (
    ConfigurationPatch,
    SafetyLimits,
    Session,
    SessionConfiguration,
    SessionStats,
    SessionStatus,
)
from .store import (
    InvalidSessionConfiguration,
    SessionAccessDenied,
    SessionError,
    SessionStore,
)

__all__ = [
    "ConfigurationPatch",
    "SafetyLimits",
    "Session",
    "SessionConfiguration",
    "SessionStats",
    "SessionStatus",
    "InvalidSessionConfiguration",
    "SessionAccessDenied",
    "SessionError",
    "SessionStore",
]
