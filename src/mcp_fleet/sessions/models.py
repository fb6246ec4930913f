"""
Chat session models.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MODEL = "gpt-4o"
DEFAULT_SYSTEM_PROMPT = (
    "You are an AI assistant. Help users with tasks, automation, and business operations."
)
DEFAULT_TOOLS = ["web_search", "calculator", "file_manager", "database_query", "email_sender"]
DEFAULT_CAPABILITIES = [
    "web_access",
    "file_operations",
    "email_integration",
    "database_access",
    "automation_tools",
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class SafetyLimits(BaseModel):
    content_filtering: bool = True
    rate_limiting: bool = True
    max_requests_per_minute: int = Field(default=60, ge=0)


class SessionConfiguration(BaseModel):
    """
    Model and tool settings of a chat session.
    """

    model_config = ConfigDict(protected_namespaces=())

    model: str = DEFAULT_MODEL
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=2000, ge=1, le=4000)
    system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT
    tools: List[str] = Field(default_factory=lambda: list(DEFAULT_TOOLS))
    capabilities: List[str] = Field(default_factory=lambda: list(DEFAULT_CAPABILITIES))
    streaming: bool = True
    safety: SafetyLimits = Field(default_factory=SafetyLimits)


class SafetyLimitsPatch(BaseModel):
    content_filtering: Optional[bool] = None
    rate_limiting: Optional[bool] = None
    max_requests_per_minute: Optional[int] = Field(default=None, ge=0)


class ConfigurationPatch(BaseModel):
    """
    Partial configuration supplied on create or update.

    Only fields that were explicitly set are merged; ``safety`` is merged
    field by field rather than replaced.
    """

    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4000)
    system_prompt: Optional[str] = None
    tools: Optional[List[str]] = None
    capabilities: Optional[List[str]] = None
    streaming: Optional[bool] = None
    safety: Optional[SafetyLimitsPatch] = None

    def apply_to(self, base: SessionConfiguration) -> SessionConfiguration:
        updates = self.model_dump(exclude_unset=True, exclude_none=True, exclude={"safety"})
        safety = base.safety
        if self.safety is not None:
            safety = safety.model_copy(update=self.safety.model_dump(exclude_unset=True, exclude_none=True))
        updates["safety"] = safety
        return base.model_copy(update=updates)


class SessionStats(BaseModel):
    message_count: int = 0
    tool_call_count: int = 0
    tokens_used: int = 0
    cost: float = 0.0


class Session(BaseModel):
    """
    A user-facing chat session.
    """

    id: str
    user_id: Optional[str] = None
    status: SessionStatus = SessionStatus.ACTIVE
    start_time: datetime = Field(default_factory=utc_now)
    last_activity: datetime = Field(default_factory=utc_now)
    configuration: SessionConfiguration = Field(default_factory=SessionConfiguration)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    stats: SessionStats = Field(default_factory=SessionStats)

    def summary(self) -> Dict[str, Any]:
        """The list view: status, timestamps, counters and the headline settings."""
        return {
            "id": self.id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "stats": self.stats.model_dump(),
            "configuration": {
                "model": self.configuration.model,
                "streaming": self.configuration.streaming,
            },
        }

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
