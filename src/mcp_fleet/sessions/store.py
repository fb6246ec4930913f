"""
In-memory store for chat sessions.
"""

import random
import string
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from mcp_fleet.config import SessionSettings
from mcp_fleet.core.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from mcp_fleet.sessions.models import (
    ConfigurationPatch,
    Session,
    SessionConfiguration,
    SessionStats,
    SessionStatus,
    utc_now,
)
from mcp_fleet.utils.logging import Logger, get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]
PatchLike = Union[ConfigurationPatch, Mapping[str, Any]]


class SessionError(Exception):
    """Base class for session store errors."""


class SessionAccessDenied(SessionError):
    """
    Raised for an unknown session and for a session owned by someone else.

    Both cases carry the same message so callers cannot probe for ids.
    """

    def __init__(self, session_id: str):
        super().__init__("Access denied")
        self.session_id = session_id


class InvalidSessionConfiguration(SessionError):
    def __init__(self, errors: List[Dict[str, Any]]):
        super().__init__(f"Invalid session configuration: {len(errors)} error(s)")
        self.errors = errors


def _generate_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"agui-{int(time.time() * 1000)}-{suffix}"


def _to_patch(patch: Optional[PatchLike]) -> ConfigurationPatch:
    if patch is None:
        return ConfigurationPatch()
    if isinstance(patch, ConfigurationPatch):
        return patch
    try:
        return ConfigurationPatch.model_validate(dict(patch))
    except ValidationError as e:
        raise InvalidSessionConfiguration(e.errors(include_url=False)) from e


class SessionStore:
    """
    Process-local registry of chat sessions with a per-user index.

    Every operation except ``create`` and ``list_by_user`` checks ownership:
    a session with an owner is only visible to that owner. Sessions created
    without an owner are visible to any caller.

    ``start`` arms an hourly sweep that removes sessions idle past the
    retention horizon unless they are still active; ``shutdown`` cancels it
    and drops every session.

    Args:
        scheduler: Timer service for the sweep.
        settings: Retention policy; defaults to a 24 hour horizon swept hourly.
        clock: Returns the current UTC time, used for activity timestamps.
    """

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        settings: Optional[SessionSettings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings if settings is not None else SessionSettings()
        self._scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self._clock = clock or utc_now
        self._sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[str, List[str]] = {}
        self._sweep_handle: Optional[TimerHandle] = None
        self._audit = Logger(__name__)

    @property
    def idle_horizon(self) -> timedelta:
        return timedelta(hours=self.settings.idle_horizon_hours)

    def start(self) -> None:
        if self._sweep_handle is not None:
            return
        self._sweep_handle = self._scheduler.call_every(
            self.settings.sweep_interval_seconds, self.sweep
        )
        logger.debug(f"Session sweep every {self.settings.sweep_interval_seconds:g}s")

    def shutdown(self) -> None:
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None
        self._sessions.clear()
        self._user_sessions.clear()

    def create(
        self,
        user_id: Optional[str] = None,
        configuration: Optional[PatchLike] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        """
        Create an active session.

        ``configuration`` is merged over the defaults, including the nested
        safety limits.

        Raises:
            InvalidSessionConfiguration: A supplied value is out of range.
        """
        config = _to_patch(configuration).apply_to(SessionConfiguration())
        now = self._clock()

        session = Session(
            id=_generate_session_id(),
            user_id=user_id,
            status=SessionStatus.ACTIVE,
            start_time=now,
            last_activity=now,
            configuration=config,
            metadata={
                "user_agent": user_agent,
                "ip_address": ip_address or "unknown",
                "created_at": now.isoformat(),
            },
        )

        self._sessions[session.id] = session
        if user_id:
            self._user_sessions.setdefault(user_id, []).append(session.id)

        self._audit.event(
            "info",
            "session",
            f"Session created: {session.id}",
            data={"user_id": user_id, "model": config.model},
        )
        return session.model_copy(deep=True)

    def _authorize(self, session_id: str, caller_id: Optional[str]) -> Session:
        session = self._sessions.get(session_id)
        if session is None or (session.user_id is not None and session.user_id != caller_id):
            raise SessionAccessDenied(session_id)
        return session

    def _touch(self, session: Session) -> None:
        session.last_activity = self._clock()

    def get(self, session_id: str, caller_id: Optional[str] = None) -> Session:
        """
        Return a snapshot of the session. Changes to the returned object are
        not written back; use the store operations instead.
        """
        return self._authorize(session_id, caller_id).model_copy(deep=True)

    def list_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Summaries of the user's sessions, oldest first."""
        ids = self._user_sessions.get(user_id, [])
        return [self._sessions[i].summary() for i in ids if i in self._sessions]

    def update_config(
        self, session_id: str, patch: PatchLike, caller_id: Optional[str] = None
    ) -> Session:
        session = self._authorize(session_id, caller_id)
        session.configuration = _to_patch(patch).apply_to(session.configuration)
        self._touch(session)
        return session.model_copy(deep=True)

    def record_usage(
        self,
        session_id: str,
        caller_id: Optional[str] = None,
        messages: int = 0,
        tool_calls: int = 0,
        tokens: int = 0,
        cost: float = 0.0,
    ) -> SessionStats:
        """
        Add usage to the session's counters and bump its activity time.
        """
        session = self._authorize(session_id, caller_id)
        stats = session.stats
        session.stats = SessionStats(
            message_count=stats.message_count + messages,
            tool_call_count=stats.tool_call_count + tool_calls,
            tokens_used=stats.tokens_used + tokens,
            cost=stats.cost + cost,
        )
        self._touch(session)
        return session.stats.model_copy()

    def _set_status(
        self, session_id: str, status: SessionStatus, caller_id: Optional[str]
    ) -> Session:
        session = self._authorize(session_id, caller_id)
        session.status = status
        self._touch(session)
        return session.model_copy(deep=True)

    def pause(self, session_id: str, caller_id: Optional[str] = None) -> Session:
        return self._set_status(session_id, SessionStatus.PAUSED, caller_id)

    def resume(self, session_id: str, caller_id: Optional[str] = None) -> Session:
        return self._set_status(session_id, SessionStatus.ACTIVE, caller_id)

    def complete(self, session_id: str, caller_id: Optional[str] = None) -> Session:
        return self._set_status(session_id, SessionStatus.COMPLETED, caller_id)

    def delete(self, session_id: str, caller_id: Optional[str] = None) -> None:
        session = self._authorize(session_id, caller_id)
        self._remove(session)
        self._audit.event(
            "info",
            "session",
            f"Session deleted: {session_id}",
            data={"user_id": session.user_id, "model": session.configuration.model},
        )

    def _remove(self, session: Session) -> None:
        self._sessions.pop(session.id, None)
        if session.user_id:
            ids = self._user_sessions.get(session.user_id, [])
            remaining = [i for i in ids if i != session.id]
            if remaining:
                self._user_sessions[session.user_id] = remaining
            else:
                self._user_sessions.pop(session.user_id, None)

    def sweep(self) -> int:
        """
        Remove sessions idle past the horizon that are not active.

        Returns:
            Number of sessions removed.
        """
        cutoff = self._clock() - self.idle_horizon
        stale = [
            s
            for s in self._sessions.values()
            if s.last_activity < cutoff and s.status != SessionStatus.ACTIVE
        ]
        for session in stale:
            self._remove(session)

        if stale:
            logger.info(f"Swept {len(stale)} idle session(s)")
        return len(stale)

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "session_count": len(self._sessions),
            "user_count": len(self._user_sessions),
            "timestamp": self._clock().isoformat(),
        }

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
