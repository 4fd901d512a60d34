"""Application layer."""

from overlay_agent.application.manager import (
    CredentialNotConfiguredError,
    SessionLimitError,
    SessionManager,
    SessionNotFoundError,
)
from overlay_agent.application.profiles import ProfileNotFoundError
from overlay_agent.application.session import AgentSession, SessionBusyError

__all__ = [
    "AgentSession",
    "CredentialNotConfiguredError",
    "ProfileNotFoundError",
    "SessionBusyError",
    "SessionLimitError",
    "SessionManager",
    "SessionNotFoundError",
]
