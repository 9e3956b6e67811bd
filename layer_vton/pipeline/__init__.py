"""Session orchestration."""

from .session_machine import ALLOWED_TRANSITIONS, SessionStateMachine

__all__ = ["ALLOWED_TRANSITIONS", "SessionStateMachine"]
