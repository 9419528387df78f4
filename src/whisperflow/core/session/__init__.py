from .orchestrator import RecordingOrchestrator
from .session import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    Session,
    SessionState,
    StateChange,
    can_transition,
)

__all__ = [
    "ACTIVE_STATES",
    "RecordingOrchestrator",
    "Session",
    "SessionState",
    "StateChange",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "can_transition",
]
