import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Dict, FrozenSet, Optional

from ..asr.backends import ModelDescriptor
from ..audio.capture import AudioClip
from ..events import CancellationToken
from ..settings.settings import EffectiveConfig


class SessionState(Enum):
    IDLE = auto()
    RECORDING = auto()
    TRANSCRIBING = auto()
    ENHANCING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES


ACTIVE_STATES: FrozenSet[SessionState] = frozenset(
    {SessionState.RECORDING, SessionState.TRANSCRIBING, SessionState.ENHANCING}
)

TERMINAL_STATES: FrozenSet[SessionState] = frozenset(
    {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
)

_ABORT = frozenset({SessionState.FAILED, SessionState.CANCELLED})

TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.RECORDING}),
    SessionState.RECORDING: frozenset({SessionState.TRANSCRIBING}) | _ABORT,
    SessionState.TRANSCRIBING: frozenset(
        {SessionState.ENHANCING, SessionState.COMPLETED}
    )
    | _ABORT,
    SessionState.ENHANCING: frozenset({SessionState.COMPLETED}) | _ABORT,
    SessionState.COMPLETED: frozenset({SessionState.IDLE}),
    SessionState.FAILED: frozenset({SessionState.IDLE}),
    SessionState.CANCELLED: frozenset({SessionState.IDLE}),
}


def can_transition(current: SessionState, requested: SessionState) -> bool:
    return requested in TRANSITIONS[current]


@dataclass(frozen=True)
class StateChange:
    """Notification emitted on every transition. ``session_id`` is None for IDLE."""

    session_id: Optional[str]
    state: SessionState
    timestamp: datetime
    error: Optional[BaseException] = None


@dataclass
class Session:
    config: EffectiveConfig
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.IDLE
    model: Optional[ModelDescriptor] = None
    audio: Optional[AudioClip] = None
    raw_text: Optional[str] = None
    enhanced_text: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None
    error: Optional[BaseException] = None
    cancel_token: CancellationToken = field(
        default_factory=CancellationToken, repr=False, compare=False
    )

    @property
    def final_text(self) -> Optional[str]:
        return self.enhanced_text if self.enhanced_text is not None else self.raw_text

    @property
    def duration(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()
