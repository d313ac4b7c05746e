"""
Turn state machine and the typed commands that drive it.

The state machine is the authoritative per-call turn state. It is owned by a
single consumer (see `VoicePipeline._apply`); the inbound frame handler, the
boundary timer and the reply/playback callbacks never write it directly, they
enqueue one of the commands below.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

import numpy as np
import structlog

from src.frontdesk.audio import AudioFrame

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    """Current turn-taking state of a call."""
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


_ALLOWED: frozenset = frozenset(
    {
        (TurnState.IDLE, TurnState.LISTENING),
        (TurnState.LISTENING, TurnState.THINKING),
        (TurnState.THINKING, TurnState.LISTENING),
        (TurnState.THINKING, TurnState.SPEAKING),
        (TurnState.SPEAKING, TurnState.LISTENING),
        (TurnState.LISTENING, TurnState.IDLE),
        (TurnState.THINKING, TurnState.IDLE),
        (TurnState.SPEAKING, TurnState.IDLE),
    }
)


class InvalidTransition(Exception):
    """Raised when a transition is not part of the turn cycle."""

    def __init__(self, current: TurnState, target: TurnState):
        super().__init__(f"Invalid turn transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


@dataclass
class TransitionRecord:
    source: TurnState
    target: TurnState
    reason: str
    at: float = field(default_factory=time.monotonic)


class TurnStateMachine:
    """Validated idle/listening/thinking/speaking cycle with a transition log."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._state = TurnState.IDLE
        self._history: List[TransitionRecord] = []

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> Tuple[TransitionRecord, ...]:
        return tuple(self._history)

    def can_transition(self, target: TurnState) -> bool:
        return (self._state, target) in _ALLOWED

    def transition(self, target: TurnState, *, reason: str) -> TurnState:
        """Move to `target`, raising InvalidTransition for anything off-cycle."""
        source = self._state
        if not self.can_transition(target):
            raise InvalidTransition(source, target)

        self._state = target
        self._history.append(TransitionRecord(source=source, target=target, reason=reason))
        logger.debug(
            "Turn state transition",
            session_id=self.session_id,
            source=source.value,
            target=target.value,
            reason=reason,
        )
        return source


# Commands consumed by the per-call state owner.


@dataclass(frozen=True)
class InboundFrame:
    frame: AudioFrame


@dataclass(frozen=True)
class BoundaryTick:
    now: float


@dataclass(frozen=True)
class ReplyReady:
    """Synthesized reply audio for turn `generation`."""
    generation: int
    samples: np.ndarray
    sample_rate: int
    text: str = ""


@dataclass(frozen=True)
class TurnAborted:
    """The turn produced nothing to say (empty transcript, synthesis failure)."""
    generation: int
    reason: str


@dataclass(frozen=True)
class PlaybackFinished:
    generation: int


@dataclass(frozen=True)
class Shutdown:
    reason: str = "teardown"
