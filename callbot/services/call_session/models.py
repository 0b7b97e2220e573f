"""Call session models."""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Tuple


class LifecycleState(str, Enum):
    """Top-level session lifecycle."""

    CONNECTING = "connecting"  # Context being resolved
    ACTIVE = "active"  # Normal turn taking
    CLOSING = "closing"  # Tearing the call down
    CLOSED = "closed"  # Terminal

    def __str__(self) -> str:
        return self.value


class TurnStatus(str, Enum):
    """Where the current bot/caller exchange stands."""

    IDLE = "idle"
    LISTENING = "listening"  # Awaiting caller speech
    GENERATING = "generating"  # Bot turn in flight, no audio delivered yet
    SPEAKING = "speaking"  # Bot audio delivered and still playing

    def __str__(self) -> str:
        return self.value


class TimerKind(str, Enum):
    """Timers owned by a session."""

    SILENCE = "silence"
    FINAL_CUT = "final_cut"
    NO_INTEREST = "no_interest"
    PLAYBACK = "playback"  # Internal: bot audio finished playing

    def __str__(self) -> str:
        return self.value


ALLOWED_TRANSITIONS: Dict[LifecycleState, FrozenSet[LifecycleState]] = {
    LifecycleState.CONNECTING: frozenset(
        {LifecycleState.ACTIVE, LifecycleState.CLOSING, LifecycleState.CLOSED}
    ),
    LifecycleState.ACTIVE: frozenset({LifecycleState.CLOSING}),
    LifecycleState.CLOSING: frozenset({LifecycleState.CLOSED}),
    LifecycleState.CLOSED: frozenset(),
}


@dataclass
class Turn:
    """One caller utterance paired with the bot's response."""

    query: str
    response: str = ""
    created_at: float = field(default_factory=time.time)

    def append_response(self, text: str) -> None:
        text = text.strip()
        if text:
            self.response = f"{self.response} {text}".strip()

    def as_pair(self) -> Tuple[str, str]:
        return (self.query, self.response)


@dataclass
class PendingUtterance:
    """Transcript fragments of the utterance the caller is currently speaking."""

    fragments: List[str] = field(default_factory=list)

    def add(self, text: str) -> None:
        text = text.strip()
        if text:
            self.fragments.append(text)

    @property
    def text(self) -> str:
        return " ".join(self.fragments).strip()

    def clear(self) -> None:
        self.fragments = []

    def __bool__(self) -> bool:
        return bool(self.text)
