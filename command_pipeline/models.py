"""
Data model shared by the pipeline components.

State values (ConnectivityState, RecognitionState, RetryContext) each have a
single owning component; everybody else reads snapshots. Events are plain
immutable messages posted into the state machines.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class RecognitionState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    NETWORK_ERROR = "network_error"
    OFFLINE_MODE = "offline_mode"


class RecognitionErrorKind(str, Enum):
    """Error kinds reported by the recognition source."""

    NETWORK = "network"
    NOT_ALLOWED = "not-allowed"
    NO_SPEECH = "no-speech"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str) -> "RecognitionErrorKind":
        """Map a raw engine error string; unknown kinds ("aborted", "audio-capture", ...) are OTHER."""
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class ResultSource(str, Enum):
    BACKEND = "backend"
    FALLBACK = "fallback"
    OFFLINE = "offline"
    LOCAL = "local"  # handled without the backend (reconnect commands, local errors)


def backoff_delay_ms(attempt: int, cap_ms: int = 30000, base_ms: int = 1000) -> int:
    """
    Reconnect delay for a 1-based attempt: 1s, 2s, 4s, 8s, 16s, then capped.

    backoff_delay_ms(1) == 1000, backoff_delay_ms(4) == 8000, backoff_delay_ms(6) == 30000
    """
    if attempt < 1:
        attempt = 1
    return min(2 ** (attempt - 1) * base_ms, cap_ms)


@dataclass
class RetryContext:
    """Recognition reconnect bookkeeping for one error episode."""

    attempt: int = 0
    next_delay_ms: int = 0
    max_attempts: int = 5
    frozen: bool = False

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def reset(self) -> None:
        self.attempt = 0
        self.next_delay_ms = 0
        self.frozen = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "next_delay_ms": self.next_delay_ms,
            "max_attempts": self.max_attempts,
            "frozen": self.frozen,
        }


@dataclass(frozen=True)
class AIRequest:
    utterance: str
    site_context: str = ""


@dataclass(frozen=True)
class AIResult:
    """
    Answer for one command.

    directive is opaque to the pipeline: it is only handed to the output sink.
    degraded is set when the text itself says the backend runs in limited mode.
    """

    text: str
    directive: Optional[str] = None
    degraded: bool = False
    source: ResultSource = ResultSource.BACKEND

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "directive": self.directive,
            "degraded": self.degraded,
            "source": self.source.value,
        }


@dataclass
class StreamAccumulator:
    """Per-request decoding state; discarded once the stream is reduced."""

    parts: List[str] = field(default_factory=list)
    pending: bytes = b""
    terminal_envelope: Optional[Dict[str, Any]] = None
    fragments: int = 0
    skipped: int = 0

    @property
    def buffer(self) -> str:
        return "".join(self.parts)

    @property
    def done(self) -> bool:
        return self.terminal_envelope is not None


# --- Events posted into the coordinator ---


@dataclass(frozen=True)
class BecameOnline:
    source: str = "notification"


@dataclass(frozen=True)
class BecameOffline:
    source: str = "notification"


ConnectivityEvent = Union[BecameOnline, BecameOffline]


@dataclass(frozen=True)
class StartRequested:
    pass


@dataclass(frozen=True)
class ManualRetry:
    pass


@dataclass(frozen=True)
class RecognitionStarted:
    pass


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    is_final: bool = True


@dataclass(frozen=True)
class RecognitionError:
    kind: RecognitionErrorKind


@dataclass(frozen=True)
class RecognitionEnded:
    pass


@dataclass(frozen=True)
class BackoffFired:
    generation: int


CoordinatorEvent = Union[
    BecameOnline,
    BecameOffline,
    StartRequested,
    ManualRetry,
    RecognitionStarted,
    RecognitionResult,
    RecognitionError,
    RecognitionEnded,
    BackoffFired,
]
