"""Events consumed by the Turn Controller's queue.

Recognizer, synthesizer, transport, timers and the user never touch
controller state directly; they post one of these and the controller
handles them strictly in arrival order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional


# -- user ------------------------------------------------------------------

@dataclass(frozen=True)
class MicToggled:
    pass


@dataclass(frozen=True)
class TextEntered:
    text: str


@dataclass(frozen=True)
class LanguageSelected:
    language: str


@dataclass(frozen=True)
class InterruptRequested:
    pass


@dataclass(frozen=True)
class ResetRequested:
    pass


@dataclass(frozen=True)
class ModelSwitchRequested:
    model: Optional[str] = None


@dataclass(frozen=True)
class StartRequested:
    pass


# -- recognizer --------------------------------------------------------------

@dataclass(frozen=True)
class RecognizerStarted:
    pass


@dataclass(frozen=True)
class RecognizerResult:
    interim: str = ""
    final: str = ""


@dataclass(frozen=True)
class RecognizerFailed:
    kind: str  # audio-capture | not-allowed | no-speech | ...


@dataclass(frozen=True)
class RecognizerEnded:
    pass


# -- synthesizer -------------------------------------------------------------

@dataclass(frozen=True)
class SpeechStarted:
    utterance_id: int


@dataclass(frozen=True)
class SpeechEnded:
    utterance_id: int


@dataclass(frozen=True)
class SpeechFailed:
    utterance_id: int
    error: str = ""


# -- transport ---------------------------------------------------------------

@dataclass(frozen=True)
class ServerMessage:
    message: Any  # a protocol.ServerMessage model


@dataclass(frozen=True)
class TransportStatus:
    status: str  # connected | disconnected | error


# -- timers ------------------------------------------------------------------

@dataclass(frozen=True)
class IdleCheck:
    pass


@dataclass(frozen=True)
class FlushPending:
    reason: str = "settle"


@dataclass(frozen=True)
class RestartListening:
    pass


@dataclass(frozen=True)
class QuotaUnlocked:
    pass


EventSink = Callable[[Any], None]
