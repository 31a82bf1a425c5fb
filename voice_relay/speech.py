"""
speech.py — Voice Relay · Speech engine interfaces
==================================================
The recognizer and synthesizer are external engines (browser Web Speech,
an OS voice, a cloud service).  The Turn Controller only sees these
protocols; engines report back by posting events.py events into the
sink they were built with.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

from .events import EventSink
from .languages import VOICE_NAME_HINTS, primary_subtag

log = logging.getLogger("voice_relay.speech")


class RecognizerBusy(RuntimeError):
    """start() called on a recognizer that is already running."""


class RecognizerIdle(RuntimeError):
    """stop() called on a recognizer that is not running."""


@dataclass(frozen=True)
class RecognizerSettings:
    language: str
    continuous: bool = True
    interim_results: bool = True


@dataclass(frozen=True)
class Voice:
    name: str
    lang: str


@dataclass(frozen=True)
class Utterance:
    id: int
    text: str
    language: str
    voice: Optional[Voice] = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0


class Recognizer(Protocol):
    """Speech-to-text engine.

    Posts RecognizerStarted, RecognizerResult, RecognizerFailed and
    RecognizerEnded into its sink.
    """

    settings: RecognizerSettings

    def start(self) -> None:
        """Begin capturing; raises RecognizerBusy if already running."""

    def stop(self) -> None:
        """Stop capturing; may raise RecognizerIdle if not running."""


class Synthesizer(Protocol):
    """Text-to-speech engine with a single utterance queue.

    Posts SpeechStarted, SpeechEnded and SpeechFailed (tagged with the
    utterance id) into its sink.
    """

    def voices(self) -> list[Voice]:
        """Currently available voices; may be empty until the engine is ready."""

    def speak(self, utterance: Utterance) -> None:
        """Queue *utterance* for playback."""

    def cancel(self) -> None:
        """Drop the queue and stop playback immediately.  Idempotent."""


RecognizerFactory = Callable[[RecognizerSettings, EventSink], Recognizer]
SynthesizerFactory = Callable[[EventSink], Synthesizer]


# ---------------------------------------------------------------------------
# Voice selection
# ---------------------------------------------------------------------------

def pick_voice(voices: Sequence[Voice], language: str) -> Optional[Voice]:
    """Best voice for *language*.

    Exact tag, then same primary subtag, then a name hint; a "female" voice
    wins among candidates.  Falls back to any English voice, then the first.
    """
    if not voices:
        return None

    lang = (language or "").lower()
    prefix = primary_subtag(lang)

    candidates = [v for v in voices if (v.lang or "").lower() == lang]
    if not candidates:
        candidates = [v for v in voices if (v.lang or "").lower().startswith(prefix)]
    if not candidates and prefix in VOICE_NAME_HINTS:
        hints = [h.lower() for h in VOICE_NAME_HINTS[prefix]]
        candidates = [
            v for v in voices
            if any(h in f"{v.name} {v.lang}".lower() for h in hints)
        ]

    voice = next((v for v in candidates if "female" in v.name.lower()), None)
    if voice is None and candidates:
        voice = candidates[0]
    if voice is None:
        voice = next((v for v in voices if (v.lang or "").lower().startswith("en")), voices[0])
    return voice


class VoiceCatalog:
    """Caches the synthesizer's voice list, which engines often fill in late."""

    def __init__(self, synthesizer: Synthesizer) -> None:
        self._synthesizer = synthesizer
        self._voices: list[Voice] = []

    @property
    def voices(self) -> list[Voice]:
        return self._voices

    @property
    def ready(self) -> bool:
        return bool(self._voices)

    def refresh(self) -> list[Voice]:
        try:
            self._voices = list(self._synthesizer.voices())
        except Exception as exc:
            log.warning("event=voice_list_error error=%s", exc)
            self._voices = []
        return self._voices

    async def wait_ready(self, attempts: int, interval: float) -> list[Voice]:
        """Poll up to *attempts* times, *interval* seconds apart; never waits longer."""
        if self.refresh():
            return self._voices
        for attempt in range(1, attempts + 1):
            await asyncio.sleep(interval)
            if self.refresh():
                log.debug("event=voices_ready attempt=%d count=%d", attempt, len(self._voices))
                return self._voices
        log.warning("event=voices_unavailable attempts=%d", attempts)
        return self._voices
