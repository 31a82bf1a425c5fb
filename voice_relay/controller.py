"""
controller.py — Voice Relay · Turn Controller
=============================================
Client-side turn-taking state machine.

    IDLE ──mic / active──▶ LISTENING ──final transcript──▶ THINKING
      ▲                        ▲                              │
      │                        │                          response
      │                  utterance ends                       ▼
      └──── reset ─────────────┴──────────────────────── SPEAKING
                               ▲                              │
                               └──── INTERRUPTED ◀── barge-in ┘

Every input (recognizer, synthesizer, transport, timers, user) arrives as
an events.py event on one asyncio.Queue and is handled to completion
before the next one.

Request pipe
------------
At most one request in flight (`busy`).  A submission while busy goes to
the single `pending_text` slot (last writer wins) and is flushed after a
short settle delay once `processing_end` arrives.  Text equal to the last
*sent* text is dropped.  A RateLimited error defers exactly one flush to
the server's retry-after; a quota lock blocks all sends.

Barge-in
--------
Armed when the current utterance reports it has started, disarmed when it
ends, fails or is cancelled.  While SPEAKING and armed, an interim chunk
longer than one character or any non-empty final cancels synthesis, sends
one `interrupt`, and returns to LISTENING with the recognizer still running.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional, Protocol

from .config import VoiceRelayConfig
from .events import (
    FlushPending,
    IdleCheck,
    InterruptRequested,
    LanguageSelected,
    MicToggled,
    ModelSwitchRequested,
    QuotaUnlocked,
    RecognizerEnded,
    RecognizerFailed,
    RecognizerResult,
    RecognizerStarted,
    ResetRequested,
    RestartListening,
    ServerMessage,
    SpeechEnded,
    SpeechFailed,
    SpeechStarted,
    StartRequested,
    TextEntered,
    TransportStatus,
)
from .gateway import next_local_midnight_ms
from .languages import announcement, detect_language_change, display_name
from .persona import (
    CONNECTION_ERROR,
    CONNECTION_TROUBLE,
    QUEUED_NOTICE,
    QUOTA_LOCKED_NOTICE,
    friendly_error,
    humanize_response,
    idle_prompts,
    recognizer_error_message,
    speech_prosody,
    welcome_messages,
)
from .protocol import (
    ConnectionEstablished,
    ContextTurn,
    ErrorMessage,
    InterruptRequest,
    Interrupted,
    ModelSwitched,
    ProcessingEnd,
    ProcessingStart,
    QuotaExceeded,
    ResetComplete,
    ResetRequest,
    Response,
    SwitchModelRequest,
    TextRequest,
    dump,
)
from .quota import QuotaGuard
from .speech import (
    Recognizer,
    RecognizerBusy,
    RecognizerFactory,
    RecognizerSettings,
    SynthesizerFactory,
    Utterance,
    VoiceCatalog,
    pick_voice,
)
from .surface import Surface

log = logging.getLogger("voice_relay.controller")


class TurnState(Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    THINKING = "THINKING"
    SPEAKING = "SPEAKING"
    INTERRUPTED = "INTERRUPTED"


_STATUS: dict[TurnState, tuple[str, str]] = {
    TurnState.IDLE:        ("connected", "Ready"),
    TurnState.LISTENING:   ("listening", "Listening..."),
    TurnState.THINKING:    ("processing", "Thinking..."),
    TurnState.SPEAKING:    ("speaking", "Speaking..."),
    TurnState.INTERRUPTED: ("interrupted", "Listening to you..."),
}

# Recognizer failures that retrying will not fix
_FATAL_RECOGNIZER_ERRORS = frozenset({"audio-capture", "not-allowed"})


class Channel(Protocol):
    """What the controller needs from the transport."""

    @property
    def connected(self) -> bool: ...

    async def send(self, message: dict) -> bool: ...


# ---------------------------------------------------------------------------
# Conversation context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Turn:
    role: str
    text: str
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))


class ConversationContext:
    """Most recent turns, oldest evicted first.  In memory only."""

    def __init__(self, size: int = 10) -> None:
        self._turns: deque[Turn] = deque(maxlen=size)

    def add(self, role: str, text: str) -> Turn:
        turn = Turn(role=role, text=text)
        self._turns.append(turn)
        return turn

    def window(self, size: int) -> list[Turn]:
        """Trailing *size* turns."""
        if size <= 0:
            return []
        return list(self._turns)[-size:]

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))


# ---------------------------------------------------------------------------
# Turn Controller
# ---------------------------------------------------------------------------

class TurnController:
    def __init__(
        self,
        config: VoiceRelayConfig,
        *,
        transport: Channel,
        quota: QuotaGuard,
        surface: Surface,
        recognizer_factory: RecognizerFactory,
        synthesizer_factory: SynthesizerFactory,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._turn_cfg = config.turn
        self._persona = config.persona
        self._transport = transport
        self._quota = quota
        self._surface = surface
        self._recognizer_factory = recognizer_factory
        self._rng = rng or random.Random()
        self._clock = clock

        self._events: asyncio.Queue = asyncio.Queue()
        self._timers: dict[str, asyncio.Task] = {}

        self._synth = synthesizer_factory(self.post)
        self._voices = VoiceCatalog(self._synth)
        self._recognizer: Optional[Recognizer] = None
        self._listening = False

        # Conversation
        self.state = TurnState.IDLE
        self.language = self._turn_cfg.default_language
        self.conversation_active = False
        self.context = ConversationContext(self._turn_cfg.context_size)
        self.connection_id: Optional[str] = None
        self._last_user_speech = self._clock()

        # Request pipe
        self.busy = False
        self.pending_text: Optional[str] = None
        self.last_sent_text: Optional[str] = None
        self._pending_is_retry = False
        self._in_flight_text: Optional[str] = None
        self._in_flight_retry = False
        self._retry_scheduled = False
        # A request sent before a reset that the server is still working on
        self._stale_in_flight = False

        # Synthesis / barge-in
        self.barge_in_armed = False
        self._utterance_seq = 0
        self._current_utterance: Optional[int] = None

        # Counters
        self.requests_sent = 0
        self.interruptions = 0

        quota.on_lock = self._on_quota_lock
        quota.on_unlock = lambda: self.post(QuotaUnlocked())

    # -----------------------------------------------------------------------
    # Event queue
    # -----------------------------------------------------------------------

    def post(self, event: Any) -> None:
        """Enqueue *event*.  Safe to call from any callback on the loop."""
        self._events.put_nowait(event)

    async def run(self) -> None:
        """Handle queued events one at a time, forever."""
        while True:
            event = await self._events.get()
            try:
                await self.handle(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("event=handler_error kind=%s error=%s", type(event).__name__, exc, exc_info=True)
                self._settle_state()
            finally:
                self._events.task_done()

    async def wait_idle(self) -> None:
        """Block until every queued event has been handled."""
        await self._events.join()

    async def start(self) -> None:
        """Restore a persisted quota lock, warm the voice list, greet.

        Runs as the handler of StartRequested once the event loop is up.
        """
        self._quota.restore()
        await self._voices.wait_ready(self._config.speech.voice_attempts, self._config.speech.voice_interval_sec)
        welcome = self._rng.choice(welcome_messages(self._persona))
        self._surface.show_message(self._persona.name, welcome, "assistant")
        if not self._quota.locked:
            await self._speak(welcome)

    async def shutdown(self) -> None:
        for name in list(self._timers):
            self._cancel_timer(name)
        self._cancel_speech()
        self._stop_listening()

    async def handle(self, event: Any) -> None:
        """Apply one event to the state machine."""
        # ── recognizer ─────────────────────────────────────────────────────
        if isinstance(event, RecognizerResult):
            await self._on_recognizer_result(event)
        elif isinstance(event, RecognizerStarted):
            self._on_recognizer_started()
        elif isinstance(event, RecognizerEnded):
            self._on_recognizer_ended()
        elif isinstance(event, RecognizerFailed):
            await self._on_recognizer_failed(event)

        # ── synthesizer ────────────────────────────────────────────────────
        elif isinstance(event, SpeechStarted):
            self._on_speech_started(event)
        elif isinstance(event, (SpeechEnded, SpeechFailed)):
            self._on_speech_finished(event)

        # ── transport ──────────────────────────────────────────────────────
        elif isinstance(event, ServerMessage):
            await self._on_server_message(event.message)
        elif isinstance(event, TransportStatus):
            self._on_transport_status(event.status)

        # ── user ───────────────────────────────────────────────────────────
        elif isinstance(event, MicToggled):
            await self._on_mic_toggled()
        elif isinstance(event, TextEntered):
            await self._on_text_entered(event.text)
        elif isinstance(event, LanguageSelected):
            await self._change_language(event.language)
        elif isinstance(event, InterruptRequested):
            await self._barge_in(reason="manual")
        elif isinstance(event, ResetRequested):
            await self._reset()
        elif isinstance(event, ModelSwitchRequested):
            await self._request_model_switch(event.model)
        elif isinstance(event, StartRequested):
            await self.start()

        # ── timers ─────────────────────────────────────────────────────────
        elif isinstance(event, FlushPending):
            await self._flush_pending(event.reason)
        elif isinstance(event, IdleCheck):
            await self._on_idle_check()
        elif isinstance(event, RestartListening):
            self._on_restart_listening()
        elif isinstance(event, QuotaUnlocked):
            await self._on_quota_unlocked()
        else:
            log.warning("event=unknown_event kind=%s", type(event).__name__)

    # -----------------------------------------------------------------------
    # State and timers
    # -----------------------------------------------------------------------

    def _set_state(self, new_state: TurnState) -> None:
        prev = self.state
        self.state = new_state
        if prev is not new_state:
            log.info("event=state_change from=%s to=%s", prev.value, new_state.value)
        status, text = _STATUS[new_state]
        self._surface.set_status(status, text)

    def _settle_state(self) -> None:
        """Back to a responsive resting state: LISTENING if the conversation is live."""
        if self.conversation_active and not self._quota.locked:
            self._set_state(TurnState.LISTENING)
            self._start_listening()
            self._arm_idle_check()
        else:
            self._set_state(TurnState.IDLE)

    def _schedule(self, name: str, delay: float, event: Any) -> None:
        self._cancel_timer(name)
        self._timers[name] = asyncio.create_task(
            self._post_later(delay, event),
            name=f"turn_timer_{name}",
        )

    async def _post_later(self, delay: float, event: Any) -> None:
        await asyncio.sleep(delay)
        self.post(event)

    def _cancel_timer(self, name: str) -> None:
        task = self._timers.pop(name, None)
        if task is not None and not task.done():
            task.cancel()

    def _arm_idle_check(self, delay: Optional[float] = None) -> None:
        if not self.conversation_active:
            return
        self._schedule("idle", self._turn_cfg.idle_prompt_sec if delay is None else delay, IdleCheck())

    # -----------------------------------------------------------------------
    # Recognizer ownership
    # -----------------------------------------------------------------------

    def _build_recognizer(self) -> None:
        settings = RecognizerSettings(language=self.language)
        self._recognizer = self._recognizer_factory(settings, self.post)
        self._listening = False
        log.info("event=recognizer_built language=%s", self.language)

    def _start_listening(self) -> None:
        if self._quota.locked:
            log.debug("event=listen_skipped reason=quota_locked")
            return
        if self._recognizer is None:
            self._build_recognizer()
        if self._listening:
            return
        try:
            self._recognizer.start()
        except RecognizerBusy:
            log.debug("event=recognizer_already_running")
        except Exception as exc:
            log.error("event=recognizer_start_failed error=%s", exc)
            return
        self._listening = True
        if self.state in (TurnState.IDLE, TurnState.INTERRUPTED):
            self._set_state(TurnState.LISTENING)

    def _stop_listening(self) -> None:
        if self._recognizer is not None:
            try:
                self._recognizer.stop()
            except Exception as exc:
                # Best effort: stopping a recognizer that is not running may raise
                log.debug("event=recognizer_stop_ignored error=%s", exc)
        self._listening = False

    def _on_recognizer_started(self) -> None:
        self._listening = True
        if self.state in (TurnState.IDLE, TurnState.INTERRUPTED):
            self._set_state(TurnState.LISTENING)
        self._cancel_timer("idle")
        self._arm_idle_check()

    def _on_recognizer_ended(self) -> None:
        self._listening = False
        log.info("event=recognizer_ended active=%s state=%s", self.conversation_active, self.state.value)
        if self.conversation_active and self.state is not TurnState.SPEAKING and not self._quota.locked:
            self._schedule("restart", self._turn_cfg.restart_listen_sec, RestartListening())
            self._arm_idle_check()
        elif self.state in (TurnState.LISTENING, TurnState.INTERRUPTED):
            self._set_state(TurnState.IDLE)

    def _on_restart_listening(self) -> None:
        if self.conversation_active and not self._quota.locked:
            self._start_listening()

    async def _on_recognizer_failed(self, event: RecognizerFailed) -> None:
        self._listening = False
        log.warning("event=recognizer_error kind=%s", event.kind)

        if event.kind == "no-speech":
            silent_for = self._clock() - self._last_user_speech
            if self.conversation_active and silent_for > self._turn_cfg.no_speech_prompt_sec:
                await self._offer_help()
            return

        if event.kind in _FATAL_RECOGNIZER_ERRORS:
            self.conversation_active = False
        message = recognizer_error_message(event.kind)
        self._surface.show_message(self._persona.name, message, "assistant")
        await self._speak(message)

    async def _on_recognizer_result(self, event: RecognizerResult) -> None:
        interim = event.interim.strip()
        final = event.final.strip()

        # Barge-in is checked first so synthesis stops before any transcript is used
        if (
            self.state is TurnState.SPEAKING
            and self.barge_in_armed
            and (len(interim) > 1 or final)
        ):
            log.info("event=barge_in_detected interim_len=%d final=%s", len(interim), bool(final))
            await self._barge_in(reason="speech")
            self._last_user_speech = self._clock()
            if not final:
                self._surface.show_transcript(interim, False)
                return

        if interim and self.state is not TurnState.SPEAKING:
            self._last_user_speech = self._clock()
            self._surface.show_transcript(interim, False)

        if final:
            log.info("event=transcript_final text=%.80s", final)
            self._last_user_speech = self._clock()
            self._surface.show_transcript(final, True)
            self._surface.show_message("You", final, "user")
            await self._process_user_input(final)

    # -----------------------------------------------------------------------
    # Synthesis
    # -----------------------------------------------------------------------

    def _cancel_speech(self) -> None:
        try:
            self._synth.cancel()
        except Exception as exc:
            log.warning("event=synth_cancel_failed error=%s", exc)
        self.barge_in_armed = False
        self._current_utterance = None

    async def _speak(self, text: str) -> None:
        # One utterance at a time: always clear the queue first
        self._cancel_speech()

        voices = await self._voices.wait_ready(
            self._config.speech.voice_attempts,
            self._config.speech.voice_interval_sec,
        )
        voice = pick_voice(voices, self.language)
        rate, pitch = speech_prosody(self._persona)

        self._utterance_seq += 1
        utterance = Utterance(
            id=self._utterance_seq,
            text=text,
            language=self.language,
            voice=voice,
            rate=rate,
            pitch=pitch,
            volume=self._config.speech.volume,
        )
        self._current_utterance = utterance.id
        self._cancel_timer("idle")
        self._set_state(TurnState.SPEAKING)

        # The recognizer stays on while speaking so the user can barge in
        if self.conversation_active:
            self._start_listening()

        log.info("event=speak utterance=%d language=%s voice=%s chars=%d",
                 utterance.id, self.language, voice.name if voice else None, len(text))
        try:
            self._synth.speak(utterance)
        except Exception as exc:
            log.error("event=synth_speak_failed utterance=%d error=%s", utterance.id, exc)
            self._current_utterance = None
            self._settle_state()

    def _on_speech_started(self, event: SpeechStarted) -> None:
        if event.utterance_id != self._current_utterance:
            log.debug("event=stale_speech_start utterance=%d", event.utterance_id)
            return
        self.barge_in_armed = True
        log.info("event=barge_in_armed utterance=%d", event.utterance_id)

    def _on_speech_finished(self, event: Any) -> None:
        if event.utterance_id != self._current_utterance:
            log.debug("event=stale_speech_end utterance=%d", event.utterance_id)
            return
        if isinstance(event, SpeechFailed):
            log.warning("event=speech_failed utterance=%d error=%s", event.utterance_id, event.error)
        self._current_utterance = None
        self.barge_in_armed = False
        if self.state is TurnState.SPEAKING:
            if self.conversation_active and not self._quota.locked:
                self._set_state(TurnState.LISTENING)
                self._schedule("restart", self._turn_cfg.restart_listen_sec, RestartListening())
                self._arm_idle_check()
            else:
                self._set_state(TurnState.IDLE)

    async def _barge_in(self, reason: str) -> bool:
        if self.state is not TurnState.SPEAKING:
            return False
        self._cancel_speech()
        self._set_state(TurnState.INTERRUPTED)
        self.interruptions += 1
        log.info("event=barge_in reason=%s count=%d", reason, self.interruptions)

        await self._transport.send(dump(InterruptRequest()))

        self.conversation_active = True
        self._start_listening()
        self._set_state(TurnState.LISTENING)
        self._arm_idle_check()
        return True

    async def _offer_help(self) -> None:
        prompt = self._rng.choice(idle_prompts(self._persona))
        log.info("event=proactive_prompt silent_sec=%.1f", self._clock() - self._last_user_speech)
        self._surface.show_message(self._persona.name, prompt, "assistant")
        await self._speak(prompt)

    async def _on_idle_check(self) -> None:
        if (
            not self.conversation_active
            or self.state is TurnState.SPEAKING
            or self.busy
            or self._quota.locked
        ):
            return
        silent_for = self._clock() - self._last_user_speech
        if silent_for >= self._turn_cfg.idle_prompt_sec:
            await self._offer_help()
        else:
            self._arm_idle_check(self._turn_cfg.idle_prompt_sec - silent_for)

    # -----------------------------------------------------------------------
    # User input
    # -----------------------------------------------------------------------

    async def _on_mic_toggled(self) -> None:
        if self._quota.locked:
            self._surface.show_message(self._persona.name, QUOTA_LOCKED_NOTICE, "system")
            return
        if self.state is TurnState.SPEAKING:
            await self._barge_in(reason="manual")
        elif self._listening:
            self.conversation_active = False
            self._cancel_timer("idle")
            self._cancel_timer("restart")
            self._stop_listening()
            if self.state in (TurnState.LISTENING, TurnState.INTERRUPTED):
                self._set_state(TurnState.IDLE)
        else:
            self.conversation_active = True
            self._start_listening()
            self._arm_idle_check()

    async def _on_text_entered(self, text: str) -> None:
        text = (text or "").strip()
        if not text:
            return
        if self._quota.locked:
            self._surface.show_message(self._persona.name, QUOTA_LOCKED_NOTICE, "system")
            return
        if not self._transport.connected:
            self._surface.show_message(self._persona.name, CONNECTION_TROUBLE, "assistant")
            return
        self._last_user_speech = self._clock()
        self._surface.show_message("You", text, "user")
        await self._process_user_input(text)

    async def _process_user_input(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        self.context.add("user", text)
        self.conversation_active = True

        target = detect_language_change(text)
        if target is not None:
            await self._change_language(target)
            return

        await self._submit(text)

    async def _change_language(self, language: str) -> None:
        previous = self.language
        self.language = language
        self._surface.set_language(language)
        log.info("event=language_change from=%s to=%s", previous, language)

        # Single recognizer instance: tear down, rebuild with the new tag
        self._stop_listening()
        self._recognizer = None
        self._build_recognizer()

        self._surface.show_message(
            "System", f"Changed from {display_name(previous)} to {display_name(language)}", "system",
        )
        self.conversation_active = True
        await self._speak(announcement(language))
        self._schedule("restart", self._turn_cfg.language_relisten_sec, RestartListening())

    async def _reset(self) -> None:
        log.info("event=reset context=%d pending=%s", len(self.context), self.pending_text is not None)
        for name in list(self._timers):
            self._cancel_timer(name)
        self._cancel_speech()
        self._stop_listening()

        self.conversation_active = False
        self.context.clear()
        self.pending_text = None
        self._pending_is_retry = False
        self.last_sent_text = None
        # The server keeps working on an in-flight request and drops texts until its processing_end
        self._stale_in_flight = self.busy
        self.busy = False
        self._in_flight_text = None
        self._in_flight_retry = False
        self._retry_scheduled = False

        await self._transport.send(dump(ResetRequest()))
        self._set_state(TurnState.IDLE)
        welcome = self._rng.choice(welcome_messages(self._persona))
        self._surface.show_message(self._persona.name, welcome, "assistant")

    async def _request_model_switch(self, model: Optional[str]) -> None:
        sent = await self._transport.send(dump(SwitchModelRequest(model=model)))
        if not sent:
            self._surface.show_message(self._persona.name, CONNECTION_TROUBLE, "assistant")

    # -----------------------------------------------------------------------
    # Request pipe
    # -----------------------------------------------------------------------

    async def _submit(self, text: str) -> None:
        if self._quota.locked:
            log.info("event=submit_refused reason=quota_locked")
            self._surface.show_message(self._persona.name, QUOTA_LOCKED_NOTICE, "system")
            return
        if text == self.last_sent_text:
            log.info("event=submit_deduplicated text=%.60s", text)
            return
        if self.busy or self._stale_in_flight:
            replaced = self.pending_text is not None
            self.pending_text = text
            self._pending_is_retry = False
            log.info("event=submit_queued replaced=%s text=%.60s", replaced, text)
            self._surface.show_message(self._persona.name, QUEUED_NOTICE, "system")
            return
        await self._send_request(text)

    async def _send_request(self, text: str, retry: bool = False) -> bool:
        window = self.context.window(self._turn_cfg.context_window)
        request = TextRequest(
            text=text,
            language=self.language,
            context=[ContextTurn(role=t.role, text=t.text, timestamp=t.timestamp) for t in window],
        )
        if not await self._transport.send(dump(request)):
            # Keep it for the reconnect; the caller is not blocked
            self.pending_text = text
            self._pending_is_retry = retry
            self._surface.show_message(self._persona.name, CONNECTION_TROUBLE, "assistant")
            if self.state is not TurnState.SPEAKING:
                self._settle_state()
            self._surface.set_status("error", "Connection error. Reconnecting...")
            return False

        self.busy = True
        self.last_sent_text = text
        self._in_flight_text = text
        self._in_flight_retry = retry
        self.requests_sent += 1
        log.info("event=request_sent n=%d retry=%s language=%s context=%d",
                 self.requests_sent, retry, self.language, len(window))
        if self.state is not TurnState.SPEAKING:
            self._set_state(TurnState.THINKING)
        return True

    def _schedule_flush(self, reason: str, delay: float) -> None:
        if self._retry_scheduled and reason != "retry":
            log.debug("event=flush_deferred reason=%s retry_pending=true", reason)
            return
        self._schedule("flush", delay, FlushPending(reason))

    async def _flush_pending(self, reason: str) -> None:
        if reason == "retry":
            self._retry_scheduled = False
        elif self._retry_scheduled:
            return
        if self.pending_text is None:
            return
        if self._quota.locked or self.busy or self._stale_in_flight or not self._transport.connected:
            log.debug("event=flush_skipped reason=%s locked=%s busy=%s stale=%s connected=%s",
                      reason, self._quota.locked, self.busy, self._stale_in_flight, self._transport.connected)
            return

        text, retry = self.pending_text, self._pending_is_retry
        self.pending_text = None
        self._pending_is_retry = False
        log.info("event=flush_pending reason=%s retry=%s text=%.60s", reason, retry, text)
        if text == self.last_sent_text and not retry:
            log.info("event=submit_deduplicated text=%.60s", text)
            return
        await self._send_request(text, retry=retry)

    def _schedule_retry(self, failed_text: Optional[str], delay_ms: int) -> None:
        # The failed text takes the empty slot, but an automatic retry is never retried again
        if self.pending_text is None and failed_text and not self._in_flight_retry:
            self.pending_text = failed_text
            self._pending_is_retry = True
        if self.pending_text is None:
            return
        self._retry_scheduled = True
        self._schedule("flush", delay_ms / 1000.0, FlushPending("retry"))
        log.info("event=retry_scheduled delay_ms=%d text=%.60s", delay_ms, self.pending_text)

    # -----------------------------------------------------------------------
    # Server messages
    # -----------------------------------------------------------------------

    async def _on_server_message(self, message: Any) -> None:
        if self._stale_in_flight and isinstance(message, (Response, ErrorMessage)):
            log.info("event=response_discarded reason=before_reset kind=%s", message.type)
            return

        if isinstance(message, ConnectionEstablished):
            self.connection_id = message.connection_id
            log.info("event=connection_established conn=%s", message.connection_id)
            if self.pending_text is not None and not self.busy:
                self._schedule_flush("reconnect", self._turn_cfg.settle_delay_sec)

        elif isinstance(message, ProcessingStart):
            if self.state is not TurnState.SPEAKING:
                self._surface.set_status("processing", "Thinking...")

        elif isinstance(message, Response):
            await self._on_response(message.text)

        elif isinstance(message, ErrorMessage):
            await self._on_error(message)

        elif isinstance(message, QuotaExceeded):
            self._on_quota_exceeded(message.model, message.resets_at_ms)

        elif isinstance(message, ProcessingEnd):
            self._on_processing_end()

        elif isinstance(message, ModelSwitched):
            log.info("event=model_switched model=%s", message.model)
            self._surface.show_message("System", f"Switched to model {message.model}", "system")
            # New model, new quota bucket
            self._quota.unlock(reason="model_switched")

        elif isinstance(message, Interrupted):
            log.info("event=server_ack_interrupt")
            if self.state is not TurnState.SPEAKING:
                self._surface.set_status("connected", "I heard you!")
                if self.conversation_active:
                    self._schedule("restart", self._turn_cfg.restart_listen_sec, RestartListening())

        elif isinstance(message, ResetComplete):
            log.info("event=server_reset_complete")

    async def _on_response(self, text: str) -> None:
        if not self.busy:
            log.info("event=response_discarded reason=not_in_flight")
            return
        self.context.add("assistant", text)
        spoken = humanize_response(text, self._persona, self._rng)
        self._surface.show_message(self._persona.name, spoken, "assistant")
        await self._speak(spoken)

    async def _on_error(self, message: ErrorMessage) -> None:
        code = message.code
        lowered = (message.message or "").lower()
        if code is None:
            # Structured code missing: fall back to sniffing the text
            if "daily quota" in lowered or "per day" in lowered:
                code = "DailyQuotaExceeded"
            elif "rate limit" in lowered:
                code = "RateLimited"
        log.warning("event=server_error code=%s retry_after_ms=%s message=%.120s",
                    code, message.retry_after_ms, message.message)

        failed_text = self._in_flight_text
        self.last_sent_text = None

        if code == "DailyQuotaExceeded":
            self._on_quota_exceeded(None, next_local_midnight_ms())
            return

        if code == "RateLimited":
            delay = message.retry_after_ms
            if delay is None:
                delay = self._config.gateway.default_retry_after_ms
            self._schedule_retry(failed_text, delay)

        friendly = friendly_error(message.message)
        self._surface.show_message(self._persona.name, friendly, "assistant")
        await self._speak(friendly)

    def _on_quota_exceeded(self, model: Optional[str], resets_at_ms: int) -> None:
        self.last_sent_text = None
        reason = f"Daily quota reached for {model}" if model else "Daily quota reached"
        if self._quota.lock(reason, resets_at_ms, model):
            self._surface.show_message(self._persona.name, QUOTA_LOCKED_NOTICE, "system")

    def _on_processing_end(self) -> None:
        if self._stale_in_flight:
            log.info("event=stale_request_ended pending=%s", self.pending_text is not None)
            self._stale_in_flight = False
        self.busy = False
        self._in_flight_text = None
        self._in_flight_retry = False
        if self.state is TurnState.THINKING:
            self._settle_state()
        if self.pending_text is not None and not self._quota.locked:
            self._schedule_flush("settle", self._turn_cfg.settle_delay_sec)

    def _on_transport_status(self, status: str) -> None:
        if status == "connected":
            self._surface.set_status("connected", "Connected")
            return
        if status != "disconnected":
            return

        # The in-flight request died with the socket; hold it for the reconnect
        if self.busy:
            if self.pending_text is None and self._in_flight_text:
                self.pending_text = self._in_flight_text
                self._pending_is_retry = self._in_flight_retry
            self.busy = False
            self._in_flight_text = None
            self.last_sent_text = None
        # A new socket gets a new server session
        self._stale_in_flight = False
        if self.state is TurnState.THINKING:
            self._settle_state()
        self._surface.set_status("error", "Disconnected")
        self._surface.show_message(self._persona.name, CONNECTION_ERROR, "assistant")

    # -----------------------------------------------------------------------
    # Quota
    # -----------------------------------------------------------------------

    def _on_quota_lock(self) -> None:
        self._cancel_speech()
        self._stop_listening()
        self._cancel_timer("flush")
        self._cancel_timer("idle")
        self._cancel_timer("restart")
        # The pending slot survives the lock and is flushed on unlock
        self._retry_scheduled = False
        self._set_state(TurnState.IDLE)

    async def _on_quota_unlocked(self) -> None:
        log.info("event=quota_released active=%s", self.conversation_active)
        if self.conversation_active:
            self._settle_state()
        if self.pending_text is not None and not self.busy:
            self._schedule_flush("unlock", self._turn_cfg.settle_delay_sec)
