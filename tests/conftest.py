"""Shared fakes for the speech engines, transport, surface and Groq client."""

from __future__ import annotations

import asyncio
import random
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from voice_relay.config import BACKUP_MODEL, DEFAULT_MODEL, VoiceRelayConfig
from voice_relay.controller import TurnController
from voice_relay.events import (
    RecognizerEnded,
    RecognizerResult,
    RecognizerStarted,
    ServerMessage,
    SpeechEnded,
    SpeechStarted,
)
from voice_relay.protocol import parse_server_message
from voice_relay.quota import QuotaGuard, QuotaStore
from voice_relay.speech import RecognizerBusy, RecognizerIdle, Voice


class FakeRecognizer:
    def __init__(self, settings, sink) -> None:
        self.settings = settings
        self._sink = sink
        self.running = False
        self.starts = 0

    def start(self) -> None:
        if self.running:
            raise RecognizerBusy("already running")
        self.running = True
        self.starts += 1
        self._sink(RecognizerStarted())

    def stop(self) -> None:
        if not self.running:
            raise RecognizerIdle("not running")
        self.running = False
        self._sink(RecognizerEnded())


class FakeSynthesizer:
    VOICES = [
        Voice("Google UK English Male", "en-GB"),
        Voice("Google US English Female", "en-US"),
        Voice("Google हिन्दी", "hi-IN"),
    ]

    def __init__(self, sink) -> None:
        self._sink = sink
        self.spoken: list = []
        self.cancels = 0
        self.auto_start = True

    def voices(self) -> list[Voice]:
        return list(self.VOICES)

    def speak(self, utterance) -> None:
        self.spoken.append(utterance)
        if self.auto_start:
            self._sink(SpeechStarted(utterance.id))

    def cancel(self) -> None:
        self.cancels += 1

    def start_current(self) -> None:
        self._sink(SpeechStarted(self.spoken[-1].id))

    def finish(self, utterance_id: Optional[int] = None) -> None:
        self._sink(SpeechEnded(self.spoken[-1].id if utterance_id is None else utterance_id))

    @property
    def last_text(self) -> Optional[str]:
        return self.spoken[-1].text if self.spoken else None


class FakeTransport:
    def __init__(self) -> None:
        self.connected = True
        self.fail = False
        self.sent: list[dict] = []

    async def send(self, message: dict) -> bool:
        if not self.connected or self.fail:
            return False
        self.sent.append(message)
        return True

    def of_type(self, kind: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == kind]

    @property
    def texts(self) -> list[str]:
        return [m["text"] for m in self.of_type("text")]


class RecordingSurface:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []
        self.transcripts: list[tuple[str, bool]] = []
        self.statuses: list[tuple[str, str]] = []
        self.languages: list[str] = []
        self.input_enabled = True
        self.banner: Optional[dict] = None
        self.countdowns: list[int] = []
        self.banner_hidden = 0

    def show_message(self, sender: str, text: str, kind: str) -> None:
        self.messages.append((sender, text, kind))

    def show_transcript(self, text: str, final: bool) -> None:
        self.transcripts.append((text, final))

    def set_status(self, status: str, text: str) -> None:
        self.statuses.append((status, text))

    def set_input_enabled(self, enabled: bool) -> None:
        self.input_enabled = enabled

    def set_language(self, language: str) -> None:
        self.languages.append(language)

    def show_quota_banner(self, reason, remaining_ms, models) -> None:
        self.banner = {"reason": reason, "remaining_ms": remaining_ms, "models": list(models)}

    def update_quota_countdown(self, remaining_ms: int) -> None:
        self.countdowns.append(remaining_ms)

    def hide_quota_banner(self) -> None:
        self.banner = None
        self.banner_hidden += 1

    def texts(self, kind: Optional[str] = None) -> list[str]:
        return [text for _, text, k in self.messages if kind is None or k == kind]


def fake_groq_client(content: str = "Sure thing.", error: Optional[BaseException] = None) -> Any:
    calls: list[dict] = []

    async def create(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        message = SimpleNamespace(content=content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)), calls=calls)


@pytest.fixture
def relay_config(tmp_path) -> VoiceRelayConfig:
    config = VoiceRelayConfig()
    config.persona.humanize = False
    config.turn.settle_delay_sec = 0.01
    config.turn.restart_listen_sec = 0.01
    config.turn.language_relisten_sec = 0.01
    config.speech.voice_attempts = 1
    config.speech.voice_interval_sec = 0.01
    config.quota.state_path = str(tmp_path / "quota.json")
    config.quota.countdown_interval_sec = 0.05
    return config


class Harness:
    """A running TurnController wired to fakes."""

    def __init__(self, config: VoiceRelayConfig) -> None:
        self.config = config
        self.transport = FakeTransport()
        self.surface = RecordingSurface()
        self.store = QuotaStore(config.quota.state_path)
        self.guard = QuotaGuard(
            self.store,
            self.surface,
            models=[DEFAULT_MODEL, BACKUP_MODEL],
            countdown_interval=config.quota.countdown_interval_sec,
        )
        self.recognizers: list[FakeRecognizer] = []
        self.synth: Optional[FakeSynthesizer] = None

        def recognizer_factory(settings, sink):
            recognizer = FakeRecognizer(settings, sink)
            self.recognizers.append(recognizer)
            return recognizer

        def synthesizer_factory(sink):
            self.synth = FakeSynthesizer(sink)
            return self.synth

        self.controller = TurnController(
            config,
            transport=self.transport,
            quota=self.guard,
            surface=self.surface,
            recognizer_factory=recognizer_factory,
            synthesizer_factory=synthesizer_factory,
            rng=random.Random(7),
        )
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "Harness":
        self._task = asyncio.create_task(self.controller.run())
        return self

    async def __aexit__(self, *exc) -> None:
        await self.controller.shutdown()
        self.guard.unlock(reason="teardown")
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)

    @property
    def recognizer(self) -> FakeRecognizer:
        return self.recognizers[-1]

    async def post(self, *events: Any) -> None:
        for event in events:
            self.controller.post(event)
        await self.controller.wait_idle()

    async def server(self, frame: dict) -> None:
        await self.post(ServerMessage(parse_server_message(frame)))

    async def say(self, text: str) -> None:
        await self.post(RecognizerResult(final=text))

    async def settle(self, seconds: float = 0.05) -> None:
        await asyncio.sleep(seconds)
        await self.controller.wait_idle()

    async def finish_speech(self) -> None:
        self.synth.finish()
        await self.controller.wait_idle()


@pytest.fixture
async def harness(relay_config):
    async with Harness(relay_config) as h:
        yield h
