"""
console.py — Voice Relay · Terminal client
==========================================
Runs the Turn Controller against the relay server with console stand-ins
for the speech engines:

  • typed lines are "heard" as final transcripts while the mic is on,
    and submitted as text otherwise
  • spoken replies are printed and take a short simulated playback time,
    so barge-in can be exercised by typing while the assistant "speaks"

Usage:
    voice-relay-console --url ws://127.0.0.1:3000/ws

Commands: /mic  /interrupt  /reset  /lang <tag>  /model [name]  /help  /quit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional, TextIO

from dotenv import load_dotenv

from .config import VoiceRelayConfig
from .controller import TurnController
from .events import (
    EventSink,
    InterruptRequested,
    LanguageSelected,
    MicToggled,
    ModelSwitchRequested,
    RecognizerEnded,
    RecognizerResult,
    RecognizerStarted,
    ResetRequested,
    ServerMessage,
    SpeechEnded,
    SpeechStarted,
    StartRequested,
    TextEntered,
    TransportStatus,
)
from .languages import LANGUAGE_NAMES, SUPPORTED_LANGUAGES
from .quota import QuotaGuard, QuotaStore
from .speech import RecognizerBusy, RecognizerIdle, RecognizerSettings, Utterance, Voice
from .surface import ConsoleSurface
from .transport import ClientTransport

log = logging.getLogger("voice_relay.console")

SECONDS_PER_WORD = 0.25

HELP = """\
  /mic            toggle listening (typed lines become speech)
  /interrupt      stop the assistant mid-sentence
  /reset          clear the conversation
  /lang <tag>     switch language, e.g. /lang hi-IN
  /model [name]   switch to a backup model
  /quit           exit"""


# ---------------------------------------------------------------------------
# Console speech engines
# ---------------------------------------------------------------------------

class StdinRecognizer:
    """Treats typed lines as final transcripts while started."""

    def __init__(self, settings: RecognizerSettings, sink: EventSink) -> None:
        self.settings = settings
        self._sink = sink
        self.running = False

    def start(self) -> None:
        if self.running:
            raise RecognizerBusy("recognizer already started")
        self.running = True
        self._sink(RecognizerStarted())

    def stop(self) -> None:
        if not self.running:
            raise RecognizerIdle("recognizer not started")
        self.running = False
        self._sink(RecognizerEnded())

    def hear(self, line: str) -> None:
        self._sink(RecognizerResult(final=line))


class Microphone:
    """Recognizer factory that remembers the live instance for the input loop."""

    def __init__(self) -> None:
        self.current: Optional[StdinRecognizer] = None

    def __call__(self, settings: RecognizerSettings, sink: EventSink) -> StdinRecognizer:
        self.current = StdinRecognizer(settings, sink)
        return self.current

    @property
    def listening(self) -> bool:
        return self.current is not None and self.current.running


class ConsoleSynthesizer:
    """Prints nothing itself (the surface shows the text); simulates playback time."""

    def __init__(self, sink: EventSink) -> None:
        self._sink = sink
        self._playback: Optional[asyncio.Task] = None

    def voices(self) -> list[Voice]:
        return [Voice(name=f"Console {name} Female", lang=tag) for tag, name in LANGUAGE_NAMES.items()]

    def speak(self, utterance: Utterance) -> None:
        self.cancel()
        self._playback = asyncio.create_task(self._play(utterance), name=f"utterance_{utterance.id}")

    async def _play(self, utterance: Utterance) -> None:
        duration = len(utterance.text.split()) * SECONDS_PER_WORD / max(utterance.rate, 0.1)
        self._sink(SpeechStarted(utterance.id))
        log.debug("event=playback_start utterance=%d duration=%.2fs", utterance.id, duration)
        await asyncio.sleep(duration)
        self._sink(SpeechEnded(utterance.id))

    def cancel(self) -> None:
        task = self._playback
        self._playback = None
        if task is not None and not task.done():
            task.cancel()


# ---------------------------------------------------------------------------
# Input loop
# ---------------------------------------------------------------------------

def handle_command(line: str, controller: TurnController, out: TextIO) -> bool:
    """Dispatch a slash command.  Returns False when the user asked to quit."""
    name, _, arg = line[1:].partition(" ")
    arg = arg.strip()

    if name in ("quit", "exit"):
        return False
    if name == "mic":
        controller.post(MicToggled())
    elif name == "interrupt":
        controller.post(InterruptRequested())
    elif name == "reset":
        controller.post(ResetRequested())
    elif name == "model":
        controller.post(ModelSwitchRequested(arg or None))
    elif name == "lang":
        if arg in SUPPORTED_LANGUAGES:
            controller.post(LanguageSelected(arg))
        else:
            print(f"  unknown language {arg!r}; pick one of: {', '.join(SUPPORTED_LANGUAGES)}", file=out)
    else:
        print(HELP, file=out)
    return True


async def read_console(controller: TurnController, mic: Microphone, stdin: TextIO, out: TextIO) -> None:
    """Feed stdin lines to the controller until EOF or /quit."""
    while True:
        line = await asyncio.to_thread(stdin.readline)
        if not line:
            log.info("event=console_eof")
            return
        line = line.strip()
        if not line:
            continue
        if line.startswith("/"):
            if not handle_command(line, controller, out):
                return
        elif mic.listening:
            mic.current.hear(line)
        else:
            controller.post(TextEntered(line))


async def run_console(
    config: VoiceRelayConfig,
    *,
    quota_path: Optional[str] = None,
    stdin: TextIO = sys.stdin,
    out: TextIO = sys.stdout,
) -> None:
    surface = ConsoleSurface(out)
    guard = QuotaGuard(
        QuotaStore(quota_path or config.quota.state_path),
        surface,
        models=[config.gateway.model, *config.gateway.backup_models],
        countdown_interval=config.quota.countdown_interval_sec,
    )
    mic = Microphone()

    controller: TurnController
    transport = ClientTransport(
        config.transport.url,
        on_message=lambda message: controller.post(ServerMessage(message)),
        on_status=lambda status: controller.post(TransportStatus(status)),
        reconnect_delay=config.transport.reconnect_delay_sec,
    )
    controller = TurnController(
        config,
        transport=transport,
        quota=guard,
        surface=surface,
        recognizer_factory=mic,
        synthesizer_factory=ConsoleSynthesizer,
    )

    surface.set_status("connecting", "Connecting...")
    # Queued first so the quota restore and greeting precede any server message
    controller.post(StartRequested())
    tasks = [
        asyncio.create_task(transport.run(), name="transport"),
        asyncio.create_task(controller.run(), name="turn_controller"),
    ]
    print("  Type to chat, /help for commands.", file=out, flush=True)
    try:
        await read_console(controller, mic, stdin, out)
    finally:
        await transport.close()
        await controller.shutdown()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("event=console_shutdown requests=%d interruptions=%d",
                 controller.requests_sent, controller.interruptions)


def main(argv: Optional[list[str]] = None) -> None:
    load_dotenv()

    parser = argparse.ArgumentParser(prog="voice-relay-console", description="Terminal client for the voice relay")
    parser.add_argument("--url", help="server websocket URL (default from config)")
    parser.add_argument("--config", help="JSON config file (default $VOICE_RELAY_CONFIG)")
    parser.add_argument("--quota-file", help="where the quota unlock deadline is persisted")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at INFO to stderr")
    args = parser.parse_args(argv)

    if os.getenv("VOICE_DEBUG"):
        level = logging.DEBUG
    elif args.verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )

    config = VoiceRelayConfig.load(Path(args.config)) if args.config else VoiceRelayConfig.from_env()
    if args.url:
        config.transport.url = args.url

    try:
        asyncio.run(run_console(config, quota_path=args.quota_file))
    except KeyboardInterrupt:
        print("\nShutdown requested")


if __name__ == "__main__":
    main()
