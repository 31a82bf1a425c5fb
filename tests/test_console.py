import asyncio
import io

import pytest

from voice_relay.console import (
    ConsoleSynthesizer,
    Microphone,
    StdinRecognizer,
    handle_command,
    read_console,
)
from voice_relay.events import (
    LanguageSelected,
    MicToggled,
    ModelSwitchRequested,
    RecognizerEnded,
    RecognizerResult,
    RecognizerStarted,
    ResetRequested,
    SpeechEnded,
    SpeechStarted,
    TextEntered,
)
from voice_relay.speech import RecognizerBusy, RecognizerIdle, RecognizerSettings, Utterance


class PostRecorder:
    def __init__(self) -> None:
        self.events = []

    def post(self, event) -> None:
        self.events.append(event)


def test_commands_post_events():
    controller, out = PostRecorder(), io.StringIO()

    assert handle_command("/mic", controller, out)
    assert handle_command("/reset", controller, out)
    assert handle_command("/model gemma2-9b-it", controller, out)
    assert handle_command("/lang ta-IN", controller, out)
    assert handle_command("/lang xx", controller, out)
    assert not handle_command("/quit", controller, out)

    assert controller.events == [
        MicToggled(),
        ResetRequested(),
        ModelSwitchRequested("gemma2-9b-it"),
        LanguageSelected("ta-IN"),
    ]
    assert "unknown language" in out.getvalue()


async def test_typed_lines_are_text_until_the_mic_is_on():
    controller, mic = PostRecorder(), Microphone()
    recognizer = mic(RecognizerSettings(language="en-US"), controller.post)

    stdin = io.StringIO("hello there\n\n/quit\nnever read\n")
    await read_console(controller, mic, stdin, io.StringIO())
    assert controller.events == [TextEntered("hello there")]

    recognizer.start()
    stdin = io.StringIO("what about RV1\n")
    await read_console(controller, mic, stdin, io.StringIO())
    assert controller.events[-2:] == [RecognizerStarted(), RecognizerResult(final="what about RV1")]


def test_stdin_recognizer_rejects_double_start_and_stop():
    events = []
    recognizer = StdinRecognizer(RecognizerSettings(language="en-US"), events.append)

    with pytest.raises(RecognizerIdle):
        recognizer.stop()
    recognizer.start()
    with pytest.raises(RecognizerBusy):
        recognizer.start()
    recognizer.stop()

    assert events == [RecognizerStarted(), RecognizerEnded()]


async def test_console_synthesizer_reports_playback():
    events = []
    synth = ConsoleSynthesizer(events.append)
    assert any(v.lang == "hi-IN" for v in synth.voices())

    synth.speak(Utterance(id=1, text="Hi", language="en-US", rate=10.0))
    for _ in range(100):
        if SpeechEnded(1) in events:
            break
        await asyncio.sleep(0.01)
    assert events == [SpeechStarted(1), SpeechEnded(1)]

    synth.speak(Utterance(id=2, text="a much longer answer " * 20, language="en-US"))
    await asyncio.sleep(0)
    synth.cancel()
    await asyncio.sleep(0.05)
    assert SpeechEnded(2) not in events
