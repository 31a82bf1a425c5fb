import random

import pytest

from voice_relay.config import PersonaConfig
from voice_relay.persona import (
    build_system_instruction,
    friendly_error,
    humanize_response,
    recognizer_error_message,
    speech_prosody,
)


class ScriptedRandom(random.Random):
    """Always rolls *roll* and always picks the first choice."""

    def __init__(self, roll: float) -> None:
        super().__init__()
        self.roll = roll

    def random(self) -> float:
        return self.roll

    def choice(self, seq):
        return seq[0]


def test_system_instruction_pins_persona_and_language():
    instruction = build_system_instruction(PersonaConfig(), "ml-IN")

    assert instruction.startswith("You are Rev, the voice assistant for Revolt Motors.")
    assert "RV400, RV1, RV1+" in instruction
    assert "politely redirect" in instruction
    assert instruction.endswith("You must respond in Malayalam (മലയാളം) language only.")


@pytest.mark.parametrize(
    "message, fragment",
    [
        ("Request timed out waiting for the model", "longer than usual"),
        ("Rate limited by the API", "catch my breath"),
        ("Daily quota exceeded", "catch my breath"),
        ("Lost network connectivity to the model provider", "trouble connecting"),
        ("something odd", "small snag"),
        (None, "small snag"),
    ],
)
def test_friendly_error(message, fragment):
    assert fragment in friendly_error(message)


def test_recognizer_error_message():
    assert recognizer_error_message("audio-capture").startswith("I had trouble hearing you: I can't access")
    assert recognizer_error_message("network").endswith("There was a technical issue. Please try again.")


def test_humanize_adds_filler_and_exclamation():
    text = humanize_response("It do not need a clutch.", PersonaConfig(), ScriptedRandom(0.1))
    assert text == "Actually, it don't need a clutch!"


def test_humanize_only_contracts_when_dice_say_no():
    text = humanize_response("You cannot ride it in rain.", PersonaConfig(), ScriptedRandom(0.9))
    assert text == "You can't ride it in rain."


def test_humanize_disabled_returns_text_unchanged():
    persona = PersonaConfig(humanize=False)
    assert humanize_response("I do not know.", persona, ScriptedRandom(0.0)) == "I do not know."


def test_speech_prosody_follows_persona():
    rate, pitch = speech_prosody(PersonaConfig(enthusiasm=1.0, friendliness=0.0))
    assert rate == pytest.approx(1.1)
    assert pitch == pytest.approx(0.9)
