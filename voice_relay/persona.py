"""
persona.py — Voice Relay · Assistant persona and canned copy
============================================================
System instruction for the gateway, plus every fixed phrase the Turn
Controller says on its own: welcome, proactive idle prompts, recognizer
failures, connection trouble and friendly error wording.
"""

from __future__ import annotations

import random
from typing import Optional

from .config import PersonaConfig
from .languages import response_instruction

# ---------------------------------------------------------------------------
# System instruction
# ---------------------------------------------------------------------------

def build_system_instruction(persona: PersonaConfig, language: str) -> str:
    """Pin the persona and topic domain, localized to *language*."""
    products = ", ".join(persona.products)
    base = (
        f"You are {persona.name}, the voice assistant for {persona.organization}. "
        f"You are knowledgeable about {persona.organization} products"
        + (f", including {products}. " if products else ". ")
        + f"Only discuss topics related to {persona.organization}, their products, "
        "features, specifications, pricing, and services. "
        f"If asked about unrelated topics, politely redirect the conversation back to {persona.organization}. "
        "Keep responses concise and conversational."
    )
    return f"{base} {response_instruction(language)}"


# ---------------------------------------------------------------------------
# Canned copy
# ---------------------------------------------------------------------------

def welcome_messages(persona: PersonaConfig) -> tuple[str, ...]:
    org = persona.organization
    return (
        f"Hi there! I'm {persona.name}, your {org} assistant. Just click the mic and ask me anything!",
        f"Hello! I'm ready to help with all your {org} questions. Click the mic to start chatting.",
        f"Welcome! I'm {persona.name}, your friendly {org} guide. Hit the mic button when you're ready to talk.",
        f"Hey there! Ready to talk about {org}? Just click the mic button to start our conversation.",
    )


def idle_prompts(persona: PersonaConfig) -> tuple[str, ...]:
    org = persona.organization
    return (
        f"Is there anything else you'd like to know about {org}?",
        "I'm still here if you have more questions. Just speak up!",
        f"Feel free to ask me anything else about {org}.",
        f"Is there something specific about {org} you'd like to learn?",
    )


RECOGNIZER_ERRORS: dict[str, str] = {
    "audio-capture": "I can't access your microphone. Please check your microphone settings.",
    "not-allowed": "I need permission to use your microphone. Please enable it in your browser settings.",
}
_RECOGNIZER_ERROR_DEFAULT = "There was a technical issue. Please try again."

CONNECTION_TROUBLE = "I'm having trouble connecting right now. Let me try again..."
CONNECTION_ERROR = "I'm having trouble connecting. Please check your internet connection and try again."
QUEUED_NOTICE = "Got it, I'll answer that as soon as I finish the current question."
QUOTA_LOCKED_NOTICE = "I've hit my daily limit. Please wait for the countdown or switch to a backup model."


def recognizer_error_message(kind: str) -> str:
    return "I had trouble hearing you: " + RECOGNIZER_ERRORS.get(kind, _RECOGNIZER_ERROR_DEFAULT)


def friendly_error(message: Optional[str]) -> str:
    """Map a raw backend error message onto a user-facing phrase."""
    lowered = (message or "").lower()
    if "timeout" in lowered or "timed out" in lowered:
        return "I'm taking a bit longer than usual to think. Let me try again. Could you repeat your question?"
    if "rate limit" in lowered or "quota" in lowered:
        return "I've been talking quite a lot! Give me a moment to catch my breath, then we can continue."
    if "connectivity" in lowered or "network" in lowered:
        return "I'm having trouble connecting to my brain. Let's give it another try in a moment."
    return "I hit a small snag. Let's try that again, maybe phrase your question a bit differently?"


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

_FILLERS: tuple[str, ...] = ("Actually, ", "You know what, ", "I'd say ", "Well, ", "So, ")

_CONTRACTIONS: tuple[tuple[str, str], ...] = (
    ("cannot", "can't"),
    ("will not", "won't"),
    ("do not", "don't"),
)


def humanize_response(text: str, persona: PersonaConfig, rng: Optional[random.Random] = None) -> str:
    """Make a model answer sound less written.  Only the spoken/displayed copy changes."""
    if not text or not persona.humanize:
        return text
    rng = rng or random

    if persona.friendliness > 0.7 and rng.random() < 0.3:
        filler = rng.choice(_FILLERS)
        text = filler + text[0].lower() + text[1:]

    if persona.formality < 0.5:
        for formal, casual in _CONTRACTIONS:
            text = text.replace(formal, casual, 1)

    if persona.enthusiasm > 0.6 and "!" not in text and rng.random() < 0.3:
        if text.endswith("."):
            text = text[:-1] + "!"

    return text


def speech_prosody(persona: PersonaConfig) -> tuple[float, float]:
    """(rate, pitch) for synthesis, nudged by enthusiasm and friendliness."""
    rate = 1.0 + (persona.enthusiasm * 0.2 - 0.1)
    pitch = 1.0 + (persona.friendliness * 0.2 - 0.1)
    return rate, pitch
