"""Language tags, localized copy and spoken language-switch detection."""

from __future__ import annotations

import logging
from typing import Optional

log = logging.getLogger("voice_relay.languages")

DEFAULT_LANGUAGE = "en-US"

# tag → display name shown in the "Changed from X to Y" notice
LANGUAGE_NAMES: dict[str, str] = {
    "en-US": "English",
    "en-IN": "English (India)",
    "hi-IN": "हिंदी (Hindi)",
    "ta-IN": "தமிழ் (Tamil)",
    "te-IN": "తెలుగు (Telugu)",
    "kn-IN": "ಕನ್ನಡ (Kannada)",
    "ml-IN": "മലയാളം (Malayalam)",
    "mr-IN": "मराठी (Marathi)",
    "gu-IN": "ગુજરાતી (Gujarati)",
    "bn-IN": "বাংলা (Bengali)",
    "pa-IN": "ਪੰਜਾਬੀ (Punjabi)",
}

SUPPORTED_LANGUAGES: tuple[str, ...] = tuple(LANGUAGE_NAMES)

# Spoken confirmation after a switch
ANNOUNCEMENTS: dict[str, str] = {
    "en-US": "Now I'll speak in English. How can I help you today?",
    "en-IN": "Now I'll speak in English (India). How can I help you today?",
    "hi-IN": "अब मैं हिंदी में बात करूंगा। मैं आपकी कैसे मदद कर सकता हूं?",
    "ta-IN": "இப்போது நான் தமிழில் பேசுவேன். நான் உங்களுக்கு எப்படி உதவ முடியும்?",
    "te-IN": "ఇప్పుడు నేను తెలుగులో మాట్లాడతాను. నేను మీకు ఎలా సహాయం చేయగలను?",
    "kn-IN": "ಈಗ ನಾನು ಕನ್ನಡದಲ್ಲಿ ಮಾತನಾಡುತ್ತೇನೆ. ನಾನು ನಿಮಗೆ ಹೇಗೆ ಸಹಾಯ ಮಾಡಬಹುದು?",
    "ml-IN": "ഇപ്പോൾ ഞാൻ മലയാളത്തിൽ സംസാരിക്കും. എനിക്ക് നിങ്ങളെ എങ്ങനെ സഹായിക്കാം?",
    "mr-IN": "आता मी मराठीत बोलेन. मी तुमची कशी मदत करू शकतो?",
    "gu-IN": "હવે હું ગુજરાતીમાં વાત કરીશ. હું તમને કેવી રીતે મદદ કરી શકું?",
    "bn-IN": "এখন আমি বাংলায় কথা বলব। আমি আপনাকে কীভাবে সাহায্য করতে পারি?",
    "pa-IN": "ਹੁਣ ਮੈਂ ਪੰਜਾਬੀ ਵਿੱਚ ਬੋਲਾਂਗਾ। ਮੈਂ ਤੁਹਾਡੀ ਕਿਵੇਂ ਮਦਦ ਕਰ ਸਕਦਾ ਹਾਂ?",
}

# primary subtag → "respond in X" clause appended to the system instruction
_RESPONSE_LANGUAGE: dict[str, str] = {
    "hi": "Hindi (हिंदी)",
    "ta": "Tamil (தமிழ்)",
    "te": "Telugu (తెలుగు)",
    "kn": "Kannada (ಕನ್ನಡ)",
    "ml": "Malayalam (മലയാളം)",
    "mr": "Marathi (मराठी)",
    "gu": "Gujarati (ગુજરાતી)",
    "bn": "Bengali (বাংলা)",
    "pa": "Punjabi (ਪੰਜਾਬੀ)",
}

# primary subtag → voice-name fragments used when no voice matches by tag
VOICE_NAME_HINTS: dict[str, tuple[str, ...]] = {
    "en": ("English",),
    "hi": ("Hindi", "हिंदी"),
    "ta": ("Tamil", "தமிழ்"),
    "te": ("Telugu", "తెలుగు"),
    "kn": ("Kannada", "ಕನ್ನಡ"),
    "ml": ("Malayalam", "മലയാളം"),
    "mr": ("Marathi", "मराठी"),
    "gu": ("Gujarati", "ગુજરાતી"),
    "bn": ("Bengali", "বাংলা"),
    "pa": ("Punjabi", "ਪੰਜਾਬੀ"),
}

# ---------------------------------------------------------------------------
# Switch-intent vocabulary
# ---------------------------------------------------------------------------

_ENGLISH_KEYWORDS: tuple[str, ...] = (
    "english", "ingles", "angrezi",
    "अंग्रेज़ी", "अंग्रेजी", "انگریزی", "ஆங்கிலம்",
    "ఇంగ్లీష్", "ಇಂಗ್ಲಿಷ್", "ഇംഗ്ലീഷ്", "इंग्लिश",
)

# Checked in this order after the English keywords; first hit wins.
_SWITCH_COMMANDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("hi-IN", (
        "hindi", "speak in hindi", "switch to hindi", "change to hindi",
        "use hindi", "talk in hindi", "hindi please", "in hindi",
        "हिंदी", "हिंदी में बोलो", "हिंदी में बात करो", "हिंदी में",
    )),
    ("ta-IN", (
        "tamil", "speak in tamil", "switch to tamil", "change to tamil",
        "use tamil", "talk in tamil", "tamil please", "in tamil",
        "தமிழ்", "தமிழில் பேசு", "தமிழுக்கு மாறு", "தமிழில்",
    )),
    ("te-IN", (
        "telugu", "speak in telugu", "switch to telugu", "change to telugu",
        "use telugu", "talk in telugu", "telugu please", "in telugu",
        "తెలుగు", "తెలుగులో మాట్లాడు", "తెలుగుకి మారు", "తెలుగులో",
    )),
    ("kn-IN", (
        "kannada", "speak in kannada", "switch to kannada", "change to kannada",
        "use kannada", "talk in kannada", "kannada please", "in kannada",
        "ಕನ್ನಡ", "ಕನ್ನಡದಲ್ಲಿ ಮಾತನಾಡು", "ಕನ್ನಡಕ್ಕೆ ಬದಲಿಸಿ", "ಕನ್ನಡದಲ್ಲಿ",
    )),
    ("ml-IN", (
        "malayalam", "speak in malayalam", "switch to malayalam", "change to malayalam",
        "use malayalam", "talk in malayalam", "malayalam please", "in malayalam",
        "മലയാളം", "മലയാളത്തിൽ സംസാരിക്കുക", "മലയാളത്തിലേക്ക് മാറുക", "മലയാളത്തിൽ",
    )),
)


def primary_subtag(tag: str) -> str:
    return str(tag or "").split("-")[0].lower()


def display_name(tag: str) -> str:
    return LANGUAGE_NAMES.get(tag, tag)


def announcement(tag: str) -> str:
    """Localized confirmation spoken after switching to *tag*."""
    return ANNOUNCEMENTS.get(tag) or f"Now speaking in {display_name(tag)}. How can I help you?"


def response_instruction(tag: str) -> str:
    """Clause pinning the model's reply language; English unless the subtag is known."""
    name = _RESPONSE_LANGUAGE.get(primary_subtag(tag), "English")
    return f"You must respond in {name} language only."


def detect_language_change(text: str) -> Optional[str]:
    """Return the language tag *text* asks to switch to, or None.

    Plain substring containment on the lower-cased text, English keywords
    first.  A longer word that happens to contain a keyword also matches.
    """
    lowered = (text or "").lower().strip()
    if not lowered:
        return None

    for keyword in _ENGLISH_KEYWORDS:
        if keyword in lowered:
            log.info("event=language_intent tag=en-US keyword=%r", keyword)
            return "en-US"

    for tag, commands in _SWITCH_COMMANDS:
        for command in commands:
            if command in lowered:
                log.info("event=language_intent tag=%s keyword=%r", tag, command)
                return tag

    return None
