"""UI affordances driven by the Turn Controller and Quota Guard."""

from __future__ import annotations

import logging
import sys
from typing import Protocol, Sequence, TextIO

from .languages import display_name

log = logging.getLogger("voice_relay.surface")


class Surface(Protocol):
    def show_message(self, sender: str, text: str, kind: str) -> None:
        """Append a chat bubble; kind is user | assistant | system."""

    def show_transcript(self, text: str, final: bool) -> None:
        """Live transcript of what the recognizer is hearing."""

    def set_status(self, status: str, text: str) -> None:
        """Status pill: connecting | connected | listening | processing | speaking | interrupted | error."""

    def set_input_enabled(self, enabled: bool) -> None:
        """Enable or disable the mic button and text box."""

    def set_language(self, language: str) -> None:
        """Reflect the active language in the selector."""

    def show_quota_banner(self, reason: str, remaining_ms: int, models: Sequence[str]) -> None:
        """Dismissible lock banner with countdown and backup-model offers."""

    def update_quota_countdown(self, remaining_ms: int) -> None:
        ...

    def hide_quota_banner(self) -> None:
        ...


def format_countdown(remaining_ms: int) -> str:
    """'HH:MM:SS' for a non-negative millisecond span."""
    seconds = max(0, int(remaining_ms) // 1000)
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class ConsoleSurface:
    """Terminal rendering used by the console client."""

    def __init__(self, out: TextIO = sys.stdout) -> None:
        self._out = out
        self._status = ""
        self.input_enabled = True

    def _print(self, line: str) -> None:
        print(line, file=self._out, flush=True)

    def show_message(self, sender: str, text: str, kind: str) -> None:
        if kind == "system":
            self._print(f"  · {text}")
        else:
            self._print(f"{sender}: {text}")

    def show_transcript(self, text: str, final: bool) -> None:
        if not final:
            log.debug("event=interim_transcript text=%.80s", text)

    def set_status(self, status: str, text: str) -> None:
        if status != self._status:
            self._status = status
            self._print(f"  [{text}]")

    def set_input_enabled(self, enabled: bool) -> None:
        self.input_enabled = enabled
        if not enabled:
            self._print("  [input disabled]")

    def set_language(self, language: str) -> None:
        self._print(f"  [language: {display_name(language)}]")

    def show_quota_banner(self, reason: str, remaining_ms: int, models: Sequence[str]) -> None:
        self._print(f"  !! {reason} — unlocks in {format_countdown(remaining_ms)}")
        if models:
            self._print(f"  !! switch with: /model {models[0]}")

    def update_quota_countdown(self, remaining_ms: int) -> None:
        log.debug("event=quota_countdown remaining=%s", format_countdown(remaining_ms))

    def hide_quota_banner(self) -> None:
        self._print("  [quota unlocked]")
