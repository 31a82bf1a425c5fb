"""
gateway.py — Voice Relay · Generation Gateway
=============================================
Wraps the Groq chat-completion call and folds every backend failure into
a three-way taxonomy the transport can act on:

  DailyQuotaExceeded  — per-day limit hit; resets at next local midnight
  RateLimited         — retryable throttle; carries a retry delay
  Unknown             — anything else; message kept for keyword sniffing
"""

from __future__ import annotations

import logging
import math
import os
import re
import time
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

import groq
from groq import AsyncGroq

from .config import GatewayConfig, PersonaConfig
from .persona import build_system_instruction
from .protocol import ContextTurn

log = logging.getLogger("voice_relay.gateway")

_DAILY_MARKERS: tuple[str, ...] = ("per day", "per_day", "perday", "(tpd)", "(rpd)")
_RETRY_HINT_RE = re.compile(r"try again in\s+([0-9hms.]+)", re.IGNORECASE)
_DURATION_PART_RE = re.compile(r"([0-9.]+)(ms|h|m|s)")


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class GenerationError(Exception):
    """Base class for classified generation failures."""
    code = "Unknown"


class DailyQuotaExceeded(GenerationError):
    code = "DailyQuotaExceeded"

    def __init__(self, resets_at_ms: int, message: str = "Daily quota exceeded"):
        super().__init__(message)
        self.resets_at_ms = resets_at_ms


class RateLimited(GenerationError):
    code = "RateLimited"

    def __init__(self, retry_after_ms: int, message: str = "Rate limited by the API"):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class UnknownGenerationError(GenerationError):
    code = "Unknown"


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

def next_local_midnight_ms(now: Optional[datetime] = None) -> int:
    """Epoch ms of the next local midnight after *now*."""
    now = now or datetime.now().astimezone()
    midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def parse_duration_ms(text: str) -> Optional[int]:
    """'1m2.5s' → 62500, '850ms' → 850, '37s' → 37000."""
    parts = _DURATION_PART_RE.findall(text or "")
    if not parts:
        return None
    scale = {"h": 3_600_000, "m": 60_000, "s": 1000, "ms": 1}
    total = sum(float(value) * scale[unit] for value, unit in parts)
    return int(math.ceil(total))


def _error_text(exc: BaseException) -> str:
    return str(getattr(exc, "message", "") or exc)


def is_daily_quota(exc: BaseException) -> bool:
    text = _error_text(exc).lower()
    return any(marker in text for marker in _DAILY_MARKERS)


def retry_after_ms(exc: BaseException) -> Optional[int]:
    """Retry delay from the ``retry-after`` header, else the message hint."""
    response = getattr(exc, "response", None)
    header = response.headers.get("retry-after") if response is not None else None
    if header:
        try:
            return int(math.ceil(float(header) * 1000))
        except ValueError:
            log.debug("event=retry_after_unparsable header=%r", header)

    match = _RETRY_HINT_RE.search(_error_text(exc))
    if match:
        return parse_duration_ms(match.group(1))
    return None


def classify(exc: BaseException, default_retry_after_ms: int) -> GenerationError:
    """Translate a Groq SDK exception into the gateway taxonomy."""
    if isinstance(exc, GenerationError):
        return exc

    if isinstance(exc, groq.RateLimitError):
        if is_daily_quota(exc):
            return DailyQuotaExceeded(next_local_midnight_ms())
        delay = retry_after_ms(exc)
        return RateLimited(delay if delay is not None else default_retry_after_ms)

    if isinstance(exc, groq.APITimeoutError):
        return UnknownGenerationError("Request timed out waiting for the model")

    if isinstance(exc, groq.APIConnectionError):
        return UnknownGenerationError("Lost network connectivity to the model provider")

    return UnknownGenerationError(_error_text(exc) or "Failed to process text")


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class GenerationGateway:
    """One Groq call per user turn, with bounded history and typed failures."""

    def __init__(
        self,
        config: GatewayConfig,
        persona: PersonaConfig,
        client: Optional[Any] = None,
    ) -> None:
        self._config = config
        self._persona = persona
        self._client = client

    @property
    def default_model(self) -> str:
        return self._config.model

    @property
    def backup_model(self) -> str:
        return self._config.backup_models[0] if self._config.backup_models else self._config.model

    def _get_client(self) -> Any:
        if self._client is None:
            kwargs: dict[str, Any] = {"api_key": os.environ["GROQ_API_KEY"]}
            if self._config.request_timeout_sec is not None:
                kwargs["timeout"] = self._config.request_timeout_sec
            self._client = AsyncGroq(**kwargs)
        return self._client

    def build_messages(
        self,
        text: str,
        language: str,
        history: Sequence[ContextTurn],
    ) -> list[dict]:
        """[system] + last N history turns + current user text."""
        limit = self._config.history_turns
        window = list(history)[-limit:] if limit else []
        # The client appends the user turn to its context before sending it
        if window and window[-1].role == "user" and window[-1].text.strip() == text.strip():
            window = window[:-1]

        messages = [{"role": "system", "content": build_system_instruction(self._persona, language)}]
        for turn in window:
            messages.append({"role": turn.role, "content": turn.text or ""})
        messages.append({"role": "user", "content": text})
        return messages

    async def generate(
        self,
        *,
        model: str,
        text: str,
        language: str,
        history: Sequence[ContextTurn] = (),
    ) -> str:
        messages = self.build_messages(text, language, history)
        started = time.perf_counter()
        log.info(
            "event=generation_start model=%s language=%s history=%d",
            model, language, len(messages) - 2,
        )
        try:
            response = await self._get_client().chat.completions.create(
                model=model,
                messages=messages,
                temperature=self._config.temperature,
                max_tokens=self._config.max_tokens,
                stream=False,
            )
        except Exception as exc:
            error = classify(exc, self._config.default_retry_after_ms)
            log.warning(
                "event=generation_error model=%s code=%s error=%s",
                model, error.code, exc,
            )
            raise error from exc

        answer = (response.choices[0].message.content or "").strip()
        log.info(
            "event=generation_complete model=%s chars=%d duration_ms=%.1f",
            model, len(answer), (time.perf_counter() - started) * 1000.0,
        )
        return answer
