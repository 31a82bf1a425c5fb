"""
config.py — Voice Relay · Runtime Configuration
===============================================
Pydantic models for every tunable parameter across server and client.
Serialises to / deserialises from JSON.  Used by:
  • server.py   — session defaults, gateway parameters, bind address
  • gateway.py  — Groq model, sampling, history window, retry fallback
  • controller.py / quota.py / transport.py — client timing constants
  • console.py  — loads the file named by --config / VOICE_RELAY_CONFIG
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("voice_relay.config")

CONFIG_ENV_VAR = "VOICE_RELAY_CONFIG"

DEFAULT_MODEL = "llama-3.3-70b-versatile"
BACKUP_MODEL = "llama-3.1-8b-instant"


# ---------------------------------------------------------------------------
# Per-concern config sections
# ---------------------------------------------------------------------------

class GatewayConfig(BaseModel):
    """Groq generation parameters (passed to chat.completions.create)."""
    model: str = Field(default=DEFAULT_MODEL, description="Default Groq model ID for new sessions")
    backup_models: list[str] = Field(default_factory=lambda: [BACKUP_MODEL], description="Models offered when the daily quota runs out")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    max_tokens: int = Field(default=150, ge=1, description="Max response tokens")
    history_turns: int = Field(default=6, ge=0, le=50, description="Prior turns forwarded to the model")
    default_retry_after_ms: int = Field(default=5000, ge=0, description="Retry delay when the backend gives no hint")
    request_timeout_sec: Optional[float] = Field(default=None, ge=1.0, description="Groq client timeout")


class PersonaConfig(BaseModel):
    """Who the assistant is and what it is allowed to talk about."""
    name: str = Field(default="Rev", description="Assistant display name")
    organization: str = Field(default="Revolt Motors", description="Topic domain the assistant is pinned to")
    products: list[str] = Field(default_factory=lambda: ["RV400", "RV1", "RV1+"], description="Products named in the system instruction")
    friendliness: float = Field(default=0.8, ge=0.0, le=1.0)
    formality: float = Field(default=0.4, ge=0.0, le=1.0)
    enthusiasm: float = Field(default=0.7, ge=0.0, le=1.0)
    humanize: bool = Field(default=True, description="Add conversational fillers to spoken answers")


class TurnConfig(BaseModel):
    """Turn Controller timing and context bounds."""
    context_size: int = Field(default=10, ge=1, le=100, description="Turns kept client-side")
    context_window: int = Field(default=4, ge=0, le=100, description="Trailing turns sent with each request")
    idle_prompt_sec: float = Field(default=30.0, gt=0.0, description="Silence before a proactive prompt")
    no_speech_prompt_sec: float = Field(default=10.0, gt=0.0, description="Silence threshold on a no-speech error")
    settle_delay_sec: float = Field(default=0.3, ge=0.0, description="Delay before flushing the pending request")
    restart_listen_sec: float = Field(default=0.3, ge=0.0, description="Delay before re-arming the recognizer")
    language_relisten_sec: float = Field(default=1.0, ge=0.0, description="Delay before listening after a language switch")
    default_language: str = Field(default="en-US", description="Initial language tag")


class SpeechConfig(BaseModel):
    """Synthesis voice readiness polling."""
    voice_attempts: int = Field(default=10, ge=1, le=100, description="Voice-list readiness polls")
    voice_interval_sec: float = Field(default=0.1, gt=0.0, description="Delay between voice-list polls")
    volume: float = Field(default=1.0, ge=0.0, le=1.0)


class TransportConfig(BaseModel):
    """Client duplex channel."""
    url: str = Field(default="ws://127.0.0.1:3000/ws", description="Server websocket URL")
    reconnect_delay_sec: float = Field(default=3.0, gt=0.0, description="Fixed backoff between reconnects")


class QuotaConfig(BaseModel):
    """Client-side quota lock persistence."""
    state_path: str = Field(default="~/.voice_relay/quota.json", description="Where the unlock deadline is kept")
    countdown_interval_sec: float = Field(default=1.0, gt=0.0, description="Banner countdown refresh")


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceRelayConfig(BaseModel):
    """Complete runtime configuration for the voice relay."""
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    persona: PersonaConfig = Field(default_factory=PersonaConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "VoiceRelayConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path).expanduser()
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    @classmethod
    def from_env(cls) -> "VoiceRelayConfig":
        """Load the file named by VOICE_RELAY_CONFIG, or defaults when unset."""
        path = os.getenv(CONFIG_ENV_VAR)
        if not path:
            return cls()
        return cls.load(path)

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)
