"""
protocol.py — Voice Relay · Wire protocol
=========================================
JSON objects with a ``type`` discriminator, one pydantic model per message.
Field names are snake_case in Python and camelCase on the wire
(``connectionId``, ``retryAfterMs``, ``resetsAtMs``).

Client → server:  text, interrupt, reset, switch_model
Server → client:  connection_established, processing_start, processing_end,
                  response, error, quota_exceeded, model_switched,
                  interrupted, reset_complete
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator


class ProtocolError(ValueError):
    """Raised when a frame is not valid JSON or not a known message."""


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Client → server
# ---------------------------------------------------------------------------

CONTEXT_ROLES = ("user", "assistant")


class ContextTurn(_Message):
    role: Literal["user", "assistant"]
    text: str = ""
    timestamp: Optional[float] = None


class _ClientMessage(_Message):
    # Any client message may carry the UI's current language tag
    language: Optional[str] = None


class TextRequest(_ClientMessage):
    type: Literal["text"] = "text"
    text: str
    context: list[ContextTurn] = Field(default_factory=list)

    @field_validator("context", mode="before")
    @classmethod
    def _context_list(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        # Turns with an unknown role are dropped, not the whole request
        return [
            turn for turn in value
            if isinstance(turn, ContextTurn)
            or (isinstance(turn, dict) and turn.get("role") in CONTEXT_ROLES)
        ]


class InterruptRequest(_ClientMessage):
    type: Literal["interrupt"] = "interrupt"


class ResetRequest(_ClientMessage):
    type: Literal["reset"] = "reset"


class SwitchModelRequest(_ClientMessage):
    type: Literal["switch_model"] = "switch_model"
    model: Optional[str] = None


ClientMessage = Annotated[
    Union[TextRequest, InterruptRequest, ResetRequest, SwitchModelRequest],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Server → client
# ---------------------------------------------------------------------------

class ConnectionEstablished(_Message):
    type: Literal["connection_established"] = "connection_established"
    connection_id: str = Field(alias="connectionId")


class ProcessingStart(_Message):
    type: Literal["processing_start"] = "processing_start"


class ProcessingEnd(_Message):
    type: Literal["processing_end"] = "processing_end"


class Response(_Message):
    type: Literal["response"] = "response"
    text: str


class ErrorMessage(_Message):
    type: Literal["error"] = "error"
    code: Optional[str] = None
    message: str = ""
    retry_after_ms: Optional[int] = Field(default=None, alias="retryAfterMs")


class QuotaExceeded(_Message):
    type: Literal["quota_exceeded"] = "quota_exceeded"
    model: str
    resets_at_ms: int = Field(alias="resetsAtMs")


class ModelSwitched(_Message):
    type: Literal["model_switched"] = "model_switched"
    model: str


class Interrupted(_Message):
    type: Literal["interrupted"] = "interrupted"


class ResetComplete(_Message):
    type: Literal["reset_complete"] = "reset_complete"


ServerMessage = Annotated[
    Union[
        ConnectionEstablished, ProcessingStart, ProcessingEnd, Response,
        ErrorMessage, QuotaExceeded, ModelSwitched, Interrupted, ResetComplete,
    ],
    Field(discriminator="type"),
]

_client_adapter: TypeAdapter = TypeAdapter(ClientMessage)
_server_adapter: TypeAdapter = TypeAdapter(ServerMessage)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def _parse(adapter: TypeAdapter, raw: Union[str, bytes, dict]) -> Any:
    try:
        if isinstance(raw, (str, bytes, bytearray)):
            return adapter.validate_json(raw)
        return adapter.validate_python(raw)
    except ValidationError as exc:
        raise ProtocolError(str(exc)) from exc


def parse_client_message(raw: Union[str, bytes, dict]) -> Any:
    """Decode a client → server frame."""
    return _parse(_client_adapter, raw)


def parse_server_message(raw: Union[str, bytes, dict]) -> Any:
    """Decode a server → client frame."""
    return _parse(_server_adapter, raw)


def dump(message: BaseModel) -> dict:
    """Wire representation: camelCase keys, ``None`` fields dropped."""
    return message.model_dump(by_alias=True, exclude_none=True)
