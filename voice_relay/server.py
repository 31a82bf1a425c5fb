"""
server.py — Voice Relay · FastAPI Session Server
================================================
Duplex message endpoint for voice chat clients.  Every websocket gets its
own SessionRecord (language, model, single-flight processing flag) and
talks to the Generation Gateway one request at a time.

Endpoints
---------
  WS   /ws         Chat session (JSON messages, see protocol.py)
  GET  /health     Service liveness
  GET  /sessions   List connected sessions

Concurrency model
-----------------
One asyncio event loop.  Each session's receive loop keeps running while
its generation call is in flight (the call runs as a task), so `interrupt`
and `switch_model` are served immediately.  A second `text` seen while
`is_processing` is set is dropped, not queued — queuing is the client's job.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from .config import VoiceRelayConfig
from .gateway import DailyQuotaExceeded, GenerationError, GenerationGateway, RateLimited
from .languages import DEFAULT_LANGUAGE
from .protocol import (
    ConnectionEstablished,
    ErrorMessage,
    InterruptRequest,
    Interrupted,
    ModelSwitched,
    ProcessingEnd,
    ProcessingStart,
    ProtocolError,
    QuotaExceeded,
    ResetComplete,
    ResetRequest,
    Response,
    SwitchModelRequest,
    TextRequest,
    dump,
    parse_client_message,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voice_relay.server")


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------

@dataclass
class SessionRecord:
    connection_id: str
    model:         str
    websocket:     WebSocket = field(repr=False, default=None)  # type: ignore[assignment]
    language:      str   = DEFAULT_LANGUAGE
    is_processing: bool  = False
    connected_at:  float = field(default_factory=time.monotonic)
    _generation_task: Optional[asyncio.Task] = field(repr=False, default=None)


class SessionRegistry:
    """connection_id → SessionRecord, owned by the server for the socket's lifetime."""

    def __init__(self, default_model: str) -> None:
        self._default_model = default_model
        self._sessions: dict[str, SessionRecord] = {}

    def open(self, websocket: WebSocket) -> SessionRecord:
        record = SessionRecord(
            connection_id=uuid.uuid4().hex,
            model=self._default_model,
            websocket=websocket,
        )
        self._sessions[record.connection_id] = record
        return record

    def close(self, connection_id: str) -> Optional[SessionRecord]:
        record = self._sessions.pop(connection_id, None)
        if record is not None:
            task = record._generation_task
            if task is not None and not task.done():
                task.cancel()
        return record

    def get(self, connection_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(connection_id)

    def snapshot(self) -> list[SessionRecord]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[SessionRecord]:
        return iter(list(self._sessions.values()))


class SessionInfo(BaseModel):
    connection_id: str
    language:      str
    model:         str
    is_processing: bool
    uptime_sec:    float


# ---------------------------------------------------------------------------
# Session handling
# ---------------------------------------------------------------------------

async def _send(record: SessionRecord, message: BaseModel) -> bool:
    """Send one message; skipped when the socket is already gone."""
    ws = record.websocket
    if ws is None or ws.client_state != WebSocketState.CONNECTED:
        log.debug("event=send_skipped conn=%s type=%s", record.connection_id, message.type)
        return False
    try:
        await ws.send_json(dump(message))
        return True
    except (RuntimeError, OSError, WebSocketDisconnect) as exc:
        log.debug("event=send_failed conn=%s type=%s error=%s", record.connection_id, message.type, exc)
        return False


async def _run_generation(
    record: SessionRecord,
    request: TextRequest,
    gateway: GenerationGateway,
) -> None:
    """One request: exactly one outcome message, then processing_end."""
    try:
        answer = await gateway.generate(
            model=record.model,
            text=request.text,
            language=record.language,
            history=request.context,
        )
        await _send(record, Response(text=answer))
    except DailyQuotaExceeded as exc:
        log.warning("event=quota_exceeded conn=%s model=%s resets_at_ms=%d",
                    record.connection_id, record.model, exc.resets_at_ms)
        await _send(record, QuotaExceeded(model=record.model, resets_at_ms=exc.resets_at_ms))
    except RateLimited as exc:
        log.warning("event=rate_limited conn=%s retry_after_ms=%d", record.connection_id, exc.retry_after_ms)
        await _send(record, ErrorMessage(code=exc.code, message=str(exc), retry_after_ms=exc.retry_after_ms))
    except GenerationError as exc:
        await _send(record, ErrorMessage(code=exc.code, message=str(exc) or "Failed to process text"))
    except asyncio.CancelledError:
        log.info("event=generation_cancelled conn=%s", record.connection_id)
        raise
    except Exception as exc:
        log.error("event=generation_crash conn=%s error=%s", record.connection_id, exc, exc_info=True)
        await _send(record, ErrorMessage(code="Unknown", message="Failed to process text"))
    finally:
        record.is_processing = False
        record._generation_task = None
        await _send(record, ProcessingEnd())


async def handle_client_message(
    record: SessionRecord,
    message: BaseModel,
    gateway: GenerationGateway,
) -> None:
    """Dispatch one decoded client message for *record*."""
    language = getattr(message, "language", None)
    if language and language != record.language:
        record.language = language
        log.info("event=language_updated conn=%s language=%s", record.connection_id, language)

    if isinstance(message, TextRequest):
        if record.is_processing:
            log.info("event=request_dropped conn=%s reason=already_processing", record.connection_id)
            return
        record.is_processing = True
        await _send(record, ProcessingStart())
        log.info("event=request_start conn=%s model=%s chars=%d context=%d",
                 record.connection_id, record.model, len(message.text), len(message.context))
        record._generation_task = asyncio.create_task(
            _run_generation(record, message, gateway),
            name=f"generation_{record.connection_id}",
        )
        return

    if isinstance(message, SwitchModelRequest):
        record.model = message.model or gateway.backup_model
        log.info("event=model_switched conn=%s model=%s", record.connection_id, record.model)
        await _send(record, ModelSwitched(model=record.model))
        return

    if isinstance(message, InterruptRequest):
        # Answers are not streamed, so there is nothing server-side to stop
        log.info("event=interrupted conn=%s", record.connection_id)
        await _send(record, Interrupted())
        return

    if isinstance(message, ResetRequest):
        log.info("event=reset conn=%s", record.connection_id)
        await _send(record, ResetComplete())
        return


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[VoiceRelayConfig] = None,
    gateway: Optional[GenerationGateway] = None,
) -> FastAPI:
    config = config or VoiceRelayConfig.from_env()
    gateway = gateway or GenerationGateway(config.gateway, config.persona)
    registry = SessionRegistry(default_model=gateway.default_model)

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info("event=server_start model=%s", gateway.default_model)
        yield
        log.info("event=server_shutdown closing %d sessions", len(registry))
        for record in registry.snapshot():
            registry.close(record.connection_id)
        log.info("event=server_stopped")

    app = FastAPI(
        title="Voice Relay",
        version="1.0.0",
        description="Voice chat relay with single-flight generation per session",
        lifespan=_lifespan,
    )
    app.state.config = config
    app.state.gateway = gateway
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status":          "ok",
            "active_sessions": len(registry),
            "model":           gateway.default_model,
        })

    @app.get("/sessions", response_model=list[SessionInfo])
    async def list_sessions() -> list[SessionInfo]:
        """Snapshot of all connected sessions."""
        now = time.monotonic()
        return [
            SessionInfo(
                connection_id=r.connection_id,
                language=r.language,
                model=r.model,
                is_processing=r.is_processing,
                uptime_sec=round(now - r.connected_at, 1),
            )
            for r in registry.snapshot()
        ]

    @app.websocket("/ws")
    async def ws_session(ws: WebSocket) -> None:
        await ws.accept()
        record = registry.open(ws)
        log.info("event=session_open conn=%s remote=%s active=%d",
                 record.connection_id, ws.client, len(registry))
        await _send(record, ConnectionEstablished(connection_id=record.connection_id))
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    message = parse_client_message(raw)
                except ProtocolError as exc:
                    log.warning("event=bad_message conn=%s error=%.200s", record.connection_id, exc)
                    continue
                await handle_client_message(record, message, gateway)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            log.error("event=session_error conn=%s error=%s", record.connection_id, exc, exc_info=True)
        finally:
            registry.close(record.connection_id)
            log.info("event=session_closed conn=%s active=%d", record.connection_id, len(registry))

    return app


app = create_app()


def main() -> None:
    config: VoiceRelayConfig = app.state.config
    host = os.getenv("VOICE_RELAY_HOST", config.server.host)
    port = int(os.getenv("VOICE_RELAY_PORT") or os.getenv("PORT") or config.server.port)
    log.info("event=server_listen host=%s port=%d", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
