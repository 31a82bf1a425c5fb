"""
transport.py — Voice Relay · Client transport session
=====================================================
One duplex websocket to the server, reconnected forever at a fixed
backoff.  Incoming frames are decoded with protocol.parse_server_message
and handed to ``on_message``; connection changes go to ``on_status``.

send() never blocks or queues: on a closed channel it returns False and
asks the connect loop to retry right away.  Holding the unsent request is
the Turn Controller's business (its pending slot).
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import websockets

from .protocol import ProtocolError, parse_server_message

log = logging.getLogger("voice_relay.transport")

RECONNECT_DELAY = 3.0  # seconds


class ClientTransport:
    def __init__(
        self,
        url: str,
        on_message: Callable[[Any], None],
        on_status: Optional[Callable[[str], None]] = None,
        *,
        reconnect_delay: float = RECONNECT_DELAY,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._on_status = on_status
        self._reconnect_delay = reconnect_delay
        self._connect = connect

        self._ws: Optional[Any] = None
        self._connected = False
        self._closing = False
        self._reported_down = False
        self._reconnect_now = asyncio.Event()

        self.attempts = 0

    @property
    def connected(self) -> bool:
        return self._connected

    def _status(self, status: str) -> None:
        if self._on_status is not None:
            self._on_status(status)

    # -- connect loop --------------------------------------------------------

    async def run(self) -> None:
        """Connect, pump messages, and reconnect after every drop until close()."""
        while not self._closing:
            self.attempts += 1
            log.info("event=ws_connecting url=%s attempt=%d", self._url, self.attempts)
            try:
                async with self._connect(self._url) as ws:
                    self._ws = ws
                    self._connected = True
                    self._reported_down = False
                    log.info("event=ws_connected url=%s", self._url)
                    self._status("connected")
                    async for raw in ws:
                        self._dispatch(raw)
                log.info("event=ws_closed reason=server")
            except (websockets.exceptions.WebSocketException, OSError) as exc:
                log.warning("event=ws_error error=%s attempt=%d", exc, self.attempts)
            finally:
                self._ws = None
                self._connected = False

            if self._closing:
                break

            # Tell the user once per outage, not once per attempt
            if not self._reported_down:
                self._reported_down = True
                self._status("disconnected")

            log.info("event=ws_reconnect_wait delay=%.1fs", self._reconnect_delay)
            await self._wait_backoff()

        log.info("event=ws_transport_stopped attempts=%d", self.attempts)

    async def _wait_backoff(self) -> None:
        try:
            await asyncio.wait_for(self._reconnect_now.wait(), timeout=self._reconnect_delay)
            log.info("event=ws_reconnect_early")
        except asyncio.TimeoutError:
            pass
        self._reconnect_now.clear()

    def request_reconnect(self) -> None:
        """Cut the current backoff short."""
        self._reconnect_now.set()

    def _dispatch(self, raw: Any) -> None:
        try:
            message = parse_server_message(raw)
        except ProtocolError as exc:
            log.warning("event=ws_bad_frame error=%.200s", exc)
            return
        log.debug("event=ws_message type=%s", message.type)
        self._on_message(message)

    # -- outgoing ------------------------------------------------------------

    async def send(self, message: dict) -> bool:
        """Send *message* as JSON.  False (plus a reconnect) when the channel is down."""
        ws = self._ws
        if ws is None or not self._connected:
            log.warning("event=ws_send_skipped type=%s reason=not_connected", message.get("type"))
            self.request_reconnect()
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except websockets.exceptions.ConnectionClosed as exc:
            log.warning("event=ws_send_failed type=%s error=%s", message.get("type"), exc)
            self.request_reconnect()
            return False

    async def close(self) -> None:
        self._closing = True
        self._reconnect_now.set()
        ws = self._ws
        if ws is not None:
            await ws.close()
