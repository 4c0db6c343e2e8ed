"""Websocket connection delivering call-control events."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from typing import Any
from urllib.parse import urlencode

import websockets

from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)

PROTOCOL_VERSION = 2


class RealtimeChannel:
    """Keeps one websocket subscription alive and yields event envelopes.

    Reconnects forever; ``on_connected`` runs after every successful
    (re)subscription so the owner can resynchronise what it may have missed.
    """

    def __init__(
        self,
        token_provider: Callable[[], str],
        settings: Settings | None = None,
        *,
        event_names: Iterable[str] | None = None,
        on_connected: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._base_url = settings.websocket_url
        self._token_provider = token_provider
        self._event_names = tuple(event_names or settings.event_names)
        self._ping_interval = settings.websocket_ping_interval
        self._reconnect_delay = settings.websocket_reconnect_delay
        self._on_connected = on_connected

    def url(self) -> str:
        base = self._base_url
        if base.startswith("https://"):
            base = "wss://" + base.removeprefix("https://")
        elif base.startswith("http://"):
            base = "ws://" + base.removeprefix("http://")
        elif not base.startswith(("ws://", "wss://")):
            base = "wss://" + base

        query = urlencode({"token": self._token_provider(), "version": PROTOCOL_VERSION})
        return f"{base}/?{query}"

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        async for ws in self._ws_connect_loop():
            try:
                await self._subscribe(ws)
                if self._on_connected is not None:
                    await self._on_connected()
                async for message in ws:
                    envelope = decode_message(message)
                    if envelope is not None:
                        yield envelope
            except websockets.ConnectionClosed as exc:
                LOGGER.warning("Event channel closed (%s); reconnecting", exc)
            except Exception:
                LOGGER.exception("Event channel crashed; reconnecting")
            await asyncio.sleep(self._reconnect_delay)

    async def _subscribe(self, ws: Any) -> None:
        for name in self._event_names:
            await ws.send(json.dumps({"op": "subscribe", "data": {"event_name": name}}))
        await ws.send(json.dumps({"op": "start"}))
        LOGGER.info("Subscribed to %d event types", len(self._event_names))

    async def _ws_connect_loop(self) -> AsyncIterator[Any]:
        while True:
            try:
                async with websockets.connect(
                    self.url(),
                    ping_interval=self._ping_interval,
                    ping_timeout=self._ping_interval,
                ) as ws:
                    yield ws
            except (OSError, websockets.InvalidHandshake, websockets.InvalidURI):
                LOGGER.exception("Failed to connect to event channel; retrying")
                await asyncio.sleep(self._reconnect_delay)


def decode_message(message: str | bytes) -> dict[str, Any] | None:
    """Unwrap a protocol frame into an event envelope, or None for control frames."""

    try:
        frame = json.loads(message)
    except (json.JSONDecodeError, UnicodeDecodeError):
        LOGGER.warning("Discarding undecodable frame")
        return None
    if not isinstance(frame, dict):
        return None

    op = frame.get("op")
    if op is None:
        return frame if "name" in frame else None
    if op != "event":
        if frame.get("code") not in (None, 0):
            LOGGER.warning("Event channel rejected %s: %s", op, frame.get("msg") or frame.get("code"))
        return None

    data = frame.get("data")
    return data if isinstance(data, dict) else None
