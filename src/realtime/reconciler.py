"""Merge real-time notifications into the entity registry."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Mapping
from typing import Any

from pydantic import ValidationError

from realtime.events import MalformedEvent, RealtimeEvent, parse_event
from registry.store import EntityRegistry

LOGGER = logging.getLogger(__name__)


class EventReconciler:
    """Single consumer of the inbound event stream of one client.

    Events are stamped when they arrive (``submit``) and applied in that order
    by ``run``; the gap between the two is what lets the registry tell an event
    that predates a command from one that follows it. Nothing here raises on
    bad input: a broken event is logged and dropped so it cannot stall the
    tracking of unrelated entities.
    """

    def __init__(self, registry: EntityRegistry) -> None:
        self._registry = registry
        self._queue: asyncio.Queue[RealtimeEvent] = asyncio.Queue()
        self.applied = 0
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, message: RealtimeEvent | Mapping[str, Any]) -> RealtimeEvent | None:
        """Stamp an incoming event with its arrival order and queue it."""

        if isinstance(message, RealtimeEvent):
            event: RealtimeEvent | None = message
        else:
            try:
                event = parse_event(message)
            except MalformedEvent as exc:
                self.dropped += 1
                LOGGER.warning("Dropping malformed event: %s", exc)
                return None
            except Exception:
                self.dropped += 1
                LOGGER.exception("Dropping event that could not be parsed")
                return None
        if event is None:
            return None

        if event.arrival is None:
            event = event.model_copy(update={"arrival": self._registry.next_stamp()})
        self._queue.put_nowait(event)
        return event

    async def consume(self, stream: AsyncIterable[Mapping[str, Any]]) -> None:
        async for message in stream:
            self.submit(message)

    async def run(self) -> None:
        """Apply queued events forever, in arrival order."""

        while True:
            event = await self._queue.get()
            try:
                self.apply(event)
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Apply everything queued so far without waiting for more."""

        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                self.apply(event)
            finally:
                self._queue.task_done()

    def apply(self, event: RealtimeEvent) -> bool:
        """Merge one event; returns False when it was discarded or dropped."""

        kind = event.kind
        try:
            if event.last_write_wins:
                self._registry.upsert(kind.model_validate({**event.fields, "id": event.entity_id}))
                applied = True
            elif event.is_terminal:
                fields = {**event.fields, "status": event.terminal_status}
                self._registry.retire(kind, event.entity_id, fields)
                applied = True
            else:
                applied = self._registry.apply_event(
                    kind,
                    event.entity_id,
                    event.fields,
                    revision=event.revision,
                    arrival=event.arrival,
                )
        except (ValidationError, ValueError, TypeError) as exc:
            self.dropped += 1
            LOGGER.warning("Dropping %s for %s: %s", type(event).__name__, event.entity_id, exc)
            return False
        except Exception:
            self.dropped += 1
            LOGGER.exception("Failed to apply %s for %s", type(event).__name__, event.entity_id)
            return False

        if applied:
            self.applied += 1
        return applied
