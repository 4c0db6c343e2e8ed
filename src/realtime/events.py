"""Typed real-time events and the mapping from websocket envelopes onto them."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from domain import parsers
from domain.models import Call, Entity, Presence, Relocation, SwitchboardCall, Transfer

LOGGER = logging.getLogger(__name__)


class MalformedEvent(ValueError):
    """The envelope names a known event but its payload cannot be used."""


class RealtimeEvent(BaseModel):
    """Base for every event the reconciler understands.

    ``fields`` holds only the entity fields present in the payload; the
    reconciler merges them into whatever the registry already knows.
    """

    model_config = ConfigDict(frozen=True)

    kind: ClassVar[type[Entity]]
    terminal_status: ClassVar[str | None] = None
    last_write_wins: ClassVar[bool] = False

    entity_id: str = Field(min_length=1)
    fields: dict[str, Any] = Field(default_factory=dict)
    revision: int | None = None
    arrival: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.terminal_status is not None


class CallCreated(RealtimeEvent):
    kind = Call


class CallUpdated(RealtimeEvent):
    kind = Call


class CallEnded(RealtimeEvent):
    kind = Call
    terminal_status = "ended"


class TransferCreated(RealtimeEvent):
    kind = Transfer


class TransferUpdated(RealtimeEvent):
    kind = Transfer


class TransferCompleted(RealtimeEvent):
    kind = Transfer
    terminal_status = "completed"


class TransferCancelled(RealtimeEvent):
    kind = Transfer
    terminal_status = "cancelled"


class RelocationUpdated(RealtimeEvent):
    kind = Relocation


class RelocationCompleted(RealtimeEvent):
    kind = Relocation
    terminal_status = "completed"


class RelocationCancelled(RealtimeEvent):
    kind = Relocation
    terminal_status = "cancelled"


class PresenceChanged(RealtimeEvent):
    kind = Presence
    last_write_wins = True


class SwitchboardCallMoved(RealtimeEvent):
    kind = SwitchboardCall


FieldExtractor = Callable[[Mapping[str, Any]], tuple[str, dict[str, Any]]]


def _call(data: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    return parsers.entity_id(data, "call_id", "id"), parsers.call_fields(data)


def _transfer(data: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    return parsers.entity_id(data, "id", "uuid", "transfer_id"), parsers.transfer_fields(data)


def _relocation(data: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    return parsers.entity_id(data, "uuid", "id"), parsers.relocation_fields(data)


def _user_presence(data: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    presence = parsers.parse_user_presence(data)
    return presence.id, {"subject": presence.subject, "status": presence.status}


def _line_presence(data: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    presence = parsers.parse_line_presence(data)
    return presence.id, {"subject": presence.subject, "status": presence.status}


def _switchboard_call(data: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    return parsers.entity_id(data, "call_id", "id"), parsers.switchboard_call_fields(data)


# wire name -> (event class, payload extractor, fields implied by the name)
WIRE_EVENTS: dict[str, tuple[type[RealtimeEvent], FieldExtractor, dict[str, Any]]] = {
    "call_created": (CallCreated, _call, {}),
    "call_updated": (CallUpdated, _call, {}),
    "call_ended": (CallEnded, _call, {}),
    "transfer_created": (TransferCreated, _transfer, {}),
    "transfer_updated": (TransferUpdated, _transfer, {}),
    "transfer_answered": (TransferUpdated, _transfer, {"status": "answered"}),
    "transfer_completed": (TransferCompleted, _transfer, {}),
    "transfer_cancelled": (TransferCancelled, _transfer, {}),
    "transfer_abandoned": (TransferCancelled, _transfer, {}),
    "relocate_initiated": (RelocationUpdated, _relocation, {"status": "initiated"}),
    "relocate_answered": (RelocationUpdated, _relocation, {"status": "answered"}),
    "relocate_completed": (RelocationCompleted, _relocation, {}),
    "relocate_ended": (RelocationCancelled, _relocation, {}),
    "user_status_update": (PresenceChanged, _user_presence, {}),
    "line_status_updated": (PresenceChanged, _line_presence, {}),
    "switchboard_call_moved": (SwitchboardCallMoved, _switchboard_call, {}),
}


def parse_event(message: Mapping[str, Any]) -> RealtimeEvent | None:
    """Build a typed event from a ``{"name": ..., "data": {...}}`` envelope.

    Returns None for event names the SDK does not track; raises
    :class:`MalformedEvent` when a tracked event cannot be interpreted.
    """

    name = str(message.get("name") or "")
    entry = WIRE_EVENTS.get(name)
    if entry is None:
        LOGGER.debug("Ignoring untracked event %r", name)
        return None

    event_cls, extract, implied = entry
    data = message.get("data")
    if not isinstance(data, Mapping):
        raise MalformedEvent(f"{name} carries no data object")

    try:
        entity_id, fields = extract(data)
        revision = _revision(message, data)
        return event_cls(entity_id=entity_id, fields={**fields, **implied}, revision=revision)
    except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as exc:
        raise MalformedEvent(f"{name}: {exc}") from exc


def _revision(message: Mapping[str, Any], data: Mapping[str, Any]) -> int | None:
    raw = parsers.first_present(message, "revision")
    if raw is None:
        raw = parsers.first_present(data, "revision", "sequence")
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise ValueError("revision must be an integer")
    return int(raw)
