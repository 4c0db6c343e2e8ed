"""Map raw backend JSON onto entity snapshots.

Two flavours per entity: ``parse_*`` builds a complete snapshot from a listing
or command response, ``*_fields`` extracts only the fields actually present in
a (possibly partial) event payload so they can be merged field by field.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from domain.models import Call, Presence, Relocation, SwitchboardCall, Transfer

_CALL_STATUS_MAP: dict[str, str] = {
    "up": "talking",
    "talking": "talking",
    "ringing": "ringing",
    "ring": "ringing",
    "down": "ringing",
    "dialing": "ringing",
    "held": "held",
    "ended": "ended",
    "hungup": "ended",
}

_TRANSFER_STATUS_MAP: dict[str, str] = {
    "starting": "initiated",
    "initiated": "initiated",
    "ringback": "ringback",
    "blind_transferred": "ringback",
    "answered": "answered",
    "completed": "completed",
    "cancelled": "cancelled",
    "abandoned": "cancelled",
}

_SWITCHBOARD_QUEUE_MAP: dict[str, tuple[str, str]] = {
    "held": ("held", "waiting"),
    "queued": ("queued", "waiting"),
    "answered": ("", "answered"),
}


def first_present(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def entity_id(data: Mapping[str, Any], *keys: str) -> str:
    value = first_present(data, *keys)
    if value is None:
        raise ValueError(f"Payload carries none of {', '.join(keys)}.")
    return str(value)


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def call_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}

    raw_status = data.get("status")
    on_hold = data.get("on_hold")
    if on_hold is True:
        fields["status"] = "held"
    elif isinstance(raw_status, str) and raw_status:
        status = _CALL_STATUS_MAP.get(raw_status.strip().lower())
        if status is None:
            raise ValueError(f"Unknown call status {raw_status!r}.")
        fields["status"] = status

    if "line_id" in data:
        fields["line_id"] = _optional_int(data["line_id"])
    extension = first_present(data, "peer_caller_id_number", "extension")
    if extension is not None:
        fields["extension"] = str(extension)
    name = first_present(data, "peer_caller_id_name", "caller_id_name")
    if name is not None:
        fields["caller_id_name"] = str(name)
    if "is_caller" in data:
        fields["direction"] = "outbound" if data["is_caller"] else "inbound"
    elif data.get("direction") in {"inbound", "outbound"}:
        fields["direction"] = data["direction"]
    if "muted" in data:
        fields["muted"] = bool(data["muted"])
    if data.get("user_uuid"):
        fields["user_uuid"] = str(data["user_uuid"])
    return fields


def parse_call(data: Mapping[str, Any]) -> Call:
    return Call(id=entity_id(data, "call_id", "id"), **call_fields(data))


def parse_calls(items: Iterable[Mapping[str, Any]]) -> list[Call]:
    return [parse_call(item) for item in items]


def transfer_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in ("initiator_call", "transferred_call", "recipient_call"):
        if data.get(key):
            fields[key] = str(data[key])
    exten = first_present(data, "exten", "extension")
    if exten is not None:
        fields["exten"] = str(exten)
    if data.get("flow"):
        fields["flow"] = data["flow"]
    raw_status = data.get("status")
    if isinstance(raw_status, str) and raw_status:
        status = _TRANSFER_STATUS_MAP.get(raw_status.strip().lower())
        if status is None:
            raise ValueError(f"Unknown transfer status {raw_status!r}.")
        fields["status"] = status
    return fields


def parse_transfer(data: Mapping[str, Any]) -> Transfer:
    return Transfer(id=entity_id(data, "id", "uuid", "transfer_id"), **transfer_fields(data))


def relocation_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in ("initiator_call", "relocated_call", "recipient_call", "destination"):
        if data.get(key):
            fields[key] = str(data[key])
    location = data.get("location") or {}
    if not isinstance(location, Mapping):
        raise ValueError(f"Relocation location must be an object, got {type(location).__name__}.")
    if location.get("line_id") is not None:
        fields["line_id"] = _optional_int(location["line_id"])
    if location.get("contact"):
        fields["contact"] = str(location["contact"])
    if data.get("completions"):
        fields["completions"] = tuple(str(item) for item in data["completions"])
    return fields


def parse_relocation(data: Mapping[str, Any]) -> Relocation:
    return Relocation(id=entity_id(data, "uuid", "id"), **relocation_fields(data))


def switchboard_call_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    switchboard_id = first_present(data, "switchboard_uuid", "switchboard_id")
    if switchboard_id is not None:
        fields["switchboard_id"] = str(switchboard_id)
    raw_queue = data.get("queue")
    if raw_queue:
        try:
            queue, status = _SWITCHBOARD_QUEUE_MAP[str(raw_queue).lower()]
        except KeyError:
            raise ValueError(f"Unknown switchboard queue {raw_queue!r}.") from None
        if queue:
            fields["queue"] = queue
        fields["status"] = status
    for key in ("caller_id_name", "caller_id_number", "answered_by_call"):
        if data.get(key):
            fields[key] = str(data[key])
    return fields


def parse_switchboard_calls(
    switchboard_id: str,
    queue: str,
    items: Iterable[Mapping[str, Any]],
) -> list[SwitchboardCall]:
    return [
        SwitchboardCall(
            id=entity_id(item, "id", "call_id"),
            switchboard_id=switchboard_id,
            queue=queue,
            caller_id_name=item.get("caller_id_name"),
            caller_id_number=item.get("caller_id_number"),
        )
        for item in items
    ]


def parse_user_presence(data: Mapping[str, Any]) -> Presence:
    return Presence(
        id=entity_id(data, "user_uuid", "uuid"),
        subject="user",
        status=str(first_present(data, "presence", "status") or ""),
    )


def parse_line_presence(data: Mapping[str, Any], line_uuid: str | None = None) -> Presence:
    identifier = line_uuid or entity_id(data, "line_uuid", "line_id", "id")
    return Presence(
        id=str(identifier),
        subject="line",
        status=str(first_present(data, "presence", "status") or ""),
    )
