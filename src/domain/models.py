"""Pydantic snapshots of the call-related entities tracked by the SDK."""

from __future__ import annotations

from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

CallStatus = Literal["ringing", "talking", "held", "ended"]
CallDirection = Literal["inbound", "outbound"]
TransferFlow = Literal["blind", "attended"]
TransferStatus = Literal["initiated", "ringback", "answered", "completed", "cancelled"]
RelocationStatus = Literal["initiated", "answered", "completed", "cancelled"]
SwitchboardQueue = Literal["held", "queued"]
SwitchboardStatus = Literal["waiting", "answered"]
PresenceSubject = Literal["user", "line"]

TRANSFER_FLOWS: frozenset[str] = frozenset({"blind", "attended"})


class Entity(BaseModel):
    """Common base for every snapshot kept in the registry.

    Snapshots are immutable; the registry replaces them on every merge.
    """

    model_config = ConfigDict(frozen=True)

    terminal_statuses: ClassVar[frozenset[str]] = frozenset()

    id: str

    @property
    def is_terminal(self) -> bool:
        status = getattr(self, "status", None)
        return status in self.terminal_statuses


class Call(Entity):
    terminal_statuses: ClassVar[frozenset[str]] = frozenset({"ended"})

    line_id: int | None = None
    extension: str | None = None
    caller_id_name: str | None = None
    direction: CallDirection | None = None
    status: CallStatus = "ringing"
    muted: bool = False
    user_uuid: str | None = None


class Transfer(Entity):
    terminal_statuses: ClassVar[frozenset[str]] = frozenset({"completed", "cancelled"})

    initiator_call: str | None = None
    transferred_call: str | None = None
    recipient_call: str | None = None
    exten: str | None = None
    flow: TransferFlow = "attended"
    status: TransferStatus = "initiated"


class Relocation(Entity):
    """A call moved to another line or contact of the same user."""

    terminal_statuses: ClassVar[frozenset[str]] = frozenset({"completed", "cancelled"})

    initiator_call: str | None = None
    relocated_call: str | None = None
    recipient_call: str | None = None
    destination: str | None = None
    line_id: int | None = None
    contact: str | None = None
    completions: tuple[str, ...] = ("answer",)
    status: RelocationStatus = "initiated"

    @model_validator(mode="after")
    def single_location(self) -> Relocation:
        if self.line_id is not None and self.contact is not None:
            raise ValueError("A relocation targets either a line or a contact, not both.")
        return self


class SwitchboardCall(Entity):
    switchboard_id: str
    queue: SwitchboardQueue = "queued"
    status: SwitchboardStatus = "waiting"
    caller_id_name: str | None = None
    caller_id_number: str | None = None
    answered_by_call: str | None = None


class Presence(Entity):
    subject: PresenceSubject = "user"
    status: str = Field(min_length=1)


ENTITY_KINDS: tuple[type[Entity], ...] = (Call, Transfer, Relocation, SwitchboardCall, Presence)
