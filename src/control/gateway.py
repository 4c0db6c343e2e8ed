"""One coroutine per call-control intent.

Each operation checks its own preconditions, sends exactly one request,
classifies the outcome and, only once the backend accepted the request, writes
the provisional snapshot to the registry. Failures are raised as
:class:`control.errors.CallControlError` subclasses and leave the registry
untouched, apart from ``NotFound`` which forgets the targeted entity.

Requests run in their own task, shielded from the caller: a caller that stops
waiting does not stop the command, and its result still reaches the registry.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from control.errors import ConflictError, InvalidCommandError
from control.normalizer import Failure, Intent, normalize
from domain import parsers
from domain.models import TRANSFER_FLOWS, Call, Entity, Presence, Relocation, SwitchboardCall, Transfer
from registry.store import CommandTicket, EntityRegistry
from transport.requester import TransportFailure

if TYPE_CHECKING:  # pragma: no cover
    from session.context import ClientContext

LOGGER = logging.getLogger(__name__)

Apply = Callable[[Any, CommandTicket], Any]


def _require(value: Any, name: str) -> str:
    text = "" if value is None else str(value).strip()
    if not text:
        raise InvalidCommandError(f"{name} is required.")
    return text


def _items(body: Any) -> list[dict[str, Any]]:
    if isinstance(body, dict):
        return list(body.get("items") or [])
    if isinstance(body, list):
        return body
    raise ValueError("Listing body is neither an object nor an array.")


class CommandGateway:
    def __init__(self, context: ClientContext) -> None:
        self._context = context
        self._inflight: set[asyncio.Task[Any]] = set()

    @property
    def _registry(self) -> EntityRegistry:
        return self._context.registry

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    async def wait_idle(self) -> None:
        """Wait for every dispatched command, including abandoned ones."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # -- calls ------------------------------------------------------------

    async def make_call(
        self,
        extension: str,
        from_mobile: bool = False,
        line_id: int | None = None,
        all_lines: bool = False,
    ) -> Call:
        extension = _require(extension, "extension")
        body: dict[str, Any] = {"from_mobile": bool(from_mobile), "extension": extension}
        if all_lines:
            body["all_lines"] = True
            line_id = None
        elif line_id:
            body["line_id"] = line_id

        def parse(data: Any) -> Call:
            snapshot: dict[str, Any] = {
                "id": parsers.entity_id(data, "call_id", "id"),
                "status": "ringing",
                "direction": "outbound",
                "extension": extension,
            }
            if line_id:
                snapshot["line_id"] = line_id
            return Call(**snapshot)

        intent = Intent("make_call", Call, parse=parse)
        return await self._execute(intent, "post", "/users/me/calls", body)

    async def cancel_call(self, call_id: str) -> Call:
        call_id = _require(call_id, "call_id")
        intent = Intent(
            "cancel_call",
            Call,
            call_id,
            parse=lambda _: Call(id=call_id, status="ended"),
            idempotent_terminal=True,
        )
        return await self._execute(intent, "delete", f"/users/me/calls/{call_id}")

    async def answer_call(self, call_id: str) -> Call:
        return await self._call_action("answer_call", call_id, "answer", status="talking")

    async def hold_call(self, call_id: str) -> Call:
        return await self._call_action("hold_call", call_id, "hold/start", status="held")

    async def resume_call(self, call_id: str) -> Call:
        return await self._call_action("resume_call", call_id, "hold/stop", status="talking")

    async def mute(self, call_id: str) -> Call:
        return await self._call_action("mute", call_id, "mute/start", muted=True)

    async def unmute(self, call_id: str) -> Call:
        return await self._call_action("unmute", call_id, "mute/stop", muted=False)

    async def list_calls(self) -> list[Call]:
        intent = Intent("list_calls", parse=lambda data: parsers.parse_calls(_items(data)))

        def apply(calls: list[Call], ticket: CommandTicket) -> list[Call]:
            return self._registry.sync(Call, calls, started=ticket.issued)

        return await self._execute(intent, "get", "/users/me/calls", apply=apply)

    async def _call_action(self, name: str, call_id: str, action: str, **fields: Any) -> Call:
        call_id = _require(call_id, "call_id")
        intent = Intent(name, Call, call_id, parse=lambda _: Call(id=call_id, **fields))
        return await self._execute(intent, "put", f"/users/me/calls/{call_id}/{action}")

    # -- relocations ------------------------------------------------------

    async def relocate_call(
        self,
        call_id: str,
        destination: str,
        line_id: int | None = None,
        contact: str | None = None,
    ) -> Relocation:
        call_id = _require(call_id, "call_id")
        destination = _require(destination, "destination")
        if line_id and contact:
            raise InvalidCommandError("A relocation targets either a line or a contact, not both.")
        self._ensure_no_active(Relocation, call_id)

        body: dict[str, Any] = {
            "completions": ["answer"],
            "destination": destination,
            "initiator_call": call_id,
            "auto_answer": True,
        }
        if line_id or contact:
            body["location"] = {"line_id": line_id} if line_id else {"contact": contact}

        def parse(data: Any) -> Relocation:
            fields = parsers.relocation_fields(data)
            fields.setdefault("initiator_call", call_id)
            fields.setdefault("destination", destination)
            if line_id:
                fields.setdefault("line_id", line_id)
            if contact:
                fields.setdefault("contact", contact)
            return Relocation(id=parsers.entity_id(data, "uuid", "id"), status="initiated", **fields)

        intent = Intent("relocate_call", Relocation, parse=parse)
        return await self._execute(intent, "post", "/users/me/relocates", body)

    async def complete_relocation(self, relocation_id: str) -> Relocation:
        relocation_id = _require(relocation_id, "relocation_id")
        intent = Intent(
            "complete_relocation",
            Relocation,
            relocation_id,
            parse=lambda _: Relocation(id=relocation_id, status="completed"),
        )
        return await self._execute(intent, "put", f"/users/me/relocates/{relocation_id}/complete")

    async def cancel_relocation(self, relocation_id: str) -> Relocation:
        relocation_id = _require(relocation_id, "relocation_id")
        intent = Intent(
            "cancel_relocation",
            Relocation,
            relocation_id,
            parse=lambda _: Relocation(id=relocation_id, status="cancelled"),
            idempotent_terminal=True,
        )
        return await self._execute(intent, "put", f"/users/me/relocates/{relocation_id}/cancel")

    # -- transfers --------------------------------------------------------

    async def transfer_call(self, initiator_call: str, exten: str, flow: str = "attended") -> Transfer:
        initiator_call = _require(initiator_call, "initiator_call")
        exten = _require(exten, "exten")
        if flow not in TRANSFER_FLOWS:
            raise InvalidCommandError(f"Unsupported transfer flow {flow!r}.")
        self._ensure_no_active(Transfer, initiator_call)

        def parse(data: Any) -> Transfer:
            fields = parsers.transfer_fields(data)
            fields.setdefault("initiator_call", initiator_call)
            fields.setdefault("exten", exten)
            fields.setdefault("flow", flow)
            fields.setdefault("status", "initiated")
            return Transfer(id=parsers.entity_id(data, "id", "uuid", "transfer_id"), **fields)

        intent = Intent("transfer_call", Transfer, parse=parse)
        body = {"initiator_call": initiator_call, "exten": exten, "flow": flow}
        return await self._execute(intent, "post", "/users/me/transfers", body)

    async def confirm_transfer(self, transfer_id: str) -> Transfer:
        transfer_id = _require(transfer_id, "transfer_id")
        intent = Intent(
            "confirm_transfer",
            Transfer,
            transfer_id,
            parse=lambda _: Transfer(id=transfer_id, status="completed"),
        )
        return await self._execute(intent, "put", f"/users/me/transfers/{transfer_id}/complete")

    async def cancel_transfer(self, transfer_id: str) -> Transfer:
        transfer_id = _require(transfer_id, "transfer_id")
        intent = Intent(
            "cancel_transfer",
            Transfer,
            transfer_id,
            parse=lambda _: Transfer(id=transfer_id, status="cancelled"),
            idempotent_terminal=True,
        )
        return await self._execute(intent, "delete", f"/users/me/transfers/{transfer_id}")

    # -- switchboards -----------------------------------------------------

    async def fetch_switchboard_held_calls(self, switchboard_id: str) -> list[SwitchboardCall]:
        return await self._fetch_switchboard_calls(switchboard_id, "held")

    async def fetch_switchboard_queued_calls(self, switchboard_id: str) -> list[SwitchboardCall]:
        return await self._fetch_switchboard_calls(switchboard_id, "queued")

    async def hold_switchboard_call(self, switchboard_id: str, call_id: str) -> SwitchboardCall:
        switchboard_id = _require(switchboard_id, "switchboard_id")
        call_id = _require(call_id, "call_id")
        intent = Intent(
            "hold_switchboard_call",
            SwitchboardCall,
            call_id,
            parse=lambda _: SwitchboardCall(id=call_id, switchboard_id=switchboard_id, queue="held", status="waiting"),
        )
        return await self._execute(intent, "put", f"/switchboards/{switchboard_id}/calls/held/{call_id}")

    async def answer_switchboard_held_call(
        self,
        switchboard_id: str,
        call_id: str,
        line_id: int | None = None,
    ) -> SwitchboardCall:
        return await self._answer_switchboard_call("held", switchboard_id, call_id, line_id)

    async def answer_switchboard_queued_call(
        self,
        switchboard_id: str,
        call_id: str,
        line_id: int | None = None,
    ) -> SwitchboardCall:
        return await self._answer_switchboard_call("queued", switchboard_id, call_id, line_id)

    async def _fetch_switchboard_calls(self, switchboard_id: str, queue: str) -> list[SwitchboardCall]:
        switchboard_id = _require(switchboard_id, "switchboard_id")
        intent = Intent(
            f"fetch_switchboard_{queue}_calls",
            parse=lambda data: parsers.parse_switchboard_calls(switchboard_id, queue, _items(data)),
        )

        def in_scope(call: SwitchboardCall) -> bool:
            # answered calls belong to no queue listing any more
            if call.switchboard_id != switchboard_id:
                return False
            return call.status == "answered" or call.queue == queue

        def apply(calls: list[SwitchboardCall], ticket: CommandTicket) -> list[SwitchboardCall]:
            return self._registry.sync(SwitchboardCall, calls, started=ticket.issued, scope=in_scope)

        return await self._execute(intent, "get", f"/switchboards/{switchboard_id}/calls/{queue}", apply=apply)

    async def _answer_switchboard_call(
        self,
        queue: str,
        switchboard_id: str,
        call_id: str,
        line_id: int | None,
    ) -> SwitchboardCall:
        switchboard_id = _require(switchboard_id, "switchboard_id")
        call_id = _require(call_id, "call_id")
        path = f"/switchboards/{switchboard_id}/calls/{queue}/{call_id}/answer"
        if line_id:
            path = f"{path}?{urlencode({'line_id': line_id})}"

        def parse(data: Any) -> SwitchboardCall:
            fields: dict[str, Any] = {}
            if isinstance(data, dict) and data.get("call_id"):
                fields["answered_by_call"] = str(data["call_id"])
            return SwitchboardCall(id=call_id, switchboard_id=switchboard_id, status="answered", **fields)

        intent = Intent(f"answer_switchboard_{queue}_call", SwitchboardCall, call_id, parse=parse)
        return await self._execute(intent, "put", path)

    # -- presence ---------------------------------------------------------

    async def update_presence(self, presence: str) -> Presence:
        presence = _require(presence, "presence")
        user_uuid = self._context.user_uuid
        intent = Intent(
            "update_presence",
            Presence,
            parse=lambda _: Presence(id=user_uuid or "me", subject="user", status=presence),
        )

        def apply(snapshot: Presence, ticket: CommandTicket) -> Presence:
            if user_uuid:
                self._registry.upsert(snapshot)
            return snapshot

        return await self._execute(intent, "put", "/users/me/presences", {"presence": presence}, apply=apply)

    async def get_presence(self, user_uuid: str) -> Presence:
        user_uuid = _require(user_uuid, "user_uuid")
        intent = Intent(
            "get_presence",
            Presence,
            user_uuid,
            parse=lambda data: parsers.parse_user_presence({"user_uuid": user_uuid, **(data or {})}),
        )
        return await self._execute(intent, "get", f"/users/{user_uuid}/presences", apply=self._upsert)

    async def get_line_status(self, line_uuid: str) -> Presence:
        line_uuid = _require(line_uuid, "line_uuid")
        intent = Intent(
            "get_line_status",
            Presence,
            line_uuid,
            parse=lambda data: parsers.parse_line_presence(data or {}, line_uuid),
        )
        return await self._execute(intent, "get", f"/lines/{line_uuid}/presences", apply=self._upsert)

    # -- plumbing ---------------------------------------------------------

    def _ensure_no_active(self, kind: type[Transfer] | type[Relocation], call_id: str) -> None:
        active = self._registry.query(kind, lambda entity: entity.initiator_call == call_id)
        if active:
            raise ConflictError(f"Call {call_id} already has an active {kind.__name__.lower()} ({active[0].id}).")

    def _upsert(self, snapshot: Entity, ticket: CommandTicket) -> Entity:
        return self._registry.upsert(snapshot)

    def _optimistic(self, snapshot: Any, ticket: CommandTicket) -> Any:
        if not isinstance(snapshot, Entity):
            return snapshot
        self._registry.apply_optimistic(snapshot, ticket)
        kind = type(snapshot)
        return self._registry.get(kind, snapshot.id) or self._registry.retired(kind, snapshot.id) or snapshot

    async def _execute(
        self,
        intent: Intent,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        apply: Apply | None = None,
    ) -> Any:
        ticket = self._registry.begin_command(intent.kind, intent.entity_id)
        task = asyncio.create_task(self._dispatch(intent, ticket, method, path, body, apply or self._optimistic))
        self._inflight.add(task)
        task.add_done_callback(self._settle)
        return await asyncio.shield(task)

    async def _dispatch(
        self,
        intent: Intent,
        ticket: CommandTicket,
        method: str,
        path: str,
        body: dict[str, Any] | None,
        apply: Apply,
    ) -> Any:
        send = getattr(self._context.requester, method)
        try:
            try:
                outcome = await send(path, body, self._context.token)
            except TransportFailure as exc:
                outcome = exc

            result = normalize(intent, outcome, already_terminal=self._already_terminal(intent))
            if isinstance(result, Failure):
                LOGGER.info("%s failed (%s): %s", intent.name, result.kind, result.detail)
                if result.kind == "not_found" and intent.kind is not None and intent.entity_id is not None:
                    self._registry.remove(intent.kind, intent.entity_id)
                raise result.to_error()
            return apply(result.snapshot, ticket)
        finally:
            self._registry.finish_command(ticket)

    def _already_terminal(self, intent: Intent) -> bool:
        if not intent.idempotent_terminal or intent.kind is None or intent.entity_id is None:
            return False
        return self._registry.retired(intent.kind, intent.entity_id) is not None

    def _settle(self, task: asyncio.Task[Any]) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.debug("Command task finished with %s", type(exc).__name__)
