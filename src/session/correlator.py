"""Resolve the logical call/transfer/relocation an application is looking at."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from domain.models import Call, Entity, Relocation, Transfer
from registry.store import EntityRecord, EntityRegistry


@dataclass(frozen=True, slots=True)
class CallSession:
    """A call together with whatever is currently happening to it."""

    call: Call | None
    transfer: Transfer | None = None
    relocation: Relocation | None = None

    @property
    def busy(self) -> bool:
        return self.transfer is not None or self.relocation is not None


def _rank(record: EntityRecord) -> tuple[float, int, int]:
    # Latest update first, then the entity created by the latest command
    # (observed-only entities carry 0), then the latest registry write.
    return (record.updated_at, record.issued_by, record.stamp)


class SessionCorrelator:
    def __init__(self, registry: EntityRegistry) -> None:
        self._registry = registry

    def resolve_current_call(self) -> Call | None:
        return self._pick(Call)

    def resolve_active_transfer(self, call_id: str) -> Transfer | None:
        return self._pick(Transfer, lambda transfer: transfer.initiator_call == call_id)

    def resolve_active_relocation(self, call_id: str) -> Relocation | None:
        return self._pick(Relocation, lambda relocation: relocation.initiator_call == call_id)

    def resolve_call_session(self, call_id: str | None = None) -> CallSession:
        """Bundle a call with its active transfer and relocation.

        Without ``call_id`` the current call is used.
        """

        if call_id is None:
            call = self.resolve_current_call()
            if call is None:
                return CallSession(call=None)
            call_id = call.id
        else:
            call = self._registry.get(Call, call_id)
        return CallSession(
            call=call,
            transfer=self.resolve_active_transfer(call_id),
            relocation=self.resolve_active_relocation(call_id),
        )

    def _pick(self, kind: type[Entity], predicate: Callable[..., bool] | None = None):
        records = [
            record
            for record in self._registry.records(kind, predicate)
            if not record.entity.is_terminal
        ]
        if not records:
            return None
        return max(records, key=_rank).entity
