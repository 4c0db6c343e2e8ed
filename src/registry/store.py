"""In-memory authoritative store of call-related entities.

Both writers funnel through the same merge rule:

* every write is tagged with a registry stamp (a counter, so arrival order at
  the registry). Events carry the stamp taken when they arrived, optimistic
  command updates carry the stamp taken when the command was issued;
* each field remembers the stamp of its last writer, and a write only replaces
  a field whose stamp is older. An event that arrived after a command was
  issued therefore overrides that command's optimistic value, while an event
  that arrived before it cannot clobber it;
* commands against the same entity also carry a per-entity sequence number and
  a response from an older command is dropped outright;
* events may carry a backend revision. Each field also remembers the revision
  that last wrote it, and an event only loses the fields a newer revision
  already wrote. Terminal events always apply.

Terminal entities leave the visible view immediately and are kept as
tombstones until the retention window closes, so late writes cannot bring them
back. The store is not thread-safe; it relies on running inside a single event
loop.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from domain.models import ENTITY_KINDS, Entity

LOGGER = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)

EntityKey = tuple[type[Entity], str]


@dataclass(frozen=True, slots=True)
class CommandTicket:
    """Handed out when a command is issued, presented again with its result."""

    seq: int
    issued: int
    key: EntityKey | None = None


@dataclass(slots=True)
class EntityRecord:
    entity: Entity
    stamp: int
    updated_at: float
    revision: int | None = None
    command_seq: int = 0
    issued_by: int = 0
    markers: dict[str, int] = field(default_factory=dict)
    revisions: dict[str, int] = field(default_factory=dict)

    @property
    def created_by_command(self) -> bool:
        return self.issued_by > 0


@dataclass(slots=True)
class Tombstone:
    entity: Entity
    stamp: int
    retired_at: float


class EntityRegistry:
    def __init__(
        self,
        *,
        retention_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._retention_seconds = retention_seconds
        self._clock = clock
        self._counter = itertools.count(1)
        self._records: dict[type[Entity], dict[str, EntityRecord]] = {kind: {} for kind in ENTITY_KINDS}
        self._tombstones: dict[type[Entity], dict[str, Tombstone]] = {kind: {} for kind in ENTITY_KINDS}
        self._issued_seq: dict[EntityKey, int] = {}
        self._pending: dict[EntityKey, int] = {}
        self._synced_from: dict[type[Entity], int] = {}

    # -- stamps -----------------------------------------------------------

    def next_stamp(self) -> int:
        return next(self._counter)

    def begin_command(self, kind: type[Entity] | None = None, entity_id: str | None = None) -> CommandTicket:
        """Reserve ordering markers for a command about to be dispatched."""

        issued = self.next_stamp()
        if kind is None or entity_id is None:
            return CommandTicket(seq=0, issued=issued)
        key = (kind, entity_id)
        seq = self._issued_seq.get(key, 0) + 1
        self._issued_seq[key] = seq
        self._pending[key] = self._pending.get(key, 0) + 1
        return CommandTicket(seq=seq, issued=issued, key=key)

    def finish_command(self, ticket: CommandTicket) -> None:
        """Release a ticket once its command has been applied or has failed."""

        key = ticket.key
        if key is None:
            return
        remaining = self._pending.get(key, 0) - 1
        if remaining > 0:
            self._pending[key] = remaining
            return
        self._pending.pop(key, None)
        kind, entity_id = key
        if entity_id not in self._records[kind] and entity_id not in self._tombstones[kind]:
            self._issued_seq.pop(key, None)

    @property
    def tracked_commands(self) -> int:
        """Number of entities whose command sequence is still remembered."""

        return len(self._issued_seq)

    # -- reads ------------------------------------------------------------

    def get(self, kind: type[E], entity_id: str) -> E | None:
        record = self.record(kind, entity_id)
        return record.entity if record else None  # type: ignore[return-value]

    def record(self, kind: type[Entity], entity_id: str) -> EntityRecord | None:
        self._purge(kind)
        return self._bucket(kind).get(entity_id)

    def query(self, kind: type[E], predicate: Callable[[E], bool] | None = None) -> list[E]:
        return [record.entity for record in self.records(kind, predicate)]  # type: ignore[misc]

    def records(self, kind: type[E], predicate: Callable[[E], bool] | None = None) -> list[EntityRecord]:
        self._purge(kind)
        return [
            record
            for record in self._bucket(kind).values()
            if predicate is None or predicate(record.entity)  # type: ignore[arg-type]
        ]

    def retired(self, kind: type[E], entity_id: str) -> E | None:
        """Return the last terminal snapshot of an entity still within retention."""

        self._purge(kind)
        tombstone = self._tombstones[kind].get(entity_id)
        return tombstone.entity if tombstone else None  # type: ignore[return-value]

    def __contains__(self, key: EntityKey) -> bool:
        kind, entity_id = key
        return self.record(kind, entity_id) is not None

    # -- writes -----------------------------------------------------------

    def upsert(self, entity: Entity) -> Entity:
        """Store a full snapshot, last write wins."""

        kind = type(entity)
        stamp = self.next_stamp()
        if entity.is_terminal:
            return self._retire(kind, entity, stamp)
        previous = self._bucket(kind).get(entity.id)
        self._bucket(kind)[entity.id] = EntityRecord(
            entity=entity,
            stamp=stamp,
            updated_at=self._clock(),
            revision=previous.revision if previous else None,
            command_seq=previous.command_seq if previous else 0,
            issued_by=previous.issued_by if previous else 0,
            markers={name: stamp for name in _field_names(entity)},
            revisions=dict(previous.revisions) if previous else {},
        )
        return entity

    def remove(self, kind: type[Entity], entity_id: str) -> Entity | None:
        self._tombstones[kind].pop(entity_id, None)
        record = self._bucket(kind).pop(entity_id, None)
        self._forget(kind, entity_id)
        return record.entity if record else None

    def apply_optimistic(self, entity: Entity, ticket: CommandTicket) -> bool:
        """Merge the provisional snapshot of an accepted command.

        Only the fields explicitly set on ``entity`` are merged. Returns False
        when the write was dropped as stale.
        """

        kind = type(entity)
        fields = entity.model_dump(exclude_unset=True)
        fields.pop("id", None)

        record = self._bucket(kind).get(entity.id)
        if record is not None and ticket.seq and ticket.seq < record.command_seq:
            LOGGER.debug("Dropping stale command result for %s %s", kind.__name__, entity.id)
            return False

        if entity.id in self._tombstones[kind]:
            return entity.is_terminal

        if record is None:
            stamp = self.next_stamp()
            if entity.is_terminal:
                self._retire(kind, entity, stamp)
                return True
            self._bucket(kind)[entity.id] = EntityRecord(
                entity=entity,
                stamp=stamp,
                updated_at=self._clock(),
                command_seq=ticket.seq,
                issued_by=ticket.issued,
                markers={name: ticket.issued for name in fields},
            )
            return True

        record.command_seq = max(record.command_seq, ticket.seq)
        if entity.is_terminal:
            merged = _merge(record.entity, fields)
            self._retire(kind, merged, self.next_stamp())
            return True

        accepted = {name: value for name, value in fields.items() if ticket.issued > record.markers.get(name, 0)}
        if not accepted:
            LOGGER.debug("Events superseded command result for %s %s", kind.__name__, entity.id)
            return False
        self._write(record, accepted, ticket.issued)
        return True

    def apply_event(
        self,
        kind: type[Entity],
        entity_id: str,
        fields: dict[str, Any],
        *,
        revision: int | None = None,
        arrival: int | None = None,
    ) -> bool:
        """Merge an authoritative, possibly partial, state update.

        Unknown entities are seeded from the payload. Returns False when the
        event was discarded.
        """

        arrival = arrival if arrival is not None else self.next_stamp()
        record = self._bucket(kind).get(entity_id)
        if entity_id in self._tombstones[kind]:
            LOGGER.debug("Ignoring update for retired %s %s", kind.__name__, entity_id)
            return False

        if record is None:
            entity = kind.model_validate({**fields, "id": entity_id})
            if entity.is_terminal:
                self._retire(kind, entity, self.next_stamp())
                return True
            self._bucket(kind)[entity_id] = EntityRecord(
                entity=entity,
                stamp=self.next_stamp(),
                updated_at=self._clock(),
                revision=revision,
                markers={name: arrival for name in fields},
                revisions={name: revision for name in fields} if revision is not None else {},
            )
            return True

        accepted: dict[str, Any] = {}
        stale: list[str] = []
        for name, value in fields.items():
            if revision is not None and revision < record.revisions.get(name, revision):
                stale.append(name)
            elif arrival > record.markers.get(name, 0):
                accepted[name] = value

        if revision is not None:
            record.revision = revision if record.revision is None else max(record.revision, revision)
        if stale and not accepted:
            LOGGER.debug(
                "Discarding stale event for %s %s (revision %s < %s)",
                kind.__name__,
                entity_id,
                revision,
                record.revision,
            )
            return False
        if accepted:
            self._write(record, accepted, arrival, revision)
        return True

    def retire(
        self,
        kind: type[Entity],
        entity_id: str,
        fields: dict[str, Any] | None = None,
    ) -> Entity | None:
        """Move an entity to its terminal state regardless of ordering markers."""

        tombstone = self._tombstones[kind].get(entity_id)
        if tombstone is not None:
            return tombstone.entity

        fields = dict(fields or {})
        record = self._bucket(kind).get(entity_id)
        if record is None:
            entity = kind.model_validate({**fields, "id": entity_id})
        else:
            entity = _merge(record.entity, fields)
        if not entity.is_terminal:
            raise ValueError(f"{kind.__name__} {entity_id} is not terminal after retirement.")
        return self._retire(kind, entity, self.next_stamp())

    def sync(
        self,
        kind: type[Entity],
        entities: Iterable[Entity],
        *,
        started: int,
        scope: Callable[[Any], bool] | None = None,
    ) -> list[Entity]:
        """Reconcile a full listing fetched from the backend.

        ``started`` is the stamp taken before the listing request went out:
        anything written after it is newer than the listing and is kept as is.
        Records within ``scope`` that the listing no longer contains are
        dropped. An unscoped sync also closes the retention window of the
        entities retired before it started.
        """

        bucket = self._bucket(kind)
        tombstones = self._tombstones[kind]
        listed: dict[str, Entity] = {}
        for entity in entities:
            listed[entity.id] = entity
            tombstone = tombstones.get(entity.id)
            if tombstone is not None:
                if tombstone.stamp > started:
                    continue
                del tombstones[entity.id]
            record = bucket.get(entity.id)
            if record is not None and record.stamp > started:
                continue
            if entity.is_terminal:
                self._retire(kind, entity, self.next_stamp())
                continue
            bucket[entity.id] = EntityRecord(
                entity=entity,
                stamp=self.next_stamp(),
                updated_at=self._clock(),
                revision=record.revision if record else None,
                command_seq=record.command_seq if record else 0,
                issued_by=record.issued_by if record else 0,
                markers={name: started for name in _field_names(entity)},
                revisions=dict(record.revisions) if record else {},
            )

        for entity_id, record in list(bucket.items()):
            if entity_id in listed or record.stamp > started:
                continue
            if scope is None or scope(record.entity):
                LOGGER.debug("%s %s vanished from listing", kind.__name__, entity_id)
                del bucket[entity_id]
                self._forget(kind, entity_id)

        if scope is None:
            self._synced_from[kind] = max(started, self._synced_from.get(kind, 0))
        return self.query(kind, lambda entity: entity.id in listed)

    # -- internals --------------------------------------------------------

    def _bucket(self, kind: type[Entity]) -> dict[str, EntityRecord]:
        try:
            return self._records[kind]
        except KeyError:
            raise TypeError(f"{kind!r} is not a tracked entity kind") from None

    def _write(
        self,
        record: EntityRecord,
        accepted: dict[str, Any],
        marker: int,
        revision: int | None = None,
    ) -> None:
        kind = type(record.entity)
        merged = _merge(record.entity, accepted)
        for name in accepted:
            record.markers[name] = marker
            if revision is not None:
                record.revisions[name] = revision
        if merged.is_terminal:
            self._retire(kind, merged, self.next_stamp())
            return
        record.entity = merged
        record.stamp = self.next_stamp()
        record.updated_at = self._clock()

    def _retire(self, kind: type[Entity], entity: Entity, stamp: int) -> Entity:
        self._bucket(kind).pop(entity.id, None)
        self._tombstones[kind][entity.id] = Tombstone(entity=entity, stamp=stamp, retired_at=self._clock())
        LOGGER.debug("Retired %s %s (%s)", kind.__name__, entity.id, getattr(entity, "status", None))
        return entity

    def _forget(self, kind: type[Entity], entity_id: str) -> None:
        # a command still in flight needs its sequence to reject older results
        key = (kind, entity_id)
        if key not in self._pending:
            self._issued_seq.pop(key, None)

    def _purge(self, kind: type[Entity]) -> None:
        tombstones = self._tombstones.get(kind)
        if not tombstones:
            return
        synced_from = self._synced_from.get(kind, 0)
        now = self._clock()
        expired = [
            entity_id
            for entity_id, tombstone in tombstones.items()
            if tombstone.stamp < synced_from
            or (self._retention_seconds is not None and now - tombstone.retired_at >= self._retention_seconds)
        ]
        for entity_id in expired:
            del tombstones[entity_id]
            self._forget(kind, entity_id)


def _merge(entity: E, fields: dict[str, Any]) -> E:
    if not fields:
        return entity
    data = entity.model_dump()
    data.update(fields)
    return type(entity).model_validate(data)


def _field_names(entity: Entity) -> list[str]:
    return [name for name in type(entity).model_fields if name != "id"]
