"""Classify raw backend outcomes into a uniform success/failure contract."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from control.errors import ERRORS_BY_KIND, CallControlError, FailureKind
from domain.models import Entity
from transport.requester import RawResponse, TransportFailure

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Intent:
    """What a command is trying to do, as far as classification cares.

    ``parse`` turns a 2xx body (``None`` for empty responses) into the snapshot
    returned to the caller. ``idempotent_terminal`` marks commands whose goal is
    a terminal state, so a 404 means the goal is already reached.
    """

    name: str
    kind: type[Entity] | None = None
    entity_id: str | None = None
    parse: Callable[[Any], Any] | None = None
    idempotent_terminal: bool = False

    @property
    def targets_entity(self) -> bool:
        return self.entity_id is not None


@dataclass(frozen=True, slots=True)
class Success:
    snapshot: Any = None


@dataclass(frozen=True, slots=True)
class Failure:
    kind: FailureKind
    detail: str
    status_code: int | None = None
    error_id: str | None = None

    def to_error(self) -> CallControlError:
        error_cls = ERRORS_BY_KIND[self.kind]
        return error_cls(self.detail, status_code=self.status_code, error_id=self.error_id)


Outcome = RawResponse | TransportFailure
Result = Success | Failure


def normalize(intent: Intent, outcome: Outcome, *, already_terminal: bool = False) -> Result:
    """Classify ``outcome``.

    ``already_terminal`` tells the normalizer the client has already seen the
    targeted entity reach a terminal state; a terminal-goal intent rejected as
    a conflict then counts as done.
    """

    if isinstance(outcome, TransportFailure):
        return Failure("unreachable", str(outcome))

    status = outcome.status_code
    if 200 <= status < 300:
        return _parse_success(intent, outcome.body)

    detail, error_id = _error_detail(outcome.body, status)
    if status in (401, 403):
        return Failure("unauthorized", detail, status, error_id)
    if status == 404:
        if intent.idempotent_terminal:
            LOGGER.debug("%s on %s: already terminal", intent.name, intent.entity_id)
            return _parse_success(intent, None)
        if intent.targets_entity:
            return Failure("not_found", detail, status, error_id)
        return Failure("conflict", detail, status, error_id)
    if status == 429:
        return Failure("transient", detail, status, error_id)
    if 400 <= status < 500:
        if intent.idempotent_terminal and already_terminal:
            LOGGER.debug("%s on %s rejected (%s) but already terminal", intent.name, intent.entity_id, status)
            return _parse_success(intent, None)
        return Failure("conflict", detail, status, error_id)
    return Failure("transient", detail, status, error_id)


def _parse_success(intent: Intent, body: Any) -> Result:
    if intent.parse is None:
        return Success(body)
    try:
        return Success(intent.parse(body))
    except (ValidationError, ValueError, KeyError, TypeError, AttributeError) as exc:
        LOGGER.warning("%s returned an unexpected body: %s", intent.name, exc)
        return Failure("transient", f"Malformed response to {intent.name}: {exc}")


def _error_detail(body: Any, status: int) -> tuple[str, str | None]:
    if isinstance(body, dict):
        message = body.get("message") or body.get("reason")
        if isinstance(message, list):
            message = "; ".join(str(item) for item in message)
        error_id = body.get("error_id")
        if message:
            return str(message), str(error_id) if error_id else None
        return f"HTTP {status}", str(error_id) if error_id else None
    if isinstance(body, str) and body.strip():
        return body.strip(), None
    return f"HTTP {status}", None
