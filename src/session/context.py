"""Per-client context wiring the SDK components together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from config.settings import Settings, get_settings
from control.gateway import CommandGateway
from realtime.channel import RealtimeChannel
from realtime.reconciler import EventReconciler
from registry.store import EntityRegistry
from session.correlator import SessionCorrelator
from transport.requester import ApiRequester

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientContext:
    """State owned by one client instance, handed explicitly to each component."""

    token: str
    requester: ApiRequester
    registry: EntityRegistry = field(default_factory=EntityRegistry)
    user_uuid: str | None = None


class CallControlClient:
    """Entry point for applications.

    Usage::

        async with CallControlClient(token, user_uuid=uuid) as client:
            call = await client.gateway.make_call("1001")
            ...
            client.correlator.resolve_current_call()
    """

    def __init__(
        self,
        token: str,
        *,
        user_uuid: str | None = None,
        settings: Settings | None = None,
        requester: ApiRequester | None = None,
        channel: RealtimeChannel | None = None,
    ) -> None:
        if not token:
            raise ValueError("A capability token is required.")
        self._settings = settings or get_settings()
        self.context = ClientContext(
            token=token,
            requester=requester or ApiRequester(self._settings),
            registry=EntityRegistry(retention_seconds=self._settings.terminal_retention_seconds),
            user_uuid=user_uuid,
        )
        self.gateway = CommandGateway(self.context)
        self.reconciler = EventReconciler(self.context.registry)
        self.correlator = SessionCorrelator(self.context.registry)
        self.channel = channel or RealtimeChannel(
            lambda: self.context.token,
            self._settings,
            on_connected=self.resync,
        )
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def registry(self) -> EntityRegistry:
        return self.context.registry

    def set_token(self, token: str) -> None:
        """Swap in a renewed capability token for subsequent commands."""

        if not token:
            raise ValueError("A capability token is required.")
        self.context.token = token

    async def resync(self) -> None:
        """Re-list calls so the registry catches up with missed events."""

        try:
            await self.gateway.list_calls()
        except Exception:
            LOGGER.exception("Call listing after (re)connect failed")

    def start(self) -> None:
        """Start the event channel reader and the reconciliation loop."""

        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self.reconciler.consume(self.channel.events())),
            asyncio.create_task(self.reconciler.run()),
        ]

    async def aclose(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.gateway.wait_idle()
        await self.context.requester.aclose()

    async def __aenter__(self) -> CallControlClient:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
