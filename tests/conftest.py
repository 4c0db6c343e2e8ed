from __future__ import annotations

import sys
from pathlib import Path

import httpx
import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from config.settings import Settings  # noqa: E402
from control.gateway import CommandGateway  # noqa: E402
from registry.store import EntityRegistry  # noqa: E402
from session.context import ClientContext  # noqa: E402
from transport.requester import ApiRequester  # noqa: E402

CALLD_URL = "https://pbx.test/api/calld/1.0"
CALLD_PREFIX = "/api/calld/1.0"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCalld:
    """Programmable stand-in for the call-control REST service.

    A route maps to a response or a list of responses served in order (the
    last one repeats). A response is ``(status, json_body)``, an exception to
    raise, or an async callable receiving the request.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses) -> None:
        self.routes[(method, path)] = list(responses)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix(CALLD_PREFIX)
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"message": f"No route {request.method} {path}"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = await response(request)
        status, body = response
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(clock: FakeClock) -> EntityRegistry:
    return EntityRegistry(clock=clock)


@pytest.fixture
def calld() -> FakeCalld:
    return FakeCalld()


@pytest.fixture
def settings() -> Settings:
    return Settings(calld_url=CALLD_URL, websocket_url="wss://pbx.test/api/websocketd/")


@pytest.fixture
def context(calld: FakeCalld, registry: EntityRegistry, settings: Settings) -> ClientContext:
    client = httpx.AsyncClient(transport=httpx.MockTransport(calld.handler))
    return ClientContext(
        token="token-123",
        requester=ApiRequester(settings, client=client),
        registry=registry,
        user_uuid="user-1",
    )


@pytest.fixture
def gateway(context: ClientContext) -> CommandGateway:
    return CommandGateway(context)
