"""Thin async HTTP transport for the call-control REST API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from config.settings import Settings, get_settings

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RawResponse:
    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class TransportFailure(Exception):
    """No HTTP response could be obtained (DNS, connect, timeout, reset...)."""

    def __init__(self, method: str, path: str, cause: Exception) -> None:
        super().__init__(f"{method} {path} failed: {cause}")
        self.method = method
        self.path = path
        self.cause = cause


class ApiRequester:
    """Issues requests against the REST API and hands back raw responses.

    The requester never interprets status codes; that is the normalizer's job.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._base_url = settings.calld_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            verify=settings.verify_tls,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get(self, path: str, body: dict[str, Any] | None = None, token: str | None = None) -> RawResponse:
        return await self.request("GET", path, params=body, token=token)

    async def post(self, path: str, body: dict[str, Any] | None = None, token: str | None = None) -> RawResponse:
        return await self.request("POST", path, json=body, token=token)

    async def put(self, path: str, body: dict[str, Any] | None = None, token: str | None = None) -> RawResponse:
        return await self.request("PUT", path, json=body, token=token)

    async def delete(self, path: str, body: dict[str, Any] | None = None, token: str | None = None) -> RawResponse:
        return await self.request("DELETE", path, params=body, token=token)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> RawResponse:
        headers = {"Accept": "application/json"}
        if json is not None:
            headers["Content-Type"] = "application/json"
        if token:
            headers["X-Auth-Token"] = token

        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                params=_query_params(params),
                json=json,
                headers=headers,
            )
        except httpx.TransportError as exc:
            LOGGER.warning("%s %s unreachable: %s", method, url, exc)
            raise TransportFailure(method, path, exc) from exc

        return RawResponse(
            status_code=response.status_code,
            body=_decode_body(response),
            headers=dict(response.headers),
        )


def _query_params(params: dict[str, Any] | None) -> dict[str, str] | None:
    if not params:
        return None
    query: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            query[key] = "true" if value else "false"
        else:
            query[key] = str(value)
    return query


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" not in content_type:
        return response.text
    try:
        return response.json()
    except ValueError:
        return response.text
