"""
aiohttp client for the Ecogram REST API.

Routes follow the app's API handlers:

    GET    /api/games            -> {"data": [...]}
    POST   /api/games            -> {"data": {...}}   (201)
    GET    /api/games/{id}       -> {"data": {...}}   (404 when missing)
    PATCH  /api/games/{id}       -> {"data": {...}}
    DELETE /api/games/{id}       -> {"success": true}

``sessions`` and ``classPreps`` use ``/api/sessions`` and
``/api/class-preps``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from ..exceptions import RemoteServiceError, ValidationError
from .base import DataService, Record

logger = logging.getLogger(__name__)

ROUTES = {
    "games": "games",
    "sessions": "sessions",
    "classPreps": "class-preps",
}

# Statuses worth retrying later
TRANSIENT_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


def classify_status(status: int) -> str:
    """Map an HTTP status to a RemoteServiceError code."""
    if status == 404:
        return RemoteServiceError.NOT_FOUND
    if status in TRANSIENT_STATUSES or status >= 500:
        return RemoteServiceError.UNAVAILABLE
    return RemoteServiceError.REJECTED


class HttpDataService(DataService):
    """DataService backed by the app's REST routes.

    Example:
        >>> async with HttpDataService("https://ecogram.example.com") as remote:
        ...     games = await remote.list("games")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        auth_token: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.auth_token = auth_token
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> HttpDataService:
        self._ensure_session()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json"}
            if self.auth_token:
                headers["Authorization"] = f"Bearer {self.auth_token}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, collection: str, key: str | None = None) -> str:
        try:
            route = ROUTES[collection]
        except KeyError:
            raise ValidationError("collection", "no API route", collection) from None
        url = f"{self.base_url}/api/{route}"
        return f"{url}/{key}" if key is not None else url

    async def _request(
        self,
        method: str,
        collection: str,
        key: str | None = None,
        payload: Record | None = None,
    ) -> Any:
        session = self._ensure_session()
        url = self._url(collection, key)

        try:
            async with session.request(method, url, json=payload) as response:
                if response.status >= 400:
                    message = await self._error_message(response)
                    code = classify_status(response.status)
                    raise RemoteServiceError(
                        code,
                        f"{method} {url} failed ({response.status}): {message}",
                        status=response.status,
                    )
                if response.status == 204:
                    return None
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    # Proxies and captive portals answer 200 with an HTML page
                    raise RemoteServiceError(
                        RemoteServiceError.UNAVAILABLE,
                        f"{method} {url} returned a non-JSON body",
                        status=response.status,
                        cause=e,
                    ) from e
        except asyncio.TimeoutError as e:
            raise RemoteServiceError(
                RemoteServiceError.TIMEOUT, f"{method} {url} timed out", cause=e
            ) from e
        except aiohttp.ClientError as e:
            raise RemoteServiceError(
                RemoteServiceError.UNAVAILABLE, f"{method} {url} unreachable: {e}", cause=e
            ) from e

    @staticmethod
    async def _error_message(response: aiohttp.ClientResponse) -> str:
        try:
            body = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return response.reason or ""
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return response.reason or ""

    @staticmethod
    def _unwrap(body: Any, collection: str) -> Any:
        # Newer routes wrap results in "data"; the older API used the collection name
        if isinstance(body, dict):
            if "data" in body:
                return body["data"]
            if collection in body:
                return body[collection]
        return body

    async def list(self, collection: str) -> list[Record]:
        body = await self._request("GET", collection)
        return list(self._unwrap(body, collection) or [])

    async def get(self, collection: str, key: str) -> Record:
        body = await self._request("GET", collection, key)
        return self._unwrap(body, collection)

    async def create(self, collection: str, payload: Record) -> Record:
        body = await self._request("POST", collection, payload=payload)
        return self._unwrap(body, collection)

    async def update(self, collection: str, key: str, payload: Record) -> Record:
        body = await self._request("PATCH", collection, key, payload=payload)
        return self._unwrap(body, collection)

    async def delete(self, collection: str, key: str) -> None:
        await self._request("DELETE", collection, key)

    async def ping(self) -> bool:
        """Cheap reachability probe used by the connectivity monitor."""
        session = self._ensure_session()
        try:
            async with session.head(self.base_url) as response:
                return response.status < 500
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            logger.debug(f"API unreachable: {e}")
            return False
