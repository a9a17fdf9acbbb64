"""
Sync Transports

A RemoteEventStore is anything the coordinator can push to and pull
from. Two implementations:

- HttpSyncTransport: the backend's `/sync/pushEvents` and
  `/sync/pullEvents` routes over httpx
- InProcessTransport: a ServerEventLog in the same process, speaking the
  same wire dicts (tests, embedded servers)

Every failure surfaces as SyncTransportError. Nothing about the local
store changes when a transport call fails.
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from bucketpilot.config import SyncSettings, get_settings
from bucketpilot.models.sync import DomainEvent, PullResponse, PushResponse, SyncCursor
from bucketpilot.sync.errors import SyncTransportError
from bucketpilot.sync.server import ServerEventLog


logger = structlog.get_logger(__name__)


class RemoteEventStore(ABC):
    """Remote side of the sync protocol."""

    @abstractmethod
    async def push_events(self, events: list[DomainEvent]) -> PushResponse:
        """
        Send a batch of local events.

        Raises:
            SyncTransportError: If the batch was not accepted
        """
        pass

    @abstractmethod
    async def pull_events(
        self,
        cursor: Optional[SyncCursor],
        limit: int,
    ) -> PullResponse:
        """
        Fetch events strictly after `cursor`, oldest first.

        Raises:
            SyncTransportError: If the page could not be fetched
        """
        pass


def _is_retryable(exc: BaseException) -> bool:
    """Network errors and 5xx answers are worth another attempt; 4xx are not."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


def cursor_params(cursor: Optional[SyncCursor]) -> dict:
    if cursor is None:
        return {}
    return {
        "sinceTimestamp": cursor.timestamp.isoformat(),
        "sinceSequence": str(cursor.sequence),
    }


class HttpSyncTransport(RemoteEventStore):
    """
    httpx client for the sync backend.

    Authenticates with a bearer token when one is configured.
    """

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings or get_settings().sync
        headers = {"Content-Type": "application/json"}
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.backend_url,
            timeout=self._settings.request_timeout_seconds,
        )
        self._headers = headers

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> dict:
        response = await self._client.request(method, path, headers=self._headers, **kwargs)
        response.raise_for_status()
        return response.json()

    async def _call(self, method: str, path: str, **kwargs) -> dict:
        try:
            return await self._request(method, path, **kwargs)
        except httpx.HTTPStatusError as e:
            raise SyncTransportError(
                f"{method} {path} failed with {e.response.status_code}: {e.response.text[:200]}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise SyncTransportError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise SyncTransportError(f"{method} {path} returned invalid JSON: {e}") from e

    async def push_events(self, events: list[DomainEvent]) -> PushResponse:
        body = {"events": [event.to_push_dict() for event in events]}
        data = await self._call("POST", "/sync/pushEvents", json=body)
        try:
            response = PushResponse.model_validate(data)
        except ValidationError as e:
            raise SyncTransportError(f"Malformed push response: {e}") from e
        if not response.success:
            raise SyncTransportError("Backend rejected pushed events")
        logger.debug("events_pushed", count=len(events))
        return response

    async def pull_events(
        self,
        cursor: Optional[SyncCursor],
        limit: int,
    ) -> PullResponse:
        params = cursor_params(cursor)
        params["limit"] = str(limit)
        data = await self._call("GET", "/sync/pullEvents", params=params)
        try:
            return PullResponse.model_validate(data)
        except ValidationError as e:
            raise SyncTransportError(f"Malformed pull response: {e}") from e


class InProcessTransport(RemoteEventStore):
    """Talks to a ServerEventLog through the same wire dicts HTTP would carry."""

    def __init__(self, server: ServerEventLog, user_id: str = "default"):
        self._server = server
        self._user_id = user_id

    async def push_events(self, events: list[DomainEvent]) -> PushResponse:
        body = {"events": [event.to_push_dict() for event in events]}
        try:
            data = self._server.push(self._user_id, body)
        except ValueError as e:
            raise SyncTransportError(str(e), status_code=400) from e
        return PushResponse.model_validate(data)

    async def pull_events(
        self,
        cursor: Optional[SyncCursor],
        limit: int,
    ) -> PullResponse:
        params = cursor_params(cursor)
        data = self._server.pull(
            self._user_id,
            since_timestamp=params.get("sinceTimestamp"),
            since_sequence=params.get("sinceSequence"),
            limit=limit,
        )
        return PullResponse.model_validate(data)
