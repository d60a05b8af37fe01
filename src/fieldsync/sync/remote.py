"""
Remote collaborator: the server side of synchronization.

The orchestrator only depends on the RemoteCollaborator protocol;
HttpRemoteClient is the aiohttp implementation used in production.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import aiohttp

from ..models.records import SyncOperation, dumps
from ..utils.config import RemoteConfig
from ..utils.errors import ConflictDetected, RemoteValidationError, TransientNetworkError
from ..utils.logging import get_logger


logger = get_logger("fieldsync.sync.remote")

VALIDATION_STATUSES = {400, 422}


@dataclass
class SyncRequest:
    """One mutation sent to the remote."""
    entity_type: str
    entity_id: str
    operation: SyncOperation
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "operation": SyncOperation(self.operation).value,
            "payload": json.loads(dumps(self.payload)),
        }


@dataclass
class SyncResponse:
    """Successful remote acknowledgement."""
    status: int
    body: Any = None


@runtime_checkable
class RemoteCollaborator(Protocol):
    """What the orchestrator needs from a server."""

    async def send(self, request: SyncRequest) -> SyncResponse:
        """
        Apply one mutation.

        Raises:
            ConflictDetected: the server holds a diverging version
            RemoteValidationError: the payload was rejected as malformed
            TransientNetworkError: anything worth retrying later
        """
        ...

    async def fetch_snapshot(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Current server snapshot, or None if the entity does not exist."""
        ...


def _unwrap(body: Any, entity_type: str) -> Any:
    if isinstance(body, dict) and isinstance(body.get(entity_type), dict):
        return body[entity_type]
    return body


class HttpRemoteClient:
    """
    aiohttp client for the sync endpoint and the snapshot read endpoint.

    Usage:
        async with HttpRemoteClient(config.remote) as remote:
            await remote.send(SyncRequest("case", "c1", "update", payload))
    """

    def __init__(
        self,
        config: Optional[RemoteConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.config = config or RemoteConfig()
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"Content-Type": "application/json", **self.config.headers},
            )
            self._owns_session = True
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def send(self, request: SyncRequest) -> SyncResponse:
        url = self._url(self.config.sync_path)
        try:
            async with self.session.post(url, json=request.to_dict()) as response:
                text = await response.text()
                body = self._parse(text)

                if 200 <= response.status < 300:
                    logger.debug(
                        "remote_sync_ok",
                        entity_type=request.entity_type,
                        entity_id=request.entity_id,
                        status=response.status,
                    )
                    return SyncResponse(status=response.status, body=body)

                if response.status == self.config.conflict_status:
                    raise ConflictDetected(
                        server_data=self._server_data(body, request.entity_type),
                        message=f"Sync failed with status {response.status}: conflict",
                    )

                if response.status in VALIDATION_STATUSES:
                    raise RemoteValidationError(response.status, text)

                raise TransientNetworkError(
                    f"Sync failed with status {response.status}: {text}",
                    status=response.status,
                )

        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Sync request timed out: {url}", cause=e) from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Sync request failed: {e}", cause=e) from e

    async def fetch_snapshot(self, entity_type: str, entity_id: str) -> Optional[Dict[str, Any]]:
        path = self.config.entity_path.format(entity_type=entity_type, entity_id=entity_id)
        url = self._url(path)
        try:
            async with self.session.get(url) as response:
                if response.status == 404:
                    return None
                text = await response.text()
                if response.status >= 400:
                    raise TransientNetworkError(
                        f"Failed to fetch server data: {response.status}",
                        status=response.status,
                    )
                body = _unwrap(self._parse(text), entity_type)
                return body if isinstance(body, dict) and body else None

        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Snapshot request timed out: {url}", cause=e) from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Snapshot request failed: {e}", cause=e) from e

    async def probe(self) -> bool:
        """True when the remote answers without a server error."""
        try:
            async with self.session.head(self._url(self.config.probe_path)) as response:
                return response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("remote_probe_failed", error=str(e))
            return False

    @staticmethod
    def _parse(text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    @staticmethod
    def _server_data(body: Any, entity_type: str) -> Optional[Dict[str, Any]]:
        if isinstance(body, dict):
            if isinstance(body.get("serverData"), dict):
                return body["serverData"]
            unwrapped = _unwrap(body, entity_type)
            if isinstance(unwrapped, dict) and unwrapped:
                return unwrapped
        return None


__all__ = [
    "SyncRequest",
    "SyncResponse",
    "RemoteCollaborator",
    "HttpRemoteClient",
]
