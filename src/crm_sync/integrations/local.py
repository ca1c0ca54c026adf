"""Host CRM collaborator -- read current local state, apply inbound changes.

The worker never trusts a job payload for record contents; it re-reads the
host CRM at execution time through a LocalRecordSource.

Inbound writes run under the ``inbound_sync_origin`` context variable, and
HostCRMClient forwards it as ``X-Sync-Origin: inbound`` so the host's own
write path can pass ``origin="inbound"`` back to the Change Detector.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crm_sync.config import Settings
from src.crm_sync.integrations.errors import TransientSyncError
from src.crm_sync.integrations.providers.base import parse_timestamp, raise_for_sync_status
from src.crm_sync.integrations.schemas import EntityType, LocalRecord

logger = structlog.get_logger(__name__)

INBOUND_ORIGIN = "inbound"

inbound_sync_origin: ContextVar[str | None] = ContextVar("inbound_sync_origin", default=None)


@contextmanager
def applying_inbound(provider: str) -> Iterator[None]:
    """Mark local writes made inside the block as the result of an inbound sync."""
    token = inbound_sync_origin.set(f"{INBOUND_ORIGIN}:{provider}")
    try:
        yield
    finally:
        inbound_sync_origin.reset(token)


def current_sync_origin() -> str | None:
    return inbound_sync_origin.get()


class LocalRecordSource(ABC):
    """Interface to the host CRM's records."""

    @abstractmethod
    async def get_record(
        self, tenant_id: str, entity_type: EntityType, local_id: str
    ) -> LocalRecord | None:
        """Current local state, or None if the record was deleted."""
        ...

    @abstractmethod
    async def apply_inbound(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_id: str | None,
        fields: dict[str, Any],
    ) -> str:
        """Create (local_id None) or update a local record. Returns the local id."""
        ...


class HostCRMClient(LocalRecordSource):
    """LocalRecordSource backed by the host CRM's internal sync API.

    Args:
        settings: Provides HOST_CRM_API_URL, HOST_CRM_API_KEY, HOST_CRM_TIMEOUT.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = settings.HOST_CRM_API_URL.rstrip("/")
        self._api_key = settings.HOST_CRM_API_KEY
        self._timeout = settings.HOST_CRM_TIMEOUT
        self._transport = transport

    def _headers(self, tenant_id: str) -> dict[str, str]:
        headers = {"X-Sync-Api-Key": self._api_key, "X-Tenant-ID": tenant_id}
        origin = current_sync_origin()
        if origin:
            headers["X-Sync-Origin"] = INBOUND_ORIGIN
        return headers

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.ConnectError),
        reraise=True,
    )
    async def _send(self, method: str, path: str, tenant_id: str, **kwargs: Any) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            return await client.request(method, path, headers=self._headers(tenant_id), **kwargs)

    async def _request(self, method: str, path: str, tenant_id: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._send(method, path, tenant_id, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientSyncError(f"Host CRM timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientSyncError(f"Host CRM unreachable: {exc}") from exc

    async def get_record(
        self, tenant_id: str, entity_type: EntityType, local_id: str
    ) -> LocalRecord | None:
        response = await self._request("GET", f"/{entity_type.value}/{local_id}", tenant_id)
        if response.status_code == 404:
            return None
        raise_for_sync_status(response, "Host CRM")
        data = response.json()
        return LocalRecord(
            local_id=str(data.get("id", local_id)),
            entity_type=entity_type,
            fields=data.get("fields") or {},
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    async def apply_inbound(
        self,
        tenant_id: str,
        entity_type: EntityType,
        local_id: str | None,
        fields: dict[str, Any],
    ) -> str:
        if local_id is None:
            response = await self._request(
                "POST", f"/{entity_type.value}", tenant_id, json={"fields": fields}
            )
        else:
            response = await self._request(
                "PATCH", f"/{entity_type.value}/{local_id}", tenant_id, json={"fields": fields}
            )
        raise_for_sync_status(response, "Host CRM")
        new_id = str(response.json().get("id") or local_id)
        logger.debug(
            "host_crm.applied_inbound",
            tenant_id=tenant_id,
            entity_type=entity_type.value,
            local_id=new_id,
            created=local_id is None,
        )
        return new_id
