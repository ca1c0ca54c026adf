"""Provider adapter abstract base class -- the interface every external CRM implements.

Each provider (HubSpot, Bullhorn) implements this ABC. The sync worker,
token refresher, OAuth flow and webhook intake only ever talk to providers
through it.

HTTP status codes are classified into the sync error taxonomy here, once,
so adapters never decide retry policy themselves:
- 429 / 5xx / timeouts / transport errors -> TransientSyncError
- 401 / 403 -> AuthSyncError
- any other 4xx -> ValidationSyncError (provider body attached)

Connection errors are retried in-process (tenacity, 3 attempts) before they
surface; everything else is left to the queue's backoff.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.crm_sync.config import Settings
from src.crm_sync.integrations.errors import (
    AuthSyncError,
    TransientSyncError,
    UnsupportedEntityError,
    ValidationSyncError,
)
from src.crm_sync.integrations.schemas import (
    AccessToken,
    CredentialRecord,
    EntityType,
    InboundEvent,
    Provider,
    RemoteRecord,
    RemoteWriteResult,
    TokenGrant,
    WebhookRequest,
)

logger = structlog.get_logger(__name__)

_connect_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(httpx.ConnectError),
    reraise=True,
)


# ── Response Helpers ────────────────────────────────────────────────────────


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    try:
        seconds = float(value)
        return seconds if seconds > 0 else None
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - (now or datetime.now(timezone.utc))).total_seconds()
    return delta if delta > 0 else None


def from_epoch(value: Any, millis: bool = False) -> datetime | None:
    """UTC datetime for an epoch number or digit string, or None when out of range."""
    try:
        number = int(value) if isinstance(value, str) else value
        return datetime.fromtimestamp(number / 1000 if millis else number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse provider timestamps: epoch milliseconds or ISO-8601 strings.

    Unparsable or out-of-range values yield None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return from_epoch(value, millis=True)
    if isinstance(value, str) and value.isdigit():
        return from_epoch(value, millis=True)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def response_body(response: httpx.Response) -> Any:
    """Best-effort decoded body for error reporting."""
    try:
        return response.json()
    except ValueError:
        return response.text or None


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "errorMessage", "error_description", "error"):
            if body.get(key):
                return str(body[key])
    return default


def raise_for_sync_status(response: httpx.Response, label: str) -> None:
    """Raise the sync error matching a non-2xx provider response."""
    if response.is_success:
        return

    status = response.status_code
    body = response_body(response)
    message = _error_message(body, f"{label} API error ({status})")

    if status == 429 or status >= 500:
        raise TransientSyncError(
            message,
            status_code=status,
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
    if status in (401, 403):
        raise AuthSyncError(message, status_code=status)
    raise ValidationSyncError(message, status_code=status, body=body)


def raise_for_token_status(response: httpx.Response, label: str) -> None:
    """Classify token endpoint failures: a rejected grant is an auth error, not validation."""
    if response.is_success:
        return
    status = response.status_code
    if status in (400, 401, 403):
        body = response_body(response)
        raise AuthSyncError(
            _error_message(body, f"{label} token exchange rejected ({status})"),
            status_code=status,
        )
    raise_for_sync_status(response, label)


# ── Adapter Interface ───────────────────────────────────────────────────────


class ProviderClient(ABC):
    """Abstract interface for an external CRM/ATS provider.

    Methods:
        authorize_url: Build the OAuth consent URL.
        exchange_code: Trade an authorization code for a token grant.
        refresh: Trade a refresh token for a new grant.
        fetch_account: Remote account identifiers for a new connection.
        create_record / update_record / get_record: Entity CRUD.
        verify_webhook: Check a webhook request's signature and freshness.
        parse_webhook: Split a webhook body into InboundEvents.

    Args:
        settings: Application settings (client ids, secrets, timeouts).
        transport: Optional httpx transport, used by tests to mock providers.
    """

    provider: Provider
    supported_entities: frozenset[EntityType] = frozenset()

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._timeout = settings.PROVIDER_HTTP_TIMEOUT

    # ── HTTP ────────────────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the provider timeout."""
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @_connect_retry
    async def _send_with_retry(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        async with self._client() as client:
            return await client.request(method, url, **kwargs)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport failures to TransientSyncError."""
        try:
            return await self._send_with_retry(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientSyncError(f"{self.provider.value} request timed out") from exc
        except httpx.TransportError as exc:
            raise TransientSyncError(f"{self.provider.value} transport error: {exc}") from exc

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request and raise the classified sync error on failure."""
        response = await self._send(method, url, **kwargs)
        raise_for_sync_status(response, self.provider.value)
        return response

    def ensure_supported(self, entity_type: EntityType) -> None:
        if entity_type not in self.supported_entities:
            raise UnsupportedEntityError(
                f"{self.provider.value} does not support {entity_type.value} records"
            )

    # ── OAuth ───────────────────────────────────────────────────────────────

    @abstractmethod
    def authorize_url(self, state: str, redirect_uri: str) -> str:
        """OAuth consent URL the user is redirected to."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange an authorization code for a token grant."""
        ...

    @abstractmethod
    async def refresh(self, credential: CredentialRecord) -> TokenGrant:
        """Exchange the stored refresh token. Raises AuthSyncError if rejected."""
        ...

    @abstractmethod
    async def fetch_account(self, token: AccessToken) -> dict[str, Any]:
        """Remote account identifiers stored on the connection."""
        ...

    # ── Records ─────────────────────────────────────────────────────────────

    @abstractmethod
    async def create_record(
        self, token: AccessToken, entity_type: EntityType, fields: dict[str, Any]
    ) -> RemoteWriteResult:
        """Create a remote record, return its id."""
        ...

    @abstractmethod
    async def update_record(
        self,
        token: AccessToken,
        entity_type: EntityType,
        remote_id: str,
        fields: dict[str, Any],
    ) -> RemoteWriteResult:
        """Update a remote record by id."""
        ...

    @abstractmethod
    async def get_record(
        self, token: AccessToken, entity_type: EntityType, remote_id: str
    ) -> RemoteRecord | None:
        """Fetch the current remote state, or None if it no longer exists."""
        ...

    # ── Webhooks ────────────────────────────────────────────────────────────

    @abstractmethod
    def verify_webhook(self, request: WebhookRequest, now: datetime) -> bool:
        """True if the request carries a valid, fresh signature."""
        ...

    @abstractmethod
    def parse_webhook(self, body: bytes) -> list[InboundEvent]:
        """Parse a webhook body. Raises MalformedWebhookError on bad input."""
        ...
