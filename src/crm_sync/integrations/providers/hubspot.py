"""HubSpot adapter -- CRM v3 objects API, OAuth v1 tokens, v3 webhook signatures.

Webhook signature (v3): base64(HMAC-SHA256(client_secret,
method + uri + body + timestamp)) in X-HubSpot-Signature-v3, with the
millisecond timestamp in X-HubSpot-Request-Timestamp. Requests older than
the allowed skew are rejected to stop replays.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import structlog

from src.crm_sync.integrations.errors import MalformedWebhookError
from src.crm_sync.integrations.providers.base import (
    ProviderClient,
    from_epoch,
    parse_timestamp,
    raise_for_sync_status,
    raise_for_token_status,
)
from src.crm_sync.integrations.providers.field_mapping import (
    HUBSPOT_FIELD_MAP,
    from_remote_fields,
    to_remote_fields,
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

AUTHORIZE_URL = "https://app.hubspot.com/oauth/authorize"
API_BASE_URL = "https://api.hubapi.com"
TOKEN_URL = f"{API_BASE_URL}/oauth/v1/token"

OBJECT_PATHS: dict[EntityType, str] = {
    EntityType.CONTACT: "contacts",
    EntityType.DEAL: "deals",
    EntityType.TASK: "tasks",
    EntityType.NOTE: "notes",
    EntityType.QUOTE: "quotes",
}

# objectTypeId values used by generic "object.*" subscriptions
OBJECT_TYPE_IDS: dict[str, EntityType] = {
    "0-1": EntityType.CONTACT,
    "0-3": EntityType.DEAL,
    "0-27": EntityType.TASK,
    "0-46": EntityType.NOTE,
    "0-14": EntityType.QUOTE,
}


class HubSpotClient(ProviderClient):
    """HubSpot CRM adapter."""

    provider = Provider.HUBSPOT
    supported_entities = frozenset(OBJECT_PATHS)

    # ── OAuth ───────────────────────────────────────────────────────────────

    def authorize_url(self, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self._settings.HUBSPOT_CLIENT_ID,
                "redirect_uri": redirect_uri,
                "scope": self._settings.HUBSPOT_SCOPES,
                "state": state,
            }
        )
        return f"{AUTHORIZE_URL}?{query}"

    async def _token_request(self, form: dict[str, str]) -> TokenGrant:
        form = {
            **form,
            "client_id": self._settings.HUBSPOT_CLIENT_ID,
            "client_secret": self._settings.HUBSPOT_CLIENT_SECRET,
        }
        response = await self._send("POST", TOKEN_URL, data=form)
        raise_for_token_status(response, self.provider.value)
        data = response.json()
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(data.get("expires_in", 1800))),
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenGrant:
        return await self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
        )

    async def refresh(self, credential: CredentialRecord) -> TokenGrant:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": credential.refresh_token}
        )

    async def fetch_account(self, token: AccessToken) -> dict[str, Any]:
        response = await self._request(
            "GET", f"{API_BASE_URL}/oauth/v1/access-tokens/{token.token}"
        )
        data = response.json()
        return {
            "portal_id": str(data.get("hub_id", "")),
            "hub_domain": data.get("hub_domain"),
            "user": data.get("user"),
        }

    # ── Records ─────────────────────────────────────────────────────────────

    def _headers(self, token: AccessToken) -> dict[str, str]:
        return {"Authorization": f"Bearer {token.token}", "Content-Type": "application/json"}

    def _object_url(self, entity_type: EntityType, remote_id: str | None = None) -> str:
        self.ensure_supported(entity_type)
        url = f"{API_BASE_URL}/crm/v3/objects/{OBJECT_PATHS[entity_type]}"
        return f"{url}/{remote_id}" if remote_id else url

    async def create_record(
        self, token: AccessToken, entity_type: EntityType, fields: dict[str, Any]
    ) -> RemoteWriteResult:
        response = await self._request(
            "POST",
            self._object_url(entity_type),
            headers=self._headers(token),
            json={"properties": to_remote_fields(fields, entity_type, HUBSPOT_FIELD_MAP)},
        )
        data = response.json()
        logger.info("hubspot.record_created", entity_type=entity_type.value, remote_id=data["id"])
        return RemoteWriteResult(remote_id=str(data["id"]), modified_at=parse_timestamp(data.get("updatedAt")))

    async def update_record(
        self,
        token: AccessToken,
        entity_type: EntityType,
        remote_id: str,
        fields: dict[str, Any],
    ) -> RemoteWriteResult:
        response = await self._request(
            "PATCH",
            self._object_url(entity_type, remote_id),
            headers=self._headers(token),
            json={"properties": to_remote_fields(fields, entity_type, HUBSPOT_FIELD_MAP)},
        )
        data = response.json()
        return RemoteWriteResult(remote_id=str(data.get("id", remote_id)), modified_at=parse_timestamp(data.get("updatedAt")))

    async def get_record(
        self, token: AccessToken, entity_type: EntityType, remote_id: str
    ) -> RemoteRecord | None:
        response = await self._send(
            "GET", self._object_url(entity_type, remote_id), headers=self._headers(token)
        )
        if response.status_code == 404:
            return None
        raise_for_sync_status(response, self.provider.value)
        data = response.json()
        return RemoteRecord(
            remote_id=str(data["id"]),
            entity_type=entity_type,
            fields=from_remote_fields(data.get("properties") or {}, entity_type, HUBSPOT_FIELD_MAP),
            modified_at=parse_timestamp(data.get("updatedAt")),
        )

    # ── Webhooks ────────────────────────────────────────────────────────────

    def verify_webhook(self, request: WebhookRequest, now: datetime) -> bool:
        signature = request.header("X-HubSpot-Signature-v3")
        timestamp = request.header("X-HubSpot-Request-Timestamp")
        if not signature or not timestamp or not timestamp.isdigit():
            return False

        sent_at = from_epoch(timestamp, millis=True)
        if sent_at is None or abs((now - sent_at).total_seconds()) > self._settings.SYNC_WEBHOOK_MAX_SKEW_SECONDS:
            return False

        source = f"{request.method}{request.url}".encode() + request.body + timestamp.encode()
        digest = hmac.new(
            self._settings.HUBSPOT_CLIENT_SECRET.encode(), source, hashlib.sha256
        ).digest()
        expected = base64.b64encode(digest).decode()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, body: bytes) -> list[InboundEvent]:
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise MalformedWebhookError("HubSpot webhook body is not JSON") from exc
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise MalformedWebhookError("HubSpot webhook body must be a list of events")

        events: list[InboundEvent] = []
        for raw in data:
            if not isinstance(raw, dict) or "eventId" not in raw:
                raise MalformedWebhookError("HubSpot webhook event is missing eventId")
            subscription = str(raw.get("subscriptionType", ""))
            events.append(
                InboundEvent(
                    delivery_id=str(raw["eventId"]),
                    event_type=subscription or "unknown",
                    occurred_at=parse_timestamp(raw.get("occurredAt")),
                    entity_type=self._event_entity(subscription, raw.get("objectTypeId")),
                    remote_id=str(raw["objectId"]) if raw.get("objectId") is not None else None,
                    payload=raw,
                )
            )
        return events

    @staticmethod
    def _event_entity(subscription: str, object_type_id: Any) -> EntityType | None:
        prefix = subscription.split(".", 1)[0]
        if prefix == "object":
            return OBJECT_TYPE_IDS.get(str(object_type_id))
        try:
            return EntityType(prefix)
        except ValueError:
            return None
