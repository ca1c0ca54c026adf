"""Bullhorn adapter -- REST entity API behind an OAuth + REST login handshake.

Every token exchange (code or refresh) is followed by a REST login that
returns a BhRestToken and the corp-specific restUrl. Both are stored in the
credential's ``extra`` so that API calls never need a second round trip.

Bullhorn has no quote entity; quote jobs fail with UnsupportedEntityError.

Event subscriptions are relayed by a forwarder that signs each POST with
hex(HMAC-SHA256(webhook_secret, "{timestamp}.{body}")) in
X-Bullhorn-Signature and the unix timestamp in X-Bullhorn-Timestamp.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import structlog

from src.crm_sync.integrations.errors import AuthSyncError, MalformedWebhookError
from src.crm_sync.integrations.providers.base import (
    ProviderClient,
    from_epoch,
    parse_timestamp,
    raise_for_sync_status,
    raise_for_token_status,
)
from src.crm_sync.integrations.providers.field_mapping import (
    BULLHORN_FIELD_MAP,
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

AUTH_BASE_URL = "https://auth.bullhornstaffing.com/oauth"
REST_LOGIN_URL = "https://rest.bullhornstaffing.com/rest-services/login"

ENTITY_NAMES: dict[EntityType, str] = {
    EntityType.CONTACT: "ClientContact",
    EntityType.DEAL: "JobOrder",
    EntityType.TASK: "Task",
    EntityType.NOTE: "Note",
}

# Candidates are people too; events about them sync as contacts
EVENT_ENTITIES: dict[str, EntityType] = {
    "ClientContact": EntityType.CONTACT,
    "Candidate": EntityType.CONTACT,
    "JobOrder": EntityType.DEAL,
    "Opportunity": EntityType.DEAL,
    "Task": EntityType.TASK,
    "Note": EntityType.NOTE,
}


class BullhornClient(ProviderClient):
    """Bullhorn REST adapter."""

    provider = Provider.BULLHORN
    supported_entities = frozenset(ENTITY_NAMES)

    # ── OAuth ───────────────────────────────────────────────────────────────

    def authorize_url(self, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self._settings.BULLHORN_CLIENT_ID,
                "response_type": "code",
                "redirect_uri": redirect_uri,
                "state": state,
            }
        )
        return f"{AUTH_BASE_URL}/authorize?{query}"

    async def _token_request(self, form: dict[str, str]) -> TokenGrant:
        form = {
            **form,
            "client_id": self._settings.BULLHORN_CLIENT_ID,
            "client_secret": self._settings.BULLHORN_CLIENT_SECRET,
        }
        response = await self._send("POST", f"{AUTH_BASE_URL}/token", data=form)
        raise_for_token_status(response, self.provider.value)
        data = response.json()
        session = await self._rest_login(data["access_token"])
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=int(data.get("expires_in", 600))),
            extra=session,
        )

    async def _rest_login(self, access_token: str) -> dict[str, str]:
        """Trade an access token for the BhRestToken/restUrl session pair."""
        response = await self._send(
            "POST",
            REST_LOGIN_URL,
            params={"version": "*", "access_token": access_token},
        )
        raise_for_token_status(response, self.provider.value)
        data = response.json()
        if not data.get("BhRestToken") or not data.get("restUrl"):
            raise AuthSyncError("Bullhorn REST login returned no session")
        return {"bh_rest_token": data["BhRestToken"], "rest_url": data["restUrl"]}

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
            "GET",
            self._url(token, "settings/corporationId,userId"),
            params=self._auth_params(token),
        )
        data = response.json()
        return {
            "corporation_id": str(data.get("corporationId", "")),
            "user_id": str(data.get("userId", "")),
            "rest_url": token.extra.get("rest_url"),
        }

    # ── Records ─────────────────────────────────────────────────────────────

    @staticmethod
    def _url(token: AccessToken, path: str) -> str:
        rest_url = token.extra.get("rest_url")
        if not rest_url:
            raise AuthSyncError("Bullhorn credential has no REST session")
        return rest_url.rstrip("/") + "/" + path.lstrip("/")

    @staticmethod
    def _auth_params(token: AccessToken) -> dict[str, str]:
        return {"BhRestToken": token.extra.get("bh_rest_token", "")}

    def _entity_path(self, entity_type: EntityType, remote_id: str | None = None) -> str:
        self.ensure_supported(entity_type)
        path = f"entity/{ENTITY_NAMES[entity_type]}"
        return f"{path}/{remote_id}" if remote_id else path

    async def create_record(
        self, token: AccessToken, entity_type: EntityType, fields: dict[str, Any]
    ) -> RemoteWriteResult:
        response = await self._request(
            "PUT",
            self._url(token, self._entity_path(entity_type)),
            params=self._auth_params(token),
            json=to_remote_fields(fields, entity_type, BULLHORN_FIELD_MAP),
        )
        data = response.json()
        remote_id = str(data["changedEntityId"])
        logger.info("bullhorn.record_created", entity_type=entity_type.value, remote_id=remote_id)
        return RemoteWriteResult(remote_id=remote_id, modified_at=datetime.now(timezone.utc))

    async def update_record(
        self,
        token: AccessToken,
        entity_type: EntityType,
        remote_id: str,
        fields: dict[str, Any],
    ) -> RemoteWriteResult:
        response = await self._request(
            "POST",
            self._url(token, self._entity_path(entity_type, remote_id)),
            params=self._auth_params(token),
            json=to_remote_fields(fields, entity_type, BULLHORN_FIELD_MAP),
        )
        data = response.json()
        return RemoteWriteResult(
            remote_id=str(data.get("changedEntityId", remote_id)),
            modified_at=datetime.now(timezone.utc),
        )

    async def get_record(
        self, token: AccessToken, entity_type: EntityType, remote_id: str
    ) -> RemoteRecord | None:
        response = await self._send(
            "GET",
            self._url(token, self._entity_path(entity_type, remote_id)),
            params={**self._auth_params(token), "fields": "*"},
        )
        if response.status_code == 404:
            return None
        raise_for_sync_status(response, self.provider.value)
        data = (response.json() or {}).get("data") or {}
        modified = data.pop("dateLastModified", None)
        data.pop("id", None)
        return RemoteRecord(
            remote_id=remote_id,
            entity_type=entity_type,
            fields=from_remote_fields(data, entity_type, BULLHORN_FIELD_MAP),
            modified_at=parse_timestamp(modified),
        )

    # ── Webhooks ────────────────────────────────────────────────────────────

    def verify_webhook(self, request: WebhookRequest, now: datetime) -> bool:
        signature = request.header("X-Bullhorn-Signature")
        timestamp = request.header("X-Bullhorn-Timestamp")
        secret = self._settings.BULLHORN_WEBHOOK_SECRET
        if not secret or not signature or not timestamp or not timestamp.isdigit():
            return False

        sent_at = from_epoch(timestamp)
        if sent_at is None or abs((now - sent_at).total_seconds()) > self._settings.SYNC_WEBHOOK_MAX_SKEW_SECONDS:
            return False

        expected = hmac.new(
            secret.encode(), timestamp.encode() + b"." + request.body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, body: bytes) -> list[InboundEvent]:
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise MalformedWebhookError("Bullhorn webhook body is not JSON") from exc
        raw_events = data.get("events") if isinstance(data, dict) else None
        if not isinstance(raw_events, list):
            raise MalformedWebhookError("Bullhorn webhook body has no events list")

        events: list[InboundEvent] = []
        for raw in raw_events:
            if not isinstance(raw, dict) or not raw.get("eventId"):
                raise MalformedWebhookError("Bullhorn webhook event is missing eventId")
            entity_name = str(raw.get("entityName", ""))
            events.append(
                InboundEvent(
                    delivery_id=str(raw["eventId"]),
                    event_type=f"{entity_name}.{raw.get('entityEventType', 'UPDATED')}",
                    occurred_at=parse_timestamp(raw.get("eventTimestamp")),
                    entity_type=EVENT_ENTITIES.get(entity_name),
                    remote_id=str(raw["entityId"]) if raw.get("entityId") is not None else None,
                    payload=raw,
                )
            )
        return events
