"""Webhook intake tests: routing-token auth, signatures, idempotency, event filtering."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.crm_sync.integrations.errors import MalformedWebhookError, WebhookRejectedError
from src.crm_sync.integrations.schemas import (
    ConnectionStatus,
    EntityType,
    InboundEvent,
    IngestStatus,
    JobType,
    Provider,
    WebhookRequest,
)
from src.crm_sync.integrations.webhooks import (
    inbound_dedupe_key,
    payload_hash,
    retention_cutoff,
)

from tests.doubles import TENANT_ID


def _request(token: str) -> WebhookRequest:
    return WebhookRequest(url=f"http://test/api/v1/webhooks/hubspot/{token}", body=b"[]")


def _event(delivery_id: str = "evt-1", **overrides) -> InboundEvent:
    fields = {
        "delivery_id": delivery_id,
        "event_type": "contact.propertyChange",
        "occurred_at": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
        "entity_type": EntityType.CONTACT,
        "remote_id": "501",
        "payload": {"eventId": delivery_id},
    }
    fields.update(overrides)
    return InboundEvent(**fields)


# ── Helpers ─────────────────────────────────────────────────────────────────


def test_payload_hash_ignores_key_order():
    assert payload_hash({"a": 1, "b": [1, 2]}) == payload_hash({"b": [1, 2], "a": 1})
    assert payload_hash({"a": 1}) != payload_hash({"a": 2})


def test_inbound_dedupe_key():
    assert inbound_dedupe_key(Provider.BULLHORN, EntityType.DEAL, "77") == "bullhorn:inbound:deal:77"


def test_retention_cutoff():
    now = datetime(2026, 3, 31, tzinfo=timezone.utc)
    assert retention_cutoff(30, now) == datetime(2026, 3, 1, tzinfo=timezone.utc)


# ── Authentication ──────────────────────────────────────────────────────────


class TestAuthentication:
    async def test_unknown_routing_token_is_rejected(self, harness):
        harness.connect(Provider.HUBSPOT, webhook_token="good-token")

        with pytest.raises(WebhookRejectedError) as exc_info:
            await harness.intake.handle(Provider.HUBSPOT, "nope", _request("nope"))

        assert exc_info.value.status_code == 401
        assert harness.deliveries.records == {}

    async def test_token_for_other_provider_is_rejected(self, harness):
        harness.connect(Provider.BULLHORN, webhook_token="bh-token")

        with pytest.raises(WebhookRejectedError):
            await harness.intake.handle(Provider.HUBSPOT, "bh-token", _request("bh-token"))

    async def test_disconnected_connection_is_rejected(self, harness):
        harness.connect(
            Provider.HUBSPOT, webhook_token="old-token", status=ConnectionStatus.DISCONNECTED
        )

        with pytest.raises(WebhookRejectedError, match="not active"):
            await harness.intake.handle(Provider.HUBSPOT, "old-token", _request("old-token"))

    async def test_bad_signature_is_rejected_before_parsing(self, harness):
        harness.connect(Provider.HUBSPOT, webhook_token="tok")
        harness.hubspot.verify_webhook.return_value = False

        with pytest.raises(WebhookRejectedError, match="signature"):
            await harness.intake.handle(Provider.HUBSPOT, "tok", _request("tok"))

        harness.hubspot.parse_webhook.assert_not_called()
        assert harness.queue.jobs == {}

    async def test_malformed_body_propagates(self, harness):
        harness.connect(Provider.HUBSPOT, webhook_token="tok")
        harness.hubspot.parse_webhook.side_effect = MalformedWebhookError("not json", status_code=400)

        with pytest.raises(MalformedWebhookError):
            await harness.intake.handle(Provider.HUBSPOT, "tok", _request("tok"))


# ── Ingestion ───────────────────────────────────────────────────────────────


class TestIngestion:
    async def test_event_becomes_inbound_job(self, harness):
        connection = harness.connect(Provider.HUBSPOT, webhook_token="tok")
        harness.hubspot.parse_webhook.return_value = [_event()]

        [result] = await harness.intake.handle(Provider.HUBSPOT, "tok", _request("tok"))

        assert result.status == IngestStatus.ACCEPTED
        job = harness.queue.jobs[result.job_id]
        assert job.job_type == JobType.SYNC_CONTACT
        assert job.priority == harness.settings.SYNC_INBOUND_PRIORITY
        assert job.dedupe_key == "hubspot:inbound:contact:501"
        assert job.payload["direction"] == "inbound"
        assert job.payload["remote_id"] == "501"
        assert job.payload["delivery_id"] == "evt-1"
        updated = await harness.connections.get(TENANT_ID, Provider.HUBSPOT)
        assert updated.webhook_last_received_at is not None
        assert connection.webhook_last_received_at is None

    async def test_redelivery_is_a_duplicate(self, harness):
        """Same delivery id twice -> one record, one job."""
        harness.connect(Provider.HUBSPOT, webhook_token="tok")
        harness.hubspot.parse_webhook.return_value = [_event()]

        first = await harness.intake.handle(Provider.HUBSPOT, "tok", _request("tok"))
        second = await harness.intake.handle(Provider.HUBSPOT, "tok", _request("tok"))

        assert first[0].status == IngestStatus.ACCEPTED
        assert second[0].status == IngestStatus.DUPLICATE
        assert second[0].job_id is None
        assert len(harness.deliveries.records) == 1
        assert len(harness.queue.jobs) == 1

    async def test_events_for_same_record_merge_into_one_job(self, harness):
        harness.connect(Provider.HUBSPOT, webhook_token="tok")
        harness.hubspot.parse_webhook.return_value = [_event("evt-1"), _event("evt-2")]

        results = await harness.intake.handle(Provider.HUBSPOT, "tok", _request("tok"))

        assert [r.status for r in results] == [IngestStatus.ACCEPTED, IngestStatus.ACCEPTED]
        assert results[0].job_id == results[1].job_id
        assert len(harness.deliveries.records) == 2
        job = harness.queue.jobs[results[0].job_id]
        assert job.revision == 1
        assert job.payload["delivery_id"] == "evt-2"

    async def test_event_without_entity_is_ignored(self, harness):
        harness.connect(Provider.HUBSPOT, webhook_token="tok")
        harness.hubspot.parse_webhook.return_value = [
            _event(entity_type=None, event_type="app.uninstalled")
        ]

        [result] = await harness.intake.handle(Provider.HUBSPOT, "tok", _request("tok"))

        assert result.status == IngestStatus.REJECTED
        assert result.reason == "ignored"
        assert harness.queue.jobs == {}

    async def test_unsupported_entity_is_ignored(self, harness):
        harness.connect(Provider.BULLHORN, webhook_token="bh")
        harness.bullhorn.parse_webhook.return_value = [_event(entity_type=EntityType.QUOTE)]

        [result] = await harness.intake.handle(Provider.BULLHORN, "bh", _request("bh"))

        assert result.status == IngestStatus.REJECTED
        assert harness.queue.jobs == {}

    async def test_quote_has_no_inbound_job_type(self, harness):
        result = await harness.intake.ingest(
            TENANT_ID,
            Provider.HUBSPOT,
            delivery_id="q-1",
            event_type="quote.creation",
            occurred_at=None,
            payload={},
            entity_type=EntityType.QUOTE,
            remote_id="9",
        )

        assert result.status == IngestStatus.REJECTED
        assert harness.deliveries.records == {}
