"""Connection lifecycle, dead-letter retry, OAuth completion and maintenance tasks."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from src.crm_sync.core.security import create_oauth_state
from src.crm_sync.integrations.errors import TransientSyncError
from src.crm_sync.integrations.schemas import (
    ConnectionStatus,
    DeadLetterReason,
    JobType,
    Provider,
    TokenGrant,
)

from tests.doubles import TENANT_ID, utcnow


def _grant(access: str = "fresh") -> TokenGrant:
    return TokenGrant(
        access_token=access,
        refresh_token=f"{access}-refresh",
        expires_at=utcnow() + timedelta(hours=1),
    )


# ── Connections ─────────────────────────────────────────────────────────────


class TestConnectionService:
    async def test_disconnect_abandons_queue_as_skipped(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.connect(Provider.BULLHORN)
        await harness.queue.enqueue(TENANT_ID, Provider.HUBSPOT, JobType.SYNC_DEAL, dedupe_key="a")
        await harness.queue.enqueue(TENANT_ID, Provider.HUBSPOT, JobType.SYNC_TASK, dedupe_key="b")
        await harness.queue.enqueue(TENANT_ID, Provider.BULLHORN, JobType.SYNC_DEAL, dedupe_key="c")

        connection = await harness.connection_service.disconnect(TENANT_ID, Provider.HUBSPOT)

        assert connection.status == ConnectionStatus.DISCONNECTED
        assert connection.disconnect_reason == "user_disconnected"
        assert await harness.credentials.get(TENANT_ID, Provider.HUBSPOT) is None
        assert await harness.queue.count_pending(TENANT_ID, Provider.HUBSPOT) == 0
        assert await harness.queue.count_pending(TENANT_ID, Provider.BULLHORN) == 1
        skipped = harness.dead_letters.by_reason(DeadLetterReason.SKIPPED)
        assert {d.dedupe_key for d in skipped} == {"a", "b"}

    async def test_disconnect_unknown_connection(self, harness):
        assert await harness.connection_service.disconnect(TENANT_ID, Provider.HUBSPOT) is None

    async def test_reconnect_keeps_routing_token(self, harness):
        original = harness.connect(Provider.HUBSPOT, webhook_token="keep-me")
        await harness.connection_service.disconnect(TENANT_ID, Provider.HUBSPOT)

        connection = await harness.connection_service.connect(
            TENANT_ID, Provider.HUBSPOT, _grant(), {"portal_id": 42}
        )

        assert connection.id == original.id
        assert connection.webhook_token == "keep-me"
        assert connection.is_connected
        assert connection.remote_account == {"portal_id": 42}
        credential = await harness.credentials.get(TENANT_ID, Provider.HUBSPOT)
        assert credential.access_token == "fresh"
        assert credential.version == 3

    async def test_overview_reports_revoked_credential_as_error(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.connect(Provider.BULLHORN)
        await harness.queue.enqueue(TENANT_ID, Provider.HUBSPOT, JobType.SYNC_DEAL, dedupe_key="a")
        await harness.connection_service.handle_auth_failure(
            TENANT_ID, Provider.HUBSPOT, "invalid_grant"
        )

        overview = {o.provider: o for o in await harness.connection_service.overview(TENANT_ID)}

        assert overview[Provider.HUBSPOT].status == ConnectionStatus.ERROR
        assert overview[Provider.HUBSPOT].disconnect_reason == "auth_revoked"
        assert overview[Provider.HUBSPOT].dead_letter_count == 1
        assert overview[Provider.BULLHORN].status == ConnectionStatus.CONNECTED
        assert overview[Provider.BULLHORN].dead_letter_count == 0


# ── Dead Letters ────────────────────────────────────────────────────────────


class TestDeadLetterRetry:
    async def _dead_letter(self, harness, provider: Provider = Provider.HUBSPOT) -> str:
        job_id = await harness.queue.enqueue(
            TENANT_ID,
            provider,
            JobType.SYNC_DEAL,
            priority=3,
            payload={"direction": "outbound", "entity_type": "deal", "local_id": "D1"},
            dedupe_key=f"{provider.value}:outbound:deal:D1",
            max_attempts=4,
        )
        record = await harness.dead_letters.record(
            harness.queue.jobs.pop(job_id), DeadLetterReason.EXHAUSTED, "down"
        )
        return record.id

    async def test_retry_re_enqueues_with_original_fields(self, harness):
        harness.connect(Provider.HUBSPOT)
        dead_letter_id = await self._dead_letter(harness)
        service = harness.services().dead_letter_service

        job_id = await service.retry(TENANT_ID, dead_letter_id)

        job = harness.queue.jobs[job_id]
        assert job.attempts == 0
        assert job.priority == 3
        assert job.max_attempts == 4
        assert job.dedupe_key == "hubspot:outbound:deal:D1"
        assert harness.dead_letters.records[dead_letter_id].retried_at is not None

    async def test_retry_twice_is_refused(self, harness):
        harness.connect(Provider.HUBSPOT)
        dead_letter_id = await self._dead_letter(harness)
        service = harness.services().dead_letter_service
        await service.retry(TENANT_ID, dead_letter_id)

        with pytest.raises(ValueError, match="already retried"):
            await service.retry(TENANT_ID, dead_letter_id)

    async def test_retry_requires_connection(self, harness):
        dead_letter_id = await self._dead_letter(harness)

        with pytest.raises(ValueError, match="not connected"):
            await harness.services().dead_letter_service.retry(TENANT_ID, dead_letter_id)

    @pytest.mark.parametrize("dead_letter_id", ["not-a-uuid", str(uuid.uuid4())])
    async def test_unknown_dead_letter(self, harness, dead_letter_id):
        with pytest.raises(LookupError):
            await harness.services().dead_letter_service.retry(TENANT_ID, dead_letter_id)


# ── OAuth ───────────────────────────────────────────────────────────────────


class TestOAuthService:
    async def test_complete_connects_tenant_from_state(self, harness):
        harness.hubspot.exchange_code.return_value = _grant("from-code")
        oauth = harness.services().oauth
        state = create_oauth_state(TENANT_ID, "hubspot")

        connection = await oauth.complete(Provider.HUBSPOT, "code-123", state)

        assert connection.tenant_id == TENANT_ID
        assert connection.is_connected
        assert connection.remote_account == {"account": "acme"}
        code, redirect_uri = harness.hubspot.exchange_code.call_args.args
        assert code == "code-123"
        assert redirect_uri.endswith("/api/v1/oauth/hubspot/callback")
        assert harness.hubspot.fetch_account.call_args.args[0].token == "from-code"

    async def test_state_for_other_provider_is_rejected(self, harness):
        state = create_oauth_state(TENANT_ID, "bullhorn")

        with pytest.raises(ValueError):
            await harness.services().oauth.complete(Provider.HUBSPOT, "code", state)

        harness.hubspot.exchange_code.assert_not_awaited()

    def test_authorize_url_carries_state(self, harness):
        url = harness.services().oauth.authorize_url(TENANT_ID, Provider.BULLHORN)

        assert url.startswith("https://auth.example/bullhorn?state=")


# ── Maintenance ─────────────────────────────────────────────────────────────


class TestMaintenance:
    async def test_purge_deliveries_past_retention(self, harness):
        for delivery_id in ("old", "new"):
            harness.deliveries.records[(TENANT_ID, Provider.HUBSPOT, delivery_id)] = {
                "received_at": utcnow(),
                "processed_at": None,
            }
        old_key = (TENANT_ID, Provider.HUBSPOT, "old")
        harness.deliveries.records[old_key]["received_at"] -= timedelta(days=45)

        removed = await harness.services().maintenance.purge_deliveries()

        assert removed == 1
        assert list(harness.deliveries.records) == [(TENANT_ID, Provider.HUBSPOT, "new")]

    async def test_refresh_expiring_credentials(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.connect(Provider.BULLHORN)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=400)

        refreshed = await harness.services().maintenance.refresh_expiring()

        assert refreshed == 1
        harness.hubspot.refresh.assert_awaited_once()
        harness.bullhorn.refresh.assert_not_awaited()

    async def test_refresh_failure_does_not_stop_the_sweep(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.connect(Provider.BULLHORN)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=10)
        harness.credentials.add(TENANT_ID, Provider.BULLHORN, expires_in=10)
        harness.hubspot.refresh.side_effect = TransientSyncError("timeout")

        refreshed = await harness.services().maintenance.refresh_expiring()

        assert refreshed == 1
        harness.bullhorn.refresh.assert_awaited_once()

    async def test_sweep_exhausted_leases(self, harness):
        job_id = await harness.queue.enqueue(
            TENANT_ID, Provider.HUBSPOT, JobType.SYNC_DEAL, max_attempts=2
        )
        job = harness.queue.jobs[job_id]
        harness.queue.jobs[job_id] = job.model_copy(
            update={"attempts": 2, "not_before": utcnow() - timedelta(seconds=1)}
        )

        swept = await harness.services().maintenance.sweep_exhausted()

        assert swept == 1
        assert harness.queue.jobs == {}
        [letter] = harness.dead_letters.by_reason(DeadLetterReason.EXHAUSTED)
        assert letter.job_id == job_id
