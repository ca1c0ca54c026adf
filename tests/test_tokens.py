"""Token refresher tests: margin handling, single refresh under concurrency, revocation."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from src.crm_sync.integrations.errors import AuthSyncError, TransientSyncError
from src.crm_sync.integrations.schemas import (
    ConnectionStatus,
    DeadLetterReason,
    JobType,
    Provider,
    TokenGrant,
)
from src.crm_sync.integrations.tokens import KeyedLock

from tests.doubles import TENANT_ID, utcnow


def _grant(prefix: str) -> TokenGrant:
    return TokenGrant(
        access_token=f"{prefix}-access",
        refresh_token=f"{prefix}-refresh",
        expires_at=utcnow() + timedelta(hours=1),
    )


class TestGetValidToken:
    async def test_fresh_credential_is_returned_as_is(self, harness):
        harness.connect(Provider.HUBSPOT)

        token = await harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT)

        assert token.token == "access-1"
        assert token.version == 1
        harness.hubspot.refresh.assert_not_awaited()

    async def test_inside_margin_is_refreshed(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=120)

        token = await harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT)

        assert token.token == "access-2"
        assert token.version == 2
        stored = await harness.credentials.get(TENANT_ID, Provider.HUBSPOT)
        assert stored.refresh_token == "refresh-2"

    async def test_missing_credential_is_an_auth_error(self, harness):
        with pytest.raises(AuthSyncError, match="No hubspot credential"):
            await harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT)

    async def test_concurrent_callers_refresh_once(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=-1)

        async def slow_refresh(credential):
            await asyncio.sleep(0.01)
            return harness.hubspot.refresh.return_value

        harness.hubspot.refresh.side_effect = slow_refresh

        tokens = await asyncio.gather(
            *(harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT) for _ in range(5))
        )

        assert {t.token for t in tokens} == {"access-2"}
        assert harness.hubspot.refresh.await_count == 1
        assert harness.credentials.swaps == 1

    async def test_revoked_refresh_token_disconnects(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=-1)
        await harness.queue.enqueue(TENANT_ID, Provider.HUBSPOT, JobType.SYNC_DEAL, dedupe_key="k")
        harness.hubspot.refresh.side_effect = AuthSyncError("invalid_grant", status_code=400)

        with pytest.raises(AuthSyncError):
            await harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT)

        connection = await harness.connections.get(TENANT_ID, Provider.HUBSPOT)
        assert connection.status == ConnectionStatus.DISCONNECTED
        assert await harness.credentials.get(TENANT_ID, Provider.HUBSPOT) is None
        assert len(harness.dead_letters.by_reason(DeadLetterReason.AUTH)) == 1

    async def test_transient_refresh_failure_keeps_connection(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=-1)
        harness.hubspot.refresh.side_effect = TransientSyncError("timeout")

        with pytest.raises(TransientSyncError):
            await harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT)

        assert await harness.connection_service.is_connected(TENANT_ID, Provider.HUBSPOT)

    async def test_reconnect_during_refresh_wins(self, harness):
        """A credential replaced mid-refresh is kept; the refresh result is dropped."""
        harness.connect(Provider.HUBSPOT)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=-1)

        async def reconnect_then_return(credential):
            harness.credentials.add(
                TENANT_ID, Provider.HUBSPOT, access_token="reconnected", version=7
            )
            return harness.hubspot.refresh.return_value

        harness.hubspot.refresh.side_effect = reconnect_then_return

        token = await harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT)

        assert token.token == "reconnected"
        assert harness.credentials.swaps == 0

    async def test_disconnect_and_reconnect_during_refresh_keeps_new_account(self, harness):
        """The version keeps growing across disconnect, so the old refresh cannot land."""
        harness.connect(Provider.HUBSPOT)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=-1)

        async def reconnect_other_account(credential):
            await harness.connection_service.disconnect(TENANT_ID, Provider.HUBSPOT)
            await harness.connection_service.connect(
                TENANT_ID, Provider.HUBSPOT, _grant("new-account"), {"portal_id": 2}
            )
            return _grant("old-account")

        harness.hubspot.refresh.side_effect = reconnect_other_account

        token = await harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT)

        stored = await harness.credentials.get(TENANT_ID, Provider.HUBSPOT)
        assert token.token == "new-account-access"
        assert stored.refresh_token == "new-account-refresh"
        assert stored.version == 3
        assert harness.credentials.swaps == 0

    async def test_disconnect_during_refresh_is_an_auth_error(self, harness):
        harness.connect(Provider.HUBSPOT)
        harness.credentials.add(TENANT_ID, Provider.HUBSPOT, expires_in=-1)

        async def disconnect_then_return(credential):
            await harness.connection_service.disconnect(TENANT_ID, Provider.HUBSPOT)
            return _grant("old-account")

        harness.hubspot.refresh.side_effect = disconnect_then_return

        with pytest.raises(AuthSyncError):
            await harness.tokens.get_valid_token(TENANT_ID, Provider.HUBSPOT)

        assert await harness.credentials.get(TENANT_ID, Provider.HUBSPOT) is None
        assert harness.credentials.swaps == 0

    async def test_force_refresh_ignores_margin(self, harness):
        harness.connect(Provider.HUBSPOT)

        token = await harness.tokens.force_refresh(TENANT_ID, Provider.HUBSPOT)

        assert token.token == "access-2"


class TestKeyedLock:
    async def test_serializes_same_key(self):
        lock = KeyedLock()
        order: list[str] = []

        async def hold(name: str) -> None:
            async with lock.hold("t:hubspot"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(hold("a"), hold("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    async def test_different_keys_do_not_block(self):
        lock = KeyedLock()

        async with lock.hold("t:hubspot"):
            await asyncio.wait_for(self._enter(lock, "t:bullhorn"), timeout=1)

    @staticmethod
    async def _enter(lock: KeyedLock, key: str) -> None:
        async with lock.hold(key):
            pass
