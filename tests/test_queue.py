"""Unit tests for the sync queue statements, backoff, and dequeue coordinator.

Statements are compiled against the PostgreSQL dialect; no database is needed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.dialects import postgresql

from src.crm_sync.integrations.coordinator import DequeueCoordinator
from src.crm_sync.integrations.queue import (
    build_claim_statement,
    build_enqueue_statement,
    build_lease_statement,
    compute_backoff,
    sort_ready,
)
from src.crm_sync.integrations.schemas import JobType, Provider, SyncJob

from tests.doubles import TENANT_ID, InMemoryQueue

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _job(**overrides) -> SyncJob:
    defaults = {
        "id": str(uuid.uuid4()),
        "tenant_id": TENANT_ID,
        "provider": Provider.HUBSPOT,
        "job_type": JobType.SYNC_DEAL,
        "not_before": NOW,
        "payload": {"direction": "outbound", "entity_type": "deal", "local_id": "D1"},
        "dedupe_key": "hubspot:outbound:deal:D1",
        "created_at": NOW,
    }
    defaults.update(overrides)
    return SyncJob(**defaults)


# ── Backoff ─────────────────────────────────────────────────────────────────


class TestComputeBackoff:
    def test_exponential_without_jitter(self):
        delays = [
            compute_backoff(n, base_seconds=30, cap_seconds=3600, jitter=lambda: 0.0)
            for n in range(4)
        ]
        assert delays == [30, 60, 120, 240]

    def test_capped(self):
        assert compute_backoff(20, base_seconds=30, cap_seconds=3600, jitter=lambda: 0.0) == 3600

    def test_monotonic_until_cap(self):
        delays = [
            compute_backoff(n, base_seconds=30, cap_seconds=3600, jitter=lambda: 0.0)
            for n in range(12)
        ]
        assert delays == sorted(delays)
        assert delays[-1] == 3600

    def test_jitter_adds_at_most_ten_percent(self):
        assert compute_backoff(0, base_seconds=100, cap_seconds=3600, jitter=lambda: 1.0) == pytest.approx(110)
        for _ in range(50):
            delay = compute_backoff(2, base_seconds=30, cap_seconds=3600)
            assert 120 <= delay <= 132

    def test_longer_retry_after_wins(self):
        assert compute_backoff(0, base_seconds=30, retry_after=90, jitter=lambda: 0.0) == 90

    def test_shorter_retry_after_ignored(self):
        assert compute_backoff(3, base_seconds=30, retry_after=5, jitter=lambda: 0.0) == 240


# ── Statement Builders ──────────────────────────────────────────────────────


class TestEnqueueStatement:
    def test_dedupe_key_merges_on_partial_unique_index(self):
        sql = _sql(
            build_enqueue_statement(
                tenant_id=TENANT_ID,
                provider=Provider.HUBSPOT,
                job_type=JobType.SYNC_DEAL,
                priority=0,
                payload={"local_id": "D1"},
                not_before=NOW,
                dedupe_key="hubspot:outbound:deal:D1",
            )
        )
        assert "INSERT INTO integrations.sync_jobs" in sql
        assert "ON CONFLICT (tenant_id, dedupe_key) WHERE dedupe_key IS NOT NULL DO UPDATE" in sql
        assert "greatest(" in sql
        assert "revision" in sql
        assert "sync_jobs.id" in sql[sql.index("RETURNING"):]

    def test_without_dedupe_key_plain_insert(self):
        sql = _sql(
            build_enqueue_statement(
                tenant_id=TENANT_ID,
                provider=Provider.BULLHORN,
                job_type=JobType.SYNC_NOTE,
                priority=5,
                payload={},
                not_before=NOW,
            )
        )
        assert "ON CONFLICT" not in sql
        assert "sync_jobs.id" in sql[sql.index("RETURNING"):]


class TestClaimStatement:
    def test_delete_returning_over_skip_locked_subselect(self):
        sql = _sql(build_claim_statement(10, NOW))
        assert sql.startswith("DELETE FROM integrations.sync_jobs")
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "RETURNING" in sql
        assert "sync_jobs.max_attempts" in sql

    def test_queue_order(self):
        sql = _sql(build_claim_statement(10, NOW))
        order = sql[sql.index("ORDER BY"):]
        assert order.index("priority DESC") < order.index("not_before ASC") < order.index("created_at ASC")

    def test_tenant_filter_only_when_requested(self):
        assert "sync_jobs.tenant_id = " not in _sql(build_claim_statement(10, NOW))
        assert "sync_jobs.tenant_id = " in _sql(build_claim_statement(10, NOW, TENANT_ID))


def test_lease_statement_does_nothing_on_conflict():
    sql = _sql(build_lease_statement(_job(), NOW + timedelta(minutes=5)))
    assert "ON CONFLICT DO NOTHING" in sql
    assert "sync_jobs.revision" in sql[sql.index("RETURNING"):]


def test_sort_ready_orders_by_priority_then_age():
    low_old = _job(priority=0, not_before=NOW - timedelta(minutes=5))
    low_new = _job(priority=0, not_before=NOW)
    high = _job(priority=5, not_before=NOW)
    assert [j.id for j in sort_ready([low_new, high, low_old])] == [high.id, low_old.id, low_new.id]


# ── Enqueue Contract (in-memory) ────────────────────────────────────────────


class TestEnqueueContract:
    async def test_same_dedupe_key_collapses_to_one_job(self):
        queue = InMemoryQueue()
        first = await queue.enqueue(
            TENANT_ID, Provider.HUBSPOT, JobType.SYNC_DEAL,
            payload={"local_id": "D1", "operation": "update"}, dedupe_key="k",
        )
        second = await queue.enqueue(
            TENANT_ID, Provider.HUBSPOT, JobType.SYNC_DEAL,
            priority=3, payload={"local_id": "D1", "operation": "create"}, dedupe_key="k",
        )
        assert first == second
        job = queue.jobs[first]
        assert len(queue.jobs) == 1
        assert job.revision == 1
        assert job.priority == 3
        assert job.payload["operation"] == "create"

    async def test_claim_is_exclusive(self):
        queue = InMemoryQueue()
        for i in range(6):
            await queue.enqueue(TENANT_ID, Provider.HUBSPOT, JobType.SYNC_DEAL, dedupe_key=f"k{i}")
        coordinator = DequeueCoordinator(queue)
        first = await coordinator.claim(4)
        second = await coordinator.claim(4)
        assert len(first) == 4
        assert len(second) == 2
        assert not {j.id for j in first} & {j.id for j in second}


# ── Dequeue Coordinator ─────────────────────────────────────────────────────


class TestDequeueCoordinator:
    @pytest.mark.parametrize("limit", [0, 51, -1])
    async def test_rejects_limit_out_of_range(self, limit):
        coordinator = DequeueCoordinator(AsyncMock())
        with pytest.raises(ValueError, match="between 1 and 50"):
            await coordinator.claim(limit)

    async def test_passes_tenant_filter(self):
        queue = AsyncMock()
        queue.claim.return_value = [_job()]
        jobs = await DequeueCoordinator(queue).claim(50, tenant_id=TENANT_ID)
        queue.claim.assert_awaited_once_with(50, tenant_id=TENANT_ID)
        assert len(jobs) == 1
