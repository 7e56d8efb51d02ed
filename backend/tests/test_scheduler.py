"""Tests for scheduler job locking."""
from unittest.mock import AsyncMock, patch

import pytest
import redis.asyncio as redis

from app.services import scheduler


@pytest.fixture
def fake_redis():
    client = AsyncMock()
    with patch.object(scheduler, "redis_client", client):
        yield client


@pytest.mark.asyncio
async def test_lock_is_taken_with_set_nx(fake_redis):
    fake_redis.set.return_value = True

    assert await scheduler.acquire_lock("finalize_payouts", timeout=3600)
    fake_redis.set.assert_awaited_once_with("payments:lock:finalize_payouts", "1", nx=True, ex=3600)


@pytest.mark.asyncio
async def test_lock_held_elsewhere(fake_redis):
    fake_redis.set.return_value = None
    assert not await scheduler.acquire_lock("finalize_payouts")


@pytest.mark.asyncio
async def test_redis_outage_skips_the_job(fake_redis):
    fake_redis.set.side_effect = redis.ConnectionError("connection refused")
    assert not await scheduler.acquire_lock("mature_earnings")


@pytest.mark.asyncio
async def test_job_skips_when_locked(fake_redis):
    fake_redis.set.return_value = None
    with patch.object(scheduler.payouts, "finalize_due_payouts", new=AsyncMock()) as finalize:
        await scheduler.finalize_payouts()
    finalize.assert_not_awaited()
    fake_redis.delete.assert_not_awaited()


@pytest.mark.asyncio
async def test_job_releases_lock_after_failure(fake_redis):
    fake_redis.set.return_value = True
    failing = AsyncMock(side_effect=RuntimeError("database unavailable"))
    with patch.object(scheduler.payouts, "finalize_due_payouts", new=failing):
        await scheduler.finalize_payouts()
    fake_redis.delete.assert_awaited_once_with("payments:lock:finalize_payouts")
