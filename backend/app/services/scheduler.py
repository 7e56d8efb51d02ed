"""Scheduler service for payment cron jobs using APScheduler."""
import logging
import os
import multiprocessing
from datetime import datetime, timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import redis.asyncio as redis

from app.config import settings
from app.database import AsyncSessionLocal
from app.services import checkout, commission, memberships, payouts

logger = logging.getLogger(__name__)

# Initialize scheduler
scheduler = AsyncIOScheduler()

# Redis client for distributed locking
redis_client = None

LOCK_PREFIX = "payments:lock:"


async def get_redis_client():
    """Get or create Redis client."""
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return redis_client


async def acquire_lock(lock_name: str, timeout: int = 300) -> bool:
    """
    Acquire a distributed lock using Redis.

    Args:
        lock_name: Name of the lock
        timeout: Lock timeout in seconds

    Returns:
        True if lock acquired, False otherwise
    """
    try:
        client = await get_redis_client()
        # SET NX EX: only one instance across the fleet runs the job
        result = await client.set(f"{LOCK_PREFIX}{lock_name}", "1", nx=True, ex=timeout)
        return result is not None
    except redis.RedisError as e:
        logger.error(f"Failed to acquire lock {lock_name}: {e}")
        return False


async def release_lock(lock_name: str):
    """Release a distributed lock."""
    try:
        client = await get_redis_client()
        await client.delete(f"{LOCK_PREFIX}{lock_name}")
    except redis.RedisError as e:
        logger.error(f"Failed to release lock {lock_name}: {e}")


async def sweep_stale_transactions():
    """Re-confirm pending payments and fail the ones past their gateway timeout."""
    lock_name = "sweep_stale_transactions"

    if not await acquire_lock(lock_name):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running sweep_stale_transactions job")
        async with AsyncSessionLocal() as session:
            await checkout.expire_stale_transactions(session)
    except Exception as e:
        logger.error(f"Error in sweep_stale_transactions: {e}")
    finally:
        await release_lock(lock_name)


async def mature_earnings():
    """Monthly settlement: pending creator earnings become withdrawable."""
    lock_name = "mature_earnings"

    if not await acquire_lock(lock_name, timeout=3600):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running mature_earnings job")
        async with AsyncSessionLocal() as session:
            run = await commission.run_earnings_maturation(session)
            logger.info(f"Earnings maturation for {run.settlement_date}: {run.status}")
    except Exception as e:
        logger.error(f"Error in mature_earnings: {e}")
    finally:
        await release_lock(lock_name)


async def finalize_payouts():
    """Send queued payouts whose payout date has arrived."""
    lock_name = "finalize_payouts"

    if not await acquire_lock(lock_name, timeout=3600):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running finalize_payouts job")
        async with AsyncSessionLocal() as session:
            summary = await payouts.finalize_due_payouts(session)
            logger.info(
                f"Finalized payouts: {summary['completed']} completed, "
                f"{summary['failed']} failed, {summary['skipped']} skipped"
            )
    except Exception as e:
        logger.error(f"Error in finalize_payouts: {e}")
    finally:
        await release_lock(lock_name)


async def apply_scheduled_plan_changes():
    """Move subscriptions onto their scheduled downgrade once the period ends."""
    lock_name = "apply_scheduled_plan_changes"

    if not await acquire_lock(lock_name):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running apply_scheduled_plan_changes job")
        async with AsyncSessionLocal() as session:
            changed = await memberships.apply_due_plan_changes(session)
            await session.commit()
            logger.info(f"Applied {changed} scheduled plan changes")
    except Exception as e:
        logger.error(f"Error in apply_scheduled_plan_changes: {e}")
    finally:
        await release_lock(lock_name)


def start_scheduler():
    """Start the APScheduler with all payment jobs."""
    # Only the first uvicorn worker runs jobs; the others would duplicate them
    current_pid = os.getpid()
    current_process_name = multiprocessing.current_process().name

    if current_process_name != "SpawnProcess-1":
        logger.info(f"Skipping scheduler on {current_process_name} (PID: {current_pid}) - scheduler only runs on SpawnProcess-1")
        return

    logger.info(f"Starting scheduler on {current_process_name} (PID: {current_pid})...")
    payout_day = settings.PAYOUT_DAY_OF_MONTH

    # Job 1: Sweep pending payments every 5 minutes (staggered: starts at :01)
    scheduler.add_job(
        sweep_stale_transactions,
        trigger=IntervalTrigger(minutes=5, start_date=datetime.utcnow() + timedelta(minutes=1)),
        id="sweep_stale_transactions",
        name="Sweep stale transactions",
        replace_existing=True
    )

    # Job 2: Mature earnings on the payout day at 00:10 UTC
    scheduler.add_job(
        mature_earnings,
        trigger=CronTrigger(day=payout_day, hour=0, minute=10),
        id="mature_earnings",
        name="Mature creator earnings",
        replace_existing=True
    )

    # Job 3: Finalize payouts on the payout day at 01:00 UTC, after maturation
    scheduler.add_job(
        finalize_payouts,
        trigger=CronTrigger(day=payout_day, hour=1, minute=0),
        id="finalize_payouts",
        name="Finalize due payouts",
        replace_existing=True
    )

    # Job 4: Apply scheduled downgrades every day at 00:30 UTC
    scheduler.add_job(
        apply_scheduled_plan_changes,
        trigger=CronTrigger(hour=0, minute=30),
        id="apply_scheduled_plan_changes",
        name="Apply scheduled plan changes",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Scheduler started with 4 payment jobs on master process")


def stop_scheduler():
    """Stop the APScheduler."""
    current_pid = os.getpid()
    current_process_name = multiprocessing.current_process().name

    if current_process_name != "SpawnProcess-1":
        logger.info(f"Skipping scheduler shutdown on {current_process_name} (PID: {current_pid})")
        return

    logger.info(f"Stopping scheduler on {current_process_name} (PID: {current_pid})...")
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
    else:
        logger.info("Scheduler was not running")
