"""Scheduled ledger sweeps and their Redis/RQ queue helpers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import async_session_maker, build_async_database_url
from services.auto_topup import reset_monthly_topup_counters
from services.free_grants import reset_usage_counters, run_free_grant_sweep


logger = logging.getLogger(__name__)


async def _free_grants(db: AsyncSession) -> Dict[str, Any]:
    return await run_free_grant_sweep(db)


async def _daily_usage(db: AsyncSession) -> Dict[str, Any]:
    return await reset_usage_counters(db, "daily")


async def _weekly_usage(db: AsyncSession) -> Dict[str, Any]:
    return await reset_usage_counters(db, "weekly")


async def _monthly_usage(db: AsyncSession) -> Dict[str, Any]:
    return await reset_usage_counters(db, "monthly")


async def _monthly_topups(db: AsyncSession) -> Dict[str, Any]:
    return await reset_monthly_topup_counters(db)


LEDGER_SWEEPS: Dict[str, Callable[[AsyncSession], Awaitable[Dict[str, Any]]]] = {
    "free_grants": _free_grants,
    "daily_usage": _daily_usage,
    "weekly_usage": _weekly_usage,
    "monthly_usage": _monthly_usage,
    "monthly_topups": _monthly_topups,
}


async def run_ledger_sweep(name: str, db: Optional[AsyncSession] = None) -> Dict[str, Any]:
    """Run one named sweep. Every sweep only touches rows that are due."""
    sweep = LEDGER_SWEEPS.get(name)
    if sweep is None:
        raise ValueError(f"Unknown ledger sweep: {name}")
    if db is not None:
        return await sweep(db)
    async with async_session_maker() as session:
        return await sweep(session)


async def run_all_ledger_sweeps() -> Dict[str, Any]:
    results: Dict[str, Any] = {}
    for name in LEDGER_SWEEPS:
        try:
            results[name] = await run_ledger_sweep(name)
        except Exception as exc:
            logger.exception("ledger_sweep_failed name=%s", name)
            results[name] = {"success": False, "error": "sweep_failed", "message": str(exc)}
    return results


async def _run_ledger_sweep_isolated(name: str) -> Dict[str, Any]:
    # Each job gets its own engine so pooled connections never cross event loops.
    engine = create_async_engine(build_async_database_url(settings.DATABASE_URL), pool_pre_ping=True)
    try:
        session_maker = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        async with session_maker() as db:
            return await run_ledger_sweep(name, db)
    finally:
        await engine.dispose()


def run_ledger_sweep_job(name: str) -> Dict[str, Any]:
    """RQ worker entrypoint for ledger sweeps."""
    result = asyncio.run(_run_ledger_sweep_isolated(name))
    logger.info("ledger_sweep_job name=%s result=%s", name, result)
    return result


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_ledger_queue() -> Queue:
    return Queue(
        name=settings.LEDGER_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=900,
    )


def enqueue_ledger_sweep(name: str) -> Job:
    """Enqueue a sweep with retries; re-running a sweep is harmless."""
    if name not in LEDGER_SWEEPS:
        raise ValueError(f"Unknown ledger sweep: {name}")
    queue = get_ledger_queue()
    return queue.enqueue(
        "services.ledger_jobs.run_ledger_sweep_job",
        name,
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )
