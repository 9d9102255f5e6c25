"""
Per-job single-writer locks.

Every transition of a job (pipeline step, callback, cancellation, timeout)
runs while holding that job's lock:
  1. Redis lock (redis.asyncio) when REDIS_URL is set, shared across workers
  2. In-process asyncio.Lock fallback otherwise, one per job id

The fallback only serialises writers inside one worker process; deployments
with more than one worker need Redis.
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import LockError

from .errors import StoreConflict

logger = logging.getLogger(__name__)

# ── Configuration ─────────────────────────────────────────────────────────────
LOCK_TTL_SECONDS = int(os.getenv("JOB_LOCK_TTL_SECONDS", "900"))
LOCK_WAIT_SECONDS = float(os.getenv("JOB_LOCK_WAIT_SECONDS", "120"))
LOCK_PREFIX = "genworker:joblock:"


class JobLocks:
    def __init__(self, redis_client: Optional[aioredis.Redis] = None):
        self._redis = redis_client
        self._local: dict[str, asyncio.Lock] = {}

    @property
    def distributed(self) -> bool:
        return self._redis is not None

    @asynccontextmanager
    async def hold(self, job_id: str) -> AsyncIterator[None]:
        if self._redis is None:
            lock = self._local.setdefault(job_id, asyncio.Lock())
            async with lock:
                yield
            return

        lock = self._redis.lock(
            f"{LOCK_PREFIX}{job_id}",
            timeout=LOCK_TTL_SECONDS,
            blocking_timeout=LOCK_WAIT_SECONDS,
        )
        if not await lock.acquire():
            raise StoreConflict(f"Timed out waiting for lock on job {job_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # TTL expired while held; another writer may already own it
                logger.warning(f"[{job_id}] Job lock lost before release: {e}")

    def forget(self, job_id: str) -> None:
        """Drop the in-process lock for a terminal job."""
        lock = self._local.get(job_id)
        if lock is not None and not lock.locked():
            self._local.pop(job_id, None)


_locks: Optional[JobLocks] = None


def get_job_locks() -> JobLocks:
    """Lazy-init the lock provider: Redis when configured, in-process otherwise."""
    global _locks
    if _locks is None:
        redis_url = os.getenv("REDIS_URL", "")
        if redis_url:
            _locks = JobLocks(aioredis.from_url(redis_url))
            logger.info(f"Job locks: Redis ({redis_url[:30]}...)")
        else:
            logger.warning("REDIS_URL not set, using in-process job locks (single worker only)")
            _locks = JobLocks()
    return _locks
