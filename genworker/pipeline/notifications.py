"""
Notification sink — fire-and-forget job completion/failure notices.

Notices are written to the account's notification feed in the store and,
when NOTIFY_WEBHOOK_URL is set, POSTed to the app (email/push delivery lives
there). Failures are logged and never propagate into the pipeline.
"""

import os
import asyncio
import logging

import httpx

from .models import Job, JobResponse
from .store import JobStore

logger = logging.getLogger(__name__)

NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_SECRET = os.getenv("NOTIFY_SECRET", "")


class Notifier:
    def __init__(self, store: JobStore, webhook_url: str = NOTIFY_WEBHOOK_URL):
        self._store = store
        self._webhook_url = webhook_url
        self._tasks: set[asyncio.Task] = set()

    def notify(self, job: Job) -> None:
        """Schedule a notice for the job's current state without waiting on it."""
        payload = {
            "type": f"job_{job.status.value}",
            "job": JobResponse.from_job(job).model_dump(mode="json"),
        }
        task = asyncio.create_task(self._deliver(job.account_id, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for in-flight notices (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _deliver(self, account_id: str, payload: dict) -> None:
        try:
            self._store.insert_notification(account_id, payload)
        except Exception as e:
            logger.error(f"Notification insert failed for account {account_id}: {e}")

        if not self._webhook_url:
            return
        try:
            async with httpx.AsyncClient(timeout=10) as client:
                resp = await client.post(
                    self._webhook_url,
                    json={"account_id": account_id, **payload},
                    headers={"X-Worker-Secret": NOTIFY_SECRET},
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Notification webhook failed for account {account_id}: {e}")
