import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from .auth_middleware import SharedSecretMiddleware
from . import metrics
from .pipeline import callbacks_router, get_services, jobs_router, ops_router
from .pipeline.maintenance import recover_jobs, run_sweeper
from .pipeline.store import SupabaseStore

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())
    services = get_services()

    # Pick up jobs a previous process left mid-flight
    await recover_jobs(services.store, services.pipeline)

    sweeper = asyncio.create_task(
        run_sweeper(services.store, services.pipeline, services.gateway, services.receiver)
    )
    yield

    logger.info("Worker shutting down...")
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass
    await services.pipeline.notifier.drain()


app = FastAPI(title="genworker", lifespan=lifespan)
app.add_middleware(SharedSecretMiddleware)
app.include_router(jobs_router)
app.include_router(ops_router)
app.include_router(callbacks_router)


@app.get("/health")
def health_check():
    """Verify worker is running and which backends are configured."""
    services = get_services()
    return {
        "status": "ok",
        "store": "supabase" if isinstance(services.store, SupabaseStore) else "memory",
        "distributed_locks": services.pipeline.locks.distributed,
        "fal_key_set": bool(os.environ.get("FAL_KEY")),
        "r2_configured": bool(os.environ.get("R2_ACCOUNT_ID")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("genworker.main:app", host="0.0.0.0", port=port, reload=True)
