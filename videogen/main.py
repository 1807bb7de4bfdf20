import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from supabase import Client, create_client

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .credits import InMemoryCreditLedger, SupabaseCreditLedger
from .fallback_limiter import InMemoryWindowStore
from .rate_limiter import RedisWindowStore, SlidingWindowRateLimiter
from .pipeline import (
    ImageAdapter,
    InMemoryJobStore,
    JobOrchestrator,
    SupabaseJobStore,
    VideoAdapter,
    generation_router,
)
from .pipeline.orchestrator import STALE_JOB_TIMEOUT

load_dotenv()

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

RECOVERY_INTERVAL = float(os.environ.get("RECOVERY_INTERVAL", "300"))  # seconds
DEV_STARTING_CREDITS = int(os.environ.get("DEV_STARTING_CREDITS", "0"))

# ── Lazy Supabase client ──────────────────────────────────────────────────────
_supabase_client: Optional[Client] = None


def get_supabase() -> Optional[Client]:
    """Supabase client, or None when SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY are unset."""
    global _supabase_client
    if _supabase_client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
        if not url or not key:
            return None
        _supabase_client = create_client(url, key)
    return _supabase_client


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get or create a Redis client. Returns None if Redis is not configured or unreachable."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            client = redis.from_url(redis_url, decode_responses=False)
            try:
                client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
                _redis_client = client
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e} — rate limiting falls back to in-memory")
    return _redis_client


def build_orchestrator() -> JobOrchestrator:
    r = get_redis()
    if r is not None:
        limiter = SlidingWindowRateLimiter(RedisWindowStore(r), fallback=InMemoryWindowStore())
    else:
        limiter = SlidingWindowRateLimiter(InMemoryWindowStore())

    sb = get_supabase()
    if sb is not None:
        ledger = SupabaseCreditLedger(sb)
        store = SupabaseJobStore(sb)
    else:
        logger.warning("No Supabase — jobs and credits are kept in memory")
        ledger = InMemoryCreditLedger(default_balance=DEV_STARTING_CREDITS)
        store = InMemoryJobStore()

    return JobOrchestrator(limiter, ledger, store, ImageAdapter(), VideoAdapter())


def _window_stores(limiter: SlidingWindowRateLimiter):
    for store in limiter.stores:
        if isinstance(store, InMemoryWindowStore):
            yield store


async def _recovery_loop(orchestrator: JobOrchestrator):
    """Periodically finish interrupted jobs and sweep in-memory rate windows."""
    while True:
        await asyncio.sleep(RECOVERY_INTERVAL)
        try:
            await orchestrator.recover(STALE_JOB_TIMEOUT)
            for store in _window_stores(orchestrator.limiter):
                removed = store.cleanup_expired()
                if removed:
                    logger.info(f"Swept {removed} expired rate-limit window(s)")
        except Exception as e:
            logger.error(f"Recovery loop error: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())

    orchestrator = build_orchestrator()
    app.state.orchestrator = orchestrator

    counts = await orchestrator.recover(STALE_JOB_TIMEOUT)
    if any(counts.values()):
        logger.info(f"Recovered jobs from previous session: {counts}")

    recovery_task = asyncio.create_task(_recovery_loop(orchestrator))
    yield

    logger.info("Worker shutting down...")
    recovery_task.cancel()
    await asyncio.gather(recovery_task, return_exceptions=True)
    await orchestrator.shutdown()
    await orchestrator.image_adapter.aclose()
    await orchestrator.video_adapter.aclose()


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(generation_router)


@app.get("/health")
def health_check():
    """Verify worker is running and which backends are configured."""
    return {
        "status": "ok",
        "worker_secret_set": bool(os.environ.get("WORKER_SHARED_SECRET")),
        "redis_configured": bool(os.environ.get("REDIS_URL")),
        "supabase_configured": bool(os.environ.get("SUPABASE_URL")),
        "image_provider_key_set": bool(os.environ.get("IMAGE_PROVIDER_API_KEY") or os.environ.get("KIE_API_KEY")),
        "video_provider_key_set": bool(os.environ.get("VIDEO_PROVIDER_API_KEY") or os.environ.get("KIE_API_KEY")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    return metrics.get_snapshot()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("videogen.main:app", host="0.0.0.0", port=port, reload=True)
