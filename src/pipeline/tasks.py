"""
Celery Tasks for Media Housekeeping

Implements the abandoned-upload reaper:
- Pops upload sessions whose TTL has passed from the Redis session store
- Best-effort deletes their raw destination keys
- Retries with exponential backoff when storage or Redis is unavailable
"""

import asyncio
from typing import Any, Dict

import redis.asyncio as redis
from redis.exceptions import RedisError

from src.core.celery_app import celery_app
from src.core.config import settings
from src.core.exceptions import StorageError
from src.core.logging import get_logger, setup_logging
from src.core.storage import create_storage
from src.engines.media.processor import ImageProcessor
from src.engines.media.repositories import RedisUploadSessionRepository
from src.engines.media.services import UploadOrchestrator

logger = get_logger(__name__)


async def _sweep_once() -> int:
    client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
    try:
        orchestrator = UploadOrchestrator(
            storage=create_storage(settings),
            sessions=RedisUploadSessionRepository(
                client,
                retention_seconds=settings.UPLOAD_SESSION_RETENTION_SECONDS,
            ),
            processor=ImageProcessor(max_workers=1),
            config=settings,
        )
        return await orchestrator.sweep_abandoned()
    finally:
        await client.aclose()


@celery_app.task(
    bind=True,
    name="src.pipeline.tasks.sweep_abandoned_uploads",
    max_retries=3,
    default_retry_delay=30,
    acks_late=True
)
def sweep_abandoned_uploads(self) -> Dict[str, Any]:
    """
    Celery task for reclaiming abandoned uploads.
    """
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)
    logger.info("task_sweep_started")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        reclaimed = loop.run_until_complete(_sweep_once())
    except (StorageError, RedisError) as e:
        logger.warning("task_sweep_failed", error=str(e), retry=self.request.retries)
        raise self.retry(exc=e, countdown=30 * (2 ** self.request.retries))
    finally:
        loop.close()

    logger.info("task_sweep_completed", reclaimed=reclaimed)
    return {"reclaimed": reclaimed}
