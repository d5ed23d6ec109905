import asyncio
import logging
import json
import uuid

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from common.config import settings
from common.integrations import rotate_all_tokens, rotate_integration
from common.models import EventLog
from common.results import RECONNECT_REQUIRED
from common.sync import run_sync_pass
from common.todoist import create_todoist_client

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("worker")

# DB Setup
engine = create_async_engine(settings.DATABASE_URL)
AsyncSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Redis Setup
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

DEFAULT_QUEUE = "default_queue"
DLQ = "dead_letter_queue"
MAX_ATTEMPTS = 5


class RetryableJobError(RuntimeError):
    pass


async def _emit_worker_event(
    event_type: str,
    topic: str,
    job_id: str,
    attempt: int,
    queue: str,
    user_id: str = "system",
    max_attempts: int = MAX_ATTEMPTS,
    extra: dict | None = None,
):
    payload = {
        "topic": topic,
        "job_id": job_id,
        "attempt": attempt,
        "max_attempts": max_attempts,
        "queue": queue,
    }
    if extra:
        payload.update(extra)
    try:
        async with AsyncSessionLocal() as db:
            db.add(EventLog(
                id=str(uuid.uuid4()),
                request_id=f"job_{job_id}",
                user_id=user_id,
                event_type=event_type,
                payload_json=payload,
            ))
            await db.commit()
    except Exception as log_error:
        logger.error(f"Failed to emit worker event {event_type} for {job_id}: {log_error}")

async def process_job(job_data: dict):
    topic = job_data.get("topic")
    payload = job_data.get("payload", {})
    job_id = job_data.get("job_id")
    attempt = job_data.get("attempt", 1)
    user_id = payload.get("user_id") or "system"

    logger.info(f"Processing job: {topic} (id: {job_id}, attempt: {attempt})")

    try:
        if topic == "sync.todoist":
            await handle_todoist_sync(job_id, payload)
        elif topic == "integrations.rotate_keys":
            await handle_rotate_keys(job_id, payload)
        else:
            logger.warning(f"Unknown topic: {topic}")
            return
        await _emit_worker_event(
            event_type="worker_topic_completed",
            topic=topic,
            job_id=job_id,
            attempt=attempt,
            max_attempts=MAX_ATTEMPTS,
            queue=DEFAULT_QUEUE,
            user_id=user_id,
        )

    except Exception as e:
        logger.error(f"Job failed (attempt {attempt}): {e}")
        if attempt < MAX_ATTEMPTS:
            job_data["attempt"] = attempt + 1
            wait_time = min(2 ** attempt, 60)
            logger.info(f"Retrying in {wait_time}s...")
            await _emit_worker_event(
                event_type="worker_retry_scheduled",
                topic=topic,
                job_id=job_id,
                attempt=attempt,
                max_attempts=MAX_ATTEMPTS,
                queue=DEFAULT_QUEUE,
                user_id=user_id,
                extra={"delay_seconds": wait_time, "error": str(e)},
            )
            await asyncio.sleep(wait_time)
            await redis_client.rpush(DEFAULT_QUEUE, json.dumps(job_data))
        else:
            logger.error(f"Job exceeded max attempts, moving to DLQ: {job_id}")
            await _emit_worker_event(
                event_type="worker_moved_to_dlq",
                topic=topic,
                job_id=job_id,
                attempt=attempt,
                max_attempts=MAX_ATTEMPTS,
                queue=DLQ,
                user_id=user_id,
                extra={"error": str(e)},
            )
            await redis_client.rpush(DLQ, json.dumps(job_data))

async def handle_todoist_sync(job_id: str, payload: dict):
    user_id = payload.get("user_id")
    if not user_id:
        logger.warning(f"sync.todoist job {job_id} has no user_id, dropping")
        return

    async with AsyncSessionLocal() as db:
        result = await run_sync_pass(db, user_id, client_factory=create_todoist_client, request_id=f"job_{job_id}")

    if result.status == "skipped":
        logger.info(f"Todoist sync for user {user_id} skipped: {result.error}")
    elif result.status == "error":
        # Credential problems need the user; retrying cannot fix them.
        if result.code == RECONNECT_REQUIRED:
            logger.warning(f"Todoist sync for user {user_id} needs reconnection: {result.error}")
            return
        raise RetryableJobError(result.error or "Todoist sync failed")
    else:
        logger.info(
            f"Todoist sync for user {user_id} done: {result.created_local} pulled, "
            f"{result.created_remote} pushed, {result.updated_local + result.updated_remote} updated, "
            f"{result.conflicts} conflicts"
        )

async def handle_rotate_keys(job_id: str, payload: dict):
    user_id = payload.get("user_id")
    async with AsyncSessionLocal() as db:
        if user_id:
            result = await rotate_integration(db, user_id)
            if not result.success:
                logger.warning(f"Key rotation for user {user_id} failed: {result.error}")
            return
        counts = await rotate_all_tokens(db)
        db.add(EventLog(
            id=str(uuid.uuid4()), request_id=f"job_{job_id}", user_id="system",
            event_type="todoist_keys_rotated", payload_json=counts,
        ))
        await db.commit()
    logger.info(f"Key rotation complete. Rotated: {counts['rotated']}, Failed: {counts['failed']}")

async def worker_loop():
    logger.info("Worker started, listening for jobs...")
    while True:
        try:
            result = await redis_client.blpop(DEFAULT_QUEUE, timeout=5)
            if result:
                _, raw_data = result
                job_data = json.loads(raw_data)
                await process_job(job_data)
        except Exception as e:
            logger.error(f"Error in worker loop: {e}")
            await asyncio.sleep(5)

if __name__ == "__main__":
    asyncio.run(worker_loop())
