import asyncio
import json
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from common.models import EventLog
from common.sync import SyncResult
from fakes import USER, connect, memory_db
from worker.main import DLQ, DEFAULT_QUEUE, MAX_ATTEMPTS, process_job


def _job(attempt=1, topic="sync.todoist", payload=None):
    return {"job_id": "job_1", "topic": topic, "payload": {"user_id": USER} if payload is None else payload, "attempt": attempt}


async def _events(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(EventLog).order_by(EventLog.created_at))).scalars().all()


def test_failed_sync_is_retried_with_backoff(mock_redis):
    async def _run():
        async with memory_db() as session_factory:
            failing = AsyncMock(return_value=SyncResult(status="error", error="Todoist API error 503"))
            with patch("worker.main.AsyncSessionLocal", session_factory), \
                    patch("worker.main.redis_client", mock_redis), \
                    patch("worker.main.run_sync_pass", failing), \
                    patch("worker.main.asyncio.sleep", new_callable=AsyncMock) as sleep:
                await process_job(_job(attempt=2))

            sleep.assert_awaited_once_with(4)
            queue, raw = mock_redis.rpush.await_args.args
            assert queue == DEFAULT_QUEUE
            assert json.loads(raw)["attempt"] == 3
            events = await _events(session_factory)
            assert [event.event_type for event in events] == ["worker_retry_scheduled"]

    asyncio.run(_run())


def test_sync_moves_to_dlq_after_max_attempts(mock_redis):
    async def _run():
        async with memory_db() as session_factory:
            failing = AsyncMock(return_value=SyncResult(status="error", error="boom"))
            with patch("worker.main.AsyncSessionLocal", session_factory), \
                    patch("worker.main.redis_client", mock_redis), \
                    patch("worker.main.run_sync_pass", failing):
                await process_job(_job(attempt=MAX_ATTEMPTS))

            queue, _ = mock_redis.rpush.await_args.args
            assert queue == DLQ
            events = await _events(session_factory)
            assert [event.event_type for event in events] == ["worker_moved_to_dlq"]

    asyncio.run(_run())


def test_reconnect_required_and_skipped_syncs_are_not_retried(mock_redis):
    async def _run():
        async with memory_db() as session_factory:
            outcomes = [
                SyncResult(status="error", code="reconnect_required", error="Todoist integration not connected."),
                SyncResult(status="skipped", code="sync_in_progress", error="A Todoist sync is already running."),
                SyncResult(status="ok", created_local=2),
            ]
            with patch("worker.main.AsyncSessionLocal", session_factory), \
                    patch("worker.main.redis_client", mock_redis), \
                    patch("worker.main.run_sync_pass", AsyncMock(side_effect=outcomes)):
                for _ in outcomes:
                    await process_job(_job())

            mock_redis.rpush.assert_not_awaited()
            events = await _events(session_factory)
            assert [event.event_type for event in events] == ["worker_topic_completed"] * 3

    asyncio.run(_run())


def test_rotate_keys_job_records_counts(mock_redis, keyring_env):
    async def _run():
        async with memory_db() as session_factory:
            async with session_factory() as db:
                await connect(db)

            keyring_env.TODOIST_ENCRYPTION_KEYS = "v1:" + "11" * 32 + ",v2:" + "22" * 32
            keyring_env.TODOIST_ENCRYPTION_KEY_ID = "v2"
            with patch("worker.main.AsyncSessionLocal", session_factory), \
                    patch("worker.main.redis_client", mock_redis):
                await process_job(_job(topic="integrations.rotate_keys", payload={}))

            events = {event.event_type: event for event in await _events(session_factory)}
            assert events["todoist_keys_rotated"].payload_json == {"rotated": 1, "failed": 0}
            assert "worker_topic_completed" in events

    asyncio.run(_run())


def test_unknown_topic_is_ignored(mock_redis):
    async def _run():
        with patch("worker.main.redis_client", mock_redis):
            await process_job(_job(topic="nope"))
        mock_redis.rpush.assert_not_awaited()

    asyncio.run(_run())
