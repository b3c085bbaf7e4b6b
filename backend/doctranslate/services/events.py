from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any, AsyncIterator

import orjson
from redis import Redis

from doctranslate.core.redis_client import get_async_redis, get_redis
from doctranslate.schemas.job import EventMessage

TERMINAL_EVENTS = frozenset({"job_ready", "job_failed", "job_cancelled"})
TERMINAL_STATUS_EVENTS = {"ready": "job_ready", "failed": "job_failed", "cancelled": "job_cancelled"}


def event_channel(job_id: str) -> str:
    return f"job:{job_id}:events"


def build_event(job_id: str, event: str, payload: dict[str, Any] | None = None) -> str:
    message = EventMessage(
        event=event,  # type: ignore[arg-type]
        job_id=job_id,
        payload=payload or {},
        ts=datetime.now(UTC),
    )
    return orjson.dumps(message.model_dump(mode="json")).decode("utf-8")


def publish_event(
    job_id: str,
    event: str,
    payload: dict[str, Any] | None = None,
    redis: Redis | None = None,
) -> None:
    client = redis if redis is not None else get_redis()
    client.publish(event_channel(job_id), build_event(job_id, event, payload))


def snapshot_event(meta: dict[str, Any]) -> str:
    """Current job state as an event, so late subscribers start from the right place."""
    job_id = meta["job_id"]
    event = TERMINAL_STATUS_EVENTS.get(meta.get("status", ""), "job_progress")
    payload = dict(meta.get("progress") or {})
    if meta.get("error"):
        payload["reason"] = meta["error"]
    return build_event(job_id, event, payload)


async def sse_stream(job_id: str, meta: dict[str, Any] | None = None) -> AsyncIterator[str]:
    yield "retry: 3000\n\n"
    if meta is not None:
        yield f"data: {snapshot_event(meta)}\n\n"
        if meta.get("status") in TERMINAL_STATUS_EVENTS:
            return

    redis = get_async_redis()
    pubsub = redis.pubsub(ignore_subscribe_messages=True)
    await pubsub.subscribe(event_channel(job_id))

    try:
        while True:
            message = await pubsub.get_message(timeout=5.0)
            if message and message.get("type") == "message":
                yield f"data: {message['data']}\n\n"
                if orjson.loads(message["data"]).get("event") in TERMINAL_EVENTS:
                    break
            else:
                yield ": ping\n\n"
            await asyncio.sleep(0.2)
    finally:
        await pubsub.unsubscribe(event_channel(job_id))
        await pubsub.close()
