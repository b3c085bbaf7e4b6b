from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from doctranslate.services.events import publish_event
from doctranslate.services.job_store import JobStore

EXPIRING_NOTICE_MINUTES = 5
logger = logging.getLogger(__name__)


def sweep_jobs(store: JobStore, now: datetime | None = None) -> list[str]:
    """Expire overdue jobs and warn subscribers of jobs about to expire."""
    now = now or datetime.now(UTC)
    expired: list[str] = []

    for meta in list(store.iter_metas()):
        job_id = meta.get("job_id")
        expires_at_raw = meta.get("expires_at")
        if not job_id or not expires_at_raw or meta.get("status") in {"expired", "deleted"}:
            continue
        expires_at = datetime.fromisoformat(expires_at_raw)
        if expires_at <= now:
            store.cleanup_job(job_id, status="expired")
            expired.append(job_id)
            continue

        if expires_at <= now + timedelta(minutes=EXPIRING_NOTICE_MINUTES):
            notice_key = f"job:{job_id}:expiring_notice"
            if store.redis.setnx(notice_key, "1"):
                store.redis.expire(notice_key, 600)
                publish_event(
                    job_id,
                    "job_expiring",
                    {"job_id": job_id, "expires_at": expires_at.isoformat()},
                    redis=store.redis,
                )

    if expired:
        logger.info("expired jobs removed: %s", len(expired))
    return expired


async def cleanup_loop(stop_event: asyncio.Event) -> None:
    store = JobStore()

    while not stop_event.is_set():
        try:
            sweep_jobs(store)
        except Exception:  # noqa: BLE001
            logger.exception("job cleanup sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=30)
        except TimeoutError:
            continue
