from __future__ import annotations

import logging
import threading

from celery.exceptions import SoftTimeLimitExceeded

from doctranslate.core.settings import get_settings
from doctranslate.services.errors import CancelledOperation, StructuralInconsistency, UnsupportedDocument
from doctranslate.services.events import publish_event
from doctranslate.services.job_store import JobStore
from doctranslate.services.orchestrator import CancellationToken
from doctranslate.services.pipeline import translate_document_bytes
from doctranslate.services.spans import ChunkResult
from doctranslate.services.translator import (
    OpenAIChatEngine,
    ProviderRuntime,
    TranslationEngine,
    TranslationOptions,
)
from doctranslate.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="doctranslate.workers.tasks.translate_job_task")
def translate_job_task(job_id: str, run_id: str | None = None) -> dict[str, str]:
    return run_job(job_id, run_id)


def run_job(
    job_id: str,
    run_id: str | None = None,
    *,
    store: JobStore | None = None,
    engine: TranslationEngine | None = None,
) -> dict[str, str]:
    store = store or JobStore()
    settings = store.settings

    meta = store.get_meta(job_id)
    if not meta:
        return {"job_id": job_id, "status": "job_not_found"}
    run_id = run_id or meta.get("run_id")
    if store.is_cancel_requested(job_id, run_id):
        return {"job_id": job_id, "status": "cancelled"}
    if meta.get("run_id") != run_id:
        logger.info("job %s run %s superseded by run %s", job_id, run_id, meta.get("run_id"))
        return {"job_id": job_id, "status": "superseded"}

    request = store.get_request(job_id)
    if not request:
        store.mark_failed(job_id, "missing provider runtime")
        publish_event(job_id, "job_failed", {"reason": "missing_provider_runtime"}, redis=store.redis)
        return {"job_id": job_id, "status": "failed"}

    target_language: str = request["target_language"]
    options = TranslationOptions(**request.get("options", {}))
    owned_engine: OpenAIChatEngine | None = None
    if engine is None:
        owned_engine = OpenAIChatEngine(
            ProviderRuntime(**request["provider"]),
            temperature=settings.translation_temperature,
        )
        engine = owned_engine

    token = CancellationToken(check=lambda: store.is_cancel_requested(job_id, run_id))
    progress_lock = threading.Lock()
    failed = [0]

    def on_chunk_done(result: ChunkResult, completed: int, total: int) -> None:
        with progress_lock:
            if token.is_cancelled():
                return
            if result.status == "failed":
                failed[0] += 1
                publish_event(
                    job_id,
                    "chunk_failed",
                    {"chunk_index": result.index, "attempts": result.attempts, "reason": result.error},
                    redis=store.redis,
                )
            store.update_progress(job_id, completed, total, failed[0])
            publish_event(
                job_id,
                "job_progress",
                {"completed_chunks": completed, "total_chunks": total, "failed_chunks": failed[0]},
                redis=store.redis,
            )

    try:
        result = translate_document_bytes(
            store.read_source(job_id),
            target_language,
            engine,
            store.asset_store(),
            job_id,
            filename=meta["filename"],
            options=options,
            settings=settings,
            cancel_token=token,
            on_chunk_done=on_chunk_done,
        )
        # A cancel that lands after the last chunk still discards the result.
        token.raise_if_cancelled()
        store.save_result(job_id, result)
        publish_event(
            job_id,
            "job_ready",
            {
                "figure_count": result.figure_count,
                "duplicates_removed": result.duplicates_removed,
                "failed_chunks": len(result.chunk_failures),
                "warnings_count": len(result.warnings),
            },
            redis=store.redis,
        )
        status = "ready"

    except CancelledOperation:
        status = _finish_cancelled(store, job_id, run_id)

    except SoftTimeLimitExceeded:
        token.cancel()
        reason = f"job timeout: exceeded {settings.task_soft_time_limit_sec}s"
        store.mark_failed(job_id, reason)
        publish_event(job_id, "job_failed", {"reason": reason}, redis=store.redis)
        status = "failed"

    except (StructuralInconsistency, UnsupportedDocument) as exc:
        logger.warning("job %s rejected: %s", job_id, exc)
        store.mark_failed(job_id, str(exc))
        publish_event(job_id, "job_failed", {"reason": str(exc)}, redis=store.redis)
        status = "failed"

    except Exception as exc:  # noqa: BLE001
        logger.exception("job %s failed", job_id)
        store.mark_failed(job_id, str(exc))
        publish_event(job_id, "job_failed", {"reason": str(exc)}, redis=store.redis)
        status = "failed"

    finally:
        if owned_engine is not None:
            owned_engine.close()

    return {"job_id": job_id, "status": status}


def _finish_cancelled(store: JobStore, job_id: str, run_id: str | None) -> str:
    meta = store.get_meta(job_id)
    if meta and meta["status"] in {"deleted", "expired"}:
        return meta["status"]
    if meta and meta.get("run_id") != run_id:
        return "superseded"
    if meta:
        store.mark_cancelled(job_id)
    publish_event(job_id, "job_cancelled", {}, redis=store.redis)
    logger.info("job %s cancelled", job_id)
    return "cancelled"


def enqueue_translation_job(job_id: str, run_id: str | None = None) -> str:
    settings = get_settings()
    async_result = translate_job_task.apply_async(args=[job_id, run_id], queue=settings.translation_queue)
    return async_result.id
