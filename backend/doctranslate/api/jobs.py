from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status
from fastapi.responses import FileResponse, StreamingResponse

from doctranslate.core.settings import get_settings
from doctranslate.schemas.job import (
    CancelJobResponse,
    CreateJobResponse,
    ErrorResponse,
    JobResult,
    JobState,
    LanguageOption,
    ProviderConfigPublic,
    StartJobRequest,
    StartJobResponse,
)
from doctranslate.services.errors import UnsupportedDocument
from doctranslate.services.events import sse_stream
from doctranslate.services.extractors import sniff_format
from doctranslate.services.job_store import JobStore
from doctranslate.services.translator import SUPPORTED_LANGUAGES
from doctranslate.workers.tasks import enqueue_translation_job

router = APIRouter(tags=["jobs"])


def get_job_store() -> JobStore:
    return JobStore()


def _require_meta(store: JobStore, job_id: str) -> dict[str, Any]:
    meta = store.get_meta(job_id)
    if not meta or meta["status"] in {"expired", "deleted"}:
        raise HTTPException(status_code=404, detail="Job not found")
    return meta


@router.get("/languages", response_model=list[LanguageOption])
def list_languages() -> list[LanguageOption]:
    return [LanguageOption(code=code, name=name) for code, name in SUPPORTED_LANGUAGES.items()]


@router.post("/jobs", response_model=CreateJobResponse, responses={400: {"model": ErrorResponse}})
async def create_job(
    file: UploadFile = File(...),
    store: JobStore = Depends(get_job_store),
) -> CreateJobResponse:
    settings = get_settings()
    filename = Path(file.filename or "").name
    if not filename or Path(filename).suffix.lower() not in settings.allowed_extensions:
        allowed = ", ".join(settings.allowed_extensions)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Only {allowed} files are supported")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    size_mb = len(content) / (1024 * 1024)
    if size_mb > settings.max_upload_mb:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File exceeds max size of {settings.max_upload_mb}MB",
        )

    try:
        source_format = sniff_format(content, filename)
    except UnsupportedDocument as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    meta = store.create_job(filename=filename, source_format=source_format, content=content)
    return CreateJobResponse(
        job_id=meta["job_id"],
        filename=filename,
        source_format=source_format,
        size_bytes=meta["size_bytes"],
        expires_at=datetime.fromisoformat(meta["expires_at"]),
    )


@router.post(
    "/jobs/{job_id}/start",
    response_model=StartJobResponse,
    responses={404: {"model": ErrorResponse}},
)
def start_job(
    job_id: str,
    request: StartJobRequest,
    store: JobStore = Depends(get_job_store),
) -> StartJobResponse:
    meta = _require_meta(store, job_id)
    if meta["status"] == "running":
        return StartJobResponse(job_id=job_id, status="running")

    public = ProviderConfigPublic(**request.provider.model_dump(exclude={"api_key"}))
    run_id = store.mark_running(job_id, request.target_language, public.model_dump())["run_id"]
    store.save_request(
        job_id,
        {
            "run_id": run_id,
            "target_language": request.target_language,
            "provider": request.provider.model_dump(),
            "options": request.options.model_dump(),
        },
    )
    enqueue_translation_job(job_id, run_id)
    return StartJobResponse(job_id=job_id, status="running")


@router.get("/jobs/{job_id}/state", response_model=JobState, responses={404: {"model": ErrorResponse}})
def get_job_state(job_id: str, store: JobStore = Depends(get_job_store)) -> JobState:
    meta = _require_meta(store, job_id)
    return JobState.model_validate(meta)


@router.get("/jobs/{job_id}/events")
async def get_job_events(job_id: str, store: JobStore = Depends(get_job_store)) -> StreamingResponse:
    meta = _require_meta(store, job_id)
    return StreamingResponse(sse_stream(job_id, meta), media_type="text/event-stream")


@router.get(
    "/jobs/{job_id}/result",
    response_model=JobResult,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def get_job_result(job_id: str, store: JobStore = Depends(get_job_store)) -> JobResult:
    meta = _require_meta(store, job_id)
    if meta["status"] != "ready":
        raise HTTPException(status_code=409, detail=f"Job is {meta['status']}")
    result = store.get_result(job_id)
    if not result:
        raise HTTPException(status_code=404, detail="Result not found")
    return JobResult.model_validate(result)


@router.get("/jobs/{job_id}/figures/{name}")
def get_job_figure(job_id: str, name: str, store: JobStore = Depends(get_job_store)) -> FileResponse:
    _require_meta(store, job_id)
    path = store.figure_path(job_id, name)
    if path is None:
        raise HTTPException(status_code=404, detail="Figure not found")
    return FileResponse(path)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=CancelJobResponse,
    responses={404: {"model": ErrorResponse}},
)
def cancel_job(job_id: str, store: JobStore = Depends(get_job_store)) -> CancelJobResponse:
    _require_meta(store, job_id)
    meta = store.request_cancel(job_id)
    return CancelJobResponse(job_id=job_id, status=meta["status"])


@router.delete("/jobs/{job_id}", status_code=204)
def delete_job(job_id: str, store: JobStore = Depends(get_job_store)) -> Response:
    if not store.get_meta(job_id):
        return Response(status_code=204)
    store.cleanup_job(job_id)
    return Response(status_code=204)
