from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from doctranslate.services.translator import SUPPORTED_LANGUAGES

JobStatus = Literal["created", "running", "ready", "failed", "cancelled", "expired", "deleted"]
SourceFormat = Literal["pdf", "docx"]


class ProviderConfigIn(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    model: str = Field(min_length=1, max_length=128)
    api_key: str = Field(min_length=8)
    base_url: str | None = None
    timeout_sec: int = Field(default=60, ge=10, le=300)


class ProviderConfigPublic(BaseModel):
    id: str
    model: str
    base_url: str | None = None
    timeout_sec: int = 60


class TranslationOptionsIn(BaseModel):
    source_language: str | None = None
    tone: str | None = Field(default=None, max_length=64)
    domain: str | None = Field(default=None, max_length=64)
    custom_instructions: str | None = Field(default=None, max_length=4000)
    system_prompt: str | None = Field(default=None, max_length=8000)
    user_prompt: str | None = Field(default=None, max_length=8000)

    @field_validator("source_language")
    @classmethod
    def _known_source(cls, value: str | None) -> str | None:
        if value is not None and value not in SUPPORTED_LANGUAGES:
            raise ValueError(f"unsupported source language: {value}")
        return value


class CreateJobResponse(BaseModel):
    job_id: str
    filename: str
    source_format: SourceFormat
    size_bytes: int
    expires_at: datetime


class StartJobRequest(BaseModel):
    target_language: str
    provider: ProviderConfigIn
    options: TranslationOptionsIn = Field(default_factory=TranslationOptionsIn)

    @field_validator("target_language")
    @classmethod
    def _known_target(cls, value: str) -> str:
        if value == "auto" or value not in SUPPORTED_LANGUAGES:
            raise ValueError(f"unsupported target language: {value}")
        return value


class StartJobResponse(BaseModel):
    job_id: str
    status: JobStatus


class JobProgress(BaseModel):
    completed_chunks: int = 0
    total_chunks: int = 0
    failed_chunks: int = 0


class JobState(BaseModel):
    job_id: str
    run_id: str | None = None
    status: JobStatus
    filename: str
    source_format: SourceFormat
    target_language: str | None = None
    provider: ProviderConfigPublic | None = None
    progress: JobProgress = Field(default_factory=JobProgress)
    error: str | None = None
    warnings_count: int = 0
    created_at: datetime
    expires_at: datetime


class ResolutionOutcomeOut(BaseModel):
    token: str
    figure_id: str
    resolved: bool
    reason: str | None = None
    asset_ref: str | None = None


class JobWarning(BaseModel):
    kind: Literal["chunk_translation_failure", "unresolved_placeholder", "duplicate_placeholder_removed"]
    message: str


class FigureAsset(BaseModel):
    figure_id: str
    asset_ref: str


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class JobResult(BaseModel):
    job_id: str
    target_language: str
    text: str
    source_text: str = ""
    character_count: int = 0
    figure_count: int
    assets: list[FigureAsset] = Field(default_factory=list)
    chunk_count: int
    failed_chunks: int
    duplicates_removed: int = 0
    outcomes: list[ResolutionOutcomeOut] = Field(default_factory=list)
    warnings: list[JobWarning] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_sec: float | None = None


class CancelJobResponse(BaseModel):
    job_id: str
    status: JobStatus


class LanguageOption(BaseModel):
    code: str
    name: str


class ErrorResponse(BaseModel):
    detail: str


class EventMessage(BaseModel):
    event: Literal[
        "job_progress",
        "chunk_failed",
        "job_ready",
        "job_failed",
        "job_cancelled",
        "job_expiring",
    ]
    job_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    ts: datetime
