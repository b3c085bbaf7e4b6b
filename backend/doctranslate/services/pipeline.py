from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from doctranslate.core.settings import Settings, get_settings
from doctranslate.services.asset_store import AssetStore
from doctranslate.services.chunking import plan_chunks
from doctranslate.services.errors import (
    ChunkTranslationFailure,
    DuplicatePlaceholderRemoved,
    StructuralInconsistency,
    UnresolvedPlaceholder,
)
from doctranslate.services.extractors import extract_document
from doctranslate.services.orchestrator import (
    CancellationToken,
    TranslationOrchestrator,
    failures_from,
    reassemble,
)
from doctranslate.services.overlap import resolve_overlaps
from doctranslate.services.placeholders import substitute_placeholders
from doctranslate.services.resolver import resolve_placeholders
from doctranslate.services.spans import ChunkResult, ExtractedDocument, ResolutionOutcome
from doctranslate.services.translator import TranslationEngine, TranslationOptions

logger = logging.getLogger(__name__)


JobWarningRecord = ChunkTranslationFailure | UnresolvedPlaceholder | DuplicatePlaceholderRemoved


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class TranslationJobResult:
    text: str
    target_language: str
    source_text: str = ""
    outcomes: list[ResolutionOutcome] = field(default_factory=list)
    warnings: list[JobWarningRecord] = field(default_factory=list)
    chunk_results: list[ChunkResult] = field(default_factory=list)
    # figure_id -> asset_ref for every figure in the document
    assets: dict[str, str] = field(default_factory=dict)
    figure_count: int = 0
    duplicates_removed: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime = field(default_factory=_utcnow)

    @property
    def character_count(self) -> int:
        return len(self.source_text)

    @property
    def duration_sec(self) -> float:
        return max(0.0, (self.completed_at - self.started_at).total_seconds())

    @property
    def chunk_failures(self) -> list[ChunkTranslationFailure]:
        return [item for item in self.warnings if isinstance(item, ChunkTranslationFailure)]

    @property
    def unresolved_placeholders(self) -> list[UnresolvedPlaceholder]:
        return [item for item in self.warnings if isinstance(item, UnresolvedPlaceholder)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_language": self.target_language,
            "text": self.text,
            "source_text": self.source_text,
            "character_count": self.character_count,
            "figure_count": self.figure_count,
            "assets": [
                {"figure_id": figure_id, "asset_ref": asset_ref} for figure_id, asset_ref in self.assets.items()
            ],
            "chunk_count": len(self.chunk_results),
            "failed_chunks": len(self.chunk_failures),
            "duplicates_removed": self.duplicates_removed,
            "outcomes": [
                {
                    "token": item.token,
                    "figure_id": item.figure_id,
                    "resolved": item.resolved,
                    "reason": item.reason,
                    "asset_ref": self.assets.get(item.figure_id),
                }
                for item in self.outcomes
            ],
            "warnings": [{"kind": item.kind, "message": item.describe()} for item in self.warnings],
            "usage": {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens},
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_sec": round(self.duration_sec, 3),
        }


def run_translation_job(
    document: ExtractedDocument,
    target_language: str,
    engine: TranslationEngine,
    *,
    options: TranslationOptions | None = None,
    settings: Settings | None = None,
    cancel_token: CancellationToken | None = None,
    on_chunk_done: Callable[[ChunkResult, int, int], None] | None = None,
) -> TranslationJobResult:
    """Mask figures, translate the text in chunks and put the figures back.

    Structural problems raise before any engine call is made. Chunk failures,
    unresolved placeholders and removed duplicates are returned as warnings on the result.
    """
    settings = settings or get_settings()
    token = cancel_token or CancellationToken()
    started_at = _utcnow()

    intervals = resolve_overlaps(
        document,
        min_overlap_fraction=settings.min_overlap_fraction,
        adjacency_tolerance=settings.adjacency_tolerance,
    )
    processed, mapping = substitute_placeholders(document.text, intervals)
    if len(mapping) != len(document.figures):
        raise StructuralInconsistency(
            f"{len(document.figures)} figures produced {len(mapping)} placeholders"
        )
    chunks = plan_chunks(processed, budget=settings.chunk_token_budget, placeholder_tokens=mapping.tokens)

    orchestrator = TranslationOrchestrator(
        engine,
        max_concurrency=settings.max_concurrency,
        max_attempts=settings.max_attempts,
        backoff_base_sec=settings.backoff_base_sec,
        backoff_max_sec=settings.backoff_max_sec,
        timeout_sec=settings.chunk_timeout_sec,
    )
    chunk_results = orchestrator.translate(chunks, target_language, options, token, on_chunk_done)

    assets = {figure.figure_id: figure.asset_ref for figure in document.figures}
    resolved = resolve_placeholders(
        reassemble(chunk_results),
        mapping,
        assets,
        reference_template=settings.figure_reference_template,
    )

    warnings: list[JobWarningRecord] = [*failures_from(chunk_results)]
    warnings.extend(resolved.warnings)
    result = TranslationJobResult(
        text=resolved.text,
        target_language=target_language,
        source_text=document.text,
        outcomes=resolved.outcomes,
        warnings=warnings,
        chunk_results=chunk_results,
        assets=assets,
        figure_count=len(document.figures),
        duplicates_removed=resolved.duplicates_removed,
        input_tokens=sum(item.input_tokens for item in chunk_results),
        output_tokens=sum(item.output_tokens for item in chunk_results),
        started_at=started_at,
        completed_at=_utcnow(),
    )
    logger.info(
        "job summary: format=%s figures=%s chunks=%s warnings=%s tokens_in=%s tokens_out=%s",
        document.source_format,
        result.figure_count,
        len(chunk_results),
        len(warnings),
        result.input_tokens,
        result.output_tokens,
    )
    return result


def translate_document_bytes(
    content: bytes,
    target_language: str,
    engine: TranslationEngine,
    asset_store: AssetStore,
    job_id: str,
    *,
    filename: str | None = None,
    options: TranslationOptions | None = None,
    settings: Settings | None = None,
    cancel_token: CancellationToken | None = None,
    on_chunk_done: Callable[[ChunkResult, int, int], None] | None = None,
) -> TranslationJobResult:
    document = extract_document(content, asset_store, job_id, filename=filename)
    return run_translation_job(
        document,
        target_language,
        engine,
        options=options,
        settings=settings,
        cancel_token=cancel_token,
        on_chunk_done=on_chunk_done,
    )
