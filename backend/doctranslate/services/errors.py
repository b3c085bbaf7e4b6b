from __future__ import annotations

from dataclasses import dataclass


class StructuralInconsistency(ValueError):
    """Extractor output violates an offset or bounding-box invariant."""


class UnsupportedDocument(ValueError):
    pass


class CancelledOperation(RuntimeError):
    pass


class TranslationError(RuntimeError):
    pass


class RetryableTranslationError(TranslationError):
    pass


class RateLimitedError(RetryableTranslationError):
    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransientEngineError(RetryableTranslationError):
    pass


class EngineTimeoutError(RetryableTranslationError):
    pass


class PermanentTranslationError(TranslationError):
    pass


@dataclass(frozen=True)
class ChunkTranslationFailure:
    chunk_index: int
    reason: str
    attempts: int

    kind = "chunk_translation_failure"

    def describe(self) -> str:
        return f"chunk {self.chunk_index} kept untranslated after {self.attempts} attempt(s): {self.reason}"


@dataclass(frozen=True)
class UnresolvedPlaceholder:
    token: str
    figure_id: str
    reason: str

    kind = "unresolved_placeholder"

    def describe(self) -> str:
        return f"figure {self.figure_id} ({self.token}): {self.reason}"


@dataclass(frozen=True)
class DuplicatePlaceholderRemoved:
    token: str
    figure_id: str

    kind = "duplicate_placeholder_removed"

    def describe(self) -> str:
        return f"figure {self.figure_id}: repeated placeholder {self.token!r} removed from output"
