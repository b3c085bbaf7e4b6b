from __future__ import annotations

import logging
import random
import re
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait

from doctranslate.services.errors import (
    CancelledOperation,
    ChunkTranslationFailure,
    RateLimitedError,
    RetryableTranslationError,
)
from doctranslate.services.spans import Chunk, ChunkResult
from doctranslate.services.translator import (
    TranslationEngine,
    TranslationOptions,
    should_skip_translation,
)

LEADING_WS_RE = re.compile(r"^\s*")
TRAILING_WS_RE = re.compile(r"\s*$")
logger = logging.getLogger(__name__)


class CancellationToken:
    """Job-wide cancel signal.

    ``check`` lets an external flag (for example the job store) cancel the
    token; it is polled whenever the token is checked.
    """

    def __init__(self, check: Callable[[], bool] | None = None) -> None:
        self._event = threading.Event()
        self._check = check

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._check is not None and self._check():
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise CancelledOperation("translation job cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True as soon as the token is cancelled."""
        if self._check is None:
            return self._event.wait(max(0.0, seconds))
        remaining = max(0.0, seconds)
        while remaining > 0:
            step = min(0.5, remaining)
            if self._event.wait(step):
                return True
            if self.is_cancelled():
                return True
            remaining -= step
        return self.is_cancelled()


def _keep_edge_whitespace(source: str, translated: str) -> str:
    leading = LEADING_WS_RE.match(source).group(0)
    trailing = TRAILING_WS_RE.search(source).group(0) if source.strip() else ""
    return f"{leading}{translated.strip()}{trailing}"


def reassemble(results: Sequence[ChunkResult]) -> str:
    return "".join(item.translated_text for item in sorted(results, key=lambda item: item.index))


def failures_from(results: Sequence[ChunkResult]) -> list[ChunkTranslationFailure]:
    return [
        ChunkTranslationFailure(chunk_index=item.index, reason=item.error or "unknown error", attempts=item.attempts)
        for item in sorted(results, key=lambda item: item.index)
        if item.status == "failed"
    ]


class TranslationOrchestrator:
    def __init__(
        self,
        engine: TranslationEngine,
        *,
        max_concurrency: int = 4,
        max_attempts: int = 4,
        backoff_base_sec: float = 1.0,
        backoff_max_sec: float = 30.0,
        timeout_sec: float = 90.0,
    ) -> None:
        self.engine = engine
        self.max_concurrency = max(1, int(max_concurrency))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base_sec = max(0.0, float(backoff_base_sec))
        self.backoff_max_sec = max(self.backoff_base_sec, float(backoff_max_sec))
        self.timeout_sec = float(timeout_sec)

    def backoff_delay(self, attempt: int, retry_after: float | None = None) -> float:
        base = min(self.backoff_max_sec, self.backoff_base_sec * (2 ** max(0, attempt - 1)))
        jitter = random.uniform(0, base * 0.1)
        delay = base + jitter
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.backoff_max_sec))
        return delay

    def translate(
        self,
        chunks: Sequence[Chunk],
        target_language: str,
        options: TranslationOptions | None = None,
        cancel_token: CancellationToken | None = None,
        on_chunk_done: Callable[[ChunkResult, int, int], None] | None = None,
    ) -> list[ChunkResult]:
        options = options or TranslationOptions()
        token = cancel_token or CancellationToken()
        token.raise_if_cancelled()
        if not chunks:
            return []

        results: list[ChunkResult | None] = [None] * len(chunks)
        slot_by_index = {chunk.index: slot for slot, chunk in enumerate(chunks)}
        if len(slot_by_index) != len(chunks):
            raise ValueError("chunk indexes must be unique")
        done_lock = threading.Lock()
        done = [0]

        def run(chunk: Chunk) -> None:
            # Queued chunks never start once the job is cancelled.
            if token.is_cancelled():
                return
            result = self._translate_chunk(chunk, target_language, options, token)
            results[slot_by_index[chunk.index]] = result
            if on_chunk_done is not None:
                with done_lock:
                    done[0] += 1
                    completed = done[0]
                on_chunk_done(result, completed, len(chunks))

        with ThreadPoolExecutor(max_workers=min(self.max_concurrency, len(chunks))) as pool:
            futures = [pool.submit(run, chunk) for chunk in chunks]
            wait(futures)
            for future in futures:
                future.result()

        token.raise_if_cancelled()
        ordered = sorted((item for item in results if item is not None), key=lambda item: item.index)
        failed = sum(1 for item in ordered if item.status == "failed")
        logger.info(
            "translation summary: chunks=%s ok=%s failed=%s target=%s",
            len(ordered),
            len(ordered) - failed,
            failed,
            target_language,
        )
        return ordered

    def _translate_chunk(
        self,
        chunk: Chunk,
        target_language: str,
        options: TranslationOptions,
        token: CancellationToken,
    ) -> ChunkResult:
        if should_skip_translation(chunk.text):
            return ChunkResult(index=chunk.index, translated_text=chunk.text, status="ok")

        last_error: Exception | None = None
        attempts = 0
        while attempts < self.max_attempts:
            token.raise_if_cancelled()
            attempts += 1
            try:
                reply = self.engine.translate(
                    chunk.text,
                    target_language,
                    options=options,
                    timeout=self.timeout_sec,
                )
            except RetryableTranslationError as exc:
                last_error = exc
                if attempts >= self.max_attempts:
                    break
                retry_after = exc.retry_after if isinstance(exc, RateLimitedError) else None
                delay = self.backoff_delay(attempts, retry_after)
                logger.warning(
                    "chunk %s attempt %s/%s failed (%s); retrying in %.2fs",
                    chunk.index,
                    attempts,
                    self.max_attempts,
                    exc,
                    delay,
                )
                if token.wait(delay):
                    raise CancelledOperation("translation job cancelled") from exc
                continue
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning("chunk %s failed without retry: %s", chunk.index, exc)
                break

            return ChunkResult(
                index=chunk.index,
                translated_text=_keep_edge_whitespace(chunk.text, reply.text),
                status="ok",
                attempts=attempts,
                input_tokens=reply.input_tokens,
                output_tokens=reply.output_tokens,
            )

        logger.warning(
            "chunk %s kept untranslated after %s attempt(s): %s",
            chunk.index,
            attempts,
            last_error,
        )
        return ChunkResult(
            index=chunk.index,
            translated_text=chunk.text,
            status="failed",
            error=str(last_error) if last_error else "translation failed",
            attempts=attempts,
        )
