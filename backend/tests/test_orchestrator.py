from __future__ import annotations

import threading
import time

import pytest

from doctranslate.services.errors import (
    CancelledOperation,
    PermanentTranslationError,
    RateLimitedError,
    TransientEngineError,
)
from doctranslate.services.orchestrator import (
    CancellationToken,
    TranslationOrchestrator,
    failures_from,
    reassemble,
)
from doctranslate.services.spans import Chunk
from doctranslate.services.translator import EngineReply, TranslationOptions


class ScriptedEngine:
    """Upper-cases text; raises queued errors for chunks containing a marker."""

    def __init__(self, failures=None, delays=None, on_call=None):
        self.failures = {marker: list(errors) for marker, errors in (failures or {}).items()}
        self.delays = delays or {}
        self.on_call = on_call
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def translate(self, text, target_language, *, options: TranslationOptions, timeout: float) -> EngineReply:
        with self._lock:
            self.calls.append(text)
            call_no = len(self.calls)
            error = None
            for marker, errors in self.failures.items():
                if marker in text and errors:
                    error = errors.pop(0)
        if self.on_call is not None:
            self.on_call(call_no)
        for marker, delay in self.delays.items():
            if marker in text:
                time.sleep(delay)
        if error is not None:
            raise error
        return EngineReply(text=text.upper(), input_tokens=len(text), output_tokens=len(text))


def _chunks(*texts: str) -> list[Chunk]:
    return [Chunk(index=idx, text=text) for idx, text in enumerate(texts)]


def _orchestrator(engine, **kwargs) -> TranslationOrchestrator:
    kwargs.setdefault("backoff_base_sec", 0.0)
    kwargs.setdefault("backoff_max_sec", 0.0)
    return TranslationOrchestrator(engine, **kwargs)


class TestTranslate:
    def test_results_follow_chunk_order(self):
        engine = ScriptedEngine(delays={"alpha": 0.05})
        results = _orchestrator(engine, max_concurrency=3).translate(_chunks("alpha ", "beta ", "gamma"), "fr")

        assert [item.index for item in results] == [0, 1, 2]
        assert reassemble(results) == "ALPHA BETA GAMMA"
        assert all(item.status == "ok" for item in results)

    def test_transient_errors_are_retried(self):
        engine = ScriptedEngine(
            failures={"beta": [TransientEngineError("503"), RateLimitedError("429", retry_after=0.0)]}
        )
        results = _orchestrator(engine, max_attempts=4).translate(_chunks("alpha ", "beta ", "gamma"), "fr")

        assert results[1].status == "ok"
        assert results[1].attempts == 3
        assert results[1].translated_text == "BETA "

    def test_exhausted_chunk_keeps_original_text(self):
        engine = ScriptedEngine(failures={"beta": [TransientEngineError("boom")] * 4})
        results = _orchestrator(engine, max_attempts=3).translate(_chunks("alpha ", "beta ", "gamma"), "fr")

        failures = failures_from(results)
        assert reassemble(results) == "ALPHA beta GAMMA"
        assert len(failures) == 1
        assert failures[0].chunk_index == 1
        assert failures[0].attempts == 3
        assert [item.status for item in results] == ["ok", "failed", "ok"]

    def test_permanent_error_is_not_retried(self):
        engine = ScriptedEngine(failures={"beta": [PermanentTranslationError("HTTP 400: bad request")]})
        results = _orchestrator(engine, max_attempts=4).translate(_chunks("alpha ", "beta"), "fr")

        assert results[1].status == "failed"
        assert results[1].attempts == 1
        assert "bad request" in (results[1].error or "")
        assert sum(1 for call in engine.calls if "beta" in call) == 1

    def test_placeholder_only_chunk_skips_engine(self):
        engine = ScriptedEngine()
        text = "[[FIGSEG:1:1.1:ENDFIG]]\n\n12."
        results = _orchestrator(engine).translate(_chunks(text), "fr")

        assert engine.calls == []
        assert results[0].translated_text == text
        assert results[0].status == "ok"

    def test_progress_callback_sees_every_chunk(self):
        seen: list[tuple[int, int, int]] = []
        lock = threading.Lock()

        def on_done(result, completed, total):
            with lock:
                seen.append((result.index, completed, total))

        _orchestrator(ScriptedEngine(), max_concurrency=2).translate(
            _chunks("a1", "b2", "c3"), "de", on_chunk_done=on_done
        )
        assert sorted(index for index, _, _ in seen) == [0, 1, 2]
        assert sorted(completed for _, completed, _ in seen) == [1, 2, 3]
        assert {total for _, _, total in seen} == {3}

    def test_empty_chunk_list(self):
        assert _orchestrator(ScriptedEngine()).translate([], "fr") == []


class TestCancellation:
    def test_cancelled_before_start(self):
        engine = ScriptedEngine()
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledOperation):
            _orchestrator(engine).translate(_chunks("alpha", "beta"), "fr", cancel_token=token)
        assert engine.calls == []

    def test_cancel_during_backoff_stops_the_job(self):
        token = CancellationToken()
        engine = ScriptedEngine(
            failures={"alpha": [TransientEngineError("503")] * 4},
            on_call=lambda call_no: token.cancel(),
        )
        orchestrator = _orchestrator(engine, max_concurrency=1, backoff_base_sec=5.0, backoff_max_sec=5.0)

        started = time.monotonic()
        with pytest.raises(CancelledOperation):
            orchestrator.translate(_chunks("alpha", "beta", "gamma"), "fr", cancel_token=token)
        assert time.monotonic() - started < 4.0
        assert engine.calls == ["alpha"]

    def test_completed_results_are_discarded(self):
        token = CancellationToken()

        def cancel_on_second(call_no: int) -> None:
            if call_no == 2:
                token.cancel()

        engine = ScriptedEngine(on_call=cancel_on_second)
        with pytest.raises(CancelledOperation):
            _orchestrator(engine, max_concurrency=1).translate(
                _chunks("alpha", "beta", "gamma"), "fr", cancel_token=token
            )
        assert engine.calls == ["alpha", "beta"]

    def test_external_flag_cancels_token(self):
        flag = {"cancelled": False}
        token = CancellationToken(check=lambda: flag["cancelled"])
        assert not token.is_cancelled()
        flag["cancelled"] = True
        assert token.is_cancelled()
        assert token.wait(10.0) is True


class TestBackoff:
    def test_delay_grows_and_is_capped(self):
        orchestrator = TranslationOrchestrator(object(), backoff_base_sec=1.0, backoff_max_sec=8.0)
        assert 1.0 <= orchestrator.backoff_delay(1) <= 1.1
        assert 4.0 <= orchestrator.backoff_delay(3) <= 4.4
        assert 8.0 <= orchestrator.backoff_delay(10) <= 8.8

    def test_retry_after_is_honoured_up_to_cap(self):
        orchestrator = TranslationOrchestrator(object(), backoff_base_sec=1.0, backoff_max_sec=8.0)
        assert orchestrator.backoff_delay(1, retry_after=5.0) == 5.0
        assert orchestrator.backoff_delay(1, retry_after=100.0) == 8.0
