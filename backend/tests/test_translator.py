from __future__ import annotations

import json

import httpx
import pytest

from doctranslate.services.errors import (
    EngineTimeoutError,
    PermanentTranslationError,
    RateLimitedError,
    TransientEngineError,
)
from doctranslate.services.translator import (
    OpenAIChatEngine,
    ProviderRuntime,
    TranslationOptions,
    build_prompt,
    should_skip_translation,
)

PROVIDER = ProviderRuntime(id="openai", model="gpt-test", api_key="sk-test-123", base_url="https://llm.example/v1/")


def _engine(handler) -> OpenAIChatEngine:
    return OpenAIChatEngine(PROVIDER, client=httpx.Client(transport=httpx.MockTransport(handler)))


def _completion(content: str, **usage) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}], "usage": usage}


class TestOpenAIChatEngine:
    def test_successful_call(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json=_completion("Bonjour [[FIGSEG:1:1.1:ENDFIG]]", prompt_tokens=12, completion_tokens=7),
            )

        reply = _engine(handler).translate(
            "Hello [[FIGSEG:1:1.1:ENDFIG]]",
            "fr",
            options=TranslationOptions(),
            timeout=5,
        )

        assert reply.text == "Bonjour [[FIGSEG:1:1.1:ENDFIG]]"
        assert (reply.input_tokens, reply.output_tokens) == (12, 7)
        assert captured["url"] == "https://llm.example/v1/chat/completions"
        assert captured["auth"] == "Bearer sk-test-123"
        messages = captured["body"]["messages"]
        assert captured["body"]["model"] == "gpt-test"
        assert "FIGSEG" in messages[0]["content"]
        assert "Français" in messages[1]["content"]
        assert messages[1]["content"].endswith("Hello [[FIGSEG:1:1.1:ENDFIG]]")

    def test_rate_limit_carries_retry_after(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"retry-after": "3"}, json={"error": {"message": "slow down"}})

        with pytest.raises(RateLimitedError) as excinfo:
            _engine(handler).translate("Hello", "fr", options=TranslationOptions(), timeout=5)
        assert excinfo.value.retry_after == 3.0
        assert "slow down" in str(excinfo.value)

    @pytest.mark.parametrize(
        ("status_code", "error_type"),
        [(503, TransientEngineError), (500, TransientEngineError), (400, PermanentTranslationError), (401, PermanentTranslationError)],
    )
    def test_status_codes_are_classified(self, status_code, error_type):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json={"error": {"message": "nope"}})

        with pytest.raises(error_type):
            _engine(handler).translate("Hello", "fr", options=TranslationOptions(), timeout=5)

    def test_timeout_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(EngineTimeoutError):
            _engine(handler).translate("Hello", "fr", options=TranslationOptions(), timeout=5)

    def test_code_fence_is_removed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_completion("```markdown\nHallo Welt\n```"))

        reply = _engine(handler).translate("Hello world", "de", options=TranslationOptions(), timeout=5)
        assert reply.text == "Hallo Welt"

    def test_empty_reply_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": []})

        with pytest.raises(TransientEngineError):
            _engine(handler).translate("Hello", "fr", options=TranslationOptions(), timeout=5)


class TestPrompt:
    def test_options_are_included(self):
        options = TranslationOptions(source_language="en", tone="formal", custom_instructions="Keep units in SI.")
        system, user = build_prompt("Text body", "ja", options)

        assert system["role"] == "system"
        assert "日本語" in user["content"]
        assert "Source language: English" in user["content"]
        assert "Tone: formal" in user["content"]
        assert "Keep units in SI." in user["content"]

    def test_custom_system_prompt_still_protects_placeholders(self):
        system, _ = build_prompt("Text", "fr", TranslationOptions(system_prompt="Translate tersely."))
        assert system["content"].startswith("Translate tersely.")
        assert "FIGSEG" in system["content"]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("[[FIGSEG:1:1.1:ENDFIG]]\n\n12.", True),
        ("", True),
        ("3.14 - 2", True),
        ("Hello", False),
        ("[[FIGSEG:1:1.1:ENDFIG]] Caption", False),
    ],
)
def test_should_skip_translation(text, expected):
    assert should_skip_translation(text) is expected
