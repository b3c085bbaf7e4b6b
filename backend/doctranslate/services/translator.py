from __future__ import annotations

import importlib.util
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from doctranslate.services.chunking import CANONICAL_PLACEHOLDER_RE
from doctranslate.services.errors import (
    EngineTimeoutError,
    PermanentTranslationError,
    RateLimitedError,
    TransientEngineError,
)

SUPPORTED_LANGUAGES: dict[str, str] = {
    "auto": "Auto detect",
    "ja": "日本語",
    "en": "English",
    "zh-Hans": "中文（简体）",
    "zh-Hant": "中文（繁體）",
    "ko": "한국어",
    "fr": "Français",
    "de": "Deutsch",
    "es": "Español",
    "it": "Italiano",
    "pt": "Português",
    "ru": "Русский",
    "vi": "Tiếng Việt",
    "id": "Bahasa Indonesia",
    "ms": "Bahasa Melayu",
    "nl": "Nederlands",
    "pl": "Polski",
    "tr": "Türkçe",
    "uk": "Українська",
    "cs": "Čeština",
    "da": "Dansk",
    "fi": "Suomi",
    "el": "Ελληνικά",
    "hu": "Magyar",
    "no": "Norsk",
    "ro": "Română",
    "sk": "Slovenčina",
    "sv": "Svenska",
}
DEFAULT_SYSTEM_PROMPT = (
    "You are a professional translator. "
    "Translate the meaning accurately with natural phrasing in the target language. "
    "Keep the document structure (headings, lists, tables) in Markdown form. "
    "Figure placeholders such as [[FIGSEG:1:1.1:ENDFIG]] stand for images: copy every placeholder "
    "verbatim, character for character, at the same position, and never translate, merge or drop one. "
    "Translate only the natural-language text around them. "
    "Do not add, summarize or explain. Output the translation only."
)
DEFAULT_USER_PROMPT_TEMPLATE = (
    "Translate the following text into {target_language}.\n"
    "- Keep [[FIGSEG:...:ENDFIG]] placeholders unchanged and in place.\n"
    "- Keep heading levels (#, ##, ###) and Markdown tables as they are."
)
TRANSIENT_STATUS_CODES = {408, 409, 425, 500, 502, 503, 504}
SKIPPABLE_RE = re.compile(r"[\d\W_]*")
_HTTP2_AVAILABLE = importlib.util.find_spec("h2") is not None
logger = logging.getLogger(__name__)


@dataclass
class ProviderRuntime:
    id: str
    model: str
    api_key: str
    base_url: str | None = None
    timeout_sec: int = 60


@dataclass
class TranslationOptions:
    source_language: str | None = None
    tone: str | None = None
    domain: str | None = None
    custom_instructions: str | None = None
    system_prompt: str | None = None
    user_prompt: str | None = None

    def effective_system_prompt(self) -> str:
        return self.system_prompt.strip() if self.system_prompt and self.system_prompt.strip() else DEFAULT_SYSTEM_PROMPT

    def effective_user_prompt(self, target_language_name: str) -> str:
        template = self.user_prompt if self.user_prompt and self.user_prompt.strip() else DEFAULT_USER_PROMPT_TEMPLATE
        return template.replace("{target_language}", target_language_name)


@dataclass(frozen=True)
class EngineReply:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class TranslationEngine(Protocol):
    def translate(
        self,
        text: str,
        target_language: str,
        *,
        options: TranslationOptions,
        timeout: float,
    ) -> EngineReply: ...


def language_name(code: str) -> str:
    return SUPPORTED_LANGUAGES.get(code, code)


def should_skip_translation(text: str) -> bool:
    """True when nothing but placeholders, digits and punctuation remain."""
    stripped = CANONICAL_PLACEHOLDER_RE.sub(" ", text)
    return SKIPPABLE_RE.fullmatch(stripped) is not None


def build_prompt(text: str, target_language: str, options: TranslationOptions) -> list[dict[str, str]]:
    system = options.effective_system_prompt()
    if "FIGSEG" not in system:
        system += " Copy [[FIGSEG:...:ENDFIG]] placeholders verbatim."
    user_parts = [options.effective_user_prompt(language_name(target_language))]
    if options.source_language and options.source_language != "auto":
        user_parts.append(f"Source language: {language_name(options.source_language)}")
    if options.tone:
        user_parts.append(f"Tone: {options.tone}")
    if options.domain:
        user_parts.append(f"Domain: {options.domain}")
    if options.custom_instructions and options.custom_instructions.strip():
        user_parts.append(f"Additional instructions:\n{options.custom_instructions.strip()}")
    user_parts.append(f"--- Source text ---\n{text}")
    return [{"role": "system", "content": system}, {"role": "user", "content": "\n\n".join(user_parts)}]


def _format_http_error(resp: httpx.Response) -> str:
    detail = ""
    try:
        data = resp.json()
        if isinstance(data, dict):
            err = data.get("error")
            if isinstance(err, dict):
                detail = str(err.get("message") or err.get("code") or "")
            if not detail:
                detail = str(data.get("message") or "")
        elif data is not None:
            detail = str(data)
    except ValueError:
        detail = resp.text.strip()

    detail = detail.strip()
    if detail:
        return f"HTTP {resp.status_code}: {detail}"
    return f"HTTP {resp.status_code}"


def _retry_after_seconds(resp: httpx.Response) -> float | None:
    raw = resp.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.status_code < 400:
        return
    message = _format_http_error(resp)
    if resp.status_code == 429:
        raise RateLimitedError(message, retry_after=_retry_after_seconds(resp))
    if resp.status_code in TRANSIENT_STATUS_CODES or resp.status_code >= 500:
        raise TransientEngineError(message)
    raise PermanentTranslationError(message)


def _strip_code_fence(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:markdown|md|text)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text.strip()


def _message_content(data: dict[str, Any]) -> str:
    content = (data.get("choices") or [{}])[0].get("message", {}).get("content", "")
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(item.get("text", ""))
        content = "\n".join(parts)
    return content if isinstance(content, str) else ""


class OpenAIChatEngine:
    """OpenAI-compatible ``/chat/completions`` translation engine."""

    def __init__(
        self,
        provider: ProviderRuntime,
        client: httpx.Client | None = None,
        temperature: float = 0.2,
    ) -> None:
        self.provider = provider
        self.temperature = max(0.0, min(2.0, float(temperature)))
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                # httpx requires optional dependency h2 for HTTP/2.
                http2=_HTTP2_AVAILABLE,
                limits=httpx.Limits(max_connections=32, max_keepalive_connections=8),
            )
        return self._client

    def close(self) -> None:
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    def _endpoint(self) -> str:
        base_url = self.provider.base_url.rstrip("/") if self.provider.base_url else "https://api.openai.com/v1"
        return f"{base_url}/chat/completions"

    def translate(
        self,
        text: str,
        target_language: str,
        *,
        options: TranslationOptions,
        timeout: float,
    ) -> EngineReply:
        payload: dict[str, Any] = {
            "model": self.provider.model,
            "messages": build_prompt(text, target_language, options),
            "temperature": self.temperature,
        }
        headers = {
            "Authorization": f"Bearer {self.provider.api_key}",
            "Content-Type": "application/json",
        }
        effective_timeout = float(timeout or self.provider.timeout_sec)
        try:
            resp = self.client.post(self._endpoint(), json=payload, headers=headers, timeout=effective_timeout)
        except httpx.TimeoutException as exc:
            raise EngineTimeoutError(f"engine call timed out after {effective_timeout}s") from exc
        except httpx.TransportError as exc:
            raise TransientEngineError(f"transport error: {exc}") from exc

        _raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientEngineError("engine returned a non-JSON body") from exc

        content = _message_content(data)
        if not content.strip():
            raise TransientEngineError("empty translation response")
        if not text.lstrip().startswith("```"):
            content = _strip_code_fence(content)

        usage = data.get("usage") or {}
        logger.debug(
            "engine reply: provider=%s model=%s chars %s -> %s",
            self.provider.id,
            self.provider.model,
            len(text),
            len(content),
        )
        return EngineReply(
            text=content.strip(),
            input_tokens=int(usage.get("prompt_tokens") or 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
        )
