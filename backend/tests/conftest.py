from __future__ import annotations

import fnmatch
import io
import threading
from collections.abc import Iterator
from pathlib import Path

import fitz
import pytest
from PIL import Image

from doctranslate.core.settings import Settings
from doctranslate.services.translator import EngineReply, TranslationOptions


class FakeRedis:
    """In-memory subset of the redis client used by JobStore and events."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.data[key] = value
        return True

    def setnx(self, key: str, value: str) -> bool:
        if key in self.data:
            return False
        self.data[key] = value
        return True

    def expire(self, key: str, seconds: int) -> bool:
        return key in self.data

    def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if key in self.data)

    def scan_iter(self, match: str | None = None) -> Iterator[str]:
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0


class UpperEngine:
    """Translates by upper-casing; placeholders survive because they are upper-case already."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def translate(
        self,
        text: str,
        target_language: str,
        *,
        options: TranslationOptions,
        timeout: float,
    ) -> EngineReply:
        with self._lock:
            self.calls.append(text)
        return EngineReply(text=text.upper(), input_tokens=len(text), output_tokens=len(text))


def png_bytes(color: tuple[int, int, int] = (200, 30, 30), size: int = 40) -> bytes:
    image = Image.new("RGB", (size, size), color)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def build_sample_pdf() -> bytes:
    doc = fitz.open()
    page = doc.new_page(width=595, height=842)
    page.insert_text((72, 72), "Results Overview", fontsize=22)
    page.insert_text((72, 130), "The experiment shows a clear trend.", fontsize=11)
    page.insert_image(fitz.Rect(72, 200, 272, 400), stream=png_bytes())
    # Label printed on top of the picture, as an OCR layer would leave it.
    page.insert_text((100, 300), "AXIS 42", fontsize=11)
    page.insert_text((72, 500), "- first bullet item", fontsize=11)
    page.insert_text((72, 560), "Closing remarks follow here.", fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        storage_root=tmp_path / "jobs",
        redis_url="redis://localhost:6379/15",
        backoff_base_sec=0.0,
        backoff_max_sec=0.0,
        max_concurrency=2,
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def upper_engine() -> UpperEngine:
    return UpperEngine()


@pytest.fixture
def sample_pdf() -> bytes:
    return build_sample_pdf()
