from __future__ import annotations

import shutil
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import orjson
from redis import Redis

from doctranslate.core.redis_client import get_redis
from doctranslate.core.settings import Settings, get_settings
from doctranslate.services.asset_store import LocalAssetStore
from doctranslate.services.pipeline import TranslationJobResult

TERMINAL_STATUSES = frozenset({"ready", "failed", "cancelled"})


@dataclass(frozen=True)
class JobPaths:
    root: Path
    source: Path
    figures_dir: Path
    result_markdown: Path


def _now() -> datetime:
    return datetime.now(UTC)


def _dumps(data: Any) -> str:
    return orjson.dumps(data).decode("utf-8")


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    return orjson.loads(raw)


class JobStore:
    def __init__(self, redis: Redis | None = None, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self.redis = redis if redis is not None else get_redis()

    def new_job_id(self) -> str:
        return uuid.uuid4().hex

    def new_run_id(self) -> str:
        return uuid.uuid4().hex[:12]

    def paths(self, job_id: str, source_format: str = "bin") -> JobPaths:
        root = self.settings.storage_root / job_id
        return JobPaths(
            root=root,
            source=root / f"source.{source_format}",
            figures_dir=root / "figures",
            result_markdown=root / "result.md",
        )

    def asset_store(self) -> LocalAssetStore:
        return LocalAssetStore(self.settings.storage_root, self.settings.public_asset_base_url)

    def create_job(self, filename: str, source_format: str, content: bytes) -> dict[str, Any]:
        job_id = self.new_job_id()
        created_at = _now()
        expires_at = created_at + timedelta(minutes=self.settings.job_ttl_minutes)
        paths = self.paths(job_id, source_format)
        paths.root.mkdir(parents=True, exist_ok=True)
        paths.source.write_bytes(content)

        meta = {
            "job_id": job_id,
            "run_id": None,
            "status": "created",
            "filename": filename,
            "source_format": source_format,
            "size_bytes": len(content),
            "target_language": None,
            "provider": None,
            "progress": {"completed_chunks": 0, "total_chunks": 0, "failed_chunks": 0},
            "error": None,
            "warnings_count": 0,
            "created_at": created_at.isoformat(),
            "expires_at": expires_at.isoformat(),
        }
        self.redis.set(self._meta_key(job_id), _dumps(meta), ex=self._ttl_seconds())
        return meta

    def read_source(self, job_id: str) -> bytes:
        meta = self.get_meta(job_id)
        if not meta:
            raise KeyError(job_id)
        return self.paths(job_id, meta["source_format"]).source.read_bytes()

    def get_meta(self, job_id: str) -> dict[str, Any] | None:
        raw = self.redis.get(self._meta_key(job_id))
        return _loads(raw, None)

    def update_meta(self, job_id: str, **patch: Any) -> dict[str, Any]:
        meta = self.get_meta(job_id)
        if not meta:
            raise KeyError(job_id)
        meta.update(patch)
        self.redis.set(self._meta_key(job_id), _dumps(meta), ex=self._ttl_seconds())
        return meta

    def iter_metas(self) -> Iterator[dict[str, Any]]:
        for key in self.redis.scan_iter(match="job:*:meta"):
            meta = _loads(self.redis.get(key), None)
            if meta:
                yield meta

    def save_request(self, job_id: str, request: dict[str, Any]) -> None:
        self.redis.set(self._request_key(job_id), _dumps(request), ex=self._ttl_seconds())

    def get_request(self, job_id: str) -> dict[str, Any] | None:
        return _loads(self.redis.get(self._request_key(job_id)), None)

    def mark_running(self, job_id: str, target_language: str, provider: dict[str, Any]) -> dict[str, Any]:
        """Start a new run. Cancel flags are per run, so a cancelled run stays cancelled."""
        self.redis.delete(self._result_key(job_id))
        return self.update_meta(
            job_id,
            run_id=self.new_run_id(),
            status="running",
            target_language=target_language,
            provider=provider,
            progress={"completed_chunks": 0, "total_chunks": 0, "failed_chunks": 0},
            error=None,
            warnings_count=0,
        )

    def update_progress(self, job_id: str, completed: int, total: int, failed: int) -> None:
        self.update_meta(
            job_id,
            progress={"completed_chunks": completed, "total_chunks": total, "failed_chunks": failed},
        )

    def mark_failed(self, job_id: str, error: str) -> dict[str, Any]:
        return self.update_meta(job_id, status="failed", error=error)

    def mark_cancelled(self, job_id: str) -> dict[str, Any]:
        return self.update_meta(job_id, status="cancelled")

    def request_cancel(self, job_id: str) -> dict[str, Any]:
        meta = self.get_meta(job_id)
        if not meta:
            raise KeyError(job_id)
        if meta["status"] in TERMINAL_STATUSES:
            return meta
        self.redis.set(self._cancel_key(job_id, meta.get("run_id")), "1", ex=self._ttl_seconds())
        return self.mark_cancelled(job_id)

    def is_cancel_requested(self, job_id: str, run_id: str | None = None) -> bool:
        keys = [self._cancel_key(job_id)]
        if run_id:
            keys.append(self._cancel_key(job_id, run_id))
        return bool(self.redis.exists(*keys))

    def save_result(self, job_id: str, result: TranslationJobResult) -> dict[str, Any]:
        meta = self.get_meta(job_id)
        if not meta:
            raise KeyError(job_id)
        paths = self.paths(job_id, meta["source_format"])
        paths.root.mkdir(parents=True, exist_ok=True)
        paths.result_markdown.write_text(result.text, encoding="utf-8")

        payload = {"job_id": job_id, **result.to_dict()}
        self.redis.set(self._result_key(job_id), _dumps(payload), ex=self._ttl_seconds())
        self.update_meta(job_id, status="ready", error=None, warnings_count=len(result.warnings))
        return payload

    def get_result(self, job_id: str) -> dict[str, Any] | None:
        return _loads(self.redis.get(self._result_key(job_id)), None)

    def figure_path(self, job_id: str, name: str) -> Path | None:
        figures_dir = self.paths(job_id).figures_dir
        candidate = figures_dir / name
        if candidate.parent != figures_dir or not candidate.is_file():
            return None
        return candidate

    def cleanup_job(self, job_id: str, status: str = "deleted") -> None:
        meta = self.get_meta(job_id)
        if meta:
            meta["status"] = status
            self.redis.set(self._meta_key(job_id), _dumps(meta), ex=120)
        self.redis.set(self._cancel_key(job_id), "1", ex=120)
        self.redis.delete(self._request_key(job_id), self._result_key(job_id))
        root = self.paths(job_id).root
        if root.exists():
            shutil.rmtree(root, ignore_errors=True)

    @staticmethod
    def _meta_key(job_id: str) -> str:
        return f"job:{job_id}:meta"

    @staticmethod
    def _request_key(job_id: str) -> str:
        return f"job:{job_id}:request"

    @staticmethod
    def _cancel_key(job_id: str, run_id: str | None = None) -> str:
        # Without a run id the flag stops every run of the job (delete, expiry).
        return f"job:{job_id}:cancel:{run_id}" if run_id else f"job:{job_id}:cancel"

    @staticmethod
    def _result_key(job_id: str) -> str:
        return f"job:{job_id}:result"

    def _ttl_seconds(self) -> int:
        return self.settings.job_ttl_minutes * 60
