from __future__ import annotations

from pathlib import Path
from typing import Protocol

from doctranslate.services.spans import FIGURE_ID_RE


class AssetStore(Protocol):
    def put(self, job_id: str, figure_id: str, data: bytes, extension: str) -> str: ...


def figure_file_name(figure_id: str, extension: str) -> str:
    """File name for a figure. Ids never contain "-", so "1.2" and "1_2" stay distinct."""
    if not FIGURE_ID_RE.fullmatch(figure_id):
        raise ValueError(f"invalid figure id: {figure_id!r}")
    ext = "".join(ch for ch in extension.lower() if ch.isascii() and ch.isalnum()) or "png"
    return f"{figure_id.replace('.', '-')}.{ext}"


class LocalAssetStore:
    """Writes figure bytes under ``<root>/<job_id>/figures/``."""

    def __init__(self, root: Path, public_base_url: str | None = None) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None

    def figures_dir(self, job_id: str) -> Path:
        return self.root / job_id / "figures"

    def put(self, job_id: str, figure_id: str, data: bytes, extension: str) -> str:
        name = figure_file_name(figure_id, extension)
        target = self.figures_dir(job_id) / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        if self.public_base_url:
            return f"{self.public_base_url}/{job_id}/figures/{name}"
        return target.as_posix()
