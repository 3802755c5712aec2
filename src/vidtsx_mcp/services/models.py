from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from vidtsx_mcp.jobs import JobHandle
from vidtsx_mcp.services.downloader import DownloadManager, ProgressCallback
from vidtsx_mcp.types import DownloadTask, ModelStatus

_HF_BASE = "https://huggingface.co/ggerganov/whisper.cpp/resolve/main"


@dataclass(slots=True, frozen=True)
class ModelInfo:
    url: str
    size: str
    file_size: int


MODEL_CATALOG: dict[str, ModelInfo] = {
    "tiny": ModelInfo(f"{_HF_BASE}/ggml-tiny.bin", "75 MB", 75_000_000),
    "base": ModelInfo(f"{_HF_BASE}/ggml-base.bin", "142 MB", 142_000_000),
    "small": ModelInfo(f"{_HF_BASE}/ggml-small.bin", "466 MB", 466_000_000),
    "medium": ModelInfo(f"{_HF_BASE}/ggml-medium.bin", "1.5 GB", 1_500_000_000),
    "large": ModelInfo(f"{_HF_BASE}/ggml-large-v3.bin", "2.9 GB", 2_900_000_000),
}

DEFAULT_MODEL = "base"


def model_info(model_id: str) -> ModelInfo:
    try:
        return MODEL_CATALOG[model_id]
    except KeyError:
        raise ValueError(f"Unknown model: {model_id}") from None


class ModelStore:
    """Whisper model files on disk plus their downloads."""

    def __init__(self, models_dir: Path, downloads: DownloadManager) -> None:
        self.models_dir = models_dir
        self.downloads = downloads
        self.models_dir.mkdir(parents=True, exist_ok=True)

    def model_path(self, model_id: str) -> Path:
        model_info(model_id)
        return self.models_dir / f"ggml-{model_id}.bin"

    def is_available(self, model_id: str) -> bool:
        return self.model_path(model_id).exists()

    def statuses(self) -> list[ModelStatus]:
        statuses: list[ModelStatus] = []
        for model_id, info in MODEL_CATALOG.items():
            task = self.downloads.active(model_id)
            progress = 0
            if task is not None and task.expected_size:
                progress = round(task.bytes_transferred / task.expected_size * 100)
            statuses.append(
                ModelStatus(
                    model=model_id,
                    available=self.is_available(model_id),
                    size=info.size,
                    downloading=task is not None,
                    download_progress=progress,
                )
            )
        return statuses

    def download_task(self, model_id: str) -> DownloadTask:
        info = model_info(model_id)
        return DownloadTask(
            key=model_id,
            source_url=info.url,
            destination=self.model_path(model_id),
            expected_size=info.file_size,
        )

    def start_download(
        self,
        model_id: str,
        on_progress: ProgressCallback | None = None,
    ) -> JobHandle[Path]:
        return self.downloads.start(self.download_task(model_id), on_progress)

    def cancel_download(self, model_id: str | None = None) -> None:
        if model_id is None:
            for key in MODEL_CATALOG:
                self.downloads.cancel(key)
            return
        self.downloads.cancel(model_id)
