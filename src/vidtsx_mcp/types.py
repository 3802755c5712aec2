from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

OutputFormat = Literal["mp4", "mov"]
ExportFormat = Literal["srt", "vtt", "txt", "json"]
TranscriptionMethod = Literal["local"]
RenderPhase = Literal[
    "idle", "bundling", "serving", "selecting", "rendering", "complete", "error", "cancelled"
]
TranscriptionPhase = Literal["preparing", "transcribing", "complete", "error", "cancelled"]
DownloadState = Literal["active", "cancelled", "complete", "failed"]


@dataclass(slots=True)
class ProgressEvent:
    phase: str
    progress: int
    message: str | None = None


@dataclass(slots=True, frozen=True)
class CompositionDescriptor:
    id: str
    width: int
    height: int
    fps: int
    duration_in_frames: int


@dataclass(slots=True, frozen=True)
class EncodeProfile:
    codec: str
    prores_profile: str | None = None
    pixel_format: str | None = None
    image_format: str | None = None


@dataclass(slots=True)
class RenderRequest:
    source_path: str
    output_path: str
    format: OutputFormat = "mp4"


@dataclass(slots=True)
class RenderJob:
    request: RenderRequest
    job_id: str
    phase: RenderPhase = "idle"
    progress: int = 0
    abort: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancel_requested(self) -> bool:
        return self.abort.is_set()


@dataclass(slots=True)
class DownloadTask:
    key: str
    source_url: str
    destination: Path
    expected_size: int | None = None
    bytes_transferred: int = 0
    state: DownloadState = "active"

    @property
    def temp_path(self) -> Path:
        return self.destination.with_name(self.destination.name + ".tmp")


@dataclass(slots=True)
class DownloadProgress:
    key: str
    progress: int
    downloaded: int
    total: int | None


@dataclass(slots=True)
class TranscriptionRequest:
    input_path: str
    model_id: str
    language: str | None = None


@dataclass(slots=True)
class TranscriptionJob:
    request: TranscriptionRequest
    phase: TranscriptionPhase = "preparing"
    progress: int = 0
    owns_audio: bool = False
    cancel_requested: bool = False


@dataclass(slots=True)
class TranscriptionSegment:
    id: int
    start: float
    end: float
    text: str


@dataclass(slots=True)
class TranscriptionResult:
    segments: list[TranscriptionSegment]
    language: str = "auto"
    duration: float = field(init=False)

    def __post_init__(self) -> None:
        self.duration = self.segments[-1].end if self.segments else 0.0


@dataclass(slots=True)
class ExtractedAudio:
    path: Path
    is_temporary: bool


@dataclass(slots=True)
class ModelStatus:
    model: str
    available: bool
    size: str
    downloading: bool
    download_progress: int = 0


@dataclass(slots=True)
class TranscriberSettings:
    method: TranscriptionMethod = "local"
    selected_model: str = "base"
