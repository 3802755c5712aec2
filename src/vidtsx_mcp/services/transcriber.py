from __future__ import annotations

import asyncio
import json
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Callable

from vidtsx_mcp.errors import (
    Busy,
    Cancelled,
    ExecutableMissing,
    ModelUnavailable,
    ResultParseError,
    ServiceError,
    SpawnError,
    TranscriptionFailed,
)
from vidtsx_mcp.jobs import Emit, JobHandle, launch
from vidtsx_mcp.services.audio import AudioExtractor
from vidtsx_mcp.services.models import ModelStore
from vidtsx_mcp.services.process import pump_lines, reap
from vidtsx_mcp.types import (
    ExtractedAudio,
    ProgressEvent,
    TranscriptionJob,
    TranscriptionRequest,
    TranscriptionResult,
    TranscriptionSegment,
)

logger = logging.getLogger(__name__)

_PROGRESS = re.compile(r"progress\s*=\s*(\d+)%", re.I)


def parse_timestamp(value: str) -> float:
    """Convert ``HH:MM:SS,mmm`` (or ``.mmm``) into seconds."""
    hours, minutes, seconds = value.strip().split(":")
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds.replace(",", "."))


def _segment_bound(segment: dict[str, Any], edge: str) -> float:
    timestamps = segment.get("timestamps") or {}
    if timestamps.get(edge):
        return parse_timestamp(str(timestamps[edge]))
    offsets = segment.get("offsets") or {}
    if offsets.get(edge) is not None:
        return float(offsets[edge]) / 100
    return 0.0


def parse_whisper_json(content: str) -> TranscriptionResult:
    """Build a result from whisper.cpp ``-oj`` output."""
    try:
        data = json.loads(content)
        segments = [
            TranscriptionSegment(
                id=index,
                start=_segment_bound(item, "from"),
                end=_segment_bound(item, "to"),
                text=str(item.get("text") or "").strip(),
            )
            for index, item in enumerate(data.get("transcription") or [])
        ]
        language = (data.get("result") or {}).get("language") or "auto"
    except (ValueError, TypeError, AttributeError) as exc:
        raise ResultParseError(f"Failed to parse transcription output: {exc}") from exc
    return TranscriptionResult(segments=segments, language=str(language))


class TranscriptionProcess:
    """Runs the whisper.cpp CLI over one input at a time."""

    def __init__(
        self,
        *,
        models: ModelStore,
        audio: AudioExtractor,
        executable: Path,
        work_dir: Path,
    ) -> None:
        self.models = models
        self.audio = audio
        self.executable = executable
        self.work_dir = work_dir
        self._job: TranscriptionJob | None = None
        self._process: asyncio.subprocess.Process | None = None

    @property
    def active_job(self) -> TranscriptionJob | None:
        return self._job

    def start(self, request: TranscriptionRequest) -> JobHandle[TranscriptionResult]:
        job = self._claim(request)
        return launch("transcription", lambda emit: self._run(job, emit), self.cancel)

    async def transcribe(
        self,
        request: TranscriptionRequest,
        on_progress: Emit | None = None,
    ) -> TranscriptionResult:
        job = self._claim(request)
        return await self._run(job, on_progress or (lambda event: None))

    def cancel(self) -> None:
        if self._job is not None:
            self._job.cancel_requested = True
        if self._process is not None and self._process.returncode is None:
            logger.info("Terminating whisper process %s", self._process.pid)
            self._process.terminate()

    def _claim(self, request: TranscriptionRequest) -> TranscriptionJob:
        if self._job is not None:
            raise Busy("A transcription is already in progress")
        if not self.models.is_available(request.model_id):
            raise ModelUnavailable(
                f"Model {request.model_id} is not available. Please download it first."
            )
        if not self.executable.exists():
            raise ExecutableMissing(
                f"Whisper binary not found at {self.executable}. "
                "Run vidtsx-provision whisper or set WHISPER_BIN."
            )
        job = TranscriptionJob(request=request)
        self._job = job
        return job

    async def _run(self, job: TranscriptionJob, emit: Emit) -> TranscriptionResult:
        def report(phase: str, progress: int, message: str | None = None) -> None:
            job.phase = phase  # type: ignore[assignment]
            job.progress = progress
            emit(ProgressEvent(phase, progress, message))

        try:
            report("preparing", 0, "Preparing audio...")
            result = await self._pipeline(job, report)
        except Cancelled as exc:
            logger.info("Transcription of %s cancelled", job.request.input_path)
            report("cancelled", 0, str(exc))
            raise
        except ServiceError as exc:
            if job.cancel_requested:
                report("cancelled", 0, "Transcription cancelled")
                raise Cancelled("Transcription cancelled") from exc
            logger.error("Transcription of %s failed: %s", job.request.input_path, exc)
            report("error", 0, str(exc))
            raise
        except Exception as exc:
            logger.exception("Transcription of %s failed", job.request.input_path)
            report("error", 0, str(exc) or "Transcription failed")
            raise
        finally:
            self._job = None
        report("complete", 100, "Transcription complete!")
        return result

    async def _pipeline(self, job: TranscriptionJob, report: Callable[..., None]) -> TranscriptionResult:
        request = job.request
        extracted: ExtractedAudio | None = None
        stem = self.work_dir / f"output_{uuid.uuid4().hex}"
        json_path = stem.with_name(stem.name + ".json")
        try:
            extracted = await self.audio.extract(request.input_path)
            job.owns_audio = extracted.is_temporary
            if job.cancel_requested:
                raise Cancelled("Transcription cancelled")

            self.work_dir.mkdir(parents=True, exist_ok=True)
            args = [
                "-m", str(self.models.model_path(request.model_id)),
                "-f", str(extracted.path),
                "-oj",
                "-of", str(stem),
                "--print-progress",
            ]
            if request.language:
                args.extend(["-l", request.language])

            code, stderr_text = await self._spawn(args, report)
            if job.cancel_requested:
                raise Cancelled("Transcription cancelled")
            if code != 0:
                raise TranscriptionFailed(
                    stderr_text.strip() or f"Transcription failed with code {code}"
                )
            if not json_path.exists():
                raise ResultParseError("Transcription output file not found")
            return parse_whisper_json(json_path.read_text(encoding="utf-8"))
        finally:
            json_path.unlink(missing_ok=True)
            if extracted is not None and extracted.is_temporary:
                extracted.path.unlink(missing_ok=True)
                logger.info("Cleaned up temp audio file %s", extracted.path)

    async def _spawn(self, args: list[str], report: Callable[..., None]) -> tuple[int, str]:
        logger.info("Running %s %s", self.executable, " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                str(self.executable),
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnError(f"Could not start whisper: {exc}") from exc

        self._process = process
        stderr_lines: list[str] = []

        def scan(line: str) -> None:
            for match in _PROGRESS.finditer(line):
                report("transcribing", int(match.group(1)), "Transcribing...")

        def scan_stderr(line: str) -> None:
            stderr_lines.append(line)
            scan(line)

        try:
            await asyncio.gather(
                pump_lines(process.stdout, scan),
                pump_lines(process.stderr, scan_stderr),
            )
            code = await process.wait()
        finally:
            self._process = None
            await reap(process)

        logger.info("Whisper exited with code %s", code)
        return code, "\n".join(stderr_lines)
