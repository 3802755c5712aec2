from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path

from vidtsx_mcp.errors import ExtractionError
from vidtsx_mcp.types import ExtractedAudio

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = frozenset({"mp4", "mov", "webm", "avi", "mkv", "m4v"})


def is_container(path: str | Path) -> bool:
    return Path(path).suffix.lower().lstrip(".") in VIDEO_EXTENSIONS


class AudioExtractor:
    """Normalize media into the 16 kHz mono PCM WAV whisper expects.

    Video containers go through ffmpeg into a temp file under ``work_dir``;
    bare audio is handed back untouched. The caller owns any temp file.
    """

    def __init__(self, ffmpeg_path: Path, work_dir: Path) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.work_dir = work_dir

    async def extract(self, input_path: str | Path) -> ExtractedAudio:
        source = Path(input_path)
        if not is_container(source):
            return ExtractedAudio(path=source, is_temporary=False)

        if not self.ffmpeg_path.exists():
            raise ExtractionError(
                f"FFmpeg binary not found at {self.ffmpeg_path}. "
                "Run vidtsx-provision ffmpeg or set FFMPEG_BIN."
            )

        self.work_dir.mkdir(parents=True, exist_ok=True)
        wav_path = self.work_dir / f"temp_audio_{uuid.uuid4().hex}.wav"
        cmd = [
            str(self.ffmpeg_path), "-y",
            "-i", str(source),
            "-vn",
            "-acodec", "pcm_s16le",
            "-ar", "16000",
            "-ac", "1",
            str(wav_path),
        ]

        logger.info("Extracting audio from %s", source)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExtractionError(f"Failed to extract audio: {exc}") from exc

        try:
            _, stderr = await process.communicate()
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            wav_path.unlink(missing_ok=True)
            raise

        if process.returncode != 0:
            wav_path.unlink(missing_ok=True)
            message = stderr.decode("utf-8", errors="replace").strip() or f"ffmpeg exited with {process.returncode}"
            raise ExtractionError(f"Failed to extract audio: {message[-2000:]}")

        logger.info("Audio extraction complete: %s", wav_path)
        return ExtractedAudio(path=wav_path, is_temporary=True)
