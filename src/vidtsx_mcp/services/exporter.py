from __future__ import annotations

import json
import math
from dataclasses import asdict
from pathlib import Path

from vidtsx_mcp.types import ExportFormat, TranscriptionResult, TranscriptionSegment

EXPORT_FORMATS: tuple[str, ...] = ("srt", "vtt", "txt", "json")


def format_timestamp(seconds: float, separator: str = ",") -> str:
    whole = int(max(seconds, 0))
    millis = math.floor((max(seconds, 0) - whole) * 1000 + 0.5)
    if millis == 1000:
        whole += 1
        millis = 0
    hours, rem = divmod(whole, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{millis:03d}"


def _cue_blocks(segments: list[TranscriptionSegment], separator: str) -> str:
    # Cue numbers are positional; segment ids are not reused.
    blocks = [
        f"{index}\n"
        f"{format_timestamp(segment.start, separator)} --> {format_timestamp(segment.end, separator)}\n"
        f"{segment.text}\n"
        for index, segment in enumerate(segments, start=1)
    ]
    return "\n".join(blocks)


def to_srt(result: TranscriptionResult) -> str:
    return _cue_blocks(result.segments, ",")


def to_vtt(result: TranscriptionResult) -> str:
    return "WEBVTT\n\n" + _cue_blocks(result.segments, ".")


def to_text(result: TranscriptionResult) -> str:
    return " ".join(segment.text for segment in result.segments)


def to_json(result: TranscriptionResult) -> str:
    return json.dumps(asdict(result), indent=2)


def result_from_json(content: str) -> TranscriptionResult:
    payload = json.loads(content)
    return result_from_dict(payload)


def result_from_dict(payload: dict[str, object]) -> TranscriptionResult:
    raw_segments = payload.get("segments") or []
    if not isinstance(raw_segments, list):
        raise ValueError("segments must be a list")
    segments = [
        TranscriptionSegment(
            id=int(item["id"]),
            start=float(item["start"]),
            end=float(item["end"]),
            text=str(item["text"]),
        )
        for item in raw_segments
    ]
    return TranscriptionResult(segments=segments, language=str(payload.get("language") or "auto"))


def export_transcription(result: TranscriptionResult, fmt: ExportFormat | str) -> str:
    if fmt == "srt":
        return to_srt(result)
    if fmt == "vtt":
        return to_vtt(result)
    if fmt == "txt":
        return to_text(result)
    if fmt == "json":
        return to_json(result)
    raise ValueError(f"Unsupported format: {fmt}")


def write_export(result: TranscriptionResult, fmt: ExportFormat | str, path: Path) -> Path:
    content = export_transcription(result, fmt)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
