import asyncio
import json
from pathlib import Path

import pytest

from vidtsx_mcp.errors import (
    Busy,
    Cancelled,
    ExecutableMissing,
    ModelUnavailable,
    ResultParseError,
    SpawnError,
    TranscriptionFailed,
)
from vidtsx_mcp.services.audio import AudioExtractor
from vidtsx_mcp.services.downloader import DownloadManager
from vidtsx_mcp.services.models import ModelStore
from vidtsx_mcp.services.transcriber import TranscriptionProcess, parse_timestamp, parse_whisper_json
from vidtsx_mcp.types import ProgressEvent, TranscriptionRequest

FAKE_WHISPER = """
import json
import sys

args = sys.argv[1:]
stem = args[args.index("-of") + 1]
language = args[args.index("-l") + 1] if "-l" in args else None
sys.stderr.write("whisper_print_progress_callback: progress =  40%\\n")
sys.stderr.flush()
print("whisper_print_progress_callback: progress = 80%", flush=True)
payload = {
    "result": {"language": language} if language else {},
    "transcription": [
        {"timestamps": {"from": "00:00:00,000", "to": "00:00:01,500"}, "text": " Hello"},
        {"offsets": {"from": 1500, "to": 3250}, "text": " from " + args[args.index("-f") + 1]},
    ],
}
with open(stem + ".json", "w") as handle:
    json.dump(payload, handle)
"""

FAILING_WHISPER = """
import sys
sys.stderr.write("error: failed to open audio\\n")
sys.exit(3)
"""

SILENT_WHISPER = """
import sys
sys.exit(0)
"""

NON_MONOTONIC_WHISPER = """
import json
import sys

args = sys.argv[1:]
print("whisper_print_progress_callback: progress = 60%", flush=True)
print("whisper_print_progress_callback: progress = 30%", flush=True)
with open(args[args.index("-of") + 1] + ".json", "w") as handle:
    json.dump({"transcription": []}, handle)
"""

HANGING_WHISPER = """
import time
print("progress = 10%", flush=True)
time.sleep(30)
"""

FAKE_FFMPEG = """
import sys
open(sys.argv[-1], "wb").write(b"RIFF")
"""


def _process(tmp_path: Path, whisper: Path, ffmpeg: Path | None = None) -> TranscriptionProcess:
    models = ModelStore(tmp_path / "models", DownloadManager())
    models.model_path("base").write_bytes(b"ggml")
    work_dir = tmp_path / "work"
    return TranscriptionProcess(
        models=models,
        audio=AudioExtractor(ffmpeg or tmp_path / "missing-ffmpeg", work_dir),
        executable=whisper,
        work_dir=work_dir,
    )


def _audio(tmp_path: Path) -> str:
    path = tmp_path / "voice.wav"
    path.write_bytes(b"RIFF")
    return str(path)


def test_parse_timestamp() -> None:
    assert parse_timestamp("00:01:02,500") == 62.5
    assert parse_timestamp("01:00:00.250") == 3600.25


def test_parse_whisper_json_prefers_timestamps_over_offsets() -> None:
    content = json.dumps(
        {
            "result": {"language": "de"},
            "transcription": [
                {
                    "timestamps": {"from": "00:00:02,000", "to": "00:00:03,000"},
                    "offsets": {"from": 0, "to": 10},
                    "text": "  Hallo ",
                },
                {"offsets": {"from": 300, "to": 450}, "text": "Welt"},
                {"text": "no bounds"},
            ],
        }
    )

    result = parse_whisper_json(content)

    assert result.language == "de"
    assert [(s.id, s.start, s.end, s.text) for s in result.segments] == [
        (0, 2.0, 3.0, "Hallo"),
        (1, 3.0, 4.5, "Welt"),
        (2, 0.0, 0.0, "no bounds"),
    ]
    assert result.duration == 0.0


def test_parse_whisper_json_defaults() -> None:
    result = parse_whisper_json("{}")
    assert result.segments == []
    assert result.language == "auto"


def test_parse_whisper_json_rejects_garbage() -> None:
    with pytest.raises(ResultParseError):
        parse_whisper_json("not json")


def test_transcribe_bare_audio(tmp_path: Path, make_script) -> None:
    process = _process(tmp_path, make_script("whisper-cli", FAKE_WHISPER))
    audio = _audio(tmp_path)
    events: list[ProgressEvent] = []

    result = asyncio.run(
        process.transcribe(TranscriptionRequest(input_path=audio, model_id="base", language="en"), events.append)
    )

    assert result.language == "en"
    assert [segment.text for segment in result.segments] == ["Hello", f"from {audio}"]
    assert result.segments[1].start == 15.0
    assert result.duration == 32.5
    assert events[0].phase == "preparing"
    assert {event.progress for event in events if event.phase == "transcribing"} == {40, 80}
    assert (events[-1].phase, events[-1].progress) == ("complete", 100)
    assert list((tmp_path / "work").glob("output_*")) == []
    assert Path(audio).exists()
    assert process.active_job is None


def test_transcribe_video_cleans_up_extracted_audio(tmp_path: Path, make_script) -> None:
    process = _process(
        tmp_path,
        make_script("whisper-cli", FAKE_WHISPER),
        make_script("ffmpeg", FAKE_FFMPEG),
    )

    result = asyncio.run(process.transcribe(TranscriptionRequest(input_path=str(tmp_path / "clip.mp4"), model_id="base")))

    assert result.language == "auto"
    assert "temp_audio_" in result.segments[1].text
    assert list((tmp_path / "work").iterdir()) == []


def test_nonzero_exit_reports_stderr(tmp_path: Path, make_script) -> None:
    process = _process(tmp_path, make_script("whisper-cli", FAILING_WHISPER))
    events: list[ProgressEvent] = []

    with pytest.raises(TranscriptionFailed, match="failed to open audio"):
        asyncio.run(process.transcribe(TranscriptionRequest(input_path=_audio(tmp_path), model_id="base"), events.append))
    assert events[-1].phase == "error"
    assert process.active_job is None


def test_missing_output_file(tmp_path: Path, make_script) -> None:
    process = _process(tmp_path, make_script("whisper-cli", SILENT_WHISPER))

    with pytest.raises(ResultParseError, match="output file not found"):
        asyncio.run(process.transcribe(TranscriptionRequest(input_path=_audio(tmp_path), model_id="base")))


def test_preconditions_are_checked_before_starting(tmp_path: Path, make_script) -> None:
    process = _process(tmp_path, tmp_path / "bin" / "absent-whisper")
    audio = _audio(tmp_path)

    with pytest.raises(ModelUnavailable, match="small"):
        asyncio.run(process.transcribe(TranscriptionRequest(input_path=audio, model_id="small")))
    with pytest.raises(ExecutableMissing):
        asyncio.run(process.transcribe(TranscriptionRequest(input_path=audio, model_id="base")))
    assert process.active_job is None


def test_busy_and_cancel(tmp_path: Path, make_script) -> None:
    process = _process(tmp_path, make_script("whisper-cli", HANGING_WHISPER))
    request = TranscriptionRequest(input_path=_audio(tmp_path), model_id="base")

    async def scenario() -> list[str]:
        handle = process.start(request)
        with pytest.raises(Busy):
            process.start(request)

        phases: list[str] = []
        async for event in handle.events():
            phases.append(event.phase)
            if event.phase == "transcribing":
                handle.cancel()
        with pytest.raises(Cancelled):
            await handle.result()
        return phases

    phases = asyncio.run(scenario())

    assert phases[0] == "preparing"
    assert "transcribing" in phases
    assert phases[-1] == "cancelled"
    assert process.active_job is None


def test_progress_follows_whisper_output_order(tmp_path: Path, make_script) -> None:
    process = _process(tmp_path, make_script("whisper-cli", NON_MONOTONIC_WHISPER))
    events: list[ProgressEvent] = []

    result = asyncio.run(
        process.transcribe(TranscriptionRequest(input_path=_audio(tmp_path), model_id="base"), events.append)
    )

    assert [event.progress for event in events if event.phase == "transcribing"] == [60, 30]
    assert result.segments == []


def test_unrunnable_executable_raises_spawn_error(tmp_path: Path) -> None:
    whisper = tmp_path / "bin" / "whisper-cli"
    whisper.parent.mkdir()
    whisper.write_text("not a program\n")
    whisper.chmod(0o644)
    process = _process(tmp_path, whisper)
    events: list[ProgressEvent] = []

    with pytest.raises(SpawnError, match="Could not start whisper"):
        asyncio.run(process.transcribe(TranscriptionRequest(input_path=_audio(tmp_path), model_id="base"), events.append))
    assert events[-1].phase == "error"
    assert process.active_job is None
    assert list((tmp_path / "work").glob("output_*")) == []
