import asyncio
import gzip
import json
from pathlib import Path
from typing import Any, AsyncIterator

import httpx

from vidtsx_mcp.db.database import Database
from vidtsx_mcp.db.settings import SettingsRepository
from vidtsx_mcp.mcp_tools import JobBoard, ToolRegistry
from vidtsx_mcp.services.audio import AudioExtractor
from vidtsx_mcp.services.binaries import BinaryProvisioner
from vidtsx_mcp.services.downloader import DownloadManager
from vidtsx_mcp.services.models import ModelStore
from vidtsx_mcp.services.renderer import RenderOrchestrator
from vidtsx_mcp.services.transcriber import TranscriptionProcess


class DummyMCP:
    def __init__(self) -> None:
        self.tools: dict[str, Any] = {}

    def tool(self, fn: Any = None, **_: Any) -> Any:
        def register(func: Any) -> Any:
            self.tools[func.__name__] = func
            return func

        return register(fn) if fn is not None else register


class FakeServer:
    def __init__(self, directory: Path) -> None:
        self.directory = directory

    async def start(self) -> str:
        return "http://127.0.0.1:9"

    def request_shutdown(self) -> None:
        pass

    async def close(self) -> None:
        pass


class FakeEngine:
    async def bundle(self, entry_point: Path, out_dir: Path, on_progress: Any) -> Path:
        on_progress(1.0)
        return out_dir

    async def select_composition(self, serve_url: str, composition_id: str) -> str:
        return composition_id

    async def render_media(self, serve_url, composition_id, output_path, profile, on_progress, abort) -> None:
        output_path.write_bytes(b"video")
        on_progress(1.0)


def _tools(tmp_path: Path, build_dir: Path, downloads: DownloadManager | None = None) -> dict[str, Any]:
    downloads = downloads or DownloadManager()
    models = ModelStore(tmp_path / "models", downloads)
    registry = ToolRegistry(
        renderer=RenderOrchestrator(build_dir=build_dir, engine=FakeEngine(), server_factory=FakeServer),  # type: ignore[arg-type]
        transcriber=TranscriptionProcess(
            models=models,
            audio=AudioExtractor(tmp_path / "ffmpeg", tmp_path / "work"),
            executable=tmp_path / "whisper-cli",
            work_dir=tmp_path / "work",
        ),
        models=models,
        provisioner=BinaryProvisioner(downloads, tmp_path / "resources", host=("linux", "x64")),
        settings=SettingsRepository(Database(tmp_path / "test.sqlite3")),
        board=JobBoard(),
    )
    mcp = DummyMCP()
    registry.register(mcp)  # type: ignore[arg-type]
    return mcp.tools


def test_settings_tools(tmp_path: Path, build_dir: Path) -> None:
    tools = _tools(tmp_path, build_dir)

    assert tools["get_settings"]() == {"method": "local", "selected_model": "base"}
    assert tools["save_settings"](selected_model="tiny") == {"method": "local", "selected_model": "tiny"}
    assert tools["get_settings"]()["selected_model"] == "tiny"

    rejected = tools["save_settings"](selected_model="nope")
    assert rejected["status"] == "rejected"
    assert rejected["error"] == "invalid_argument"


def test_model_status_lists_catalog(tmp_path: Path, build_dir: Path) -> None:
    tools = _tools(tmp_path, build_dir)
    (tmp_path / "models" / "ggml-small.bin").write_bytes(b"ggml")

    models = {item["model"]: item for item in tools["model_status"]()["models"]}

    assert set(models) == {"tiny", "base", "small", "medium", "large"}
    assert models["small"]["available"] is True
    assert models["base"]["available"] is False


def test_transcribe_uses_saved_model_and_rejects_when_missing(tmp_path: Path, build_dir: Path) -> None:
    tools = _tools(tmp_path, build_dir)
    tools["save_settings"](selected_model="medium")

    response = asyncio.run(tools["transcribe"](str(tmp_path / "voice.wav")))

    assert response["status"] == "rejected"
    assert response["error"] == "model_unavailable"
    assert "medium" in response["message"]
    assert tools["transcription_status"]() == {"status": "idle"}


def test_export_needs_a_result(tmp_path: Path, build_dir: Path) -> None:
    tools = _tools(tmp_path, build_dir)

    assert tools["export_transcription"](str(tmp_path / "a.srt"))["error"] == "no_result"
    assert tools["export_transcription"](str(tmp_path / "a.doc"), format="doc")["error"] == "invalid_argument"


def test_export_from_supplied_json(tmp_path: Path, build_dir: Path) -> None:
    tools = _tools(tmp_path, build_dir)
    payload = json.dumps(
        {"segments": [{"id": 0, "start": 0.0, "end": 1.25, "text": "Hi"}], "language": "en"}
    )

    response = tools["export_transcription"](str(tmp_path / "out" / "a.vtt"), format="vtt", result_json=payload)

    assert response["status"] == "written"
    assert (tmp_path / "out" / "a.vtt").read_text() == "WEBVTT\n\n1\n00:00:00.000 --> 00:00:01.250\nHi\n"
    assert tools["export_transcription"](str(tmp_path / "b.srt"), result_json="{bad")["error"] == "invalid_argument"


def test_render_tools(tmp_path: Path, build_dir: Path, composition_source: Path) -> None:
    tools = _tools(tmp_path, build_dir)
    output = tmp_path / "hello.mp4"

    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        started = await tools["render_composition"](str(composition_source), str(output))
        busy = await tools["render_composition"](str(composition_source), str(tmp_path / "other.mp4"))
        while not tools["render_status"]()["done"]:
            await asyncio.sleep(0.01)
        return started, busy

    started, busy = asyncio.run(scenario())

    assert started["status"] == "started"
    assert busy == {"status": "rejected", "error": "busy", "message": "A render is already in progress"}
    status = tools["render_status"]()
    assert status["phase"] == "complete"
    assert status["output_path"] == str(output)
    assert output.read_bytes() == b"video"
    assert tools["cancel_render"]() == {"cancelled": False}


def test_render_rejects_unknown_format(tmp_path: Path, build_dir: Path, composition_source: Path) -> None:
    tools = _tools(tmp_path, build_dir)

    response = asyncio.run(tools["render_composition"](str(composition_source), str(tmp_path / "a.gif"), "gif"))

    assert response["status"] == "rejected"
    assert response["error"] == "invalid_argument"


def test_install_binary_rejects_unknown_name(tmp_path: Path, build_dir: Path) -> None:
    tools = _tools(tmp_path, build_dir)

    response = asyncio.run(tools["install_binary"]("sox"))

    assert response["error"] == "invalid_argument"
    assert tools["download_status"]("binary:sox") == {"status": "idle", "key": "binary:sox"}


class HangingStream(httpx.AsyncByteStream):
    def __init__(self, release: asyncio.Event) -> None:
        self.release = release

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield b"partial"
        await self.release.wait()


def _downloads(handler: Any) -> DownloadManager:
    return DownloadManager(client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_install_binary_rejects_duplicate_while_first_runs(tmp_path: Path, build_dir: Path) -> None:
    async def scenario() -> tuple[dict[str, Any], dict[str, Any], dict[str, Any], dict[str, Any]]:
        release = asyncio.Event()
        tools = _tools(
            tmp_path,
            build_dir,
            _downloads(lambda request: httpx.Response(200, stream=HangingStream(release))),
        )
        first = await tools["install_binary"]("ffmpeg")
        second = await tools["install_binary"]("ffmpeg")
        await asyncio.sleep(0.05)
        running = tools["download_status"]("binary:ffmpeg")

        tools["cancel_download"]("binary:ffmpeg")
        while not tools["download_status"]("binary:ffmpeg")["done"]:
            await asyncio.sleep(0.01)
        return first, second, running, tools["download_status"]("binary:ffmpeg")

    first, second, running, final = asyncio.run(scenario())

    assert first == {"status": "started", "binary": "ffmpeg", "key": "binary:ffmpeg"}
    assert second["status"] == "rejected"
    assert second["error"] == "already_in_progress"
    assert running["done"] is False
    assert "error" not in running
    assert final["phase"] == "cancelled"
    assert final["error"] == "cancelled"
    assert not (tmp_path / "resources" / "ffmpeg" / "ffmpeg-linux-x64.gz.tmp").exists()


def test_install_binary_unpacks_and_reports_path(tmp_path: Path, build_dir: Path) -> None:
    async def scenario() -> tuple[dict[str, Any], dict[str, Any]]:
        tools = _tools(
            tmp_path,
            build_dir,
            _downloads(lambda request: httpx.Response(200, content=gzip.compress(b"ffmpeg-binary"))),
        )
        started = await tools["install_binary"]("ffmpeg")
        while not tools["download_status"]("binary:ffmpeg")["done"]:
            await asyncio.sleep(0.01)
        status = tools["download_status"]("binary:ffmpeg")
        again = await tools["install_binary"]("ffmpeg")
        return started, {**status, "again": again}

    started, status = asyncio.run(scenario())

    executable = tmp_path / "resources" / "ffmpeg" / "ffmpeg"
    assert started["status"] == "started"
    assert status["phase"] == "complete"
    assert status["path"] == str(executable)
    assert executable.read_bytes() == b"ffmpeg-binary"
    assert status["again"] == {"status": "installed", "binary": "ffmpeg", "path": str(executable)}


def test_install_binary_failure_ends_in_error_phase(tmp_path: Path, build_dir: Path) -> None:
    async def scenario() -> dict[str, Any]:
        tools = _tools(tmp_path, build_dir, _downloads(lambda request: httpx.Response(404)))
        await tools["install_binary"]("ffmpeg")
        while not tools["download_status"]("binary:ffmpeg")["done"]:
            await asyncio.sleep(0.01)
        return tools["download_status"]("binary:ffmpeg")

    status = asyncio.run(scenario())

    assert status["phase"] == "error"
    assert status["error"] == "download_failed"
    assert "404" in status["message"]


def test_install_binary_without_prebuilt_release(tmp_path: Path, build_dir: Path) -> None:
    tools = _tools(tmp_path, build_dir)

    response = asyncio.run(tools["install_binary"]("whisper"))

    assert response["status"] == "unavailable"
    assert tools["download_status"]("binary:whisper") == {"status": "idle", "key": "binary:whisper"}
