from __future__ import annotations

import atexit
import logging

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from vidtsx_mcp.config import Settings, load_settings
from vidtsx_mcp.db.database import Database
from vidtsx_mcp.db.settings import SettingsRepository
from vidtsx_mcp.mcp_tools import JobBoard, ToolRegistry
from vidtsx_mcp.services.audio import AudioExtractor
from vidtsx_mcp.services.binaries import BinaryProvisioner
from vidtsx_mcp.services.downloader import DownloadManager
from vidtsx_mcp.services.models import ModelStore
from vidtsx_mcp.services.remotion import RemotionCli
from vidtsx_mcp.services.renderer import RenderOrchestrator
from vidtsx_mcp.services.transcriber import TranscriptionProcess

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.database = Database(settings.database_path)
        self.preferences = SettingsRepository(self.database)

        self.downloads = DownloadManager(max_redirects=settings.max_redirects)
        self.models = ModelStore(settings.models_dir, self.downloads)
        self.provisioner = BinaryProvisioner(self.downloads, settings.resources_dir)

        self.audio = AudioExtractor(settings.ffmpeg_bin, settings.work_dir)
        self.transcriber = TranscriptionProcess(
            models=self.models,
            audio=self.audio,
            executable=settings.whisper_bin,
            work_dir=settings.work_dir,
        )

        engine = RemotionCli(
            settings.remotion_dir,
            npx=settings.npx_bin,
            binaries_dir=settings.compositor_dir,
        )
        self.renderer = RenderOrchestrator(build_dir=settings.remotion_dir, engine=engine)
        self.board = JobBoard()

    def close(self) -> None:
        self.renderer.cancel()
        self.transcriber.cancel()
        self.downloads.cancel()
        self.database.close()


def create_app(runtime: AppRuntime) -> FastMCP:
    mcp = FastMCP(name="vidtsx-mcp")

    tools = ToolRegistry(
        renderer=runtime.renderer,
        transcriber=runtime.transcriber,
        models=runtime.models,
        provisioner=runtime.provisioner,
        settings=runtime.preferences,
        board=runtime.board,
    )
    tools.register(mcp)

    @mcp.custom_route(runtime.settings.health_path, methods=["GET"])
    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "rendering": runtime.renderer.active_job is not None,
                "transcribing": runtime.transcriber.active_job is not None,
                "whisper_bin": runtime.settings.whisper_bin.exists(),
                "ffmpeg_bin": runtime.settings.ffmpeg_bin.exists(),
                "mcp_path": runtime.settings.mcp_path,
            }
        )

    return mcp


def cli() -> None:
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    runtime = AppRuntime(settings)
    atexit.register(runtime.close)

    app = create_app(runtime)
    logger.info("Starting MCP server on %s:%s%s", settings.host, settings.port, settings.mcp_path)
    app.run(
        transport="http",
        host=settings.host,
        port=settings.port,
        path=settings.mcp_path,
    )


if __name__ == "__main__":
    cli()
