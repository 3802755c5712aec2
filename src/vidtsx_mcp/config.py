from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from vidtsx_mcp.services.binaries import executable_name


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    mcp_path: str
    health_path: str
    log_level: str
    data_dir: Path
    database_path: Path
    models_dir: Path
    work_dir: Path
    resources_dir: Path
    remotion_dir: Path
    npx_bin: str
    whisper_bin: Path
    ffmpeg_bin: Path
    compositor_dir: Path | None
    max_redirects: int


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _as_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    return Path(raw).expanduser().resolve() if raw else default


def _normalized_path(path: str) -> str:
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def load_settings() -> Settings:
    load_dotenv()
    data_dir = _as_path("DATA_DIR", Path.home() / ".vidtsx")
    resources_dir = _as_path("RESOURCES_DIR", Path.cwd() / "resources")
    compositor = os.getenv("COMPOSITOR_DIR")

    return Settings(
        host=os.getenv("HOST", "127.0.0.1"),
        port=_as_int("PORT", 3000),
        mcp_path=_normalized_path(os.getenv("MCP_PATH", "/mcp")),
        health_path=_normalized_path(os.getenv("HEALTH_PATH", "/healthz")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        data_dir=data_dir,
        database_path=_as_path("DATABASE_PATH", data_dir / "vidtsx.sqlite3"),
        models_dir=_as_path("MODELS_DIR", data_dir / "whisper-models"),
        work_dir=_as_path("WORK_DIR", data_dir / "_work"),
        resources_dir=resources_dir,
        remotion_dir=_as_path("REMOTION_DIR", Path.cwd() / "remotion"),
        npx_bin=os.getenv("NPX_BIN", "npx"),
        whisper_bin=_as_path(
            "WHISPER_BIN", resources_dir / "whisper" / executable_name("whisper-cli")
        ),
        ffmpeg_bin=_as_path("FFMPEG_BIN", resources_dir / "ffmpeg" / executable_name("ffmpeg")),
        compositor_dir=Path(compositor).expanduser().resolve() if compositor else None,
        max_redirects=_as_int("MAX_REDIRECTS", 10),
    )
