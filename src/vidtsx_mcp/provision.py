"""CLI for fetching the external binaries into the resources directory.

Usage:
    vidtsx-provision ffmpeg
    vidtsx-provision whisper ffmpeg --resources-dir ./resources
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import zipfile
from pathlib import Path

from vidtsx_mcp.config import load_settings
from vidtsx_mcp.errors import ServiceError
from vidtsx_mcp.main import LOG_FORMAT
from vidtsx_mcp.services.binaries import BINARY_RELEASES, BinaryProvisioner
from vidtsx_mcp.services.downloader import DownloadManager
from vidtsx_mcp.types import DownloadProgress

logger = logging.getLogger(__name__)


def _parse_args(args=None):
    parser = argparse.ArgumentParser(
        description="Download pre-built whisper/ffmpeg binaries for this platform.",
    )
    parser.add_argument(
        "names", nargs="+", choices=sorted(BINARY_RELEASES),
        help="Binaries to install",
    )
    parser.add_argument(
        "--resources-dir", default=None,
        help="Target directory (default: RESOURCES_DIR or ./resources)",
    )
    return parser.parse_args(args)


async def _provision_all(provisioner: BinaryProvisioner, names: list[str]) -> int:
    failures = 0
    for name in names:
        def show(progress: DownloadProgress, name: str = name) -> None:
            print(f"\r[{name}] Progress: {progress.progress}%", end="", flush=True)

        try:
            path = await provisioner.provision(name, on_progress=show)
        except (ServiceError, OSError, zipfile.BadZipFile) as exc:
            print()
            logger.error("Failed to download %s binary: %s", name, exc)
            logger.error("You may need to download it manually from https://github.com/%s/releases",
                         BINARY_RELEASES[name].repo)
            failures += 1
            continue
        print()
        if path is not None:
            print(f"[{name}] ready: {path}")
    return failures


def cli(args=None) -> int:
    parsed = _parse_args(args)
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    settings = load_settings()
    resources_dir = Path(parsed.resources_dir).resolve() if parsed.resources_dir else settings.resources_dir
    provisioner = BinaryProvisioner(DownloadManager(max_redirects=settings.max_redirects), resources_dir)
    return 1 if asyncio.run(_provision_all(provisioner, parsed.names)) else 0


if __name__ == "__main__":
    raise SystemExit(cli())
