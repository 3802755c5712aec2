from __future__ import annotations

import gzip
import logging
import os
import platform
import shutil
import sys
import zipfile
from dataclasses import dataclass
from pathlib import Path

from vidtsx_mcp.jobs import JobHandle
from vidtsx_mcp.services.downloader import DownloadManager, ProgressCallback
from vidtsx_mcp.types import DownloadTask

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PlatformAsset:
    asset: str | None
    executable: str
    nested_folder: str | None = None


@dataclass(slots=True, frozen=True)
class BinaryRelease:
    repo: str
    tag: str
    assets: dict[tuple[str, str], PlatformAsset]

    def download_url(self, asset: str) -> str:
        return f"https://github.com/{self.repo}/releases/download/{self.tag}/{asset}"


# Only Windows ships a prebuilt whisper-cli; other platforms build from source.
BINARY_RELEASES: dict[str, BinaryRelease] = {
    "whisper": BinaryRelease(
        repo="ggerganov/whisper.cpp",
        tag="v1.8.3",
        assets={
            ("win32", "x64"): PlatformAsset("whisper-bin-x64.zip", "whisper-cli.exe", "Release"),
            ("darwin", "x64"): PlatformAsset(None, "whisper-cli"),
            ("darwin", "arm64"): PlatformAsset(None, "whisper-cli"),
            ("linux", "x64"): PlatformAsset(None, "whisper-cli"),
        },
    ),
    "ffmpeg": BinaryRelease(
        repo="eugeneware/ffmpeg-static",
        tag="b6.1.1",
        assets={
            ("win32", "x64"): PlatformAsset("ffmpeg-win32-x64.gz", "ffmpeg.exe"),
            ("darwin", "x64"): PlatformAsset("ffmpeg-darwin-x64.gz", "ffmpeg"),
            ("darwin", "arm64"): PlatformAsset("ffmpeg-darwin-arm64.gz", "ffmpeg"),
            ("linux", "x64"): PlatformAsset("ffmpeg-linux-x64.gz", "ffmpeg"),
        },
    ),
}

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
}


def current_platform() -> tuple[str, str]:
    system = "win32" if sys.platform.startswith("win") else sys.platform
    if system.startswith("linux"):
        system = "linux"
    machine = platform.machine().lower()
    return system, _ARCH_ALIASES.get(machine, machine)


def executable_name(name: str, system: str | None = None) -> str:
    system = system or current_platform()[0]
    return f"{name}.exe" if system == "win32" else name


def unpack_archive(
    archive: Path,
    destination_dir: Path,
    executable: str,
    *,
    nested_folder: str | None = None,
    system: str | None = None,
) -> Path:
    """Expand a downloaded gzip or zip artifact into ``destination_dir``.

    The archive is removed afterwards and the executable is marked 0o755
    on non-Windows targets. Returns the executable path.
    """
    system = system or current_platform()[0]
    destination_dir.mkdir(parents=True, exist_ok=True)
    executable_path = destination_dir / executable

    if archive.suffix == ".gz":
        staging = executable_path.with_name(executable_path.name + ".tmp")
        try:
            with gzip.open(archive, "rb") as source, staging.open("wb") as target:
                shutil.copyfileobj(source, target)
            os.replace(staging, executable_path)
        finally:
            staging.unlink(missing_ok=True)
    elif archive.suffix == ".zip":
        with zipfile.ZipFile(archive) as bundle:
            bundle.extractall(destination_dir)
        if nested_folder:
            _flatten(destination_dir / nested_folder, destination_dir)
    else:
        raise ValueError(f"Unsupported archive type: {archive.name}")

    archive.unlink(missing_ok=True)

    if system != "win32" and executable_path.exists():
        executable_path.chmod(0o755)
    return executable_path


def _flatten(nested: Path, destination_dir: Path) -> None:
    if not nested.is_dir():
        return
    logger.info("Moving files out of %s", nested)
    for item in nested.iterdir():
        os.replace(item, destination_dir / item.name)
    nested.rmdir()


@dataclass(slots=True)
class BinaryPlan:
    """What installing one binary on one platform involves."""

    name: str
    system: str
    entry: PlatformAsset
    executable: Path
    task: DownloadTask


class BinaryProvisioner:
    def __init__(
        self,
        downloads: DownloadManager,
        resources_dir: Path,
        *,
        host: tuple[str, str] | None = None,
    ) -> None:
        self.downloads = downloads
        self.resources_dir = resources_dir
        self.host = host or current_platform()

    def target_dir(self, name: str) -> Path:
        return self.resources_dir / name

    def plan(
        self,
        name: str,
        *,
        system: str | None = None,
        arch: str | None = None,
    ) -> BinaryPlan | None:
        """Resolve the release asset for ``name``; None when there is no prebuilt one."""
        release = BINARY_RELEASES.get(name)
        if release is None:
            raise ValueError(f"Unknown binary: {name}")

        system = system or self.host[0]
        arch = arch or self.host[1]

        entry = release.assets.get((system, arch))
        if entry is None:
            logger.warning("No pre-built %s binary for %s/%s", name, system, arch)
            return None
        if entry.asset is None:
            logger.warning(
                "No pre-built %s release for %s/%s; build it from source or use a package manager",
                name,
                system,
                arch,
            )
            return None

        target_dir = self.target_dir(name)
        return BinaryPlan(
            name=name,
            system=system,
            entry=entry,
            executable=target_dir / entry.executable,
            task=DownloadTask(
                key=f"binary:{name}",
                source_url=release.download_url(entry.asset),
                destination=target_dir / entry.asset,
            ),
        )

    def start(self, plan: BinaryPlan, on_progress: ProgressCallback | None = None) -> JobHandle[Path]:
        """Download and unpack in the background; the key is claimed before returning."""
        logger.info("Downloading %s from %s", plan.name, plan.task.source_url)
        return self.downloads.start(
            plan.task,
            on_progress,
            finalize=lambda archive: self._unpack(plan, archive),
        )

    async def provision(
        self,
        name: str,
        *,
        system: str | None = None,
        arch: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Path | None:
        plan = self.plan(name, system=system, arch=arch)
        if plan is None:
            return None
        if plan.executable.exists():
            logger.info("%s binary already exists at %s, skipping download", name, plan.executable)
            return plan.executable

        logger.info("Downloading %s from %s", name, plan.task.source_url)
        archive = await self.downloads.download(plan.task, on_progress)
        return self._unpack(plan, archive)

    def _unpack(self, plan: BinaryPlan, archive: Path) -> Path:
        path = unpack_archive(
            archive,
            plan.executable.parent,
            plan.entry.executable,
            nested_folder=plan.entry.nested_folder,
            system=plan.system,
        )
        logger.info("%s binary ready at %s", plan.name, path)
        return path
