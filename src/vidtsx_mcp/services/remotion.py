from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Callable, Protocol

from vidtsx_mcp.errors import BundleError, Cancelled, CompositionNotFound, EncodeError, SpawnError
from vidtsx_mcp.services.process import pump_lines, reap
from vidtsx_mcp.types import EncodeProfile

logger = logging.getLogger(__name__)

FractionCallback = Callable[[float], None]

_PERCENT = re.compile(r"(\d+(?:\.\d+)?)\s*%")
_FRAMES = re.compile(r"Rendered\s+(\d+)\s*/\s*(\d+)", re.I)


class CompositionEngine(Protocol):
    """Bundler + renderer seam used by the render orchestrator."""

    async def bundle(self, entry_point: Path, out_dir: Path, on_progress: FractionCallback) -> Path: ...

    async def select_composition(self, serve_url: str, composition_id: str) -> str: ...

    async def render_media(
        self,
        serve_url: str,
        composition_id: str,
        output_path: Path,
        profile: EncodeProfile,
        on_progress: FractionCallback,
        abort: asyncio.Event,
    ) -> None: ...


def render_flags(profile: EncodeProfile) -> list[str]:
    flags = [f"--codec={profile.codec}"]
    if profile.prores_profile:
        flags.append(f"--prores-profile={profile.prores_profile}")
    if profile.pixel_format:
        flags.append(f"--pixel-format={profile.pixel_format}")
    if profile.image_format:
        flags.append(f"--image-format={profile.image_format}")
    return flags


def parse_bundle_progress(line: str) -> float | None:
    match = _PERCENT.search(line)
    if match is None:
        return None
    return min(float(match.group(1)) / 100.0, 1.0)


def parse_render_progress(line: str) -> float | None:
    match = _FRAMES.search(line)
    if match is not None:
        done, total = int(match.group(1)), int(match.group(2))
        return min(done / total, 1.0) if total else None
    return parse_bundle_progress(line)


class RemotionCli:
    """Drives ``npx remotion`` from inside the build tree."""

    def __init__(
        self,
        build_dir: Path,
        *,
        npx: str = "npx",
        binaries_dir: Path | None = None,
    ) -> None:
        self.build_dir = build_dir
        self.npx = npx
        self.binaries_dir = binaries_dir

    async def bundle(self, entry_point: Path, out_dir: Path, on_progress: FractionCallback) -> Path:
        def on_line(line: str) -> None:
            fraction = parse_bundle_progress(line)
            if fraction is not None:
                on_progress(fraction)

        code, output = await self._run(
            ["bundle", str(entry_point), "--out-dir", str(out_dir)],
            on_line=on_line,
        )
        if code != 0 or not (out_dir / "index.html").exists():
            raise BundleError(f"Bundling failed: {_tail(output) or f'exit code {code}'}")
        on_progress(1.0)
        return out_dir

    async def select_composition(self, serve_url: str, composition_id: str) -> str:
        code, output = await self._run(["compositions", serve_url, *self._binaries_flag()])
        if code != 0:
            raise BundleError(f"Could not list compositions: {_tail(output) or f'exit code {code}'}")
        # Output is a table whose first column is the id.
        ids = {line.split()[0] for line in output.splitlines() if line.strip()}
        if composition_id not in ids:
            raise CompositionNotFound(f"Composition {composition_id!r} not found in bundle")
        return composition_id

    async def render_media(
        self,
        serve_url: str,
        composition_id: str,
        output_path: Path,
        profile: EncodeProfile,
        on_progress: FractionCallback,
        abort: asyncio.Event,
    ) -> None:
        def on_line(line: str) -> None:
            fraction = parse_render_progress(line)
            if fraction is not None:
                on_progress(fraction)

        args = [
            "render",
            serve_url,
            composition_id,
            str(output_path),
            *render_flags(profile),
            "--overwrite",
            *self._binaries_flag(),
        ]
        code, output = await self._run(args, on_line=on_line, abort=abort)
        if code != 0:
            raise EncodeError(f"Rendering failed: {_tail(output) or f'exit code {code}'}")

    def _binaries_flag(self) -> list[str]:
        if self.binaries_dir is None:
            return []
        return [f"--binaries-directory={self.binaries_dir}"]

    async def _run(
        self,
        args: list[str],
        *,
        on_line: Callable[[str], None] | None = None,
        abort: asyncio.Event | None = None,
    ) -> tuple[int, str]:
        cmd = [self.npx, "remotion", *args]
        logger.info("Running %s", " ".join(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.build_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise SpawnError(f"Could not start {self.npx} remotion: {exc}") from exc

        lines: list[str] = []

        def collect(line: str) -> None:
            lines.append(line)
            if on_line is not None:
                on_line(line)

        pump = asyncio.create_task(pump_lines(process.stdout, collect))
        waiters: list[asyncio.Task[object]] = []
        try:
            if abort is None:
                await pump
                await process.wait()
            else:
                finished = asyncio.create_task(process.wait())
                aborted = asyncio.create_task(abort.wait())
                waiters = [finished, aborted]
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                if not finished.done():
                    logger.info("Aborting remotion %s", args[0])
                    process.terminate()
                    await process.wait()
                    raise Cancelled("Render cancelled")
                await pump
        finally:
            for waiter in waiters:
                waiter.cancel()
            if not pump.done():
                pump.cancel()
            await reap(process)

        return process.returncode or 0, "\n".join(lines)


def _tail(output: str, limit: int = 2000) -> str:
    return output.strip()[-limit:]
