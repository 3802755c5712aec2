from __future__ import annotations

import logging
import shutil
import uuid
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Iterator

from vidtsx_mcp.errors import Busy, Cancelled, ServiceError
from vidtsx_mcp.jobs import Emit, JobHandle, launch
from vidtsx_mcp.services.composition import extract_composition_config
from vidtsx_mcp.services.remotion import CompositionEngine
from vidtsx_mcp.services.static_server import StaticServer
from vidtsx_mcp.types import (
    CompositionDescriptor,
    EncodeProfile,
    OutputFormat,
    ProgressEvent,
    RenderJob,
    RenderRequest,
)

logger = logging.getLogger(__name__)

ENCODE_PROFILES: dict[str, EncodeProfile] = {
    "mp4": EncodeProfile(codec="h264"),
    "mov": EncodeProfile(
        codec="prores",
        prores_profile="4444",
        pixel_format="yuva444p10le",
        image_format="png",
    ),
}

JOBS_DIRNAME = ".render-jobs"
SCRATCH_SOURCE = "Composition.tsx"


def encode_profile_for(fmt: OutputFormat | str) -> EncodeProfile:
    try:
        return ENCODE_PROFILES[fmt]
    except KeyError:
        raise ValueError(f"Unsupported output format: {fmt}") from None


def render_root_module(descriptor: CompositionDescriptor) -> str:
    return f"""import {{ Composition }} from 'remotion'
import UserComposition from './Composition'

export const Root = () => {{
  return (
    <>
      <Composition
        id={_js_string(descriptor.id)}
        component={{UserComposition}}
        durationInFrames={{{descriptor.duration_in_frames}}}
        fps={{{descriptor.fps}}}
        width={{{descriptor.width}}}
        height={{{descriptor.height}}}
      />
    </>
  )
}}
"""


ENTRY_MODULE = """import { registerRoot } from 'remotion'
import { Root } from './Root'

registerRoot(Root)
"""


def _js_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class RenderOrchestrator:
    """Bundle, serve and encode one composition at a time.

    Every job writes into its own directory under ``<build_dir>/.render-jobs``
    so the shared entry files of the build tree are never modified.
    """

    def __init__(
        self,
        *,
        build_dir: Path,
        engine: CompositionEngine,
        server_factory: Callable[[Path], StaticServer] = StaticServer,
    ) -> None:
        self.build_dir = build_dir
        self.engine = engine
        self.server_factory = server_factory
        self._job: RenderJob | None = None
        self._server: StaticServer | None = None

    @property
    def active_job(self) -> RenderJob | None:
        return self._job

    def start(self, request: RenderRequest) -> JobHandle[Path]:
        job = self._claim(request)
        return launch(f"render:{job.job_id}", lambda emit: self._run(job, emit), self.cancel)

    async def render(self, request: RenderRequest, on_progress: Emit | None = None) -> Path:
        job = self._claim(request)
        return await self._run(job, on_progress or (lambda event: None))

    def cancel(self) -> None:
        job = self._job
        if job is None:
            return
        logger.info("Cancelling render %s during %s", job.job_id, job.phase)
        job.abort.set()
        if self._server is not None:
            self._server.request_shutdown()

    def _claim(self, request: RenderRequest) -> RenderJob:
        if self._job is not None:
            raise Busy("A render is already in progress")
        encode_profile_for(request.format)
        job = RenderJob(request=request, job_id=uuid.uuid4().hex[:12])
        self._job = job
        return job

    async def _run(self, job: RenderJob, emit: Emit) -> Path:
        def report(phase: str, progress: int, message: str | None = None) -> None:
            job.phase = phase  # type: ignore[assignment]
            job.progress = progress
            emit(ProgressEvent(phase, progress, message))

        try:
            output = await self._pipeline(job, report)
        except Cancelled as exc:
            logger.info("Render %s cancelled", job.job_id)
            report("cancelled", job.progress, str(exc))
            raise
        except ServiceError as exc:
            if job.cancel_requested:
                # Tearing the server down mid-request surfaces as an engine error.
                report("cancelled", job.progress, "Render cancelled")
                raise Cancelled("Render cancelled") from exc
            logger.error("Render %s failed: %s", job.job_id, exc)
            report("error", 0, str(exc))
            raise
        except Exception as exc:
            logger.exception("Render %s failed", job.job_id)
            report("error", 0, str(exc) or "Render failed")
            raise
        finally:
            self._job = None
        report("complete", 100, "Render complete!")
        return output

    async def _pipeline(self, job: RenderJob, report: Callable[..., None]) -> Path:
        request = job.request
        source_text = Path(request.source_path).read_text(encoding="utf-8")
        descriptor = extract_composition_config(source_text)
        profile = encode_profile_for(request.format)
        output_path = Path(request.output_path)

        with self._workspace(job, source_text, descriptor) as workspace:
            report("bundling", 0, "Bundling composition...")
            bundle_dir = await self.engine.bundle(
                workspace / "index.ts",
                workspace / "bundle",
                lambda fraction: report(
                    "bundling", round(fraction * 50), f"Bundling: {round(fraction * 100)}%"
                ),
            )
            self._raise_if_cancelled(job)

            report("serving", 0, "Starting local server...")
            async with self._serve(bundle_dir) as serve_url:
                self._raise_if_cancelled(job)

                report("selecting", 0, "Loading composition...")
                composition_id = await self.engine.select_composition(serve_url, descriptor.id)
                self._raise_if_cancelled(job)

                report("rendering", 0, "Rendering frames...")
                output_path.parent.mkdir(parents=True, exist_ok=True)
                await self.engine.render_media(
                    serve_url,
                    composition_id,
                    output_path,
                    profile,
                    lambda fraction: report(
                        "rendering", round(fraction * 100), f"Rendering: {round(fraction * 100)}%"
                    ),
                    job.abort,
                )
                self._raise_if_cancelled(job)
        return output_path

    @contextmanager
    def _workspace(
        self,
        job: RenderJob,
        source_text: str,
        descriptor: CompositionDescriptor,
    ) -> Iterator[Path]:
        workspace = self.build_dir / JOBS_DIRNAME / job.job_id
        try:
            workspace.mkdir(parents=True, exist_ok=False)
            (workspace / SCRATCH_SOURCE).write_text(source_text, encoding="utf-8")
            (workspace / "Root.tsx").write_text(render_root_module(descriptor), encoding="utf-8")
            (workspace / "index.ts").write_text(ENTRY_MODULE, encoding="utf-8")
            yield workspace
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

    @asynccontextmanager
    async def _serve(self, bundle_dir: Path) -> AsyncIterator[str]:
        server = self.server_factory(bundle_dir)
        self._server = server
        try:
            yield await server.start()
        finally:
            self._server = None
            await server.close()

    @staticmethod
    def _raise_if_cancelled(job: RenderJob) -> None:
        if job.cancel_requested:
            raise Cancelled("Render cancelled")
