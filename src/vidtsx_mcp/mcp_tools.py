from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from fastmcp import FastMCP
from mcp.types import ToolAnnotations

from vidtsx_mcp.db.settings import SettingsRepository
from vidtsx_mcp.errors import ServiceError
from vidtsx_mcp.jobs import JobHandle
from vidtsx_mcp.services.binaries import BinaryProvisioner
from vidtsx_mcp.services.exporter import EXPORT_FORMATS, result_from_json, write_export
from vidtsx_mcp.services.models import ModelStore
from vidtsx_mcp.services.renderer import RenderOrchestrator
from vidtsx_mcp.services.transcriber import TranscriptionProcess
from vidtsx_mcp.types import (
    RenderRequest,
    TranscriptionRequest,
    TranscriptionResult,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobBoard:
    """Latest handle per job slot, kept for status polling."""

    render: JobHandle[Path] | None = None
    transcription: JobHandle[TranscriptionResult] | None = None
    downloads: dict[str, JobHandle[Any]] = field(default_factory=dict)

    @property
    def last_result(self) -> TranscriptionResult | None:
        if self.transcription is None:
            return None
        return self.transcription.value


def _error(exc: Exception) -> dict[str, Any]:
    code = exc.code if isinstance(exc, ServiceError) else "invalid_argument"
    return {"status": "rejected", "error": code, "message": str(exc)}


class ToolRegistry:
    def __init__(
        self,
        *,
        renderer: RenderOrchestrator,
        transcriber: TranscriptionProcess,
        models: ModelStore,
        provisioner: BinaryProvisioner,
        settings: SettingsRepository,
        board: JobBoard,
    ) -> None:
        self.renderer = renderer
        self.transcriber = transcriber
        self.models = models
        self.provisioner = provisioner
        self.settings = settings
        self.board = board

    def register(self, mcp: FastMCP) -> None:
        _ro = ToolAnnotations(readOnlyHint=True)
        _rw = ToolAnnotations(readOnlyHint=False)

        @mcp.tool(annotations=_rw)
        async def render_composition(
            source_path: str,
            output_path: str,
            format: str = "mp4",
        ) -> dict[str, Any]:
            try:
                handle = self.renderer.start(
                    RenderRequest(source_path=source_path, output_path=output_path, format=format)  # type: ignore[arg-type]
                )
            except (ServiceError, ValueError) as exc:
                return _error(exc)
            self.board.render = handle
            logger.info("Started render of %s to %s", source_path, output_path)
            return {"status": "started", "job": handle.name, "output_path": output_path}

        @mcp.tool(annotations=_ro)
        def render_status() -> dict[str, Any]:
            handle = self.board.render
            if handle is None:
                return {"status": "idle"}
            payload = handle.status()
            if handle.value is not None:
                payload["output_path"] = str(handle.value)
            return payload

        @mcp.tool(annotations=_rw)
        def cancel_render() -> dict[str, Any]:
            active = self.renderer.active_job is not None
            self.renderer.cancel()
            return {"cancelled": active}

        @mcp.tool(annotations=_ro)
        def model_status() -> dict[str, Any]:
            return {"models": [asdict(status) for status in self.models.statuses()]}

        @mcp.tool(annotations=_rw)
        async def download_model(model: str) -> dict[str, Any]:
            try:
                handle = self.models.start_download(model)
            except (ServiceError, ValueError) as exc:
                return _error(exc)
            self.board.downloads[model] = handle
            return {"status": "started", "model": model}

        @mcp.tool(annotations=_rw)
        def cancel_download(model: str | None = None) -> dict[str, Any]:
            self.models.cancel_download(model)
            return {"cancelled": model or "all"}

        @mcp.tool(annotations=_rw)
        async def transcribe(
            file_path: str,
            model: str | None = None,
            language: str | None = None,
        ) -> dict[str, Any]:
            model_id = model or self.settings.get_transcriber_settings().selected_model
            request = TranscriptionRequest(input_path=file_path, model_id=model_id, language=language)
            try:
                handle = self.transcriber.start(request)
            except (ServiceError, ValueError) as exc:
                return _error(exc)
            self.board.transcription = handle
            logger.info("Started transcription of %s with model %s", file_path, model_id)
            return {"status": "started", "model": model_id}

        @mcp.tool(annotations=_ro)
        def transcription_status() -> dict[str, Any]:
            handle = self.board.transcription
            if handle is None:
                return {"status": "idle"}
            payload = handle.status()
            if handle.value is not None:
                payload["result"] = asdict(handle.value)
            return payload

        @mcp.tool(annotations=_rw)
        def cancel_transcription() -> dict[str, Any]:
            active = self.transcriber.active_job is not None
            self.transcriber.cancel()
            return {"cancelled": active}

        @mcp.tool(annotations=_rw)
        def export_transcription(
            output_path: str,
            format: str = "srt",
            result_json: str | None = None,
        ) -> dict[str, Any]:
            if format not in EXPORT_FORMATS:
                return {"status": "rejected", "error": "invalid_argument", "message": f"Unsupported format: {format}"}
            if result_json is not None:
                try:
                    result = result_from_json(result_json)
                except (ValueError, KeyError, TypeError) as exc:
                    return {"status": "rejected", "error": "invalid_argument", "message": str(exc)}
            else:
                result = self.board.last_result
            if result is None:
                return {"status": "rejected", "error": "no_result", "message": "No transcription to export"}
            path = write_export(result, format, Path(output_path))
            return {"status": "written", "path": str(path), "format": format}

        @mcp.tool(annotations=_ro)
        def get_settings() -> dict[str, Any]:
            return asdict(self.settings.get_transcriber_settings())

        @mcp.tool(annotations=_rw)
        def save_settings(method: str | None = None, selected_model: str | None = None) -> dict[str, Any]:
            try:
                saved = self.settings.save_transcriber_settings(method=method, selected_model=selected_model)
            except ValueError as exc:
                return _error(exc)
            return asdict(saved)

        @mcp.tool(annotations=_rw)
        async def install_binary(name: str) -> dict[str, Any]:
            try:
                plan = self.provisioner.plan(name)
            except ValueError as exc:
                return _error(exc)
            if plan is None:
                return {
                    "status": "unavailable",
                    "binary": name,
                    "message": f"No pre-built {name} binary for this platform",
                }
            if plan.executable.exists():
                return {"status": "installed", "binary": name, "path": str(plan.executable)}
            try:
                handle = self.provisioner.start(plan)
            except ServiceError as exc:
                return _error(exc)
            self.board.downloads[plan.task.key] = handle
            logger.info("Started install of %s", name)
            return {"status": "started", "binary": name, "key": plan.task.key}

        @mcp.tool(annotations=_ro)
        def download_status(key: str) -> dict[str, Any]:
            handle = self.board.downloads.get(key)
            if handle is None:
                return {"status": "idle", "key": key}
            payload = handle.status()
            if handle.value is not None:
                payload["path"] = str(handle.value)
            return payload

