from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable

import httpx

from vidtsx_mcp.errors import AlreadyInProgress, Cancelled, DownloadFailed
from vidtsx_mcp.jobs import JobHandle, launch
from vidtsx_mcp.types import DownloadProgress, DownloadTask, ProgressEvent

logger = logging.getLogger(__name__)

USER_AGENT = "vidtsx-mcp/0.1"

ProgressCallback = Callable[[DownloadProgress], None]


def _default_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        follow_redirects=False,
        headers={"User-Agent": USER_AGENT},
        timeout=httpx.Timeout(None, connect=30.0),
    )


class DownloadManager:
    """Fetch-to-file transfers keyed by a logical name.

    A key has at most one active transfer. Bytes land in ``<dest>.tmp`` and
    are renamed onto the destination only after the body was fully read.
    """

    def __init__(
        self,
        *,
        max_redirects: int = 10,
        chunk_size: int = 64 * 1024,
        client_factory: Callable[[], httpx.AsyncClient] = _default_client,
    ) -> None:
        self.max_redirects = max_redirects
        self.chunk_size = chunk_size
        self.client_factory = client_factory
        self._active: dict[str, DownloadTask] = {}
        self._tasks: dict[str, asyncio.Task[object]] = {}

    def is_active(self, key: str) -> bool:
        return key in self._active

    def active(self, key: str) -> DownloadTask | None:
        return self._active.get(key)

    def start(
        self,
        task: DownloadTask,
        on_progress: ProgressCallback | None = None,
        finalize: Callable[[Path], Path] | None = None,
    ) -> JobHandle[Path]:
        """Claim ``task.key`` now and run the transfer as a background job.

        ``finalize`` post-processes the downloaded file (unpacking, for
        instance) before the job reports complete.
        """
        self._claim(task)

        async def run(emit: Callable[[ProgressEvent], None]) -> Path:
            def forward(progress: DownloadProgress) -> None:
                emit(ProgressEvent("downloading", progress.progress, task.key))
                if on_progress is not None:
                    on_progress(progress)

            try:
                path = await self._transfer(task, forward)
                if finalize is not None:
                    path = finalize(path)
            except Cancelled as exc:
                emit(ProgressEvent("cancelled", 0, str(exc)))
                raise
            except Exception as exc:
                emit(ProgressEvent("error", 0, str(exc)))
                raise
            emit(ProgressEvent("complete", 100, task.key))
            return path

        return launch(f"download:{task.key}", run, lambda: self.cancel(task.key))

    async def download(
        self,
        task: DownloadTask,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        self._claim(task)
        return await self._transfer(task, on_progress)

    def cancel(self, key: str | None = None) -> None:
        keys = [key] if key is not None else list(self._active)
        for name in keys:
            task = self._active.get(name)
            if task is None:
                continue
            logger.info("Cancelling download %s", name)
            task.state = "cancelled"
            running = self._tasks.get(name)
            if running is not None and not running.done():
                running.cancel()

    def _claim(self, task: DownloadTask) -> None:
        if task.key in self._active:
            raise AlreadyInProgress(f"Download {task.key} is already in progress")
        task.state = "active"
        task.bytes_transferred = 0
        self._active[task.key] = task

    async def _transfer(self, task: DownloadTask, on_progress: ProgressCallback | None) -> Path:
        current = asyncio.current_task()
        if current is not None:
            self._tasks[task.key] = current

        try:
            if task.state == "cancelled":
                raise asyncio.CancelledError()
            task.destination.parent.mkdir(parents=True, exist_ok=True)
            async with self.client_factory() as client:
                await self._stream_to_temp(client, task, on_progress)
            os.replace(task.temp_path, task.destination)
        except asyncio.CancelledError:
            task.temp_path.unlink(missing_ok=True)
            if task.state != "cancelled":
                task.state = "failed"
                raise
            raise Cancelled(f"Download {task.key} cancelled") from None
        except httpx.HTTPError as exc:
            task.state = "failed"
            task.temp_path.unlink(missing_ok=True)
            raise DownloadFailed(f"Download {task.key} failed: {exc}") from exc
        except BaseException:
            task.state = "failed"
            task.temp_path.unlink(missing_ok=True)
            raise
        finally:
            self._active.pop(task.key, None)
            self._tasks.pop(task.key, None)

        task.state = "complete"
        logger.info("Downloaded %s to %s (%d bytes)", task.key, task.destination, task.bytes_transferred)
        return task.destination

    async def _stream_to_temp(
        self,
        client: httpx.AsyncClient,
        task: DownloadTask,
        on_progress: ProgressCallback | None,
    ) -> None:
        url = httpx.URL(task.source_url)
        for _ in range(self.max_redirects + 1):
            request = client.build_request("GET", url)
            response = await client.send(request, stream=True)
            try:
                location = response.headers.get("location")
                if response.is_redirect and location:
                    url = response.url.join(location)
                    logger.debug("Download %s redirected to %s", task.key, url)
                    continue
                if not response.is_success:
                    raise DownloadFailed(
                        f"Download {task.key} failed with status {response.status_code}"
                    )
                total = task.expected_size or _content_length(response)
                with task.temp_path.open("wb") as handle:
                    async for chunk in response.aiter_bytes(self.chunk_size):
                        handle.write(chunk)
                        task.bytes_transferred += len(chunk)
                        if on_progress is not None:
                            on_progress(_progress(task, total))
                return
            finally:
                await response.aclose()
        raise DownloadFailed(
            f"Download {task.key} failed: more than {self.max_redirects} redirects"
        )


def _content_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


def _progress(task: DownloadTask, total: int | None) -> DownloadProgress:
    percent = round(task.bytes_transferred / total * 100) if total else 0
    return DownloadProgress(
        key=task.key,
        progress=percent,
        downloaded=task.bytes_transferred,
        total=total,
    )
