from __future__ import annotations

import asyncio
import logging
import socket
from pathlib import Path

import uvicorn
from starlette.applications import Starlette
from starlette.routing import Mount
from starlette.staticfiles import StaticFiles

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


def create_static_app(directory: Path) -> Starlette:
    # html=True maps "/" to index.html; unknown paths answer 404.
    return Starlette(
        routes=[Mount("/", app=StaticFiles(directory=str(directory), html=True))],
    )


class StaticServer:
    """Loopback HTTP server for one bundle directory, on an OS-assigned port."""

    def __init__(self, directory: Path, host: str = LOOPBACK) -> None:
        self.directory = directory
        self.host = host
        self.url: str | None = None
        self._server: uvicorn.Server | None = None
        self._socket: socket.socket | None = None
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> str:
        config = uvicorn.Config(
            create_static_app(self.directory),
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=5,
        )
        self._server = uvicorn.Server(config)

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.host, 0))
        self._socket = sock

        self._task = asyncio.create_task(self._server.serve(sockets=[sock]), name="static-server")
        while not self._server.started:
            if self._task.done():
                await self._task
                raise RuntimeError("Static server stopped during startup")
            await asyncio.sleep(0.01)

        port = sock.getsockname()[1]
        self.url = f"http://{self.host}:{port}"
        logger.info("Serving %s at %s", self.directory, self.url)
        return self.url

    def request_shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def close(self) -> None:
        self.request_shutdown()
        try:
            if self._task is not None:
                await self._task
        finally:
            self._task = None
            self._server = None
            if self._socket is not None:
                self._socket.close()
                self._socket = None
            self.url = None
