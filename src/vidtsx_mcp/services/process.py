from __future__ import annotations

import asyncio
import re
from typing import Callable

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


async def pump_lines(
    stream: asyncio.StreamReader | None,
    on_line: Callable[[str], None],
    chunk_size: int = 4096,
) -> None:
    """Feed decoded output lines to ``on_line`` until the stream closes.

    Carriage returns count as line breaks so that in-place progress bars
    are seen as they update.
    """
    if stream is None:
        return
    pending = ""
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        pending += chunk.decode("utf-8", errors="replace")
        parts = _LINE_BREAK.split(pending)
        pending = parts.pop()
        for line in parts:
            if line:
                on_line(line)
    if pending:
        on_line(pending)


async def reap(process: asyncio.subprocess.Process) -> None:
    """Kill a child that is still running and wait for it to exit."""
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
