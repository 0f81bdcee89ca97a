from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from ..errors import StreamTimeoutError


async def iter_lines(
    chunks: AsyncIterator[str],
    *,
    idle_timeout: Optional[float] = None,
    total_timeout: Optional[float] = None,
    provider: Optional[str] = None,
) -> AsyncIterator[str]:
    """Split a text stream into lines, holding partial lines across reads.

    Each read must arrive within ``idle_timeout`` seconds and the whole stream
    must finish within ``total_timeout`` seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + total_timeout if total_timeout else None
    iterator = chunks.__aiter__()
    buffer = ""

    while True:
        wait = idle_timeout or None
        if deadline is not None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise StreamTimeoutError(f"Stream exceeded {total_timeout:.0f}s total timeout", provider=provider)
            wait = min(wait, remaining) if wait else remaining
        try:
            piece = await asyncio.wait_for(iterator.__anext__(), timeout=wait)
        except StopAsyncIteration:
            break
        except asyncio.TimeoutError as exc:
            if deadline is not None and loop.time() >= deadline:
                raise StreamTimeoutError(f"Stream exceeded {total_timeout:.0f}s total timeout", provider=provider) from exc
            raise StreamTimeoutError(f"No data received for {idle_timeout:.0f}s", provider=provider) from exc

        buffer += piece
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            yield line.rstrip("\r")

    if buffer.strip():
        yield buffer.rstrip("\r")
