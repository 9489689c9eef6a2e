"""
Executor - Captured Output.

Growable byte buffer shared between the task draining a child's pipe
and anyone inspecting what the child has written so far.
"""

import asyncio
import threading
from typing import Optional, Union


class CapturedOutput:
    """
    Append-only output buffer.

    Appends come from the drain task on the event loop. Snapshots may be
    taken from any thread; ``wait_for`` lets coroutines block until a
    marker shows up without polling.
    """

    def __init__(self, name: str = "stdout"):
        self.name = name
        self._data = bytearray()
        self._lock = threading.Lock()
        self._closed = False
        self._changed: Optional[asyncio.Condition] = None

    def _condition(self) -> asyncio.Condition:
        if self._changed is None:
            self._changed = asyncio.Condition()
        return self._changed

    async def append(self, chunk: bytes) -> None:
        """Append a chunk and wake up waiters."""
        with self._lock:
            self._data.extend(chunk)
        async with self._condition():
            self._condition().notify_all()

    async def close(self) -> None:
        """Mark the stream as finished. Waiters give up on missing markers."""
        self._closed = True
        async with self._condition():
            self._condition().notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def getvalue(self) -> bytes:
        """Snapshot of everything captured so far."""
        with self._lock:
            return bytes(self._data)

    def text(self, encoding: str = "utf-8") -> str:
        return self.getvalue().decode(encoding, errors="replace")

    def count(self, marker: Union[bytes, str]) -> int:
        """Number of non-overlapping occurrences of marker."""
        if isinstance(marker, str):
            marker = marker.encode()
        return self.getvalue().count(marker)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    async def wait_for(
        self,
        marker: Union[bytes, str],
        occurrences: int = 1,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Wait until marker has been written at least ``occurrences`` times.

        Returns False if the stream closed first.

        Raises:
            asyncio.TimeoutError: If timeout elapses first
        """
        if isinstance(marker, str):
            marker = marker.encode()

        def ready() -> bool:
            return self.count(marker) >= occurrences or self._closed

        async def wait() -> bool:
            async with self._condition():
                await self._condition().wait_for(ready)
            return self.count(marker) >= occurrences

        return await asyncio.wait_for(wait(), timeout=timeout)


__all__ = ["CapturedOutput"]
