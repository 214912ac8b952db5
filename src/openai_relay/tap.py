"""Splitting one byte stream into two independent readers.

Chunks go into a singly linked list as they come off the source. Each branch
walks the list with its own cursor, and nothing else points at the head, so
once both branches have moved past a chunk it is garbage. Only the gap between
the fast reader and the slow one is ever held in memory.

Neither branch waits for the other. Whichever one runs out of buffered chunks
pulls the next one from the source (under a lock, so there is one pull at a
time) and leaves it in the list for its sibling.
"""

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator


class BranchAborted(RuntimeError):
    """The source was abandoned mid-read by the other branch."""


class _Node:
    __slots__ = ("chunk", "next")

    def __init__(self, chunk: bytes):
        self.chunk = chunk
        self.next: "_Node | None" = None


class StreamTap:
    """Fan one async byte source out to ``branches`` single-reader copies."""

    def __init__(self, source: AsyncIterator[bytes], branches: int = 2):
        self._source = source
        self._tail = _Node(b"")
        self._lock = asyncio.Lock()
        self._exhausted = False
        self._error: BaseException | None = None
        self._closed = False
        self._open = branches
        self.branches: tuple[AsyncGenerator[bytes, None], ...] = tuple(
            self._branch(self._tail) for _ in range(branches)
        )

    def __iter__(self):
        return iter(self.branches)

    async def _branch(self, node: _Node) -> AsyncGenerator[bytes, None]:
        try:
            while True:
                if node.next is None:
                    await self._pull(node)
                    if node.next is None:
                        return
                node = node.next
                yield node.chunk
        finally:
            await self._release()

    async def _pull(self, node: _Node) -> None:
        async with self._lock:
            # The sibling may have pulled while we waited for the lock
            if node.next is not None:
                return
            if self._error is not None:
                raise self._error
            if self._exhausted:
                return

            try:
                chunk = await anext(self._source)
            except StopAsyncIteration:
                self._exhausted = True
                return
            except Exception as e:
                self._error = e
                raise
            except BaseException:
                # Cancelled mid-read: the source is unusable now, tell the sibling
                self._error = BranchAborted("stream abandoned by the other reader")
                raise

            new = _Node(chunk)
            self._tail.next = new
            self._tail = new

    async def _release(self) -> None:
        self._open -= 1
        if self._open <= 0:
            await self.aclose()

    async def aclose(self) -> None:
        """Close the source. Branches still reading see end of stream."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            self._exhausted = True
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                await aclose()
