"""Incremental UTF-8 decoding of a streaming response body."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator
import codecs
import contextlib
import logging

from .abort import CancelToken
from .exceptions import (
    ChatStreamingError,
    ExchangeCancelledError,
    StreamConsumedError,
)

LOGGER = logging.getLogger(__name__)


class StreamReader:
    """Turn an async byte iterable into text deltas.

    The reader is single-pass: once exhausted, closed or cancelled it cannot be
    iterated again. Incomplete multi-byte sequences are held back until the next
    chunk completes them, so no delta ever splits a code point.
    """

    def __init__(
        self,
        body: AsyncIterable[bytes],
        cancel_token: CancelToken | None = None,
        encoding: str = "utf-8",
    ) -> None:
        self._body = body
        self._chunks: AsyncIterator[bytes] | None = None
        self._cancel_token = cancel_token
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._started = False
        self._finished = False
        self.bytes_read = 0

    def __aiter__(self) -> StreamReader:
        if self._started:
            raise StreamConsumedError("StreamReader supports a single traversal.")
        self._started = True
        return self

    async def __anext__(self) -> str:
        delta = await self.read()
        if delta is None:
            raise StopAsyncIteration
        return delta

    async def read(self) -> str | None:
        """Return the next non-empty delta, or None once the body is exhausted."""
        if self._finished:
            return None
        chunks = self._chunks
        if chunks is None:
            self._started = True
            chunks = self._chunks = aiter(self._body)

        while True:
            self._raise_if_cancelled()
            try:
                chunk = await self._next_chunk(chunks)
            except StopAsyncIteration:
                self._finished = True
                tail = self._decoder.decode(b"", final=True)
                return tail or None

            self.bytes_read += len(chunk)
            text = self._decoder.decode(bytes(chunk))
            if text:
                return text

    async def _next_chunk(self, chunks: AsyncIterator[bytes]) -> bytes:
        if self._cancel_token is None:
            return await self._guarded(anext(chunks))

        read_task = asyncio.ensure_future(self._guarded(anext(chunks)))
        cancel_task = asyncio.ensure_future(self._cancel_token.wait())
        try:
            await asyncio.wait(
                {read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            read_task.cancel()
            raise
        finally:
            cancel_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cancel_task

        if not read_task.done():
            read_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await read_task
            await self.aclose()
            raise ExchangeCancelledError("Stream read cancelled by user.")
        return read_task.result()

    async def _guarded(self, pending: object) -> bytes:
        try:
            return await pending  # type: ignore[misc]
        except (StopAsyncIteration, asyncio.CancelledError, ExchangeCancelledError):
            raise
        except Exception as exc:  # noqa: BLE001 - transports fail in many ways.
            LOGGER.warning(
                "stream.read.failed",
                extra={
                    "event": "stream.read.failed",
                    "error_type": exc.__class__.__name__,
                    "bytes_read": self.bytes_read,
                },
            )
            raise ChatStreamingError(str(exc) or exc.__class__.__name__) from exc

    def _raise_if_cancelled(self) -> None:
        if self._cancel_token is not None and self._cancel_token.cancelled:
            self._finished = True
            raise ExchangeCancelledError("Stream read cancelled by user.")

    async def aclose(self) -> None:
        """Release the underlying body; further reads return None."""
        self._finished = True
        closer = getattr(self._chunks, "aclose", None)
        if closer is not None:
            with contextlib.suppress(Exception):
                await closer()
