from __future__ import annotations
"""Streaming bridge: backend fragments in, normalized StreamChunks out.

A transport hands back a :class:`RawStream` (one channel of payload fragments,
one channel of terminal errors, ``None`` closing either).  :func:`bridge_stream`
drains it into a :class:`ChunkChannel` read by the orchestrator, SSE-framing
every fragment and guaranteeing exactly one terminal chunk per stream.
"""

import asyncio
from typing import AsyncIterator, Optional

from core.errors import ServiceCallError, StreamClosedError
from core.logging import logger
from core.monitoring import get_metrics

from .context import CallContext
from .contract import StreamChunk

__all__ = ["RawStream", "ChunkChannel", "bridge_stream"]


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class RawStream:
    """Pair of one-directional channels filled by a transport producer task.

    ``data`` carries payload fragments (bytes) and ``errors`` carries at most
    one exception.  The producer closes ``errors`` before ``data`` by putting
    ``None`` on each.
    """

    def __init__(self, maxsize: int = 10) -> None:
        self.data: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.errors: asyncio.Queue = asyncio.Queue()
        self._producer: Optional[asyncio.Task] = None

    def attach(self, producer: asyncio.Task) -> None:
        self._producer = producer

    async def aclose(self) -> None:
        """Stop the producer, if it is still running."""
        producer, self._producer = self._producer, None
        if producer is None or producer.done():
            return
        producer.cancel()
        await asyncio.gather(producer, return_exceptions=True)


class ChunkChannel:
    """Bounded, write-once-terminal channel of StreamChunks.

    ``send`` blocks while the reader is behind (the only flow control) and
    refuses anything after the terminal chunk.
    """

    def __init__(self, maxsize: int = 10) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, chunk: StreamChunk) -> None:
        if self._closed:
            raise StreamClosedError("chunk written after the terminal chunk")
        await self._queue.put(chunk)
        if chunk.is_terminal:
            self._closed = True

    def abort(self, error: BaseException) -> bool:
        """Queue a terminal error chunk without waiting for the reader.

        When the queue is full the oldest pending chunk is dropped to make
        room.  Returns False if the stream already ended.
        """
        if self._closed:
            return False
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(StreamChunk.failure(error))
        self._closed = True
        return True

    async def receive(self) -> StreamChunk:
        return await self._queue.get()

    async def __aiter__(self) -> AsyncIterator[StreamChunk]:
        while True:
            chunk = await self._queue.get()
            yield chunk
            if chunk.is_terminal:
                return


# ---------------------------------------------------------------------------
# Bridge
# ---------------------------------------------------------------------------


def _drain(queue: asyncio.Queue) -> list:
    items = []
    while True:
        try:
            items.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            return items


async def bridge_stream(
    ctx: CallContext,
    raw: RawStream,
    out: ChunkChannel,
    backend: str,
    service: str,
) -> None:
    """Pump *raw* into *out* until exactly one terminal chunk was written.

    Cancellation is checked on every wake-up before anything else, so a
    cancelled context always ends the stream with its cause even when a
    fragment or a backend error is ready at the same time.
    """
    metrics = get_metrics()

    async def emit(chunk: StreamChunk) -> None:
        await out.send(chunk)
        kind = "data" if not chunk.is_terminal else ("final" if chunk.is_final else "error")
        metrics.log_chunk(backend, service, kind)

    async def emit_error(err: BaseException) -> None:
        logger.error(f"[{backend}] {service} streaming failed: {err}")
        await emit(StreamChunk.failure(ServiceCallError(backend, service, err, streaming=True)))

    async def emit_cancelled() -> None:
        logger.info(f"[{backend}] {service} stream cancelled: {ctx.cause}")
        await emit(StreamChunk.failure(ctx.cause))

    data_get: Optional[asyncio.Future] = asyncio.ensure_future(raw.data.get())
    err_get: Optional[asyncio.Future] = asyncio.ensure_future(raw.errors.get())
    cancelled = asyncio.ensure_future(ctx.wait())

    try:
        while True:
            if ctx.cancelled():
                await emit_cancelled()
                return

            waiting = {data_get, cancelled}
            if err_get is not None:
                waiting.add(err_get)
            await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

            if ctx.cancelled():
                await emit_cancelled()
                return

            if data_get.done():
                fragment = data_get.result()
                if fragment is None:
                    # data closed: a reported error still takes the terminal slot
                    err = None
                    if err_get is not None:
                        if err_get.done():
                            err = err_get.result()
                        else:
                            err = next((e for e in _drain(raw.errors) if e is not None), None)
                    if err is not None:
                        await emit_error(err)
                    else:
                        await emit(StreamChunk.final())
                    return
                await emit(StreamChunk.sse(fragment))
                data_get = asyncio.ensure_future(raw.data.get())
                continue

            if err_get is not None and err_get.done():
                err = err_get.result()
                if err is None:
                    # error channel closed without an error; keep waiting for data
                    err_get = None
                    continue
                # fragments queued before the error are delivered first
                for fragment in _drain(raw.data):
                    if fragment is None:
                        break
                    if ctx.cancelled():
                        await emit_cancelled()
                        return
                    await emit(StreamChunk.sse(fragment))
                await emit_error(err)
                return
    finally:
        for pending in (data_get, err_get, cancelled):
            if pending is not None and not pending.done():
                pending.cancel()
        await raw.aclose()
