"""
Server-Sent Events transport for one chat request.

Frames are queued by the pipeline and drained by the StreamingResponse body
iterator. The queue decouples the two: a slow client never blocks the
provider loop, and a disconnect surfaces here as the iterator being closed
early, which aborts the stream and sets the shared cancel event.
"""

import asyncio
import json
import time
from typing import AsyncIterator

from loguru import logger

DONE_FRAME = "data: [DONE]\n\n"


def format_event(event_type: str, payload: dict) -> str:
    return f"event: {event_type}\ndata: {json.dumps(payload, default=str)}\n\n"


def sse_headers(request_id: str) -> dict[str, str]:
    return {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        "Connection": "keep-alive",
        "X-Request-Id": request_id,
    }


class SSEStream:
    def __init__(self, request_id: str, heartbeat_s: float = 10.0) -> None:
        self.request_id = request_id
        self.heartbeat_s = heartbeat_s
        self.cancelled = asyncio.Event()
        self.closed = False
        self.abort_reason: str | None = None
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._heartbeat: asyncio.Task | None = None
        self._log = logger.bind(req_id=request_id)

    @property
    def headers(self) -> dict[str, str]:
        return sse_headers(self.request_id)

    def initialize(self) -> dict[str, str]:
        """Start the heartbeat and queue the first bytes. Returns response headers."""
        self._queue.put_nowait(": connected\n\n")
        if self.heartbeat_s > 0:
            self._heartbeat = asyncio.create_task(self._beat(), name=f"sse-heartbeat-{self.request_id}")
        return self.headers

    async def _beat(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.heartbeat_s)
            if self.closed:
                return
            self._queue.put_nowait(f": heartbeat {int(time.time() * 1000)}\n\n")

    def send_event(self, event_type: str, payload: dict) -> None:
        if self.closed:
            return
        self._queue.put_nowait(format_event(event_type, payload))

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    def close(self) -> None:
        """Write the terminal marker and end the frame iterator. Safe to call twice."""
        if self.closed:
            return
        self.closed = True
        self._stop_heartbeat()
        self._queue.put_nowait(DONE_FRAME)
        self._queue.put_nowait(None)

    def abort(self, reason: str) -> None:
        """Peer went away or the transport failed: cancel upstream work, no marker."""
        self.cancelled.set()
        if self.closed:
            return
        self.closed = True
        self.abort_reason = reason
        self._stop_heartbeat()
        self._queue.put_nowait(None)
        self._log.info("[sse] stream aborted: {}", reason)

    async def frames(self) -> AsyncIterator[str]:
        finished = False
        try:
            while True:
                frame = await self._queue.get()
                if frame is None:
                    finished = True
                    return
                yield frame
        finally:
            if not finished:
                # Body iterator closed before the sentinel: the client disconnected
                self.abort("client disconnected")
