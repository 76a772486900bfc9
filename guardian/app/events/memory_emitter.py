from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from guardian.app.events.models import TERMINAL_EVENT_TYPES, VerificationEvent
from guardian.app.events.emitter import VerificationEventEmitter

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFERED = 1024


class MemoryQueueEventEmitter(VerificationEventEmitter):
    """
    Buffer of one verification's events, drained by a single SSE response.

    - Bound to one request id (given, or taken from the first event).
      Events for any other request are ignored, so a stream never mixes
      two verifications.
    - At most max_buffered non-terminal events wait for a slow client;
      beyond that they are dropped and counted. Terminal events are
      always queued.
    - VERIFICATION_COMPLETED or VERIFICATION_FAILED ends the stream.
    """

    def __init__(
        self,
        request_id: Optional[str] = None,
        *,
        max_buffered: int = DEFAULT_MAX_BUFFERED,
    ) -> None:
        self.request_id = request_id
        self.dropped = 0
        self._max_buffered = max_buffered
        self._queue: asyncio.Queue[Optional[VerificationEvent]] = asyncio.Queue()
        self._closed = False

    async def emit(self, event: VerificationEvent) -> None:
        if self._closed:
            return

        if self.request_id is None:
            self.request_id = event.request_id
        elif event.request_id != self.request_id:
            logger.debug(
                "Ignoring %s for request %s on stream of request %s",
                event.event_type.value,
                event.request_id,
                self.request_id,
            )
            return

        terminal = event.event_type in TERMINAL_EVENT_TYPES
        if not terminal and self._queue.qsize() >= self._max_buffered:
            self.dropped += 1
            return

        self._queue.put_nowait(event)
        if terminal:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        if self.dropped:
            logger.warning(
                "Event stream for request %s dropped %d event(s) for a slow client",
                self.request_id,
                self.dropped,
            )

    async def stream(self) -> AsyncIterator[VerificationEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event

    async def sse_frames(self) -> AsyncIterator[str]:
        """Events rendered as Server-Sent Events frames."""
        async for event in self.stream():
            yield event.to_sse_payload()
