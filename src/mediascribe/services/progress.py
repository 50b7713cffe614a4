from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator

from mediascribe.errors import ChannelBusy
from mediascribe.types import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Single-subscriber, best-effort event channel for one job.

    ``publish`` never blocks the producer. Events are dropped when nobody is
    subscribed, after the subscriber went away, after a terminal event, or
    after the channel was closed. There is no replay.
    """

    def __init__(self, job_id: str, maxsize: int = 256) -> None:
        self.job_id = job_id
        self.maxsize = maxsize
        self._queue: asyncio.Queue[ProgressEvent | None] | None = None
        self._attached = False
        self._detached = False
        self._closed = False
        self._terminal_sent = False

    @property
    def subscribed(self) -> bool:
        return self._attached and not self._detached

    @property
    def disconnected(self) -> bool:
        return self._attached and self._detached

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def terminal_sent(self) -> bool:
        return self._terminal_sent

    def subscribe(self) -> AsyncGenerator[ProgressEvent, None]:
        if self._attached:
            raise ChannelBusy(f"Job {self.job_id} already has a progress subscriber")
        self._attached = True
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=self.maxsize)
        self._queue = queue
        if self._closed:
            queue.put_nowait(None)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue[ProgressEvent | None]) -> AsyncGenerator[ProgressEvent, None]:
        try:
            while not (self._closed and queue.empty()):
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self._detach()

    def _detach(self) -> None:
        if not self._detached:
            self._detached = True
            logger.info("Job %s: progress subscriber disconnected", self.job_id)

    def publish(self, event: ProgressEvent) -> bool:
        if self._closed or self._terminal_sent:
            logger.debug("Job %s: dropped %s event", self.job_id, event.type)
            return False
        if event.is_terminal:
            self._terminal_sent = True
        if self._queue is None or self._detached:
            logger.debug("Job %s: no subscriber for %s event", self.job_id, event.type)
            return False

        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Job %s: progress subscriber stalled, dropping further events", self.job_id)
            self._detach()
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # the drain loop exits once the backlog is consumed
            pass
