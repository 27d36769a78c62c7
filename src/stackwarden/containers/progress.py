"""Progress events for container updates.

Events are published on a :class:`ProgressChannel`. Any number of observers
can attach, either as a callback (``subscribe``) or as an async iterator
(``open_stream``); each attachment is cancelled independently with
``close()``. A failing observer is logged and never affects the update.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from stackwarden.logging import get_logger

log = get_logger("stackwarden.containers.progress")


class ProgressStatus(Enum):
    """Stage of a container update."""

    PULLING = "pulling"
    STOPPING = "stopping"
    REMOVING = "removing"
    CREATING = "creating"
    STARTING = "starting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProgressStatus.COMPLETED, ProgressStatus.FAILED)


@dataclass(frozen=True)
class UpdateProgress:
    """One progress event for a container (or the compose stack)."""

    container: str
    status: ProgressStatus
    progress: float | None = None  # percent, when the runtime reports it
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "container": self.container,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
        }


ProgressObserver = Callable[[UpdateProgress], None]


class Subscription:
    """A callback attached to a channel until closed."""

    def __init__(self, channel: ProgressChannel, callback: ProgressObserver) -> None:
        self._channel = channel
        self.callback = callback
        self.active = True

    def close(self) -> None:
        if self.active:
            self.active = False
            self._channel._detach(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ProgressStream:
    """Async iterator over events published after it was opened.

    The buffer is bounded; when it is full the oldest event is dropped.
    """

    def __init__(self, channel: ProgressChannel, maxsize: int) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[UpdateProgress | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def _offer(self, event: UpdateProgress | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._channel._detach_stream(self)
            self._offer(None)

    def __aiter__(self) -> ProgressStream:
        return self

    async def __anext__(self) -> UpdateProgress:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ProgressChannel:
    """Fan-out of progress events to independent observers."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._streams: list[ProgressStream] = []

    def subscribe(self, callback: ProgressObserver) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def open_stream(self, maxsize: int = 256) -> ProgressStream:
        stream = ProgressStream(self, maxsize=maxsize)
        self._streams.append(stream)
        return stream

    def publish(self, event: UpdateProgress) -> None:
        for subscription in list(self._subscriptions):
            try:
                subscription.callback(event)
            except Exception as exc:
                log.warning(
                    "progress_observer_failed",
                    container=event.container,
                    status=event.status.value,
                    error=str(exc),
                )
        for stream in list(self._streams):
            stream._offer(event)

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _detach_stream(self, stream: ProgressStream) -> None:
        if stream in self._streams:
            self._streams.remove(stream)
