#!/usr/bin/env python3
"""Event channel between background tasks and the UI thread."""

import logging
import queue
from dataclasses import dataclass
from typing import Any, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """A message addressed to one call.

    ``call_id`` is None for directives aimed at the storage itself
    (e.g. "navigate to root" after a successful sign in).
    """

    call_id: Optional[int]
    payload: Any


class MessageBus:
    """Unbounded multi-producer, single-consumer queue of :class:`Event`."""

    def __init__(self):
        self._queue: "queue.SimpleQueue[Event]" = queue.SimpleQueue()

    def send(self, call_id: Optional[int], payload: Any) -> None:
        self._queue.put(Event(call_id, payload))

    def drain(self) -> Iterator[Event]:
        """Yield pending events without blocking until the queue is empty."""
        while True:
            try:
                yield self._queue.get_nowait()
            except queue.Empty:
                return

    def empty(self) -> bool:
        return self._queue.empty()
