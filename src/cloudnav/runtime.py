#!/usr/bin/env python3
"""Background asyncio runtime for cloudnav.

All network and file I/O runs on one event loop owned by a dedicated
thread. The UI thread hands work to it with :meth:`RuntimeHolder.spawn`
and hears back through the message bus.
"""

import asyncio
import concurrent.futures
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from .errors import RuntimeClosedError

logger = logging.getLogger(__name__)


class TaskHandle:
    """Abortable handle for a piece of spawned work.

    A handle may be created before the work is spawned and attached later;
    aborting an unattached handle cancels the work as soon as it is attached.
    """

    def __init__(self, name: str = ''):
        self.name = name
        self._lock = threading.Lock()
        self._future: Optional[concurrent.futures.Future] = None
        self._aborted = False

    def attach(self, future: concurrent.futures.Future) -> None:
        with self._lock:
            self._future = future
            if self._aborted:
                future.cancel()

    def abort(self) -> None:
        """Cancel the work. Never blocks."""
        with self._lock:
            self._aborted = True
            future = self._future
        if future is not None:
            future.cancel()

    def done(self) -> bool:
        with self._lock:
            if self._future is None:
                return self._aborted
            return self._future.done()

    def cancelled(self) -> bool:
        with self._lock:
            future = self._future
        return future is not None and future.cancelled()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def __repr__(self) -> str:
        return f"TaskHandle({self.name!r}, done={self.done()})"


@dataclass
class TrackedTask:
    """Fire-and-forget work nobody awaits."""

    name: str
    future: concurrent.futures.Future = field(repr=False)

    def is_finished(self) -> bool:
        return self.future.done()


class RuntimeHolder:
    """Owns the event loop thread and the list of detached tasks."""

    def __init__(self, name: str = 'cloudnav-runtime'):
        self._loop = asyncio.new_event_loop()
        self._closed = False
        self._tracked_lock = threading.Lock()
        self._tracked: List[TrackedTask] = []
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()
        logger.debug(f"Started runtime thread {name}")

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            logger.debug("Runtime loop stopped")

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def closed(self) -> bool:
        return self._closed

    def spawn(self, coro: Awaitable[Any]) -> concurrent.futures.Future:
        """Schedule a coroutine on the runtime loop.

        Args:
            coro: Coroutine to run

        Returns:
            Future resolved with the coroutine's result

        Raises:
            RuntimeClosedError: If the runtime has been shut down
        """
        if self._closed:
            coro.close()
            raise RuntimeClosedError("Runtime no longer exists")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def spawn_detached(self, coro: Awaitable[Any], name: str) -> TrackedTask:
        """Spawn work that no call owns and remember it for shutdown reporting."""
        tracked = TrackedTask(name, self.spawn(coro))
        tracked.future.add_done_callback(lambda f, n=name: _log_detached_failure(n, f))
        with self._tracked_lock:
            self._tracked = [t for t in self._tracked if not t.is_finished()]
            self._tracked.append(tracked)
        return tracked

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> None:
        """Run a plain callback on the loop thread."""
        self._loop.call_soon_threadsafe(callback, *args)

    def block_on(self, coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Run a coroutine to completion from a thread other than the loop's."""
        return self.spawn(coro).result(timeout)

    def wait_detached(self, timeout: float) -> None:
        """Give detached tasks up to ``timeout`` seconds to finish."""
        with self._tracked_lock:
            futures = [t.future for t in self._tracked]
        if futures:
            concurrent.futures.wait(futures, timeout=timeout)

    def print_pending_tasks(self) -> int:
        """Log detached tasks that are still running.

        Returns:
            Number of pending tasks found
        """
        with self._tracked_lock:
            tracked, self._tracked = self._tracked, []
        pending = [t for t in tracked if not t.is_finished()]
        for task in pending:
            logger.warning(f"Detached task still running at shutdown: {task.name}")
        if pending:
            logger.info(f"{len(pending)} of {len(tracked)} detached tasks pending")
        return len(pending)

    def shutdown_timeout(self, timeout: float) -> None:
        """Cancel outstanding work and stop the loop within ``timeout`` seconds."""
        if self._closed:
            return
        self._closed = True

        async def cancel_all() -> None:
            current = asyncio.current_task()
            tasks = [t for t in asyncio.all_tasks() if t is not current]
            for task in tasks:
                task.cancel()
            if tasks:
                _, pending = await asyncio.wait(tasks, timeout=timeout)
                if pending:
                    logger.warning(f"{len(pending)} tasks did not stop within {timeout}s")

        try:
            asyncio.run_coroutine_threadsafe(cancel_all(), self._loop).result(timeout + 1)
        except concurrent.futures.TimeoutError:
            logger.warning("Timed out cancelling runtime tasks")
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Runtime thread did not exit in time")
        else:
            self._loop.close()
        logger.debug("Runtime shut down")


def _log_detached_failure(name: str, future: concurrent.futures.Future) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Detached task {name} failed: {error}")
