#!/usr/bin/env python3
"""Per-call state kept by the storage registry."""

import asyncio
import concurrent.futures
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .runtime import TaskHandle

logger = logging.getLogger(__name__)


class Canceller:
    """Shutdown signal plus completion acknowledgement for a long-lived listener.

    The listener awaits :meth:`wait_signalled` on the runtime loop and
    calls :meth:`mark_done` once its socket is closed. The owner calls
    :meth:`cancel` from the UI thread, which signals and then blocks until
    the listener acknowledges or the timeout expires.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._signal = asyncio.Event()
        self._done: concurrent.futures.Future = concurrent.futures.Future()

    def signal(self) -> None:
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._signal.set)

    async def wait_signalled(self) -> None:
        await self._signal.wait()

    def mark_done(self) -> None:
        if not self._done.done():
            self._done.set_result(None)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the listener has shut down.

        Returns:
            True if the listener acknowledged within ``timeout``
        """
        try:
            self._done.result(timeout)
        except concurrent.futures.TimeoutError:
            return False
        return True

    def cancel(self, timeout: Optional[float] = 5.0) -> bool:
        self.signal()
        done = self.wait(timeout)
        if not done:
            logger.warning(f"Listener did not shut down within {timeout}s")
        return done


class ListFolderPhase(Enum):
    IN_PROGRESS = 'in_progress'
    REFRESHING_TOKEN = 'refreshing_token'
    REFRESH_TOKEN_COMPLETE = 'refresh_token_complete'
    OK = 'ok'
    FAILED = 'failed'


class DownloadFilePhase(Enum):
    STARTED = 'started'
    SIZE_KNOWN = 'size_known'
    IN_PROGRESS = 'in_progress'
    REFRESHING_TOKEN = 'refreshing_token'
    REFRESH_TOKEN_COMPLETE = 'refresh_token_complete'
    OK = 'ok'
    FAILED = 'failed'


class AuthPhase(Enum):
    STARTING_LOCAL_SERVER = 'starting_local_server'
    BOUND = 'bound'
    WAITING_FOR_SERVER_UP = 'waiting_for_server_up'
    BROWSER_LAUNCH_PENDING = 'browser_launch_pending'
    BROWSER_OPENED = 'browser_opened'
    OK = 'ok'
    FAILED = 'failed'


@dataclass
class ListFolderState:
    path: str
    phase: ListFolderPhase = ListFolderPhase.IN_PROGRESS
    count: Optional[int] = None
    note: Optional[str] = None
    error: Optional[Exception] = None


@dataclass
class DownloadFileState:
    remote_path: str
    local_path: Path
    phase: DownloadFilePhase = DownloadFilePhase.STARTED
    total_size: Optional[int] = None
    bytes_downloaded: int = 0
    error: Optional[Exception] = None

    @property
    def fraction(self) -> Optional[float]:
        if not self.total_size:
            return None
        return min(self.bytes_downloaded / self.total_size, 1.0)


@dataclass
class AuthState:
    phase: AuthPhase = AuthPhase.STARTING_LOCAL_SERVER
    redirect_url: Optional[str] = None
    auth_url: Optional[str] = None
    error: Optional[Exception] = None


CallData = Union[ListFolderState, DownloadFileState, AuthState]


@dataclass
class CallState:
    """A call's data plus the background work it owns."""

    data: CallData
    handles: List[TaskHandle] = field(default_factory=list)
    cancellers: List[Canceller] = field(default_factory=list)

    def abort(self, timeout: float = 5.0) -> None:
        """Abort owned tasks, then signal listeners and wait for them to stop."""
        for handle in self.handles:
            handle.abort()
        for canceller in self.cancellers:
            canceller.cancel(timeout)
        self.handles.clear()
        self.cancellers.clear()
