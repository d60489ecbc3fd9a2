#!/usr/bin/env python3
"""Spawning of storage calls and their bus-backed progress reporters."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from .bus import MessageBus
from .call_messages import (
    DownloadFileFinished,
    DownloadFileProgress,
    DownloadFileRefreshToken,
    DownloadFileRefreshTokenComplete,
    DownloadFileSizeInfo,
    DownloadFileStarted,
    ListFolderFinished,
    ListFolderProgress,
    ListFolderRefreshToken,
    ListFolderRefreshTokenComplete,
    ListFolderStarted,
)
from .clouds.base import CloudProvider, DownloadReporter, ListFolderReporter
from .errors import CloudError, RuntimeClosedError
from .runtime import RuntimeHolder, TaskHandle

logger = logging.getLogger(__name__)


@dataclass
class ListFolderRequest:
    path: str


@dataclass
class DownloadFileRequest:
    remote_path: str
    local_path: Path


StorageRequest = Union[ListFolderRequest, DownloadFileRequest]


class BusListFolderReporter(ListFolderReporter):
    def __init__(self, bus: MessageBus, call_id: int):
        self.bus = bus
        self.call_id = call_id

    def refresh_token(self) -> None:
        self.bus.send(self.call_id, ListFolderRefreshToken())

    def refresh_token_complete(self) -> None:
        self.bus.send(self.call_id, ListFolderRefreshTokenComplete())

    def progress(self, count: int, note: str = None) -> None:
        self.bus.send(self.call_id, ListFolderProgress(count, note))


class BusDownloadReporter(DownloadReporter):
    def __init__(self, bus: MessageBus, call_id: int):
        self.bus = bus
        self.call_id = call_id

    def refresh_token(self) -> None:
        self.bus.send(self.call_id, DownloadFileRefreshToken())

    def refresh_token_complete(self) -> None:
        self.bus.send(self.call_id, DownloadFileRefreshTokenComplete())

    def size_known(self, size: int) -> None:
        self.bus.send(self.call_id, DownloadFileSizeInfo(size))

    def progress(self, bytes_downloaded: int) -> None:
        self.bus.send(self.call_id, DownloadFileProgress(bytes_downloaded))


async def list_folder_task(provider: CloudProvider, bus: MessageBus,
                           call_id: int, path: str) -> None:
    try:
        result = await provider.list_folder(path, BusListFolderReporter(bus, call_id))
    except CloudError as e:
        logger.error(f"Listing {path!r} failed: {e}")
        bus.send(call_id, ListFolderFinished(error=e))
    except Exception as e:
        logger.exception(f"Unexpected error listing {path!r}")
        bus.send(call_id, ListFolderFinished(error=e))
    else:
        bus.send(call_id, ListFolderFinished(result=result))


async def download_file_task(provider: CloudProvider, bus: MessageBus, call_id: int,
                             remote_path: str, local_path: Path) -> None:
    try:
        result = await provider.download_file(
            remote_path, local_path, BusDownloadReporter(bus, call_id)
        )
    except CloudError as e:
        logger.error(f"Downloading {remote_path!r} failed: {e}")
        bus.send(call_id, DownloadFileFinished(error=e))
    except Exception as e:
        logger.exception(f"Unexpected error downloading {remote_path!r}")
        bus.send(call_id, DownloadFileFinished(error=e))
    else:
        bus.send(call_id, DownloadFileFinished(result=result))


def storage_call(runtime: RuntimeHolder, bus: MessageBus, provider: CloudProvider,
                 call_id: int, request: StorageRequest) -> TaskHandle:
    """Start a storage call in the background.

    The Started event carrying the task handle is queued before the task
    is spawned, so it always precedes the task's own events on the bus.
    Nothing is queued when the runtime is already closed; if it closes
    between the check and the spawn, a Finished event ends the call.

    Args:
        runtime: Runtime to spawn on
        bus: Bus the task reports to
        provider: Cloud provider of the storage
        call_id: Id of the new call
        request: What to do

    Returns:
        Handle of the spawned task

    Raises:
        RuntimeClosedError: If the runtime has been shut down
        TypeError: If the request is of an unknown kind
    """
    if runtime.closed:
        raise RuntimeClosedError("Runtime no longer exists")

    if isinstance(request, ListFolderRequest):
        handle = TaskHandle(f"list_folder[{call_id}]")
        bus.send(call_id, ListFolderStarted(handle, request.path))
        coro = list_folder_task(provider, bus, call_id, request.path)
        finished = ListFolderFinished
    elif isinstance(request, DownloadFileRequest):
        handle = TaskHandle(f"download_file[{call_id}]")
        bus.send(call_id, DownloadFileStarted(handle, request.remote_path, request.local_path))
        coro = download_file_task(
            provider, bus, call_id, request.remote_path, request.local_path
        )
        finished = DownloadFileFinished
    else:
        raise TypeError(f"Unknown storage request: {request!r}")

    try:
        handle.attach(runtime.spawn(coro))
    except RuntimeClosedError as e:
        bus.send(call_id, finished(error=e))
        raise
    return handle
