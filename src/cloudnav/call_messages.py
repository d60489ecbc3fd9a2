#!/usr/bin/env python3
"""Payloads carried on the message bus.

Each call kind has a marker base class; the registry checks that an
event's kind matches the state stored for its call id.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .clouds.models import DownloadResult, ListFolderResult
from .runtime import TaskHandle


class ListFolderMessage:
    pass


@dataclass
class ListFolderStart(ListFolderMessage):
    """Directive: start listing ``path``."""
    path: str


@dataclass
class ListFolderStarted(ListFolderMessage):
    handle: TaskHandle
    path: str


@dataclass
class ListFolderProgress(ListFolderMessage):
    count: int
    note: Optional[str] = None


@dataclass
class ListFolderRefreshToken(ListFolderMessage):
    pass


@dataclass
class ListFolderRefreshTokenComplete(ListFolderMessage):
    pass


@dataclass
class ListFolderFinished(ListFolderMessage):
    result: Optional[ListFolderResult] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class DownloadFileMessage:
    pass


@dataclass
class DownloadFileStarted(DownloadFileMessage):
    handle: TaskHandle
    remote_path: str
    local_path: Path


@dataclass
class DownloadFileSizeInfo(DownloadFileMessage):
    size: int


@dataclass
class DownloadFileProgress(DownloadFileMessage):
    bytes_downloaded: int


@dataclass
class DownloadFileRefreshToken(DownloadFileMessage):
    pass


@dataclass
class DownloadFileRefreshTokenComplete(DownloadFileMessage):
    pass


@dataclass
class DownloadFileFinished(DownloadFileMessage):
    result: Optional[DownloadResult] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DownloadFileCancelled(DownloadFileMessage):
    pass


class AuthMessage:
    pass


@dataclass
class AuthStart(AuthMessage):
    pass


@dataclass
class AuthBound(AuthMessage):
    redirect_url: str
    address: Any
    state_token: str


@dataclass
class AuthServerShutdowner(AuthMessage):
    canceller: Any


@dataclass
class AuthServerWaiting(AuthMessage):
    """The readiness check of the local server is running."""
    ping_url: str


@dataclass
class AuthServerReady(AuthMessage):
    redirect_url: str
    state_token: str


@dataclass
class AuthBrowserOpened(AuthMessage):
    auth_url: str


@dataclass
class AuthRequestRejected(AuthMessage):
    """A callback request was refused; the flow keeps waiting."""
    error: Exception


@dataclass
class AuthFinished(AuthMessage):
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class AuthCancel(AuthMessage):
    pass
