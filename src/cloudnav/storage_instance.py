#!/usr/bin/env python3
"""Per-storage call registry.

A :class:`StorageInstance` lives on the UI thread. User intents start
calls in the background; :meth:`StorageInstance.process_events` drains
the message bus once per tick and folds every event into the state of
the call it belongs to and into the visual state the UI renders.

Event handling follows four rules:

- unknown call id + starting event: a new call state is created
- unknown call id + any other event: the call is gone, the event is dropped
- known call id + event of the call's kind: the transition is applied
- known call id + event of another kind: contract violation
"""

import itertools
import logging
import threading
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .auth_server import AuthCallbackServer, open_browser, wait_for_server
from .bus import MessageBus
from .call_messages import (
    AuthBound,
    AuthBrowserOpened,
    AuthCancel,
    AuthFinished,
    AuthMessage,
    AuthRequestRejected,
    AuthServerReady,
    AuthServerShutdowner,
    AuthServerWaiting,
    AuthStart,
    DownloadFileCancelled,
    DownloadFileFinished,
    DownloadFileMessage,
    DownloadFileProgress,
    DownloadFileRefreshToken,
    DownloadFileRefreshTokenComplete,
    DownloadFileSizeInfo,
    DownloadFileStarted,
    ListFolderFinished,
    ListFolderMessage,
    ListFolderProgress,
    ListFolderRefreshToken,
    ListFolderRefreshTokenComplete,
    ListFolderStart,
    ListFolderStarted,
)
from .call_states import (
    AuthPhase,
    AuthState,
    CallState,
    DownloadFilePhase,
    DownloadFileState,
    ListFolderPhase,
    ListFolderState,
)
from .clouds.base import CloudProvider
from .clouds.models import ActiveFolder
from .credentials import CredentialStore
from .errors import CallContractError, CredentialError, DownloadInProgressError, TokenError
from .path_utils import (
    append_path,
    display_path,
    normalize_path,
    parent_path,
    validate_download_path,
)
from .runtime import RuntimeHolder, TaskHandle
from .storages import DownloadFileRequest, ListFolderRequest, storage_call

logger = logging.getLogger(__name__)


@dataclass
class StorageVisualState:
    """What the UI shows for one storage."""

    folder: Optional[ActiveFolder] = None
    v_path: str = '/'
    list_folder_error: Optional[str] = None
    auth_needed: bool = False
    auth_call_id: Optional[int] = None
    last_error: Optional[str] = None
    completed_downloads: List[str] = field(default_factory=list)
    download_errors: Dict[int, str] = field(default_factory=dict)
    revision: int = 0


class StorageInstance:
    """One configured storage: its calls, credentials and visual state."""

    def __init__(self, storage_id: str, caption: str, runtime: RuntimeHolder,
                 provider: CloudProvider, credentials: CredentialStore,
                 download_to: Optional[Path] = None, initial_path: str = '',
                 auth_needed: bool = False, strict: bool = True,
                 bus: Optional[MessageBus] = None,
                 browser_opener: Callable[[str], bool] = webbrowser.open,
                 server_wait_timeout: float = 10.0):
        """Initialize storage instance.

        Args:
            storage_id: Identifier from the configuration
            caption: Human readable name
            runtime: Runtime background work is spawned on
            provider: Cloud provider bound to ``credentials``
            credentials: Shared credential store of the account
            download_to: Default download directory
            initial_path: Path shown until the first listing completes
            auth_needed: Whether the user must sign in first
            strict: Raise CallContractError on mismatched events instead of logging
            bus: Message bus, a private one is created when omitted
            browser_opener: Opens the authorization URL
            server_wait_timeout: How long to wait for the local auth server
        """
        self.id = storage_id
        self.caption = caption
        self.runtime = runtime
        self.provider = provider
        self.credentials = credentials
        self.download_to = download_to or Path.home() / 'Downloads'
        self.strict = strict
        self.bus = bus or MessageBus()
        self.browser_opener = browser_opener
        self.server_wait_timeout = server_wait_timeout

        self.call_states: Dict[int, CallState] = {}
        self.visual_state = StorageVisualState(
            v_path=display_path(initial_path), auth_needed=auth_needed
        )
        self._initial_path = normalize_path(initial_path)
        self._call_ids = itertools.count(1)
        self._call_id_lock = threading.Lock()
        # call id -> resolved local target of downloads not yet removed
        self._download_targets: Dict[int, Path] = {}

    def gen_call_id(self) -> int:
        with self._call_id_lock:
            return next(self._call_ids)

    @property
    def current_path(self) -> str:
        if self.visual_state.folder is not None:
            return self.visual_state.folder.path
        return self._initial_path

    # Intents

    def nav_to(self, path: str) -> int:
        """List ``path``; the previous listing in flight is aborted."""
        call_id = self.gen_call_id()
        storage_call(self.runtime, self.bus, self.provider, call_id,
                     ListFolderRequest(normalize_path(path)))
        return call_id

    def nav_up(self) -> Optional[int]:
        current = self.current_path
        if not current:
            logger.debug("Already at root")
            return None
        return self.nav_to(parent_path(current))

    def nav_into(self, folder_name: str) -> int:
        return self.nav_to(append_path(self.current_path, folder_name))

    def download_file(self, remote_path: str, local_path: Optional[Path] = None) -> int:
        """Download a file, by default into the storage's download directory.

        Raises:
            SecurityError: If the remote name is unsafe as a local file name
            DownloadInProgressError: If another download writes the same file
        """
        if local_path is None:
            local_path = validate_download_path(remote_path, self.download_to)
        target = Path(local_path).resolve()
        if target in self._download_targets.values():
            raise DownloadInProgressError(target)
        call_id = self.gen_call_id()
        storage_call(self.runtime, self.bus, self.provider, call_id,
                     DownloadFileRequest(normalize_path(remote_path), Path(local_path)))
        self._download_targets[call_id] = target
        return call_id

    def cancel_download(self, call_id: int) -> None:
        self.bus.send(call_id, DownloadFileCancelled())

    def start_auth(self) -> int:
        call_id = self.gen_call_id()
        self.bus.send(call_id, AuthStart())
        return call_id

    def cancel_auth(self, call_id: int) -> None:
        self.bus.send(call_id, AuthCancel())

    # Event processing

    def process_events(self) -> int:
        """Apply every pending event. Called once per UI tick.

        Returns:
            Number of events processed
        """
        processed = 0
        for event in self.bus.drain():
            processed += 1
            if event.call_id is None:
                self._process_directive(event.payload)
                continue

            state = self.call_states.get(event.call_id)
            if state is None:
                remove = self._process_new_call(event.call_id, event.payload)
            else:
                remove = self._process_call(event.call_id, state, event.payload)

            if remove:
                self._remove_call(event.call_id)
        if processed:
            self.visual_state.revision += 1
        return processed

    def _contract_violation(self, message: str) -> None:
        if self.strict:
            raise CallContractError(message)
        logger.error(f"Call contract violation: {message}")

    def _process_directive(self, payload) -> None:
        if isinstance(payload, ListFolderStart):
            self.nav_to(payload.path)
        else:
            self._contract_violation(f"unexpected directive {payload!r}")

    def _process_new_call(self, call_id: int, payload) -> bool:
        if isinstance(payload, ListFolderStarted):
            self._remove_calls_of_kind(ListFolderState)
            self.call_states[call_id] = CallState(
                ListFolderState(path=payload.path), handles=[payload.handle]
            )
            self.visual_state.list_folder_error = None
            return False

        if isinstance(payload, DownloadFileStarted):
            self.call_states[call_id] = CallState(
                DownloadFileState(payload.remote_path, payload.local_path),
                handles=[payload.handle],
            )
            return False

        if isinstance(payload, AuthStart):
            self._remove_calls_of_kind(AuthState)
            server = AuthCallbackServer(call_id, self.bus, self.provider, self.credentials)
            self.call_states[call_id] = CallState(
                AuthState(), handles=[self._spawn(server.run(), f"auth_server[{call_id}]")]
            )
            self.visual_state.auth_call_id = call_id
            return False

        if isinstance(payload, AuthServerShutdowner):
            # Never leave a listener behind for a call that is already gone
            payload.canceller.signal()
        logger.debug(f"Dropping {type(payload).__name__} for finished call {call_id}")
        return False

    def _process_call(self, call_id: int, state: CallState, payload) -> bool:
        data = state.data
        if isinstance(data, ListFolderState) and isinstance(payload, ListFolderMessage):
            return self._on_list_folder(data, payload)
        if isinstance(data, DownloadFileState) and isinstance(payload, DownloadFileMessage):
            return self._on_download_file(call_id, data, payload)
        if isinstance(data, AuthState) and isinstance(payload, AuthMessage):
            return self._on_auth(call_id, state, data, payload)

        self._contract_violation(
            f"{type(payload).__name__} does not match {type(data).__name__} of call {call_id}"
        )
        return False

    def _on_list_folder(self, data: ListFolderState, payload: ListFolderMessage) -> bool:
        if isinstance(payload, ListFolderProgress):
            data.phase = ListFolderPhase.IN_PROGRESS
            data.count = payload.count
            data.note = payload.note
        elif isinstance(payload, ListFolderRefreshToken):
            data.phase = ListFolderPhase.REFRESHING_TOKEN
        elif isinstance(payload, ListFolderRefreshTokenComplete):
            data.phase = ListFolderPhase.REFRESH_TOKEN_COMPLETE
        elif isinstance(payload, ListFolderFinished):
            if payload.ok:
                data.phase = ListFolderPhase.OK
                self.visual_state.folder = ActiveFolder(data.path, payload.result.items)
                self.visual_state.v_path = display_path(data.path)
                self.visual_state.list_folder_error = None
            else:
                data.phase = ListFolderPhase.FAILED
                data.error = payload.error
                self.visual_state.list_folder_error = str(payload.error)
                self._record_failure(payload.error)
            return True
        else:
            self._contract_violation(f"unexpected {payload!r} for listing of {data.path!r}")
        return False

    def _on_download_file(self, call_id: int, data: DownloadFileState,
                          payload: DownloadFileMessage) -> bool:
        if isinstance(payload, DownloadFileSizeInfo):
            data.phase = DownloadFilePhase.SIZE_KNOWN
            data.total_size = payload.size
        elif isinstance(payload, DownloadFileProgress):
            data.phase = DownloadFilePhase.IN_PROGRESS
            data.bytes_downloaded = payload.bytes_downloaded
        elif isinstance(payload, DownloadFileRefreshToken):
            data.phase = DownloadFilePhase.REFRESHING_TOKEN
        elif isinstance(payload, DownloadFileRefreshTokenComplete):
            data.phase = DownloadFilePhase.REFRESH_TOKEN_COMPLETE
        elif isinstance(payload, DownloadFileFinished):
            if payload.ok:
                data.phase = DownloadFilePhase.OK
                self.visual_state.completed_downloads.append(str(data.local_path))
                logger.info(f"Download of {data.remote_path} complete")
            else:
                data.phase = DownloadFilePhase.FAILED
                data.error = payload.error
                self.visual_state.download_errors[call_id] = str(payload.error)
                self._record_failure(payload.error)
            return True
        elif isinstance(payload, DownloadFileCancelled):
            logger.info(f"Download of {data.remote_path} cancelled")
            return True
        else:
            self._contract_violation(f"unexpected {payload!r} for download {call_id}")
        return False

    def _on_auth(self, call_id: int, state: CallState, data: AuthState,
                 payload: AuthMessage) -> bool:
        if isinstance(payload, AuthBound):
            data.phase = AuthPhase.BOUND
            data.redirect_url = payload.redirect_url
            state.handles.append(self._spawn(
                wait_for_server(self.bus, call_id, payload.redirect_url,
                                payload.state_token, self.server_wait_timeout),
                f"auth_wait[{call_id}]",
            ))
        elif isinstance(payload, AuthServerWaiting):
            data.phase = AuthPhase.WAITING_FOR_SERVER_UP
        elif isinstance(payload, AuthServerShutdowner):
            state.cancellers.append(payload.canceller)
        elif isinstance(payload, AuthServerReady):
            data.auth_url = self.provider.authorize_url(payload.redirect_url, payload.state_token)
            data.phase = AuthPhase.BROWSER_LAUNCH_PENDING
            state.handles.append(self._spawn(
                open_browser(self.bus, call_id, data.auth_url, self.browser_opener),
                f"auth_browser[{call_id}]",
            ))
        elif isinstance(payload, AuthBrowserOpened):
            data.phase = AuthPhase.BROWSER_OPENED
        elif isinstance(payload, AuthRequestRejected):
            self.visual_state.last_error = str(payload.error)
        elif isinstance(payload, AuthCancel):
            logger.info("Authorization cancelled")
            self._clear_auth_call(call_id)
            return True
        elif isinstance(payload, AuthFinished):
            self._clear_auth_call(call_id)
            if payload.ok:
                data.phase = AuthPhase.OK
                self.visual_state.auth_needed = False
                self.visual_state.last_error = None
                logger.info(f"Storage {self.id} authorized")
                self.bus.send(None, ListFolderStart(''))
            else:
                data.phase = AuthPhase.FAILED
                data.error = payload.error
                self.visual_state.last_error = str(payload.error)
            return True
        else:
            self._contract_violation(f"unexpected {payload!r} for auth call {call_id}")
        return False

    def _clear_auth_call(self, call_id: int) -> None:
        if self.visual_state.auth_call_id == call_id:
            self.visual_state.auth_call_id = None

    def _record_failure(self, error: Exception) -> None:
        self.visual_state.last_error = str(error)
        if isinstance(error, (TokenError, CredentialError)):
            self.visual_state.auth_needed = True

    def _spawn(self, coro, name: str) -> TaskHandle:
        handle = TaskHandle(name)
        handle.attach(self.runtime.spawn(coro))
        return handle

    def _remove_call(self, call_id: int) -> None:
        self._download_targets.pop(call_id, None)
        state = self.call_states.pop(call_id, None)
        if state is not None:
            state.abort()

    def _remove_calls_of_kind(self, kind: type) -> None:
        for call_id in [c for c, s in self.call_states.items() if isinstance(s.data, kind)]:
            logger.debug(f"Aborting superseded call {call_id}")
            self._remove_call(call_id)
            if kind is AuthState:
                self._clear_auth_call(call_id)

    def downloads(self) -> Dict[int, DownloadFileState]:
        return {
            call_id: state.data for call_id, state in self.call_states.items()
            if isinstance(state.data, DownloadFileState)
        }

    def auth_state(self) -> Optional[AuthState]:
        call_id = self.visual_state.auth_call_id
        state = self.call_states.get(call_id) if call_id is not None else None
        return state.data if state is not None else None

    def shutdown(self) -> None:
        """Abort every call and close the provider."""
        for call_id in list(self.call_states):
            self._remove_call(call_id)
        if not self.runtime.closed:
            self.runtime.spawn_detached(self.provider.aclose(), f"close[{self.id}]")
