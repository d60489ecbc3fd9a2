#!/usr/bin/env python3
"""Tests for the per-storage call registry."""

import socket
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from cloudnav.call_messages import (
    AuthBound,
    AuthServerWaiting,
    DownloadFileProgress,
    ListFolderProgress,
)
from cloudnav.call_states import (
    AuthPhase,
    AuthState,
    CallState,
    DownloadFilePhase,
    ListFolderState,
)
from cloudnav.errors import (
    CallContractError,
    DownloadInProgressError,
    ExpiredAccessToken,
    PathNotFound,
)
from cloudnav.path_utils import SecurityError

from conftest import file_item, folder_item, pump


def test_list_folder_success_updates_visual_state(make_storage, provider):
    """A finished listing becomes the active folder and its call is removed."""
    provider.folders['Photos'] = [folder_item('2024'), file_item('cat.jpg', 10)]
    storage = make_storage()

    call_id = storage.nav_to('/Photos/')
    pump(storage, lambda: call_id not in storage.call_states and storage.visual_state.folder)

    visual = storage.visual_state
    assert visual.folder.path == 'Photos'
    assert [i.name for i in visual.folder.items] == ['2024', 'cat.jpg']
    assert visual.v_path == '/Photos'
    assert visual.list_folder_error is None
    assert storage.current_path == 'Photos'


def test_list_folder_failure_records_error(make_storage, provider):
    """Failures surface as list_folder_error and the call is removed."""
    provider.list_errors['missing'] = PathNotFound('fake.list_folder', 'missing')
    storage = make_storage()

    call_id = storage.nav_to('missing')
    pump(storage, lambda: call_id not in storage.call_states and storage.visual_state.list_folder_error)

    assert 'path not found' in storage.visual_state.list_folder_error
    assert storage.visual_state.folder is None
    assert not storage.visual_state.auth_needed


def test_token_failure_marks_auth_needed(make_storage, provider):
    provider.list_errors[''] = ExpiredAccessToken('fake.list_folder')
    storage = make_storage()

    storage.nav_to('')
    pump(storage, lambda: storage.visual_state.auth_needed)
    assert not storage.call_states


def test_new_listing_aborts_previous(make_storage, provider):
    """At most one listing is active; the superseded one is aborted."""
    provider.hang_paths.add('slow')
    provider.folders['fast'] = [file_item('a.txt')]
    storage = make_storage()

    slow_id = storage.nav_to('slow')
    pump(storage, lambda: slow_id in storage.call_states)
    slow_handle = storage.call_states[slow_id].handles[0]

    fast_id = storage.nav_to('fast')
    pump(storage, lambda: fast_id not in storage.call_states and storage.visual_state.folder)

    assert slow_id not in storage.call_states
    assert slow_handle.aborted
    assert storage.visual_state.folder.path == 'fast'
    assert not [s for s in storage.call_states.values() if isinstance(s.data, ListFolderState)]


def test_nav_up_and_into(make_storage, provider):
    provider.folders['a'] = [folder_item('b')]
    provider.folders['a/b'] = []
    storage = make_storage(initial_path='a')

    call_id = storage.nav_into('b')
    pump(storage, lambda: call_id not in storage.call_states and storage.visual_state.folder)
    assert storage.current_path == 'a/b'

    call_id = storage.nav_up()
    pump(storage, lambda: storage.current_path == 'a')
    assert storage.visual_state.v_path == '/a'


def test_nav_up_at_root_is_noop(make_storage):
    storage = make_storage()
    assert storage.nav_up() is None
    assert storage.process_events() == 0


def test_download_to_default_directory(make_storage, provider, tmp_path):
    provider.files['docs/report.pdf'] = b'%PDF-1.4 test'
    storage = make_storage()

    call_id = storage.download_file('docs/report.pdf')
    pump(storage, lambda: call_id not in storage.call_states and storage.visual_state.completed_downloads)

    target = tmp_path / 'report.pdf'
    assert storage.visual_state.completed_downloads == [str(target)]
    assert target.read_bytes() == b'%PDF-1.4 test'


def test_download_failure_records_error(make_storage):
    storage = make_storage()

    call_id = storage.download_file('nope.txt')
    pump(storage, lambda: call_id in storage.visual_state.download_errors)

    assert call_id not in storage.call_states
    assert 'file not found' in storage.visual_state.download_errors[call_id]


def test_download_rejects_unsafe_name(make_storage):
    storage = make_storage()
    with pytest.raises(SecurityError):
        storage.download_file('..')


def test_cancel_download_removes_call(make_storage, provider):
    """A cancelled download is aborted and never reports Ok or Failed."""
    provider.files['big.iso'] = b'x' * 100
    provider.hang_downloads = True
    storage = make_storage()

    call_id = storage.download_file('big.iso')
    pump(storage, lambda: call_id in storage.call_states
         and storage.call_states[call_id].data.phase == DownloadFilePhase.SIZE_KNOWN)
    state = storage.call_states[call_id]
    assert state.data.total_size == 100
    handle = state.handles[0]

    storage.cancel_download(call_id)
    pump(storage, lambda: call_id not in storage.call_states)

    assert handle.aborted
    pump(storage, lambda: handle.done())
    storage.process_events()
    assert call_id not in storage.visual_state.download_errors
    assert not storage.visual_state.completed_downloads


def test_second_download_to_same_file_is_rejected(make_storage, provider, tmp_path):
    """Only one download at a time may write a given local file."""
    provider.files['big.iso'] = b'x' * 100
    provider.files['other/big.iso'] = b'y' * 10
    provider.hang_downloads = True
    storage = make_storage()

    call_id = storage.download_file('big.iso')
    with pytest.raises(DownloadInProgressError):
        storage.download_file('other/big.iso')
    with pytest.raises(DownloadInProgressError):
        storage.download_file('big.iso', tmp_path / 'sub' / '..' / 'big.iso')

    other_id = storage.download_file('big.iso', tmp_path / 'copy.iso')
    assert other_id != call_id

    storage.cancel_download(call_id)
    pump(storage, lambda: call_id not in storage.call_states)

    provider.hang_downloads = False
    again = storage.download_file('other/big.iso')
    pump(storage, lambda: again not in storage.call_states)
    assert (tmp_path / 'big.iso').read_bytes() == b'y' * 10


def test_event_for_unknown_call_is_dropped(make_storage):
    storage = make_storage()
    storage.bus.send(999, DownloadFileProgress(10))

    assert storage.process_events() == 1
    assert not storage.call_states


def test_mismatched_event_raises_in_strict_mode(make_storage, provider):
    provider.hang_paths.add('slow')
    storage = make_storage(strict=True)
    call_id = storage.nav_to('slow')
    pump(storage, lambda: call_id in storage.call_states)

    storage.bus.send(call_id, DownloadFileProgress(1))
    with pytest.raises(CallContractError):
        storage.process_events()


def test_mismatched_event_is_ignored_when_lenient(make_storage, provider):
    provider.hang_paths.add('slow')
    storage = make_storage(strict=False)
    call_id = storage.nav_to('slow')
    pump(storage, lambda: call_id in storage.call_states)

    storage.bus.send(call_id, DownloadFileProgress(1))
    storage.bus.send(call_id, ListFolderProgress(5, 'page 1'))
    storage.process_events()

    data = storage.call_states[call_id].data
    assert data.count == 5
    assert data.note == 'page 1'


def _complete_redirect(auth_url: str) -> bool:
    """Play the browser: follow the provider's redirect back to the listener."""
    query = parse_qs(urlsplit(auth_url).query)
    redirect_uri = query['redirect_uri'][0]
    response = httpx.get(
        redirect_uri,
        params={'code': 'the-code', 'state': query['state'][0]},
        trust_env=False,
    )
    return response.status_code == 200


def test_auth_flow_stores_tokens_and_lists_root(make_storage, provider, credentials):
    provider.folders[''] = [folder_item('Photos')]
    storage = make_storage(auth_needed=True, browser_opener=_complete_redirect)

    storage.start_auth()
    pump(storage, lambda: storage.visual_state.folder is not None, timeout=10.0)

    assert credentials.access_token == 'access-1'
    assert credentials.refresh_token == 'refresh-1'
    assert provider.exchanged[0][0] == 'the-code'
    assert provider.exchanged[0][1].endswith('/dropbox')
    assert not storage.visual_state.auth_needed
    assert storage.visual_state.auth_call_id is None
    assert storage.visual_state.folder.path == ''


def test_auth_stays_bound_until_readiness_check_runs(make_storage, monkeypatch):
    readiness_checks = []

    async def fake_wait(bus, call_id, redirect_url, state_token, timeout):
        readiness_checks.append((call_id, redirect_url, state_token))

    monkeypatch.setattr('cloudnav.storage_instance.wait_for_server', fake_wait)
    storage = make_storage(auth_needed=True)
    storage.call_states[5] = CallState(AuthState())
    url = 'http://127.0.0.1:5555/dropbox'

    storage.bus.send(5, AuthBound(url, ('127.0.0.1', 5555), 'tok'))
    storage.process_events()
    data = storage.call_states[5].data
    assert data.phase == AuthPhase.BOUND
    assert data.redirect_url == url
    assert len(storage.call_states[5].handles) == 1

    storage.bus.send(5, AuthServerWaiting('http://127.0.0.1:5555/ping'))
    storage.process_events()
    assert data.phase == AuthPhase.WAITING_FOR_SERVER_UP
    pump(storage, lambda: readiness_checks == [(5, url, 'tok')])


def test_cancel_auth_closes_listener(make_storage):
    storage = make_storage(auth_needed=True, browser_opener=lambda url: True)

    call_id = storage.start_auth()
    pump(storage, lambda: call_id in storage.call_states
         and storage.call_states[call_id].data.phase == AuthPhase.BROWSER_OPENED)
    state = storage.call_states[call_id]
    redirect = urlsplit(state.data.redirect_url)
    assert len(state.cancellers) == 1

    storage.cancel_auth(call_id)
    storage.process_events()

    assert call_id not in storage.call_states
    assert storage.visual_state.auth_call_id is None
    with pytest.raises(OSError):
        socket.create_connection((redirect.hostname, redirect.port), timeout=1).close()


def test_auth_bind_failure_is_reported(make_storage, credentials):
    busy = socket.create_server(('127.0.0.1', 0))
    try:
        credentials._redirect_addresses = [f"127.0.0.1:{busy.getsockname()[1]}"]
        storage = make_storage(auth_needed=True)

        call_id = storage.start_auth()
        pump(storage, lambda: storage.visual_state.last_error)
    finally:
        busy.close()

    assert call_id not in storage.call_states
    assert "can't bind" in storage.visual_state.last_error
    assert storage.visual_state.auth_needed


def test_browser_failure_ends_auth(make_storage):
    storage = make_storage(auth_needed=True, browser_opener=lambda url: False)

    call_id = storage.start_auth()
    pump(storage, lambda: storage.visual_state.last_error, timeout=10.0)

    assert call_id not in storage.call_states
    assert "can't open web browser" in storage.visual_state.last_error


def test_second_auth_aborts_first(make_storage):
    storage = make_storage(auth_needed=True, browser_opener=lambda url: True)

    first = storage.start_auth()
    pump(storage, lambda: first in storage.call_states
         and storage.call_states[first].data.phase == AuthPhase.BROWSER_OPENED)

    second = storage.start_auth()
    pump(storage, lambda: storage.visual_state.auth_call_id == second)

    assert first not in storage.call_states
    assert second in storage.call_states


def test_shutdown_aborts_calls_and_closes_provider(make_storage, provider):
    provider.hang_paths.add('slow')
    storage = make_storage()
    call_id = storage.nav_to('slow')
    pump(storage, lambda: call_id in storage.call_states)
    handle = storage.call_states[call_id].handles[0]

    storage.shutdown()
    storage.runtime.wait_detached(2.0)

    assert not storage.call_states
    assert handle.aborted
    assert provider.closed
