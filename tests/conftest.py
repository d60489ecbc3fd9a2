#!/usr/bin/env python3
"""Shared fixtures for cloudnav tests."""

import asyncio
import time
from pathlib import Path
from urllib.parse import urlencode

import keyring
import pytest

from cloudnav.clouds.base import CloudProvider
from cloudnav.clouds.models import (
    DownloadResult,
    Item,
    ListFolderResult,
    RefreshTokenResult,
    TokenResult,
)
from cloudnav.credentials import CredentialStore
from cloudnav.errors import RemoteFileNotFound
from cloudnav.runtime import RuntimeHolder
from cloudnav.storage_instance import StorageInstance


class FakeProvider(CloudProvider):
    """Scriptable in-memory provider."""

    def __init__(self):
        self.folders = {}
        self.list_errors = {}
        self.hang_paths = set()
        self.files = {}
        self.hang_downloads = False
        self.tokens = TokenResult('access-1', 'refresh-1')
        self.exchanged = []
        self.closed = False

    @property
    def redirect_path(self) -> str:
        return '/dropbox'

    def authorize_url(self, redirect_url: str, state: str) -> str:
        return "https://auth.example/authorize?" + urlencode(
            {'redirect_uri': redirect_url, 'state': state}
        )

    async def list_folder(self, path, reporter):
        if path in self.hang_paths:
            await asyncio.sleep(3600)
        if path in self.list_errors:
            raise self.list_errors[path]
        items = self.folders.get(path, [])
        reporter.progress(len(items))
        return ListFolderResult(items=list(items))

    async def download_file(self, remote_path, local_path, reporter):
        data = self.files.get(remote_path)
        if data is None:
            raise RemoteFileNotFound('fake.download_file', remote_path)
        reporter.size_known(len(data))
        if self.hang_downloads:
            await asyncio.sleep(3600)
        Path(local_path).write_bytes(data)
        reporter.progress(len(data))
        return DownloadResult(name=remote_path.rsplit('/', 1)[-1], size=len(data),
                              local_path=str(local_path))

    async def exchange_code(self, code, redirect_url):
        self.exchanged.append((code, redirect_url))
        return self.tokens

    async def refresh_token(self, refresh_token, client_id, client_secret):
        return RefreshTokenResult('refreshed')

    async def aclose(self):
        self.closed = True


def file_item(name: str, size: int = 1) -> Item:
    return Item(name=name, id=f"id:{name}", is_folder=False, size=size)


def folder_item(name: str) -> Item:
    return Item(name=name, id=f"id:{name}", is_folder=True)


def pump(storage: StorageInstance, predicate, timeout: float = 5.0) -> None:
    """Process events until ``predicate`` holds."""
    deadline = time.monotonic() + timeout
    while True:
        storage.process_events()
        if predicate():
            return
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


@pytest.fixture
def runtime():
    holder = RuntimeHolder(name='test-runtime')
    yield holder
    holder.shutdown_timeout(2.0)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def credentials():
    return CredentialStore(
        client_id='app-key',
        client_secret='app-secret',
        access_token='access-0',
        refresh_token='refresh-0',
        redirect_addresses=['127.0.0.1:0'],
    )


@pytest.fixture
def make_storage(runtime, provider, credentials, tmp_path):
    created = []

    def factory(**kwargs):
        kwargs.setdefault('download_to', tmp_path)
        storage = StorageInstance(
            storage_id='test',
            caption='Test storage',
            runtime=runtime,
            provider=provider,
            credentials=credentials,
            **kwargs,
        )
        created.append(storage)
        return storage

    yield factory
    for storage in created:
        storage.shutdown()


@pytest.fixture
def fake_keyring(monkeypatch):
    """Replace the system keyring with an in-memory dict."""
    store = {}
    monkeypatch.setattr(keyring, 'get_password', lambda service, key: store.get((service, key)))
    monkeypatch.setattr(
        keyring, 'set_password',
        lambda service, key, value: store.__setitem__((service, key), value),
    )
    return store
