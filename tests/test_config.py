#!/usr/bin/env python3
"""Tests for cloudnav configuration and validators."""

import json
import tempfile
from pathlib import Path

import pytest

from cloudnav.app import AppState
from cloudnav.call_messages import DownloadFileProgress
from cloudnav.clouds.dropbox import DropboxClient
from cloudnav.config import Config
from cloudnav.validators import (
    AppKeyValidator,
    LogLevelValidator,
    RedirectAddressesValidator,
    ValidationError,
    validate_storage_value,
)


def test_config_initialization():
    """Test configuration initialization."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_dir = Path(tmpdir)
        config = Config(config_dir)

        # Check config file was created
        assert config.config_path.exists()
        assert oct(config.config_path.stat().st_mode & 0o777) == oct(0o600)

        # Check default values
        assert config.log_level == 'INFO'
        assert config.storages == []
        assert config.storage() is None


def test_config_save_load():
    """Test configuration save and load."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config_dir = Path(tmpdir)

        config1 = Config(config_dir)
        config1.set('log_level', 'debug')
        config1.add_storage('work', caption='Work Dropbox', client_id='abc123')
        config1.set_storage_value('work', 'redirect_addresses', '127.0.0.1:9000, [::1]:9001')

        config2 = Config(config_dir)
        assert config2.log_level == 'DEBUG'
        storage = config2.storage('work')
        assert storage['caption'] == 'Work Dropbox'
        assert storage['client_id'] == 'abc123'
        assert storage['redirect_addresses'] == ['127.0.0.1:9000', '[::1]:9001']
        # Defaults fill unset keys
        assert storage['type'] == 'dropbox'
        assert storage['current_path'] == ''


def test_storage_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = Config(Path(tmpdir))
        config.add_storage('dropbox')

        storage = config.storage()
        assert storage['caption'] == 'dropbox'
        assert storage['redirect_addresses'] == Config.DEFAULT_REDIRECT_ADDRESSES
        assert storage['download_to'] == str(Config.DEFAULT_DOWNLOAD_DIR)


def test_duplicate_and_unknown_storage():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = Config(Path(tmpdir))
        config.add_storage('a')

        with pytest.raises(ValueError):
            config.add_storage('a')
        with pytest.raises(ValueError):
            config.set_storage_value('missing', 'caption', 'x')
        with pytest.raises(ValueError):
            config.set_storage_value('a', 'no_such_key', 'x')


def test_invalid_values_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        config = Config(Path(tmpdir))
        config.add_storage('a')

        with pytest.raises(ValueError):
            config.set('log_level', 'LOUD')
        with pytest.raises(ValueError):
            config.set_storage_value('a', 'client_id', 'has space')

        # Nothing invalid was persisted
        data = json.loads(config.config_path.read_text())
        assert data['log_level'] == 'INFO'
        assert 'client_id' not in data['storages'][0]


def test_token_save_load(fake_keyring):
    """Test token save and load."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config = Config(Path(tmpdir))

        config.save_tokens('a', 'access-a', 'refresh-a')
        config.save_tokens('b', 'access-b', 'refresh-b')

        assert config.load_tokens('a') == {'access_token': 'access-a', 'refresh_token': 'refresh-a'}
        assert config.load_tokens('b')['refresh_token'] == 'refresh-b'
        assert config.load_tokens('c') is None

        # Stored encrypted
        raw = config.token_path.read_bytes()
        assert b'access-a' not in raw
        assert oct(config.token_path.stat().st_mode & 0o777) == oct(0o600)
        assert (Config.KEYRING_SERVICE, 'token_encryption_key') in fake_keyring


def test_corrupted_tokens_discarded(fake_keyring):
    with tempfile.TemporaryDirectory() as tmpdir:
        config = Config(Path(tmpdir))
        config.token_path.write_bytes(b'not a fernet token')

        assert config.load_tokens('a') is None
        assert not config.token_path.exists()


def test_log_level_validator():
    validator = LogLevelValidator()
    assert validator.validate('warning') == 'WARNING'
    with pytest.raises(ValidationError):
        validator.validate('verbose')
    with pytest.raises(ValidationError):
        validator.validate(10)


def test_app_key_validator():
    validator = AppKeyValidator('Client ID')
    assert validator.validate('  abc123 ') == 'abc123'
    for bad in ('', '   ', 'a b', None):
        with pytest.raises(ValidationError):
            validator.validate(bad)


@pytest.mark.parametrize("value,expected", [
    ('127.0.0.1:8080', ['127.0.0.1:8080']),
    ('127.0.0.1:8080,localhost:0', ['127.0.0.1:8080', 'localhost:0']),
    (['[::1]:8080', ' 127.0.0.1:1 '], ['[::1]:8080', '127.0.0.1:1']),
])
def test_redirect_addresses_valid(value, expected):
    assert RedirectAddressesValidator().validate(value) == expected


@pytest.mark.parametrize("value", [
    '', '8080', ':8080', '127.0.0.1:http', '127.0.0.1:70000', [], 42,
])
def test_redirect_addresses_invalid(value):
    with pytest.raises(ValidationError):
        RedirectAddressesValidator().validate(value)


def test_download_directory_created(tmp_path):
    target = tmp_path / 'downloads'
    assert validate_storage_value('download_to', str(target)) == str(target.resolve())
    assert target.is_dir()


def test_download_directory_must_be_directory(tmp_path):
    target = tmp_path / 'file'
    target.write_text('x')
    with pytest.raises(ValidationError):
        validate_storage_value('download_to', str(target))


def test_app_state_builds_storages(tmp_path, fake_keyring):
    config = Config(tmp_path / 'config')
    config.add_storage('signed-in', client_id='key', client_secret='secret',
                       current_path='Photos', download_to=str(tmp_path / 'dl'))
    config.add_storage('new', client_id='key', client_secret='secret')
    config.add_storage('unconfigured')
    config.save_tokens('signed-in', 'access', 'refresh')

    app_state = AppState(config)
    try:
        assert app_state.storage_ids() == ['signed-in', 'new', 'unconfigured']
        signed_in = app_state.storage('signed-in')
        assert isinstance(signed_in.provider, DropboxClient)
        assert signed_in.credentials.access_token == 'access'
        assert signed_in.current_path == 'Photos'
        assert not signed_in.visual_state.auth_needed
        assert app_state.storage('new').visual_state.auth_needed
        # No app credentials yet: nothing to sign in with
        assert not app_state.storage('unconfigured').visual_state.auth_needed
        assert app_state.storage() is signed_in
        assert not app_state.strict
    finally:
        app_state.teardown()


def test_app_state_skips_unknown_type(tmp_path, fake_keyring):
    config = Config(tmp_path)
    config.add_storage('box', type='box')

    app_state = AppState(config)
    try:
        assert app_state.storage() is None
    finally:
        app_state.teardown()


def test_teardown_persists_tokens_and_path(tmp_path, fake_keyring):
    config = Config(tmp_path)
    config.add_storage('a', client_id='key', client_secret='secret')

    app_state = AppState(config)
    storage = app_state.storage('a')
    storage.credentials.replace_tokens('new-access', 'new-refresh')
    storage._initial_path = 'Documents'
    app_state.teardown()

    assert app_state.runtime.closed
    reloaded = Config(tmp_path)
    assert reloaded.load_tokens('a') == {
        'access_token': 'new-access', 'refresh_token': 'new-refresh',
    }
    assert reloaded.storage('a')['current_path'] == 'Documents'


def test_tick_drains_every_storage(tmp_path, fake_keyring):
    """Events of storages other than the shown one are drained too."""
    config = Config(tmp_path)
    config.add_storage('a')
    config.add_storage('b')

    app_state = AppState(config)
    try:
        for storage in app_state.storages.values():
            storage.bus.send(99, DownloadFileProgress(1))
        assert app_state.tick() == 2
        assert all(s.bus.empty() for s in app_state.storages.values())
    finally:
        app_state.teardown()
