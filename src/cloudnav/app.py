#!/usr/bin/env python3
"""Application state: storages built from the configuration."""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from keyring.errors import KeyringError

from .clouds import PROVIDERS
from .config import Config
from .credentials import CredentialStore
from .runtime import RuntimeHolder
from .storage_instance import StorageInstance

logger = logging.getLogger(__name__)


class AppState:
    """Owns the runtime and one StorageInstance per configured storage."""

    SHUTDOWN_TIMEOUT = 5.0

    def __init__(self, config: Config, runtime: Optional[RuntimeHolder] = None,
                 strict: Optional[bool] = None):
        """Initialize application state.

        Args:
            config: Loaded configuration
            runtime: Runtime to use, a new one is started when omitted
            strict: Fail loudly on call contract violations, defaults to
                True when the configured log level is DEBUG
        """
        self.config = config
        self.runtime = runtime or RuntimeHolder()
        if strict is None:
            strict = config.log_level == 'DEBUG'
        self.strict = strict
        self.storages: Dict[str, StorageInstance] = {}

        for settings in config.storages:
            try:
                self.storages[settings['id']] = self._create_storage(settings)
            except (KeyError, ValueError) as e:
                logger.error(f"Skipping storage {settings.get('id')!r}: {e}")

    def _create_storage(self, settings: Dict) -> StorageInstance:
        provider_class = PROVIDERS.get(settings['type'])
        if provider_class is None:
            raise ValueError(f"unknown storage type {settings['type']!r}")

        tokens = self.config.load_tokens(settings['id']) or {}
        credentials = CredentialStore(
            client_id=settings['client_id'],
            client_secret=settings['client_secret'],
            access_token=tokens.get('access_token', ''),
            refresh_token=tokens.get('refresh_token', ''),
            redirect_addresses=settings['redirect_addresses'],
        )
        auth_needed = (
            bool(settings['client_id'] and settings['client_secret'])
            and not credentials.has_tokens()
        )
        logger.debug(f"Storage {settings['id']}: auth needed = {auth_needed}")

        return StorageInstance(
            storage_id=settings['id'],
            caption=settings['caption'],
            runtime=self.runtime,
            provider=provider_class(credentials),
            credentials=credentials,
            download_to=Path(settings['download_to']).expanduser(),
            initial_path=settings['current_path'],
            auth_needed=auth_needed,
            strict=self.strict,
        )

    def storage(self, storage_id: Optional[str] = None) -> Optional[StorageInstance]:
        """Get a storage by id, or the first one when ``storage_id`` is None."""
        if storage_id is None:
            return next(iter(self.storages.values()), None)
        return self.storages.get(storage_id)

    def start(self) -> None:
        """Show the last browsed folder of every signed in storage."""
        for storage in self.storages.values():
            if storage.credentials.has_tokens():
                storage.nav_to(storage.current_path)

    def tick(self) -> int:
        return sum(storage.process_events() for storage in self.storages.values())

    def run_until(self, predicate: Callable[[], bool], timeout: Optional[float] = None,
                  interval: float = 0.1,
                  on_tick: Optional[Callable[[], None]] = None) -> bool:
        """Tick until ``predicate`` holds, for headless front ends.

        Returns:
            True if the predicate held before the timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self.tick()
            if on_tick:
                on_tick()
            if predicate():
                return True
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(interval)

    def teardown(self) -> None:
        """Persist tokens and last paths, stop all calls and the runtime."""
        for storage in self.storages.values():
            tokens = storage.credentials.snapshot()
            try:
                if tokens.access_token or tokens.refresh_token:
                    self.config.save_tokens(storage.id, tokens.access_token, tokens.refresh_token)
                self.config.set_storage_value(storage.id, 'current_path', storage.current_path)
            except (OSError, ValueError, KeyringError) as e:
                logger.error(f"Can't save state of storage {storage.id}: {e}")
            storage.shutdown()

        self.runtime.wait_detached(1.0)
        self.runtime.print_pending_tasks()
        self.runtime.shutdown_timeout(self.SHUTDOWN_TIMEOUT)
        logger.info("Application shut down")

    def storage_ids(self) -> List[str]:
        return list(self.storages)
