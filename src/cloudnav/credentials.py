#!/usr/bin/env python3
"""Shared account credentials and the access token refresh coordinator."""

import asyncio
import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from .errors import CloudError, TokenError

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class Tokens:
    access_token: str = ''
    refresh_token: str = ''


class CredentialStore:
    """Account-wide credentials shared by every call of one storage.

    The token pair is an immutable :class:`Tokens` value. Writers build a
    new value and swap it in under a lock; readers take the current value
    without locking, so reads never wait for each other or for a writer.
    ``refresh_guard`` is a separate asyncio lock held across the network
    refresh so that concurrent failures trigger a single refresh.
    """

    def __init__(self, client_id: str = '', client_secret: str = '',
                 access_token: str = '', refresh_token: str = '',
                 redirect_addresses: Optional[List[str]] = None):
        self._write_lock = threading.Lock()
        self._client_id = client_id
        self._client_secret = client_secret
        self._tokens = Tokens(access_token, refresh_token)
        self._redirect_addresses = tuple(redirect_addresses or ())
        self.refresh_guard = asyncio.Lock()

    @property
    def client_id(self) -> str:
        return self._client_id

    @property
    def client_secret(self) -> str:
        return self._client_secret

    @property
    def access_token(self) -> str:
        return self._tokens.access_token

    @property
    def refresh_token(self) -> str:
        return self._tokens.refresh_token

    @property
    def redirect_addresses(self) -> List[str]:
        return list(self._redirect_addresses)

    def snapshot(self) -> Tokens:
        return self._tokens

    def has_tokens(self) -> bool:
        tokens = self._tokens
        return bool(tokens.access_token or tokens.refresh_token)

    def set_access_token(self, access_token: str, refreshed_from: Optional[str] = None) -> bool:
        """Store a new access token.

        Args:
            access_token: The new access token
            refreshed_from: Refresh token the access token was obtained with;
                when given, the token is only stored if that refresh token
                is still current

        Returns:
            True if the token was stored
        """
        with self._write_lock:
            tokens = self._tokens
            if refreshed_from is not None and tokens.refresh_token != refreshed_from:
                return False
            self._tokens = replace(tokens, access_token=access_token)
        return True

    def replace_tokens(self, access_token: str, refresh_token: str) -> None:
        with self._write_lock:
            self._tokens = Tokens(access_token, refresh_token)
        logger.info("Stored new token pair")


class RefreshListener:
    """Receives notifications around an access token refresh."""

    def refresh_token(self) -> None:
        pass

    def refresh_token_complete(self) -> None:
        pass


async def refresh_access_token(credentials: CredentialStore, refresher: Any,
                               failed_token: str) -> str:
    """Refresh the access token at most once per expiry.

    The first caller to take ``refresh_guard`` performs the network
    refresh. Callers queued behind it see that the stored token differs
    from the one that failed for them and reuse the new token.

    Args:
        credentials: Shared credential store
        refresher: Object with an async ``refresh_token(refresh_token, client_id, client_secret)``
        failed_token: Access token the caller's request was refused with

    Returns:
        Access token to retry with

    Raises:
        CloudError: If the refresh call fails
    """
    async with credentials.refresh_guard:
        current = credentials.access_token
        if current != failed_token:
            logger.debug("Access token was already refreshed by another call")
            return current

        logger.info("Refreshing access token")
        refresh_token = credentials.refresh_token
        result = await refresher.refresh_token(
            refresh_token, credentials.client_id, credentials.client_secret
        )
        if not credentials.set_access_token(result.access_token, refreshed_from=refresh_token):
            # A new grant replaced the token pair while the refresh ran
            logger.info("Token pair replaced during refresh, using the new access token")
            return credentials.access_token
        logger.info("Access token refreshed")
        return result.access_token


async def call_with_refresh(credentials: CredentialStore, refresher: Any,
                            do_call: Callable[[str], Awaitable[T]],
                            listener: Optional[RefreshListener] = None) -> T:
    """Run an authorized call, refreshing the access token once on token errors.

    Args:
        credentials: Shared credential store
        refresher: Provider performing the refresh call
        do_call: Coroutine function taking the access token
        listener: Notified before and after a refresh

    Returns:
        Result of ``do_call``

    Raises:
        TokenError: If the refresh failed; the refresh error is attached
            as ``refresh_error``
        CloudError: Any other error of ``do_call``, unchanged
    """
    listener = listener or RefreshListener()
    token = credentials.access_token
    try:
        return await do_call(token)
    except TokenError as e:
        logger.info(f"Access token refused ({e}), refreshing")
        listener.refresh_token()
        try:
            new_token = await refresh_access_token(credentials, refresher, token)
        except CloudError as refresh_error:
            logger.error(f"Access token refresh failed: {refresh_error}")
            e.refresh_error = refresh_error
            raise e from refresh_error
        listener.refresh_token_complete()

    return await do_call(new_token)
