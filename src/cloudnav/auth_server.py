#!/usr/bin/env python3
"""Local OAuth redirect listener and the helpers around it.

The flow is driven by the storage registry:

1. :class:`AuthCallbackServer` binds the first usable redirect address
   and reports ``AuthBound`` plus a :class:`Canceller` for shutdown.
2. :func:`wait_for_server` polls ``/ping`` until the listener answers.
3. :func:`open_browser` sends the user to the provider's consent page.
4. The provider redirects back; the listener checks the CSRF state,
   exchanges the code for tokens and reports ``AuthFinished``.
"""

import asyncio
import logging
import secrets
import socket
import webbrowser
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx
from aiohttp import web

from .bus import MessageBus
from .call_messages import (
    AuthBound,
    AuthBrowserOpened,
    AuthFinished,
    AuthRequestRejected,
    AuthServerReady,
    AuthServerShutdowner,
    AuthServerWaiting,
)
from .call_states import Canceller
from .clouds.base import CloudProvider
from .credentials import CredentialStore
from .errors import (
    BindError,
    BindFailedError,
    BrowserOpenError,
    CloudError,
    IncomingRequestError,
    LocalServerUnavailableError,
    ProviderAuthError,
)

logger = logging.getLogger(__name__)

SUCCESS_PAGE = (
    "<html><body><h1>Authentication successful!</h1>"
    "<p>You can close this window now.</p></body></html>"
)


def parse_address(address: str) -> Tuple[str, int]:
    """Split a ``host:port`` redirect address.

    Raises:
        ValueError: If the address has no host or no valid port
    """
    parts = urlsplit(f"//{address.strip()}")
    host = parts.hostname
    port = parts.port
    if not host or port is None:
        raise ValueError(f"expected host:port, got {address!r}")
    return host, port


def _netloc(host: str, port: int) -> str:
    if ':' in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def bind_first(addresses: List[str]) -> Tuple[Optional[socket.socket], Optional[Tuple[str, int]], List[BindError]]:
    """Bind a listening socket on the first address that accepts it.

    Returns:
        Tuple of (socket, (host, bound port), errors of the addresses tried
        before it). Socket and address are None when every address failed.
    """
    errors: List[BindError] = []
    for address in addresses:
        try:
            host, port = parse_address(address)
        except ValueError as e:
            logger.warning(f"Invalid redirect address {address!r}: {e}")
            errors.append(BindError(address, e))
            continue

        family = socket.AF_INET6 if ':' in host else socket.AF_INET
        try:
            sock = socket.create_server((host, port), family=family)
        except OSError as e:
            logger.warning(f"Can't bind {address}: {e}")
            errors.append(BindError(address, e))
            continue

        bound_port = sock.getsockname()[1]
        logger.debug(f"Bound {host}:{bound_port}")
        return sock, (host, bound_port), errors
    return None, None, errors


class AuthCallbackServer:
    """Receives the OAuth redirect for one authorization call."""

    SHUTDOWN_TIMEOUT = 2.0

    def __init__(self, call_id: int, bus: MessageBus, provider: CloudProvider,
                 credentials: CredentialStore, addresses: Optional[List[str]] = None,
                 state_token: Optional[str] = None):
        """Initialize callback server.

        Args:
            call_id: Id of the authorization call events are addressed to
            bus: Bus to report on
            provider: Provider that exchanges the authorization code
            credentials: Store receiving the new token pair
            addresses: Redirect addresses to try in order, defaults to the
                credential store's list
            state_token: CSRF token, generated when omitted
        """
        self.call_id = call_id
        self.bus = bus
        self.provider = provider
        self.credentials = credentials
        self.addresses = addresses if addresses is not None else credentials.redirect_addresses
        self.state_token = state_token or secrets.token_urlsafe(16)
        self.redirect_url: Optional[str] = None
        self._exchanged = False

    def _make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.provider.redirect_path, self._handle_redirect)
        app.router.add_get('/ping', self._handle_ping)
        return app

    async def run(self) -> None:
        """Serve until the canceller is signalled or the task is cancelled."""
        sock, address, errors = bind_first(self.addresses)
        if sock is None:
            error = BindFailedError(errors)
            logger.error(str(error))
            self.bus.send(self.call_id, AuthFinished(error=error))
            return

        host, port = address
        self.redirect_url = f"http://{_netloc(host, port)}{self.provider.redirect_path}"
        canceller = Canceller(asyncio.get_running_loop())
        runner = web.AppRunner(
            self._make_app(), access_log=None, shutdown_timeout=self.SHUTDOWN_TIMEOUT
        )
        try:
            await runner.setup()
            await web.SockSite(runner, sock).start()
            logger.info(f"Auth callback server listening on {self.redirect_url}")
            self.bus.send(self.call_id, AuthBound(self.redirect_url, address, self.state_token))
            self.bus.send(self.call_id, AuthServerShutdowner(canceller))
            await canceller.wait_signalled()
            logger.debug("Auth callback server shutdown requested")
        except OSError as e:
            logger.error(f"Auth callback server failed: {e}")
            self.bus.send(self.call_id, AuthFinished(error=BindFailedError(errors + [BindError(str(address), e)])))
        finally:
            await runner.cleanup()
            sock.close()
            canceller.mark_done()
            logger.info("Auth callback server stopped")

    async def _handle_ping(self, request: web.Request) -> web.Response:
        return web.Response(text='pong')

    async def _handle_redirect(self, request: web.Request) -> web.Response:
        query = request.query
        state = query.get('state', '')
        if not secrets.compare_digest(state.encode(), self.state_token.encode()):
            logger.error("State validation failed - possible CSRF attack")
            self._reject(IncomingRequestError("state token mismatch"))
            return web.Response(status=400, text="Invalid state parameter.")

        if 'error' in query:
            error = ProviderAuthError(query['error'], query.get('error_description', ''))
            logger.error(str(error))
            self.bus.send(self.call_id, AuthFinished(error=error))
            return web.Response(status=400, text=str(error))

        code = query.get('code')
        if not code:
            self._reject(IncomingRequestError("no authorization code in request"))
            return web.Response(status=400, text="Can't extract authorization code.")

        if self._exchanged:
            return web.Response(status=409, text="Authorization code was already received.")
        self._exchanged = True

        try:
            tokens = await self.provider.exchange_code(code, self.redirect_url)
        except CloudError as e:
            logger.error(f"Code exchange failed: {e}")
            self.bus.send(self.call_id, AuthFinished(error=e))
            return web.Response(status=500, text=f"Can't get tokens: {e}")

        self.credentials.replace_tokens(tokens.access_token, tokens.refresh_token)
        self.bus.send(self.call_id, AuthFinished())
        return web.Response(text=SUCCESS_PAGE, content_type='text/html')

    def _reject(self, error: IncomingRequestError) -> None:
        self.bus.send(self.call_id, AuthRequestRejected(error))


async def wait_for_server(bus: MessageBus, call_id: int, redirect_url: str,
                          state_token: str, timeout: float = 10.0,
                          interval: float = 0.1) -> None:
    """Poll the listener's ``/ping`` until it answers or ``timeout`` passes."""
    ping_url = urlunsplit(urlsplit(redirect_url)._replace(path='/ping', query=''))
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    bus.send(call_id, AuthServerWaiting(ping_url))

    async with httpx.AsyncClient(trust_env=False, timeout=1.0) as client:
        while True:
            try:
                response = await client.get(ping_url)
                if response.status_code == 200:
                    logger.debug(f"Local server at {ping_url} is up")
                    bus.send(call_id, AuthServerReady(redirect_url, state_token))
                    return
                logger.debug(f"Ping returned status {response.status_code}")
            except httpx.HTTPError as e:
                logger.debug(f"Ping failed: {e}")

            if loop.time() >= deadline:
                error = LocalServerUnavailableError(ping_url, timeout)
                logger.error(str(error))
                bus.send(call_id, AuthFinished(error=error))
                return
            await asyncio.sleep(interval)


async def open_browser(bus: MessageBus, call_id: int, auth_url: str,
                       opener: Callable[[str], bool] = webbrowser.open) -> None:
    """Open the authorization page without blocking the loop."""
    loop = asyncio.get_running_loop()
    error = None
    try:
        opened = await loop.run_in_executor(None, opener, auth_url)
    except Exception as e:
        opened, error = False, e

    if opened:
        logger.info("Opened browser for authorization")
        bus.send(call_id, AuthBrowserOpened(auth_url))
    else:
        logger.error(f"Can't open browser, visit: {auth_url}")
        bus.send(call_id, AuthFinished(error=BrowserOpenError(auth_url, error)))
