#!/usr/bin/env python3
"""Dropbox API client for cloudnav."""

import json
import logging
import os
import ssl
import tempfile
import time
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import certifi
import httpx
from dateutil.parser import isoparse

from ..credentials import CredentialStore, RefreshListener, call_with_refresh
from ..errors import (
    AccessTokenMalformed,
    CloudError,
    ErrorBodyAggregateError,
    ErrorBodyDeserializationError,
    ExpiredAccessToken,
    FileCreateError,
    FileSyncError,
    FileWriteError,
    HeaderNotFoundError,
    InvalidAuthorizationValue,
    InvalidClientCredentials,
    InvalidGrant,
    MissingRefreshToken,
    NextChunkError,
    PathNotFound,
    RefreshTokenMalformed,
    RemoteFileNotFound,
    ResponseBodyAggregateError,
    ResponseBodyDeserializationError,
    ResponseWaitError,
    UnknownApiErrorResult,
    UnknownApiErrorStructure,
)
from ..path_utils import display_path, sanitize_for_log, to_api_path
from ..retry import RetryPolicy, retry_transient
from .base import CloudProvider, DownloadReporter, ListFolderReporter
from .models import (
    DownloadResult,
    Item,
    ListFolderPage,
    ListFolderResult,
    RefreshTokenResult,
    TokenResult,
)

logger = logging.getLogger(__name__)

# Error bodies Dropbox returns as plain text with status 400
ACCESS_TOKEN_MALFORMED = "The given OAuth 2 access token is malformed"
INVALID_AUTHORIZATION_VALUE = 'Invalid authorization value in HTTP header "Authorization"'
REFRESH_TOKEN_MALFORMED = "refresh token is malformed"
INVALID_CLIENT = "Invalid client_id or client_secret"

RoutineConverter = Callable[[str, Dict[str, Any]], Optional[CloudError]]


def _parse_json(payload: str) -> Any:
    try:
        return json.loads(payload)
    except ValueError:
        return None


def _path_not_found(error: Dict[str, Any]) -> bool:
    path = error.get('path')
    return (
        error.get('.tag') == 'path'
        and isinstance(path, dict)
        and path.get('.tag') == 'not_found'
    )


def classify_error(action: str, status: int, payload: str,
                   convert: Optional[RoutineConverter] = None) -> CloudError:
    """Map an unsuccessful Dropbox response to an exception.

    Args:
        action: Name of the failed operation
        status: HTTP status code
        payload: Response body text
        convert: Maps an operation-specific error tag to an exception, or None

    Returns:
        The exception to raise
    """
    if status == 400:
        if ACCESS_TOKEN_MALFORMED in payload:
            return AccessTokenMalformed(action)
        if INVALID_AUTHORIZATION_VALUE in payload:
            return InvalidAuthorizationValue(action)
        if REFRESH_TOKEN_MALFORMED in payload:
            return RefreshTokenMalformed(action)
        if INVALID_CLIENT in payload:
            return InvalidClientCredentials(action)

        data = _parse_json(payload)
        if isinstance(data, dict):
            oauth_error = data.get('error')
            if oauth_error == 'invalid_grant':
                return InvalidGrant(action, str(data.get('error_description', '')))
            if oauth_error == 'invalid_client':
                return InvalidClientCredentials(action)
            if isinstance(oauth_error, dict):
                return _classify_envelope(action, data, payload, convert)

        logger.error(f"{action}: unknown error result (status {status}): {sanitize_for_log(payload)}")
        return UnknownApiErrorResult(action, status, payload)

    data = _parse_json(payload)
    if not isinstance(data, dict) or not isinstance(data.get('error'), dict):
        logger.warning(f"{action}: can't decode error body (status {status}): {sanitize_for_log(payload[:500])}")
        return ErrorBodyDeserializationError(action, status, payload)
    return _classify_envelope(action, data, payload, convert)


def _classify_envelope(action: str, data: Dict[str, Any], payload: str,
                       convert: Optional[RoutineConverter]) -> CloudError:
    error = data['error']
    tag = error.get('.tag')
    if tag == 'expired_access_token':
        return ExpiredAccessToken(action)
    if tag == 'invalid_access_token':
        return AccessTokenMalformed(action)

    converted = convert(action, error) if convert else None
    if converted is not None:
        return converted

    summary = str(data.get('error_summary', ''))
    logger.error(f"{action}: unknown api error: {sanitize_for_log(payload)}")
    return UnknownApiErrorStructure(action, summary, payload)


class DropboxClient(CloudProvider):
    """Client for the Dropbox HTTP API."""

    API_BASE = "https://api.dropboxapi.com/2"
    CONTENT_BASE = "https://content.dropboxapi.com/2"
    TOKEN_URL = "https://api.dropbox.com/oauth2/token"
    AUTH_URL = "https://www.dropbox.com/oauth2/authorize"
    REDIRECT_PATH = "/dropbox"
    RESULT_HEADER = "dropbox-api-result"
    PAGE_LIMIT = 1000

    def __init__(self, credentials: CredentialStore,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 timeout: float = 30.0):
        """Initialize Dropbox client.

        Args:
            credentials: Credential store of the account
            transport: Custom httpx transport (tests use ``httpx.MockTransport``)
            retry_policy: Backoff for the token endpoint
            timeout: Read/write timeout in seconds
        """
        self.credentials = credentials
        self.retry_policy = retry_policy or RetryPolicy()
        self._http = httpx.AsyncClient(
            http2=True,
            verify=ssl.create_default_context(cafile=certifi.where()),
            transport=transport,
            timeout=httpx.Timeout(timeout, connect=10.0),
        )

    @property
    def redirect_path(self) -> str:
        return self.REDIRECT_PATH

    def authorize_url(self, redirect_url: str, state: str) -> str:
        params = {
            'client_id': self.credentials.client_id,
            'response_type': 'code',
            'state': state,
            'token_access_type': 'offline',
            'redirect_uri': redirect_url,
        }
        return f"{self.AUTH_URL}?{urlencode(params)}"

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _authorized(self, listener: RefreshListener, do_call: Callable) -> Any:
        return await call_with_refresh(self.credentials, self, do_call, listener)

    async def _send(self, action: str, request: httpx.Request,
                    auth: Optional[httpx.Auth] = None) -> httpx.Response:
        try:
            return await self._http.send(request, stream=True, auth=auth)
        except httpx.HTTPError as e:
            raise ResponseWaitError(action, e) from e

    async def _error_from_response(self, action: str, response: httpx.Response,
                                   convert: Optional[RoutineConverter] = None) -> CloudError:
        try:
            body = await response.aread()
        except httpx.HTTPError as e:
            return ErrorBodyAggregateError(action, response.status_code, e)
        payload = body.decode('utf-8', errors='replace')
        return classify_error(action, response.status_code, payload, convert)

    async def _request(self, action: str, request: httpx.Request,
                       decode: Callable[[Any], Any],
                       convert: Optional[RoutineConverter] = None,
                       auth: Optional[httpx.Auth] = None) -> Any:
        response = await self._send(action, request, auth)
        try:
            if not response.is_success:
                raise await self._error_from_response(action, response, convert)
            try:
                body = await response.aread()
            except httpx.HTTPError as e:
                raise ResponseBodyAggregateError(action, e) from e
        finally:
            await response.aclose()

        payload = body.decode('utf-8', errors='replace')
        try:
            return decode(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"{action}: unexpected response: {sanitize_for_log(payload[:500])}")
            raise ResponseBodyDeserializationError(action, e, payload) from e

    def _rpc(self, url: str, token: str, params: Dict[str, Any]) -> httpx.Request:
        return self._http.build_request(
            'POST', url, headers={'Authorization': f'Bearer {token}'}, json=params
        )

    @staticmethod
    def _decode_page(data: Dict[str, Any]) -> ListFolderPage:
        items = []
        for entry in data['entries']:
            item = Item.from_dropbox(entry)
            if item is None:
                logger.debug(f"Skipping entry of type {entry.get('.tag')}")
                continue
            items.append(item)
        return ListFolderPage(items=items, cursor=data['cursor'], has_more=bool(data['has_more']))

    async def _list_folder_page(self, token: str, path: str,
                                params: Dict[str, Any]) -> ListFolderPage:
        action = 'dropbox.list_folder'

        def convert(action: str, error: Dict[str, Any]) -> Optional[CloudError]:
            if _path_not_found(error):
                return PathNotFound(action, path)
            return None

        request = self._rpc(f"{self.API_BASE}/files/list_folder", token, params)
        return await self._request(action, request, self._decode_page, convert)

    async def _list_folder_continue(self, token: str, path: str, cursor: str) -> ListFolderPage:
        action = 'dropbox.list_folder_continue'

        def convert(action: str, error: Dict[str, Any]) -> Optional[CloudError]:
            if _path_not_found(error):
                return PathNotFound(action, path)
            return None

        request = self._rpc(f"{self.API_BASE}/files/list_folder/continue", token, {'cursor': cursor})
        return await self._request(action, request, self._decode_page, convert)

    async def list_folder(self, path: str, reporter: ListFolderReporter) -> ListFolderResult:
        params = {
            'path': to_api_path(path),
            'recursive': False,
            'include_deleted': False,
            'limit': self.PAGE_LIMIT,
        }
        page = await self._authorized(
            reporter, partial(self._list_folder_page, path=path, params=params)
        )
        items = list(page.items)
        reporter.progress(len(items))

        while page.has_more:
            page = await self._authorized(
                reporter, partial(self._list_folder_continue, path=path, cursor=page.cursor)
            )
            items.extend(page.items)
            reporter.progress(len(items))

        logger.info(f"Listed {len(items)} items in {display_path(path)}")
        return ListFolderResult(items=items)

    async def download_file(self, remote_path: str, local_path: Path,
                            reporter: DownloadReporter) -> DownloadResult:
        return await self._authorized(
            reporter,
            partial(self._download, remote_path=remote_path,
                    local_path=Path(local_path), reporter=reporter),
        )

    async def _download(self, token: str, remote_path: str, local_path: Path,
                        reporter: DownloadReporter) -> DownloadResult:
        action = 'dropbox.download_file'

        def convert(action: str, error: Dict[str, Any]) -> Optional[CloudError]:
            if _path_not_found(error):
                return RemoteFileNotFound(action, remote_path)
            return None

        request = self._http.build_request(
            'POST',
            f"{self.CONTENT_BASE}/files/download",
            headers={
                'Authorization': f'Bearer {token}',
                'Dropbox-API-Arg': json.dumps({'path': to_api_path(remote_path)}),
            },
        )
        response = await self._send(action, request)
        try:
            if not response.is_success:
                raise await self._error_from_response(action, response, convert)

            header = response.headers.get(self.RESULT_HEADER)
            if header is None:
                raise HeaderNotFoundError(
                    action, remote_path, local_path, self.RESULT_HEADER, response.status_code
                )
            try:
                meta = json.loads(header)
                result = DownloadResult(
                    name=meta['name'],
                    size=int(meta['size']),
                    local_path=str(local_path),
                    modified=isoparse(meta['server_modified']) if 'server_modified' in meta else None,
                )
            except (ValueError, KeyError, TypeError) as e:
                raise ResponseBodyDeserializationError(action, e, header) from e

            reporter.size_known(result.size)
            start = time.monotonic()
            written = await self._write_body(action, response, remote_path, local_path, reporter)
        finally:
            await response.aclose()

        elapsed = max(time.monotonic() - start, 1e-6)
        logger.info(
            f"Downloaded {display_path(remote_path)} to {local_path}: "
            f"{written} bytes in {elapsed:.2f}s ({written / elapsed / 1024:.1f} KB/s)"
        )
        return result

    async def _write_body(self, action: str, response: httpx.Response, remote_path: str,
                          local_path: Path, reporter: DownloadReporter) -> int:
        """Stream the body to a temporary file and move it into place.

        Every call writes its own uniquely named temporary file next to
        ``local_path``, so overlapping downloads of one target never touch
        each other's data.

        Returns:
            Number of bytes written
        """
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            # mkstemp creates the file with O_EXCL and mode 0600
            fd, temp_name = tempfile.mkstemp(
                dir=local_path.parent, prefix=local_path.name + '.', suffix='.part'
            )
        except OSError as e:
            raise FileCreateError(action, remote_path, local_path, e) from e
        temp_path = Path(temp_name)

        downloaded = 0
        completed = False
        try:
            with os.fdopen(fd, 'wb') as f:
                try:
                    async for chunk in response.aiter_bytes():
                        if not chunk:
                            continue
                        try:
                            f.write(chunk)
                        except OSError as e:
                            raise FileWriteError(action, remote_path, local_path, e) from e
                        downloaded += len(chunk)
                        reporter.progress(downloaded)
                except httpx.HTTPError as e:
                    raise NextChunkError(action, remote_path, local_path, downloaded, e) from e

                try:
                    f.flush()
                    os.fsync(f.fileno())
                except OSError as e:
                    raise FileSyncError(action, remote_path, local_path, e) from e

            try:
                temp_path.replace(local_path)
            except OSError as e:
                raise FileWriteError(action, remote_path, local_path, e) from e
            completed = True
        finally:
            if not completed:
                temp_path.unlink(missing_ok=True)
        return downloaded

    async def _token_request(self, action: str, form: Dict[str, str], client_id: str,
                             client_secret: str, decode: Callable[[Any], Any]) -> Any:
        request = self._http.build_request('POST', self.TOKEN_URL, data=form)
        return await self._request(
            action, request, decode, auth=httpx.BasicAuth(client_id, client_secret)
        )

    @retry_transient
    async def exchange_code(self, code: str, redirect_url: str) -> TokenResult:
        """Exchange authorization code for a token pair.

        Args:
            code: Authorization code from the redirect
            redirect_url: Redirect URL used in the authorization request

        Returns:
            Access and refresh token
        """
        form = {
            'code': code,
            'grant_type': 'authorization_code',
            'redirect_uri': redirect_url,
        }
        result = await self._token_request(
            'dropbox.exchange_code', form,
            self.credentials.client_id, self.credentials.client_secret,
            lambda data: TokenResult(
                access_token=data['access_token'],
                refresh_token=data['refresh_token'],
                account_id=data.get('account_id', ''),
            ),
        )
        logger.info("Authorization code exchanged for tokens")
        return result

    @retry_transient
    async def refresh_token(self, refresh_token: str, client_id: str,
                            client_secret: str) -> RefreshTokenResult:
        """Obtain a new access token with the refresh token.

        Raises:
            MissingRefreshToken: If no refresh token is stored
        """
        action = 'dropbox.refresh_token'
        if not refresh_token:
            raise MissingRefreshToken(action)
        form = {'grant_type': 'refresh_token', 'refresh_token': refresh_token}
        return await self._token_request(
            action, form, client_id, client_secret,
            lambda data: RefreshTokenResult(
                access_token=data['access_token'],
                expires_in=data.get('expires_in'),
            ),
        )
