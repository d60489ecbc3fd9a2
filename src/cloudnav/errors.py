#!/usr/bin/env python3
"""Exception hierarchy for cloud calls.

Every error raised by a cloud call derives from :class:`CloudError`. The
``is_permanent`` flag drives the retry layer: transient errors (network
waits, truncated bodies, unparsable error bodies) are retried with
backoff, everything else surfaces immediately.
"""

from typing import Any, List, Optional


class CloudError(Exception):
    """Base class for errors produced by cloud calls.

    Attributes:
        action: Name of the operation that failed (e.g. ``dropbox.list_folder``)
    """

    permanent = True

    def __init__(self, message: str, action: str = ''):
        super().__init__(message)
        self.action = action

    @property
    def is_permanent(self) -> bool:
        """Whether retrying the call can not help."""
        return self.permanent


class ResponseWaitError(CloudError):
    """No response could be obtained (connect, TLS or timeout failure)."""

    permanent = False

    def __init__(self, action: str, error: Exception):
        super().__init__(f"{action}: waiting for response failed: {error}", action)
        self.error = error


class ResponseBodyAggregateError(CloudError):
    """The body of a successful response could not be read completely."""

    permanent = False

    def __init__(self, action: str, error: Exception):
        super().__init__(f"{action}: reading response body failed: {error}", action)
        self.error = error


class ErrorBodyAggregateError(CloudError):
    """The body of an error response could not be read completely."""

    permanent = False

    def __init__(self, action: str, status: int, error: Exception):
        super().__init__(
            f"{action}: reading error body failed (status {status}): {error}", action
        )
        self.status = status
        self.error = error


class ErrorBodyDeserializationError(CloudError):
    """An error response carried a body that is not the expected JSON envelope."""

    permanent = False

    def __init__(self, action: str, status: int, payload: str):
        super().__init__(
            f"{action}: can't decode error body (status {status}): {payload[:200]}", action
        )
        self.status = status
        self.payload = payload


class ResponseBodyDeserializationError(CloudError):
    """A successful response carried a body that does not match the schema."""

    def __init__(self, action: str, error: Exception, payload: str = ''):
        super().__init__(f"{action}: can't decode response body: {error}", action)
        self.error = error
        self.payload = payload


class UnknownApiErrorStructure(CloudError):
    """The error envelope decoded but its tag is not one we understand."""

    def __init__(self, action: str, error_summary: str, payload: str):
        super().__init__(f"{action}: unknown api error: {error_summary}", action)
        self.error_summary = error_summary
        self.payload = payload


class UnknownApiErrorResult(CloudError):
    """An error response did not match any known error format."""

    def __init__(self, action: str, status: int, payload: str):
        super().__init__(
            f"{action}: unknown error result (status {status}): {payload[:200]}", action
        )
        self.status = status
        self.payload = payload


class TokenError(CloudError):
    """The access token was refused.

    Recovered by refreshing the access token and retrying the call once.
    When that refresh fails the refresh error is attached as
    ``refresh_error`` and the token error is re-raised.
    """

    description = 'access token error'

    def __init__(self, action: str = ''):
        super().__init__(f"{action}: {self.description}" if action else self.description, action)
        self.refresh_error: Optional[CloudError] = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.refresh_error is not None:
            message = f"{message}, with refresh token error: {self.refresh_error}"
        return message


class ExpiredAccessToken(TokenError):
    description = 'access token expired'


class AccessTokenMalformed(TokenError):
    description = 'access token is malformed'


class InvalidAuthorizationValue(TokenError):
    description = 'invalid authorization value'


class CredentialError(CloudError):
    """Client id, client secret or refresh token are unusable.

    Only a new authorization flow can fix these.
    """


class RefreshTokenMalformed(CredentialError):
    def __init__(self, action: str = ''):
        super().__init__(f"{action}: refresh token is malformed", action)


class InvalidClientCredentials(CredentialError):
    def __init__(self, action: str = ''):
        super().__init__(f"{action}: invalid client_id or client_secret", action)


class InvalidGrant(CredentialError):
    """The provider refused the authorization code or refresh token."""

    def __init__(self, action: str, description: str):
        super().__init__(f"{action}: invalid grant: {description}", action)
        self.description = description


class MissingRefreshToken(CredentialError):
    def __init__(self, action: str = ''):
        super().__init__(f"{action}: no refresh token available", action)


class RoutineError(CloudError):
    """An operation-specific error reported by the provider."""


class PathNotFound(RoutineError):
    def __init__(self, action: str, path: str):
        super().__init__(f"{action}: path not found: {path!r}", action)
        self.path = path


class RemoteFileNotFound(RoutineError):
    def __init__(self, action: str, path: str):
        super().__init__(f"{action}: file not found: {path!r}", action)
        self.path = path


class DownloadError(CloudError):
    """Base class for failures while streaming a download to disk.

    Attributes:
        cloud_file: Remote path being downloaded
        local_file: Destination path on disk
    """

    def __init__(self, message: str, action: str, cloud_file: str, local_file: Any):
        super().__init__(f"{action}: {message} ({cloud_file!r} -> {local_file})", action)
        self.cloud_file = cloud_file
        self.local_file = local_file


class FileCreateError(DownloadError):
    def __init__(self, action: str, cloud_file: str, local_file: Any, error: Exception):
        super().__init__(f"can't create file: {error}", action, cloud_file, local_file)
        self.error = error


class FileWriteError(DownloadError):
    def __init__(self, action: str, cloud_file: str, local_file: Any, error: Exception):
        super().__init__(f"can't write file: {error}", action, cloud_file, local_file)
        self.error = error


class FileSyncError(DownloadError):
    def __init__(self, action: str, cloud_file: str, local_file: Any, error: Exception):
        super().__init__(f"can't sync file to disk: {error}", action, cloud_file, local_file)
        self.error = error


class NextChunkError(DownloadError):
    """The response stream broke while reading the body."""

    def __init__(self, action: str, cloud_file: str, local_file: Any,
                 position: int, error: Exception):
        super().__init__(
            f"can't read next chunk at byte {position}: {error}", action, cloud_file, local_file
        )
        self.position = position
        self.error = error


class HeaderNotFoundError(DownloadError):
    """The download response lacks the metadata header."""

    def __init__(self, action: str, cloud_file: str, local_file: Any,
                 header: str, status: int):
        super().__init__(
            f"header {header!r} not found in response (status {status})",
            action, cloud_file, local_file,
        )
        self.header = header
        self.status = status


class AuthError(CloudError):
    """Base class for failures of the browser authorization flow."""


class BindError(AuthError):
    """One redirect address could not be bound."""

    def __init__(self, address: str, error: Any):
        super().__init__(f"can't bind {address}: {error}", 'auth.bind')
        self.address = address
        self.error = error


class BindFailedError(AuthError):
    """None of the configured redirect addresses could be bound."""

    def __init__(self, errors: List[BindError]):
        if errors:
            details = '; '.join(str(e) for e in errors)
        else:
            details = 'no redirect addresses configured'
        super().__init__(f"can't bind local server: {details}", 'auth.bind')
        self.errors = errors


class LocalServerUnavailableError(AuthError):
    def __init__(self, url: str, timeout: float):
        super().__init__(
            f"local server at {url} did not become available within {timeout:g}s",
            'auth.wait_for_server',
        )
        self.url = url


class BrowserOpenError(AuthError):
    def __init__(self, auth_url: str, error: Any = None):
        message = "can't open web browser"
        if error is not None:
            message = f"{message}: {error}"
        super().__init__(message, 'auth.open_browser')
        self.auth_url = auth_url
        self.error = error


class ProviderAuthError(AuthError):
    """The provider redirected back with an ``error`` parameter."""

    def __init__(self, error: str, description: str = ''):
        super().__init__(
            f"authorization failed: {error}: {description}" if description
            else f"authorization failed: {error}",
            'auth.callback',
        )
        self.error = error
        self.description = description


class IncomingRequestError(AuthError):
    """A request to the callback server was rejected."""

    def __init__(self, reason: str):
        super().__init__(f"rejected incoming request: {reason}", 'auth.callback')
        self.reason = reason


class CallContractError(Exception):
    """An event arrived that does not match the state of its call."""
    pass


class RuntimeClosedError(Exception):
    """Raised when work is spawned on a runtime that has been shut down."""
    pass


class DownloadInProgressError(Exception):
    """Raised when a download to the same local file is already running."""

    def __init__(self, local_path: Any):
        super().__init__(f"{local_path} is already being downloaded")
        self.local_path = local_path
