#!/usr/bin/env python3
"""Abstract interface for cloud storage providers."""

from abc import ABC, abstractmethod
from pathlib import Path

from ..credentials import RefreshListener
from .models import DownloadResult, ListFolderResult, RefreshTokenResult, TokenResult


class ListFolderReporter(RefreshListener):
    """Receives progress of a folder listing."""

    def progress(self, count: int, note: str = None) -> None:
        pass


class DownloadReporter(RefreshListener):
    """Receives progress of a download."""

    def size_known(self, size: int) -> None:
        pass

    def progress(self, bytes_downloaded: int) -> None:
        pass


class CloudProvider(ABC):
    """Abstract base class for cloud storage providers.

    A provider is bound to one account's :class:`CredentialStore` and
    refreshes the access token transparently during data calls.
    """

    @property
    @abstractmethod
    def redirect_path(self) -> str:
        """Path component of the OAuth redirect URL (e.g. ``/dropbox``)."""
        pass

    @abstractmethod
    def authorize_url(self, redirect_url: str, state: str) -> str:
        """Build the URL the user visits to grant access.

        Args:
            redirect_url: Where the provider sends the browser back to
            state: CSRF token echoed back in the redirect

        Returns:
            Authorization URL
        """
        pass

    @abstractmethod
    async def list_folder(self, path: str, reporter: ListFolderReporter) -> ListFolderResult:
        """List a folder, following pagination.

        Args:
            path: Folder path relative to the storage root ("" for root)
            reporter: Receives the running item count after each page

        Returns:
            All items of the folder
        """
        pass

    @abstractmethod
    async def download_file(self, remote_path: str, local_path: Path,
                            reporter: DownloadReporter) -> DownloadResult:
        """Stream a remote file to disk.

        Args:
            remote_path: File path relative to the storage root
            local_path: Destination file
            reporter: Receives the size once known and the running byte count

        Returns:
            Metadata of the downloaded file
        """
        pass

    @abstractmethod
    async def exchange_code(self, code: str, redirect_url: str) -> TokenResult:
        """Exchange an authorization code for a token pair."""
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str, client_id: str,
                            client_secret: str) -> RefreshTokenResult:
        """Obtain a new access token."""
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        pass
