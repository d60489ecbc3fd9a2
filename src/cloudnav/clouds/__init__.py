"""Cloud storage providers."""

from .base import CloudProvider, DownloadReporter, ListFolderReporter
from .dropbox import DropboxClient

# Provider implementations by the "type" of a storage entry
PROVIDERS = {
    'dropbox': DropboxClient,
}

__all__ = ['CloudProvider', 'DownloadReporter', 'ListFolderReporter', 'DropboxClient', 'PROVIDERS']
