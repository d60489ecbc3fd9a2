"""cloudnav - browse and download files from cloud storage."""

__version__ = '0.1.0'
__license__ = 'MIT'

from .config import Config
from .clouds.dropbox import DropboxClient
from .storage_instance import StorageInstance

__all__ = ['Config', 'DropboxClient', 'StorageInstance']
