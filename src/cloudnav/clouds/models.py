#!/usr/bin/env python3
"""Provider-neutral data returned by cloud calls."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse


@dataclass
class Item:
    """One entry of a folder listing."""

    name: str
    id: str
    is_folder: bool
    path_display: str = ''
    modified: Optional[datetime] = None
    size: Optional[int] = None

    @classmethod
    def from_dropbox(cls, entry: Dict[str, Any]) -> Optional['Item']:
        """Build an item from a Dropbox metadata entry.

        Returns:
            The item, or None for entries that are neither files nor folders
            (e.g. deleted entries)

        Raises:
            KeyError, TypeError, ValueError: If the entry is malformed
        """
        tag = entry['.tag']
        if tag == 'folder':
            return cls(
                name=entry['name'],
                id=entry['id'],
                is_folder=True,
                path_display=entry.get('path_display', ''),
            )
        if tag == 'file':
            return cls(
                name=entry['name'],
                id=entry['id'],
                is_folder=False,
                path_display=entry.get('path_display', ''),
                modified=isoparse(entry['server_modified']),
                size=int(entry['size']),
            )
        return None


@dataclass
class ListFolderResult:
    items: List[Item] = field(default_factory=list)


@dataclass
class ListFolderPage:
    items: List[Item]
    cursor: str
    has_more: bool


@dataclass
class DownloadResult:
    """Metadata of a downloaded file plus the local destination."""

    name: str
    size: int
    local_path: str = ''
    modified: Optional[datetime] = None


@dataclass
class TokenResult:
    """Tokens issued by the authorization code exchange."""

    access_token: str
    refresh_token: str
    account_id: str = ''


@dataclass
class RefreshTokenResult:
    access_token: str
    expires_in: Optional[int] = None


@dataclass
class ActiveFolder:
    path: str
    items: List[Item] = field(default_factory=list)


def format_size(size: Optional[int]) -> str:
    """Human readable size, empty for folders."""
    if size is None:
        return ''
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.1f} MB"
    return f"{size / (1024 * 1024 * 1024):.1f} GB"
