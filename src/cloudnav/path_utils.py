#!/usr/bin/env python3
"""Path utilities for cloudnav.

Storage paths are relative, slash separated and never start with a
slash: ``""`` is the root, ``"Photos/2024"`` a nested folder.
"""

import logging
import re
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    """Raised when a security violation is detected."""
    pass


def normalize_path(path: str) -> str:
    """Strip surrounding slashes and collapse empty components."""
    return '/'.join(part for part in path.split('/') if part)


def parent_path(path: str) -> str:
    """Return the parent of a storage path; the root's parent is the root."""
    path = normalize_path(path)
    if '/' not in path:
        return ''
    return path.rsplit('/', 1)[0]


def append_path(path: str, name: str) -> str:
    """Join a folder path and an entry name."""
    path = normalize_path(path)
    name = name.strip('/')
    if not path:
        return name
    return f"{path}/{name}"


def to_api_path(path: str) -> str:
    """Convert a storage path to Dropbox API form.

    Args:
        path: Storage path ("" for the root)

    Returns:
        ``""`` for the root, otherwise the path with a leading slash
    """
    path = normalize_path(path)
    return f"/{path}" if path else ''


def display_path(path: str) -> str:
    return f"/{normalize_path(path)}"


def validate_download_path(remote_path: str, download_dir: Path) -> Path:
    """Compute the local destination for a remote file.

    Only the final component of the remote path is used so remote names
    can never place files outside ``download_dir``.

    Args:
        remote_path: Storage path of the file
        download_dir: Directory downloads are written to

    Returns:
        Absolute destination path

    Raises:
        SecurityError: If the name is unsafe or escapes the download directory
    """
    name = PurePosixPath(normalize_path(remote_path)).name
    if name in ('', '.', '..') or '\\' in name or '\x00' in name:
        raise SecurityError(f"Unsafe file name in remote path: {remote_path!r}")

    base = download_dir.expanduser().resolve()
    candidate = base / name
    if candidate.is_symlink():
        raise SecurityError(f"Symlink detected at destination: {candidate}")

    full_path = candidate.resolve()
    try:
        full_path.relative_to(base)
    except ValueError:
        raise SecurityError(f"Path traversal detected: {remote_path}")
    return full_path


def sanitize_for_log(text: str) -> str:
    """Remove sensitive data from log output.

    Args:
        text: Text to sanitize

    Returns:
        Sanitized text with sensitive data redacted
    """
    text = re.sub(r'(access_token|refresh_token|code|client_secret)["\']?\s*[:=]\s*["\']?[\w\-\.]+',
                  r'\1=***REDACTED***', text, flags=re.IGNORECASE)
    text = re.sub(r'Bearer\s+[\w\-\.]+', 'Bearer ***REDACTED***', text, flags=re.IGNORECASE)
    return text
