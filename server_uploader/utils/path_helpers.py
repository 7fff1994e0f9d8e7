"""Local and remote path normalisation, validation and quoting utilities."""

from __future__ import annotations

import logging
import os
import re
from pathlib import PurePosixPath

from server_uploader.errors import InvalidRemotePath, RemoteDirNotSet

logger = logging.getLogger(__name__)

# macOS metadata files that are never worth transferring.
METADATA_NAMES = (".DS_Store",)
METADATA_PREFIX = "._"

_CONTROL_CHARS = re.compile(r"[\r\n\t\x00]")


def is_os_metadata(path: str | os.PathLike[str]) -> bool:
    """Return True if the base name of *path* is a macOS metadata artefact."""
    base = os.path.basename(os.fspath(path).rstrip("/\\"))
    return base in METADATA_NAMES or base.startswith(METADATA_PREFIX)


def local_basename(path: str | os.PathLike[str]) -> str:
    """Base name of a local path, ignoring any trailing separators."""
    return os.path.basename(os.fspath(path).rstrip("/\\"))


def join_remote_path(base: str, sub: str) -> str:
    """Join *sub* onto *base* with exactly one ``/`` between them.

    An empty *sub* yields *base* without its trailing slashes.
    """
    clean_base = (base or "").rstrip("/")
    clean_sub = (sub or "").lstrip("/")
    return f"{clean_base}/{clean_sub}" if clean_sub else clean_base


def sanitize_remote_path(path: str | None) -> str:
    """Validate a user-supplied remote directory and collapse repeated slashes.

    Raises:
        RemoteDirNotSet: *path* is empty or whitespace.
        InvalidRemotePath: *path* contains newlines, tabs or null bytes.
    """
    if not isinstance(path, str) or not path.strip():
        raise RemoteDirNotSet(
            "Remote dir not set. Enter a server path like /srv/storage-media/uploads"
        )
    path = path.strip()
    if _CONTROL_CHARS.search(path):
        raise InvalidRemotePath(f"Remote dir contains invalid characters: {path!r}")
    return re.sub(r"/+", "/", path)


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to hand to a remote shell command.

    Rejects paths that contain null bytes or path-traversal sequences (``..``).
    """
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def shell_quote(value: str) -> str:
    """Single-quote *value* for a POSIX remote shell."""
    return "'" + str(value).replace("'", "'\"'\"'") + "'"
