"""Resolve, create, list and delete directories on the remote host."""

from __future__ import annotations

import logging
from typing import Callable

from server_uploader.connection import RemoteShell
from server_uploader.errors import InvalidRemotePath, NotPermitted, PathConflict
from server_uploader.models import ConnectionProfile
from server_uploader.utils.path_helpers import shell_quote, validate_remote_path

logger = logging.getLogger(__name__)

ShellFactory = Callable[[ConnectionProfile], RemoteShell]

_NOT_A_DIR_EXIT = 2
_NOT_A_DIR_MARKER = "NOT_A_DIR:"
LIST_MAX_DEPTH = 2


def ensure_script(path: str) -> str:
    """Remote shell script that resolves *path* and makes sure it is a directory.

    Prints the resolved path on success; prints ``NOT_A_DIR:<path>`` and
    exits 2 when the path exists but is something else.
    """
    quoted = shell_quote(path)
    return (
        f"REAL={quoted}; "
        f"R2=$(readlink -f {quoted} 2>/dev/null); "
        'if [ -n "$R2" ]; then REAL="$R2"; fi; '
        'if [ -d "$REAL" ]; then echo "$REAL"; exit 0; fi; '
        f'if [ -e "$REAL" ]; then echo "{_NOT_A_DIR_MARKER}$REAL"; exit {_NOT_A_DIR_EXIT}; fi; '
        'mkdir -p -- "$REAL" && echo "$REAL"'
    )


class RemoteDirectoryManager:
    """Directory operations executed as one-shot remote commands.

    Each call opens its own remote-exec invocation through *shell_factory*
    (see :func:`server_uploader.connection.open_shell`).
    """

    def __init__(self, shell_factory: ShellFactory) -> None:
        self._shell_factory = shell_factory

    def ensure(self, profile: ConnectionProfile, path: str) -> str:
        """Make sure *path* exists as a directory and return its resolved form.

        Symlinks are followed, so the returned path may differ from *path*;
        callers must use the returned value from here on.

        Raises:
            PathConflict: *path* exists but is not a directory.
            ConnectionError: ssh could not reach the host.
            ExternalToolError: Any other remote failure.
        """
        logger.info("Ensuring remote dir exists: %s", path)
        result = self._shell_factory(profile).run(ensure_script(path))
        out = result.stdout.strip()

        if result.exit_code != 0 and (
            result.exit_code == _NOT_A_DIR_EXIT or out.startswith(_NOT_A_DIR_MARKER)
        ):
            conflict = out[len(_NOT_A_DIR_MARKER):] if out.startswith(_NOT_A_DIR_MARKER) else ""
            raise PathConflict(conflict or path)
        result.raise_for_status("ssh ensureRemoteDir")

        resolved = out.splitlines()[-1].strip() if out else path
        if resolved != path:
            logger.info("Remote dir %s resolved to %s", path, resolved)
        return resolved

    def list(self, profile: ConnectionProfile, root: str) -> list[str]:
        """List directories up to two levels below *root*, skipping dot-entries.

        *root* must be one of the profile's allowed roots (exact match);
        otherwise nothing is sent to the host.

        Raises:
            NotPermitted: *root* is not whitelisted for *profile*.
        """
        if root not in profile.remote_roots:
            raise NotPermitted(f"Root path not permitted for profile {profile.name!r}: {root}")

        cmd = (
            f"find {shell_quote(root)} -maxdepth {LIST_MAX_DEPTH} -type d "
            "-not -path '*/.*' -print"
        )
        result = self._shell_factory(profile).run(cmd)
        result.raise_for_status("ssh find")
        dirs = [line.strip() for line in result.stdout.split("\n") if line.strip()]
        logger.debug("Listed %d remote dirs under %s", len(dirs), root)
        return dirs

    def delete(self, profile: ConnectionProfile, path: str) -> str:
        """Recursively force-remove *path* on the remote host.

        Only for cancellation cleanup of paths computed by the orchestrator.

        Raises:
            InvalidRemotePath: *path* is empty, ``/`` or contains traversal.
        """
        stripped = (path or "").strip()
        if not stripped or stripped.rstrip("/") == "" or not validate_remote_path(stripped):
            raise InvalidRemotePath(f"Refusing to delete remote path: {path!r}")

        logger.warning("Deleting remote path: %s", stripped)
        result = self._shell_factory(profile).run(f"rm -rf -- {shell_quote(stripped)}")
        result.raise_for_status("ssh rm")
        return "DELETE_OK"

    def make_dir(self, profile: ConnectionProfile, path: str) -> None:
        """Plain ``mkdir -p`` of *path* (used before folder transfers)."""
        result = self._shell_factory(profile).run(f"mkdir -p -- {shell_quote(path)}")
        result.raise_for_status("ssh mkdir")
