"""Exception taxonomy for server_uploader.

Validation errors are raised before any process is spawned.  Per-transfer
failures are captured by the pool and reported per task; they never abort
sibling transfers.
"""

from __future__ import annotations


class UploaderError(Exception):
    """Base class for every error raised by server_uploader."""


class ConfigError(UploaderError):
    """Malformed or missing configuration / profile data."""


class ProfileNotFound(UploaderError):
    """Requested profile name is not present in the configuration."""


class NoValidFiles(UploaderError):
    """Nothing left to upload after filtering the selection."""


class RemoteDirNotSet(UploaderError):
    """Destination remote directory is empty or whitespace."""


class InvalidRemotePath(UploaderError, ValueError):
    """Remote path contains control characters, traversal, or is unsafe to remove."""


class NotPermitted(UploaderError):
    """Remote root is not in the profile's whitelist."""


class PathConflict(UploaderError):
    """Remote path exists but is not a directory."""

    def __init__(self, path: str) -> None:
        """Initialise with the offending (resolved) remote path."""
        super().__init__(f"Remote path exists but is not a directory: {path}")
        self.path = path


class ExternalToolError(UploaderError):
    """A spawned process (ssh / rsync) exited with a nonzero status.

    Carries the exit code and the captured tail of the error stream so the
    original diagnostics reach the log sink untouched.
    """

    def __init__(self, tool: str, exit_code: int | None, stderr: str = "") -> None:
        """Initialise from the tool label, its exit code and stderr text."""
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr.strip()
        message = f"{tool} exit {exit_code}"
        if self.stderr:
            message = f"{message}\n{self.stderr}"
        super().__init__(message)


class ConnectionError(ExternalToolError):  # noqa: A001  (shadows built-in intentionally)
    """The remote-exec transport itself failed (ssh exit 255, socket errors)."""


class CancellationNotice(UploaderError):
    """Informational: a transfer was cancelled before or while running."""
