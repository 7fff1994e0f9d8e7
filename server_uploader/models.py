"""Data model for server_uploader: profiles, transfer tasks and progress events."""

from __future__ import annotations

import os
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Mapping

from server_uploader.errors import ConfigError

DEFAULT_PORT = 22
DEFAULT_REMOTE_ROOTS = ("/srv/storage-media", "/srv/storage-2md")

# Serialises every TransferTask state change across runner and orchestrator.
_TRANSITION_LOCK = threading.Lock()

# ---------------------------------------------------------------------------
# ConnectionProfile
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectionProfile:
    """Named bundle of remote connection parameters.

    Loaded once per session by :class:`~server_uploader.config.ConfigManager`
    and never mutated afterwards.
    """

    name: str
    host: str
    user: str
    identity_file: str
    port: int = DEFAULT_PORT
    remote_roots: tuple[str, ...] = DEFAULT_REMOTE_ROOTS
    remote_dir_default: str | None = None

    def __post_init__(self) -> None:
        """Reject profiles that cannot possibly authenticate."""
        for attr in ("host", "user", "identity_file"):
            value = getattr(self, attr)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"Profile {self.name!r} is missing '{attr}'")
        if isinstance(self.port, bool) or not isinstance(self.port, int):
            raise ConfigError(f"Profile {self.name!r} has a non-integer port: {self.port!r}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"Profile {self.name!r} has an out-of-range port: {self.port}")
        object.__setattr__(self, "identity_file", os.path.expanduser(self.identity_file))
        object.__setattr__(self, "remote_roots", tuple(self.remote_roots))

    @property
    def destination(self) -> str:
        """``user@host`` as understood by ssh and rsync."""
        return f"{self.user}@{self.host}"

    @classmethod
    def from_dict(
        cls,
        name: str,
        data: Mapping[str, Any],
        fallback_roots: tuple[str, ...] = DEFAULT_REMOTE_ROOTS,
    ) -> "ConnectionProfile":
        """Build a profile from its JSON config entry.

        Accepts the config file's camelCase keys (``identityFile``,
        ``remoteRoots``, ``remoteDirDefault``).
        """
        if not isinstance(data, Mapping):
            raise ConfigError(f"Profile {name!r} must be a JSON object")
        port = data.get("port", DEFAULT_PORT)
        if isinstance(port, str) and port.isdigit():
            port = int(port)
        roots = data.get("remoteRoots") or fallback_roots
        if isinstance(roots, str) or not all(isinstance(r, str) for r in roots):
            raise ConfigError(f"Profile {name!r} has invalid 'remoteRoots'")
        return cls(
            name=name,
            host=data.get("host", ""),
            user=data.get("user", ""),
            identity_file=data.get("identityFile", ""),
            port=port,
            remote_roots=tuple(roots),
            remote_dir_default=data.get("remoteDirDefault") or None,
        )


# ---------------------------------------------------------------------------
# Transfer tasks
# ---------------------------------------------------------------------------


class TransferKind(Enum):
    """What a task transfers."""

    FILE = auto()
    FOLDER = auto()


class TransferState(Enum):
    """Lifecycle state of a TransferTask."""

    QUEUED = auto()
    UPLOADING = auto()
    CANCELLING = auto()
    DONE = auto()
    ERROR = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (TransferState.DONE, TransferState.ERROR)


@dataclass(frozen=True)
class TransferProgress:
    """One progress snapshot decoded from an rsync ``--info=progress2`` line."""

    transferred_bytes: int
    percent: int
    speed: str
    eta: str


@dataclass
class TransferTask:
    """One file or folder synchronisation unit."""

    kind: TransferKind
    local_path: str
    remote_dir: str
    remote_target: str
    total_bytes: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: TransferState = TransferState.QUEUED
    transferred_bytes: int = 0
    percent: int = 0
    speed: str = "-"
    eta: str = "-"
    error: str | None = None

    @property
    def title(self) -> str:
        """Short label used in log lines."""
        return os.path.basename(self.local_path.rstrip("/\\")) or self.local_path

    def transition(self, state: TransferState, unless_terminal: bool = False) -> bool:
        """Move to *state*; returns False if nothing changed.

        With *unless_terminal*, a task already DONE / ERROR keeps its state.
        The check and the write happen under one lock.
        """
        with _TRANSITION_LOCK:
            if unless_terminal and self.state.is_terminal:
                return False
            self.state = state
            return True

    def apply_progress(self, progress: TransferProgress) -> None:
        """Record the latest progress snapshot on the task."""
        self.transferred_bytes = progress.transferred_bytes
        self.percent = progress.percent
        self.speed = progress.speed
        self.eta = progress.eta

    @property
    def progress_fraction(self) -> float:
        """Fraction transferred (0.0 – 1.0).

        Folders have no known total, so the tool's own percent is used.
        """
        if self.total_bytes > 0:
            return min(1.0, self.transferred_bytes / self.total_bytes)
        return self.percent / 100.0


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class TaskOutcome:
    """Settled result of one pool item: exactly one of value / error is set."""

    item: Any
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchResult:
    """Summary of a multi-file upload; partial failure is a normal outcome."""

    tasks: list[TransferTask]
    outcomes: list[TaskOutcome]

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    @property
    def failures(self) -> list[str]:
        """Failure reasons in input order, original diagnostics preserved."""
        return [str(o.error) for o in self.outcomes if not o.ok]


@dataclass
class CancelReport:
    """What :meth:`TransferOrchestrator.cancel_all` managed to do."""

    interrupted: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    cleanup_errors: dict[str, str] = field(default_factory=dict)
