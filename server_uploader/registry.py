"""Registry of transfers whose rsync process is currently alive."""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
from dataclasses import dataclass

from server_uploader.models import ConnectionProfile, TransferTask

logger = logging.getLogger(__name__)


@dataclass
class ActiveUpload:
    """Everything needed to interrupt a live transfer and clean up after it."""

    task: TransferTask
    process: subprocess.Popen
    remote_target: str
    profile: ConnectionProfile

    def interrupt(self) -> None:
        """Send SIGINT to the process; returns without waiting for it to exit."""
        if self.process.poll() is not None:
            logger.debug("Process for %s already exited", self.task.id)
            return
        self.process.send_signal(signal.SIGINT)


class UploadRegistry:
    """Maps task id -> :class:`ActiveUpload` for UPLOADING / CANCELLING tasks.

    Entries are added right after a process is spawned and removed when it
    exits.  Every operation is a single step under ``_lock``; ids are unique
    so tasks never contend for the same slot.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ActiveUpload] = {}
        self._lock = threading.Lock()

    def register(self, task_id: str, entry: ActiveUpload) -> None:
        """Add *entry*; a task id may only be registered once at a time."""
        with self._lock:
            if task_id in self._entries:
                raise ValueError(f"Upload {task_id} is already registered")
            self._entries[task_id] = entry
        logger.debug("Registered upload %s → %s", task_id, entry.remote_target)

    def unregister(self, task_id: str) -> ActiveUpload | None:
        """Remove and return the entry for *task_id* (None if absent)."""
        with self._lock:
            entry = self._entries.pop(task_id, None)
        if entry is not None:
            logger.debug("Unregistered upload %s", task_id)
        return entry

    def get(self, task_id: str) -> ActiveUpload | None:
        with self._lock:
            return self._entries.get(task_id)

    def all(self) -> list[tuple[str, ActiveUpload]]:
        """Snapshot of every active entry, in registration order."""
        with self._lock:
            return list(self._entries.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, task_id: object) -> bool:
        with self._lock:
            return task_id in self._entries
