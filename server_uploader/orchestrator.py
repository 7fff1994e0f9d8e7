"""Top-level coordinator for uploads.

Validates the request, makes sure the remote destination exists, fans the
work out over a :class:`~server_uploader.pool.ConcurrencyPool`, and exposes
best-effort cancellation of everything that is running.
"""

from __future__ import annotations

import contextlib
import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from server_uploader.connection import open_shell
from server_uploader.errors import NoValidFiles, UploaderError
from server_uploader.models import (
    BatchResult,
    CancelReport,
    ConnectionProfile,
    TaskOutcome,
    TransferKind,
    TransferProgress,
    TransferState,
    TransferTask,
)
from server_uploader.pool import ConcurrencyPool, validate_limit
from server_uploader.registry import UploadRegistry
from server_uploader.remote_dirs import RemoteDirectoryManager
from server_uploader.runner import TransferProcessRunner
from server_uploader.utils.path_helpers import (
    is_os_metadata,
    join_remote_path,
    local_basename,
    sanitize_remote_path,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 3

ProgressCallback = Callable[[TransferTask, TransferProgress], None]
StateCallback = Callable[[TransferTask], None]
LogCallback = Callable[[str], None]


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass
class SessionState:
    """Per-session memory owned by one orchestrator instance."""

    remote_dir_default: str = ""
    remote_dir_by_profile: dict[str, str] = field(default_factory=dict)

    def remember_remote_dir(self, profile: ConnectionProfile, remote_dir: str) -> None:
        self.remote_dir_by_profile[profile.name] = remote_dir

    def remote_dir_for(self, profile: ConnectionProfile) -> str:
        """Last used dir for *profile*, else its default, else the global default."""
        return (
            self.remote_dir_by_profile.get(profile.name)
            or profile.remote_dir_default
            or self.remote_dir_default
            or ""
        )


# ---------------------------------------------------------------------------
# TransferOrchestrator
# ---------------------------------------------------------------------------


class TransferOrchestrator:
    """Coordinates file and folder uploads for one operator session.

    Callbacks may be invoked from pool worker threads; a GUI caller must
    marshal them onto its own event loop.
    """

    def __init__(
        self,
        settings: Mapping[str, Any] | None = None,
        session: SessionState | None = None,
        remote_dirs: RemoteDirectoryManager | None = None,
        registry: UploadRegistry | None = None,
        runner: TransferProcessRunner | None = None,
        on_progress: ProgressCallback | None = None,
        on_state_change: StateCallback | None = None,
        on_log: LogCallback | None = None,
    ) -> None:
        """Wire the collaborators; anything not supplied is built from *settings*.

        Args:
            settings: Merged config settings (see ``config.DEFAULT_SETTINGS``).
            session: Remote-dir memory; a fresh one is created if omitted.
            on_progress: ``(task, progress)`` for every decoded progress line.
            on_state_change: ``(task)`` after every lifecycle transition.
            on_log: Receives human-readable log lines, including rsync output
                that is not progress.
        """
        self.settings: dict[str, Any] = dict(settings or {})
        self.session = session or SessionState()
        self.max_parallel = self.settings.get("max_parallel", DEFAULT_MAX_PARALLEL)
        validate_limit(self.max_parallel)
        self.on_progress = on_progress
        self.on_state_change = on_state_change
        self.on_log = on_log

        self.registry = registry or UploadRegistry()
        self.remote_dirs = remote_dirs or RemoteDirectoryManager(
            lambda profile: open_shell(profile, self.settings)
        )
        self.runner = runner or TransferProcessRunner(
            self.registry, self.remote_dirs, self.settings
        )
        self.runner.on_state_change = self._emit_state

        # One event per upload call in progress; cancel_all sets them all.
        self._cancel_events: set[threading.Event] = set()
        self._cancel_events_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connectivity / browsing
    # ------------------------------------------------------------------

    def test_connection(self, profile: ConnectionProfile) -> str:
        """Run the connectivity probe; returns ``CONNECT_OK``, user and hostname."""
        self._log(f"Host: {profile.destination}:{profile.port}")
        self._log("Running SSH test...")
        return open_shell(profile, self.settings).probe()

    def list_remote_dirs(self, profile: ConnectionProfile, root: str) -> list[str]:
        """Directories under a whitelisted *root* (see RemoteDirectoryManager.list)."""
        return self.remote_dirs.list(profile, root)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    def upload_files(
        self,
        profile: ConnectionProfile,
        local_paths: Iterable[str],
        remote_dir: str,
    ) -> BatchResult:
        """Upload several files into *remote_dir* with bounded parallelism.

        Per-file failures are reported in the result, never raised.

        Raises:
            NoValidFiles: Nothing left after dropping macOS metadata files.
            RemoteDirNotSet: *remote_dir* is blank.
            PathConflict: *remote_dir* exists on the host but is not a directory.
        """
        files = [p for p in local_paths if not is_os_metadata(p)]
        if not files:
            raise NoValidFiles(
                "No valid files selected (macOS metadata files were filtered out)."
            )

        remote_dir = sanitize_remote_path(remote_dir)
        self.session.remember_remote_dir(profile, remote_dir)

        with self._cancellable() as cancel_event:
            self._log("Ensuring remote dir exists...")
            resolved = self.remote_dirs.ensure(profile, remote_dir)
            self._log(f"Remote dir: {resolved}")
            self._log(f"Files selected: {len(files)}")

            tasks = [self._make_file_task(path, resolved) for path in files]
            for task in tasks:
                self._emit_state(task)

            total = len(tasks)
            positions = {task.id: index for index, task in enumerate(tasks, start=1)}

            def _upload_one(task: TransferTask) -> str:
                index = positions[task.id]
                self._log("---")
                self._log(f"Uploading ({index}/{total}): {task.local_path}")
                try:
                    result = self._run_task(profile, task, cancel_event)
                except UploaderError as exc:
                    self._log(f"ERROR ({index}/{total}): {exc}")
                    raise
                self._log(f"Result: {result}")
                return result

            pool = ConcurrencyPool(self.max_parallel, cancel_event=cancel_event)
            outcomes = pool.run_all(tasks, _upload_one)

        for outcome in outcomes:
            task = outcome.item
            if outcome.ok:
                continue
            if task.transition(TransferState.ERROR, unless_terminal=True):
                task.error = str(outcome.error)
                self._emit_state(task)

        batch = BatchResult(tasks=tasks, outcomes=outcomes)
        self._log("---")
        if batch.failed:
            self._log(f"Finished with errors: {batch.failed}/{total}")
            for reason in batch.failures:
                self._log(reason)
        else:
            self._log("All uploads finished.")
        return batch

    def upload_folder(
        self,
        profile: ConnectionProfile,
        local_dir: str,
        remote_dir: str,
    ) -> TaskOutcome:
        """Upload the contents of *local_dir* into ``remote_dir/<folder name>``.

        The folder is not pre-scanned, so ``total_bytes`` stays 0 and progress
        comes from rsync's own percent.

        Raises:
            NoValidFiles: *local_dir* is not an existing directory.
            RemoteDirNotSet: *remote_dir* is blank.
            PathConflict: *remote_dir* exists on the host but is not a directory.
        """
        remote_dir = sanitize_remote_path(remote_dir)
        folder_name = local_basename(local_dir)
        if not folder_name or not os.path.isdir(local_dir):
            raise NoValidFiles(f"Not a local directory: {local_dir}")
        self.session.remember_remote_dir(profile, remote_dir)

        with self._cancellable() as cancel_event:
            self._log("Ensuring remote dir exists...")
            resolved = self.remote_dirs.ensure(profile, remote_dir)

            task = TransferTask(
                kind=TransferKind.FOLDER,
                local_path=local_dir,
                remote_dir=resolved,
                remote_target=join_remote_path(resolved, folder_name),
                total_bytes=0,
            )
            self._emit_state(task)
            self._log(f"Remote dir: {resolved}")
            self._log(f"Uploading folder: {local_dir}")

            outcome = TaskOutcome(item=task)
            try:
                outcome.value = self._run_task(profile, task, cancel_event)
            except UploaderError as exc:
                outcome.error = exc
                self._log(f"ERROR folder: {exc}")
                return outcome

        self._log(f"Result: {outcome.value}")
        self._log("Folder upload finished.")
        return outcome

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_all(self, delete_remote: bool = False) -> CancelReport:
        """Interrupt every running upload; optionally delete their remote targets.

        Uploads whose rsync has not been spawned yet (queued, or still in
        the folder ``mkdir``) never start and settle as ERROR with a
        CancellationNotice; nothing was written for them, so they get no
        remote cleanup.  Returns without waiting for the interrupted
        processes to exit.
        """
        report = CancelReport()
        with self._cancel_events_lock:
            events = list(self._cancel_events)
        for event in events:
            event.set()

        entries = self.runner.active_uploads()
        if not entries:
            if events:
                self._log("No rsync process running; pending uploads will not start")
            else:
                self._log("No uploads in progress")
            return report

        self._log(f"Cancelling {len(entries)} upload(s) in progress...")
        for upload_id, entry in entries:
            try:
                interrupted = self.runner.cancel(upload_id)
            except OSError as exc:
                self._log(f"ERROR interrupting ({upload_id}): {exc}")
                continue
            if interrupted:
                report.interrupted.append(upload_id)

        if delete_remote:
            for upload_id, entry in entries:
                if not entry.remote_target:
                    continue
                try:
                    result = self.remote_dirs.delete(entry.profile, entry.remote_target)
                except UploaderError as exc:
                    report.cleanup_errors[upload_id] = str(exc)
                    self._log(f"ERROR deleting remote ({upload_id}): {exc}")
                    continue
                report.deleted.append(upload_id)
                self._log(f"Remote deleted ({upload_id}): {result}")
        return report

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _make_file_task(self, local_path: str, remote_dir: str) -> TransferTask:
        try:
            total_bytes = os.path.getsize(local_path)
        except OSError:
            total_bytes = 0
        return TransferTask(
            kind=TransferKind.FILE,
            local_path=local_path,
            remote_dir=remote_dir,
            remote_target=join_remote_path(remote_dir, local_basename(local_path)),
            total_bytes=total_bytes,
        )

    def _run_task(
        self, profile: ConnectionProfile, task: TransferTask, cancel_event: threading.Event
    ) -> str:
        return self.runner.run(
            profile,
            task,
            on_progress=self._emit_progress,
            on_log=self._log,
            cancel_event=cancel_event,
        )

    @contextlib.contextmanager
    def _cancellable(self):
        """Yield a cancel event that ``cancel_all`` can reach while the block runs."""
        event = threading.Event()
        with self._cancel_events_lock:
            self._cancel_events.add(event)
        try:
            yield event
        finally:
            with self._cancel_events_lock:
                self._cancel_events.discard(event)

    def _emit_progress(self, task: TransferTask, progress: TransferProgress) -> None:
        if self.on_progress:
            try:
                self.on_progress(task, progress)
            except Exception:
                logger.exception("Exception in on_progress callback")

    def _emit_state(self, task: TransferTask) -> None:
        if self.on_state_change:
            try:
                self.on_state_change(task)
            except Exception:
                logger.exception("Exception in on_state_change callback")

    def _log(self, line: str) -> None:
        logger.debug(line)
        if self.on_log:
            try:
                self.on_log(line)
            except Exception:
                logger.exception("Exception in on_log callback")
