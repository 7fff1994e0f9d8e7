"""Spawns and supervises one rsync process per transfer task.

The runner builds the rsync command line, registers the live process with
the :class:`~server_uploader.registry.UploadRegistry`, pumps stdout through
:class:`~server_uploader.progress.LineBuffer` and reports progress / log
lines through callbacks.  Cancellation is cooperative: SIGINT is sent and
the task only becomes terminal once the process actually exits.
"""

from __future__ import annotations

import collections
import logging
import os
import subprocess
import threading
from typing import Any, Callable, Mapping

from server_uploader.errors import CancellationNotice, ExternalToolError
from server_uploader.models import (
    ConnectionProfile,
    TransferKind,
    TransferProgress,
    TransferState,
    TransferTask,
)
from server_uploader.progress import LineBuffer, parse_progress_line
from server_uploader.registry import ActiveUpload, UploadRegistry
from server_uploader.remote_dirs import RemoteDirectoryManager

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TransferTask, TransferProgress], None]
LogCallback = Callable[[str], None]
StateCallback = Callable[[TransferTask], None]

CHUNK_SIZE = 64 * 1024
RSYNC_CANDIDATES = (
    "/opt/homebrew/bin/rsync",
    "/usr/local/bin/rsync",
    "/usr/bin/rsync",
)
EXCLUDES = (".DS_Store", "._*")
CANCELLED_BEFORE_START = "Cancelled before rsync started"


def resolve_rsync_binary(configured: str | None = None) -> str:
    """Pick the rsync executable: configured path, well-known locations, PATH."""
    if configured:
        return configured
    for candidate in RSYNC_CANDIDATES:
        if os.path.exists(candidate):
            return candidate
    return "rsync"


class TransferProcessRunner:
    """Runs rsync for a single :class:`TransferTask` at a time per call.

    ``run`` is blocking and meant to be called from a pool worker thread;
    ``cancel`` may be called from any thread.
    """

    def __init__(
        self,
        registry: UploadRegistry,
        remote_dirs: RemoteDirectoryManager,
        settings: Mapping[str, Any] | None = None,
        on_state_change: StateCallback | None = None,
    ) -> None:
        """Initialise the runner.

        Args:
            registry: Where live processes are recorded for cancellation.
            remote_dirs: Used for the ``mkdir`` that precedes folder uploads.
            settings: ``rsync_path``, ``ssh_path``, ``stderr_tail_lines`` and
                ``rsync_protect_args`` are honoured.
            on_state_change: Called after every task state transition.
        """
        settings = settings or {}
        self._registry = registry
        self._remote_dirs = remote_dirs
        self.on_state_change = on_state_change
        self.rsync_path = resolve_rsync_binary(settings.get("rsync_path"))
        self.ssh_path = settings.get("ssh_path") or "ssh"
        self.stderr_tail_lines = int(settings.get("stderr_tail_lines", 20))
        self.protect_args = bool(settings.get("rsync_protect_args", False))
        self._version_logged = False
        self._version_lock = threading.Lock()
        # Held while spawning + registering, so a cancel sees either no process
        # or a registered one.
        self._spawn_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Command line
    # ------------------------------------------------------------------

    def build_argv(self, profile: ConnectionProfile, task: TransferTask) -> list[str]:
        """rsync argument vector for *task*.

        Folders copy the *contents* of the local directory (trailing slash on
        the source) into the already created ``remote_target``.
        """
        transport = f"{self.ssh_path} -i {profile.identity_file} -p {profile.port}"
        argv = [self.rsync_path, "-a"]
        if self.protect_args:
            argv.append("-s")
        argv += ["--human-readable", "--info=progress2"]
        argv += [f"--exclude={pattern}" for pattern in EXCLUDES]
        argv += ["-e", transport]

        if task.kind is TransferKind.FOLDER:
            source = task.local_path.rstrip("/") + "/"
            dest = task.remote_target.rstrip("/")
        else:
            source = task.local_path
            dest = task.remote_dir.rstrip("/")
        argv += [source, f"{profile.destination}:{dest}/"]
        return argv

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(
        self,
        profile: ConnectionProfile,
        task: TransferTask,
        on_progress: ProgressCallback | None = None,
        on_log: LogCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> str:
        """Transfer *task* and block until rsync exits.

        Returns ``"UPLOAD_OK"`` on exit status 0.  If *cancel_event* is set
        before rsync has been spawned, nothing further is started.

        Raises:
            CancellationNotice: *cancel_event* was set before rsync started.
            ExternalToolError: mkdir (folders) or rsync failed, or rsync could
                not be started.  Carries the stderr tail.
        """
        self._set_state(task, TransferState.UPLOADING)

        if task.kind is TransferKind.FOLDER:
            self._raise_if_cancelled(task, cancel_event)
            try:
                self._remote_dirs.make_dir(profile, task.remote_target)
            except ExternalToolError as exc:
                self._fail(task, str(exc))
                raise

        self._log_rsync_version(on_log)
        proc = self._spawn(profile, task, cancel_event)
        try:
            exit_code, stderr_tail = self._pump(proc, task, on_progress, on_log)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
            self._registry.unregister(task.id)

        if exit_code == 0:
            task.percent = 100
            if task.total_bytes:
                task.transferred_bytes = task.total_bytes
            task.eta = "0:00:00"
            self._set_state(task, TransferState.DONE)
            logger.info("Upload finished: %s → %s", task.local_path, task.remote_target)
            return "UPLOAD_OK"

        error = ExternalToolError("rsync", exit_code, stderr_tail)
        self._fail(task, str(error))
        raise error

    def cancel(self, task_id: str) -> bool:
        """Interrupt the process of *task_id*; returns immediately.

        Returns False if the task is not currently running.  The task moves
        to CANCELLING and becomes DONE / ERROR only when its process exits.
        """
        entry = self._registry.get(task_id)
        if entry is None:
            return False
        entry.interrupt()
        self._set_state(entry.task, TransferState.CANCELLING, unless_terminal=True)
        logger.info("Interrupt sent to upload %s (%s)", task_id, entry.task.title)
        return True

    def active_uploads(self) -> list[tuple[str, ActiveUpload]]:
        """Registry snapshot that no spawn can be halfway through."""
        with self._spawn_lock:
            return self._registry.all()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _spawn(
        self,
        profile: ConnectionProfile,
        task: TransferTask,
        cancel_event: threading.Event | None,
    ) -> subprocess.Popen:
        """Start rsync and register it, unless the operation was cancelled."""
        argv = self.build_argv(profile, task)
        logger.debug("Spawning: %s", " ".join(argv))
        try:
            with self._spawn_lock:
                if cancel_event is not None and cancel_event.is_set():
                    proc = None
                else:
                    proc = subprocess.Popen(
                        argv,
                        stdin=subprocess.DEVNULL,
                        stdout=subprocess.PIPE,
                        stderr=subprocess.PIPE,
                    )
                    self._registry.register(
                        task.id,
                        ActiveUpload(
                            task=task, process=proc, remote_target=task.remote_target, profile=profile
                        ),
                    )
        except OSError as exc:
            self._fail(task, f"could not start {self.rsync_path}: {exc}")
            raise ExternalToolError("rsync", None, str(exc)) from exc

        if proc is None:
            self._fail(task, CANCELLED_BEFORE_START)
            raise CancellationNotice(CANCELLED_BEFORE_START)
        return proc

    def _raise_if_cancelled(self, task: TransferTask, cancel_event: threading.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            self._fail(task, CANCELLED_BEFORE_START)
            raise CancellationNotice(CANCELLED_BEFORE_START)

    def _pump(
        self,
        proc: subprocess.Popen,
        task: TransferTask,
        on_progress: ProgressCallback | None,
        on_log: LogCallback | None,
    ) -> tuple[int, str]:
        """Read stdout to EOF while stderr is drained on a helper thread."""
        tail: collections.deque[str] = collections.deque(maxlen=self.stderr_tail_lines)
        stderr_thread = threading.Thread(
            target=self._drain_stderr,
            args=(proc.stderr, tail),
            name=f"rsync-stderr-{task.id[:8]}",
            daemon=True,
        )
        stderr_thread.start()

        buffer = LineBuffer()
        while True:
            chunk = proc.stdout.read1(CHUNK_SIZE)
            if not chunk:
                break
            for line in buffer.feed(chunk):
                self._dispatch(line, task, on_progress, on_log)
        for line in buffer.flush():
            self._dispatch(line, task, on_progress, on_log)

        exit_code = proc.wait()
        stderr_thread.join()
        proc.stdout.close()
        return exit_code, "\n".join(tail)

    @staticmethod
    def _drain_stderr(stream, tail: collections.deque[str]) -> None:
        """Keep the last few stderr lines; the stream must never fill up."""
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    tail.append(line)
        finally:
            stream.close()

    def _dispatch(
        self,
        line: str,
        task: TransferTask,
        on_progress: ProgressCallback | None,
        on_log: LogCallback | None,
    ) -> None:
        """Route one complete stdout line to the progress or log callback."""
        progress = parse_progress_line(line)
        if progress is None:
            if on_log:
                try:
                    on_log(line)
                except Exception:
                    logger.exception("Exception in on_log callback")
            else:
                logger.info("rsync: %s", line)
            return

        task.apply_progress(progress)
        if on_progress:
            try:
                on_progress(task, progress)
            except Exception:
                logger.exception("Exception in on_progress callback")

    def _log_rsync_version(self, on_log: LogCallback | None) -> None:
        """Log the rsync binary and the first line of ``--version`` once."""
        with self._version_lock:
            if self._version_logged:
                return
            self._version_logged = True

        lines = [f"Rsync bin: {self.rsync_path}"]
        try:
            out = subprocess.run(
                [self.rsync_path, "--version"],
                capture_output=True,
                text=True,
                errors="replace",
                stdin=subprocess.DEVNULL,
            ).stdout
            first_line = out.split("\n")[0].strip()
            if first_line:
                lines.append(f"Rsync version: {first_line}")
        except OSError as exc:
            lines.append(f"ERROR checking rsync version: {exc}")

        for line in lines:
            logger.info(line)
            if on_log:
                try:
                    on_log(line)
                except Exception:
                    logger.exception("Exception in on_log callback")

    def _fail(self, task: TransferTask, message: str) -> None:
        task.error = message
        task.speed = "-"
        task.eta = "-"
        self._set_state(task, TransferState.ERROR)
        logger.error("Upload failed for %s: %s", task.local_path, message)

    def _set_state(
        self, task: TransferTask, state: TransferState, unless_terminal: bool = False
    ) -> bool:
        """Update *task* and fire the state-change callback.

        With *unless_terminal*, a task that already reached DONE / ERROR is
        left alone and False is returned.
        """
        if not task.transition(state, unless_terminal=unless_terminal):
            return False
        logger.debug("Task %s → %s", task.id[:8], state.name)
        if self.on_state_change:
            try:
                self.on_state_change(task)
            except Exception:
                logger.exception("Exception in on_state_change callback")
        return True
