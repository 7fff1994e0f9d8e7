"""Command-line surface for server_uploader.

Usage::

    server-uploader test
    server-uploader ls /srv/storage-media
    server-uploader upload a.mkv b.mkv --to /srv/storage-media/movies
    server-uploader upload-folder ~/photos --to /srv/storage-media --delete-on-cancel
    server-uploader passphrase set

Ctrl+C during an upload interrupts every running rsync process (and, with
``--delete-on-cancel``, removes what was already written remotely).
"""

from __future__ import annotations

import argparse
import getpass
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Callable

import keyring.errors

from server_uploader import __version__
from server_uploader.config import ConfigManager
from server_uploader.connection import ParamikoShell
from server_uploader.errors import (
    InvalidRemotePath,
    NotPermitted,
    NoValidFiles,
    RemoteDirNotSet,
    UploaderError,
)
from server_uploader.models import ConnectionProfile, TransferProgress, TransferState, TransferTask
from server_uploader.orchestrator import SessionState, TransferOrchestrator
from server_uploader.utils.units import bytes_to_human

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

# Rejected before anything is sent over the wire.
_USAGE_ERRORS = (InvalidRemotePath, NotPermitted, NoValidFiles, RemoteDirNotSet)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="server-uploader",
        description="Upload files and folders to a remote host with rsync over SSH.",
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="directory containing config.json (default: ~/.config/server_uploader)")
    parser.add_argument("--profile", default=None, help="profile name (default: defaultProfile)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("test", help="check that the profile can log in")

    ls = sub.add_parser("ls", help="list directories under an allowed remote root")
    ls.add_argument("root", nargs="?", default=None,
                    help="remote root (default: the profile's first allowed root)")

    up = sub.add_parser("upload", help="upload one or more files")
    up.add_argument("files", nargs="+")
    up.add_argument("--to", dest="remote_dir", default=None, help="remote directory")
    up.add_argument("--parallel", type=int, default=None, help="max simultaneous transfers")
    up.add_argument("--delete-on-cancel", action="store_true",
                    help="remove remote targets of interrupted transfers")

    folder = sub.add_parser("upload-folder", help="upload the contents of a folder")
    folder.add_argument("folder")
    folder.add_argument("--to", dest="remote_dir", default=None, help="remote directory")
    folder.add_argument("--delete-on-cancel", action="store_true",
                        help="remove the remote folder if the transfer is interrupted")

    secret = sub.add_parser("passphrase", help="store or clear the key passphrase (paramiko backend)")
    secret.add_argument("action", choices=("set", "clear"))
    return parser


class _ConsoleSink:
    """Prints log lines and throttled per-task progress to a stream."""

    def __init__(self, stream=None) -> None:
        self._stream = stream or sys.stdout
        self._lock = threading.Lock()
        self._last_percent: dict[str, int] = {}

    def log(self, line: str) -> None:
        with self._lock:
            print(line, file=self._stream, flush=True)

    def progress(self, task: TransferTask, progress: TransferProgress) -> None:
        if self._last_percent.get(task.id) == progress.percent:
            return
        self._last_percent[task.id] = progress.percent
        done = bytes_to_human(progress.transferred_bytes)
        if task.total_bytes:
            done = f"{done} / {bytes_to_human(task.total_bytes)}"
        self.log(
            f"  {task.title}: {progress.percent:3d}%  {done}  {progress.speed}  eta {progress.eta}"
        )

    def state(self, task: TransferTask) -> None:
        if task.state in (TransferState.CANCELLING, TransferState.ERROR, TransferState.DONE):
            self.log(f"  {task.title}: {task.state.name.lower()}")


def _run_cancellable(
    orchestrator: TransferOrchestrator,
    job: Callable[[], Any],
    delete_remote: bool,
) -> tuple[Any, bool]:
    """Run *job* on a worker thread; Ctrl+C turns into ``cancel_all``.

    Every Ctrl+C calls ``cancel_all`` again, so uploads that were still
    starting on the first one are caught by a later one.  Returns
    ``(result, cancelled)``.  Exceptions raised by *job* propagate.
    """
    box: dict[str, Any] = {}
    done = threading.Event()

    def _target() -> None:
        try:
            box["result"] = job()
        except BaseException as exc:  # re-raised on the main thread
            box["error"] = exc
        finally:
            done.set()

    worker = threading.Thread(target=_target, name="upload-job", daemon=True)
    worker.start()
    cancelled = False
    # Thread.join is not safe to interrupt; an Event wait is.
    while True:
        try:
            if done.wait(timeout=0.2):
                break
        except KeyboardInterrupt:
            cancelled = True
            logger.warning("Interrupted, cancelling uploads")
            try:
                orchestrator.cancel_all(delete_remote=delete_remote)
            except KeyboardInterrupt:
                continue
    if "error" in box:
        raise box["error"]
    return box.get("result"), cancelled


def _passphrase(profile: ConnectionProfile, action: str, sink: _ConsoleSink) -> int:
    """Store (prompting for it) or clear the identity key's keyring passphrase."""
    shell = ParamikoShell(profile)
    try:
        if action == "set":
            shell.store_passphrase(getpass.getpass(f"Passphrase for {profile.identity_file}: "))
            sink.log(f"Passphrase stored for {profile.destination}")
        else:
            shell.delete_passphrase()
            sink.log(f"Passphrase cleared for {profile.destination}")
    except keyring.errors.KeyringError as exc:
        logger.error("Keyring error: %s", exc)
        return EXIT_FAILED
    return EXIT_OK


def run(argv: list[str] | None = None) -> int:
    """Parse *argv*, execute the command and return the process exit code."""
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    sink = _ConsoleSink()
    try:
        config = ConfigManager(base_dir=args.config)
        profile = config.get_profile(args.profile)
        settings = config.settings
        if getattr(args, "parallel", None) is not None:
            settings["max_parallel"] = args.parallel
        orchestrator = TransferOrchestrator(
            settings=settings,
            session=SessionState(remote_dir_default=config.remote_dir_default),
            on_progress=sink.progress,
            on_state_change=sink.state,
            on_log=sink.log,
        )
    except UploaderError as exc:
        logger.error("%s", exc)
        return EXIT_USAGE

    sink.log(f"Active profile: {profile.name}")
    try:
        if args.command == "test":
            sink.log(orchestrator.test_connection(profile))
            return EXIT_OK

        if args.command == "passphrase":
            return _passphrase(profile, args.action, sink)

        if args.command == "ls":
            root = args.root or (profile.remote_roots[0] if profile.remote_roots else "")
            for path in orchestrator.list_remote_dirs(profile, root):
                sink.log(path)
            return EXIT_OK

        remote_dir = args.remote_dir or orchestrator.session.remote_dir_for(profile)
        if args.command == "upload":
            batch, cancelled = _run_cancellable(
                orchestrator,
                lambda: orchestrator.upload_files(profile, args.files, remote_dir),
                args.delete_on_cancel,
            )
            if cancelled:
                return EXIT_CANCELLED
            return EXIT_OK if batch.failed == 0 else EXIT_FAILED

        outcome, cancelled = _run_cancellable(
            orchestrator,
            lambda: orchestrator.upload_folder(profile, args.folder, remote_dir),
            args.delete_on_cancel,
        )
        if cancelled:
            return EXIT_CANCELLED
        return EXIT_OK if outcome.ok else EXIT_FAILED
    except _USAGE_ERRORS as exc:
        sink.log(str(exc))
        return EXIT_USAGE
    except UploaderError as exc:
        sink.log("--- ERROR ---")
        sink.log(str(exc))
        return EXIT_FAILED
