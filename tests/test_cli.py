"""Tests for server_uploader/cli.py — argument handling and exit codes."""

from __future__ import annotations

import _thread
import json
import logging
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import keyring.errors
import pytest

from server_uploader import cli
from server_uploader.errors import ConnectionError, NoValidFiles
from server_uploader.models import BatchResult, TaskOutcome


CONFIG = {
    "defaultProfile": "nas",
    "remoteDirDefault": "/srv/storage-media/uploads",
    "profiles": {
        "nas": {"host": "nas.lan", "user": "media", "identityFile": "/keys/id_ed25519"},
    },
}


@pytest.fixture()
def config_dir(tmp_path: Path) -> Path:
    (tmp_path / "config.json").write_text(json.dumps(CONFIG), encoding="utf-8")
    return tmp_path


@pytest.fixture()
def orchestrator():
    """Patch TransferOrchestrator; the mock keeps the real SessionState it was given."""
    instance = MagicMock()

    def _factory(**kwargs):
        instance.session = kwargs["session"]
        instance.settings = kwargs["settings"]
        return instance

    with patch("server_uploader.cli.TransferOrchestrator", side_effect=_factory):
        yield instance


def _batch(*errors) -> BatchResult:
    outcomes = [TaskOutcome(item=None, value=None if e else "UPLOAD_OK", error=e) for e in errors]
    return BatchResult(tasks=[], outcomes=outcomes)


class TestSetupErrors:
    def test_missing_config_is_usage_error(self, tmp_path: Path, caplog) -> None:
        with caplog.at_level(logging.ERROR):
            assert cli.run(["--config", str(tmp_path), "test"]) == cli.EXIT_USAGE
        assert "config.json" in caplog.text

    def test_unknown_profile_is_usage_error(self, config_dir: Path) -> None:
        assert cli.run(["--config", str(config_dir), "--profile", "nope", "test"]) == cli.EXIT_USAGE

    def test_invalid_parallel_is_usage_error(self, config_dir: Path) -> None:
        code = cli.run(["--config", str(config_dir), "upload", "a.mkv", "--parallel", "0"])
        assert code == cli.EXIT_USAGE

    def test_subcommand_required(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestCommands:
    def test_connection_check_output(self, config_dir: Path, orchestrator: MagicMock, capsys) -> None:
        orchestrator.test_connection.return_value = "CONNECT_OK\nmedia\nnas"
        assert cli.run(["--config", str(config_dir), "test"]) == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "Active profile: nas" in out
        assert "CONNECT_OK" in out

    def test_connection_failure(self, config_dir: Path, orchestrator: MagicMock, capsys) -> None:
        orchestrator.test_connection.side_effect = ConnectionError("ssh", 255, "No route to host")
        assert cli.run(["--config", str(config_dir), "test"]) == cli.EXIT_FAILED
        assert "No route to host" in capsys.readouterr().out

    def test_ls_defaults_to_first_root(self, config_dir: Path, orchestrator: MagicMock, capsys) -> None:
        orchestrator.list_remote_dirs.return_value = ["/srv/storage-media", "/srv/storage-media/tv"]
        assert cli.run(["--config", str(config_dir), "ls"]) == cli.EXIT_OK
        assert orchestrator.list_remote_dirs.call_args.args[1] == "/srv/storage-media"
        assert "/srv/storage-media/tv" in capsys.readouterr().out

    def test_upload_uses_session_default_dir(self, config_dir: Path, orchestrator: MagicMock) -> None:
        orchestrator.upload_files.return_value = _batch(None, None)
        assert cli.run(["--config", str(config_dir), "upload", "a.mkv", "b.mkv"]) == cli.EXIT_OK
        _, files, remote_dir = orchestrator.upload_files.call_args.args
        assert files == ["a.mkv", "b.mkv"]
        assert remote_dir == "/srv/storage-media/uploads"

    def test_upload_partial_failure(self, config_dir: Path, orchestrator: MagicMock) -> None:
        orchestrator.upload_files.return_value = _batch(None, RuntimeError("rsync exit 23"))
        code = cli.run(["--config", str(config_dir), "upload", "a.mkv", "b.mkv", "--to", "/srv/x"])
        assert code == cli.EXIT_FAILED
        assert orchestrator.upload_files.call_args.args[2] == "/srv/x"

    def test_parallel_override_reaches_settings(self, config_dir: Path, orchestrator: MagicMock) -> None:
        orchestrator.upload_files.return_value = _batch(None)
        cli.run(["--config", str(config_dir), "upload", "a.mkv", "--parallel", "5"])
        assert orchestrator.settings["max_parallel"] == 5

    def test_no_valid_files_is_usage_error(self, config_dir: Path, orchestrator: MagicMock) -> None:
        orchestrator.upload_files.side_effect = NoValidFiles("No valid files selected")
        code = cli.run(["--config", str(config_dir), "upload", ".DS_Store"])
        assert code == cli.EXIT_USAGE

    def test_folder_outcome_drives_exit_code(self, config_dir: Path, orchestrator: MagicMock) -> None:
        orchestrator.upload_folder.return_value = TaskOutcome(item=None, error=RuntimeError("x"))
        assert cli.run(["--config", str(config_dir), "upload-folder", "photos"]) == cli.EXIT_FAILED
        orchestrator.upload_folder.return_value = TaskOutcome(item=None, value="UPLOAD_OK")
        assert cli.run(["--config", str(config_dir), "upload-folder", "photos"]) == cli.EXIT_OK


class TestPassphrase:
    def test_set_prompts_and_stores(self, config_dir: Path, orchestrator: MagicMock) -> None:
        with patch("server_uploader.cli.getpass.getpass", return_value="s3cret"), \
                patch("server_uploader.connection.keyring.set_password") as set_pw:
            assert cli.run(["--config", str(config_dir), "passphrase", "set"]) == cli.EXIT_OK
        set_pw.assert_called_once_with("server_uploader", "media@nas.lan", "s3cret")

    def test_clear_removes(self, config_dir: Path, orchestrator: MagicMock) -> None:
        with patch("server_uploader.connection.keyring.delete_password") as del_pw:
            assert cli.run(["--config", str(config_dir), "passphrase", "clear"]) == cli.EXIT_OK
        del_pw.assert_called_once_with("server_uploader", "media@nas.lan")

    def test_keyring_failure(self, config_dir: Path, orchestrator: MagicMock) -> None:
        with patch("server_uploader.cli.getpass.getpass", return_value="s3cret"), \
                patch(
                    "server_uploader.connection.keyring.set_password",
                    side_effect=keyring.errors.NoKeyringError("no backend"),
                ):
            assert cli.run(["--config", str(config_dir), "passphrase", "set"]) == cli.EXIT_FAILED


class TestCancellation:
    def test_ctrl_c_cancels_all_uploads(self) -> None:
        """A KeyboardInterrupt on the main thread triggers cancel_all once."""
        cancelled = threading.Event()
        orchestrator = MagicMock()
        orchestrator.cancel_all.side_effect = lambda delete_remote: cancelled.set()

        def _job() -> str:
            time.sleep(0.3)  # let the main thread reach its wait loop
            _thread.interrupt_main()
            assert cancelled.wait(timeout=5)
            return "settled"

        result, was_cancelled = cli._run_cancellable(orchestrator, _job, delete_remote=True)

        assert result == "settled"
        assert was_cancelled is True
        orchestrator.cancel_all.assert_called_once_with(delete_remote=True)

    def test_second_ctrl_c_cancels_again(self) -> None:
        """Uploads that started after the first Ctrl+C are caught by the next one."""
        calls = [threading.Event(), threading.Event()]
        orchestrator = MagicMock()
        orchestrator.cancel_all.side_effect = (
            lambda delete_remote: calls[orchestrator.cancel_all.call_count - 1].set()
        )

        def _job() -> str:
            time.sleep(0.3)
            _thread.interrupt_main()
            assert calls[0].wait(timeout=5)
            time.sleep(0.3)
            _thread.interrupt_main()
            assert calls[1].wait(timeout=5)
            return "settled"

        result, was_cancelled = cli._run_cancellable(orchestrator, _job, delete_remote=False)

        assert result == "settled"
        assert was_cancelled is True
        assert orchestrator.cancel_all.call_count == 2

    def test_result_returned_without_interrupt(self) -> None:
        orchestrator = MagicMock()
        result, was_cancelled = cli._run_cancellable(orchestrator, lambda: "ok", delete_remote=False)
        assert (result, was_cancelled) == ("ok", False)
        orchestrator.cancel_all.assert_not_called()

    def test_job_errors_propagate(self) -> None:
        def _job() -> None:
            raise NoValidFiles("nothing to do")

        with pytest.raises(NoValidFiles):
            cli._run_cancellable(MagicMock(), _job, delete_remote=False)
