"""Shared fixtures: a connection profile and a fake ``rsync`` executable."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Callable

import pytest

from server_uploader.models import ConnectionProfile

_FAKE_RSYNC_HEADER = textwrap.dedent(
    """\
    #!/bin/sh
    if [ "$1" = "--version" ]; then
        echo "rsync  version 3.2.7  protocol version 31"
        exit 0
    fi
    printf '%s\\n' "$@" > "$(dirname "$0")/args.txt"
    """
)


@pytest.fixture()
def profile() -> ConnectionProfile:
    """A whitelisted-roots profile pointing at a fictional NAS."""
    return ConnectionProfile(
        name="nas",
        host="nas.lan",
        user="media",
        identity_file="/keys/id_ed25519",
        port=2222,
        remote_roots=("/srv/storage-media", "/srv/storage-2md"),
    )


@pytest.fixture()
def fake_rsync(tmp_path: Path) -> Callable[[str], Path]:
    """Return a factory that writes an executable fake rsync with *body*.

    The script records its arguments (one per line) to ``args.txt`` next to
    itself, then runs *body* as POSIX shell.
    """

    def _make(body: str) -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        script = bin_dir / "rsync"
        script.write_text(_FAKE_RSYNC_HEADER + textwrap.dedent(body), encoding="utf-8")
        script.chmod(0o755)
        return script

    return _make


@pytest.fixture()
def recorded_args() -> Callable[[Path], list[str]]:
    """Return a reader for the arguments a fake rsync was last invoked with."""

    def _read(script: Path) -> list[str]:
        return (script.parent / "args.txt").read_text(encoding="utf-8").splitlines()

    return _read
