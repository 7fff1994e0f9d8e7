"""Remote command execution for server_uploader.

Every remote operation is an independent round trip: no session is kept
between calls.  Two interchangeable backends exist:

- :class:`SshCommandShell` spawns the ``ssh`` client
  (``ssh -i <key> -p <port> <user>@<host> <command>``).  This is the
  default and uses exactly the same authentication path as rsync's ``-e``.
- :class:`ParamikoShell` opens a fresh ``paramiko.SSHClient`` per command,
  for hosts without an OpenSSH client.  An optional key passphrase is read
  from the OS keyring.
"""

from __future__ import annotations

import logging
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import keyring
import keyring.errors
import paramiko

from server_uploader.errors import ConfigError, ConnectionError, ExternalToolError
from server_uploader.models import ConnectionProfile

logger = logging.getLogger(__name__)

_KEYRING_SERVICE = "server_uploader"
_SSH_TRANSPORT_FAILURE = 255  # ssh's own exit code for connection/auth errors
PROBE_COMMAND = "echo CONNECT_OK && whoami && hostname"


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    """Captured output of one remote command."""

    stdout: str
    stderr: str
    exit_code: int

    def raise_for_status(self, tool: str = "ssh") -> None:
        """Raise if the command failed.

        Raises:
            ConnectionError: ssh itself failed to connect or authenticate.
            ExternalToolError: The remote command exited nonzero.
        """
        if self.exit_code == 0:
            return
        if self.exit_code == _SSH_TRANSPORT_FAILURE:
            raise ConnectionError(tool, self.exit_code, self.stderr)
        raise ExternalToolError(tool, self.exit_code, self.stderr)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class RemoteShell:
    """Common interface of the remote-exec backends."""

    def __init__(self, profile: ConnectionProfile) -> None:
        self.profile = profile

    def run(self, command: str) -> CommandResult:  # pragma: no cover - interface
        raise NotImplementedError

    def probe(self) -> str:
        """Run the connectivity probe and return its trimmed output."""
        logger.info(
            "Testing SSH to %s:%d", self.profile.destination, self.profile.port
        )
        result = self.run(PROBE_COMMAND)
        result.raise_for_status("ssh")
        return result.stdout.strip()


class SshCommandShell(RemoteShell):
    """Runs each command through a new ``ssh`` client process."""

    def __init__(self, profile: ConnectionProfile, ssh_path: str = "ssh") -> None:
        super().__init__(profile)
        self.ssh_path = ssh_path

    def argv(self, command: str) -> list[str]:
        """Argument vector for running *command* on the profile's host."""
        return [
            self.ssh_path,
            "-i", self.profile.identity_file,
            "-p", str(self.profile.port),
            self.profile.destination,
            command,
        ]

    def run(self, command: str) -> CommandResult:
        """Execute *command* remotely and capture its output.

        Raises:
            ConnectionError: The ssh client could not be started.
        """
        logger.debug("ssh %s: %s", self.profile.destination, command)
        try:
            proc = subprocess.run(
                self.argv(command),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise ConnectionError("ssh", None, f"could not start {self.ssh_path}: {exc}") from exc
        return CommandResult(proc.stdout, proc.stderr, proc.returncode)


class ParamikoShell(RemoteShell):
    """Runs each command over a short-lived paramiko connection."""

    def __init__(self, profile: ConnectionProfile, timeout: float = 15.0) -> None:
        super().__init__(profile)
        self.timeout = timeout

    @property
    def _profile_key(self) -> str:
        """Keyring account key for this profile (user@host)."""
        return self.profile.destination

    def _passphrase(self) -> str | None:
        """Key passphrase from the OS keyring, if one was stored."""
        try:
            return keyring.get_password(_KEYRING_SERVICE, self._profile_key)
        except keyring.errors.KeyringError as exc:
            logger.debug("Keyring unavailable for %s: %s", self._profile_key, exc)
            return None

    def run(self, command: str) -> CommandResult:
        """Connect, execute *command*, collect output and disconnect.

        Raises:
            ConnectionError: Host key, authentication or network failure.
        """
        logger.debug("paramiko %s: %s", self.profile.destination, command)
        client = paramiko.SSHClient()
        known_hosts_path = Path.home() / ".ssh" / "known_hosts"
        if known_hosts_path.exists():
            client.load_host_keys(str(known_hosts_path))
        client.set_missing_host_key_policy(paramiko.RejectPolicy())

        connect_kwargs: dict[str, Any] = {
            "hostname": self.profile.host,
            "port": self.profile.port,
            "username": self.profile.user,
            "key_filename": self.profile.identity_file,
            "timeout": self.timeout,
            "allow_agent": True,
            "look_for_keys": False,
        }
        passphrase = self._passphrase()
        if passphrase:
            connect_kwargs["passphrase"] = passphrase

        try:
            client.connect(**connect_kwargs)
            _, stdout, stderr = client.exec_command(command, timeout=self.timeout)
            exit_code = stdout.channel.recv_exit_status()
            return CommandResult(
                stdout.read().decode("utf-8", errors="replace"),
                stderr.read().decode("utf-8", errors="replace"),
                exit_code,
            )
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            logger.error("paramiko command on %s failed: %s", self.profile.destination, exc)
            raise ConnectionError("ssh", None, str(exc)) from exc
        finally:
            client.close()

    # ------------------------------------------------------------------
    # Credential helpers
    # ------------------------------------------------------------------

    def store_passphrase(self, passphrase: str) -> None:
        """Store the identity key's passphrase in the OS keyring."""
        keyring.set_password(_KEYRING_SERVICE, self._profile_key, passphrase)
        logger.debug("Passphrase stored in keyring for %s", self._profile_key)

    def delete_passphrase(self) -> None:
        """Remove the stored passphrase from the OS keyring."""
        try:
            keyring.delete_password(_KEYRING_SERVICE, self._profile_key)
        except keyring.errors.PasswordDeleteError:
            pass
        logger.debug("Passphrase deleted from keyring for %s", self._profile_key)


def open_shell(profile: ConnectionProfile, settings: Mapping[str, Any] | None = None) -> RemoteShell:
    """Return the backend selected by ``settings["remote_exec"]``."""
    settings = settings or {}
    backend = settings.get("remote_exec", "ssh")
    if backend == "ssh":
        return SshCommandShell(profile, ssh_path=settings.get("ssh_path") or "ssh")
    if backend == "paramiko":
        return ParamikoShell(profile, timeout=float(settings.get("ssh_timeout", 15)))
    raise ConfigError(f"Unknown remote_exec backend: {backend!r} (expected 'ssh' or 'paramiko')")
