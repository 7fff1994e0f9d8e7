"""Configuration and profile loading for server_uploader.

Settings live in ``~/.config/server_uploader/config.json``::

    {
      "defaultProfile": "nas",
      "remoteDirDefault": "/srv/storage-media/uploads",
      "remoteRoots": ["/srv/storage-media", "/srv/storage-2md"],
      "profiles": {
        "nas": {"host": "nas.lan", "port": 22, "user": "media",
                "identityFile": "~/.ssh/id_ed25519"}
      },
      "settings": {"max_parallel": 3}
    }

Unlike user preferences, a broken config cannot be silently reset: there is
no sensible default host, so every problem surfaces as ``ConfigError``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from server_uploader.errors import ConfigError, ProfileNotFound
from server_uploader.models import DEFAULT_REMOTE_ROOTS, ConnectionProfile

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_SETTINGS: dict[str, Any] = {
    "max_parallel": 3,
    "rsync_path": None,
    "rsync_protect_args": False,
    "ssh_path": "ssh",
    "remote_exec": "ssh",
    "ssh_timeout": 15,
    "stderr_tail_lines": 20,
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Loads connection profiles and engine settings from ``config.json``."""

    def __init__(self, base_dir: Path | None = None) -> None:
        """Load ``config.json`` from *base_dir* (default ``~/.config/server_uploader``).

        Raises:
            ConfigError: File missing, unreadable, not JSON, or lacking ``profiles``.
        """
        self._base = base_dir or Path.home() / ".config" / "server_uploader"
        self.config_path = self._base / "config.json"
        self._raw = self._load()

        roots = self._raw.get("remoteRoots") or DEFAULT_REMOTE_ROOTS
        if isinstance(roots, str) or not all(isinstance(r, str) for r in roots):
            raise ConfigError(f"Invalid 'remoteRoots' in {self.config_path}")
        self.remote_roots: tuple[str, ...] = tuple(roots)

        settings = self._raw.get("settings") or {}
        if not isinstance(settings, dict):
            raise ConfigError(f"'settings' must be a JSON object in {self.config_path}")
        self._settings = dict(DEFAULT_SETTINGS)
        self._settings.update(settings)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, Any]:
        """Read and structurally validate the config file."""
        try:
            raw = self.config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Cannot read config {self.config_path}: {exc}") from exc
        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in {self.config_path}: {exc}") from exc

        if not isinstance(loaded, dict):
            raise ConfigError(f"Config root must be a JSON object: {self.config_path}")
        if not isinstance(loaded.get("profiles"), dict):
            raise ConfigError(f'Config missing "profiles": {self.config_path}')
        logger.debug(
            "Loaded %s with %d profile(s)", self.config_path, len(loaded["profiles"])
        )
        return loaded

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def settings(self) -> dict[str, Any]:
        """Engine settings merged over ``DEFAULT_SETTINGS`` (copy)."""
        return dict(self._settings)

    @property
    def remote_dir_default(self) -> str:
        """Global default remote directory, or an empty string."""
        return self._raw.get("remoteDirDefault") or ""

    @property
    def default_profile_name(self) -> str | None:
        """``defaultProfile`` if set, else the first profile in the file."""
        name = self._raw.get("defaultProfile")
        if name:
            return name
        return next(iter(self._raw["profiles"]), None)

    def profile_names(self) -> list[str]:
        return list(self._raw["profiles"])

    def get_profile(self, name: str | None = None) -> ConnectionProfile:
        """Return the profile called *name* (the default profile when None).

        Raises:
            ProfileNotFound: No such profile.
            ConfigError: The profile entry is malformed.
        """
        name = name or self.default_profile_name
        entry = self._raw["profiles"].get(name) if name else None
        if entry is None:
            raise ProfileNotFound(f"Profile not found: {name or '(none)'}")
        return ConnectionProfile.from_dict(name, entry, fallback_roots=self.remote_roots)
