"""server_uploader — upload files and folders to a remote host with rsync over SSH.

The engine spawns one rsync process per transfer, parses its live progress,
runs several transfers in parallel and can interrupt them on request.
"""

from __future__ import annotations

from server_uploader.config import ConfigManager
from server_uploader.models import ConnectionProfile, TransferState, TransferTask
from server_uploader.orchestrator import SessionState, TransferOrchestrator

__version__ = "0.3.0"

__all__ = [
    "ConfigManager",
    "ConnectionProfile",
    "SessionState",
    "TransferOrchestrator",
    "TransferState",
    "TransferTask",
]
