"""Borg backup pipeline orchestration package."""

from __future__ import annotations

from .config import load_config, CoreConfig  # noqa: F401
from .orchestrator import BackupOrchestrator  # noqa: F401

__version__ = "0.1.0"
