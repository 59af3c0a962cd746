"""Environment-driven settings for planloom."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger("planloom.config")

PLAN_PATH_ENV = "PLANLOOM_PLAN_PATH"
LOG_LEVEL_ENV = "PLANLOOM_LOG_LEVEL"
LOG_FILE_ENV = "PLANLOOM_LOG_FILE"
LOCK_TIMEOUT_ENV = "PLANLOOM_LOCK_TIMEOUT"
PRESERVE_NOTES_ENV = "PLANLOOM_PRESERVE_NOTES"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass(slots=True)
class Settings:
    plan_path: Optional[Path] = None
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    lock_timeout: Optional[float] = None
    preserve_notes: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``PLANLOOM_*`` environment variables.

        Invalid values are logged and replaced by the defaults.
        """
        env = os.environ if environ is None else environ
        settings = cls()

        plan_path = env.get(PLAN_PATH_ENV)
        if plan_path:
            settings.plan_path = Path(plan_path).expanduser()

        log_level = env.get(LOG_LEVEL_ENV)
        if log_level:
            if log_level.upper() in _LOG_LEVELS:
                settings.log_level = log_level.upper()
            else:
                logger.warning(f"Ignoring invalid {LOG_LEVEL_ENV}={log_level!r}")

        log_file = env.get(LOG_FILE_ENV)
        if log_file:
            settings.log_file = Path(log_file).expanduser()

        lock_timeout = env.get(LOCK_TIMEOUT_ENV)
        if lock_timeout:
            try:
                value = float(lock_timeout)
            except ValueError:
                value = -1.0
            if value >= 0:
                settings.lock_timeout = value
            else:
                logger.warning(f"Ignoring invalid {LOCK_TIMEOUT_ENV}={lock_timeout!r}")

        preserve_notes = env.get(PRESERVE_NOTES_ENV)
        if preserve_notes:
            lowered = preserve_notes.strip().lower()
            if lowered in _TRUE_VALUES:
                settings.preserve_notes = True
            elif lowered in _FALSE_VALUES:
                settings.preserve_notes = False
            else:
                logger.warning(f"Ignoring invalid {PRESERVE_NOTES_ENV}={preserve_notes!r}")

        return settings

    def resolve_plan_path(self, path: Optional[str] = None) -> Path:
        """Explicit ``path`` wins, then the configured plan path, then the cwd."""
        if path:
            return Path(path).expanduser().resolve()
        if self.plan_path:
            return self.plan_path.resolve()
        return Path.cwd().resolve()
