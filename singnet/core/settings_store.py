"""
Persisted user preferences
"""

import threading
import logging
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Dict, Any, Optional

from .errors import ValidationError
from .types import Settings
from ..utils.persistence import read_yaml, write_yaml

logger = logging.getLogger(__name__)

SETTING_KEYS = tuple(f.name for f in fields(Settings))


class SettingsStore:
    """Lock-guarded settings record backed by a YAML file"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._settings = self._load()

    def _load(self) -> Settings:
        data = read_yaml(self.path, default={})
        if not isinstance(data, dict):
            logger.warning("Settings file is not a mapping, using defaults")
            return Settings()
        known = {
            key: str(value) for key, value in data.items()
            if key in SETTING_KEYS and value is not None
        }
        return Settings(**known)

    def get(self) -> Settings:
        # Settings is frozen, so handing out the reference is safe
        return self._settings

    def update(self, partial: Optional[Dict[str, Any]]) -> Settings:
        """
        Merge provided fields into the current settings

        Keys with a None value are treated as not provided.

        Raises:
            ValidationError: unknown key or non-string value
            PersistenceError: the file could not be written
        """
        changes = {}
        for key, value in (partial or {}).items():
            if key not in SETTING_KEYS:
                raise ValidationError(f"Unknown setting: {key}")
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValidationError(f"Setting {key} must be a string")
            changes[key] = value.strip()

        with self._lock:
            updated = replace(self._settings, **changes)
            if updated != self._settings:
                write_yaml(self.path, asdict(updated))
                self._settings = updated
                logger.info(f"Settings updated: {', '.join(sorted(changes))}")
            return self._settings

    def reset(self) -> Settings:
        """Restore built-in defaults"""
        with self._lock:
            defaults = Settings()
            write_yaml(self.path, asdict(defaults))
            self._settings = defaults
            logger.info("Settings reset to defaults")
            return defaults
