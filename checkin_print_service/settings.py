"""
Settings Store
==============

Operator settings persisted as JSON under DATA_DIR.
"""

import json
import logging
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional, Dict, Any

from .config import DATA_DIR, JOB_TIMEOUT
from .exceptions import InvalidConfigurationError
from .models import PrintSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppSettings:
    default_label_size_id: Optional[str] = None
    default_printer_id: Optional[str] = None
    direct_printing_enabled: bool = False
    print_timeout: float = JOB_TIMEOUT  # seconds
    direct_settings: Optional[PrintSettings] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'default_label_size_id': self.default_label_size_id,
            'default_printer_id': self.default_printer_id,
            'direct_printing_enabled': self.direct_printing_enabled,
            'print_timeout': self.print_timeout,
            'direct_settings': self.direct_settings.to_dict() if self.direct_settings else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppSettings':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        data = dict(data)
        if isinstance(data.get('direct_settings'), dict):
            data['direct_settings'] = PrintSettings.from_dict(data['direct_settings'])
        if data.get('print_timeout') is not None:
            data['print_timeout'] = float(data['print_timeout'])
            if data['print_timeout'] <= 0:
                raise InvalidConfigurationError("print_timeout must be positive")
        return cls(**data)


class SettingsStore:
    """Loads and saves ``settings.json``."""

    def __init__(self, data_dir: str = DATA_DIR, name: str = 'settings'):
        self.data_dir = Path(data_dir)
        self.name = name
        self._settings: Optional[AppSettings] = None

    @property
    def path(self) -> Path:
        return self.data_dir / f'{self.name}.json'

    @property
    def settings(self) -> AppSettings:
        if self._settings is None:
            self._settings = self.load()
        return self._settings

    def load(self) -> AppSettings:
        """Read settings from disk. Missing or unreadable files give defaults."""
        if not self.path.exists():
            return AppSettings()
        try:
            with open(self.path, 'r') as f:
                return AppSettings.from_dict(json.load(f))
        except (OSError, ValueError, InvalidConfigurationError) as e:
            logger.warning(f"[Settings] Failed to load {self.path}: {e}")
            return AppSettings()

    def save(self, settings: Optional[AppSettings] = None):
        if settings is not None:
            self._settings = settings
        self.data_dir.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self.settings.to_dict(), f, indent=2)
        logger.info(f"[Settings] Saved to {self.path}")

    def update(self, **changes) -> AppSettings:
        """Apply changes, validate them and persist."""
        merged = {**self.settings.to_dict(), **changes}
        updated = AppSettings.from_dict(merged)
        self.save(updated)
        return updated

    def reset(self) -> AppSettings:
        self.save(AppSettings())
        return self.settings
