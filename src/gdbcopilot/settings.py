"""Persisted provider/model/credential selection.

Stored as ``{"provider", "model", "apiKey"}`` in a single JSON file in the
user's home directory, readable only by the owner.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .errors import SettingsError
from .llm.providers import is_supported, list_providers

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = ".gdbcopilot_settings.json"
DEFAULT_PROVIDER = "anthropic"
DEFAULT_MODEL = "claude-3-sonnet-20240229"


def default_settings_path() -> Path:
    return Path.home() / SETTINGS_FILENAME


def mask_key(key: str) -> str:
    if not key:
        return ""
    if len(key) <= 8:
        return "*" * len(key)
    return key[:4] + "*" * (len(key) - 8) + key[-4:]


@dataclass(frozen=True)
class Settings:
    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    api_key: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"provider": self.provider, "model": self.model, "apiKey": self.api_key}

    def masked(self) -> Dict[str, str]:
        data = self.to_dict()
        data["apiKey"] = mask_key(self.api_key)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        return cls(
            provider=str(data.get("provider") or DEFAULT_PROVIDER),
            model=str(data.get("model") or ""),
            api_key=str(data.get("apiKey") or ""),
        )


def validate(settings: Settings) -> None:
    if not is_supported(settings.provider):
        raise SettingsError(
            f"unsupported provider {settings.provider!r}; expected one of {', '.join(list_providers())}"
        )


class SettingsStore:
    """Thread-safe holder for the current :class:`Settings`.

    Readers get the current immutable value; updates write the file and then
    swap in the value re-read from disk.
    """

    def __init__(self, path: Optional[Path] = None, fallback_api_key: Optional[str] = None) -> None:
        self.path = Path(path) if path else default_settings_path()
        self.fallback_api_key = fallback_api_key or ""
        self._lock = threading.Lock()
        self._current = Settings()

    def load(self) -> Settings:
        settings = self._read()
        with self._lock:
            self._current = settings
        return settings

    def get(self) -> Settings:
        with self._lock:
            return self._current

    def update(self, settings: Settings) -> Settings:
        validate(settings)
        self._write(settings)
        return self.load()

    def _read(self) -> Settings:
        if not self.path.exists():
            settings = Settings()
        else:
            try:
                with self.path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("ignoring unreadable settings file %s: %s", self.path, e)
                data = {}
            settings = Settings.from_dict(data if isinstance(data, dict) else {})
        if not settings.api_key and self.fallback_api_key:
            settings = replace(settings, api_key=self.fallback_api_key)
        return settings

    def _write(self, settings: Settings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(settings.to_dict(), f, indent=2)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except OSError as e:
            raise SettingsError(f"failed to save settings to {self.path}: {e}") from e
        logger.info("settings saved: provider=%s model=%s", settings.provider, settings.model)
