"""Configuration loader that keeps all runtime constants centralized."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "app_config.yaml"


def config_path() -> Path:
    """``RENTAL_CONFIG`` points the service at another YAML file."""
    override = os.environ.get("RENTAL_CONFIG")
    return Path(override) if override else DEFAULT_CONFIG_PATH


@dataclass(frozen=True)
class AppConfig:
    """Strongly-typed wrapper over the raw YAML document."""

    raw: Dict[str, Any]

    @property
    def version(self) -> str:
        return str(self.raw.get("version", "v1"))

    @property
    def pricing(self) -> Dict[str, Any]:
        return self.raw.get("pricing") or {}

    @property
    def rental(self) -> Dict[str, Any]:
        return self.raw.get("rental") or {}

    @property
    def ledger(self) -> Dict[str, Any]:
        return self.raw.get("ledger") or {}

    @property
    def storage(self) -> Dict[str, Any]:
        return self.raw.get("storage") or {}

    @property
    def clock(self) -> Dict[str, Any]:
        return self.raw.get("clock") or {}

    @property
    def blacklist(self) -> Dict[str, Any]:
        return self.raw.get("blacklist") or {}

    @property
    def retry(self) -> Dict[str, Any]:
        return self.raw.get("retry") or {}

    @property
    def logging_level(self) -> str:
        return str((self.raw.get("logging") or {}).get("level", "INFO")).upper()

    @property
    def timezone(self) -> str:
        return str(self.clock.get("timezone", "Asia/Kolkata"))

    @property
    def database_backend(self) -> str:
        """``STORAGE`` env var wins over the YAML value (sqlite | memory)."""
        return os.environ.get("STORAGE") or str(self.storage.get("backend", "sqlite"))

    @property
    def sqlite_path(self) -> Path:
        override = os.environ.get("RENTAL_DB_PATH")
        if override:
            return Path(override)
        configured = self.storage.get("sqlite_path", "rental_system.db")
        path = Path(configured)
        if not path.is_absolute():
            path = Path(__file__).resolve().parent.parent / path
        return path

    def with_pricing(self, pricing: Dict[str, Any]) -> "AppConfig":
        """Return a copy with the pricing section replaced."""
        data = dict(self.raw)
        data["pricing"] = dict(pricing)
        return AppConfig(raw=data)


def load_config(path: Path) -> AppConfig:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Configuration file must define a mapping at the top level.")
    return AppConfig(raw=data)


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Persist the raw document back to disk (used by the settings API)."""
    target = path or config_path()
    target.write_text(
        yaml.safe_dump(config.raw, allow_unicode=True, sort_keys=False),
        encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings(path: Path | None = None) -> AppConfig:
    """Load configuration once per process."""

    return load_config(path or config_path())
