"""Configuration loader that keeps all runtime constants centralized."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

import yaml


CONFIG_PATH = Path(__file__).resolve().parent / "app_config.yaml"
STORAGE_ENV_VAR = "TIMER_ENGINE_STORAGE"


@dataclass(frozen=True)
class AppConfig:
    """Strongly-typed wrapper over the raw YAML document."""

    raw: Dict[str, Any]

    @property
    def version(self) -> str:
        return str(self.raw.get("version", "v1"))

    @property
    def storage(self) -> Dict[str, Any]:
        return self.raw.get("storage", {})

    @property
    def engine(self) -> Dict[str, Any]:
        return self.raw.get("engine", {})

    @property
    def clock(self) -> Dict[str, Any]:
        return self.raw.get("clock", {})

    @property
    def policy_defaults(self) -> Dict[str, Any]:
        return self.raw.get("policy_defaults", {})

    @property
    def ledger(self) -> Dict[str, Any]:
        return self.raw.get("ledger", {})

    @property
    def logging(self) -> Dict[str, Any]:
        return self.raw.get("logging", {})

    @property
    def storage_backend(self) -> str:
        """memory | sqlite, the environment variable wins over the file."""
        return os.environ.get(STORAGE_ENV_VAR) or str(self.storage.get("backend", "memory"))

    @property
    def sqlite_url(self) -> str:
        path = Path(self.storage.get("sqlite_path", "timer_engine.db"))
        if not path.is_absolute():
            path = CONFIG_PATH.parent.parent / path
        return f"sqlite:///{path}"

    @property
    def ledger_backend(self) -> str:
        return str(self.ledger.get("backend", "memory"))

    @property
    def cors_origins(self) -> List[str]:
        return list(self.raw.get("cors", {}).get("allowed_origins", []))


@lru_cache(maxsize=1)
def get_settings(path: Path | None = None) -> AppConfig:
    """Load configuration once per process."""

    config_path = path or CONFIG_PATH
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):  # pragma: no cover - invalid file guard
        raise ValueError("Configuration file must define a mapping at the top level.")
    return AppConfig(raw=data)
