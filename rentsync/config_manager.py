from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from rentsync.models import AppConfig, default_app_config

CONFIG_PATH_ENV = "RENTSYNC_CONFIG_PATH"
STATE_PATH_ENV = "RENTSYNC_STATE_PATH"
CONFIG_SECTIONS = ("fetch", "sync", "classification")


def config_path_from_env() -> str:
    return os.getenv(CONFIG_PATH_ENV, "config.yaml")


def state_path_from_env() -> str:
    return os.getenv(STATE_PATH_ENV, "data/state.db")


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _check_sections(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise TypeError("config update must be a mapping of sections")
    unknown = sorted(str(key) for key in payload if key not in CONFIG_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown config section(s): {', '.join(unknown)}")
    return payload


def _submitted_rules(payload: dict[str, Any]) -> list[Any] | None:
    section = payload.get("classification")
    if not isinstance(section, dict):
        return None
    rules = section.get("rules")
    return rules if isinstance(rules, list) else None


def _dump(config_dict: dict[str, Any], path: Path) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"{self.config_path} is not valid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a mapping at the top level")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read())

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _dump(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                _dump(config_dict, self.config_path)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        updates = _check_sections(payload)
        with self._lock:
            config = AppConfig.from_dict(_deep_merge(self.load().to_dict(), updates))
            submitted = _submitted_rules(updates)
            if submitted is not None and len(config.classification.rules) != len(submitted):
                raise ValueError("every classification rule needs a name and at least one match_any pattern")
            self.save(config)
            return config
