# crash-triage/config.py
import os
import json
from datetime import timedelta
from typing import Any, Dict

from crash_analysis.reopener import DEFAULT_STALE_FIX_DAYS

DEFAULTS: Dict[str, Any] = {
    "db_path": "~/.crashtriage/triage.db",
    "project_name": "default",
    "repo_path": ".",
    "source_roots": [],
    "filter_paths": None,
    "stale_fix_days": DEFAULT_STALE_FIX_DAYS,
    "git_binary": "git",
    "git_timeout": 30.0,
    "log_level": "INFO",
    "log_to_file": True,
}


class TriageConfigError(Exception):
    """Custom exception for triage configuration errors."""
    pass


class TriageConfig:
    def __init__(self, **kwargs):
        data = dict(DEFAULTS)
        data.update(kwargs)
        self._data = data
        self._data["db_path"] = os.path.expanduser(data["db_path"])
        self._data["repo_path"] = os.path.expanduser(data["repo_path"])
        self._validate()

    def _validate(self) -> None:
        try:
            days = float(self._data["stale_fix_days"])
        except (TypeError, ValueError):
            raise TriageConfigError(f"stale_fix_days must be a number, got {self._data['stale_fix_days']!r}")
        if days <= 0:
            raise TriageConfigError("stale_fix_days must be positive")
        if not isinstance(self._data["source_roots"], list):
            raise TriageConfigError("source_roots must be a list of paths")
        filter_paths = self._data["filter_paths"]
        if filter_paths is not None and not isinstance(filter_paths, list):
            raise TriageConfigError("filter_paths must be a list of path prefixes")

    @property
    def stale_fix_after(self) -> timedelta:
        return timedelta(days=float(self._data["stale_fix_days"]))

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __getattr__(self, name: str) -> Any:
        if name in self._data:
            return self._data[name]
        raise AttributeError(f"'TriageConfig' object has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "_data":
            super().__setattr__(name, value)
        else:
            self._data[name] = value

    @classmethod
    def load(cls, config_path: str = None) -> "TriageConfig":
        if config_path is None:
            config_path = os.path.join(_ensure_triage_dir(), "config.json")
        config_path = os.path.expanduser(config_path)
        if not os.path.exists(config_path):
            with open(config_path, "w") as f:
                json.dump(DEFAULTS, f, indent=2)
            return cls()

        try:
            with open(config_path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise TriageConfigError(f"Failed to load config from {config_path}: {e}")
        if not isinstance(data, dict):
            raise TriageConfigError(f"Config in {config_path} must be a JSON object")
        return cls(**data)

    def save(self, config_path: str = None) -> None:
        if config_path is None:
            config_path = os.path.join(_ensure_triage_dir(), "config.json")
        try:
            with open(os.path.expanduser(config_path), "w") as f:
                json.dump(self._data, f, indent=2)
        except OSError as e:
            raise TriageConfigError(f"Failed to save triage config: {e}")


def _ensure_triage_dir() -> str:
    """Ensure that ~/.crashtriage/ directory exists. Return its path."""
    home = os.path.expanduser("~")
    triage_dir = os.path.join(home, ".crashtriage")
    os.makedirs(triage_dir, exist_ok=True)
    return triage_dir
