# -*- coding: utf-8 -*-
"""Configuration management (JSON on disk).

The file lives in the platform config directory and is merged over
:data:`DEFAULT_CONFIG`; a missing file is created with the defaults.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict
import copy
import json
import os

APP_NAME = "evidencekeeper"

DB_PATH = os.environ.get("EVIDENCEKEEPER_DB", "evidence_store.sqlite3")

# short name in the snapshot -> settings key in the store
DEFAULT_BACKUP_SETTINGS: Dict[str, str] = {
    "pin": "recordKeeper_pin",
    "decoyPin": "recordKeeper_decoyPin",
    "lockEnabled": "recordKeeper_lockEnabled",
    "userName": "recordKeeper_userName",
    "welcomeCompleted": "recordKeeper_welcomeCompleted",
}

DEFAULT_CONFIG: Dict[str, object] = {
    "db_path": DB_PATH,
    "storage_backend": "sqlite",
    "allow_memory_fallback": False,
    "backup_version": "1.0",
    "backup_settings": DEFAULT_BACKUP_SETTINGS,
}


def _config_dir() -> Path:
    """Return the config directory path for this platform."""
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~\\AppData\\Roaming"))
        return Path(base) / APP_NAME
    base = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(base) / APP_NAME

def _config_path() -> Path:
    return _config_dir() / "config.json"

def load_config() -> Dict[str, object]:
    """Load the merged configuration (defaults + file)."""
    path = _config_path()
    merged = copy.deepcopy(DEFAULT_CONFIG)
    if not path.exists():
        save_config(DEFAULT_CONFIG)
    else:
        with path.open("r", encoding="utf-8") as f:
            merged.update(json.load(f))
    if "EVIDENCEKEEPER_DB" in os.environ:
        merged["db_path"] = os.environ["EVIDENCEKEEPER_DB"]
    return merged

def save_config(cfg: Dict[str, object]) -> None:
    """Persist *cfg* to the JSON config file."""
    _config_dir().mkdir(parents=True, exist_ok=True)
    with _config_path().open("w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)
