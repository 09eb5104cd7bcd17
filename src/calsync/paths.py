from __future__ import annotations
import os
from pathlib import Path

APP_NAME = "calsync"


def config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / APP_NAME


def cache_dir() -> Path:
    base = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(base) / APP_NAME


def config_path() -> Path:
    return config_dir() / "config.yaml"


def token_path() -> Path:
    return config_dir() / "tokens.json"


def events_cache_path() -> Path:
    return cache_dir() / "events.json"
