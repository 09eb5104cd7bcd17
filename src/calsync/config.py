from __future__ import annotations
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import yaml

@dataclass
class GoogleConfig:
    client_id: str
    client_secret: str
    calendar_id: str = "primary"

@dataclass
class ICloudConfig:
    apple_id: str
    app_password: str

@dataclass
class AppConfig:
    google: Optional[GoogleConfig] = None
    icloud: Optional[ICloudConfig] = None
    timezone: Optional[str] = None          # None: host local time
    poll_interval_seconds: float = 5.0

def _pick(section: Dict[str, Any], key: str, env_var: str) -> str:
    # Environment (or .env) wins over the file so secrets can stay out of it
    return str(os.environ.get(env_var) or section.get(key) or "").strip()

def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    data: Dict[str, Any] = {}
    if p.exists():
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid config file {p}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Config file {p} must contain a mapping")

    google = data.get("google") or {}
    icloud = data.get("icloud") or {}

    tz_name = data.get("timezone") or None
    if tz_name is not None:
        try:
            ZoneInfo(str(tz_name))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {tz_name!r} in {p}") from exc

    client_id = _pick(google, "client_id", "GOOGLE_CLIENT_ID")
    client_secret = _pick(google, "client_secret", "GOOGLE_CLIENT_SECRET")
    apple_id = _pick(icloud, "apple_id", "ICLOUD_APPLE_ID")
    app_password = _pick(icloud, "app_password", "ICLOUD_APP_PASSWORD")

    return AppConfig(
        google=GoogleConfig(
            client_id=client_id,
            client_secret=client_secret,
            calendar_id=str(google.get("calendar_id", "primary")),
        ) if client_id and client_secret else None,
        icloud=ICloudConfig(apple_id=apple_id, app_password=app_password) if apple_id and app_password else None,
        timezone=str(tz_name) if tz_name else None,
        poll_interval_seconds=float(data.get("poll_interval_seconds", 5)),
    )
