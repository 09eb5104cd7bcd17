from __future__ import annotations
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .calendar_icloud import CalendarEntry
from .google_auth import TokenInfo

logger = logging.getLogger(__name__)


class TokenStore:
    """Credential file holding Google tokens and discovered iCloud calendars.

    Layout::

        {"google": {"tokens": {...}, "stored_at": "..."},
         "icloud": {"calendars": [{"url": ..., "name": ...}], "calendar_urls": [], "stored_at": "..."}}
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def _load_all(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"google": None, "icloud": None}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable token file %s: %s", self.path, exc)
            return {"google": None, "icloud": None}
        return data if isinstance(data, dict) else {"google": None, "icloud": None}

    def _save_all(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            # O_CREAT leaves the mode of an existing file alone
            os.fchmod(fd, 0o600)
        except (AttributeError, OSError):
            pass  # not supported everywhere
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(json.dumps(data, indent=2))

    def save_google_tokens(self, tokens: TokenInfo) -> None:
        data = self._load_all()
        data["google"] = {
            "tokens": {
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "expires_at": tokens.expires_at.isoformat(),
                "token_type": tokens.token_type,
            },
            "stored_at": datetime.now(timezone.utc).isoformat(),
        }
        self._save_all(data)

    def load_google_tokens(self) -> Optional[TokenInfo]:
        section = self._load_all().get("google")
        if not isinstance(section, dict):
            return None
        try:
            raw = section["tokens"]
            expires_at = datetime.fromisoformat(raw["expires_at"])
            if expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            return TokenInfo(
                access_token=str(raw["access_token"]),
                refresh_token=raw.get("refresh_token"),
                expires_at=expires_at,
                token_type=str(raw.get("token_type", "Bearer")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed Google tokens in %s: %s", self.path, exc)
            return None

    def clear_google_tokens(self) -> None:
        data = self._load_all()
        data["google"] = None
        self._save_all(data)

    def save_icloud_calendars(self, calendars: List[CalendarEntry]) -> None:
        data = self._load_all()
        data["icloud"] = {
            "calendar_urls": [],
            "calendars": [{"url": c.url, "name": c.name} for c in calendars],
            "stored_at": datetime.now(timezone.utc).isoformat(),
        }
        self._save_all(data)

    def load_icloud_calendars(self) -> Optional[List[CalendarEntry]]:
        section = self._load_all().get("icloud")
        if not isinstance(section, dict):
            return None

        calendars = section.get("calendars") or []
        if calendars:
            return [CalendarEntry(url=str(c["url"]), name=c.get("name")) for c in calendars if isinstance(c, dict) and c.get("url")]

        # Older files only kept bare URLs
        urls = section.get("calendar_urls") or []
        if urls:
            return [CalendarEntry(url=str(u)) for u in urls]
        return None
