from __future__ import annotations
from datetime import date
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Set, Union

from .models import Event

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def month_key(day: date) -> str:
    return f"{day.year}-{day.month}"


def _in_month(date_key: str, year: int, month: int) -> bool:
    parts = date_key.split("-")
    try:
        return int(parts[0]) == year and int(parts[1]) == month
    except (IndexError, ValueError):
        return False


class SourceCache:
    """Events of one provider indexed by ``YYYY-MM-DD``.

    Which months were fetched is tracked for the lifetime of the process
    only: a cache restored from disk reports every month as unfetched, so
    each month is re-validated once per run while the stale copy is shown.
    """

    def __init__(self) -> None:
        self._by_date: Dict[str, List[Event]] = {}
        self._fetched_months: Set[str] = set()

    def has_month(self, month_date: date) -> bool:
        return month_key(month_date) in self._fetched_months

    def store(self, events: Iterable[Event], month_date: date) -> None:
        """Replace everything held for ``month_date``'s month with ``events``."""
        year, month = month_date.year, month_date.month
        for key in [k for k in self._by_date if _in_month(k, year, month)]:
            del self._by_date[key]

        for event in events:
            self._by_date.setdefault(event.date, []).append(event)

        self._fetched_months.add(month_key(month_date))

    def get(self, day: str) -> List[Event]:
        return list(self._by_date.get(day, []))

    def has_events(self, day: str) -> bool:
        return bool(self._by_date.get(day))

    def clear(self) -> None:
        self._by_date.clear()
        self._fetched_months.clear()

    def raw_data(self) -> Dict[str, List[Dict[str, Any]]]:
        return {day: [e.to_dict() for e in events] for day, events in self._by_date.items()}

    def load_from(self, data: Dict[str, Any]) -> None:
        # Months are deliberately left unfetched
        self._by_date.clear()
        for day, items in data.items():
            if not isinstance(items, list):
                continue
            events: List[Event] = []
            for item in items:
                if not isinstance(item, dict):
                    logger.debug("Dropping non-object cached entry on %s", day)
                    continue
                try:
                    events.append(Event.from_dict(item))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.debug("Dropping unreadable cached event on %s: %s", day, exc)
            if events:
                self._by_date[str(day)] = events


class EventCache:
    def __init__(self) -> None:
        self.google = SourceCache()
        self.icloud = SourceCache()

    def has_events(self, day: str) -> bool:
        return self.google.has_events(day) or self.icloud.has_events(day)

    def clear(self) -> None:
        self.google.clear()
        self.icloud.clear()

    def save_to_disk(self, path: PathLike) -> None:
        """Best effort; the cache is an optimization, never a source of truth."""
        p = Path(path)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            payload = {"google": self.google.raw_data(), "icloud": self.icloud.raw_data()}
            p.write_text(json.dumps(payload), encoding="utf-8")
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Could not write event cache %s: %s", p, exc)

    def load_from_disk(self, path: PathLike) -> bool:
        p = Path(path)
        if not p.exists():
            return False
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable event cache %s: %s", p, exc)
            return False
        if not isinstance(data, dict):
            return False

        for name, source in (("google", self.google), ("icloud", self.icloud)):
            section = data.get(name)
            if isinstance(section, dict):
                source.load_from(section)
        return True
