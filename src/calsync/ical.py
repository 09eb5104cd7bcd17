from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
import logging
from typing import Any, List, Optional, Union

from icalendar import Calendar

logger = logging.getLogger(__name__)

EventTime = Union[date, datetime]


@dataclass(frozen=True)
class ICalAttendee:
    name: Optional[str]
    email: str
    partstat: str = "NEEDS-ACTION"
    is_organizer: bool = False


@dataclass
class ICalEvent:
    uid: str
    dtstart: EventTime
    calendar_url: str
    etag: Optional[str] = None
    summary: Optional[str] = None
    dtend: Optional[EventTime] = None
    location: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    transp: Optional[str] = None
    accepted: bool = True
    attendees: List[ICalAttendee] = field(default_factory=list)


def _text(component: Any, name: str) -> Optional[str]:
    value = component.get(name)
    if value is None:
        return None
    return str(value)


def event_time(prop: Any) -> Optional[EventTime]:
    """DTSTART/DTEND as ``date`` (all day), aware UTC, or naive wall-clock time.

    Values carrying a TZID are read as local wall-clock time, like floating ones.
    """
    if prop is None:
        return None
    value = getattr(prop, "dt", None)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value
        if "TZID" in getattr(prop, "params", {}):
            return value.replace(tzinfo=None)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return value
    return None


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def parse_attendee(prop: Any, is_organizer: bool = False) -> Optional[ICalAttendee]:
    email = str(prop).strip()
    if email.lower().startswith("mailto:"):
        email = email[7:].strip()
    if not email or "@" not in email:
        return None
    params = getattr(prop, "params", {})
    cn = params.get("CN")
    return ICalAttendee(
        name=str(cn) if cn else None,
        email=email,
        partstat="ACCEPTED" if is_organizer else str(params.get("PARTSTAT") or "NEEDS-ACTION"),
        is_organizer=is_organizer,
    )


def _self_partstat(component: Any) -> Optional[str]:
    for prop in _as_list(component.get("ATTENDEE")):
        params = getattr(prop, "params", {})
        if str(params.get("X-IS-ME", "")).upper() == "TRUE" and params.get("PARTSTAT"):
            return str(params["PARTSTAT"])
    return None


def parse_ical(data: str, calendar_url: str, etag: Optional[str] = None) -> List[ICalEvent]:
    """Decode every VEVENT in ``data``; ones without UID or DTSTART are dropped."""
    try:
        components = Calendar.from_ical(data, multiple=True)
    except ValueError as exc:
        logger.debug("Unreadable calendar data from %s: %s", calendar_url, exc)
        return []

    events: List[ICalEvent] = []
    for top in components:
        for vevent in top.walk("VEVENT"):
            uid = _text(vevent, "UID")
            dtstart = event_time(vevent.get("DTSTART"))
            if not uid or dtstart is None:
                continue

            attendees = []
            organizer = vevent.get("ORGANIZER")
            if organizer is not None:
                attendee = parse_attendee(organizer, is_organizer=True)
                if attendee is not None:
                    attendees.append(attendee)
            for prop in _as_list(vevent.get("ATTENDEE")):
                attendee = parse_attendee(prop)
                if attendee is not None:
                    attendees.append(attendee)

            self_partstat = _self_partstat(vevent)
            events.append(
                ICalEvent(
                    uid=uid,
                    dtstart=dtstart,
                    calendar_url=calendar_url,
                    etag=etag,
                    summary=_text(vevent, "SUMMARY"),
                    dtend=event_time(vevent.get("DTEND")),
                    location=_text(vevent, "LOCATION"),
                    description=_text(vevent, "DESCRIPTION"),
                    url=_text(vevent, "URL"),
                    transp=_text(vevent, "TRANSP"),
                    accepted=self_partstat is None or self_partstat.upper() == "ACCEPTED",
                    attendees=attendees,
                )
            )
    return events
