from __future__ import annotations
from datetime import date, datetime, tzinfo
import re
from typing import Any, Dict, List, Optional

from .ical import EventTime, ICalEvent
from .models import (
    ALL_DAY,
    NO_TITLE,
    Attendee,
    AttendeeStatus,
    Event,
    GoogleEventId,
    ICloudEventId,
    name_from_email,
)

MEETING_HOSTS = ("zoom.us", "meet.google.com", "teams.microsoft.com")
# Matched on any subdomain (us02web.zoom.us/j/...)
MEETING_PATTERNS = ("zoom.us/j/", "meet.google.com/", "teams.microsoft.com/")
_URL_END_RE = re.compile(r"[\s\"<>]")

_PARTSTAT_STATUS = {
    "ACCEPTED": AttendeeStatus.ACCEPTED,
    "DECLINED": AttendeeStatus.DECLINED,
    "TENTATIVE": AttendeeStatus.TENTATIVE,
}
_GOOGLE_STATUS = {
    "accepted": AttendeeStatus.ACCEPTED,
    "declined": AttendeeStatus.DECLINED,
    "tentative": AttendeeStatus.TENTATIVE,
}


def is_meeting_url(url: str) -> bool:
    return any(host in url for host in MEETING_HOSTS)


def extract_meeting_url(text: str) -> Optional[str]:
    """Pull the first Zoom/Meet/Teams link out of free text."""
    for pattern in MEETING_PATTERNS:
        pos = text.find(pattern)
        if pos == -1:
            continue
        start = text.rfind("https://", 0, pos)
        if start == -1:
            continue
        m = _URL_END_RE.search(text, start)
        return text[start:m.start()] if m else text[start:]
    return None


def _meeting_url_from_text(*texts: Optional[str]) -> Optional[str]:
    for text in texts:
        if text:
            url = extract_meeting_url(text)
            if url:
                return url
    return None


def _local(dt: datetime, tz: Optional[tzinfo]) -> datetime:
    # Naive values are already local wall-clock time
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(tz)


def _date_and_time(start: EventTime, end: Optional[EventTime], tz: Optional[tzinfo]):
    if not isinstance(start, datetime):
        return start.isoformat(), ALL_DAY, None
    local_start = _local(start, tz)
    end_str = None
    if isinstance(end, datetime):
        end_str = _local(end, tz).strftime("%H:%M")
    return local_start.strftime("%Y-%m-%d"), local_start.strftime("%H:%M"), end_str


def partstat_to_status(partstat: str, is_organizer: bool = False) -> AttendeeStatus:
    if is_organizer:
        return AttendeeStatus.ORGANIZER
    return _PARTSTAT_STATUS.get(partstat.upper(), AttendeeStatus.NEEDS_ACTION)


def icloud_event_to_display(
    event: ICalEvent,
    calendar_name: Optional[str],
    tz: Optional[tzinfo] = None,
) -> Event:
    day, time_str, end_time_str = _date_and_time(event.dtstart, event.dtend, tz)

    meeting_url = event.url if event.url and is_meeting_url(event.url) else None
    meeting_url = meeting_url or _meeting_url_from_text(event.location, event.description)

    return Event(
        id=ICloudEventId(
            calendar_url=event.calendar_url,
            event_uid=event.uid,
            etag=event.etag,
            calendar_name=calendar_name,
        ),
        title=event.summary or NO_TITLE,
        date=day,
        time_str=time_str,
        end_time_str=end_time_str,
        accepted=event.accepted,
        is_organizer=any(a.is_organizer for a in event.attendees),
        is_free=(event.transp or "").upper() == "TRANSPARENT",
        meeting_url=meeting_url,
        description=event.description,
        location=event.location,
        attendees=tuple(
            Attendee(
                name=a.name or name_from_email(a.email),
                email=a.email,
                status=partstat_to_status(a.partstat, a.is_organizer),
            )
            for a in event.attendees
        ),
    )


def _google_time(obj: Dict[str, Any]) -> Optional[EventTime]:
    if obj.get("date"):
        return date.fromisoformat(obj["date"])
    if obj.get("dateTime"):
        return datetime.fromisoformat(obj["dateTime"])
    return None


def _google_meeting_url(item: Dict[str, Any]) -> Optional[str]:
    if item.get("hangoutLink"):
        return item["hangoutLink"]
    for entry in (item.get("conferenceData") or {}).get("entryPoints") or []:
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    return _meeting_url_from_text(item.get("location"), item.get("description"))


def _google_attendees(raw: List[Dict[str, Any]]) -> List[Attendee]:
    attendees: List[Attendee] = []
    for att in raw:
        email = att.get("email")
        if not email:
            continue
        if att.get("organizer"):
            status = AttendeeStatus.ORGANIZER
        else:
            status = _GOOGLE_STATUS.get(att.get("responseStatus", ""), AttendeeStatus.NEEDS_ACTION)
        attendees.append(Attendee(name=att.get("displayName") or name_from_email(email), email=email, status=status))
    return attendees


def google_event_to_display(
    item: Dict[str, Any],
    calendar_id: str,
    calendar_name: Optional[str],
    tz: Optional[tzinfo] = None,
) -> Optional[Event]:
    """Returns None for items without a usable start (e.g. cancelled stubs)."""
    try:
        start = _google_time(item.get("start") or {})
        end = _google_time(item.get("end") or {})
    except ValueError:
        return None
    if start is None or not item.get("id"):
        return None
    day, time_str, end_time_str = _date_and_time(start, end, tz)

    # Events on your own calendar without an attendee list are yours
    accepted = True
    is_organizer = True
    raw_attendees = item.get("attendees") or []
    for att in raw_attendees:
        if att.get("self"):
            accepted = att.get("responseStatus") in (None, "", "accepted", "organizer")
            is_organizer = bool(att.get("organizer"))
            break

    return Event(
        id=GoogleEventId(calendar_id=calendar_id, event_id=item["id"], calendar_name=calendar_name),
        title=item.get("summary") or NO_TITLE,
        date=day,
        time_str=time_str,
        end_time_str=end_time_str,
        accepted=accepted,
        is_organizer=is_organizer,
        is_free=item.get("transparency") == "transparent",
        meeting_url=_google_meeting_url(item),
        description=item.get("description"),
        location=item.get("location"),
        attendees=tuple(_google_attendees(raw_attendees)),
    )
