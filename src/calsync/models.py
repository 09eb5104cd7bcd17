from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

ALL_DAY = "All day"
NO_TITLE = "(No title)"


class AttendeeStatus(str, Enum):
    ACCEPTED = "accepted"
    DECLINED = "declined"
    TENTATIVE = "tentative"
    NEEDS_ACTION = "needsAction"
    ORGANIZER = "organizer"


_STATUS_SORT_ORDER = {
    AttendeeStatus.ORGANIZER: 0,
    AttendeeStatus.ACCEPTED: 1,
    AttendeeStatus.TENTATIVE: 2,
    AttendeeStatus.NEEDS_ACTION: 3,
    AttendeeStatus.DECLINED: 4,
}


@dataclass(frozen=True)
class Attendee:
    name: Optional[str]
    email: str
    status: AttendeeStatus = AttendeeStatus.NEEDS_ACTION


@dataclass(frozen=True)
class GoogleEventId:
    calendar_id: str
    event_id: str
    calendar_name: Optional[str] = None


@dataclass(frozen=True)
class ICloudEventId:
    calendar_url: str
    event_uid: str
    etag: Optional[str] = None
    calendar_name: Optional[str] = None


EventId = Union[GoogleEventId, ICloudEventId]


def supports_response(event_id: EventId) -> bool:
    """Only REST (Google) events can be accepted or declined."""
    return isinstance(event_id, GoogleEventId)


@dataclass(frozen=True)
class Event:
    id: EventId
    title: str
    date: str                   # YYYY-MM-DD, local
    time_str: str               # ALL_DAY or HH:MM, local
    end_time_str: Optional[str] = None
    accepted: bool = True
    is_organizer: bool = False
    is_free: bool = False
    meeting_url: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: Tuple[Attendee, ...] = field(default_factory=tuple)

    @property
    def all_day(self) -> bool:
        return self.time_str == ALL_DAY

    @property
    def source(self) -> str:
        return "google" if isinstance(self.id, GoogleEventId) else "icloud"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": _id_to_dict(self.id),
            "title": self.title,
            "date": self.date,
            "timeStr": self.time_str,
            "endTimeStr": self.end_time_str,
            "accepted": self.accepted,
            "isOrganizer": self.is_organizer,
            "isFree": self.is_free,
            "meetingUrl": self.meeting_url,
            "description": self.description,
            "location": self.location,
            "attendees": [
                {"name": a.name, "email": a.email, "status": a.status.value} for a in self.attendees
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        if not isinstance(data, dict):
            raise TypeError(f"Event must be a mapping, got {type(data).__name__}")
        raw_attendees = data.get("attendees") or []
        if not isinstance(raw_attendees, list) or not all(isinstance(a, dict) for a in raw_attendees):
            raise ValueError("attendees must be a list of mappings")
        attendees = tuple(
            Attendee(
                name=a.get("name"),
                email=str(a["email"]),
                status=AttendeeStatus(a.get("status", AttendeeStatus.NEEDS_ACTION.value)),
            )
            for a in raw_attendees
        )
        return cls(
            id=_id_from_dict(data["id"]),
            title=str(data.get("title") or NO_TITLE),
            date=str(data["date"]),
            time_str=str(data["timeStr"]),
            end_time_str=data.get("endTimeStr"),
            accepted=bool(data.get("accepted", True)),
            is_organizer=bool(data.get("isOrganizer", False)),
            is_free=bool(data.get("isFree", False)),
            meeting_url=data.get("meetingUrl"),
            description=data.get("description"),
            location=data.get("location"),
            attendees=attendees,
        )


def _id_to_dict(event_id: EventId) -> Dict[str, Any]:
    if isinstance(event_id, GoogleEventId):
        return {
            "type": "google",
            "calendarId": event_id.calendar_id,
            "eventId": event_id.event_id,
            "calendarName": event_id.calendar_name,
        }
    return {
        "type": "icloud",
        "calendarUrl": event_id.calendar_url,
        "eventUid": event_id.event_uid,
        "etag": event_id.etag,
        "calendarName": event_id.calendar_name,
    }


def _id_from_dict(data: Dict[str, Any]) -> EventId:
    if not isinstance(data, dict):
        raise ValueError(f"Event id must be a mapping, got {data!r}")
    kind = data.get("type")
    if kind == "google":
        return GoogleEventId(
            calendar_id=str(data["calendarId"]),
            event_id=str(data["eventId"]),
            calendar_name=data.get("calendarName"),
        )
    if kind == "icloud":
        return ICloudEventId(
            calendar_url=str(data["calendarUrl"]),
            event_uid=str(data["eventUid"]),
            etag=data.get("etag"),
            calendar_name=data.get("calendarName"),
        )
    raise ValueError(f"Unknown event id type: {kind!r}")


def name_from_email(email: str) -> str:
    """'john.smith@example.com' -> 'John Smith'"""
    local = email.split("@", 1)[0]
    parts = [p for p in re.split(r"[._-]", local) if p]
    return " ".join(p[:1].upper() + p[1:] for p in parts) or email


def sort_attendees(attendees: Iterable[Attendee]) -> List[Attendee]:
    return sorted(attendees, key=lambda a: (_STATUS_SORT_ORDER[a.status], (a.name or "").lower()))


def sort_events(events: Iterable[Event]) -> List[Event]:
    # All-day first, then by HH:MM which sorts lexically
    return sorted(events, key=lambda e: (0 if e.all_day else 1, e.time_str))
