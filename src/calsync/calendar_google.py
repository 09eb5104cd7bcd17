from __future__ import annotations
from datetime import date
import logging
from typing import Any, Callable, Dict, List, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError as GoogleHttpError

from .errors import CalendarError, HttpError, TokenExpiredError
from .google_auth import CALENDAR_SCOPE, TokenInfo
from .httplog import log_request, log_response

logger = logging.getLogger(__name__)

PAGE_SIZE = 250
RESPONSE_STATUSES = ("accepted", "declined", "tentative")

ServiceFactory = Callable[[TokenInfo], Any]


def _build_service(tokens: TokenInfo) -> Any:
    creds = Credentials(token=tokens.access_token, scopes=[CALENDAR_SCOPE])
    return build("calendar", "v3", credentials=creds, cache_discovery=False)


def _execute(request: Any, context: str) -> Any:
    method = getattr(request, "method", "GET")
    uri = getattr(request, "uri", context)
    log_request(method, uri)
    try:
        result = request.execute()
    except GoogleHttpError as exc:
        status = int(getattr(exc.resp, "status", 0) or 0)
        log_response(status, uri)
        body = exc.content.decode("utf-8", errors="replace") if isinstance(exc.content, bytes) else str(exc.content)
        if status == 401:
            raise TokenExpiredError(context, status, body) from exc
        raise HttpError(context, status, body) from exc
    log_response(200, uri)
    return result


class CalendarClient:
    """Google Calendar v3 access with a bearer token from the device flow."""

    def __init__(self, tokens: TokenInfo, service_factory: Optional[ServiceFactory] = None) -> None:
        self.tokens = tokens
        self._service_factory = service_factory or _build_service
        self._service: Any = None

    @property
    def service(self) -> Any:
        if self._service is None:
            self._service = self._service_factory(self.tokens)
        return self._service

    def list_events(self, calendar_id: str, time_min: date, time_max: date) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                "calendarId": calendar_id,
                "timeMin": f"{time_min:%Y-%m-%d}T00:00:00Z",
                "timeMax": f"{time_max:%Y-%m-%d}T23:59:59Z",
                "singleEvents": True,
                "orderBy": "startTime",
                "maxResults": PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            resp = _execute(self.service.events().list(**params), "Calendar API error")
            items.extend(resp.get("items", []))
            page_token = resp.get("nextPageToken")
            if not page_token:
                return items

    def respond_to_event(self, calendar_id: str, event_id: str, response_status: str) -> None:
        """Set the caller's own attendance status (read-modify-write)."""
        if response_status not in RESPONSE_STATUSES:
            raise ValueError(f"Unsupported response status: {response_status}")

        event = _execute(
            self.service.events().get(calendarId=calendar_id, eventId=event_id),
            "Failed to get event",
        )
        attendees = event.get("attendees") or []
        for attendee in attendees:
            if attendee.get("self"):
                attendee["responseStatus"] = response_status
                break
        else:
            raise CalendarError("You are not listed as an attendee of this event")

        _execute(
            self.service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body={"attendees": attendees},
                sendUpdates="none",
            ),
            "Failed to update event",
        )

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        _execute(
            self.service.events().delete(calendarId=calendar_id, eventId=event_id, sendUpdates="none"),
            "Failed to delete event",
        )

    def get_calendar_name(self, calendar_id: str) -> Optional[str]:
        try:
            meta = _execute(self.service.calendars().get(calendarId=calendar_id), "Failed to get calendar")
        except HttpError as exc:
            logger.debug("Calendar name lookup failed for %s: %s", calendar_id, exc)
            return None
        return meta.get("summary")
