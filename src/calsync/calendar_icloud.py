from __future__ import annotations
from dataclasses import dataclass
from datetime import date
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import caldav
from caldav.elements import cdav, dav
from caldav.lib import error as dav_error

from .errors import DeleteError, DiscoveryError, HttpError
from .httplog import log_request, log_response
from .ical import ICalEvent, parse_ical

logger = logging.getLogger(__name__)

ICLOUD_CALDAV_URL = "https://caldav.icloud.com/"

_PRINCIPAL_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:current-user-principal/>
  </d:prop>
</d:propfind>"""

_HOME_SET_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <c:calendar-home-set/>
  </d:prop>
</d:propfind>"""

_LIST_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:cs="http://calendarserver.org/ns/">
  <d:prop>
    <d:displayname/>
    <d:resourcetype/>
    <cs:getctag/>
  </d:prop>
</d:propfind>"""

_QUERY_BODY = """<?xml version="1.0" encoding="utf-8" ?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""


class _IcalCompatibilityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return "Ical data was modified to avoid compatibility issues" not in record.getMessage()


logging.getLogger("caldav").addFilter(_IcalCompatibilityFilter())


@dataclass(frozen=True)
class CalendarEntry:
    url: str
    name: Optional[str] = None


@dataclass(frozen=True)
class ICloudAuth:
    apple_id: str
    app_password: str


def _status_of(exc: dav_error.DAVError) -> Optional[int]:
    if isinstance(exc, dav_error.AuthorizationError):
        return 401
    if isinstance(exc, dav_error.NotFoundError):
        return 404
    return None


class CalDavClient:
    def __init__(
        self,
        auth: ICloudAuth,
        server_url: str = ICLOUD_CALDAV_URL,
        client: Optional[Any] = None,
        timeout: float = 30,
    ) -> None:
        self.auth = auth
        self.server_url = server_url
        self._client = client or caldav.DAVClient(
            url=server_url,
            username=auth.apple_id,
            password=auth.app_password,
            timeout=timeout,
        )

    def discover_calendars(self) -> List[CalendarEntry]:
        """Principal -> calendar home -> calendar collections."""
        principal_url = self._find_href(
            self.server_url, _PRINCIPAL_BODY, dav.CurrentUserPrincipal.tag, "Principal discovery failed"
        )
        if principal_url is None:
            raise DiscoveryError("Could not find principal URL")

        home_url = self._find_href(
            principal_url, _HOME_SET_BODY, cdav.CalendarHomeSet.tag, "Calendar home discovery failed"
        )
        if home_url is None:
            raise DiscoveryError("Could not find calendar home")

        response = self._call("PROPFIND", home_url, _LIST_BODY, 1, "Calendar list failed")
        calendars: List[CalendarEntry] = []
        for href, props in _objects(response).items():
            resource_type = props.get(dav.ResourceType.tag)
            if resource_type is None or resource_type.find(cdav.Calendar.tag) is None:
                continue
            name = props.get(dav.DisplayName.tag)
            display = (name.text or "").strip() if name is not None else ""
            calendars.append(CalendarEntry(url=urljoin(home_url, href), name=display or None))
        return calendars

    def fetch_events(self, calendar_url: str, start: date, end: date) -> List[ICalEvent]:
        body = _QUERY_BODY.format(
            start=start.strftime("%Y%m%dT000000Z"),
            end=end.strftime("%Y%m%dT235959Z"),
        )
        response = self._call("REPORT", calendar_url, body, 1, "REPORT failed")

        events: List[ICalEvent] = []
        for href, props in _objects(response).items():
            data = props.get(cdav.CalendarData.tag)
            if data is None or not (data.text or "").strip():
                logger.debug("Skipping %s without calendar-data", href)
                continue

            etag = props.get(dav.GetEtag.tag)
            etag_value = (etag.text or "").strip().strip('"') if etag is not None else ""
            try:
                events.extend(parse_ical(data.text, calendar_url, etag_value or None))
            except (ValueError, KeyError, AttributeError) as exc:
                logger.debug("Skipping malformed calendar-data in %s: %s", href, exc)
        return events

    def delete_event(self, calendar_url: str, uid: str, etag: Optional[str] = None) -> None:
        event_url = f"{calendar_url.rstrip('/')}/{uid}.ics"
        headers: Dict[str, str] = {}
        if etag:
            headers["If-Match"] = f'"{etag}"'

        log_request("DELETE", event_url)
        try:
            response = self._client.request(event_url, "DELETE", "", headers)
        except dav_error.DAVError as exc:
            raise DeleteError("Failed to delete event", _status_of(exc), str(exc)) from exc
        log_response(response.status, event_url)
        if response.status not in (200, 202, 204):
            raise DeleteError("Failed to delete event", response.status, response.raw)

    def _find_href(self, url: str, body: str, tag: str, context: str) -> Optional[str]:
        response = self._call("PROPFIND", url, body, 0, context)
        for props in _objects(response).values():
            prop = props.get(tag)
            href = prop.find(dav.Href.tag) if prop is not None else None
            if href is not None and (href.text or "").strip():
                return urljoin(url, href.text.strip())
        return None

    def _call(self, method: str, url: str, body: str, depth: int, context: str):
        log_request(method, url)
        try:
            if method == "REPORT":
                response = self._client.report(url, body, depth)
            else:
                response = self._client.propfind(url, body, depth)
        except dav_error.DAVError as exc:
            raise HttpError(context, _status_of(exc), str(exc)) from exc
        log_response(response.status, url)
        if response.status >= 400:
            raise HttpError(context, response.status, response.raw)
        return response


def _objects(response: Any) -> Dict[str, Dict[str, Any]]:
    """href -> {property tag: element} for a multistatus body."""
    if getattr(response, "tree", None) is None:
        return {}
    return response.find_objects_and_props()
