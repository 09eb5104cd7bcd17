from datetime import date

import pytest
from caldav.davclient import DAVResponse
from caldav.lib import error as dav_error

import calsync.calendar_icloud as calendar_icloud
from calsync.calendar_icloud import CalDavClient, CalendarEntry, ICloudAuth
from calsync.errors import DeleteError, DiscoveryError, HttpError

SERVER = "https://caldav.example.com/"


class FakeHttpResponse:
    def __init__(self, status_code: int = 207, text: str = ""):
        self.status_code = status_code
        self.text = text
        self.content = text.encode("utf-8")
        self.reason = "Multi-Status" if status_code == 207 else "Status"
        content_type = "application/xml; charset=utf-8" if text.startswith("<") else "text/plain"
        self.headers = {"Content-Type": content_type, "Content-Length": str(len(self.content))}


class FakeDAVClient:
    """Replays queued responses (or raises queued errors) and records every call."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self, method, url, body, headers):
        self.calls.append({"method": method, "url": url, "body": body, "headers": headers})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return DAVResponse(item)

    def propfind(self, url=None, props="", depth=0):
        return self._next("PROPFIND", url, props, {"Depth": str(depth)})

    def report(self, url, query="", depth=0):
        return self._next("REPORT", url, query, {"Depth": str(depth)})

    def request(self, url, method="GET", body="", headers=None):
        return self._next(method, url, body, dict(headers or {}))


def _client(*responses):
    dav = FakeDAVClient(*responses)
    return CalDavClient(ICloudAuth("me@example.com", "app-pass"), server_url=SERVER, client=dav), dav


OK = "<d:status>HTTP/1.1 200 OK</d:status>"

PRINCIPAL_XML = f"""<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/</d:href>
    <d:propstat><d:prop>
      <d:current-user-principal><d:href>/123456/principal/</d:href></d:current-user-principal>
    </d:prop>{OK}</d:propstat>
  </d:response>
</d:multistatus>"""

HOME_XML = """<multistatus xmlns="DAV:">
  <response>
    <href>/123456/principal/</href>
    <propstat><prop>
      <calendar-home-set xmlns="urn:ietf:params:xml:ns:caldav">
        <href xmlns="DAV:">https://p01-caldav.example.com/123456/calendars/</href>
      </calendar-home-set>
    </prop><status>HTTP/1.1 200 OK</status></propstat>
  </response>
</multistatus>"""

LIST_XML = f"""<d:multistatus xmlns:d="DAV:" xmlns:cal="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/123456/calendars/</d:href>
    <d:propstat><d:prop>
      <d:resourcetype><d:collection/></d:resourcetype>
    </d:prop>{OK}</d:propstat>
  </d:response>
  <d:response>
    <d:href>/123456/calendars/home/</d:href>
    <d:propstat><d:prop>
      <d:displayname>Home &amp; Family</d:displayname>
      <d:resourcetype><d:collection/><cal:calendar/></d:resourcetype>
    </d:prop>{OK}</d:propstat>
  </d:response>
  <d:response>
    <d:href>/123456/calendars/work/</d:href>
    <d:propstat><d:prop>
      <d:displayname></d:displayname>
      <d:resourcetype><d:collection/><cal:calendar /></d:resourcetype>
    </d:prop>{OK}</d:propstat>
  </d:response>
  <d:response>
    <d:href>/123456/calendars/inbox/</d:href>
    <d:propstat><d:prop>
      <d:displayname>Inbox</d:displayname>
      <d:resourcetype><d:collection/><cal:schedule-inbox/></d:resourcetype>
    </d:prop>{OK}</d:propstat>
  </d:response>
</d:multistatus>"""

REPORT_XML = f"""<d:multistatus xmlns:d="DAV:" xmlns:cal="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/123456/calendars/work/offsite.ics</d:href>
    <d:propstat><d:prop>
      <d:getetag>"e1"</d:getetag>
      <cal:calendar-data>BEGIN:VCALENDAR&#13;
BEGIN:VEVENT&#13;
UID:offsite-1&#13;
DTSTART;VALUE=DATE:20250701&#13;
SUMMARY:Offsite&#13;
ATTENDEE;CN=Me;X-IS-ME=TRUE;PARTSTAT=ACCEPTED:mailto:me@example.com&#13;
END:VEVENT&#13;
END:VCALENDAR</cal:calendar-data>
    </d:prop>{OK}</d:propstat>
  </d:response>
  <d:response>
    <d:href>/123456/calendars/work/empty.ics</d:href>
    <d:propstat><d:prop><d:getetag>"e2"</d:getetag></d:prop>{OK}</d:propstat>
  </d:response>
</d:multistatus>"""


def test_default_client_is_a_caldav_client_with_the_apple_credentials(monkeypatch):
    created = {}

    def fake_dav_client(**kwargs):
        created.update(kwargs)
        return FakeDAVClient()

    monkeypatch.setattr(calendar_icloud.caldav, "DAVClient", fake_dav_client)

    CalDavClient(ICloudAuth("me@example.com", "app-pass"))

    assert created["url"] == calendar_icloud.ICLOUD_CALDAV_URL
    assert created["username"] == "me@example.com"
    assert created["password"] == "app-pass"


def test_discover_calendars_walks_principal_home_and_list():
    client, dav = _client(
        FakeHttpResponse(207, PRINCIPAL_XML),
        FakeHttpResponse(207, HOME_XML),
        FakeHttpResponse(207, LIST_XML),
    )

    calendars = client.discover_calendars()

    assert calendars == [
        CalendarEntry(url="https://p01-caldav.example.com/123456/calendars/home/", name="Home & Family"),
        CalendarEntry(url="https://p01-caldav.example.com/123456/calendars/work/", name=None),
    ]
    assert [c["method"] for c in dav.calls] == ["PROPFIND", "PROPFIND", "PROPFIND"]
    assert dav.calls[0]["url"] == SERVER
    assert dav.calls[0]["headers"]["Depth"] == "0"
    assert "current-user-principal" in dav.calls[0]["body"]
    assert dav.calls[1]["url"] == "https://caldav.example.com/123456/principal/"
    assert "calendar-home-set" in dav.calls[1]["body"]
    assert dav.calls[2]["url"] == "https://p01-caldav.example.com/123456/calendars/"
    assert dav.calls[2]["headers"]["Depth"] == "1"


def test_discovery_without_principal_raises():
    client, _ = _client(FakeHttpResponse(207, '<d:multistatus xmlns:d="DAV:"/>'))

    with pytest.raises(DiscoveryError, match="principal"):
        client.discover_calendars()


def test_discovery_without_home_set_raises():
    client, _ = _client(
        FakeHttpResponse(207, PRINCIPAL_XML),
        FakeHttpResponse(207, '<d:multistatus xmlns:d="DAV:"/>'),
    )

    with pytest.raises(DiscoveryError, match="calendar home"):
        client.discover_calendars()


def test_non_success_status_raises_http_error_with_body():
    client, _ = _client(FakeHttpResponse(403, "Forbidden"))

    with pytest.raises(HttpError) as excinfo:
        client.discover_calendars()

    assert excinfo.value.status_code == 403
    assert "Forbidden" in str(excinfo.value)


def test_rejected_credentials_raise_http_error_401():
    client, _ = _client(dav_error.AuthorizationError(url=SERVER, reason="Unauthorized"))

    with pytest.raises(HttpError) as excinfo:
        client.discover_calendars()

    assert excinfo.value.status_code == 401


def test_fetch_events_reports_all_day_accepted_event():
    client, dav = _client(FakeHttpResponse(207, REPORT_XML))
    url = "https://p01-caldav.example.com/123456/calendars/work/"

    events = client.fetch_events(url, date(2025, 7, 1), date(2025, 7, 31))

    assert len(events) == 1
    e = events[0]
    assert e.uid == "offsite-1"
    assert e.dtstart == date(2025, 7, 1)
    assert e.summary == "Offsite"
    assert e.etag == "e1"
    assert e.accepted is True
    assert e.calendar_url == url

    call = dav.calls[0]
    assert call["method"] == "REPORT"
    assert call["url"] == url
    assert call["headers"]["Depth"] == "1"
    assert 'start="20250701T000000Z"' in call["body"]
    assert 'end="20250731T235959Z"' in call["body"]


def test_calendar_query_accepts_cdata_payload():
    xml = (
        '<d:multistatus xmlns:d="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav"><d:response>'
        "<d:href>/cal/c1.ics</d:href><d:propstat><d:prop><d:getetag>abc</d:getetag>"
        "<C:calendar-data><![CDATA[BEGIN:VEVENT\nUID:c1\nDTSTART:20250703T080000Z\n"
        f"SUMMARY:Tom & Jerry\nEND:VEVENT]]></C:calendar-data></d:prop>{OK}</d:propstat>"
        "</d:response></d:multistatus>"
    )
    client, _ = _client(FakeHttpResponse(207, xml))

    events = client.fetch_events("https://cal/", date(2025, 7, 1), date(2025, 7, 31))

    assert events[0].summary == "Tom & Jerry"
    assert events[0].etag == "abc"


def test_unreadable_calendar_data_is_skipped_without_losing_the_rest():
    broken = (
        "<d:response><d:href>/cal/bad.ics</d:href><d:propstat><d:prop>"
        "<C:calendar-data>END:VEVENT\nBEGIN:VEVENT\nUID:bad\nEND:VEVENT</C:calendar-data>"
        f"</d:prop>{OK}</d:propstat></d:response>"
    )
    good = (
        "<d:response><d:href>/cal/good.ics</d:href><d:propstat><d:prop>"
        "<C:calendar-data>BEGIN:VEVENT\nUID:good\nDTSTART:20250703T080000Z\nEND:VEVENT</C:calendar-data>"
        f"</d:prop>{OK}</d:propstat></d:response>"
    )
    xml = f'<d:multistatus xmlns:d="DAV:" xmlns:C="urn:ietf:params:xml:ns:caldav">{broken}{good}</d:multistatus>'
    client, _ = _client(FakeHttpResponse(207, xml))

    events = client.fetch_events("https://cal/", date(2025, 7, 1), date(2025, 7, 31))

    assert [e.uid for e in events] == ["good"]


def test_delete_sends_if_match_with_quoted_etag():
    client, dav = _client(FakeHttpResponse(204))

    client.delete_event("https://cal.example.com/work/", "uid-9", "etag-9")

    call = dav.calls[0]
    assert call["method"] == "DELETE"
    assert call["url"] == "https://cal.example.com/work/uid-9.ics"
    assert call["headers"]["If-Match"] == '"etag-9"'


def test_delete_without_etag_omits_if_match_and_reports_failure():
    client, dav = _client(FakeHttpResponse(412, "Precondition Failed"))

    with pytest.raises(DeleteError) as excinfo:
        client.delete_event("https://cal.example.com/work", "uid-9")

    assert "If-Match" not in dav.calls[0]["headers"]
    assert dav.calls[0]["url"] == "https://cal.example.com/work/uid-9.ics"
    assert excinfo.value.status_code == 412


def test_delete_of_missing_event_is_an_error():
    client, _ = _client(dav_error.NotFoundError(url="https://cal/x.ics", reason="Not Found"))

    with pytest.raises(DeleteError) as excinfo:
        client.delete_event("https://cal/", "x")

    assert excinfo.value.status_code == 404
