from datetime import datetime, timedelta, timezone

import pytest

from calsync.errors import AuthError, HttpError
from calsync.google_auth import (
    DEVICE_CODE_URL,
    DEVICE_GRANT_TYPE,
    TOKEN_URL,
    GoogleAuth,
    PollDenied,
    PollExpired,
    PollPending,
    PollSlowDown,
    PollSuccess,
    TokenInfo,
)


class FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or ("" if payload is None else str(payload))

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.posts = []

    def post(self, url, data=None, timeout=None):
        self.posts.append((url, data))
        return self.responses.pop(0)


def _auth(*responses):
    session = FakeSession(*responses)
    return GoogleAuth("client-id", "client-secret", session=session), session


def test_request_device_code_posts_form_and_reads_fields():
    auth, session = _auth(
        FakeResponse(
            200,
            {
                "device_code": "dev-1",
                "user_code": "ABCD-EFGH",
                "verification_url": "https://www.google.com/device",
                "expires_in": 1800,
                "interval": 5,
            },
        )
    )

    code = auth.request_device_code()

    assert code.device_code == "dev-1"
    assert code.user_code == "ABCD-EFGH"
    assert code.verification_url == "https://www.google.com/device"
    assert code.expires_in == 1800
    remaining = code.expires_at - datetime.now(timezone.utc)
    assert timedelta(minutes=29) < remaining <= timedelta(minutes=30)

    url, data = session.posts[0]
    assert url == DEVICE_CODE_URL
    assert data["client_id"] == "client-id"
    assert data["scope"] == "https://www.googleapis.com/auth/calendar"


def test_request_device_code_accepts_verification_uri_spelling():
    auth, _ = _auth(
        FakeResponse(200, {"device_code": "d", "user_code": "u", "verification_uri": "https://g.co/device"})
    )

    assert auth.request_device_code().verification_url == "https://g.co/device"


def test_request_device_code_failure_raises_http_error():
    auth, _ = _auth(FakeResponse(400, text='{"error": "invalid_client"}'))

    with pytest.raises(HttpError) as excinfo:
        auth.request_device_code()

    assert excinfo.value.status_code == 400
    assert "invalid_client" in str(excinfo.value)


@pytest.mark.parametrize(
    "error, expected",
    [
        ("authorization_pending", PollPending),
        ("slow_down", PollSlowDown),
        ("access_denied", PollDenied),
        ("expired_token", PollExpired),
    ],
)
def test_poll_classifies_error_responses(error, expected):
    auth, session = _auth(FakeResponse(428 if error == "authorization_pending" else 400, {"error": error}))

    assert isinstance(auth.poll_for_token("dev-1"), expected)

    url, data = session.posts[0]
    assert url == TOKEN_URL
    assert data["grant_type"] == DEVICE_GRANT_TYPE
    assert data["device_code"] == "dev-1"


def test_poll_pending_as_400_is_still_pending():
    auth, _ = _auth(FakeResponse(400, {"error": "authorization_pending"}))

    assert isinstance(auth.poll_for_token("dev-1"), PollPending)


def test_poll_unknown_error_raises_auth_error():
    auth, _ = _auth(FakeResponse(500, text="<html>oops</html>"))

    with pytest.raises(AuthError, match="Unknown error"):
        auth.poll_for_token("dev-1")


def test_poll_success_returns_tokens():
    auth, _ = _auth(
        FakeResponse(200, {"access_token": "at", "refresh_token": "rt", "expires_in": 3600, "token_type": "Bearer"})
    )

    result = auth.poll_for_token("dev-1")

    assert isinstance(result, PollSuccess)
    assert result.tokens.access_token == "at"
    assert result.tokens.refresh_token == "rt"
    assert not result.tokens.is_expired()


def test_refresh_keeps_refresh_token_when_omitted():
    auth, session = _auth(FakeResponse(200, {"access_token": "new-at", "expires_in": 3599}))

    tokens = auth.refresh_token("rt-keep")

    assert tokens.access_token == "new-at"
    assert tokens.refresh_token == "rt-keep"
    assert session.posts[0][1]["grant_type"] == "refresh_token"


def test_refresh_failure_raises_auth_error():
    auth, _ = _auth(FakeResponse(400, {"error": "invalid_grant"}, text='{"error": "invalid_grant"}'))

    with pytest.raises(AuthError) as excinfo:
        auth.refresh_token("rt")

    assert excinfo.value.body == '{"error": "invalid_grant"}'


def test_token_is_expired_within_five_minute_buffer():
    now = datetime(2025, 7, 1, 12, 0, tzinfo=timezone.utc)
    tokens = TokenInfo("at", "rt", expires_at=now + timedelta(minutes=4))

    assert tokens.is_expired(now)
    assert not TokenInfo("at", "rt", expires_at=now + timedelta(minutes=6)).is_expired(now)
