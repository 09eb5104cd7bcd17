from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

import requests

from .errors import AuthError, HttpError
from .httplog import log_request, log_response

DEVICE_CODE_URL = "https://oauth2.googleapis.com/device/code"
TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

EXPIRY_BUFFER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenInfo:
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime        # timezone-aware
    token_type: str = "Bearer"

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or _utcnow()
        return now >= self.expires_at - EXPIRY_BUFFER


@dataclass(frozen=True)
class DeviceCode:
    device_code: str
    user_code: str
    verification_url: str
    expires_in: int
    expires_at: datetime


# Poll outcomes
@dataclass(frozen=True)
class PollSuccess:
    tokens: TokenInfo


@dataclass(frozen=True)
class PollPending:
    pass


@dataclass(frozen=True)
class PollSlowDown:
    pass


@dataclass(frozen=True)
class PollDenied:
    pass


@dataclass(frozen=True)
class PollExpired:
    pass


PollResult = Union[PollSuccess, PollPending, PollSlowDown, PollDenied, PollExpired]

_POLL_ERRORS = {
    "authorization_pending": PollPending,
    "slow_down": PollSlowDown,
    "access_denied": PollDenied,
    "expired_token": PollExpired,
}


def _token_from_response(payload: Dict[str, Any], now: datetime, refresh_token: Optional[str] = None) -> TokenInfo:
    try:
        return TokenInfo(
            access_token=str(payload["access_token"]),
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_at=now + timedelta(seconds=int(payload.get("expires_in", 3600))),
            token_type=str(payload.get("token_type", "Bearer")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise AuthError(f"Malformed token response: {exc}") from exc


class GoogleAuth:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._session = session or requests.Session()

    def _post(self, url: str, data: Dict[str, str]) -> requests.Response:
        log_request("POST", url)
        # data= sends application/x-www-form-urlencoded
        resp = self._session.post(url, data=data, timeout=self.timeout)
        log_response(resp.status_code, url)
        return resp

    def request_device_code(self) -> DeviceCode:
        resp = self._post(DEVICE_CODE_URL, {"client_id": self.client_id, "scope": CALENDAR_SCOPE})
        if not resp.ok:
            raise HttpError("Failed to get device code", resp.status_code, resp.text)

        payload = resp.json()
        expires_in = int(payload.get("expires_in", 1800))
        return DeviceCode(
            device_code=payload["device_code"],
            user_code=payload["user_code"],
            # Google has used both spellings
            verification_url=payload.get("verification_url") or payload.get("verification_uri", ""),
            expires_in=expires_in,
            expires_at=_utcnow() + timedelta(seconds=expires_in),
        )

    def poll_for_token(self, device_code: str) -> PollResult:
        resp = self._post(
            TOKEN_URL,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "device_code": device_code,
                "grant_type": DEVICE_GRANT_TYPE,
            },
        )
        if resp.ok:
            return PollSuccess(tokens=_token_from_response(resp.json(), _utcnow()))

        try:
            error = resp.json().get("error")
        except ValueError:
            error = None
        result = _POLL_ERRORS.get(error)
        if result is None:
            raise AuthError(f"Unknown error: {resp.text}", body=resp.text)
        return result()

    def refresh_token(self, refresh_token: str) -> TokenInfo:
        resp = self._post(
            TOKEN_URL,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        if not resp.ok:
            raise AuthError(f"Failed to refresh token: {resp.text}", body=resp.text)
        return _token_from_response(resp.json(), _utcnow(), refresh_token=refresh_token)
