from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import List, Union

from .calendar_icloud import CalendarEntry
from .google_auth import TokenInfo


@dataclass(frozen=True)
class NotConfigured:
    pass


@dataclass(frozen=True)
class NotAuthenticated:
    pass


@dataclass(frozen=True)
class AwaitingUserCode:
    user_code: str
    verification_url: str
    device_code: str
    expires_at: datetime


@dataclass(frozen=True)
class Authenticated:
    tokens: TokenInfo


@dataclass(frozen=True)
class Discovering:
    pass


@dataclass(frozen=True)
class ICloudAuthenticated:
    calendars: List[CalendarEntry]


@dataclass(frozen=True)
class AuthFailed:
    message: str


GoogleAuthState = Union[NotConfigured, NotAuthenticated, AwaitingUserCode, Authenticated, AuthFailed]
ICloudAuthState = Union[NotConfigured, NotAuthenticated, Discovering, ICloudAuthenticated, AuthFailed]
