from __future__ import annotations
import asyncio
import calendar
from datetime import date, datetime, timezone, tzinfo
import logging
from pathlib import Path
from typing import Callable, Coroutine, List, Optional, Set, Tuple, Union
from zoneinfo import ZoneInfo

from .auth import (
    AuthFailed,
    Authenticated,
    AwaitingUserCode,
    Discovering,
    GoogleAuthState,
    ICloudAuthenticated,
    ICloudAuthState,
    NotAuthenticated,
    NotConfigured,
)
from .cache import EventCache, month_key
from .calendar_google import CalendarClient
from .calendar_icloud import CalDavClient, CalendarEntry, ICloudAuth
from .config import AppConfig
from .conversion import google_event_to_display, icloud_event_to_display
from .errors import TokenExpiredError
from .google_auth import GoogleAuth, PollDenied, PollExpired, PollSuccess, TokenInfo
from .models import Event, GoogleEventId, ICloudEventId, sort_events, supports_response
from .paths import events_cache_path, token_path
from .tokens import TokenStore

logger = logging.getLogger(__name__)

CalendarClientFactory = Callable[[TokenInfo], CalendarClient]

_RESPONSE_MESSAGES = {
    "accepted": ("Accepting...", "Accepted!"),
    "declined": ("Declining...", "Declined"),
    "tentative": ("Responding...", "Marked as tentative"),
}


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def month_bounds(day: date) -> Tuple[date, date]:
    last = calendar.monthrange(day.year, day.month)[1]
    return day.replace(day=1), day.replace(day=last)


class SyncEngine:
    def __init__(
        self,
        config: AppConfig,
        *,
        cache: Optional[EventCache] = None,
        token_store: Optional[TokenStore] = None,
        cache_path: Optional[Union[str, Path]] = None,
        google_auth: Optional[GoogleAuth] = None,
        calendar_client_factory: Optional[CalendarClientFactory] = None,
        caldav_client: Optional[CalDavClient] = None,
        tz: Optional[tzinfo] = None,
        today: Optional[date] = None,
    ) -> None:
        self.config = config
        self.cache = cache or EventCache()
        self.token_store = token_store or TokenStore(token_path())
        self.cache_path = Path(cache_path) if cache_path else events_cache_path()
        self.poll_interval = config.poll_interval_seconds
        self.tz = tz if tz is not None else (ZoneInfo(config.timezone) if config.timezone else None)

        if google_auth is None and config.google:
            google_auth = GoogleAuth(config.google.client_id, config.google.client_secret)
        if caldav_client is None and config.icloud:
            caldav_client = CalDavClient(ICloudAuth(config.icloud.apple_id, config.icloud.app_password))
        self.google_auth = google_auth
        self.caldav = caldav_client
        self._calendar_client_factory = calendar_client_factory or CalendarClient

        self.google_state: GoogleAuthState = NotAuthenticated() if config.google else NotConfigured()
        self.icloud_state: ICloudAuthState = NotAuthenticated() if config.icloud else NotConfigured()

        self.selected_date = today or date.today()
        self.google_needs_fetch = False
        self.icloud_needs_fetch = False
        self.google_loading = False
        self.icloud_loading = False
        self.status: Optional[str] = None

        self._poll_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Set[Tuple[str, str]] = set()

    # -- state helpers -------------------------------------------------

    def _set_status(self, message: str) -> None:
        self.status = message
        logger.info(message)

    def _set_google_state(self, state: GoogleAuthState) -> None:
        # Leaving the awaiting state always stops the poll loop first
        if not isinstance(state, AwaitingUserCode):
            self._stop_polling()
        self.google_state = state

    def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not _current_task() and not task.done():
            task.cancel()

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _save_tokens(self, tokens: TokenInfo) -> None:
        try:
            self.token_store.save_google_tokens(tokens)
        except OSError as exc:
            logger.warning("Could not persist Google tokens: %s", exc)

    # -- startup -------------------------------------------------------

    async def restore(self) -> None:
        """Load the disk cache and any stored credentials, then fetch."""
        if self.cache.load_from_disk(self.cache_path):
            self._set_status("Loaded cached events")
        await self._restore_google()
        self._restore_icloud()
        self.google_needs_fetch = True
        self.icloud_needs_fetch = True
        self.schedule_fetches()

    async def _restore_google(self) -> None:
        if not isinstance(self.google_state, NotAuthenticated):
            return
        tokens = self.token_store.load_google_tokens()
        if tokens is None:
            return
        if not tokens.is_expired():
            self._set_google_state(Authenticated(tokens))
        elif tokens.refresh_token:
            await self._refresh_google(tokens.refresh_token)

    def _restore_icloud(self) -> None:
        if not isinstance(self.icloud_state, NotAuthenticated):
            return
        calendars = self.token_store.load_icloud_calendars()
        if calendars:
            self.icloud_state = ICloudAuthenticated(calendars)

    async def _refresh_google(self, refresh_token: str) -> Optional[TokenInfo]:
        assert self.google_auth is not None
        try:
            tokens = await asyncio.to_thread(self.google_auth.refresh_token, refresh_token)
        except Exception as exc:
            self._set_google_state(AuthFailed(str(exc)))
            return None
        self._save_tokens(tokens)
        self._set_google_state(Authenticated(tokens))
        return tokens

    # -- Google device flow --------------------------------------------

    async def start_google_auth(self) -> None:
        if self.google_auth is None:
            self._set_status("Google not configured")
            return
        if isinstance(self.google_state, AwaitingUserCode):
            return

        try:
            code = await asyncio.to_thread(self.google_auth.request_device_code)
        except Exception as exc:
            self._set_google_state(AuthFailed(str(exc)))
            return

        self._set_google_state(
            AwaitingUserCode(
                user_code=code.user_code,
                verification_url=code.verification_url,
                device_code=code.device_code,
                expires_at=code.expires_at,
            )
        )
        self._poll_task = asyncio.get_running_loop().create_task(
            self._poll_device_code(code.device_code, code.expires_at)
        )

    async def _poll_device_code(self, device_code: str, expires_at: datetime) -> None:
        assert self.google_auth is not None
        while True:
            await asyncio.sleep(self.poll_interval)
            if datetime.now(timezone.utc) >= expires_at:
                self._set_google_state(AuthFailed("Authorization expired"))
                return

            try:
                result = await asyncio.to_thread(self.google_auth.poll_for_token, device_code)
            except Exception as exc:
                # The next tick retries
                logger.debug("Token poll failed: %s", exc)
                continue

            if not isinstance(self.google_state, AwaitingUserCode):
                return

            if isinstance(result, PollSuccess):
                self._save_tokens(result.tokens)
                self._set_google_state(Authenticated(result.tokens))
                self._set_status("Google authenticated!")
                self.google_needs_fetch = True
                self.schedule_fetches()
                return
            if isinstance(result, PollDenied):
                self._set_google_state(AuthFailed("Authorization denied"))
                return
            if isinstance(result, PollExpired):
                self._set_google_state(AuthFailed("Authorization expired"))
                return
            # pending / slow down: keep polling

    def sign_out_google(self) -> None:
        if isinstance(self.google_state, NotConfigured):
            return
        try:
            self.token_store.clear_google_tokens()
        except OSError as exc:
            logger.warning("Could not clear Google tokens: %s", exc)
        self._set_google_state(NotAuthenticated())
        self.cache.google.clear()
        self.google_needs_fetch = False
        self._set_status("Signed out of Google")

    # -- iCloud discovery ----------------------------------------------

    async def start_icloud_auth(self) -> None:
        if self.caldav is None:
            self._set_status("iCloud not configured")
            return
        if isinstance(self.icloud_state, Discovering):
            return

        self.icloud_state = Discovering()
        try:
            calendars = await asyncio.to_thread(self.caldav.discover_calendars)
        except Exception as exc:
            self.icloud_state = AuthFailed(str(exc))
            return

        if not calendars:
            self.icloud_state = AuthFailed("No calendars found")
            return

        try:
            self.token_store.save_icloud_calendars(calendars)
        except OSError as exc:
            logger.warning("Could not persist iCloud calendars: %s", exc)
        self.icloud_state = ICloudAuthenticated(calendars)
        self._set_status(f"iCloud: {len(calendars)} calendars found")
        self.icloud_needs_fetch = True
        self.schedule_fetches()

    # -- fetching ------------------------------------------------------

    def select_date(self, day: date) -> None:
        self.selected_date = day
        self.google_needs_fetch = True
        self.icloud_needs_fetch = True
        self.schedule_fetches()

    def schedule_fetches(self) -> None:
        """Start a fetch for the selected month per provider, at most one each."""
        month = self.selected_date.replace(day=1)
        key = month_key(month)

        if self.google_needs_fetch and isinstance(self.google_state, Authenticated):
            # Cleared before anything suspends so a re-evaluation cannot double-fetch
            self.google_needs_fetch = False
            if not self.cache.google.has_month(month) and ("google", key) not in self._in_flight:
                self._in_flight.add(("google", key))
                self.google_loading = True
                self._spawn(self._fetch_google(self.google_state.tokens, month))

        if self.icloud_needs_fetch and isinstance(self.icloud_state, ICloudAuthenticated):
            self.icloud_needs_fetch = False
            if not self.cache.icloud.has_month(month) and ("icloud", key) not in self._in_flight:
                self._in_flight.add(("icloud", key))
                self.icloud_loading = True
                self._spawn(self._fetch_icloud(list(self.icloud_state.calendars), month))

    async def _fetch_google(self, tokens: TokenInfo, month: date) -> None:
        assert self.config.google is not None
        calendar_id = self.config.google.calendar_id
        first, last = month_bounds(month)
        try:
            if tokens.is_expired() and tokens.refresh_token:
                refreshed = await self._refresh_google(tokens.refresh_token)
                if refreshed is None:
                    return
                tokens = refreshed
            client = self._calendar_client_factory(tokens)
            calendar_name = await asyncio.to_thread(client.get_calendar_name, calendar_id)
            items = await asyncio.to_thread(client.list_events, calendar_id, first, last)
        except TokenExpiredError:
            self._set_google_state(AuthFailed("Google session expired; authenticate again"))
            return
        except Exception as exc:
            self._set_status(f"Google fetch error: {exc}")
            return
        finally:
            self.google_loading = False
            self._in_flight.discard(("google", month_key(month)))

        events = []
        for item in items:
            event = google_event_to_display(item, calendar_id, calendar_name, self.tz)
            if event is not None:
                events.append(event)
        self.cache.google.store(events, month)
        self.cache.save_to_disk(self.cache_path)

    async def _fetch_icloud(self, calendars: List[CalendarEntry], month: date) -> None:
        assert self.caldav is not None
        first, last = month_bounds(month)
        events: List[Event] = []
        failures = 0
        try:
            # One calendar at a time; a failing calendar is skipped, not fatal
            for entry in calendars:
                try:
                    records = await asyncio.to_thread(self.caldav.fetch_events, entry.url, first, last)
                except Exception as exc:
                    failures += 1
                    logger.warning("Skipping iCloud calendar %s: %s", entry.name or entry.url, exc)
                    continue
                events.extend(icloud_event_to_display(r, entry.name, self.tz) for r in records)
        finally:
            self.icloud_loading = False
            self._in_flight.discard(("icloud", month_key(month)))

        if calendars and failures == len(calendars):
            self._set_status("iCloud fetch error: no calendar could be read")
            return
        self.cache.icloud.store(events, month)
        self.cache.save_to_disk(self.cache_path)

    def refresh(self, announce: bool = True) -> None:
        """Drop everything cached in memory and re-fetch the selected month."""
        self.cache.clear()
        self.google_needs_fetch = True
        self.icloud_needs_fetch = True
        if announce:
            self._set_status("Refreshing...")
        self.schedule_fetches()

    # -- event actions -------------------------------------------------

    async def respond_to_event(self, event: Event, response_status: str) -> bool:
        if not supports_response(event.id):
            self._set_status("Accept/decline only available for Google events")
            return False
        if not isinstance(self.google_state, Authenticated):
            self._set_status("Google not authenticated")
            return False
        assert isinstance(event.id, GoogleEventId)

        pending, done = _RESPONSE_MESSAGES.get(response_status, ("Responding...", "Responded"))
        self._set_status(pending)
        client = self._calendar_client_factory(self.google_state.tokens)
        try:
            await asyncio.to_thread(
                client.respond_to_event, event.id.calendar_id, event.id.event_id, response_status
            )
        except Exception as exc:
            self._set_status(f"Error: {exc}")
            return False
        self._set_status(done)
        self.refresh(announce=False)
        return True

    async def delete_event(self, event: Event) -> bool:
        self._set_status("Deleting...")
        try:
            if isinstance(event.id, GoogleEventId):
                if not isinstance(self.google_state, Authenticated):
                    self._set_status("Google not authenticated")
                    return False
                client = self._calendar_client_factory(self.google_state.tokens)
                await asyncio.to_thread(client.delete_event, event.id.calendar_id, event.id.event_id)
            elif isinstance(event.id, ICloudEventId):
                if self.caldav is None:
                    self._set_status("iCloud not configured")
                    return False
                await asyncio.to_thread(
                    self.caldav.delete_event, event.id.calendar_url, event.id.event_uid, event.id.etag
                )
        except Exception as exc:
            self._set_status(f"Error: {exc}")
            return False
        self._set_status("Deleted")
        self.refresh(announce=False)
        return True

    # -- reading -------------------------------------------------------

    def events_for_date(self, day: Union[date, str]) -> List[Event]:
        key = day.isoformat() if isinstance(day, date) else day
        return sort_events(self.cache.google.get(key) + self.cache.icloud.get(key))

    # -- lifecycle -----------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait for outstanding fetches (not the device-code poll)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def wait_for_google_auth(self) -> GoogleAuthState:
        task = self._poll_task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.google_state

    async def shutdown(self) -> None:
        pending = list(self._tasks)
        if self._poll_task is not None:
            pending.append(self._poll_task)
        self._stop_polling()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.cache.save_to_disk(self.cache_path)
