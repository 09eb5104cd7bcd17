from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import List, Optional

from dotenv import load_dotenv

from .auth import AuthFailed, Authenticated, AwaitingUserCode, ICloudAuthenticated, NotConfigured
from .config import AppConfig, load_config
from .httplog import get_recent_logs, install_recent_handler
from .models import Event, sort_attendees
from .paths import config_path
from .sync import SyncEngine


def _format_event(index: int, e: Event, with_attendees: bool = False) -> str:
    when = e.time_str if e.all_day or not e.end_time_str else f"{e.time_str}-{e.end_time_str}"
    flags = []
    if not e.accepted:
        flags.append("not accepted")
    if e.is_free:
        flags.append("free")
    line = f"{index:>2}. [{e.source}] {when:<12} {e.title}"
    if flags:
        line += f" ({', '.join(flags)})"
    if e.location:
        line += f"\n      @ {e.location}"
    if e.meeting_url:
        line += f"\n      {e.meeting_url}"
    if with_attendees:
        for a in sort_attendees(e.attendees):
            line += f"\n      - {a.name or a.email} ({a.status.value})"
    return line


def _print_events(day: date, events: List[Event], with_attendees: bool = False) -> None:
    print(day.strftime("%A, %B %-d, %Y"))
    if not events:
        print("  No events")
        return
    for i, e in enumerate(events, start=1):
        print(_format_event(i, e, with_attendees))


async def _auth_google(engine: SyncEngine) -> int:
    if isinstance(engine.google_state, NotConfigured):
        print("Google is not configured (set GOOGLE_CLIENT_ID / GOOGLE_CLIENT_SECRET)")
        return 1

    await engine.start_google_auth()
    state = engine.google_state
    if isinstance(state, AwaitingUserCode):
        print(f"Visit {state.verification_url} and enter code: {state.user_code}")
        print("Waiting for authorization...")
        state = await engine.wait_for_google_auth()

    if isinstance(state, Authenticated):
        print("Google authenticated!")
        return 0
    if isinstance(state, AuthFailed):
        print(f"Google authentication failed: {state.message}")
    return 1


async def _auth_icloud(engine: SyncEngine) -> int:
    if isinstance(engine.icloud_state, NotConfigured):
        print("iCloud is not configured (set ICLOUD_APPLE_ID / ICLOUD_APP_PASSWORD)")
        return 1

    await engine.start_icloud_auth()
    state = engine.icloud_state
    if isinstance(state, ICloudAuthenticated):
        for c in state.calendars:
            print(f"  {c.name or '(unnamed)'}  {c.url}")
        print(engine.status)
        return 0
    if isinstance(state, AuthFailed):
        print(f"iCloud discovery failed: {state.message}")
    return 1


async def _load_day(engine: SyncEngine, day: date) -> List[Event]:
    await engine.restore()
    engine.select_date(day)
    await engine.wait_idle()
    return engine.events_for_date(day)


def _pick_event(events: List[Event], index: int) -> Optional[Event]:
    if 1 <= index <= len(events):
        return events[index - 1]
    print(f"No event #{index}; {len(events)} event(s) on that day")
    return None


async def _run(args, cfg: AppConfig) -> int:
    engine = SyncEngine(cfg)
    try:
        if args.command == "auth":
            if args.provider == "google":
                return await _auth_google(engine)
            return await _auth_icloud(engine)

        if args.command == "logout":
            engine.sign_out_google()
            print(engine.status)
            return 0

        day = args.date if getattr(args, "date", None) else date.today()

        if args.command == "show":
            events = await _load_day(engine, day)
            _print_events(day, events, args.attendees)
            if engine.status and "error" in engine.status.lower():
                print(engine.status)
            return 0

        if args.command == "refresh":
            await engine.restore()
            engine.select_date(day)
            engine.refresh()
            await engine.wait_idle()
            print(engine.status or "Refreshed")
            return 0

        events = await _load_day(engine, day)
        event = _pick_event(events, args.index)
        if event is None:
            return 1
        if args.command == "respond":
            ok = await engine.respond_to_event(event, args.response)
        else:
            ok = await engine.delete_event(event)
        await engine.wait_idle()
        print(engine.status)
        return 0 if ok else 1
    finally:
        await engine.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    ap = argparse.ArgumentParser(prog="calsync", description="Google + iCloud calendar sync")
    ap.add_argument("--config", default=None, help="config.yaml path")
    ap.add_argument("--debug", action="store_true")
    ap.add_argument("--http-log", action="store_true", help="print recent HTTP requests afterwards")
    sub = ap.add_subparsers(dest="command", required=True)

    auth = sub.add_parser("auth", help="authenticate a provider")
    auth.add_argument("provider", choices=["google", "icloud"])

    sub.add_parser("logout", help="forget the stored Google tokens")

    show = sub.add_parser("show", help="print the events of a day")
    show.add_argument("--date", type=date.fromisoformat)
    show.add_argument("--attendees", action="store_true", help="list attendees under each event")

    refresh = sub.add_parser("refresh", help="drop the cache and re-fetch")
    refresh.add_argument("--date", type=date.fromisoformat)

    respond = sub.add_parser("respond", help="answer an invitation (Google only)")
    respond.add_argument("index", type=int)
    respond.add_argument("response", choices=["accepted", "declined", "tentative"])
    respond.add_argument("--date", type=date.fromisoformat)

    delete = sub.add_parser("delete", help="delete an event")
    delete.add_argument("index", type=int)
    delete.add_argument("--date", type=date.fromisoformat)

    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    install_recent_handler()
    if not args.debug:
        # Recorded for --http-log, not echoed to stderr
        logging.getLogger("calsync.http").propagate = False

    load_dotenv()
    try:
        cfg = load_config(args.config or config_path())
    except ValueError as e:
        print(f"Config error: {e}")
        return 2

    try:
        code = asyncio.run(_run(args, cfg))
    except KeyboardInterrupt:
        code = 130

    if args.http_log:
        for line in reversed(get_recent_logs(100)):
            print(line)
    return code


if __name__ == "__main__":
    raise SystemExit(main())
