from __future__ import annotations

import argparse
import json
import sys
import time
from getpass import getpass
from typing import Any

import uvicorn

from .client import WelldifyClient
from .config import load_config
from .errors import AuthenticationExpired, WelldifyError
from .models import Countdown, GateState, GateStatus
from .security import token_preview
from .store import CheckInResult


def _client() -> WelldifyClient:
    return WelldifyClient.create(load_config())


def _countdown_dict(countdown: Countdown | None) -> dict[str, Any] | None:
    if countdown is None:
        return None
    return {
        "remaining": countdown.format(),
        "total_ms": countdown.total_ms,
        "deadline": countdown.deadline.isoformat(),
    }


def _status_view(client: WelldifyClient, state: GateState) -> dict[str, Any]:
    return {
        **state.to_dict(),
        "nextCheckIn": client.gate.next_eligible_hint,
        "countdown": _countdown_dict(client.gate.tick_countdown()),
    }


def _print_completed(client: WelldifyClient, state: GateState) -> None:
    print("Already checked in today.")
    print(json.dumps(_status_view(client, state), indent=2))


def _print_result(result: CheckInResult) -> None:
    print(f"Check-in saved. +{result.coins_earned} happy coins.")
    print(json.dumps(result.to_dict(), indent=2))


def _watch(client: WelldifyClient, *, max_ticks: int | None) -> int:
    client.store.load_today()
    ticks = 0
    while True:
        if client.gate.state.status is GateStatus.ELIGIBLE:
            print("Check-in is available.")
            return 0
        countdown = client.gate.tick_countdown()
        if countdown is None:
            print(f"Gate is {client.gate.state.status.value}.")
            return 1
        if not countdown.elapsed:
            print(f"Next check-in in {countdown.format()}", flush=True)
        ticks += 1
        if max_ticks is not None and ticks >= max_ticks:
            return 0
        time.sleep(client.config.tick_seconds)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Welldify daily check-in CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    register_cmd = sub.add_parser("register", help="Create an account")
    register_cmd.add_argument("--email", required=True)
    register_cmd.add_argument("--name", required=True)

    login_cmd = sub.add_parser("login", help="Log in and store the access token")
    login_cmd.add_argument("--email", required=True)

    sub.add_parser("logout", help="Log out and forget local credentials")
    sub.add_parser("status", help="Show whether today's check-in is done")

    checkin_cmd = sub.add_parser("checkin", help="Submit today's check-in")
    checkin_cmd.add_argument("--mood", type=int, required=True, choices=[1, 2, 3, 4, 5])
    checkin_cmd.add_argument("--feedback", default=None, help="Optional short note")

    watch_cmd = sub.add_parser("watch", help="Show the countdown until the next check-in")
    watch_cmd.add_argument("--max-ticks", type=int, default=None, help="Stop after this many ticks")

    history_cmd = sub.add_parser("history", help="List past check-ins")
    history_cmd.add_argument("--page", type=int, default=1)
    history_cmd.add_argument("--limit", type=int, default=10)

    trend_cmd = sub.add_parser("trend", help="Mood trend over a period")
    trend_cmd.add_argument("--period", type=int, default=30, help="Days to include")

    sub.add_parser("profile", help="Show the logged-in profile")

    events_cmd = sub.add_parser("events", help="Local telemetry events")
    events_cmd.add_argument("--range", default="7d", help="Range window like 7d or 24h")
    events_cmd.add_argument("--type", default=None, help="Optional event type filter")
    events_cmd.add_argument("--purge", action="store_true", help="Delete the local event log")

    serve_cmd = sub.add_parser("serve", help="Run the local check-in backend")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8005)

    args = parser.parse_args(argv)

    if args.command == "serve":
        from welldify_server.api import create_app
        from welldify_server.service import CheckInService

        app = create_app(CheckInService.create())
        uvicorn.run(app, host=args.host, port=args.port, log_level="info")
        return 0

    try:
        client = _client()
        return _run(client, args)
    except AuthenticationExpired as exc:
        print(f"{exc.message} Run `welldify login` to continue.", file=sys.stderr)
        return 2
    except WelldifyError as exc:
        print(f"Error: {exc.message}. Please try again.", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


def _run(client: WelldifyClient, args: argparse.Namespace) -> int:
    if args.command == "register":
        password = getpass("Password: ")
        data = client.session.register(args.email, password, args.name)
        print(json.dumps(data, indent=2))
        return 0

    if args.command == "login":
        password = getpass("Password: ")
        data = client.session.login(args.email, password)
        credential = client.credentials.read()
        user = data.get("user") or {}
        print(f"Logged in as {user.get('name') or args.email}.")
        print(f"Token: {token_preview(credential.access_token if credential else None)}")
        return 0

    if args.command == "logout":
        client.session.logout()
        print("Logged out.")
        return 0

    if args.command == "status":
        state = client.store.load_today()
        print(json.dumps(_status_view(client, state), indent=2))
        return 0

    if args.command == "checkin":
        state = client.store.load_today()
        if state.status is GateStatus.COMPLETED:
            _print_completed(client, state)
            return 0
        result = client.store.submit_checkin(args.mood, args.feedback, source="cli")
        if result.duplicate:
            _print_completed(client, client.gate.state)
            return 0
        _print_result(result)
        return 0

    if args.command == "watch":
        return _watch(client, max_ticks=args.max_ticks)

    if args.command == "history":
        records = client.store.load_history(page=args.page, limit=args.limit)
        payload = {"checkIns": [record.to_dict() for record in records], "pagination": client.store.pagination}
        print(json.dumps(payload, indent=2))
        return 0

    if args.command == "trend":
        print(json.dumps(client.store.load_trend(period=args.period), indent=2))
        return 0

    if args.command == "profile":
        print(json.dumps(client.session.profile(), indent=2))
        return 0

    if args.command == "events":
        if args.purge:
            print(json.dumps({"purged": client.telemetry.purge()}, indent=2))
            return 0
        events = client.telemetry.recent_events(args.range, event_type=args.type)
        print(json.dumps(events, indent=2))
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
