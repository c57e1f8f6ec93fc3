#!/usr/bin/env python3
"""
NetPulse -- SNMP polling and alerting for a ticket-management console.

Usage:
  python main.py poll
  python main.py poll --json
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000
  python main.py token --user-id 1 --username alice --role admin

Environment variables (see core/config.py for the full list):
  DATABASE_URL            SQLAlchemy URL shared by both stores. Empty uses
                          per-module SQLite files.
  SECRET_KEY              Signing key for access tokens (>= 32 characters).
  POLL_INTERVAL_SECONDS   Seconds between poll cycles (default 30).
"""

import argparse
import asyncio
import json
import sys

from auth.models import ROLES
from core.config import get_settings
from core.errors import SchedulerFatal
from core.poller import CycleReport, create_poller
from inventory.store import DeviceStore
from realtime.hub import NotificationHub
from tickets.store import TicketStore


def _open_stores(database_url: str) -> tuple[DeviceStore, TicketStore]:
    if database_url:
        return DeviceStore(database_url), TicketStore(database_url)
    return DeviceStore(), TicketStore()


async def _poll_once(devices: DeviceStore, tickets: TicketStore) -> CycleReport:
    settings = get_settings()
    # No subscribers outside the server; events are built and dropped.
    poller = create_poller(settings, devices, tickets, NotificationHub(settings.subscriber_queue_size))
    try:
        return await poller.run_cycle()
    finally:
        await poller.stop()


def _print_report(report: CycleReport) -> None:
    print("\nNetPulse -- Poll Cycle")
    print("─" * 40)
    print(f"  Started:   {report.started_at}")
    print(f"  Finished:  {report.finished_at}")
    print(f"  Polled:    {report.polled} device(s)")
    for status, count in report.counts.items():
        print(f"    {status:<9}{count}")
    if report.discarded:
        print(f"  [!] {report.discarded} result(s) discarded.")
    if report.failed:
        print(f"  [!] {report.failed} poll(s) failed unexpectedly. See the log for details.")
    print()


def cmd_poll(args: argparse.Namespace) -> int:
    devices, tickets = _open_stores(get_settings().database_url)
    try:
        report = asyncio.run(_poll_once(devices, tickets))
    except SchedulerFatal as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1
    finally:
        devices.close()
        tickets.close()
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_report(report)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def cmd_token(args: argparse.Namespace) -> int:
    from auth.tokens import create_access_token

    print(create_access_token(args.user_id, args.username, args.role, expire_seconds=args.expires))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netpulse",
        description="SNMP device polling, health classification and alerting.",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    poll = sub.add_parser("poll", help="Poll every monitored device once and print a summary")
    poll.add_argument("--json", action="store_true", help="Print the cycle report as JSON")
    poll.set_defaults(func=cmd_poll)

    serve = sub.add_parser("serve", help="Run the HTTP/WebSocket server")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    serve.set_defaults(func=cmd_serve)

    token = sub.add_parser("token", help="Mint an access token for an operator or integration")
    token.add_argument("--user-id", type=int, required=True)
    token.add_argument("--username", required=True)
    token.add_argument("--role", choices=ROLES, default="user")
    token.add_argument(
        "--expires",
        type=int,
        default=0,
        metavar="SECONDS",
        help="Lifetime in seconds (default: TOKEN_EXPIRE_SECONDS)",
    )
    token.set_defaults(func=cmd_token)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 2
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
