"""Manual live check against a Supabase project.

Run from the repository root with:
  SUPABASE_URL=https://<project>.supabase.co SUPABASE_ANON_KEY=... \
  EMAIL=... PASSWORD=... \
  PYTHONPATH=src python scripts/live_check.py

Book the first free slot, wait for the change to arrive over realtime and
release it again:
  PYTHONPATH=src python scripts/live_check.py --run-booking --post-book-wait 3

Watch slot and booking changes made by other clients for a while:
  PYTHONPATH=src python scripts/live_check.py --watch 60

Optional environment variables:
  SMARTPARKING_SESSION_FILE  persist the session between runs
  SMARTPARKING_ADMIN_EMAILS  comma separated admin allow-list for --sign-up

Use --memory to run the same flows against the in-memory backend with a
seeded demo inventory (no network, no credentials needed).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import traceback

from pysmartparking import Client, ParkingSlot, ViewSynchronizer
from pysmartparking.backend.memory import MemoryStore
from pysmartparking.const import ROLE_ADMIN, ROLE_USER, SLOT_TYPES
from pysmartparking.exceptions import PySmartParkingError

_LOGGER = logging.getLogger(__name__)
_ANSI_STYLES = {
    "reset": "\x1b[0m",
    "bold": "\x1b[1m",
    "red": "\x1b[31m",
    "green": "\x1b[32m",
    "yellow": "\x1b[33m",
    "cyan": "\x1b[36m",
}
_COLOR_ENABLED = False
_DEMO_SLOTS = (
    ("A-101", "Ground Floor", "regular"),
    ("A-102", "Ground Floor", "compact"),
    ("B-201", "Level 1", "handicapped"),
    ("B-202", "Level 1", "electric"),
)


def _require_value(name: str, value: str | None) -> str:
    if not value:
        print(f"Missing required value: {name}", file=sys.stderr)
        raise SystemExit(2)
    return value


def _style(text: str, color: str | None = None, *, bold: bool = False) -> str:
    if not _COLOR_ENABLED or not color:
        return text
    color_code = _ANSI_STYLES.get(color)
    if not color_code:
        return text
    prefix = _ANSI_STYLES["bold"] if bold else ""
    return f"{prefix}{color_code}{text}{_ANSI_STYLES['reset']}"


def _format_action(label: str, value: str, *, color: str | None = None) -> str:
    return f"{_style(label, color, bold=True)}: {value}"


def _print_exception(label: str, exc: Exception, *, trace: bool) -> None:
    styled_label = _style(label, "red", bold=True)
    message = getattr(exc, "user_message", None) or str(exc)
    print(f"{styled_label}: {exc.__class__.__name__}: {message}", file=sys.stderr)
    if trace:
        traceback.print_exc()


def _format_slot(slot: ParkingSlot) -> str:
    return f"{slot.slot_number} | {slot.location} | {slot.slot_type} | {slot.status}"


def _print_view(sync: ViewSynchronizer, label: str) -> None:
    print(_format_action("Slots", f"{len(sync.slots)} ({label})", color="cyan"))
    for slot in sync.slots:
        print(f"- {_format_slot(slot)}")
    active = sync.active_booking
    if active is not None and active.slot is not None:
        print(_format_action("Active booking", _format_slot(active.slot), color="green"))
    if sync.is_admin:
        stats = sync.stats
        print(
            _format_action(
                "Stats",
                f"free={stats.free_slots} occupied={stats.occupied_slots} "
                f"reserved={stats.reserved_slots} active_bookings={stats.active_bookings} "
                f"users={stats.total_users}",
                color="cyan",
            )
        )


async def _seed_demo(client: Client, email: str, password: str) -> None:
    admin = await client.gate.sign_up("admin@example.com", "admin-password", "Admin", ROLE_ADMIN)
    if admin is None:
        raise SystemExit("Admin sign-up did not return a session.")
    for number, location, slot_type in _DEMO_SLOTS:
        await client.bookings.create_slot(admin, number, location, slot_type)
    await client.gate.sign_out()
    await client.gate.sign_up(email, password, "Demo User", ROLE_USER)
    await client.gate.sign_out()


async def _run_booking_flow(client: Client, sync: ViewSynchronizer, *, wait: float) -> None:
    profile = sync.profile
    candidates = sync.free_slots
    if not candidates:
        print(_format_action("Booking skipped", "no free slots", color="yellow"))
        return
    slot = candidates[0]
    booking = await client.bookings.book(profile, slot.id)
    print(_format_action("Booked", f"{slot.slot_number} ({booking.id})", color="green"))
    await _wait_for_changes(client, sync, wait)
    _print_view(sync, "after book")
    released = await client.bookings.release(profile, booking.id, slot.id)
    print(_format_action("Released", f"{slot.slot_number} at {released.release_time}", color="green"))
    await _wait_for_changes(client, sync, wait)
    _print_view(sync, "after release")


async def _wait_for_changes(client: Client, sync: ViewSynchronizer, wait: float) -> None:
    store = client.store
    if isinstance(store, MemoryStore):
        await store.flush()
    elif wait > 0:
        await asyncio.sleep(wait)
    await sync.settle()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a smart parking live check.")
    parser.add_argument("--url", dest="url", help="Supabase project URL.")
    parser.add_argument("--api-key", dest="api_key", help="Supabase anon key.")
    parser.add_argument("--email", dest="email", help="Account email.")
    parser.add_argument("--password", dest="password", help="Account password.")
    parser.add_argument("--full-name", dest="full_name", help="Full name used with --sign-up.")
    parser.add_argument(
        "--sign-up",
        dest="sign_up",
        action="store_true",
        help="Register the account before signing in.",
    )
    parser.add_argument(
        "--role",
        dest="role",
        choices=(ROLE_USER, ROLE_ADMIN),
        default=ROLE_USER,
        help="Role requested with --sign-up.",
    )
    parser.add_argument(
        "--add-slot",
        dest="add_slot",
        nargs=3,
        metavar=("NUMBER", "LOCATION", "TYPE"),
        help=f"Create a slot (admin only). TYPE is one of: {', '.join(SLOT_TYPES)}.",
    )
    parser.add_argument(
        "--run-booking",
        dest="run_booking",
        action="store_true",
        help="Book the first free slot and release it again.",
    )
    parser.add_argument(
        "--post-book-wait",
        dest="post_book_wait",
        type=float,
        default=2.0,
        help="Seconds to wait for realtime changes after each write.",
    )
    parser.add_argument(
        "--watch",
        dest="watch",
        type=float,
        default=0.0,
        help="Seconds to keep printing changes from other clients.",
    )
    parser.add_argument(
        "--memory",
        dest="memory",
        action="store_true",
        help="Use the in-memory backend with demo data.",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default="INFO",
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )
    parser.add_argument(
        "--color",
        dest="color",
        choices=("auto", "always", "never"),
        default="auto",
        help="Colorize output.",
    )
    parser.add_argument(
        "--traceback",
        dest="traceback",
        action="store_true",
        help="Print full tracebacks on errors.",
    )
    return parser.parse_args()


async def main() -> int:
    args = _parse_args()
    logging.basicConfig(level=args.log_level.upper())
    global _COLOR_ENABLED
    if args.color == "always":
        _COLOR_ENABLED = True
    elif args.color == "never":
        _COLOR_ENABLED = False
    else:
        _COLOR_ENABLED = sys.stdout.isatty() or sys.stderr.isatty()

    email = args.email or os.getenv("EMAIL")
    password = args.password or os.getenv("PASSWORD")
    if args.memory:
        email = email or "driver@example.com"
        password = password or "driver-password"
        client = Client.memory()
    else:
        email = _require_value("email", email)
        password = _require_value("password", password)
        env = dict(os.environ)
        if args.url:
            env["SUPABASE_URL"] = args.url
        if args.api_key:
            env["SUPABASE_ANON_KEY"] = args.api_key
        try:
            client = Client.from_env(env)
        except PySmartParkingError as exc:
            _print_exception("Configuration error", exc, trace=args.traceback)
            return 2

    def on_change(collection: str) -> None:
        _LOGGER.info("View refreshed: %s", collection)

    try:
        async with client:
            gate = client.gate
            if args.memory:
                await _seed_demo(client, email, password)
            profile = await gate.resolve()
            if profile is None and args.sign_up:
                full_name = args.full_name or email.split("@", 1)[0]
                profile = await gate.sign_up(email, password, full_name, args.role)
            if profile is None:
                profile = await gate.sign_in(email, password)
            if profile is None:
                print("Signed in, but no profile row exists for this account.", file=sys.stderr)
                return 1
            print(_format_action("Signed in", f"{profile.email} ({gate.view})", color="cyan"))

            async with client.synchronizer(profile, on_change=on_change) as sync:
                _print_view(sync, "initial")
                if args.add_slot:
                    number, location, slot_type = args.add_slot
                    slot = await client.bookings.create_slot(profile, number, location, slot_type)
                    print(_format_action("Slot added", _format_slot(slot), color="green"))
                    await _wait_for_changes(client, sync, args.post_book_wait)
                if args.run_booking:
                    await _run_booking_flow(client, sync, wait=args.post_book_wait)
                if args.watch > 0:
                    await asyncio.sleep(args.watch)
                    _print_view(sync, "after watch")
            await gate.sign_out()
    except PySmartParkingError as exc:
        _print_exception("Error", exc, trace=args.traceback)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
