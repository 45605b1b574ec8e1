#!/usr/bin/env python3
"""
Attendance Terminal — Bench Tool
================================

Usage:
  python3 -m attsync.cli <terminal_ip> [port] <command> [args]

Commands:
  info              Get terminal information
  users             List users stored on the terminal
  logs              List attendance punches stored on the terminal
  sync <device_id>  Fetch and reconcile into the ledger (ATTSYNC_DB_URL)

Example:
  python3 -m attsync.cli 10.0.0.5 info
  python3 -m attsync.cli 10.0.0.5 4370 logs
  python3 -m attsync.cli 10.0.0.5 sync gate-1
"""

import sys

from attsync import config
from attsync.errors import AttSyncError
from attsync.log import setup_logging
from attsync.models import DeviceDescriptor

COMMANDS = ("info", "users", "logs", "sync")


def print_info(info):
    print(f"\n=== Terminal Information ===")
    print(f"  Serial:       {info.serial_number}")
    print(f"  Platform:     {info.platform}")
    print(f"  Firmware:     {info.firmware_version}")
    print(f"  Users:        {info.user_count}")
    print(f"  Logs:         {info.log_count} / {info.log_capacity}")
    print(f"  Device time:  {info.device_time:%Y-%m-%d %H:%M:%S}")
    print(f"  Clock offset: {info.clock_offset_seconds:+d}s vs UTC")


def print_users(users):
    print(f"\n=== Users ({len(users)}) ===")
    for u in users:
        print(f"  {u.uid:>5}  {u.user_id:<12} {u.name:<24} card={u.card} priv={u.privilege}")


def print_punches(punches):
    print(f"\n=== Punches ({len(punches)}) ===")
    for p in punches:
        print(f"  {p.timestamp:%Y-%m-%d %H:%M:%S}.{p.timestamp.microsecond // 1000:03d}  "
              f"{p.user_id:<12} {p.verify_type:<12} status={p.status}")


def print_result(result):
    print(f"\n=== Sync {result.device_id}: {'OK' if result.success else result.failure} ===")
    print(f"  {result.message}")
    if result.success:
        print(f"  Fetched:    {result.fetched}")
        print(f"  Inserted:   {result.inserted}")
        print(f"  Duplicates: {result.duplicates}")
        print(f"  Unmapped:   {result.unmapped}")
        print(f"  Malformed:  {result.malformed}")
        if result.unmapped_user_ids:
            print(f"  Unmapped users: {', '.join(result.unmapped_user_ids)}")


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) < 2:
        print(__doc__)
        return 1

    ip = argv[0]

    # Check if second arg is port number or command
    try:
        port = int(argv[1])
        cmd_idx = 2
    except ValueError:
        port = config.DEFAULT_PORT
        cmd_idx = 1

    if cmd_idx >= len(argv):
        print("Error: No command specified")
        print(__doc__)
        return 1

    command = argv[cmd_idx].lower()
    args = argv[cmd_idx + 1:]
    if command not in COMMANDS:
        print(f"Unknown command: {command}")
        print(__doc__)
        return 1
    setup_logging()

    if command == 'sync':
        if not args:
            print("Usage: sync <device_id>")
            return 1
        from attsync.ledger import Ledger
        from attsync.orchestrator import SyncOrchestrator

        ledger = Ledger()
        descriptor = ledger.register_device(args[0], ip, port)
        try:
            result = SyncOrchestrator(ledger).sync_devices([descriptor])[0]
        except KeyboardInterrupt:
            print("\n[*] Interrupted")
            return 130
        print_result(result)
        return 0 if result.success else 2

    from attsync.session import DeviceSession

    descriptor = DeviceDescriptor(device_id=ip, host=ip, port=port)
    try:
        with DeviceSession(descriptor) as session:
            session.connect()
            if command == 'info':
                print_info(session.fetch_info())
            elif command == 'users':
                print_users(session.with_exclusive_access(lambda s: s.fetch_users()))
            else:
                print_punches(session.with_exclusive_access(lambda s: s.fetch_attendance_logs()))
    except KeyboardInterrupt:
        print("\n[*] Interrupted")
        return 130
    except AttSyncError as e:
        print(f"[!] {type(e).__name__}: {e}")
        return 2
    return 0


if __name__ == '__main__':
    sys.exit(main())
