"""
Sync Orchestrator
=================
Runs one sync cycle over many terminals: one worker per terminal in a
bounded thread pool. Each worker takes its terminal through

    connect -> info -> [disable] users, punches [enable] -> disconnect

then reconciles straight away, without waiting for its siblings. A
failing terminal only fails its own SyncResult.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from attsync import config
from attsync.errors import (
    DeviceUnreachable, PersistenceError, ProtocolError, SyncCancelled,
)
from attsync.log import log_error, log_sync, log_warn
from attsync.models import SyncResult
from attsync.reconciler import Reconciler
from attsync.session import DeviceSession


def failure_kind(exc):
    if isinstance(exc, SyncCancelled):
        return "Cancelled"
    if isinstance(exc, DeviceUnreachable):
        return "DeviceUnreachable"
    if isinstance(exc, ProtocolError):
        return "ProtocolError"
    if isinstance(exc, PersistenceError):
        return "PersistenceError"
    return type(exc).__name__


class SyncOrchestrator:

    def __init__(self, ledger, transport=None, max_workers=None, session_options=None):
        self.ledger = ledger
        self.reconciler = Reconciler(ledger)
        self.transport = transport
        self.max_workers = max_workers or config.MAX_WORKERS
        self.session_options = session_options or {}
        self.cancel_event = threading.Event()

    def cancel(self):
        """Stop the in-flight run. Open sessions still disconnect cleanly."""
        log_warn("Sync run cancellation requested", "SYNC")
        self.cancel_event.set()

    def new_session(self, descriptor):
        return DeviceSession(descriptor, transport=self.transport, **self.session_options)

    def sync_devices(self, descriptors, cancel=None):
        """Sync every descriptor concurrently; one SyncResult per descriptor, in input order."""
        descriptors = list(descriptors)
        if not descriptors:
            return []
        own_token = cancel is None
        if own_token:
            cancel = self.cancel_event
        workers = min(len(descriptors), self.max_workers)
        log_sync(f"Sync run started: {len(descriptors)} device(s), {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="attsync") as pool:
            futures = [pool.submit(self.sync_device, d, cancel) for d in descriptors]
            # leaving the with-block joins every worker, so every session has disconnected
        results = [f.result() for f in futures]
        if own_token:
            # cancel() before or during this run applied to it; the next run gets a fresh token
            self.cancel_event = threading.Event()

        ok = sum(1 for r in results if r.success)
        log_sync(f"Sync run finished: {ok}/{len(results)} device(s) succeeded"
                 + (" (cancelled)" if cancel.is_set() else ""))
        return results

    def sync_all(self, cancel=None):
        """Sync every terminal registered in the ledger."""
        return self.sync_devices(self.ledger.list_devices(), cancel)

    def sync_device(self, descriptor, cancel=None):
        """Full sequence for one terminal. Never raises; failures land in the result."""
        cancel = cancel or self.cancel_event
        result = SyncResult(device_id=descriptor.device_id, host=descriptor.host,
                            port=descriptor.port, started_at=datetime.now(timezone.utc))
        try:
            if cancel.is_set():
                raise SyncCancelled(f"{descriptor.device_id}: cancelled before start")

            info, users, punches, malformed = self._fetch(descriptor, cancel)
            result.device_info = info
            result.users_fetched = len(users)
            result.malformed = malformed

            user_report = self.reconciler.reconcile_users(descriptor.device_id, users)
            result.unmapped_user_ids = user_report.unmapped_user_ids

            counts = self.reconciler.reconcile_attendance(
                descriptor.device_id, punches, info.clock_offset_seconds)
            result.fetched = counts.fetched
            result.inserted = counts.inserted
            result.duplicates = counts.duplicates
            result.unmapped = counts.unmapped
            result.conflicts = counts.conflicts

            self.ledger.update_device_last_sync(descriptor.device_id, datetime.now(timezone.utc),
                                                serial_number=info.serial_number)
            result.success = True
            result.message = (f"Synced {counts.inserted} new record(s) "
                              f"({counts.duplicates} duplicate, {counts.unmapped} unmapped)")
        except (DeviceUnreachable, ProtocolError, PersistenceError, SyncCancelled) as e:
            result.failure = failure_kind(e)
            result.message = str(e)
            log_error(f"{descriptor.device_id}: {result.failure}: {e}", "SYNC")
        except Exception as e:
            result.failure = failure_kind(e)
            result.message = f"Unexpected error: {e}"
            log_error(f"{descriptor.device_id}: unexpected {type(e).__name__}: {e}", "SYNC")
        finally:
            result.finished_at = datetime.now(timezone.utc)
        return result

    def _fetch(self, descriptor, cancel):
        session = self.new_session(descriptor)
        try:
            session.connect()
            info = session.fetch_info()

            def bulk_read(s):
                return s.fetch_users(cancel), s.fetch_attendance_logs(cancel)

            users, punches = session.with_exclusive_access(bulk_read)
            return info, users, punches, session.malformed_records
        finally:
            session.disconnect()
