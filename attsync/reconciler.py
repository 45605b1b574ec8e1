"""
Reconciler
==========
Merges terminal records into the attendance ledger.

Punch times are normalised to UTC and truncated to the second before the
dedup key is derived, so a re-sync over an overlapping window is a no-op
and two reads of the same punch that differ by clock jitter collapse into
one row. The flip side: two genuine punches by one person on one terminal
within the same second are recorded once.
"""

import hashlib
from datetime import timedelta, timezone

from attsync.errors import PersistenceConflict, UnmappedDeviceUser
from attsync.log import log_error, log_sync, log_warn
from attsync.models import AttendanceEvent, ReconcileCounts, UserReconciliation


def normalize_timestamp(local_ts, clock_offset_seconds):
    """Device-local naive time -> aware UTC, truncated to the second."""
    utc = local_ts - timedelta(seconds=clock_offset_seconds)
    return utc.replace(microsecond=0, tzinfo=timezone.utc)


def dedup_key(employee_id, device_id, punch_time_utc):
    ts = punch_time_utc.astimezone(timezone.utc).replace(microsecond=0, tzinfo=None)
    raw = f"{employee_id}|{device_id}|{ts.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class Reconciler:
    """Stateless apart from the ledger it writes to; safe to share across workers."""

    def __init__(self, ledger):
        self.ledger = ledger

    def _resolver(self, device_id):
        cache = {}

        def resolve(device_user_id):
            if device_user_id not in cache:
                cache[device_user_id] = self.ledger.resolve_employee_by_device_user(
                    device_id, device_user_id)
            return cache[device_user_id]
        return resolve

    def reconcile_users(self, device_id, raw_users):
        """Check every terminal user against the employee mapping.

        Nothing is written: unknown badges are reported so an operator can
        map them, never provisioned as new employees.
        """
        resolve = self._resolver(device_id)
        result = UserReconciliation(fetched=len(raw_users))
        for user in raw_users:
            if resolve(user.user_id) is None:
                result.unmapped_user_ids.append(user.user_id)
            else:
                result.mapped += 1
        if result.unmapped_user_ids:
            log_warn(f"{device_id}: {len(result.unmapped_user_ids)} unmapped device user(s): "
                     f"{', '.join(result.unmapped_user_ids[:20])}", "SYNC")
        log_sync(f"{device_id}: users {result.mapped}/{result.fetched} mapped")
        return result

    def reconcile_attendance(self, device_id, raw_punches, clock_offset_seconds=0):
        """Upsert every punch. PersistenceError other than a conflict aborts the batch."""
        resolve = self._resolver(device_id)
        counts = ReconcileCounts(fetched=len(raw_punches))
        unmapped = set()

        for punch in raw_punches:
            employee_id = resolve(punch.user_id)
            if employee_id is None:
                counts.unmapped += 1
                unmapped.add(punch.user_id)
                continue

            punch_time = normalize_timestamp(punch.timestamp, clock_offset_seconds)
            event = AttendanceEvent(
                employee_id=employee_id,
                device_id=device_id,
                punch_time=punch_time,
                verify_type=punch.verify_type,
                status=punch.status,
                dedup_key=dedup_key(employee_id, device_id, punch_time),
            )
            try:
                inserted = self.ledger.upsert_attendance_event(event)
            except PersistenceConflict as e:
                log_error(f"{device_id}: {e}", "SYNC")
                counts.conflicts += 1
                continue
            if inserted:
                counts.inserted += 1
            else:
                counts.duplicates += 1

        for user_id in sorted(unmapped):
            log_warn(str(UnmappedDeviceUser(device_id, user_id)), "SYNC")
        log_sync(f"{device_id}: punches fetched={counts.fetched} inserted={counts.inserted} "
                 f"duplicates={counts.duplicates} unmapped={counts.unmapped} "
                 f"conflicts={counts.conflicts}")
        return counts
