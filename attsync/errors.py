"""Exception taxonomy for the device sync subsystem."""


class AttSyncError(Exception):
    """Base class for everything raised by attsync."""


# ─── Device side ──────────────────────────────────────────────────────────────

class DeviceError(AttSyncError):
    pass


class DeviceUnreachable(DeviceError):
    """Network-level failure, or command retries exhausted."""


class ConnectionTimeout(DeviceUnreachable):
    pass


class ConnectionRefused(DeviceUnreachable):
    pass


class HostUnreachable(DeviceUnreachable):
    pass


class ProtocolError(DeviceError):
    """The terminal answered, but not with something we can use."""


class MalformedFrameError(ProtocolError):
    """Bad magic, bad checksum, bad length or a truncated record."""


class TruncatedPage(MalformedFrameError):
    """A page ends inside a length prefix or an entry; no whole record was lost."""


class SyncCancelled(AttSyncError):
    pass


# ─── Data / persistence side ──────────────────────────────────────────────────

class UnmappedDeviceUser(AttSyncError):
    def __init__(self, device_id, device_user_id):
        super().__init__(f"device {device_id}: user {device_user_id!r} has no employee mapping")
        self.device_id = device_id
        self.device_user_id = device_user_id


class PersistenceError(AttSyncError):
    pass


class PersistenceConflict(PersistenceError):
    """An insert collided on something other than the dedup key."""
