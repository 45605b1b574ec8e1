"""Device synchronisation for biometric time-attendance terminals."""

from attsync.errors import (
    AttSyncError, ConnectionRefused, ConnectionTimeout, DeviceUnreachable,
    HostUnreachable, MalformedFrameError, PersistenceConflict, PersistenceError,
    ProtocolError, SyncCancelled, TruncatedPage, UnmappedDeviceUser,
)
from attsync.ledger import Ledger
from attsync.orchestrator import SyncOrchestrator
from attsync.reconciler import Reconciler
from attsync.session import DeviceSession, SessionState

__version__ = "1.0.0"
