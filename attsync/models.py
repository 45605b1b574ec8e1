"""Pydantic models for terminal data and sync results."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

VERIFY_TYPES = {
    0: "password",
    1: "fingerprint",
    2: "card",
    15: "face",
}


def verify_name(code: int) -> str:
    return VERIFY_TYPES.get(code, "other")


class DeviceDescriptor(BaseModel):
    """Identity and address of one terminal, as stored in the ledger."""

    device_id: str
    host: str
    port: int = 4370
    last_successful_sync: Optional[datetime] = None


class DeviceInfo(BaseModel):
    """Snapshot reported by a terminal during one sync run."""

    serial_number: str = ""
    platform: str = ""
    firmware_version: str = ""
    log_capacity: int = 0
    user_count: int = 0
    log_count: int = 0
    device_time: Optional[datetime] = Field(default=None, description="Device local clock (naive)")
    received_at: Optional[datetime] = Field(default=None, description="Host UTC time the info arrived")
    clock_offset_seconds: int = Field(default=0, description="Device clock minus UTC, quantised")


class DeviceUser(BaseModel):
    """User record from a terminal."""

    uid: int
    user_id: str = Field(description="Badge number; key into the employee mapping")
    name: str = ""
    privilege: int = 0
    password: str = ""
    card: int = 0
    group_id: int = 0


class RawPunchRecord(BaseModel):
    """Attendance event exactly as the terminal reported it."""

    user_id: str
    timestamp: datetime = Field(description="Device local clock, naive, millisecond precision")
    verify_code: int = 0
    status: int = 0

    @property
    def verify_type(self) -> str:
        return verify_name(self.verify_code)


class AttendanceEvent(BaseModel):
    """Canonical ledger row."""

    employee_id: str
    device_id: str
    punch_time: datetime
    verify_type: str
    status: int
    dedup_key: str
    remark: str = ""


class ReconcileCounts(BaseModel):
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    unmapped: int = 0
    conflicts: int = 0

    def balanced(self) -> bool:
        return self.fetched == self.inserted + self.duplicates + self.unmapped + self.conflicts


class UserReconciliation(BaseModel):
    fetched: int = 0
    mapped: int = 0
    unmapped_user_ids: List[str] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Per-device outcome of one sync run. Not persisted."""

    device_id: str
    host: str = ""
    port: int = 4370
    success: bool = False
    failure: Optional[str] = Field(default=None, description="DeviceUnreachable, ProtocolError, PersistenceError, Cancelled")
    message: str = ""
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    unmapped: int = 0
    conflicts: int = 0
    malformed: int = 0
    users_fetched: int = 0
    unmapped_user_ids: List[str] = Field(default_factory=list)
    device_info: Optional[DeviceInfo] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
