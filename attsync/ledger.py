"""
Attendance ledger: the persistence API the reconciler writes through.

The only write path for attendance rows is ``upsert_attendance_event``,
a single INSERT ... ON CONFLICT DO NOTHING on the dedup key, so concurrent
sync workers can never both insert the same event.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column, DateTime, Integer, String, UniqueConstraint, create_engine, or_,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from attsync import config
from attsync.errors import PersistenceConflict, PersistenceError
from attsync.log import log_debug, log_info
from attsync.models import AttendanceEvent, DeviceDescriptor

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


class Device(Base):
    __tablename__ = "devices"
    device_id = Column(String, primary_key=True)
    host = Column(String, nullable=False)
    port = Column(Integer, nullable=False, default=4370)
    serial_number = Column(String)
    last_successful_sync = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)


class DeviceUserMap(Base):
    """Badge number on a terminal -> employee. NULL device_id applies to every terminal."""
    __tablename__ = "device_user_map"
    id = Column(Integer, primary_key=True)
    device_id = Column(String, index=True)
    device_user_id = Column(String, nullable=False, index=True)
    employee_id = Column(String, nullable=False)
    __table_args__ = (UniqueConstraint('device_id', 'device_user_id', name='uq_device_user'),)


class AttendanceRow(Base):
    __tablename__ = "attendance_events"
    id = Column(Integer, primary_key=True)
    employee_id = Column(String, nullable=False, index=True)
    device_id = Column(String, nullable=False, index=True)
    punch_time = Column(DateTime(timezone=True), nullable=False)  # UTC
    verify_type = Column(String, nullable=False)
    status = Column(Integer, nullable=False, default=0)
    dedup_key = Column(String(64), nullable=False, unique=True)
    remark = Column(String, default="")
    created_at = Column(DateTime(timezone=True), default=utcnow)


def make_engine(db_url=None, timeout=None):
    db_url = db_url or config.DB_URL
    timeout = timeout or config.DB_TIMEOUT
    connect_args, pool_args = {}, {}
    if db_url.startswith("sqlite"):
        connect_args = {"timeout": timeout, "check_same_thread": False}
        path = db_url.split("///", 1)[1] if "///" in db_url else ""
        if path and path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
    elif db_url.startswith("postgresql"):
        connect_args = {"connect_timeout": int(timeout),
                        "options": f"-c statement_timeout={int(timeout * 1000)}"}
        pool_args = {"pool_timeout": timeout, "pool_pre_ping": True}
    return create_engine(db_url, future=True, connect_args=connect_args, **pool_args)


class Ledger:
    """SQLAlchemy-backed persistence for devices, user mappings and punches."""

    def __init__(self, db_url=None, engine=None):
        self.engine = engine or make_engine(db_url)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False)

    @contextmanager
    def _session(self):
        try:
            with self.SessionLocal() as s:
                yield s
                s.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"ledger unavailable: {e}") from e

    # ─── Attendance ──────────────────────────────────────────────────────────

    def upsert_attendance_event(self, event):
        """Insert unless the dedup key exists. Returns True if a row was written."""
        values = dict(
            employee_id=event.employee_id,
            device_id=event.device_id,
            punch_time=event.punch_time,
            verify_type=event.verify_type,
            status=event.status,
            dedup_key=event.dedup_key,
            remark=event.remark,
            created_at=utcnow(),
        )
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            stmt = sqlite_insert(AttendanceRow).values(**values)
        elif dialect == "postgresql":
            stmt = pg_insert(AttendanceRow).values(**values)
        else:
            raise PersistenceError(f"no atomic upsert for dialect {dialect!r}")
        stmt = stmt.on_conflict_do_nothing(index_elements=["dedup_key"])

        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except IntegrityError as e:
            raise PersistenceConflict(f"insert of {event.dedup_key} conflicted: {e.orig}") from e
        except SQLAlchemyError as e:
            raise PersistenceError(f"upsert of {event.dedup_key} failed: {e}") from e
        return result.rowcount == 1

    def list_events(self, device_id=None, employee_id=None):
        with self._session() as s:
            q = s.query(AttendanceRow)
            if device_id:
                q = q.filter_by(device_id=device_id)
            if employee_id:
                q = q.filter_by(employee_id=employee_id)
            rows = q.order_by(AttendanceRow.punch_time, AttendanceRow.id).all()
            return [
                AttendanceEvent(
                    employee_id=r.employee_id, device_id=r.device_id,
                    punch_time=r.punch_time, verify_type=r.verify_type,
                    status=r.status, dedup_key=r.dedup_key, remark=r.remark or "",
                )
                for r in rows
            ]

    def count_events(self, device_id=None):
        with self._session() as s:
            q = s.query(AttendanceRow)
            if device_id:
                q = q.filter_by(device_id=device_id)
            return q.count()

    def annotate_event(self, dedup_key, remark):
        """The only mutation allowed on a ledger row."""
        with self._session() as s:
            row = s.query(AttendanceRow).filter_by(dedup_key=dedup_key).first()
            if row is None:
                return False
            row.remark = remark
            return True

    # ─── Employee mapping ────────────────────────────────────────────────────

    def map_device_user(self, device_id, device_user_id, employee_id):
        with self._session() as s:
            row = s.query(DeviceUserMap).filter_by(
                device_id=device_id, device_user_id=str(device_user_id)).first()
            if row is None:
                row = DeviceUserMap(device_id=device_id, device_user_id=str(device_user_id))
                s.add(row)
            row.employee_id = employee_id

    def resolve_employee_by_device_user(self, device_id, device_user_id):
        """Employee id for a badge on a terminal, or None. Device-specific rows win."""
        with self._session() as s:
            rows = s.query(DeviceUserMap).filter(
                DeviceUserMap.device_user_id == str(device_user_id),
                or_(DeviceUserMap.device_id == device_id, DeviceUserMap.device_id.is_(None)),
            ).all()
            if not rows:
                return None
            rows.sort(key=lambda r: r.device_id is None)
            return rows[0].employee_id

    # ─── Devices ─────────────────────────────────────────────────────────────

    def register_device(self, device_id, host, port=4370):
        with self._session() as s:
            row = s.get(Device, device_id)
            if row is None:
                row = Device(device_id=device_id, host=host, port=port)
                s.add(row)
                log_info(f"Registered device {device_id} at {host}:{port}", "SYNC")
            else:
                row.host, row.port = host, port
            return self._descriptor(row)

    def get_device(self, device_id):
        with self._session() as s:
            row = s.get(Device, device_id)
            return self._descriptor(row) if row else None

    def list_devices(self):
        with self._session() as s:
            return [self._descriptor(r) for r in s.query(Device).order_by(Device.device_id).all()]

    def update_device_last_sync(self, device_id, timestamp, serial_number=None):
        with self._session() as s:
            row = s.get(Device, device_id)
            if row is None:
                raise PersistenceError(f"unknown device {device_id}")
            row.last_successful_sync = timestamp
            if serial_number:
                row.serial_number = serial_number
        log_debug(f"{device_id}: last_successful_sync={timestamp.isoformat()}", "SYNC")

    @staticmethod
    def _descriptor(row):
        return DeviceDescriptor(device_id=row.device_id, host=row.host, port=row.port,
                                last_successful_sync=row.last_successful_sync)
