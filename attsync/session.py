"""
Device Session
==============
One TCP connection to one terminal. Commands are strictly sequential; every
round trip has its own timeout and a timed-out command is re-sent at most
``retries`` times before the session is faulted.

    Disconnected -> Connecting -> Connected <-> AwaitingReply -> Disconnected
                                     any state -> Faulted
"""

import enum
import errno
import socket
import time
from contextlib import contextmanager
from datetime import datetime, timezone

from attsync import config
from attsync.codec import (
    CMD_ACK_DATA, CMD_ACK_ERROR, CMD_ACK_MORE, CMD_ACK_OK, CMD_CONNECT,
    CMD_DISABLE_DEVICE, CMD_ENABLE_DEVICE, CMD_EXIT, CMD_GET_ATTENDANCE,
    CMD_GET_DEVICE_INFO, CMD_GET_USERS, HEADER_SIZE, MAGIC, command_name,
    decode_device_info, decode_frame, decode_punch_page, decode_user_page,
    encode_command, encode_page_request, frame_length,
)
from attsync.errors import (
    AttSyncError, ConnectionRefused, ConnectionTimeout, DeviceUnreachable,
    HostUnreachable, MalformedFrameError, ProtocolError, SyncCancelled,
    TruncatedPage,
)
from attsync.log import hex_dump, log_cmd, log_debug, log_error, log_proto, log_warn

RECV_CHUNK = 4096


class SessionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AWAITING_REPLY = "awaiting_reply"
    FAULTED = "faulted"


def default_transport(host, port, timeout):
    """Plain TCP. The protocol has no transport encryption."""
    return socket.create_connection((host, port), timeout=timeout)


def quantize_offset(device_time, received_at, granularity_min):
    """Device clock minus UTC, rounded to the timezone granularity.

    Rounding keeps a punch's normalised time stable between syncs even
    though each sync measures the offset with a little network jitter.
    """
    raw = (device_time - received_at.replace(tzinfo=None)).total_seconds()
    if granularity_min <= 0:
        return int(round(raw))
    step = granularity_min * 60
    offset = int(round(raw / step)) * step
    if abs(raw - offset) > config.DRIFT_WARN_SECONDS:
        log_warn(f"device clock drifts {raw - offset:+.0f}s from its timezone offset", "SYNC")
    return offset


class DeviceSession:
    """Owns the socket for one terminal for the duration of one sync."""

    def __init__(self, descriptor, transport=None, connect_timeout=None,
                 fetch_timeout=None, bulk_timeout=None, retries=None,
                 offset_granularity=None):
        self.descriptor = descriptor
        self.transport = transport or default_transport
        self.connect_timeout = connect_timeout or config.CONNECT_TIMEOUT
        self.fetch_timeout = fetch_timeout or config.FETCH_TIMEOUT
        self.bulk_timeout = bulk_timeout or config.BULK_TIMEOUT
        self.retries = config.COMMAND_RETRIES if retries is None else retries
        self.offset_granularity = (config.OFFSET_GRANULARITY_MIN
                                   if offset_granularity is None else offset_granularity)

        self.state = SessionState.DISCONNECTED
        self.sock = None
        self.session_id = 0
        self.sequence = 0
        self._rx = bytearray()         # bytes received but not yet framed
        self.disabled = False
        self.info = None
        self.malformed_records = 0

    @property
    def name(self):
        d = self.descriptor
        return f"{d.device_id}@{d.host}:{d.port}"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()
        return False

    # ─── Connection lifecycle ────────────────────────────────────────────────

    def connect(self, timeout=None):
        """Open the socket and run the handshake."""
        if self.sock is not None:
            raise ProtocolError(f"{self.name}: session already open")
        timeout = timeout or self.connect_timeout
        host, port = self.descriptor.host, self.descriptor.port

        self.state = SessionState.CONNECTING
        log_cmd(f"Connecting to {self.name}...")
        try:
            self.sock = self.transport(host, port, timeout)
            self._rx.clear()
        except socket.timeout as e:
            self.state = SessionState.FAULTED
            raise ConnectionTimeout(f"{self.name}: connect timed out after {timeout}s") from e
        except ConnectionRefusedError as e:
            self.state = SessionState.FAULTED
            raise ConnectionRefused(f"{self.name}: connection refused") from e
        except OSError as e:
            self.state = SessionState.FAULTED
            if e.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
                raise HostUnreachable(f"{self.name}: {e}") from e
            raise DeviceUnreachable(f"{self.name}: {e}") from e

        try:
            frame = self._round_trip(CMD_CONNECT, b'', timeout)
        except socket.timeout as e:
            self._abort()
            raise ConnectionTimeout(f"{self.name}: no handshake reply within {timeout}s") from e
        except ProtocolError:
            self._abort()
            raise
        except OSError as e:
            self._abort()
            raise DeviceUnreachable(f"{self.name}: handshake failed: {e}") from e

        self.session_id = frame.session_id
        self.state = SessionState.CONNECTED
        log_cmd(f"Connected to {self.name} (session {self.session_id})")
        return self

    def disconnect(self):
        """Release the terminal and the socket. Never raises."""
        if self.sock is None:
            self.state = SessionState.DISCONNECTED
            return
        try:
            if self.state == SessionState.CONNECTED:
                if self.disabled:
                    self._release()
                try:
                    self._round_trip(CMD_EXIT, b'', self.fetch_timeout)
                except (OSError, AttSyncError) as e:
                    log_warn(f"{self.name}: EXIT not acknowledged: {e}", "CMD")
            elif self.disabled:
                log_warn(f"{self.name}: closing while device is still disabled", "CMD")
        finally:
            try:
                self.sock.close()
            except OSError as e:
                log_error(f"{self.name}: socket close failed: {e}", "CMD")
            self.sock = None
            self.session_id = 0
            self.state = SessionState.DISCONNECTED
            log_cmd(f"Disconnected from {self.name}")

    def _abort(self):
        try:
            self.sock.close()
        except OSError as e:
            log_error(f"{self.name}: socket close failed: {e}", "CMD")
        self.sock = None
        self.state = SessionState.FAULTED

    def _fault(self, reason):
        log_error(f"{self.name}: session faulted: {reason}", "CMD")
        self.state = SessionState.FAULTED

    # ─── Frame I/O ───────────────────────────────────────────────────────────

    def _send(self, cmd, payload):
        self.sequence = (self.sequence + 1) & 0xFFFF
        packet = encode_command(cmd, payload, self.session_id, self.sequence)
        log_proto(f"[TX] {self.name} {command_name(cmd)} {hex_dump(packet)}")
        self.sock.sendall(packet)
        return self.sequence

    def _recv_more(self, deadline):
        """Append whatever the socket has to the receive buffer, within the deadline."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout("reply timed out")
        self.sock.settimeout(remaining)
        chunk = self.sock.recv(RECV_CHUNK)
        if not chunk:
            raise ConnectionResetError("terminal closed the connection")
        self._rx += chunk

    def _recv_frame(self, deadline):
        """Next complete frame from the receive buffer.

        Bytes of a frame cut short by a timeout stay buffered, so the retry
        finishes reading it and the sequence check drops it as stale.
        """
        while True:
            # Search for the markers; anything before them is line noise
            idx = self._rx.find(MAGIC)
            if idx < 0:
                idx = max(len(self._rx) - 1, 0)   # may hold the first marker byte
            if idx:
                log_warn(f"{self.name}: skipped {idx} byte(s) before frame marker", "PROTO")
                del self._rx[:idx]

            if len(self._rx) >= HEADER_SIZE:
                total = frame_length(bytes(self._rx[:HEADER_SIZE]))
                if len(self._rx) >= total:
                    data = bytes(self._rx[:total])
                    del self._rx[:total]
                    log_proto(f"[RX] {self.name} {hex_dump(data)}")
                    return decode_frame(data)
            self._recv_more(deadline)

    def _round_trip(self, cmd, payload, timeout):
        """Send once and wait for the reply that echoes our sequence number."""
        deadline = time.monotonic() + timeout
        self.state = SessionState.AWAITING_REPLY
        seq = self._send(cmd, payload)
        while True:
            try:
                frame = self._recv_frame(deadline)
            except socket.timeout:
                raise socket.timeout(f"{command_name(cmd)} reply timed out") from None
            if frame.sequence == seq:
                break
            # late answer to an attempt we already gave up on
            log_debug(f"{self.name}: discarding stale reply seq={frame.sequence} (want {seq})", "PROTO")

        self.state = SessionState.CONNECTED
        if frame.command == CMD_ACK_ERROR:
            raise ProtocolError(f"{self.name}: device rejected {command_name(cmd)}")
        return frame

    def _command(self, cmd, payload=b'', timeout=None):
        """Round trip with retry on timeout; faults the session on anything else."""
        if self.state != SessionState.CONNECTED:
            raise ProtocolError(f"{self.name}: not connected (state={self.state.value})")
        timeout = timeout or self.fetch_timeout
        attempts = self.retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return self._round_trip(cmd, payload, timeout)
            except socket.timeout:
                log_warn(f"{self.name}: {command_name(cmd)} timed out "
                         f"(attempt {attempt}/{attempts})", "CMD")
                self.state = SessionState.CONNECTED
            except MalformedFrameError as e:
                self._fault(e)
                raise
            except ProtocolError:
                # explicit rejection; the link itself is still in step
                raise
            except OSError as e:
                self._fault(e)
                raise DeviceUnreachable(f"{self.name}: {command_name(cmd)} failed: {e}") from e

        self._fault(f"{command_name(cmd)} unanswered after {attempts} attempts")
        raise DeviceUnreachable(f"{self.name}: no reply to {command_name(cmd)} after {attempts} attempts")

    # ─── Exclusive access ────────────────────────────────────────────────────

    @contextmanager
    def exclusive_access(self):
        """Disable the terminal for the duration of the block, re-enable after."""
        self._command(CMD_DISABLE_DEVICE)
        self.disabled = True
        log_cmd(f"{self.name}: device disabled")
        try:
            yield self
        finally:
            self._release()

    def with_exclusive_access(self, fn):
        with self.exclusive_access():
            return fn(self)

    def _release(self):
        if not self.disabled:
            return
        if self.state != SessionState.CONNECTED:
            log_warn(f"{self.name}: cannot re-enable device (state={self.state.value})", "CMD")
            return
        try:
            self._command(CMD_ENABLE_DEVICE)
        except AttSyncError as e:
            log_error(f"{self.name}: re-enable failed: {e}", "CMD")
            return
        self.disabled = False
        log_cmd(f"{self.name}: device enabled")

    # ─── Queries ─────────────────────────────────────────────────────────────

    def fetch_info(self):
        frame = self._command(CMD_GET_DEVICE_INFO, timeout=self.fetch_timeout)
        received_at = datetime.now(timezone.utc)
        try:
            info = decode_device_info(frame.payload)
        except MalformedFrameError as e:
            self._fault(e)
            raise
        offset = quantize_offset(info.device_time, received_at, self.offset_granularity)
        self.info = info.model_copy(update={"received_at": received_at,
                                             "clock_offset_seconds": offset})
        log_cmd(f"{self.name}: serial={info.serial_number} users={info.user_count} "
                f"logs={info.log_count}/{info.log_capacity} offset={offset}s")
        return self.info

    def fetch_users(self, cancel=None):
        return self._fetch_paged(CMD_GET_USERS, decode_user_page, cancel, "users")

    def fetch_attendance_logs(self, cancel=None):
        return self._fetch_paged(CMD_GET_ATTENDANCE, decode_punch_page, cancel, "punches")

    def _fetch_paged(self, cmd, decoder, cancel, label):
        records = []
        position = 0
        pages = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled(f"{self.name}: cancelled after {pages} page(s) of {label}")

            frame = self._command(cmd, encode_page_request(position), timeout=self.bulk_timeout)
            if frame.command not in (CMD_ACK_OK, CMD_ACK_DATA, CMD_ACK_MORE):
                self._fault(f"unexpected reply {command_name(frame.command)}")
                raise ProtocolError(f"{self.name}: unexpected reply {command_name(frame.command)} "
                                    f"to {command_name(cmd)}")
            pages += 1

            page, errors = decoder(frame.payload)
            for e in errors:
                log_warn(f"{self.name}: skipped malformed {label[:-1]} record: {e}", "PROTO")
            self.malformed_records += len(errors)
            records.extend(page)
            # a truncated page tail is not an entry the terminal counted
            advanced = len(page) + sum(1 for e in errors if not isinstance(e, TruncatedPage))
            position += advanced

            if frame.command != CMD_ACK_MORE:
                break
            if not advanced:
                self._fault("continuation page without entries")
                raise ProtocolError(f"{self.name}: device signalled more {label} but sent none")

        log_cmd(f"{self.name}: fetched {len(records)} {label} in {pages} page(s)")
        return records
