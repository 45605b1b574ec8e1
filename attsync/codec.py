"""
Terminal Wire Codec
===================
Pure translation between commands/records and the terminal's binary frames.
Nothing in here touches a socket.

Frame: [0x50 0x50] [CMD u16] [SESSION u16] [SEQ u16] [LEN u16] [Payload...] [CRC16_Hi] [CRC16_Lo]
       header integers are little-endian, CRC trailer is big-endian.
CRC covers CMD + SESSION + SEQ + LEN + PAYLOAD (the 0x50 0x50 markers are EXCLUDED).

Data pages (users, punches) are a run of [LEN u16][record] entries so a
record with a bad length can be dropped on its own.
"""

import struct
from collections import namedtuple
from datetime import datetime, timedelta

from attsync.errors import MalformedFrameError, TruncatedPage
from attsync.models import DeviceInfo, DeviceUser, RawPunchRecord

# ═══════════════════════════════════════════════════════════
# COMMAND CODES
# ═══════════════════════════════════════════════════════════

CMD_CONNECT = 1000
CMD_EXIT = 1001
CMD_ENABLE_DEVICE = 1002
CMD_DISABLE_DEVICE = 1003
CMD_GET_USERS = 9
CMD_GET_DEVICE_INFO = 11
CMD_GET_ATTENDANCE = 13

CMD_ACK_OK = 2000
CMD_ACK_ERROR = 2001
CMD_ACK_DATA = 2002
CMD_ACK_MORE = 2003

COMMAND_NAMES = {
    CMD_CONNECT: "CONNECT",
    CMD_EXIT: "EXIT",
    CMD_ENABLE_DEVICE: "ENABLE_DEVICE",
    CMD_DISABLE_DEVICE: "DISABLE_DEVICE",
    CMD_GET_USERS: "GET_USERS",
    CMD_GET_DEVICE_INFO: "GET_DEVICE_INFO",
    CMD_GET_ATTENDANCE: "GET_ATTENDANCE",
    CMD_ACK_OK: "ACK_OK",
    CMD_ACK_ERROR: "ACK_ERROR",
    CMD_ACK_DATA: "ACK_DATA",
    CMD_ACK_MORE: "ACK_MORE",
}


def command_name(cmd):
    return COMMAND_NAMES.get(cmd, f"0x{cmd:04X}")


# ═══════════════════════════════════════════════════════════
# CRC16 IMPLEMENTATION
# ═══════════════════════════════════════════════════════════

def _generate_crc16_table(poly=0x8005):
    """CRC16 lookup table, non-reflected (MSB-first)."""
    table = []
    for i in range(256):
        crc = i << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ poly
            else:
                crc <<= 1
            crc &= 0xFFFF
        table.append(crc)
    return table

_CRC16_TABLE = _generate_crc16_table(0x8005)

def crc16(data, init=0x0000):
    """CRC-16/BUYPASS (poly 0x8005, init 0x0000, non-reflected)

    Check value: crc16(b"123456789") == 0xFEE8
    """
    crc = init
    for byte in data:
        crc = ((crc << 8) & 0xFFFF) ^ _CRC16_TABLE[((crc >> 8) ^ byte) & 0xFF]
    return crc


# ═══════════════════════════════════════════════════════════
# FRAME BUILDER / PARSER
# ═══════════════════════════════════════════════════════════

MAGIC = b'\x50\x50'
HEADER = struct.Struct('<2sHHHH')
HEADER_SIZE = HEADER.size         # 10
TRAILER_SIZE = 2
MIN_FRAME_SIZE = HEADER_SIZE + TRAILER_SIZE
MAX_PAYLOAD_SIZE = 0xFFFF

Frame = namedtuple("Frame", "command session_id sequence payload")


def encode_command(command, payload=b'', session_id=0, sequence=0):
    """Build a complete frame for one command."""
    if not 0 <= command <= 0xFFFF:
        raise ValueError(f"command code out of range: {command}")
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(f"payload too large: {len(payload)} > {MAX_PAYLOAD_SIZE}")

    body = HEADER.pack(MAGIC, command, session_id & 0xFFFF, sequence & 0xFFFF, len(payload))[2:]
    body += bytes(payload)
    return MAGIC + body + struct.pack('>H', crc16(body))


def frame_length(header):
    """Total frame size announced by a 10-byte header."""
    if len(header) < HEADER_SIZE:
        raise MalformedFrameError(f"short header: {len(header)} bytes")
    magic, _cmd, _session, _seq, length = HEADER.unpack_from(header)
    if magic != MAGIC:
        raise MalformedFrameError(f"bad magic {magic.hex()}")
    return HEADER_SIZE + length + TRAILER_SIZE


def decode_frame(data):
    """Validate and split one frame. Returns a Frame; never guesses."""
    if len(data) < MIN_FRAME_SIZE:
        raise MalformedFrameError(f"truncated frame: {len(data)} bytes")

    expected_total = frame_length(data)
    if len(data) != expected_total:
        raise MalformedFrameError(f"length mismatch: header says {expected_total}, got {len(data)}")

    _magic, cmd, session_id, sequence, length = HEADER.unpack_from(data)
    payload = bytes(data[HEADER_SIZE:HEADER_SIZE + length])

    received_crc = struct.unpack_from('>H', data, HEADER_SIZE + length)[0]
    calc_crc = crc16(data[2:HEADER_SIZE + length])
    if received_crc != calc_crc:
        raise MalformedFrameError(f"CRC mismatch: got 0x{received_crc:04X}, calc 0x{calc_crc:04X}")

    return Frame(cmd, session_id, sequence, payload)


# ═══════════════════════════════════════════════════════════
# PAGE REQUESTS
# ═══════════════════════════════════════════════════════════

PAGE_REQUEST = struct.Struct('<I')


def encode_page_request(start):
    return PAGE_REQUEST.pack(start)


def decode_page_request(payload):
    if len(payload) != PAGE_REQUEST.size:
        raise MalformedFrameError(f"page request must be {PAGE_REQUEST.size} bytes, got {len(payload)}")
    return PAGE_REQUEST.unpack(payload)[0]


# ═══════════════════════════════════════════════════════════
# RECORD LAYOUTS
# ═══════════════════════════════════════════════════════════

# uid, privilege, password, name, card, group, user_id, reserved
USER_RECORD = struct.Struct('<HB8s24sIB24s8x')          # 72 bytes
# user_id, local seconds, milliseconds, verify, status, reserved
PUNCH_RECORD = struct.Struct('<24sIHBB8x')              # 40 bytes
# serial, platform, firmware, log capacity, users, logs, local clock
DEVICE_INFO = struct.Struct('<16s16s16sIIII')           # 64 bytes

ENTRY_LEN = struct.Struct('<H')

_EPOCH = datetime(1970, 1, 1)


def _cstr(raw):
    return raw.split(b'\x00', 1)[0].decode('utf-8', errors='replace').strip()


def _pad(text, size):
    raw = str(text).encode('utf-8')[:size]
    return raw.ljust(size, b'\x00')


def local_seconds(dt):
    """Naive device-local datetime -> whole seconds on the device's epoch."""
    return int((dt - _EPOCH).total_seconds())


def decode_user_record(data):
    if len(data) != USER_RECORD.size:
        raise MalformedFrameError(f"user record must be {USER_RECORD.size} bytes, got {len(data)}")
    uid, privilege, password, name, card, group, user_id = USER_RECORD.unpack(data)
    return DeviceUser(
        uid=uid,
        user_id=_cstr(user_id) or str(uid),
        name=_cstr(name),
        privilege=privilege,
        password=_cstr(password),
        card=card,
        group_id=group,
    )


def encode_user_record(user):
    return USER_RECORD.pack(
        user.uid, user.privilege, _pad(user.password, 8), _pad(user.name, 24),
        user.card, user.group_id, _pad(user.user_id, 24),
    )


def decode_punch_record(data):
    if len(data) != PUNCH_RECORD.size:
        raise MalformedFrameError(f"punch record must be {PUNCH_RECORD.size} bytes, got {len(data)}")
    user_id, seconds, millis, verify, status = PUNCH_RECORD.unpack(data)
    user_id = _cstr(user_id)
    if not user_id:
        raise MalformedFrameError("punch record without user id")
    if millis > 999:
        raise MalformedFrameError(f"punch record milliseconds out of range: {millis}")
    return RawPunchRecord(
        user_id=user_id,
        timestamp=_EPOCH + timedelta(seconds=seconds, milliseconds=millis),
        verify_code=verify,
        status=status,
    )


def encode_punch_record(punch):
    ts = punch.timestamp
    return PUNCH_RECORD.pack(
        _pad(punch.user_id, 24), local_seconds(ts.replace(microsecond=0)),
        ts.microsecond // 1000, punch.verify_code, punch.status,
    )


def decode_device_info(payload):
    if len(payload) < DEVICE_INFO.size:
        raise MalformedFrameError(f"device info must be {DEVICE_INFO.size} bytes, got {len(payload)}")
    serial, platform, firmware, capacity, users, logs, clock = DEVICE_INFO.unpack_from(payload)
    return DeviceInfo(
        serial_number=_cstr(serial),
        platform=_cstr(platform),
        firmware_version=_cstr(firmware),
        log_capacity=capacity,
        user_count=users,
        log_count=logs,
        device_time=_EPOCH + timedelta(seconds=clock),
    )


def encode_device_info(info):
    return DEVICE_INFO.pack(
        _pad(info.serial_number, 16), _pad(info.platform, 16), _pad(info.firmware_version, 16),
        info.log_capacity, info.user_count, info.log_count, local_seconds(info.device_time),
    )


# ═══════════════════════════════════════════════════════════
# DATA PAGES
# ═══════════════════════════════════════════════════════════

def encode_record_page(records):
    """Join already-encoded records into one page payload."""
    out = bytearray()
    for raw in records:
        out += ENTRY_LEN.pack(len(raw)) + raw
    return bytes(out)


def decode_records(payload, decoder):
    """Decode every entry of a page.

    Returns (records, errors). A bad record is reported and skipped; only
    a broken length prefix stops the walk, since nothing after it can be
    located.
    """
    records = []
    errors = []
    offset = 0
    while offset < len(payload):
        if offset + ENTRY_LEN.size > len(payload):
            errors.append(TruncatedPage(f"dangling byte at offset {offset}"))
            break
        (length,) = ENTRY_LEN.unpack_from(payload, offset)
        offset += ENTRY_LEN.size
        if offset + length > len(payload):
            errors.append(TruncatedPage(f"entry of {length} bytes overruns page at offset {offset}"))
            break
        raw = payload[offset:offset + length]
        offset += length
        try:
            records.append(decoder(raw))
        except MalformedFrameError as e:
            errors.append(e)
    return records, errors


def decode_user_page(payload):
    return decode_records(payload, decode_user_record)


def decode_punch_page(payload):
    return decode_records(payload, decode_punch_record)
