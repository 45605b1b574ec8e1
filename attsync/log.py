"""
Categorised logging for the sync subsystem.

Every record carries a ``cat`` attribute (SYS, CMD, PROTO, SYNC) so the
dashboard can filter the in-memory ring buffer the same way it filters
the log files.
"""

import logging
from collections import deque
from datetime import datetime
from pathlib import Path

from attsync import config

LOG_FORMAT = "%(asctime)s [%(levelname)-5s] [%(cat)-5s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Ring buffer for serving logs to the dashboard
log_ring: deque = deque(maxlen=2000)


class RingHandler(logging.Handler):
    """Push log records to in-memory ring buffer for frontend consumption."""
    def emit(self, record):
        entry = {
            "ts": datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3],
            "level": record.levelname,
            "msg": record.getMessage(),
            "cat": getattr(record, 'cat', 'SYS'),
        }
        log_ring.append(entry)


class CategoryFilter(logging.Filter):
    """Default the category for records logged without ``extra``."""
    def filter(self, record):
        if not hasattr(record, "cat"):
            record.cat = "SYS"
        return True


log = logging.getLogger("attsync")
log.setLevel(logging.DEBUG)
log.addFilter(CategoryFilter())

_configured = False


def setup_logging(log_dir=None):
    """Attach console, ring and (optionally) file handlers. Idempotent."""
    global _configured
    if _configured:
        return log
    _configured = True

    log_dir = log_dir or config.LOG_DIR
    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        # File handler: all logs
        fh_all = logging.FileHandler(log_dir / "all.log", encoding="utf-8")
        fh_all.setLevel(logging.DEBUG)
        fh_all.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        fh_all.addFilter(CategoryFilter())

        # File handler: warnings and errors only
        fh_warn = logging.FileHandler(log_dir / "warnings.log", encoding="utf-8")
        fh_warn.setLevel(logging.WARNING)
        fh_warn.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        fh_warn.addFilter(CategoryFilter())

        log.addHandler(fh_all)
        log.addHandler(fh_warn)

    rh = RingHandler()
    rh.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter("[%(levelname)-5s] [%(cat)-5s] %(message)s"))
    ch.addFilter(CategoryFilter())

    log.addHandler(rh)
    log.addHandler(ch)
    return log


def logm(level, msg, cat="SYS"):
    """Log with category."""
    log.log(level, msg, extra={"cat": cat})

def log_info(msg, cat="SYS"):    logm(logging.INFO, msg, cat)
def log_warn(msg, cat="SYS"):    logm(logging.WARNING, msg, cat)
def log_error(msg, cat="SYS"):   logm(logging.ERROR, msg, cat)
def log_debug(msg, cat="SYS"):   logm(logging.DEBUG, msg, cat)
def log_proto(msg):               logm(logging.DEBUG, msg, "PROTO")
def log_cmd(msg):                 logm(logging.INFO, msg, "CMD")
def log_sync(msg):                logm(logging.INFO, msg, "SYNC")


def hex_dump(data, prefix=""):
    """Compact hex dump of bytes."""
    hex_str = ' '.join(f'{b:02X}' for b in data)
    return f"{prefix}{hex_str}"


def read_logs(after=0, cat="", level=""):
    """Slice of the ring buffer with optional category/level filters."""
    entries = list(log_ring)
    if after > 0:
        entries = entries[after:]
    if cat:
        cats = cat.upper().split(",")
        entries = [e for e in entries if e["cat"] in cats]
    if level:
        levels = level.upper().split(",")
        entries = [e for e in entries if e["level"] in levels]
    return entries
