"""Runtime settings, read once from the environment."""

import os

DB_URL = os.getenv("ATTSYNC_DB_URL", "sqlite:///./data/attendance.db")
DB_TIMEOUT = float(os.getenv("ATTSYNC_DB_TIMEOUT", "10"))

DEFAULT_PORT = 4370
CONNECT_TIMEOUT = float(os.getenv("ATTSYNC_CONNECT_TIMEOUT", "5"))
FETCH_TIMEOUT = float(os.getenv("ATTSYNC_FETCH_TIMEOUT", "5"))
BULK_TIMEOUT = float(os.getenv("ATTSYNC_BULK_TIMEOUT", "8"))
COMMAND_RETRIES = int(os.getenv("ATTSYNC_COMMAND_RETRIES", "2"))

MAX_WORKERS = int(os.getenv("ATTSYNC_MAX_WORKERS", "8"))

# Device clock offsets are rounded to this many minutes (timezone granularity)
OFFSET_GRANULARITY_MIN = int(os.getenv("ATTSYNC_OFFSET_GRANULARITY_MIN", "15"))
DRIFT_WARN_SECONDS = 300

LOG_DIR = os.getenv("ATTSYNC_LOG_DIR", "")
