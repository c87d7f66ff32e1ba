#!/usr/bin/env python3
# -----------------------------
# CRM Server Settings
# -----------------------------
# Base URL of the CRM backend (uploads and Socket.IO channel share it)
SERVER_URL = "https://dad-backend.onrender.com"

# Upload endpoints. Remotely dialed calls complete the CRM call record,
# locally detected calls go to the generic recording endpoint.
CALL_COMPLETE_PATH = "/api/calls/{call_id}/complete"
RECORDING_UPLOAD_PATH = "/api/upload/recording"

# Multipart field name for the audio file, per endpoint
CALL_COMPLETE_FILE_FIELD = "recording"
RECORDING_UPLOAD_FILE_FIELD = "file"
DEFAULT_RECORDING_MIME = "audio/mp4"

# -----------------------------
# Device Storage & Recorder Directories
# -----------------------------
# Root of shared external storage on the device
STORAGE_ROOT = "/sdcard"

# Where the common recorder apps drop their files, relative to STORAGE_ROOT.
# User-configured watch directories are always scanned first.
DEFAULT_RECORDING_DIRS = [
    "CallRecordings",
    "Recordings/Call",
    "Recordings",
    "Music/Call Recordings",
    "MIUI/sound_recorder/call_rec",  # Xiaomi
    "MIUI/sound_recorder",           # Xiaomi (older ROMs)
    "VoiceRecorder",                 # Samsung
    "Music",                         # Fallback
    "Download",                      # Some odd devices
]

# -----------------------------
# Correlation Settings
# -----------------------------
# Seconds to wait after call end before scanning, so the recorder can finish writing
SETTLE_DELAY = 3.0

# Accept files modified up to this long after the call ended (ms)
CORRELATION_WINDOW_MS = 120000  # 2 minutes

# Accept files modified up to this long *before* the call ended (ms).
# Absorbs clock and filesystem timestamp jitter.
SKEW_TOLERANCE_MS = 5000

# Lowercase extensions to accept, e.g. [".m4a", ".mp3"]. Empty = any regular file.
RECORDING_EXTENSIONS = []

# Ignore files smaller than this (bytes)
MIN_RECORDING_BYTES = 0

# -----------------------------
# Upload Settings
# -----------------------------
UPLOAD_MAX_ATTEMPTS = 3
UPLOAD_BACKOFF_BASE = 2.0   # First retry delay in seconds, doubled each attempt
UPLOAD_BACKOFF_MAX = 30.0   # Cap for a single backoff delay
UPLOAD_TIMEOUT = 60         # Per-request timeout in seconds
UPLOAD_WORKERS = 2          # Background threads for scans and uploads

# -----------------------------
# Remote Command Channel Settings
# -----------------------------
CHANNEL_RECONNECT_BASE_DELAY = 1.0
CHANNEL_RECONNECT_MAX_DELAY = 30.0
CHANNEL_CONNECT_TIMEOUT = 10  # Seconds to wait for the namespace handshake
CHANNEL_STATUS_EVENT = "call_status"

# -----------------------------
# Session Lifetime Settings
# -----------------------------
# Ended sessions still tracked this many seconds after the call ended are
# torn down (settle or upload never concluded)
MAX_SESSION_LIFETIME = 3600
# Calls that never report an end event are forgotten after this many seconds
MAX_LIVE_CALL_LIFETIME = 6 * 3600
SESSION_REAPER_INTERVAL = 30

# A dial request waits this long for its native call to start
DIAL_REQUEST_TTL = 60

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = "/var/log/call-bridge"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"
