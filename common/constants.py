"""
Shared constants used across the platform.
"""

# Library layout (paths relative to a library root)
MEDIA_DIR = "images"
MEDIA_METADATA_FILENAME = "metadata.json"
TAGS_FILENAME = "tags.json"
TAG_GROUPS_FILENAME = "tag_folders.json"
FOLDERS_FILENAME = "folders.json"
AUDIT_LOG_FILENAME = "audit_logs.json"
LEGACY_DATABASE_FILENAME = "database.json"
LEGACY_MIGRATED_SUFFIX = ".migrated"
LIBRARY_DIR_SUFFIX = ".library"

# Media formats
SUPPORTED_VIDEO_FORMATS = [
    ".mp4", ".mkv", ".avi", ".mov", ".webm", ".flv", ".wmv"
]
SUPPORTED_AUDIO_FORMATS = [
    ".mp3", ".wav", ".flac", ".m4a", ".ogg", ".aac", ".wma"
]
SUPPORTED_MEDIA_FORMATS = SUPPORTED_VIDEO_FORMATS + SUPPORTED_AUDIO_FORMATS

STREAM_MIMETYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".ogg": "audio/ogg",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".flac": "audio/flac",
    ".m4a": "audio/mp4",
    ".aac": "audio/aac",
}

# Ids
RANDOM_ID_MIN = 1
RANDOM_ID_MAX = 1_000_000_000
UNIQUE_ID_BYTES = 6  # 12 hex characters

# Import pipeline
MOVE_TIMEOUT_SEC = 600
MAX_FILENAME_LENGTH = 200
ILLEGAL_FILENAME_CHARS = '\\/:*?"<>|'

# Import stages and their weight within one file
STAGE_STARTING = ("Starting", 0.0)
STAGE_MOVING = ("Moving", 0.1)
STAGE_METADATA = ("Metadata", 0.3)
STAGE_THUMBNAIL = ("Thumbnail", 0.5)
STAGE_COLOR = ("Color", 0.8)
STAGE_DONE = ("Done", 1.0)

# Audit logs
LIBRARY_AUDIT_LOG_MAX = 2000
SECURITY_AUDIT_LOG_MAX = 10000
SECURITY_AUDIT_RETENTION_DAYS = 90

# Tokens (milliseconds)
TOKEN_CLOCK_SKEW_MS = 5 * 60 * 1000
USER_TOKEN_MAX_AGE_MS = 30 * 24 * 60 * 60 * 1000
ACCESS_TOKEN_MAX_AGE_MS = 90 * 24 * 60 * 60 * 1000
PBKDF2_ITERATIONS = 100000
PBKDF2_KEY_LENGTH = 32
HOST_SECRET_BYTES = 64

# Configuration paths
DEFAULT_CONFIG_DIR = "~/.config/medialib"
CONFIG_FILENAME = "config.json"
SERVER_CONFIG_FILENAME = "server-config.json"
SHARED_USERS_FILENAME = "shared-users.json"
SECURITY_AUDIT_FILENAME = "audit-log.json"
LIBRARIES_FILENAME = "libraries.json"
AVATARS_DIRNAME = "avatars"
UPLOADS_DIRNAME = "uploads"
ERROR_LOG_FILENAME = "errors.log"

# Network Settings
DEFAULT_SERVER_PORT = 8765
DEFAULT_PAGE_SIZE = 50
RATE_LIMIT_MAX_REQUESTS = 1000
RATE_LIMIT_WINDOW_SEC = 15 * 60
MAX_NICKNAME_LENGTH = 50
MAX_AVATAR_BYTES = 2 * 1024 * 1024

APP_VERSION = "1.0.0"
