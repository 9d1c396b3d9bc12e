"""
Error types shared by the library engine and the sharing server.
"""

from enum import Enum


class ErrorCode(Enum):
    INVALID_TOKEN = "INVALID_TOKEN"
    FORBIDDEN = "FORBIDDEN"
    INSUFFICIENT_PERMISSION = "INSUFFICIENT_PERMISSION"
    INVALID_INPUT = "INVALID_INPUT"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


_DEFAULT_STATUS = {
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.INSUFFICIENT_PERMISSION: 403,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.SERVER_ERROR: 500,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
}


class ApiError(Exception):
    """An error that maps onto an ``{"error": {"code", "message"}}`` response."""

    def __init__(self, code: ErrorCode, message: str, status: int = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status or _DEFAULT_STATUS[code]

    def to_dict(self):
        return {"error": {"code": self.code.value, "message": self.message}}


class LibraryError(Exception):
    """Base class for library engine failures."""


class MigrationError(LibraryError):
    """Legacy database migration failed; the library cannot be loaded."""


class ImportTimeoutError(LibraryError):
    """Moving a file into the library took longer than allowed."""


class ServerStateError(Exception):
    """Sharing server was asked to start/stop from an incompatible state."""
