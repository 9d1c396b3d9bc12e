"""
Authentication, authorization and rate limiting for the sharing server.

Every ``/api`` request except the health check goes through
``authenticate``, which runs these checks in order:

1. IP allow-list (if configured)
2. token pair present (headers or query parameters)
3. both tokens structurally valid and not expired
4. a user is registered for the user token
5. the stored access token matches the one presented
6. the user is active

Failures are logged as security events and raise ApiError.
"""

from dataclasses import dataclass, field
from functools import wraps
from typing import Dict, List, Optional, Tuple, Any
import logging
import threading
import time

from flask import request, g, current_app

from common.crypto import TokenAuth
from common.errors import ApiError, ErrorCode
from common.models import AuditLogEntry, Permission, SharedUser

logger = logging.getLogger(__name__)

EXTENSION_KEY = "medialib_sharing"


@dataclass
class AuthenticatedUser:
    """The caller of the current request."""
    id: str
    nickname: str
    permissions: List[str] = field(default_factory=list)
    ip_address: Optional[str] = None
    icon_url: Optional[str] = None

    @classmethod
    def from_shared_user(cls, user: SharedUser, ip_address: Optional[str]) -> 'AuthenticatedUser':
        return cls(
            id=user.id,
            nickname=user.nickname,
            permissions=list(user.permissions),
            ip_address=ip_address,
            icon_url=user.icon_url,
        )

    def has_any(self, required: List[Permission]) -> bool:
        granted = Permission.parse_all(self.permissions)
        if Permission.FULL in granted:
            return True
        return any(perm in granted for perm in required)


class RateLimiter:
    """
    Fixed-window request counter per client key.

    A window opens on a key's first request and allows ``max_requests``
    until ``window_sec`` has elapsed, then resets.
    """

    def __init__(self, max_requests: int, window_sec: float, clock=time.monotonic):
        self.max_requests = max_requests
        self.window_sec = window_sec
        self._clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> bool:
        """Count one request. Returns False once the window is exhausted."""
        now = self._clock()
        with self._lock:
            start, count = self._windows.get(key, (now, 0))
            if now - start >= self.window_sec:
                start, count = now, 0
            if count >= self.max_requests:
                self._windows[key] = (start, count)
                return False
            self._windows[key] = (start, count + 1)
            # Drop stale windows so the table doesn't grow without bound
            if len(self._windows) > 10000:
                self._windows = {
                    k: v for k, v in self._windows.items() if now - v[0] < self.window_sec
                }
            return True


def sharing_context():
    return current_app.extensions[EXTENSION_KEY]


def client_ip() -> str:
    ip = request.remote_addr or "unknown"
    # IPv4 clients on a dual-stack socket show up as ::ffff:a.b.c.d
    if ip.startswith("::ffff:"):
        ip = ip[len("::ffff:"):]
    return ip


def extract_tokens() -> Tuple[Optional[str], Optional[str]]:
    """Return (access_token, user_token) from headers, else query parameters."""
    auth_header = request.headers.get("Authorization", "")
    user_header = request.headers.get("X-User-Token")
    if auth_header and user_header:
        access = auth_header[len("Bearer "):] if auth_header.startswith("Bearer ") else auth_header
        return access.strip(), user_header.strip()
    access = request.args.get("accessToken")
    user = request.args.get("userToken")
    if access and user:
        return access, user
    return None, None


def log_security_event(action: str, details: Optional[Dict[str, Any]] = None,
                       user: Optional[AuthenticatedUser] = None, success: bool = False,
                       target_id: Any = None, target_name: Optional[str] = None) -> None:
    """Write to the security audit log; failures are logged at WARNING as well."""
    ctx = sharing_context()
    ip = user.ip_address if user else client_ip()
    entry = AuditLogEntry(
        action=action,
        target_id=target_id,
        target_name=target_name,
        details=details,
        user_id=user.id if user else "unknown",
        user_nickname=user.nickname if user else "unknown",
        ip_address=ip,
        success=success,
    )
    if not success:
        logger.warning(f"Security event {action} from {ip}: {details}")
    ctx.security_log.append(entry)


def _reject(code: ErrorCode, message: str, reason: str, **details) -> ApiError:
    log_security_event("auth_failed", dict(reason=reason, **details))
    return ApiError(code, message)


def authenticate(tokens: Optional[Tuple[Optional[str], Optional[str]]] = None) -> AuthenticatedUser:
    """
    Run the ordered authentication checks for the current request.

    Args:
        tokens: (access_token, user_token) supplied out of band, e.g. in a
            socket handshake; read from the request when None

    Raises:
        ApiError: FORBIDDEN for blocked addresses and disabled users,
            INVALID_TOKEN for every token problem
    """
    ctx = sharing_context()
    ip = client_ip()

    allowed_ips = ctx.config.allowed_ips
    if allowed_ips and ip not in allowed_ips:
        raise _reject(ErrorCode.FORBIDDEN, "Access from this IP address is not allowed",
                      "ip_not_allowed", ip=ip)

    access_token, user_token = tokens if tokens and all(tokens) else extract_tokens()
    if not access_token or not user_token:
        raise _reject(ErrorCode.INVALID_TOKEN, "No token provided", "missing_tokens")

    if not TokenAuth.validate_user_token(user_token).valid \
            or not TokenAuth.validate_access_token(access_token).valid:
        raise _reject(ErrorCode.INVALID_TOKEN, "Invalid token", "invalid_token_format")

    user = ctx.users.find_by_user_token(user_token)
    if user is None:
        raise _reject(ErrorCode.INVALID_TOKEN, "Unknown user", "unknown_user")

    if not ctx.users.access_token_matches(user, access_token):
        raise _reject(ErrorCode.INVALID_TOKEN, "Token pair does not match", "token_pair_mismatch")

    if not user.is_active:
        raise _reject(ErrorCode.FORBIDDEN, "This user has been disabled", "user_inactive", user_id=user.id)

    ctx.users.record_access(user.id, ip)
    return AuthenticatedUser.from_shared_user(user, ip)


def current_user() -> AuthenticatedUser:
    user = g.get("user")
    if user is None:
        raise ApiError(ErrorCode.INVALID_TOKEN, "Authentication required")
    return user


def ensure_permission(*required: Permission) -> AuthenticatedUser:
    """Raise INSUFFICIENT_PERMISSION unless the caller holds one of ``required``."""
    user = current_user()
    if not user.has_any(list(required)):
        log_security_event(
            "permission_denied",
            {"required": [p.value for p in required], "has": user.permissions, "path": request.path},
            user=user,
        )
        raise ApiError(ErrorCode.INSUFFICIENT_PERMISSION, "Insufficient permission")
    return user


def require_permission(*required: Permission):
    """Route decorator: the caller needs FULL or any one of ``required``."""
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            ensure_permission(*required)
            return view(*args, **kwargs)
        return wrapped
    return decorator
