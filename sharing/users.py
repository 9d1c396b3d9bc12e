"""
Remote users allowed into the published library.

Users are stored in ``shared-users.json``. Both tokens are encrypted at
rest with the host secret; values that don't decrypt (plain text written
by older versions, or data from before a secret reset) are used as is.
"""

from pathlib import Path
from typing import List, Optional, Any
import hmac
import json
import logging
import threading

from common.constants import SHARED_USERS_FILENAME, MAX_NICKNAME_LENGTH
from common.crypto import TokenAuth
from common.models import SharedUser, Permission, utc_now_iso
from sharing.settings import ServerConfig, MIN_HOST_SECRET_LENGTH

logger = logging.getLogger(__name__)


class SharedUserStore:
    """Thread-safe collection of SharedUser records with JSON persistence."""

    def __init__(self, config_dir: str, server_config: ServerConfig):
        self.config_dir = Path(config_dir).expanduser()
        self.server_config = server_config
        self._path = self.config_dir / SHARED_USERS_FILENAME
        self._users: List[SharedUser] = []
        self._lock = threading.RLock()
        self.load()

    def _reveal(self, value: Optional[str]) -> Optional[str]:
        if TokenAuth.looks_encrypted(value):
            decrypted = TokenAuth.decrypt(value, self.server_config.host_secret)
            if decrypted is not None:
                return decrypted
        return value

    def _conceal(self, value: Optional[str]) -> Optional[str]:
        if not value or len(self.server_config.host_secret) < MIN_HOST_SECRET_LENGTH:
            return value
        return TokenAuth.encrypt(value, self.server_config.host_secret)

    def load(self) -> None:
        users = []
        if self._path.exists():
            try:
                with open(self._path, 'r', encoding='utf-8') as f:
                    raw = json.load(f)
                for data in raw:
                    user = SharedUser.from_dict(data)
                    user.user_token = self._reveal(user.user_token)
                    user.access_token = self._reveal(user.access_token)
                    users.append(user)
            except (OSError, ValueError, TypeError) as e:
                logger.error(f"Failed to load shared users: {e}")
                users = []
        with self._lock:
            self._users = users

    def save(self) -> None:
        with self._lock:
            records = []
            for user in self._users:
                data = user.to_dict()
                data["user_token"] = self._conceal(user.user_token)
                data["access_token"] = self._conceal(user.access_token)
                records.append(data)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, 'w', encoding='utf-8') as f:
                json.dump(records, f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save shared users: {e}")

    # Queries

    def list_users(self) -> List[SharedUser]:
        with self._lock:
            return list(self._users)

    def get(self, user_id: str) -> Optional[SharedUser]:
        with self._lock:
            return next((u for u in self._users if u.id == user_id), None)

    def find_by_user_token(self, user_token: str) -> Optional[SharedUser]:
        if not user_token:
            return None
        candidate = user_token.encode()
        with self._lock:
            return next((u for u in self._users if hmac.compare_digest(u.user_token.encode(), candidate)), None)

    @staticmethod
    def access_token_matches(user: SharedUser, access_token: str) -> bool:
        return bool(access_token) and hmac.compare_digest(user.access_token.encode(), access_token.encode())

    # Host operations

    def issue_access(self, user_token: str, nickname: str, permissions: List[str],
                     hardware_id: Optional[str] = None) -> SharedUser:
        """
        Register a remote user and mint their access token.

        A user token that is already registered gets a fresh access token
        and the new permissions instead of a second record.

        Raises:
            ValueError: If the user token is malformed or expired
        """
        if not TokenAuth.validate_user_token(user_token).valid:
            raise ValueError("Invalid user token")
        granted = [p.value for p in Permission.parse_all(permissions)] or [Permission.READ_ONLY.value]
        nickname = (nickname or "").strip()[:MAX_NICKNAME_LENGTH] or "Guest"

        with self._lock:
            user = self.find_by_user_token(user_token)
            if user is None:
                user = SharedUser(
                    id=SharedUser.generate_id(),
                    user_token=user_token,
                    access_token="",
                    nickname=nickname,
                    hardware_id=hardware_id,
                )
                self._users.append(user)
            else:
                user.nickname = nickname
                user.is_active = True
            user.permissions = granted
            user.access_token = TokenAuth.generate_access_token(
                user_token, self.server_config.host_secret, granted, user.id
            )
            self.save()
        logger.info(f"Issued access for {nickname} ({user.id}) with {', '.join(granted)}")
        return user

    def update_user(self, user_id: str, **updates: Any) -> Optional[SharedUser]:
        """Change nickname, permissions, is_active or icon_url."""
        allowed = {"nickname", "permissions", "is_active", "icon_url"}
        with self._lock:
            user = self.get(user_id)
            if user is None:
                return None
            for key, value in updates.items():
                if key not in allowed:
                    continue
                if key == "permissions":
                    value = [p.value for p in Permission.parse_all(value)]
                if key == "nickname":
                    value = (value or "").strip()[:MAX_NICKNAME_LENGTH]
                setattr(user, key, value)
            self.save()
            return user

    def record_access(self, user_id: str, ip_address: Optional[str]) -> None:
        with self._lock:
            user = self.get(user_id)
            if user is None:
                return
            user.last_access_at = utc_now_iso()
            user.ip_address = ip_address
            self.save()

    def revoke_user(self, user_id: str) -> bool:
        with self._lock:
            before = len(self._users)
            self._users = [u for u in self._users if u.id != user_id]
            if len(self._users) == before:
                return False
            self.save()
        logger.info(f"Revoked shared user {user_id}")
        return True

    def reset_host_secret(self, config_dir: Optional[str] = None) -> str:
        """
        Rotate the host secret and re-encrypt stored credentials with it.

        Existing access tokens stay valid; they are matched exactly, not
        re-verified against the secret.
        """
        with self._lock:
            secret = self.server_config.reset_host_secret()
            self.server_config.save(config_dir or str(self.config_dir))
            self.save()
        logger.warning("Host secret was reset")
        return secret

